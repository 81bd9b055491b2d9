from __future__ import annotations

import json

import pytest

from koascan.api.settings import (
    DEFAULT_API_ENDPOINT,
    DEFAULT_REQUEST_TIMEOUT,
    AppSettings,
    is_valid_url,
    load_settings,
    reset_settings,
    resolve_settings,
    save_settings,
    update_api_endpoint,
)
from koascan.errors import InvalidEndpoint


def test_missing_file_yields_defaults(tmp_path) -> None:
    settings = load_settings(tmp_path / "settings.json")

    assert settings.api_endpoint == DEFAULT_API_ENDPOINT
    assert settings.request_timeout == DEFAULT_REQUEST_TIMEOUT
    assert settings.is_default_endpoint


def test_invalid_json_yields_defaults(tmp_path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert load_settings(path) == AppSettings()


def test_save_and_load_round_trip(tmp_path) -> None:
    path = tmp_path / "nested" / "settings.json"
    save_settings(path, AppSettings(api_endpoint="http://10.0.0.5:8000/predict", request_timeout=45))

    loaded = load_settings(path)
    assert loaded.api_endpoint == "http://10.0.0.5:8000/predict"
    assert loaded.request_timeout == 45
    assert json.loads(path.read_text(encoding="utf-8"))["request_timeout"] == 45


def test_sanitizes_bad_values(tmp_path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"api_endpoint": "ftp://nope", "request_timeout": -3}), encoding="utf-8")

    assert load_settings(path) == AppSettings()


@pytest.mark.parametrize(
    "url, valid",
    [
        ("https://koa.example/predict", True),
        ("http://localhost:8000", True),
        ("", False),
        ("koa.example/predict", False),
        ("ftp://koa.example", False),
        ("https://", False),
    ],
)
def test_is_valid_url(url, valid) -> None:
    assert is_valid_url(url) is valid


def test_update_endpoint_validates(tmp_path) -> None:
    path = tmp_path / "settings.json"

    with pytest.raises(InvalidEndpoint):
        update_api_endpoint(path, "not a url")
    assert not path.exists()

    updated = update_api_endpoint(path, "  https://koa.example/v2/predict ")
    assert updated.api_endpoint == "https://koa.example/v2/predict"
    assert load_settings(path).api_endpoint == "https://koa.example/v2/predict"


def test_reset_removes_file(tmp_path) -> None:
    path = tmp_path / "settings.json"
    save_settings(path, AppSettings(api_endpoint="https://koa.example/predict"))

    assert reset_settings(path) == AppSettings()
    assert not path.exists()


def test_environment_overrides_file(tmp_path) -> None:
    path = tmp_path / "settings.json"
    save_settings(path, AppSettings(api_endpoint="https://file.example/predict", request_timeout=10))

    settings = resolve_settings(
        path,
        {"KOASCAN_API_ENDPOINT": "https://env.example/predict", "KOASCAN_REQUEST_TIMEOUT": "90"},
    )
    assert settings.api_endpoint == "https://env.example/predict"
    assert settings.request_timeout == 90

    ignored = resolve_settings(path, {"KOASCAN_API_ENDPOINT": "bogus"})
    assert ignored.api_endpoint == "https://file.example/predict"
