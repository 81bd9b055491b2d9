"""Persistent client settings.

Only two values are kept: the classification endpoint URL and the request
timeout. They live in a small JSON file so they survive restarts; anything
missing or invalid falls back to the defaults below. Environment variables
``KOASCAN_API_ENDPOINT`` and ``KOASCAN_REQUEST_TIMEOUT`` override the file.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

from ..errors import InvalidEndpoint

logger = logging.getLogger(__name__)

DEFAULT_API_ENDPOINT = "https://wahid1099-koa-version-3.hf.space/predict"
DEFAULT_REQUEST_TIMEOUT = 30

ENV_API_ENDPOINT = "KOASCAN_API_ENDPOINT"
ENV_REQUEST_TIMEOUT = "KOASCAN_REQUEST_TIMEOUT"


@dataclass
class AppSettings:
    """Resolved endpoint configuration consumed by the classifier client."""

    api_endpoint: str = DEFAULT_API_ENDPOINT
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT

    @property
    def is_default_endpoint(self) -> bool:
        return self.api_endpoint == DEFAULT_API_ENDPOINT

    def to_dict(self) -> dict[str, Any]:
        return {
            "api_endpoint": self.api_endpoint,
            "request_timeout": self.request_timeout,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AppSettings:
        endpoint = data.get("api_endpoint")
        if not isinstance(endpoint, str) or not is_valid_url(endpoint):
            endpoint = DEFAULT_API_ENDPOINT
        return cls(
            api_endpoint=endpoint,
            request_timeout=_sanitize_timeout(data.get("request_timeout")),
        )


def _sanitize_timeout(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return DEFAULT_REQUEST_TIMEOUT
    try:
        timeout = int(value)
    except (TypeError, ValueError):
        return DEFAULT_REQUEST_TIMEOUT
    return timeout if timeout > 0 else DEFAULT_REQUEST_TIMEOUT


def is_valid_url(url: str) -> bool:
    """Return True for http(s) URLs that name a host."""
    if not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc) and bool(parsed.hostname)


def load_settings(path: Path) -> AppSettings:
    """Load settings from ``path``.

    A missing file, invalid JSON or a non-object payload all yield defaults.
    """
    if not path.exists():
        logger.info("No settings file at %s; using defaults", path)
        return AppSettings()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load settings from %s: %s; using defaults", path, exc)
        return AppSettings()
    if not isinstance(data, dict):
        logger.warning("Settings file %s does not hold an object; using defaults", path)
        return AppSettings()
    settings = AppSettings.from_dict(data)
    logger.debug(
        "Loaded settings from %s: endpoint=%s timeout=%ss",
        path,
        settings.api_endpoint,
        settings.request_timeout,
    )
    return settings


def save_settings(path: Path, settings: AppSettings) -> None:
    """Write ``settings`` to ``path``, creating parent directories.

    Raises:
        OSError: If the file cannot be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
    logger.info(
        "Saved settings to %s: endpoint=%s timeout=%ss",
        path,
        settings.api_endpoint,
        settings.request_timeout,
    )


def update_api_endpoint(path: Path, url: str) -> AppSettings:
    url = url.strip()
    if not is_valid_url(url):
        raise InvalidEndpoint(f"Invalid API endpoint URL: {url!r}")
    settings = load_settings(path)
    settings.api_endpoint = url
    save_settings(path, settings)
    return settings


def reset_settings(path: Path) -> AppSettings:
    if path.exists():
        path.unlink()
        logger.info("Removed settings file %s", path)
    return AppSettings()


def resolve_settings(path: Path, environ: Mapping[str, str] | None = None) -> AppSettings:
    """Load the file and apply environment overrides on top."""
    env = os.environ if environ is None else environ
    settings = load_settings(path)
    endpoint = env.get(ENV_API_ENDPOINT)
    if endpoint:
        if is_valid_url(endpoint):
            settings.api_endpoint = endpoint
        else:
            logger.warning("Ignoring invalid %s=%r", ENV_API_ENDPOINT, endpoint)
    timeout = env.get(ENV_REQUEST_TIMEOUT)
    if timeout:
        settings.request_timeout = _sanitize_timeout(timeout)
    return settings


__all__ = [
    "AppSettings",
    "DEFAULT_API_ENDPOINT",
    "DEFAULT_REQUEST_TIMEOUT",
    "is_valid_url",
    "load_settings",
    "save_settings",
    "update_api_endpoint",
    "reset_settings",
    "resolve_settings",
]
