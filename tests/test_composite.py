from __future__ import annotations

import io
from datetime import datetime, timezone

import pytest
from PIL import Image

from koascan.ai.types import single_grade_distribution
from koascan.device.composite import (
    TEXT_BAND_HEIGHT,
    CompositeGenerator,
    caption_lines,
    layout_for,
)
from koascan.errors import DecodeFailed, EncodeFailed
from koascan.history.storage import ClassificationRecord

CREATED = datetime(2024, 3, 9, 8, 30, 15, tzinfo=timezone.utc)


def _encode(size: tuple[int, int], color, fmt: str = "PNG") -> bytes:
    img = Image.new("RGB", size, color=color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def _record(tmp_path, original: bytes, heatmap: bytes) -> ClassificationRecord:
    source = tmp_path / "knee.jpg"
    source.write_bytes(original)
    gradcam = tmp_path / "gradcam.png"
    gradcam.write_bytes(heatmap)
    return ClassificationRecord(
        id="rec-1",
        source_image_ref=str(source),
        predicted_grade=3,
        predicted_confidence=0.875,
        heatmap_image_ref=str(gradcam),
        created_at=CREATED,
        grade_confidences=single_grade_distribution(3, 0.875),
    )


def test_layout_is_deterministic() -> None:
    layout = layout_for(200, 150)

    assert layout.canvas_size == (200, 2 * 150 + TEXT_BAND_HEIGHT)
    assert layout.original_box == (0, 0, 200, 150)
    assert layout.heatmap_box == (0, 150, 200, 300)
    assert layout.band_box == (0, 300, 200, 300 + TEXT_BAND_HEIGHT)
    assert layout.text_origins == [(10, 310), (10, 340), (10, 370)]
    assert layout_for(200, 150) == layout


def test_caption_lines_format() -> None:
    assert caption_lines(3, 0.875, CREATED) == [
        "KL Grade: 3",
        "Confidence: 87.5%",
        "Date: 2024-03-09 08:30:15 UTC",
    ]


def test_compose_stacks_original_over_resized_heatmap() -> None:
    generator = CompositeGenerator()
    original = _encode((120, 80), (0, 0, 255), fmt="JPEG")
    heatmap = _encode((30, 30), (255, 0, 0))

    output = generator.compose(original, heatmap, 3, 0.875, CREATED)

    composite = Image.open(io.BytesIO(output))
    assert composite.format == "JPEG"
    assert composite.size == (120, 2 * 80 + TEXT_BAND_HEIGHT)
    rgb = composite.convert("RGB")
    top = rgb.getpixel((60, 40))
    middle = rgb.getpixel((60, 120))
    band_corner = rgb.getpixel((115, 2 * 80 + TEXT_BAND_HEIGHT - 3))
    assert top[2] > 200 and top[0] < 60
    assert middle[0] > 200 and middle[2] < 60
    assert min(band_corner) > 200


def test_compose_rejects_undecodable_inputs() -> None:
    generator = CompositeGenerator()
    good = _encode((10, 10), "white")

    with pytest.raises(DecodeFailed):
        generator.compose(b"not an image", good, 1, 0.5, CREATED)
    with pytest.raises(DecodeFailed):
        generator.compose(good, b"", 1, 0.5, CREATED)


def test_compose_record_reads_refs(tmp_path) -> None:
    record = _record(tmp_path, _encode((64, 48), "gray", fmt="JPEG"), _encode((16, 16), "red"))

    output = CompositeGenerator().compose_record(record)

    assert Image.open(io.BytesIO(output)).size == (64, 2 * 48 + TEXT_BAND_HEIGHT)


def test_compose_record_missing_heatmap_fails(tmp_path) -> None:
    record = _record(tmp_path, _encode((8, 8), "gray"), _encode((8, 8), "red"))
    (tmp_path / "gradcam.png").unlink()

    with pytest.raises(DecodeFailed):
        CompositeGenerator().compose_record(record)


def test_write_leaves_no_scratch_files(tmp_path) -> None:
    record = _record(tmp_path, _encode((32, 32), "gray"), _encode((8, 8), "red"))
    out_dir = tmp_path / "out"

    path = CompositeGenerator().write(record, out_dir / "result.jpg")

    assert path.exists()
    assert [p.name for p in out_dir.iterdir()] == ["result.jpg"]


def test_failed_write_cleans_up(tmp_path) -> None:
    record = _record(tmp_path, _encode((32, 32), "gray"), b"broken heatmap")
    out_dir = tmp_path / "out"
    out_dir.mkdir()

    with pytest.raises(DecodeFailed):
        CompositeGenerator().write(record, out_dir / "result.jpg")
    assert list(out_dir.iterdir()) == []


def test_encode_failure_is_reported(monkeypatch) -> None:
    generator = CompositeGenerator()
    images = (_encode((8, 8), "gray"), _encode((8, 8), "red"))

    def _broken_save(self, *args, **kwargs):
        raise OSError("encoder unavailable")

    monkeypatch.setattr(Image.Image, "save", _broken_save)

    with pytest.raises(EncodeFailed):
        generator.compose(*images, 0, 0.1, CREATED)
