from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from ..errors import DecodeFailed, EncodeFailed
from ..history.storage import ClassificationRecord
from .gallery import write_atomic

logger = logging.getLogger(__name__)

# Three text lines at FONT_SIZE, LINE_SPACING apart, starting TEXT_TOP_PADDING
# into the band.
FONT_SIZE = 24
LINE_SPACING = 30
TEXT_TOP_PADDING = 10
TEXT_MARGIN_X = 10
TEXT_BAND_HEIGHT = 120

JPEG_QUALITY = 90
BACKGROUND_COLOR = (255, 255, 255)
TEXT_COLOR = (0, 0, 0)

Box = Tuple[int, int, int, int]


@dataclass(frozen=True)
class CompositeLayout:
    width: int
    image_height: int
    band_height: int = TEXT_BAND_HEIGHT

    @property
    def canvas_size(self) -> Tuple[int, int]:
        return self.width, 2 * self.image_height + self.band_height

    @property
    def original_box(self) -> Box:
        return 0, 0, self.width, self.image_height

    @property
    def heatmap_box(self) -> Box:
        return 0, self.image_height, self.width, 2 * self.image_height

    @property
    def band_box(self) -> Box:
        top = 2 * self.image_height
        return 0, top, self.width, top + self.band_height

    @property
    def text_origins(self) -> List[Tuple[int, int]]:
        top = 2 * self.image_height + TEXT_TOP_PADDING
        return [(TEXT_MARGIN_X, top + i * LINE_SPACING) for i in range(3)]


def layout_for(width: int, height: int) -> CompositeLayout:
    return CompositeLayout(width=width, image_height=height)


def caption_lines(grade: int, confidence: float, created_at: datetime) -> List[str]:
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    stamp = created_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    return [
        f"KL Grade: {grade}",
        f"Confidence: {confidence * 100:.1f}%",
        f"Date: {stamp} UTC",
    ]


def _decode(data: bytes, label: str) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeFailed(f"Failed to decode {label} image: {exc}") from exc
    return image.convert("RGB")


class CompositeGenerator:
    """Stack original X-ray, heatmap and a caption band into one JPEG."""

    def __init__(
        self,
        font: ImageFont.ImageFont | ImageFont.FreeTypeFont | None = None,
        quality: int = JPEG_QUALITY,
    ) -> None:
        self._font = font or ImageFont.load_default(size=FONT_SIZE)
        self._quality = quality

    def compose(
        self,
        original_bytes: bytes,
        heatmap_bytes: bytes,
        grade: int,
        confidence: float,
        created_at: datetime,
    ) -> bytes:
        original = _decode(original_bytes, "original")
        heatmap = _decode(heatmap_bytes, "heatmap")

        layout = layout_for(*original.size)
        canvas = Image.new("RGB", layout.canvas_size, color=BACKGROUND_COLOR)
        canvas.paste(original, layout.original_box[:2])
        resized = heatmap.resize(original.size, Image.Resampling.BILINEAR)
        canvas.paste(resized, layout.heatmap_box[:2])

        draw = ImageDraw.Draw(canvas)
        draw.rectangle(
            (layout.band_box[0], layout.band_box[1], layout.band_box[2] - 1, layout.band_box[3] - 1),
            fill=BACKGROUND_COLOR,
        )
        for origin, line in zip(layout.text_origins, caption_lines(grade, confidence, created_at)):
            draw.text(origin, line, fill=TEXT_COLOR, font=self._font)

        buf = io.BytesIO()
        try:
            canvas.save(buf, format="JPEG", quality=self._quality)
        except (OSError, ValueError) as exc:
            raise EncodeFailed(f"Failed to encode composite image: {exc}") from exc
        logger.debug(
            "Composite rendered size=%dx%d bytes=%d",
            layout.canvas_size[0],
            layout.canvas_size[1],
            buf.tell(),
        )
        return buf.getvalue()

    def compose_record(self, record: ClassificationRecord) -> bytes:
        original_bytes = _read_ref(record.source_image_ref, "original")
        heatmap_bytes = _read_ref(record.heatmap_image_ref, "heatmap")
        return self.compose(
            original_bytes,
            heatmap_bytes,
            record.predicted_grade,
            record.predicted_confidence,
            record.created_at,
        )

    def write(self, record: ClassificationRecord, path: Path) -> Path:
        data = self.compose_record(record)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            write_atomic(path, data)
        except OSError as exc:
            raise EncodeFailed(f"Failed to write composite to {path}: {exc}") from exc
        return path


def composite_filename(record: ClassificationRecord) -> str:
    return f"koa_result_{record.id}.jpg"


def _read_ref(ref: str, label: str) -> bytes:
    try:
        return Path(ref).read_bytes()
    except OSError as exc:
        raise DecodeFailed(f"Failed to read {label} image {ref}: {exc}") from exc


__all__ = [
    "CompositeGenerator",
    "CompositeLayout",
    "TEXT_BAND_HEIGHT",
    "caption_lines",
    "composite_filename",
    "layout_for",
]
