from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import List

from PIL import Image

from ..ai.types import LABEL_PREFIX, RemoteClassification, single_grade_distribution


@dataclass
class MockClassifier:
    """Offline stand-in for the endpoint that always reports one grade."""

    grade: int = 2
    confidence: float = 0.85
    calls: List[int] = field(default_factory=list)

    def classify(self, image_bytes: bytes, filename: str = "image.jpg") -> RemoteClassification:
        self.calls.append(len(image_bytes))
        return RemoteClassification(
            label=f"{LABEL_PREFIX}{self.grade}",
            grade=self.grade,
            confidence=self.confidence,
            heatmap_payload=_placeholder_heatmap(),
            grade_confidences=single_grade_distribution(self.grade, self.confidence),
        )


def _placeholder_heatmap() -> bytes:
    img = Image.new("RGB", (64, 64), color=(220, 40, 40))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


__all__ = ["MockClassifier"]
