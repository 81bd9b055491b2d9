from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Protocol

# Kellgren-Lawrence grades reported by the remote model.
KL_GRADES: tuple[int, ...] = (0, 1, 2, 3, 4)

# Labels arrive as "KL-<grade>".
LABEL_PREFIX = "KL-"


class Classifier(Protocol):
    def classify(self, image_bytes: bytes, filename: str = "image.jpg") -> "RemoteClassification": ...


@dataclass(frozen=True)
class RemoteClassification:
    label: str
    grade: int
    confidence: float
    heatmap_payload: bytes = field(repr=False)
    grade_confidences: Dict[int, float] = field(default_factory=dict)


def parse_grade(label: str) -> int:
    """Return the integer after ``KL-``; anything unparseable yields grade 0."""
    if not label.startswith(LABEL_PREFIX):
        return 0
    suffix = label[len(LABEL_PREFIX):]
    # ASCII digits only; int() would also take signs, underscores and other scripts.
    if not (suffix.isascii() and suffix.isdigit()):
        return 0
    return int(suffix)


def single_grade_distribution(grade: int, confidence: float) -> Dict[int, float]:
    # The service reports one confidence only; every other grade gets 0.0.
    return {g: (confidence if g == grade else 0.0) for g in KL_GRADES}


__all__ = [
    "Classifier",
    "RemoteClassification",
    "KL_GRADES",
    "LABEL_PREFIX",
    "parse_grade",
    "single_grade_distribution",
]
