from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field

import requests
from pydantic import ValidationError

from ..ai.types import (
    KL_GRADES,
    RemoteClassification,
    parse_grade,
    single_grade_distribution,
)
from ..errors import MalformedResponse, RequestTimedOut, ServerError, TransportFailure
from .schemas import PredictionPayload

logger = logging.getLogger(__name__)


@dataclass
class RemoteClassifierClient:
    """Upload one image to the classification endpoint and parse the result.

    A single attempt is made per call; retry policy is left to the caller.
    """

    endpoint_url: str
    timeout: float = 30.0
    session: requests.Session = field(default_factory=requests.Session)

    def classify(self, image_bytes: bytes, filename: str = "image.jpg") -> RemoteClassification:
        logger.info(
            "Submitting image endpoint=%s bytes=%d timeout=%.1fs",
            self.endpoint_url,
            len(image_bytes),
            self.timeout,
        )
        files = {"file": (filename, image_bytes, _content_type(filename))}
        try:
            response = self.session.post(self.endpoint_url, files=files, timeout=self.timeout)
        except requests.Timeout as exc:
            raise RequestTimedOut(
                f"Request timed out after {self.timeout:.0f} seconds"
            ) from exc
        except requests.RequestException as exc:
            raise TransportFailure(f"Failed to reach classification service: {exc}") from exc

        logger.info("Classification response status=%d", response.status_code)
        if not 200 <= response.status_code < 300:
            raise ServerError(response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponse("Response body is not valid JSON") from exc
        return parse_prediction(data)


def parse_prediction(data: object) -> RemoteClassification:
    """Convert a decoded JSON body into a :class:`RemoteClassification`."""
    try:
        payload = PredictionPayload.model_validate(data)
    except ValidationError as exc:
        raise MalformedResponse(f"Unexpected response shape: {exc}") from exc

    try:
        heatmap = base64.b64decode(payload.gradcam, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedResponse("Grad-CAM payload is not valid base64") from exc

    grade = parse_grade(payload.label)
    if grade not in KL_GRADES:
        raise MalformedResponse(f"Label {payload.label!r} is outside the KL grade range")

    return RemoteClassification(
        label=payload.label,
        grade=grade,
        confidence=payload.confidence,
        heatmap_payload=heatmap,
        grade_confidences=single_grade_distribution(grade, payload.confidence),
    )


def _content_type(filename: str) -> str:
    return "image/png" if filename.lower().endswith(".png") else "image/jpeg"


__all__ = ["RemoteClassifierClient", "parse_prediction"]
