from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class PredictionPayload(BaseModel):
    """Body returned by the classification endpoint on success."""

    model_config = ConfigDict(populate_by_name=True)

    label: str = Field(..., alias="class", description="Grade label, e.g. KL-4")
    confidence: float = Field(..., ge=0.0, le=1.0)
    gradcam: str = Field(..., description="Base64 encoded Grad-CAM image")


__all__ = ["PredictionPayload"]
