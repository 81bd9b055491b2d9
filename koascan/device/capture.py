from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..errors import AcquisitionPermissionDenied, CaptureDeviceFailure, InvalidImageFormat

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".jpg", ".jpeg", ".png")


@dataclass(frozen=True)
class AcquiredImage:
    """An image obtained from the camera or the gallery."""

    path: Path
    data: bytes = field(repr=False)

    @property
    def filename(self) -> str:
        return self.path.name


class ImageSource(Protocol):
    def capture_image(self) -> AcquiredImage | None: ...

    def select_image(self) -> AcquiredImage | None: ...


def is_supported_format(path: Path) -> bool:
    return path.suffix.lower() in SUPPORTED_EXTENSIONS


def validate_image_format(image: AcquiredImage) -> AcquiredImage:
    if not is_supported_format(image.path):
        raise InvalidImageFormat(
            "Image format is not supported. Only JPEG and PNG formats are allowed."
        )
    return image


def _read_image(path: Path) -> AcquiredImage:
    if not path.exists():
        raise CaptureDeviceFailure(f"Image not found: {path}")
    if not os.access(path, os.R_OK):
        raise AcquisitionPermissionDenied(f"Read permission denied for {path}")
    try:
        data = path.read_bytes()
    except PermissionError as exc:
        raise AcquisitionPermissionDenied(f"Read permission denied for {path}") from exc
    except OSError as exc:
        raise CaptureDeviceFailure(f"Failed to read image {path}: {exc}") from exc
    return AcquiredImage(path=path, data=data)


class FileImageSource:
    """Image source backed by files chosen ahead of time.

    ``None`` for a path behaves like the user cancelling the picker.
    """

    def __init__(self, select_path: Path | None = None, capture_path: Path | None = None) -> None:
        self.select_path = select_path
        self.capture_path = capture_path

    def capture_image(self) -> AcquiredImage | None:
        if self.capture_path is None:
            return None
        return _read_image(self.capture_path)

    def select_image(self) -> AcquiredImage | None:
        if self.select_path is None:
            return None
        return _read_image(self.select_path)


class OpenCVImageSource:
    """Capture frames from an OpenCV-compatible camera into ``output_dir``."""

    def __init__(
        self,
        output_dir: Path,
        source: int | str = 0,
        *,
        warmup_frames: int = 2,
        gallery_path: Path | None = None,
    ) -> None:
        try:
            import cv2  # type: ignore
        except ImportError as exc:  # pragma: no cover - depends on optional dep
            raise CaptureDeviceFailure("opencv-python is required for camera capture") from exc

        self._cv2 = cv2
        self._output_dir = output_dir
        self._source = source
        self._warmup_frames = warmup_frames
        self._gallery_path = gallery_path

    def capture_image(self) -> AcquiredImage | None:
        cap = self._cv2.VideoCapture(self._source)
        try:
            if not cap.isOpened():
                raise CaptureDeviceFailure(f"Unable to open camera source {self._source!r}")
            for _ in range(self._warmup_frames):
                ok, _ = cap.read()
                if not ok:
                    break
            ok, frame = cap.read()
            if not ok or frame is None:
                raise CaptureDeviceFailure("Failed to capture frame from camera")
        finally:
            cap.release()

        success, buffer = self._cv2.imencode(".jpg", frame)
        if not success:
            raise CaptureDeviceFailure("OpenCV failed to encode frame as jpeg")
        data = buffer.tobytes()
        path = self._output_dir / f"capture_{uuid.uuid4().hex[:12]}.jpg"
        try:
            self._output_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except PermissionError as exc:
            raise AcquisitionPermissionDenied(f"Cannot write capture to {self._output_dir}") from exc
        except OSError as exc:
            raise CaptureDeviceFailure(f"Failed to store captured frame: {exc}") from exc
        logger.info("Captured frame from source=%r bytes=%d path=%s", self._source, len(data), path)
        return AcquiredImage(path=path, data=data)

    def select_image(self) -> AcquiredImage | None:
        if self._gallery_path is None:
            return None
        return _read_image(self._gallery_path)


__all__ = [
    "AcquiredImage",
    "ImageSource",
    "FileImageSource",
    "OpenCVImageSource",
    "SUPPORTED_EXTENSIONS",
    "is_supported_format",
    "validate_image_format",
]
