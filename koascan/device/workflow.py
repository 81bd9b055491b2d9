from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional

from ..ai.types import Classifier, RemoteClassification
from ..errors import (
    AcquisitionError,
    AcquisitionPermissionDenied,
    ClassificationError,
    CompositeError,
    InvalidImageFormat,
    PersistenceError,
    SaveError,
    SavePermissionDenied,
    WorkflowBusy,
    classification_error_message,
)
from ..history.storage import ClassificationRecord, SQLiteHistoryStore
from .capture import AcquiredImage, ImageSource, validate_image_format
from .composite import CompositeGenerator, composite_filename
from .gallery import Gallery, write_atomic

logger = logging.getLogger(__name__)


class WorkflowState(Enum):
    IDLE = "idle"
    ACQUIRING_IMAGE = "acquiring_image"
    IMAGE_READY = "image_ready"
    CLASSIFYING = "classifying"
    SUCCESS = "success"
    ERROR = "error"
    SAVING_ARTIFACT = "saving_artifact"
    ARTIFACT_SAVED = "artifact_saved"

    @property
    def is_busy(self) -> bool:
        return self in _BUSY_STATES


_BUSY_STATES = frozenset(
    {
        WorkflowState.ACQUIRING_IMAGE,
        WorkflowState.CLASSIFYING,
        WorkflowState.SAVING_ARTIFACT,
    }
)


@dataclass(frozen=True)
class WorkflowSnapshot:
    state: WorkflowState
    image: Optional[AcquiredImage] = None
    record: Optional[ClassificationRecord] = None
    error: Optional[str] = None
    warning: Optional[str] = None
    saved_location: Optional[str] = None

    @property
    def is_busy(self) -> bool:
        return self.state.is_busy

    @property
    def has_result(self) -> bool:
        return self.record is not None

    @property
    def has_error(self) -> bool:
        return self.state is WorkflowState.ERROR


Listener = Callable[[WorkflowSnapshot], None]

HISTORY_WARNING = "The result is shown but could not be saved to history."

_UNSET = object()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ClassificationWorkflow:
    """Drive acquire -> classify -> persist -> save for a single session.

    Every request is checked against the busy flag and moved into its busy
    state atomically, so ``is_busy`` is already true when the request call
    hands control to a collaborator. Requests made while busy raise
    :class:`WorkflowBusy`; nothing is queued and in-flight work cannot be
    cancelled. The internal lock is never held while a collaborator runs.
    """

    def __init__(
        self,
        image_source: ImageSource,
        classifier: Classifier,
        store: SQLiteHistoryStore,
        gallery: Gallery,
        *,
        heatmap_dir: Path,
        composite: CompositeGenerator | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._source = image_source
        self._classifier = classifier
        self._store = store
        self._gallery = gallery
        self._heatmap_dir = heatmap_dir
        self._composite = composite or CompositeGenerator()
        self._clock = clock

        self._lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._state = WorkflowState.IDLE
        self._image: AcquiredImage | None = None
        self._record: ClassificationRecord | None = None
        self._error: str | None = None
        self._warning: str | None = None
        self._saved_location: str | None = None
        self._last_created_at: datetime | None = None

    @property
    def state(self) -> WorkflowState:
        with self._lock:
            return self._state

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._state.is_busy

    def snapshot(self) -> WorkflowSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with a snapshot after every change."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # Acquisition

    def capture_image(self) -> WorkflowSnapshot:
        return self._acquire(
            self._source.capture_image,
            permission_message=(
                "Camera permission is required to capture images. "
                "Please grant permission in settings."
            ),
            verb="capture",
        )

    def select_image(self) -> WorkflowSnapshot:
        return self._acquire(
            self._source.select_image,
            permission_message=(
                "Gallery access permission is required to select images. "
                "Please grant permission in settings."
            ),
            verb="select",
        )

    def _acquire(
        self,
        fetch: Callable[[], AcquiredImage | None],
        *,
        permission_message: str,
        verb: str,
    ) -> WorkflowSnapshot:
        self._begin(WorkflowState.ACQUIRING_IMAGE)
        try:
            image = fetch()
            if image is not None:
                validate_image_format(image)
        except AcquisitionPermissionDenied as exc:
            logger.warning("Image %s denied: %s", verb, exc)
            return self._fail(permission_message)
        except InvalidImageFormat as exc:
            return self._fail(str(exc))
        except AcquisitionError as exc:
            logger.warning("Image %s failed: %s", verb, exc)
            return self._fail(f"Failed to {verb} image: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error during image %s", verb)
            return self._fail(f"Failed to {verb} image: {exc}")

        if image is None:
            logger.info("Image %s cancelled", verb)
            return self._finish(WorkflowState.IDLE)
        logger.info("Image ready path=%s bytes=%d", image.path, len(image.data))
        return self._finish(
            WorkflowState.IMAGE_READY,
            image=image,
            record=None,
            warning=None,
            saved_location=None,
        )

    # Classification

    def classify(self) -> WorkflowSnapshot:
        image = self._begin(
            WorkflowState.CLASSIFYING,
            require=lambda: self._image,
            missing_message="No image selected for classification",
        )
        if image is None:
            return self.snapshot()

        try:
            remote = self._classifier.classify(image.data, image.filename)
        except ClassificationError as exc:
            logger.warning("Classification failed: %s", exc)
            return self._fail(classification_error_message(exc))
        except Exception:
            logger.exception("Unexpected error during classification")
            return self._fail(
                "An unexpected error occurred during classification. Please try again."
            )

        try:
            record = self._build_record(image, remote)
        except OSError as exc:
            logger.error("Failed to store Grad-CAM heatmap: %s", exc)
            return self._fail(f"Failed to save Grad-CAM image: {exc}")
        except Exception:
            logger.exception("Failed to build classification record")
            return self._fail(
                "An unexpected error occurred during classification. Please try again."
            )

        warning: str | None = None
        try:
            self._store.upsert(record)
        except PersistenceError as exc:
            # The result is still shown; only the history entry is lost.
            logger.warning("Classification %s not saved to history: %s", record.id, exc)
            warning = HISTORY_WARNING
        except Exception:
            logger.exception("Unexpected error saving classification %s to history", record.id)
            warning = HISTORY_WARNING

        logger.info(
            "Classification complete id=%s grade=%d confidence=%.1f%%",
            record.id,
            record.predicted_grade,
            record.predicted_confidence * 100,
        )
        return self._finish(
            WorkflowState.SUCCESS,
            record=record,
            warning=warning,
            saved_location=None,
        )

    def _build_record(self, image: AcquiredImage, remote: RemoteClassification) -> ClassificationRecord:
        record_id = str(uuid.uuid4())
        heatmap_path = self._heatmap_dir / f"gradcam_{record_id}.png"
        self._heatmap_dir.mkdir(parents=True, exist_ok=True)
        write_atomic(heatmap_path, remote.heatmap_payload)
        return ClassificationRecord.from_remote(
            remote,
            source_image_ref=str(image.path),
            heatmap_image_ref=str(heatmap_path),
            created_at=self._next_timestamp(),
            record_id=record_id,
        )

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        last = self._last_created_at
        if last is not None and now <= last:
            now = last + timedelta(milliseconds=1)
        self._last_created_at = now
        return now

    # Artifact

    def save_artifact(self) -> WorkflowSnapshot:
        record = self._begin(
            WorkflowState.SAVING_ARTIFACT,
            require=lambda: self._record,
            missing_message="No classification result to save",
        )
        if record is None:
            return self.snapshot()

        try:
            data = self._composite.compose_record(record)
            location = self._gallery.save_to_gallery(data, composite_filename(record))
        except SavePermissionDenied as exc:
            logger.warning("Saving result %s denied: %s", record.id, exc)
            return self._fail(
                "Storage permission is required to save images. Please grant permission in settings."
            )
        except (CompositeError, SaveError) as exc:
            logger.warning("Saving result %s failed: %s", record.id, exc)
            return self._fail(f"Failed to save classification result: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error saving result %s", record.id)
            return self._fail(f"Failed to save classification result: {exc}")

        logger.info("Saved result id=%s to %s", record.id, location)
        return self._finish(WorkflowState.ARTIFACT_SAVED, saved_location=location)

    # Recovery

    def clear_error(self) -> WorkflowSnapshot:
        with self._lock:
            if self._state.is_busy:
                raise WorkflowBusy(f"Cannot clear error while {self._state.value}")
            if self._state is not WorkflowState.ERROR:
                return self._snapshot_locked()
            self._error = None
            if self._record is not None:
                target = WorkflowState.SUCCESS
            elif self._image is not None:
                target = WorkflowState.IMAGE_READY
            else:
                target = WorkflowState.IDLE
            self._set_state_locked(target)
            snapshot = self._snapshot_locked()
        self._notify(snapshot)
        return snapshot

    def reset(self) -> WorkflowSnapshot:
        with self._lock:
            if self._state.is_busy:
                raise WorkflowBusy(f"Cannot reset while {self._state.value}")
            self._image = None
            self._record = None
            self._error = None
            self._warning = None
            self._saved_location = None
            self._set_state_locked(WorkflowState.IDLE)
            snapshot = self._snapshot_locked()
        self._notify(snapshot)
        return snapshot

    # Internals

    def _begin(
        self,
        busy_state: WorkflowState,
        require: Callable[[], Any] | None = None,
        missing_message: str = "",
    ) -> Any:
        """Enter ``busy_state`` and return the context ``require`` reads under the lock.

        When ``require`` yields None the workflow moves to ERROR with
        ``missing_message`` instead, and None is returned.
        """
        with self._lock:
            if self._state.is_busy:
                raise WorkflowBusy(
                    f"Cannot start {busy_state.value} while {self._state.value}"
                )
            context = require() if require is not None else True
            if context is None:
                self._error = missing_message
                self._set_state_locked(WorkflowState.ERROR)
            else:
                self._error = None
                self._set_state_locked(busy_state)
            snapshot = self._snapshot_locked()
        self._notify(snapshot)
        return context

    def _finish(
        self,
        state: WorkflowState,
        *,
        image: object = _UNSET,
        record: object = _UNSET,
        warning: object = _UNSET,
        saved_location: object = _UNSET,
    ) -> WorkflowSnapshot:
        with self._lock:
            if image is not _UNSET:
                self._image = image  # type: ignore[assignment]
            if record is not _UNSET:
                self._record = record  # type: ignore[assignment]
            if warning is not _UNSET:
                self._warning = warning  # type: ignore[assignment]
            if saved_location is not _UNSET:
                self._saved_location = saved_location  # type: ignore[assignment]
            self._error = None
            self._set_state_locked(state)
            snapshot = self._snapshot_locked()
        self._notify(snapshot)
        return snapshot

    def _fail(self, message: str) -> WorkflowSnapshot:
        with self._lock:
            self._error = message
            self._set_state_locked(WorkflowState.ERROR)
            snapshot = self._snapshot_locked()
        self._notify(snapshot)
        return snapshot

    def _set_state_locked(self, state: WorkflowState) -> None:
        if state is not self._state:
            logger.debug("Workflow %s -> %s", self._state.value, state.value)
        self._state = state

    def _snapshot_locked(self) -> WorkflowSnapshot:
        return WorkflowSnapshot(
            state=self._state,
            image=self._image,
            record=self._record,
            error=self._error,
            warning=self._warning,
            saved_location=self._saved_location,
        )

    def _notify(self, snapshot: WorkflowSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Workflow listener failed")


__all__ = [
    "ClassificationWorkflow",
    "WorkflowSnapshot",
    "WorkflowState",
    "HISTORY_WARNING",
]
