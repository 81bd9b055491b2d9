from __future__ import annotations


class KoaScanError(Exception):
    """Base class for every failure raised by koascan components."""


class AcquisitionError(KoaScanError):
    pass


class AcquisitionPermissionDenied(AcquisitionError):
    pass


class InvalidImageFormat(AcquisitionError):
    pass


class CaptureDeviceFailure(AcquisitionError):
    pass


class ClassificationError(KoaScanError):
    pass


class TransportFailure(ClassificationError):
    """The classification endpoint was never successfully reached."""


class RequestTimedOut(TransportFailure):
    pass


class ServerError(ClassificationError):
    def __init__(self, status_code: int, message: str | None = None) -> None:
        super().__init__(message or f"Classification service returned status {status_code}")
        self.status_code = status_code


class MalformedResponse(ClassificationError):
    pass


class PersistenceError(KoaScanError):
    pass


class StoreUnavailable(PersistenceError):
    pass


class StoreWriteFailed(PersistenceError):
    pass


class RecordNotFound(PersistenceError):
    def __init__(self, record_id: str) -> None:
        super().__init__(f"Classification with id {record_id} not found")
        self.record_id = record_id


class CompositeError(KoaScanError):
    pass


class DecodeFailed(CompositeError):
    pass


class EncodeFailed(CompositeError):
    pass


class SaveError(KoaScanError):
    pass


class SavePermissionDenied(SaveError):
    pass


class SaveWriteFailed(SaveError):
    pass


class WorkflowBusy(KoaScanError):
    """Raised when a request arrives while another operation is in flight."""


class InvalidEndpoint(ValueError):
    pass


def classification_error_message(exc: ClassificationError) -> str:
    """Map a classifier failure to the message shown to the user."""
    if isinstance(exc, RequestTimedOut):
        return "The request timed out. Please check your internet connection and try again."
    if isinstance(exc, TransportFailure):
        return (
            "Unable to reach the classification service. "
            "Please check your connection and the API endpoint in settings."
        )
    if isinstance(exc, ServerError):
        if 400 <= exc.status_code < 500:
            return (
                "Invalid request to the classification service. "
                "Please try again or contact support."
            )
        if exc.status_code >= 500:
            return "The classification service is currently unavailable. Please try again later."
        return f"The classification service returned an error (status {exc.status_code})."
    return "The classification service returned an unexpected response. Please try again."


__all__ = [
    "KoaScanError",
    "AcquisitionError",
    "AcquisitionPermissionDenied",
    "InvalidImageFormat",
    "CaptureDeviceFailure",
    "ClassificationError",
    "TransportFailure",
    "RequestTimedOut",
    "ServerError",
    "MalformedResponse",
    "PersistenceError",
    "StoreUnavailable",
    "StoreWriteFailed",
    "RecordNotFound",
    "CompositeError",
    "DecodeFailed",
    "EncodeFailed",
    "SaveError",
    "SavePermissionDenied",
    "SaveWriteFailed",
    "WorkflowBusy",
    "InvalidEndpoint",
    "classification_error_message",
]
