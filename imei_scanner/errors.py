# imei_scanner/errors.py
"""
Error taxonomy for scanning.

One reason enum shared by exceptions, session events and the UI, plus a
structural classifier for camera acquisition failures.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ScanErrorReason(Enum):
    """Every failure the caller may have to show to the operator."""

    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    UNSUPPORTED_CONSTRAINTS = "unsupported_constraints"
    NO_IDENTIFIER_FOUND = "no_identifier_found"
    VALIDATION_FAILED = "validation_failed"
    TRANSIENT_DECODER_ERROR = "transient_decoder_error"


# Operator-facing messages, keyed by reason
REASON_MESSAGES: Dict[ScanErrorReason, str] = {
    ScanErrorReason.PERMISSION_DENIED:
        "Camera permission denied. Allow camera access and try again.",
    ScanErrorReason.DEVICE_NOT_FOUND:
        "No camera found. Connect a camera and try again.",
    ScanErrorReason.DEVICE_BUSY:
        "Camera is already in use by another application.",
    ScanErrorReason.UNSUPPORTED_CONSTRAINTS:
        "Camera constraints not supported. Try a different camera.",
    ScanErrorReason.NO_IDENTIFIER_FOUND:
        "No IMEI or phone number found. Try again or enter it manually.",
    ScanErrorReason.VALIDATION_FAILED:
        "A number was found but it failed IMEI validation. Please check it.",
    ScanErrorReason.TRANSIENT_DECODER_ERROR:
        "Decoder error, retrying.",
}


class ScannerError(Exception):
    """
    Base exception for scanner failures.

    Usage:
        raise ScannerError(ScanErrorReason.NO_IDENTIFIER_FOUND)
        raise CameraAcquisitionError(ScanErrorReason.DEVICE_BUSY, details={"device": 0})
    """

    def __init__(
        self,
        reason: ScanErrorReason,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.reason = reason
        self.message = message or REASON_MESSAGES.get(reason, reason.value)
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        error_dict = {
            "reason": self.reason.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.details:
            error_dict["details"] = self.details
        return error_dict


class CameraAcquisitionError(ScannerError):
    """Opening the camera failed; fatal to the current session attempt."""


class InvalidTransitionError(Exception):
    """Operation not allowed in the session's current state or mode."""

    def __init__(self, operation: str, state: Any, mode: Any = None):
        self.operation = operation
        self.state = state
        self.mode = mode
        where = f"state {getattr(state, 'value', state)}"
        if mode is not None:
            where += f", mode {getattr(mode, 'value', mode)}"
        super().__init__(f"Cannot {operation} in {where}")


class TeardownErrorKind(Enum):
    ALREADY_RELEASED = "already_released"
    RELEASE_FAILED = "release_failed"


@dataclass(frozen=True)
class TeardownError:
    """Returned (not raised) by handle release so teardown stays idempotent."""
    kind: TeardownErrorKind
    detail: str = ""


# CAMERA ERROR CLASSIFICATION


# Names used by browser media APIs and camera SDKs
_NAME_TO_REASON: Dict[str, ScanErrorReason] = {
    "NotAllowedError": ScanErrorReason.PERMISSION_DENIED,
    "SecurityError": ScanErrorReason.PERMISSION_DENIED,
    "NotFoundError": ScanErrorReason.DEVICE_NOT_FOUND,
    "DevicesNotFoundError": ScanErrorReason.DEVICE_NOT_FOUND,
    "NotReadableError": ScanErrorReason.DEVICE_BUSY,
    "TrackStartError": ScanErrorReason.DEVICE_BUSY,
    "OverconstrainedError": ScanErrorReason.UNSUPPORTED_CONSTRAINTS,
    "ConstraintNotSatisfiedError": ScanErrorReason.UNSUPPORTED_CONSTRAINTS,
}


def classify_camera_error(exc: BaseException) -> ScanErrorReason:
    """
    Map a camera acquisition exception to a taxonomy reason.

    Matching is structural: an explicit reason on our own exceptions, then
    the exception's `name` attribute or class name, then builtin types.
    Anything unrecognised is treated as the device being unavailable.
    """
    if isinstance(exc, ScannerError):
        return exc.reason

    name = getattr(exc, "name", None) or type(exc).__name__
    if name in _NAME_TO_REASON:
        return _NAME_TO_REASON[name]

    if isinstance(exc, PermissionError):
        return ScanErrorReason.PERMISSION_DENIED
    if isinstance(exc, FileNotFoundError):
        return ScanErrorReason.DEVICE_NOT_FOUND
    if isinstance(exc, ValueError):
        return ScanErrorReason.UNSUPPORTED_CONSTRAINTS

    return ScanErrorReason.DEVICE_BUSY
