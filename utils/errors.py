"""
Pipeline error taxonomy.

Every failure of an adaptation run surfaces as exactly one of:
- ContextError: the target (or identity anchor) could not be turned into image bytes
- AnalysisError: the Director call failed or returned a non-conforming payload
- SynthesisError: the Artist call returned no usable image

Each carries an ErrorKind. QUOTA_EXCEEDED, SERVICE_UNAVAILABLE and
MISSING_API_KEY are recoverable: the caller may retry after an out-of-band
action (configuring or switching the API key, waiting). The pipeline itself never retries.
"""

from enum import Enum
from typing import Optional, Type


class ErrorKind(str, Enum):
    GENERIC = "generic"
    QUOTA_EXCEEDED = "quota_exceeded"
    SERVICE_UNAVAILABLE = "service_unavailable"
    MODEL_NOT_FOUND = "model_not_found"
    MISSING_API_KEY = "missing_api_key"


RECOVERABLE_KINDS = (ErrorKind.QUOTA_EXCEEDED, ErrorKind.SERVICE_UNAVAILABLE, ErrorKind.MISSING_API_KEY)

STAGE_LABELS = {
    "context": "Context assembly",
    "analysis": "Director analysis",
    "synthesis": "Artist image synthesis",
}

KIND_ACTIONS = {
    ErrorKind.QUOTA_EXCEEDED: (
        "API quota exhausted. Check your billing plan or select a different API key, then try again."
    ),
    ErrorKind.SERVICE_UNAVAILABLE: (
        "The generative service is unavailable or timed out. Wait a moment and try again."
    ),
    ErrorKind.MODEL_NOT_FOUND: (
        "Model not found or the Generative Language API is disabled. "
        "Enable it in the Google Cloud Console or pick another model in settings."
    ),
    ErrorKind.MISSING_API_KEY: (
        "No valid Google API key. Set GOOGLE_API_KEY (or GEMINI_API_KEY) or select another key, then try again."
    ),
}


class FrameforgeError(Exception):
    """Base class for all pipeline failures."""

    stage = "pipeline"

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.GENERIC,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.cause = cause

    @property
    def recoverable(self) -> bool:
        return self.kind in RECOVERABLE_KINDS

    def user_message(self) -> str:
        """One human-readable line: which stage failed and, if known, what fixes it."""
        label = STAGE_LABELS.get(self.stage, self.stage.capitalize())
        action = KIND_ACTIONS.get(self.kind)
        if action:
            return f"{label} failed: {action}"
        return f"{label} failed: {self.message}"

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "kind": self.kind.value,
            "recoverable": self.recoverable,
            "message": self.message,
            "user_message": self.user_message(),
        }


class ContextError(FrameforgeError):
    stage = "context"


class AnalysisError(FrameforgeError):
    stage = "analysis"


class SynthesisError(FrameforgeError):
    stage = "synthesis"


_API_KEY_MARKERS = ("API key not configured", "API_KEY_INVALID", "API key not valid")
_QUOTA_MARKERS = ("RESOURCE_EXHAUSTED", "429", "quota")
_NOT_FOUND_MARKERS = ("NOT_FOUND", "404")
_UNAVAILABLE_MARKERS = (
    "UNAVAILABLE",
    "503",
    "DEADLINE_EXCEEDED",
    "504",
    "timed out",
    "timeout",
)


def classify_kind(exc: BaseException) -> ErrorKind:
    """Map a raw SDK/transport exception onto an ErrorKind by its message."""
    if isinstance(exc, FrameforgeError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return ErrorKind.SERVICE_UNAVAILABLE
    text = str(exc)
    lowered = text.lower()
    if any(m in text for m in _API_KEY_MARKERS):
        return ErrorKind.MISSING_API_KEY
    if any(m in text or m.lower() in lowered for m in _QUOTA_MARKERS):
        return ErrorKind.QUOTA_EXCEEDED
    if any(m in text for m in _NOT_FOUND_MARKERS):
        return ErrorKind.MODEL_NOT_FOUND
    if any(m in text or m.lower() in lowered for m in _UNAVAILABLE_MARKERS):
        return ErrorKind.SERVICE_UNAVAILABLE
    return ErrorKind.GENERIC


def classify_api_error(
    exc: BaseException,
    error_cls: Type[FrameforgeError],
    message: Optional[str] = None,
) -> FrameforgeError:
    """Wrap a raw exception in the stage error class, keeping an existing taxonomy error as is."""
    if isinstance(exc, FrameforgeError):
        return exc
    return error_cls(message or f"{type(exc).__name__}: {exc}", kind=classify_kind(exc), cause=exc)
