"""Classification of image-model call failures."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    QUOTA = "quota"
    NOT_FOUND = "not_found"
    NO_IMAGE_DATA = "no_image_data"
    SAFETY_BLOCK = "safety_block"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_OUTCOMES


RETRYABLE_OUTCOMES = frozenset(
    {
        AttemptOutcome.QUOTA,
        AttemptOutcome.NOT_FOUND,
        AttemptOutcome.NO_IMAGE_DATA,
        AttemptOutcome.SAFETY_BLOCK,
        AttemptOutcome.TRANSIENT,
    }
)

_PAYLOAD_MARKERS = ("payload", "too large", "request size", "request payload")
_SAFETY_MARKERS = ("image_safety", "safety", "blocked")
_RETRYABLE_400_MARKERS = (
    "does not support the requested response modalities",
    "unable to process input image",
)


def classify_model_error(
    status: Optional[int],
    message: Optional[str] = None,
    code: Optional[str] = None,
) -> AttemptOutcome:
    """
    Map an HTTP status, error message and API code to an attempt outcome.

    Rules are checked in order; the first match wins. A missing status means
    the call never got a response (network error or timeout).
    """
    text = (message or "").lower()
    api_code = (code or "").lower()

    if status == 413:
        return AttemptOutcome.PAYLOAD_TOO_LARGE

    if (
        status == 429
        or "resource_exhausted" in api_code
        or "quota" in api_code
        or "quota" in text
        or "rate limit" in text
    ):
        return AttemptOutcome.QUOTA

    if status == 404 or "not_found" in api_code or ("model" in text and "not found" in text):
        return AttemptOutcome.NOT_FOUND

    if "no_image_data" in api_code or "did not return image data" in text:
        if any(marker in text for marker in _SAFETY_MARKERS):
            return AttemptOutcome.SAFETY_BLOCK
        return AttemptOutcome.NO_IMAGE_DATA

    # Safety verdicts arrive in the payload or as a 400; a "blocked" 401/403 is an access error.
    if status in (None, 400) and any(marker in text for marker in _SAFETY_MARKERS):
        return AttemptOutcome.SAFETY_BLOCK

    if status == 400 and any(marker in text for marker in _PAYLOAD_MARKERS):
        return AttemptOutcome.PAYLOAD_TOO_LARGE

    if (
        status is None
        or status in (408, 409, 425)
        or 500 <= status <= 599
        or (status == 400 and any(marker in text for marker in _RETRYABLE_400_MARKERS))
        or "temporarily unavailable" in text
    ):
        return AttemptOutcome.TRANSIENT

    return AttemptOutcome.FATAL


@dataclass(frozen=True)
class ModelAttempt:
    """One generation call against one model. Never mutated after creation."""

    model: str
    outcome: AttemptOutcome
    latency_ms: int
    error: Optional[str] = None
    reference_count: int = 1
    reduced_references: bool = False
    http_status: Optional[int] = None

    @property
    def label(self) -> str:
        return f"{self.model} (single-fallback)" if self.reduced_references else self.model

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data
