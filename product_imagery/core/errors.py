"""Typed errors raised by the product image pipeline."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ImagePipelineError(Exception):
    """Base error carrying an HTTP-style status and a machine readable code."""

    status_code: int = 500
    code: str = "IMAGE_PIPELINE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        detail: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "code": self.code,
            "detail": self.detail,
        }


class MissingApiKeyError(ImagePipelineError):
    status_code = 503
    code = "MISSING_API_KEY"


class MissingSourceImageError(ImagePipelineError):
    status_code = 400
    code = "MISSING_SOURCE_IMAGES"


class SourceImageFetchError(ImagePipelineError):
    """A single reference image could not be downloaded."""

    status_code = 422
    code = "SOURCE_IMAGE_FETCH_FAILED"

    def __init__(
        self,
        message: str,
        *,
        url: str,
        upstream_status: Optional[int] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message, status_code=status_code, code=code)
        self.url = url
        self.upstream_status = upstream_status


class SourceImageUnusableError(ImagePipelineError):
    status_code = 422
    code = "SOURCE_IMAGES_UNUSABLE"

    def __init__(self, message: str, *, failures: List[Dict[str, Any]]) -> None:
        not_found = any(item.get("status") in (403, 404) for item in failures)
        super().__init__(
            message,
            status_code=400 if not_found else 422,
            detail=failures,
        )
        self.failures = failures


class ImageDecodeError(ImagePipelineError):
    status_code = 422
    code = "IMAGE_DECODE_FAILED"


class ModelCallError(ImagePipelineError):
    """One generation call failed; classified by the orchestrator."""

    status_code = 502
    code = "MODEL_CALL_FAILED"

    def __init__(
        self,
        message: str,
        *,
        http_status: Optional[int] = None,
        api_code: Optional[str] = None,
    ) -> None:
        super().__init__(message, status_code=http_status or 502, code=api_code)
        self.http_status = http_status
        self.api_code = api_code


class _AttemptTrailError(ImagePipelineError):
    def __init__(self, message: str, *, attempts: List[Dict[str, Any]], **kwargs: Any) -> None:
        super().__init__(message, detail={"attempts": attempts}, **kwargs)
        self.attempts = attempts


class QuotaExhaustedError(_AttemptTrailError):
    status_code = 429
    code = "RESOURCE_EXHAUSTED"


class NoImageOutputError(_AttemptTrailError):
    status_code = 422
    code = "NO_IMAGE_DATA"


class GenerationFailedError(_AttemptTrailError):
    status_code = 502
    code = "GENERATION_FAILED"


class GenerationAbortedError(_AttemptTrailError):
    """A non-retryable model error stopped the candidate loop."""

    status_code = 502
    code = "GENERATION_ABORTED"


class TransparencyValidationError(ImagePipelineError):
    status_code = 422
    code = "TRANSPARENCY_VALIDATION_FAILED"


__all__ = [
    "ImagePipelineError",
    "MissingApiKeyError",
    "MissingSourceImageError",
    "SourceImageFetchError",
    "SourceImageUnusableError",
    "ImageDecodeError",
    "ModelCallError",
    "QuotaExhaustedError",
    "NoImageOutputError",
    "GenerationFailedError",
    "GenerationAbortedError",
    "TransparencyValidationError",
]
