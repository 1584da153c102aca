"""Model fallback loop for Gemini image generation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from product_imagery.config import (
    GEMINI_IMAGE_FALLBACK_MODELS,
    GEMINI_IMAGE_MODEL,
    logger,
)
from product_imagery.core.errors import (
    GenerationAbortedError,
    GenerationFailedError,
    ImagePipelineError,
    ModelCallError,
    NoImageOutputError,
    QuotaExhaustedError,
)
from product_imagery.core.gemini import GeneratedImage, GeminiImageClient
from product_imagery.core.imaging import ImagePayload
from product_imagery.core.model_errors import AttemptOutcome, ModelAttempt, classify_model_error
from product_imagery.services.cascade import CascadeResult, TransparencyCascade

DEFAULT_IMAGE_MODELS: Tuple[str, ...] = (
    "gemini-3-pro-image-preview",
    "nano-banana-pro-preview",
    "gemini-2.5-flash-image",
)

QUOTA_MESSAGE = (
    "Gemini image generation quota is exhausted for this project/key. Enable billing "
    "or request image-model quota in Google AI Studio/Google Cloud."
)
SAFETY_MESSAGE = (
    "Gemini blocked this generation for safety policies. Try a different base image angle, "
    "add a garment-only reference image, or adjust prompt to be less revealing."
)
NO_IMAGE_MESSAGE = (
    "Gemini could not return image output for these references. Try different base "
    "image(s) or add a cleaner garment reference."
)

CascadeFactory = Callable[[str], TransparencyCascade]


def _log(level: int, message: str, **context: Any) -> None:
    """Helper to emit structured logs with contextual metadata."""
    logger.log(level, "%s | context=%s", message, context)


def candidate_models(
    override: Optional[str] = GEMINI_IMAGE_MODEL,
    fallbacks: Iterable[str] = GEMINI_IMAGE_FALLBACK_MODELS,
    defaults: Iterable[str] = DEFAULT_IMAGE_MODELS,
) -> List[str]:
    """Override, then explicit fallbacks, then built-in defaults; trimmed and de-duplicated."""
    models: List[str] = []
    for name in [override or "", *fallbacks, *defaults]:
        cleaned = (name or "").strip()
        if cleaned and cleaned not in models:
            models.append(cleaned)
    return models


@dataclass(frozen=True)
class OrchestrationResult:
    image: ImagePayload
    model_used: str
    attempts: Tuple[ModelAttempt, ...]
    text_notes: Tuple[str, ...]
    cascade: CascadeResult

    @property
    def revised_prompt(self) -> Optional[str]:
        notes = " | ".join(note for note in self.text_notes if note)
        return notes or None


def _attempt_detail(attempts: Sequence[ModelAttempt]) -> List[Dict[str, Any]]:
    return [attempt.to_dict() for attempt in attempts]


def _attempt_summary(attempts: Sequence[ModelAttempt]) -> str:
    return " | ".join(f"{attempt.label}: {attempt.error}" for attempt in attempts)


def aggregate_failure(attempts: Sequence[ModelAttempt]) -> ImagePipelineError:
    """
    Build the error reported once every candidate has been tried.

    Quota wins over every other signal; no-image and safety outcomes come next.
    """
    outcomes = {attempt.outcome for attempt in attempts}
    detail = _attempt_detail(attempts)

    if AttemptOutcome.QUOTA in outcomes:
        return QuotaExhaustedError(QUOTA_MESSAGE, attempts=detail)

    if AttemptOutcome.SAFETY_BLOCK in outcomes:
        return NoImageOutputError(SAFETY_MESSAGE, attempts=detail, code="IMAGE_SAFETY_BLOCK")

    if AttemptOutcome.NO_IMAGE_DATA in outcomes:
        return NoImageOutputError(NO_IMAGE_MESSAGE, attempts=detail)

    if not attempts:
        return GenerationFailedError(
            "No compatible Gemini image model configured", attempts=detail
        )

    return GenerationFailedError(
        f"No Gemini image model succeeded. Attempts: {_attempt_summary(attempts)}",
        attempts=detail,
    )


class ModelFallbackOrchestrator:
    """
    Try each candidate model in order until one returns an image.

    Every successful generation goes through the transparency cascade of the
    same model before the run is declared successful.
    """

    def __init__(
        self,
        client: GeminiImageClient,
        cascade_factory: CascadeFactory,
        models: Optional[Sequence[str]] = None,
    ) -> None:
        self.client = client
        self.cascade_factory = cascade_factory
        self.models = list(models) if models is not None else candidate_models()

    async def _attempt(
        self,
        model: str,
        prompt: str,
        sources: Sequence[ImagePayload],
        color_reference: Optional[ImagePayload],
        anchor: Optional[ImagePayload],
        reduced: bool,
    ) -> Tuple[ModelAttempt, Optional[GeneratedImage], Optional[ModelCallError]]:
        started = time.monotonic()
        try:
            generated = await self.client.generate(
                model, prompt, sources, color_reference=color_reference, anchor=anchor
            )
        except ModelCallError as exc:
            outcome = classify_model_error(exc.http_status, exc.message, exc.api_code)
            attempt = ModelAttempt(
                model=model,
                outcome=outcome,
                latency_ms=int((time.monotonic() - started) * 1000),
                error=exc.message,
                reference_count=len(sources),
                reduced_references=reduced,
                http_status=exc.http_status,
            )
            _log(
                logging.WARNING,
                "model_attempt_failed",
                model=model,
                outcome=outcome.value,
                status=exc.http_status,
                error=exc.message,
                reduced_references=reduced,
            )
            return attempt, None, exc

        attempt = ModelAttempt(
            model=model,
            outcome=AttemptOutcome.SUCCESS,
            latency_ms=int((time.monotonic() - started) * 1000),
            reference_count=len(sources),
            reduced_references=reduced,
        )
        _log(logging.INFO, "model_attempt_succeeded", model=model, reduced_references=reduced)
        return attempt, generated, None

    async def run(
        self,
        prompt: str,
        sources: Sequence[ImagePayload],
        color_reference: Optional[ImagePayload] = None,
        anchor: Optional[ImagePayload] = None,
    ) -> OrchestrationResult:
        """
        Generate one image, falling back across candidate models.

        Raises:
            GenerationAbortedError: On a non-retryable model error
            QuotaExhaustedError: All candidates failed and one hit quota
            NoImageOutputError: All candidates failed with no-image or safety outcomes
            GenerationFailedError: All candidates failed otherwise, or none are configured
        """
        attempts: Tuple[ModelAttempt, ...] = ()

        for model in self.models:
            attempt, generated, error = await self._attempt(
                model, prompt, sources, color_reference, anchor, reduced=False
            )
            attempts = attempts + (attempt,)

            if attempt.outcome == AttemptOutcome.PAYLOAD_TOO_LARGE and len(sources) > 1:
                # The canonical reference is always kept.
                attempt, generated, error = await self._attempt(
                    model, prompt, sources[:1], color_reference, anchor, reduced=True
                )
                attempts = attempts + (attempt,)

            if generated is not None:
                cascade = await self.cascade_factory(model).run(generated.image)
                return OrchestrationResult(
                    image=cascade.image,
                    model_used=model,
                    attempts=attempts,
                    text_notes=tuple(generated.text_notes) + cascade.text_notes,
                    cascade=cascade,
                )

            if attempt.outcome == AttemptOutcome.FATAL:
                status = error.http_status if error and error.http_status else 502
                raise GenerationAbortedError(
                    attempt.error or "Gemini image generation failed",
                    attempts=_attempt_detail(attempts),
                    status_code=status,
                )

        raise aggregate_failure(attempts)


__all__ = [
    "DEFAULT_IMAGE_MODELS",
    "ModelFallbackOrchestrator",
    "OrchestrationResult",
    "aggregate_failure",
    "candidate_models",
]
