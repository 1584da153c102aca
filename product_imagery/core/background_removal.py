"""
Third-party background removal providers (remove.bg, Clipdrop).

Providers are called one at a time in the resolved priority order; the first
HTTP 200 wins. Every call is bounded by its own timeout and every outcome,
including skipped providers, is kept in the returned diagnostics.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

import httpx

from product_imagery.config import (
    BACKGROUND_REMOVAL_TIMEOUT_MS,
    CLIPDROP_TIMEOUT_MS,
    REMOVEBG_TIMEOUT_MS,
    logger,
)
from product_imagery.core.imaging import ImagePayload
from product_imagery.core.provider_secrets import (
    ENV_KEY_NAMES,
    ProviderSecretResolver,
    ProviderSecrets,
    normalize_provider_order,
)

ERROR_EXCERPT_CHARS = 280


@dataclass(frozen=True)
class ProviderEndpoint:
    provider: str
    label: str
    url: str
    key_header: str
    failure_code: str
    form_fields: Dict[str, str] = field(default_factory=dict)


PROVIDER_ENDPOINTS: Dict[str, ProviderEndpoint] = {
    "removebg": ProviderEndpoint(
        provider="removebg",
        label="remove.bg",
        url="https://api.remove.bg/v1.0/removebg",
        key_header="X-Api-Key",
        failure_code="REMOVEBG_FAILED",
        form_fields={"size": "auto", "format": "png"},
    ),
    "clipdrop": ProviderEndpoint(
        provider="clipdrop",
        label="Clipdrop remove-background",
        url="https://clipdrop-api.co/remove-background/v1",
        key_header="x-api-key",
        failure_code="CLIPDROP_REMOVAL_FAILED",
    ),
}


def default_timeouts() -> Dict[str, float]:
    """Per-provider timeout in seconds: max(provider value, shared base value)."""
    return {
        "removebg": max(REMOVEBG_TIMEOUT_MS, BACKGROUND_REMOVAL_TIMEOUT_MS) / 1000,
        "clipdrop": max(CLIPDROP_TIMEOUT_MS, BACKGROUND_REMOVAL_TIMEOUT_MS) / 1000,
    }


class ProviderRequestError(Exception):
    def __init__(self, message: str, *, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


@dataclass(frozen=True)
class BackgroundRemovalAttempt:
    provider: str
    ok: bool
    skipped: bool
    duration_ms: int
    status: Optional[int] = None
    code: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BackgroundRemovalDiagnostics:
    configured: bool
    provider_order: Tuple[str, ...]
    configured_providers: Tuple[str, ...]
    attempts: Tuple[BackgroundRemovalAttempt, ...] = ()
    applied: bool = False
    provider: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "configured": self.configured,
            "provider_order": list(self.provider_order),
            "configured_providers": list(self.configured_providers),
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "applied": self.applied,
            "provider": self.provider,
            "error": self.error,
        }


@dataclass(frozen=True)
class RemovalOutcome:
    image: Optional[ImagePayload]
    provider: Optional[str]
    diagnostics: BackgroundRemovalDiagnostics


def get_configuration(secrets: ProviderSecrets) -> Dict[str, Any]:
    configured = secrets.configured_providers
    return {
        "configured": bool(configured),
        "provider_order": list(secrets.provider_order),
        "configured_providers": list(configured),
    }


def summarize_failures(attempts: Iterable[BackgroundRemovalAttempt]) -> Optional[str]:
    failures = [item for item in attempts if not item.ok and not item.skipped]
    if not failures:
        return None
    return " | ".join(
        f"{item.provider}: {item.message or item.code or 'failed'}" for item in failures
    )


def _missing_key_attempt(provider: str) -> BackgroundRemovalAttempt:
    return BackgroundRemovalAttempt(
        provider=provider,
        ok=False,
        skipped=True,
        duration_ms=0,
        status=503,
        code=f"MISSING_{provider.upper()}_KEY",
        message=f"{ENV_KEY_NAMES[provider]} is not configured",
    )


class BackgroundRemovalRouter:
    """First-success-wins router over the configured removal providers."""

    def __init__(
        self,
        resolver: ProviderSecretResolver,
        *,
        timeouts: Optional[Dict[str, float]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.resolver = resolver
        self.timeouts = timeouts or default_timeouts()
        self._transport = transport

    async def get_configuration(self) -> Dict[str, Any]:
        return get_configuration(await self.resolver.resolve())

    async def remove_background(
        self,
        image: ImagePayload,
        provider_order: Optional[Iterable[str]] = None,
    ) -> RemovalOutcome:
        secrets = await self.resolver.resolve()
        order = (
            tuple(normalize_provider_order(provider_order))
            if provider_order is not None
            else secrets.provider_order
        )
        configured = secrets.configured_providers
        attempts: Tuple[BackgroundRemovalAttempt, ...] = ()

        for provider in order:
            api_key = secrets.api_key(provider)
            if not api_key:
                attempts = attempts + (_missing_key_attempt(provider),)
                continue

            started = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    self._call_provider(PROVIDER_ENDPOINTS[provider], image, api_key),
                    timeout=self.timeouts[provider],
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                timeout_ms = int(self.timeouts[provider] * 1000)
                attempt = BackgroundRemovalAttempt(
                    provider=provider,
                    ok=False,
                    skipped=False,
                    duration_ms=_elapsed_ms(started),
                    status=504,
                    code="PROVIDER_TIMEOUT",
                    message=f"Provider request timed out after {timeout_ms}ms",
                )
            except ProviderRequestError as exc:
                attempt = BackgroundRemovalAttempt(
                    provider=provider,
                    ok=False,
                    skipped=False,
                    duration_ms=_elapsed_ms(started),
                    status=exc.status,
                    code=exc.code,
                    message=exc.message,
                )
            except httpx.HTTPError as exc:
                attempt = BackgroundRemovalAttempt(
                    provider=provider,
                    ok=False,
                    skipped=False,
                    duration_ms=_elapsed_ms(started),
                    code=PROVIDER_ENDPOINTS[provider].failure_code,
                    message=str(exc) or "unknown provider error",
                )
            else:
                attempts = attempts + (
                    BackgroundRemovalAttempt(
                        provider=provider,
                        ok=True,
                        skipped=False,
                        duration_ms=_elapsed_ms(started),
                        status=200,
                    ),
                )
                logger.info(f"Background removed by provider {provider}")
                return RemovalOutcome(
                    image=result,
                    provider=provider,
                    diagnostics=BackgroundRemovalDiagnostics(
                        configured=bool(configured),
                        provider_order=order,
                        configured_providers=configured,
                        attempts=attempts,
                        applied=True,
                        provider=provider,
                    ),
                )

            logger.warning(
                f"Background removal provider {provider} failed: {attempt.message}"
            )
            attempts = attempts + (attempt,)

        return RemovalOutcome(
            image=None,
            provider=None,
            diagnostics=BackgroundRemovalDiagnostics(
                configured=bool(configured),
                provider_order=order,
                configured_providers=configured,
                attempts=attempts,
                applied=False,
                error=summarize_failures(attempts),
            ),
        )

    async def _call_provider(
        self,
        endpoint: ProviderEndpoint,
        image: ImagePayload,
        api_key: str,
    ) -> ImagePayload:
        files = {"image_file": ("input.png", image.data, image.mime_type or "image/png")}
        async with httpx.AsyncClient(transport=self._transport, timeout=None) as client:
            response = await client.post(
                endpoint.url,
                headers={endpoint.key_header: api_key},
                data=endpoint.form_fields or None,
                files=files,
            )

        content_type = response.headers.get("content-type") or "image/png"
        if response.status_code != 200:
            excerpt = response.text[:ERROR_EXCERPT_CHARS] if response.content else ""
            message = f"{endpoint.label} failed ({response.status_code})"
            if excerpt:
                message = f"{message}: {excerpt}"
            raise ProviderRequestError(
                message, status=response.status_code, code=endpoint.failure_code
            )

        mime_type = "image/png" if "png" in content_type else content_type
        return ImagePayload(data=response.content, mime_type=mime_type)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


__all__ = [
    "BackgroundRemovalAttempt",
    "BackgroundRemovalDiagnostics",
    "BackgroundRemovalRouter",
    "RemovalOutcome",
    "default_timeouts",
    "get_configuration",
]
