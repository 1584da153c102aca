"""Direct REST client for Gemini image generation (generateContent)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx

from product_imagery.config import (
    GEMINI_API_BASE_URL,
    GEMINI_API_KEY,
    GEMINI_IMAGE_ASPECT_RATIO,
    GEMINI_IMAGE_SIZE,
    GEMINI_REQUEST_TIMEOUT_SECONDS,
    logger,
)
from product_imagery.core.errors import ModelCallError
from product_imagery.core.imaging import ImagePayload
from product_imagery.core.prompt_templates import (
    ANCHOR_REFERENCE_NOTE,
    COLOR_REFERENCE_NOTE,
)

logger.info(f"Gemini module initialized with API key: {bool(GEMINI_API_KEY)}")


@dataclass(frozen=True)
class GeneratedImage:
    image: ImagePayload
    text_notes: List[str] = field(default_factory=list)


def build_image_config(
    model: str,
    aspect_ratio: str = GEMINI_IMAGE_ASPECT_RATIO,
    image_size: str = GEMINI_IMAGE_SIZE,
) -> Dict[str, Any]:
    config: Dict[str, Any] = {"aspectRatio": aspect_ratio}
    # Only the pro image models accept an explicit resolution hint.
    if "pro" in model:
        config["imageSize"] = image_size
    return config


def _inline_part(image: ImagePayload) -> Dict[str, Any]:
    return {"inline_data": {"mime_type": image.mime_type, "data": image.base64}}


def build_content_parts(
    prompt: str,
    sources: Sequence[ImagePayload],
    color_reference: Optional[ImagePayload] = None,
    anchor: Optional[ImagePayload] = None,
) -> List[Dict[str, Any]]:
    """Prompt first, then references; optional images are prefixed by a note."""
    parts: List[Dict[str, Any]] = [{"text": prompt}]
    parts.extend(_inline_part(source) for source in sources)
    if color_reference is not None:
        parts.append({"text": COLOR_REFERENCE_NOTE})
        parts.append(_inline_part(color_reference))
    if anchor is not None:
        parts.append({"text": ANCHOR_REFERENCE_NOTE})
        parts.append(_inline_part(anchor))
    return parts


def _extract_inline_image(part: Dict[str, Any]) -> Optional[ImagePayload]:
    # Check both camelCase and snake_case formats
    if "inlineData" in part and part["inlineData"].get("data"):
        inline = part["inlineData"]
        return ImagePayload.from_base64(inline["data"], inline.get("mimeType") or "image/png")
    if "inline_data" in part and part["inline_data"].get("data"):
        inline = part["inline_data"]
        return ImagePayload.from_base64(inline["data"], inline.get("mime_type") or "image/png")
    return None


def parse_generate_response(payload: Any) -> GeneratedImage:
    """
    Extract the first inline image from a generateContent response.

    Raises:
        ModelCallError: For error payloads, or NO_IMAGE_DATA when no image part exists
    """
    if not isinstance(payload, dict):
        raise ModelCallError("Gemini returned an empty response payload")

    error = payload.get("error")
    if isinstance(error, dict):
        code = error.get("code")
        raise ModelCallError(
            error.get("message") or "Gemini request failed",
            http_status=code if isinstance(code, int) else None,
            api_code=str(error.get("status") or code or "") or None,
        )

    candidates = payload.get("candidates") or []
    text_notes: List[str] = []
    for candidate in candidates:
        parts = (candidate.get("content") or {}).get("parts") or []
        for part in parts:
            if part.get("text"):
                text_notes.append(part["text"].strip())
            image = _extract_inline_image(part)
            if image is not None:
                return GeneratedImage(image=image, text_notes=text_notes)

    finish_reasons = [c.get("finishReason") for c in candidates if c.get("finishReason")]
    message = "Gemini did not return image data."
    if finish_reasons:
        message += f" finishReasons={','.join(finish_reasons)}"
    notes = " | ".join(note for note in text_notes if note)
    if notes:
        message += f" notes={notes}"
    raise ModelCallError(message, api_code="NO_IMAGE_DATA")


class GeminiImageClient:
    """Thin async wrapper around the generateContent endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = GEMINI_API_KEY,
        *,
        base_url: str = GEMINI_API_BASE_URL,
        timeout: float = GEMINI_REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def generate(
        self,
        model: str,
        prompt: str,
        sources: Sequence[ImagePayload],
        color_reference: Optional[ImagePayload] = None,
        anchor: Optional[ImagePayload] = None,
    ) -> GeneratedImage:
        """
        Run one image generation call.

        Args:
            model: Gemini model identifier
            prompt: Text prompt, sent as the first part
            sources: Garment references, canonical first
            color_reference: Optional color-only reference
            anchor: Optional previously generated variant

        Returns:
            GeneratedImage with the decoded image and any text notes

        Raises:
            ModelCallError: On HTTP errors, network failures, timeouts or missing image data
        """
        url = f"{self.base_url}/models/{quote(model, safe='')}:generateContent"
        gemini_payload = {
            "contents": [
                {"parts": build_content_parts(prompt, sources, color_reference, anchor)}
            ],
            "generationConfig": {
                "responseModalities": ["IMAGE"],
                "imageConfig": build_image_config(model),
            },
        }

        logger.info(
            f"Calling Gemini model {model} with {len(sources)} reference image(s)"
        )
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url,
                    json=gemini_payload,
                    headers={
                        "Content-Type": "application/json",
                        "x-goog-api-key": self.api_key or "",
                    },
                )
        except httpx.TimeoutException as exc:
            raise ModelCallError(f"Gemini request timed out after {self.timeout}s") from exc
        except httpx.RequestError as exc:
            raise ModelCallError(f"Network error calling Gemini API: {exc}") from exc

        try:
            parsed = response.json() if response.content else None
        except ValueError:
            parsed = None

        if not response.is_success:
            error = parsed.get("error") if isinstance(parsed, dict) else None
            message = (error or {}).get("message") or (
                f"Gemini request failed ({response.status_code})"
            )
            api_code = str((error or {}).get("status") or "") or None
            raise ModelCallError(
                message, http_status=response.status_code, api_code=api_code
            )

        return parse_generate_response(parsed)
