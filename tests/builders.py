"""Synthetic images, fakes and transports shared by the test modules."""

import base64
import io
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import numpy as np
from PIL import Image

from product_imagery.core.errors import ModelCallError
from product_imagery.core.gemini import GeneratedImage
from product_imagery.core.imaging import ImagePayload

BACKDROP = (245, 245, 245)
GARMENT = (40, 40, 120)


def _png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def cutout_png(size: int = 64) -> bytes:
    """Centered opaque garment on a fully transparent canvas."""
    rgba = np.zeros((size, size, 4), dtype=np.uint8)
    lo, hi = size // 4, size - size // 4
    rgba[lo:hi, lo:hi] = (*GARMENT, 255)
    return _png(Image.fromarray(rgba))


def studio_png(size: int = 64, mode: str = "RGB") -> bytes:
    """Centered garment on a flat light backdrop, no transparency."""
    rgb = np.full((size, size, 3), BACKDROP, dtype=np.uint8)
    lo, hi = size // 4, size - size // 4
    rgb[lo:hi, lo:hi] = GARMENT
    return _png(Image.fromarray(rgb).convert(mode))


def noise_png(size: int = 64, seed: int = 3) -> bytes:
    rng = np.random.default_rng(seed)
    rgb = rng.integers(0, 256, size=(size, size, 3), dtype=np.uint8)
    return _png(Image.fromarray(rgb))


def rgba_png(alpha: int, size: int = 64) -> bytes:
    rgba = np.zeros((size, size, 4), dtype=np.uint8)
    rgba[:, :, :3] = GARMENT
    rgba[:, :, 3] = alpha
    return _png(Image.fromarray(rgba))


def payload(data: bytes, mime_type: str = "image/png") -> ImagePayload:
    return ImagePayload(data=data, mime_type=mime_type)


def generated(data: bytes, *notes: str) -> GeneratedImage:
    return GeneratedImage(image=payload(data), text_notes=list(notes))


def gemini_image_response(data: bytes, *notes: str) -> Dict[str, Any]:
    parts: List[Dict[str, Any]] = [{"text": note} for note in notes]
    parts.append(
        {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(data).decode()}}
    )
    return {"candidates": [{"content": {"parts": parts}, "finishReason": "STOP"}]}


def request_json(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content.decode("utf-8"))


class ScriptedGemini:
    """
    Stand-in for GeminiImageClient.
    ``script`` maps a model id to the results it returns, in call order.
    """

    def __init__(self, script: Dict[str, List[Any]], configured: bool = True):
        self.script = {model: list(results) for model, results in script.items()}
        self.configured = configured
        self.calls: List[Dict[str, Any]] = []

    async def generate(
        self,
        model: str,
        prompt: str,
        sources,
        color_reference: Optional[ImagePayload] = None,
        anchor: Optional[ImagePayload] = None,
    ) -> GeneratedImage:
        self.calls.append(
            {
                "model": model,
                "prompt": prompt,
                "sources": list(sources),
                "color_reference": color_reference,
                "anchor": anchor,
            }
        )
        results = self.script.get(model) or []
        if not results:
            raise ModelCallError(f"models/{model} is not found", http_status=404)
        result = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(result, Exception):
            raise result
        return result


class MemoryStore:
    """In-memory settings store with the upsert semantics of the Supabase one."""

    def __init__(self, values: Optional[Dict[str, Any]] = None, fail: bool = False):
        self.values: Dict[str, Any] = dict(values or {})
        self.fail = fail
        self.reads = 0
        self.writes: List[Dict[str, Any]] = []

    async def read(self) -> Dict[str, Any]:
        from product_imagery.core.settings_store import SecretStoreUnavailableError

        self.reads += 1
        if self.fail:
            raise SecretStoreUnavailableError("connection refused")
        return dict(self.values)

    async def upsert(self, values: Dict[str, Any]) -> Dict[str, Any]:
        self.writes.append(dict(values))
        merged = {**self.values, **values}
        self.values = {name: value for name, value in merged.items() if value is not None}
        return dict(self.values)


def image_server(routes: Dict[str, Any]) -> httpx.MockTransport:
    """
    Serve fixed responses by URL path. A bytes value is a 200 PNG body, an
    int is a bare status code.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        body = routes.get(request.url.path)
        if body is None:
            return httpx.Response(404, text="missing")
        if isinstance(body, int):
            return httpx.Response(body)
        return httpx.Response(200, content=body, headers={"content-type": "image/png"})

    return httpx.MockTransport(handler)


def recording_transport(
    respond: Callable[[httpx.Request], httpx.Response],
    seen: List[httpx.Request],
) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return respond(request)

    return httpx.MockTransport(handler)
