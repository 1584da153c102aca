"""Reference image downloads with count and byte budgets."""

from __future__ import annotations

import base64
import hashlib
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import httpx

from product_imagery.config import (
    MAX_REFERENCE_IMAGES,
    MAX_TOTAL_REFERENCE_BYTES,
    logger,
)
from product_imagery.core.errors import (
    MissingSourceImageError,
    SourceImageFetchError,
    SourceImageUnusableError,
)
from product_imagery.core.imaging import SourceImagePayload, sniff_mime_type

FETCH_TIMEOUT_SECONDS = 20.0
MAX_SOURCE_BYTES = 50 * 1024 * 1024

REQUEST_HEADERS = {
    "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
}


def is_http_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def sanitize_image_url(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or not is_http_url(trimmed):
        return None
    return trimmed


def normalize_source_urls(
    urls: Iterable[Any],
    max_count: int = MAX_REFERENCE_IMAGES,
) -> List[str]:
    """Trim, drop invalid and duplicate URLs, keep at most ``max_count``."""
    normalized: List[str] = []
    for item in urls:
        url = sanitize_image_url(item)
        if url is None or url in normalized:
            continue
        normalized.append(url)
        if len(normalized) >= max_count:
            break
    return normalized


async def fetch_source_image(
    url: str,
    *,
    timeout: float = FETCH_TIMEOUT_SECONDS,
    max_bytes: int = MAX_SOURCE_BYTES,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SourceImagePayload:
    """
    Download one reference image.

    Args:
        url: HTTP or HTTPS image URL
        timeout: Per-call timeout in seconds
        max_bytes: Largest accepted body
        transport: Optional httpx transport override

    Returns:
        SourceImagePayload with base64 body, sniffed MIME type and sha256

    Raises:
        SourceImageFetchError: On non-2xx status, empty or oversized body, timeout
            or network failure
    """
    if not is_http_url(url):
        raise SourceImageFetchError(
            "Only HTTP/HTTPS image URLs are supported", url=url, status_code=400
        )

    try:
        async with httpx.AsyncClient(
            timeout=timeout, transport=transport, follow_redirects=True
        ) as client:
            response = await client.get(url, headers=REQUEST_HEADERS)
    except httpx.TimeoutException as exc:
        raise SourceImageFetchError(
            "Timed out while fetching source image",
            url=url,
            status_code=504,
            code="IMAGE_FETCH_TIMEOUT",
        ) from exc
    except httpx.RequestError as exc:
        raise SourceImageFetchError(
            f"Network error fetching source image: {exc}", url=url
        ) from exc

    if not response.is_success:
        raise SourceImageFetchError(
            f"Failed to fetch source image ({response.status_code})",
            url=url,
            upstream_status=response.status_code,
            status_code=400 if response.status_code == 404 else 422,
        )

    data = response.content
    if not data:
        raise SourceImageFetchError(
            "Source image is empty", url=url, status_code=422, code="IMAGE_EMPTY"
        )
    if len(data) > max_bytes:
        raise SourceImageFetchError(
            "Source image is too large",
            url=url,
            status_code=413,
            code="IMAGE_TOO_LARGE",
        )

    return SourceImagePayload(
        url=url,
        data=data,
        base64=base64.b64encode(data).decode("utf-8"),
        mime_type=sniff_mime_type(data, response.headers.get("content-type")),
        sha256=hashlib.sha256(data).hexdigest(),
    )


async def fetch_source_images(
    urls: List[str],
    *,
    max_total_bytes: int = MAX_TOTAL_REFERENCE_BYTES,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[SourceImagePayload]:
    """
    Fetch references in order. The first successful image is always kept;
    later ones are skipped when they would exceed ``max_total_bytes``.
    """
    if not urls:
        raise MissingSourceImageError("At least one source image is required")

    payloads: List[SourceImagePayload] = []
    failures: List[Dict[str, Any]] = []
    total_bytes = 0

    for url in urls:
        try:
            payload = await fetch_source_image(url, transport=transport)
        except SourceImageFetchError as exc:
            logger.warning(f"Skipping source image {url}: {exc.message}")
            failures.append(
                {"url": url, "message": exc.message, "status": exc.upstream_status}
            )
            continue

        if payloads and total_bytes + len(payload.data) > max_total_bytes:
            logger.info(
                f"Skipping source image {url}: reference byte budget of {max_total_bytes} reached"
            )
            continue

        payloads.append(payload)
        total_bytes += len(payload.data)

    if not payloads:
        detail = " | ".join(f"{item['url']}: {item['message']}" for item in failures)
        raise SourceImageUnusableError(
            "None of the selected source images could be used. "
            + (detail or "No valid image references available."),
            failures=failures,
        )

    return payloads
