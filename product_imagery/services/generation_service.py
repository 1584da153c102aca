"""Product image pipeline: generation, multi-angle variants and HD enhancement."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

import httpx

from product_imagery.config import (
    GEMINI_IMAGE_FALLBACK_MODELS,
    GEMINI_IMAGE_MODEL,
    LOCAL_CUTOUT_ENABLED,
    OUTPUT_MIN_LONG_EDGE,
    SUPABASE_SERVICE_KEY,
    SUPABASE_URL,
    TRANSPARENCY_PASS_ENABLED,
    UPSCALE_ENABLED,
    logger,
)
from product_imagery.core.background_removal import (
    BackgroundRemovalDiagnostics,
    BackgroundRemovalRouter,
)
from product_imagery.core.errors import (
    ImageDecodeError,
    ImagePipelineError,
    MissingApiKeyError,
    MissingSourceImageError,
    SourceImageFetchError,
    TransparencyValidationError,
)
from product_imagery.core.fetcher import (
    fetch_source_image,
    fetch_source_images,
    normalize_source_urls,
    sanitize_image_url,
)
from product_imagery.core.gemini import GeminiImageClient, GeneratedImage
from product_imagery.core.imaging import ImagePayload, open_image
from product_imagery.core.prompt_templates import (
    ModelProfile,
    ProductImageAngle,
    build_generation_prompt,
    infer_angle_from_url,
    pick_profile,
    variant_angle,
)
from product_imagery.core.provider_secrets import ProviderSecretResolver
from product_imagery.core.settings_store import SupabaseSettingsStore
from product_imagery.core.transparency import (
    DEFAULT_THRESHOLDS,
    TransparencyAnalysis,
    TransparencyThresholds,
    analyze_transparency,
)
from product_imagery.core.upscaler import (
    HdRenderResult,
    compute_target_dimensions,
    render_hd,
    upscale_to_minimum,
)
from product_imagery.services.cascade import TransparencyCascade
from product_imagery.services.orchestrator import (
    ModelFallbackOrchestrator,
    candidate_models,
)

MAX_TARGET_COLOR_CHARS = 60
MAX_CUSTOM_PROMPT_CHARS = 1200
MIN_VARIANTS = 1
MAX_VARIANTS = 8
ANGLE_MODES = ("auto", "front_only")

DEFAULT_SCALE_FACTOR = 4.0
MIN_SCALE_FACTOR = 2.0
MAX_SCALE_FACTOR = 4.0
DEFAULT_ENHANCE_LONG_EDGE = 4096
MIN_ENHANCE_LONG_EDGE = 1024
MAX_ENHANCE_LONG_EDGE = 8192


def _log(level: int, message: str, **context: Any) -> None:
    """Helper to emit structured logs with contextual metadata."""
    logger.log(level, "%s | context=%s", message, context)


# -------------------------
# Wiring
# -------------------------
@dataclass(slots=True)
class PipelineDependencies:
    """Collaborators shared by every pipeline run of one process."""

    client: GeminiImageClient
    resolver: ProviderSecretResolver
    router: BackgroundRemovalRouter
    models: Optional[List[str]] = None
    fetch_transport: Optional[httpx.AsyncBaseTransport] = None
    thresholds: TransparencyThresholds = DEFAULT_THRESHOLDS
    transparency_enabled: bool = TRANSPARENCY_PASS_ENABLED
    local_cutout_enabled: bool = LOCAL_CUTOUT_ENABLED
    upscale_enabled: bool = UPSCALE_ENABLED
    min_long_edge: int = OUTPUT_MIN_LONG_EDGE
    rng: Optional[random.Random] = None

    def cascade_for(self, model: str) -> TransparencyCascade:
        async def repair(image: ImagePayload, prompt: str) -> GeneratedImage:
            return await self.client.generate(model, prompt, [image])

        return TransparencyCascade(
            repair,
            self.router,
            enabled=self.transparency_enabled,
            local_cutout_enabled=self.local_cutout_enabled,
            thresholds=self.thresholds,
        )

    def candidate_models(self, override: Optional[str] = None) -> List[str]:
        if self.models is not None:
            return candidate_models(override, self.models, ())
        return candidate_models(
            override or GEMINI_IMAGE_MODEL, GEMINI_IMAGE_FALLBACK_MODELS
        )


def build_default_dependencies() -> PipelineDependencies:
    store = SupabaseSettingsStore() if SUPABASE_URL and SUPABASE_SERVICE_KEY else None
    resolver = ProviderSecretResolver(store)
    return PipelineDependencies(
        client=GeminiImageClient(),
        resolver=resolver,
        router=BackgroundRemovalRouter(resolver),
    )


# -------------------------
# Request / result types
# -------------------------
@dataclass(slots=True)
class GenerationRequest:
    source_urls: List[str]
    color_reference_url: Optional[str] = None
    anchor_url: Optional[str] = None
    target_angle: ProductImageAngle = ProductImageAngle.FRONT
    target_color: Optional[str] = None
    custom_prompt: Optional[str] = None
    preferred_profile_id: Optional[str] = None
    product_name: Optional[str] = None
    product_category: Optional[str] = None
    product_colors: List[str] = field(default_factory=list)
    model_override: Optional[str] = None


def infer_output_format(mime_type: str) -> str:
    if "webp" in mime_type:
        return "webp"
    if "jpeg" in mime_type or "jpg" in mime_type:
        return "jpeg"
    return "png"


def infer_quality(model_used: str) -> str:
    if "pro" in model_used:
        return "high"
    if "flash" in model_used:
        return "medium"
    return "auto"


def infer_input_fidelity(model_used: str) -> str:
    return "high" if "pro" in model_used else "low"


@dataclass(slots=True)
class ProductImageResult:
    image: ImagePayload
    model_used: str
    profile: ModelProfile
    target_angle: ProductImageAngle
    prompt: str
    revised_prompt: Optional[str]
    source_image_hashes: List[str]
    color_reference_image_hash: Optional[str]
    anchor_image_hash: Optional[str]
    diagnostics: Dict[str, Any]

    @property
    def source_image_hash(self) -> str:
        return self.source_image_hashes[0]

    @property
    def output_format(self) -> str:
        return infer_output_format(self.image.mime_type)

    @property
    def quality(self) -> str:
        return infer_quality(self.model_used)

    @property
    def input_fidelity(self) -> str:
        return infer_input_fidelity(self.model_used)

    def to_dict(self, include_image: bool = True) -> Dict[str, Any]:
        data = {
            "mime_type": self.image.mime_type,
            "model_used": self.model_used,
            "profile": self.profile.to_dict(),
            "target_angle": self.target_angle.value,
            "prompt": self.prompt,
            "revised_prompt": self.revised_prompt,
            "source_image_hash": self.source_image_hash,
            "source_image_hashes": self.source_image_hashes,
            "color_reference_image_hash": self.color_reference_image_hash,
            "anchor_image_hash": self.anchor_image_hash,
            "output_format": self.output_format,
            "quality": self.quality,
            "input_fidelity": self.input_fidelity,
            "diagnostics": self.diagnostics,
        }
        if include_image:
            data["image_base64"] = self.image.base64
        return data


# -------------------------
# Generation
# -------------------------
async def _fetch_optional_image(
    url: Optional[str],
    label: str,
    deps: PipelineDependencies,
) -> Optional[tuple]:
    cleaned = sanitize_image_url(url)
    if not cleaned:
        return None
    try:
        payload = await fetch_source_image(cleaned, transport=deps.fetch_transport)
    except SourceImageFetchError as exc:
        _log(logging.WARNING, "optional_image_dropped", label=label, url=cleaned, error=exc.message)
        return None
    return payload.as_payload(), payload.sha256


async def generate_product_image(
    request: GenerationRequest,
    deps: PipelineDependencies,
    *,
    profile: Optional[ModelProfile] = None,
    anchor_image: Optional[ImagePayload] = None,
) -> ProductImageResult:
    """
    Generate one transparent catalog image from garment references.

    Args:
        request: Source URLs, angle, color and prompt context
        deps: Shared pipeline collaborators
        profile: Persona to use instead of picking one
        anchor_image: In-memory consistency anchor; wins over request.anchor_url

    Returns:
        ProductImageResult with the final image and full diagnostics

    Raises:
        MissingApiKeyError: If no Gemini key is configured
        MissingSourceImageError: If no valid source URL was supplied
        SourceImageUnusableError: If none of the sources could be fetched
        ImagePipelineError: Aggregate or fatal model failures from the orchestrator
    """
    if not deps.client.configured:
        raise MissingApiKeyError("Gemini API key is not configured")

    source_urls = normalize_source_urls(request.source_urls)
    if not source_urls:
        raise MissingSourceImageError("At least one source image is required")

    started = time.time()
    sources = await fetch_source_images(source_urls, transport=deps.fetch_transport)

    color = await _fetch_optional_image(request.color_reference_url, "color_reference", deps)
    anchor_hash: Optional[str] = None
    if anchor_image is None:
        anchor = await _fetch_optional_image(request.anchor_url, "consistency_anchor", deps)
        if anchor:
            anchor_image, anchor_hash = anchor

    chosen = profile or pick_profile(request.preferred_profile_id, deps.rng)
    target_color = (request.target_color or "").strip()[:MAX_TARGET_COLOR_CHARS] or None
    custom_prompt = (request.custom_prompt or "").strip()[:MAX_CUSTOM_PROMPT_CHARS] or None
    prompt = build_generation_prompt(
        profile=chosen,
        angle=request.target_angle,
        reference_image_count=len(sources),
        has_color_reference=color is not None,
        has_anchor=anchor_image is not None,
        product_name=request.product_name,
        product_category=request.product_category,
        product_colors=request.product_colors,
        target_color=target_color,
        custom_prompt=custom_prompt,
    )

    _log(
        logging.INFO,
        "product_image_generation_started",
        sources=len(sources),
        profile=chosen.id,
        angle=request.target_angle.value,
        has_color_reference=color is not None,
        has_anchor=anchor_image is not None,
    )

    orchestrator = ModelFallbackOrchestrator(
        deps.client,
        deps.cascade_for,
        models=deps.candidate_models(request.model_override),
    )
    generated = await orchestrator.run(
        prompt,
        [source.as_payload() for source in sources],
        color_reference=color[0] if color else None,
        anchor=anchor_image,
    )

    final_image = generated.image
    upscaled = False
    if deps.upscale_enabled:
        try:
            upscale = await asyncio.to_thread(upscale_to_minimum, final_image, deps.min_long_edge)
            final_image, upscaled = upscale.image, upscale.upscaled
        except ImageDecodeError as exc:
            _log(logging.WARNING, "upscale_skipped", error=exc.message)

    cascade = generated.cascade
    diagnostics = {
        "attempts": [attempt.to_dict() for attempt in generated.attempts],
        "transparency": cascade.to_dict(),
        "background_removal": (
            cascade.background_removal.to_dict() if cascade.background_removal else None
        ),
        "upscaled": upscaled,
        "processing_time_ms": int((time.time() - started) * 1000),
    }

    _log(
        logging.INFO,
        "product_image_generation_complete",
        model=generated.model_used,
        transparency_stage=cascade.stage.value,
        attempts=len(generated.attempts),
        upscaled=upscaled,
    )

    return ProductImageResult(
        image=final_image,
        model_used=generated.model_used,
        profile=chosen,
        target_angle=request.target_angle,
        prompt=prompt,
        revised_prompt=generated.revised_prompt,
        source_image_hashes=[source.sha256 for source in sources],
        color_reference_image_hash=color[1] if color else None,
        anchor_image_hash=anchor_hash,
        diagnostics=diagnostics,
    )


# -------------------------
# Variants
# -------------------------
@dataclass(slots=True)
class VariantFailure:
    variant_index: int
    message: str
    status: Optional[int]
    code: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_index": self.variant_index,
            "message": self.message,
            "status": self.status,
            "code": self.code,
        }


@dataclass(slots=True)
class ProductImageVariants:
    variants: List[ProductImageResult]
    variant_indexes: List[int]
    failures: List[VariantFailure]
    profile: ModelProfile
    angle_mode: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile.to_dict(),
            "angle_mode": self.angle_mode,
            "variants": [
                {"variant_index": index, **result.to_dict()}
                for index, result in zip(self.variant_indexes, self.variants)
            ],
            "failures": [failure.to_dict() for failure in self.failures],
        }


def clamp_variant_count(value: Any) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        return MIN_VARIANTS
    return max(MIN_VARIANTS, min(MAX_VARIANTS, count))


def sanitize_angle_mode(value: Any) -> str:
    return "front_only" if value == "front_only" else "auto"


async def generate_product_image_variants(
    request: GenerationRequest,
    deps: PipelineDependencies,
    variant_count: int = 1,
    angle_mode: str = "auto",
) -> ProductImageVariants:
    """
    Generate several angles of the same product with one fixed persona.

    The first successful variant becomes the consistency anchor of the rest.
    Individual failures are recorded; if every variant fails the first
    failure is raised.
    """
    count = clamp_variant_count(variant_count)
    mode = sanitize_angle_mode(angle_mode)
    profile = pick_profile(request.preferred_profile_id, deps.rng)

    results: List[ProductImageResult] = []
    indexes: List[int] = []
    failures: List[VariantFailure] = []
    first_error: Optional[ImagePipelineError] = None
    anchor: Optional[ImagePayload] = None

    for index in range(count):
        variant_index = index + 1
        variant_request = replace(request, target_angle=variant_angle(index, count, mode))
        try:
            result = await generate_product_image(
                variant_request, deps, profile=profile, anchor_image=anchor
            )
        except ImagePipelineError as exc:
            _log(
                logging.WARNING,
                "variant_generation_failed",
                variant_index=variant_index,
                error=exc.message,
                status=exc.status_code,
                code=exc.code,
            )
            failures.append(
                VariantFailure(variant_index, exc.message, exc.status_code, exc.code)
            )
            first_error = first_error or exc
            continue

        results.append(result)
        indexes.append(variant_index)
        if anchor is None:
            anchor = result.image

    if not results and first_error is not None:
        raise first_error

    return ProductImageVariants(
        variants=results,
        variant_indexes=indexes,
        failures=failures,
        profile=profile,
        angle_mode=mode,
    )


# -------------------------
# HD enhancement
# -------------------------
@dataclass(slots=True)
class EnhanceFallback:
    """Regeneration settings used when an enhanced image loses its transparency."""

    enabled: bool = False
    source_urls: List[str] = field(default_factory=list)
    color_reference_url: Optional[str] = None
    preferred_profile_id: Optional[str] = None
    custom_prompt: Optional[str] = None
    target_color: Optional[str] = None
    target_angle: Optional[ProductImageAngle] = None
    product_name: Optional[str] = None
    product_category: Optional[str] = None
    product_colors: List[str] = field(default_factory=list)


@dataclass(slots=True)
class RepairAttempt:
    stage: str
    provider: Optional[str]
    applied: bool
    passed_validation: bool
    diagnostics: Optional[BackgroundRemovalDiagnostics]
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "provider": self.provider,
            "applied": self.applied,
            "passed_validation": self.passed_validation,
            "diagnostics": self.diagnostics.to_dict() if self.diagnostics else None,
            "error": self.error,
        }


@dataclass(slots=True)
class EnhanceResult:
    image: ImagePayload
    width: int
    height: int
    source_url: str
    source_mime_type: str
    scale_factor: float
    max_long_edge: int
    transparency_validated: bool
    transparency_analysis: Optional[TransparencyAnalysis]
    repair_attempts: List[RepairAttempt]
    repair_provider: Optional[str] = None
    repair_stage: Optional[str] = None
    fallback_regenerated: bool = False
    fallback_reason: Optional[str] = None
    fallback_model_used: Optional[str] = None
    fallback_target_angle: Optional[ProductImageAngle] = None

    def to_dict(self, include_image: bool = True) -> Dict[str, Any]:
        data = {
            "mime_type": self.image.mime_type,
            "width": self.width,
            "height": self.height,
            "source_image_url": self.source_url,
            "source_mime_type": self.source_mime_type,
            "scale_factor": self.scale_factor,
            "max_long_edge": self.max_long_edge,
            "transparency_validated": self.transparency_validated,
            "transparency_analysis": (
                self.transparency_analysis.to_dict() if self.transparency_analysis else None
            ),
            "transparency_repair_applied": self.repair_provider is not None,
            "transparency_repair_provider": self.repair_provider,
            "transparency_repair_stage": self.repair_stage,
            "transparency_repair_attempts": [item.to_dict() for item in self.repair_attempts],
            "fallback_regenerated": self.fallback_regenerated,
            "fallback_reason": self.fallback_reason,
            "fallback_model_used": self.fallback_model_used,
            "fallback_target_angle": (
                self.fallback_target_angle.value if self.fallback_target_angle else None
            ),
        }
        if include_image:
            data["image_base64"] = self.image.base64
        return data


def clamp_scale_factor(value: Any) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return DEFAULT_SCALE_FACTOR
    return min(MAX_SCALE_FACTOR, max(MIN_SCALE_FACTOR, float(value)))


def clamp_max_long_edge(value: Any) -> int:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return DEFAULT_ENHANCE_LONG_EDGE
    return min(MAX_ENHANCE_LONG_EDGE, max(MIN_ENHANCE_LONG_EDGE, int(round(value))))


def looks_like_generated_asset(url: str) -> bool:
    normalized = url.lower()
    return "/products/generated/" in normalized or "/products/enhanced/" in normalized


async def _provider_repair(
    hd: HdRenderResult,
    stage: str,
    deps: PipelineDependencies,
) -> tuple:
    """Return (RepairAttempt, repaired HD render or None, analysis or None)."""
    try:
        outcome = await deps.router.remove_background(hd.image)
        if outcome.image is None:
            attempt = RepairAttempt(stage, None, False, False, outcome.diagnostics)
            return attempt, None, None
        repaired = await asyncio.to_thread(render_hd, outcome.image, hd.width, hd.height)
        analysis = await asyncio.to_thread(analyze_transparency, repaired.image.data, deps.thresholds)
    except Exception as exc:
        _log(logging.WARNING, "transparency_repair_error", stage=stage, error=str(exc))
        return RepairAttempt(stage, None, False, False, None, error=str(exc)), None, None

    passed = analysis.has_usable_transparency
    attempt = RepairAttempt(stage, outcome.provider, True, passed, outcome.diagnostics)
    return attempt, repaired, analysis


async def enhance_image(
    image_url: str,
    deps: PipelineDependencies,
    scale_factor: Any = DEFAULT_SCALE_FACTOR,
    max_long_edge: Any = DEFAULT_ENHANCE_LONG_EDGE,
    fallback: Optional[EnhanceFallback] = None,
) -> EnhanceResult:
    """
    Re-render an image at HD resolution and keep its transparency intact.

    Transparency is validated when the URL points at a generated asset or a
    fallback is enabled. Failing images get a provider repair, then (when
    enabled) a full regeneration followed by one more provider repair.

    Raises:
        ImagePipelineError: 400 for an invalid URL
        SourceImageFetchError: If the image cannot be downloaded
        ImageDecodeError: If the image cannot be decoded
        TransparencyValidationError: 422 when transparency fails and fallback is
            disabled, 502 when the regenerated image still fails
    """
    url = sanitize_image_url(image_url)
    if not url:
        raise ImagePipelineError("A valid image URL is required", status_code=400, code="INVALID_IMAGE_URL")

    fallback = fallback or EnhanceFallback()
    scale = clamp_scale_factor(scale_factor)
    long_edge_cap = clamp_max_long_edge(max_long_edge)

    fetched = await fetch_source_image(url, transport=deps.fetch_transport)
    width, height = open_image(fetched.data).size
    target_width, target_height = compute_target_dimensions(width, height, scale, long_edge_cap)
    hd = await asyncio.to_thread(render_hd, fetched.as_payload(), target_width, target_height)

    expects_transparency = looks_like_generated_asset(url) or fallback.enabled
    analysis = None
    if expects_transparency:
        analysis = await asyncio.to_thread(analyze_transparency, hd.image.data, deps.thresholds)

    result = EnhanceResult(
        image=hd.image,
        width=hd.width,
        height=hd.height,
        source_url=url,
        source_mime_type=fetched.mime_type,
        scale_factor=scale,
        max_long_edge=long_edge_cap,
        transparency_validated=bool(analysis and analysis.has_usable_transparency),
        transparency_analysis=analysis,
        repair_attempts=[],
    )
    if not expects_transparency or result.transparency_validated:
        return result

    await _repair_into(result, hd, "initial_validation_failed", deps)
    if result.transparency_validated:
        return result

    if not fallback.enabled:
        raise TransparencyValidationError(
            "Transparency validation failed and fallback regeneration is disabled",
            detail={"attempts": [item.to_dict() for item in result.repair_attempts]},
        )

    if not deps.client.configured:
        raise MissingApiKeyError(
            "Transparency validation failed and Gemini generation fallback is not configured",
            code="FALLBACK_GENERATION_NOT_CONFIGURED",
        )

    angle = fallback.target_angle or infer_angle_from_url(url) or ProductImageAngle.FRONT
    _log(logging.INFO, "enhance_fallback_regeneration", url=url, angle=angle.value)
    regenerated = await generate_product_image(
        GenerationRequest(
            source_urls=fallback.source_urls or [url],
            color_reference_url=fallback.color_reference_url,
            target_angle=angle,
            target_color=fallback.target_color,
            custom_prompt=fallback.custom_prompt,
            preferred_profile_id=fallback.preferred_profile_id,
            product_name=fallback.product_name,
            product_category=fallback.product_category,
            product_colors=fallback.product_colors,
        ),
        deps,
    )

    regen_width, regen_height = open_image(regenerated.image.data).size
    target_width, target_height = compute_target_dimensions(
        regen_width, regen_height, scale, long_edge_cap
    )
    hd = await asyncio.to_thread(render_hd, regenerated.image, target_width, target_height)
    analysis = await asyncio.to_thread(analyze_transparency, hd.image.data, deps.thresholds)

    result.image, result.width, result.height = hd.image, hd.width, hd.height
    result.transparency_analysis = analysis
    result.transparency_validated = analysis.has_usable_transparency
    result.fallback_regenerated = True
    result.fallback_reason = "transparency_validation_failed"
    result.fallback_model_used = regenerated.model_used
    result.fallback_target_angle = regenerated.target_angle

    if not result.transparency_validated:
        await _repair_into(result, hd, "post_fallback_validation_failed", deps)

    if not result.transparency_validated:
        raise TransparencyValidationError(
            "Fallback regeneration did not pass transparency validation",
            status_code=502,
            code="FALLBACK_TRANSPARENCY_VALIDATION_FAILED",
            detail={"attempts": [item.to_dict() for item in result.repair_attempts]},
        )

    return result


async def _repair_into(
    result: EnhanceResult,
    hd: HdRenderResult,
    stage: str,
    deps: PipelineDependencies,
) -> None:
    attempt, repaired, analysis = await _provider_repair(hd, stage, deps)
    result.repair_attempts.append(attempt)
    if repaired is None or analysis is None or not analysis.has_usable_transparency:
        return
    result.image, result.width, result.height = repaired.image, repaired.width, repaired.height
    result.transparency_analysis = analysis
    result.transparency_validated = True
    result.repair_provider = attempt.provider
    result.repair_stage = stage


__all__ = [
    "EnhanceFallback",
    "EnhanceResult",
    "GenerationRequest",
    "PipelineDependencies",
    "ProductImageResult",
    "ProductImageVariants",
    "build_default_dependencies",
    "enhance_image",
    "generate_product_image",
    "generate_product_image_variants",
    "infer_input_fidelity",
    "infer_output_format",
    "infer_quality",
]
