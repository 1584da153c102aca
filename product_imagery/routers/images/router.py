"""FastAPI router for admin product image endpoints."""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from product_imagery.config import logger
from product_imagery.core.prompt_templates import MODEL_PROFILES, ProductImageAngle
from product_imagery.services.generation_service import (
    DEFAULT_ENHANCE_LONG_EDGE,
    DEFAULT_SCALE_FACTOR,
    PipelineDependencies,
    enhance_image,
    generate_product_image,
    generate_product_image_variants,
)

from .dependencies import get_pipeline, verify_admin
from .models import (
    EnhanceImageRequest,
    GenerateProductImageRequest,
    GenerateVariantsRequest,
    ProductImageConfigResponse,
)

router = APIRouter(
    prefix="/api/v1/admin",
    tags=["Product Images"],
    dependencies=[Depends(verify_admin)],
)


@router.get("/product-images/config", response_model=ProductImageConfigResponse)
async def get_product_image_config(
    pipeline: PipelineDependencies = Depends(get_pipeline),
) -> ProductImageConfigResponse:
    """Report which models, personas and removal providers are available."""

    background_removal = await pipeline.router.get_configuration()
    return ProductImageConfigResponse(
        success=True,
        generation_configured=pipeline.client.configured,
        models=pipeline.candidate_models(),
        profiles=[profile.to_dict() for profile in MODEL_PROFILES],
        angles=[angle.value for angle in ProductImageAngle],
        transparency_pass_enabled=pipeline.transparency_enabled,
        local_cutout_enabled=pipeline.local_cutout_enabled,
        upscale_enabled=pipeline.upscale_enabled,
        background_removal=background_removal,
    )


@router.post("/product-images/generate")
async def create_product_image(
    payload: GenerateProductImageRequest,
    pipeline: PipelineDependencies = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Generate one transparent catalog image from garment references."""

    logger.info(
        "Product image generation requested",
        extra={
            "source_count": len(payload.source_image_urls),
            "target_angle": payload.target_angle,
            "has_color_reference": bool(payload.color_reference_image_url),
        },
    )

    result = await generate_product_image(payload.to_generation_request(), pipeline)

    logger.info(
        "Product image generated",
        extra={
            "model_used": result.model_used,
            "transparency_stage": result.diagnostics["transparency"]["stage"],
        },
    )
    return {"success": True, **result.to_dict()}


@router.post("/product-images/variants")
async def create_product_image_variants(
    payload: GenerateVariantsRequest,
    pipeline: PipelineDependencies = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Generate a batch of angle variants sharing one model persona."""

    logger.info(
        "Product image variants requested",
        extra={"variant_count": payload.variant_count, "angle_mode": payload.angle_mode},
    )

    batch = await generate_product_image_variants(
        payload.to_generation_request(),
        pipeline,
        variant_count=payload.variant_count,
        angle_mode=payload.angle_mode,
    )

    logger.info(
        "Product image variants generated",
        extra={"succeeded": len(batch.variants), "failed": len(batch.failures)},
    )
    return {"success": True, **batch.to_dict()}


@router.post("/images/enhance")
async def enhance_product_image(
    payload: EnhanceImageRequest,
    pipeline: PipelineDependencies = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Re-render an existing image in HD, enforcing transparency where expected."""

    logger.info(
        "Image enhancement requested",
        extra={
            "image_url": payload.image_url,
            "fallback_enabled": bool(payload.fallback and payload.fallback.enabled),
        },
    )

    result = await enhance_image(
        payload.image_url,
        pipeline,
        scale_factor=(
            payload.scale_factor if payload.scale_factor is not None else DEFAULT_SCALE_FACTOR
        ),
        max_long_edge=(
            payload.max_long_edge
            if payload.max_long_edge is not None
            else DEFAULT_ENHANCE_LONG_EDGE
        ),
        fallback=payload.fallback.to_fallback() if payload.fallback else None,
    )
    return {"success": True, **result.to_dict()}
