"""FastAPI router for AI provider settings."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from product_imagery.config import logger
from product_imagery.core.provider_secrets import normalize_provider_order
from product_imagery.core.settings_store import SecretStoreUnavailableError
from product_imagery.routers.images.dependencies import get_pipeline, verify_admin
from product_imagery.services.generation_service import PipelineDependencies

from .models import AiProviderSettingsResponse, AiProviderSettingsUpdate

router = APIRouter(
    prefix="/api/v1/admin/settings",
    tags=["Settings"],
    dependencies=[Depends(verify_admin)],
)


def build_settings_patch(payload: AiProviderSettingsUpdate) -> Dict[str, Any]:
    """Translate the request into store fields: skip blanks, keep explicit nulls."""
    patch: Dict[str, Any] = {}
    submitted = payload.model_dump(exclude_unset=True)

    for name in ("removebg_api_key", "clipdrop_api_key"):
        if name not in submitted:
            continue
        value = submitted[name]
        if value is None:
            patch[name] = None
        elif value.strip():
            patch[name] = value.strip()

    if "provider_order" in submitted:
        order = normalize_provider_order(submitted["provider_order"] or [])
        patch["provider_order"] = order or None

    return patch


@router.get("/ai-providers", response_model=AiProviderSettingsResponse)
async def get_ai_provider_settings(
    pipeline: PipelineDependencies = Depends(get_pipeline),
) -> AiProviderSettingsResponse:
    """Show which provider keys are configured and where they come from."""

    status = await pipeline.resolver.status()
    return AiProviderSettingsResponse(success=True, **status)


@router.put("/ai-providers", response_model=AiProviderSettingsResponse)
async def update_ai_provider_settings(
    payload: AiProviderSettingsUpdate,
    pipeline: PipelineDependencies = Depends(get_pipeline),
) -> AiProviderSettingsResponse:
    """Store provider keys and order remotely; takes effect immediately."""

    patch = build_settings_patch(payload)
    logger.info("AI provider settings update", extra={"fields": sorted(patch.keys())})

    try:
        status = await pipeline.resolver.update(patch)
    except SecretStoreUnavailableError as exc:
        logger.error("AI provider settings update failed", extra={"error": str(exc)})
        raise HTTPException(
            status_code=503,
            detail=f"Settings store unavailable: {exc}",
        )

    return AiProviderSettingsResponse(success=True, **status)
