"""Pydantic models used by the admin image router."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from product_imagery.core.prompt_templates import ProductImageAngle
from product_imagery.services.generation_service import (
    EnhanceFallback,
    GenerationRequest,
)


class GenerateProductImageRequest(BaseModel):
    """Request payload for a single catalog image generation."""

    source_image_urls: List[str] = Field(
        default_factory=list, description="Garment reference URLs, canonical first"
    )
    color_reference_image_url: Optional[str] = None
    anchor_image_url: Optional[str] = Field(
        None, description="Previously generated variant used as consistency anchor"
    )
    target_angle: Optional[str] = Field(None, description="Camera angle preset")
    target_color: Optional[str] = None
    custom_prompt: Optional[str] = None
    preferred_model_profile_id: Optional[str] = None
    product_name: Optional[str] = None
    product_category: Optional[str] = None
    product_colors: List[str] = Field(default_factory=list)
    model: Optional[str] = Field(None, description="Gemini model tried before the fallbacks")

    def to_generation_request(self) -> GenerationRequest:
        return GenerationRequest(
            source_urls=list(self.source_image_urls),
            color_reference_url=self.color_reference_image_url,
            anchor_url=self.anchor_image_url,
            target_angle=ProductImageAngle.parse(self.target_angle) or ProductImageAngle.FRONT,
            target_color=self.target_color,
            custom_prompt=self.custom_prompt,
            preferred_profile_id=self.preferred_model_profile_id,
            product_name=self.product_name,
            product_category=self.product_category,
            product_colors=[color for color in self.product_colors if color.strip()],
            model_override=self.model,
        )


class GenerateVariantsRequest(GenerateProductImageRequest):
    """Request payload for a multi-angle variant batch."""

    variant_count: int = Field(1, description="Clamped to 1..8")
    angle_mode: str = Field("auto", description="auto or front_only")


class EnhanceFallbackRequest(BaseModel):
    enabled: bool = False
    source_image_urls: List[str] = Field(default_factory=list)
    color_reference_image_url: Optional[str] = None
    preferred_model_profile_id: Optional[str] = None
    custom_prompt: Optional[str] = None
    target_color: Optional[str] = None
    target_angle: Optional[str] = None
    product_name: Optional[str] = None
    product_category: Optional[str] = None
    product_colors: List[str] = Field(default_factory=list)

    def to_fallback(self) -> EnhanceFallback:
        return EnhanceFallback(
            enabled=self.enabled,
            source_urls=list(self.source_image_urls),
            color_reference_url=self.color_reference_image_url,
            preferred_profile_id=self.preferred_model_profile_id,
            custom_prompt=self.custom_prompt,
            target_color=self.target_color,
            target_angle=ProductImageAngle.parse(self.target_angle),
            product_name=self.product_name,
            product_category=self.product_category,
            product_colors=list(self.product_colors),
        )


class EnhanceImageRequest(BaseModel):
    """Request payload for HD enhancement of an existing image."""

    image_url: str
    scale_factor: Optional[float] = Field(None, description="Clamped to 2..4, default 4")
    max_long_edge: Optional[int] = Field(None, description="Clamped to 1024..8192, default 4096")
    fallback: Optional[EnhanceFallbackRequest] = None


class ProductImageConfigResponse(BaseModel):
    """Generation capabilities shown by the admin console."""

    success: bool
    generation_configured: bool
    models: List[str]
    profiles: List[Dict[str, str]]
    angles: List[str]
    transparency_pass_enabled: bool
    local_cutout_enabled: bool
    upscale_enabled: bool
    background_removal: Dict[str, Any]


class ErrorResponse(BaseModel):
    """Generic error payload."""

    success: bool
    error: str
    code: Optional[str] = None
    detail: Optional[Any] = None
