"""Pydantic models used by the settings router."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class AiProviderSettingsUpdate(BaseModel):
    """
    Partial update of the stored provider settings.
    Omitted fields and blank strings are left untouched; null clears a key.
    """

    removebg_api_key: Optional[str] = None
    clipdrop_api_key: Optional[str] = None
    provider_order: Optional[List[str]] = Field(
        None, description="Provider ids in priority order"
    )


class ProviderStatus(BaseModel):
    configured: bool
    source: str


class AiProviderSettingsResponse(BaseModel):
    """Provider status view. Key values are never returned."""

    success: bool
    providers: Dict[str, ProviderStatus]
    provider_order: List[str]
    provider_order_source: str
    remote_store_available: bool
