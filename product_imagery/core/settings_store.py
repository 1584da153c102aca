"""
Settings store backed by the Supabase app_settings table.
Holds remotely managed background-removal provider secrets.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from supabase import Client, create_client

from product_imagery.config import logger, SUPABASE_URL, SUPABASE_SERVICE_KEY


# Initialize Supabase client
_supabase_client: Optional[Client] = None

SETTINGS_TABLE = "app_settings"
AI_PROVIDERS_KEY = "ai_providers"


class SecretStoreUnavailableError(Exception):
    """The remote settings store is misconfigured or unreachable."""


def _get_supabase_client() -> Client:
    """
    Get or create the Supabase client instance.

    Returns:
        Client: Supabase client instance

    Raises:
        SecretStoreUnavailableError: If SUPABASE_URL or SUPABASE_SERVICE_KEY is not configured
    """
    global _supabase_client

    if _supabase_client is None:
        if not SUPABASE_URL or not SUPABASE_SERVICE_KEY:
            error_msg = "SUPABASE_URL or SUPABASE_SERVICE_KEY is not configured"
            logger.warning(error_msg)
            raise SecretStoreUnavailableError(error_msg)

        try:
            _supabase_client = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY)
            logger.info("Supabase client initialized successfully for settings store")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {e}")
            raise SecretStoreUnavailableError(str(e)) from e

    return _supabase_client


class SupabaseSettingsStore:
    """Key-value document access to one row of the app_settings table."""

    def __init__(self, key: str = AI_PROVIDERS_KEY, client: Optional[Client] = None):
        self.key = key
        self._client = client

    def _client_or_default(self) -> Client:
        return self._client if self._client is not None else _get_supabase_client()

    async def read(self) -> Dict[str, Any]:
        """
        Read the stored settings document.

        Returns:
            Dict with the stored values, empty when no row exists

        Raises:
            SecretStoreUnavailableError: If the store cannot be reached
        """
        try:
            client = self._client_or_default()
            response = (
                client.table(SETTINGS_TABLE)
                .select("value")
                .eq("key", self.key)
                .limit(1)
                .execute()
            )
        except SecretStoreUnavailableError:
            raise
        except Exception as e:
            logger.error(f"Error reading settings '{self.key}': {e}")
            raise SecretStoreUnavailableError(str(e)) from e

        if not response.data:
            logger.debug(f"No stored settings for key: {self.key}")
            return {}

        value = response.data[0].get("value") or {}
        return dict(value) if isinstance(value, dict) else {}

    async def upsert(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge values into the stored settings document.

        Args:
            values: Fields to write. A None value clears the field.

        Returns:
            Dict with the merged document as written

        Raises:
            SecretStoreUnavailableError: If the store cannot be reached
        """
        current = await self.read()
        merged = {**current, **values}
        merged = {name: value for name, value in merged.items() if value is not None}

        try:
            client = self._client_or_default()
            client.table(SETTINGS_TABLE).upsert(
                {
                    "key": self.key,
                    "value": merged,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                },
                on_conflict="key",
            ).execute()
        except Exception as e:
            logger.error(f"Error writing settings '{self.key}': {e}")
            raise SecretStoreUnavailableError(str(e)) from e

        logger.info(
            f"Settings '{self.key}' updated (fields: {sorted(values.keys())})"
        )
        return merged
