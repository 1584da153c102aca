"""Resolution of background-removal provider secrets with a short-lived cache."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from product_imagery.config import logger
from product_imagery.core.settings_store import SecretStoreUnavailableError

PROVIDER_IDS: Tuple[str, ...] = ("removebg", "clipdrop")
DEFAULT_PROVIDER_ORDER: Tuple[str, ...] = ("removebg", "clipdrop")
SECRET_CACHE_TTL_SECONDS = 60.0

ENV_KEY_NAMES = {
    "removebg": "REMOVEBG_API_KEY",
    "clipdrop": "CLIPDROP_API_KEY",
}
REMOTE_KEY_FIELDS = {
    "removebg": "removebg_api_key",
    "clipdrop": "clipdrop_api_key",
}
ENV_ORDER_NAME = "BACKGROUND_REMOVAL_PROVIDER_ORDER"
REMOTE_ORDER_FIELD = "provider_order"


class SecretSource(str, Enum):
    ENVIRONMENT = "environment"
    REMOTE = "remote"
    ABSENT = "absent"
    DEFAULT = "default"


class SettingsStore(Protocol):
    async def read(self) -> Dict[str, Any]: ...

    async def upsert(self, values: Dict[str, Any]) -> Dict[str, Any]: ...


def normalize_provider_order(items: Iterable[Any]) -> List[str]:
    """Keep known provider ids, lowercased, first occurrence only."""
    order: List[str] = []
    for item in items:
        if not isinstance(item, str):
            continue
        normalized = item.strip().lower()
        if normalized in PROVIDER_IDS and normalized not in order:
            order.append(normalized)
    return order


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


@dataclass(frozen=True)
class ResolvedSecret:
    value: Optional[str]
    source: SecretSource

    @property
    def configured(self) -> bool:
        return bool(self.value)


@dataclass(frozen=True)
class ProviderSecrets:
    keys: Mapping[str, ResolvedSecret]
    provider_order: Tuple[str, ...]
    order_source: SecretSource = SecretSource.DEFAULT
    remote_available: bool = False
    fetched_at: float = 0.0

    def api_key(self, provider: str) -> Optional[str]:
        secret = self.keys.get(provider)
        return secret.value if secret else None

    @property
    def configured_providers(self) -> Tuple[str, ...]:
        return tuple(p for p in PROVIDER_IDS if self.api_key(p))

    def status(self) -> Dict[str, Any]:
        """Operator view. Never includes key values."""
        return {
            "providers": {
                provider: {
                    "configured": secret.configured,
                    "source": secret.source.value,
                }
                for provider, secret in self.keys.items()
            },
            "provider_order": list(self.provider_order),
            "provider_order_source": self.order_source.value,
            "remote_store_available": self.remote_available,
        }


@dataclass
class SecretCache:
    value: Optional[ProviderSecrets] = None
    expires_at: float = field(default=0.0)

    def get(self, now: float) -> Optional[ProviderSecrets]:
        if self.value is not None and now < self.expires_at:
            return self.value
        return None

    def put(self, value: ProviderSecrets, now: float, ttl: float) -> None:
        self.value = value
        self.expires_at = now + ttl

    def clear(self) -> None:
        self.value = None
        self.expires_at = 0.0


class ProviderSecretResolver:
    """
    Merge environment and remotely stored provider secrets.

    Environment values win over remote ones. The merged view is cached for
    ``ttl_seconds`` and dropped immediately after every write.
    """

    def __init__(
        self,
        store: Optional[SettingsStore] = None,
        *,
        ttl_seconds: float = SECRET_CACHE_TTL_SECONDS,
        environ: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._environ = environ
        self._clock = clock
        self._cache = SecretCache()

    @property
    def environ(self) -> Mapping[str, str]:
        return self._environ if self._environ is not None else os.environ

    def invalidate(self) -> None:
        self._cache.clear()

    async def resolve(self) -> ProviderSecrets:
        now = self._clock()
        cached = self._cache.get(now)
        if cached is not None:
            return cached

        remote, remote_available = await self._read_remote()
        resolved = self._merge(remote, remote_available, now)
        self._cache.put(resolved, now, self.ttl_seconds)
        return resolved

    async def _read_remote(self) -> Tuple[Dict[str, Any], bool]:
        if self.store is None:
            return {}, False
        try:
            return await self.store.read(), True
        except SecretStoreUnavailableError as exc:
            logger.warning(f"Secret store unavailable, using environment only: {exc}")
            return {}, False

    def _merge(
        self, remote: Dict[str, Any], remote_available: bool, now: float
    ) -> ProviderSecrets:
        keys: Dict[str, ResolvedSecret] = {}
        for provider in PROVIDER_IDS:
            env_value = _clean(self.environ.get(ENV_KEY_NAMES[provider]))
            remote_value = _clean(remote.get(REMOTE_KEY_FIELDS[provider]))
            if env_value:
                keys[provider] = ResolvedSecret(env_value, SecretSource.ENVIRONMENT)
            elif remote_value:
                keys[provider] = ResolvedSecret(remote_value, SecretSource.REMOTE)
            else:
                keys[provider] = ResolvedSecret(None, SecretSource.ABSENT)

        env_order = normalize_provider_order((self.environ.get(ENV_ORDER_NAME) or "").split(","))
        remote_raw = remote.get(REMOTE_ORDER_FIELD)
        remote_order = normalize_provider_order(remote_raw if isinstance(remote_raw, list) else [])
        if env_order:
            order, order_source = env_order, SecretSource.ENVIRONMENT
        elif remote_order:
            order, order_source = remote_order, SecretSource.REMOTE
        else:
            order, order_source = list(DEFAULT_PROVIDER_ORDER), SecretSource.DEFAULT

        return ProviderSecrets(
            keys=keys,
            provider_order=tuple(order),
            order_source=order_source,
            remote_available=remote_available,
            fetched_at=now,
        )

    async def update(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Write provider settings to the remote store and invalidate the cache.

        Args:
            values: Any of removebg_api_key, clipdrop_api_key (None clears)
                and provider_order (list of provider ids)

        Returns:
            Dict with the refreshed status view

        Raises:
            SecretStoreUnavailableError: If no store is configured or the write fails
        """
        if self.store is None:
            raise SecretStoreUnavailableError("No remote settings store is configured")

        allowed = set(REMOTE_KEY_FIELDS.values()) | {REMOTE_ORDER_FIELD}
        payload = {name: value for name, value in values.items() if name in allowed}
        try:
            await self.store.upsert(payload)
        finally:
            self.invalidate()

        return await self.status()

    async def status(self) -> Dict[str, Any]:
        return (await self.resolve()).status()


__all__ = [
    "PROVIDER_IDS",
    "DEFAULT_PROVIDER_ORDER",
    "SecretSource",
    "ResolvedSecret",
    "ProviderSecrets",
    "ProviderSecretResolver",
    "normalize_provider_order",
]
