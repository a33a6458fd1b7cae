from __future__ import annotations

import importlib
import logging
from functools import lru_cache

from consult_dispatch.core.config.settings import Settings
from consult_dispatch.core.errors import ProviderNotConfiguredError, ProviderNotFoundError
from consult_dispatch.core.workflow import ProviderAdapter
from consult_dispatch.modules.providers.profiles import BUILTIN_PROFILES, ProviderProfile

logger = logging.getLogger(__name__)


def _normalize_name(name: str) -> str:
    return (name or "").strip().lower()


class ProviderRegistry:
    """Profiles and adapters by provider name.

    Profiles ship built in. Adapters talk to a specific third-party API and are registered by the
    deployment at startup; a provider without an adapter can be inspected but not run.
    """

    def __init__(self, profiles: dict[str, ProviderProfile] | None = None) -> None:
        self._profiles: dict[str, ProviderProfile] = dict(BUILTIN_PROFILES if profiles is None else profiles)
        self._adapters: dict[str, ProviderAdapter] = {}

    @property
    def names(self) -> list[str]:
        return sorted(self._profiles)

    def register_profile(self, profile: ProviderProfile) -> None:
        self._profiles[_normalize_name(profile.name)] = profile

    def register_adapter(self, name: str, adapter: ProviderAdapter) -> None:
        key = _normalize_name(name)
        if key not in self._profiles:
            raise ProviderNotFoundError(name)
        self._adapters[key] = adapter
        logger.info("Provider adapter registered provider=%s adapter=%s", key, type(adapter).__name__)

    def unregister_adapter(self, name: str) -> None:
        self._adapters.pop(_normalize_name(name), None)

    def profile(self, name: str) -> ProviderProfile:
        profile = self._profiles.get(_normalize_name(name))
        if profile is None:
            raise ProviderNotFoundError(name)
        return profile

    def adapter(self, name: str) -> ProviderAdapter:
        key = _normalize_name(name)
        if key not in self._profiles:
            raise ProviderNotFoundError(name)
        adapter = self._adapters.get(key)
        if adapter is None:
            raise ProviderNotConfiguredError(key)
        return adapter

    def has_adapter(self, name: str) -> bool:
        return _normalize_name(name) in self._adapters


def load_adapter(target: str) -> ProviderAdapter:
    module_name, _, attribute = target.partition(":")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute)
    return factory()


def register_configured_adapters(registry: ProviderRegistry, settings: Settings) -> list[str]:
    registered: list[str] = []
    for name, target in settings.provider_adapters.items():
        if registry.has_adapter(name):
            continue
        registry.register_adapter(name, load_adapter(target))
        registered.append(name)
    return registered


@lru_cache(maxsize=1)
def get_provider_registry() -> ProviderRegistry:
    return ProviderRegistry()
