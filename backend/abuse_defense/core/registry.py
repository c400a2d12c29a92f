"""Provider registry — resolves the keyword classifier from config.

The registry is the single place where provider implementations are wired.
Business logic calls ``registry.get_classifier()`` and gets back a concrete
implementation based on the current config. Swapping providers is a one-line
env var change (e.g., CLASSIFIER_PROVIDER=openai).

Usage:
    from abuse_defense.core.registry import get_provider_registry

    classifier = get_provider_registry().get_classifier()
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

from abuse_defense.config import get_settings
from abuse_defense.core.protocols import KeywordClassifier

logger = logging.getLogger(__name__)

# ─── Provider Factory Map ──────────────────────────────────────────────────────
# Adding a new provider = one entry here + one module in providers/.

_CLASSIFIER_FACTORIES: dict[str, type] = {}


def register_provider(
    category: str,
    name: str,
    cls: type,
) -> None:
    """Register a provider implementation.

    Called by provider modules on import, or manually in tests.

    Args:
        category: Provider category; only 'classifier' exists today.
        name: Provider name (e.g., 'heuristic', 'openai', 'mock')
        cls: The provider class implementing the relevant Protocol
    """
    registry_map = {
        "classifier": _CLASSIFIER_FACTORIES,
    }

    target = registry_map.get(category)
    if target is None:
        raise ValueError(f"Unknown provider category: {category}")

    target[name] = cls
    logger.info("Registered %s provider: %s", category, name)


class ProviderRegistry:
    """Singleton registry that resolves and caches provider instances."""

    def __init__(self) -> None:
        self._instances: dict[str, Any] = {}
        self._ensure_providers_loaded()

    def _ensure_providers_loaded(self) -> None:
        """Import all provider modules to trigger registration."""
        from abuse_defense.core.providers import (  # noqa: F401
            heuristic_classifier,
            mock_classifier,
            openai_classifier,
        )

    def _resolve(
        self,
        category: str,
        factories: dict[str, type],
        provider_name: str,
    ) -> Any:
        """Resolve and cache a provider instance."""
        cache_key = f"{category}:{provider_name}"
        if cache_key in self._instances:
            return self._instances[cache_key]

        cls = factories.get(provider_name)
        if cls is None:
            available = sorted(factories.keys())
            raise ValueError(
                f"Unknown {category} provider: '{provider_name}'. "
                f"Available: {available}"
            )

        settings = get_settings()
        instance = cls(settings)
        self._instances[cache_key] = instance
        logger.info("Initialized %s provider: %s", category, provider_name)
        return instance

    def get_classifier(self, override: str | None = None) -> KeywordClassifier:
        """Get the configured keyword classifier."""
        name = override or get_settings().effective_classifier_provider
        return self._resolve("classifier", _CLASSIFIER_FACTORIES, name)


@lru_cache
def get_provider_registry() -> ProviderRegistry:
    """Get the singleton provider registry."""
    return ProviderRegistry()
