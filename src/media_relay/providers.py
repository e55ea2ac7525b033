"""
Boundary to the external Content Providers that locate media on upstream
sites. The relay only needs `fetch_sources`; scraping lives elsewhere.
"""
import logging
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

WATCH_CACHE_TTL = 30 * 60


class ContentProvider(Protocol):
    name: str

    async def fetch_sources(self, episode_id: str, server: Optional[str] = None) -> Dict[str, Any]:
        ...


class ProviderRegistry:

    def __init__(self, providers=()):
        self._providers = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider):
        logger.info(f"registering content provider {provider.name}")
        self._providers[provider.name.lower()] = provider

    def get(self, name):
        return self._providers.get(name.lower())

    def names(self):
        return sorted(self._providers)

    def __len__(self):
        return len(self._providers)
