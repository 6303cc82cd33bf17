"""
Explicit platform -> provider class map, filled by registration at import time.
"""

from typing import Dict, List, Optional, Type
from authbridge.exceptions import UnsupportedPlatform
from authbridge.oauth_config.schemas import ResolvedConfig
from authbridge.providers.base import OAuthProvider


class ProviderRegistry:
    def __init__(self):
        self._providers: Dict[str, Type[OAuthProvider]] = {}

    def register(self, platform: str):
        """Class decorator registering a provider for a platform."""

        def decorator(cls: Type[OAuthProvider]) -> Type[OAuthProvider]:
            self.add(platform, cls)
            return cls

        return decorator

    def add(self, platform: str, cls: Type[OAuthProvider]):
        if platform in self._providers and self._providers[platform] is not cls:
            raise ValueError(f"Provider already registered for {platform}")
        cls.platform = platform
        self._providers[platform] = cls

    def get(self, platform: str) -> Optional[Type[OAuthProvider]]:
        return self._providers.get(platform)

    def supports(self, platform: str) -> bool:
        return platform in self._providers

    def platforms(self) -> List[str]:
        return sorted(self._providers)

    def build(self, config: ResolvedConfig) -> OAuthProvider:
        cls = self.get(config.platform)
        if not cls:
            raise UnsupportedPlatform(f"Unsupported OAuth platform: {config.platform}")
        return cls(config)


registry = ProviderRegistry()
