"""
Third-party identity providers. Importing this package registers the built-in
providers on the default registry.
"""

from authbridge.providers.base import ExternalIdentity, OAuthProvider, TokenPair
from authbridge.providers.registry import ProviderRegistry, registry
from authbridge.providers import github, wechat_miniapp, wechat_mp  # noqa: F401

__all__ = ["ExternalIdentity", "OAuthProvider", "ProviderRegistry", "TokenPair", "registry"]
