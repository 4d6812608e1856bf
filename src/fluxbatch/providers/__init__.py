"""Provider implementations and registry."""

from fluxbatch.providers.base import BaseProvider, ImageRequest
from fluxbatch.providers.registry import get_provider, register_provider
from fluxbatch.providers.together import TogetherProvider

__all__ = [
    "BaseProvider",
    "ImageRequest",
    "TogetherProvider",
    "get_provider",
    "register_provider",
]
