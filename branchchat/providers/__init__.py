"""Providers package — model routing and the completion HTTP client."""

from branchchat.providers.client import CompletionClient
from branchchat.providers.registry import ProviderConfig, ProviderRegistry, ResolvedModel

__all__ = ["CompletionClient", "ProviderConfig", "ProviderRegistry", "ResolvedModel"]
