"""Provider registry and ``"Provider: model"`` resolution.

Model identifiers carry their provider as a prefix, e.g.
``"Pollinations: openai-fast"``.  Resolution looks the prefix up in the
registry and returns the provider's connection info plus the bare model name.
Anything that does not resolve raises :class:`UnknownProvider` before a
request is ever built.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from branchchat.config import Settings, settings as default_settings
from branchchat.errors import UnknownProvider

_MODEL_PATTERN = re.compile(r"^([^:]+):\s*(.+)$")


@dataclass
class ProviderConfig:
    name: str
    base_url: str
    api_key: str | None = None
    available_models: list[str] = field(default_factory=list)
    is_default: bool = False

    def model_ids(self) -> list[str]:
        """Prefixed identifiers for every model this provider offers."""
        return [f"{self.name}: {model}" for model in self.available_models]


@dataclass(frozen=True)
class ResolvedModel:
    provider: ProviderConfig
    model: str


def split_model(model_with_prefix: str) -> tuple[str, str] | None:
    """Split ``"Provider: model"`` into its parts, or ``None`` if unprefixed."""
    match = _MODEL_PATTERN.match(model_with_prefix or "")
    if not match:
        return None
    provider_name, model_name = match.group(1).strip(), match.group(2).strip()
    if not provider_name or not model_name:
        return None
    return provider_name, model_name


class ProviderRegistry:
    """Named collection of :class:`ProviderConfig` objects."""

    def __init__(self, providers: Iterable[ProviderConfig] = ()) -> None:
        self._providers: dict[str, ProviderConfig] = {}
        for provider in providers:
            self.add(provider)

    @classmethod
    def from_settings(
        cls,
        config: Settings | None = None,
        extra: Iterable[ProviderConfig] = (),
    ) -> ProviderRegistry:
        """Registry holding the env-configured provider plus *extra* ones."""
        config = config or default_settings
        registry = cls(
            [
                ProviderConfig(
                    name=config.provider_name,
                    base_url=config.provider_base_url,
                    api_key=config.provider_api_key,
                    available_models=list(config.provider_models),
                    is_default=True,
                )
            ]
        )
        for provider in extra:
            registry.add(provider)
        return registry

    def add(self, provider: ProviderConfig) -> None:
        self._providers[provider.name] = provider

    def remove(self, name: str) -> None:
        self._providers.pop(name, None)

    def get(self, name: str) -> ProviderConfig | None:
        return self._providers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[ProviderConfig]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)

    def all_available_models(self) -> list[str]:
        """Every ``"Provider: model"`` string across all providers."""
        models: list[str] = []
        for provider in self._providers.values():
            models.extend(provider.model_ids())
        return models

    def resolve(self, model_with_prefix: str) -> ResolvedModel:
        """Map a prefixed model id to its provider and bare model name.

        Raises:
            UnknownProvider: If the string has no prefix, the prefix names no
                configured provider, or the provider does not offer the model.
        """
        parts = split_model(model_with_prefix)
        if parts is None:
            raise UnknownProvider(model_with_prefix, "expected 'Provider: model'")
        provider_name, model_name = parts
        provider = self._providers.get(provider_name)
        if provider is None:
            raise UnknownProvider(model_with_prefix, f"provider {provider_name!r} is not configured")
        if model_name not in provider.available_models:
            raise UnknownProvider(
                model_with_prefix, f"{provider_name} does not offer {model_name!r}"
            )
        return ResolvedModel(provider=provider, model=model_name)
