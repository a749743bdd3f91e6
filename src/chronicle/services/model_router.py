"""Provider selection for completion requests.

Every provider speaks the OpenAI chat protocol, so choosing one comes down
to picking a base URL, a model name and an API key from the environment.
The router only resolves that configuration; building the client is left
to the completion service, which keeps the policy testable without
touching the network.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of a provider; env vars are ``<PREFIX>_API_KEY``, ``_BASE_URL``, ``_MODEL``."""

    name: str
    env_prefix: str
    default_model: str
    default_base_url: str
    requires_api_key: bool = True

    def env_name(self, suffix: str) -> str:
        return f"{self.env_prefix}_{suffix}"


@dataclass(frozen=True)
class ProviderSelection:
    """A provider resolved against the environment, ready to build a client from."""

    name: str
    model: str
    base_url: str
    api_key: Optional[str] = None
    requires_api_key: bool = True

    def with_model(self, model: str) -> "ProviderSelection":
        return replace(self, model=model)


PROVIDERS: Dict[str, ProviderSpec] = {
    spec.name: spec
    for spec in (
        ProviderSpec("gemini", "GEMINI", "gemini-2.5-flash", "https://generativelanguage.googleapis.com/v1beta/openai/"),
        ProviderSpec("openai", "OPENAI", "gpt-4o-mini", "https://api.openai.com/v1"),
        ProviderSpec("xai", "XAI", "grok-2-latest", "https://api.x.ai/v1"),
        ProviderSpec("local", "LOCAL", "llama3.1:8b", "http://127.0.0.1:11434", requires_api_key=False),
    )
}

ROUTING_POLICY: Dict[str, Tuple[str, ...]] = {
    # Continuations are typed live, so the fastest hosted model leads.
    "completion": ("gemini", "openai", "xai", "local"),
    # Titles and image keywords: short one-shot prompts.
    "auxiliary": ("gemini", "openai", "xai", "local"),
}


class ModelRouter:
    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._allowed: Optional[Set[str]] = set(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("CHRONICLE_MODEL_PROVIDER") or "").strip().lower()
        self.preferred: Optional[str] = preferred if preferred in PROVIDERS else None

    def _get(self, name: str) -> Optional[str]:
        value = self._env.get(name)
        return value or None

    def _local_enabled(self) -> bool:
        flag = (self._env.get("CHRONICLE_ENABLE_LOCAL_PROVIDER") or "").strip()
        return flag == "1" or self.preferred == "local"

    def provider_available(self, name: str) -> bool:
        spec = PROVIDERS.get(name)
        if spec is None:
            return False
        if self._allowed is not None and name not in self._allowed:
            return False
        if spec.requires_api_key:
            return self._get(spec.env_name("API_KEY")) is not None
        # Self-hosted endpoints are never picked unless asked for.
        return self._local_enabled()

    def priority(self, purpose: str) -> List[str]:
        order = list(ROUTING_POLICY.get(purpose, ROUTING_POLICY["completion"]))
        if self.preferred:
            order = [self.preferred] + [p for p in order if p != self.preferred]
        return order

    def resolve_provider(self, name: str) -> ProviderSelection:
        """Resolve ``name`` regardless of availability.

        Raises ``KeyError`` for an unknown provider.
        """
        spec = PROVIDERS[name]
        return ProviderSelection(
            name=spec.name,
            model=self._get(spec.env_name("MODEL")) or spec.default_model,
            base_url=self._get(spec.env_name("BASE_URL")) or spec.default_base_url,
            api_key=self._get(spec.env_name("API_KEY")),
            requires_api_key=spec.requires_api_key,
        )

    def select_provider(self, purpose: str) -> ProviderSelection:
        """Return the first available provider for ``purpose``.

        Raises ``RuntimeError`` when none is configured.
        """
        for name in self.priority(purpose):
            if self.provider_available(name):
                return self.resolve_provider(name)
        raise RuntimeError("No active model provider available for this task.")

    def maybe_select_provider(self, purpose: str) -> Optional[ProviderSelection]:
        try:
            return self.select_provider(purpose)
        except RuntimeError:
            return None
