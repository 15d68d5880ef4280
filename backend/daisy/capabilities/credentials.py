"""
Credential side-channel.

Keys are supplied by the embedding application (environment at startup, or
set at runtime from the settings screen) and attached as bearer tokens.
"""

from __future__ import annotations

import logging
import os

from daisy.capabilities.errors import ConfigurationError

logger = logging.getLogger(__name__)

PROVIDER_ENV_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "runway": "RUNWAY_API_KEY",
}

PROVIDER_NAMES: dict[str, str] = {
    "openai": "OpenAI",
    "runway": "Runway",
}


class CredentialStore:
    """In-memory API keys keyed by provider."""

    def __init__(self, keys: dict[str, str] | None = None):
        self._keys: dict[str, str] = {}
        for provider, key in (keys or {}).items():
            self.set(provider, key)

    @classmethod
    def from_env(cls) -> CredentialStore:
        keys = {
            provider: os.getenv(env_var, "")
            for provider, env_var in PROVIDER_ENV_VARS.items()
        }
        return cls({p: k for p, k in keys.items() if k and k.strip()})

    def set(self, provider: str, key: str | None) -> None:
        if provider not in PROVIDER_ENV_VARS:
            raise ValueError(f"Unknown credential provider '{provider}'")
        key = (key or "").strip()
        if key:
            self._keys[provider] = key
        else:
            self._keys.pop(provider, None)
        logger.info("Credential for %s %s", provider, "set" if key else "cleared")

    def get(self, provider: str) -> str | None:
        return self._keys.get(provider)

    def require(self, provider: str) -> str:
        """Return the key for provider, or raise ConfigurationError."""
        key = self.get(provider)
        if not key:
            name = PROVIDER_NAMES.get(provider, provider)
            raise ConfigurationError(
                f"{name} API key not configured. Please go to Settings to add your API key."
            )
        return key

    def configured(self) -> dict[str, bool]:
        return {provider: provider in self._keys for provider in PROVIDER_ENV_VARS}
