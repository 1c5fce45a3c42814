"""Credential lookup for the provider API key."""

from __future__ import annotations

import os
from typing import Protocol

from streamchat.config import ProviderSpec


class CredentialProvider(Protocol):
    """Anything that can hand out the current provider API key."""

    def get_credential(self) -> str | None:
        ...


class ConfigCredentials:
    """Explicit ``api_key`` from config first, then the environment."""

    def __init__(self, provider: ProviderSpec) -> None:
        self._provider = provider

    def get_credential(self) -> str | None:
        key = self._provider.api_key.strip()
        if key:
            return key
        if self._provider.api_key_env:
            env_key = os.environ.get(self._provider.api_key_env, "").strip()
            if env_key:
                return env_key
        return None


class StaticCredentials:
    """Fixed key (or none), handy for embedding and tests."""

    def __init__(self, api_key: str | None) -> None:
        self._api_key = api_key

    def get_credential(self) -> str | None:
        return self._api_key or None
