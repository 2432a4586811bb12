"""
API key providers for the remote classifier.

The categorization core only needs ``get_api_key() -> str | None``; absence is
reported by the gateway as an AuthError at call time.
"""

from __future__ import annotations

from typing import Protocol

from trackq.infrastructure.env import get_optional_env
from trackq.infrastructure.settings import API_KEY_ENV_VAR


class ApiKeyProvider(Protocol):
    def get_api_key(self) -> str | None: ...


class EnvApiKeyProvider:
    """Reads the API key from the environment (including a .env file)."""

    def __init__(self, env_var: str = API_KEY_ENV_VAR):
        self.env_var = env_var

    def get_api_key(self) -> str | None:
        return get_optional_env(self.env_var)


class StaticApiKeyProvider:
    """Holds a key supplied by the host application's secret store."""

    def __init__(self, api_key: str | None):
        self._api_key = api_key

    def get_api_key(self) -> str | None:
        if self._api_key is None or not self._api_key.strip():
            return None
        return self._api_key

    def set_api_key(self, api_key: str | None) -> None:
        self._api_key = api_key
