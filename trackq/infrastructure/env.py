"""
Centralized environment variable loader for TrackQ.

Side Effects:
    - Loads .env file from project root

Usage:
    from trackq.infrastructure.env import ensure_env_loaded, get_optional_env

    ensure_env_loaded()
    api_key = get_optional_env("ANTHROPIC_API_KEY")
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

_ENV_LOADED = False


def ensure_env_loaded(env_path: Path | None = None) -> None:
    """
    Ensure .env file is loaded exactly once.

    Args:
        env_path: Optional path to .env file. If None, searches upward for one.

    Side Effects:
        - Loads environment variables from .env file (never overrides existing ones)
        - Sets module-level flag to prevent double-loading
    """
    global _ENV_LOADED
    if _ENV_LOADED:
        return

    if env_path is None:
        current = Path(__file__).parent
        while current != current.parent:
            env_candidate = current / ".env"
            if env_candidate.exists():
                env_path = env_candidate
                break
            current = current.parent

    if env_path and env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()
    _ENV_LOADED = True


def get_optional_env(key: str, default: str | None = None) -> str | None:
    """Return an environment variable, treating blank values as missing."""
    ensure_env_loaded()
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()
