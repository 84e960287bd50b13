"""
Environment-driven configuration for the graph memory service.

Values are read lazily through the helpers below so tests can override them
with monkeypatch.setenv() before constructing clients.
"""

import os
from typing import List

from dotenv import load_dotenv, find_dotenv

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

TRUTHY_ENV_VALUES = {"1", "true", "yes", "on", "enabled"}
DISABLED_ENV_VALUES = {"none", "off", "disabled", "false", "0"}


def env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read int env with a safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY_ENV_VALUES


def first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


def database_url() -> str:
    value = os.getenv("DATABASE_URL", "").strip()
    if not value:
        raise ValueError(
            "DATABASE_URL environment variable is not set. Please check your .env file."
        )
    return value
