"""Environment variable lookup for completion API keys."""

from __future__ import annotations

import os
from typing import Dict, Optional

_ENV_KEY_BY_PROVIDER: Dict[str, str] = {
    "gemini": "GEMINI_API_KEY",
    "google": "GEMINI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


def provider_for_model(model_name: str) -> str:
    # OpenRouter ids are namespaced by vendor, e.g. "deepseek/deepseek-chat".
    if "/" in model_name:
        return "openrouter"
    return "gemini"


def get_env_api_key(provider: str) -> Optional[str]:
    env_key = _ENV_KEY_BY_PROVIDER.get(provider)
    if not env_key:
        return None
    return os.getenv(env_key) or None
