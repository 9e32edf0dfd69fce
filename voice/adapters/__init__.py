"""
Backend adapters for Deepgram transcription, OpenAI chat and OpenAI speech.

Each adapter satisfies one of the contracts in ``voice.providers``.
"""
from __future__ import annotations

import os


def resolve_api_key(configured: str, env_var: str) -> str:
    """Configured key, unless it is empty or an unresolved ``${VAR}`` placeholder."""
    if configured and not configured.startswith("${"):
        return configured
    return os.environ.get(env_var, "")
