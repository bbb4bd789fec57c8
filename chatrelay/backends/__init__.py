"""Generation backend selection helpers."""

from __future__ import annotations

from chatrelay.backends.base import GenerationBackend
from chatrelay.backends.gemini import GeminiBackend
from chatrelay.backends.openai_compat import OpenAICompatBackend
from chatrelay.config.settings import settings


def create_backend() -> GenerationBackend:
    provider = settings.backend_provider.strip().lower()
    options = {
        "base_url": settings.backend_base_url,
        "api_key": settings.backend_api_key,
        "model": settings.backend_model,
        "timeout_seconds": settings.backend_timeout_seconds,
        "max_connections": settings.backend_max_connections,
        "max_keepalive_connections": settings.backend_max_keepalive_connections,
    }
    if provider in {"gemini", "google"}:
        return GeminiBackend(**options)
    if provider in {"openai", "openai_compat"}:
        return OpenAICompatBackend(**options)
    raise ValueError(f"unknown backend provider: {settings.backend_provider}")
