"""
Process-wide Vertex AI Gemini model.

Summarizer workers share one GenerativeModel; `lru_cache` makes creation a
thread-safe one-time step.
"""

from __future__ import annotations

import os
from functools import lru_cache

from triageq.infrastructure.settings import GEMINI_LOCATION, GEMINI_MODEL, GOOGLE_CLOUD_PROJECT
from triageq.observability.logging import get_logger

logger = get_logger(__name__)


class GeminiInitializationError(RuntimeError):
    """Vertex AI could not be initialized (missing project, bad credentials)."""


def _vertex_target() -> tuple[str, str]:
    # Environment first: settings may have been imported before load_dotenv()
    project = os.getenv("GOOGLE_CLOUD_PROJECT") or GOOGLE_CLOUD_PROJECT
    location = os.getenv("GEMINI_LOCATION") or GEMINI_LOCATION or "us-central1"
    return project, location


@lru_cache(maxsize=1)
def get_gemini_model():
    """
    Return the shared GenerativeModel, initializing Vertex AI on first use.

    Raises:
        GeminiInitializationError: GOOGLE_CLOUD_PROJECT unset or init failed
    """
    project, location = _vertex_target()
    if not project:
        raise GeminiInitializationError("GOOGLE_CLOUD_PROJECT not set")

    try:
        import vertexai
        from vertexai.generative_models import GenerativeModel

        vertexai.init(project=project, location=location)
        model = GenerativeModel(GEMINI_MODEL)
    except Exception as exc:
        raise GeminiInitializationError(f"Vertex AI init failed for {project}/{location}: {exc}") from exc

    logger.info("Gemini ready: %s (%s/%s)", GEMINI_MODEL, project, location)
    return model


def clear_model_cache() -> None:
    """Drop the shared model so the next call re-reads configuration."""
    get_gemini_model.cache_clear()
