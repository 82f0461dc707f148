"""Shared Gemini call with retry logic.

`call_llm` is the only place that talks to the model. Transient Vertex AI
errors are translated to builtin exception types and retried with tenacity;
anything else (safety blocks, bad requests) propagates on the first attempt so
the caller's per-message failure policy applies.
"""

from __future__ import annotations

from typing import Any

from google.api_core import exceptions as gexc
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from triageq.config import LLM_MAX_RETRIES
from triageq.infrastructure.settings import GEMINI_MAX_TOKENS, GEMINI_TEMPERATURE
from triageq.llm.gemini import get_gemini_model
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter

logger = get_logger(__name__)

# Vertex error -> (counter suffix, retryable builtin raised in its place)
_TRANSIENT: tuple[tuple[type[Exception], str, type[Exception]], ...] = (
    (gexc.DeadlineExceeded, "timeout", TimeoutError),
    (gexc.ServiceUnavailable, "service_unavailable", ConnectionError),
    (gexc.InternalServerError, "internal_error", ConnectionError),
    (gexc.ResourceExhausted, "rate_limited", OSError),
)
RETRYABLE = (TimeoutError, ConnectionError, OSError)


def _generation_config(json_output: bool) -> dict[str, Any]:
    config: dict[str, Any] = {
        "temperature": GEMINI_TEMPERATURE,
        "max_output_tokens": GEMINI_MAX_TOKENS,
    }
    if json_output:
        config["response_mime_type"] = "application/json"
    return config


@retry(
    stop=stop_after_attempt(LLM_MAX_RETRIES),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(RETRYABLE),
    reraise=True,
)
def call_llm(prompt: str, counter_prefix: str = "llm", json_output: bool = True) -> str:
    """Send ``prompt`` to Gemini and return the response text.

    Args:
        prompt: Fully rendered prompt.
        counter_prefix: Telemetry prefix, e.g. ``"summarizer"``.
        json_output: Request an ``application/json`` response.

    Raises:
        TimeoutError / ConnectionError / OSError: transient Vertex errors,
            raised after LLM_MAX_RETRIES attempts
        Exception: anything else, unretried
    """
    model = get_gemini_model()
    try:
        return model.generate_content(prompt, generation_config=_generation_config(json_output)).text
    except RETRYABLE:
        raise
    except Exception as exc:
        for vertex_error, suffix, builtin in _TRANSIENT:
            if isinstance(exc, vertex_error):
                counter(f"{counter_prefix}.{suffix}")
                logger.warning("Gemini %s, retrying: %s", suffix.replace("_", " "), exc)
                raise builtin(f"Gemini {suffix}: {exc}") from exc
        logger.error("Gemini call failed: %s", exc)
        raise
