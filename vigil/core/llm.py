"""
Vigil — Devotional text generation.

Single public function `complete()` backed by Gemini. Used only for the
daily devotional; callers fall back to a fixed verse whenever this raises.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash"


class LLMUnavailable(RuntimeError):
    """No API key is configured."""


async def _complete_gemini(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    gm = genai.GenerativeModel(model_name=model, system_instruction=system)
    response = await gm.generate_content_async(
        user_message,
        generation_config=genai.types.GenerationConfig(max_output_tokens=max_tokens),
    )
    return response.text


async def complete(system: str, user_message: str, max_tokens: int = 256) -> str:
    """Send a prompt to Gemini and return the response text.

    Raises LLMUnavailable without an API key; API errors propagate.
    """
    from vigil.config import settings

    if not settings.LLM_API_KEY:
        raise LLMUnavailable("LLM_API_KEY is not set")

    model = settings.LLM_MODEL or DEFAULT_MODEL
    logger.debug("Devotional prompt to %s", model)
    return await _complete_gemini(settings.LLM_API_KEY, model, system, user_message, max_tokens)
