"""Gemini reasoner using google-genai SDK with native async."""

import logging
import os
import time

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from config.config_loader import ReasonerConfig
from multipath.reasoners.base import ReasonerBackend, ReasonerHttpError

logger = logging.getLogger(__name__)


class GeminiReasoner(ReasonerBackend):
    """Google Gemini via google-genai SDK."""

    def __init__(self, config: ReasonerConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ReasonerHttpError(None, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return "gemini"

    def model_string(self) -> str:
        return self._config.model

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        start = time.monotonic()
        try:
            response = await self._client.aio.models.generate_content(
                model=self._config.model,
                contents=user_prompt,
                config=genai_types.GenerateContentConfig(
                    system_instruction=system_prompt,
                    max_output_tokens=self._config.max_tokens,
                    temperature=self._config.temperature,
                ),
            )
        except genai_errors.APIError as exc:
            raise ReasonerHttpError(exc.code, exc.message or str(exc)) from exc

        logger.debug(
            "Gemini reasoner: %.2fs, %s tokens",
            time.monotonic() - start,
            response.usage_metadata.total_token_count if response.usage_metadata else None,
        )
        return (response.text or "").strip()
