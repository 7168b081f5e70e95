"""OpenAI (or OpenAI-compatible) reasoner using openai SDK with native async."""

import logging
import os
import time

from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from config.config_loader import ReasonerConfig
from multipath.reasoners.base import ReasonerBackend, ReasonerHttpError, ReasonerTimeout

logger = logging.getLogger(__name__)


class OpenAIReasoner(ReasonerBackend):
    """OpenAI chat completions via openai SDK.

    Setting ``base_url`` points it at any OpenAI-compatible endpoint
    (xAI, DeepSeek, a local gateway).
    """

    def __init__(self, config: ReasonerConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ReasonerHttpError(None, f"Missing API key: {config.api_key_env}")
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url, max_retries=0)

    def name(self) -> str:
        return "openai"

    def model_string(self) -> str:
        return self._config.model

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        start = time.monotonic()
        try:
            response = await self._client.chat.completions.create(
                model=self._config.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
            )
        except APITimeoutError as exc:
            raise ReasonerTimeout(self._config.timeout_sec) from exc
        except APIStatusError as exc:
            raise ReasonerHttpError(exc.status_code, exc.message) from exc
        except APIConnectionError as exc:
            raise ReasonerHttpError(None, str(exc)) from exc

        choice = response.choices[0] if response.choices else None
        content = choice.message.content if choice and choice.message.content else ""

        logger.debug(
            "OpenAI reasoner: %.2fs, %s tokens",
            time.monotonic() - start,
            response.usage.total_tokens if response.usage else None,
        )
        return content.strip()
