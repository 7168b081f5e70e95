"""Anthropic Claude reasoner using anthropic SDK with native async."""

import logging
import time

import anthropic as anthropic_sdk

from config.config_loader import ReasonerConfig, resolve_api_key
from multipath.reasoners.base import ReasonerBackend, ReasonerHttpError, ReasonerTimeout

logger = logging.getLogger(__name__)


def _error_message(exc: anthropic_sdk.APIStatusError) -> str:
    """Prefer the API's own error message over the SDK's repr."""
    body = exc.body
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if body.get("message"):
            return str(body["message"])
    return exc.message


class AnthropicReasoner(ReasonerBackend):
    """Anthropic Messages API via anthropic SDK."""

    def __init__(self, config: ReasonerConfig) -> None:
        self._config = config
        api_key = resolve_api_key(config)
        if not api_key:
            raise ReasonerHttpError(None, f"Missing API key: {config.api_key_env} or ANTHROPIC_AUTH_TOKEN")
        # Deadline is enforced by the JSON task runner; SDK retries would double it.
        self._client = anthropic_sdk.AsyncAnthropic(
            api_key=api_key,
            base_url=config.base_url,
            max_retries=0,
        )

    def name(self) -> str:
        return "anthropic"

    def model_string(self) -> str:
        return self._config.model

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        start = time.monotonic()
        try:
            response = await self._client.messages.create(
                model=self._config.model,
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic_sdk.APITimeoutError as exc:
            raise ReasonerTimeout(self._config.timeout_sec) from exc
        except anthropic_sdk.APIStatusError as exc:
            raise ReasonerHttpError(exc.status_code, _error_message(exc)) from exc
        except anthropic_sdk.APIConnectionError as exc:
            raise ReasonerHttpError(None, str(exc)) from exc

        text = "".join(b.text for b in response.content if b.type == "text").strip()

        logger.debug(
            "Anthropic reasoner: %.2fs, %s output tokens",
            time.monotonic() - start,
            response.usage.output_tokens if response.usage else None,
        )
        return text
