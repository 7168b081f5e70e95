"""JSON task runner: one reasoner call in, one validated JSON object out.

Model output is untrusted text. It may wrap the object in prose or markdown
fences, leave trailing commas, or answer with a sentence instead of JSON.
This module is the only place that text is turned into a ``dict``; callers
either get an object or one of the typed ``ReasonerError`` subclasses.
"""

import asyncio
import json
import logging
import re

from multipath.models import JsonObject
from multipath.reasoners.base import ReasonerBackend, ReasonerMalformedOutput, ReasonerTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 30.0

DEFAULT_RETRY_INSTRUCTION = (
    "IMPORTANT: your previous reply was not valid JSON. Reply with one strictly valid "
    "JSON object only: double-quoted keys and strings, no trailing commas, no markdown "
    "fences, no commentary."
)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
# C0 controls except \t \n \r, plus DEL
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def extract_json_text(raw: str) -> str:
    """Return the most JSON-looking slice of ``raw``.

    A fenced block wins; otherwise the span from the first ``{`` to the last
    ``}``; otherwise the trimmed text unchanged.
    """
    cleaned = raw.strip()
    if not cleaned:
        return cleaned

    fenced = _FENCE_RE.search(cleaned)
    if fenced and fenced.group(1):
        return fenced.group(1).strip()

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start >= 0 and end > start:
        return cleaned[start:end + 1]
    return cleaned


def sanitize_json_text(text: str) -> str:
    """Strip BOM and control characters, drop trailing commas before ``}``/``]``."""
    text = text.replace("\ufeff", "")
    text = _CONTROL_RE.sub("", text)
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def parse_json_object(raw: str) -> JsonObject | None:
    """Extract, sanitize and parse; None unless the result is a JSON object."""
    candidate = sanitize_json_text(extract_json_text(raw))
    try:
        # strict=False admits raw newlines and tabs inside string values
        parsed = json.loads(candidate, strict=False)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


async def _call_with_deadline(
    backend: ReasonerBackend,
    system_prompt: str,
    user_prompt: str,
    timeout_sec: float,
) -> str:
    try:
        return await asyncio.wait_for(
            backend.complete(system_prompt, user_prompt),
            timeout=timeout_sec,
        )
    except TimeoutError as exc:
        raise ReasonerTimeout(timeout_sec) from exc


async def run_json_task(
    backend: ReasonerBackend,
    system_prompt: str,
    user_prompt: str,
    timeout_sec: float = DEFAULT_TIMEOUT_SEC,
    retry_instruction: str = DEFAULT_RETRY_INSTRUCTION,
) -> JsonObject:
    """Call the reasoner and return the first JSON object in its reply.

    A reply that does not parse to an object is retried exactly once with
    ``retry_instruction`` appended to the user prompt. Transport failures are
    not retried.

    Raises:
        ReasonerTimeout: The call ran past ``timeout_sec``.
        ReasonerHttpError: The API answered with a non-success status.
        ReasonerMalformedOutput: Neither attempt produced a JSON object.
    """
    text = await _call_with_deadline(backend, system_prompt, user_prompt, timeout_sec)
    parsed = parse_json_object(text)
    if parsed is not None:
        return parsed

    logger.warning("Reasoner %s returned malformed JSON, retrying once", backend.name())
    retry_prompt = f"{user_prompt}\n\n{retry_instruction}"
    text = await _call_with_deadline(backend, system_prompt, retry_prompt, timeout_sec)
    parsed = parse_json_object(text)
    if parsed is not None:
        return parsed

    raise ReasonerMalformedOutput(text)
