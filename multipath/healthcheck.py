"""Reasoner health check: one JSON round trip before a run starts.

The ping goes through ``run_json_task`` with the same retry policy every
debate role uses. A backend that answers but cannot produce a JSON object
is reported unhealthy, since no coach, judge or report call would succeed
against it either.
"""

import logging
import time
from dataclasses import dataclass

from multipath.events import sanitize_message
from multipath.json_task import run_json_task
from multipath.reasoners.base import ReasonerBackend

logger = logging.getLogger(__name__)

_PING_SYSTEM = "You are a connectivity check for a JSON-only pipeline. Output one JSON object and nothing else."
_PING_PROMPT = 'Reply with exactly this JSON object: {"ok": true}'
_TIMEOUT_SEC = 15.0


@dataclass
class HealthReport:
    backend: str
    model: str
    ok: bool
    error: str = ""
    latency_ms: int | None = None


async def check_reasoner(backend: ReasonerBackend) -> HealthReport:
    """Ask ``backend`` for ``{"ok": true}`` and report whether it complied."""
    started = time.perf_counter()
    try:
        reply = await run_json_task(backend, _PING_SYSTEM, _PING_PROMPT, timeout_sec=_TIMEOUT_SEC)
    except Exception as exc:
        logger.debug("Health check for %s failed: %s", backend.name(), exc)
        return HealthReport(backend.name(), backend.model_string(), False, sanitize_message(exc))

    latency_ms = int((time.perf_counter() - started) * 1000)
    if not reply.get("ok"):
        return HealthReport(
            backend.name(),
            backend.model_string(),
            False,
            f"Unexpected health reply: {reply!r}"[:200],
            latency_ms,
        )
    logger.debug("Reasoner %s healthy in %d ms", backend.name(), latency_ms)
    return HealthReport(backend.name(), backend.model_string(), True, latency_ms=latency_ms)
