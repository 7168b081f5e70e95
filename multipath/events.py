"""Typed orchestrator events and the single-producer channel that carries them."""

import asyncio
import json
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

EVENT_NAMES = frozenset({
    "session",
    "path_status",
    "debate_status",
    "debate_round",
    "judge_round",
    "path_report",
    "synthesis",
    "evaluation",
    "final_answer",
    "error",
    "done",
})


@dataclass(frozen=True)
class OrchestratorEvent:
    event: str
    data: dict[str, Any]

    def __post_init__(self) -> None:
        if self.event not in EVENT_NAMES:
            raise ValueError(f"Unknown event name: {self.event!r}")


_BEARER_RE = re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/=]+", re.IGNORECASE)
_SECRET_KV_RE = re.compile(r"(token|secret|password)=([^\s&]+)", re.IGNORECASE)
_MAX_MESSAGE_LEN = 220


def sanitize_message(error: BaseException | str) -> str:
    """Mask credentials in an error message before it leaves the process."""
    if isinstance(error, BaseException):
        raw = str(error) or type(error).__name__
    else:
        raw = error
    masked = _BEARER_RE.sub("Bearer ***", raw)
    masked = _SECRET_KV_RE.sub(r"\1=***", masked)
    return masked[:_MAX_MESSAGE_LEN]


def format_sse(event: OrchestratorEvent) -> str:
    """Frame one event as a server-sent-events block."""
    payload = json.dumps(event.data, ensure_ascii=False, default=str)
    return f"event: {event.event}\ndata: {payload}\n\n"


class EventStream:
    """Ordered, unbuffered event channel for one request.

    The orchestrator is the only producer. ``emit`` never coalesces: every
    call enqueues exactly one event. Consumers iterate with ``async for``
    until ``close`` is called. ``history`` keeps every emitted event for
    callers that only need the outcome (tests, non-streaming replies).
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.history: list[OrchestratorEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: str, data: dict[str, Any]) -> OrchestratorEvent:
        if self._closed:
            raise RuntimeError("Cannot emit on a closed event stream")
        item = OrchestratorEvent(event, data)
        self.history.append(item)
        self._queue.put_nowait(item)
        return item

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def names(self) -> list[str]:
        return [e.event for e in self.history]

    async def __aiter__(self) -> AsyncIterator[OrchestratorEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
