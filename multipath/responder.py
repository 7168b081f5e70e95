"""Conversational responder: streamed chat replies with an evolving session id."""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

import httpx

from multipath.models import ResponderReply

logger = logging.getLogger(__name__)

EMPTY_REPLY_TEXT = "No streamed reply was received from the responder."

SessionCallback = Callable[[str], Awaitable[None]]


class ResponderError(Exception):
    """Raised when the responder cannot be reached or answers non-2xx."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class Responder(ABC):
    """The external conversational system answering each round."""

    @abstractmethod
    async def reply(
        self,
        message: str,
        session_id: str | None = None,
        on_session: SessionCallback | None = None,
    ) -> ResponderReply:
        """Send ``message`` and return the concatenated streamed reply.

        ``on_session`` is awaited each time the stream reports a session id
        different from the current one.

        Raises:
            ResponderError: On transport failure or a non-success status.
        """
        ...


def parse_stream_line(line: str) -> tuple[str | None, str] | None:
    """Decode one SSE line into ``(session_id, delta)``.

    Returns None for lines that carry nothing: non-``data:`` lines, ``[DONE]``,
    and malformed JSON.
    """
    trimmed = line.strip()
    if not trimmed.startswith("data:"):
        return None
    raw = trimmed[5:].strip()
    if not raw or raw == "[DONE]":
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    session_id = payload.get("sessionId") or data.get("sessionId")

    delta = ""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        choice_delta = choices[0].get("delta")
        if isinstance(choice_delta, dict):
            delta = choice_delta.get("content") or ""
    if not delta:
        delta = data.get("reply") or payload.get("reply") or payload.get("content") or ""

    return (str(session_id) if session_id else None), str(delta)


class SecondMeResponder(Responder):
    """SecondMe-style chat stream over HTTP server-sent events."""

    def __init__(
        self,
        base_url: str,
        access_token: str | None,
        stream_path: str = "/api/secondme/chat/stream",
        timeout_sec: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = base_url.rstrip("/") + stream_path
        self._access_token = access_token
        self._timeout_sec = timeout_sec
        self._transport = transport

    async def reply(
        self,
        message: str,
        session_id: str | None = None,
        on_session: SessionCallback | None = None,
    ) -> ResponderReply:
        headers = {"Content-Type": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        body = {"message": message, "session_id": session_id}

        parts: list[str] = []
        current_session = session_id
        try:
            async with httpx.AsyncClient(timeout=self._timeout_sec, transport=self._transport) as client:
                async with client.stream("POST", self._url, json=body, headers=headers) as response:
                    if response.status_code >= 400:
                        raise ResponderError(
                            f"Responder stream failed: HTTP {response.status_code}",
                            status=response.status_code,
                        )
                    async for line in response.aiter_lines():
                        decoded = parse_stream_line(line)
                        if decoded is None:
                            continue
                        new_session, delta = decoded
                        if new_session and new_session != current_session:
                            current_session = new_session
                            if on_session is not None:
                                await on_session(new_session)
                        if delta:
                            parts.append(delta)
        except httpx.TimeoutException as exc:
            raise ResponderError(f"Responder timed out after {self._timeout_sec:g}s") from exc
        except httpx.HTTPError as exc:
            raise ResponderError(f"Responder request failed: {exc}") from exc

        text = "".join(parts)
        if not text:
            logger.warning("Responder stream ended without any reply text")
            text = EMPTY_REPLY_TEXT
        return ResponderReply(text=text, session_id=current_session)
