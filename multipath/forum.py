"""HTTP client for the forum that delivers mentions and accepts replies."""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class ForumError(Exception):
    """Raised when a forum API call fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


@dataclass
class ForumComment:
    id: str
    thread_id: str
    content: str
    author_id: str | None = None
    created_at: str | None = None


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _first(obj: dict[str, Any], *keys: str) -> str:
    for key in keys:
        found = _as_str(obj.get(key))
        if found:
            return found
    return ""


def comments_from_payload(payload: Any) -> list[ForumComment]:
    """Read comments from ``data.comments`` or ``comments``, tolerating field aliases.

    Items missing an id, thread id or content are dropped.
    """
    if not isinstance(payload, dict):
        return []
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    raw = data.get("comments")
    if not isinstance(raw, list):
        raw = payload.get("comments")
    if not isinstance(raw, list):
        return []

    comments: list[ForumComment] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        comment_id = _first(item, "id", "commentId")
        thread_id = _first(item, "threadId", "topicId", "postId")
        content = _first(item, "content", "body", "text")
        if not comment_id or not thread_id or not content:
            continue
        comments.append(ForumComment(
            id=comment_id,
            thread_id=thread_id,
            content=content,
            author_id=_first(item, "authorId", "userId") or None,
            created_at=_first(item, "createdAt", "created_at") or None,
        ))
    return comments


def _read_json(response: httpx.Response) -> Any:
    if not response.text:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"message": response.text}


class ForumClient:
    """Lists mentions and posts replies with a bearer token."""

    def __init__(
        self,
        base_url: str,
        token: str,
        list_path: str = "/mentions",
        reply_path: str = "/replies",
        timeout_sec: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ForumError("Missing FORUM_API_BASE_URL")
        if not token:
            raise ForumError("Missing FORUM_API_TOKEN")
        self._base_url = base_url.rstrip("/")
        self._list_path = list_path
        self._reply_path = reply_path
        self._timeout_sec = timeout_sec
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout_sec,
            transport=self._transport,
        )

    async def list_mentions(self, since_iso: str, mention_target: str) -> list[ForumComment]:
        try:
            async with self._client() as client:
                response = await client.get(
                    self._list_path,
                    params={"since": since_iso, "mention": mention_target},
                )
        except httpx.HTTPError as exc:
            raise ForumError(f"Forum list failed: {exc}") from exc

        payload = _read_json(response)
        if response.status_code >= 400:
            raise ForumError(f"Forum list failed: {response.status_code}", status=response.status_code)
        comments = comments_from_payload(payload)
        logger.info("Forum returned %d mention(s) since %s", len(comments), since_iso)
        return comments

    async def reply(self, thread_id: str, comment_id: str, content: str) -> Any:
        body = {"threadId": thread_id, "commentId": comment_id, "content": content}
        try:
            async with self._client() as client:
                response = await client.post(self._reply_path, json=body)
        except httpx.HTTPError as exc:
            raise ForumError(f"Forum reply failed: {exc}") from exc

        payload = _read_json(response)
        if response.status_code >= 400:
            raise ForumError(f"Forum reply failed: {response.status_code}", status=response.status_code)
        return payload
