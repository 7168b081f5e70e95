"""Mention task queue: poll the forum, dispatch replies, back off on failure.

Also holds the operator side of the queue: per-window metrics and manual
publish tasks that can be retried after a failed post.
"""

import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path as FsPath
from typing import Any, Protocol

from multipath.events import sanitize_message
from multipath.forum import ForumComment
from multipath.models import Status
from multipath.reply import GeneratedReply, is_low_value_content

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
BATCH_SIZE = 3
MAX_BACKOFF_MINUTES = 30
MAX_PUBLISH_LENGTH = 4000
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50

METRIC_WINDOWS = {"24h": timedelta(hours=24), "7d": timedelta(days=7)}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def next_retry_at(attempts: int, now: datetime) -> datetime:
    """Exponential backoff in minutes, capped at 30."""
    minutes = min(2 ** attempts, MAX_BACKOFF_MINUTES)
    return now + timedelta(minutes=minutes)


@dataclass
class MentionTask:
    dedupe_key: str
    thread_id: str
    comment_id: str
    content: str
    author_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: Status = Status.PENDING
    attempts: int = 0
    next_run_at: datetime = field(default_factory=_now)
    created_at: datetime = field(default_factory=_now)
    result: dict[str, Any] | None = None

    def is_due(self, now: datetime) -> bool:
        return (
            self.status in (Status.PENDING, Status.FAILED)
            and self.attempts < MAX_ATTEMPTS
            and self.next_run_at <= now
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["next_run_at"] = self.next_run_at.isoformat()
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MentionTask":
        return cls(
            id=data["id"],
            dedupe_key=data["dedupe_key"],
            thread_id=data["thread_id"],
            comment_id=data["comment_id"],
            content=data["content"],
            author_id=data.get("author_id"),
            status=Status(data.get("status", Status.PENDING.value)),
            attempts=int(data.get("attempts", 0)),
            next_run_at=datetime.fromisoformat(data["next_run_at"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            result=data.get("result"),
        )


@dataclass
class PublishTask:
    """A reply posted by hand from the CLI, kept so a failed post can be retried."""

    thread_id: str
    comment_id: str
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: Status = Status.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    result: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PublishTask":
        return cls(
            id=data["id"],
            thread_id=data["thread_id"],
            comment_id=data["comment_id"],
            content=data["content"],
            status=Status(data.get("status", Status.PENDING.value)),
            attempts=int(data.get("attempts", 0)),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            result=data.get("result"),
        )


class TaskStore:
    """Mention tasks, manual publish tasks and the poll cursor, kept in one JSON file."""

    def __init__(self, file_path: FsPath) -> None:
        self._file_path = file_path
        self.last_seen_at: datetime = _EPOCH
        self.tasks: dict[str, MentionTask] = {}
        self.publish_tasks: dict[str, PublishTask] = {}
        self.load()

    def load(self) -> None:
        if not self._file_path.exists():
            return
        raw = json.loads(self._file_path.read_text(encoding="utf-8"))
        self.last_seen_at = datetime.fromisoformat(raw.get("last_seen_at", _EPOCH.isoformat()))
        self.tasks = {t["id"]: MentionTask.from_dict(t) for t in raw.get("tasks", [])}
        self.publish_tasks = {t["id"]: PublishTask.from_dict(t) for t in raw.get("publish_tasks", [])}

    def save(self) -> None:
        self._file_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "last_seen_at": self.last_seen_at.isoformat(),
            "tasks": [t.to_dict() for t in self.tasks.values()],
            "publish_tasks": [t.to_dict() for t in self.publish_tasks.values()],
        }
        self._file_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def get(self, task_id: str) -> MentionTask:
        if task_id not in self.tasks:
            raise KeyError(f"Task not found: {task_id}")
        return self.tasks[task_id]

    def get_publish(self, task_id: str) -> PublishTask:
        if task_id not in self.publish_tasks:
            raise KeyError(f"Publish task not found: {task_id}")
        return self.publish_tasks[task_id]

    def upsert(self, task: MentionTask) -> bool:
        """Insert unless a task with the same dedupe key exists. Returns True if inserted."""
        if any(t.dedupe_key == task.dedupe_key for t in self.tasks.values()):
            return False
        self.tasks[task.id] = task
        return True

    def due(self, now: datetime, limit: int = BATCH_SIZE) -> list[MentionTask]:
        ready = [t for t in self.tasks.values() if t.is_due(now)]
        ready.sort(key=lambda t: t.created_at)
        return ready[:limit]


class MentionSource(Protocol):
    async def list_mentions(self, since_iso: str, mention_target: str) -> list[ForumComment]: ...


class ReplyPublisher(Protocol):
    async def reply(self, thread_id: str, comment_id: str, content: str) -> Any: ...


ReplyGenerator = Callable[[MentionTask], Awaitable[GeneratedReply]]


def _parse_created_at(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


async def poll_mentions(
    source: MentionSource,
    store: TaskStore,
    mention_target: str,
    min_content_length: int = 12,
) -> dict[str, Any]:
    """Enqueue new mentions since the stored cursor and advance it."""
    comments = await source.list_mentions(store.last_seen_at.isoformat(), mention_target)

    enqueued = 0
    skipped_low_value = 0
    newest = store.last_seen_at
    for comment in comments:
        if mention_target.lower() not in comment.content.lower():
            continue
        if is_low_value_content(comment.content, mention_target, min_content_length):
            skipped_low_value += 1
            continue

        task = MentionTask(
            dedupe_key=f"{comment.thread_id}:{comment.id}:{mention_target}",
            thread_id=comment.thread_id,
            comment_id=comment.id,
            author_id=comment.author_id,
            content=comment.content,
        )
        if store.upsert(task):
            enqueued += 1

        created = _parse_created_at(comment.created_at)
        if created and created > newest:
            newest = created

    store.last_seen_at = newest
    store.save()
    logger.info("Polled %d mention(s): %d enqueued, %d low value", len(comments), enqueued, skipped_low_value)
    return {
        "cursor": newest.isoformat(),
        "fetched": len(comments),
        "enqueued": enqueued,
        "skipped_low_value": skipped_low_value,
    }


async def _publish_fallback(task: MentionTask, publisher: ReplyPublisher, fallback_text: str) -> bool:
    try:
        await publisher.reply(task.thread_id, task.comment_id, fallback_text)
    except Exception as exc:
        logger.warning("Fallback reply for mention task %s failed: %s", task.id, sanitize_message(exc))
        return False
    task.status = Status.DONE
    task.result = {"text": fallback_text, "fallback": True, "error": (task.result or {}).get("error")}
    logger.info("Mention task %s answered with the fallback reply", task.id)
    return True


async def dispatch_due(
    store: TaskStore,
    publisher: ReplyPublisher,
    generate: ReplyGenerator,
    now: datetime | None = None,
    fallback_text: str | None = None,
) -> dict[str, int]:
    """Generate and publish replies for up to BATCH_SIZE due tasks.

    A failed task is rescheduled with exponential backoff; after
    MAX_ATTEMPTS failures it is no longer picked up. When generation fails
    on the last attempt and ``fallback_text`` is given, that text is
    published instead so the mention still gets an answer.
    """
    now = now or _now()
    tasks = store.due(now)
    processed = 0
    succeeded = 0

    for task in tasks:
        task.status = Status.RUNNING
        store.save()
        processed += 1
        generated: GeneratedReply | None = None
        try:
            generated = await generate(task)
            await publisher.reply(task.thread_id, task.comment_id, generated.text)
        except Exception as exc:
            task.attempts += 1
            task.status = Status.FAILED
            task.next_run_at = next_retry_at(task.attempts, now)
            task.result = {"error": sanitize_message(exc)}
            logger.warning(
                "Mention task %s failed (attempt %d/%d): %s",
                task.id, task.attempts, MAX_ATTEMPTS, task.result["error"],
            )
            if generated is None and fallback_text and task.attempts >= MAX_ATTEMPTS:
                if await _publish_fallback(task, publisher, fallback_text):
                    succeeded += 1
        else:
            task.status = Status.DONE
            task.result = {
                "text": generated.text,
                "synthesis": generated.synthesis,
                "evaluation": generated.evaluation,
            }
            succeeded += 1
        store.save()

    return {"fetched": len(tasks), "processed": processed, "succeeded": succeeded}


def retry_task(store: TaskStore, task_id: str, now: datetime | None = None) -> MentionTask:
    """Put a failed task back in the queue, due immediately.

    Raises:
        KeyError: Unknown task id.
        ValueError: The task is not in the failed state.
    """
    task = store.get(task_id)
    if task.status != Status.FAILED:
        raise ValueError(f"Only failed tasks can be retried (task is {task.status.value})")
    task.status = Status.PENDING
    task.next_run_at = now or _now()
    task.result = None
    store.save()
    return task


def queue_metrics(store: TaskStore, window: str = "24h", now: datetime | None = None) -> dict[str, Any]:
    """Count mention tasks created inside ``window`` ("24h" or "7d"), per status.

    Any other window falls back to 24 hours.
    """
    window = window.lower()
    if window not in METRIC_WINDOWS:
        window = "24h"
    since = (now or _now()) - METRIC_WINDOWS[window]
    recent = [t for t in store.tasks.values() if t.created_at >= since]

    counts = {status.value: 0 for status in (Status.PENDING, Status.RUNNING, Status.DONE, Status.FAILED)}
    for task in recent:
        counts[task.status.value] = counts.get(task.status.value, 0) + 1
    return {"range": window, "since": since.isoformat(), "total": len(recent), **counts}


def _clean_publish_input(thread_id: str, comment_id: str, content: str) -> tuple[str, str, str]:
    thread_id, comment_id, content = thread_id.strip(), comment_id.strip(), content.strip()
    if not thread_id or not comment_id or not content:
        raise ValueError("thread id, comment id and content must not be empty")
    if len(content) > MAX_PUBLISH_LENGTH:
        raise ValueError(f"content must not exceed {MAX_PUBLISH_LENGTH} characters (got {len(content)})")
    return thread_id, comment_id, content


async def _attempt_publish(store: TaskStore, publisher: ReplyPublisher, task: PublishTask) -> PublishTask:
    task.attempts += 1
    try:
        upstream = await publisher.reply(task.thread_id, task.comment_id, task.content)
    except Exception as exc:
        task.status = Status.FAILED
        task.result = {"error": sanitize_message(exc)}
        logger.warning("Publish task %s failed (attempt %d): %s", task.id, task.attempts, task.result["error"])
    else:
        task.status = Status.DONE
        task.result = {"upstream": upstream}
        logger.info("Publish task %s posted to thread %s", task.id, task.thread_id)
    task.updated_at = _now()
    store.save()
    return task


async def publish_reply(
    store: TaskStore,
    publisher: ReplyPublisher,
    thread_id: str,
    comment_id: str,
    content: str,
) -> PublishTask:
    """Post a hand-written reply and record it as a publish task.

    A failed post leaves the task in the failed state for ``retry_publish``.

    Raises:
        ValueError: Empty fields or content over MAX_PUBLISH_LENGTH.
    """
    thread_id, comment_id, content = _clean_publish_input(thread_id, comment_id, content)
    task = PublishTask(thread_id=thread_id, comment_id=comment_id, content=content)
    store.publish_tasks[task.id] = task
    store.save()
    return await _attempt_publish(store, publisher, task)


async def retry_publish(store: TaskStore, publisher: ReplyPublisher, task_id: str) -> PublishTask:
    """Post a failed publish task again.

    Raises:
        KeyError: Unknown task id.
        ValueError: The task is not in the failed state.
    """
    task = store.get_publish(task_id)
    if task.status != Status.FAILED:
        raise ValueError(f"Only failed publish tasks can be retried (task is {task.status.value})")
    return await _attempt_publish(store, publisher, task)


def list_publish_tasks(
    store: TaskStore,
    status: Status | None = None,
    query: str | None = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> dict[str, Any]:
    """Newest first, filtered by status and a case-insensitive substring match."""
    page = max(1, page)
    page_size = min(MAX_PAGE_SIZE, max(1, page_size))
    needle = (query or "").strip().lower()

    rows = [
        t for t in store.publish_tasks.values()
        if (status is None or t.status == status)
        and (not needle or any(needle in v.lower() for v in (t.thread_id, t.comment_id, t.content)))
    ]
    rows.sort(key=lambda t: t.created_at, reverse=True)
    start = (page - 1) * page_size
    return {
        "page": page,
        "page_size": page_size,
        "total": len(rows),
        "items": [t.to_dict() for t in rows[start:start + page_size]],
    }
