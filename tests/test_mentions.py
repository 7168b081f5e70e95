"""Tests for multipath/mentions.py."""

from datetime import datetime, timedelta, timezone
from pathlib import Path as FsPath
from unittest.mock import AsyncMock

import pytest

from multipath.forum import ForumComment
from multipath.mentions import (
    BATCH_SIZE,
    MAX_ATTEMPTS,
    MAX_PUBLISH_LENGTH,
    MentionTask,
    PublishTask,
    TaskStore,
    dispatch_due,
    list_publish_tasks,
    next_retry_at,
    poll_mentions,
    publish_reply,
    queue_metrics,
    retry_publish,
    retry_task,
)
from multipath.models import Status
from multipath.reply import GeneratedReply, ReplyUnavailable

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeForum:
    def __init__(self, comments: list[ForumComment]) -> None:
        self.comments = comments
        self.cursors: list[str] = []
        self.reply = AsyncMock(return_value={"ok": True})

    async def list_mentions(self, since_iso: str, mention_target: str) -> list[ForumComment]:
        self.cursors.append(since_iso)
        return self.comments


def _task(n: int, **kwargs) -> MentionTask:
    return MentionTask(
        dedupe_key=f"t{n}:c{n}:@secondme",
        thread_id=f"t{n}",
        comment_id=f"c{n}",
        content=f"@secondme question number {n} about pricing",
        next_run_at=NOW - timedelta(minutes=1),
        created_at=NOW - timedelta(minutes=10 - n),
        **kwargs,
    )


async def _ok_reply(task: MentionTask) -> GeneratedReply:
    return GeneratedReply(text=f"answer for {task.comment_id}", synthesis={"summary": "s"}, evaluation=None, reports={})


@pytest.fixture
def store(tmp_path: FsPath) -> TaskStore:
    return TaskStore(tmp_path / "tasks.json")


@pytest.mark.parametrize("attempts, minutes", [(1, 2), (2, 4), (3, 8), (4, 16), (5, 30), (9, 30)])
def test_next_retry_at_backoff(attempts, minutes):
    assert next_retry_at(attempts, NOW) == NOW + timedelta(minutes=minutes)


async def test_poll_enqueues_and_skips(store):
    forum = FakeForum([
        ForumComment("c1", "t1", "@secondme should we raise prices this quarter?", "u1", "2026-03-01T10:00:00Z"),
        ForumComment("c2", "t1", "@secondme hi", "u2", "2026-03-01T10:05:00Z"),
        ForumComment("c3", "t2", "@secondme https://example.com/x", "u3", "2026-03-01T10:06:00Z"),
        ForumComment("c4", "t3", "no mention in this one at all", "u4", "2026-03-01T11:00:00Z"),
    ])

    summary = await poll_mentions(forum, store, "@secondme")

    assert summary["fetched"] == 4
    assert summary["enqueued"] == 1
    assert summary["skipped_low_value"] == 2
    assert summary["cursor"] == "2026-03-01T10:00:00+00:00"
    assert [t.comment_id for t in store.tasks.values()] == ["c1"]


async def test_poll_deduplicates_and_advances_cursor(store, tmp_path):
    comment = ForumComment("c1", "t1", "@SecondMe what should I build next month?", None, "2026-03-01T10:00:00Z")
    forum = FakeForum([comment])

    await poll_mentions(forum, store, "@secondme")
    second = await poll_mentions(forum, store, "@secondme")

    assert second["enqueued"] == 0
    assert len(store.tasks) == 1
    assert forum.cursors[1] == "2026-03-01T10:00:00+00:00"
    reloaded = TaskStore(tmp_path / "tasks.json")
    assert reloaded.last_seen_at == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    assert len(reloaded.tasks) == 1


async def test_dispatch_success(store):
    task = _task(1)
    store.upsert(task)
    forum = FakeForum([])

    summary = await dispatch_due(store, forum, _ok_reply, now=NOW)

    assert summary == {"fetched": 1, "processed": 1, "succeeded": 1}
    forum.reply.assert_awaited_once_with("t1", "c1", "answer for c1")
    assert task.status == Status.DONE
    assert task.result["text"] == "answer for c1"


async def test_dispatch_failure_backs_off(store):
    task = _task(1)
    store.upsert(task)
    generate = AsyncMock(side_effect=RuntimeError("no reports (token=abc)"))

    summary = await dispatch_due(store, FakeForum([]), generate, now=NOW)

    assert summary == {"fetched": 1, "processed": 1, "succeeded": 0}
    assert task.status == Status.FAILED
    assert task.attempts == 1
    assert task.next_run_at == NOW + timedelta(minutes=2)
    assert "abc" not in task.result["error"]
    assert not task.is_due(NOW + timedelta(minutes=1))
    assert task.is_due(NOW + timedelta(minutes=3))


async def test_dispatch_stops_after_max_attempts(store):
    task = _task(1, attempts=MAX_ATTEMPTS, status=Status.FAILED)
    store.upsert(task)

    summary = await dispatch_due(store, FakeForum([]), _ok_reply, now=NOW + timedelta(days=1))

    assert summary["fetched"] == 0


async def test_dispatch_publish_failure_counts_as_failure(store):
    store.upsert(_task(1))
    forum = FakeForum([])
    forum.reply = AsyncMock(side_effect=RuntimeError("forum down"))

    summary = await dispatch_due(store, forum, _ok_reply, now=NOW)

    assert summary["succeeded"] == 0
    assert next(iter(store.tasks.values())).status == Status.FAILED


async def test_dispatch_batch_limit_oldest_first(store):
    for n in range(5):
        store.upsert(_task(n))

    summary = await dispatch_due(store, FakeForum([]), _ok_reply, now=NOW)

    assert summary["processed"] == BATCH_SIZE
    done = sorted(t.comment_id for t in store.tasks.values() if t.status == Status.DONE)
    assert done == ["c0", "c1", "c2"]


def test_retry_task(store):
    task = _task(1, status=Status.FAILED, attempts=2)
    store.upsert(task)

    retried = retry_task(store, task.id, now=NOW)

    assert retried.status == Status.PENDING
    assert retried.next_run_at == NOW
    assert retried.attempts == 2


def test_retry_rejects_non_failed_and_unknown(store):
    task = _task(1)
    store.upsert(task)
    with pytest.raises(ValueError):
        retry_task(store, task.id)
    with pytest.raises(KeyError):
        retry_task(store, "missing")


def test_task_round_trips_through_store(store, tmp_path):
    task = _task(3, status=Status.FAILED, attempts=1)
    store.upsert(task)
    store.save()

    loaded = TaskStore(tmp_path / "tasks.json").get(task.id)

    assert loaded == task


async def test_dispatch_last_attempt_publishes_fallback(store):
    task = _task(1, attempts=MAX_ATTEMPTS - 1, status=Status.FAILED)
    store.upsert(task)
    forum = FakeForum([])
    generate = AsyncMock(side_effect=ReplyUnavailable("Not enough path reports"))

    summary = await dispatch_due(store, forum, generate, now=NOW, fallback_text="FALLBACK")

    assert summary["succeeded"] == 1
    forum.reply.assert_awaited_once_with("t1", "c1", "FALLBACK")
    assert task.status == Status.DONE
    assert task.attempts == MAX_ATTEMPTS
    assert task.result == {"text": "FALLBACK", "fallback": True, "error": "Not enough path reports"}


async def test_dispatch_early_failure_keeps_fallback_back(store):
    store.upsert(_task(1))
    forum = FakeForum([])

    await dispatch_due(store, forum, AsyncMock(side_effect=ReplyUnavailable("x")), now=NOW, fallback_text="FALLBACK")

    forum.reply.assert_not_awaited()


async def test_dispatch_fallback_not_used_for_publish_failures(store):
    task = _task(1, attempts=MAX_ATTEMPTS - 1, status=Status.FAILED)
    store.upsert(task)
    forum = FakeForum([])
    forum.reply = AsyncMock(side_effect=RuntimeError("forum down"))

    await dispatch_due(store, forum, _ok_reply, now=NOW, fallback_text="FALLBACK")

    assert forum.reply.await_count == 1
    assert task.status == Status.FAILED


async def test_dispatch_fallback_publish_failure_stays_failed(store):
    task = _task(1, attempts=MAX_ATTEMPTS - 1, status=Status.FAILED)
    store.upsert(task)
    forum = FakeForum([])
    forum.reply = AsyncMock(side_effect=RuntimeError("forum down"))

    summary = await dispatch_due(store, forum, AsyncMock(side_effect=ReplyUnavailable("x")), now=NOW, fallback_text="F")

    assert summary["succeeded"] == 0
    assert task.status == Status.FAILED
    assert task.result == {"error": "x"}


def test_queue_metrics_counts_window(store):
    store.upsert(_task(1, status=Status.DONE))
    store.upsert(_task(2, status=Status.FAILED))
    store.upsert(_task(3))
    old = _task(4, status=Status.DONE)
    old.created_at = NOW - timedelta(days=3)
    store.upsert(old)

    day = queue_metrics(store, "24h", now=NOW)
    week = queue_metrics(store, "7D", now=NOW)

    assert day == {
        "range": "24h",
        "since": (NOW - timedelta(hours=24)).isoformat(),
        "total": 3,
        "pending": 1,
        "running": 0,
        "done": 1,
        "failed": 1,
    }
    assert week["range"] == "7d"
    assert week["total"] == 4
    assert week["done"] == 2


def test_queue_metrics_unknown_window_is_a_day(store):
    assert queue_metrics(store, "1y", now=NOW)["range"] == "24h"


async def test_publish_reply_success(store, tmp_path):
    forum = FakeForum([])

    task = await publish_reply(store, forum, " t9 ", "c9", "  Thanks, here is more detail.  ")

    forum.reply.assert_awaited_once_with("t9", "c9", "Thanks, here is more detail.")
    assert task.status == Status.DONE
    assert task.attempts == 1
    assert task.result == {"upstream": {"ok": True}}
    assert TaskStore(tmp_path / "tasks.json").get_publish(task.id).status == Status.DONE


@pytest.mark.parametrize(
    "thread_id, comment_id, content, message",
    [
        ("", "c1", "hello", "must not be empty"),
        ("t1", "  ", "hello", "must not be empty"),
        ("t1", "c1", "   ", "must not be empty"),
        ("t1", "c1", "x" * (MAX_PUBLISH_LENGTH + 1), "must not exceed 4000"),
    ],
)
async def test_publish_reply_validates_input(store, thread_id, comment_id, content, message):
    forum = FakeForum([])
    with pytest.raises(ValueError, match=message):
        await publish_reply(store, forum, thread_id, comment_id, content)
    forum.reply.assert_not_awaited()
    assert store.publish_tasks == {}


async def test_publish_failure_then_retry(store):
    forum = FakeForum([])
    forum.reply = AsyncMock(side_effect=[RuntimeError("forum down password=hunter2"), {"id": "r1"}])

    failed = await publish_reply(store, forum, "t1", "c1", "hello there")
    assert failed.status == Status.FAILED
    assert "hunter2" not in failed.result["error"]

    retried = await retry_publish(store, forum, failed.id)

    assert retried.status == Status.DONE
    assert retried.attempts == 2
    assert retried.result == {"upstream": {"id": "r1"}}
    assert forum.reply.await_count == 2


async def test_retry_publish_rejects_done_and_unknown(store):
    forum = FakeForum([])
    done = await publish_reply(store, forum, "t1", "c1", "hello there")
    with pytest.raises(ValueError, match="Only failed"):
        await retry_publish(store, forum, done.id)
    with pytest.raises(KeyError):
        await retry_publish(store, forum, "missing")


def test_list_publish_tasks_filters_and_pages(store):
    for n in range(5):
        task = PublishTask(thread_id=f"t{n}", comment_id=f"c{n}", content=f"reply about pricing {n}")
        task.created_at = NOW - timedelta(minutes=10 - n)
        task.status = Status.FAILED if n % 2 else Status.DONE
        store.publish_tasks[task.id] = task

    failed = list_publish_tasks(store, status=Status.FAILED)
    assert failed["total"] == 2
    assert [i["thread_id"] for i in failed["items"]] == ["t3", "t1"]

    assert list_publish_tasks(store, query="PRICING 4")["total"] == 1

    page = list_publish_tasks(store, page=2, page_size=2)
    assert page["total"] == 5
    assert [i["thread_id"] for i in page["items"]] == ["t2", "t1"]
    assert list_publish_tasks(store, page_size=500)["page_size"] == 50
