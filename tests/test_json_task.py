"""Tests for multipath/json_task.py."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from multipath.json_task import (
    DEFAULT_RETRY_INSTRUCTION,
    extract_json_text,
    parse_json_object,
    run_json_task,
    sanitize_json_text,
)
from multipath.reasoners.base import ReasonerHttpError, ReasonerMalformedOutput, ReasonerTimeout
from tests.conftest import MockReasoner


def test_extract_prefers_fenced_block():
    raw = 'Sure, here it is:\n```json\n{"a": 1}\n```\nAnything else?'
    assert extract_json_text(raw) == '{"a": 1}'


def test_extract_fence_without_language_tag():
    assert extract_json_text('```\n{"b": 2}\n```') == '{"b": 2}'


def test_extract_slices_outer_braces():
    raw = 'The answer is {"a": {"b": 1}} as requested.'
    assert extract_json_text(raw) == '{"a": {"b": 1}}'


def test_extract_returns_trimmed_text_without_braces():
    assert extract_json_text("  no json here  ") == "no json here"


def test_sanitize_drops_trailing_commas():
    assert sanitize_json_text('{"a": [1, 2,], }') == '{"a": [1, 2]}'


def test_sanitize_strips_bom_and_control_chars():
    assert sanitize_json_text('\ufeff{"a": "x\x01y"}') == '{"a": "xy"}'


def test_sanitize_keeps_newlines_and_tabs():
    assert sanitize_json_text('{\n\t"a": 1\n}') == '{\n\t"a": 1\n}'


def test_parse_json_object_handles_fence_and_trailing_comma():
    raw = '```json\n{"hypothesis": "ship it", "next_steps": ["a", "b",],}\n```'
    assert parse_json_object(raw) == {"hypothesis": "ship it", "next_steps": ["a", "b"]}


def test_parse_json_object_accepts_raw_newlines_in_strings():
    raw = '{"test_plan": "week one\nweek two", "why": "tabs\there"}'
    assert parse_json_object(raw) == {"test_plan": "week one\nweek two", "why": "tabs\there"}


def test_parse_json_object_rejects_non_objects():
    assert parse_json_object("[1, 2, 3]") is None
    assert parse_json_object('"just a string"') is None
    assert parse_json_object("I cannot answer that.") is None


async def test_run_json_task_single_call_on_valid_reply():
    backend = MockReasoner(reply='{"ok": true}')
    result = await run_json_task(backend, "system", "user")
    assert result == {"ok": True}
    assert backend.complete.call_count == 1


async def test_run_json_task_multiline_value_needs_no_retry():
    backend = MockReasoner(reply='{"test_plan": "week one\nweek two", "why": "x"}')
    result = await run_json_task(backend, "system", "user")
    assert result["test_plan"] == "week one\nweek two"
    assert backend.complete.call_count == 1


async def test_run_json_task_retries_once_with_instruction():
    backend = MockReasoner()
    backend.complete = AsyncMock(side_effect=["not json at all", '{"ok": 1}'])

    result = await run_json_task(backend, "system", "user prompt", retry_instruction="STRICT JSON")

    assert result == {"ok": 1}
    assert backend.complete.call_count == 2
    retry_user_prompt = backend.complete.call_args_list[1].args[1]
    assert retry_user_prompt.startswith("user prompt")
    assert retry_user_prompt.endswith("STRICT JSON")


async def test_run_json_task_gives_up_after_two_calls():
    backend = MockReasoner()
    backend.complete = AsyncMock(side_effect=["nope", "still nope", '{"never": "reached"}'])

    with pytest.raises(ReasonerMalformedOutput) as excinfo:
        await run_json_task(backend, "system", "user")

    assert backend.complete.call_count == 2
    assert excinfo.value.raw_text == "still nope"


async def test_run_json_task_array_reply_counts_as_malformed():
    backend = MockReasoner(reply="[1, 2]")
    with pytest.raises(ReasonerMalformedOutput):
        await run_json_task(backend, "system", "user")
    assert backend.complete.call_count == 2


async def test_run_json_task_default_retry_instruction():
    backend = MockReasoner()
    backend.complete = AsyncMock(side_effect=["bad", "{}"])
    await run_json_task(backend, "system", "user")
    assert DEFAULT_RETRY_INSTRUCTION in backend.complete.call_args_list[1].args[1]


async def test_run_json_task_timeout_is_not_retried():
    backend = MockReasoner()

    async def hang(*args, **kwargs):
        await asyncio.sleep(9999)

    backend.complete = AsyncMock(side_effect=hang)

    with pytest.raises(ReasonerTimeout) as excinfo:
        await run_json_task(backend, "system", "user", timeout_sec=0.05)

    assert backend.complete.call_count == 1
    assert excinfo.value.timeout_sec == 0.05


async def test_run_json_task_http_error_propagates_unretried():
    backend = MockReasoner()
    backend.complete = AsyncMock(side_effect=ReasonerHttpError(503, "overloaded"))

    with pytest.raises(ReasonerHttpError) as excinfo:
        await run_json_task(backend, "system", "user")

    assert excinfo.value.status == 503
    assert backend.complete.call_count == 1


def test_error_types_are_distinguishable():
    assert "HTTP 429" in str(ReasonerHttpError(429, "rate limited"))
    assert "connection error" in str(ReasonerHttpError(None, "refused"))
    assert "30s" in str(ReasonerTimeout(30))
