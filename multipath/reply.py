"""Non-streaming replies for forum mentions, built on the full orchestrator."""

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from config.config_loader import PromptsConfig
from multipath.agents import DebateAgents
from multipath.context import RunContext
from multipath.models import JsonObject
from multipath.orchestrator import orchestrate
from multipath.persistence import GuardedSink, NullSink
from multipath.responder import Responder

logger = logging.getLogger(__name__)

DEFAULT_MAX_REPLY_LENGTH = 1200
DEFAULT_MIN_CONTENT_LENGTH = 12

_SUMMARIZED_MARKER = "\n\n[summarized]"
_DEFAULT_SUMMARY = "Start with a steady, executable path that can show verifiable results within 1-2 weeks."
_DEFAULT_RECOMMENDATION = "Validate on a small scope first, then expand investment based on results."
_DEFAULT_RISK = "The main risk is an oversized goal scattering execution; narrow the scope first."
_NEED_INFO = "Share your time window, current resources and success criteria and I can make this more precise."

_URL_ONLY_RE = re.compile(r"^(https?://\S+)(\s+https?://\S+)*$", re.IGNORECASE)


class ReplyUnavailable(Exception):
    """Raised when a run ends without a synthesis to build a reply from."""


@dataclass
class GeneratedReply:
    text: str
    synthesis: JsonObject
    evaluation: JsonObject | None
    reports: dict[str, JsonObject]


def _read_string(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def _pick_string(record: Mapping[str, Any], keys: Sequence[str]) -> str:
    for key in keys:
        found = _read_string(record.get(key))
        if found:
            return found
    return ""


def _pick_string_list(record: Mapping[str, Any], keys: Sequence[str], limit: int) -> list[str]:
    for key in keys:
        value = record.get(key)
        if not isinstance(value, list):
            continue
        items = [item.strip() for item in value if isinstance(item, str) and item.strip()]
        if items:
            return items[:limit]
    return []


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    kept = text[:max(0, max_length - len(_SUMMARIZED_MARKER))].rstrip()
    return kept + _SUMMARIZED_MARKER


def _strip_mention(content: str, mention_target: str) -> str:
    if not mention_target:
        return content
    return re.sub(re.escape(mention_target), "", content, flags=re.IGNORECASE).strip()


def is_low_value_content(
    content: str,
    mention_target: str,
    min_length: int = DEFAULT_MIN_CONTENT_LENGTH,
) -> bool:
    """True for empty, too short, URL-only or punctuation/digit-only comments."""
    cleaned = re.sub(r"\s+", " ", _strip_mention(content, mention_target)).strip()
    if not cleaned:
        return True
    if len(cleaned) < min_length:
        return True
    if _URL_ONLY_RE.match(cleaned):
        return True
    # Nothing but punctuation, symbols, digits and whitespace
    if not any(ch.isalpha() for ch in cleaned):
        return True
    return False


def build_structured_reply(
    synthesis: Mapping[str, Any],
    evaluation: Mapping[str, Any] | None,
    max_length: int = DEFAULT_MAX_REPLY_LENGTH,
) -> str:
    evaluation = evaluation or {}
    summary = _pick_string(synthesis, ["summary", "conclusion"]) or _DEFAULT_SUMMARY
    recommendation = _pick_string(synthesis, ["recommendation", "next_action"]) or _DEFAULT_RECOMMENDATION
    steps = _pick_string_list(synthesis, ["next_steps", "steps", "action_items"], 3)
    risks = _pick_string_list(evaluation, ["major_risks", "risks", "risk_points"], 2)
    score = _pick_string(evaluation, ["score", "overall_score"])

    lines = [f"Conclusion: {summary}", "Suggested steps:"]
    if steps:
        lines.extend(f"{i}. {step}" for i, step in enumerate(steps, start=1))
    else:
        lines.append(f"1. {recommendation}")
    risk_line = f"Risk reminder: {'; '.join(risks) or _DEFAULT_RISK}"
    if score:
        risk_line += f" (current evaluation score: {score})"
    lines.append(risk_line)
    lines.append(f"What I still need from you: {_NEED_INFO}")

    return truncate_text("\n".join(lines), max_length)


def build_fallback_reply(max_length: int = DEFAULT_MAX_REPLY_LENGTH) -> str:
    lines = [
        "Conclusion: your question was received and is being handled with the default flow.",
        "Suggested steps:",
        "1. Add your goal, time window and resource constraints.",
        "2. Say which metric matters most to you (speed, quality or risk).",
        "3. I will then compare three paths against that information.",
        "Risk reminder: there is not enough information yet; acting now may go in the wrong direction.",
        "What I still need from you: background, current data and acceptable cost.",
    ]
    return truncate_text("\n".join(lines), max_length)


async def generate_reply(
    question: str,
    agents: DebateAgents,
    responder: Responder,
    prompts: PromptsConfig,
    rounds: int,
    sink: GuardedSink | None = None,
    task_id: str | None = None,
    max_length: int = DEFAULT_MAX_REPLY_LENGTH,
) -> GeneratedReply:
    """Run the full pipeline for ``question`` without a live client.

    Raises:
        ReplyUnavailable: If the run produced no synthesis (missing path
            reports, a failed synthesis call, or an aborted run).
    """
    ctx = RunContext(
        question=question,
        agents=agents,
        responder=responder,
        sink=sink or GuardedSink(NullSink()),
        task_id=task_id,
    )
    state = await orchestrate(ctx, prompts, rounds)

    if state.synthesis is None:
        errors = [e.data.get("message") for e in ctx.events.history if e.event == "error"]
        failed = [p.value for p, s in state.per_path.items() if s.report is None]
        detail = errors[0] if errors else f"missing reports: {', '.join(failed) or 'none'}"
        raise ReplyUnavailable(f"Not enough path reports to build reply ({detail})")

    synthesis = state.synthesis.to_dict()
    evaluation = state.evaluation.to_dict() if state.evaluation else None
    reports: dict[str, JsonObject] = {p.value: r for p, r in ctx.reports().items()}
    logger.info("Generated mention reply for run %s", ctx.run_id)
    return GeneratedReply(
        text=build_structured_reply(synthesis, evaluation, max_length),
        synthesis=synthesis,
        evaluation=evaluation,
        reports=reports,
    )
