"""Reasoner roles: coach, judge, path report, synthesis and evaluation.

Each role is one stateless JSON task. Everything the model needs to know about
earlier rounds is serialized into the user prompt here.
"""

import json
import math
from collections.abc import Mapping
from typing import Any

from config.config_loader import PromptsConfig
from multipath.json_task import DEFAULT_TIMEOUT_SEC, run_json_task
from multipath.models import (
    VERDICTS,
    CoachResult,
    DebateTurn,
    Evaluation,
    JsonObject,
    JudgeResult,
    Path,
    Synthesis,
)
from multipath.reasoners.base import ReasonerBackend


def to_string_list(value: Any) -> list[str]:
    """Keep only the string items of a list; anything else becomes []."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def to_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def clamp_score(value: Any) -> int:
    """Coerce a model-supplied score into [0, 100]. Non-numeric input scores 0."""
    if isinstance(value, bool):
        return 0
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(score):
        return 0
    return int(round(min(max(score, 0.0), 100.0)))


def normalize_verdict(value: Any) -> str:
    verdict = to_text(value).strip().lower()
    return verdict if verdict in VERDICTS else "revise"


def coach_from_json(path: Path, data: Mapping[str, Any]) -> CoachResult:
    return CoachResult(
        path=path,
        hypothesis=to_text(data.get("hypothesis")),
        why=to_text(data.get("why")),
        next_steps=to_string_list(data.get("next_steps")),
        test_plan=to_text(data.get("test_plan")),
        risk_guardrail=to_text(data.get("risk_guardrail")),
    )


def judge_from_json(path: Path, round_number: int, data: Mapping[str, Any]) -> JudgeResult:
    """Ingest judge output, coercing rather than rejecting bad fields."""
    return JudgeResult(
        path=path,
        round=round_number,
        round_score=clamp_score(data.get("round_score")),
        critical_gap=to_text(data.get("critical_gap")),
        next_constraint=to_text(data.get("next_constraint")),
        verdict=normalize_verdict(data.get("verdict")),
    )


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class DebateAgents:
    """Binds a reasoner backend to the prompt set used by every role."""

    def __init__(
        self,
        backend: ReasonerBackend,
        prompts: PromptsConfig,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
    ) -> None:
        self._backend = backend
        self._prompts = prompts
        self._timeout_sec = timeout_sec

    @property
    def backend(self) -> ReasonerBackend:
        return self._backend

    async def _task(self, system_prompt: str, user_prompt: str) -> JsonObject:
        return await run_json_task(
            self._backend,
            system_prompt,
            user_prompt,
            timeout_sec=self._timeout_sec,
            retry_instruction=self._prompts.json_retry,
        )

    async def coach(self, path: Path, question: str, round_number: int, context: str) -> CoachResult:
        system_prompt = self._prompts.coach.format(
            path=path.value,
            brief=self._prompts.path_briefs.get(path.value, ""),
        )
        user_prompt = "\n\n".join([
            f"task_input: {question}",
            f"round: {round_number}",
            f"context: {context}",
        ])
        data = await self._task(system_prompt, user_prompt)
        return coach_from_json(path, data)

    async def judge(
        self,
        path: Path,
        round_number: int,
        question: str,
        coach: CoachResult,
        responder_text: str,
        history: list[DebateTurn],
        constraint: str | None,
    ) -> JudgeResult:
        system_prompt = self._prompts.judge.format(path=path.value, round=round_number)
        user_prompt = _dump({
            "path": path.value,
            "round": round_number,
            "task_input": question,
            "coach": coach.to_dict(),
            "secondme": responder_text,
            "history": [t.to_dict() for t in history],
            "constraint": constraint,
        })
        data = await self._task(system_prompt, user_prompt)
        return judge_from_json(path, round_number, data)

    async def path_report(self, path: Path, turns: list[DebateTurn]) -> JsonObject:
        user_prompt = _dump({
            "path": path.value,
            "transcript": {"path": path.value, "turns": [t.to_dict() for t in turns]},
        })
        return await self._task(self._prompts.report, user_prompt)

    async def synthesize(self, reports: Mapping[Path, JsonObject]) -> Synthesis:
        user_prompt = _dump({p.value: r for p, r in reports.items()})
        data = await self._task(self._prompts.synthesis, user_prompt)
        return Synthesis(
            summary=to_text(data.get("summary")),
            consensus=to_string_list(data.get("consensus")),
            disagreements=to_string_list(data.get("disagreements")),
            recommendation=to_text(data.get("recommendation")),
        )

    async def evaluate(self, reports: Mapping[Path, JsonObject], synthesis: Synthesis) -> Evaluation:
        payload: dict[str, Any] = {p.value: r for p, r in reports.items()}
        payload["synthesis"] = synthesis.to_dict()
        data = await self._task(self._prompts.evaluation, _dump(payload))
        return Evaluation(
            score=clamp_score(data.get("score")),
            strengths=to_string_list(data.get("strengths")),
            weaknesses=to_string_list(data.get("weaknesses")),
            next_iteration=to_string_list(data.get("next_iteration")),
        )
