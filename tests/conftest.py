"""Shared pytest fixtures."""

import json
import re
from collections.abc import Callable
from pathlib import Path as FsPath
from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    AppConfig,
    DefaultsConfig,
    ForumConfig,
    PromptsConfig,
    ReasonerConfig,
    ResponderConfig,
)
from multipath.agents import DebateAgents
from multipath.context import RunContext
from multipath.models import CoachResult, DebateTurn, JudgeResult, Path, ResponderReply
from multipath.reasoners.base import ReasonerBackend
from multipath.responder import Responder, ResponderError, SessionCallback

_ROUND_RE = re.compile(r"round: (\d+)")


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        coach="COACH {path} {brief}",
        judge="JUDGE {path} {round}",
        report="REPORT",
        synthesis="SYNTHESIS",
        evaluation="EVALUATION",
        responder_round="Q={question} R={round} P={path} H={hypothesis} W={why} S={next_steps} C={constraint}",
        final_answer="FINAL Q={question} SYN={synthesis}",
        json_retry="RETRY: JSON ONLY",
        path_briefs={
            "radical": "go big",
            "conservative": "stay safe",
            "cross_domain": "borrow ideas",
        },
    )


@pytest.fixture
def sample_reasoner_config() -> ReasonerConfig:
    return ReasonerConfig(
        sdk="anthropic",
        model="claude-test",
        api_key_env="TEST_REASONER_KEY",
        timeout_sec=5,
        max_tokens=512,
    )


@pytest.fixture
def sample_defaults_config(tmp_path: FsPath) -> DefaultsConfig:
    return DefaultsConfig(rounds=2, output_dir=tmp_path / "output")


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_reasoner_config: ReasonerConfig,
    sample_prompts_config: PromptsConfig,
) -> AppConfig:
    return AppConfig(
        defaults=sample_defaults_config,
        reasoner=sample_reasoner_config,
        responder=ResponderConfig(base_url="http://responder.test", token_env="TEST_RESPONDER_TOKEN"),
        forum=ForumConfig(base_url="http://forum.test", token_env="TEST_FORUM_TOKEN"),
        prompts=sample_prompts_config,
        reasoner_available=True,
    )


class MockReasoner(ReasonerBackend):
    """Test double reasoner whose ``complete`` is an AsyncMock."""

    def __init__(self, reasoner_name: str = "mock", reply: str = "{}") -> None:
        self._name = reasoner_name
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because complete is defined in the class body below.
        self.complete = AsyncMock(return_value=reply)  # type: ignore[method-assign]

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def complete(self, system_prompt: str, user_prompt: str) -> str:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return "{}"


class ScriptedReasoner(ReasonerBackend):
    """Answers every role with canned JSON, picked by the first word of the system prompt.

    ``failures`` maps ``"role"``, ``"role:path"`` or ``"role:path:round"`` to
    an exception raised instead of answering.
    """

    def __init__(self, failures: dict[str, Exception] | None = None, judge_score: object = 70) -> None:
        self.failures = failures or {}
        self.judge_score = judge_score
        self.calls: list[tuple[str, str | None, int | None, str]] = []

    def name(self) -> str:
        return "scripted"

    def model_string(self) -> str:
        return "scripted-model"

    def calls_for(self, role: str, path: str | None = None) -> list[tuple[str, str | None, int | None, str]]:
        return [c for c in self.calls if c[0] == role and (path is None or c[1] == path)]

    def _route(self, system_prompt: str, user_prompt: str) -> tuple[str, str | None, int | None]:
        parts = system_prompt.split()
        role = parts[0].lower()
        if role == "coach":
            match = _ROUND_RE.search(user_prompt)
            return role, parts[1], int(match.group(1)) if match else None
        if role == "judge":
            return role, parts[1], int(parts[2])
        if role == "report":
            return role, json.loads(user_prompt)["path"], None
        return role, None, None

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        role, path, round_number = self._route(system_prompt, user_prompt)
        self.calls.append((role, path, round_number, user_prompt))

        for key in (f"{role}:{path}:{round_number}", f"{role}:{path}", role):
            if key in self.failures:
                raise self.failures[key]

        if role == "coach":
            data = {
                "path": path,
                "hypothesis": f"{path} hypothesis r{round_number}",
                "why": "because it fits",
                "next_steps": ["step one", "step two"],
                "test_plan": "measure weekly",
                "risk_guardrail": "stop if it stalls",
            }
        elif role == "judge":
            data = {
                "path": path,
                "round": round_number,
                "round_score": self.judge_score,
                "critical_gap": "no numbers yet",
                "next_constraint": f"{path} constraint after round {round_number}",
                "verdict": "revise",
            }
        elif role == "report":
            data = {"path": path, "final_hypothesis": f"{path} final", "confidence": 0.6}
        elif role == "synthesis":
            data = {
                "summary": "Blend the paths",
                "consensus": ["start small"],
                "disagreements": ["pace"],
                "recommendation": "Run a two-week pilot",
            }
        else:
            data = {
                "score": 82,
                "strengths": ["clear"],
                "weaknesses": ["thin data"],
                "next_iteration": ["add metrics"],
            }
        return json.dumps(data)


class MockResponder(Responder):
    """Test double responder that records every message it is sent."""

    def __init__(
        self,
        text: str = "That could work for me.",
        session_id: str | None = None,
        fail_when: Callable[[str], bool] | None = None,
        error_message: str = "responder unavailable",
    ) -> None:
        self.text = text
        self.session_id = session_id
        self.fail_when = fail_when
        self.error_message = error_message
        self.messages: list[str] = []
        self.session_ids: list[str | None] = []

    async def reply(
        self,
        message: str,
        session_id: str | None = None,
        on_session: SessionCallback | None = None,
    ) -> ResponderReply:
        self.messages.append(message)
        self.session_ids.append(session_id)
        if self.fail_when is not None and self.fail_when(message):
            raise ResponderError(self.error_message, status=502)
        if self.session_id and self.session_id != session_id and on_session is not None:
            await on_session(self.session_id)
        return ResponderReply(text=self.text, session_id=self.session_id or session_id)


def make_turn(path: Path, round_number: int, constraint: str = "keep it small") -> DebateTurn:
    return DebateTurn(
        round=round_number,
        coach=CoachResult(path, f"hypothesis {round_number}", "why", ["a", "b"], "plan", "guard"),
        responder_text=f"reply {round_number}",
        judge=JudgeResult(path, round_number, 60, "gap", constraint, "revise"),
    )


@pytest.fixture
def scripted_reasoner() -> ScriptedReasoner:
    return ScriptedReasoner()


@pytest.fixture
def mock_responder() -> MockResponder:
    return MockResponder()


@pytest.fixture
def agents(scripted_reasoner: ScriptedReasoner, sample_prompts_config: PromptsConfig) -> DebateAgents:
    return DebateAgents(scripted_reasoner, sample_prompts_config, timeout_sec=5)


@pytest.fixture
def run_ctx(agents: DebateAgents, mock_responder: MockResponder) -> RunContext:
    return RunContext(
        question="Should I move my side project to a paid plan?",
        agents=agents,
        responder=mock_responder,
        session_id="session-1",
    )
