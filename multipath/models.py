"""Dataclasses for the multi-path debate pipeline. No I/O, no deps."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

JsonObject = dict[str, Any]


class Path(str, Enum):
    RADICAL = "radical"
    CONSERVATIVE = "conservative"
    CROSS_DOMAIN = "cross_domain"


PATHS: tuple[Path, ...] = (Path.RADICAL, Path.CONSERVATIVE, Path.CROSS_DOMAIN)

VERDICTS = ("accept", "revise", "reject")


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    PARTIAL_FAILED = "partial_failed"


@dataclass
class CoachResult:
    path: Path
    hypothesis: str
    why: str
    next_steps: list[str]
    test_plan: str
    risk_guardrail: str

    def to_dict(self) -> JsonObject:
        data = asdict(self)
        data["path"] = self.path.value
        return data


@dataclass
class JudgeResult:
    path: Path
    round: int
    round_score: int      # always within [0, 100]
    critical_gap: str
    next_constraint: str
    verdict: str          # one of VERDICTS

    def to_dict(self) -> JsonObject:
        data = asdict(self)
        data["path"] = self.path.value
        return data


@dataclass(frozen=True)
class DebateTurn:
    round: int
    coach: CoachResult
    responder_text: str
    judge: JudgeResult

    def to_dict(self) -> JsonObject:
        return {
            "round": self.round,
            "coach": self.coach.to_dict(),
            "secondme": self.responder_text,
            "judge": self.judge.to_dict(),
        }


@dataclass
class Synthesis:
    summary: str
    consensus: list[str]
    disagreements: list[str]
    recommendation: str

    def to_dict(self) -> JsonObject:
        return asdict(self)


@dataclass
class Evaluation:
    score: int
    strengths: list[str]
    weaknesses: list[str]
    next_iteration: list[str]

    def to_dict(self) -> JsonObject:
        return asdict(self)


@dataclass
class ResponderReply:
    text: str
    session_id: str | None


@dataclass
class PathState:
    path: Path
    status: Status = Status.PENDING
    turns: list[DebateTurn] = field(default_factory=list)
    report: JsonObject | None = None
    error: str | None = None

    def to_dict(self) -> JsonObject:
        return {
            "path": self.path.value,
            "status": self.status.value,
            "turns": [t.to_dict() for t in self.turns],
            "report": self.report,
            "error": self.error,
        }


@dataclass
class RunState:
    run_id: str
    task_id: str | None
    question: str
    status: Status = Status.RUNNING
    per_path: dict[Path, PathState] = field(
        default_factory=lambda: {p: PathState(path=p) for p in PATHS}
    )
    synthesis: Synthesis | None = None
    evaluation: Evaluation | None = None
    final_answer: str | None = None

    def to_dict(self) -> JsonObject:
        return {
            "run_id": self.run_id,
            "task_id": self.task_id,
            "question": self.question,
            "status": self.status.value,
            "per_path": {p.value: s.to_dict() for p, s in self.per_path.items()},
            "synthesis": self.synthesis.to_dict() if self.synthesis else None,
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
            "final_answer": self.final_answer,
        }
