"""Per-request mutable state, passed explicitly through every stage."""

import uuid
from dataclasses import dataclass, field

from multipath.agents import DebateAgents
from multipath.events import EventStream
from multipath.models import PATHS, DebateTurn, JsonObject, Path, PathState, RunState, Status
from multipath.persistence import GuardedSink, NullSink
from multipath.responder import Responder


@dataclass
class RunContext:
    """Everything one orchestration run reads and writes.

    Paths share only the immutable question; each path's turns, constraint
    and report live under its own key, so concurrent round attempts never
    touch each other's entries.
    """

    question: str
    agents: DebateAgents | None
    responder: Responder
    events: EventStream = field(default_factory=EventStream)
    sink: GuardedSink = field(default_factory=lambda: GuardedSink(NullSink()))
    session_id: str | None = None
    task_id: str | None = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: RunState = field(init=False)
    constraints: dict[Path, str | None] = field(init=False)

    def __post_init__(self) -> None:
        self.state = RunState(run_id=self.run_id, task_id=self.task_id, question=self.question)
        self.constraints = {p: None for p in PATHS}

    def path_state(self, path: Path) -> PathState:
        return self.state.per_path[path]

    def running_paths(self) -> list[Path]:
        return [p for p in PATHS if self.state.per_path[p].status == Status.RUNNING]

    def append_turn(self, path: Path, turn: DebateTurn) -> None:
        state = self.path_state(path)
        if state.status != Status.RUNNING:
            raise RuntimeError(f"Path {path.value} is {state.status.value}; it accepts no new turns")
        state.turns.append(turn)
        self.constraints[path] = turn.judge.next_constraint

    def fail_path(self, path: Path, error: str) -> None:
        state = self.path_state(path)
        state.status = Status.FAILED
        state.error = error

    def reports(self) -> dict[Path, JsonObject]:
        return {
            p: s.report for p, s in self.state.per_path.items() if s.report is not None
        }

    async def set_session(self, session_id: str) -> None:
        """Record a responder-assigned session id and announce it."""
        if session_id and session_id != self.session_id:
            self.session_id = session_id
            self.events.emit("session", {"sessionId": session_id})
