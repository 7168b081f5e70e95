"""Best-effort durable mirror of run state.

Storage is advisory: the orchestrator talks to a ``GuardedSink``, which
discards every persistence exception so a broken disk or database never
changes what the client sees.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path as FsPath
from typing import Any

from multipath.models import DebateTurn, JsonObject, Path, Status

logger = logging.getLogger(__name__)


class PersistenceSink(ABC):
    """One durable write per orchestrator state transition."""

    @abstractmethod
    async def create_run(self, run_id: str, task_id: str | None, question: str) -> None: ...

    @abstractmethod
    async def create_path_run(self, run_id: str, path: Path) -> None: ...

    @abstractmethod
    async def append_turn(self, run_id: str, path: Path, turn: DebateTurn) -> None: ...

    @abstractmethod
    async def upsert_report(self, run_id: str, path: Path, report: JsonObject) -> None: ...

    @abstractmethod
    async def update_path_status(
        self, run_id: str, path: Path, status: Status, error: str | None = None
    ) -> None: ...

    @abstractmethod
    async def update_run(self, run_id: str, status: Status, **fields: Any) -> None:
        """Set the run status plus any of ``synthesis``, ``evaluation``, ``final_answer``."""
        ...


class NullSink(PersistenceSink):
    """Discards everything. Used when no storage is configured and in tests."""

    async def create_run(self, run_id: str, task_id: str | None, question: str) -> None:
        return None

    async def create_path_run(self, run_id: str, path: Path) -> None:
        return None

    async def append_turn(self, run_id: str, path: Path, turn: DebateTurn) -> None:
        return None

    async def upsert_report(self, run_id: str, path: Path, report: JsonObject) -> None:
        return None

    async def update_path_status(
        self, run_id: str, path: Path, status: Status, error: str | None = None
    ) -> None:
        return None

    async def update_run(self, run_id: str, status: Status, **fields: Any) -> None:
        return None


class GuardedSink:
    """Wraps a sink so that every write swallows its own failure."""

    def __init__(self, inner: PersistenceSink) -> None:
        self._inner = inner

    async def _guard(self, op: str, coro: Any) -> None:
        try:
            await coro
        except Exception as exc:
            logger.debug("Persistence %s failed (ignored): %s", op, exc)

    async def create_run(self, run_id: str, task_id: str | None, question: str) -> None:
        await self._guard("create_run", self._inner.create_run(run_id, task_id, question))

    async def create_path_run(self, run_id: str, path: Path) -> None:
        await self._guard("create_path_run", self._inner.create_path_run(run_id, path))

    async def append_turn(self, run_id: str, path: Path, turn: DebateTurn) -> None:
        await self._guard("append_turn", self._inner.append_turn(run_id, path, turn))

    async def upsert_report(self, run_id: str, path: Path, report: JsonObject) -> None:
        await self._guard("upsert_report", self._inner.upsert_report(run_id, path, report))

    async def update_path_status(
        self, run_id: str, path: Path, status: Status, error: str | None = None
    ) -> None:
        await self._guard(
            "update_path_status", self._inner.update_path_status(run_id, path, status, error)
        )

    async def update_run(self, run_id: str, status: Status, **fields: Any) -> None:
        await self._guard("update_run", self._inner.update_run(run_id, status, **fields))


def _read_json(file_path: FsPath) -> dict[str, Any]:
    if not file_path.exists():
        return {}
    return json.loads(file_path.read_text(encoding="utf-8"))


def _write_json(file_path: FsPath, data: dict[str, Any]) -> None:
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp = file_path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
    tmp.replace(file_path)


class FileRunStore(PersistenceSink):
    """JSON files under ``<root>/runs/<run_id>/``.

    Layout: ``run.json`` for the run row, ``paths/<path>.json`` for each path
    row and ``turns/<path>.jsonl`` with one appended line per turn. Every
    entity has its own file, so concurrent paths never write the same one.
    """

    def __init__(self, root: FsPath) -> None:
        self._root = root / "runs"

    def _run_dir(self, run_id: str) -> FsPath:
        return self._root / run_id

    def _update(self, file_path: FsPath, **changes: Any) -> None:
        data = _read_json(file_path)
        data.update(changes)
        _write_json(file_path, data)

    def _append_line(self, file_path: FsPath, record: dict[str, Any]) -> None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with file_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

    async def create_run(self, run_id: str, task_id: str | None, question: str) -> None:
        data = {"run_id": run_id, "task_id": task_id, "question": question, "status": Status.RUNNING.value}
        await asyncio.to_thread(_write_json, self._run_dir(run_id) / "run.json", data)

    async def create_path_run(self, run_id: str, path: Path) -> None:
        data = {"path": path.value, "status": Status.RUNNING.value, "report": None, "error": None}
        await asyncio.to_thread(_write_json, self._run_dir(run_id) / "paths" / f"{path.value}.json", data)

    async def append_turn(self, run_id: str, path: Path, turn: DebateTurn) -> None:
        file_path = self._run_dir(run_id) / "turns" / f"{path.value}.jsonl"
        await asyncio.to_thread(self._append_line, file_path, turn.to_dict())

    async def upsert_report(self, run_id: str, path: Path, report: JsonObject) -> None:
        file_path = self._run_dir(run_id) / "paths" / f"{path.value}.json"
        await asyncio.to_thread(self._update, file_path, report=report)

    async def update_path_status(
        self, run_id: str, path: Path, status: Status, error: str | None = None
    ) -> None:
        file_path = self._run_dir(run_id) / "paths" / f"{path.value}.json"
        await asyncio.to_thread(self._update, file_path, status=status.value, error=error)

    async def update_run(self, run_id: str, status: Status, **fields: Any) -> None:
        await asyncio.to_thread(
            self._update, self._run_dir(run_id) / "run.json", status=status.value, **fields
        )

    def load_run(self, run_id: str) -> dict[str, Any]:
        """Reassemble a persisted run for inspection.

        Raises:
            FileNotFoundError: If no run with this id was stored.
        """
        run_dir = self._run_dir(run_id)
        run_file = run_dir / "run.json"
        if not run_file.exists():
            raise FileNotFoundError(f"Run not found: {run_id}")

        run = _read_json(run_file)
        per_path: dict[str, Any] = {}
        for path_file in sorted((run_dir / "paths").glob("*.json")):
            row = _read_json(path_file)
            turns_file = run_dir / "turns" / f"{path_file.stem}.jsonl"
            turns: list[dict[str, Any]] = []
            if turns_file.exists():
                for line in turns_file.read_text(encoding="utf-8").splitlines():
                    if line.strip():
                        turns.append(json.loads(line))
            row["turns"] = turns
            per_path[path_file.stem] = row
        run["per_path"] = per_path
        return run
