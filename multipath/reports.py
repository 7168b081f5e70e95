"""Report aggregator: one structured report per surviving path transcript."""

import asyncio
import logging

from multipath.context import RunContext
from multipath.events import sanitize_message
from multipath.models import PATHS, Path, Status

logger = logging.getLogger(__name__)


async def _report_one(ctx: RunContext, path: Path) -> None:
    state = ctx.path_state(path)
    try:
        report = await ctx.agents.path_report(path, list(state.turns))
    except Exception as exc:
        logger.warning("Report for path %s failed: %s", path.value, exc)
        ctx.fail_path(path, f"report failed: {sanitize_message(exc)}")
        ctx.events.emit("path_report", {"path": path.value, "error": state.error})
        await ctx.sink.update_path_status(ctx.run_id, path, Status.FAILED, state.error)
        return

    state.report = report
    state.status = Status.DONE
    ctx.events.emit("path_report", {"path": path.value, "report": report})
    await ctx.sink.upsert_report(ctx.run_id, path, report)
    await ctx.sink.update_path_status(ctx.run_id, path, Status.DONE)


async def build_reports(ctx: RunContext) -> None:
    """Build reports for every path that is still running and has turns.

    Failed or empty paths are marked failed without spending a reasoner call
    and announced with ``path_report {path, error}``. Report calls for the
    remaining paths run concurrently.
    """
    reportable: list[Path] = []
    for path in PATHS:
        state = ctx.path_state(path)
        if state.status == Status.RUNNING and state.turns:
            reportable.append(path)
            continue
        if state.status != Status.FAILED:
            ctx.fail_path(path, "no completed rounds")
            await ctx.sink.update_path_status(ctx.run_id, path, Status.FAILED, state.error)
        ctx.events.emit("path_report", {"path": path.value, "error": state.error or "path failed"})

    logger.info("Building reports for %d/%d paths", len(reportable), len(PATHS))
    await asyncio.gather(*(_report_one(ctx, p) for p in reportable))
