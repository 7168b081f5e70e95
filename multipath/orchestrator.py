"""Top-level run lifecycle: debate → reports → synthesis, always ending in ``done``."""

import logging
import uuid

from config.config_loader import PromptsConfig
from multipath.context import RunContext
from multipath.debate import run_debate
from multipath.events import sanitize_message
from multipath.models import PATHS, RunState, Status
from multipath.reports import build_reports
from multipath.synthesis import request_final_answer, run_synthesis_stage

logger = logging.getLogger(__name__)


async def _run_direct(ctx: RunContext) -> None:
    await request_final_answer(ctx, ctx.question)
    ctx.state.status = Status.DONE
    await ctx.sink.update_run(ctx.run_id, Status.DONE, final_answer=ctx.state.final_answer)


async def _run_paths(ctx: RunContext, prompts: PromptsConfig, rounds: int) -> None:
    for path in PATHS:
        ctx.path_state(path).status = Status.RUNNING
        ctx.events.emit("path_status", {"path": path.value, "status": Status.RUNNING.value})
        await ctx.sink.create_path_run(ctx.run_id, path)

    await run_debate(ctx, rounds, prompts.responder_round)
    await build_reports(ctx)
    await run_synthesis_stage(ctx, prompts.final_answer)

    overall = Status.DONE if ctx.state.status == Status.DONE else Status.PARTIAL_FAILED
    ctx.events.emit("path_status", {"status": overall.value})


async def orchestrate(
    ctx: RunContext,
    prompts: PromptsConfig,
    rounds: int,
    system_agents_enabled: bool = True,
) -> RunState:
    """Run one question end to end, streaming events into ``ctx.events``.

    With system agents disabled the responder answers directly and no path,
    debate or synthesis events are produced. Any unexpected exception becomes
    a single sanitized ``error`` event. ``done`` is always the last event and
    the stream is closed afterwards.

    Returns:
        The final in-memory run state (independent of what persisted).
    """
    if not ctx.session_id:
        ctx.session_id = uuid.uuid4().hex

    try:
        ctx.events.emit("session", {"sessionId": ctx.session_id})
        await ctx.sink.create_run(ctx.run_id, ctx.task_id, ctx.question)

        if system_agents_enabled:
            logger.info("Run %s: %d rounds across %d paths", ctx.run_id, rounds, len(PATHS))
            await _run_paths(ctx, prompts, rounds)
        else:
            logger.info("Run %s: system agents disabled, direct answer only", ctx.run_id)
            await _run_direct(ctx)
    except Exception as exc:
        logger.exception("Run %s aborted", ctx.run_id)
        ctx.state.status = Status.FAILED
        ctx.events.emit("error", {"message": sanitize_message(exc)})
        await ctx.sink.update_run(ctx.run_id, Status.FAILED)
    finally:
        ctx.events.emit("done", {"sessionId": ctx.session_id})
        ctx.events.close()

    return ctx.state
