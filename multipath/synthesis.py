"""Synthesis, final answer and evaluation over the three path reports."""

import json
import logging

from multipath.context import RunContext
from multipath.models import PATHS, Status

logger = logging.getLogger(__name__)


async def request_final_answer(ctx: RunContext, message: str) -> str:
    """Ask the responder for the user-facing answer and emit ``final_answer``.

    Raises:
        ResponderError: If the responder call fails.
    """
    reply = await ctx.responder.reply(message, session_id=ctx.session_id, on_session=ctx.set_session)
    ctx.state.final_answer = reply.text
    ctx.events.emit("final_answer", {"text": reply.text})
    return reply.text


async def _direct_fallback(ctx: RunContext, reason: str) -> None:
    logger.warning("Falling back to a direct answer: %s", reason)
    ctx.state.status = Status.FAILED
    await request_final_answer(ctx, ctx.question)
    await ctx.sink.update_run(ctx.run_id, Status.FAILED, final_answer=ctx.state.final_answer)


async def run_synthesis_stage(ctx: RunContext, final_answer_template: str) -> None:
    """Combine the reports, answer the user, then score the synthesis.

    Needs a report for all three paths. With fewer, or if the synthesis call
    fails, the responder answers the raw question directly and the run is
    marked failed. An evaluation failure also fails the run but never takes
    back the final answer already sent.

    Raises:
        ResponderError: If the final responder call fails.
    """
    reports = ctx.reports()
    missing = [p.value for p in PATHS if p not in reports]
    if missing:
        await _direct_fallback(ctx, f"missing reports for {', '.join(missing)}")
        return

    try:
        synthesis = await ctx.agents.synthesize(reports)
    except Exception as exc:
        await _direct_fallback(ctx, f"synthesis failed: {exc}")
        return

    ctx.state.synthesis = synthesis
    ctx.events.emit("synthesis", synthesis.to_dict())
    await ctx.sink.update_run(ctx.run_id, Status.RUNNING, synthesis=synthesis.to_dict())

    message = final_answer_template.format(
        question=ctx.question,
        synthesis=json.dumps(synthesis.to_dict(), ensure_ascii=False),
    )
    await request_final_answer(ctx, message)

    try:
        evaluation = await ctx.agents.evaluate(reports, synthesis)
    except Exception as exc:
        logger.warning("Evaluation failed: %s", exc)
        ctx.state.status = Status.FAILED
        await ctx.sink.update_run(ctx.run_id, Status.FAILED, final_answer=ctx.state.final_answer)
        return

    ctx.state.evaluation = evaluation
    ctx.state.status = Status.DONE
    ctx.events.emit("evaluation", evaluation.to_dict())
    await ctx.sink.update_run(
        ctx.run_id,
        Status.DONE,
        evaluation=evaluation.to_dict(),
        final_answer=ctx.state.final_answer,
    )
    logger.info("Synthesis complete, evaluation score %d", evaluation.score)
