"""Path debate engine: coach → responder → judge, round by round, per path."""

import asyncio
import json
import logging
from collections.abc import Callable

from config.config_loader import clamp_rounds
from multipath.context import RunContext
from multipath.events import sanitize_message
from multipath.models import CoachResult, DebateTurn, Path, Status

logger = logging.getLogger(__name__)

# Coach sees at most this many earlier turns of its own path
_HISTORY_WINDOW = 3


class RoundStepError(Exception):
    """A coach, responder or judge call failed for one path in one round."""

    def __init__(self, path: Path, round_number: int, step: str, cause: Exception) -> None:
        self.path = path
        self.round_number = round_number
        self.step = step
        self.cause = cause
        super().__init__(f"{step} failed for {path.value} in round {round_number}: {cause}")


def build_coach_context(constraint: str | None, turns: list[DebateTurn]) -> str:
    """Serialize the prior constraint and the last few turns for the coach."""
    history = [t.to_dict() for t in turns[-_HISTORY_WINDOW:]]
    try:
        return json.dumps({"constraint": constraint, "history": history}, ensure_ascii=False)
    except (TypeError, ValueError):
        return "{}"


def build_responder_prompt(
    template: str,
    ctx: RunContext,
    path: Path,
    round_number: int,
    coach: CoachResult,
) -> str:
    return template.format(
        question=ctx.question,
        round=round_number,
        path=path.value,
        hypothesis=coach.hypothesis,
        why=coach.why,
        next_steps=" | ".join(coach.next_steps[:5]),
        constraint=ctx.constraints[path] or "none yet",
    )


async def _run_path_round(
    ctx: RunContext,
    path: Path,
    round_number: int,
    responder_template: str,
) -> DebateTurn | RoundStepError:
    """Run one round for one path. Never raises — returns RoundStepError on failure.

    Events go out as each step lands: ``debate_round`` after the responder
    reply, ``judge_round`` after the judge.
    """
    state = ctx.path_state(path)
    constraint = ctx.constraints[path]
    step = "coach"
    try:
        coach = await ctx.agents.coach(
            path,
            ctx.question,
            round_number,
            build_coach_context(constraint, state.turns),
        )

        step = "responder"
        reply = await ctx.responder.reply(
            build_responder_prompt(responder_template, ctx, path, round_number, coach),
            session_id=ctx.session_id,
            on_session=ctx.set_session,
        )
        ctx.events.emit("debate_round", {
            "path": path.value,
            "round": round_number,
            "coach": coach.to_dict(),
            "secondme": reply.text,
        })

        step = "judge"
        judge = await ctx.agents.judge(
            path,
            round_number,
            ctx.question,
            coach,
            reply.text,
            list(state.turns),
            constraint,
        )
    except Exception as exc:
        err = RoundStepError(path, round_number, step, exc)
        logger.warning("Path %s round %d: %s", path.value, round_number, err)
        event = "judge_round" if step == "judge" else "debate_round"
        ctx.events.emit(event, {"path": path.value, "round": round_number, "error": sanitize_message(exc)})
        return err

    ctx.events.emit("judge_round", {
        "path": path.value,
        "round": round_number,
        "judge": judge.to_dict(),
    })
    return DebateTurn(round=round_number, coach=coach, responder_text=reply.text, judge=judge)


async def run_debate(
    ctx: RunContext,
    num_rounds: int,
    responder_template: str,
    on_round_complete: Callable[[int], None] | None = None,
) -> None:
    """Run every configured round for all still-running paths.

    Paths inside a round run concurrently; the round is a barrier, so no path
    starts round r+1 before every path has resolved round r. A failing path
    is marked failed and skipped from then on; the others carry on.

    Args:
        ctx: The run's context; turns and constraints are written into it.
        num_rounds: Requested round count, clamped to [1, 10].
        responder_template: Prompt template for the per-round responder call.
        on_round_complete: Optional callback invoked with the round number.
    """
    rounds = clamp_rounds(num_rounds)

    for round_number in range(1, rounds + 1):
        active = ctx.running_paths()
        if not active:
            logger.warning("No running paths left before round %d, stopping debate", round_number)
            break

        logger.info("Starting round %d with %d paths", round_number, len(active))
        ctx.events.emit("debate_status", {"round": round_number, "status": Status.RUNNING.value})

        results = await asyncio.gather(
            *(_run_path_round(ctx, p, round_number, responder_template) for p in active)
        )

        for path, result in zip(active, results):
            if isinstance(result, DebateTurn):
                ctx.append_turn(path, result)
                await ctx.sink.append_turn(ctx.run_id, path, result)
            else:
                ctx.fail_path(path, str(result))
                ctx.events.emit("path_status", {"path": path.value, "status": Status.FAILED.value})
                await ctx.sink.update_path_status(ctx.run_id, path, Status.FAILED, str(result))

        ctx.events.emit("debate_status", {"round": round_number, "status": Status.DONE.value})
        logger.info(
            "Round %d complete: %d/%d paths succeeded",
            round_number,
            sum(isinstance(r, DebateTurn) for r in results),
            len(active),
        )

        if on_round_complete:
            on_round_complete(round_number)
