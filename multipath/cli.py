"""Click CLI — loads config, builds collaborators, streams a run or works the mention queue."""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import NoReturn

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from config.config_loader import AppConfig, ReasonerConfig, load_config
from multipath.agents import DebateAgents
from multipath.context import RunContext
from multipath.events import format_sse
from multipath.forum import ForumClient, ForumError
from multipath.healthcheck import check_reasoner
from multipath.mentions import (
    MentionTask,
    PublishTask,
    TaskStore,
    dispatch_due,
    list_publish_tasks,
    poll_mentions,
    publish_reply,
    queue_metrics,
    retry_publish,
    retry_task,
)
from multipath.models import Status
from multipath.orchestrator import orchestrate
from multipath.output import render_event, save_run
from multipath.persistence import FileRunStore, GuardedSink
from multipath.reasoners.anthropic import AnthropicReasoner
from multipath.reasoners.base import ReasonerBackend, ReasonerError
from multipath.reasoners.gemini import GeminiReasoner
from multipath.reasoners.openai_provider import OpenAIReasoner
from multipath.reply import GeneratedReply, build_fallback_reply, generate_reply
from multipath.responder import Responder, SecondMeResponder

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

REASONER_CLASSES: dict[str, type[ReasonerBackend]] = {
    "anthropic": AnthropicReasoner,
    "openai": OpenAIReasoner,
    "gemini": GeminiReasoner,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _fail(message: str) -> NoReturn:
    console.print(f"[bold red]Error:[/bold red] {message}")
    sys.exit(1)


def _build_reasoner(config: ReasonerConfig) -> ReasonerBackend:
    if config.sdk not in REASONER_CLASSES:
        raise ReasonerError(f"Unknown reasoner sdk '{config.sdk}'")
    return REASONER_CLASSES[config.sdk](config)


def _build_agents(config: AppConfig) -> DebateAgents:
    try:
        backend = _build_reasoner(config.reasoner)
    except ReasonerError as exc:
        _fail(str(exc))
    return DebateAgents(backend, config.prompts, timeout_sec=config.reasoner.timeout_sec)


def _build_responder(config: AppConfig) -> Responder:
    if not config.responder.base_url:
        _fail("Missing SECONDME_API_BASE_URL (responder base URL).")
    return SecondMeResponder(
        base_url=config.responder.base_url,
        access_token=os.environ.get(config.responder.token_env, "").strip() or None,
        stream_path=config.responder.stream_path,
        timeout_sec=config.responder.timeout_sec,
    )


def _build_forum(config: AppConfig) -> ForumClient:
    try:
        return ForumClient(
            base_url=config.forum.base_url or "",
            token=os.environ.get(config.forum.token_env, "").strip(),
            list_path=config.forum.list_path,
            reply_path=config.forum.reply_path,
        )
    except ForumError as exc:
        _fail(str(exc))


def _check_reasoner(backend: ReasonerBackend) -> None:
    """Ping the reasoner and ask before continuing when it is unhealthy."""
    console.print("\n[bold]Checking reasoner...[/bold]")
    report = asyncio.run(check_reasoner(backend))
    label = f"{report.backend} ({report.model})"
    if report.ok:
        console.print(f"  [green]OK  [/green] {label} in {report.latency_ms} ms")
    else:
        short_err = report.error.splitlines()[0][:120] if report.error else "unknown error"
        console.print(f"  [red]FAIL[/red] {label}: {escape(short_err)}")
        if not click.confirm("Continue anyway? Every path will likely fail.", default=False):
            sys.exit(1)
    console.print()


async def _run_ask(
    question: str,
    config: AppConfig,
    agents: DebateAgents | None,
    responder: Responder,
    rounds: int,
    session_id: str | None,
    sse: bool,
    output_dir: Path,
    enabled: bool,
) -> Path:
    ctx = RunContext(
        question=question,
        agents=agents,
        responder=responder,
        sink=GuardedSink(FileRunStore(output_dir)),
        session_id=session_id,
    )
    run = asyncio.create_task(orchestrate(ctx, config.prompts, rounds, system_agents_enabled=enabled))
    try:
        async for event in ctx.events:
            if sse:
                click.echo(format_sse(event), nl=False)
            else:
                render_event(event)
    except BaseException:
        run.cancel()
        await asyncio.gather(run, return_exceptions=True)
        raise
    state = await run
    return save_run(state, output_dir)


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.pass_context
def main(click_ctx: click.Context, verbose: bool) -> None:
    """Multipath -- three reasoning paths debated, reported and synthesized.

    \b
    Examples:
      multipath ask "Should I pivot to a PhD?" --rounds 2
      multipath ask --file question.md --sse
      multipath poll && multipath dispatch
      multipath show <run-id>
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model replies with
    # non-ASCII text don't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        click_ctx.obj = load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)


@main.command()
@click.argument("question", required=False)
@click.option("--file", "question_file", type=click.Path(exists=True), help="Read question from a text file")
@click.option("--rounds", default=None, type=int, help="Debate rounds, 1-10 (default: from config)")
@click.option("--session", "session_id", default=None, help="Continue an existing responder session")
@click.option("--sse", is_flag=True, help="Print raw server-sent-event frames instead of rendering")
@click.option("--direct", is_flag=True, help="Skip the system agents and ask the responder directly")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the reasoner connectivity check at startup")
@click.pass_obj
def ask(
    config: AppConfig,
    question: str | None,
    question_file: str | None,
    rounds: int | None,
    session_id: str | None,
    sse: bool,
    direct: bool,
    output_path: str | None,
    skip_health_check: bool,
) -> None:
    """Run one question through the multi-path debate."""
    if question_file:
        question_text = Path(question_file).read_text(encoding="utf-8").strip()
    elif question:
        question_text = question.strip()
    else:
        _fail("Provide a QUESTION argument or --file.")
    if not question_text:
        _fail("Question is empty.")

    enabled = config.defaults.system_agents_enabled and not direct
    agents = _build_agents(config) if enabled else None
    responder = _build_responder(config)

    if agents is not None and not skip_health_check and not sse:
        _check_reasoner(agents.backend)

    effective_rounds = rounds if rounds is not None else config.defaults.rounds
    output_dir = Path(output_path) if output_path else config.defaults.output_dir

    saved = asyncio.run(
        _run_ask(
            question=question_text,
            config=config,
            agents=agents,
            responder=responder,
            rounds=effective_rounds,
            session_id=session_id,
            sse=sse,
            output_dir=output_dir,
            enabled=enabled,
        )
    )
    if not sse:
        console.print(f"\n[dim]Saved to: {saved}[/dim]")


def _task_store(config: AppConfig) -> TaskStore:
    return TaskStore(config.defaults.output_dir / "mention_tasks.json")


@main.command()
@click.pass_obj
def poll(config: AppConfig) -> None:
    """Fetch new forum mentions and enqueue them as tasks."""
    store = _task_store(config)
    try:
        summary = asyncio.run(
            poll_mentions(
                _build_forum(config),
                store,
                config.forum.mention_target,
                config.forum.min_content_length,
            )
        )
    except Exception as exc:
        _fail(f"poll failed: {exc}")
    click.echo(json.dumps(summary))


@main.command()
@click.pass_obj
def dispatch(config: AppConfig) -> None:
    """Answer due mention tasks and publish the replies."""
    agents = _build_agents(config)
    responder = _build_responder(config)
    sink = GuardedSink(FileRunStore(config.defaults.output_dir))

    async def generate(task: MentionTask) -> GeneratedReply:
        return await generate_reply(
            task.content,
            agents,
            responder,
            config.prompts,
            config.defaults.rounds,
            sink=sink,
            task_id=task.id,
            max_length=config.forum.max_reply_length,
        )

    store = _task_store(config)
    try:
        summary = asyncio.run(
            dispatch_due(
                store,
                _build_forum(config),
                generate,
                fallback_text=build_fallback_reply(config.forum.max_reply_length),
            )
        )
    except Exception as exc:
        _fail(f"dispatch failed: {exc}")
    click.echo(json.dumps(summary))


@main.command()
@click.argument("task_id")
@click.pass_obj
def retry(config: AppConfig, task_id: str) -> None:
    """Re-queue a failed mention task."""
    store = _task_store(config)
    try:
        task = retry_task(store, task_id)
    except KeyError as exc:
        _fail(exc.args[0])
    except ValueError as exc:
        _fail(str(exc))
    click.echo(json.dumps({"retried": True, "id": task.id}))


@main.command("task")
@click.argument("task_id")
@click.pass_obj
def task_detail(config: AppConfig, task_id: str) -> None:
    """Print one mention task as JSON."""
    store = _task_store(config)
    try:
        found = store.get(task_id)
    except KeyError as exc:
        _fail(exc.args[0])
    click.echo(json.dumps(found.to_dict(), ensure_ascii=False, indent=2))


@main.command()
@click.option("--range", "window", type=click.Choice(["24h", "7d"], case_sensitive=False), default="24h",
              show_default=True, help="Count tasks created inside this window")
@click.pass_obj
def metrics(config: AppConfig, window: str) -> None:
    """Count mention tasks per status."""
    click.echo(json.dumps(queue_metrics(_task_store(config), window)))


@main.group()
def publish() -> None:
    """Post replies by hand and retry failed posts."""


def _echo_publish_result(published: PublishTask) -> None:
    click.echo(json.dumps(published.to_dict(), ensure_ascii=False, indent=2))
    if published.status == Status.FAILED:
        _fail(f"publish failed: {published.result['error']}")


@publish.command("send")
@click.argument("thread_id")
@click.argument("comment_id")
@click.argument("content", required=False)
@click.option("--file", "content_file", type=click.Path(exists=True), help="Read the reply text from a file")
@click.pass_obj
def publish_send(
    config: AppConfig,
    thread_id: str,
    comment_id: str,
    content: str | None,
    content_file: str | None,
) -> None:
    """Post CONTENT as a reply to COMMENT_ID in THREAD_ID."""
    text = Path(content_file).read_text(encoding="utf-8") if content_file else content or ""
    store = _task_store(config)
    try:
        published = asyncio.run(publish_reply(store, _build_forum(config), thread_id, comment_id, text))
    except ValueError as exc:
        _fail(str(exc))
    _echo_publish_result(published)


_TASK_STATES = [s.value for s in (Status.PENDING, Status.RUNNING, Status.DONE, Status.FAILED)]


@publish.command("list")
@click.option("--status", type=click.Choice(_TASK_STATES), default=None, help="Only tasks in this state")
@click.option("--query", "-q", default=None, help="Substring match on thread id, comment id or content")
@click.option("--page", default=1, type=int, show_default=True)
@click.option("--page-size", default=20, type=int, show_default=True)
@click.pass_obj
def publish_list(config: AppConfig, status: str | None, query: str | None, page: int, page_size: int) -> None:
    """List manual publish tasks, newest first."""
    listing = list_publish_tasks(
        _task_store(config),
        status=Status(status) if status else None,
        query=query,
        page=page,
        page_size=page_size,
    )
    click.echo(json.dumps(listing, ensure_ascii=False, indent=2))


@publish.command("retry")
@click.argument("task_id")
@click.pass_obj
def publish_retry(config: AppConfig, task_id: str) -> None:
    """Post a failed publish task again."""
    store = _task_store(config)
    try:
        published = asyncio.run(retry_publish(store, _build_forum(config), task_id))
    except KeyError as exc:
        _fail(exc.args[0])
    except ValueError as exc:
        _fail(str(exc))
    _echo_publish_result(published)


@main.command()
@click.argument("run_id")
@click.pass_obj
def show(config: AppConfig, run_id: str) -> None:
    """Print a persisted run as JSON."""
    try:
        run = FileRunStore(config.defaults.output_dir).load_run(run_id)
    except FileNotFoundError as exc:
        _fail(str(exc))
    click.echo(json.dumps(run, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
