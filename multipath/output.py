"""Rich console rendering of run events and markdown export of finished runs."""

import json
import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from multipath.events import OrchestratorEvent
from multipath.models import RunState, Status

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STATUS_STYLE = {
    "running": "cyan",
    "done": "green",
    "failed": "red",
    "partial_failed": "yellow",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(text: str, words: int = 40) -> str:
    """Return first N words of a text."""
    all_words = text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def render_event(event: OrchestratorEvent) -> None:
    """Print one orchestrator event to the console.

    Model, responder and error text is escaped before it meets rich markup.
    """
    data = event.data
    name = event.event

    if name == "session":
        console.print(Text(f"session {data.get('sessionId')}", style="dim"))
    elif name == "path_status":
        status = str(data.get("status"))
        label = escape(str(data.get("path", "run")))
        console.print(f"[{_STATUS_STYLE.get(status, 'white')}]{label}: {escape(status)}[/]")
    elif name == "debate_status":
        if data.get("status") == Status.RUNNING.value:
            console.print(Rule(f"[bold cyan]Round {data.get('round')}[/bold cyan]"))
    elif name == "debate_round":
        path = escape(str(data.get("path")))
        if "error" in data:
            console.print(f"[red]FAIL[/red] {path} round {data.get('round')}: {escape(str(data['error']))}")
        else:
            hypothesis = data.get("coach", {}).get("hypothesis", "")
            console.print(
                Panel(
                    Text(_preview(f"{hypothesis}\n\n{data.get('secondme', '')}")),
                    title=f"[bold]{path}[/bold] round {data.get('round')} coach + responder",
                    border_style="dim",
                )
            )
    elif name == "judge_round":
        path = escape(str(data.get("path")))
        if "error" in data:
            console.print(f"[red]FAIL[/red] {path} judge round {data.get('round')}: {escape(str(data['error']))}")
        else:
            judge = data.get("judge", {})
            verdict = escape(f"[{judge.get('verdict')}]")
            next_constraint = escape(_preview(str(judge.get("next_constraint", "")), 20))
            console.print(
                f"[bold]{path}[/bold] judge: {judge.get('round_score')}/100 {verdict} next: {next_constraint}"
            )
    elif name == "path_report":
        path = escape(str(data.get("path")))
        if "error" in data:
            console.print(f"[red]{path} report unavailable:[/red] {escape(str(data['error']))}")
        else:
            console.print(f"[green]OK[/green] {path} report ready")
    elif name == "synthesis":
        console.print(Rule("[bold green]Synthesis[/bold green]"))
        console.print(Markdown(data.get("summary", "")))
        if data.get("recommendation"):
            console.print(Text(f"Recommendation: {data['recommendation']}", style="bold"))
    elif name == "final_answer":
        console.print(Rule("[bold green]Final answer[/bold green]"))
        console.print(Markdown(data.get("text", "")))
    elif name == "evaluation":
        console.print(Text(f"Evaluation score: {data.get('score')}/100", style="dim"))
    elif name == "error":
        console.print(f"[bold red]Error:[/bold red] {escape(str(data.get('message')))}")
    elif name == "done":
        console.print(Text("done", style="dim"))


def _bullets(items: list[str]) -> list[str]:
    return [f"- {item}" for item in items] or ["- (none)"]


def save_run(state: RunState, output_dir: Path, slug_override: str | None = None) -> Path:
    """Save the full run transcript as a markdown file.

    Args:
        state: The finished run state.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the question text.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(state.question)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    lines: list[str] = [
        f"# Multi-path debate: {state.question[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Run:** {state.run_id}",
        f"**Status:** {state.status.value}",
        "",
        "---",
        "",
    ]

    for path, path_state in state.per_path.items():
        lines.append(f"## Path: {path.value} ({path_state.status.value})")
        lines.append("")
        if path_state.error:
            lines += [f"*Error: {path_state.error}*", ""]
        for turn in path_state.turns:
            lines += [
                f"### Round {turn.round}",
                "",
                f"**Hypothesis:** {turn.coach.hypothesis}",
                "",
                f"**Why:** {turn.coach.why}",
                "",
                *_bullets(turn.coach.next_steps),
                "",
                f"**Responder:** {turn.responder_text}",
                "",
                f"**Judge:** {turn.judge.round_score}/100, {turn.judge.verdict}. "
                f"Gap: {turn.judge.critical_gap} Next constraint: {turn.judge.next_constraint}",
                "",
            ]
        if path_state.report is not None:
            lines += [
                "### Report",
                "",
                "```json",
                json.dumps(path_state.report, ensure_ascii=False, indent=2),
                "```",
                "",
            ]

    if state.synthesis:
        lines += [
            "## Synthesis",
            "",
            state.synthesis.summary,
            "",
            "**Consensus**",
            *_bullets(state.synthesis.consensus),
            "",
            "**Disagreements**",
            *_bullets(state.synthesis.disagreements),
            "",
            f"**Recommendation:** {state.synthesis.recommendation}",
            "",
        ]

    if state.final_answer:
        lines += ["## Final answer", "", state.final_answer, ""]

    if state.evaluation:
        lines += [
            f"## Evaluation ({state.evaluation.score}/100)",
            "",
            "**Strengths**",
            *_bullets(state.evaluation.strengths),
            "",
            "**Weaknesses**",
            *_bullets(state.evaluation.weaknesses),
            "",
            "**Next iteration**",
            *_bullets(state.evaluation.next_iteration),
            "",
        ]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Run saved to: %s", filepath)
    return filepath
