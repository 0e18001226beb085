"""Rich console output and markdown transcripts for copilot turns and the hold queue."""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from copilot.graduation import GraduationPolicy
from copilot.hold_queue import format_hold_time, get_time_remaining
from copilot.models import CopilotResponse, GraduationState, HeldAction, Readiness
from copilot.personas import ALL_PERSONAS

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_PERSONA_NAMES = {p.id: p.name for p in ALL_PERSONAS}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _persona_name(persona_id: str) -> str:
    return _PERSONA_NAMES.get(persona_id, persona_id)


def _describe(action: HeldAction) -> str:
    payload = action.payload
    if action.action_type == "email_stakeholder":
        return f"Email to {', '.join(payload.to)}: {payload.subject}"
    return f"{payload.issue_key}: {payload.from_status} -> {payload.to_status}"


def print_response(response: CopilotResponse) -> None:
    """Print the copilot's answer, plus deliberation details when attribution is on."""
    console.print(Rule(f"[bold cyan]Copilot[/bold cyan] [dim]({response.mode})[/dim]"))
    console.print(Markdown(response.message))

    deliberation = response.deliberation
    if response.show_attribution and deliberation is not None:
        table = Table(title="Perspectives", show_lines=False)
        table.add_column("Persona", style="bold")
        table.add_column("Confidence", justify="right")
        table.add_column("Dissent")
        for c in deliberation.contributions:
            table.add_row(
                _persona_name(c.persona_id),
                f"{c.confidence:.2f}",
                c.dissent_reason if c.dissents else "",
            )
        console.print(table)

        for conflict in deliberation.conflicts:
            a, b = conflict.between
            console.print(Text(f"  {_persona_name(a)} vs {_persona_name(b)}: {conflict.topic}", style="yellow"))

    if response.challenge is not None:
        challenge = response.challenge
        body = [f"[bold]{challenge.question}[/bold]", ""]
        for ev in challenge.counter_evidence:
            body.append(f"- ({ev.strength}) {ev.point}")
        if challenge.alternative_framing:
            body += ["", f"[italic]Alternative: {challenge.alternative_framing}[/italic]"]
        console.print(
            Panel("\n".join(body), title=Text(f"Challenge [{challenge.trigger}]"), border_style="magenta")
        )

    if deliberation is not None:
        console.print(Text(f"Deliberation: {deliberation.duration_sec:.1f}s", style="dim"))


def print_pending_actions(actions: list[HeldAction], now: datetime | None = None, total: int | None = None) -> None:
    if not actions:
        console.print("[dim]No pending actions.[/dim]")
        return
    now = now or datetime.now(timezone.utc)
    table = Table(title="Pending actions")
    table.add_column("ID", style="dim")
    table.add_column("Project")
    table.add_column("Type")
    table.add_column("Action")
    table.add_column("Runs in", justify="right")
    for action in actions:
        remaining = get_time_remaining(action.held_until, now)
        runs_in = "due" if remaining.expired else f"{remaining.minutes}m {remaining.seconds:02d}s"
        table.add_row(action.id, action.project_id, action.action_type, _describe(action), runs_in)
    console.print(table)
    if total is not None and total > len(actions):
        console.print(f"[dim]Showing {len(actions)} of {total} pending actions.[/dim]")


def print_graduation_states(
    states: list[GraduationState],
    policy: GraduationPolicy,
    readiness: dict[str, Readiness] | None = None,
) -> None:
    if not states:
        console.print("[dim]No graduation history yet.[/dim]")
        return
    table = Table(title="Graduated autonomy")
    table.add_column("Action type")
    table.add_column("Tier", justify="right")
    table.add_column("Streak", justify="right")
    table.add_column("Hold")
    table.add_column("To next tier", justify="right")
    if readiness is not None:
        table.add_column("Readiness")
    for state in states:
        remaining = policy.approvals_to_next_tier(state)
        row = [
            state.action_type,
            policy.tier_description(state.tier, state.action_type),
            str(state.consecutive_approvals),
            format_hold_time(policy.hold_minutes(state.action_type, state.tier)),
            "-" if remaining is None else str(remaining),
        ]
        if readiness is not None:
            ready = readiness.get(state.action_type)
            row.append(f"{ready.state} ({ready.score}%)" if ready else "-")
        table.add_row(*row)
    console.print(table)

    for action_type, ready in (readiness or {}).items():
        for blocker in ready.blockers:
            console.print(f"  [yellow]{action_type}:[/yellow] {blocker}")


def save_transcript(
    response: CopilotResponse,
    user_message: str,
    output_dir: Path,
    slug_override: str | None = None,
) -> Path:
    """Save one copilot turn as a markdown file.

    Args:
        response: The copilot's response.
        user_message: What the user asked.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the message. Useful for inbox mode.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(user_message)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    lines: list[str] = [
        f"# PM Copilot: {user_message[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Mode:** {response.mode}",
        "",
        "---",
        "",
        "## Question",
        "",
        user_message,
        "",
        "## Response",
        "",
        response.message,
        "",
    ]

    deliberation = response.deliberation
    if deliberation is not None:
        lines += ["## Perspectives", ""]
        for c in deliberation.contributions:
            dissent = f" (dissents: {c.dissent_reason})" if c.dissents else ""
            lines += [
                f"### {_persona_name(c.persona_id)}{dissent}",
                "",
                c.perspective,
                "",
                f"*Confidence: {c.confidence:.2f}*",
                "",
            ]
        if deliberation.conflicts:
            lines += ["## Conflicts", ""]
            lines += [
                f"- {_persona_name(c.between[0])} vs {_persona_name(c.between[1])}: {c.topic}"
                for c in deliberation.conflicts
            ]
            lines.append("")

    if response.challenge is not None:
        ch = response.challenge
        lines += [f"## Challenge ({ch.trigger})", "", f"**{ch.question}**", ""]
        lines += [f"- ({ev.strength}) {ev.point}" for ev in ch.counter_evidence]
        if ch.alternative_framing:
            lines += ["", f"*Alternative framing:* {ch.alternative_framing}"]
        lines.append("")

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Transcript saved to: %s", filepath)
    return filepath
