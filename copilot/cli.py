"""Click CLI: ask the copilot, work the inbox, and manage the hold queue."""

import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from config.config_loader import AppConfig, load_config
from copilot.ensemble import EnsembleOrchestrator
from copilot.errors import StoreError
from copilot.graduation import GraduationPolicy
from copilot.healthcheck import run_health_checks
from copilot.hold_queue import HoldQueueService, format_hold_time
from copilot.inbox import archive_file, ensure_dirs, parse_file, scan_inbox, signals_from_metadata
from copilot.local import InMemoryMemory, LocalToolExecutor, LoggingActionExecutor
from copilot.models import ACTION_TYPES, ProjectSignals, SessionState, payload_from_dict
from copilot.output import print_graduation_states, print_pending_actions, print_response, save_transcript
from copilot.personas import PersonaRegistry
from copilot.providers.anthropic import AnthropicProvider
from copilot.providers.base import LanguageModel, RetryingLanguageModel
from copilot.providers.gemini import GeminiProvider
from copilot.providers.openai_provider import OpenAIProvider
from copilot.store import SPOT_CHECK_VERDICTS, sqlite_stores

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

# Keyed by ModelConfig.sdk; xAI speaks the OpenAI wire format.
PROVIDER_CLASSES: dict[str, type[LanguageModel]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "xai": OpenAIProvider,
    "google-genai": GeminiProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_all_models(config: AppConfig) -> dict[str, LanguageModel]:
    """Build all available providers. Returns dict keyed by name."""
    models: dict[str, LanguageModel] = {}
    for name in sorted(config.available_providers):
        model_cfg = config.models[name]
        cls = PROVIDER_CLASSES.get(model_cfg.sdk)
        if cls is None:
            logger.warning("Provider '%s' uses unknown sdk '%s', skipping", name, model_cfg.sdk)
            continue
        try:
            models[name] = cls(model_cfg)
        except Exception as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return models


def _build_language_model(config: AppConfig, provider: str | None) -> LanguageModel:
    """The provider to run personas on, wrapped with a single timeout retry."""
    models = _build_all_models(config)
    if not models:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)
    wanted = provider or config.defaults.provider
    if wanted not in models:
        fallback = next(iter(models))
        if provider:
            console.print(f"[bold red]Error:[/bold red] Provider '{provider}' is not available.")
            sys.exit(1)
        logger.warning("Default provider '%s' unavailable, using '%s'", wanted, fallback)
        wanted = fallback
    return RetryingLanguageModel(models[wanted])


def _build_orchestrator(config: AppConfig, llm: LanguageModel, project: str | None) -> EnsembleOrchestrator:
    session = SessionState(session_id=uuid.uuid4().hex, project_id=project)
    return EnsembleOrchestrator(
        llm=llm,
        tools=LocalToolExecutor(),
        memory=InMemoryMemory(),
        session=session,
        registry=PersonaRegistry.with_overrides(config.ensemble.mode_personas),
        config=config.ensemble,
    )


def _open_queue(config: AppConfig) -> HoldQueueService:
    return HoldQueueService.from_stores(
        sqlite_stores(config.defaults.store_path),
        policy=GraduationPolicy(config.graduation),
        config=config.hold_queue,
    )


async def _ask_one(
    orchestrator: EnsembleOrchestrator,
    message: str,
    background: bool,
    signals: ProjectSignals | None,
    save_dir: Path | None,
    slug_override: str | None = None,
) -> Path | None:
    with console.status("Thinking..."):
        response = await orchestrator.process_message(message, is_background=background, signals=signals)
    print_response(response)
    if save_dir is None:
        return None
    saved = save_transcript(response, message, save_dir, slug_override=slug_override)
    console.print(f"\n[dim]Saved to: {saved}[/dim]")
    return saved


async def _run_inbox(config: AppConfig, llm: LanguageModel, inbox_dir: Path, archive_dir: Path) -> None:
    ensure_dirs(inbox_dir, archive_dir)
    files = scan_inbox(inbox_dir)

    if not files:
        click.echo("No files in inbox.")
        return

    for file_path in files:
        message, meta = parse_file(file_path)
        orchestrator = _build_orchestrator(config, llm, meta.get("project"))
        try:
            saved = await _ask_one(
                orchestrator,
                message,
                background=bool(meta.get("background", False)),
                signals=signals_from_metadata(meta),
                save_dir=config.defaults.transcripts_dir,
                slug_override=file_path.stem,
            )
            archived = archive_file(file_path, archive_dir)
            click.echo(f"Processed: {file_path.name} -> {saved} (archived: {archived.name})")
        except Exception as e:
            logger.error("Failed: %s -- %s", file_path.name, e)
            archive_file(file_path, archive_dir, failed=True)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to settings.yaml (default: bundled config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """PM Copilot -- persona ensemble and graduated-autonomy hold queue.

    \b
    Examples:
      pm-copilot ask "Are we on track for the March release?" --project apollo
      pm-copilot queue jira_status_change '{"issue_key": "PM-12", ...}' --project apollo
      pm-copilot pending
      pm-copilot approve 3f2a... --project apollo
      pm-copilot process
    """
    load_dotenv()
    _setup_logging(verbose)

    try:
        ctx.obj = load_config(Path(config_path)) if config_path else load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)


@main.command()
@click.argument("message")
@click.option("--project", default=None, help="Project the message is about")
@click.option("--background", is_flag=True, help="Treat as a background monitoring cycle")
@click.option("--provider", default=None, help="Provider to use (default: from config)")
@click.option("--save/--no-save", default=False, help="Save a markdown transcript")
@click.pass_obj
def ask(config: AppConfig, message: str, project: str | None, background: bool, provider: str | None, save: bool) -> None:
    """Ask the copilot a question."""
    llm = _build_language_model(config, provider)
    orchestrator = _build_orchestrator(config, llm, project)
    save_dir = config.defaults.transcripts_dir if save else None
    asyncio.run(_ask_one(orchestrator, message, background, None, save_dir))


@main.command()
@click.option("--inbox-dir", "inbox_dir_override", default=None,
              help="Override inbox folder path (default: from config)")
@click.option("--provider", default=None, help="Provider to use (default: from config)")
@click.pass_obj
def inbox(config: AppConfig, inbox_dir_override: str | None, provider: str | None) -> None:
    """Process every .md message in the inbox folder."""
    llm = _build_language_model(config, provider)
    inbox_dir = Path(inbox_dir_override) if inbox_dir_override else config.inbox.dir
    asyncio.run(_run_inbox(config, llm, inbox_dir, config.inbox.archive_dir))


@main.command()
@click.argument("action_type", type=click.Choice(ACTION_TYPES))
@click.argument("payload_json")
@click.option("--project", required=True)
@click.pass_obj
def queue(config: AppConfig, action_type: str, payload_json: str, project: str) -> None:
    """Hold a proposed action for review."""
    try:
        payload = payload_from_dict(action_type, json.loads(payload_json))
    except (ValueError, TypeError, KeyError) as exc:
        raise click.BadParameter(f"Invalid {action_type} payload: {exc}", param_hint="PAYLOAD_JSON") from exc

    service = _open_queue(config)
    result = asyncio.run(service.queue_action(project, payload))
    console.print(
        f"Queued [bold]{result.action.id}[/bold] ({action_type}), "
        f"runs in {format_hold_time(result.hold_minutes)} [dim](tier {result.graduation_tier})[/dim]"
    )


@main.command()
@click.option("--project", default=None, help="Only this project")
@click.pass_obj
def pending(config: AppConfig, project: str | None) -> None:
    """List actions waiting out their hold."""
    service = _open_queue(config)
    if project:
        actions = asyncio.run(service.get_pending_actions(project))
    else:
        actions = asyncio.run(service.get_all_pending_actions())
    total = asyncio.run(service.count_pending_actions(project))
    print_pending_actions(actions, total=total)


@main.command()
@click.argument("action_id")
@click.option("--project", required=True)
@click.option("--by", "decided_by", default=None, help="Who approved")
@click.pass_obj
def approve(config: AppConfig, action_id: str, project: str, decided_by: str | None) -> None:
    """Approve a held action and execute it now."""
    service = _open_queue(config)
    try:
        action = asyncio.run(service.approve_action(project, action_id, LoggingActionExecutor(), decided_by))
    except StoreError as exc:
        console.print(f"[bold red]Store error:[/bold red] {exc}")
        sys.exit(1)
    except Exception as exc:
        console.print(f"[bold red]Approved, but execution failed:[/bold red] {exc}")
        sys.exit(1)
    if action is None:
        console.print(f"[yellow]Nothing to approve:[/yellow] {action_id} is missing or already decided.")
        sys.exit(1)
    console.print(f"[green]Approved and executed[/green] {action.id} ({action.action_type})")


@main.command()
@click.argument("action_id")
@click.option("--project", required=True)
@click.option("--reason", default=None)
@click.option("--by", "decided_by", default=None, help="Who cancelled")
@click.pass_obj
def cancel(config: AppConfig, action_id: str, project: str, reason: str | None, decided_by: str | None) -> None:
    """Cancel a held action."""
    service = _open_queue(config)
    action = asyncio.run(service.cancel_action(project, action_id, reason, decided_by))
    if action is None:
        console.print(f"[yellow]Nothing to cancel:[/yellow] {action_id} is missing or already decided.")
        sys.exit(1)
    console.print(f"[green]Cancelled[/green] {action.id} ({action.action_type})")


@main.command()
@click.pass_obj
def process(config: AppConfig) -> None:
    """Execute every action whose hold has expired."""
    service = _open_queue(config)
    result = asyncio.run(service.process_queue(LoggingActionExecutor()))
    console.print(f"Processed {result.processed}, executed {result.executed}, failed {len(result.errors)}")
    for err in result.errors:
        console.print(f"  [red]FAIL[/red] {err.action_id}: {err.error}")
    if result.errors:
        sys.exit(1)


@main.command()
@click.option("--project", required=True)
@click.pass_obj
def graduation(config: AppConfig, project: str) -> None:
    """Show graduated-autonomy tiers for a project."""
    service = _open_queue(config)
    states = asyncio.run(service.get_project_graduation_states(project))
    readiness = asyncio.run(service.get_project_readiness(project))
    print_graduation_states(states, service.policy, readiness)


@main.command("spot-check")
@click.argument("action_id")
@click.option("--project", required=True)
@click.option("--verdict", type=click.Choice(SPOT_CHECK_VERDICTS), default=None,
              help="Review outcome; omit to record a pending check")
@click.option("--notes", default=None)
@click.pass_obj
def spot_check(config: AppConfig, action_id: str, project: str, verdict: str | None, notes: str | None) -> None:
    """Record a spot-check verdict on an executed action."""
    service = _open_queue(config)
    asyncio.run(service.record_spot_check(project, action_id, verdict, notes))
    console.print(f"Recorded spot check on {action_id}: {verdict or 'pending'}")


@main.command()
@click.option("--minutes", default=15, show_default=True, help="Claimed at least this long ago")
@click.pass_obj
def stuck(config: AppConfig, minutes: int) -> None:
    """List actions whose automatic execution never finished."""
    service = _open_queue(config)
    actions = asyncio.run(service.get_stuck_actions(minutes))
    if not actions:
        console.print("[dim]No stuck actions.[/dim]")
        return
    for action in actions:
        console.print(f"  [red]STUCK[/red] {action.id} {action.project_id} {action.action_type} "
                      f"(claimed {action.claimed_at:%Y-%m-%d %H:%M})")


@main.command()
@click.option("--project", required=True)
@click.option("--limit", default=20, show_default=True)
@click.pass_obj
def events(config: AppConfig, project: str, limit: int) -> None:
    """Show the audit trail for a project, newest first."""
    service = _open_queue(config)
    found = asyncio.run(service.events.list_by_project(project, limit))
    table = Table(title=f"Events: {project}")
    table.add_column("When", style="dim")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Summary")
    for event in found:
        table.add_row(f"{event.created_at:%Y-%m-%d %H:%M:%S}", event.event_type, event.severity, event.summary)
    console.print(table)


@main.command()
@click.pass_obj
def health(config: AppConfig) -> None:
    """Ping every configured provider."""
    models = _build_all_models(config)
    if not models:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    console.print("\n[bold]Checking providers...[/bold]")
    results = asyncio.run(run_health_checks(models))
    failed = False
    for name in sorted(results):
        status = results[name]
        if status.ok:
            console.print(f"  [green]OK  [/green] {name} [dim]({status.latency_sec:.1f}s)[/dim]")
        else:
            short_err = status.error.splitlines()[0][:120] if status.error else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed = True
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
