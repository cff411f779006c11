"""Click CLI: config loading, provider selection, running and exporting conversations."""

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from brainstorm.engine import ConversationEngine, EngineCallbacks
from brainstorm.events import Event, EventType
from brainstorm.healthcheck import run_health_checks
from brainstorm.lock import ConversationLock
from brainstorm.models import ConversationMode, ConversationStatus, MessageType
from brainstorm.output import print_message, print_result, print_round_header, render_json, render_markdown, save_to_file
from brainstorm.providers.anthropic import AnthropicProvider
from brainstorm.providers.base import AIProvider
from brainstorm.providers.openai_provider import OpenAIProvider
from brainstorm.storage import JsonFileStorage
from brainstorm.topics import parse_topic_file
from config.config_loader import AgentConfig, AppConfig, load_config

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

# Keyed by the ``sdk`` field of a model entry in settings.yaml
PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
}

DEFAULT_GOAL = "Reach a shared, actionable conclusion."


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _load_config_or_exit() -> AppConfig:
    try:
        return load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)


def _build_providers(config: AppConfig, names: set[str]) -> dict[str, AIProvider]:
    """Build providers for the given model names. Returns dict keyed by model name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(names):
        if name not in config.available_providers:
            logger.warning("Model '%s' has no API key, skipping", name)
            continue
        model_cfg = config.models[name]
        provider_cls = PROVIDER_CLASSES.get(model_cfg.sdk)
        if provider_cls is None:
            logger.warning("Model '%s' uses unknown sdk '%s', skipping", name, model_cfg.sdk)
            continue
        try:
            providers[name] = provider_cls(model_cfg)
        except Exception as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


def _check_and_filter_providers(providers: dict[str, AIProvider]) -> dict[str, AIProvider]:
    """Run health checks, print results, and ask user what to do on failures.

    Returns the filtered dict of working providers. Exits if the user
    declines to continue or no providers pass.
    """
    console.print("\n[bold]Checking providers...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(providers))

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return providers

    working = {n: p for n, p in providers.items() if n not in failed_names}

    if not working:
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed_names)} provider(s) failed:[/yellow] {', '.join(failed_names)}")
    console.print(f"Working providers: {', '.join(sorted(working))}")

    if not click.confirm("Continue with agents on working providers only?", default=True):
        sys.exit(0)

    console.print()
    return working


def _select_roster(config: AppConfig, agents_arg: list[str], no_secretary: bool) -> list[AgentConfig]:
    """Participants named in ``agents_arg`` (all when empty), plus the secretary unless disabled."""
    wanted = {name.lower() for name in agents_arg}
    roster: list[AgentConfig] = []
    for agent in config.agents:
        if agent.is_secretary:
            if not no_secretary:
                roster.append(agent)
        elif not wanted or agent.name.lower() in wanted:
            roster.append(agent)
    return roster


def _attach_console(engine: ConversationEngine) -> None:
    """Stream the conversation to the terminal."""
    agents = {a.id: a for a in engine.get_agents()}

    def on_event(event: Event) -> None:
        if event.type is EventType.AGENT_THINKING:
            agent = agents.get(event.agent_id or "")
            if agent is not None:
                console.print(f"\n[bold cyan]{agent.name}[/bold cyan] [dim]({agent.role})[/dim]")
        elif event.type is EventType.STREAM_CHUNK:
            console.print(event.content or "", end="", markup=False, highlight=False)
        elif event.type is EventType.STREAM_COMPLETE:
            console.print()
        elif event.type is EventType.ROUND_COMPLETE:
            print_round_header((event.round or 0) + 1)
        elif event.type is EventType.MESSAGE_CREATED and event.payload.type is MessageType.SUMMARY:
            print_message(event.payload, list(agents.values()))
        elif event.type is EventType.CONVERSATION_ROUNDS_DECIDED:
            console.print(f"[dim]Secretary planned {event.payload} rounds: {event.content}[/dim]", highlight=False)

    engine.events.subscribe(on_event)


def _report_error(error: Exception) -> None:
    console.print(f"[bold red]Error:[/bold red] {error}")


async def _drive(engine: ConversationEngine, resume: bool) -> None:
    """Run the engine until it stops; Ctrl+C pauses it."""
    loop = asyncio.get_running_loop()
    # add_signal_handler is unavailable on Windows; Ctrl+C then interrupts hard
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(engine.pause()))
    try:
        if resume:
            await engine.resume()
        else:
            await engine.start()
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)


def _finish_output(engine: ConversationEngine, storage: JsonFileStorage, output_dir: Path) -> None:
    conversation = engine.get_conversation()
    if conversation.status is not ConversationStatus.COMPLETED:
        console.print(
            f"\n[yellow]Conversation {conversation.status.value}.[/yellow] "
            f"Resume with: brainstorm resume {conversation.id}"
        )
        return

    draft = engine.get_result_aggregator().get_draft()
    print_result(conversation, draft)
    markdown = render_markdown(conversation, storage.agents_for(conversation.id), storage.messages_for(conversation.id), draft)
    saved_path = save_to_file(markdown, conversation.subject, output_dir)
    console.print(f"\n[dim]Saved to: {saved_path}[/dim]")


@click.group()
def main() -> None:
    """AI Brainstorm -- multi-agent discussions driven by language models.

    \b
    Examples:
      brainstorm run "Should we rewrite the billing service?" --rounds 2
      brainstorm run --file topic.md --mode dynamic
      brainstorm resume 3f2a...
      brainstorm export 3f2a... --format json
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model responses containing
    # Unicode chars don't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")
    load_dotenv()


@main.command()
@click.argument("subject", required=False)
@click.option("--goal", default=None, help="What the discussion should achieve")
@click.option("--file", "topic_file", type=click.Path(exists=True), help="Read the topic from a .md file")
@click.option("--mode", type=click.Choice([m.value for m in ConversationMode]), default=None,
              help="Turn selection mode (default: from config)")
@click.option("--rounds", default=None, type=int, help="Number of rounds (default: from config)")
@click.option("--auto-rounds", is_flag=True, default=False,
              help="Let the secretary pick the number of rounds after the first one")
@click.option("--speed-ms", default=None, type=int, help="Pause between turns in milliseconds")
@click.option("--agents", "agents_arg", default=None, help="Comma-separated participant names")
@click.option("--no-secretary", is_flag=True, default=False, help="Run without a secretary")
@click.option("--storage-dir", default=None, help="Conversation store directory (default: from config)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
def run(
    subject: str | None,
    goal: str | None,
    topic_file: str | None,
    mode: str | None,
    rounds: int | None,
    auto_rounds: bool,
    speed_ms: int | None,
    agents_arg: str | None,
    no_secretary: bool,
    storage_dir: str | None,
    output_path: str | None,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """Start a new conversation on SUBJECT."""
    _setup_logging(verbose)
    config = _load_config_or_exit()

    # CLI flags win over topic frontmatter, which wins over config defaults
    topic = None
    if topic_file:
        try:
            topic = parse_topic_file(Path(topic_file))
        except ValueError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            sys.exit(1)
        subject = subject or topic.subject
    if not subject:
        console.print("[bold red]Error:[/bold red] Provide a SUBJECT argument or --file.")
        sys.exit(1)

    effective_goal = goal or (topic.goal if topic else None) or DEFAULT_GOAL
    effective_mode = ConversationMode(mode or (topic.mode if topic and topic.mode else config.defaults.mode))
    effective_rounds = rounds if rounds is not None else (
        topic.rounds if topic and topic.rounds is not None else config.defaults.max_rounds
    )
    if auto_rounds and not no_secretary:
        effective_rounds = None
    effective_speed = speed_ms if speed_ms is not None else (
        topic.speed_ms if topic and topic.speed_ms is not None else config.defaults.speed_ms
    )
    agent_names = [a.strip() for a in agents_arg.split(",")] if agents_arg else (topic.agents if topic else [])

    roster = _select_roster(config, agent_names, no_secretary)
    providers = _build_providers(config, {a.model for a in roster})
    if providers and not skip_health_check:
        providers = _check_and_filter_providers(providers)

    roster = [a for a in roster if a.model in providers]
    if not any(not a.is_secretary for a in roster):
        console.print("[bold red]Error:[/bold red] No participants available. Check API keys in .env or --agents.")
        sys.exit(1)

    storage = JsonFileStorage(Path(storage_dir) if storage_dir else config.defaults.storage_dir)
    lock = ConversationLock(config.defaults.lock_dir)
    output_dir = Path(output_path) if output_path else config.defaults.output_dir

    engine = ConversationEngine.create(
        subject=subject,
        goal=effective_goal,
        agents=roster,
        storage=storage,
        providers=providers,
        prompts=config.prompts,
        mode=effective_mode,
        max_rounds=effective_rounds,
        speed_ms=effective_speed,
        include_secretary=not no_secretary,
        lock=lock,
        callbacks=EngineCallbacks(on_error=_report_error),
        retry_backoff_sec=config.defaults.retry_backoff_sec,
        recent_messages=config.defaults.recent_messages,
    )

    participants = [a.name for a in engine.get_agents() if not a.is_secretary]
    if effective_rounds is not None:
        rounds_label = effective_rounds
    else:
        rounds_label = "auto" if auto_rounds and not no_secretary else "unlimited"
    console.print(
        f"\n[bold cyan]AI Brainstorm[/bold cyan] -- {len(participants)} agents, "
        f"{rounds_label} rounds [{effective_mode.value}]"
    )
    console.print(f"Participants: {', '.join(participants)}")
    console.print(f"Subject: [italic]{subject[:80]}{'...' if len(subject) > 80 else ''}[/italic]")
    console.print(f"[dim]Conversation id: {engine.get_conversation().id}[/dim]")
    print_round_header(0)

    _attach_console(engine)
    asyncio.run(_drive(engine, resume=False))
    _finish_output(engine, storage, output_dir)


@main.command()
@click.argument("conversation_id")
@click.option("--storage-dir", default=None, help="Conversation store directory (default: from config)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def resume(conversation_id: str, storage_dir: str | None, output_path: str | None, verbose: bool) -> None:
    """Resume a paused or interrupted conversation."""
    _setup_logging(verbose)
    config = _load_config_or_exit()

    storage = JsonFileStorage(Path(storage_dir) if storage_dir else config.defaults.storage_dir)
    lock = ConversationLock(config.defaults.lock_dir)
    providers = _build_providers(config, {a.model for a in storage.agents_for(conversation_id)})

    engine = ConversationEngine.load(
        conversation_id,
        storage,
        providers,
        config.prompts,
        lock=lock,
        callbacks=EngineCallbacks(on_error=_report_error),
        retry_backoff_sec=config.defaults.retry_backoff_sec,
        recent_messages=config.defaults.recent_messages,
    )
    if engine is None:
        console.print(f"[bold red]Error:[/bold red] No conversation with id {conversation_id}")
        sys.exit(1)
    if engine.is_locked_by_other():
        console.print("[bold red]Error:[/bold red] This conversation is running in another process.")
        sys.exit(1)

    status = engine.get_status()
    console.print(
        f"\n[bold cyan]Resuming[/bold cyan] {engine.get_conversation().subject[:80]} "
        f"[dim](round {engine.get_current_round() + 1}, {status.value})[/dim]"
    )
    _attach_console(engine)
    asyncio.run(_drive(engine, resume=status is ConversationStatus.PAUSED))
    _finish_output(engine, storage, Path(output_path) if output_path else config.defaults.output_dir)


@main.command()
@click.argument("conversation_id")
@click.option("--format", "fmt", type=click.Choice(["markdown", "json"]), default="markdown")
@click.option("--storage-dir", default=None, help="Conversation store directory (default: from config)")
def export(conversation_id: str, fmt: str, storage_dir: str | None) -> None:
    """Print a stored conversation as markdown or JSON."""
    config = _load_config_or_exit()
    storage = JsonFileStorage(Path(storage_dir) if storage_dir else config.defaults.storage_dir)

    conversation = storage.get_conversation(conversation_id)
    if conversation is None:
        console.print(f"[bold red]Error:[/bold red] No conversation with id {conversation_id}")
        sys.exit(1)

    render = render_json if fmt == "json" else render_markdown
    click.echo(
        render(
            conversation,
            storage.agents_for(conversation_id),
            storage.messages_for(conversation_id),
            storage.get_draft(conversation_id),
        )
    )


if __name__ == "__main__":
    main()
