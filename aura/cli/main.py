"""CLI entry point for the Aura voice companion."""

import asyncio
import json
import signal
import sys
import threading
from pathlib import Path
from typing import Optional
import click
import structlog

from ..config.settings import settings
from ..core.conversation_controller import ControllerEvent, ConversationState, TERMINAL_STATES
from ..core.factory import AppContext, build_context
from ..errors import VoiceValidationError
from ..providers import registry
from ..state.voices import content_type_for
from ..utils.logging import cleanup_old_logs, setup_logging


logger = structlog.get_logger()

QUIT_WORDS = ("q", "quit", "exit")


def _app(ctx: click.Context) -> AppContext:
    """Build the application context on first use."""
    if ctx.obj.get("app") is None:
        ctx.obj["app"] = build_context(
            settings,
            data_dir=ctx.obj.get("data_dir"),
            user_id=ctx.obj.get("user_id"),
        )
    return ctx.obj["app"]


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--config", type=click.Path(exists=True), help="Path to configuration file")
@click.option(
    "--data-dir",
    envvar="AURA_DATA_DIR",
    type=click.Path(file_okay=False),
    help="Directory for sessions, voices and logs (default: ~/.aura)",
)
@click.option("--user-id", help="Act as this user instead of the local anonymous user")
@click.pass_context
def cli(ctx, debug: bool, config: Optional[str], data_dir: Optional[str], user_id: Optional[str]):
    """Aura, a voice companion you can talk to."""
    ctx.ensure_object(dict)

    if config:
        settings.config_file = Path(config)
        settings.load_from_file()

    data_path = Path(data_dir).expanduser() if data_dir else settings.data_path
    setup_logging(
        debug=debug,
        log_file=settings.logging.file_enabled,
        log_level=settings.logging.level,
        log_format=settings.logging.format,
        log_dir=data_path / "logs",
        file_rotation_mb=settings.logging.file_rotation_mb,
        file_backup_count=settings.logging.file_backup_count,
    )
    cleanup_old_logs(data_path / "logs", keep_days=settings.logging.file_backup_count)

    ctx.obj["debug"] = debug
    ctx.obj["data_dir"] = data_path
    ctx.obj["user_id"] = user_id


# Conversation

def _echo_event(event: ControllerEvent) -> None:
    if event.kind == "state":
        state = event.payload["state"]
        if event.payload.get("recording"):
            click.echo(click.style("● recording... press Enter to stop", fg="red"))
        elif state == ConversationState.LISTENING.value:
            click.echo(click.style("Press Enter to talk, q to end.", dim=True))
        elif state == ConversationState.PROCESSING.value:
            click.echo(click.style("Thinking...", dim=True))
    elif event.kind == "transcript" and event.payload:
        click.echo(f"You:  {event.payload}")
    elif event.kind == "response":
        click.echo(click.style(f"Aura: {event.payload}", fg="cyan"))
    elif event.kind == "error":
        click.echo(click.style(f"Error: {event.payload}", fg="red"), err=True)


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
    """Feed stdin lines into ``queue``; ``None`` marks end of input."""

    def reader() -> None:
        try:
            for line in sys.stdin:
                loop.call_soon_threadsafe(queue.put_nowait, line.strip())
            loop.call_soon_threadsafe(queue.put_nowait, None)
        except RuntimeError:
            # loop already closed
            return

    threading.Thread(target=reader, name="aura-stdin", daemon=True).start()


async def _talk(app: AppContext, log_dir: Optional[Path] = None, debug: bool = False) -> int:
    controller = app.build_controller()
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def on_event(event: ControllerEvent) -> None:
        _echo_event(event)
        if event.kind == "error":
            stop.set()

    controller.subscribe(on_event)

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    exit_code = 0
    try:
        session_id = await controller.begin_session()
        if session_id is None:
            return 1
        click.echo(click.style(f"Session {session_id} started.", fg="green", bold=True))
        if log_dir is not None and settings.logging.session_logs and settings.logging.file_enabled:
            setup_logging(
                debug=debug,
                log_level=settings.logging.level,
                log_format=settings.logging.format,
                log_dir=log_dir,
                session_id=session_id,
                file_rotation_mb=settings.logging.file_rotation_mb,
                file_backup_count=settings.logging.file_backup_count,
            )

        lines: asyncio.Queue = asyncio.Queue()
        _start_stdin_reader(loop, lines)

        while not stop.is_set() and controller.conversation_state not in TERMINAL_STATES:
            next_line = asyncio.ensure_future(lines.get())
            stopped = asyncio.ensure_future(stop.wait())
            done, pending = await asyncio.wait({next_line, stopped}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            if next_line not in done:
                break

            line = next_line.result()
            if line is None or line.lower() in QUIT_WORDS:
                break
            if not controller.toggle_microphone():
                click.echo(click.style(
                    f"Busy ({controller.conversation_state.value}), try again in a moment.", dim=True
                ))

        if controller.conversation_state == ConversationState.ERROR:
            exit_code = 1
    finally:
        click.echo("\nEnding session...")
        await controller.close()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                pass

    summary = app.metrics.get_summary() if app.metrics else {"error": "metrics disabled"}
    if "error" not in summary:
        click.echo("\nSession Summary:")
        click.echo(f"Duration: {summary['session_duration_seconds']:.1f}s")
        click.echo(f"Turns: {summary['completed_turns']}")
        if summary["completed_turns"] > 0:
            click.echo(f"Avg E2E Latency: {summary['e2e_latency_ms']['avg']:.0f}ms")
    return exit_code


@cli.command()
@click.pass_context
def talk(ctx):
    """
    Start a spoken session.

    Press Enter to start recording and Enter again to send what you said.
    Type q (or press Ctrl+C) to end the session.
    """
    app = _app(ctx)
    try:
        exit_code = asyncio.run(_talk(app, log_dir=ctx.obj["data_dir"] / "logs", debug=ctx.obj["debug"]))
    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        exit_code = 1
    finally:
        app.store.close()
    click.echo("Goodbye!")
    ctx.exit(exit_code)


# Sessions

@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Output sessions as JSON")
@click.pass_context
def sessions(ctx, json_output: bool):
    """List sessions of the current user, newest first."""
    app = _app(ctx)
    items = sorted(app.store.list_by_user(), key=lambda s: s.started_at, reverse=True)

    if json_output:
        click.echo(json.dumps([s.to_dict() for s in items], indent=2))
        return

    if not items:
        click.echo("No sessions yet.")
        return

    for session in items:
        status = "active" if session.is_active else "ended"
        if session.sync_state.synced:
            sync = "synced (local)" if session.sync_state.surrogate else "synced"
        else:
            sync = "pending"
        click.echo(
            f"{session.id}  {session.started_at:%Y-%m-%d %H:%M}  "
            f"{len(session.conversation):>3} messages  {status:<6}  {sync}"
        )


@cli.command()
@click.argument("session_id")
@click.option("--json", "json_output", is_flag=True, help="Output the session as JSON")
@click.pass_context
def show(ctx, session_id: str, json_output: bool):
    """Show the transcript of a session."""
    session = _app(ctx).store.get(session_id)
    if session is None:
        raise click.ClickException(f"Unknown session: {session_id}")

    if json_output:
        click.echo(json.dumps(session.to_dict(), indent=2))
        return

    click.echo(f"Session {session.id} (voice {session.voice_id})")
    click.echo(f"Started: {session.started_at.isoformat()}")
    if session.ended_at:
        click.echo(f"Ended:   {session.ended_at.isoformat()}")
    click.echo("-" * 60)
    for message in session.conversation:
        speaker = "You" if message.role.value == "user" else "Aura"
        marker = " (placeholder)" if message.placeholder else ""
        click.echo(f"[{message.timestamp:%H:%M:%S}] {speaker}{marker}: {message.content}")


@cli.command()
@click.argument("session_id", required=False)
@click.option("--all", "sync_all", is_flag=True, help="Sync every session not yet synced")
@click.pass_context
def sync(ctx, session_id: Optional[str], sync_all: bool):
    """Push sessions to the remote store."""
    app = _app(ctx)
    if session_id:
        targets = [session_id]
    elif sync_all:
        targets = [s.id for s in app.store.list_by_user() if not s.sync_state.synced]
    else:
        raise click.UsageError("Pass a SESSION_ID or --all")

    async def run() -> list:
        try:
            return [(target, await app.sync_agent.sync(target)) for target in targets]
        finally:
            await app.sync_agent.aclose()

    results = asyncio.run(run())
    if not results:
        click.echo("Nothing to sync.")

    failed = False
    for target, result in results:
        if result is None:
            failed = True
            click.echo(click.style(f"{target}: unknown session", fg="red"), err=True)
        elif result.surrogate:
            click.echo(click.style(f"{target}: kept locally as {result.remote_id} ({result.error})", fg="yellow"))
        else:
            click.echo(click.style(f"{target}: synced as {result.remote_id}", fg="green"))
    if failed:
        ctx.exit(1)


# Analysis

@cli.command()
@click.option("--refresh", is_flag=True, help="Analyze sessions that have changed since their last analysis")
@click.option("--force", is_flag=True, help="Re-analyze every session (implies --refresh)")
@click.option("--include-synthetic", is_flag=True, help="Include placeholder analyses in the aggregate")
@click.option("--json", "json_output", is_flag=True, help="Output the aggregate as JSON")
@click.pass_context
def analysis(ctx, refresh: bool, force: bool, include_synthetic: bool, json_output: bool):
    """Show sentiment, themes and progress across your sessions."""
    app = _app(ctx)
    if refresh or force:
        result = asyncio.run(app.analysis.refresh(force=force, include_synthetic=include_synthetic))
    else:
        result = app.analysis.aggregate(include_synthetic=include_synthetic)

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    if result.progress.sessions == 0:
        click.echo("No analyzed sessions yet. Run with --refresh to analyze your sessions.")
        if result.excluded_synthetic:
            click.echo(f"{result.excluded_synthetic} placeholder analyses hidden; use --include-synthetic.")
        return

    s = result.overall_sentiment
    click.echo(f"Sessions analyzed: {result.progress.sessions} ({result.provenance.value})")
    click.echo(f"Sentiment: {s.positive:.0%} positive, {s.neutral:.0%} neutral, {s.negative:.0%} negative")
    click.echo(f"Trend: {result.progress.sentiment_trend.value}")
    click.echo(f"Average session length: {result.progress.average_session_length} min")

    if result.common_themes:
        click.echo("\nCommon themes:")
        for theme in result.common_themes:
            click.echo(f"  - {theme.name} ({theme.frequency}x, strength {theme.average_strength:.2f})")

    if result.top_recommendations:
        click.echo("\nRecommendations:")
        for recommendation in result.top_recommendations:
            click.echo(f"  - {recommendation}")

    if result.excluded_synthetic:
        click.echo(click.style(
            f"\n{result.excluded_synthetic} placeholder analyses not included.", dim=True
        ))


# Voices

@cli.group()
def voices():
    """Manage synthesis voices."""


@voices.command("list")
@click.pass_context
def list_voices(ctx):
    """List registered voices, oldest first."""
    app = _app(ctx)
    items = app.voices.list()
    if not items:
        click.echo(f"No voices registered. Sessions use {settings.providers.default_voice_id}.")
        return
    for voice in items:
        click.echo(f"{voice.id}  {voice.name}  ({voice.provider}, {voice.created_at:%Y-%m-%d})")


@voices.command("add")
@click.argument("name")
@click.argument("audio_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def add_voice(ctx, name: str, audio_file: str):
    """Register a cloned voice from a reference recording."""
    app = _app(ctx)
    content_type = content_type_for(audio_file)
    if content_type is None:
        raise click.BadParameter("expected a .wav, .mp3 or .m4a file", param_hint="AUDIO_FILE")

    try:
        profile = app.voices.create_cloned_voice(name, Path(audio_file).read_bytes(), content_type)
    except VoiceValidationError as e:
        raise click.ClickException(str(e))
    click.echo(click.style(f"Registered voice {profile.id} ({profile.name})", fg="green"))


@cli.command()
@click.option("--status", is_flag=True, help="Show the status of each configured provider")
def providers(status: bool):
    """List available providers."""
    for kind, names in (
        ("STT", registry.list_stt_providers()),
        ("AI", registry.list_ai_providers()),
        ("TTS", registry.list_tts_providers()),
    ):
        click.echo(f"{kind} Providers ({len(names)})")
        for name in names:
            click.echo(f"  - {name}")

    p = settings.providers
    click.echo(f"\nTranscription chain: {' -> '.join(p.stt_chain)} -> placeholder")
    click.echo(f"Generation chain: {' -> '.join(p.ai_chain)} -> static")
    click.echo(f"Synthesis chain: {p.cloning_provider} (cloned voices) -> {p.narration_provider} "
               f"-> {p.on_device_provider} -> silent")

    if status:
        configured = (
            [registry.get_stt_provider(name) for name in p.stt_chain]
            + [registry.get_ai_provider(name) for name in p.ai_chain]
            + [registry.get_tts_provider(name)
               for name in (p.cloning_provider, p.narration_provider, p.on_device_provider)]
        )
        click.echo("\nStatus:")
        for provider in configured:
            details = provider.get_status()
            name = details.pop("provider", provider.name)
            click.echo(f"  {name}: " + ", ".join(f"{k}={v}" for k, v in details.items()))


if __name__ == "__main__":
    cli()
