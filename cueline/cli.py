"""Typer CLI entry point for cueline."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer

from .config import (
    EnvironmentSettingError,
    clear_environment_setting,
    get_settings,
    list_environment_settings,
    update_environment_setting,
)
from .core.audio.vad import VadConfig, VadSegmenter
from .core.pipeline.orchestrator import SessionOrchestrator, SessionTerminalError
from .data.storage import SessionStore
from .events import EventType, ResponseComplete, ResponseUpdate, StatusUpdate, VadEvent, VadEventKind
from .logging import configure_logging, get_logger
from .services.factory import ServiceConfigurationError, resolve_generation_backend
from .services.keys import parse_keys
from .utils.audio import ensure_mono, iter_frames, read_wave, resample

app = typer.Typer(help="cueline real-time interview assistant")
LOGGER = get_logger(__name__)


def _timestamp(value: float) -> str:
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


async def _run_questions(
    orchestrator: SessionOrchestrator,
    questions: List[str],
    keys: List[str],
    notes: Optional[List[str]] = None,
) -> None:
    bus = orchestrator.bus

    def on_update(event) -> None:
        if isinstance(event, ResponseUpdate):
            typer.echo(event.delta, nl=False)

    def on_complete(event) -> None:
        if isinstance(event, ResponseComplete):
            typer.echo("")

    def on_status(event) -> None:
        if isinstance(event, StatusUpdate) and event.terminal:
            typer.echo(f"[{event.status}] {event.message}", err=True)

    bus.on(EventType.RESPONSE_UPDATE, on_update)
    bus.on(EventType.RESPONSE_COMPLETE, on_complete)
    bus.on(EventType.STATUS_UPDATE, on_status)

    session_id = await orchestrator.initialize_session(keys=keys)
    typer.echo(f"Session {session_id}")
    for note in notes or []:
        orchestrator.add_critical_context(note)
    try:
        for question in questions:
            typer.echo(f"Q: {question}")
            await orchestrator.send_text(question)
            await orchestrator.wait_idle()
    finally:
        await orchestrator.close()


@app.command()
def ask(
    questions: List[str] = typer.Argument(..., help="Questions to send, in order"),
    backend: Optional[str] = typer.Option(None, help="Generation backend: dummy/openai"),
    keys: Optional[str] = typer.Option(None, help="Comma-separated API keys; defaults to settings"),
    note: Optional[List[str]] = typer.Option(None, "--note", help="Context kept across topic changes"),
    save: bool = typer.Option(True, "--save/--no-save", help="Persist turns to the session database"),
) -> None:
    """Run questions through a live session and print the streamed answers."""

    configure_logging()
    settings = get_settings()
    try:
        generation_backend = resolve_generation_backend(backend or settings.backend, settings.openai_model)
    except (ServiceConfigurationError, RuntimeError) as exc:
        raise typer.BadParameter(str(exc)) from exc

    store = SessionStore(settings.database_path) if save else None
    orchestrator = SessionOrchestrator.from_settings(generation_backend, settings, store=store)
    key_list = parse_keys(keys) if keys is not None else settings.api_keys
    try:
        asyncio.run(_run_questions(orchestrator, questions, key_list, note))
    except SessionTerminalError as exc:
        typer.echo(f"Session failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc


@app.command()
def segment(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="WAV file to segment"),
    threshold: Optional[float] = typer.Option(None, help="Override the energy threshold"),
) -> None:
    """Run a WAV file through the voice activity detector and list speech segments."""

    configure_logging()
    config = VadConfig.from_settings(get_settings())
    if threshold is not None:
        config.energy_threshold = threshold
    try:
        segmenter = VadSegmenter(config)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    data, sample_rate = read_wave(path)
    samples = resample(ensure_mono(data), sample_rate, config.sample_rate)[:, 0]
    frame_seconds = config.frame_size / config.sample_rate

    started: Optional[float] = None
    count = 0
    for frame in iter_frames(samples, config.frame_size):
        for event in segmenter.process_frame(frame):
            if not isinstance(event, VadEvent):
                continue
            at = event.frame_index * frame_seconds
            if event.kind is VadEventKind.SPEECH_START:
                started = at
            elif started is not None:
                count += 1
                hint = event.hint.kind.value if event.hint else "-"
                typer.echo(f"{count:3d}  {started:8.2f}s -> {at:8.2f}s  hint={hint}")
                started = None
    if started is not None:
        count += 1
        typer.echo(f"{count:3d}  {started:8.2f}s -> (end of file)")

    pause = segmenter.pause_data()
    typer.echo(f"Segments: {count}; adaptive silence frames: {pause.silence_frames}")


@app.command()
def history(
    session_id: Optional[str] = typer.Argument(None, help="Session id; lists sessions when omitted"),
    include_suppressed: bool = typer.Option(False, help="Include replayed turns"),
) -> None:
    """Print stored sessions or the turns of one session."""

    configure_logging()
    store = SessionStore(get_settings().database_path)
    store.initialize()
    if session_id is None:
        sessions = store.list_sessions()
        if not sessions:
            typer.echo("No sessions recorded")
            return
        for session in sessions:
            typer.echo(f"{session.id}  {_timestamp(session.created_at)}  {session.profile}  {session.language}")
        return

    if store.fetch_session(session_id) is None:
        raise typer.BadParameter(f"Unknown session: {session_id}")
    for turn in store.fetch_turns(session_id, include_suppressed=include_suppressed):
        typer.echo(f"[{_timestamp(turn.timestamp)}] ({turn.kind.value}) Q: {turn.question}")
        if turn.answer:
            typer.echo(f"    A: {turn.answer}")


@app.command()
def settings(
    set_value: Optional[List[str]] = typer.Option(None, "--set", help="FIELD=VALUE override to persist"),
    clear: Optional[List[str]] = typer.Option(None, "--clear", help="Field whose override is removed"),
) -> None:
    """List, update or clear environment-backed settings."""

    configure_logging()
    try:
        for item in set_value or []:
            field, sep, value = item.partition("=")
            if not sep:
                raise typer.BadParameter(f"Expected FIELD=VALUE, got {item!r}")
            update_environment_setting(field.strip(), value.strip())
            typer.echo(f"Updated {field.strip()}")
        for field in clear or []:
            clear_environment_setting(field.strip())
            typer.echo(f"Cleared {field.strip()}")
    except EnvironmentSettingError as exc:
        raise typer.BadParameter(str(exc)) from exc

    for setting in list_environment_settings(get_settings()):
        value = "***" if "key" in setting.field and setting.value else setting.value
        typer.echo(f"{setting.env_name}={value}")


if __name__ == "__main__":  # pragma: no cover
    app()
