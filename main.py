#!/usr/bin/env python3
"""
Screencaster CLI

Record the screen, microphone and webcam, then turn the raw captures into
finished videos (denoised, loudness-normalized, merged, and a vertical cut).
"""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Annotated, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console

from config import reload_config
from pipeline import PipelineRun, ProgressBus, RunStatus
from recorder import (
    CaptureKind,
    RecordingOptions,
    RecordingStatus,
    ScreencasterError,
)
from recorder.supervisor import ProcessSupervisor
from ui.processing_view import ProcessingView
from utils.logger import THEME, SessionLogger
from utils.tracking import format_clock, format_duration

load_dotenv()
config = reload_config()

# Create Typer app
app = typer.Typer(
    name="screencaster",
    help="Record screencasts and post-process them into finished videos",
    rich_markup_mode="rich",
)

console = Console(theme=THEME)


def _make_logger(command: str, verbose: bool = False) -> SessionLogger:
    logger = SessionLogger(command, logs_dir=config.logs_dir, console=console, verbose=verbose)
    logger.configure_logging()
    return logger


def _process_with_view(
    logger: SessionLogger,
    start_run: Callable[[ProgressBus], Optional[PipelineRun]],
) -> Optional[PipelineRun]:
    """Start a pipeline run in the background and render it until it finishes."""
    bus = ProgressBus(max_progress=config.progress_buffer)
    run = start_run(bus)
    if run is None:
        return None

    ProcessingView([stage.name for stage in run.stages], bus, console=logger.console).run()
    run.wait()
    _print_run_summary(logger, run)
    return run


def _print_run_summary(logger: SessionLogger, run: PipelineRun) -> None:
    ctx = run.context
    data = {"Status": run.status.value}
    if run.started_at and run.finished_at:
        data["Time"] = format_duration((run.finished_at - run.started_at).total_seconds())
    if ctx is not None:
        data["Folder"] = str(ctx.output_dir)
        if ctx.merged_path:
            data["Merged"] = ctx.merged_path.name
        if ctx.vertical_path:
            data["Vertical"] = ctx.vertical_path.name
        data["Normalized"] = "yes" if ctx.normalize_applied else "no"
        for warning in ctx.warnings:
            logger.warning(warning)
    for stage in run.failed_stages:
        data[stage.name] = f"failed: {stage.error}"
    if run.overall_error:
        data["Error"] = run.overall_error

    ok = run.status is RunStatus.COMPLETE
    logger.summary("Processing Complete" if ok else "Processing Failed", data, style="green" if ok else "red")


def _stop_and_process(supervisor: ProcessSupervisor, logger: SessionLogger, process: bool = True) -> None:
    if not process:
        supervisor.stop(process=False)
        return

    run = _process_with_view(logger, lambda bus: supervisor.stop(wait=False, bus=bus))
    if run is None:
        logger.warning("No recording in progress")
        return
    if run.status is not RunStatus.COMPLETE:
        raise typer.Exit(1)


def _report_session_ended(supervisor: ProcessSupervisor, logger: SessionLogger) -> None:
    """The session left the recording state without a stop request from us."""
    status = supervisor.get_status()
    if status.is_stale:
        logger.warning("All capture processes exited on their own")
        _print_status(status)
    elif status.is_processing:
        logger.info("Recording was stopped by another invocation and is being processed")
    else:
        logger.info("Recording was stopped by another invocation")


def _print_status(status: RecordingStatus) -> None:
    if status.is_stale:
        console.print("[warning]⚠ Stale recording found[/warning] (the capture processes are gone)")
        for path in status.recoverable_files:
            console.print(f"  [cyan]{path}[/cyan]")
        console.print("Run [bold]recover[/bold] to process these files or [bold]discard[/bold] to forget them.")
        return

    if status.is_processing:
        console.print("[step]⚙ Processing[/step] a finished recording")
        return

    if not (status.is_recording or status.is_paused):
        console.print("[dim]○ Not recording[/dim]")
        return

    if status.is_paused:
        console.print(f"[paused]❚❚ Paused[/paused] after part {status.part}")
    else:
        console.print(f"[recording]● Recording[/recording] {format_clock(status.duration)}")
    if status.monitor:
        console.print(f"  Monitor: {status.monitor}")
    for label, path, pid in (
        ("Screen", status.video_file, status.video_pid),
        ("Audio", status.audio_file, status.audio_pid),
        ("Webcam", status.webcam_file, status.webcam_pid),
    ):
        if path:
            pid_text = f" [dim](pid {pid})[/dim]" if pid else ""
            console.print(f"  {label}: [cyan]{path}[/cyan]{pid_text}")


@app.command()
def start(
    monitor: Annotated[
        str,
        typer.Option("-m", "--monitor", help="Monitor to record (output name or WxH+X+Y)"),
    ] = "",
    screen: Annotated[
        bool,
        typer.Option("--screen/--no-screen", help="Enable/disable screen recording"),
    ] = True,
    audio: Annotated[
        bool,
        typer.Option("--audio/--no-audio", help="Enable/disable microphone recording"),
    ] = True,
    webcam: Annotated[
        bool,
        typer.Option("--webcam/--no-webcam", help="Enable/disable webcam recording"),
    ] = True,
    require: Annotated[
        Optional[list[CaptureKind]],
        typer.Option("--require", help="Source that must start or the recording is aborted"),
    ] = None,
    vertical: Annotated[
        bool,
        typer.Option("--vertical/--no-vertical", help="Create a vertical (9:16) video when stopping"),
    ] = True,
    output: Annotated[
        Optional[Path],
        typer.Option("-o", "--output", help="Output folder for this recording"),
    ] = None,
    audio_device: Annotated[
        str,
        typer.Option("--audio-device", help="Audio source (default from config)"),
    ] = "",
    webcam_device: Annotated[
        str,
        typer.Option("--webcam-device", help="Webcam device (default: first /dev/video*)"),
    ] = "",
    webcam_fps: Annotated[
        int,
        typer.Option("--webcam-fps", help="Webcam frame rate (default from config)"),
    ] = 0,
    webcam_resolution: Annotated[
        str,
        typer.Option("--webcam-resolution", help="Webcam resolution, e.g. 1280x720"),
    ] = "",
    hw_accel: Annotated[
        bool,
        typer.Option("--hw-accel", help="Use hardware encoding for screen capture"),
    ] = False,
    title: Annotated[
        str,
        typer.Option("-t", "--title", help="Recording title (names the folder)"),
    ] = "",
    topic: Annotated[
        str,
        typer.Option("--topic", help="Recording topic"),
    ] = "",
    presenter: Annotated[
        str,
        typer.Option("--presenter", help="Presenter name"),
    ] = "",
    number: Annotated[
        Optional[int],
        typer.Option("--number", help="Recording number (default: next free number)"),
    ] = None,
    discard_stale: Annotated[
        bool,
        typer.Option("--discard-stale", help="Forget a stale session instead of refusing to start"),
    ] = False,
    wait: Annotated[
        bool,
        typer.Option("--wait", help="Stay in the foreground until stopped (Ctrl+C or 'stop --request')"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Show debug logging"),
    ] = False,
) -> None:
    """Start recording in the background."""
    logger = _make_logger("start", verbose)
    options = RecordingOptions(
        monitor=monitor,
        record_screen=screen,
        record_audio=audio,
        record_webcam=webcam,
        required_sources=frozenset(require or []),
        create_vertical=vertical,
        output_dir=output,
        audio_device=audio_device,
        webcam_device=webcam_device,
        webcam_fps=webcam_fps,
        webcam_resolution=webcam_resolution,
        hw_accel=hw_accel,
        title=title,
        topic=topic,
        presenter=presenter,
        number=number,
    )

    try:
        supervisor = ProcessSupervisor(logger=logger)
        session = supervisor.start(options, discard_stale=discard_stale)
        logger.info(f"Folder: [cyan]{session.output_dir}[/cyan]")

        if not wait:
            console.print("Run [bold]stop[/bold] to finish the recording.")
            return

        console.print("Press [bold]Ctrl+C[/bold] to stop recording.")
        try:
            stop_requested = supervisor.watch()
        except KeyboardInterrupt:
            console.print()
            stop_requested = True
        if stop_requested:
            _stop_and_process(supervisor, logger)
        else:
            _report_session_ended(supervisor, logger)
    except ScreencasterError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    finally:
        logger.close()


@app.command()
def stop(
    process: Annotated[
        bool,
        typer.Option("--process/--no-process", help="Run post-processing after stopping"),
    ] = True,
    request: Annotated[
        bool,
        typer.Option("--request", help="Only signal the foreground 'start --wait' to stop"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Show debug logging"),
    ] = False,
) -> None:
    """Stop the recording and process the captured files."""
    logger = _make_logger("stop", verbose)
    try:
        supervisor = ProcessSupervisor(logger=logger)
        if request:
            if supervisor.request_stop():
                logger.success("Stop requested")
            else:
                logger.warning("No recording in progress")
            return
        _stop_and_process(supervisor, logger, process=process)
    except ScreencasterError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    finally:
        logger.close()


@app.command()
def status(
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print status as JSON"),
    ] = False,
) -> None:
    """Show the current recording status."""
    current = ProcessSupervisor().get_status()
    if as_json:
        print(json.dumps(current.to_dict(), indent=2))
        return
    _print_status(current)


@app.command()
def toggle(
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Show debug logging"),
    ] = False,
) -> None:
    """Start recording if idle, otherwise stop and process."""
    logger = _make_logger("toggle", verbose)
    try:
        supervisor = ProcessSupervisor(logger=logger)
        current = supervisor.get_status()
        if current.is_recording or current.is_paused:
            _stop_and_process(supervisor, logger)
        else:
            session = supervisor.start(RecordingOptions())
            logger.info(f"Folder: [cyan]{session.output_dir}[/cyan]")
    except ScreencasterError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    finally:
        logger.close()


@app.command()
def pause() -> None:
    """Pause the recording; the parts are joined when it stops."""
    logger = _make_logger("pause")
    try:
        ProcessSupervisor(logger=logger).pause()
    except ScreencasterError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    finally:
        logger.close()


@app.command()
def resume() -> None:
    """Resume a paused recording into a new part."""
    logger = _make_logger("resume")
    try:
        ProcessSupervisor(logger=logger).resume()
    except ScreencasterError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    finally:
        logger.close()


@app.command()
def recover(
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Show debug logging"),
    ] = False,
) -> None:
    """Process the files of a recording whose capture processes died."""
    logger = _make_logger("recover", verbose)
    try:
        supervisor = ProcessSupervisor(logger=logger)
        run = _process_with_view(logger, lambda bus: supervisor.recover(wait=False, bus=bus))
        if run is not None and run.status is not RunStatus.COMPLETE:
            raise typer.Exit(1)
    except ScreencasterError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    finally:
        logger.close()


@app.command()
def discard() -> None:
    """Forget a stale recording session (its files are kept)."""
    logger = _make_logger("discard")
    try:
        if not ProcessSupervisor(logger=logger).discard():
            logger.info("Nothing to discard")
    except ScreencasterError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    finally:
        logger.close()


@app.command()
def process(
    video: Annotated[
        Optional[Path],
        typer.Option("--video", help="Screen recording"),
    ] = None,
    audio: Annotated[
        Optional[Path],
        typer.Option("--audio", help="Microphone recording"),
    ] = None,
    webcam: Annotated[
        Optional[Path],
        typer.Option("--webcam", help="Webcam recording"),
    ] = None,
    output: Annotated[
        Optional[Path],
        typer.Option("-o", "--output", help="Output folder (default: next to the first input)"),
    ] = None,
    title: Annotated[
        str,
        typer.Option("-t", "--title", help="Title for the vertical video's lower third"),
    ] = "",
    vertical: Annotated[
        bool,
        typer.Option("--vertical/--no-vertical", help="Create a vertical (9:16) video"),
    ] = True,
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Show debug logging"),
    ] = False,
) -> None:
    """Run post-processing over existing capture files."""
    inputs = [p for p in (video, audio, webcam) if p is not None]
    if not inputs:
        console.print("[red]✗[/red] Give at least one of --video, --audio, --webcam")
        raise typer.Exit(1)
    for path in inputs:
        if not path.exists():
            console.print(f"[red]✗[/red] File not found: {path}")
            raise typer.Exit(1)

    logger = _make_logger("process", verbose)
    try:
        supervisor = ProcessSupervisor(logger=logger)
        supervisor.media.runner.check_available()
        output_dir = output or inputs[0].parent
        run = _process_with_view(
            logger,
            lambda bus: supervisor.process_files(
                output_dir,
                video_path=video,
                audio_path=audio,
                webcam_path=webcam,
                create_vertical=vertical,
                title=title,
                wait=False,
                bus=bus,
            ),
        )
        if run is not None and run.status is not RunStatus.COMPLETE:
            raise typer.Exit(1)
    except ScreencasterError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    finally:
        logger.close()


def main() -> None:
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
