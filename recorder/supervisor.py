"""Recording session supervisor.

Owns the lifecycle of one host-wide recording: spawning the capture
processes, recording them in the StateStore in an order that keeps the
store consistent for concurrent readers, and handing the finished captures
to the post-processing pipeline.

Write order on start:
  1. each capture's path and PID, as soon as it is spawned
  2. monitor, output folder and part counter
  3. the active marker, last
"""

import functools
import logging
import subprocess
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from config import Config, get_config
from pipeline import (
    MediaToolkit,
    PipelineContext,
    PipelineRun,
    PostProcessingPipeline,
    ProgressBus,
    RunStatus,
    default_stages,
)
from utils.notify import Notifier

from .capture import CaptureLauncher, terminate_processes
from .errors import (
    AlreadyRecording,
    CaptureSpawnFailure,
    NotRecording,
    StaleSessionDetected,
)
from .metadata import RecordingInfo, RecordingInfoStatus, RecordingMetadata
from .models import (
    CaptureKind,
    CaptureSource,
    RecordingOptions,
    RecordingSession,
    RecordingStatus,
    SessionState,
)
from .state import StateStore

if TYPE_CHECKING:
    from utils.logger import SessionLogger

_module_logger = logging.getLogger(__name__)

# States in which captures may still be running
_RECORDING_STATES = (SessionState.STARTING, SessionState.ACTIVE, SessionState.PAUSED)


def _log_tail(path: Path, lines: int = 1) -> str:
    """Last lines of a capture's stderr log, for error messages."""
    try:
        text = path.read_text(errors="replace").strip()
    except OSError:
        return ""
    return " ".join(text.splitlines()[-lines:])


class ProcessSupervisor:
    """Starts, pauses, resumes and stops the recording session."""

    def __init__(
        self,
        store: StateStore | None = None,
        launcher: CaptureLauncher | None = None,
        media: MediaToolkit | None = None,
        config: Config | None = None,
        logger: "SessionLogger | None" = None,
        notifier: Notifier | None = None,
    ):
        """Initialize the supervisor and reconcile any persisted session.

        A stale session found here is exposed as crashed_session; nothing is
        deleted until the caller recovers or discards it.

        Args:
            store: Session state store (default: one in config.state_dir).
            launcher: Capture command builder/spawner.
            media: Media toolkit used by the post-processing stages.
            config: Application config (default: global config).
            logger: Optional SessionLogger for styled output.
            notifier: Desktop notifier (default: notify-send if enabled).
        """
        self.config = config or get_config()
        self.store = store or StateStore(self.config.state_dir)
        self.launcher = launcher or CaptureLauncher(self.config, logger=logger)
        self.media = media or MediaToolkit(logger=logger)
        self.logger = logger
        self.notifier = notifier or Notifier(enabled=self.config.notifications)

        # Capture processes this invocation spawned, kept so they can be reaped
        self._children: dict[CaptureKind, subprocess.Popen] = {}

        self.crashed_session: RecordingSession | None = None
        session = self.store.read()
        if session is not None and session.state is SessionState.STALE:
            self.crashed_session = session
            files = ", ".join(str(p) for p in session.capture_paths) or "none"
            _module_logger.warning(f"Found a stale recording session, recoverable files: {files}")

    def _log_info(self, message: str) -> None:
        if self.logger:
            self.logger.info(message)
        _module_logger.info(message)

    def _log_success(self, message: str) -> None:
        if self.logger:
            self.logger.success(message)
        _module_logger.info(message)

    def _log_warning(self, message: str) -> None:
        if self.logger:
            self.logger.warning(message)
        _module_logger.warning(message)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def reconcile(self) -> RecordingSession | None:
        """Read the persisted session, cross-checked against live processes."""
        session = self.store.read()
        if session is not None and session.state is SessionState.STALE:
            _module_logger.debug("Persisted session has no live capture process")
        return session

    def get_status(self) -> RecordingStatus:
        return RecordingStatus.from_session(self.reconcile())

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start(self, options: RecordingOptions, discard_stale: bool = False) -> RecordingSession:
        """Start a recording.

        Args:
            options: What to capture and where.
            discard_stale: Clear a stale session instead of refusing to start.

        Raises:
            AlreadyRecording: If a session is starting, recording, paused or processing.
            StaleSessionDetected: If a stale session exists and discard_stale is False.
            CaptureSpawnFailure: If a required source or every source failed to start.
        """
        session = self.reconcile()
        if session is not None:
            if session.state is not SessionState.STALE:
                raise AlreadyRecording(f"Recording already in progress ({session.state.value})")
            if not discard_stale:
                raise StaleSessionDetected(session)
            self.discard()

        if not options.enabled_sources:
            raise CaptureSpawnFailure({})

        started_at = datetime.now().astimezone()
        metadata = RecordingMetadata.from_options(options, self.config.videos_dir)
        output_dir = Path(options.output_dir or self.config.videos_dir / metadata.folder_name)
        output_dir.mkdir(parents=True, exist_ok=True)
        self._log_info(f"Recording to {output_dir}")

        try:
            self._spawn_sources(options.enabled_sources, options, output_dir, part=0)
        except CaptureSpawnFailure:
            self.store.clear()
            self.notifier.error("Recording failed", "Could not start capture")
            raise

        if options.monitor:
            self.store.write_monitor(options.monitor)
        self.store.write_output_dir(output_dir)
        self.store.write_part(0)
        self.store.write_marker(started_at)

        session = self.store.read()
        info = RecordingInfo(
            folder=output_dir,
            metadata=metadata,
            start_time=started_at,
            monitor=options.monitor,
            settings=options.to_dict(),
            files={kind.value: str(session.path_for(kind)) for kind in session.recorded_kinds},
        )
        info.save(self.logger)

        kinds = ", ".join(kind.value for kind in session.recorded_kinds)
        self._log_success(f"Recording started ({kinds})")
        self.notifier.send("Recording started", kinds)
        return session

    def _spawn_sources(
        self,
        kinds: list[CaptureKind],
        options: RecordingOptions,
        output_dir: Path,
        part: int,
    ) -> dict[CaptureKind, CaptureSource]:
        """Spawn one capture per kind and keep those that survive the startup check.

        Raises:
            CaptureSpawnFailure: If a required source or every source failed.
                Anything already spawned is terminated and its records removed.
        """
        failures: dict[CaptureKind, str] = {}
        spawned: dict[CaptureKind, CaptureSource] = {}

        for kind in kinds:
            try:
                source = self.launcher.build_source(kind, options, output_dir, part)
                process = self.launcher.spawn(source)
            except OSError as e:
                failures[kind] = str(e)
                self._log_warning(f"Could not start {kind.value} capture: {e}")
                continue
            self._children[kind] = process
            self.store.write_capture(kind, process.pid, source.output_path)
            spawned[kind] = source

        if spawned:
            time.sleep(self.config.spawn_check_delay)

        for kind, source in list(spawned.items()):
            process = self._children[kind]
            if process.poll() is None:
                continue
            reason = f"exited with code {process.returncode}"
            tail = _log_tail(source.output_path.with_suffix(".log"))
            if tail:
                reason += f": {tail}"
            failures[kind] = reason
            self._log_warning(f"{kind.value} capture {reason}")
            self._forget(kind, part)
            del spawned[kind]
            del self._children[kind]

        required_failed = [kind for kind in failures if kind in options.required_sources]
        if required_failed or not spawned:
            terminate_processes([self._children[kind].pid for kind in spawned], self.config.stop_grace_period)
            for kind in spawned:
                self._forget(kind, part)
            self._reap()
            raise CaptureSpawnFailure(failures)

        for kind in failures:
            _module_logger.info(f"Continuing without optional {kind.value} capture")
        return spawned

    def _forget(self, kind: CaptureKind, part: int) -> None:
        """Drop a failed capture's records. Paths of earlier parts are kept."""
        if part == 0:
            self.store.remove_capture(kind)
        else:
            self.store.remove_pid(kind)

    def _reap(self) -> None:
        """Collect exit statuses of capture processes this invocation spawned."""
        for kind, process in list(self._children.items()):
            if process.poll() is not None:
                del self._children[kind]

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    def pause(self) -> RecordingSession:
        """Stop the captures but keep the session; the next part starts on resume.

        Raises:
            NotRecording: If no recording is active.
        """
        session = self.reconcile()
        if session is None or session.state is not SessionState.ACTIVE:
            raise NotRecording("No active recording to pause")

        self._terminate(session)
        self.store.write_part(session.part + 1)
        self.store.mark_paused()
        self._update_info(session, status=RecordingInfoStatus.PAUSED)

        self._log_success(f"Recording paused after part {session.part + 1}")
        self.notifier.send("Recording paused")
        return self.store.read()

    def resume(self) -> RecordingSession:
        """Respawn the paused session's captures into the next part files.

        Raises:
            NotRecording: If no recording is paused.
            CaptureSpawnFailure: If the captures cannot be restarted; the
                session stays paused.
        """
        session = self.reconcile()
        if session is None or session.state is not SessionState.PAUSED:
            raise NotRecording("No paused recording to resume")

        output_dir = self._output_dir(session)
        info = RecordingInfo.load(output_dir)
        options = RecordingOptions.from_dict(info.settings) if info else RecordingOptions()
        options.monitor = options.monitor or session.monitor_id

        self._spawn_sources(session.recorded_kinds, options, output_dir, session.part)
        self.store.clear_paused()
        self._update_info(session, status=RecordingInfoStatus.RECORDING)

        self._log_success(f"Recording resumed (part {session.part + 1})")
        self.notifier.send("Recording resumed")
        return self.store.read()

    # ------------------------------------------------------------------
    # Stop / process
    # ------------------------------------------------------------------

    def stop(
        self,
        process: bool = True,
        wait: bool = True,
        bus: ProgressBus | None = None,
    ) -> PipelineRun | None:
        """Stop the recording and post-process it.

        Args:
            process: Run the post-processing stages. When False the captures
                are terminated and the session cleared.
            wait: Block until processing finishes; otherwise it runs on a
                background thread and the live run is returned.
            bus: Where progress events are published.

        Returns:
            The pipeline run, or None when nothing was recording (or
            process is False).
        """
        session = self.reconcile()
        if session is None or session.state not in _RECORDING_STATES:
            _module_logger.info("No active recording to stop")
            return None

        self.store.mark_processing()
        self._update_info(session, status=RecordingInfoStatus.PROCESSING, end_time=datetime.now().astimezone())
        self.notifier.send("Recording stopped", "Processing...")

        if not process:
            self._terminate(session)
            self.store.clear()
            self._update_info(session, status=RecordingInfoStatus.COMPLETED)
            self._log_success("Recording stopped")
            return None

        return self._process_session(session, wait, bus)

    def recover(self, wait: bool = True, bus: ProgressBus | None = None) -> PipelineRun:
        """Post-process the files left behind by a crashed session.

        Raises:
            NotRecording: If there is no stale session.
        """
        session = self.reconcile()
        if session is None or session.state is not SessionState.STALE:
            raise NotRecording("No stale recording to recover")

        self._log_info(f"Recovering recording in {self._output_dir(session)}")
        self.store.mark_processing()
        self._update_info(session, status=RecordingInfoStatus.PROCESSING)
        self.crashed_session = None
        return self._process_session(session, wait, bus)

    def discard(self) -> bool:
        """Forget a stale session. Its files stay on disk.

        Returns:
            False when there was nothing to discard.

        Raises:
            AlreadyRecording: If the session is not stale.
        """
        session = self.reconcile()
        if session is None:
            return False
        if session.state is not SessionState.STALE:
            raise AlreadyRecording(f"Recording is {session.state.value}; stop it instead of discarding")

        self.store.clear()
        self._update_info(session, status=RecordingInfoStatus.FAILED)
        self.crashed_session = None
        self._log_info("Discarded stale recording session")
        return True

    def process_files(
        self,
        output_dir: Path,
        video_path: Path | None = None,
        audio_path: Path | None = None,
        webcam_path: Path | None = None,
        create_vertical: bool = True,
        title: str = "",
        wait: bool = True,
        bus: ProgressBus | None = None,
    ) -> PipelineRun:
        """Run the pipeline over existing capture files, without a session."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        ctx = PipelineContext(
            output_dir=output_dir,
            video_path=video_path,
            audio_path=audio_path,
            webcam_path=webcam_path,
            create_vertical=create_vertical,
            title=title,
        )
        pipeline = PostProcessingPipeline(
            default_stages(self.media),
            bus=bus,
            on_finished=self._notify_finished,
            logger=self.logger,
        )
        return pipeline.run(ctx) if wait else pipeline.start(ctx)

    def _process_session(self, session: RecordingSession, wait: bool, bus: ProgressBus | None) -> PipelineRun:
        output_dir = self._output_dir(session)
        info = RecordingInfo.load(output_dir)
        settings = info.settings if info else {}

        ctx = PipelineContext(
            output_dir=output_dir,
            video_path=session.video_path,
            audio_path=session.audio_path,
            webcam_path=session.webcam_path,
            create_vertical=settings.get("create_vertical", True),
            title=info.metadata.title if info else "",
        )
        pipeline = PostProcessingPipeline(
            default_stages(self.media, stop_capture=functools.partial(self.terminate_captures, session)),
            bus=bus,
            on_finished=functools.partial(self._finish_processing, session),
            logger=self.logger,
        )
        return pipeline.run(ctx) if wait else pipeline.start(ctx)

    def terminate_captures(self, session: RecordingSession, ctx: PipelineContext) -> PipelineContext:
        """First pipeline stage: stop every capture and assemble one file per source."""
        self._terminate(session)
        paths = {kind: self._finalize_capture(kind, session) for kind in session.recorded_kinds}
        return ctx.replace(
            video_path=paths.get(CaptureKind.SCREEN),
            audio_path=paths.get(CaptureKind.AUDIO),
            webcam_path=paths.get(CaptureKind.WEBCAM),
        )

    def _terminate(self, session: RecordingSession) -> None:
        """Terminate live captures and drop their PID records (paths are kept)."""
        pids = [capture.pid for capture in session.live_captures]
        if pids:
            killed = terminate_processes(pids, self.config.stop_grace_period)
            if killed:
                self._log_warning(f"Force-killed capture processes: {killed}")
        self._reap()
        for kind in CaptureKind:
            self.store.remove_pid(kind)

    def _finalize_capture(self, kind: CaptureKind, session: RecordingSession) -> Path | None:
        """Concatenate a source's part files into <kind><ext> in the output folder."""
        output_dir = self._output_dir(session)
        final_path = output_dir / f"{kind.value}{kind.extension}"
        parts = sorted(output_dir.glob(f"{kind.value}_part*{kind.extension}"))
        if parts:
            if len(parts) > 1:
                self._log_info(f"Joining {len(parts)} {kind.value} parts")
            return self.media.concat(parts, final_path)
        # Already assembled by an earlier, interrupted run
        if final_path.exists():
            return final_path
        recorded = session.path_for(kind)
        return recorded if recorded is not None and recorded.exists() else None

    def _finish_processing(self, session: RecordingSession, run: PipelineRun) -> None:
        self.store.clear()
        ctx = run.context
        files = {}
        if ctx is not None:
            for name, path in (
                ("video", ctx.video_path),
                ("audio", ctx.audio_path),
                ("webcam", ctx.webcam_path),
                ("merged", ctx.merged_path),
                ("vertical", ctx.vertical_path),
            ):
                if path is not None:
                    files[name] = str(path)
        status = RecordingInfoStatus.COMPLETED if run.status is RunStatus.COMPLETE else RecordingInfoStatus.FAILED
        self._update_info(session, status=status, files=files, processing=run.summary())
        self._notify_finished(run)

    def _notify_finished(self, run: PipelineRun) -> None:
        if run.status is RunStatus.COMPLETE:
            self.notifier.send("Processing complete", str(run.context.merged_path or ""))
        else:
            self.notifier.error("Processing failed", run.overall_error or "")

    def _output_dir(self, session: RecordingSession) -> Path:
        if session.output_dir is not None:
            return session.output_dir
        if session.capture_paths:
            return session.capture_paths[0].parent
        return self.config.videos_dir

    def _update_info(self, session: RecordingSession, status: RecordingInfoStatus, **changes) -> None:
        info = RecordingInfo.load(self._output_dir(session))
        if info is None:
            return
        info.status = status
        for key, value in changes.items():
            setattr(info, key, value)
        info.save(self.logger)

    # ------------------------------------------------------------------
    # Cross-process stop signal
    # ------------------------------------------------------------------

    def request_stop(self) -> bool:
        """Ask the invocation that owns the recording to stop it.

        Returns:
            False when nothing is recording.
        """
        session = self.reconcile()
        if session is None or session.state not in _RECORDING_STATES:
            return False
        self.store.request_stop()
        return True

    def watch(
        self,
        poll_interval: float | None = None,
        on_tick: Callable[[RecordingSession], None] | None = None,
    ) -> bool:
        """Block while the session records.

        Returns:
            True when a stop was requested, False when the session ended
            some other way (stopped elsewhere, or every capture died).
        """
        interval = poll_interval if poll_interval is not None else self.config.stop_poll_interval
        while True:
            if self.store.stop_requested():
                self.store.clear_stop_request()
                return True
            session = self.store.read()
            if session is None or session.state not in _RECORDING_STATES:
                return False
            if on_tick is not None:
                on_tick(session)
            time.sleep(interval)
