"""Tests for the recording supervisor, using real stand-in capture processes."""

import json
import os
import signal
import sys
import threading

import pytest

from fakes import FakeMedia
from pipeline import ProgressBus, RunFinished, RunStatus, StageStatus
from recorder.capture import terminate_processes
from recorder.errors import (
    AlreadyRecording,
    CaptureSpawnFailure,
    NotRecording,
    StaleSessionDetected,
)
from recorder.metadata import RecordingInfo
from recorder.models import CaptureKind, SessionState
from recorder.state import is_process_alive

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX process groups")


def crash_captures(supervisor):
    """Kill every capture abruptly, as if the machine or terminal went away."""
    for process in supervisor._children.values():
        os.kill(process.pid, signal.SIGKILL)
        process.wait()


class TestStart:
    def test_start_records_all_sources(self, make_supervisor, options, store):
        supervisor = make_supervisor()

        session = supervisor.start(options)

        assert session.state is SessionState.ACTIVE
        assert set(session.captures) == set(CaptureKind)
        assert all(is_process_alive(c.pid) for c in session.captures.values())
        assert session.video_path == options.output_dir / "screen_part000.mp4"
        assert session.audio_path == options.output_dir / "audio_part000.wav"
        assert session.webcam_path == options.output_dir / "webcam_part000.mp4"
        assert store.status_file.exists()
        assert store.read_output_dir() == options.output_dir.absolute()

    def test_status(self, make_supervisor, options):
        supervisor = make_supervisor()
        supervisor.start(options)

        status = supervisor.get_status()

        assert status.is_recording
        assert not status.is_stale
        assert status.video_pid > 0
        assert status.start_time is not None
        assert status.duration >= 0.0

    def test_recording_info_written(self, make_supervisor, options):
        make_supervisor().start(options)

        info = json.loads((options.output_dir / "recording.json").read_text())

        assert info["status"] == "recording"
        assert info["metadata"]["title"] == "Test recording"
        assert set(info["files"]) == {"screen", "audio", "webcam"}

    def test_default_output_folder(self, make_supervisor, options, test_config):
        options.output_dir = None
        (test_config.videos_dir / "004-earlier").mkdir(parents=True)

        session = make_supervisor().start(options)

        assert session.output_dir.name == "005-test-recording"
        assert session.output_dir.parent == test_config.videos_dir.absolute()

    def test_second_start_is_refused(self, make_supervisor, options):
        make_supervisor().start(options)

        with pytest.raises(AlreadyRecording):
            make_supervisor().start(options)

    def test_no_sources_enabled(self, make_supervisor, options, store):
        options.record_screen = options.record_audio = options.record_webcam = False

        with pytest.raises(CaptureSpawnFailure, match="No capture sources enabled"):
            make_supervisor().start(options)
        assert store.read() is None

    def test_optional_source_failure_is_tolerated(self, make_supervisor, options):
        supervisor = make_supervisor({CaptureKind.WEBCAM: "missing"})

        session = supervisor.start(options)

        assert session.state is SessionState.ACTIVE
        assert session.webcam_path is None
        assert set(session.captures) == {CaptureKind.SCREEN, CaptureKind.AUDIO}

    def test_source_exiting_during_startup_is_dropped(self, make_supervisor, options, test_config):
        test_config.spawn_check_delay = 1.0
        supervisor = make_supervisor({CaptureKind.AUDIO: "crash"})

        session = supervisor.start(options)

        assert session.audio_path is None
        assert CaptureKind.AUDIO not in session.captures
        assert session.video_path is not None

    def test_required_source_failure_aborts(self, make_supervisor, options, store, test_config):
        test_config.spawn_check_delay = 1.0
        options.required_sources = frozenset({CaptureKind.WEBCAM})
        supervisor = make_supervisor({CaptureKind.WEBCAM: "crash"})

        with pytest.raises(CaptureSpawnFailure) as exc_info:
            supervisor.start(options)

        assert CaptureKind.WEBCAM in exc_info.value.failures
        assert store.read() is None
        assert not any(is_process_alive(p.pid) for p in supervisor._children.values())

    def test_all_sources_failing_aborts(self, make_supervisor, options, store):
        behaviors = {kind: "missing" for kind in CaptureKind}

        with pytest.raises(CaptureSpawnFailure) as exc_info:
            make_supervisor(behaviors).start(options)

        assert set(exc_info.value.failures) == set(CaptureKind)
        assert store.read() is None
        assert not store.status_file.exists()


class TestStop:
    def test_stop_processes_recording(self, make_supervisor, options, store, media):
        supervisor = make_supervisor()
        session = supervisor.start(options)
        pids = [c.pid for c in session.captures.values()]

        run = supervisor.stop()

        assert run.status is RunStatus.COMPLETE
        assert [s.status for s in run.stages] == [StageStatus.COMPLETE] * 6
        assert not any(is_process_alive(pid) for pid in pids)
        assert store.read() is None

        output_dir = options.output_dir
        assert (output_dir / "screen.mp4").exists()
        assert (output_dir / "audio.wav").exists()
        assert (output_dir / "merged.mp4").exists()
        assert (output_dir / "vertical.mp4").exists()
        assert not list(output_dir.glob("*_part*.mp4"))

        info = RecordingInfo.load(output_dir)
        assert info.status == "completed"
        assert info.end_time is not None
        assert info.processing["status"] == "complete"
        assert info.files["merged"] == str(output_dir / "merged.mp4")

    def test_stop_from_another_invocation(self, make_supervisor, options, store):
        make_supervisor().start(options)

        run = make_supervisor().stop()

        assert run.status is RunStatus.COMPLETE
        assert store.read() is None

    def test_stop_without_processing(self, make_supervisor, options, store, media):
        supervisor = make_supervisor()
        session = supervisor.start(options)

        assert supervisor.stop(process=False) is None

        assert store.read() is None
        assert not any(is_process_alive(c.pid) for c in session.captures.values())
        assert media.calls == []

    def test_stop_when_idle(self, make_supervisor):
        assert make_supervisor().stop() is None

    def test_stubborn_capture_is_force_killed(self, make_supervisor, options, test_config):
        test_config.stop_grace_period = 0.5
        supervisor = make_supervisor({CaptureKind.SCREEN: "stubborn"})
        session = supervisor.start(options)
        screen_pid = session.captures[CaptureKind.SCREEN].pid

        run = supervisor.stop()

        assert run.status is RunStatus.COMPLETE
        assert not is_process_alive(screen_pid)

    def test_failed_merge_still_clears_session(self, make_supervisor, options, store):
        supervisor = make_supervisor(media_override=FakeMedia(fail={"merge"}))
        supervisor.start(options)

        run = supervisor.stop()

        assert run.status is RunStatus.FAILED
        assert store.read() is None
        assert (options.output_dir / "screen.mp4").exists()
        assert RecordingInfo.load(options.output_dir).status == "failed"

    def test_background_processing_reports_on_bus(self, make_supervisor, options):
        supervisor = make_supervisor()
        supervisor.start(options)
        bus = ProgressBus()

        run = supervisor.stop(wait=False, bus=bus)
        events = list(bus)

        assert run.wait(timeout=30)
        assert events[-1] == RunFinished("complete", None)


class TestPauseResume:
    def test_pause_stops_captures(self, make_supervisor, options):
        supervisor = make_supervisor()
        session = supervisor.start(options)

        paused = supervisor.pause()

        assert paused.state is SessionState.PAUSED
        assert paused.part == 1
        assert not any(is_process_alive(c.pid) for c in session.captures.values())
        assert supervisor.get_status().is_paused
        assert RecordingInfo.load(options.output_dir).status == "paused"

    def test_pause_requires_active_recording(self, make_supervisor):
        with pytest.raises(NotRecording):
            make_supervisor().pause()

    def test_resume_records_next_part(self, make_supervisor, options):
        supervisor = make_supervisor()
        supervisor.start(options)
        supervisor.pause()

        resumed = supervisor.resume()

        assert resumed.state is SessionState.ACTIVE
        assert resumed.video_path == options.output_dir / "screen_part001.mp4"
        assert resumed.audio_path == options.output_dir / "audio_part001.wav"

    def test_resume_requires_paused_session(self, make_supervisor, options):
        supervisor = make_supervisor()
        supervisor.start(options)

        with pytest.raises(NotRecording):
            supervisor.resume()

    def test_parts_joined_on_stop(self, make_supervisor, options, media):
        supervisor = make_supervisor()
        supervisor.start(options)
        supervisor.pause()
        supervisor.resume()

        run = supervisor.stop()

        assert run.status is RunStatus.COMPLETE
        screen_concat = [args for args in media.called("concat") if args[1].name == "screen.mp4"]
        assert [p.name for p in screen_concat[0][0]] == ["screen_part000.mp4", "screen_part001.mp4"]

    def test_stop_while_paused(self, make_supervisor, options, store):
        supervisor = make_supervisor()
        supervisor.start(options)
        supervisor.pause()

        run = supervisor.stop()

        assert run.status is RunStatus.COMPLETE
        assert store.read() is None


class TestCrashRecovery:
    def test_crashed_session_is_detected(self, make_supervisor, options):
        first = make_supervisor()
        first.start(options)
        crash_captures(first)

        supervisor = make_supervisor()

        assert supervisor.crashed_session is not None
        assert supervisor.crashed_session.state is SessionState.STALE
        status = supervisor.get_status()
        assert status.is_stale
        assert not status.is_recording
        assert str(options.output_dir / "screen_part000.mp4") in status.recoverable_files

    def test_start_refuses_stale_session(self, make_supervisor, options):
        first = make_supervisor()
        first.start(options)
        crash_captures(first)

        with pytest.raises(StaleSessionDetected) as exc_info:
            make_supervisor().start(options)

        assert "recover" in str(exc_info.value)
        assert exc_info.value.session.video_path is not None

    def test_start_can_discard_stale_session(self, make_supervisor, options):
        first = make_supervisor()
        first.start(options)
        crash_captures(first)

        session = make_supervisor().start(options, discard_stale=True)

        assert session.state is SessionState.ACTIVE

    def test_stop_ignores_stale_session(self, make_supervisor, options, store):
        first = make_supervisor()
        first.start(options)
        crash_captures(first)

        assert make_supervisor().stop() is None
        assert store.read().state is SessionState.STALE

    def test_discard(self, make_supervisor, options, store):
        first = make_supervisor()
        first.start(options)
        crash_captures(first)

        supervisor = make_supervisor()

        assert supervisor.discard()
        assert supervisor.crashed_session is None
        assert store.read() is None
        assert (options.output_dir / "screen_part000.mp4").exists()
        assert RecordingInfo.load(options.output_dir).status == "failed"
        assert not supervisor.discard()

    def test_discard_refuses_live_session(self, make_supervisor, options):
        make_supervisor().start(options)

        with pytest.raises(AlreadyRecording):
            make_supervisor().discard()

    def test_recover_processes_leftover_files(self, make_supervisor, options, store):
        first = make_supervisor()
        first.start(options)
        crash_captures(first)

        run = make_supervisor().recover()

        assert run.status is RunStatus.COMPLETE
        assert (options.output_dir / "merged.mp4").exists()
        assert store.read() is None

    def test_recover_requires_stale_session(self, make_supervisor):
        with pytest.raises(NotRecording):
            make_supervisor().recover()


class TestStopSignal:
    def test_request_stop_when_idle(self, make_supervisor):
        assert not make_supervisor().request_stop()

    def test_watch_returns_on_stop_request(self, make_supervisor, options, store):
        owner = make_supervisor()
        owner.start(options)
        ticks = []

        timer = threading.Timer(0.3, make_supervisor().request_stop)
        timer.start()
        try:
            assert owner.watch(poll_interval=0.05, on_tick=ticks.append)
        finally:
            timer.cancel()

        assert ticks
        assert not store.stop_requested()

    def test_watch_returns_when_captures_die(self, make_supervisor, options):
        owner = make_supervisor()
        owner.start(options)
        crash_captures(owner)

        assert not owner.watch(poll_interval=0.05)


class TestTerminateProcesses:
    def test_graceful_and_forced(self, make_supervisor, options, test_config):
        supervisor = make_supervisor({CaptureKind.AUDIO: "stubborn"})
        session = supervisor.start(options)
        screen_pid = session.captures[CaptureKind.SCREEN].pid
        audio_pid = session.captures[CaptureKind.AUDIO].pid

        killed = terminate_processes([screen_pid, audio_pid], grace_period=0.5)

        assert killed == [audio_pid]
        assert not is_process_alive(screen_pid)
        assert not is_process_alive(audio_pid)

    def test_unknown_pids_are_ignored(self):
        assert terminate_processes([999_999_999], grace_period=0.1) == []

    def test_signal_permission_denied_is_not_raised(self, make_supervisor, options, monkeypatch):
        supervisor = make_supervisor()
        session = supervisor.start(options)
        screen_pid = session.captures[CaptureKind.SCREEN].pid

        def deny(pgid, sig):
            raise PermissionError(1, "Operation not permitted")

        monkeypatch.setattr("recorder.capture.os.killpg", deny)
        assert terminate_processes([screen_pid], grace_period=0.1) == []
        assert is_process_alive(screen_pid)

        monkeypatch.undo()
        supervisor.stop(process=False)
        assert not is_process_alive(screen_pid)
