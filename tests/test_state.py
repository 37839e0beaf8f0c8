"""Tests for the filesystem-backed session store."""

import os
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path

import psutil
import pytest

from recorder.models import CaptureKind, RecordingSession, SessionState
from recorder.state import StateStore, is_process_alive


@pytest.fixture
def alive_pids():
    """PIDs the fake liveness check reports as running."""
    return set()


@pytest.fixture
def fake_store(tmp_path, alive_pids):
    return StateStore(tmp_path / "state", is_alive=lambda pid, recorded_at: pid in alive_pids)


def _started_at() -> datetime:
    return datetime(2026, 10, 18, 14, 30, 0).astimezone()


class TestIsProcessAlive:
    def test_current_process_is_alive(self):
        assert is_process_alive(os.getpid())

    def test_invalid_pid(self):
        assert not is_process_alive(0)
        assert not is_process_alive(-5)

    def test_exited_process_is_dead(self):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        assert not is_process_alive(proc.pid)

    @pytest.mark.skipif(sys.platform == "win32", reason="zombies are a POSIX concept")
    def test_zombie_is_dead(self):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        try:
            deadline = time.monotonic() + 10
            while psutil.Process(proc.pid).status() != psutil.STATUS_ZOMBIE:
                assert time.monotonic() < deadline
                time.sleep(0.05)
            assert not is_process_alive(proc.pid)
        finally:
            proc.wait()

    def test_pid_recorded_before_process_started_is_reused(self):
        # This process was created long after the epoch, so the record cannot be its own
        assert not is_process_alive(os.getpid(), recorded_at=0.0)

    def test_pid_recorded_after_process_started(self):
        assert is_process_alive(os.getpid(), recorded_at=time.time())


class TestStateStoreFiles:
    def test_well_known_names(self, tmp_path):
        store = StateStore(tmp_path)
        assert store.pid_file(CaptureKind.SCREEN) == tmp_path / "screencaster-video.pid"
        assert store.path_file(CaptureKind.AUDIO) == tmp_path / "screencaster-audio.path"
        assert store.pid_file(CaptureKind.WEBCAM) == tmp_path / "screencaster-webcam.pid"
        assert store.status_file == tmp_path / "screencaster.status"

    def test_creates_state_dir(self, tmp_path):
        state_dir = tmp_path / "nested" / "state"
        StateStore(state_dir)
        assert state_dir.is_dir()

    def test_write_capture_writes_path_and_pid(self, fake_store, tmp_path):
        fake_store.write_capture(CaptureKind.SCREEN, 4242, tmp_path / "screen_part000.mp4")
        assert fake_store.pid_file(CaptureKind.SCREEN).read_text() == "4242"
        assert fake_store.path_file(CaptureKind.SCREEN).read_text() == str(tmp_path / "screen_part000.mp4")

    def test_no_tmp_files_left_behind(self, fake_store, tmp_path):
        fake_store.write_capture(CaptureKind.AUDIO, 1, tmp_path / "audio.wav")
        fake_store.write_part(3)
        assert not list(fake_store.state_dir.glob("*.tmp"))

    def test_marker_requires_capture_paths(self, fake_store):
        with pytest.raises(ValueError):
            fake_store.write_marker(_started_at())
        assert not fake_store.status_file.exists()

    def test_part_counter(self, fake_store):
        assert fake_store.read_part() == 0
        fake_store.write_part(2)
        assert fake_store.read_part() == 2

    def test_stop_request(self, fake_store):
        assert not fake_store.stop_requested()
        fake_store.request_stop()
        assert fake_store.stop_requested()
        fake_store.clear_stop_request()
        assert not fake_store.stop_requested()


class TestStateStoreRead:
    def test_empty_store_reads_none(self, fake_store):
        assert fake_store.read() is None

    def test_active_session(self, fake_store, alive_pids, tmp_path):
        alive_pids.update({101, 102})
        fake_store.write_capture(CaptureKind.SCREEN, 101, tmp_path / "screen_part000.mp4")
        fake_store.write_capture(CaptureKind.AUDIO, 102, tmp_path / "audio_part000.wav")
        fake_store.write_monitor("DP-1")
        fake_store.write_output_dir(tmp_path)
        fake_store.write_marker(_started_at())

        session = fake_store.read()

        assert session.state is SessionState.ACTIVE
        assert session.active
        assert session.started_at == _started_at()
        assert session.monitor_id == "DP-1"
        assert session.video_path == tmp_path / "screen_part000.mp4"
        assert session.audio_path == tmp_path / "audio_part000.wav"
        assert session.webcam_path is None
        assert session.output_dir == tmp_path
        assert {c.pid for c in session.live_captures} == {101, 102}

    def test_live_captures_without_marker_are_starting(self, fake_store, alive_pids, tmp_path):
        alive_pids.add(7)
        fake_store.write_capture(CaptureKind.SCREEN, 7, tmp_path / "screen_part000.mp4")

        session = fake_store.read()

        assert session.state is SessionState.STARTING
        assert not session.active

    def test_dead_captures_are_stale(self, fake_store, tmp_path):
        fake_store.write_capture(CaptureKind.SCREEN, 101, tmp_path / "screen_part000.mp4")
        fake_store.write_marker(_started_at())

        session = fake_store.read()

        assert session.state is SessionState.STALE
        assert not session.active
        assert session.video_path == tmp_path / "screen_part000.mp4"
        assert session.live_captures == []

    def test_one_live_capture_keeps_session_active(self, fake_store, alive_pids, tmp_path):
        alive_pids.add(102)
        fake_store.write_capture(CaptureKind.SCREEN, 101, tmp_path / "screen_part000.mp4")
        fake_store.write_capture(CaptureKind.AUDIO, 102, tmp_path / "audio_part000.wav")
        fake_store.write_marker(_started_at())

        assert fake_store.read().state is SessionState.ACTIVE

    def test_paused_session(self, fake_store, tmp_path):
        fake_store.write_path(CaptureKind.SCREEN, tmp_path / "screen_part000.mp4")
        fake_store.write_part(1)
        fake_store.mark_paused()
        fake_store.write_marker(_started_at())

        session = fake_store.read()

        assert session.state is SessionState.PAUSED
        assert session.part == 1

    def test_processing_session(self, fake_store, alive_pids, tmp_path):
        alive_pids.add(555)
        fake_store.write_path(CaptureKind.SCREEN, tmp_path / "screen_part000.mp4")
        fake_store.write_marker(_started_at())
        fake_store.mark_processing(555)

        session = fake_store.read()

        assert session.state is SessionState.PROCESSING
        assert session.processing_pid == 555

    def test_processing_by_dead_invocation_is_stale(self, fake_store, tmp_path):
        fake_store.write_path(CaptureKind.SCREEN, tmp_path / "screen_part000.mp4")
        fake_store.write_marker(_started_at())
        fake_store.mark_processing(555)

        assert fake_store.read().state is SessionState.STALE

    def test_malformed_pid_file_is_ignored(self, fake_store, tmp_path):
        fake_store.write_path(CaptureKind.SCREEN, tmp_path / "screen_part000.mp4")
        fake_store.pid_file(CaptureKind.SCREEN).write_text("not-a-pid")

        session = fake_store.read()

        assert session.captures == {}
        assert session.state is SessionState.STALE

    def test_reused_processing_pid_is_stale(self, tmp_path):
        store = StateStore(tmp_path)
        store.write_path(CaptureKind.SCREEN, tmp_path / "screen_part000.mp4")
        store.write_marker(_started_at())
        # A live process, but one created long after the marker was written
        store.mark_processing(os.getpid())
        os.utime(store.processing_file, (0, 0))

        assert store.read().state is SessionState.STALE

    def test_reused_pid_is_dead(self, tmp_path):
        store = StateStore(tmp_path)
        # Our own PID, but recorded long before this process was created
        store.write_capture(CaptureKind.SCREEN, os.getpid(), tmp_path / "screen_part000.mp4")
        os.utime(store.pid_file(CaptureKind.SCREEN), (0, 0))
        store.write_marker(_started_at())

        assert store.read().state is SessionState.STALE


class TestStateStoreWriteAndClear:
    def test_write_session(self, fake_store, alive_pids, tmp_path):
        from recorder.models import CaptureProcess

        alive_pids.add(11)
        session = RecordingSession(
            state=SessionState.ACTIVE,
            started_at=_started_at(),
            monitor_id="HDMI-A-1",
            video_path=tmp_path / "screen_part000.mp4",
            webcam_path=tmp_path / "webcam_part000.mp4",
            output_dir=tmp_path,
            captures={CaptureKind.SCREEN: CaptureProcess(CaptureKind.SCREEN, 11)},
        )

        fake_store.write(session)
        read_back = fake_store.read()

        assert read_back.state is SessionState.ACTIVE
        assert read_back.monitor_id == "HDMI-A-1"
        assert read_back.webcam_path == tmp_path / "webcam_part000.mp4"
        assert CaptureKind.WEBCAM not in read_back.captures

    def test_clear_removes_everything(self, fake_store, tmp_path):
        fake_store.write_capture(CaptureKind.SCREEN, 1, tmp_path / "screen_part000.mp4")
        fake_store.write_capture(CaptureKind.WEBCAM, 2, tmp_path / "webcam_part000.mp4")
        fake_store.write_monitor("DP-1")
        fake_store.write_output_dir(tmp_path)
        fake_store.write_part(1)
        fake_store.mark_paused()
        fake_store.mark_processing(3)
        fake_store.request_stop()
        fake_store.write_marker(_started_at())

        fake_store.clear()

        assert fake_store.read() is None
        assert list(Path(fake_store.state_dir).iterdir()) == []

    def test_remove_pid_keeps_path(self, fake_store, tmp_path):
        fake_store.write_capture(CaptureKind.AUDIO, 9, tmp_path / "audio_part000.wav")
        fake_store.remove_pid(CaptureKind.AUDIO)

        assert not fake_store.pid_file(CaptureKind.AUDIO).exists()
        assert fake_store.read().audio_path == tmp_path / "audio_part000.wav"
