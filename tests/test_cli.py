"""Tests for the command line interface."""

import json
from datetime import datetime

import pytest
from typer.testing import CliRunner

import main
from config import get_config
from recorder.models import CaptureKind, RecordingSession, RecordingStatus, SessionState
from recorder.state import StateStore

runner = CliRunner()


@pytest.fixture
def cli_config(monkeypatch, tmp_path):
    """Point the CLI's global config at tmp_path."""
    cfg = get_config()
    monkeypatch.setattr(cfg, "state_dir", tmp_path / "state")
    monkeypatch.setattr(cfg, "videos_dir", tmp_path / "videos")
    monkeypatch.setattr(cfg, "logs_dir", tmp_path / "logs")
    monkeypatch.setattr(cfg, "notifications", False)
    monkeypatch.setattr(main, "config", cfg)
    return cfg


@pytest.fixture
def stale_session(cli_config, tmp_path):
    """A session whose capture processes are gone but whose files remain."""
    store = StateStore(cli_config.state_dir)
    screen = tmp_path / "recording" / "screen_part000.mp4"
    screen.parent.mkdir()
    screen.write_bytes(b"frames")
    store.write_capture(CaptureKind.SCREEN, 999_999_999, screen)
    store.write_output_dir(screen.parent)
    store.write_marker(datetime.now().astimezone())
    return store


class TestStatus:
    def test_idle_json(self, cli_config):
        result = runner.invoke(main.app, ["status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["is_recording"] is False
        assert data["is_stale"] is False

    def test_idle_text(self, cli_config):
        result = runner.invoke(main.app, ["status"])

        assert result.exit_code == 0
        assert "Not recording" in result.stdout

    def test_stale(self, stale_session):
        result = runner.invoke(main.app, ["status"])

        assert result.exit_code == 0
        assert "Stale recording found" in result.stdout
        assert "recover" in result.stdout

    def test_stale_json(self, stale_session):
        data = json.loads(runner.invoke(main.app, ["status", "--json"]).stdout)

        assert data["is_stale"] is True
        assert len(data["recoverable_files"]) == 1


class TestSessionCommands:
    def test_discard_stale(self, stale_session):
        result = runner.invoke(main.app, ["discard"])

        assert result.exit_code == 0
        assert stale_session.read() is None

    def test_discard_nothing(self, cli_config):
        result = runner.invoke(main.app, ["discard"])

        assert result.exit_code == 0
        assert "Nothing to discard" in result.stdout

    def test_pause_when_idle_fails(self, cli_config):
        result = runner.invoke(main.app, ["pause"])

        assert result.exit_code == 1
        assert "No active recording" in result.stdout

    def test_recover_when_idle_fails(self, cli_config):
        assert runner.invoke(main.app, ["recover"]).exit_code == 1

    def test_stop_request_when_idle(self, cli_config):
        result = runner.invoke(main.app, ["stop", "--request"])

        assert result.exit_code == 0
        assert "No recording in progress" in result.stdout

    def test_start_refuses_stale_session(self, stale_session):
        result = runner.invoke(main.app, ["start"])

        assert result.exit_code == 1
        assert "stale recording session" in result.stdout
        assert stale_session.read() is not None


class TestProcessCommand:
    def test_requires_an_input(self, cli_config):
        result = runner.invoke(main.app, ["process"])

        assert result.exit_code == 1
        assert "at least one" in result.stdout

    def test_missing_file(self, cli_config, tmp_path):
        result = runner.invoke(main.app, ["process", "--video", str(tmp_path / "nope.mp4")])

        assert result.exit_code == 1
        assert "File not found" in result.stdout


class WatchingSupervisor:
    """Stands in for ProcessSupervisor in `start --wait` runs."""

    def __init__(self, watch_result, status=None):
        self.watch_result = watch_result
        self.status = status or RecordingStatus.from_session(None)
        self.stop_calls = 0

    def __call__(self, logger=None):
        return self

    def start(self, options, discard_stale=False):
        return RecordingSession(state=SessionState.ACTIVE, output_dir=options.output_dir)

    def watch(self):
        if isinstance(self.watch_result, BaseException):
            raise self.watch_result
        return self.watch_result

    def stop(self, process=True, wait=True, bus=None):
        self.stop_calls += 1
        return None

    def get_status(self):
        return self.status


class TestStartWait:
    def test_stopped_elsewhere_does_not_stop_again(self, cli_config, monkeypatch):
        supervisor = WatchingSupervisor(watch_result=False)
        monkeypatch.setattr(main, "ProcessSupervisor", supervisor)

        result = runner.invoke(main.app, ["start", "--wait"])

        assert result.exit_code == 0
        assert supervisor.stop_calls == 0
        assert "stopped by another invocation" in result.stdout
        assert "No recording in progress" not in result.stdout

    def test_captures_exited_reports_stale_session(self, cli_config, monkeypatch, tmp_path):
        screen = tmp_path / "screen_part000.mp4"
        screen.write_bytes(b"frames")
        stale = RecordingStatus.from_session(RecordingSession(state=SessionState.STALE, video_path=screen))
        supervisor = WatchingSupervisor(watch_result=False, status=stale)
        monkeypatch.setattr(main, "ProcessSupervisor", supervisor)

        result = runner.invoke(main.app, ["start", "--wait"])

        assert supervisor.stop_calls == 0
        assert "recover" in result.stdout

    def test_stop_request_stops_and_processes(self, cli_config, monkeypatch):
        supervisor = WatchingSupervisor(watch_result=True)
        monkeypatch.setattr(main, "ProcessSupervisor", supervisor)

        runner.invoke(main.app, ["start", "--wait"])

        assert supervisor.stop_calls == 1

    def test_ctrl_c_stops_and_processes(self, cli_config, monkeypatch):
        supervisor = WatchingSupervisor(watch_result=KeyboardInterrupt())
        monkeypatch.setattr(main, "ProcessSupervisor", supervisor)

        runner.invoke(main.app, ["start", "--wait"])

        assert supervisor.stop_calls == 1
