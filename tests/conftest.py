"""Shared fixtures for the recorder and pipeline tests."""

import pytest

from config import Config
from fakes import FakeLauncher, FakeMedia
from recorder.models import RecordingOptions
from recorder.state import StateStore
from recorder.supervisor import ProcessSupervisor
from utils.notify import Notifier


@pytest.fixture
def test_config(tmp_path):
    """Config with short timings and everything under tmp_path."""
    cfg = Config()
    cfg.state_dir = tmp_path / "state"
    cfg.state_dir.mkdir()
    cfg.videos_dir = tmp_path / "videos"
    cfg.logs_dir = tmp_path / "logs"
    cfg.spawn_check_delay = 0.3
    cfg.stop_grace_period = 2.0
    cfg.stop_poll_interval = 0.05
    cfg.notifications = False
    return cfg


@pytest.fixture
def store(test_config):
    return StateStore(test_config.state_dir)


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def make_supervisor(test_config, media):
    """Build supervisors sharing one state directory, as separate invocations would."""
    created = []

    def _make(behaviors=None, media_override=None):
        supervisor = ProcessSupervisor(
            store=StateStore(test_config.state_dir),
            launcher=FakeLauncher(test_config, behaviors),
            media=media_override or media,
            config=test_config,
            notifier=Notifier(enabled=False),
        )
        created.append(supervisor)
        return supervisor

    yield _make

    # Never leave capture processes behind
    for supervisor in created:
        session = supervisor.store.read()
        if session is not None and session.live_captures:
            supervisor.stop(process=False)


@pytest.fixture
def options(tmp_path):
    return RecordingOptions(output_dir=tmp_path / "recording", title="Test recording")
