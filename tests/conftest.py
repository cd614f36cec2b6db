"""
Shared fixtures: a service rooted in a temporary directory with a fake clock
and sequential ids.
"""
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest

from agent_teams.config import Settings
from agent_teams.models import DISPATCH_EVENT_TYPES
from agent_teams.service import TeamsService


class FakeClock:
    """Deterministic clock that moves forward one millisecond per reading."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.step = timedelta(milliseconds=1)

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class SequentialIds:
    def __init__(self):
        self.count = 0
        self.issued = defaultdict(list)

    def __call__(self, prefix=""):
        self.count += 1
        value = f"{prefix}-{self.count:05d}" if prefix else f"{self.count:05d}"
        self.issued[prefix].append(value)
        return value


class FakeLauncher:
    def __init__(self, fail=False):
        self.fail = fail
        self.started = []
        self.stopped = []

    def start(self, agent, prompt):
        if self.fail:
            raise RuntimeError("no terminal available")
        self.started.append((agent.id, prompt))
        return f"sess-{agent.id}"

    def stop(self, agent):
        self.stopped.append(agent.id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ids():
    return SequentialIds()


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def failing_launcher():
    return FakeLauncher(fail=True)


@pytest.fixture
def service(tmp_path, clock, ids, launcher):
    settings = Settings(storage_root=tmp_path / "store", poll_interval_seconds=0.01, poll_timeout_seconds=0.05)
    svc = TeamsService(root=tmp_path / "store", settings=settings, clock=clock, id_factory=ids, launcher=launcher)
    yield svc
    svc.close()


@pytest.fixture
def team(service):
    """Team "T" led by "lead"."""
    service.teams.create_team("T", leader_id="lead", leader_name="Lead")
    return "T"


@pytest.fixture
def events(service):
    """Every event published on the service bus, in publish order."""
    seen = []
    for event_type in DISPATCH_EVENT_TYPES:
        service.bus.subscribe(event_type, seen.append)
    return seen


@pytest.fixture
def idle_worker(service, team):
    """Registered worker "w1" in team T, idle and ready for assignment."""
    service.agents.register(team, "Worker One", role="worker", agent_id="w1")
    service.agents.transition("w1", "idle")
    return "w1"
