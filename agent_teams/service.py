from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from agent_teams.agents import AgentRegistry, SessionLauncher
from agent_teams.config import Settings
from agent_teams.dispatch import DispatchEngine, DispatchRules
from agent_teams.events import EventBus
from agent_teams.paths import StoragePaths
from agent_teams.permissions import RolePolicy
from agent_teams.store import new_id, utc_now
from agent_teams.tasks import TaskGraph
from agent_teams.teams import TeamOperations
from agent_teams.templates import TemplateOperations
from agent_teams.workflow import WorkflowMonitor


@dataclass
class TeamsService:
    """Everything one process needs, wired around a single event bus.

    Build one per process and hand it to consumers; tests pass a temporary
    ``root`` and a fake ``clock``.
    """

    root: Optional[Path] = None
    settings: Settings = field(default_factory=Settings)
    clock: Callable[[], datetime] = utc_now
    id_factory: Callable[[str], str] = new_id
    launcher: Optional[SessionLauncher] = None
    sleep: Optional[Callable[[float], None]] = None

    def __post_init__(self) -> None:
        self.root = Path(self.root if self.root is not None else self.settings.storage_root).resolve()
        self.paths = StoragePaths(self.root)
        self.bus = EventBus()
        self.teams = TeamOperations(
            paths=self.paths,
            clock=self.clock,
            poll_interval_seconds=self.settings.poll_interval_seconds,
            poll_timeout_seconds=self.settings.poll_timeout_seconds,
        )
        if self.sleep is not None:
            self.teams.sleep = self.sleep
        self.tasks = TaskGraph(paths=self.paths, bus=self.bus, clock=self.clock, id_factory=self.id_factory)
        self.agents = AgentRegistry(
            paths=self.paths,
            teams=self.teams,
            tasks=self.tasks,
            bus=self.bus,
            clock=self.clock,
            id_factory=self.id_factory,
            heartbeat_timeout_seconds=self.settings.heartbeat_timeout_seconds,
            max_consecutive_misses=self.settings.max_consecutive_misses,
            launcher=self.launcher,
        )
        self.permissions = RolePolicy(self.paths)
        self.rules = DispatchRules(self.teams)
        self.engine = DispatchEngine(
            teams=self.teams,
            tasks=self.tasks,
            agents=self.agents,
            clock=self.clock,
            id_factory=self.id_factory,
            max_depth=self.settings.max_dispatch_depth,
            log_max=self.settings.dispatch_log_max,
        )
        self.workflow = WorkflowMonitor(teams=self.teams, tasks=self.tasks, clock=self.clock)
        self.templates = TemplateOperations(paths=self.paths, teams=self.teams, tasks=self.tasks, clock=self.clock)
        self._detach: List[Callable[[], None]] = self.engine.attach(self.bus)
        self._detach.append(self.workflow.attach(self.bus))

    @classmethod
    def from_env(cls, launcher: Optional[SessionLauncher] = None) -> "TeamsService":
        return cls(settings=Settings.from_env(), launcher=launcher)

    def close(self) -> None:
        for unsubscribe in self._detach:
            unsubscribe()
        self._detach = []
