from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from agent_teams.errors import ValidationError

_SAFE_NAME = re.compile(r"[A-Za-z0-9_-]+")


def is_safe_name(value: str) -> bool:
    return isinstance(value, str) and _SAFE_NAME.fullmatch(value) is not None


def _checked(kind: str, value: str) -> str:
    if not is_safe_name(value):
        raise ValidationError(kind, [f"{value!r}: must match [A-Za-z0-9_-]+"])
    return value


@dataclass(frozen=True)
class StoragePaths:
    """Layout of the shared storage root.

    Lookups never create directories; writers and lock acquisition create
    parents on demand so teardown can remove a team without resurrecting it.
    Every name that becomes a path component is checked first, so no lookup
    can leave the root.
    """

    root: Path

    @property
    def teams_dir(self) -> Path:
        return self.root / "teams"

    @property
    def tasks_dir(self) -> Path:
        return self.root / "tasks"

    @property
    def agents_dir(self) -> Path:
        return self.root / "agents"

    @property
    def templates_dir(self) -> Path:
        return self.root / "templates"

    def team_dir(self, team: str) -> Path:
        return self.teams_dir / _checked("team name", team)

    def team_config(self, team: str) -> Path:
        return self.team_dir(team) / "config.json"

    def team_lock(self, team: str) -> Path:
        return self.team_dir(team) / ".lock"

    def inboxes_dir(self, team: str) -> Path:
        return self.team_dir(team) / "inboxes"

    def inbox(self, team: str, agent_id: str) -> Path:
        return self.inboxes_dir(team) / f"{_checked('agent id', agent_id)}.json"

    def team_tasks_dir(self, team: str) -> Path:
        return self.tasks_dir / _checked("team name", team)

    def task(self, team: str, task_id: str) -> Path:
        return self.team_tasks_dir(team) / f"{_checked('task id', task_id)}.json"

    def task_lock(self, team: str) -> Path:
        return self.team_tasks_dir(team) / ".lock"

    def agent(self, agent_id: str) -> Path:
        return self.agents_dir / f"{_checked('agent id', agent_id)}.json"

    @property
    def agent_lock(self) -> Path:
        return self.agents_dir / ".lock"

    @property
    def templates_lock(self) -> Path:
        return self.templates_dir / ".lock"

    def template(self, name: str) -> Path:
        return self.templates_dir / f"{_checked('template name', name)}.json"
