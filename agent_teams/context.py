from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from agent_teams.errors import TeamsError


@dataclass(frozen=True)
class AmbientContext:
    """Team and agent identity supplied by the calling environment."""

    team: Optional[str] = None
    agent_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "AmbientContext":
        team = os.getenv("AGENT_TEAMS_TEAM", "").strip() or None
        agent_id = os.getenv("AGENT_TEAMS_AGENT_ID", "").strip() or None
        return cls(team=team, agent_id=agent_id)

    def resolve_team(self, explicit: Optional[str] = None) -> str:
        team = (explicit or "").strip() or self.team
        if not team:
            raise TeamsError("No team given and AGENT_TEAMS_TEAM is not set")
        return team

    def resolve_agent(self, explicit: Optional[str] = None, fallback: str = "unknown") -> str:
        return (explicit or "").strip() or self.agent_id or fallback
