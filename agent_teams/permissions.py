from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from agent_teams.errors import PermissionDeniedError, TeamsError
from agent_teams.models import AgentState, RoleDefinition, TeamConfig
from agent_teams.paths import StoragePaths, is_safe_name
from agent_teams.store import read_document

logger = logging.getLogger(__name__)

_TEAM_ADMIN_TOOLS = ["spawn-team", "spawn-agent", "kill-agent", "delete-team", "assign-role"]

DEFAULT_ROLE_PERMISSIONS: Dict[str, RoleDefinition] = {
    "leader": RoleDefinition(
        name="leader",
        description="Team leader - can spawn agents and manage team, cannot self-assign tasks",
        denied_tools=["claim-task"],
    ),
    "worker": RoleDefinition(
        name="worker",
        description="Team worker - can claim and complete tasks, cannot manage team",
        denied_tools=list(_TEAM_ADMIN_TOOLS),
    ),
    "reviewer": RoleDefinition(
        name="reviewer",
        description="Code reviewer - can update tasks and communicate, limited tool access",
        allowed_tools=["update-task", "send-message", "poll-inbox", "heartbeat"],
        denied_tools=["spawn-team", "spawn-agent", "kill-agent", "delete-team", "claim-task", "assign-role"],
    ),
    "task-manager": RoleDefinition(
        name="task-manager",
        description="Task coordinator - can manage tasks and communicate, cannot manage team infrastructure",
        denied_tools=list(_TEAM_ADMIN_TOOLS),
    ),
}


def check_permission(role: RoleDefinition, tool: str) -> bool:
    """Denied list wins, then a non-empty allowed list, otherwise allow."""
    if role.denied_tools and tool in role.denied_tools:
        return False
    if role.allowed_tools:
        return tool in role.allowed_tools
    return True


def check_permission_by_role_name(role_name: str, tool: str) -> bool:
    role = DEFAULT_ROLE_PERMISSIONS.get(role_name)
    if role is None:
        return True
    return check_permission(role, tool)


@dataclass(frozen=True)
class RolePolicy:
    paths: StoragePaths

    def role_of(self, agent_id: str) -> Optional[str]:
        """Role recorded in the agent's state; ``None`` for unregistered callers."""
        if not is_safe_name(agent_id):
            return None
        path = self.paths.agent(agent_id)
        if not path.exists():
            return None
        try:
            return read_document(path, AgentState).role
        except TeamsError as exc:
            logger.warning("Could not read role of %s: %s", agent_id, exc)
            return None

    def role_definition(self, agent_id: str, team: Optional[str] = None) -> Optional[RoleDefinition]:
        role_name = self.role_of(agent_id)
        if role_name is None:
            return None
        if team and is_safe_name(team) and self.paths.team_config(team).exists():
            try:
                config = read_document(self.paths.team_config(team), TeamConfig)
            except TeamsError as exc:
                logger.warning("Could not read roles for team %s: %s", team, exc)
            else:
                for role in config.roles or []:
                    if role.name == role_name:
                        return role
        return DEFAULT_ROLE_PERMISSIONS.get(role_name)

    def guard(self, tool: str, agent_id: Optional[str], team: Optional[str] = None) -> None:
        if not agent_id:
            return
        role = self.role_definition(agent_id, team)
        if role is None:
            return
        if not check_permission(role, tool):
            raise PermissionDeniedError(f'Permission denied: role "{role.name}" cannot use tool "{tool}"')
