from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from agent_teams import locks
from agent_teams.errors import ConflictError, NotFoundError, TeamsError
from agent_teams.models import AgentState, Inbox, Message, TeamConfig, TeamMember, TeamSummary
from agent_teams.paths import StoragePaths, is_safe_name
from agent_teams.store import (
    list_documents,
    locked_read,
    locked_transaction,
    read_document,
    remove_document,
    utc_now,
    validate,
    write_document,
)

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    messages: List[Message]
    timed_out: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": [message.model_dump(mode="json", exclude_none=True) for message in self.messages],
            "timed_out": self.timed_out,
        }


@dataclass
class TeamOperations:
    """Team membership, per-agent inboxes and shutdown voting.

    The team config and every inbox of a team share the team lock.
    """

    paths: StoragePaths
    clock: Callable[[], datetime] = utc_now
    poll_interval_seconds: float = 0.5
    poll_timeout_seconds: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    monotonic: Callable[[], float] = field(default=time.monotonic, repr=False)

    def create_team(
        self,
        name: str,
        leader_id: str = "leader",
        leader_name: str = "Leader",
        leader_type: str = "leader",
        topology: Optional[str] = None,
        roles: Optional[List[Dict[str, Any]]] = None,
        workflow: Optional[Dict[str, Any]] = None,
    ) -> TeamConfig:
        now = self.clock()
        raw: Dict[str, Any] = {
            "name": name,
            "created": now,
            "leader": leader_id,
            "members": [
                {"agent_id": leader_id, "agent_name": leader_name, "agent_type": leader_type, "joined_at": now}
            ],
        }
        if topology is not None:
            raw["topology"] = topology
        if roles is not None:
            raw["roles"] = roles
        if workflow is not None:
            raw["workflow"] = workflow
        # Validate before touching the filesystem so a bad name never creates a directory.
        config = validate(f"team {name!r}", raw, TeamConfig)

        with locks.file_lock(self.paths.team_lock(name)):
            if self.paths.team_config(name).exists():
                raise ConflictError(f'Team "{name}" already exists')
            self.paths.inboxes_dir(name).mkdir(parents=True, exist_ok=True)
            self.paths.team_tasks_dir(name).mkdir(parents=True, exist_ok=True)
            write_document(self.paths.team_config(name), config, TeamConfig)
            write_document(self.paths.inbox(name, leader_id), [], Inbox)
        logger.info("Created team %s led by %s", name, leader_id)
        return config

    def list_teams(self) -> List[TeamSummary]:
        teams_dir = self.paths.teams_dir
        if not teams_dir.is_dir():
            return []
        summaries: List[TeamSummary] = []
        for entry in sorted(teams_dir.iterdir()):
            if not is_safe_name(entry.name):
                continue
            config_path = self.paths.team_config(entry.name)
            if not entry.is_dir() or not config_path.exists():
                continue
            try:
                config = read_document(config_path, TeamConfig)
            except TeamsError as exc:
                logger.warning("Could not read team config for %s: %s", entry.name, exc)
                continue
            summaries.append(
                TeamSummary(
                    name=config.name,
                    leader=config.leader,
                    member_count=len(config.members),
                    created=config.created,
                )
            )
        return summaries

    def team_exists(self, team: str) -> bool:
        return is_safe_name(team) and self.paths.team_config(team).exists()

    def get_team(self, team: str) -> TeamConfig:
        self._require_team(team)
        return locked_read(self.paths.team_lock(team), self.paths.team_config(team), TeamConfig)

    def mutate_team(self, team: str, mutator: Callable[[TeamConfig], TeamConfig]) -> TeamConfig:
        """Locked read-modify-write of the team config."""
        self._require_team(team)
        return locked_transaction(self.paths.team_lock(team), self.paths.team_config(team), TeamConfig, mutator)

    def join_team(
        self,
        team: str,
        agent_id: str,
        agent_name: str = "Agent",
        agent_type: str = "worker",
    ) -> TeamMember:
        member = validate(
            "team member",
            {"agent_id": agent_id, "agent_name": agent_name, "agent_type": agent_type, "joined_at": self.clock()},
            TeamMember,
        )

        def add_member(config: TeamConfig) -> TeamConfig:
            if agent_id in config.member_ids():
                raise ConflictError(f'Agent "{agent_id}" is already a member of team "{team}"')
            return config.model_copy(update={"members": config.members + [member]})

        self.mutate_team(team, add_member)
        self._ensure_inbox(team, agent_id)
        return member

    def remove_member(self, team: str, agent_id: str) -> TeamConfig:
        def drop_member(config: TeamConfig) -> TeamConfig:
            if agent_id == config.leader:
                raise ConflictError(f'Cannot remove the leader "{agent_id}" from team "{team}"')
            if agent_id not in config.member_ids():
                raise NotFoundError(f'Agent "{agent_id}" is not a member of team "{team}"')
            members = [member for member in config.members if member.agent_id != agent_id]
            return config.model_copy(update={"members": members})

        return self.mutate_team(team, drop_member)

    def send_message(
        self,
        team: str,
        recipient: str,
        body: str,
        sender: str = "unknown",
        message_type: str = "plain",
    ) -> Message:
        config = self.get_team(team)
        if recipient not in config.member_ids():
            raise NotFoundError(f'Recipient "{recipient}" is not a member of team "{team}"')
        message = validate(
            "message",
            {"sender": sender, "recipient": recipient, "body": body, "type": message_type, "timestamp": self.clock()},
            Message,
        )
        self._deliver(team, recipient, message)
        return message

    def broadcast(self, team: str, body: str, sender: str = "unknown", message_type: str = "plain") -> Message:
        config = self.get_team(team)
        message = validate(
            "message",
            {
                "sender": sender,
                "recipient": "broadcast",
                "body": body,
                "type": message_type,
                "timestamp": self.clock(),
                "recipients": config.member_ids(),
            },
            Message,
        )
        for member_id in config.member_ids():
            if member_id != sender:
                self._deliver(team, member_id, message)
        return message

    def read_messages(
        self,
        team: str,
        agent_id: str,
        since: Optional[datetime] = None,
        unread_only: bool = False,
    ) -> List[Message]:
        """Return inbox messages newer than ``since`` and mark them read."""
        inbox_path = self.paths.inbox(team, agent_id)
        if not inbox_path.exists():
            return []
        with locks.file_lock(self.paths.team_lock(team)):
            inbox: List[Message] = read_document(inbox_path, Inbox)
            picked = [
                index
                for index, message in enumerate(inbox)
                if (since is None or message.timestamp > since) and not (unread_only and message.read)
            ]
            if not picked:
                return []
            returned = [inbox[index] for index in picked]
            if any(not message.read for message in returned):
                updated = list(inbox)
                for index in picked:
                    updated[index] = inbox[index].model_copy(update={"read": True})
                write_document(inbox_path, updated, Inbox)
        return returned

    def poll_inbox(
        self,
        team: str,
        agent_id: str,
        timeout: Optional[float] = None,
        since: Optional[datetime] = None,
    ) -> PollResult:
        """Check the inbox every poll interval until something arrives or ``timeout`` passes."""
        timeout = self.poll_timeout_seconds if timeout is None else max(0.0, float(timeout))
        deadline = self.monotonic() + timeout
        while True:
            messages = self.read_messages(team, agent_id, since, unread_only=since is None)
            if messages:
                return PollResult(messages=messages, timed_out=False)
            remaining = deadline - self.monotonic()
            if remaining <= 0:
                return PollResult(messages=[], timed_out=True)
            self.sleep(min(self.poll_interval_seconds, remaining))

    def request_shutdown(self, team: str, agent_id: str) -> TeamConfig:
        def approve(config: TeamConfig) -> TeamConfig:
            if agent_id in config.shutdown_approvals:
                return config
            return config.model_copy(update={"shutdown_approvals": config.shutdown_approvals + [agent_id]})

        return self.mutate_team(team, approve)

    def should_shutdown(self, team: str) -> bool:
        if not self.team_exists(team):
            return False
        config = self.get_team(team)
        approvals = set(config.shutdown_approvals)
        if not approvals:
            return False
        return config.leader in approvals or all(member_id in approvals for member_id in config.member_ids())

    def delete_team(self, team: str) -> None:
        """Remove the team, its tasks and its agents' state documents."""
        self._require_team(team)
        with locks.file_lock(self.paths.team_lock(team)):
            with locks.file_lock(self.paths.task_lock(team)):
                shutil.rmtree(self.paths.team_tasks_dir(team), ignore_errors=True)
                with locks.file_lock(self.paths.agent_lock):
                    for name in list_documents(self.paths.agents_dir):
                        path = self.paths.agents_dir / name
                        try:
                            state = read_document(path, AgentState)
                        except TeamsError as exc:
                            logger.warning("Skipping unreadable agent state %s: %s", name, exc)
                            continue
                        if state.team == team:
                            remove_document(path)
            shutil.rmtree(self.paths.team_dir(team), ignore_errors=True)
        logger.info("Deleted team %s", team)

    def _require_team(self, team: str) -> None:
        if not self.team_exists(team):
            raise NotFoundError(f'Team "{team}" does not exist')

    def _ensure_inbox(self, team: str, agent_id: str) -> None:
        locked_transaction(
            self.paths.team_lock(team),
            self.paths.inbox(team, agent_id),
            Inbox,
            lambda inbox: inbox,
            default=list,
        )

    def _deliver(self, team: str, agent_id: str, message: Message) -> None:
        locked_transaction(
            self.paths.team_lock(team),
            self.paths.inbox(team, agent_id),
            Inbox,
            lambda inbox: inbox + [message],
            default=list,
        )
