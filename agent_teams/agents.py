"""Agent registration, heartbeats and lifecycle transitions.

Starting and stopping the actual worker processes belongs to an external
``SessionLauncher``; this module only records state and emits lifecycle
events.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from agent_teams import locks
from agent_teams.errors import ConflictError, NotFoundError, TeamsError, ValidationError
from agent_teams.events import EventBus, make_event
from agent_teams.models import AgentState
from agent_teams.paths import StoragePaths
from agent_teams.store import list_documents, locked_transaction, new_id, read_document, utc_now, validate, write_document
from agent_teams.tasks import TaskGraph
from agent_teams.teams import TeamOperations

logger = logging.getLogger(__name__)

LIFECYCLE = {
    "spawning": {"active", "idle", "inactive", "shutting_down", "terminated"},
    "active": {"idle", "inactive", "shutting_down", "terminated"},
    "idle": {"active", "inactive", "shutting_down", "terminated"},
    "inactive": {"shutting_down", "terminated"},
    "shutting_down": {"terminated"},
    "terminated": set(),
}
HEARTBEAT_SOURCES = ("tool", "sdk_session_idle", "sdk_session_updated", "sdk_tool_execute")
IDLE_SOURCES = {"sdk_session_idle"}


class SessionLauncher(Protocol):
    def start(self, agent: AgentState, prompt: str) -> Optional[str]:
        """Start a worker for ``agent``; return its session id if it has one."""

    def stop(self, agent: AgentState) -> None:
        ...


@dataclass
class HeartbeatResult:
    agent_id: str
    status: str
    heartbeat_ts: datetime
    next_deadline: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "status": self.status,
            "heartbeat_ts": self.heartbeat_ts.isoformat(),
            "next_deadline": self.next_deadline.isoformat(),
        }


@dataclass
class AgentRegistry:
    paths: StoragePaths
    teams: TeamOperations
    tasks: TaskGraph
    bus: EventBus
    clock: Callable[[], datetime] = utc_now
    id_factory: Callable[[str], str] = new_id
    heartbeat_timeout_seconds: int = 60
    max_consecutive_misses: int = 2
    launcher: Optional[SessionLauncher] = None

    def register(
        self,
        team: str,
        name: str,
        role: str = "worker",
        agent_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> AgentState:
        self.teams.get_team(team)
        agent_id = agent_id or self.id_factory("agent")
        now = self.clock()
        state = validate(
            f"agent {agent_id}",
            {
                "id": agent_id,
                "name": name,
                "team": team,
                "role": role,
                "status": "spawning",
                "created_at": now,
                "heartbeat_ts": now,
                "model": model,
            },
            AgentState,
        )
        path = self.paths.agent(agent_id)
        with locks.file_lock(self.paths.agent_lock):
            if path.exists():
                raise ConflictError(f"Agent '{agent_id}' is already registered")
            write_document(path, state, AgentState)

        config = self.teams.get_team(team)
        if agent_id not in config.member_ids():
            self.teams.join_team(team, agent_id, agent_name=name, agent_type=role)

        self._publish("agent.spawned", team, {"agent_id": agent_id, "name": name, "role": role})
        return state

    def spawn(
        self,
        team: str,
        name: str,
        prompt: str,
        role: str = "worker",
        model: Optional[str] = None,
        launcher: Optional[SessionLauncher] = None,
    ) -> AgentState:
        """Register an agent and hand it to the session launcher."""
        state = self.register(team, name, role=role, model=model)
        launcher = launcher or self.launcher
        if launcher is None:
            return state
        try:
            session_id = launcher.start(state, prompt)
        except Exception as exc:
            self._update(
                state.id,
                status="terminated",
                terminated_at=self.clock(),
                last_error=f"Spawn failed: {exc}",
            )
            raise TeamsError(f"Failed to start session for agent '{state.id}': {exc}") from exc
        if session_id:
            state = self._update(state.id, session_id=session_id)
        return state

    def get(self, agent_id: str) -> AgentState:
        path = self.paths.agent(agent_id)
        if not path.exists():
            raise NotFoundError(f"Agent '{agent_id}' not found")
        with locks.file_lock(self.paths.agent_lock, exclusive=False):
            return read_document(path, AgentState)

    def list(self, team: Optional[str] = None, status: Optional[str] = None) -> List[AgentState]:
        agents: List[AgentState] = []
        if not self.paths.agents_dir.is_dir():
            return agents
        with locks.file_lock(self.paths.agent_lock, exclusive=False):
            for state in self._scan():
                if team and state.team != team:
                    continue
                if status and state.status != status:
                    continue
                agents.append(state)
        return agents

    def find_by_session(self, session_id: str) -> Optional[AgentState]:
        return next((state for state in self.list() if state.session_id == session_id), None)

    def transition(self, agent_id: str, status: str) -> AgentState:
        if status not in LIFECYCLE:
            raise ValidationError(f"agent {agent_id}", [f"status: unknown status {status!r}"])
        previous: Dict[str, str] = {}

        def advance(state: AgentState) -> AgentState:
            previous["status"] = state.status
            if state.status == status:
                return state
            _check_transition(state, status)
            changes: Dict[str, Any] = {"status": status, "updated_at": self.clock()}
            if status == "terminated":
                changes["terminated_at"] = self.clock()
            return state.model_copy(update=changes)

        state = self._transaction(agent_id, advance)
        if status != previous["status"]:
            logger.info("Agent %s: %s -> %s", agent_id, previous["status"], status)
            if status == "idle":
                self._publish("agent.idle", state.team, {"agent_id": agent_id})
        return state

    def heartbeat(self, agent_id: str, source: str = "tool") -> HeartbeatResult:
        if source not in HEARTBEAT_SOURCES:
            raise ValidationError("heartbeat", [f"source: must be one of {', '.join(HEARTBEAT_SOURCES)}"])
        previous: Dict[str, str] = {}
        now = self.clock()

        def beat(state: AgentState) -> AgentState:
            previous["status"] = state.status
            if state.status in ("inactive", "terminated"):
                raise ConflictError(f"Agent '{agent_id}' is {state.status}; heartbeat rejected")
            status = state.status
            if status == "spawning":
                status = "active"
            if status == "active" and source in IDLE_SOURCES:
                status = "idle"
            elif status == "idle" and source not in IDLE_SOURCES:
                status = "active"
            return state.model_copy(
                update={"status": status, "heartbeat_ts": now, "consecutive_misses": 0, "updated_at": now}
            )

        state = self._transaction(agent_id, beat)
        if state.status == "idle" and previous["status"] != "idle":
            self._publish("agent.idle", state.team, {"agent_id": agent_id})
        if source in IDLE_SOURCES:
            self._publish("session.idle", state.team, {"agent_id": agent_id, "session_id": state.session_id})
        return HeartbeatResult(
            agent_id=agent_id,
            status=state.status,
            heartbeat_ts=now,
            next_deadline=now + timedelta(seconds=self.heartbeat_timeout_seconds),
        )

    def sweep_stale(self) -> List[str]:
        """Count a missed heartbeat for every overdue agent; retire repeat offenders."""
        if not self.paths.agents_dir.is_dir():
            return []
        now = self.clock()
        cutoff = now - timedelta(seconds=self.heartbeat_timeout_seconds)
        retired: List[AgentState] = []
        with locks.file_lock(self.paths.agent_lock):
            for state in self._scan():
                if state.status in ("inactive", "terminated") or state.heartbeat_ts >= cutoff:
                    continue
                misses = state.consecutive_misses + 1
                changes: Dict[str, Any] = {"consecutive_misses": misses, "updated_at": now}
                if misses >= self.max_consecutive_misses and "inactive" in LIFECYCLE[state.status]:
                    changes["status"] = "inactive"
                    changes["last_error"] = f"Missed {misses} consecutive heartbeats"
                updated = write_document(self.paths.agent(state.id), state.model_copy(update=changes), AgentState)
                if updated.status == "inactive":
                    retired.append(updated)

        for state in retired:
            logger.warning("Agent %s missed %d heartbeats; marked inactive", state.id, state.consecutive_misses)
            self.tasks.reassign_agent_tasks(state.team, state.id)
        return [state.id for state in retired]

    def request_shutdown(self, agent_id: str, requested_by: str = "unknown") -> AgentState:
        """Ask an agent to wind down; it stays registered until terminated."""

        def begin(state: AgentState) -> AgentState:
            if state.status == "shutting_down":
                raise ConflictError(
                    f"Agent '{agent_id}' is already shutting down; use force=True to terminate it immediately"
                )
            _check_transition(state, "shutting_down")
            return state.model_copy(update={"status": "shutting_down", "updated_at": self.clock()})

        state = self._transaction(agent_id, begin)
        try:
            self.teams.send_message(
                state.team,
                agent_id,
                f"Shutdown requested by {requested_by}. Finish your current step and exit.",
                sender=requested_by,
                message_type="shutdown_request",
            )
        except NotFoundError as exc:
            logger.warning("Could not deliver shutdown request to %s: %s", agent_id, exc)
        return state

    def terminate(self, agent_id: str, reason: str = "terminated") -> AgentState:
        """Force an agent into its final state and hand its work back."""
        now = self.clock()

        def kill(state: AgentState) -> AgentState:
            if state.status == "terminated":
                raise ConflictError(f"Agent '{agent_id}' is already terminated")
            return state.model_copy(
                update={
                    "status": "terminated",
                    "terminated_at": now,
                    "updated_at": now,
                    "last_error": f"Force killed: {reason}",
                }
            )

        state = self._transaction(agent_id, kill)
        reassigned = self.tasks.reassign_agent_tasks(state.team, agent_id)
        if self.teams.team_exists(state.team):
            try:
                self.teams.remove_member(state.team, agent_id)
            except (ConflictError, NotFoundError) as exc:
                logger.info("Membership of %s left unchanged: %s", agent_id, exc)
        if self.launcher is not None:
            try:
                self.launcher.stop(state)
            except Exception:
                logger.warning("Session launcher failed to stop agent %s", agent_id, exc_info=True)
        self._publish(
            "agent.terminated",
            state.team,
            {"agent_id": agent_id, "reason": reason, "reassigned_tasks": reassigned},
        )
        return state

    def _scan(self) -> List[AgentState]:
        # Caller holds the agent lock.
        states: List[AgentState] = []
        for name in list_documents(self.paths.agents_dir):
            try:
                states.append(read_document(self.paths.agents_dir / name, AgentState))
            except TeamsError as exc:
                logger.warning("Skipping unreadable agent state %s: %s", name, exc)
        return states

    def _transaction(self, agent_id: str, mutator: Callable[[AgentState], AgentState]) -> AgentState:
        path = self.paths.agent(agent_id)
        if not path.exists():
            raise NotFoundError(f"Agent '{agent_id}' not found")
        return locked_transaction(self.paths.agent_lock, path, AgentState, mutator)

    def _update(self, agent_id: str, **changes: Any) -> AgentState:
        return self._transaction(agent_id, lambda state: state.model_copy(update=changes))

    def _publish(self, event_type: str, team: str, payload: Dict[str, Any]) -> None:
        self.bus.publish(
            make_event(event_type, team, payload, timestamp=self.clock(), event_id=self.id_factory("EVT"))
        )


def _check_transition(state: AgentState, status: str) -> None:
    if status not in LIFECYCLE[state.status]:
        raise ConflictError(f"Invalid agent transition for '{state.id}': {state.status} -> {status}")
