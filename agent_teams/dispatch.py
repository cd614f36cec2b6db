"""Rule-driven reactions to dispatch events.

Each team config carries its own rules and a bounded audit log. Actions may
publish further events; those are queued on the current thread and drained
by the outermost ``evaluate`` call, one level deeper than the event that
caused them, so an action/event loop ends at ``max_depth``.
"""
from __future__ import annotations

import logging
import math
import operator as op
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from agent_teams.agents import AgentRegistry
from agent_teams.errors import ActionFailure, ConflictError, NotFoundError, TeamsError
from agent_teams.events import EventBus
from agent_teams.models import (
    DISPATCH_EVENT_TYPES,
    AssignTaskAction,
    DispatchEvent,
    DispatchLogEntry,
    DispatchRule,
    LogAction,
    NotifyLeaderAction,
    ResourceCountCondition,
    SimpleMatchCondition,
    TeamConfig,
)
from agent_teams.store import new_id, utc_now, validate
from agent_teams.tasks import TaskGraph
from agent_teams.teams import TeamOperations

logger = logging.getLogger(__name__)

DISPATCH_SENDER = "dispatch-engine"

_MISSING = object()

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": op.eq,
    "neq": op.ne,
    "gt": op.gt,
    "lt": op.lt,
    "gte": op.ge,
    "lte": op.le,
}


def get_field(payload: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted path in ``payload``; ``_MISSING`` when any segment is absent."""
    current: Any = payload
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def compare(left: Any, operator: str, right: Any) -> bool:
    """Numeric comparison when ``right`` is a number, string comparison otherwise."""
    fn = _OPERATORS.get(operator)
    if fn is None:
        return False
    if _is_number(right):
        try:
            number = float(left)
        except (TypeError, ValueError):
            return False
        if math.isnan(number):
            return False
        return fn(number, right)
    return fn(_as_text(left), _as_text(right))


@dataclass
class ActionResult:
    success: bool
    details: str


class _DispatchState(threading.local):
    def __init__(self) -> None:
        self.running = False
        self.depth = 0
        self.queue: Deque[Tuple[DispatchEvent, int]] = deque()


class DispatchEngine:
    def __init__(
        self,
        teams: TeamOperations,
        tasks: TaskGraph,
        agents: AgentRegistry,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[str], str] = new_id,
        max_depth: int = 3,
        log_max: int = 500,
    ) -> None:
        self.teams = teams
        self.tasks = tasks
        self.agents = agents
        self.clock = clock
        self.id_factory = id_factory
        self.max_depth = max_depth
        self.log_max = log_max
        self._state = _DispatchState()

    def attach(self, bus: EventBus) -> List[Callable[[], None]]:
        return [bus.subscribe(event_type, self.evaluate) for event_type in DISPATCH_EVENT_TYPES]

    def evaluate(self, event: DispatchEvent) -> None:
        state = self._state
        if state.running:
            # Raised by an action of the event being dispatched; the outer loop picks it up.
            state.queue.append((event, state.depth + 1))
            return
        state.running = True
        state.queue.append((event, 0))
        try:
            while state.queue:
                current, depth = state.queue.popleft()
                if depth >= self.max_depth:
                    logger.warning(
                        "Dispatch depth %d reached, dropping %s for team %s", depth, current.type, current.team
                    )
                    continue
                state.depth = depth
                self._dispatch(current)
        finally:
            state.running = False
            state.depth = 0
            state.queue.clear()

    def _dispatch(self, event: DispatchEvent) -> None:
        if not self.teams.team_exists(event.team):
            logger.debug("No team config for %s; ignoring %s", event.team, event.type)
            return
        try:
            config = self.teams.get_team(event.team)
        except TeamsError as exc:
            logger.warning("Failed to read team config for %s: %s", event.team, exc)
            return

        # sorted() is stable, so equal priorities keep their configured order.
        rules = sorted(
            (rule for rule in config.dispatch_rules if rule.enabled and rule.event_type == event.type),
            key=lambda rule: rule.priority,
        )
        for rule in rules:
            try:
                if rule.condition is not None and not self.condition_matches(rule, event):
                    continue
            except TeamsError as exc:
                logger.warning("Skipping dispatch rule %s on %s: condition failed: %s", rule.id, event.type, exc)
                continue
            result = self._execute(rule, event, config)
            self._append_log(
                event.team,
                DispatchLogEntry(
                    id=self.id_factory("LOG"),
                    timestamp=self.clock(),
                    rule_id=rule.id,
                    event_type=event.type,
                    success=result.success,
                    details=result.details,
                ),
            )

    def condition_matches(self, rule: DispatchRule, event: DispatchEvent) -> bool:
        condition = rule.condition
        if condition is None:
            return True
        if isinstance(condition, SimpleMatchCondition):
            value = get_field(event.payload, condition.field)
            if value is _MISSING:
                return False
            return compare(value, condition.operator, condition.value)
        if isinstance(condition, ResourceCountCondition):
            return compare(self.resource_count(event.team, condition.resource), condition.operator, condition.value)
        return False

    def resource_count(self, team: str, resource: str) -> int:
        if resource == "unblocked_tasks":
            return self.tasks.count_unblocked_pending(team)
        if resource == "active_agents":
            try:
                config = self.teams.get_team(team)
            except TeamsError:
                return 0
            return max(0, len(config.members) - 1)
        return 0

    def _execute(self, rule: DispatchRule, event: DispatchEvent, config: TeamConfig) -> ActionResult:
        action = rule.action
        try:
            if isinstance(action, AssignTaskAction):
                return self._assign_task(event, config)
            if isinstance(action, NotifyLeaderAction):
                return self._notify_leader(event, config, action.message)
            if isinstance(action, LogAction):
                return self._log(event, action.message)
            raise ActionFailure(f"Unknown action type: {action.type}", rule_id=rule.id)
        except ActionFailure as exc:
            return ActionResult(success=False, details=str(exc))
        except TeamsError as exc:
            return ActionResult(success=False, details=f"Action failed: {exc}")
        except Exception as exc:
            logger.exception("Dispatch rule %s failed on %s", rule.id, event.type)
            return ActionResult(success=False, details=f"Action failed: {exc}")

    def _assign_task(self, event: DispatchEvent, config: TeamConfig) -> ActionResult:
        idle = self.agents.list(team=event.team, status="idle")
        if not idle:
            raise ActionFailure("No idle agents available")
        candidates = self.tasks.unblocked_pending(event.team)
        if not candidates:
            raise ActionFailure("No unblocked pending tasks available")
        task, agent = candidates[0], idle[0]
        try:
            self.tasks.claim(event.team, task.id, agent.id, assigned_by=config.leader)
        except TeamsError as exc:
            raise ActionFailure(f"Failed to claim task: {exc}") from exc
        return ActionResult(success=True, details=f"Assigned task {task.id} to agent {agent.id}")

    def _notify_leader(self, event: DispatchEvent, config: TeamConfig, message: Optional[str]) -> ActionResult:
        body = message or f"Event {event.type} occurred"
        try:
            self.teams.send_message(event.team, config.leader, body, sender=DISPATCH_SENDER)
        except TeamsError as exc:
            raise ActionFailure(f"Failed to notify leader: {exc}") from exc
        return ActionResult(success=True, details=f"Notified leader {config.leader}")

    def _log(self, event: DispatchEvent, message: Optional[str]) -> ActionResult:
        logger.info("Dispatch log: %s in team %s: %s", event.type, event.team, message or event.payload)
        return ActionResult(success=True, details=message or f"Logged {event.type}")

    def _append_log(self, team: str, entry: DispatchLogEntry) -> None:
        def append(config: TeamConfig) -> TeamConfig:
            log = (config.dispatch_log + [entry])[-self.log_max :]
            return config.model_copy(update={"dispatch_log": log})

        try:
            self.teams.mutate_team(team, append)
        except TeamsError as exc:
            logger.warning("Failed to append dispatch log for team %s: %s", team, exc)


class DispatchRules:
    """CRUD over the dispatch rules and log embedded in a team config."""

    def __init__(self, teams: TeamOperations) -> None:
        self.teams = teams

    def add_rule(self, team: str, rule: Union[DispatchRule, Dict[str, Any]]) -> DispatchRule:
        rule = validate("dispatch rule", rule, DispatchRule)

        def add(config: TeamConfig) -> TeamConfig:
            if any(existing.id == rule.id for existing in config.dispatch_rules):
                raise ConflictError(f'Dispatch rule with ID "{rule.id}" already exists')
            return config.model_copy(update={"dispatch_rules": config.dispatch_rules + [rule]})

        self.teams.mutate_team(team, add)
        return rule

    def remove_rule(self, team: str, rule_id: str) -> None:
        def remove(config: TeamConfig) -> TeamConfig:
            if not any(rule.id == rule_id for rule in config.dispatch_rules):
                raise NotFoundError(f'Dispatch rule "{rule_id}" not found')
            return config.model_copy(
                update={"dispatch_rules": [rule for rule in config.dispatch_rules if rule.id != rule_id]}
            )

        self.teams.mutate_team(team, remove)

    def list_rules(self, team: str) -> List[DispatchRule]:
        return list(self.teams.get_team(team).dispatch_rules)

    def get_log(self, team: str, limit: Optional[int] = None) -> List[DispatchLogEntry]:
        """Newest entry first."""
        entries = list(reversed(self.teams.get_team(team).dispatch_log))
        if limit and limit > 0:
            return entries[:limit]
        return entries
