from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from agent_teams.errors import TeamsError
from agent_teams.events import EventBus
from agent_teams.models import DispatchEvent, TeamConfig
from agent_teams.store import utc_now
from agent_teams.tasks import TaskGraph
from agent_teams.teams import TeamOperations

logger = logging.getLogger(__name__)

WORKFLOW_SENDER = "workflow-monitor"


@dataclass
class WorkflowSuggestion:
    team: str
    unblocked_tasks: int
    active_workers: int
    ratio: float
    message: str


@dataclass
class WorkflowMonitor:
    """Nudges the leader when unblocked work piles up faster than workers can take it."""

    teams: TeamOperations
    tasks: TaskGraph
    clock: Callable[[], datetime] = utc_now

    def attach(self, bus: EventBus) -> Callable[[], None]:
        return bus.subscribe("task.completed", self.on_task_completed)

    def on_task_completed(self, event: DispatchEvent) -> None:
        try:
            suggestion = self.evaluate(event.team)
            if suggestion is not None:
                self.emit_suggestion(suggestion)
        except TeamsError as exc:
            logger.warning("Workflow check failed for team %s: %s", event.team, exc)

    def evaluate(self, team: str) -> Optional[WorkflowSuggestion]:
        if not self.teams.team_exists(team):
            return None
        config = self.teams.get_team(team)
        workflow = config.workflow
        if workflow is None or not workflow.enabled:
            return None
        if workflow.last_suggestion_at is not None:
            if self.clock() - workflow.last_suggestion_at < timedelta(seconds=workflow.cooldown_seconds):
                return None

        workers = len(config.members) - 1
        if workers <= 0:
            return None
        unblocked = self.tasks.count_unblocked_pending(team)
        ratio = unblocked / workers
        if unblocked < workflow.task_threshold or ratio < workflow.worker_ratio:
            return None
        return WorkflowSuggestion(
            team=team,
            unblocked_tasks=unblocked,
            active_workers=workers,
            ratio=ratio,
            message=(
                f"Backlog alert: {unblocked} unblocked tasks with {workers} active workers "
                f"(ratio: {ratio:.1f}x). Consider spawning additional workers."
            ),
        )

    def emit_suggestion(self, suggestion: WorkflowSuggestion) -> None:
        config = self.teams.get_team(suggestion.team)
        self.teams.send_message(
            suggestion.team,
            config.leader,
            suggestion.message,
            sender=WORKFLOW_SENDER,
            message_type="task_assignment",
        )
        now = self.clock()

        def stamp(current: TeamConfig) -> TeamConfig:
            if current.workflow is None:
                return current
            workflow = current.workflow.model_copy(update={"last_suggestion_at": now})
            return current.model_copy(update={"workflow": workflow})

        self.teams.mutate_team(suggestion.team, stamp)
        logger.info("Sent backlog suggestion to %s in team %s", config.leader, suggestion.team)
