"""Reusable team templates.

A template captures a team's topology, roles, workflow settings and a list
of starter tasks. Three templates ship built in; saved templates live under
``templates/`` in the storage root and shadow built-ins of the same name.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from agent_teams import locks
from agent_teams.errors import NotFoundError, TeamsError
from agent_teams.models import TeamConfig, TeamTemplate, TemplateSummary
from agent_teams.paths import StoragePaths
from agent_teams.store import list_documents, read_document, remove_document, utc_now, validate, write_document
from agent_teams.tasks import TaskGraph
from agent_teams.teams import TeamOperations

logger = logging.getLogger(__name__)

_TEAM_ADMIN_TOOLS = ["spawn-team", "spawn-agent", "kill-agent", "delete-team"]

BUILTIN_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "code-review": {
        "name": "code-review",
        "description": "Parallel code review with security, performance and style reviewers",
        "topology": "flat",
        "roles": [
            {"name": "leader", "description": "Coordinates the review", "denied_tools": ["claim-task"]},
            {
                "name": "reviewer",
                "description": "Reviews one aspect of the change",
                "allowed_tools": ["update-task", "send-message", "poll-inbox", "heartbeat"],
            },
        ],
        "default_tasks": [
            {"title": "Security Review", "description": "Check for security vulnerabilities", "priority": "high"},
            {"title": "Performance Review", "description": "Check for performance issues", "priority": "normal"},
            {"title": "Style Review", "description": "Check code style and conventions", "priority": "normal"},
        ],
    },
    "leader-workers": {
        "name": "leader-workers",
        "description": "One leader assigning work to a pool of workers",
        "topology": "hierarchical",
        "roles": [
            {"name": "leader", "description": "Plans and assigns work", "denied_tools": ["claim-task"]},
            {"name": "worker", "description": "Executes assigned tasks", "denied_tools": list(_TEAM_ADMIN_TOOLS)},
        ],
        "workflow": {"enabled": True, "task_threshold": 5, "worker_ratio": 3.0, "cooldown_seconds": 300},
    },
    "swarm": {
        "name": "swarm",
        "description": "Self-organizing workers claiming from a shared queue",
        "topology": "flat",
        "roles": [
            {"name": "worker", "description": "Claims and completes tasks", "denied_tools": list(_TEAM_ADMIN_TOOLS)},
        ],
    },
}


def builtin_templates(now: datetime) -> Dict[str, TeamTemplate]:
    return {
        name: validate(f"template {name!r}", dict(raw, created_at=now), TeamTemplate)
        for name, raw in BUILTIN_TEMPLATES.items()
    }


@dataclass
class TemplateOperations:
    paths: StoragePaths
    teams: TeamOperations
    tasks: TaskGraph
    clock: Callable[[], datetime] = utc_now

    def save(self, template: Any) -> TeamTemplate:
        """Validate and store a template, replacing a stored one of the same name."""
        if not isinstance(template, TeamTemplate):
            raw = dict(template)
            raw.setdefault("created_at", self.clock())
            template = validate("template", raw, TeamTemplate)
        with locks.file_lock(self.paths.templates_lock):
            saved = write_document(self.paths.template(template.name), template, TeamTemplate)
        logger.info("Saved template %s", template.name)
        return saved

    def load(self, name: str) -> TeamTemplate:
        path = self.paths.template(name)
        if path.exists():
            return read_document(path, TeamTemplate)
        builtin = BUILTIN_TEMPLATES.get(name)
        if builtin is not None:
            return builtin_templates(self.clock())[name]
        raise NotFoundError(f'Template "{name}" not found')

    def list_templates(self) -> List[TemplateSummary]:
        summaries: Dict[str, TemplateSummary] = {
            template.name: TemplateSummary(name=template.name, description=template.description, source="builtin")
            for template in builtin_templates(self.clock()).values()
        }
        for name in list_documents(self.paths.templates_dir):
            try:
                template = read_document(self.paths.templates_dir / name, TeamTemplate)
            except TeamsError as exc:
                logger.warning("Could not read template %s: %s", name, exc)
                continue
            summaries[template.name] = TemplateSummary(
                name=template.name, description=template.description, source="stored"
            )
        return [summaries[name] for name in sorted(summaries)]

    def delete(self, name: str) -> None:
        """Remove a stored template. Built-ins cannot be deleted."""
        path = self.paths.template(name)
        with locks.file_lock(self.paths.templates_lock):
            if not path.exists():
                raise NotFoundError(f'Template "{name}" not found in stored templates')
            remove_document(path)
        logger.info("Deleted template %s", name)

    def save_from_team(self, name: str, team: str, description: Optional[str] = None) -> TeamTemplate:
        config: TeamConfig = self.teams.get_team(team)
        raw: Dict[str, Any] = {
            "name": name,
            "description": description or f'Extracted from team "{team}"',
            "topology": config.topology or "flat",
            "roles": config.roles or [{"name": "worker"}],
            "created_at": self.clock(),
        }
        if config.workflow is not None:
            raw["workflow"] = config.workflow.model_dump(mode="json", exclude={"last_suggestion_at"}, exclude_none=True)
        return self.save(raw)

    def create_team_from_template(
        self,
        template_name: str,
        team: str,
        leader_id: str = "leader",
        leader_name: str = "Leader",
    ) -> TeamConfig:
        """Create ``team`` with the template's settings, then queue its starter tasks."""
        template = self.load(template_name)
        workflow = None
        if template.workflow is not None:
            workflow = template.workflow.model_dump(mode="json", exclude={"last_suggestion_at"}, exclude_none=True)
        config = self.teams.create_team(
            team,
            leader_id=leader_id,
            leader_name=leader_name,
            topology=template.topology,
            roles=[role.model_dump(mode="json", exclude_none=True) for role in template.roles],
            workflow=workflow,
        )
        for starter in template.default_tasks:
            self.tasks.create(team, title=starter.title, description=starter.description, priority=starter.priority)
        logger.info("Created team %s from template %s", team, template_name)
        return config
