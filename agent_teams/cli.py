from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, List, Optional

from agent_teams.config import Settings
from agent_teams.errors import TeamsError
from agent_teams.log import configure_logging
from agent_teams.service import TeamsService
from agent_teams.store import to_jsonable


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Filesystem-coordinated agent teams")
    parser.add_argument("--root", default=None, help="Storage root (defaults to AGENT_TEAMS_ROOT or ./.agent-teams)")
    parser.add_argument("--log-level", default=None, help="Logging level for diagnostics on stderr")

    sub = parser.add_subparsers(dest="command", required=True)

    create_team = sub.add_parser("create-team", help="Create a team with its leader")
    create_team.add_argument("--name", required=True)
    create_team.add_argument("--leader-id", default="leader")
    create_team.add_argument("--leader-name", default="Leader")
    create_team.add_argument("--topology", choices=["flat", "hierarchical"], default=None)
    create_team.add_argument("--template", default=None, help="Create the team from a stored or built-in template")

    sub.add_parser("list-teams", help="List teams")

    sub.add_parser("templates", help="List team templates")

    save_template = sub.add_parser("save-template", help="Save a team's settings as a template")
    save_template.add_argument("--name", required=True)
    save_template.add_argument("--team", required=True)
    save_template.add_argument("--description", default=None)

    delete_template = sub.add_parser("delete-template", help="Delete a stored template")
    delete_template.add_argument("--name", required=True)

    create_task = sub.add_parser("create-task", help="Create a task")
    create_task.add_argument("--team", required=True)
    create_task.add_argument("--title", required=True)
    create_task.add_argument("--description", default=None)
    create_task.add_argument("--priority", choices=["high", "normal", "low"], default="normal")
    create_task.add_argument("--depends-on", action="append", default=[], help="Dependency task id (repeatable)")

    list_tasks = sub.add_parser("list-tasks", help="List tasks of a team")
    list_tasks.add_argument("--team", required=True)
    list_tasks.add_argument("--status", choices=["pending", "in_progress", "completed"], default=None)
    list_tasks.add_argument("--owner", default=None)

    rules = sub.add_parser("rules", help="List dispatch rules of a team")
    rules.add_argument("--team", required=True)

    dispatch_log = sub.add_parser("dispatch-log", help="Show dispatch log, newest first")
    dispatch_log.add_argument("--team", required=True)
    dispatch_log.add_argument("--limit", type=int, default=None)

    return parser


def _load_service(root: Optional[str], log_level: Optional[str]) -> TeamsService:
    settings = Settings.from_env()
    configure_logging(log_level or settings.log_level)
    return TeamsService(root=Path(root) if root else None, settings=settings)


def _print(value: Any) -> None:
    print(json.dumps(to_jsonable(value), indent=2))


def run(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    service = _load_service(args.root, args.log_level)

    try:
        if args.command == "create-team" and args.template:
            _print(
                service.templates.create_team_from_template(
                    args.template, args.name, leader_id=args.leader_id, leader_name=args.leader_name
                )
            )
            return 0

        if args.command == "create-team":
            _print(
                service.teams.create_team(
                    args.name,
                    leader_id=args.leader_id,
                    leader_name=args.leader_name,
                    topology=args.topology,
                )
            )
            return 0

        if args.command == "list-teams":
            _print(service.teams.list_teams())
            return 0

        if args.command == "templates":
            _print(service.templates.list_templates())
            return 0

        if args.command == "save-template":
            _print(service.templates.save_from_team(args.name, args.team, description=args.description))
            return 0

        if args.command == "delete-template":
            service.templates.delete(args.name)
            _print({"deleted": args.name})
            return 0

        if args.command == "create-task":
            _print(
                service.tasks.create(
                    args.team,
                    title=args.title,
                    description=args.description,
                    priority=args.priority,
                    dependencies=args.depends_on,
                )
            )
            return 0

        if args.command == "list-tasks":
            _print(service.tasks.list(args.team, status=args.status, owner=args.owner))
            return 0

        if args.command == "rules":
            _print(service.rules.list_rules(args.team))
            return 0

        if args.command == "dispatch-log":
            _print(service.rules.get_log(args.team, limit=args.limit))
            return 0
    except TeamsError as exc:
        _print({"error": exc.to_dict()})
        return 1

    parser.error(f"Unknown command: {args.command}")
    return 2


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
