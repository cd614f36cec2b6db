#!/usr/bin/env python3
"""
agent-teams MCP Server
Expose team, task, messaging, agent and dispatch operations as MCP tools over
newline-delimited JSON-RPC on stdio.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from agent_teams import __version__
from agent_teams.context import AmbientContext
from agent_teams.errors import TeamsError, ValidationError
from agent_teams.log import configure_logging
from agent_teams.service import TeamsService
from agent_teams.store import to_jsonable

logger = logging.getLogger("agent_teams.mcp")

SERVER_NAME = "agent-teams"
PROTOCOL_VERSION = "2024-11-05"

_STR = {"type": "string"}
_TEAM = {"type": "string", "description": "Team name (defaults to AGENT_TEAMS_TEAM)"}
_AGENT = {"type": "string", "description": "Agent id (defaults to AGENT_TEAMS_AGENT_ID)"}

TOOL_SCHEMAS: List[Dict[str, Any]] = [
    {
        "name": "spawn-team",
        "description": "Create a new team; the caller becomes its leader.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "team": _STR,
                "leader_id": _AGENT,
                "leader_name": _STR,
                "topology": {"type": "string", "enum": ["flat", "hierarchical"]},
                "template": {"type": "string", "description": "Template to create the team from"},
            },
            "required": ["team"],
        },
    },
    {
        "name": "list-templates",
        "description": "List built-in and stored team templates.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "discover-teams",
        "description": "List all teams.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "join-team",
        "description": "Join an existing team as a member.",
        "inputSchema": {
            "type": "object",
            "properties": {"team": _TEAM, "agent_id": _AGENT, "agent_name": _STR, "agent_type": _STR},
        },
    },
    {
        "name": "get-team-info",
        "description": "Return the full team config.",
        "inputSchema": {"type": "object", "properties": {"team": _TEAM}},
    },
    {
        "name": "send-message",
        "description": "Send a direct message to a team member.",
        "inputSchema": {
            "type": "object",
            "properties": {"team": _TEAM, "recipient": _STR, "message": _STR, "sender": _AGENT},
            "required": ["recipient", "message"],
        },
    },
    {
        "name": "broadcast-message",
        "description": "Send a message to every team member except the sender.",
        "inputSchema": {
            "type": "object",
            "properties": {"team": _TEAM, "message": _STR, "sender": _AGENT},
            "required": ["message"],
        },
    },
    {
        "name": "poll-inbox",
        "description": "Wait for unread messages; returns timed_out=true with no messages on timeout.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "team": _TEAM,
                "agent_id": _AGENT,
                "timeout_seconds": {"type": "number"},
                "since": {"type": "string", "description": "ISO timestamp; only newer messages"},
            },
        },
    },
    {
        "name": "create-task",
        "description": "Create a pending task, optionally depending on other tasks.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "team": _TEAM,
                "title": _STR,
                "description": _STR,
                "priority": {"type": "string", "enum": ["high", "normal", "low"]},
                "dependencies": {"type": "array", "items": _STR},
            },
            "required": ["title"],
        },
    },
    {
        "name": "get-tasks",
        "description": "List tasks of a team, optionally filtered.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "team": _TEAM,
                "status": {"type": "string", "enum": ["pending", "in_progress", "completed"]},
                "owner": _STR,
            },
        },
    },
    {
        "name": "update-task",
        "description": "Update a task. Status only moves forward: pending -> in_progress -> completed.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "team": _TEAM,
                "task_id": _STR,
                "status": {"type": "string", "enum": ["pending", "in_progress", "completed"]},
                "title": _STR,
                "description": _STR,
                "priority": {"type": "string", "enum": ["high", "normal", "low"]},
                "dependencies": {"type": "array", "items": _STR},
            },
            "required": ["task_id"],
        },
    },
    {
        "name": "claim-task",
        "description": "Claim a pending task. Set allow_soft_block to proceed despite unmet dependencies.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "team": _TEAM,
                "task_id": _STR,
                "agent_id": _AGENT,
                "allow_soft_block": {"type": "boolean", "default": False},
            },
            "required": ["task_id"],
        },
    },
    {
        "name": "spawn-agent",
        "description": "Register a new agent in the team and start its session.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "team": _TEAM,
                "name": _STR,
                "prompt": _STR,
                "role": {"type": "string", "default": "worker"},
                "model": _STR,
            },
            "required": ["name", "prompt"],
        },
    },
    {
        "name": "kill-agent",
        "description": "Ask an agent to shut down, or terminate it immediately with force=true.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "agent_id": _STR,
                "force": {"type": "boolean", "default": False},
                "reason": _STR,
            },
            "required": ["agent_id"],
        },
    },
    {
        "name": "heartbeat",
        "description": "Record a heartbeat for an agent.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "agent_id": _AGENT,
                "source": {
                    "type": "string",
                    "enum": ["tool", "sdk_session_idle", "sdk_session_updated", "sdk_tool_execute"],
                },
            },
        },
    },
    {
        "name": "add-dispatch-rule",
        "description": "Add an event-driven dispatch rule to a team.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "team": _TEAM,
                "rule": {
                    "type": "object",
                    "description": "{id, event_type, condition?, action, priority?, enabled?}",
                },
            },
            "required": ["rule"],
        },
    },
    {
        "name": "remove-dispatch-rule",
        "description": "Remove a dispatch rule by id.",
        "inputSchema": {
            "type": "object",
            "properties": {"team": _TEAM, "rule_id": _STR},
            "required": ["rule_id"],
        },
    },
    {
        "name": "list-dispatch-rules",
        "description": "List the dispatch rules of a team.",
        "inputSchema": {"type": "object", "properties": {"team": _TEAM}},
    },
    {
        "name": "get-dispatch-log",
        "description": "Return dispatch log entries, newest first.",
        "inputSchema": {
            "type": "object",
            "properties": {"team": _TEAM, "limit": {"type": "integer"}},
        },
    },
]


def _json_text(value: Any) -> str:
    return json.dumps(to_jsonable(value), indent=2)


def _ok(request_id: Any, payload: Any, is_error: bool = False) -> Dict[str, Any]:
    result: Dict[str, Any] = {"content": [{"type": "text", "text": _json_text(payload)}]}
    if is_error:
        result["isError"] = True
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _rpc_error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _require(args: Dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("arguments", [f"{key}: required"])
    return value


def _parse_json_argument(raw: Any, expected: str) -> Any:
    if isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError("arguments", [f"expected JSON {expected}: {exc}"]) from exc
        if expected == "object" and not isinstance(parsed, dict):
            raise ValidationError("arguments", ["expected JSON object"])
        if expected == "array" and not isinstance(parsed, list):
            raise ValidationError("arguments", ["expected JSON array"])
        return parsed
    return {} if expected == "object" else []


def _parse_since(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError("arguments", [f"since: not an ISO timestamp: {raw!r}"]) from exc
    # Stored timestamps are aware; naive input is read as UTC.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_timeout(raw: Any) -> Optional[float]:
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError("arguments", [f"timeout_seconds: not a number: {raw!r}"]) from exc


class ToolServer:
    """Maps MCP tool calls onto a ``TeamsService``."""

    def __init__(self, service: TeamsService, context: Optional[AmbientContext] = None) -> None:
        self.service = service
        self.context = context or AmbientContext()
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "spawn-team": self._spawn_team,
            "list-templates": lambda args: self.service.templates.list_templates(),
            "discover-teams": lambda args: self.service.teams.list_teams(),
            "join-team": self._join_team,
            "get-team-info": lambda args: self.service.teams.get_team(self._team(args)),
            "send-message": self._send_message,
            "broadcast-message": self._broadcast,
            "poll-inbox": self._poll_inbox,
            "create-task": self._create_task,
            "get-tasks": self._get_tasks,
            "update-task": self._update_task,
            "claim-task": self._claim_task,
            "spawn-agent": self._spawn_agent,
            "kill-agent": self._kill_agent,
            "heartbeat": self._heartbeat,
            "add-dispatch-rule": self._add_rule,
            "remove-dispatch-rule": self._remove_rule,
            "list-dispatch-rules": lambda args: self.service.rules.list_rules(self._team(args)),
            "get-dispatch-log": lambda args: self.service.rules.get_log(self._team(args), limit=args.get("limit")),
        }

    def handle_request(self, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        method = request.get("method")
        request_id = request.get("id")
        # JSON-RPC notifications do not include an id and must not receive responses.
        if "id" not in request:
            return None
        if method == "initialize":
            return {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": SERVER_NAME, "version": __version__},
                },
            }
        if method == "tools/list":
            return {"jsonrpc": "2.0", "id": request_id, "result": {"tools": TOOL_SCHEMAS}}
        if method == "tools/call":
            return self.handle_tool_call(request_id, request.get("params") or {})
        return _rpc_error(request_id, -32601, f"Method not found: {method}")

    def handle_tool_call(self, request_id: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        name = str(params.get("name"))
        args = params.get("arguments") or {}
        handler = self._handlers.get(name)
        if handler is None:
            return _rpc_error(request_id, -32601, f"Unknown tool: {name}")
        if not isinstance(args, dict):
            return _ok(request_id, {"error": ValidationError("arguments", ["expected an object"]).to_dict()}, True)
        try:
            self.service.permissions.guard(name, self.context.agent_id, args.get("team") or self.context.team)
            payload = handler(args)
        except TeamsError as exc:
            logger.info("Tool %s failed: %s", name, exc)
            return _ok(request_id, {"error": exc.to_dict()}, is_error=True)
        except Exception as exc:
            logger.exception("Tool %s crashed", name)
            return _rpc_error(request_id, -32603, str(exc))
        return _ok(request_id, payload)

    def _team(self, args: Dict[str, Any]) -> str:
        return self.context.resolve_team(args.get("team"))

    def _agent(self, args: Dict[str, Any], key: str = "agent_id") -> str:
        return self.context.resolve_agent(args.get(key))

    def _spawn_team(self, args: Dict[str, Any]) -> Any:
        team = _require(args, "team")
        leader_id = self.context.resolve_agent(args.get("leader_id"), fallback="leader")
        leader_name = args.get("leader_name") or "Leader"
        if args.get("template"):
            return self.service.templates.create_team_from_template(
                args["template"], team, leader_id=leader_id, leader_name=leader_name
            )
        return self.service.teams.create_team(
            team,
            leader_id=leader_id,
            leader_name=leader_name,
            topology=args.get("topology"),
        )

    def _join_team(self, args: Dict[str, Any]) -> Any:
        return self.service.teams.join_team(
            self._team(args),
            self._agent(args),
            agent_name=args.get("agent_name") or "Agent",
            agent_type=args.get("agent_type") or "worker",
        )

    def _send_message(self, args: Dict[str, Any]) -> Any:
        return self.service.teams.send_message(
            self._team(args),
            _require(args, "recipient"),
            _require(args, "message"),
            sender=self._agent(args, "sender"),
        )

    def _broadcast(self, args: Dict[str, Any]) -> Any:
        return self.service.teams.broadcast(self._team(args), _require(args, "message"), sender=self._agent(args, "sender"))

    def _poll_inbox(self, args: Dict[str, Any]) -> Any:
        result = self.service.teams.poll_inbox(
            self._team(args),
            self._agent(args),
            timeout=_parse_timeout(args.get("timeout_seconds")),
            since=_parse_since(args.get("since")),
        )
        return result.to_dict()

    def _create_task(self, args: Dict[str, Any]) -> Any:
        return self.service.tasks.create(
            self._team(args),
            title=_require(args, "title"),
            description=args.get("description"),
            priority=args.get("priority") or "normal",
            dependencies=_parse_json_argument(args.get("dependencies"), "array"),
        )

    def _get_tasks(self, args: Dict[str, Any]) -> Any:
        return self.service.tasks.list(self._team(args), status=args.get("status"), owner=args.get("owner"))

    def _update_task(self, args: Dict[str, Any]) -> Any:
        dependencies = args.get("dependencies")
        return self.service.tasks.update(
            self._team(args),
            _require(args, "task_id"),
            status=args.get("status"),
            title=args.get("title"),
            description=args.get("description"),
            priority=args.get("priority"),
            dependencies=_parse_json_argument(dependencies, "array") if dependencies is not None else None,
        )

    def _claim_task(self, args: Dict[str, Any]) -> Any:
        return self.service.tasks.claim(
            self._team(args),
            _require(args, "task_id"),
            self._agent(args),
            allow_soft_block=bool(args.get("allow_soft_block", False)),
        )

    def _spawn_agent(self, args: Dict[str, Any]) -> Any:
        return self.service.agents.spawn(
            self._team(args),
            _require(args, "name"),
            _require(args, "prompt"),
            role=args.get("role") or "worker",
            model=args.get("model"),
        )

    def _kill_agent(self, args: Dict[str, Any]) -> Any:
        agent_id = _require(args, "agent_id")
        if args.get("force"):
            return self.service.agents.terminate(agent_id, reason=args.get("reason") or "killed by request")
        return self.service.agents.request_shutdown(agent_id, requested_by=self.context.resolve_agent(None))

    def _heartbeat(self, args: Dict[str, Any]) -> Any:
        return self.service.agents.heartbeat(self._agent(args), source=args.get("source") or "tool").to_dict()

    def _add_rule(self, args: Dict[str, Any]) -> Any:
        return self.service.rules.add_rule(self._team(args), _parse_json_argument(_require(args, "rule"), "object"))

    def _remove_rule(self, args: Dict[str, Any]) -> Any:
        rule_id = _require(args, "rule_id")
        self.service.rules.remove_rule(self._team(args), rule_id)
        return {"removed": rule_id}


def serve(server: ToolServer, stdin: Any = None, stdout: Any = None) -> None:
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    while True:
        line = stdin.readline()
        if not line:
            break
        if not line.strip():
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed JSON-RPC line")
            continue
        if not isinstance(request, dict):
            continue
        response = server.handle_request(request)
        if response is not None:
            stdout.write(json.dumps(response) + "\n")
            stdout.flush()


def main() -> None:
    service = TeamsService.from_env()
    configure_logging(service.settings.log_level)
    serve(ToolServer(service, AmbientContext.from_env()))


if __name__ == "__main__":
    main()
