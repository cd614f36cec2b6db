import io
import json

import pytest

from agent_teams.context import AmbientContext
from agent_teams_mcp_server import TOOL_SCHEMAS, ToolServer, serve


@pytest.fixture
def server(service, team):
    return ToolServer(service, AmbientContext(team=team, agent_id="lead"))


def _call(server, name, arguments=None, request_id=1):
    return server.handle_request(
        {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments or {}},
        }
    )


def _payload(response):
    return json.loads(response["result"]["content"][0]["text"])


def test_initialize(server):
    response = server.handle_request({"jsonrpc": "2.0", "id": 0, "method": "initialize", "params": {}})
    assert response["result"]["serverInfo"]["name"] == "agent-teams"
    assert response["result"]["protocolVersion"] == "2024-11-05"


def test_tools_list_covers_every_handler(server):
    response = server.handle_request({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
    names = [tool["name"] for tool in response["result"]["tools"]]
    assert names == [tool["name"] for tool in TOOL_SCHEMAS]
    assert {"create-task", "claim-task", "add-dispatch-rule", "poll-inbox"} <= set(names)


def test_notification_gets_no_response(server):
    assert server.handle_request({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None


def test_unknown_method_and_tool(server):
    assert server.handle_request({"jsonrpc": "2.0", "id": 2, "method": "nope"})["error"]["code"] == -32601
    assert _call(server, "no-such-tool")["error"]["code"] == -32601


def test_create_and_list_tasks(server):
    created = _payload(_call(server, "create-task", {"title": "Write docs", "priority": "high"}))
    assert created["status"] == "pending"
    assert created["priority"] == "high"

    follow = _payload(_call(server, "create-task", {"title": "Review", "dependencies": json.dumps([created["id"]])}))
    assert follow["dependencies"] == [created["id"]]

    listed = _payload(_call(server, "get-tasks", {"status": "pending"}))
    assert {task["id"] for task in listed} == {created["id"], follow["id"]}


def test_errors_are_tool_results(server):
    response = _call(server, "update-task", {"task_id": "TASK-missing", "status": "in_progress"})
    assert response["result"]["isError"] is True
    assert _payload(response)["error"]["kind"] == "not_found"

    missing_arg = _call(server, "create-task", {})
    assert _payload(missing_arg)["error"]["kind"] == "validation"


def test_role_guard_blocks_reviewer(service, team):
    service.agents.register(team, "Reviewer", role="reviewer", agent_id="rev")
    task = service.tasks.create(team, title="A")
    reviewer = ToolServer(service, AmbientContext(team=team, agent_id="rev"))

    response = _call(reviewer, "claim-task", {"task_id": task.id})

    assert response["result"]["isError"] is True
    assert _payload(response)["error"]["kind"] == "permission"
    assert service.tasks.get(team, task.id).status == "pending"


def test_dispatch_rule_tools(server, team):
    rule = {"id": "r1", "event_type": "task.created", "action": {"type": "log", "message": "seen"}}
    assert _payload(_call(server, "add-dispatch-rule", {"rule": json.dumps(rule)}))["id"] == "r1"

    _call(server, "create-task", {"title": "A"})

    log = _payload(_call(server, "get-dispatch-log", {"limit": 5}))
    assert [entry["details"] for entry in log] == ["seen"]
    assert _payload(_call(server, "remove-dispatch-rule", {"rule_id": "r1"})) == {"removed": "r1"}
    assert _payload(_call(server, "list-dispatch-rules")) == []


def test_messaging_tools(server, service, team):
    service.teams.join_team(team, "w1")
    _call(server, "send-message", {"recipient": "w1", "message": "hi"})

    worker = ToolServer(service, AmbientContext(team=team, agent_id="w1"))
    polled = _payload(_call(worker, "poll-inbox", {"timeout_seconds": 0}))

    assert polled["timed_out"] is False
    assert [(m["sender"], m["body"]) for m in polled["messages"]] == [("lead", "hi")]


def test_serve_loop(server):
    lines = [
        json.dumps({"jsonrpc": "2.0", "id": 1, "method": "initialize"}),
        "",
        "not json",
        json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
        json.dumps({"jsonrpc": "2.0", "id": 2, "method": "tools/list"}),
    ]
    stdout = io.StringIO()

    serve(server, io.StringIO("\n".join(lines) + "\n"), stdout)

    responses = [json.loads(line) for line in stdout.getvalue().splitlines()]
    assert [response["id"] for response in responses] == [1, 2]


def test_create_task_rejects_unknown_priority(server, service, team):
    response = _call(server, "create-task", {"title": "A", "priority": "urgent"})

    assert response["result"]["isError"] is True
    assert _payload(response)["error"]["kind"] == "validation"
    assert service.tasks.list(team) == []


def test_poll_inbox_reads_naive_since_as_utc(server, service, team):
    service.teams.join_team(team, "w1")
    _call(server, "send-message", {"recipient": "w1", "message": "hi"})
    worker = ToolServer(service, AmbientContext(team=team, agent_id="w1"))

    earlier = _payload(_call(worker, "poll-inbox", {"timeout_seconds": 0, "since": "2025-12-31T00:00:00"}))
    later = _payload(_call(worker, "poll-inbox", {"timeout_seconds": 0, "since": "2026-06-01T00:00:00"}))

    assert [m["body"] for m in earlier["messages"]] == ["hi"]
    assert later == {"messages": [], "timed_out": True}


def test_poll_inbox_rejects_bad_timeout(server):
    response = _call(server, "poll-inbox", {"timeout_seconds": "soon"})

    assert response["result"]["isError"] is True
    error = _payload(response)["error"]
    assert error["kind"] == "validation"
    assert "timeout_seconds" in json.dumps(error)


def test_spawn_team_from_template(server, service):
    names = [t["name"] for t in _payload(_call(server, "list-templates"))]
    assert names == ["code-review", "leader-workers", "swarm"]

    created = _payload(_call(server, "spawn-team", {"team": "crew", "template": "leader-workers"}))

    assert created["topology"] == "hierarchical"
    assert created["leader"] == "lead"
    missing = _call(server, "spawn-team", {"team": "crew2", "template": "nope"})
    assert _payload(missing)["error"]["kind"] == "not_found"
    assert not service.teams.team_exists("crew2")
