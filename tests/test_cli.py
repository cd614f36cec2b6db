import json

from agent_teams.cli import run


def _run(capsys, root, *argv):
    code = run(["--root", str(root), *argv])
    return code, json.loads(capsys.readouterr().out)


def test_team_and_task_commands(tmp_path, capsys):
    root = tmp_path / "store"

    code, team = _run(capsys, root, "create-team", "--name", "cli", "--leader-id", "boss")
    assert code == 0
    assert team["leader"] == "boss"

    code, task = _run(capsys, root, "create-task", "--team", "cli", "--title", "First", "--priority", "high")
    assert code == 0
    code, second = _run(capsys, root, "create-task", "--team", "cli", "--title", "Second", "--depends-on", task["id"])
    assert second["dependencies"] == [task["id"]]

    code, tasks = _run(capsys, root, "list-tasks", "--team", "cli")
    assert {t["title"] for t in tasks} == {"First", "Second"}

    code, teams = _run(capsys, root, "list-teams")
    assert [t["name"] for t in teams] == ["cli"]

    code, rules = _run(capsys, root, "rules", "--team", "cli")
    assert rules == []
    code, log = _run(capsys, root, "dispatch-log", "--team", "cli")
    assert log == []


def test_errors_exit_non_zero(tmp_path, capsys):
    code, output = _run(capsys, tmp_path, "list-tasks", "--team", "ghost")
    assert code == 0
    assert output == []

    code, output = _run(capsys, tmp_path, "create-task", "--team", "ghost", "--title", "x")
    assert code == 1
    assert output["error"]["kind"] == "not_found"


def test_template_commands(tmp_path, capsys):
    root = tmp_path / "store"

    code, team = _run(capsys, root, "create-team", "--name", "rev", "--template", "code-review")
    assert code == 0
    assert team["topology"] == "flat"
    code, tasks = _run(capsys, root, "list-tasks", "--team", "rev")
    assert len(tasks) == 3

    code, saved = _run(capsys, root, "save-template", "--name", "mine", "--team", "rev")
    assert saved["description"] == 'Extracted from team "rev"'
    code, listed = _run(capsys, root, "templates")
    assert {"name": "mine", "source": "stored", "description": 'Extracted from team "rev"'} in listed

    code, output = _run(capsys, root, "delete-template", "--name", "mine")
    assert output == {"deleted": "mine"}
    code, output = _run(capsys, root, "delete-template", "--name", "swarm")
    assert code == 1
    assert output["error"]["kind"] == "not_found"
