def _workflow_team(service, **workflow):
    settings = {"enabled": True, "task_threshold": 3, "worker_ratio": 2.0, "cooldown_seconds": 300}
    settings.update(workflow)
    service.teams.create_team("W", leader_id="lead", workflow=settings)
    service.teams.join_team("W", "w1")
    return "W"


def _suggestions(service, team):
    return [m for m in service.teams.read_messages(team, "lead", unread_only=True) if m.sender == "workflow-monitor"]


def test_no_suggestion_when_disabled(service, team):
    for n in range(5):
        service.tasks.create(team, title=f"T{n}")
    assert service.workflow.evaluate(team) is None


def test_suggestion_when_backlog_outgrows_workers(service):
    team = _workflow_team(service)
    for n in range(3):
        service.tasks.create(team, title=f"T{n}")

    suggestion = service.workflow.evaluate(team)

    assert suggestion.unblocked_tasks == 3
    assert suggestion.active_workers == 1
    assert suggestion.message == (
        "Backlog alert: 3 unblocked tasks with 1 active workers (ratio: 3.0x). Consider spawning additional workers."
    )


def test_below_threshold_or_ratio(service):
    team = _workflow_team(service, task_threshold=4)
    for n in range(3):
        service.tasks.create(team, title=f"T{n}")
    assert service.workflow.evaluate(team) is None

    service.teams.join_team(team, "w2")
    service.teams.join_team(team, "w3")
    service.tasks.create(team, title="T3")
    assert service.workflow.evaluate(team) is None


def test_completion_sends_suggestion_once_per_cooldown(service, clock):
    team = _workflow_team(service, task_threshold=2)
    tasks = [service.tasks.create(team, title=f"T{n}") for n in range(5)]

    service.tasks.claim(team, tasks[0].id, "w1")
    service.tasks.update(team, tasks[0].id, status="completed")
    messages = _suggestions(service, team)
    assert len(messages) == 1
    assert messages[0].type == "task_assignment"
    assert service.teams.get_team(team).workflow.last_suggestion_at is not None

    service.tasks.claim(team, tasks[1].id, "w1")
    service.tasks.update(team, tasks[1].id, status="completed")
    assert _suggestions(service, team) == []

    clock.advance(301)
    service.tasks.claim(team, tasks[2].id, "w1")
    service.tasks.update(team, tasks[2].id, status="completed")
    assert len(_suggestions(service, team)) == 1
