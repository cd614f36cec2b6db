import pytest

from agent_teams.errors import ConflictError, NotFoundError, ValidationError


def test_create_team_lays_out_storage(service):
    config = service.teams.create_team("alpha", leader_id="lead", leader_name="Lead")

    assert config.leader == "lead"
    assert config.member_ids() == ["lead"]
    assert service.paths.team_config("alpha").exists()
    assert service.paths.inbox("alpha", "lead").exists()
    assert service.paths.team_tasks_dir("alpha").is_dir()


def test_create_team_rejects_duplicates_and_bad_names(service, team):
    with pytest.raises(ConflictError, match='Team "T" already exists'):
        service.teams.create_team("T")
    with pytest.raises(ValidationError):
        service.teams.create_team("../escape")
    assert not (service.paths.root / "escape").exists()


def test_list_teams(service, team):
    service.teams.create_team("beta", leader_id="b")
    summaries = service.teams.list_teams()
    assert [(s.name, s.leader, s.member_count) for s in summaries] == [("T", "lead", 1), ("beta", "b", 1)]


def test_list_teams_skips_unreadable_config(service, team):
    broken = service.paths.team_config("broken")
    broken.parent.mkdir(parents=True)
    broken.write_text("{oops")
    assert [s.name for s in service.teams.list_teams()] == ["T"]


def test_unsafe_names_never_reach_the_filesystem(service, team):
    odd = service.paths.teams_dir / "has space"
    odd.mkdir()
    (odd / "config.json").write_text("{}")

    assert [s.name for s in service.teams.list_teams()] == ["T"]
    assert not service.teams.team_exists("../T")
    with pytest.raises(ValidationError):
        service.paths.inbox(team, "../../escape")
    with pytest.raises(ValidationError):
        service.teams.join_team(team, "../../escape")
    assert service.teams.get_team(team).member_ids() == ["lead"]


def test_join_and_remove_member(service, team):
    service.teams.join_team(team, "w1", agent_name="Worker")
    assert service.teams.get_team(team).member_ids() == ["lead", "w1"]
    assert service.paths.inbox(team, "w1").exists()

    with pytest.raises(ConflictError):
        service.teams.join_team(team, "w1")
    with pytest.raises(ConflictError):
        service.teams.remove_member(team, "lead")

    service.teams.remove_member(team, "w1")
    assert service.teams.get_team(team).member_ids() == ["lead"]
    with pytest.raises(NotFoundError):
        service.teams.remove_member(team, "w1")


def test_send_and_read_messages(service, team):
    service.teams.join_team(team, "w1")
    service.teams.send_message(team, "w1", "hello", sender="lead")

    first = service.teams.read_messages(team, "w1")
    assert [(m.sender, m.body, m.read) for m in first] == [("lead", "hello", False)]
    assert service.teams.read_messages(team, "w1", unread_only=True) == []
    assert service.teams.read_messages(team, "w1")[0].read is True

    with pytest.raises(NotFoundError):
        service.teams.send_message(team, "stranger", "hi")


def test_read_messages_since(service, team, clock):
    service.teams.join_team(team, "w1")
    service.teams.send_message(team, "w1", "old", sender="lead")
    marker = clock()
    service.teams.send_message(team, "w1", "new", sender="lead")

    assert [m.body for m in service.teams.read_messages(team, "w1", since=marker)] == ["new"]


def test_broadcast_skips_sender(service, team):
    service.teams.join_team(team, "w1")
    service.teams.join_team(team, "w2")

    message = service.teams.broadcast(team, "standup", sender="w1")

    assert message.recipient == "broadcast"
    assert message.recipients == ["lead", "w1", "w2"]
    assert service.teams.read_messages(team, "w1") == []
    assert [m.body for m in service.teams.read_messages(team, "w2")] == ["standup"]
    assert [m.body for m in service.teams.read_messages(team, "lead")] == ["standup"]


def test_poll_inbox_returns_waiting_messages(service, team):
    service.teams.join_team(team, "w1")
    service.teams.send_message(team, "w1", "ping", sender="lead")

    result = service.teams.poll_inbox(team, "w1", timeout=1)
    assert not result.timed_out
    assert [m.body for m in result.messages] == ["ping"]

    again = service.teams.poll_inbox(team, "w1", timeout=0)
    assert again.timed_out
    assert again.to_dict() == {"messages": [], "timed_out": True}


def test_poll_inbox_sees_message_sent_while_waiting(service, team):
    service.teams.join_team(team, "w1")
    sleeps = []

    def deliver_on_first_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 1:
            service.teams.send_message(team, "w1", "late", sender="lead")

    service.teams.sleep = deliver_on_first_sleep
    result = service.teams.poll_inbox(team, "w1", timeout=5)

    assert [m.body for m in result.messages] == ["late"]
    assert len(sleeps) == 1
    assert sleeps[0] <= service.teams.poll_interval_seconds


def test_shutdown_votes(service, team):
    service.teams.join_team(team, "w1")
    assert not service.teams.should_shutdown(team)

    service.teams.request_shutdown(team, "w1")
    assert not service.teams.should_shutdown(team)

    service.teams.request_shutdown(team, "lead")
    service.teams.request_shutdown(team, "lead")
    assert service.teams.get_team(team).shutdown_approvals == ["w1", "lead"]
    assert service.teams.should_shutdown(team)


def test_delete_team_removes_tasks_and_agents(service, team):
    service.agents.register(team, "Worker", agent_id="w1")
    service.teams.create_team("other", leader_id="x")
    service.agents.register("other", "Keeper", agent_id="k1")
    service.tasks.create(team, title="A")

    service.teams.delete_team(team)

    assert not service.teams.team_exists(team)
    assert not service.paths.team_tasks_dir(team).exists()
    assert not service.paths.agent("w1").exists()
    assert service.paths.agent("k1").exists()
    with pytest.raises(NotFoundError):
        service.teams.delete_team(team)
