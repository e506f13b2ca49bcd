from campbot.config import (
    TEAM_LABEL_FIRST,
    TEAM_LABEL_SECOND,
    TEAM_LABEL_UNKNOWN,
    TeamConfig,
    find_team_by_name,
    find_team_for_leader,
    load_teams,
    team_label_for_roles,
)


def test_load_teams_reads_prefixed_env(monkeypatch):
    monkeypatch.setenv("CAMPBOT_TEAMS", "alpha, beta")
    monkeypatch.setenv("TEAM_ALPHA_NAME", "Alpha")
    monkeypatch.setenv("TEAM_ALPHA_TOKEN", "secret")
    monkeypatch.setenv("TEAM_ALPHA_VOICE_CHANNEL_ID", "1000")
    monkeypatch.setenv("TEAM_ALPHA_LEADER_ID", "not-a-number")
    monkeypatch.delenv("TEAM_BETA_NAME", raising=False)
    monkeypatch.delenv("TEAM_BETA_TOKEN", raising=False)

    alpha, beta = load_teams()

    assert alpha.name == "Alpha"
    assert alpha.token == "secret"
    assert alpha.voice_channel_id == 1000
    assert alpha.leader_id is None
    assert beta.name == "beta"
    assert beta.token is None


def test_leader_matches_user_or_role():
    teams = [TeamConfig(name="Alpha", leader_id=42), TeamConfig(name="Beta", leader_id=900)]

    assert find_team_for_leader(teams, 42, set()).name == "Alpha"
    assert find_team_for_leader(teams, 7, {900}).name == "Beta"
    assert find_team_for_leader(teams, 7, {1}) is None


def test_team_lookup_and_labels():
    team = TeamConfig(name="Alpha", member_role1_id=501, member_role2_id=502)

    assert find_team_by_name([team], " alpha ") is team
    assert team_label_for_roles({501, 502}, team) == TEAM_LABEL_FIRST
    assert team_label_for_roles({502}, team) == TEAM_LABEL_SECOND
    assert team_label_for_roles(set(), team) == TEAM_LABEL_UNKNOWN
