"""Tests for ladder.registry: teams, rosters, tournaments and standings."""

from datetime import timedelta

import pytest

from ladder.errors import (
    RosterError,
    StandingNotFoundError,
    TeamNotFoundError,
    TournamentConfigError,
    TournamentNotFoundError,
)
from ladder.models import MatchFormat, Role, TeamMember, TournamentRules, TournamentStatus
from ladder.registry import TeamRegistry, TournamentRegistry


@pytest.fixture
def teams(db, clock):
    return TeamRegistry(db, clock)


@pytest.fixture
def tournaments(db, teams, clock):
    return TournamentRegistry(db, teams, clock)


@pytest.fixture
def cup(tournaments):
    return tournaments.create_tournament("Cup", "league", MatchFormat.BO3, 3, [1, 2, 3])


def _team(teams, n: int):
    return teams.create_team(f"Team {n}", f"cap-{n}", f"Captain {n}")


# ======================================================================
# Teams
# ======================================================================


class TestCreateTeam:
    def test_captain_is_first_member(self, teams):
        team = teams.create_team(
            "Falcons", "u1", "alice",
            members=[TeamMember("u2", "bob", Role.MID), TeamMember("u3", "cara")],
        )
        assert team.captain_id == "u1"
        assert [m.user_id for m in team.members] == ["u1", "u2", "u3"]
        assert team.captain.username == "alice"
        assert [m.is_captain for m in team.members] == [True, False, False]
        assert team.member("u2").role == Role.MID

    def test_one_active_team_per_captain(self, teams):
        teams.create_team("Falcons", "u1", "alice")
        with pytest.raises(RosterError):
            teams.create_team("Hawks", "u1", "alice")

    def test_retired_team_frees_captain(self, teams):
        first = teams.create_team("Falcons", "u1", "alice")
        teams.retire_team(first.team_id)
        second = teams.create_team("Hawks", "u1", "alice")
        assert teams.find_team_by_captain("u1").team_id == second.team_id

    def test_duplicate_member(self, teams):
        with pytest.raises(RosterError):
            teams.create_team("Falcons", "u1", "alice", members=[TeamMember("u1", "alice")])

    def test_unknown_team(self, teams):
        assert teams.get_team_by_id("nope") is None
        with pytest.raises(TeamNotFoundError):
            teams.add_member("nope", "u2", "bob")


class TestRoster:
    def test_add_and_remove(self, teams):
        team = teams.create_team("Falcons", "u1", "alice")
        team = teams.add_member(team.team_id, "u2", "bob", Role.ADC)
        assert [m.user_id for m in team.members] == ["u1", "u2"]
        team = teams.remove_member(team.team_id, "u2")
        assert [m.user_id for m in team.members] == ["u1"]

    def test_add_existing_member(self, teams):
        team = teams.create_team("Falcons", "u1", "alice")
        with pytest.raises(RosterError):
            teams.add_member(team.team_id, "u1", "alice")

    def test_cannot_remove_captain(self, teams):
        team = teams.create_team("Falcons", "u1", "alice", members=[TeamMember("u2", "bob")])
        with pytest.raises(RosterError):
            teams.remove_member(team.team_id, "u1")

    def test_remove_unknown_member(self, teams):
        team = teams.create_team("Falcons", "u1", "alice")
        with pytest.raises(RosterError):
            teams.remove_member(team.team_id, "ghost")

    def test_update_role(self, teams):
        team = teams.create_team("Falcons", "u1", "alice", members=[TeamMember("u2", "bob")])
        team = teams.update_member_role(team.team_id, "u2", Role.SUPPORT)
        assert team.member("u2").role == Role.SUPPORT

    def test_transfer_captain(self, teams):
        team = teams.create_team("Falcons", "u1", "alice", members=[TeamMember("u2", "bob")])
        team = teams.transfer_captain(team.team_id, "u2")
        assert team.captain_id == "u2"
        assert teams.is_captain(team.team_id, "u2")
        assert not teams.is_captain(team.team_id, "u1")
        assert [m.user_id for m in team.members if m.is_captain] == ["u2"]
        # Old captain can now be removed
        team = teams.remove_member(team.team_id, "u1")
        assert [m.user_id for m in team.members] == ["u2"]

    def test_transfer_to_outsider(self, teams):
        team = teams.create_team("Falcons", "u1", "alice")
        with pytest.raises(RosterError):
            teams.transfer_captain(team.team_id, "u9")

    def test_transfer_to_other_captain(self, teams):
        teams.create_team("Hawks", "u2", "bob")
        team = teams.create_team("Falcons", "u1", "alice", members=[TeamMember("u2", "bob")])
        with pytest.raises(RosterError):
            teams.transfer_captain(team.team_id, "u2")

    def test_retired_team_is_kept(self, teams):
        team = teams.create_team("Falcons", "u1", "alice")
        retired = teams.retire_team(team.team_id)
        assert retired.retired is True
        assert not teams.is_captain(team.team_id, "u1")
        assert teams.get_team_members(team.team_id)[0].user_id == "u1"


# ======================================================================
# Tournaments
# ======================================================================


class TestTournamentConfig:
    def test_create(self, cup):
        assert cup.status == TournamentStatus.UPCOMING
        assert cup.format == MatchFormat.BO3
        assert cup.tier_limits == [1, 2, 3]
        assert cup.rules == TournamentRules()
        assert cup.bottom_tier == 3

    @pytest.mark.parametrize("max_tiers,limits", [(0, []), (3, [1, 2]), (2, [1, 0])])
    def test_bad_tiers(self, tournaments, max_tiers, limits):
        with pytest.raises(TournamentConfigError):
            tournaments.create_tournament("Bad", "league", MatchFormat.BO1, max_tiers, limits)

    def test_bad_rules(self, tournaments):
        with pytest.raises(TournamentConfigError):
            tournaments.create_tournament(
                "Bad", "league", MatchFormat.BO1, 1, [4],
                rules=TournamentRules(max_challenges_per_month=0),
            )

    def test_status_moves_forward_only(self, tournaments, cup):
        active = tournaments.set_status(cup.tournament_id, TournamentStatus.ACTIVE)
        assert active.status == TournamentStatus.ACTIVE
        with pytest.raises(TournamentConfigError):
            tournaments.set_status(cup.tournament_id, TournamentStatus.UPCOMING)

    def test_list_by_status(self, tournaments, cup):
        other = tournaments.create_tournament("Other", "league", MatchFormat.BO1, 1, [4])
        tournaments.set_status(other.tournament_id, TournamentStatus.ACTIVE)
        active = tournaments.list_tournaments(TournamentStatus.ACTIVE)
        assert [t.tournament_id for t in active] == [other.tournament_id]
        assert len(tournaments.list_tournaments()) == 2

    def test_rules_frozen_after_join(self, teams, tournaments, cup):
        updated = tournaments.update_rules(cup.tournament_id, TournamentRules(grace_period_days=1))
        assert updated.rules.grace_period_days == 1
        tournaments.add_team(_team(teams, 1).team_id, cup.tournament_id)
        with pytest.raises(TournamentConfigError):
            tournaments.update_rules(cup.tournament_id, TournamentRules())

    def test_timestamps_follow_clock(self, teams, tournaments, clock):
        team = _team(teams, 1)
        assert team.created_at == clock.now
        clock.advance(days=3)
        cup = tournaments.create_tournament("Cup", "league", MatchFormat.BO1, 1, [4])
        assert cup.created_at == clock.now

    def test_engine_shares_its_clock(self, engine, clock):
        clock.advance(days=10)
        cup = engine.tournaments.create_tournament("Cup", "league", MatchFormat.BO1, 1, [4])
        assert cup.created_at == clock.now

    def test_unknown_tournament(self, tournaments):
        assert tournaments.get_tournament("nope") is None
        with pytest.raises(TournamentNotFoundError):
            tournaments.set_status("nope", TournamentStatus.ACTIVE)


class TestMembership:
    def test_default_bottom_tier(self, teams, tournaments, cup):
        standing = tournaments.add_team(_team(teams, 1).team_id, cup.tournament_id)
        assert standing.tier == 3
        assert (standing.prestige, standing.wins, standing.losses, standing.win_streak) == (0, 0, 0, 0)
        assert standing.protected_until is None

    def test_explicit_tier(self, teams, tournaments, cup):
        standing = tournaments.add_team(_team(teams, 1).team_id, cup.tournament_id, initial_tier=1)
        assert standing.tier == 1

    def test_tier_out_of_range(self, teams, tournaments, cup):
        with pytest.raises(TournamentConfigError):
            tournaments.add_team(_team(teams, 1).team_id, cup.tournament_id, initial_tier=4)

    def test_tier_zero_rejected(self, teams, tournaments, cup):
        with pytest.raises(TournamentConfigError):
            tournaments.add_team(_team(teams, 1).team_id, cup.tournament_id, initial_tier=0)

    def test_tier_capacity(self, teams, tournaments, cup):
        tournaments.add_team(_team(teams, 1).team_id, cup.tournament_id, initial_tier=1)
        with pytest.raises(TournamentConfigError):
            tournaments.add_team(_team(teams, 2).team_id, cup.tournament_id, initial_tier=1)

    def test_already_entered(self, teams, tournaments, cup):
        team = _team(teams, 1)
        tournaments.add_team(team.team_id, cup.tournament_id)
        with pytest.raises(TournamentConfigError):
            tournaments.add_team(team.team_id, cup.tournament_id)

    def test_unknown_or_retired_team(self, teams, tournaments, cup):
        with pytest.raises(TeamNotFoundError):
            tournaments.add_team("nope", cup.tournament_id)
        team = _team(teams, 1)
        teams.retire_team(team.team_id)
        with pytest.raises(TeamNotFoundError):
            tournaments.add_team(team.team_id, cup.tournament_id)

    def test_completed_tournament(self, teams, tournaments, cup):
        tournaments.set_status(cup.tournament_id, TournamentStatus.COMPLETED)
        with pytest.raises(TournamentConfigError):
            tournaments.add_team(_team(teams, 1).team_id, cup.tournament_id)

    def test_remove_team(self, teams, tournaments, cup):
        team = _team(teams, 1)
        tournaments.add_team(team.team_id, cup.tournament_id)
        tournaments.remove_team(team.team_id, cup.tournament_id)
        assert tournaments.get_standing(team.team_id, cup.tournament_id) is None
        with pytest.raises(StandingNotFoundError):
            tournaments.remove_team(team.team_id, cup.tournament_id)

    def test_remove_refused_with_open_challenge(self, engine, enter, tournament):
        a, b = enter(tournament, 3), enter(tournament, 3)
        engine.create_challenge(a.standing_id, b.standing_id, tournament.tournament_id)
        with pytest.raises(TournamentConfigError):
            engine.tournaments.remove_team(b.team_id, tournament.tournament_id)


class TestStandings:
    def test_ladder_order(self, teams, tournaments, cup):
        s1 = tournaments.add_team(_team(teams, 1).team_id, cup.tournament_id, initial_tier=2)
        s2 = tournaments.add_team(_team(teams, 2).team_id, cup.tournament_id, initial_tier=2)
        s3 = tournaments.add_team(_team(teams, 3).team_id, cup.tournament_id, initial_tier=1)
        tournaments.update_standing(s1.standing_id, prestige_delta=3)
        tournaments.update_standing(s2.standing_id, prestige_delta=8)

        order = [s.standing_id for s in tournaments.list_standings(cup.tournament_id)]
        assert order == [s3.standing_id, s2.standing_id, s1.standing_id]

    def test_update_standing(self, teams, tournaments, cup, clock):
        s = tournaments.add_team(_team(teams, 1).team_id, cup.tournament_id)
        until = clock.now + timedelta(days=3)
        updated = tournaments.update_standing(
            s.standing_id, tier=2, prestige_delta=-5, wins_delta=1, win_streak=1, protected_until=until
        )
        assert (updated.tier, updated.prestige, updated.wins, updated.win_streak) == (2, -5, 1, 1)
        assert updated.protected_until == until

        again = tournaments.update_standing(s.standing_id, losses_delta=1, win_streak=0)
        assert (again.tier, again.losses, again.win_streak) == (2, 1, 0)
        assert again.protected_until == until

    def test_tier_bounds_enforced(self, teams, tournaments, cup):
        s = tournaments.add_team(_team(teams, 1).team_id, cup.tournament_id)
        with pytest.raises(TournamentConfigError):
            tournaments.update_standing(s.standing_id, tier=0)
        with pytest.raises(StandingNotFoundError):
            tournaments.update_standing("nope", prestige_delta=1)

    def test_standings_for_team(self, teams, tournaments, cup):
        other = tournaments.create_tournament("Other", "league", MatchFormat.BO1, 1, [4])
        team = _team(teams, 1)
        tournaments.add_team(team.team_id, cup.tournament_id)
        tournaments.add_team(team.team_id, other.tournament_id)
        assert {s.tournament_id for s in tournaments.list_standings_for_team(team.team_id)} == {
            cup.tournament_id, other.tournament_id,
        }
