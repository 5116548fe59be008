"""
tests/conftest.py - Shared fixtures: in-memory ladder, controllable clock.
"""

from datetime import datetime, timedelta, timezone

import pytest

from ladder.engine import ChallengeEngine
from ladder.models import MatchFormat, TournamentRules, TournamentStatus
from ladder.store import LadderDB

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


@pytest.fixture
def db():
    """Fresh in-memory DB for each test."""
    ladder_db = LadderDB(":memory:")
    yield ladder_db
    ladder_db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(db, clock):
    return ChallengeEngine.from_db(db, clock=clock)


@pytest.fixture
def tournament(engine):
    """Active Bo3 tournament, five tiers, 7-day response window."""
    t = engine.tournaments.create_tournament(
        "Winter Ladder",
        "league",
        MatchFormat.BO3,
        max_tiers=5,
        tier_limits=[2, 4, 6, 8, 10],
        rules=TournamentRules(),
    )
    return engine.tournaments.set_status(t.tournament_id, TournamentStatus.ACTIVE)


@pytest.fixture
def enter(engine):
    """Factory: register a team and enter it at a given tier. Returns the Standing."""
    counter = {"n": 0}

    def _enter(tournament, tier: int, name: str | None = None):
        counter["n"] += 1
        n = counter["n"]
        team = engine.teams.create_team(name or f"Team {n}", f"captain-{n}", f"Captain {n}")
        return engine.tournaments.add_team(team.team_id, tournament.tournament_id, initial_tier=tier)

    return _enter
