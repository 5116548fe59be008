"""Tests for ladder.sweeper: auto-forfeit of past-due challenges, RecurringTask."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from ladder.errors import StoreUnavailableError
from ladder.models import ChallengeStatus, MatchFormat, TierPair, TournamentRules, TournamentStatus
from ladder.sweeper import RecurringTask, TimeoutSweeper, daily_at


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def ten_day(engine):
    """Active tournament with a 10-day response window and no grace override."""
    t = engine.tournaments.create_tournament(
        "Ten Day Cup",
        "league",
        MatchFormat.BO3,
        max_tiers=4,
        tier_limits=[2, 4, 6, 8],
        rules=TournamentRules(challenge_timeframe_days=10),
    )
    return engine.tournaments.set_status(t.tournament_id, TournamentStatus.ACTIVE)


@pytest.fixture
def sweeper(engine):
    return TimeoutSweeper(engine)


@pytest.fixture
def silent_challenge(engine, clock, ten_day, enter):
    """A tier-4 vs tier-3 challenge created 2024-01-01 that nobody answers."""
    clock.set(_utc(2024, 1, 1))
    a, b = enter(ten_day, 4), enter(ten_day, 3)
    return engine.create_challenge(a.standing_id, b.standing_id, ten_day.tournament_id)


# ======================================================================
# Sweep
# ======================================================================


class TestSweep:
    def test_nothing_before_deadline(self, engine, clock, sweeper, silent_challenge):
        clock.set(_utc(2024, 1, 11))
        assert sweeper.sweep() == []
        assert engine.get_challenge(silent_challenge.challenge_id).status == ChallengeStatus.PENDING

    def test_within_grace_period(self, engine, clock, sweeper, ten_day, silent_challenge):
        clock.set(_utc(2024, 1, 12, 12))
        # Past due, but the default 2-day grace has not run out
        assert len(engine.get_past_due_challenges(ten_day.tournament_id)) == 1
        assert sweeper.sweep() == []
        assert engine.get_challenge(silent_challenge.challenge_id).status == ChallengeStatus.PENDING

    def test_forfeits_defender_after_grace(self, engine, clock, sweeper, silent_challenge):
        clock.set(_utc(2024, 1, 14))
        notices = sweeper.sweep()

        assert [n.challenge_id for n in notices] == [silent_challenge.challenge_id]
        notice = notices[0]
        assert notice.winner_id == silent_challenge.challenger_id
        assert notice.forfeiter_id == silent_challenge.defender_id
        assert notice.deadline == _utc(2024, 1, 11)
        assert notice.forfeited_at == _utc(2024, 1, 14)

        done = engine.get_challenge(silent_challenge.challenge_id)
        assert done.status == ChallengeStatus.FORFEITED
        assert done.forfeited_by == silent_challenge.defender_id
        assert done.unfair_forfeit is False
        assert done.forfeit_penalty == 0
        assert done.tier_after == TierPair(3, 4)
        assert done.prestige_awarded == TierPair(10, 1)

    def test_idempotent(self, engine, clock, sweeper, silent_challenge):
        clock.set(_utc(2024, 1, 14))
        assert len(sweeper.sweep()) == 1
        assert sweeper.sweep() == []
        clock.advance(days=5)
        assert sweeper.sweep() == []
        challenger = engine.tournaments.get_standing_by_id(silent_challenge.challenger_id)
        assert challenger.wins == 1 and challenger.prestige == 10

    def test_explicit_now(self, engine, clock, sweeper, silent_challenge):
        assert sweeper.sweep(_utc(2024, 1, 11)) == []
        assert len(sweeper.sweep(_utc(2024, 1, 14))) == 1

    def test_tournament_grace_override(self, engine, clock, enter):
        t = engine.tournaments.create_tournament(
            "No Grace", "league", MatchFormat.BO1, 2, [4, 4],
            rules=TournamentRules(challenge_timeframe_days=3, grace_period_days=0),
        )
        engine.tournaments.set_status(t.tournament_id, TournamentStatus.ACTIVE)
        a, b = enter(t, 2), enter(t, 2)
        ch = engine.create_challenge(a.standing_id, b.standing_id, t.tournament_id)

        clock.advance(days=3, minutes=1)
        notices = TimeoutSweeper(engine).sweep()
        assert [n.challenge_id for n in notices] == [ch.challenge_id]

    def test_configured_default_grace(self, engine, clock, silent_challenge):
        clock.set(_utc(2024, 1, 12))
        assert TimeoutSweeper(engine, grace_period=timedelta(0)).sweep() != []

    def test_answered_challenge_is_left_alone(self, engine, clock, sweeper, silent_challenge):
        dates = [clock.now + timedelta(days=d) for d in (20, 21, 22)]
        engine.propose_dates(silent_challenge.challenge_id, dates)
        clock.set(_utc(2024, 1, 14))
        assert sweeper.sweep() == []

    def test_inactive_tournament_ignored(self, engine, clock, sweeper, ten_day, silent_challenge):
        engine.tournaments.set_status(ten_day.tournament_id, TournamentStatus.COMPLETED)
        clock.set(_utc(2024, 1, 14))
        assert sweeper.sweep() == []

    def test_challenge_resolved_in_between(self, engine, clock, sweeper, ten_day, silent_challenge, monkeypatch):
        clock.set(_utc(2024, 1, 14))
        stale = engine.get_past_due_challenges(ten_day.tournament_id)
        engine.cancel_challenge(silent_challenge.challenge_id)
        monkeypatch.setattr(engine, "get_past_due_challenges", lambda tid, now=None: stale)

        assert sweeper.sweep() == []
        assert engine.get_challenge(silent_challenge.challenge_id).status == ChallengeStatus.CANCELLED


class TestListeners:
    def test_listener_gets_notice(self, clock, sweeper, silent_challenge):
        received = []
        sweeper.add_listener(received.append)
        clock.set(_utc(2024, 1, 14))
        sweeper.sweep()
        assert [n.challenge_id for n in received] == [silent_challenge.challenge_id]

    def test_failing_listener_does_not_stop_sweep(self, clock, sweeper, silent_challenge):
        received = []

        def broken(notice):
            raise RuntimeError("webhook down")

        sweeper.add_listener(broken)
        sweeper.add_listener(received.append)
        clock.set(_utc(2024, 1, 14))
        assert len(sweeper.sweep()) == 1
        assert len(received) == 1


class TestRetries:
    def test_transient_failure_retried(self, engine, clock, sweeper, silent_challenge, monkeypatch):
        real = engine.forfeit_challenge
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] < 3:
                raise StoreUnavailableError("database is locked")
            return real(*args, **kwargs)

        monkeypatch.setattr(engine, "forfeit_challenge", flaky)
        clock.set(_utc(2024, 1, 14))
        assert len(sweeper.sweep()) == 1
        assert calls["n"] == 3

    def test_gives_up_after_max_retries(self, engine, clock, silent_challenge, monkeypatch):
        calls = {"n": 0}

        def down(*args, **kwargs):
            calls["n"] += 1
            raise StoreUnavailableError("database is locked")

        monkeypatch.setattr(engine, "forfeit_challenge", down)
        clock.set(_utc(2024, 1, 14))
        assert TimeoutSweeper(engine, max_retries=3).sweep() == []
        assert calls["n"] == 3
        assert engine.get_challenge(silent_challenge.challenge_id).status == ChallengeStatus.PENDING


# ======================================================================
# RecurringTask
# ======================================================================


class TestDailyAt:
    def test_later_today(self):
        assert daily_at(2, _utc(2024, 3, 5, 1, 30)) == _utc(2024, 3, 5, 2)

    def test_already_passed(self):
        assert daily_at(2, _utc(2024, 3, 5, 3)) == _utc(2024, 3, 6, 2)

    def test_exactly_now(self):
        assert daily_at(2, _utc(2024, 3, 5, 2)) == _utc(2024, 3, 5, 2)


class TestRecurringTask:
    def _task(self, fn, first_due=_utc(2024, 1, 1, 2)):
        return RecurringTask(fn, timedelta(days=1), first_due=first_due, clock=lambda: _utc(2024, 1, 1))

    def test_not_due_yet(self):
        runs = []
        task = self._task(lambda: runs.append(1))
        assert task.run_pending(_utc(2024, 1, 1, 1)) is False
        assert runs == []

    def test_runs_when_due(self):
        runs = []
        task = self._task(lambda: runs.append(1))
        assert task.run_pending(_utc(2024, 1, 1, 2)) is True
        assert runs == [1]
        assert task.next_due == _utc(2024, 1, 2, 2)

    def test_missed_slots_skipped(self):
        runs = []
        task = self._task(lambda: runs.append(1))
        assert task.run_pending(_utc(2024, 1, 4, 14)) is True
        assert runs == [1]
        assert task.next_due == _utc(2024, 1, 5, 2)

    def test_next_due_only_moves_forward(self):
        task = self._task(lambda: None)
        task.run_pending(_utc(2024, 1, 1, 2))
        due = task.next_due
        task.run_pending(_utc(2024, 1, 1, 3))
        assert task.next_due == due

    def test_failure_is_contained(self):
        def boom():
            raise RuntimeError("nope")

        task = self._task(boom)
        assert task.run_pending(_utc(2024, 1, 1, 2)) is True
        assert task.next_due == _utc(2024, 1, 2, 2)

    def test_default_first_due(self):
        task = RecurringTask(lambda: None, timedelta(hours=6), clock=lambda: _utc(2024, 1, 1))
        assert task.next_due == _utc(2024, 1, 1, 6)

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            RecurringTask(lambda: None, timedelta(0))

    def test_start_and_stop(self):
        ran = threading.Event()
        task = RecurringTask(
            ran.set,
            timedelta(days=1),
            first_due=_utc(2099, 1, 1),
            run_on_start=True,
            poll_seconds=0.01,
        )
        task.start()
        try:
            assert ran.wait(2.0)
            assert task.running
        finally:
            task.stop()
        assert not task.running
        assert task.runs == 1

    def test_sweeper_as_task(self, engine, clock, sweeper, silent_challenge):
        clock.set(_utc(2024, 1, 14, 2))
        task = RecurringTask(sweeper.sweep, timedelta(days=1), first_due=daily_at(2, clock.now), clock=clock)
        assert task.run_pending() is True
        assert engine.get_challenge(silent_challenge.challenge_id).status == ChallengeStatus.FORFEITED
