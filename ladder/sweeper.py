"""
ladder/sweeper.py - Auto-forfeit of challenges the defender never answered

A challenge is past due when it is still pending, nobody has proposed a
date, and its response deadline (created_at + challenge_timeframe_days) has
passed. The sweeper gives the defender a further grace period and then
forfeits the challenge on the defender's behalf.

Sweeping is idempotent: a forfeited challenge is no longer pending, so a
second sweep finds nothing to do. A challenge resolved by a user between
the query and the forfeit comes back as a Rejection and is skipped.

RecurringTask drives the sweep in production (daily at a fixed hour, plus
once on start). Tests call sweep() or run_pending() directly.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from ladder.engine import ChallengeEngine
from ladder.errors import Rejection, StoreUnavailableError
from ladder.models import Challenge, Tournament, TournamentStatus, ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = timedelta(days=2)
DEFAULT_MAX_RETRIES = 3


@dataclass(frozen=True)
class AutoForfeitNotice:
    """Emitted once per challenge the sweeper forfeits."""

    challenge_id: str
    tournament_id: str
    winner_id: str
    forfeiter_id: str
    deadline: datetime
    forfeited_at: datetime


Listener = Callable[[AutoForfeitNotice], None]


class TimeoutSweeper:
    """Finds past-due challenges and forfeits them for the defender.

    Args:
        engine: Engine used for the queries and the forfeit itself.
        grace_period: Default extra time after the deadline. A tournament's
            rules.grace_period_days overrides it.
        max_retries: Attempts per challenge when the store is unavailable.
        retry_delay: Seconds to wait between attempts.
    """

    def __init__(
        self,
        engine: ChallengeEngine,
        grace_period: timedelta = DEFAULT_GRACE_PERIOD,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = 0.0,
    ):
        self.engine = engine
        self.grace_period = grace_period
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def grace_for(self, tournament: Tournament) -> timedelta:
        if tournament.rules.grace_period_days is not None:
            return timedelta(days=tournament.rules.grace_period_days)
        return self.grace_period

    def sweep(self, now: datetime | None = None) -> list[AutoForfeitNotice]:
        """Sweep every active tournament. Returns the notices emitted."""
        now = ensure_utc(now) if now is not None else self.engine.now()
        notices = []
        for tournament in self.engine.tournaments.list_tournaments(TournamentStatus.ACTIVE):
            notices.extend(self.sweep_tournament(tournament, now))
        logger.info(f"Sweep complete: {len(notices)} challenge(s) auto-forfeited")
        return notices

    def sweep_tournament(self, tournament: Tournament, now: datetime) -> list[AutoForfeitNotice]:
        overdue = self.engine.get_past_due_challenges(tournament.tournament_id, now)
        if not overdue:
            return []
        logger.info(f"Found {len(overdue)} overdue challenge(s) in tournament {tournament.name}")

        grace = self.grace_for(tournament)
        notices = []
        for challenge in overdue:
            deadline = self.engine.response_deadline(challenge, tournament)
            if now <= deadline + grace:
                logger.info(
                    f"Challenge {challenge.challenge_id} is overdue but within the "
                    f"{grace.days}-day grace period, skipping"
                )
                continue
            notice = self._forfeit(challenge, deadline)
            if notice is not None:
                notices.append(notice)
                self._notify(notice)
        return notices

    def _forfeit(self, challenge: Challenge, deadline: datetime) -> AutoForfeitNotice | None:
        for attempt in range(1, self.max_retries + 1):
            try:
                outcome = self.engine.forfeit_challenge(
                    challenge.challenge_id, challenge.defender_id
                )
            except StoreUnavailableError as e:
                logger.warning(
                    f"Auto-forfeit of {challenge.challenge_id} failed "
                    f"(attempt {attempt}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries and self.retry_delay > 0:
                    time.sleep(self.retry_delay)
                continue

            if isinstance(outcome, Rejection):
                logger.info(
                    f"Skipping challenge {challenge.challenge_id}: {outcome.reason.value}"
                )
                return None

            logger.info(
                f"Auto-forfeited challenge {challenge.challenge_id}: no response from defender"
            )
            return AutoForfeitNotice(
                challenge_id=outcome.challenge_id,
                tournament_id=outcome.tournament_id,
                winner_id=outcome.challenger_id,
                forfeiter_id=outcome.defender_id,
                deadline=deadline,
                forfeited_at=outcome.updated_at,
            )

        logger.error(
            f"Giving up on challenge {challenge.challenge_id} after {self.max_retries} attempts"
        )
        return None

    def _notify(self, notice: AutoForfeitNotice) -> None:
        for listener in self._listeners:
            try:
                listener(notice)
            except Exception as e:
                logger.error(f"Auto-forfeit listener failed for {notice.challenge_id}: {e}")


# ============================================================================
# Scheduling
# ============================================================================


def daily_at(hour: int, now: datetime) -> datetime:
    """Next occurrence of hour:00 UTC at or after `now`."""
    now = ensure_utc(now)
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate < now:
        candidate += timedelta(days=1)
    return candidate


class RecurringTask:
    """Runs a function on a fixed interval in a background thread.

    next_due only ever moves forward: after a run it advances past `now`
    in whole intervals, so slots missed while the process was busy or
    asleep are skipped rather than replayed.

    Args:
        fn: Called with no arguments. Exceptions are logged, never raised.
        interval: Time between runs.
        first_due: First scheduled run. Defaults to now + interval.
        run_on_start: Also run once as soon as start() is called.
        poll_seconds: How often the background thread checks the clock.
        clock: Returns the current time.
    """

    def __init__(
        self,
        fn: Callable[[], object],
        interval: timedelta,
        first_due: datetime | None = None,
        run_on_start: bool = False,
        poll_seconds: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
        name: str = "recurring-task",
    ):
        if interval <= timedelta(0):
            raise ValueError("interval must be positive")
        self.fn = fn
        self.interval = interval
        self.run_on_start = run_on_start
        self.poll_seconds = poll_seconds
        self.name = name
        self._clock = clock
        self._next_due = ensure_utc(first_due) if first_due else ensure_utc(clock()) + interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0

    @property
    def next_due(self) -> datetime:
        return self._next_due

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_pending(self, now: datetime | None = None) -> bool:
        """Run fn if due. Returns True if it ran."""
        now = ensure_utc(now) if now is not None else ensure_utc(self._clock())
        if now < self._next_due:
            return False
        self._run()
        while self._next_due <= now:
            self._next_due += self.interval
        logger.info(f"{self.name}: next run at {self._next_due.isoformat()}")
        return True

    def start(self):
        """Start the background thread."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"{self.name} started, next run at {self._next_due.isoformat()}")

    def stop(self, timeout: float = 5.0):
        """Stop the background thread and wait for it to exit."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info(f"{self.name} stopped")

    def _loop(self):
        if self.run_on_start:
            self._run()
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(self.poll_seconds)

    def _run(self):
        self.runs += 1
        try:
            self.fn()
        except Exception as e:
            logger.error(f"{self.name} run failed: {e}")
