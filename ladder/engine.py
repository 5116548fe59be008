"""
ladder/engine.py - ChallengeEngine: creation, scheduling and resolution of challenges

The engine is the only writer of challenges and of the ladder fields on
standings (tier, prestige, record, protection). Every operation returns
either the updated Challenge or a Rejection; nothing is remembered between
calls, so one engine can serve concurrent callers.

Lifecycle:

    pending ──propose_dates──> pending (dates offered)
    pending ──schedule───────> scheduled
    scheduled ──submit_result> completed
    pending|scheduled ──forfeit──> forfeited
    pending|scheduled ──cancel───> cancelled

Each operation reads, validates and writes inside one LadderDB
transaction. A rejection leaves the store untouched.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable

from ladder.errors import Reason, Rejection
from ladder.ledger import ChallengeLedger
from ladder.models import (
    OPEN_STATUSES,
    Challenge,
    ChallengeResult,
    ChallengeStatus,
    ForfeitReason,
    GameResult,
    Standing,
    TierPair,
    Tournament,
    TournamentStatus,
    ensure_utc,
    utcnow,
)
from ladder.prestige import (
    PenaltySchedule,
    calculate_prestige,
    forfeit_result,
    tiers_after,
    validate_score,
)
from ladder.registry import TeamRegistry, TournamentRegistry
from ladder.store import LadderDB

logger = logging.getLogger(__name__)

# Scheduling accepts a chosen date this close to a proposed one
DEFAULT_DATE_TOLERANCE = timedelta(minutes=10)


class ChallengeEngine:
    """Validates and applies every challenge operation.

    Args:
        db: Store shared by the collaborators; provides the transaction boundary.
        teams: Team registry.
        tournaments: Tournament + standings registry.
        ledger: Challenge storage.
        penalties: Forfeit penalty severities.
        date_tolerance: How far a chosen date may drift from a proposed one.
        clock: Returns the current time. Tests pass a controllable clock.
    """

    def __init__(
        self,
        db: LadderDB,
        teams: TeamRegistry,
        tournaments: TournamentRegistry,
        ledger: ChallengeLedger,
        penalties: PenaltySchedule | None = None,
        date_tolerance: timedelta = DEFAULT_DATE_TOLERANCE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db
        self.teams = teams
        self.tournaments = tournaments
        self.ledger = ledger
        self.penalties = penalties or PenaltySchedule()
        self.date_tolerance = date_tolerance
        self._clock = clock

    @classmethod
    def from_db(cls, db: LadderDB, **kwargs) -> "ChallengeEngine":
        """Wire the default SQLite-backed collaborators around one store."""
        clock = kwargs.get("clock", utcnow)
        teams = TeamRegistry(db, clock)
        tournaments = TournamentRegistry(db, teams, clock)
        return cls(db, teams, tournaments, ChallengeLedger(db), **kwargs)

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    # ==================================================================
    # Creation
    # ==================================================================

    def create_challenge(
        self,
        challenger_standing_id: str,
        defender_standing_id: str,
        tournament_id: str,
        cast_demand: bool = False,
    ) -> Challenge | Rejection:
        """Open a challenge, or explain why it can't be opened.

        Checks run in order and stop at the first failure: tournament,
        standings, tier relationship, defender protection, duplicate,
        monthly limit.
        """
        now = self.now()
        with self._db.transaction():
            tournament = self.tournaments.get_tournament(tournament_id)
            if tournament is None:
                return _reject(Reason.TOURNAMENT_NOT_FOUND, f"Tournament {tournament_id} not found")
            if tournament.status == TournamentStatus.COMPLETED:
                return _reject(
                    Reason.TOURNAMENT_NOT_ACTIVE,
                    f"Tournament {tournament.name} is completed",
                )

            challenger = self._standing_in(challenger_standing_id, tournament_id)
            defender = self._standing_in(defender_standing_id, tournament_id)
            for standing_id, standing in (
                (challenger_standing_id, challenger),
                (defender_standing_id, defender),
            ):
                if standing is None:
                    return _reject(
                        Reason.STANDING_NOT_FOUND,
                        f"Team is not part of tournament {tournament.name}",
                        standing_id=standing_id,
                    )
            if challenger.standing_id == defender.standing_id:
                return _reject(Reason.SELF_CHALLENGE, "A team cannot challenge itself")

            if not _eligible_tiers(challenger.tier, defender.tier):
                return _reject(
                    Reason.INVALID_TIER_RELATIONSHIP,
                    f"Cannot challenge: challenger tier {challenger.tier} may only target "
                    f"tier {challenger.tier} or {challenger.tier - 1}, defender is tier {defender.tier}",
                    challenger_tier=challenger.tier,
                    defender_tier=defender.tier,
                )

            if defender.is_protected(now):
                return _reject(
                    Reason.DEFENDER_PROTECTED,
                    f"Cannot challenge: defender is protected until {defender.protected_until.isoformat()}",
                    protected_until=defender.protected_until.isoformat(),
                )

            existing = self.ledger.find_open_between(challenger.standing_id, defender.standing_id)
            if existing is not None:
                return _reject(
                    Reason.DUPLICATE_CHALLENGE,
                    f"Cannot challenge: challenge {existing.challenge_id} is already open "
                    "between these teams",
                    challenge_id=existing.challenge_id,
                )

            limit = tournament.rules.max_challenges_per_month
            issued = self.ledger.count_created_since(challenger.team_id, _start_of_month(now))
            if issued >= limit:
                return _reject(
                    Reason.MONTHLY_LIMIT_EXCEEDED,
                    f"Cannot challenge: monthly limit of {limit} challenge(s) reached",
                    limit=limit,
                    issued=issued,
                )

            challenge = Challenge(
                challenge_id=str(uuid.uuid4()),
                tournament_id=tournament_id,
                challenger_id=challenger.standing_id,
                defender_id=defender.standing_id,
                tier_before=TierPair(challenger.tier, defender.tier),
                status=ChallengeStatus.PENDING,
                cast_demand=cast_demand,
                created_at=now,
                updated_at=now,
            )
            self.ledger.insert(challenge)

        logger.info(
            f"Created challenge {challenge.challenge_id}: {challenger.standing_id} "
            f"(tier {challenger.tier}) -> {defender.standing_id} (tier {defender.tier})"
        )
        return challenge

    # ==================================================================
    # Scheduling
    # ==================================================================

    def propose_dates(self, challenge_id: str, dates: Iterable[datetime]) -> Challenge | Rejection:
        """Offer match dates. The challenge stays pending until one is picked."""
        now = self.now()
        with self._db.transaction():
            challenge = self._load(challenge_id, {ChallengeStatus.PENDING}, "propose dates for")
            if isinstance(challenge, Rejection):
                return challenge
            tournament = self.tournaments.get_tournament(challenge.tournament_id)

            distinct = sorted({ensure_utc(d) for d in dates})
            required = tournament.rules.min_required_date_options
            if len(distinct) < required:
                return _reject(
                    Reason.INSUFFICIENT_DATE_OPTIONS,
                    f"At least {required} distinct dates are required, got {len(distinct)}",
                    required=required,
                )
            past = [d for d in distinct if d <= now]
            if past:
                return _reject(
                    Reason.DATE_NOT_IN_FUTURE,
                    "All proposed dates must be in the future",
                    dates=[d.isoformat() for d in past],
                )

            challenge.proposed_dates = distinct
            challenge.updated_at = now
            self.ledger.update(challenge)

        logger.info(f"Proposed {len(distinct)} date(s) for challenge {challenge_id}")
        return challenge

    def schedule_challenge(self, challenge_id: str, chosen_date: datetime) -> Challenge | Rejection:
        """Pick one of the proposed dates and move the challenge to scheduled."""
        now = self.now()
        chosen = ensure_utc(chosen_date)
        with self._db.transaction():
            challenge = self._load(challenge_id, {ChallengeStatus.PENDING}, "schedule")
            if isinstance(challenge, Rejection):
                return challenge
            if not challenge.proposed_dates:
                return _reject(
                    Reason.INSUFFICIENT_DATE_OPTIONS,
                    f"Challenge {challenge_id} has no proposed dates yet",
                )

            closest = min(challenge.proposed_dates, key=lambda d: abs(d - chosen))
            if abs(closest - chosen) > self.date_tolerance:
                return _reject(
                    Reason.SCHEDULED_DATE_NOT_AMONG_PROPOSED,
                    "The selected date must be one of the proposed dates",
                    proposed_dates=[d.isoformat() for d in challenge.proposed_dates],
                )

            challenge.scheduled_date = closest
            challenge.status = ChallengeStatus.SCHEDULED
            challenge.updated_at = now
            self.ledger.update(challenge)

        logger.info(f"Scheduled challenge {challenge_id} for {closest.isoformat()}")
        return challenge

    # ==================================================================
    # Resolution
    # ==================================================================

    def submit_result(
        self,
        challenge_id: str,
        winner_standing_id: str,
        score: str,
        games: list[GameResult] | None = None,
    ) -> Challenge | Rejection:
        """Record a played match and apply its ladder effects."""
        now = self.now()
        games = list(games or [])
        with self._db.transaction():
            challenge = self._load(challenge_id, {ChallengeStatus.SCHEDULED}, "submit a result for")
            if isinstance(challenge, Rejection):
                return challenge
            if challenge.scheduled_date is not None and challenge.scheduled_date > now:
                return _reject(
                    Reason.SCHEDULED_DATE_IN_FUTURE,
                    f"Match is scheduled for {challenge.scheduled_date.isoformat()}, "
                    "results can't be submitted yet",
                    scheduled_date=challenge.scheduled_date.isoformat(),
                )
            if not challenge.involves(winner_standing_id):
                return _reject(
                    Reason.WINNER_NOT_PARTICIPANT,
                    "Winner must be the challenger or the defender",
                    standing_id=winner_standing_id,
                )

            tournament = self.tournaments.get_tournament(challenge.tournament_id)
            loser_standing_id = challenge.opponent_of(winner_standing_id)
            problem = validate_score(
                tournament.format, score, winner_standing_id, loser_standing_id, games
            )
            if problem is not None:
                return _reject(Reason.SCORE_FORMAT_INVALID, problem, score=score)

            result = ChallengeResult(winner=winner_standing_id, score=score.strip(), games=games)
            return self._resolve(challenge, tournament, result, ChallengeStatus.COMPLETED, now)

    def forfeit_challenge(
        self,
        challenge_id: str,
        forfeiting_standing_id: str,
        unfair: bool = False,
        reason: ForfeitReason | None = None,
    ) -> Challenge | Rejection:
        """Resolve without a match: the other side wins the full format.

        A reason (no_show, gave_up) marks the forfeit unfair; unfair
        forfeits cost the forfeiting side a penalty on top of the normal
        loser award.
        """
        now = self.now()
        reason = ForfeitReason(reason) if reason is not None else None
        unfair = unfair or reason is not None
        with self._db.transaction():
            challenge = self._load(challenge_id, OPEN_STATUSES, "forfeit")
            if isinstance(challenge, Rejection):
                return challenge
            if not challenge.involves(forfeiting_standing_id):
                return _reject(
                    Reason.STANDING_NOT_FOUND,
                    "Only a participant can forfeit this challenge",
                    standing_id=forfeiting_standing_id,
                )

            tournament = self.tournaments.get_tournament(challenge.tournament_id)
            winner_id = challenge.opponent_of(forfeiting_standing_id)
            score, games = forfeit_result(tournament.format, winner_id, forfeiting_standing_id)

            challenge.forfeited_by = forfeiting_standing_id
            challenge.unfair_forfeit = unfair
            challenge.forfeit_reason = reason
            challenge.forfeit_penalty = self.penalties.penalty_for(unfair, reason)

            result = ChallengeResult(winner=winner_id, score=score, games=games)
            return self._resolve(challenge, tournament, result, ChallengeStatus.FORFEITED, now)

    def cancel_challenge(self, challenge_id: str) -> Challenge | Rejection:
        """Withdraw an open challenge. No tier or prestige changes."""
        now = self.now()
        with self._db.transaction():
            challenge = self._load(challenge_id, OPEN_STATUSES, "cancel")
            if isinstance(challenge, Rejection):
                return challenge
            challenge.status = ChallengeStatus.CANCELLED
            challenge.updated_at = now
            self.ledger.update(challenge)

        logger.info(f"Cancelled challenge {challenge_id}")
        return challenge

    def _resolve(
        self,
        challenge: Challenge,
        tournament: Tournament,
        result: ChallengeResult,
        status: ChallengeStatus,
        now: datetime,
    ) -> Challenge | Rejection:
        """Apply prestige, tier swap, record and protection. Caller holds the transaction."""
        challenger = self.tournaments.get_standing_by_id(challenge.challenger_id)
        defender = self.tournaments.get_standing_by_id(challenge.defender_id)
        if challenger is None or defender is None:
            missing = challenge.challenger_id if challenger is None else challenge.defender_id
            return _reject(
                Reason.STANDING_NOT_FOUND,
                "A participant has left the tournament",
                standing_id=missing,
            )

        challenger_won = result.winner == challenge.challenger_id
        before = TierPair(challenger.tier, defender.tier)
        points = calculate_prestige(challenger_won, before.challenger, before.defender)
        after = tiers_after(challenger_won, before)

        # Forfeit penalty comes off the forfeiting side after the base award
        penalty = challenge.forfeit_penalty
        if penalty and challenge.forfeited_by == challenge.challenger_id:
            points = TierPair(points.challenger - penalty, points.defender)
        elif penalty and challenge.forfeited_by == challenge.defender_id:
            points = TierPair(points.challenger, points.defender - penalty)

        protected_until = None
        if not challenger_won:
            protected_until = now + timedelta(days=tournament.rules.protection_days_after_defense)

        self._apply(challenger, after.challenger, points.challenger, won=challenger_won)
        self._apply(
            defender,
            after.defender,
            points.defender,
            won=not challenger_won,
            protected_until=protected_until,
        )

        challenge.status = status
        challenge.result = result
        challenge.tier_after = after
        challenge.prestige_awarded = points
        challenge.updated_at = now
        self.ledger.update(challenge)

        winner_side = "challenger" if challenger_won else "defender"
        logger.info(
            f"Challenge {challenge.challenge_id} {status.value}: {winner_side} won {result.score}, "
            f"tiers {before.challenger}/{before.defender} -> {after.challenger}/{after.defender}, "
            f"prestige {points.challenger:+d}/{points.defender:+d}"
        )
        return challenge

    def _apply(
        self,
        standing: Standing,
        tier: int,
        prestige: int,
        won: bool,
        protected_until: datetime | None = None,
    ) -> None:
        self.tournaments.update_standing(
            standing.standing_id,
            tier=tier,
            prestige_delta=prestige,
            wins_delta=1 if won else 0,
            losses_delta=0 if won else 1,
            win_streak=standing.win_streak + 1 if won else 0,
            protected_until=protected_until,
        )

    # ==================================================================
    # Queries
    # ==================================================================

    def get_challenge(self, challenge_id: str) -> Challenge | None:
        return self.ledger.find_by_id(challenge_id)

    def list_for_standing(
        self, standing_id: str, statuses: Iterable[ChallengeStatus] | None = None
    ) -> list[Challenge]:
        return self.ledger.find_by_participant(standing_id, statuses)

    def list_pending_for_team(self, team_id: str) -> list[Challenge]:
        """Open (pending or scheduled) challenges across all of a team's tournaments."""
        challenges = []
        for standing in self.tournaments.list_standings_for_team(team_id):
            challenges.extend(self.ledger.find_by_participant(standing.standing_id, OPEN_STATUSES))
        return sorted(challenges, key=lambda c: c.created_at)

    def list_by_status(self, tournament_id: str, status: ChallengeStatus) -> list[Challenge]:
        return self.ledger.find_by_status(tournament_id, [ChallengeStatus(status)])

    def response_deadline(self, challenge: Challenge, tournament: Tournament) -> datetime:
        return challenge.created_at + timedelta(days=tournament.rules.challenge_timeframe_days)

    def get_past_due_challenges(
        self, tournament_id: str, now: datetime | None = None
    ) -> list[Challenge]:
        """Pending challenges with no proposed dates whose response deadline has passed."""
        tournament = self.tournaments.get_tournament(tournament_id)
        if tournament is None:
            return []
        now = ensure_utc(now) if now is not None else self.now()
        return [
            c
            for c in self.ledger.find_by_status(tournament_id, [ChallengeStatus.PENDING])
            if not c.proposed_dates and now > self.response_deadline(c, tournament)
        ]

    # ==================================================================
    # Internals
    # ==================================================================

    def _standing_in(self, standing_id: str, tournament_id: str) -> Standing | None:
        standing = self.tournaments.get_standing_by_id(standing_id)
        if standing is None or standing.tournament_id != tournament_id:
            return None
        return standing

    def _load(
        self, challenge_id: str, allowed: Iterable[ChallengeStatus], operation: str
    ) -> Challenge | Rejection:
        challenge = self.ledger.find_by_id(challenge_id)
        if challenge is None:
            return _reject(Reason.CHALLENGE_NOT_FOUND, f"Challenge {challenge_id} does not exist")
        if challenge.status.is_terminal:
            return _reject(
                Reason.CHALLENGE_ALREADY_TERMINAL,
                f"Challenge {challenge_id} is already {challenge.status.value}",
                status=challenge.status.value,
            )
        if challenge.status not in allowed:
            return _reject(
                Reason.INVALID_STATUS_FOR_OPERATION,
                f"Cannot {operation} a {challenge.status.value} challenge",
                status=challenge.status.value,
            )
        return challenge


# ============================================================================
# Rules
# ============================================================================


def _eligible_tiers(challenger_tier: int, defender_tier: int) -> bool:
    """Same tier, or the tier immediately above the challenger."""
    return challenger_tier == defender_tier or challenger_tier == defender_tier + 1


def _start_of_month(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _reject(reason: Reason, message: str, **context) -> Rejection:
    logger.warning(f"Rejected ({reason.value}): {message}")
    return Rejection(reason=reason, message=message, context=context)
