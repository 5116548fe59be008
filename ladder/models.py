"""
ladder/models.py - Data types for teams, tournaments, standings and challenges

Plain dataclasses, no storage concerns. The store layer converts rows to
these and back; the engine only ever sees these.

All timestamps are timezone-aware UTC. Naive datetimes coming from callers
are treated as UTC (see ensure_utc).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


# ============================================================================
# Enums
# ============================================================================


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FORFEITED = "forfeited"

    @property
    def is_open(self) -> bool:
        return self in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


OPEN_STATUSES = frozenset({ChallengeStatus.PENDING, ChallengeStatus.SCHEDULED})
TERMINAL_STATUSES = frozenset(
    {ChallengeStatus.COMPLETED, ChallengeStatus.CANCELLED, ChallengeStatus.FORFEITED}
)
RESOLVED_STATUSES = frozenset({ChallengeStatus.COMPLETED, ChallengeStatus.FORFEITED})


class TournamentStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"


# Status only moves forward: upcoming -> active -> completed
TOURNAMENT_STATUS_ORDER = [
    TournamentStatus.UPCOMING,
    TournamentStatus.ACTIVE,
    TournamentStatus.COMPLETED,
]


class MatchFormat(str, Enum):
    """Best-of-N series. N is always odd."""

    BO1 = "BO1"
    BO3 = "BO3"
    BO5 = "BO5"

    @property
    def games(self) -> int:
        return int(self.value[2:])

    @property
    def wins_needed(self) -> int:
        return self.games // 2 + 1


class Role(str, Enum):
    TOP = "top"
    JUNGLE = "jungle"
    MID = "mid"
    ADC = "adc"
    SUPPORT = "support"
    FILL = "fill"


class ForfeitReason(str, Enum):
    NO_SHOW = "no_show"
    GAVE_UP = "gave_up"


# ============================================================================
# Teams
# ============================================================================


@dataclass
class TeamMember:
    user_id: str
    username: str
    role: Role | None = None
    is_captain: bool = False


@dataclass
class Team:
    """A registered team. Exactly one member carries the captain flag."""

    team_id: str
    name: str
    captain_id: str
    members: list[TeamMember] = field(default_factory=list)
    retired: bool = False
    created_at: datetime | None = None

    @property
    def captain(self) -> TeamMember | None:
        return next((m for m in self.members if m.is_captain), None)

    def member(self, user_id: str) -> TeamMember | None:
        return next((m for m in self.members if m.user_id == user_id), None)


# ============================================================================
# Tournaments
# ============================================================================


@dataclass
class TournamentRules:
    challenge_timeframe_days: int = 7
    protection_days_after_defense: int = 3
    max_challenges_per_month: int = 4
    min_required_date_options: int = 3
    grace_period_days: int | None = None  # None = sweeper default


@dataclass
class Tournament:
    tournament_id: str
    name: str
    game: str
    format: MatchFormat
    max_tiers: int
    tier_limits: list[int]
    rules: TournamentRules = field(default_factory=TournamentRules)
    status: TournamentStatus = TournamentStatus.UPCOMING
    created_at: datetime | None = None

    @property
    def bottom_tier(self) -> int:
        return self.max_tiers


@dataclass
class Standing:
    """A team's record inside one tournament (tier 1 is the top)."""

    standing_id: str
    team_id: str
    tournament_id: str
    tier: int
    prestige: int = 0
    wins: int = 0
    losses: int = 0
    win_streak: int = 0
    protected_until: datetime | None = None

    def is_protected(self, now: datetime) -> bool:
        return self.protected_until is not None and self.protected_until > now


# ============================================================================
# Challenges
# ============================================================================


@dataclass(frozen=True)
class TierPair:
    """Tier (or points) for both sides of a challenge."""

    challenger: int
    defender: int


@dataclass
class GameResult:
    winner: str  # standing id
    loser: str
    duration: float | None = None  # seconds; 0 marks a forfeited game


@dataclass
class ChallengeResult:
    winner: str  # standing id
    score: str  # "W-L", winner first
    games: list[GameResult] = field(default_factory=list)


@dataclass
class Challenge:
    challenge_id: str
    tournament_id: str
    challenger_id: str  # standing ids
    defender_id: str
    tier_before: TierPair
    status: ChallengeStatus = ChallengeStatus.PENDING
    cast_demand: bool = False
    proposed_dates: list[datetime] = field(default_factory=list)
    scheduled_date: datetime | None = None
    result: ChallengeResult | None = None
    tier_after: TierPair | None = None
    prestige_awarded: TierPair | None = None
    # Forfeit metadata
    forfeited_by: str | None = None
    unfair_forfeit: bool = False
    forfeit_reason: ForfeitReason | None = None
    forfeit_penalty: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def involves(self, standing_id: str) -> bool:
        return standing_id in (self.challenger_id, self.defender_id)

    def opponent_of(self, standing_id: str) -> str:
        return self.defender_id if standing_id == self.challenger_id else self.challenger_id


# ============================================================================
# Helpers
# ============================================================================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
