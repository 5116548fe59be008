"""
ladder - Tiered challenge ladder for team tournaments

Teams sit in numbered tiers and climb by challenging the tier directly
above them. The engine validates every challenge, schedules it, resolves
it into prestige and tier changes, and auto-forfeits the ones nobody
answered.
"""

__version__ = "0.1.0"

from .errors import (
    LadderError,
    Reason,
    Rejection,
    RosterError,
    StandingNotFoundError,
    StoreUnavailableError,
    TeamNotFoundError,
    TournamentConfigError,
    TournamentNotFoundError,
)

from .models import (
    Challenge,
    ChallengeResult,
    ChallengeStatus,
    ForfeitReason,
    GameResult,
    MatchFormat,
    Role,
    Standing,
    Team,
    TeamMember,
    TierPair,
    Tournament,
    TournamentRules,
    TournamentStatus,
)

from .prestige import PenaltySchedule, calculate_prestige
from .store import LadderDB
from .registry import TeamRegistry, TournamentRegistry
from .ledger import ChallengeLedger
from .engine import ChallengeEngine
from .sweeper import AutoForfeitNotice, RecurringTask, TimeoutSweeper

__all__ = [
    # Errors
    "LadderError",
    "Reason",
    "Rejection",
    "RosterError",
    "StandingNotFoundError",
    "StoreUnavailableError",
    "TeamNotFoundError",
    "TournamentConfigError",
    "TournamentNotFoundError",
    # Data types
    "Challenge",
    "ChallengeResult",
    "ChallengeStatus",
    "ForfeitReason",
    "GameResult",
    "MatchFormat",
    "Role",
    "Standing",
    "Team",
    "TeamMember",
    "TierPair",
    "Tournament",
    "TournamentRules",
    "TournamentStatus",
    # Components
    "PenaltySchedule",
    "calculate_prestige",
    "LadderDB",
    "TeamRegistry",
    "TournamentRegistry",
    "ChallengeLedger",
    "ChallengeEngine",
    "AutoForfeitNotice",
    "RecurringTask",
    "TimeoutSweeper",
]
