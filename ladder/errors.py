"""
ladder/errors.py - Rejection reasons and exception types

Two kinds of failure, never mixed:

  - Rejection: an expected business-rule violation (wrong tier, protected
    defender, ...). Returned as a value from every engine operation so the
    caller can render a precise message.
  - Exceptions: misuse of the registries (unknown team, broken roster) and
    infrastructure trouble. StoreUnavailableError is transient and callers
    may retry it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Reason(str, Enum):
    """Closed set of reasons an engine operation can be rejected."""

    TOURNAMENT_NOT_FOUND = "tournament_not_found"
    TOURNAMENT_NOT_ACTIVE = "tournament_not_active"
    STANDING_NOT_FOUND = "standing_not_found"
    CHALLENGE_NOT_FOUND = "challenge_not_found"
    SELF_CHALLENGE = "self_challenge"
    INVALID_TIER_RELATIONSHIP = "invalid_tier_relationship"
    DEFENDER_PROTECTED = "defender_protected"
    DUPLICATE_CHALLENGE = "duplicate_challenge"
    MONTHLY_LIMIT_EXCEEDED = "monthly_limit_exceeded"
    INVALID_STATUS_FOR_OPERATION = "invalid_status_for_operation"
    INSUFFICIENT_DATE_OPTIONS = "insufficient_date_options"
    DATE_NOT_IN_FUTURE = "date_not_in_future"
    SCHEDULED_DATE_NOT_AMONG_PROPOSED = "scheduled_date_not_among_proposed"
    SCHEDULED_DATE_IN_FUTURE = "scheduled_date_in_future"
    WINNER_NOT_PARTICIPANT = "winner_not_participant"
    SCORE_FORMAT_INVALID = "score_format_invalid"
    CHALLENGE_ALREADY_TERMINAL = "challenge_already_terminal"


NOT_FOUND_REASONS = frozenset(
    {
        Reason.TOURNAMENT_NOT_FOUND,
        Reason.STANDING_NOT_FOUND,
        Reason.CHALLENGE_NOT_FOUND,
    }
)


@dataclass(frozen=True)
class Rejection:
    """Why an operation was refused, plus whatever the caller needs to explain it.

    context examples: {"challenge_id": ...} on DUPLICATE_CHALLENGE,
    {"protected_until": ...} on DEFENDER_PROTECTED.
    """

    reason: Reason
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason.value, "message": self.message, "context": dict(self.context)}


# ============================================================================
# Exceptions
# ============================================================================


class LadderError(Exception):
    """Base class for ladder exceptions."""


class StoreUnavailableError(LadderError):
    """The backing store could not be reached or is locked. Safe to retry."""


class TeamNotFoundError(LadderError, KeyError):
    """Raised when a team id is not in the registry."""


class TournamentNotFoundError(LadderError, KeyError):
    """Raised when a tournament id is not in the registry."""


class StandingNotFoundError(LadderError, KeyError):
    """Raised when a standing id is unknown."""


class RosterError(LadderError, ValueError):
    """Raised when a roster change would break a team invariant."""


class TournamentConfigError(LadderError, ValueError):
    """Raised for invalid tournament configuration or lifecycle changes."""
