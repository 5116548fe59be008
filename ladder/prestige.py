"""
ladder/prestige.py - Scoring rules for resolved challenges

Pure functions, no state. Given who won and the two pre-match tiers, decide
the prestige each side earns, the tiers after the match, and (for forfeits)
the scoreline and the penalty.

Prestige table (C = challenger tier, D = defender tier, lower is better):

    C == D   challenger win 6/2    defender win 2/6
    C <  D   challenger win 4/3    defender win 1/10
    C >  D   challenger win 10/1   defender win 3/4

Normal creation only allows C == D or C == D + 1; the C < D row covers
challenges whose tiers shifted after creation.
"""

from dataclasses import dataclass

from ladder.models import ForfeitReason, GameResult, MatchFormat, TierPair


# ============================================================================
# Prestige
# ============================================================================

SAME_TIER_POINTS = {True: TierPair(6, 2), False: TierPair(2, 6)}
CHALLENGER_ABOVE_POINTS = {True: TierPair(4, 3), False: TierPair(1, 10)}
CHALLENGER_BELOW_POINTS = {True: TierPair(10, 1), False: TierPair(3, 4)}


def calculate_prestige(
    challenger_won: bool, challenger_tier: int, defender_tier: int
) -> TierPair:
    """Prestige earned by (challenger, defender) for one match."""
    if challenger_tier == defender_tier:
        table = SAME_TIER_POINTS
    elif challenger_tier < defender_tier:
        table = CHALLENGER_ABOVE_POINTS
    else:
        table = CHALLENGER_BELOW_POINTS
    return table[challenger_won]


def tiers_after(challenger_won: bool, tier_before: TierPair) -> TierPair:
    """Challenger win swaps the two tiers; defender win leaves them alone."""
    if challenger_won:
        return TierPair(challenger=tier_before.defender, defender=tier_before.challenger)
    return tier_before


# ============================================================================
# Forfeits
# ============================================================================


@dataclass(frozen=True)
class PenaltySchedule:
    """Points taken from the forfeiting side of an unfair forfeit."""

    unfair: int = 10
    no_show: int = 15
    gave_up: int = 20

    def penalty_for(self, unfair: bool, reason: ForfeitReason | None) -> int:
        if reason == ForfeitReason.NO_SHOW:
            return self.no_show
        if reason == ForfeitReason.GAVE_UP:
            return self.gave_up
        if unfair:
            return self.unfair
        return 0


def forfeit_result(
    fmt: MatchFormat, winner_id: str, forfeiter_id: str
) -> tuple[str, list[GameResult]]:
    """Full-format win for the non-forfeiting side: e.g. "2-0" for Bo3."""
    wins = fmt.wins_needed
    games = [GameResult(winner=winner_id, loser=forfeiter_id, duration=0) for _ in range(wins)]
    return f"{wins}-0", games


# ============================================================================
# Score validation
# ============================================================================


def parse_score(score: str) -> tuple[int, int] | None:
    """Parse "W-L" into (winner_games, loser_games). None if malformed."""
    parts = score.strip().split("-")
    if len(parts) != 2:
        return None
    try:
        won, lost = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    return won, lost


def validate_score(
    fmt: MatchFormat,
    score: str,
    winner_id: str,
    loser_id: str,
    games: list[GameResult],
) -> str | None:
    """Check a scoreline against best-of-N arithmetic.

    Returns an error message, or None if the score is consistent.
    """
    parsed = parse_score(score)
    if parsed is None:
        return f"Score '{score}' is not in W-L form"

    won, lost = parsed
    if won != fmt.wins_needed:
        return f"Winner must take exactly {fmt.wins_needed} games in {fmt.value}, got {won}"
    if lost < 0 or lost >= won:
        return f"Loser games must be between 0 and {won - 1}, got {lost}"

    if games:
        if len(games) != won + lost:
            return f"Score {score} implies {won + lost} games, {len(games)} reported"
        players = {winner_id, loser_id}
        for n, g in enumerate(games, start=1):
            if {g.winner, g.loser} != players:
                return f"Game {n} was not played between the two challenge teams"
        taken = sum(1 for g in games if g.winner == winner_id)
        if taken != won:
            return f"Winner took {taken} of the reported games, score says {won}"

    return None
