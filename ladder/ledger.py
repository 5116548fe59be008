"""
ladder/ledger.py - Challenge storage and lookups

Challenges are never deleted, only moved to a terminal status. The ledger
does no validation; ChallengeEngine is its only writer.
"""

import logging
from datetime import datetime
from typing import Iterable

from ladder.models import (
    Challenge,
    ChallengeResult,
    ChallengeStatus,
    ForfeitReason,
    GameResult,
    TierPair,
)
from ladder.store import LadderDB, from_db_time, from_json, to_db_time, to_json

logger = logging.getLogger(__name__)


class ChallengeLedger:
    """Challenge rows in LadderDB, converted to and from Challenge."""

    def __init__(self, db: LadderDB):
        self._db = db

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, challenge: Challenge) -> Challenge:
        row = _to_row(challenge)
        columns = ", ".join(row)
        placeholders = ", ".join(f":{k}" for k in row)
        self._db.execute(f"INSERT INTO challenges ({columns}) VALUES ({placeholders})", row)
        logger.debug(f"Inserted challenge {challenge.challenge_id}")
        return challenge

    def update(self, challenge: Challenge) -> Challenge:
        row = _to_row(challenge)
        assignments = ", ".join(f"{k} = :{k}" for k in row if k != "id")
        self._db.execute(f"UPDATE challenges SET {assignments} WHERE id = :id", row)
        return challenge

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_id(self, challenge_id: str) -> Challenge | None:
        row = self._db.fetchone("SELECT * FROM challenges WHERE id = ?", (challenge_id,))
        return _from_row(row) if row else None

    def find_by_participant(
        self, standing_id: str, statuses: Iterable[ChallengeStatus] | None = None
    ) -> list[Challenge]:
        """Challenges where the standing is challenger or defender, oldest first."""
        sql = "SELECT * FROM challenges WHERE (challenger_id = ? OR defender_id = ?)"
        params: list = [standing_id, standing_id]
        sql, params = _with_statuses(sql, params, statuses)
        rows = self._db.fetchall(sql + " ORDER BY created_at ASC, rowid ASC", tuple(params))
        return [_from_row(r) for r in rows]

    def find_by_status(
        self, tournament_id: str, statuses: Iterable[ChallengeStatus]
    ) -> list[Challenge]:
        sql = "SELECT * FROM challenges WHERE tournament_id = ?"
        sql, params = _with_statuses(sql, [tournament_id], statuses)
        rows = self._db.fetchall(sql + " ORDER BY created_at ASC, rowid ASC", tuple(params))
        return [_from_row(r) for r in rows]

    def find_open_between(self, challenger_id: str, defender_id: str) -> Challenge | None:
        """The pending/scheduled challenge for this ordered pair, if any."""
        row = self._db.fetchone(
            "SELECT * FROM challenges WHERE challenger_id = ? AND defender_id = ? "
            "AND status IN (?, ?) ORDER BY created_at ASC, rowid ASC LIMIT 1",
            (
                challenger_id,
                defender_id,
                ChallengeStatus.PENDING.value,
                ChallengeStatus.SCHEDULED.value,
            ),
        )
        return _from_row(row) if row else None

    def count_created_since(self, team_id: str, since: datetime) -> int:
        """Challenges issued by this team at or after `since`, any status.

        Counts across every tournament the team is entered in.
        """
        return self._db.fetchone(
            "SELECT COUNT(*) AS n FROM challenges c "
            "JOIN standings s ON s.id = c.challenger_id "
            "WHERE s.team_id = ? AND c.created_at >= ?",
            (team_id, to_db_time(since)),
        )["n"]


# ============================================================================
# Row conversion
# ============================================================================


def _with_statuses(
    sql: str, params: list, statuses: Iterable[ChallengeStatus] | None
) -> tuple[str, list]:
    if statuses is None:
        return sql, params
    values = [ChallengeStatus(s).value for s in statuses]
    if not values:
        return sql + " AND 0", params
    return sql + f" AND status IN ({', '.join('?' for _ in values)})", params + values


def _to_row(c: Challenge) -> dict:
    result = None
    if c.result is not None:
        result = {
            "winner": c.result.winner,
            "score": c.result.score,
            "games": [
                {"winner": g.winner, "loser": g.loser, "duration": g.duration}
                for g in c.result.games
            ],
        }
    return {
        "id": c.challenge_id,
        "tournament_id": c.tournament_id,
        "challenger_id": c.challenger_id,
        "defender_id": c.defender_id,
        "status": c.status.value,
        "cast_demand": int(c.cast_demand),
        "tier_before_challenger": c.tier_before.challenger,
        "tier_before_defender": c.tier_before.defender,
        "proposed_dates": to_json([to_db_time(d) for d in c.proposed_dates]),
        "scheduled_date": to_db_time(c.scheduled_date),
        "result": to_json(result),
        "tier_after_challenger": c.tier_after.challenger if c.tier_after else None,
        "tier_after_defender": c.tier_after.defender if c.tier_after else None,
        "prestige_challenger": c.prestige_awarded.challenger if c.prestige_awarded else None,
        "prestige_defender": c.prestige_awarded.defender if c.prestige_awarded else None,
        "forfeited_by": c.forfeited_by,
        "unfair_forfeit": int(c.unfair_forfeit),
        "forfeit_reason": c.forfeit_reason.value if c.forfeit_reason else None,
        "forfeit_penalty": c.forfeit_penalty,
        "created_at": to_db_time(c.created_at),
        "updated_at": to_db_time(c.updated_at),
    }


def _from_row(row: dict) -> Challenge:
    result = None
    raw = from_json(row["result"])
    if raw is not None:
        result = ChallengeResult(
            winner=raw["winner"],
            score=raw["score"],
            games=[GameResult(g["winner"], g["loser"], g.get("duration")) for g in raw["games"]],
        )

    tier_after = None
    if row["tier_after_challenger"] is not None:
        tier_after = TierPair(row["tier_after_challenger"], row["tier_after_defender"])

    prestige = None
    if row["prestige_challenger"] is not None:
        prestige = TierPair(row["prestige_challenger"], row["prestige_defender"])

    return Challenge(
        challenge_id=row["id"],
        tournament_id=row["tournament_id"],
        challenger_id=row["challenger_id"],
        defender_id=row["defender_id"],
        tier_before=TierPair(row["tier_before_challenger"], row["tier_before_defender"]),
        status=ChallengeStatus(row["status"]),
        cast_demand=bool(row["cast_demand"]),
        proposed_dates=[from_db_time(d) for d in from_json(row["proposed_dates"]) or []],
        scheduled_date=from_db_time(row["scheduled_date"]),
        result=result,
        tier_after=tier_after,
        prestige_awarded=prestige,
        forfeited_by=row["forfeited_by"],
        unfair_forfeit=bool(row["unfair_forfeit"]),
        forfeit_reason=ForfeitReason(row["forfeit_reason"]) if row["forfeit_reason"] else None,
        forfeit_penalty=row["forfeit_penalty"] or 0,
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )
