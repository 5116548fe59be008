"""
ladder/registry.py - Team and tournament registries

TeamRegistry owns team identity and rosters. TournamentRegistry owns
tournament configuration and each team's per-tournament standing.

Both raise exceptions for misuse (unknown ids, roster changes that would
break an invariant). Ladder rules themselves live in the engine; these
classes only guard their own data.
"""

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Callable

from ladder.errors import (
    RosterError,
    StandingNotFoundError,
    TeamNotFoundError,
    TournamentConfigError,
    TournamentNotFoundError,
)
from ladder.models import (
    OPEN_STATUSES,
    TOURNAMENT_STATUS_ORDER,
    MatchFormat,
    Role,
    Standing,
    Team,
    TeamMember,
    Tournament,
    TournamentRules,
    TournamentStatus,
    utcnow,
)
from ladder.store import LadderDB, from_db_time, from_json, to_db_time, to_json

logger = logging.getLogger(__name__)


# ============================================================================
# Teams
# ============================================================================


class TeamRegistry:
    """Team identity and roster, stored in LadderDB."""

    def __init__(self, db: LadderDB, clock: Callable[[], datetime] = utcnow):
        self._db = db
        self._clock = clock

    def create_team(
        self,
        name: str,
        captain_id: str,
        captain_name: str,
        members: list[TeamMember] | None = None,
    ) -> Team:
        """Register a team. The captain is always the first roster entry.

        Raises:
            RosterError: captain already leads an active team, or a member
                is listed twice
        """
        roster = [TeamMember(user_id=captain_id, username=captain_name, is_captain=True)]
        for m in members or []:
            if any(r.user_id == m.user_id for r in roster):
                raise RosterError(f"User {m.user_id} listed twice")
            roster.append(TeamMember(user_id=m.user_id, username=m.username, role=m.role))

        team_id = str(uuid.uuid4())
        now = to_db_time(self._clock())
        with self._db.transaction():
            if self.find_team_by_captain(captain_id) is not None:
                raise RosterError(f"User {captain_id} already captains a team")
            self._db.execute(
                "INSERT INTO teams (id, name, captain_id, retired, created_at, updated_at) "
                "VALUES (?, ?, ?, 0, ?, ?)",
                (team_id, name, captain_id, now, now),
            )
            for position, member in enumerate(roster):
                self._insert_member(team_id, member, position)

        logger.info(f"Created team {name} ({team_id}) with captain {captain_id}")
        return self.get_team_by_id(team_id)

    def get_team_by_id(self, team_id: str) -> Team | None:
        row = self._db.fetchone("SELECT * FROM teams WHERE id = ?", (team_id,))
        if row is None:
            return None
        return Team(
            team_id=row["id"],
            name=row["name"],
            captain_id=row["captain_id"],
            members=self.get_team_members(team_id),
            retired=bool(row["retired"]),
            created_at=from_db_time(row["created_at"]),
        )

    def get_team_members(self, team_id: str) -> list[TeamMember]:
        rows = self._db.fetchall(
            "SELECT * FROM team_members WHERE team_id = ? ORDER BY position ASC", (team_id,)
        )
        return [
            TeamMember(
                user_id=r["user_id"],
                username=r["username"],
                role=Role(r["role"]) if r["role"] else None,
                is_captain=bool(r["is_captain"]),
            )
            for r in rows
        ]

    def is_captain(self, team_id: str, user_id: str) -> bool:
        row = self._db.fetchone(
            "SELECT captain_id FROM teams WHERE id = ? AND retired = 0", (team_id,)
        )
        return row is not None and row["captain_id"] == user_id

    def find_team_by_captain(self, user_id: str) -> Team | None:
        row = self._db.fetchone(
            "SELECT id FROM teams WHERE captain_id = ? AND retired = 0", (user_id,)
        )
        return self.get_team_by_id(row["id"]) if row else None

    # ------------------------------------------------------------------
    # Roster changes
    # ------------------------------------------------------------------

    def add_member(
        self, team_id: str, user_id: str, username: str, role: Role | None = None
    ) -> Team:
        with self._db.transaction():
            team = self._require(team_id)
            if team.member(user_id) is not None:
                raise RosterError(f"User {user_id} is already on team {team.name}")
            self._insert_member(team_id, TeamMember(user_id, username, role), self._next_position(team_id))
            self._touch(team_id)
        logger.info(f"Added {username} ({user_id}) to team {team.name}")
        return self.get_team_by_id(team_id)

    def remove_member(self, team_id: str, user_id: str) -> Team:
        """Remove a non-captain member. The captain must transfer first."""
        with self._db.transaction():
            team = self._require(team_id)
            member = team.member(user_id)
            if member is None:
                raise RosterError(f"User {user_id} is not on team {team.name}")
            if member.is_captain:
                raise RosterError("Transfer the captaincy before removing the captain")
            if len(team.members) <= 1:
                raise RosterError("A team cannot be left without members")
            self._db.execute(
                "DELETE FROM team_members WHERE team_id = ? AND user_id = ?", (team_id, user_id)
            )
            self._touch(team_id)
        logger.info(f"Removed {user_id} from team {team.name}")
        return self.get_team_by_id(team_id)

    def update_member_role(self, team_id: str, user_id: str, role: Role | None) -> Team:
        with self._db.transaction():
            team = self._require(team_id)
            if team.member(user_id) is None:
                raise RosterError(f"User {user_id} is not on team {team.name}")
            self._db.execute(
                "UPDATE team_members SET role = ? WHERE team_id = ? AND user_id = ?",
                (role.value if role else None, team_id, user_id),
            )
            self._touch(team_id)
        return self.get_team_by_id(team_id)

    def transfer_captain(self, team_id: str, new_captain_id: str) -> Team:
        """Move the captain flag to another existing member."""
        with self._db.transaction():
            team = self._require(team_id)
            if team.member(new_captain_id) is None:
                raise RosterError(f"User {new_captain_id} is not on team {team.name}")
            if team.captain_id == new_captain_id:
                return team
            if self.find_team_by_captain(new_captain_id) is not None:
                raise RosterError(f"User {new_captain_id} already captains a team")
            self._db.execute("UPDATE team_members SET is_captain = 0 WHERE team_id = ?", (team_id,))
            self._db.execute(
                "UPDATE team_members SET is_captain = 1 WHERE team_id = ? AND user_id = ?",
                (team_id, new_captain_id),
            )
            self._db.execute(
                "UPDATE teams SET captain_id = ?, updated_at = ? WHERE id = ?",
                (new_captain_id, to_db_time(self._clock()), team_id),
            )
        logger.info(f"Team {team.name}: captaincy {team.captain_id} -> {new_captain_id}")
        return self.get_team_by_id(team_id)

    def retire_team(self, team_id: str) -> Team:
        """Soft-delete. Standings keep referencing the team."""
        with self._db.transaction():
            team = self._require(team_id)
            self._db.execute(
                "UPDATE teams SET retired = 1, updated_at = ? WHERE id = ?",
                (to_db_time(self._clock()), team_id),
            )
        logger.info(f"Retired team {team.name} ({team_id})")
        return self.get_team_by_id(team_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, team_id: str) -> Team:
        team = self.get_team_by_id(team_id)
        if team is None:
            raise TeamNotFoundError(team_id)
        return team

    def _insert_member(self, team_id: str, member: TeamMember, position: int) -> None:
        self._db.execute(
            "INSERT INTO team_members (team_id, user_id, username, role, is_captain, position) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                team_id,
                member.user_id,
                member.username,
                member.role.value if member.role else None,
                int(member.is_captain),
                position,
            ),
        )

    def _next_position(self, team_id: str) -> int:
        row = self._db.fetchone(
            "SELECT COALESCE(MAX(position), -1) + 1 AS pos FROM team_members WHERE team_id = ?",
            (team_id,),
        )
        return row["pos"]

    def _touch(self, team_id: str) -> None:
        self._db.execute(
            "UPDATE teams SET updated_at = ? WHERE id = ?", (to_db_time(self._clock()), team_id)
        )


# ============================================================================
# Tournaments
# ============================================================================


class TournamentRegistry:
    """Tournament configuration and standings, stored in LadderDB."""

    def __init__(
        self,
        db: LadderDB,
        teams: TeamRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db
        self._clock = clock
        self._teams = teams or TeamRegistry(db, clock)

    def create_tournament(
        self,
        name: str,
        game: str,
        format: MatchFormat,
        max_tiers: int,
        tier_limits: list[int],
        rules: TournamentRules | None = None,
    ) -> Tournament:
        """Create a tournament in the upcoming state.

        Raises:
            TournamentConfigError: tier_limits doesn't cover every tier, or
                a rule value is out of range
        """
        rules = rules or TournamentRules()
        _validate_config(max_tiers, tier_limits, rules)

        tournament_id = str(uuid.uuid4())
        now = to_db_time(self._clock())
        self._db.execute(
            "INSERT INTO tournaments (id, name, game, format, max_tiers, tier_limits, "
            "challenge_timeframe_days, protection_days_after_defense, max_challenges_per_month, "
            "min_required_date_options, grace_period_days, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                tournament_id,
                name,
                game,
                MatchFormat(format).value,
                max_tiers,
                to_json(list(tier_limits)),
                rules.challenge_timeframe_days,
                rules.protection_days_after_defense,
                rules.max_challenges_per_month,
                rules.min_required_date_options,
                rules.grace_period_days,
                TournamentStatus.UPCOMING.value,
                now,
                now,
            ),
        )
        logger.info(
            f"Created tournament {name} ({tournament_id}): "
            f"{max_tiers} tiers, {MatchFormat(format).value}"
        )
        return self.get_tournament(tournament_id)

    def get_tournament(self, tournament_id: str) -> Tournament | None:
        row = self._db.fetchone("SELECT * FROM tournaments WHERE id = ?", (tournament_id,))
        return _tournament_from_row(row) if row else None

    def list_tournaments(self, status: TournamentStatus | None = None) -> list[Tournament]:
        if status is None:
            rows = self._db.fetchall("SELECT * FROM tournaments ORDER BY created_at ASC, rowid ASC")
        else:
            rows = self._db.fetchall(
                "SELECT * FROM tournaments WHERE status = ? ORDER BY created_at ASC, rowid ASC",
                (TournamentStatus(status).value,),
            )
        return [_tournament_from_row(r) for r in rows]

    def set_status(self, tournament_id: str, status: TournamentStatus) -> Tournament:
        """Advance the lifecycle. upcoming -> active -> completed, never back."""
        status = TournamentStatus(status)
        with self._db.transaction():
            tournament = self._require(tournament_id)
            current = TOURNAMENT_STATUS_ORDER.index(tournament.status)
            target = TOURNAMENT_STATUS_ORDER.index(status)
            if target < current:
                raise TournamentConfigError(
                    f"Cannot move tournament from {tournament.status.value} to {status.value}"
                )
            if target == current:
                return tournament
            self._db.execute(
                "UPDATE tournaments SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, to_db_time(self._clock()), tournament_id),
            )
        logger.info(f"Tournament {tournament.name}: {tournament.status.value} -> {status.value}")
        return self.get_tournament(tournament_id)

    def update_rules(self, tournament_id: str, rules: TournamentRules) -> Tournament:
        """Replace the rules block. Only allowed before any team has joined."""
        with self._db.transaction():
            tournament = self._require(tournament_id)
            if self.list_standings(tournament_id):
                raise TournamentConfigError("Tournament configuration is frozen once teams have joined")
            _validate_config(tournament.max_tiers, tournament.tier_limits, rules)
            self._db.execute(
                "UPDATE tournaments SET challenge_timeframe_days = ?, "
                "protection_days_after_defense = ?, max_challenges_per_month = ?, "
                "min_required_date_options = ?, grace_period_days = ?, updated_at = ? WHERE id = ?",
                (
                    rules.challenge_timeframe_days,
                    rules.protection_days_after_defense,
                    rules.max_challenges_per_month,
                    rules.min_required_date_options,
                    rules.grace_period_days,
                    to_db_time(self._clock()),
                    tournament_id,
                ),
            )
        return self.get_tournament(tournament_id)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add_team(self, team_id: str, tournament_id: str, initial_tier: int | None = None) -> Standing:
        """Enter a team into a tournament, at the bottom tier unless told otherwise.

        Raises:
            TeamNotFoundError / TournamentNotFoundError: unknown ids
            TournamentConfigError: already entered, tier out of range,
                tier full, or tournament completed
        """
        with self._db.transaction():
            team = self._teams.get_team_by_id(team_id)
            if team is None or team.retired:
                raise TeamNotFoundError(team_id)
            tournament = self._require(tournament_id)
            if tournament.status == TournamentStatus.COMPLETED:
                raise TournamentConfigError(f"Tournament {tournament.name} is completed")

            tier = tournament.bottom_tier if initial_tier is None else initial_tier
            if not 1 <= tier <= tournament.max_tiers:
                raise TournamentConfigError(f"Tier {tier} is outside 1..{tournament.max_tiers}")
            occupied = self._db.fetchone(
                "SELECT COUNT(*) AS n FROM standings WHERE tournament_id = ? AND tier = ?",
                (tournament_id, tier),
            )["n"]
            if occupied >= tournament.tier_limits[tier - 1]:
                raise TournamentConfigError(f"Tier {tier} is full ({occupied} teams)")

            standing_id = str(uuid.uuid4())
            now = to_db_time(self._clock())
            try:
                self._db.execute(
                    "INSERT INTO standings (id, team_id, tournament_id, tier, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (standing_id, team_id, tournament_id, tier, now, now),
                )
            except sqlite3.IntegrityError as e:
                raise TournamentConfigError(
                    f"Team {team.name} is already entered in {tournament.name}"
                ) from e

        logger.info(f"Added team {team.name} to tournament {tournament.name} at tier {tier}")
        return self.get_standing_by_id(standing_id)

    def remove_team(self, team_id: str, tournament_id: str) -> None:
        """Withdraw a team. Refused while it has open challenges."""
        with self._db.transaction():
            standing = self.get_standing(team_id, tournament_id)
            if standing is None:
                raise StandingNotFoundError(f"{team_id}@{tournament_id}")
            placeholders = ", ".join("?" for _ in OPEN_STATUSES)
            open_count = self._db.fetchone(
                "SELECT COUNT(*) AS n FROM challenges "
                f"WHERE (challenger_id = ? OR defender_id = ?) AND status IN ({placeholders})",
                (standing.standing_id, standing.standing_id, *(s.value for s in OPEN_STATUSES)),
            )["n"]
            if open_count:
                raise TournamentConfigError(
                    f"Team {team_id} has {open_count} open challenge(s) in this tournament"
                )
            self._db.execute("DELETE FROM standings WHERE id = ?", (standing.standing_id,))
        logger.info(f"Removed team {team_id} from tournament {tournament_id}")

    # ------------------------------------------------------------------
    # Standings
    # ------------------------------------------------------------------

    def get_standing(self, team_id: str, tournament_id: str) -> Standing | None:
        row = self._db.fetchone(
            "SELECT * FROM standings WHERE team_id = ? AND tournament_id = ?",
            (team_id, tournament_id),
        )
        return _standing_from_row(row) if row else None

    def get_standing_by_id(self, standing_id: str) -> Standing | None:
        row = self._db.fetchone("SELECT * FROM standings WHERE id = ?", (standing_id,))
        return _standing_from_row(row) if row else None

    def list_standings(self, tournament_id: str) -> list[Standing]:
        """Ladder order: best tier first, then highest prestige."""
        rows = self._db.fetchall(
            "SELECT * FROM standings WHERE tournament_id = ? "
            "ORDER BY tier ASC, prestige DESC, created_at ASC, rowid ASC",
            (tournament_id,),
        )
        return [_standing_from_row(r) for r in rows]

    def list_standings_for_team(self, team_id: str) -> list[Standing]:
        rows = self._db.fetchall("SELECT * FROM standings WHERE team_id = ?", (team_id,))
        return [_standing_from_row(r) for r in rows]

    def update_standing(
        self,
        standing_id: str,
        *,
        tier: int | None = None,
        prestige_delta: int = 0,
        wins_delta: int = 0,
        losses_delta: int = 0,
        win_streak: int | None = None,
        protected_until: datetime | None = None,
    ) -> Standing:
        """Apply a resolution's effects to one standing.

        Raises:
            StandingNotFoundError: unknown standing
            TournamentConfigError: tier outside [1, max_tiers]
        """
        with self._db.transaction():
            standing = self.get_standing_by_id(standing_id)
            if standing is None:
                raise StandingNotFoundError(standing_id)
            if tier is not None:
                tournament = self._require(standing.tournament_id)
                if not 1 <= tier <= tournament.max_tiers:
                    raise TournamentConfigError(
                        f"Tier {tier} is outside 1..{tournament.max_tiers}"
                    )
            self._db.execute(
                "UPDATE standings SET tier = ?, prestige = prestige + ?, wins = wins + ?, "
                "losses = losses + ?, win_streak = ?, protected_until = ?, updated_at = ? "
                "WHERE id = ?",
                (
                    tier if tier is not None else standing.tier,
                    prestige_delta,
                    wins_delta,
                    losses_delta,
                    win_streak if win_streak is not None else standing.win_streak,
                    to_db_time(protected_until or standing.protected_until),
                    to_db_time(self._clock()),
                    standing_id,
                ),
            )
        return self.get_standing_by_id(standing_id)

    def _require(self, tournament_id: str) -> Tournament:
        tournament = self.get_tournament(tournament_id)
        if tournament is None:
            raise TournamentNotFoundError(tournament_id)
        return tournament


# ============================================================================
# Row conversion
# ============================================================================


def _validate_config(max_tiers: int, tier_limits: list[int], rules: TournamentRules) -> None:
    if max_tiers < 1:
        raise TournamentConfigError("A tournament needs at least one tier")
    if len(tier_limits) != max_tiers:
        raise TournamentConfigError(
            f"tier_limits has {len(tier_limits)} entries, expected {max_tiers}"
        )
    if any(limit < 1 for limit in tier_limits):
        raise TournamentConfigError("Every tier must hold at least one team")
    if rules.challenge_timeframe_days < 1 or rules.min_required_date_options < 1:
        raise TournamentConfigError("Timeframe and date options must be positive")
    if rules.protection_days_after_defense < 0 or rules.max_challenges_per_month < 1:
        raise TournamentConfigError("Protection must be >= 0 and monthly limit >= 1")


def _tournament_from_row(row: dict) -> Tournament:
    return Tournament(
        tournament_id=row["id"],
        name=row["name"],
        game=row["game"],
        format=MatchFormat(row["format"]),
        max_tiers=row["max_tiers"],
        tier_limits=from_json(row["tier_limits"]),
        rules=TournamentRules(
            challenge_timeframe_days=row["challenge_timeframe_days"],
            protection_days_after_defense=row["protection_days_after_defense"],
            max_challenges_per_month=row["max_challenges_per_month"],
            min_required_date_options=row["min_required_date_options"],
            grace_period_days=row["grace_period_days"],
        ),
        status=TournamentStatus(row["status"]),
        created_at=from_db_time(row["created_at"]),
    )


def _standing_from_row(row: dict) -> Standing:
    return Standing(
        standing_id=row["id"],
        team_id=row["team_id"],
        tournament_id=row["tournament_id"],
        tier=row["tier"],
        prestige=row["prestige"],
        wins=row["wins"],
        losses=row["losses"],
        win_streak=row["win_streak"],
        protected_until=from_db_time(row["protected_until"]),
    )
