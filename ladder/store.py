"""
ladder/store.py - SQLite storage for the ladder.

One LadderDB per process, backed by a single SQLite file (or :memory: for
tests). The registries and the challenge ledger all share it.

Every engine operation that reads, validates and then writes runs inside
transaction(): a process-wide re-entrant lock plus BEGIN IMMEDIATE, so two
callers can never both observe a challenge as open and both resolve it.
SQLite errors surface as StoreUnavailableError so callers can tell them
apart from business rejections.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from ladder.errors import StoreUnavailableError
from ladder.models import ensure_utc

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS teams (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    captain_id TEXT NOT NULL,
    retired INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS team_members (
    team_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    username TEXT NOT NULL,
    role TEXT,
    is_captain INTEGER DEFAULT 0,
    position INTEGER NOT NULL,
    PRIMARY KEY (team_id, user_id)
);

CREATE TABLE IF NOT EXISTS tournaments (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    game TEXT NOT NULL,
    format TEXT NOT NULL,
    max_tiers INTEGER NOT NULL,
    tier_limits TEXT NOT NULL,
    challenge_timeframe_days INTEGER NOT NULL,
    protection_days_after_defense INTEGER NOT NULL,
    max_challenges_per_month INTEGER NOT NULL,
    min_required_date_options INTEGER NOT NULL,
    grace_period_days INTEGER,
    status TEXT DEFAULT 'upcoming',
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS standings (
    id TEXT PRIMARY KEY,
    team_id TEXT NOT NULL,
    tournament_id TEXT NOT NULL,
    tier INTEGER NOT NULL,
    prestige INTEGER DEFAULT 0,
    wins INTEGER DEFAULT 0,
    losses INTEGER DEFAULT 0,
    win_streak INTEGER DEFAULT 0,
    protected_until TEXT,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE (team_id, tournament_id)
);

CREATE TABLE IF NOT EXISTS challenges (
    id TEXT PRIMARY KEY,
    tournament_id TEXT NOT NULL,
    challenger_id TEXT NOT NULL,
    defender_id TEXT NOT NULL,
    status TEXT DEFAULT 'pending',
    cast_demand INTEGER DEFAULT 0,
    tier_before_challenger INTEGER NOT NULL,
    tier_before_defender INTEGER NOT NULL,
    proposed_dates TEXT,
    scheduled_date TEXT,
    result TEXT,
    tier_after_challenger INTEGER,
    tier_after_defender INTEGER,
    prestige_challenger INTEGER,
    prestige_defender INTEGER,
    forfeited_by TEXT,
    unfair_forfeit INTEGER DEFAULT 0,
    forfeit_reason TEXT,
    forfeit_penalty INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_challenges_status ON challenges (tournament_id, status);
CREATE INDEX IF NOT EXISTS idx_challenges_challenger ON challenges (challenger_id, created_at);
CREATE INDEX IF NOT EXISTS idx_challenges_defender ON challenges (defender_id);
"""


class LadderDB:
    """Thin wrapper around SQLite with an explicit transaction boundary."""

    def __init__(self, path: str = "ladder.db"):
        self.path = path
        self._lock = threading.RLock()
        self._depth = 0
        try:
            # isolation_level=None: we issue BEGIN/COMMIT ourselves
            self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open ladder database {path}: {e}") from e

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["LadderDB"]:
        """Run a block atomically. Nested calls join the outer transaction."""
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Cannot start transaction: {e}") from e

            self._depth = 1
            try:
                yield self
            except BaseException:
                self._depth = 0
                self._rollback()
                raise
            self._depth = 0
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StoreUnavailableError(f"Commit failed: {e}") from e

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning(f"Rollback failed: {e}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: tuple | dict = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Query failed: {e}") from e

    def fetchone(self, sql: str, params: tuple | dict = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self.execute(sql, params).fetchone()
        return dict(row) if row else None

    def fetchall(self, sql: str, params: tuple | dict = ()) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


# ============================================================================
# Column helpers
# ============================================================================


def to_db_time(value: datetime | None) -> str | None:
    """Fixed-width ISO timestamp in UTC, so string comparison orders correctly."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def to_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def from_json(value: str | None) -> Any:
    if value is None:
        return None
    return json.loads(value)
