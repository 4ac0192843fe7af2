"""
Entitlement Store
-----------------
One SQLite row per Discord member holding trial/paid bookkeeping.

Rows are never deleted: the table doubles as the ledger that stops a member from
getting a second free trial by leaving and re-joining.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple


def _to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _from_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)


def _role_id(value: Optional[str]) -> Optional[int]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class EntitlementRecord:
    member_id: int
    trial_used: bool = False
    trial_expires_at: Optional[datetime] = None
    gate_role_id: Optional[int] = None
    paid: bool = False
    last_join_at: Optional[datetime] = None


class EntitlementStore:
    """SQLite-backed per-member entitlement records.

    Every write is a single upsert statement committed in its own transaction, so a
    reader never observes a half-written record (e.g. trial_used=1 with no expiry).
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    discord_user_id TEXT PRIMARY KEY,
                    trial_used INTEGER DEFAULT 0,
                    trial_expires_at INTEGER,
                    gate_role_id TEXT,
                    paid INTEGER DEFAULT 0,
                    last_join_at INTEGER
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_trial_expires ON users(trial_expires_at)")

    def close(self) -> None:
        self._conn.close()

    def _write(self, sql: str, params: tuple) -> None:
        with self._conn:
            self._conn.execute(sql, params)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> EntitlementRecord:
        return EntitlementRecord(
            member_id=int(row["discord_user_id"]),
            trial_used=bool(row["trial_used"]),
            trial_expires_at=_from_ms(row["trial_expires_at"]),
            gate_role_id=_role_id(row["gate_role_id"]),
            paid=bool(row["paid"]),
            last_join_at=_from_ms(row["last_join_at"]),
        )

    def get(self, member_id: int) -> Optional[EntitlementRecord]:
        row = self._conn.execute(
            "SELECT * FROM users WHERE discord_user_id=?", (str(member_id),)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def upsert_join(self, member_id: int, at: datetime) -> None:
        self._write(
            """
            INSERT INTO users (discord_user_id, last_join_at)
            VALUES (?, ?)
            ON CONFLICT(discord_user_id) DO UPDATE SET last_join_at=excluded.last_join_at
            """,
            (str(member_id), _to_ms(at)),
        )

    def start_trial(self, member_id: int, expires_at: datetime, gate_role_id: int, at: datetime) -> None:
        self._write(
            """
            INSERT INTO users (discord_user_id, trial_used, trial_expires_at, gate_role_id, last_join_at)
            VALUES (?, 1, ?, ?, ?)
            ON CONFLICT(discord_user_id) DO UPDATE SET
                trial_used=1,
                trial_expires_at=excluded.trial_expires_at,
                gate_role_id=excluded.gate_role_id,
                last_join_at=excluded.last_join_at
            """,
            (str(member_id), _to_ms(expires_at), str(gate_role_id), _to_ms(at)),
        )

    def clear_trial_expiry(self, member_id: int) -> None:
        """Clear only the expiry timestamp (first step of expiry handling)."""
        self._write(
            """
            INSERT INTO users (discord_user_id) VALUES (?)
            ON CONFLICT(discord_user_id) DO UPDATE SET trial_expires_at=NULL
            """,
            (str(member_id),),
        )

    def clear_trial(self, member_id: int) -> None:
        """Clear expiry and the recorded trial gate role together."""
        self._write(
            """
            INSERT INTO users (discord_user_id) VALUES (?)
            ON CONFLICT(discord_user_id) DO UPDATE SET trial_expires_at=NULL, gate_role_id=NULL
            """,
            (str(member_id),),
        )

    def restore_trial_expiry(self, member_id: int, expires_at: datetime) -> None:
        """Put an expiry back when the expiry pass stopped before touching any role."""
        self._write(
            """
            INSERT INTO users (discord_user_id, trial_expires_at) VALUES (?, ?)
            ON CONFLICT(discord_user_id) DO UPDATE SET trial_expires_at=excluded.trial_expires_at
            """,
            (str(member_id), _to_ms(expires_at)),
        )

    def set_paid(self, member_id: int, paid: bool) -> None:
        # Either direction ends any trial: paid supersedes it, unpaid lands in no-access.
        self._write(
            """
            INSERT INTO users (discord_user_id, paid) VALUES (?, ?)
            ON CONFLICT(discord_user_id) DO UPDATE SET
                paid=excluded.paid,
                trial_expires_at=NULL,
                gate_role_id=NULL
            """,
            (str(member_id), 1 if paid else 0),
        )

    def list_expired_trials(self, now: datetime) -> List[Tuple[int, Optional[int]]]:
        rows = self._conn.execute(
            """
            SELECT discord_user_id, gate_role_id FROM users
            WHERE trial_expires_at IS NOT NULL AND trial_expires_at <= ?
            ORDER BY trial_expires_at
            """,
            (_to_ms(now),),
        ).fetchall()
        return [(int(r["discord_user_id"]), _role_id(r["gate_role_id"])) for r in rows]

    def counts(self) -> Dict[str, int]:
        row = self._conn.execute(
            """
            SELECT
                COUNT(*) AS records,
                COALESCE(SUM(CASE WHEN trial_expires_at IS NOT NULL THEN 1 ELSE 0 END), 0) AS active_trials,
                COALESCE(SUM(CASE WHEN trial_used=1 THEN 1 ELSE 0 END), 0) AS trials_used,
                COALESCE(SUM(CASE WHEN paid=1 THEN 1 ELSE 0 END), 0) AS paid
            FROM users
            """
        ).fetchone()
        return {k: int(row[k]) for k in ("records", "active_trials", "trials_used", "paid")}
