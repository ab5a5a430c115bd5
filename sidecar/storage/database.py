"""SQLite database for style edits, profiles, seed letters and aggregates."""

from __future__ import annotations

import json
import os
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import platformdirs


def _now() -> str:
    """Return current UTC time as ISO 8601 string (sortable as text)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


_SCHEMA = """
CREATE TABLE IF NOT EXISTS style_edits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    letter_id TEXT NOT NULL,
    subspecialty TEXT NOT NULL,
    section_type TEXT,
    edit_type TEXT NOT NULL,
    before_text TEXT NOT NULL DEFAULT '',
    after_text TEXT NOT NULL DEFAULT '',
    character_changes INTEGER NOT NULL DEFAULT 0,
    word_changes INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_style_edits_user_sub ON style_edits(user_id, subspecialty, created_at);
CREATE INDEX IF NOT EXISTS idx_style_edits_sub_created ON style_edits(subspecialty, created_at);

CREATE TABLE IF NOT EXISTS style_profiles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    subspecialty TEXT NOT NULL,
    preferences TEXT NOT NULL DEFAULT '{}',
    confidence TEXT NOT NULL DEFAULT '{}',
    learning_strength REAL NOT NULL DEFAULT 1.0,
    total_edits_analyzed INTEGER NOT NULL DEFAULT 0,
    last_analyzed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(user_id, subspecialty)
);

CREATE TABLE IF NOT EXISTS global_style_profiles (
    user_id TEXT PRIMARY KEY,
    profile TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS style_seed_letters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    subspecialty TEXT NOT NULL,
    letter_text TEXT NOT NULL,
    analyzed_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_seed_letters_user ON style_seed_letters(user_id, subspecialty);

CREATE TABLE IF NOT EXISTS style_aggregates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subspecialty TEXT NOT NULL,
    period TEXT NOT NULL,
    common_additions TEXT NOT NULL DEFAULT '[]',
    common_deletions TEXT NOT NULL DEFAULT '[]',
    section_order_patterns TEXT NOT NULL DEFAULT '[]',
    phrasing_patterns TEXT NOT NULL DEFAULT '[]',
    sample_size INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE(subspecialty, period)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT,
    action TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    resource_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_log_user ON audit_log(user_id, created_at);
"""

_AGGREGATE_JSON_COLUMNS = (
    "common_additions",
    "common_deletions",
    "section_order_patterns",
    "phrasing_patterns",
)


def _get_db_path() -> str:
    """Return OS-appropriate path for the style database."""
    data_dir = platformdirs.user_data_dir("LetterStyle")
    os.makedirs(data_dir, exist_ok=True)
    return os.path.join(data_dir, "style.db")


def _decode_profile_row(row: sqlite3.Row) -> dict[str, Any]:
    result = dict(row)
    result["preferences"] = json.loads(result["preferences"] or "{}")
    result["confidence"] = json.loads(result["confidence"] or "{}")
    return result


def _decode_aggregate_row(row: sqlite3.Row) -> dict[str, Any]:
    result = dict(row)
    for col in _AGGREGATE_JSON_COLUMNS:
        result[col] = json.loads(result[col] or "[]")
    return result


class Database:
    """SQLite-backed storage for desktop mode (single clinician)."""

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = db_path or _get_db_path()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA)
            conn.commit()
            # Migrations for existing databases
            migrations = [
                "ALTER TABLE style_profiles ADD COLUMN learning_strength REAL NOT NULL DEFAULT 1.0",
                "ALTER TABLE style_seed_letters ADD COLUMN analyzed_at TEXT",
            ]
            for sql in migrations:
                try:
                    conn.execute(sql)
                    conn.commit()
                except sqlite3.OperationalError:
                    pass  # Column already exists
        finally:
            conn.close()

    # --- Style edits ---

    def insert_style_edit(
        self,
        user_id: str,
        letter_id: str,
        subspecialty: str,
        section_type: str | None,
        edit_type: str,
        before_text: str,
        after_text: str,
        character_changes: int,
        word_changes: int,
    ) -> dict[str, Any]:
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """INSERT INTO style_edits (user_id, letter_id, subspecialty, section_type, edit_type,
                   before_text, after_text, character_changes, word_changes, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    user_id, letter_id, subspecialty, section_type, edit_type,
                    before_text, after_text, character_changes, word_changes, _now(),
                ),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM style_edits WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return dict(row)
        finally:
            conn.close()

    def count_style_edits(
        self, user_id: str, subspecialty: str, since: str | None = None,
    ) -> int:
        """Count edits for a clinician, optionally only those created after *since*."""
        conn = self._get_conn()
        try:
            if since:
                row = conn.execute(
                    """SELECT COUNT(*) AS cnt FROM style_edits
                       WHERE user_id = ? AND subspecialty = ? AND created_at > ?""",
                    (user_id, subspecialty, since),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM style_edits WHERE user_id = ? AND subspecialty = ?",
                    (user_id, subspecialty),
                ).fetchone()
            return row["cnt"]
        finally:
            conn.close()

    def list_style_edits(
        self,
        user_id: str,
        subspecialty: str | None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Return edits newest first. ``subspecialty=None`` spans every subspecialty."""
        conn = self._get_conn()
        try:
            conditions = ["user_id = ?"]
            params: list[Any] = [user_id]
            if subspecialty:
                conditions.append("subspecialty = ?")
                params.append(subspecialty)
            if since:
                conditions.append("created_at > ?")
                params.append(since)
            params.append(limit)
            rows = conn.execute(
                f"""SELECT * FROM style_edits WHERE {' AND '.join(conditions)}
                    ORDER BY created_at DESC, id DESC LIMIT ?""",
                params,
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def list_style_edits_for_period(
        self, subspecialty: str, start: str, end: str,
    ) -> list[dict[str, Any]]:
        """All clinicians' edits for a subspecialty with start <= created_at < end."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT * FROM style_edits
                   WHERE subspecialty = ? AND created_at >= ? AND created_at < ?
                   ORDER BY created_at""",
                (subspecialty, start, end),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def get_edit_statistics(
        self, user_id: str, subspecialty: str, now: datetime | None = None,
    ) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        week_ago = _iso(current - timedelta(days=7))
        month_ago = _iso(current - timedelta(days=30))
        conn = self._get_conn()
        try:
            row = conn.execute(
                """SELECT COUNT(*) AS total,
                          SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END) AS last_7,
                          SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END) AS last_30,
                          MAX(created_at) AS last_edit_at
                   FROM style_edits WHERE user_id = ? AND subspecialty = ?""",
                (week_ago, month_ago, user_id, subspecialty),
            ).fetchone()
            return {
                "total_edits": row["total"] or 0,
                "edits_last_7_days": row["last_7"] or 0,
                "edits_last_30_days": row["last_30"] or 0,
                "last_edit_at": row["last_edit_at"],
            }
        finally:
            conn.close()

    # --- Style profiles ---

    def get_style_profile(self, user_id: str, subspecialty: str) -> dict[str, Any] | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM style_profiles WHERE user_id = ? AND subspecialty = ?",
                (user_id, subspecialty),
            ).fetchone()
            return _decode_profile_row(row) if row else None
        finally:
            conn.close()

    def list_style_profiles(self, user_id: str) -> list[dict[str, Any]]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM style_profiles WHERE user_id = ? ORDER BY subspecialty",
                (user_id,),
            ).fetchall()
            return [_decode_profile_row(r) for r in rows]
        finally:
            conn.close()

    def upsert_style_profile(
        self,
        user_id: str,
        subspecialty: str,
        preferences: dict[str, Any],
        confidence: dict[str, float],
        learning_strength: float,
        total_edits_analyzed: int,
        last_analyzed_at: str | None,
    ) -> dict[str, Any]:
        """Insert or update a profile. ``total_edits_analyzed`` never decreases."""
        conn = self._get_conn()
        try:
            now = _now()
            conn.execute(
                """INSERT INTO style_profiles (user_id, subspecialty, preferences, confidence,
                   learning_strength, total_edits_analyzed, last_analyzed_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(user_id, subspecialty) DO UPDATE SET
                   preferences = excluded.preferences,
                   confidence = excluded.confidence,
                   learning_strength = excluded.learning_strength,
                   total_edits_analyzed = MAX(style_profiles.total_edits_analyzed, excluded.total_edits_analyzed),
                   last_analyzed_at = excluded.last_analyzed_at,
                   updated_at = excluded.updated_at""",
                (
                    user_id, subspecialty, json.dumps(preferences), json.dumps(confidence),
                    learning_strength, total_edits_analyzed, last_analyzed_at, now, now,
                ),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM style_profiles WHERE user_id = ? AND subspecialty = ?",
                (user_id, subspecialty),
            ).fetchone()
            return _decode_profile_row(row)
        finally:
            conn.close()

    def delete_style_profile(self, user_id: str, subspecialty: str) -> bool:
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                "DELETE FROM style_profiles WHERE user_id = ? AND subspecialty = ?",
                (user_id, subspecialty),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # --- Global (user-level) profile ---

    def get_global_style_profile(self, user_id: str) -> dict[str, Any] | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT profile FROM global_style_profiles WHERE user_id = ?", (user_id,)
            ).fetchone()
            return json.loads(row["profile"]) if row else None
        finally:
            conn.close()

    def set_global_style_profile(self, user_id: str, profile: dict[str, Any]) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO global_style_profiles (user_id, profile, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                   profile = excluded.profile, updated_at = excluded.updated_at""",
                (user_id, json.dumps(profile), _now()),
            )
            conn.commit()
        finally:
            conn.close()

    # --- Seed letters ---

    def create_seed_letter(
        self, user_id: str, subspecialty: str, letter_text: str,
    ) -> dict[str, Any]:
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                """INSERT INTO style_seed_letters (user_id, subspecialty, letter_text, created_at)
                   VALUES (?, ?, ?, ?)""",
                (user_id, subspecialty, letter_text, _now()),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM style_seed_letters WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return dict(row)
        finally:
            conn.close()

    def list_seed_letters(
        self,
        user_id: str,
        subspecialty: str | None = None,
        unanalyzed_only: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        conn = self._get_conn()
        try:
            conditions = ["user_id = ?"]
            params: list[Any] = [user_id]
            if subspecialty:
                conditions.append("subspecialty = ?")
                params.append(subspecialty)
            if unanalyzed_only:
                conditions.append("analyzed_at IS NULL")
            sql = (
                f"SELECT * FROM style_seed_letters WHERE {' AND '.join(conditions)} "
                "ORDER BY created_at DESC, id DESC"
            )
            if limit is not None:
                sql += " LIMIT ?"
                params.append(limit)
            rows = conn.execute(sql, params).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def get_seed_letter(self, seed_id: int | str, user_id: str) -> dict[str, Any] | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM style_seed_letters WHERE id = ? AND user_id = ?",
                (seed_id, user_id),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def delete_seed_letter(self, seed_id: int | str, user_id: str) -> bool:
        conn = self._get_conn()
        try:
            cursor = conn.execute(
                "DELETE FROM style_seed_letters WHERE id = ? AND user_id = ?",
                (seed_id, user_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def mark_seed_letters_analyzed(self, seed_ids: Iterable[int | str]) -> int:
        ids = list(seed_ids)
        if not ids:
            return 0
        conn = self._get_conn()
        try:
            placeholders = ",".join("?" for _ in ids)
            cursor = conn.execute(
                f"UPDATE style_seed_letters SET analyzed_at = ? WHERE id IN ({placeholders})",
                [_now(), *ids],
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # --- Population aggregates ---

    def upsert_style_aggregate(
        self,
        subspecialty: str,
        period: str,
        common_additions: list[dict[str, Any]],
        common_deletions: list[dict[str, Any]],
        section_order_patterns: list[dict[str, Any]],
        phrasing_patterns: list[dict[str, Any]],
        sample_size: int,
    ) -> dict[str, Any]:
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO style_aggregates (subspecialty, period, common_additions, common_deletions,
                   section_order_patterns, phrasing_patterns, sample_size, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(subspecialty, period) DO UPDATE SET
                   common_additions = excluded.common_additions,
                   common_deletions = excluded.common_deletions,
                   section_order_patterns = excluded.section_order_patterns,
                   phrasing_patterns = excluded.phrasing_patterns,
                   sample_size = excluded.sample_size""",
                (
                    subspecialty, period,
                    json.dumps(common_additions), json.dumps(common_deletions),
                    json.dumps(section_order_patterns), json.dumps(phrasing_patterns),
                    sample_size, _now(),
                ),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM style_aggregates WHERE subspecialty = ? AND period = ?",
                (subspecialty, period),
            ).fetchone()
            return _decode_aggregate_row(row)
        finally:
            conn.close()

    def list_style_aggregates(self, subspecialty: str, limit: int = 10) -> list[dict[str, Any]]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT * FROM style_aggregates WHERE subspecialty = ?
                   ORDER BY period DESC LIMIT ?""",
                (subspecialty, limit),
            ).fetchall()
            return [_decode_aggregate_row(r) for r in rows]
        finally:
            conn.close()

    def latest_style_aggregates(self) -> list[dict[str, Any]]:
        """Most recent aggregate per subspecialty."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT a.* FROM style_aggregates a
                   JOIN (SELECT subspecialty, MAX(period) AS period
                         FROM style_aggregates GROUP BY subspecialty) latest
                   ON a.subspecialty = latest.subspecialty AND a.period = latest.period
                   ORDER BY a.subspecialty""",
            ).fetchall()
            return [_decode_aggregate_row(r) for r in rows]
        finally:
            conn.close()

    # --- Audit log ---

    def insert_audit_log(
        self,
        user_id: str | None,
        action: str,
        resource_type: str,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO audit_log (user_id, action, resource_type, resource_id, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (user_id, action, resource_type, resource_id, json.dumps(metadata or {}), _now()),
            )
            conn.commit()
        finally:
            conn.close()

    def list_audit_log(self, user_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        conn = self._get_conn()
        try:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            result = []
            for r in rows:
                entry = dict(r)
                entry["metadata"] = json.loads(entry["metadata"] or "{}")
                result.append(entry)
            return result
        finally:
            conn.close()


_db_instance: Database | None = None


def get_db() -> Database:
    """Return the module-level Database singleton."""
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
    return _db_instance
