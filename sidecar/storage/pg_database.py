"""PostgreSQL database for web mode (multi-tenant, RDS-backed).

Drop-in replacement for the SQLite Database class. Every per-clinician query
is scoped by user_id. Uses asyncpg connection pool via DATABASE_URL env var.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _normalize_row(row: Any) -> dict[str, Any]:
    """Convert native PostgreSQL types (datetime, UUID) to JSON-compatible primitives."""
    out: dict[str, Any] = {}
    for k, v in dict(row).items():
        if isinstance(v, datetime):
            out[k] = v.astimezone(timezone.utc).strftime(_TS_FORMAT)
        elif isinstance(v, uuid.UUID):
            out[k] = str(v)
        else:
            out[k] = v
    return out


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    return json.loads(value) if isinstance(value, str) else value


def _parse_ts(value: str | None) -> datetime | None:
    """Parse an ISO 8601 string into an aware datetime (asyncpg needs native types)."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _as_uuid(value: int | str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


DATABASE_URL = os.getenv("DATABASE_URL", "")


def _now() -> datetime:
    """Return current UTC time as a datetime object (asyncpg requires native types)."""
    return datetime.now(timezone.utc)


_pool = None


def _parse_database_url(url: str) -> dict:
    """Parse DATABASE_URL into asyncpg-compatible connection parameters.

    Python 3.12's urllib has strict URL parsing that chokes on passwords
    with special characters. Parse manually to avoid this.
    """
    import re as _re

    m = _re.match(
        r"^postgres(?:ql)?://([^:]+):(.+)@([^:/@]+):(\d+)/(.+)$", url
    )
    if not m:
        raise ValueError(f"Cannot parse DATABASE_URL: {url[:30]}...")
    return {
        "user": m.group(1),
        "password": m.group(2),
        "host": m.group(3),
        "port": int(m.group(4)),
        "database": m.group(5),
    }


async def _get_pool():
    """Return the asyncpg connection pool, creating it on first call."""
    global _pool
    if _pool is None:
        import asyncpg

        params = _parse_database_url(DATABASE_URL)

        # RDS requires SSL inside the VPC; certificates are not verified.
        import ssl as _ssl
        ssl_ctx = _ssl.create_default_context()
        ssl_ctx.check_hostname = False
        ssl_ctx.verify_mode = _ssl.CERT_NONE

        _pool = await asyncpg.create_pool(
            min_size=2,
            max_size=10,
            ssl=ssl_ctx,
            server_settings={"search_path": "public"},
            **params,
        )
        logger.info("PostgreSQL connection pool initialized")
    return _pool


async def run_migrations():
    """Run the idempotent schema migration on startup."""
    pool = await _get_pool()
    sql_path = os.path.join(os.path.dirname(__file__), "migrations", "schema.sql")
    if not os.path.exists(sql_path):
        logger.warning("Migration file not found at %s, skipping", sql_path)
        return
    with open(sql_path) as f:
        sql = f.read()
    async with pool.acquire() as conn:
        await conn.execute(sql)
    logger.info("Database migrations applied successfully")


async def close_pool():
    """Close the connection pool (for graceful shutdown)."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("PostgreSQL connection pool closed")


def _profile_row(row: Any) -> dict[str, Any]:
    out = _normalize_row(row)
    out["preferences"] = _load_json(out.get("preferences"), {})
    out["confidence"] = _load_json(out.get("confidence"), {})
    return out


def _aggregate_row(row: Any) -> dict[str, Any]:
    out = _normalize_row(row)
    for col in ("common_additions", "common_deletions", "section_order_patterns", "phrasing_patterns"):
        out[col] = _load_json(out.get(col), [])
    return out


class PgDatabase:
    """PostgreSQL-backed storage for web mode (multi-tenant)."""

    # --- Style edits ---

    async def insert_style_edit(
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
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """INSERT INTO style_edits (user_id, letter_id, subspecialty, section_type, edit_type,
                   before_text, after_text, character_changes, word_changes, created_at)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                   RETURNING *""",
                user_id, letter_id, subspecialty, section_type, edit_type,
                before_text, after_text, character_changes, word_changes, _now(),
            )
        return _normalize_row(row)

    async def count_style_edits(
        self, user_id: str, subspecialty: str, since: str | None = None,
    ) -> int:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            if since:
                return await conn.fetchval(
                    """SELECT COUNT(*) FROM style_edits
                       WHERE user_id = $1 AND subspecialty = $2 AND created_at > $3""",
                    user_id, subspecialty, _parse_ts(since),
                )
            return await conn.fetchval(
                "SELECT COUNT(*) FROM style_edits WHERE user_id = $1 AND subspecialty = $2",
                user_id, subspecialty,
            )

    async def list_style_edits(
        self,
        user_id: str,
        subspecialty: str | None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        conditions = ["user_id = $1"]
        params: list[Any] = [user_id]
        if subspecialty:
            params.append(subspecialty)
            conditions.append(f"subspecialty = ${len(params)}")
        if since:
            params.append(_parse_ts(since))
            conditions.append(f"created_at > ${len(params)}")
        params.append(limit)
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""SELECT * FROM style_edits WHERE {' AND '.join(conditions)}
                    ORDER BY created_at DESC, id DESC LIMIT ${len(params)}""",
                *params,
            )
        return [_normalize_row(r) for r in rows]

    async def list_style_edits_for_period(
        self, subspecialty: str, start: str, end: str,
    ) -> list[dict[str, Any]]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT * FROM style_edits
                   WHERE subspecialty = $1 AND created_at >= $2 AND created_at < $3
                   ORDER BY created_at""",
                subspecialty, _parse_ts(start), _parse_ts(end),
            )
        return [_normalize_row(r) for r in rows]

    async def get_edit_statistics(
        self, user_id: str, subspecialty: str, now: datetime | None = None,
    ) -> dict[str, Any]:
        current = now or _now()
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """SELECT COUNT(*) AS total,
                          COUNT(*) FILTER (WHERE created_at >= $3) AS last_7,
                          COUNT(*) FILTER (WHERE created_at >= $4) AS last_30,
                          MAX(created_at) AS last_edit_at
                   FROM style_edits WHERE user_id = $1 AND subspecialty = $2""",
                user_id, subspecialty,
                current - timedelta(days=7), current - timedelta(days=30),
            )
        out = _normalize_row(row)
        return {
            "total_edits": out["total"] or 0,
            "edits_last_7_days": out["last_7"] or 0,
            "edits_last_30_days": out["last_30"] or 0,
            "last_edit_at": out["last_edit_at"],
        }

    # --- Style profiles ---

    async def get_style_profile(self, user_id: str, subspecialty: str) -> dict[str, Any] | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM style_profiles WHERE user_id = $1 AND subspecialty = $2",
                user_id, subspecialty,
            )
        return _profile_row(row) if row else None

    async def list_style_profiles(self, user_id: str) -> list[dict[str, Any]]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM style_profiles WHERE user_id = $1 ORDER BY subspecialty",
                user_id,
            )
        return [_profile_row(r) for r in rows]

    async def upsert_style_profile(
        self,
        user_id: str,
        subspecialty: str,
        preferences: dict[str, Any],
        confidence: dict[str, float],
        learning_strength: float,
        total_edits_analyzed: int,
        last_analyzed_at: str | None,
    ) -> dict[str, Any]:
        now = _now()
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """INSERT INTO style_profiles (user_id, subspecialty, preferences, confidence,
                   learning_strength, total_edits_analyzed, last_analyzed_at, created_at, updated_at)
                   VALUES ($1, $2, $3::jsonb, $4::jsonb, $5, $6, $7, $8, $8)
                   ON CONFLICT (user_id, subspecialty) DO UPDATE SET
                   preferences = EXCLUDED.preferences,
                   confidence = EXCLUDED.confidence,
                   learning_strength = EXCLUDED.learning_strength,
                   total_edits_analyzed = GREATEST(style_profiles.total_edits_analyzed, EXCLUDED.total_edits_analyzed),
                   last_analyzed_at = EXCLUDED.last_analyzed_at,
                   updated_at = EXCLUDED.updated_at
                   RETURNING *""",
                user_id, subspecialty, json.dumps(preferences), json.dumps(confidence),
                learning_strength, total_edits_analyzed, _parse_ts(last_analyzed_at), now,
            )
        return _profile_row(row)

    async def delete_style_profile(self, user_id: str, subspecialty: str) -> bool:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM style_profiles WHERE user_id = $1 AND subspecialty = $2",
                user_id, subspecialty,
            )
        return result.endswith("1")

    # --- Global (user-level) profile ---

    async def get_global_style_profile(self, user_id: str) -> dict[str, Any] | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            raw = await conn.fetchval(
                "SELECT profile FROM global_style_profiles WHERE user_id = $1", user_id,
            )
        return _load_json(raw, None)

    async def set_global_style_profile(self, user_id: str, profile: dict[str, Any]) -> None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO global_style_profiles (user_id, profile, updated_at)
                   VALUES ($1, $2::jsonb, $3)
                   ON CONFLICT (user_id) DO UPDATE SET profile = $2::jsonb, updated_at = $3""",
                user_id, json.dumps(profile), _now(),
            )

    # --- Seed letters ---

    async def create_seed_letter(
        self, user_id: str, subspecialty: str, letter_text: str,
    ) -> dict[str, Any]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """INSERT INTO style_seed_letters (user_id, subspecialty, letter_text, created_at)
                   VALUES ($1, $2, $3, $4) RETURNING *""",
                user_id, subspecialty, letter_text, _now(),
            )
        return _normalize_row(row)

    async def list_seed_letters(
        self,
        user_id: str,
        subspecialty: str | None = None,
        unanalyzed_only: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        conditions = ["user_id = $1"]
        params: list[Any] = [user_id]
        if subspecialty:
            params.append(subspecialty)
            conditions.append(f"subspecialty = ${len(params)}")
        if unanalyzed_only:
            conditions.append("analyzed_at IS NULL")
        sql = (
            f"SELECT * FROM style_seed_letters WHERE {' AND '.join(conditions)} "
            "ORDER BY created_at DESC"
        )
        if limit is not None:
            params.append(limit)
            sql += f" LIMIT ${len(params)}"
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *params)
        return [_normalize_row(r) for r in rows]

    async def get_seed_letter(self, seed_id: int | str, user_id: str) -> dict[str, Any] | None:
        sid = _as_uuid(seed_id)
        if sid is None:
            return None
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM style_seed_letters WHERE id = $1 AND user_id = $2",
                sid, user_id,
            )
        return _normalize_row(row) if row else None

    async def delete_seed_letter(self, seed_id: int | str, user_id: str) -> bool:
        sid = _as_uuid(seed_id)
        if sid is None:
            return False
        pool = await _get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM style_seed_letters WHERE id = $1 AND user_id = $2",
                sid, user_id,
            )
        return result.endswith("1")

    async def mark_seed_letters_analyzed(self, seed_ids: Iterable[int | str]) -> int:
        ids = [u for u in (_as_uuid(i) for i in seed_ids) if u is not None]
        if not ids:
            return 0
        pool = await _get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE style_seed_letters SET analyzed_at = $1 WHERE id = ANY($2::uuid[])",
                _now(), ids,
            )
        return int(result.split()[-1])

    # --- Population aggregates ---

    async def upsert_style_aggregate(
        self,
        subspecialty: str,
        period: str,
        common_additions: list[dict[str, Any]],
        common_deletions: list[dict[str, Any]],
        section_order_patterns: list[dict[str, Any]],
        phrasing_patterns: list[dict[str, Any]],
        sample_size: int,
    ) -> dict[str, Any]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """INSERT INTO style_aggregates (subspecialty, period, common_additions, common_deletions,
                   section_order_patterns, phrasing_patterns, sample_size, created_at)
                   VALUES ($1, $2, $3::jsonb, $4::jsonb, $5::jsonb, $6::jsonb, $7, $8)
                   ON CONFLICT (subspecialty, period) DO UPDATE SET
                   common_additions = EXCLUDED.common_additions,
                   common_deletions = EXCLUDED.common_deletions,
                   section_order_patterns = EXCLUDED.section_order_patterns,
                   phrasing_patterns = EXCLUDED.phrasing_patterns,
                   sample_size = EXCLUDED.sample_size
                   RETURNING *""",
                subspecialty, period,
                json.dumps(common_additions), json.dumps(common_deletions),
                json.dumps(section_order_patterns), json.dumps(phrasing_patterns),
                sample_size, _now(),
            )
        return _aggregate_row(row)

    async def list_style_aggregates(self, subspecialty: str, limit: int = 10) -> list[dict[str, Any]]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT * FROM style_aggregates WHERE subspecialty = $1
                   ORDER BY period DESC LIMIT $2""",
                subspecialty, limit,
            )
        return [_aggregate_row(r) for r in rows]

    async def latest_style_aggregates(self) -> list[dict[str, Any]]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT DISTINCT ON (subspecialty) * FROM style_aggregates
                   ORDER BY subspecialty, period DESC""",
            )
        return [_aggregate_row(r) for r in rows]

    # --- Audit log ---

    async def insert_audit_log(
        self,
        user_id: str | None,
        action: str,
        resource_type: str,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO audit_log (user_id, action, resource_type, resource_id, metadata, created_at)
                   VALUES ($1, $2, $3, $4, $5::jsonb, $6)""",
                user_id, action, resource_type, resource_id, json.dumps(metadata or {}), _now(),
            )

    async def list_audit_log(self, user_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            if user_id:
                rows = await conn.fetch(
                    "SELECT * FROM audit_log WHERE user_id = $1 ORDER BY created_at DESC LIMIT $2",
                    user_id, limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM audit_log ORDER BY created_at DESC LIMIT $1", limit,
                )
        result = []
        for r in rows:
            entry = _normalize_row(r)
            entry["metadata"] = _load_json(entry.get("metadata"), {})
            result.append(entry)
        return result


_pg_instance: PgDatabase | None = None


def get_pg_db() -> PgDatabase:
    """Return the module-level PgDatabase singleton."""
    global _pg_instance
    if _pg_instance is None:
        _pg_instance = PgDatabase()
    return _pg_instance
