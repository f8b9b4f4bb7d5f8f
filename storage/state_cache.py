"""State sync cache — SQLite mirror of templates, claims and issuer roles.

The contract is the source of truth; this cache is advisory and eventually
consistent.  Writes are keyed upserts, so replaying the same chain event
is harmless: ``apply_claim`` inserts at most one row per
(profile_id, template_id) and only bumps ``current_supply`` when the row
was new.

Usage::

    cache = StateSyncCache(dsn="sqlite:///data/claims_cache.db")
    await cache.start()
    await cache.upsert_template(template)
    await cache.apply_claim(record)
    await cache.stop()
"""

from __future__ import annotations

import asyncio
import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

import structlog

from core.errors import CacheSyncError
from models.claim import ClaimRecord, ClaimType
from models.template import EligibilityType, Template

logger = structlog.get_logger("storage.state_cache")

__all__ = ["StateSyncCache"]

_MIGRATIONS_DIR = Path(__file__).parent / "migrations"

T = TypeVar("T")

_TEMPLATE_COLUMNS = (
    "template_id, issuer, max_supply, current_supply, tier, start_time, "
    "end_time, is_paused, eligibility_type, requirements, updated_at"
)
_CLAIM_COLUMNS = "profile_id, template_id, card_id, claim_type, claimed_at, tx_hash"


class StateSyncCache:
    """Async facade over a single SQLite connection.

    Parameters
    ----------
    dsn:
        ``sqlite:///path/to/file.db`` or ``sqlite:///:memory:``.
    """

    def __init__(self, dsn: str = "sqlite:///data/claims_cache.db") -> None:
        if not dsn.startswith("sqlite:///"):
            raise ValueError(f"Unsupported cache DSN (sqlite only): {dsn}")
        self._dsn = dsn
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

        self._stats_templates_upserted: int = 0
        self._stats_claims_applied: int = 0
        self._stats_claims_replayed: int = 0

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Open the connection and apply pending migrations. Idempotent."""
        if self._conn is not None:
            return

        db_path = self._dsn[len("sqlite:///"):] or "data/claims_cache.db"
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)

        loop = asyncio.get_running_loop()
        self._conn = await loop.run_in_executor(
            None, lambda: sqlite3.connect(db_path, check_same_thread=False)
        )
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

        await self._run_migrations()
        logger.info("state_cache.started", dsn=self._dsn)

    async def stop(self) -> None:
        if self._conn is None:
            return
        async with self._lock:
            self._conn.close()
            self._conn = None
        logger.info("state_cache.stopped", **self.stats)

    async def __aenter__(self) -> StateSyncCache:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ── Templates ────────────────────────────────────────────────

    async def upsert_template(self, template: Template) -> None:
        """Insert or refresh the chain fields of *template*.

        ``eligibility_type`` and ``requirements`` are only written on first
        insert; later upserts leave the stored metadata alone.
        """
        row = _template_row(template)

        def _do(conn: sqlite3.Connection) -> None:
            conn.execute(
                f"INSERT INTO templates_cache ({_TEMPLATE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(template_id) DO UPDATE SET "
                "issuer = excluded.issuer, "
                "max_supply = excluded.max_supply, "
                "current_supply = excluded.current_supply, "
                "tier = excluded.tier, "
                "start_time = excluded.start_time, "
                "end_time = excluded.end_time, "
                "is_paused = excluded.is_paused, "
                "updated_at = excluded.updated_at",
                row,
            )
            conn.commit()

        await self._execute(_do)
        self._stats_templates_upserted += 1
        logger.debug("state_cache.template_upserted", template_id=template.template_id)

    async def set_template_metadata(
        self,
        template_id: int,
        eligibility_type: EligibilityType,
        requirements: dict[str, str] | None = None,
    ) -> None:
        """Record the off-chain eligibility metadata of a template."""
        placeholder = _template_row(Template(template_id=template_id))
        reqs = json.dumps(dict(requirements or {}), sort_keys=True)

        def _do(conn: sqlite3.Connection) -> None:
            conn.execute(
                f"INSERT INTO templates_cache ({_TEMPLATE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(template_id) DO NOTHING",
                placeholder,
            )
            conn.execute(
                "UPDATE templates_cache SET eligibility_type = ?, requirements = ? "
                "WHERE template_id = ?",
                (eligibility_type.value, reqs, str(template_id)),
            )
            conn.commit()

        await self._execute(_do)

    async def get_template(self, template_id: int) -> Template | None:
        def _do(conn: sqlite3.Connection) -> Any:
            return conn.execute(
                f"SELECT {_TEMPLATE_COLUMNS} FROM templates_cache WHERE template_id = ?",
                (str(template_id),),
            ).fetchone()

        row = await self._execute(_do)
        return _template_from_row(row) if row else None

    async def list_templates(self) -> list[Template]:
        def _do(conn: sqlite3.Connection) -> list[Any]:
            return conn.execute(f"SELECT {_TEMPLATE_COLUMNS} FROM templates_cache").fetchall()

        templates = [_template_from_row(r) for r in await self._execute(_do)]
        return sorted(templates, key=lambda t: t.template_id)

    # ── Claims ───────────────────────────────────────────────────

    async def apply_claim(self, record: ClaimRecord) -> bool:
        """Log *record* and bump the template supply in one transaction.

        Returns ``False`` when a claim for the same (profile, template) was
        already logged, in which case nothing changes.
        """
        now = _now_iso()

        def _do(conn: sqlite3.Connection) -> bool:
            try:
                cur = conn.execute(
                    f"INSERT OR IGNORE INTO claims_log ({_CLAIM_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        str(record.profile_id),
                        str(record.template_id),
                        str(record.card_id),
                        record.claim_type.value,
                        record.claimed_at.isoformat(),
                        record.tx_hash,
                    ),
                )
                inserted = cur.rowcount == 1
                supply = conn.execute(
                    "SELECT current_supply FROM templates_cache WHERE template_id = ?",
                    (str(record.template_id),),
                ).fetchone()
                if inserted and supply is not None:
                    # TEXT column: SQL arithmetic would round-trip through REAL
                    conn.execute(
                        "UPDATE templates_cache SET current_supply = ?, updated_at = ? "
                        "WHERE template_id = ?",
                        (str(int(supply[0]) + 1), now, str(record.template_id)),
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            return inserted

        inserted = await self._execute(_do)
        if inserted:
            self._stats_claims_applied += 1
            logger.info(
                "state_cache.claim_applied",
                profile_id=record.profile_id,
                template_id=record.template_id,
                card_id=record.card_id,
            )
        else:
            self._stats_claims_replayed += 1
            logger.debug(
                "state_cache.claim_replayed",
                profile_id=record.profile_id,
                template_id=record.template_id,
            )
        return inserted

    async def has_claimed(self, profile_id: int, template_id: int) -> bool:
        def _do(conn: sqlite3.Connection) -> Any:
            return conn.execute(
                "SELECT 1 FROM claims_log WHERE profile_id = ? AND template_id = ?",
                (str(profile_id), str(template_id)),
            ).fetchone()

        return await self._execute(_do) is not None

    async def claim_history(self, template_id: int) -> list[ClaimRecord]:
        """Every logged claim of *template_id*, oldest first."""
        return await self._select_claims("template_id = ?", (str(template_id),))

    async def claims_for_profile(self, profile_id: int) -> list[ClaimRecord]:
        return await self._select_claims("profile_id = ?", (str(profile_id),))

    async def _select_claims(self, where: str, params: tuple[Any, ...]) -> list[ClaimRecord]:
        def _do(conn: sqlite3.Connection) -> list[Any]:
            return conn.execute(
                f"SELECT {_CLAIM_COLUMNS} FROM claims_log WHERE {where} ORDER BY id",
                params,
            ).fetchall()

        return [
            ClaimRecord(
                profile_id=int(r[0]),
                template_id=int(r[1]),
                card_id=int(r[2]),
                claim_type=ClaimType(r[3]),
                claimed_at=datetime.fromisoformat(r[4]),
                tx_hash=r[5],
            )
            for r in await self._execute(_do)
        ]

    # ── Issuer roles ─────────────────────────────────────────────

    async def set_role(self, role: str, account: str, granted: bool) -> None:
        def _do(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO issuer_roles (role, account, granted, updated_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(role, account) DO UPDATE SET "
                "granted = excluded.granted, updated_at = excluded.updated_at",
                (role.lower(), account.lower(), int(granted), _now_iso()),
            )
            conn.commit()

        await self._execute(_do)

    async def has_role(self, role: str, account: str) -> bool:
        def _do(conn: sqlite3.Connection) -> Any:
            return conn.execute(
                "SELECT granted FROM issuer_roles WHERE role = ? AND account = ?",
                (role.lower(), account.lower()),
            ).fetchone()

        row = await self._execute(_do)
        return bool(row and row[0])

    # ── Sync cursor ──────────────────────────────────────────────

    async def get_cursor(self, name: str) -> int | None:
        """Last processed block of watcher *name*, ``None`` if never set."""

        def _do(conn: sqlite3.Connection) -> Any:
            return conn.execute(
                "SELECT block FROM sync_cursor WHERE name = ?", (name,)
            ).fetchone()

        row = await self._execute(_do)
        return int(row[0]) if row else None

    async def set_cursor(self, name: str, block: int) -> None:
        def _do(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO sync_cursor (name, block, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET "
                "block = excluded.block, updated_at = excluded.updated_at",
                (name, block, _now_iso()),
            )
            conn.commit()

        await self._execute(_do)

    # ── Stats ────────────────────────────────────────────────────

    @property
    def stats(self) -> dict[str, int]:
        return {
            "templates_upserted": self._stats_templates_upserted,
            "claims_applied": self._stats_claims_applied,
            "claims_replayed": self._stats_claims_replayed,
        }

    # ── Internals ────────────────────────────────────────────────

    async def _execute(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run *fn* on the connection in the default executor, one at a time."""
        async with self._lock:
            conn = self._conn
            if conn is None:
                raise RuntimeError("StateSyncCache not started — call start() first")
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, fn, conn)

    async def _run_migrations(self) -> None:
        for mf in sorted(_MIGRATIONS_DIR.glob("*.sql")):
            sql = mf.read_text()
            if not sql.strip():
                continue

            def _do(conn: sqlite3.Connection, sql: str = sql, name: str = mf.name) -> bool:
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS _migrations "
                    "(name TEXT PRIMARY KEY, applied_at TEXT)"
                )
                if conn.execute("SELECT 1 FROM _migrations WHERE name = ?", (name,)).fetchone():
                    return False
                conn.executescript(sql)
                conn.execute(
                    "INSERT INTO _migrations (name, applied_at) VALUES (?, ?)",
                    (name, _now_iso()),
                )
                conn.commit()
                return True

            try:
                applied = await self._execute(_do)
            except sqlite3.Error as exc:
                logger.exception("state_cache.migration_failed", file=mf.name)
                raise CacheSyncError(f"Migration {mf.name} failed: {exc}") from exc
            if applied:
                logger.info("state_cache.migration_applied", file=mf.name)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _template_row(t: Template) -> tuple[Any, ...]:
    return (
        str(t.template_id),
        t.issuer,
        # uint256 fields as decimal TEXT
        str(t.max_supply),
        str(t.current_supply),
        t.tier,
        str(t.start_time),
        str(t.end_time),
        int(t.is_paused),
        t.eligibility_type.value,
        json.dumps(t.requirements, sort_keys=True),
        t.updated_at.isoformat(),
    )


def _template_from_row(row: tuple[Any, ...]) -> Template:
    return Template(
        template_id=int(row[0]),
        issuer=row[1],
        max_supply=int(row[2]),
        current_supply=int(row[3]),
        tier=int(row[4]),
        start_time=int(row[5]),
        end_time=int(row[6]),
        is_paused=bool(row[7]),
        eligibility_type=EligibilityType(row[8]),
        requirements=json.loads(row[9]),
        updated_at=datetime.fromisoformat(row[10]),
    )
