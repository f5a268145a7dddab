from __future__ import annotations

import json
from typing import Any, Optional, Sequence

from loguru import logger
from psycopg import sql as psql
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from ..errors import map_store_error
from ..models import CircuitState, CircuitStatus, IdempotencyRecord, RecordStatus


def _dumps(obj: Any) -> str:
    # sender responses are not guaranteed to be JSON-native
    return json.dumps(obj, default=str)


CIRCUIT_TABLE = "dispatch_circuit_state"
IDEMPOTENCY_TABLE = "dispatch_idempotency"

CIRCUIT_COLS = (
    "destination",
    "status",
    "consecutive_failures",
    "opened_at",
    "trial_in_flight",
    "window_started_at",
    "trial_started_at",
)
RECORD_COLS = ("key", "status", "result", "recorded_at", "expires_at")

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {CIRCUIT_TABLE} (
    destination          TEXT PRIMARY KEY,
    status               TEXT NOT NULL,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    opened_at            DOUBLE PRECISION,
    trial_in_flight      BOOLEAN NOT NULL DEFAULT FALSE,
    window_started_at    DOUBLE PRECISION,
    trial_started_at     DOUBLE PRECISION,
    updated_at           TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS {IDEMPOTENCY_TABLE} (
    key          TEXT PRIMARY KEY,
    status       TEXT NOT NULL,
    result       JSONB,
    recorded_at  DOUBLE PRECISION NOT NULL,
    expires_at   DOUBLE PRECISION
);
CREATE INDEX IF NOT EXISTS {IDEMPOTENCY_TABLE}_expires_idx
    ON {IDEMPOTENCY_TABLE} (expires_at) WHERE expires_at IS NOT NULL;
"""


def upsert_statement(table: str, cols: Sequence[str], conflict_col: str) -> psql.Composed:
    """INSERT ... ON CONFLICT (pk) DO UPDATE with named parameters (%(name)s)."""
    ins_cols = psql.SQL(", ").join(psql.Identifier(c) for c in cols)
    ins_vals = psql.SQL(", ").join(psql.Placeholder(c) for c in cols)
    setlist = psql.SQL(", ").join(
        psql.SQL("{} = EXCLUDED.{}").format(psql.Identifier(c), psql.Identifier(c))
        for c in cols
        if c != conflict_col
    )
    return psql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) DO UPDATE SET {}").format(
        psql.Identifier(table), ins_cols, ins_vals, psql.Identifier(conflict_col), setlist
    )


def select_statement(table: str, cols: Sequence[str], where: str | None = None) -> psql.Composed:
    q = psql.SQL("SELECT {} FROM {}").format(
        psql.SQL(", ").join(psql.Identifier(c) for c in cols), psql.Identifier(table)
    )
    if where:
        q = psql.SQL("{} WHERE {} = %s").format(q, psql.Identifier(where))
    return q


def circuit_from_row(row: Sequence[Any]) -> CircuitState:
    d = dict(zip(CIRCUIT_COLS, row))
    d["status"] = CircuitStatus(d["status"])
    return CircuitState(**d)


def record_from_row(row: Sequence[Any]) -> IdempotencyRecord:
    d = dict(zip(RECORD_COLS, row))
    d["status"] = RecordStatus(d["status"])
    return IdempotencyRecord(**d)


class PostgresStore:
    """PersistenceStore on PostgreSQL via psycopg 3 and an async pool.

    Usage:
        async with PostgresStore("postgresql://...") as store:
            await store.ensure_schema()
            breaker = CircuitBreaker(cfg, store=store)

    Driver and pool errors surface as PersistenceUnavailableError.
    """

    def __init__(
        self,
        dsn: str | None = None,
        *,
        pool_max: int = 10,
        pool: AsyncConnectionPool | None = None,
    ):
        if pool is None and not dsn:
            raise ValueError("dsn required")
        self.pool = pool if pool is not None else AsyncConnectionPool(
            conninfo=dsn,
            max_size=pool_max,
            kwargs={"autocommit": True},
            open=False,
        )

    async def __aenter__(self) -> "PostgresStore":
        await self.pool.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.pool.close()

    async def _execute(self, query, params=None, fetch: str | None = None):
        try:
            async with self.pool.connection() as conn:
                cur = await conn.execute(query, params)
                if fetch == "one":
                    return await cur.fetchone()
                if fetch == "all":
                    return await cur.fetchall()
                return cur.rowcount
        except Exception as e:
            raise map_store_error(e) from e

    async def ensure_schema(self) -> None:
        await self._execute(SCHEMA_SQL)
        logger.info(f"Ensured tables {CIRCUIT_TABLE}, {IDEMPOTENCY_TABLE}")

    # ---------- circuit state ----------

    async def load_circuit(self, destination: str) -> Optional[CircuitState]:
        row = await self._execute(
            select_statement(CIRCUIT_TABLE, CIRCUIT_COLS, where="destination"),
            (destination,),
            fetch="one",
        )
        return circuit_from_row(row) if row else None

    async def load_circuits(self) -> list[CircuitState]:
        rows = await self._execute(select_statement(CIRCUIT_TABLE, CIRCUIT_COLS), fetch="all")
        return [circuit_from_row(r) for r in rows or []]

    async def save_circuit(self, state: CircuitState) -> None:
        params = {c: getattr(state, c) for c in CIRCUIT_COLS}
        params["status"] = state.status.value
        await self._execute(upsert_statement(CIRCUIT_TABLE, CIRCUIT_COLS, "destination"), params)

    # ---------- idempotency records ----------

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        row = await self._execute(
            select_statement(IDEMPOTENCY_TABLE, RECORD_COLS, where="key"), (key,), fetch="one"
        )
        return record_from_row(row) if row else None

    async def put_record(self, record: IdempotencyRecord) -> None:
        params = {c: getattr(record, c) for c in RECORD_COLS}
        params["status"] = record.status.value
        params["result"] = (
            Jsonb(record.result, dumps=_dumps) if record.result is not None else None
        )
        await self._execute(upsert_statement(IDEMPOTENCY_TABLE, RECORD_COLS, "key"), params)

    async def delete_record(self, key: str) -> bool:
        n = await self._execute(
            psql.SQL("DELETE FROM {} WHERE key = %s").format(psql.Identifier(IDEMPOTENCY_TABLE)),
            (key,),
        )
        return bool(n)

    async def purge_expired(self, now: float) -> int:
        n = await self._execute(
            psql.SQL("DELETE FROM {} WHERE expires_at IS NOT NULL AND expires_at <= %s").format(
                psql.Identifier(IDEMPOTENCY_TABLE)
            ),
            (now,),
        )
        if n:
            logger.debug(f"Purged {n} expired idempotency records")
        return n or 0
