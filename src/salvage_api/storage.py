from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Sequence

import redis.asyncio as redis
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from salvage.errors import PersistenceError

logger = logging.getLogger(__name__)

VEHICLES = "vehicle_transactions"
SALES = "vehicle_sales"
HOLDS = "impound_holds"
LEDGER = "cash_ledger"
REPORTS = "compliance_reports"

metadata = MetaData()


def _party_columns(prefix: str, *extra: str) -> list[Column]:
    names = ("name", "address", "city", "state", "zip", "phone", *extra)
    return [Column(f"{prefix}{name}", String(255), nullable=False, default="") for name in names]


vehicles_table = Table(
    VEHICLES,
    metadata,
    Column("id", String(64), primary_key=True),
    Column("vin", String(32), nullable=False, index=True),
    Column("year", Integer, nullable=True),
    Column("make", String(64), nullable=False, default=""),
    *_party_columns("seller_"),
    Column("purchase_price", Numeric(12, 2), nullable=False),
    Column("purchase_date", Date, nullable=True),
    Column("driver_id", String(64), nullable=False, index=True),
    Column("driver_name", String(128), nullable=False, default=""),
    Column("yard_id", String(64), nullable=False, index=True),
    Column("disposition", String(16), nullable=False, default="TBD", index=True),
    Column("is_impound_or_lien", Boolean, nullable=False, default=False),
    Column("sale_record_id", String(64), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

sales_table = Table(
    SALES,
    metadata,
    Column("id", String(64), primary_key=True),
    Column("original_transaction_id", String(64), nullable=False, index=True),
    Column("vehicle_json", JSON, nullable=False, default=dict),
    *_party_columns("buyer_", "email", "license_number"),
    Column("sale_price", Numeric(12, 2), nullable=False),
    Column("sale_date", Date, nullable=True),
    Column("disposition", String(16), nullable=False),
    Column("notes", Text, nullable=False, default=""),
    Column("sold_by", String(128), nullable=False, default=""),
    Column("user_id", String(64), nullable=False, default=""),
    Column("yard_id", String(64), nullable=False, index=True),
    Column("actual_received_amount", Numeric(12, 2), nullable=True),
    Column("payment_status", String(32), nullable=False, default="completed"),
    Column("is_auto_transfer", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

holds_table = Table(
    HOLDS,
    metadata,
    Column("id", String(64), primary_key=True),
    Column("vehicle_id", String(64), nullable=False, index=True),
    Column("vehicle_json", JSON, nullable=False, default=dict),
    Column("yard_id", String(64), nullable=False, index=True),
    Column("impound_status", String(32), nullable=False, index=True),
    Column("impound_date", Date, nullable=True),
    Column("release_date", Date, nullable=True),
    Column("auction_date", Date, nullable=True),
    Column("impound_reason", Text, nullable=False, default=""),
    Column("impound_authority", String(255), nullable=False, default=""),
    Column("storage_location", String(255), nullable=False, default=""),
    Column("released_to", String(255), nullable=False, default=""),
    Column("fees_collected", Numeric(12, 2), nullable=True),
    Column("license_plate", String(32), nullable=False, default=""),
    Column("vehicle_color", String(32), nullable=False, default=""),
    Column("notes", Text, nullable=False, default=""),
    Column("auto_transfer_date", Date, nullable=True),
    Column("auto_transfer_sale_id", String(64), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=True),
)

ledger_table = Table(
    LEDGER,
    metadata,
    Column("id", String(64), primary_key=True),
    Column("driver_id", String(64), nullable=False, index=True),
    Column("yard_id", String(64), nullable=False, default="", index=True),
    Column("entry_type", String(32), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("reason", Text, nullable=False, default=""),
    Column("actor", String(128), nullable=False, default=""),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("seq", Integer, nullable=False, default=0),
    Column("related_sale_id", String(64), nullable=True),
    Column("related_vin", String(32), nullable=True),
    UniqueConstraint("driver_id", "seq", name="uq_cash_ledger_driver_seq"),
)

reports_table = Table(
    REPORTS,
    metadata,
    Column("id", String(160), primary_key=True),
    Column("vehicle_id", String(64), nullable=False, index=True),
    Column("sale_id", String(64), nullable=True),
    Column("vin", String(32), nullable=False, default=""),
    Column("report_type", String(16), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("schedule_date", DateTime(timezone=True), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("submitted_at", DateTime(timezone=True), nullable=True),
    Column("last_error", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=True),
)

TABLES: dict[str, Table] = {t.name: t for t in metadata.sorted_tables}


@dataclass(frozen=True)
class ConditionalUpdate:
    """Update one row only if every ``expected`` column still holds its value.

    ``None`` means the column must be NULL; a list means any of its values.
    """

    table: str
    record_id: str
    expected: Mapping[str, Any]
    values: Mapping[str, Any] = field(default_factory=dict)


class _GuardFailed(Exception):
    pass


def _matches(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    for column, wanted in filters.items():
        value = row.get(column)
        if wanted is None:
            if value is not None:
                return False
        elif isinstance(wanted, (list, tuple, set, frozenset)):
            if value not in wanted:
                return False
        elif value != wanted:
            return False
    return True


def _clauses(table: Table, filters: Mapping[str, Any]) -> list[Any]:
    clauses = []
    for column, wanted in filters.items():
        col = table.c[column]
        if wanted is None:
            clauses.append(col.is_(None))
        elif isinstance(wanted, (list, tuple, set, frozenset)):
            clauses.append(col.in_(list(wanted)))
        else:
            clauses.append(col == wanted)
    return clauses


def _columns(table: Table, record: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in record.items() if k in table.c}


class RedisCache:
    def __init__(self, redis_url: str, namespace: str = "salvage") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            logger.warning("Redis unavailable at %s; using in-process cache", self.redis_url)
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    def _mem_get(self, full_key: str) -> str | None:
        expires = self._expiry.get(full_key)
        if expires is not None and time.monotonic() > expires:
            self._mem.pop(full_key, None)
            self._expiry.pop(full_key, None)
            return None
        return self._mem.get(full_key)

    async def get_json(self, key: str) -> Any | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                logger.warning("Redis read failed for %s", full_key, exc_info=True)
                return None
        raw = self._mem_get(full_key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value, default=str)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception:
                logger.warning("Redis write failed for %s; caching in-process", full_key)
        self._mem[full_key] = payload
        self._expiry[full_key] = time.monotonic() + ttl_seconds

    async def delete(self, key: str) -> None:
        full_key = self._build_key(key)
        self._mem.pop(full_key, None)
        self._expiry.pop(full_key, None)
        if self._client is not None:
            try:
                await self._client.delete(full_key)
            except Exception:
                logger.warning("Redis delete failed for %s", full_key, exc_info=True)


class YardStore:
    """Durable record store. Falls back to in-process tables when the database is unreachable.

    In fallback mode every guard check and its mutation happen without an
    ``await`` in between, so conditional writes stay atomic on the event loop.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in TABLES}

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception:
            logger.warning("Database unavailable; using in-memory tables", exc_info=True)
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None or self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    @asynccontextmanager
    async def _begin(self) -> AsyncIterator[AsyncConnection]:
        assert self.engine is not None
        try:
            async with self.engine.begin() as conn:
                yield conn
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"storage failure: {exc}") from exc

    async def get(self, table: str, filters: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        filters = filters or {}
        if self.engine is None:
            return [dict(row) for row in self._mem[table].values() if _matches(row, filters)]
        tbl = TABLES[table]
        stmt = select(tbl).where(*_clauses(tbl, filters))
        async with self._begin() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    async def get_one(self, table: str, record_id: str) -> dict[str, Any] | None:
        rows = await self.get(table, {"id": record_id})
        return rows[0] if rows else None

    async def search(self, table: str, column: str, fragment: str) -> list[dict[str, Any]]:
        needle = fragment.lower()
        if self.engine is None:
            return [dict(row) for row in self._mem[table].values() if needle in str(row.get(column) or "").lower()]
        tbl = TABLES[table]
        stmt = select(tbl).where(func.lower(tbl.c[column]).contains(needle, autoescape=True))
        async with self._begin() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    async def upsert(self, table: str, record: Mapping[str, Any]) -> str:
        tbl = TABLES[table]
        row = _columns(tbl, record)
        if self.engine is None:
            self._mem[table][row["id"]] = dict(row)
            return row["id"]
        stmt = pg_insert(tbl).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=[tbl.c.id],
            set_={k: v for k, v in row.items() if k != "id"},
        )
        async with self._begin() as conn:
            await conn.execute(stmt)
        return row["id"]

    async def delete(self, table: str, record_id: str) -> bool:
        return await self.delete_where(table, {"id": record_id}) > 0

    async def delete_where(self, table: str, filters: Mapping[str, Any]) -> int:
        if self.engine is None:
            doomed = [rid for rid, row in self._mem[table].items() if _matches(row, filters)]
            for rid in doomed:
                del self._mem[table][rid]
            return len(doomed)
        tbl = TABLES[table]
        async with self._begin() as conn:
            result = await conn.execute(delete(tbl).where(*_clauses(tbl, filters)))
        return result.rowcount

    async def update_where(
        self, table: str, record_id: str, expected: Mapping[str, Any], values: Mapping[str, Any]
    ) -> bool:
        """Conditional single-row update; False when the row is missing or a guard no longer holds."""
        return await self.apply([ConditionalUpdate(table, record_id, expected, values)])

    async def apply(
        self,
        updates: Sequence[ConditionalUpdate],
        inserts: Sequence[tuple[str, Mapping[str, Any]]] = (),
        absent: Sequence[tuple[str, Mapping[str, Any]]] = (),
    ) -> bool:
        """All-or-nothing: every guarded update and every insert commits, or none does.

        ``absent`` lists ``(table, filters)`` pairs that must match no row at
        commit time. An insert that collides with an existing key or unique
        constraint loses like a failed guard.
        """
        if self.engine is None:
            return self._apply_in_memory(updates, inserts, absent)
        try:
            async with self._begin() as conn:
                for change in updates:
                    tbl = TABLES[change.table]
                    stmt = (
                        update(tbl)
                        .where(tbl.c.id == change.record_id)
                        .where(*_clauses(tbl, change.expected))
                        .values(**_columns(tbl, change.values))
                    )
                    result = await conn.execute(stmt)
                    if result.rowcount != 1:
                        raise _GuardFailed(f"{change.table}/{change.record_id}")
                for table, filters in absent:
                    tbl = TABLES[table]
                    found = await conn.execute(select(tbl.c.id).where(*_clauses(tbl, filters)).limit(1))
                    if found.first() is not None:
                        raise _GuardFailed(f"{table} {dict(filters)}")
                for table, record in inserts:
                    tbl = TABLES[table]
                    try:
                        await conn.execute(pg_insert(tbl).values(**_columns(tbl, record)))
                    except IntegrityError as exc:
                        raise _GuardFailed(f"{table}/{record.get('id')}") from exc
        except _GuardFailed as lost:
            logger.info("Conditional write lost its guard on %s", lost)
            return False
        return True

    def _apply_in_memory(
        self,
        updates: Sequence[ConditionalUpdate],
        inserts: Sequence[tuple[str, Mapping[str, Any]]],
        absent: Sequence[tuple[str, Mapping[str, Any]]],
    ) -> bool:
        for change in updates:
            row = self._mem[change.table].get(change.record_id)
            if row is None or not _matches(row, change.expected):
                logger.info("Conditional write lost its guard on %s/%s", change.table, change.record_id)
                return False
        for table, filters in absent:
            if any(_matches(row, filters) for row in self._mem[table].values()):
                logger.info("Conditional write lost its guard on %s %s", table, dict(filters))
                return False
        for table, record in inserts:
            if record["id"] in self._mem[table]:
                return False
        for change in updates:
            self._mem[change.table][change.record_id].update(_columns(TABLES[change.table], change.values))
        for table, record in inserts:
            self._mem[table][record["id"]] = _columns(TABLES[table], record)
        return True
