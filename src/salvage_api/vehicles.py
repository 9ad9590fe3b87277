from __future__ import annotations

import logging
from typing import Any, Mapping
from uuid import uuid4

from salvage.aamva import vin_problems
from salvage.clock import Clock, utc_now
from salvage.data_models import (
    Disposition,
    ImpoundStatus,
    VehicleRecord,
    jsonable,
    new_id,
    parse_date,
    parse_disposition,
    to_money,
)
from salvage.errors import ConflictError, NotFoundError, ValidationError
from salvage_api.logging_config import audit
from salvage_api.storage import HOLDS, REPORTS, SALES, VEHICLES, RedisCache, YardStore

logger = logging.getLogger(__name__)

_OPEN_HOLD_STATUSES = [ImpoundStatus.PENDING.value, ImpoundStatus.PROCESSED.value]


class VehicleRecordStore:
    """Purchased-vehicle records and their single forward-only disposition change.

    The durable store is authoritative. The cache holds per-vehicle rows and
    per-yard availability lists; both are rewritten or invalidated on every
    disposition change so an available list never shows a sold vehicle.
    """

    def __init__(
        self,
        store: YardStore,
        cache: RedisCache,
        *,
        clock: Clock = utc_now,
        vehicle_ttl_seconds: int = 86_400,
        availability_ttl_seconds: int = 3_600,
    ) -> None:
        self.store = store
        self.cache = cache
        self.clock = clock
        self.vehicle_ttl_seconds = vehicle_ttl_seconds
        self.availability_ttl_seconds = availability_ttl_seconds

    @staticmethod
    def _vehicle_key(vehicle_id: str) -> str:
        return f"vehicle:{vehicle_id}"

    @staticmethod
    def _available_key(yard_id: str) -> str:
        return f"available:{yard_id}"

    @staticmethod
    def _generation_key(yard_id: str) -> str:
        return f"available_gen:{yard_id}"

    async def create_vehicle_record(self, data: Mapping[str, Any]) -> VehicleRecord:
        missing = [name for name in ("driver_id", "yard_id") if not str(data.get(name) or "").strip()]
        if missing:
            raise ValidationError(missing)
        price = to_money(data.get("purchase_price"), "purchase_price")
        now = self.clock()
        record = VehicleRecord.from_row(
            {
                **data,
                "id": new_id("VEH"),
                "purchase_price": price,
                "purchase_date": parse_date(data.get("purchase_date"), "purchase_date") or now.date(),
                "disposition": Disposition.TBD.value,
                "sale_record_id": None,
                "created_at": now,
            }
        )
        problems = vin_problems(record.vin)
        if problems:
            logger.warning("Vehicle %s recorded with questionable VIN %r: %s", record.id, record.vin, "; ".join(problems))
        await self.store.upsert(VEHICLES, record.to_row())
        await self.mark_changed(record)
        logger.info("Recorded vehicle %s (%s)", record.id, record.vin, extra=audit(yard_id=record.yard_id, price=price))
        return record

    async def get(self, vehicle_id: str, *, cached: bool = False) -> VehicleRecord:
        if cached:
            hit = await self.cache.get_json(self._vehicle_key(vehicle_id))
            if hit is not None:
                return VehicleRecord.from_row(hit)
        row = await self.store.get_one(VEHICLES, vehicle_id)
        if row is None:
            raise NotFoundError("vehicle", vehicle_id)
        record = VehicleRecord.from_row(row)
        if cached:
            await self.cache.set_json(self._vehicle_key(vehicle_id), jsonable(record.to_row()), self.vehicle_ttl_seconds)
        return record

    async def set_disposition(
        self, vehicle_id: str, new_disposition: Disposition | str, sale_record_id: str | None
    ) -> VehicleRecord:
        target = parse_disposition(new_disposition)
        if target is Disposition.TBD:
            raise ValidationError(["disposition"], "a vehicle cannot be returned to TBD")
        current = await self.get(vehicle_id)
        if current.disposition is target:
            return current
        if current.disposition is not Disposition.TBD:
            raise ConflictError(f"vehicle {vehicle_id} is already {current.disposition.value}")

        won = await self.store.update_where(
            VEHICLES,
            vehicle_id,
            {"disposition": Disposition.TBD.value},
            {"disposition": target.value, "sale_record_id": sale_record_id},
        )
        if not won:
            latest = await self.refresh_cache(vehicle_id)
            if latest.disposition is target:
                return latest
            raise ConflictError(f"vehicle {vehicle_id} was changed to {latest.disposition.value} by another writer")
        return await self.refresh_cache(vehicle_id)

    async def refresh_cache(self, vehicle_id: str) -> VehicleRecord:
        """Re-read the durable row, rewrite its cache entry and drop the yard's availability list."""
        record = await self.get(vehicle_id)
        await self.mark_changed(record)
        return record

    async def mark_changed(self, record: VehicleRecord) -> None:
        await self.cache.set_json(self._vehicle_key(record.id), jsonable(record.to_row()), self.vehicle_ttl_seconds)
        await self.invalidate_availability(record.yard_id)

    async def invalidate_availability(self, yard_id: str) -> None:
        # a fresh generation orphans any list computed from reads made before this change
        await self.cache.set_json(self._generation_key(yard_id), uuid4().hex, self.availability_ttl_seconds)
        await self.cache.delete(self._available_key(yard_id))

    async def query_by_yard(self, yard_id: str) -> list[VehicleRecord]:
        rows = await self.store.get(VEHICLES, {"yard_id": yard_id})
        return self._sorted(rows)

    async def query_by_vin_substring(self, fragment: str) -> list[VehicleRecord]:
        fragment = (fragment or "").strip()
        if not fragment:
            raise ValidationError(["vin"], "VIN search needs at least one character")
        rows = await self.store.search(VEHICLES, "vin", fragment)
        return self._sorted(rows)

    async def list_available(self, yard_id: str) -> list[VehicleRecord]:
        key = self._available_key(yard_id)
        generation = await self.cache.get_json(self._generation_key(yard_id))
        cached = await self.cache.get_json(key)
        if isinstance(cached, dict) and cached.get("generation") == generation:
            return [VehicleRecord.from_row(row) for row in cached["vehicles"]]
        rows = await self.store.get(VEHICLES, {"yard_id": yard_id, "disposition": Disposition.TBD.value})
        holds = await self.store.get(HOLDS, {"yard_id": yard_id})
        held = {h["vehicle_id"] for h in holds if h["impound_status"] in _OPEN_HOLD_STATUSES}
        resolved = {h["vehicle_id"] for h in holds} - held
        # flagged impound/lien vehicles become sellable only once a hold on them is resolved
        records = [
            r
            for r in self._sorted(rows)
            if r.id not in held and (not r.is_impound_or_lien or r.id in resolved)
        ]
        await self.cache.set_json(
            key,
            {"generation": generation, "vehicles": [jsonable(r.to_row()) for r in records]},
            self.availability_ttl_seconds,
        )
        return records

    async def sync(self, yard_id: str | None = None) -> int:
        """Rewrite the cache from the durable store; the store wins every disagreement."""
        rows = await self.store.get(VEHICLES, {"yard_id": yard_id} if yard_id else None)
        yards: set[str] = set()
        for row in rows:
            record = VehicleRecord.from_row(row)
            await self.cache.set_json(self._vehicle_key(record.id), jsonable(record.to_row()), self.vehicle_ttl_seconds)
            yards.add(record.yard_id)
        for yard in yards:
            await self.invalidate_availability(yard)
        logger.info("Synced %d vehicle records across %d yards", len(rows), len(yards))
        return len(rows)

    async def delete_vehicle_record(self, vehicle_id: str) -> None:
        record = await self.get(vehicle_id)
        sales = await self.store.delete_where(SALES, {"original_transaction_id": vehicle_id})
        holds = await self.store.delete_where(HOLDS, {"vehicle_id": vehicle_id})
        reports = await self.store.delete_where(REPORTS, {"vehicle_id": vehicle_id})
        await self.store.delete(VEHICLES, vehicle_id)
        await self.cache.delete(self._vehicle_key(vehicle_id))
        await self.invalidate_availability(record.yard_id)
        logger.warning(
            "Deleted vehicle %s (%s) with %d sales, %d holds, %d compliance entries",
            vehicle_id,
            record.vin,
            sales,
            holds,
            reports,
        )

    @staticmethod
    def _sorted(rows: list[dict[str, Any]]) -> list[VehicleRecord]:
        records = [VehicleRecord.from_row(row) for row in rows]
        return sorted(records, key=lambda r: (r.created_at is None, r.created_at, r.id))
