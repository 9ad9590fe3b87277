from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Any, Mapping

from salvage.clock import Clock, utc_now
from salvage.config import YardConfig
from salvage.data_models import (
    Disposition,
    ImpoundHold,
    ImpoundStatus,
    SaleRecord,
    VehicleRecord,
    jsonable,
    new_id,
    parse_date,
    parse_impound_status,
)
from salvage.errors import ConflictError, NotFoundError, PartialSuccessWarning, ValidationError
from salvage_api.compliance import ComplianceReportBuilder
from salvage_api.logging_config import audit
from salvage_api.storage import HOLDS, SALES, VEHICLES, ConditionalUpdate, YardStore
from salvage_api.vehicles import VehicleRecordStore

logger = logging.getLogger(__name__)

HOLD_FIELDS = frozenset(
    {
        "impound_reason",
        "impound_authority",
        "storage_location",
        "released_to",
        "fees_collected",
        "license_plate",
        "vehicle_color",
        "notes",
    }
)
EDITABLE_FIELDS = HOLD_FIELDS | {"impound_status", "impound_date", "release_date", "auction_date"}

_TRANSITIONS = {
    ImpoundStatus.PENDING: {ImpoundStatus.PROCESSED},
    ImpoundStatus.PROCESSED: {ImpoundStatus.RELEASED, ImpoundStatus.AUCTIONED},
}
_OPEN_STATUSES = [ImpoundStatus.PENDING.value, ImpoundStatus.PROCESSED.value]


@dataclass(frozen=True)
class AutoTransfer:
    hold_id: str
    vehicle_id: str
    sale: SaleRecord
    warnings: tuple[PartialSuccessWarning, ...] = ()


def _append_note(notes: str, line: str) -> str:
    return f"{notes.rstrip()}\n{line}" if notes.strip() else line


def open_hold_filter(vehicle_id: str) -> tuple[str, dict[str, Any]]:
    """Store filter matching any hold that still blocks a sale of the vehicle."""
    return HOLDS, {"vehicle_id": vehicle_id, "impound_status": _OPEN_STATUSES}


class HoldManager:
    """Impound/lien holds: placement, manual status edits and the automatic transfer sweep.

    A held vehicle is not for sale. Once a processed hold reaches its release
    date, ``reconcile`` sells it to the yard's downstream recipient in one
    conditional write; re-running the sweep can never sell it twice.
    """

    def __init__(
        self,
        store: YardStore,
        vehicles: VehicleRecordStore,
        compliance: ComplianceReportBuilder,
        config: YardConfig,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.vehicles = vehicles
        self.compliance = compliance
        self.config = config
        self.clock = clock

    async def get_hold(self, hold_id: str) -> ImpoundHold:
        row = await self.store.get_one(HOLDS, hold_id)
        if row is None:
            raise NotFoundError("impound hold", hold_id)
        return ImpoundHold.from_row(row)

    async def list_holds(
        self, yard_id: str | None = None, status: ImpoundStatus | str | None = None
    ) -> list[ImpoundHold]:
        filters: dict[str, Any] = {}
        if yard_id:
            filters["yard_id"] = yard_id
        if status:
            filters["impound_status"] = parse_impound_status(status).value
        holds = [ImpoundHold.from_row(row) for row in await self.store.get(HOLDS, filters)]
        return sorted(holds, key=lambda h: (h.impound_date or date.min, h.id))

    async def holds_for(self, vehicle_id: str) -> list[ImpoundHold]:
        return [ImpoundHold.from_row(row) for row in await self.store.get(HOLDS, {"vehicle_id": vehicle_id})]

    async def active_hold_for(self, vehicle_id: str) -> ImpoundHold | None:
        for hold in await self.holds_for(vehicle_id):
            if not hold.is_terminal:
                return hold
        return None

    async def sale_block_reason(self, vehicle: VehicleRecord) -> str | None:
        """Why a manual sale of ``vehicle`` must be refused, or None when it may be sold."""
        holds = await self.holds_for(vehicle.id)
        for hold in holds:
            if not hold.is_terminal:
                return f"vehicle {vehicle.id} is under {hold.impound_status.value} impound hold {hold.id}"
        if vehicle.is_impound_or_lien and not holds:
            return f"vehicle {vehicle.id} is flagged impound/lien and has no resolved hold"
        return None

    async def place_hold(
        self, vehicle_id: str, *, impound_date: date | str | None = None, **details: Any
    ) -> ImpoundHold:
        unknown = sorted(set(details) - HOLD_FIELDS)
        if unknown:
            raise ValidationError(unknown, "unknown hold fields: " + ", ".join(unknown))
        vehicle = await self.vehicles.get(vehicle_id)
        if vehicle.disposition is not Disposition.TBD:
            raise ConflictError(f"vehicle {vehicle_id} is already {vehicle.disposition.value}")
        active = await self.active_hold_for(vehicle_id)
        if active is not None:
            raise ConflictError(f"vehicle {vehicle_id} already has active hold {active.id}")

        hold = ImpoundHold.from_row(
            {
                **details,
                "id": new_id("HOLD"),
                "vehicle_id": vehicle.id,
                "vehicle_json": jsonable(vehicle.to_row()),
                "yard_id": vehicle.yard_id,
                "impound_status": ImpoundStatus.PENDING.value,
                "impound_date": parse_date(impound_date, "impound_date")
                or vehicle.purchase_date
                or self.clock().date(),
                "created_at": self.clock(),
            }
        )
        placed = await self.store.apply(
            updates=[
                ConditionalUpdate(
                    VEHICLES,
                    vehicle.id,
                    expected={"disposition": Disposition.TBD.value},
                    values={"disposition": Disposition.TBD.value},
                )
            ],
            inserts=[(HOLDS, hold.to_row())],
            absent=[open_hold_filter(vehicle.id)],
        )
        if not placed:
            raise ConflictError(f"vehicle {vehicle_id} was changed by another session; reload and retry")
        await self.vehicles.invalidate_availability(vehicle.yard_id)
        logger.info("Placed impound hold %s on vehicle %s (%s)", hold.id, vehicle.id, vehicle.vin)
        return hold

    async def update_hold(self, hold_id: str, changes: Mapping[str, Any]) -> ImpoundHold:
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(unknown, "fields not editable on a hold: " + ", ".join(unknown))
        hold = await self.get_hold(hold_id)
        updated = ImpoundHold.from_row({**hold.to_row(), **changes})
        target = updated.impound_status

        if target is not hold.impound_status:
            if hold.is_terminal:
                raise ConflictError(f"hold {hold_id} is already {hold.impound_status.value}")
            if target not in _TRANSITIONS.get(hold.impound_status, set()):
                raise ValidationError(
                    ["impound_status"],
                    f"cannot move hold from {hold.impound_status.value} to {target.value}",
                )

        if target is ImpoundStatus.PROCESSED and updated.release_date is None:
            if updated.impound_date is None:
                raise ValidationError(["impound_date"], "a processed hold needs an impound date")
            updated = replace(updated, release_date=updated.impound_date + timedelta(days=self.config.hold_days))
        if target is ImpoundStatus.RELEASED and not updated.released_to:
            logger.warning("Hold %s released without recording who it was released to", hold_id)

        values = {k: v for k, v in updated.to_row().items() if k not in ("id", "vehicle_id", "vehicle_json")}
        won = await self.store.update_where(
            HOLDS,
            hold_id,
            {"impound_status": hold.impound_status.value, "auto_transfer_date": None},
            values,
        )
        if not won:
            raise ConflictError(f"hold {hold_id} was changed by another session; reload and retry")
        if target is not hold.impound_status:
            await self.vehicles.invalidate_availability(hold.yard_id)
            logger.info("Hold %s moved %s -> %s", hold_id, hold.impound_status.value, target.value)
        return updated

    async def delete_hold(self, hold_id: str) -> None:
        hold = await self.get_hold(hold_id)
        await self.store.delete(HOLDS, hold_id)
        await self.vehicles.invalidate_availability(hold.yard_id)
        logger.warning("Deleted impound hold %s for vehicle %s", hold_id, hold.vehicle_id)

    async def reconcile(self, today: date | None = None) -> list[AutoTransfer]:
        """Auto-transfer every processed hold whose release date has arrived. Safe to rerun."""
        today = today or self.clock().date()
        rows = await self.store.get(
            HOLDS, {"impound_status": ImpoundStatus.PROCESSED.value, "auto_transfer_date": None}
        )
        due = [
            hold
            for hold in (ImpoundHold.from_row(row) for row in rows)
            if hold.release_date is not None and hold.release_date <= today
        ]
        transfers: list[AutoTransfer] = []
        for hold in sorted(due, key=lambda h: (h.release_date, h.id)):
            transfer = await self._auto_transfer(hold, today)
            if transfer is not None:
                transfers.append(transfer)
        if transfers:
            logger.info("Hold sweep auto-transferred %d vehicles", len(transfers))
        return transfers

    async def _auto_transfer(self, hold: ImpoundHold, today: date) -> AutoTransfer | None:
        row = await self.store.get_one(VEHICLES, hold.vehicle_id)
        if row is None:
            logger.error("Hold %s refers to missing vehicle %s; skipping", hold.id, hold.vehicle_id)
            return None
        vehicle = VehicleRecord.from_row(row)
        yard = self.config.yard
        recipient = self.config.default_recipient
        sale = SaleRecord(
            id=new_id("AUTO-TRANSFER"),
            original_transaction_id=vehicle.id,
            vehicle=jsonable(vehicle.to_row()),
            buyer=recipient,
            sale_price=vehicle.purchase_price,
            sale_date=today,
            disposition=Disposition.SOLD,
            notes=f"Automatic transfer from {yard.name} after {self.config.hold_days}-day impound hold period",
            sold_by=yard.name,
            user_id=self.config.auto_transfer_actor,
            yard_id=vehicle.yard_id,
            actual_received_amount=vehicle.purchase_price,
            is_auto_transfer=True,
            created_at=self.clock(),
        )
        note = f"Auto-transferred to {recipient.name} on {today.isoformat()} after {self.config.hold_days}-day hold period."
        committed = await self.store.apply(
            updates=[
                ConditionalUpdate(
                    HOLDS,
                    hold.id,
                    expected={"impound_status": ImpoundStatus.PROCESSED.value, "auto_transfer_date": None},
                    values={
                        "impound_status": ImpoundStatus.AUTO_TRANSFERRED.value,
                        "auto_transfer_date": today,
                        "auto_transfer_sale_id": sale.id,
                        "notes": _append_note(hold.notes, note),
                    },
                ),
                ConditionalUpdate(
                    VEHICLES,
                    vehicle.id,
                    expected={"disposition": Disposition.TBD.value},
                    values={"disposition": Disposition.SOLD.value, "sale_record_id": sale.id},
                ),
            ],
            inserts=[(SALES, sale.to_row())],
        )
        if not committed:
            latest = await self.get_hold(hold.id)
            if latest.auto_transfer_date is not None:
                logger.info("Hold %s was already auto-transferred by another sweep", hold.id)
            else:
                logger.warning(
                    "Hold %s not auto-transferred: vehicle %s is no longer TBD", hold.id, vehicle.id
                )
            return None

        logger.info(
            "Auto-transferred vehicle %s (%s) to %s",
            vehicle.id,
            vehicle.vin,
            recipient.name,
            extra=audit(hold_id=hold.id, sale_id=sale.id, price=sale.sale_price),
        )
        warnings: list[PartialSuccessWarning] = []
        sold = replace(vehicle, disposition=Disposition.SOLD, sale_record_id=sale.id)
        try:
            sold = await self.vehicles.refresh_cache(vehicle.id)
        except Exception as exc:
            logger.warning("Cache refresh failed after auto-transfer of %s", vehicle.id, exc_info=True)
            warnings.append(PartialSuccessWarning("cache", str(exc)))
        try:
            await self.compliance.record_disposition_report(sold, sale)
        except Exception as exc:
            logger.warning("Disposition report not queued for auto-transfer %s", sale.id, exc_info=True)
            warnings.append(PartialSuccessWarning("compliance", str(exc)))
        return AutoTransfer(hold_id=hold.id, vehicle_id=vehicle.id, sale=sale, warnings=tuple(warnings))
