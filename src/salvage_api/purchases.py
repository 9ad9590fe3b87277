from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from salvage.data_models import ComplianceReportEntry, ImpoundHold, VehicleRecord
from salvage.errors import PartialSuccessWarning
from salvage_api.compliance import ComplianceReportBuilder
from salvage_api.holds import HoldManager
from salvage_api.ledger import CashLedger
from salvage_api.vehicles import VehicleRecordStore
from salvage_api.vin import VinDecoder

logger = logging.getLogger(__name__)


@dataclass
class PurchaseOutcome:
    vehicle: VehicleRecord
    hold: ImpoundHold | None = None
    report: ComplianceReportEntry | None = None
    warnings: list[PartialSuccessWarning] = field(default_factory=list)


class PurchaseRecorder:
    """Incoming vehicle purchases.

    An ordinary purchase debits the acquiring driver's drawer and schedules the
    NMVTIS junk-vehicle report. An impound/lien purchase instead opens a
    pending hold; it is reported when the hold resolves.
    """

    def __init__(
        self,
        vehicles: VehicleRecordStore,
        holds: HoldManager,
        ledger: CashLedger,
        compliance: ComplianceReportBuilder,
        *,
        vin_decoder: VinDecoder | None = None,
    ) -> None:
        self.vehicles = vehicles
        self.holds = holds
        self.ledger = ledger
        self.compliance = compliance
        self.vin_decoder = vin_decoder

    async def _fill_from_vin(self, data: dict[str, Any]) -> None:
        vin = str(data.get("vin") or "").strip()
        if self.vin_decoder is None or not vin or (data.get("year") and data.get("make")):
            return
        decoded = await self.vin_decoder.decode(vin)
        if not data.get("year") and decoded.get("year"):
            data["year"] = decoded["year"]
        if not data.get("make") and decoded.get("make"):
            data["make"] = decoded["make"]

    async def record_purchase(
        self, data: Mapping[str, Any], *, actor: str, hold: Mapping[str, Any] | None = None
    ) -> PurchaseOutcome:
        payload = dict(data)
        await self._fill_from_vin(payload)
        vehicle = await self.vehicles.create_vehicle_record(payload)
        outcome = PurchaseOutcome(vehicle=vehicle)

        if vehicle.is_impound_or_lien:
            details = dict(hold or {})
            impound_date = details.pop("impound_date", None)
            try:
                outcome.hold = await self.holds.place_hold(vehicle.id, impound_date=impound_date, **details)
            except Exception as exc:
                outcome.warnings.append(self._partial("impound_hold", vehicle, exc))
            return outcome

        try:
            await self.ledger.record_purchase(
                vehicle.driver_id,
                vehicle.purchase_price,
                vehicle.vin,
                vehicle.id,
                actor=actor,
                yard_id=vehicle.yard_id,
            )
        except Exception as exc:
            outcome.warnings.append(self._partial("cash_ledger", vehicle, exc))
        try:
            outcome.report = await self.compliance.schedule_purchase_report(vehicle)
        except Exception as exc:
            outcome.warnings.append(self._partial("compliance", vehicle, exc))
        return outcome

    @staticmethod
    def _partial(step: str, vehicle: VehicleRecord, exc: Exception) -> PartialSuccessWarning:
        logger.warning("Purchase %s recorded but %s step failed: %s", vehicle.id, step, exc, exc_info=True)
        return PartialSuccessWarning(step, str(exc))
