from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Any, Mapping

from salvage.bill_of_sale import BillOfSale
from salvage.clock import Clock, utc_now
from salvage.config import YardConfig
from salvage.data_models import (
    Buyer,
    Disposition,
    SaleRecord,
    jsonable,
    new_id,
    parse_date,
    parse_disposition,
    to_money,
)
from salvage.errors import (
    ConflictError,
    NotFoundError,
    PartialSuccessWarning,
    ValidationError,
    VehicleOnHoldError,
)
from salvage_api.compliance import ComplianceReportBuilder
from salvage_api.holds import HoldManager, open_hold_filter
from salvage_api.ledger import CashLedger
from salvage_api.logging_config import audit
from salvage_api.mailer import BrevoMailer
from salvage_api.storage import SALES, VEHICLES, ConditionalUpdate, YardStore
from salvage_api.vehicles import VehicleRecordStore

logger = logging.getLogger(__name__)


@dataclass
class SaleOutcome:
    sale: SaleRecord
    bill_of_sale: BillOfSale | None = None
    warnings: list[PartialSuccessWarning] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.warnings


class SaleRecorder:
    """Records an outgoing disposition.

    The sale record and the vehicle's disposition change commit together in
    one conditional write. The cash ledger entry, the NMVTIS disposition report
    and the MV2459 email follow as best-effort steps: a failure there is
    returned as a warning and never undoes the sale.
    """

    def __init__(
        self,
        store: YardStore,
        vehicles: VehicleRecordStore,
        holds: HoldManager,
        ledger: CashLedger,
        compliance: ComplianceReportBuilder,
        config: YardConfig,
        *,
        clock: Clock = utc_now,
        mailer: BrevoMailer | None = None,
    ) -> None:
        self.store = store
        self.vehicles = vehicles
        self.holds = holds
        self.ledger = ledger
        self.compliance = compliance
        self.config = config
        self.clock = clock
        self.mailer = mailer

    async def get_sale(self, sale_id: str) -> SaleRecord:
        row = await self.store.get_one(SALES, sale_id)
        if row is None:
            raise NotFoundError("sale", sale_id)
        return SaleRecord.from_row(row)

    async def list_sales(self, yard_id: str | None = None) -> list[SaleRecord]:
        rows = await self.store.get(SALES, {"yard_id": yard_id} if yard_id else None)
        sales = [SaleRecord.from_row(row) for row in rows]
        return sorted(sales, key=lambda s: (s.sale_date or date.min, s.id), reverse=True)

    def _validate(
        self,
        buyer: Buyer,
        sale_price: Any,
        sale_date: Any,
        disposition: Any,
        actual_received_amount: Any,
    ) -> tuple[Decimal, date, Disposition, Decimal | None]:
        bad: list[str] = []
        for name in ("name", "address", "phone"):
            if not getattr(buyer, name).strip():
                bad.append(f"buyer_{name}")

        def attempt(field_name: str, parse):
            try:
                return parse()
            except ValidationError:
                bad.append(field_name)
                return None

        price = attempt("sale_price", lambda: to_money(sale_price, "sale_price"))
        day = attempt("sale_date", lambda: parse_date(sale_date, "sale_date"))
        target = attempt("disposition", lambda: parse_disposition(disposition))
        if target is Disposition.TBD:
            bad.append("disposition")
        received = None
        if actual_received_amount not in (None, ""):
            received = attempt("actual_received_amount", lambda: to_money(actual_received_amount, "actual_received_amount"))
        if bad:
            raise ValidationError(bad)
        return price, day or self.clock().date(), target, received

    async def record_sale(
        self,
        vehicle_id: str,
        buyer: Buyer | Mapping[str, Any],
        sale_price: Any,
        sale_date: date | str | None,
        disposition: Disposition | str,
        notes: str = "",
        actor: str = "",
        *,
        driver_id: str | None = None,
        actual_received_amount: Any = None,
        send_bill_of_sale: bool = False,
    ) -> SaleOutcome:
        buyer = Buyer.coerce(buyer)
        price, day, target, received = self._validate(buyer, sale_price, sale_date, disposition, actual_received_amount)

        vehicle = await self.vehicles.get(vehicle_id)
        if vehicle.disposition is not Disposition.TBD:
            raise ConflictError(f"vehicle {vehicle_id} is already {vehicle.disposition.value}")
        blocked = await self.holds.sale_block_reason(vehicle)
        if blocked:
            raise VehicleOnHoldError(blocked)

        sale = SaleRecord(
            id=new_id("SALE"),
            original_transaction_id=vehicle.id,
            vehicle=jsonable(vehicle.to_row()),
            buyer=buyer,
            sale_price=price,
            sale_date=day,
            disposition=target,
            notes=notes,
            sold_by=actor,
            user_id=driver_id or actor,
            yard_id=vehicle.yard_id,
            actual_received_amount=received if received is not None else price,
            created_at=self.clock(),
        )
        committed = await self.store.apply(
            updates=[
                ConditionalUpdate(
                    VEHICLES,
                    vehicle.id,
                    expected={"disposition": Disposition.TBD.value},
                    values={"disposition": target.value, "sale_record_id": sale.id},
                )
            ],
            inserts=[(SALES, sale.to_row())],
            absent=[open_hold_filter(vehicle.id)],
        )
        if not committed:
            latest = await self.vehicles.get(vehicle_id)
            blocked = await self.holds.sale_block_reason(latest)
            if blocked and latest.disposition is Disposition.TBD:
                raise VehicleOnHoldError(blocked)
            raise ConflictError(f"vehicle {vehicle_id} was changed by another session; reload and retry")
        logger.info(
            "Recorded %s of vehicle %s (%s) to %s",
            target.value,
            vehicle.id,
            vehicle.vin,
            buyer.name,
            extra=audit(sale_id=sale.id, price=price, actor=actor),
        )

        outcome = SaleOutcome(sale=sale)
        sold = replace(vehicle, disposition=target, sale_record_id=sale.id)
        try:
            sold = await self.vehicles.refresh_cache(vehicle.id)
        except Exception as exc:
            outcome.warnings.append(self._partial("cache", sale, exc))

        try:
            await self.ledger.record_sale_proceeds(
                driver_id or actor, price, vehicle.vin, sale.id, actor=actor, yard_id=vehicle.yard_id
            )
        except Exception as exc:
            outcome.warnings.append(self._partial("cash_ledger", sale, exc))

        try:
            await self.compliance.record_disposition_report(sold, sale)
        except Exception as exc:
            outcome.warnings.append(self._partial("compliance", sale, exc))

        try:
            outcome.bill_of_sale = self.compliance.build_bill_of_sale(sold, sale)
        except Exception as exc:
            outcome.warnings.append(self._partial("bill_of_sale", sale, exc))

        if send_bill_of_sale and outcome.bill_of_sale is not None:
            await self._email(outcome)
        return outcome

    async def _email(self, outcome: SaleOutcome) -> None:
        sale = outcome.sale
        if self.mailer is None or not self.mailer.enabled:
            outcome.warnings.append(PartialSuccessWarning("email", "email delivery is not configured"))
            return
        if not sale.buyer.email:
            outcome.warnings.append(PartialSuccessWarning("email", "buyer has no email address on file"))
            return
        result = await self.mailer.send_bill_of_sale(outcome.bill_of_sale, sale.buyer.email, sale.buyer.name)
        if not result.success:
            logger.warning("MV2459 for sale %s not emailed: %s", sale.id, result.error)
            outcome.warnings.append(PartialSuccessWarning("email", result.error or "send failed"))

    @staticmethod
    def _partial(step: str, sale: SaleRecord, exc: Exception) -> PartialSuccessWarning:
        logger.warning("Sale %s committed but %s step failed: %s", sale.id, step, exc, exc_info=True)
        return PartialSuccessWarning(step, str(exc))
