from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any

from salvage.clock import Clock, utc_now
from salvage.data_models import (
    ZERO,
    CashLedgerEntry,
    LedgerEntryType,
    new_id,
    parse_entry_type,
    to_money,
)
from salvage.errors import ConflictError, ValidationError
from salvage.ledger import compute_balance, running_balances
from salvage_api.logging_config import audit
from salvage_api.storage import LEDGER, YardStore

logger = logging.getLogger(__name__)

_SEQ_ATTEMPTS = 5


class CashLedger:
    """Append-only per-driver cash ledger; balances are always replayed, never stored."""

    def __init__(self, store: YardStore, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock

    async def _entries(self, driver_id: str) -> list[CashLedgerEntry]:
        rows = await self.store.get(LEDGER, {"driver_id": driver_id})
        return [CashLedgerEntry.from_row(row) for row in rows]

    async def append_entry(
        self,
        driver_id: str,
        entry_type: LedgerEntryType | str,
        amount: Any,
        reason: str,
        actor: str,
        *,
        yard_id: str = "",
        related_sale_id: str | None = None,
        related_vin: str | None = None,
    ) -> CashLedgerEntry:
        if not (driver_id or "").strip():
            raise ValidationError(["driver_id"])
        kind = parse_entry_type(entry_type)
        value = to_money(amount, "amount", allow_negative=kind is LedgerEntryType.ADJUSTMENT)

        for _ in range(_SEQ_ATTEMPTS):
            existing = await self._entries(driver_id)
            seq = max((e.seq for e in existing), default=0) + 1
            entry = CashLedgerEntry(
                id=new_id("CASH"),
                driver_id=driver_id,
                entry_type=kind,
                amount=value,
                timestamp=self.clock(),
                seq=seq,
                yard_id=yard_id,
                reason=reason,
                actor=actor,
                related_sale_id=related_sale_id,
                related_vin=related_vin,
            )
            claimed = await self.store.apply(
                [],
                inserts=[(LEDGER, entry.to_row())],
                absent=[(LEDGER, {"driver_id": driver_id, "seq": seq})],
            )
            if claimed:
                break
            logger.info("Ledger seq %s for driver %s taken by a concurrent append; retrying", seq, driver_id)
        else:
            raise ConflictError(f"could not append to the ledger of driver {driver_id}; retry")
        logger.info(
            "Ledger %s of %s for driver %s",
            kind.value,
            value,
            driver_id,
            extra=audit(entry_id=entry.id, actor=actor, reason=reason, sale_id=related_sale_id),
        )
        return entry

    async def get_balance(self, driver_id: str) -> Decimal:
        return compute_balance(await self._entries(driver_id))

    async def history(self, driver_id: str, limit: int | None = None) -> list[tuple[CashLedgerEntry, Decimal]]:
        """Entries newest first, each with the running balance right after it."""
        lines = list(reversed(running_balances(await self._entries(driver_id))))
        return lines[:limit] if limit else lines

    async def record_sale_proceeds(
        self, driver_id: str, amount: Any, vin: str, sale_id: str, *, actor: str, yard_id: str = ""
    ) -> CashLedgerEntry:
        return await self.append_entry(
            driver_id,
            LedgerEntryType.SALE_PROCEEDS,
            amount,
            f"Vehicle sale - VIN: {vin}",
            actor,
            yard_id=yard_id,
            related_sale_id=sale_id,
            related_vin=vin,
        )

    async def record_purchase(
        self, driver_id: str, amount: Any, vin: str, vehicle_id: str, *, actor: str, yard_id: str = ""
    ) -> CashLedgerEntry:
        return await self.append_entry(
            driver_id,
            LedgerEntryType.PURCHASE,
            amount,
            f"Vehicle purchase - VIN: {vin}",
            actor,
            yard_id=yard_id,
            related_sale_id=vehicle_id,
            related_vin=vin,
        )

    async def set_balance(
        self, driver_id: str, new_balance: Any, reason: str, actor: str, *, yard_id: str = ""
    ) -> CashLedgerEntry:
        amount = to_money(new_balance, "amount")
        note = f"Balance set to ${amount}"
        return await self.append_entry(
            driver_id,
            LedgerEntryType.SET_BALANCE,
            amount,
            f"{note}: {reason}" if reason else note,
            actor,
            yard_id=yard_id,
        )

    async def record_sale_adjustment(
        self,
        driver_id: str,
        estimated: Any,
        actual: Any,
        vin: str,
        sale_id: str,
        actor: str,
        *,
        yard_id: str = "",
    ) -> CashLedgerEntry | None:
        """Book the difference between the expected and the actually received sale amount."""
        difference = to_money(actual, "actual") - to_money(estimated, "estimated")
        if difference == ZERO:
            return None
        return await self.append_entry(
            driver_id,
            LedgerEntryType.ADJUSTMENT,
            difference,
            f"Sale adjustment - VIN: {vin} (received ${to_money(actual, 'actual')})",
            actor,
            yard_id=yard_id,
            related_sale_id=sale_id,
            related_vin=vin,
        )

    async def yard_summary(self, yard_id: str) -> dict[str, Any]:
        rows = await self.store.get(LEDGER, {"yard_id": yard_id})
        by_driver: dict[str, list[CashLedgerEntry]] = defaultdict(list)
        for row in rows:
            entry = CashLedgerEntry.from_row(row)
            by_driver[entry.driver_id].append(entry)
        balances = {driver: compute_balance(entries) for driver, entries in sorted(by_driver.items())}
        total = sum(balances.values(), ZERO)
        count = len(balances)
        return {
            "yard_id": yard_id,
            "total_cash": total,
            "driver_count": count,
            "average_cash": (total / count).quantize(Decimal("0.01")) if count else ZERO,
            "drivers": balances,
        }
