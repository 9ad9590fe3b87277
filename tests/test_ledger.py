import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from salvage.data_models import CashLedgerEntry, LedgerEntryType
from salvage.errors import ValidationError
from salvage.ledger import compute_balance, running_balances, signed_amount

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def _entry(n: int, kind: LedgerEntryType, amount: str, *, seq: int | None = None, minutes: int | None = None):
    return CashLedgerEntry(
        id=f"e{n}",
        driver_id="d1",
        entry_type=kind,
        amount=Decimal(amount),
        timestamp=T0 + timedelta(minutes=n if minutes is None else minutes),
        seq=n if seq is None else seq,
    )


BASE = [
    (LedgerEntryType.DEPOSIT, "100"),
    (LedgerEntryType.WITHDRAWAL, "30"),
    (LedgerEntryType.SALE_PROCEEDS, "50"),
]


def test_balance_without_set_balance():
    entries = [_entry(i, kind, amount) for i, (kind, amount) in enumerate(BASE, start=1)]
    assert compute_balance(entries) == Decimal("120")


def test_set_balance_before_entries_is_baseline():
    entries = [_entry(0, LedgerEntryType.SET_BALANCE, "500")]
    entries += [_entry(i, kind, amount) for i, (kind, amount) in enumerate(BASE, start=1)]
    assert compute_balance(entries) == Decimal("620")


def test_set_balance_after_entries_resets():
    entries = [_entry(i, kind, amount) for i, (kind, amount) in enumerate(BASE, start=1)]
    entries.append(_entry(9, LedgerEntryType.SET_BALANCE, "500"))
    assert compute_balance(entries) == Decimal("500")


def test_replay_orders_by_timestamp_then_seq_not_list_order():
    later_reset = _entry(2, LedgerEntryType.SET_BALANCE, "10", minutes=5, seq=2)
    earlier_deposit = _entry(1, LedgerEntryType.DEPOSIT, "40", minutes=5, seq=1)
    after = _entry(3, LedgerEntryType.DEPOSIT, "5", minutes=6)
    assert compute_balance([after, later_reset, earlier_deposit]) == Decimal("15")


def test_signed_amounts_and_empty_ledger():
    assert signed_amount(_entry(1, LedgerEntryType.PURCHASE, "75")) == Decimal("-75")
    assert signed_amount(_entry(2, LedgerEntryType.ADJUSTMENT, "-12.50")) == Decimal("-12.50")
    assert compute_balance([]) == Decimal("0")


def test_running_balances_follow_replay():
    entries = [_entry(i, kind, amount) for i, (kind, amount) in enumerate(BASE, start=1)]
    assert [b for _, b in running_balances(entries)] == [Decimal("100"), Decimal("70"), Decimal("120")]


@pytest.mark.asyncio
async def test_cash_ledger_append_and_balance(yard):
    await yard.ledger.append_entry("driver-9", "deposit", "100.00", "float", "admin")
    yard.clock.advance(minutes=1)
    await yard.ledger.append_entry("driver-9", "withdrawal", "30", "lunch run", "admin")
    yard.clock.advance(minutes=1)
    await yard.ledger.record_sale_proceeds("driver-9", "50", "VIN1", "SALE-1", actor="admin")
    assert await yard.ledger.get_balance("driver-9") == Decimal("120.00")

    history = await yard.ledger.history("driver-9")
    assert history[0][0].entry_type is LedgerEntryType.SALE_PROCEEDS
    assert history[0][1] == Decimal("120.00")
    assert [e.seq for e, _ in history] == [3, 2, 1]


@pytest.mark.asyncio
async def test_entries_with_equal_timestamps_keep_append_order(yard):
    await yard.ledger.append_entry("d2", "deposit", "100", "", "admin")
    await yard.ledger.set_balance("d2", "500", "drawer count", "admin")
    await yard.ledger.append_entry("d2", "deposit", "20", "", "admin")
    assert await yard.ledger.get_balance("d2") == Decimal("520.00")


@pytest.mark.asyncio
async def test_invalid_amounts_rejected_without_write(yard):
    with pytest.raises(ValidationError) as err:
        await yard.ledger.append_entry("d3", "deposit", "-5", "", "admin")
    assert err.value.fields == ["amount"]
    with pytest.raises(ValidationError):
        await yard.ledger.append_entry("d3", "withdrawal", "1.005", "", "admin")
    with pytest.raises(ValidationError):
        await yard.ledger.append_entry("d3", "bonus", "1", "", "admin")
    assert await yard.ledger.history("d3") == []


@pytest.mark.asyncio
async def test_negative_adjustment_allowed(yard):
    await yard.ledger.append_entry("d4", "deposit", "40", "", "admin")
    await yard.ledger.append_entry("d4", "adjustment", "-15.25", "miscount", "admin")
    assert await yard.ledger.get_balance("d4") == Decimal("24.75")


@pytest.mark.asyncio
async def test_concurrent_appends_get_distinct_seqs(yard, monkeypatch):
    original_get = yard.store.get

    async def interleaved_get(table, filters=None):
        rows = await original_get(table, filters)
        await asyncio.sleep(0)
        return rows

    monkeypatch.setattr(yard.store, "get", interleaved_get)
    first, second = await asyncio.gather(
        yard.ledger.append_entry("d6", "deposit", "100", "", "admin"),
        yard.ledger.append_entry("d6", "deposit", "25", "", "admin"),
    )
    assert {first.seq, second.seq} == {1, 2}
    assert sorted(e.seq for e, _ in await yard.ledger.history("d6")) == [1, 2]
    assert await yard.ledger.get_balance("d6") == Decimal("125.00")


@pytest.mark.asyncio
async def test_sale_adjustment_only_when_amounts_differ(yard):
    assert await yard.ledger.record_sale_adjustment("d5", "450", "450.00", "VIN", "S1", "admin") is None
    entry = await yard.ledger.record_sale_adjustment("d5", "450", "425", "VIN", "S1", "admin")
    assert entry.entry_type is LedgerEntryType.ADJUSTMENT
    assert entry.amount == Decimal("-25.00")
    assert len(await yard.ledger.history("d5")) == 1


@pytest.mark.asyncio
async def test_yard_summary(yard):
    await yard.ledger.append_entry("a", "deposit", "100", "", "admin", yard_id="y1")
    await yard.ledger.append_entry("b", "deposit", "50", "", "admin", yard_id="y1")
    await yard.ledger.append_entry("c", "deposit", "999", "", "admin", yard_id="other")
    summary = await yard.ledger.yard_summary("y1")
    assert summary["total_cash"] == Decimal("150.00")
    assert summary["driver_count"] == 2
    assert summary["average_cash"] == Decimal("75.00")
