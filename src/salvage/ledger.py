"""Balance replay over a driver's cash ledger.

Entries are ordered by ``(timestamp, seq)``. The most recent ``setBalance``
resets the running balance; every later entry contributes its signed amount.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from salvage.data_models import ZERO, CashLedgerEntry, LedgerEntryType

_CREDITS = frozenset({LedgerEntryType.DEPOSIT, LedgerEntryType.SALE_PROCEEDS})
_DEBITS = frozenset({LedgerEntryType.WITHDRAWAL, LedgerEntryType.PURCHASE})


def ordered(entries: Iterable[CashLedgerEntry]) -> list[CashLedgerEntry]:
    return sorted(entries, key=lambda e: (e.timestamp, e.seq, e.id))


def signed_amount(entry: CashLedgerEntry) -> Decimal:
    if entry.entry_type in _CREDITS:
        return entry.amount
    if entry.entry_type in _DEBITS:
        return -entry.amount
    if entry.entry_type is LedgerEntryType.ADJUSTMENT:
        return entry.amount
    # setBalance has no delta of its own
    return ZERO


def compute_balance(entries: Iterable[CashLedgerEntry]) -> Decimal:
    lines = running_balances(entries)
    return lines[-1][1] if lines else ZERO


def running_balances(entries: Iterable[CashLedgerEntry]) -> list[tuple[CashLedgerEntry, Decimal]]:
    """Each entry in chronological order, paired with the balance right after it."""
    balance = ZERO
    lines: list[tuple[CashLedgerEntry, Decimal]] = []
    for entry in ordered(entries):
        if entry.entry_type is LedgerEntryType.SET_BALANCE:
            balance = entry.amount
        else:
            balance += signed_amount(entry)
        lines.append((entry, balance))
    return lines
