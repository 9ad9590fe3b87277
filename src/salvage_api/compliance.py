from __future__ import annotations

import logging
from collections import Counter
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Iterable

from salvage.aamva import ExportSource, batch_filename, build_batch_csv, build_report_summary
from salvage.bill_of_sale import BillOfSale, build_bill_of_sale
from salvage.clock import Clock, utc_now
from salvage.config import YardConfig
from salvage.data_models import (
    ComplianceReportEntry,
    ReportStatus,
    ReportType,
    SaleRecord,
    VehicleRecord,
    report_id,
)
from salvage.errors import ConflictError, NotFoundError
from salvage_api.storage import REPORTS, SALES, VEHICLES, YardStore

logger = logging.getLogger(__name__)

_SUBMITTABLE = (ReportStatus.PENDING, ReportStatus.SCHEDULED, ReportStatus.FAILED)


class ComplianceReportBuilder:
    """NMVTIS report queue, AAMVA batch export and MV2459 documents."""

    def __init__(self, store: YardStore, config: YardConfig, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.config = config
        self.clock = clock

    async def get_entry(self, entry_id: str) -> ComplianceReportEntry:
        row = await self.store.get_one(REPORTS, entry_id)
        if row is None:
            raise NotFoundError("compliance report", entry_id)
        return ComplianceReportEntry.from_row(row)

    async def list_entries(self, status: ReportStatus | str | None = None) -> list[ComplianceReportEntry]:
        filters = {"status": ReportStatus(status).value} if status else None
        entries = [ComplianceReportEntry.from_row(row) for row in await self.store.get(REPORTS, filters)]
        return sorted(entries, key=lambda e: (e.schedule_date, e.id))

    async def schedule_purchase_report(self, vehicle: VehicleRecord) -> ComplianceReportEntry:
        entry_id = report_id(ReportType.PURCHASE, vehicle.id)
        existing = await self.store.get_one(REPORTS, entry_id)
        if existing is not None:
            return ComplianceReportEntry.from_row(existing)
        now = self.clock()
        entry = ComplianceReportEntry(
            id=entry_id,
            vehicle_id=vehicle.id,
            vin=vehicle.vin,
            report_type=ReportType.PURCHASE,
            status=ReportStatus.SCHEDULED,
            schedule_date=now + timedelta(hours=self.config.purchase_report_delay_hours),
            created_at=now,
        )
        await self.store.upsert(REPORTS, entry.to_row())
        logger.info("NMVTIS purchase report for %s scheduled for %s", vehicle.vin, entry.schedule_date.isoformat())
        return entry

    async def record_disposition_report(self, vehicle: VehicleRecord, sale: SaleRecord) -> ComplianceReportEntry:
        entry_id = report_id(ReportType.DISPOSITION, vehicle.id)
        now = self.clock()
        existing = await self.store.get_one(REPORTS, entry_id)
        if existing is not None:
            entry = replace(
                ComplianceReportEntry.from_row(existing),
                sale_id=sale.id,
                vin=vehicle.vin,
                status=ReportStatus.PENDING,
                schedule_date=now,
                last_error=None,
            )
        else:
            entry = ComplianceReportEntry(
                id=entry_id,
                vehicle_id=vehicle.id,
                sale_id=sale.id,
                vin=vehicle.vin,
                report_type=ReportType.DISPOSITION,
                status=ReportStatus.PENDING,
                schedule_date=now,
                created_at=now,
            )
        await self.store.upsert(REPORTS, entry.to_row())
        logger.info("NMVTIS disposition report queued for %s (%s)", vehicle.vin, sale.disposition.value)
        return entry

    async def list_pending(self, now: datetime | None = None) -> list[ComplianceReportEntry]:
        """Pending entries plus scheduled entries that have come due, oldest schedule first."""
        now = now or self.clock()
        rows = await self.store.get(
            REPORTS, {"status": [ReportStatus.PENDING.value, ReportStatus.SCHEDULED.value]}
        )
        entries = [ComplianceReportEntry.from_row(row) for row in rows]
        due = [e for e in entries if e.status is ReportStatus.PENDING or e.schedule_date <= now]
        return sorted(due, key=lambda e: (e.schedule_date, e.id))

    async def _source(self, entry: ComplianceReportEntry) -> ExportSource:
        vehicle_row = await self.store.get_one(VEHICLES, entry.vehicle_id)
        sale_row = await self.store.get_one(SALES, entry.sale_id) if entry.sale_id else None
        if vehicle_row is None:
            logger.warning("Compliance entry %s refers to missing vehicle %s", entry.id, entry.vehicle_id)
        return ExportSource(
            entry=entry,
            vehicle=VehicleRecord.from_row(vehicle_row) if vehicle_row else None,
            sale=SaleRecord.from_row(sale_row) if sale_row else None,
        )

    async def build_batch_export(self, entries: Iterable[ComplianceReportEntry]) -> str:
        sources = [await self._source(entry) for entry in entries]
        return build_batch_csv(sources, self.config.yard)

    def export_filename(self, today: date | None = None) -> str:
        return batch_filename(today or self.clock().date())

    async def report_summary(self, entry_id: str) -> str:
        entry = await self.get_entry(entry_id)
        return build_report_summary(await self._source(entry), self.config.yard)

    async def mark_submitted(self, ids: Iterable[str]) -> list[str]:
        """Move entries to submitted. Already-submitted ids are skipped; the ids that moved are returned."""
        entries = [await self.get_entry(entry_id) for entry_id in dict.fromkeys(ids)]
        now = self.clock()
        moved: list[str] = []
        for entry in entries:
            if entry.status is ReportStatus.SUBMITTED:
                continue
            won = await self.store.update_where(
                REPORTS,
                entry.id,
                {"status": [s.value for s in _SUBMITTABLE]},
                {
                    "status": ReportStatus.SUBMITTED.value,
                    "submitted_at": now,
                    "attempts": entry.attempts + 1,
                    "last_error": None,
                },
            )
            if won:
                moved.append(entry.id)
            elif (await self.get_entry(entry.id)).status is not ReportStatus.SUBMITTED:
                raise ConflictError(f"compliance report {entry.id} changed while being marked submitted")
        logger.info("Marked %d NMVTIS reports submitted", len(moved))
        return moved

    async def mark_failed(self, ids: Iterable[str], error: str) -> list[str]:
        entries = [await self.get_entry(entry_id) for entry_id in dict.fromkeys(ids)]
        failed: list[str] = []
        for entry in entries:
            if entry.status is ReportStatus.SUBMITTED:
                continue
            won = await self.store.update_where(
                REPORTS,
                entry.id,
                {"status": [s.value for s in _SUBMITTABLE]},
                {"status": ReportStatus.FAILED.value, "attempts": entry.attempts + 1, "last_error": error},
            )
            if won:
                failed.append(entry.id)
        if failed:
            logger.warning("NMVTIS submission failed for %s: %s", ", ".join(failed), error)
        return failed

    async def stats(self, now: datetime | None = None) -> dict[str, int]:
        now = now or self.clock()
        entries = [ComplianceReportEntry.from_row(row) for row in await self.store.get(REPORTS)]
        counts = Counter(e.status for e in entries)
        return {
            "pending": counts[ReportStatus.PENDING]
            + sum(1 for e in entries if e.status is ReportStatus.SCHEDULED and e.schedule_date <= now),
            "scheduled": sum(1 for e in entries if e.status is ReportStatus.SCHEDULED and e.schedule_date > now),
            "submitted": counts[ReportStatus.SUBMITTED],
            "failed": counts[ReportStatus.FAILED],
            "total": len(entries),
        }

    def build_bill_of_sale(self, vehicle: VehicleRecord, sale: SaleRecord) -> BillOfSale:
        return build_bill_of_sale(vehicle, sale, self.config.yard, generated_at=self.clock())
