import csv
import io
from datetime import date, timedelta

import pytest

from salvage.aamva import AAMVA_COLUMNS, format_aamva_date, split_name, vin_problems
from salvage.data_models import ReportStatus, ReportType
from salvage.errors import NotFoundError


def _rows(text: str) -> list[dict[str, str]]:
    return list(csv.DictReader(io.StringIO(text)))


async def _sell(make_vehicle, yard, buyer, *, vin, notes="", disposition="SOLD", **vehicle):
    record = await make_vehicle(vin=vin, **vehicle)
    await yard.sales.record_sale(record.id, buyer, "125", "2024-01-03", disposition, notes, "clerk")
    yard.clock.advance(minutes=1)
    return record


def test_vin_problems_and_dates():
    assert vin_problems("1HGCM82633A123456") == []
    assert vin_problems("1HGCM82633A12345") == ["VIN must be exactly 17 characters"]
    assert vin_problems("1FTtroll000000017") == ["VIN cannot contain letters I, O, or Q"]
    assert format_aamva_date(date(2024, 1, 5)) == "01/05/2024"
    assert split_name("Acme") == ("Acme", "", "")
    assert split_name("Mary Ann Smith") == ("", "Mary", "Ann Smith")


@pytest.mark.asyncio
async def test_batch_has_one_line_per_entry_plus_header(make_vehicle, yard, buyer):
    await _sell(make_vehicle, yard, buyer, vin="1HGCM82633A123456", notes="line one\nline two")
    await _sell(make_vehicle, yard, buyer, vin="2T1BURHE0JC123456")
    await _sell(make_vehicle, yard, buyer, vin="3VWFE21C04M000001", disposition="EXPORTED")

    entries = await yard.compliance.list_pending()
    text = await yard.compliance.build_batch_export(entries)
    assert len(text.splitlines()) == len(entries) + 1 == 4

    rows = _rows(text)
    assert list(rows[0].keys()) == list(AAMVA_COLUMNS)
    assert [r["Reference ID"] for r in rows] == ["1", "2", "3"]
    assert {r["NMVTIS ID"] for r in rows} == {"NMV-555"}
    assert {r["PIN"] for r in rows} == {"9876"}
    assert rows[0]["REASON FOR DISPOSITION"] == "line one line two"
    assert rows[0]["VEHICLE SALVAGE OBTAIN DATE"] == "01/01/2024"
    # two-token buyer names are reported as a person
    assert rows[0]["VEHICLE TRANSFERRED TO FIRSTNM"] == "Acme"
    assert rows[0]["VEHICLE TRANSFERRED TO LASTNM"] == "Metals"
    assert rows[0]["VEHICLE OBTAINED FROM FIRSTNM"] == "Jane"
    assert rows[0]["DISMANTLER LIC NUMBER"] == "MVD-77"
    assert rows[2]["VEHICLE INTENDED FOR EXPORT"] == "Y"
    # every field quoted so phones and dates stay text
    assert text.splitlines()[1].startswith('"1","NMV-555","9876"')


@pytest.mark.asyncio
async def test_empty_batch_is_header_only(yard):
    text = await yard.compliance.build_batch_export([])
    assert len(text.splitlines()) == 1


@pytest.mark.asyncio
async def test_missing_vehicle_data_gives_blank_fields(make_vehicle, yard, buyer):
    record = await _sell(make_vehicle, yard, buyer, vin="", year=None)
    entries = await yard.compliance.list_pending()
    row = _rows(await yard.compliance.build_batch_export(entries))[0]
    assert row["VIN"] == ""
    assert row["VEHICLE MODEL YEAR"] == ""
    assert row["NMVTIS ID"] == "NMV-555"
    assert entries[0].vehicle_id == record.id


@pytest.mark.asyncio
async def test_purchase_report_becomes_due_after_delay(make_vehicle, yard):
    vehicle = await make_vehicle()
    entry = await yard.compliance.schedule_purchase_report(vehicle)
    assert entry.status is ReportStatus.SCHEDULED
    assert entry.schedule_date == yard.clock() + timedelta(hours=40)
    assert await yard.compliance.list_pending() == []

    yard.clock.advance(hours=40)
    due = await yard.compliance.list_pending()
    assert [e.id for e in due] == [entry.id]
    row = _rows(await yard.compliance.build_batch_export(due))[0]
    assert row["VEHICLE DISPOSITION"] == "TBD"

    again = await yard.compliance.schedule_purchase_report(vehicle)
    assert again.id == entry.id
    assert len(await yard.compliance.list_entries()) == 1


@pytest.mark.asyncio
async def test_pending_ordered_by_schedule_date(make_vehicle, yard, buyer):
    first = await _sell(make_vehicle, yard, buyer, vin="1HGCM82633A123456")
    second = await _sell(make_vehicle, yard, buyer, vin="2T1BURHE0JC123456")
    assert [e.vehicle_id for e in await yard.compliance.list_pending()] == [first.id, second.id]


@pytest.mark.asyncio
async def test_mark_submitted_is_idempotent(make_vehicle, yard, buyer):
    await _sell(make_vehicle, yard, buyer, vin="1HGCM82633A123456")
    entry_id = (await yard.compliance.list_pending())[0].id

    assert await yard.compliance.mark_submitted([entry_id]) == [entry_id]
    assert await yard.compliance.mark_submitted([entry_id]) == []
    entry = await yard.compliance.get_entry(entry_id)
    assert entry.status is ReportStatus.SUBMITTED
    assert entry.attempts == 1
    assert await yard.compliance.list_pending() == []


@pytest.mark.asyncio
async def test_mark_submitted_unknown_id_writes_nothing(make_vehicle, yard, buyer):
    await _sell(make_vehicle, yard, buyer, vin="1HGCM82633A123456")
    entry_id = (await yard.compliance.list_pending())[0].id
    with pytest.raises(NotFoundError):
        await yard.compliance.mark_submitted([entry_id, "DISPOSITION:nope"])
    assert (await yard.compliance.get_entry(entry_id)).status is ReportStatus.PENDING


@pytest.mark.asyncio
async def test_failed_submission_can_be_retried(make_vehicle, yard, buyer):
    await _sell(make_vehicle, yard, buyer, vin="1HGCM82633A123456")
    entry_id = (await yard.compliance.list_pending())[0].id
    assert await yard.compliance.mark_failed([entry_id], "portal timeout") == [entry_id]
    failed = await yard.compliance.get_entry(entry_id)
    assert failed.status is ReportStatus.FAILED
    assert failed.last_error == "portal timeout"

    assert await yard.compliance.mark_submitted([entry_id]) == [entry_id]
    assert (await yard.compliance.get_entry(entry_id)).attempts == 2


@pytest.mark.asyncio
async def test_stats_and_summary(make_vehicle, yard, buyer):
    sold = await _sell(make_vehicle, yard, buyer, vin="1HGCM82633A123456")
    other = await make_vehicle(vin="2T1BURHE0JC123456")
    await yard.compliance.schedule_purchase_report(other)

    stats = await yard.compliance.stats()
    assert stats == {"pending": 1, "scheduled": 1, "submitted": 0, "failed": 0, "total": 2}

    summary = await yard.compliance.report_summary(f"{ReportType.DISPOSITION.value}:{sold.id}")
    assert "VIN: 1HGCM82633A123456" in summary
    assert "Sold To: Acme Metals" in summary
    assert "NMVTIS ID: NMV-555" in summary


def test_export_filename(yard):
    assert yard.compliance.export_filename(date(2024, 1, 31)) == "NMVTIS_Batch_2024-01-31.csv"
