from decimal import Decimal

import pytest

from salvage.data_models import Disposition, ReportStatus, ReportType
from salvage.errors import ConflictError, NotFoundError, ValidationError
from salvage_api.mailer import BrevoMailer
from salvage_api.sales import SaleRecorder
from salvage_api.storage import LEDGER, SALES


@pytest.mark.asyncio
async def test_sale_credits_driver_and_queues_report(make_vehicle, yard, buyer):
    vehicle = await make_vehicle()
    outcome = await yard.sales.record_sale(
        vehicle.id, buyer, "450", "2024-01-05", "SOLD", "Crushed for scrap", "clerk", driver_id="driver-7"
    )
    assert outcome.complete
    assert outcome.sale.sale_price == Decimal("450.00")
    assert await yard.ledger.get_balance("driver-7") == Decimal("450.00")

    entries = await yard.compliance.list_entries()
    assert len(entries) == 1
    assert entries[0].status is ReportStatus.PENDING
    assert entries[0].report_type is ReportType.DISPOSITION
    assert entries[0].vehicle_id == vehicle.id
    assert entries[0].sale_id == outcome.sale.id

    sold = await yard.vehicles.get(vehicle.id)
    assert sold.disposition is Disposition.SOLD
    assert sold.sale_record_id == outcome.sale.id
    assert outcome.bill_of_sale.filename_stem == "MV2459_1HGCM82633A123456_2024-01-05"


@pytest.mark.asyncio
async def test_driver_defaults_to_actor(make_vehicle, yard, buyer):
    vehicle = await make_vehicle()
    await yard.sales.record_sale(vehicle.id, buyer, "80.50", None, "PARTS", "", "clerk")
    assert await yard.ledger.get_balance("clerk") == Decimal("80.50")


@pytest.mark.asyncio
async def test_second_sale_conflicts_without_ledger_entry(make_vehicle, yard, buyer):
    vehicle = await make_vehicle()
    await yard.sales.record_sale(vehicle.id, buyer, "450", None, "SOLD", "", "clerk")
    ledger_rows = len(await yard.store.get(LEDGER))

    with pytest.raises(ConflictError):
        await yard.sales.record_sale(vehicle.id, buyer, "500", None, "EXPORTED", "", "clerk")
    assert len(await yard.store.get(LEDGER)) == ledger_rows
    assert len(await yard.store.get(SALES)) == 1


@pytest.mark.asyncio
async def test_unknown_vehicle(yard, buyer):
    with pytest.raises(NotFoundError):
        await yard.sales.record_sale("VEH-MISSING", buyer, "10", None, "SOLD", "", "clerk")


@pytest.mark.asyncio
async def test_validation_names_every_bad_field(make_vehicle, yard):
    vehicle = await make_vehicle()
    with pytest.raises(ValidationError) as err:
        await yard.sales.record_sale(vehicle.id, {"name": "", "address": ""}, "-1", None, "TBD", "", "clerk")
    assert set(err.value.fields) == {"buyer_name", "buyer_address", "buyer_phone", "sale_price", "disposition"}
    assert (await yard.vehicles.get(vehicle.id)).disposition is Disposition.TBD
    assert await yard.store.get(SALES) == []


@pytest.mark.asyncio
async def test_over_precise_price_rejected(make_vehicle, yard, buyer):
    vehicle = await make_vehicle()
    with pytest.raises(ValidationError) as err:
        await yard.sales.record_sale(vehicle.id, buyer, "10.001", None, "SOLD", "", "clerk")
    assert err.value.fields == ["sale_price"]


@pytest.mark.asyncio
async def test_ledger_failure_keeps_sale(make_vehicle, yard, buyer, monkeypatch):
    vehicle = await make_vehicle()

    async def broken(*args, **kwargs):
        raise RuntimeError("ledger offline")

    monkeypatch.setattr(yard.ledger, "record_sale_proceeds", broken)
    outcome = await yard.sales.record_sale(vehicle.id, buyer, "300", None, "SCRAPPED", "", "clerk")
    assert [w.step for w in outcome.warnings] == ["cash_ledger"]
    assert "ledger offline" in outcome.warnings[0].detail
    assert (await yard.vehicles.get(vehicle.id)).disposition is Disposition.SCRAPPED
    assert len(await yard.compliance.list_pending()) == 1


@pytest.mark.asyncio
async def test_email_requested_without_mailer_warns(make_vehicle, yard, buyer):
    vehicle = await make_vehicle()
    outcome = await yard.sales.record_sale(
        vehicle.id, {**buyer, "email": "buyer@acme.test"}, "300", None, "SOLD", "", "clerk", send_bill_of_sale=True
    )
    assert [w.step for w in outcome.warnings] == ["email"]
    assert outcome.sale.id


@pytest.mark.asyncio
async def test_email_failure_is_partial_success(make_vehicle, store, cache, clock, config, yard, buyer):
    mailer = BrevoMailer(api_key="key", sender_email="yard@demo.test", base_url="http://127.0.0.1:1")
    recorder = SaleRecorder(
        store, yard.vehicles, yard.holds, yard.ledger, yard.compliance, config, clock=clock, mailer=mailer
    )
    vehicle = await make_vehicle()
    outcome = await recorder.record_sale(
        vehicle.id, {**buyer, "email": "buyer@acme.test"}, "300", None, "SOLD", "", "clerk", send_bill_of_sale=True
    )
    assert [w.step for w in outcome.warnings] == ["email"]
    assert (await yard.vehicles.get(vehicle.id)).disposition is Disposition.SOLD


@pytest.mark.asyncio
async def test_list_sales_newest_first(make_vehicle, yard, buyer):
    first = await make_vehicle()
    second = await make_vehicle(vin="2T1BURHE0JC123456")
    await yard.sales.record_sale(first.id, buyer, "100", "2024-01-02", "SOLD", "", "clerk")
    await yard.sales.record_sale(second.id, buyer, "100", "2024-01-09", "SOLD", "", "clerk")
    assert [s.original_transaction_id for s in await yard.sales.list_sales("yard-1")] == [second.id, first.id]


@pytest.mark.asyncio
async def test_received_amount_is_advisory(make_vehicle, yard, buyer):
    vehicle = await make_vehicle()
    outcome = await yard.sales.record_sale(
        vehicle.id, buyer, "450", None, "SOLD", "", "clerk", driver_id="driver-3", actual_received_amount="300"
    )
    assert outcome.sale.actual_received_amount == Decimal("300.00")
    assert (await yard.sales.get_sale(outcome.sale.id)).actual_received_amount == Decimal("300.00")
    assert await yard.ledger.get_balance("driver-3") == Decimal("450.00")
    kinds = [e.entry_type.value for e, _ in await yard.ledger.history("driver-3")]
    assert kinds == ["saleProceeds"]
