import asyncio
from datetime import date
from decimal import Decimal

import pytest

from salvage.data_models import Disposition, ImpoundStatus, ReportStatus
from salvage.errors import ConflictError, NotFoundError, ValidationError, VehicleOnHoldError
from salvage_api.storage import SALES


async def _processed_hold(make_vehicle, yard, **vehicle_overrides):
    vehicle = await make_vehicle(is_impound_or_lien=True, **vehicle_overrides)
    hold = await yard.holds.place_hold(vehicle.id, impound_date=date(2024, 1, 1), impound_reason="Abandoned")
    hold = await yard.holds.update_hold(hold.id, {"impound_status": "processed"})
    return vehicle, hold


@pytest.mark.asyncio
async def test_place_hold_defaults_impound_date_to_purchase(make_vehicle, yard):
    vehicle = await make_vehicle(purchase_date="2024-02-10")
    hold = await yard.holds.place_hold(vehicle.id, storage_location="Lot B")
    assert hold.impound_status is ImpoundStatus.PENDING
    assert hold.impound_date == date(2024, 2, 10)
    assert hold.vehicle["vin"] == vehicle.vin
    assert (await yard.holds.active_hold_for(vehicle.id)).id == hold.id


@pytest.mark.asyncio
async def test_only_one_active_hold_per_vehicle(make_vehicle, yard):
    vehicle = await make_vehicle()
    await yard.holds.place_hold(vehicle.id)
    with pytest.raises(ConflictError):
        await yard.holds.place_hold(vehicle.id)


@pytest.mark.asyncio
async def test_place_hold_rejects_unknown_fields(make_vehicle, yard):
    vehicle = await make_vehicle()
    with pytest.raises(ValidationError) as err:
        await yard.holds.place_hold(vehicle.id, tow_company="Ace")
    assert err.value.fields == ["tow_company"]


@pytest.mark.asyncio
async def test_processed_sets_release_date_21_days_out(make_vehicle, yard):
    _, hold = await _processed_hold(make_vehicle, yard)
    assert hold.impound_status is ImpoundStatus.PROCESSED
    assert hold.release_date == date(2024, 1, 22)
    assert (await yard.holds.get_hold(hold.id)).release_date == date(2024, 1, 22)


@pytest.mark.asyncio
async def test_explicit_release_date_is_kept(make_vehicle, yard):
    vehicle = await make_vehicle()
    hold = await yard.holds.place_hold(vehicle.id, impound_date="2024-01-01")
    hold = await yard.holds.update_hold(hold.id, {"impound_status": "processed", "release_date": "2024-03-01"})
    assert hold.release_date == date(2024, 3, 1)


@pytest.mark.asyncio
async def test_illegal_transitions(make_vehicle, yard):
    vehicle = await make_vehicle()
    hold = await yard.holds.place_hold(vehicle.id)
    with pytest.raises(ValidationError):
        await yard.holds.update_hold(hold.id, {"impound_status": "released"})
    with pytest.raises(ValidationError):
        await yard.holds.update_hold(hold.id, {"impound_status": "auto-transferred"})

    await yard.holds.update_hold(hold.id, {"impound_status": "processed"})
    released = await yard.holds.update_hold(hold.id, {"impound_status": "released"})
    assert released.impound_status is ImpoundStatus.RELEASED
    with pytest.raises(ConflictError):
        await yard.holds.update_hold(hold.id, {"impound_status": "auctioned"})


@pytest.mark.asyncio
async def test_release_without_recipient_only_warns(make_vehicle, yard, caplog):
    vehicle = await make_vehicle()
    hold = await yard.holds.place_hold(vehicle.id)
    await yard.holds.update_hold(hold.id, {"impound_status": "processed"})
    with caplog.at_level("WARNING"):
        await yard.holds.update_hold(hold.id, {"impound_status": "released"})
    assert "released without recording" in caplog.text


@pytest.mark.asyncio
async def test_auto_transfer_scenario(make_vehicle, yard):
    vehicle, hold = await _processed_hold(make_vehicle, yard, vin="1FTtroll000000017")
    assert hold.release_date == date(2024, 1, 22)

    yard.clock.set_day(date(2024, 1, 21))
    assert await yard.holds.reconcile() == []

    yard.clock.set_day(date(2024, 1, 22))
    transfers = await yard.holds.reconcile()
    assert len(transfers) == 1
    sale = transfers[0].sale
    assert sale.buyer.name == "On Kaul Auto Salvage"
    assert sale.sale_price == Decimal("200.00")
    assert sale.disposition is Disposition.SOLD
    assert sale.is_auto_transfer

    sold = await yard.vehicles.get(vehicle.id)
    assert sold.disposition is Disposition.SOLD
    assert sold.sale_record_id == sale.id

    after = await yard.holds.get_hold(hold.id)
    assert after.impound_status is ImpoundStatus.AUTO_TRANSFERRED
    assert after.auto_transfer_date == date(2024, 1, 22)
    assert after.auto_transfer_sale_id == sale.id
    assert "On Kaul Auto Salvage" in after.notes

    pending = await yard.compliance.list_pending()
    assert [(e.vehicle_id, e.status) for e in pending] == [(vehicle.id, ReportStatus.PENDING)]
    # auto transfers move no cash
    assert await yard.ledger.history(vehicle.driver_id) == []


@pytest.mark.asyncio
async def test_sweep_is_idempotent(make_vehicle, yard):
    await _processed_hold(make_vehicle, yard)
    yard.clock.set_day(date(2024, 2, 1))
    first = await yard.holds.reconcile()
    second = await yard.holds.reconcile()
    assert len(first) == 1
    assert second == []
    assert len(await yard.store.get(SALES)) == 1


@pytest.mark.asyncio
async def test_concurrent_sweeps_transfer_once(make_vehicle, yard):
    await _processed_hold(make_vehicle, yard)
    await _processed_hold(make_vehicle, yard, vin="2T1BURHE0JC123456")
    yard.clock.set_day(date(2024, 1, 30))
    results = await asyncio.gather(yard.holds.reconcile(), yard.holds.reconcile())
    assert sum(len(r) for r in results) == 2
    assert len(await yard.store.get(SALES)) == 2


@pytest.mark.asyncio
async def test_held_vehicle_cannot_be_sold_manually(make_vehicle, yard, buyer):
    vehicle = await make_vehicle()
    await yard.holds.place_hold(vehicle.id)
    with pytest.raises(VehicleOnHoldError):
        await yard.sales.record_sale(vehicle.id, buyer, "100", None, "SOLD", "", "admin")
    assert await yard.store.get(SALES) == []


@pytest.mark.asyncio
async def test_hold_placed_during_sale_blocks_commit(make_vehicle, yard, buyer, monkeypatch):
    vehicle = await make_vehicle()
    original_check = yard.holds.sale_block_reason
    calls = []

    async def hold_arrives_after_check(record):
        calls.append(record.id)
        if len(calls) == 1:
            await yard.holds.place_hold(vehicle.id, impound_reason="Police hold")
            return None
        return await original_check(record)

    monkeypatch.setattr(yard.holds, "sale_block_reason", hold_arrives_after_check)
    with pytest.raises(VehicleOnHoldError):
        await yard.sales.record_sale(vehicle.id, buyer, "100", None, "SOLD", "", "admin")
    assert await yard.store.get(SALES) == []
    assert (await yard.vehicles.get(vehicle.id)).disposition is Disposition.TBD


@pytest.mark.asyncio
async def test_hold_refused_once_vehicle_sold(make_vehicle, yard, buyer):
    vehicle = await make_vehicle()
    await yard.sales.record_sale(vehicle.id, buyer, "100", None, "SOLD", "", "admin")
    with pytest.raises(ConflictError):
        await yard.holds.place_hold(vehicle.id)
    assert await yard.holds.holds_for(vehicle.id) == []


@pytest.mark.asyncio
async def test_flagged_vehicle_sellable_after_release(make_vehicle, yard, buyer):
    vehicle = await make_vehicle(is_impound_or_lien=True)
    with pytest.raises(VehicleOnHoldError):
        await yard.sales.record_sale(vehicle.id, buyer, "100", None, "SOLD", "", "admin")

    hold = await yard.holds.place_hold(vehicle.id)
    await yard.holds.update_hold(hold.id, {"impound_status": "processed"})
    await yard.holds.update_hold(hold.id, {"impound_status": "released", "released_to": "Owner"})
    assert [v.id for v in await yard.vehicles.list_available("yard-1")] == [vehicle.id]
    outcome = await yard.sales.record_sale(vehicle.id, buyer, "100", None, "SOLD", "", "admin")
    assert outcome.sale.original_transaction_id == vehicle.id


@pytest.mark.asyncio
async def test_delete_and_list_holds(make_vehicle, yard):
    vehicle = await make_vehicle()
    hold = await yard.holds.place_hold(vehicle.id)
    assert [h.id for h in await yard.holds.list_holds("yard-1", "pending")] == [hold.id]
    await yard.holds.delete_hold(hold.id)
    with pytest.raises(NotFoundError):
        await yard.holds.get_hold(hold.id)
