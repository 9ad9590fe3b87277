from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from salvage.data_models import jsonable
from salvage.errors import (
    ConflictError,
    NotFoundError,
    PartialSuccessWarning,
    PersistenceError,
    ValidationError,
)
from salvage.scheduler import build_reconciliation_scheduler
from salvage_api.compliance import ComplianceReportBuilder
from salvage_api.holds import HoldManager
from salvage_api.ledger import CashLedger
from salvage_api.logging_config import bind_correlation_id, configure_logging
from salvage_api.mailer import BrevoMailer
from salvage_api.purchases import PurchaseRecorder
from salvage_api.sales import SaleRecorder
from salvage_api.settings import ServiceSettings
from salvage_api.storage import RedisCache, YardStore
from salvage_api.vehicles import VehicleRecordStore
from salvage_api.vin import VinDecoder

logger = logging.getLogger(__name__)


# ── Request / Response Models ───────────────────────────────────────

class PartyIn(BaseModel):
    name: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    phone: str = ""


class BuyerIn(PartyIn):
    email: str = ""
    license_number: str = ""


class HoldDetails(BaseModel):
    impound_date: date | None = None
    impound_reason: str = ""
    impound_authority: str = ""
    storage_location: str = ""
    license_plate: str = ""
    vehicle_color: str = ""
    notes: str = ""


class PurchaseRequest(BaseModel):
    vin: str = Field(default="", max_length=32)
    year: int | None = Field(default=None, ge=1900, le=2100)
    make: str = ""
    seller: PartyIn = Field(default_factory=PartyIn)
    purchase_price: Decimal
    purchase_date: date | None = None
    driver_id: str
    driver_name: str = ""
    yard_id: str
    is_impound_or_lien: bool = False
    hold: HoldDetails | None = None
    actor: str = ""


class SaleRequest(BaseModel):
    buyer: BuyerIn = Field(default_factory=BuyerIn)
    sale_price: Decimal | None = None
    sale_date: date | None = None
    disposition: str = "SOLD"
    notes: str = ""
    actor: str
    driver_id: str | None = None
    actual_received_amount: Decimal | None = None
    send_bill_of_sale: bool = False


class HoldCreate(HoldDetails):
    vehicle_id: str


class HoldUpdate(BaseModel):
    impound_status: str | None = None
    impound_date: date | None = None
    release_date: date | None = None
    auction_date: date | None = None
    impound_reason: str | None = None
    impound_authority: str | None = None
    storage_location: str | None = None
    released_to: str | None = None
    fees_collected: Decimal | None = None
    license_plate: str | None = None
    vehicle_color: str | None = None
    notes: str | None = None


class CashEntryRequest(BaseModel):
    entry_type: str
    amount: Decimal
    reason: str = ""
    actor: str
    yard_id: str = ""


class SubmittedRequest(BaseModel):
    ids: list[str] = Field(min_length=1)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


def _row(entity: Any) -> dict[str, Any]:
    return jsonable(entity.to_row())


def _warnings(items: list[PartialSuccessWarning] | tuple[PartialSuccessWarning, ...]) -> list[dict[str, str]]:
    return [w.to_dict() for w in items]


# ── App Factory ─────────────────────────────────────────────────────

def create_app() -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    config = settings.yard_config()
    cache = RedisCache(redis_url=settings.redis_url)
    store = YardStore(dsn=settings.postgres_dsn)
    vehicles = VehicleRecordStore(
        store,
        cache,
        vehicle_ttl_seconds=settings.vehicle_cache_ttl_seconds,
        availability_ttl_seconds=settings.availability_cache_ttl_seconds,
    )
    ledger = CashLedger(store)
    compliance = ComplianceReportBuilder(store, config)
    holds = HoldManager(store, vehicles, compliance, config)
    mailer = BrevoMailer(
        api_key=settings.brevo_api_key,
        sender_email=settings.brevo_sender_email,
        sender_name=settings.brevo_sender_name,
        base_url=settings.brevo_base_url,
    )
    sales = SaleRecorder(store, vehicles, holds, ledger, compliance, config, mailer=mailer)
    vin_decoder = VinDecoder(cache=cache, base_url=settings.nhtsa_base_url, ttl_seconds=settings.vin_cache_ttl_seconds)
    purchases = PurchaseRecorder(vehicles, holds, ledger, compliance, vin_decoder=vin_decoder)

    async def reconcile_and_sync() -> dict[str, Any]:
        transfers = await holds.reconcile()
        synced = await vehicles.sync()
        return {"auto_transferred": [t.sale.id for t in transfers], "synced_vehicles": synced}

    async def scheduled_sweep() -> dict[str, Any]:
        bind_correlation_id()
        return await reconcile_and_sync()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect()
        scheduler = None
        if settings.enable_scheduler:
            loop = asyncio.get_running_loop()

            def _job() -> None:
                future = asyncio.run_coroutine_threadsafe(scheduled_sweep(), loop)
                try:
                    future.result(timeout=300)
                except Exception:
                    logger.exception("Scheduled hold reconciliation failed")

            scheduler = build_reconciliation_scheduler(config.reconcile_cron, _job)
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            await cache.close()
            await store.close()

    app = FastAPI(title="Salvage Yard Disposition & Compliance API", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = bind_correlation_id(request.headers.get("X-Correlation-ID"))
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    # ── Error mapping ───────────────────────────────────────────────

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), "fields": exc.fields})

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def _conflict(_: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(PersistenceError)
    async def _persistence(_: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("Storage failure: %s", exc)
        return JSONResponse(status_code=503, content={"detail": "storage unavailable"})

    # ── Vehicles & Purchases ────────────────────────────────────────

    @app.post("/purchases", status_code=status.HTTP_201_CREATED)
    async def record_purchase(payload: PurchaseRequest) -> dict[str, Any]:
        data = payload.model_dump(exclude={"seller", "hold", "actor"})
        data.update({f"seller_{k}": v for k, v in payload.seller.model_dump().items()})
        outcome = await purchases.record_purchase(
            data,
            actor=payload.actor or payload.driver_id,
            hold=payload.hold.model_dump(exclude_none=True) if payload.hold else None,
        )
        return {
            "vehicle": _row(outcome.vehicle),
            "hold": _row(outcome.hold) if outcome.hold else None,
            "report": _row(outcome.report) if outcome.report else None,
            "warnings": _warnings(outcome.warnings),
        }

    @app.get("/vehicles")
    async def list_vehicles(yard_id: str | None = None, vin: str | None = None) -> dict[str, Any]:
        if vin:
            records = await vehicles.query_by_vin_substring(vin)
        elif yard_id:
            records = await vehicles.query_by_yard(yard_id)
        else:
            raise HTTPException(status_code=422, detail="yard_id or vin is required")
        return {"vehicles": [_row(r) for r in records]}

    @app.get("/vehicles/available")
    async def list_available(yard_id: str) -> dict[str, Any]:
        return {"vehicles": [_row(r) for r in await vehicles.list_available(yard_id)]}

    @app.get("/vehicles/{vehicle_id}")
    async def get_vehicle(vehicle_id: str) -> dict[str, Any]:
        return _row(await vehicles.get(vehicle_id, cached=True))

    @app.delete("/vehicles/{vehicle_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_vehicle(vehicle_id: str) -> Response:
        await vehicles.delete_vehicle_record(vehicle_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ── Sales ───────────────────────────────────────────────────────

    @app.post("/vehicles/{vehicle_id}/sale", status_code=status.HTTP_201_CREATED)
    async def record_sale(vehicle_id: str, payload: SaleRequest) -> dict[str, Any]:
        outcome = await sales.record_sale(
            vehicle_id,
            payload.buyer.model_dump(),
            payload.sale_price,
            payload.sale_date,
            payload.disposition,
            payload.notes,
            payload.actor,
            driver_id=payload.driver_id,
            actual_received_amount=payload.actual_received_amount,
            send_bill_of_sale=payload.send_bill_of_sale,
        )
        return {
            "sale": _row(outcome.sale),
            "bill_of_sale": outcome.bill_of_sale.html_filename if outcome.bill_of_sale else None,
            "warnings": _warnings(outcome.warnings),
        }

    @app.get("/sales")
    async def list_sales(yard_id: str | None = None) -> dict[str, Any]:
        return {"sales": [_row(s) for s in await sales.list_sales(yard_id)]}

    @app.get("/sales/{sale_id}/bill-of-sale", response_class=HTMLResponse)
    async def bill_of_sale(sale_id: str) -> HTMLResponse:
        sale = await sales.get_sale(sale_id)
        vehicle = await vehicles.get(sale.original_transaction_id)
        document = compliance.build_bill_of_sale(vehicle, sale)
        return HTMLResponse(
            document.render_html(),
            headers={"Content-Disposition": f'inline; filename="{document.html_filename}"'},
        )

    # ── Impound / Lien Holds ────────────────────────────────────────

    @app.post("/holds", status_code=status.HTTP_201_CREATED)
    async def place_hold(payload: HoldCreate) -> dict[str, Any]:
        details = payload.model_dump(exclude={"vehicle_id", "impound_date"})
        hold = await holds.place_hold(payload.vehicle_id, impound_date=payload.impound_date, **details)
        return _row(hold)

    @app.get("/holds")
    async def list_holds(yard_id: str | None = None, impound_status: str | None = None) -> dict[str, Any]:
        return {"holds": [_row(h) for h in await holds.list_holds(yard_id, impound_status)]}

    @app.patch("/holds/{hold_id}")
    async def update_hold(hold_id: str, payload: HoldUpdate) -> dict[str, Any]:
        return _row(await holds.update_hold(hold_id, payload.model_dump(exclude_unset=True)))

    @app.delete("/holds/{hold_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_hold(hold_id: str) -> Response:
        await holds.delete_hold(hold_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/holds/reconcile")
    async def reconcile_holds() -> dict[str, Any]:
        transfers = await holds.reconcile()
        return {
            "auto_transferred": [
                {
                    "hold_id": t.hold_id,
                    "vehicle_id": t.vehicle_id,
                    "sale": _row(t.sale),
                    "warnings": _warnings(t.warnings),
                }
                for t in transfers
            ]
        }

    # ── Cash Ledger ─────────────────────────────────────────────────

    @app.post("/cash/{driver_id}/entries", status_code=status.HTTP_201_CREATED)
    async def append_cash_entry(driver_id: str, payload: CashEntryRequest) -> dict[str, Any]:
        entry = await ledger.append_entry(
            driver_id, payload.entry_type, payload.amount, payload.reason, payload.actor, yard_id=payload.yard_id
        )
        return {"entry": _row(entry), "balance": str(await ledger.get_balance(driver_id))}

    @app.get("/cash/{driver_id}")
    async def cash_history(driver_id: str, limit: int = 50) -> dict[str, Any]:
        lines = await ledger.history(driver_id, limit=limit)
        return {
            "driver_id": driver_id,
            "balance": str(await ledger.get_balance(driver_id)),
            "entries": [{**_row(entry), "balance_after": str(balance)} for entry, balance in lines],
        }

    @app.get("/cash/yards/{yard_id}/summary")
    async def cash_summary(yard_id: str) -> dict[str, Any]:
        return jsonable(await ledger.yard_summary(yard_id))

    # ── NMVTIS Compliance ───────────────────────────────────────────

    @app.get("/compliance/pending")
    async def pending_reports() -> dict[str, Any]:
        return {"entries": [_row(e) for e in await compliance.list_pending()]}

    @app.get("/compliance/stats")
    async def report_stats() -> dict[str, int]:
        return await compliance.stats()

    @app.get("/compliance/export")
    async def export_batch() -> Response:
        entries = await compliance.list_pending()
        body = await compliance.build_batch_export(entries)
        return Response(
            content=body,
            media_type="text/csv",
            headers={
                "Content-Disposition": f'attachment; filename="{compliance.export_filename()}"',
                "X-Entry-Ids": ",".join(e.id for e in entries),
            },
        )

    @app.post("/compliance/submitted")
    async def mark_submitted(payload: SubmittedRequest) -> dict[str, Any]:
        return {"submitted": await compliance.mark_submitted(payload.ids)}

    @app.get("/compliance/{entry_id}/summary", response_class=Response)
    async def report_summary(entry_id: str) -> Response:
        return Response(content=await compliance.report_summary(entry_id), media_type="text/plain")

    @app.post("/sync")
    async def sync() -> dict[str, Any]:
        return await reconcile_and_sync()

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    return app


app = create_app()
