from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping
from uuid import uuid4

from salvage.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class Disposition(str, Enum):
    TBD = "TBD"
    SOLD = "SOLD"
    SCRAPPED = "SCRAPPED"
    EXPORTED = "EXPORTED"
    PARTS = "PARTS"


FINAL_DISPOSITIONS = frozenset(d for d in Disposition if d is not Disposition.TBD)

# Codes written by older clients and the NMVTIS form vocabulary.
_LEGACY_DISPOSITIONS = {
    "SCRAP": Disposition.SCRAPPED,
    "CRUSH": Disposition.SCRAPPED,
    "CRUSHED": Disposition.SCRAPPED,
    "EXPORT": Disposition.EXPORTED,
}


class ImpoundStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    RELEASED = "released"
    AUCTIONED = "auctioned"
    AUTO_TRANSFERRED = "auto-transferred"


TERMINAL_HOLD_STATUSES = frozenset(
    {ImpoundStatus.RELEASED, ImpoundStatus.AUCTIONED, ImpoundStatus.AUTO_TRANSFERRED}
)


class LedgerEntryType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"
    SET_BALANCE = "setBalance"
    SALE_PROCEEDS = "saleProceeds"
    PURCHASE = "purchase"


_LEGACY_ENTRY_TYPES = {
    "buy": LedgerEntryType.PURCHASE,
    "sell": LedgerEntryType.SALE_PROCEEDS,
    "sale": LedgerEntryType.SALE_PROCEEDS,
    "set_balance": LedgerEntryType.SET_BALANCE,
    "sale_proceeds": LedgerEntryType.SALE_PROCEEDS,
}


class ReportStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    SUBMITTED = "submitted"
    FAILED = "failed"


class ReportType(str, Enum):
    PURCHASE = "PURCHASE"
    DISPOSITION = "DISPOSITION"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12].upper()}"


def report_id(report_type: ReportType, vehicle_id: str) -> str:
    return f"{report_type.value}:{vehicle_id}"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def pick(row: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """First non-empty value among ``keys``; each key is also tried in camelCase."""
    for key in keys:
        for candidate in (key, _camel(key)):
            value = row.get(candidate)
            if value is not None and value != "":
                return value
    return default


def _text(row: Mapping[str, Any], *keys: str) -> str:
    return str(pick(row, *keys, default="")).strip()


def to_money(value: Any, field_name: str, *, allow_negative: bool = False) -> Decimal:
    """Strict money parse for caller input: no more than two decimal places."""
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError([field_name], f"{field_name} is required")
    try:
        amount = Decimal(str(value).replace("$", "").replace(",", "").strip())
    except InvalidOperation:
        raise ValidationError([field_name], f"{field_name} is not a number: {value!r}") from None
    if not amount.is_finite():
        raise ValidationError([field_name], f"{field_name} is not a number: {value!r}")
    if amount != amount.quantize(CENT):
        raise ValidationError([field_name], f"{field_name} has more than 2 decimal places")
    if amount < 0 and not allow_negative:
        raise ValidationError([field_name], f"{field_name} cannot be negative")
    return amount.quantize(CENT)


def parse_money(value: Any, default: Decimal | None = None) -> Decimal | None:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value)).quantize(CENT)
    except InvalidOperation:
        return default


def parse_date(value: Any, field_name: str = "date") -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError([field_name], f"{field_name} is not an ISO date: {value!r}") from None


def parse_datetime(value: Any, field_name: str = "timestamp") -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError([field_name], f"{field_name} is not an ISO timestamp: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y"}
    return bool(value)


def _code(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    return str(value).strip()


def parse_disposition(value: Any) -> Disposition:
    try:
        return Disposition(_code(value).upper())
    except ValueError:
        raise ValidationError(["disposition"], f"unknown disposition {value!r}") from None


def normalize_disposition(value: Any) -> Disposition:
    if value is None or value == "":
        return Disposition.TBD
    code = _code(value).upper()
    if code in _LEGACY_DISPOSITIONS:
        return _LEGACY_DISPOSITIONS[code]
    return parse_disposition(code)


def parse_entry_type(value: Any) -> LedgerEntryType:
    raw = _code(value)
    if raw in _LEGACY_ENTRY_TYPES:
        return _LEGACY_ENTRY_TYPES[raw]
    try:
        return LedgerEntryType(raw)
    except ValueError:
        raise ValidationError(["entry_type"], f"unknown ledger entry type {value!r}") from None


def parse_impound_status(value: Any) -> ImpoundStatus:
    try:
        return ImpoundStatus(_code(value).lower().replace("_", "-"))
    except ValueError:
        raise ValidationError(["impound_status"], f"unknown impound status {value!r}") from None


def jsonable(value: Any) -> Any:
    """Convert a row into JSON-safe primitives for snapshots and the cache."""
    if isinstance(value, Mapping):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class Party:
    name: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    phone: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any], prefix: str = "") -> "Party":
        return cls(**{f.name: _text(row, f"{prefix}{f.name}") for f in fields(cls)})

    def to_row(self, prefix: str = "") -> dict[str, str]:
        return {f"{prefix}{f.name}": getattr(self, f.name) for f in fields(self)}

    @property
    def city_line(self) -> str:
        region = " ".join(part for part in (self.state, self.zip) if part)
        return ", ".join(part for part in (self.city, region) if part)


@dataclass(frozen=True)
class Buyer(Party):
    email: str = ""
    license_number: str = ""

    @classmethod
    def coerce(cls, value: "Buyer | Mapping[str, Any]") -> "Buyer":
        if isinstance(value, Buyer):
            return value
        prefixed = any(str(key).startswith("buyer") for key in value)
        return cls.from_row(value, "buyer_" if prefixed else "")


@dataclass(frozen=True)
class VehicleRecord:
    id: str
    vin: str = ""
    year: int | None = None
    make: str = ""
    seller: Party = field(default_factory=Party)
    purchase_price: Decimal = ZERO
    purchase_date: date | None = None
    driver_id: str = ""
    driver_name: str = ""
    yard_id: str = ""
    disposition: Disposition = Disposition.TBD
    is_impound_or_lien: bool = False
    sale_record_id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "VehicleRecord":
        seller = Party.from_row(row, "seller_")
        if not seller.name:
            full = f"{_text(row, 'seller_first_name')} {_text(row, 'seller_last_name')}".strip()
            seller = replace(seller, name=full)
        return cls(
            id=_text(row, "id"),
            vin=_text(row, "vin", "vehicle_vin", "vehicle_v_i_n"),
            year=parse_int(pick(row, "year", "vehicle_year")) or None,
            make=_text(row, "make", "vehicle_make"),
            seller=seller,
            purchase_price=parse_money(pick(row, "purchase_price", "sale_price"), ZERO),
            purchase_date=parse_date(pick(row, "purchase_date", "sale_date"), "purchase_date"),
            driver_id=_text(row, "driver_id", "user_id"),
            driver_name=_text(row, "driver_name", "purchaser_name"),
            yard_id=_text(row, "yard_id"),
            disposition=normalize_disposition(pick(row, "disposition", "vehicle_disposition")),
            is_impound_or_lien=parse_bool(pick(row, "is_impound_or_lien", default=False)),
            sale_record_id=pick(row, "sale_record_id"),
            created_at=parse_datetime(pick(row, "created_at", "timestamp")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vin": self.vin,
            "year": self.year,
            "make": self.make,
            **self.seller.to_row("seller_"),
            "purchase_price": self.purchase_price,
            "purchase_date": self.purchase_date,
            "driver_id": self.driver_id,
            "driver_name": self.driver_name,
            "yard_id": self.yard_id,
            "disposition": self.disposition.value,
            "is_impound_or_lien": self.is_impound_or_lien,
            "sale_record_id": self.sale_record_id,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ImpoundHold:
    id: str
    vehicle_id: str
    vehicle: dict[str, Any] = field(default_factory=dict)
    yard_id: str = ""
    impound_status: ImpoundStatus = ImpoundStatus.PENDING
    impound_date: date | None = None
    release_date: date | None = None
    auction_date: date | None = None
    impound_reason: str = ""
    impound_authority: str = ""
    storage_location: str = ""
    released_to: str = ""
    fees_collected: Decimal | None = None
    license_plate: str = ""
    vehicle_color: str = ""
    notes: str = ""
    auto_transfer_date: date | None = None
    auto_transfer_sale_id: str | None = None
    created_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.impound_status in TERMINAL_HOLD_STATUSES

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ImpoundHold":
        snapshot = pick(row, "vehicle_json", "vehicle", "original_vehicle", default={})
        snapshot = dict(snapshot) if isinstance(snapshot, Mapping) else {}
        fees = pick(row, "fees_collected")
        return cls(
            id=_text(row, "id"),
            vehicle_id=str(pick(row, "vehicle_id", "original_transaction_id", default=snapshot.get("id", ""))),
            vehicle=snapshot,
            yard_id=_text(row, "yard_id"),
            impound_status=parse_impound_status(pick(row, "impound_status", default=ImpoundStatus.PENDING.value)),
            impound_date=parse_date(pick(row, "impound_date"), "impound_date"),
            release_date=parse_date(pick(row, "release_date"), "release_date"),
            auction_date=parse_date(pick(row, "auction_date"), "auction_date"),
            impound_reason=_text(row, "impound_reason"),
            impound_authority=_text(row, "impound_authority"),
            storage_location=_text(row, "storage_location"),
            released_to=_text(row, "released_to"),
            fees_collected=None if fees is None else to_money(fees, "fees_collected"),
            license_plate=_text(row, "license_plate"),
            vehicle_color=_text(row, "vehicle_color"),
            notes=str(pick(row, "notes", default="")),
            auto_transfer_date=parse_date(pick(row, "auto_transfer_date"), "auto_transfer_date"),
            auto_transfer_sale_id=pick(row, "auto_transfer_sale_id", "auto_transfer_transaction_id"),
            created_at=parse_datetime(pick(row, "created_at")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "vehicle_json": self.vehicle,
            "yard_id": self.yard_id,
            "impound_status": self.impound_status.value,
            "impound_date": self.impound_date,
            "release_date": self.release_date,
            "auction_date": self.auction_date,
            "impound_reason": self.impound_reason,
            "impound_authority": self.impound_authority,
            "storage_location": self.storage_location,
            "released_to": self.released_to,
            "fees_collected": self.fees_collected,
            "license_plate": self.license_plate,
            "vehicle_color": self.vehicle_color,
            "notes": self.notes,
            "auto_transfer_date": self.auto_transfer_date,
            "auto_transfer_sale_id": self.auto_transfer_sale_id,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class SaleRecord:
    id: str
    original_transaction_id: str
    vehicle: dict[str, Any] = field(default_factory=dict)
    buyer: Buyer = field(default_factory=Buyer)
    sale_price: Decimal = ZERO
    sale_date: date | None = None
    disposition: Disposition = Disposition.SOLD
    notes: str = ""
    sold_by: str = ""
    user_id: str = ""
    yard_id: str = ""
    actual_received_amount: Decimal | None = None
    payment_status: str = "completed"
    is_auto_transfer: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SaleRecord":
        snapshot = pick(row, "vehicle_json", "vehicle", "original_vehicle", default={})
        sale_id = _text(row, "id")
        return cls(
            id=sale_id,
            original_transaction_id=_text(row, "original_transaction_id", "vehicle_id"),
            vehicle=dict(snapshot) if isinstance(snapshot, Mapping) else {},
            buyer=Buyer.from_row(row, "buyer_"),
            sale_price=parse_money(pick(row, "sale_price"), ZERO),
            sale_date=parse_date(pick(row, "sale_date"), "sale_date"),
            disposition=normalize_disposition(pick(row, "disposition", default=Disposition.SOLD.value)),
            notes=str(pick(row, "notes", "sale_notes", default="")),
            sold_by=_text(row, "sold_by"),
            user_id=_text(row, "user_id"),
            yard_id=_text(row, "yard_id"),
            actual_received_amount=parse_money(pick(row, "actual_received_amount")),
            payment_status=_text(row, "payment_status") or "completed",
            is_auto_transfer=parse_bool(pick(row, "is_auto_transfer", default=False))
            or sale_id.startswith("AUTO-TRANSFER"),
            created_at=parse_datetime(pick(row, "created_at", "timestamp")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_transaction_id": self.original_transaction_id,
            "vehicle_json": self.vehicle,
            **self.buyer.to_row("buyer_"),
            "sale_price": self.sale_price,
            "sale_date": self.sale_date,
            "disposition": self.disposition.value,
            "notes": self.notes,
            "sold_by": self.sold_by,
            "user_id": self.user_id,
            "yard_id": self.yard_id,
            "actual_received_amount": self.actual_received_amount,
            "payment_status": self.payment_status,
            "is_auto_transfer": self.is_auto_transfer,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class CashLedgerEntry:
    id: str
    driver_id: str
    entry_type: LedgerEntryType
    amount: Decimal
    timestamp: datetime
    seq: int = 0
    yard_id: str = ""
    reason: str = ""
    actor: str = ""
    related_sale_id: str | None = None
    related_vin: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CashLedgerEntry":
        entry_type = parse_entry_type(pick(row, "entry_type", "type"))
        amount = parse_money(pick(row, "amount"), ZERO)
        # Older rows stored withdrawals and purchases as negative amounts.
        if entry_type is not LedgerEntryType.ADJUSTMENT:
            amount = abs(amount)
        return cls(
            id=_text(row, "id"),
            driver_id=_text(row, "driver_id"),
            entry_type=entry_type,
            amount=amount,
            timestamp=parse_datetime(pick(row, "timestamp", "created_at")) or datetime.min.replace(tzinfo=timezone.utc),
            seq=parse_int(pick(row, "seq")) or 0,
            yard_id=_text(row, "yard_id"),
            reason=str(pick(row, "reason", "description", default="")),
            actor=_text(row, "actor", "recorded_by"),
            related_sale_id=pick(row, "related_sale_id", "related_transaction_id"),
            related_vin=pick(row, "related_vin", "related_vehicle_v_i_n", "related_vehicle_vin"),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "driver_id": self.driver_id,
            "yard_id": self.yard_id,
            "entry_type": self.entry_type.value,
            "amount": self.amount,
            "reason": self.reason,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "seq": self.seq,
            "related_sale_id": self.related_sale_id,
            "related_vin": self.related_vin,
        }


_LEGACY_REPORT_STATUSES = {"sent": ReportStatus.SUBMITTED, "error": ReportStatus.FAILED}
_LEGACY_REPORT_TYPES = {"SALE": ReportType.DISPOSITION, "SOLD": ReportType.DISPOSITION}


@dataclass(frozen=True)
class ComplianceReportEntry:
    id: str
    vehicle_id: str
    report_type: ReportType
    status: ReportStatus
    schedule_date: datetime
    vin: str = ""
    sale_id: str | None = None
    attempts: int = 0
    submitted_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ComplianceReportEntry":
        raw_type = str(pick(row, "report_type", default=ReportType.DISPOSITION.value)).upper()
        raw_status = str(pick(row, "status", default=ReportStatus.PENDING.value)).lower()
        return cls(
            id=_text(row, "id"),
            vehicle_id=_text(row, "vehicle_id", "original_transaction_id"),
            report_type=_LEGACY_REPORT_TYPES.get(raw_type) or ReportType(raw_type),
            status=_LEGACY_REPORT_STATUSES.get(raw_status) or ReportStatus(raw_status),
            schedule_date=parse_datetime(pick(row, "schedule_date", "created_at"))
            or datetime.min.replace(tzinfo=timezone.utc),
            vin=_text(row, "vin"),
            sale_id=pick(row, "sale_id"),
            attempts=parse_int(pick(row, "attempts", "submission_attempts")) or 0,
            submitted_at=parse_datetime(pick(row, "submitted_at")),
            last_error=pick(row, "last_error", "error_message"),
            created_at=parse_datetime(pick(row, "created_at")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "sale_id": self.sale_id,
            "vin": self.vin,
            "report_type": self.report_type.value,
            "status": self.status.value,
            "schedule_date": self.schedule_date,
            "attempts": self.attempts,
            "submitted_at": self.submitted_at,
            "last_error": self.last_error,
            "created_at": self.created_at,
        }
