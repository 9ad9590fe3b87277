"""Wisconsin MV2459 junked vehicle bill of sale.

``build_bill_of_sale`` is a pure transformation from a vehicle, its sale and
the yard profile into ordered labelled sections. ``BillOfSale.render_html``
turns the same sections into a printable, autoescaped HTML page.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from salvage.config import YardProfile
from salvage.data_models import SaleRecord, VehicleRecord

FORM_TITLE = "JUNKED VEHICLE BILL OF SALE"
FORM_REVISION = "MV2459 (Rev. 7/2023)"

_templates = Environment(
    loader=FileSystemLoader(Path(__file__).parent / "templates"),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


@dataclass(frozen=True)
class DocumentSection:
    title: str
    fields: tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class BillOfSale:
    vin: str
    filename_stem: str
    sections: tuple[DocumentSection, ...]
    signatures: tuple[str, ...]
    prepared_by: str
    generated_at: datetime | None = None

    @property
    def html_filename(self) -> str:
        return f"{self.filename_stem}.html"

    def section(self, title: str) -> DocumentSection:
        for section in self.sections:
            if section.title == title:
                return section
        raise KeyError(title)

    def render_html(self) -> str:
        return _templates.get_template("mv2459.html").render(
            form_title=FORM_TITLE,
            form_revision=FORM_REVISION,
            document=self,
        )


def _money(value: Decimal | None) -> str:
    return "" if value is None else f"${value:,.2f}"


def _day(value: date | None) -> str:
    return value.isoformat() if value else ""


def build_bill_of_sale(
    vehicle: VehicleRecord,
    sale: SaleRecord,
    yard: YardProfile,
    *,
    generated_at: datetime | None = None,
) -> BillOfSale:
    seller = vehicle.seller
    buyer = sale.buyer
    sale_fields = [
        ("Sale Price", _money(sale.sale_price)),
        ("Sale Date", _day(sale.sale_date)),
        ("Disposition", sale.disposition.value),
        ("Sold By", sale.sold_by),
    ]
    if sale.notes:
        sale_fields.append(("Notes", sale.notes))

    sections = (
        DocumentSection(
            "SELLER INFORMATION (Original Owner)",
            (
                ("Name", seller.name),
                ("Address", seller.address),
                ("City, State, ZIP", seller.city_line),
                ("Phone", seller.phone),
            ),
        ),
        DocumentSection(
            "VEHICLE INFORMATION",
            (
                ("Year", str(vehicle.year or "")),
                ("Make", vehicle.make),
                ("VIN", vehicle.vin),
                ("Original Purchase Price", _money(vehicle.purchase_price)),
                ("Original Purchase Date", _day(vehicle.purchase_date)),
            ),
        ),
        DocumentSection(
            "JUNKYARD/DISMANTLER INFORMATION (Current Seller)",
            (
                ("Business Name", yard.name),
                ("Address", yard.address),
                ("City, State, ZIP", yard.city_line),
                ("Phone", yard.phone),
                ("License Number", yard.license_number),
            ),
        ),
        DocumentSection(
            "BUYER INFORMATION (Current Purchaser)",
            (
                ("Name/Company", buyer.name),
                ("Address", buyer.address),
                ("City, State, ZIP", buyer.city_line),
                ("Phone", buyer.phone),
                ("License Number", buyer.license_number),
            ),
        ),
        DocumentSection("SALE TRANSACTION", tuple(sale_fields)),
    )
    return BillOfSale(
        vin=vehicle.vin,
        filename_stem=f"MV2459_{vehicle.vin or 'NO-VIN'}_{_day(sale.sale_date)}",
        sections=sections,
        signatures=("Seller Signature", "Buyer Signature"),
        prepared_by=yard.name,
        generated_at=generated_at,
    )
