"""NMVTIS batch file in the AAMVA SVRS 41-column layout, plus single-VIN helpers."""

from __future__ import annotations

import csv
import re
from dataclasses import dataclass
from datetime import date
from typing import Iterable

import pandas as pd

from salvage.config import YardProfile
from salvage.data_models import (
    ComplianceReportEntry,
    Disposition,
    ReportType,
    SaleRecord,
    VehicleRecord,
)

AAMVA_COLUMNS: tuple[str, ...] = (
    "Reference ID",
    "NMVTIS ID",
    "PIN",
    "REPORTING ENTITY NAME",
    "IS AN INSURANCE ENTITY?",
    "ADDRESS",
    "CITY",
    "ST",
    "ZIP",
    "PHONE",
    "EMAIL",
    "VIN",
    "Confirm VIN",
    "VEHICLE / VESSEL MAKE",
    "VEHICLE MODEL YEAR",
    "VEHICLE MODEL NAME",
    "VEHICLE STYLE",
    "MILEAGE",
    "VEHICLE SALVAGE OBTAIN DATE",
    "VEHICLE DISPOSITION",
    "REASON FOR DISPOSITION",
    "VEHICLE INTENDED FOR EXPORT",
    "Reserved",
    "INSURANCE OWNER BUSINESS NAME",
    "INSURANCE OWNER FIRSTNM",
    "INSURANCE OWNER LASTNM",
    "INSURANCE OWNER MI",
    "INSURANCE OWNER ADDR",
    "INSURANCE OWNER CITY",
    "INSURANCE OWNER STATE",
    "INSURANCE OWNER ZIP",
    "VEHICLE TRANSFERRED TO COMPANY",
    "VEHICLE TRANSFERRED TO FIRSTNM",
    "VEHICLE TRANSFERRED TO LASTNM",
    "VEHICLE TRANSFERRED TO MI",
    "VEHICLE OBTAINED FROM COMPANY",
    "VEHICLE OBTAINED FROM FIRSTNM",
    "VEHICLE OBTAINED FROM LASTNM",
    "VEHICLE OBTAINED FROM MI",
    "DISMANTLER LOCATION",
    "DISMANTLER LIC NUMBER",
)

_VIN_FORBIDDEN = re.compile(r"[IOQ]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ExportSource:
    """A compliance entry joined with whatever vehicle/sale data still exists."""

    entry: ComplianceReportEntry
    vehicle: VehicleRecord | None = None
    sale: SaleRecord | None = None


def vin_problems(vin: str) -> list[str]:
    problems: list[str] = []
    if len(vin or "") != 17:
        problems.append("VIN must be exactly 17 characters")
    if _VIN_FORBIDDEN.search((vin or "").upper()):
        problems.append("VIN cannot contain letters I, O, or Q")
    return problems


def format_aamva_date(value: date | None) -> str:
    return value.strftime("%m/%d/%Y") if value else ""


def batch_filename(today: date) -> str:
    return f"NMVTIS_Batch_{today.isoformat()}.csv"


def split_name(name: str) -> tuple[str, str, str]:
    """(company, first, last). A single-token name is reported as a company."""
    parts = name.split()
    if not parts:
        return "", "", ""
    if len(parts) == 1:
        return parts[0], "", ""
    return "", parts[0], " ".join(parts[1:])


def _flat(value: object) -> str:
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip()


def _disposition_code(source: ExportSource) -> str:
    if source.entry.report_type is ReportType.PURCHASE:
        return Disposition.TBD.value
    if source.sale is not None:
        return source.sale.disposition.value
    return source.vehicle.disposition.value if source.vehicle else ""


def build_row(index: int, source: ExportSource, yard: YardProfile) -> dict[str, str]:
    vehicle, sale = source.vehicle, source.sale
    vin = vehicle.vin if vehicle else source.entry.vin
    disposition = _disposition_code(source)
    _, seller_first, seller_last = split_name(vehicle.seller.name) if vehicle else ("", "", "")
    buyer_company, buyer_first, buyer_last = split_name(sale.buyer.name) if sale else ("", "", "")

    row = dict.fromkeys(AAMVA_COLUMNS, "")
    row.update(
        {
            "Reference ID": str(index),
            "NMVTIS ID": yard.nmvtis_id,
            "PIN": yard.nmvtis_pin,
            "REPORTING ENTITY NAME": yard.name,
            "IS AN INSURANCE ENTITY?": "Y" if yard.is_insurance_entity else "N",
            "ADDRESS": yard.address,
            "CITY": yard.city,
            "ST": yard.state,
            "ZIP": yard.zip,
            "PHONE": yard.phone,
            "EMAIL": yard.email,
            "VIN": vin,
            "Confirm VIN": vin,
            "VEHICLE / VESSEL MAKE": vehicle.make if vehicle else "",
            "VEHICLE MODEL YEAR": str(vehicle.year) if vehicle and vehicle.year else "",
            "VEHICLE SALVAGE OBTAIN DATE": format_aamva_date(vehicle.purchase_date if vehicle else None),
            "VEHICLE DISPOSITION": disposition,
            "REASON FOR DISPOSITION": sale.notes if sale else "",
            "VEHICLE INTENDED FOR EXPORT": "Y" if disposition == Disposition.EXPORTED.value else "N",
            "VEHICLE TRANSFERRED TO COMPANY": (buyer_company or yard.name) if sale else yard.name,
            "VEHICLE TRANSFERRED TO FIRSTNM": buyer_first,
            "VEHICLE TRANSFERRED TO LASTNM": buyer_last,
            "VEHICLE OBTAINED FROM FIRSTNM": seller_first,
            "VEHICLE OBTAINED FROM LASTNM": seller_last,
            "DISMANTLER LOCATION": yard.address,
            "DISMANTLER LIC NUMBER": sale.buyer.license_number if sale else "",
        }
    )
    return {column: _flat(value) for column, value in row.items()}


def build_batch_csv(sources: Iterable[ExportSource], yard: YardProfile) -> str:
    """Header plus one fully-quoted row per entry; free text is kept on one line."""
    rows = [build_row(index, source, yard) for index, source in enumerate(sources, start=1)]
    frame = pd.DataFrame(rows, columns=list(AAMVA_COLUMNS), dtype=str)
    return frame.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")


def build_report_summary(source: ExportSource, yard: YardProfile) -> str:
    """Text block for keying a single vehicle into the AAMVA SVRS web form."""
    vehicle, sale = source.vehicle, source.sale
    is_purchase = source.entry.report_type is ReportType.PURCHASE
    lines = [
        "NMVTIS Report Data (Copy this to AAMVA SVRS):",
        "",
        f"VIN: {vehicle.vin if vehicle else source.entry.vin}",
        f"Report Type: {'Junk Vehicle Report' if is_purchase else 'Vehicle Sale Report'}",
        f"Obtain Date: {format_aamva_date(vehicle.purchase_date if vehicle else None)}",
        f"Obtained From: {vehicle.seller.name if vehicle else ''}",
    ]
    if sale is not None and not is_purchase:
        lines.append(f"Sold To: {sale.buyer.name}")
    lines += [
        f"Disposition: {_disposition_code(source)}",
        f"Export Intended: {'Yes' if _disposition_code(source) == Disposition.EXPORTED.value else 'No'}",
        "",
        "Entity Information:",
        f"NMVTIS ID: {yard.nmvtis_id}",
        f"Name: {yard.name}",
        f"Address: {yard.address}",
        f"City: {yard.city}",
        f"State: {yard.state}",
        f"ZIP: {yard.zip}",
        f"Phone: {yard.phone}",
    ]
    return "\n".join(lines) + "\n"
