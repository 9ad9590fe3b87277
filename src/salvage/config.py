from __future__ import annotations

from dataclasses import dataclass, field

from salvage.data_models import Buyer


@dataclass(frozen=True)
class YardProfile:
    """Reporting entity printed on NMVTIS exports and MV2459 forms."""

    name: str = "Demo Junkyard & Auto Parts"
    address: str = "123 Salvage Road"
    city: str = "Milwaukee"
    state: str = "WI"
    zip: str = "53201"
    phone: str = "(414) 555-0123"
    email: str = ""
    license_number: str = ""
    nmvtis_id: str = ""
    nmvtis_pin: str = ""
    is_insurance_entity: bool = False

    @property
    def city_line(self) -> str:
        return f"{self.city}, {self.state} {self.zip}".strip(", ")


def _default_recipient() -> Buyer:
    return Buyer(
        name="On Kaul Auto Salvage",
        address="8520 W Kaul Ave",
        city="Milwaukee",
        state="WI",
        zip="53225",
    )


@dataclass(frozen=True)
class YardConfig:
    yard: YardProfile = field(default_factory=YardProfile)
    hold_days: int = 21
    purchase_report_delay_hours: int = 40
    default_recipient: Buyer = field(default_factory=_default_recipient)
    auto_transfer_actor: str = "AUTO-SYSTEM"
    reconcile_cron: str = "0 * * * *"  # Hourly
