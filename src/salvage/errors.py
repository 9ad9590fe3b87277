from __future__ import annotations

from typing import Iterable


class SalvageError(Exception):
    """Base class for business-rule failures. Nothing has been written when one is raised."""


class ValidationError(SalvageError):
    def __init__(self, fields: Iterable[str], message: str | None = None) -> None:
        self.fields = list(fields)
        super().__init__(message or "invalid or missing: " + ", ".join(self.fields))


class NotFoundError(SalvageError):
    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id!r} not found")


class ConflictError(SalvageError):
    """The record was changed by another writer; reload and retry."""


class VehicleOnHoldError(ConflictError):
    """The vehicle is held under impound/lien and can only leave through the hold manager."""


class PersistenceError(Exception):
    """The storage boundary failed. Callers may fall back to cached data."""


class PartialSuccessWarning(UserWarning):
    """A best-effort step failed after the core disposition write committed."""

    def __init__(self, step: str, detail: str) -> None:
        self.step = step
        self.detail = detail
        super().__init__(f"{step}: {detail}")

    def to_dict(self) -> dict[str, str]:
        return {"step": self.step, "detail": self.detail}
