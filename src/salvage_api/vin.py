from __future__ import annotations

import logging
from typing import Any

import httpx

from salvage_api.storage import RedisCache

logger = logging.getLogger(__name__)

# Tenth VIN character -> model year, for the current 30-year cycle.
_YEAR_CODE_MAP = {
    "Y": 2000,
    "1": 2001,
    "2": 2002,
    "3": 2003,
    "4": 2004,
    "5": 2005,
    "6": 2006,
    "7": 2007,
    "8": 2008,
    "9": 2009,
    "A": 2010,
    "B": 2011,
    "C": 2012,
    "D": 2013,
    "E": 2014,
    "F": 2015,
    "G": 2016,
    "H": 2017,
    "J": 2018,
    "K": 2019,
    "L": 2020,
    "M": 2021,
    "N": 2022,
    "P": 2023,
    "R": 2024,
    "S": 2025,
    "T": 2026,
}


class VinDecoder:
    """Fills in year/make for a purchase through the NHTSA vPIC DecodeVinValues endpoint."""

    def __init__(self, cache: RedisCache, base_url: str, ttl_seconds: int) -> None:
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def fallback_decode(vin: str) -> dict[str, Any]:
        code = vin[9].upper() if len(vin) >= 10 else ""
        return {"vin": vin, "year": _YEAR_CODE_MAP.get(code), "make": "", "source": "fallback"}

    async def decode(self, vin: str) -> dict[str, Any]:
        cache_key = f"vin_decode:{vin.upper()}"
        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            return cached

        try:
            async with httpx.AsyncClient(timeout=2.0) as client:
                resp = await client.get(f"{self.base_url}/DecodeVinValues/{vin}", params={"format": "json"})
                resp.raise_for_status()
            row = (resp.json().get("Results") or [{}])[0]
            decoded = {
                "vin": vin,
                "year": int(row.get("ModelYear") or 0) or None,
                "make": (row.get("Make") or "").title(),
                "source": "nhtsa",
            }
        except Exception as exc:
            logger.info("NHTSA decode unavailable for %s (%s); using year code", vin, exc)
            return self.fallback_decode(vin)

        await self.cache.set_json(cache_key, decoded, ttl_seconds=self.ttl_seconds)
        return decoded
