from dataclasses import dataclass
from typing import Optional, Sequence

from dateutil import parser as dtparser

from travel_assistant.models import Flight

# [start, end) local departure hour
TIME_BANDS = {
    "morning": (5, 12),
    "evening": (17, 24),
}


@dataclass
class SelectionCriteria:
    ordinal: Optional[int] = None       # 1-based
    cheapest: bool = False
    earliest: bool = False
    latest: bool = False
    date: Optional[str] = None
    destination: Optional[str] = None
    max_price: Optional[float] = None
    carrier: Optional[str] = None
    time_of_day: Optional[str] = None
    nonstop: bool = False

    def is_empty(self) -> bool:
        return self == SelectionCriteria()

    @classmethod
    def from_slots(cls, slots: dict) -> "SelectionCriteria":
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in (slots or {}).items() if k in fields and v is not None})


def _departure_hour(f: Flight) -> Optional[int]:
    try:
        return dtparser.isoparse(f.departure).hour
    except (TypeError, ValueError):
        return None


def _in_band(f: Flight, band: tuple[int, int]) -> bool:
    h = _departure_hour(f)
    return h is not None and band[0] <= h < band[1]


def filter_flights(candidates: Sequence[Flight], c: SelectionCriteria) -> list[Flight]:
    out = list(candidates)
    if c.date:
        out = [f for f in out if f.date.startswith(c.date)]
    if c.destination:
        dest = c.destination.strip().upper()
        out = [f for f in out if f.destination.upper() == dest]
    if c.max_price is not None:
        out = [f for f in out if f.price <= c.max_price]
    if c.carrier:
        needle = c.carrier.replace(" ", "").lower()
        out = [f for f in out if needle in f.carrier.replace(" ", "").lower()]
    band = TIME_BANDS.get((c.time_of_day or "").lower())
    if band:
        out = [f for f in out if _in_band(f, band)]
    if c.nonstop:
        # unknown stop counts pass
        out = [f for f in out if f.stops is None or f.stops == 0]
    return out


def select(candidates: Sequence[Flight], criteria: Optional[SelectionCriteria] = None) -> Optional[Flight]:
    """
    Pick one flight out of the last search.
    Filters are applied first, then exactly one ranking rule:
    cheapest, earliest, latest, ordinal, else the first remaining flight.
    """
    c = criteria or SelectionCriteria()
    pool = filter_flights(candidates, c)
    if not pool:
        return None

    if c.cheapest:
        return min(pool, key=lambda f: f.price)
    if c.earliest:
        return min(pool, key=lambda f: f.departure)
    if c.latest:
        return max(pool, key=lambda f: f.departure)
    if c.ordinal is not None:
        if c.ordinal == -1:
            return pool[-1]
        if 1 <= c.ordinal <= len(pool):
            return pool[c.ordinal - 1]
        return None
    return pool[0]
