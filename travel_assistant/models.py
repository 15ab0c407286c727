from dataclasses import dataclass, asdict
from typing import Any, Optional

ACTIVE = "ACTIVE"
CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class Flight:
    carrier: str
    flight_number: str
    origin: str
    destination: str
    date: str               # YYYY-MM-DD
    departure: str          # ISO-8601 with offset
    arrival: str
    price: float
    currency: str = "USD"
    stops: Optional[int] = None
    origin_city: Optional[str] = None
    destination_city: Optional[str] = None

    @property
    def trip_id(self) -> str:
        return f"{self.carrier.replace(' ', '')}-{self.flight_number}-{self.date}"

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["trip_id"] = self.trip_id
        return d

    def describe(self) -> str:
        dep = self.departure[11:16] if len(self.departure) >= 16 else self.departure
        arr = self.arrival[11:16] if len(self.arrival) >= 16 else self.arrival
        return (
            f"{self.carrier} {self.flight_number} {self.origin}→{self.destination} "
            f"{self.date} {dep}→{arr} {self.price:.2f} {self.currency}"
        )


@dataclass(frozen=True)
class BookingSummary:
    id: str
    user_id: Optional[str]
    trip_id: Optional[str]
    price: Optional[float] = None
    status: str = ACTIVE
    created_at: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.status.upper() != CANCELLED

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BookingSummary":
        price = data.get("price")
        try:
            price = float(price) if price is not None else None
        except (TypeError, ValueError):
            price = None
        return cls(
            id=str(data.get("id") or data.get("bookingId") or ""),
            user_id=data.get("userId"),
            trip_id=data.get("tripId"),
            price=price,
            status=(data.get("status") or ACTIVE).upper(),
            created_at=data.get("createdAt"),
        )

    def describe(self) -> str:
        price = f" {self.price:.2f}" if self.price is not None else ""
        return f"{self.id} {self.trip_id or '?'}{price} [{self.status}]"
