from typing import Any, Optional

from travel_assistant.models import CANCELLED, BookingSummary
from travel_assistant.providers.base import BookingsProvider
from travel_assistant.providers.resilient import Envelope, ResilientClient


def booking_id_of(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    bid = data.get("bookingId") or data.get("id")
    return str(bid) if bid is not None else None


def summaries(data: Any) -> list[BookingSummary]:
    if isinstance(data, dict):
        # some stores wrap lists: {"bookings": [...]}
        data = data.get("bookings") or data.get("items") or []
    if not isinstance(data, list):
        return []
    return [BookingSummary.from_dict(x) for x in data if isinstance(x, dict)]


class BookingStoreClient(BookingsProvider):
    """REST client for the booking store, every call goes through ResilientClient."""

    def __init__(self, client: ResilientClient):
        self.client = client

    def create(self, user_id: str, trip_id: str, price: float) -> Envelope:
        payload = {"userId": user_id, "tripId": trip_id, "price": price}
        headers = {"Idempotency-Key": f"{user_id}:{trip_id}"}
        return self.client.post("/bookings", json=payload, headers=headers)

    def list(self) -> Envelope:
        return self.client.get("/bookings")

    def get(self, booking_id: str) -> Envelope:
        return self.client.get(f"/bookings/{booking_id}")

    def update(self, booking_id: str, changes: dict) -> Envelope:
        return self.client.put(f"/bookings/{booking_id}", json=changes)

    def cancel(self, booking_id: str) -> Envelope:
        return self.update(booking_id, {"status": CANCELLED})

    def delete(self, booking_id: str) -> Envelope:
        return self.client.delete(f"/bookings/{booking_id}")
