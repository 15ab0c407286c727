from abc import ABC, abstractmethod
from typing import Optional

from travel_assistant.models import Flight


class FlightsProvider(ABC):
    @abstractmethod
    def search(self, origin: str, destination: str, date_iso: str) -> list[Flight]:
        ...

    @abstractmethod
    def cheapest(self, origin: str, destination: str, date_iso: str) -> Optional[Flight]:
        ...

    @abstractmethod
    def suggest_destinations(self, origin: str, date_iso: Optional[str] = None, limit: int = 5) -> list[Flight]:
        ...

    @abstractmethod
    def lookup_by_trip_id(self, trip_id: str) -> Optional[Flight]:
        ...


class BookingsProvider(ABC):
    @abstractmethod
    def create(self, user_id: str, trip_id: str, price: float):
        ...

    @abstractmethod
    def list(self):
        ...

    @abstractmethod
    def get(self, booking_id: str):
        ...

    @abstractmethod
    def update(self, booking_id: str, changes: dict):
        ...

    @abstractmethod
    def delete(self, booking_id: str):
        ...
