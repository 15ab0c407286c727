"""Shared fixtures: a catalog pinned to a fixed day and an in-memory booking store."""
import json
import re
from datetime import date, datetime, timezone
from urllib.parse import urlparse

import pytest
import requests
from requests.adapters import BaseAdapter

from travel_assistant.agents.bookings import BookingOrchestrator
from travel_assistant.config import DEFAULT_DATASET
from travel_assistant.graph.graph import ConversationOrchestrator
from travel_assistant.providers.booking_store import BookingStoreClient
from travel_assistant.providers.flight_catalog import FlightCatalog
from travel_assistant.providers.resilient import CircuitBreaker, ResilientClient
from travel_assistant.session import SessionStore

TODAY = date(2025, 12, 1)
BASE_URL = "http://booking.test/api"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class StubDates:
    """Date source returning a fixed value and counting calls."""

    def __init__(self, value=None):
        self.value = value
        self.calls = []

    def normalize(self, text):
        self.calls.append(text)
        return self.value


class FakeBookingStore(BaseAdapter):
    """requests transport adapter serving /api/bookings from memory."""

    def __init__(self):
        super().__init__()
        self.bookings = {}
        self.by_key = {}
        self.calls = []
        self.rules = []
        self._seq = 0

    # ---- test helpers ----
    def seed(self, booking_id, user_id, trip_id, price=100.0, status="ACTIVE"):
        self.bookings[booking_id] = {
            "id": booking_id, "userId": user_id, "tripId": trip_id,
            "price": price, "status": status, "createdAt": "2025-11-30T10:00:00Z",
        }
        return self.bookings[booking_id]

    def fail(self, method, status=500, times=1, path=None, exc=None):
        """Inject failures for matching calls; times=None fails forever."""
        self.rules.append({"method": method, "status": status, "times": times, "path": path, "exc": exc})

    def count(self, method=None, path=None):
        return sum(
            1 for m, p, _, _ in self.calls
            if (method is None or m == method) and (path is None or p == path)
        )

    # ---- adapter ----
    def close(self):
        pass

    def _response(self, request, status, body=None):
        resp = requests.Response()
        resp.status_code = status
        resp.reason = {200: "OK", 201: "Created", 204: "No Content", 404: "Not Found"}.get(status, "Error")
        resp._content = json.dumps(body).encode("utf-8") if body is not None else b""
        resp.headers["Content-Type"] = "application/json"
        resp.url = request.url
        resp.request = request
        return resp

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        path = urlparse(request.url).path
        if path.startswith("/api"):
            path = path[len("/api"):]
        payload = json.loads(request.body) if request.body else None
        self.calls.append((request.method, path, payload, dict(request.headers)))

        for rule in self.rules:
            if rule["method"] != request.method or rule["times"] == 0:
                continue
            if rule["path"] and not re.fullmatch(rule["path"], path):
                continue
            if rule["times"] is not None:
                rule["times"] -= 1
            if rule["exc"] is not None:
                raise rule["exc"]
            return self._response(request, rule["status"], {"message": f"injected {rule['status']}"})

        return self._route(request, path, payload)

    def _route(self, request, path, payload):
        m = re.fullmatch(r"/bookings/([^/]+)", path)
        if path == "/bookings" and request.method == "POST":
            key = request.headers.get("Idempotency-Key")
            if key and key in self.by_key and self.by_key[key] in self.bookings:
                return self._response(request, 200, self.bookings[self.by_key[key]])
            self._seq += 1
            bid = f"b-{self._seq}"
            booking = {
                "id": bid,
                "userId": payload.get("userId"),
                "tripId": payload.get("tripId"),
                "price": payload.get("price"),
                "status": "ACTIVE",
                "createdAt": datetime.now(timezone.utc).isoformat(),
            }
            self.bookings[bid] = booking
            if key:
                self.by_key[key] = bid
            return self._response(request, 201, booking)
        if path == "/bookings" and request.method == "GET":
            return self._response(request, 200, list(self.bookings.values()))
        if m:
            bid = m.group(1)
            booking = self.bookings.get(bid)
            if booking is None:
                return self._response(request, 404, {"message": f"Booking {bid} not found"})
            if request.method == "GET":
                return self._response(request, 200, booking)
            if request.method == "PUT":
                booking.update({k: v for k, v in (payload or {}).items() if k in {"status", "price", "tripId"}})
                return self._response(request, 200, booking)
            if request.method == "DELETE":
                del self.bookings[bid]
                return self._response(request, 204)
        return self._response(request, 405, {"message": "unsupported"})


@pytest.fixture
def catalog():
    return FlightCatalog(
        dataset_path=DEFAULT_DATASET,
        synthetic_count=50,
        timezone="UTC",
        today=lambda: TODAY,
    )


@pytest.fixture
def store():
    return FakeBookingStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def http(store):
    session = requests.Session()
    session.mount("http://booking.test", store)
    return session


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=3, open_seconds=10, clock=clock)


@pytest.fixture
def client(http, breaker):
    return ResilientClient(BASE_URL, session=http, timeout=1, retries=2, breaker=breaker)


@pytest.fixture
def sessions():
    return SessionStore(shards=4)


@pytest.fixture
def bookings(client, sessions):
    return BookingOrchestrator(BookingStoreClient(client), sessions)


@pytest.fixture
def dates():
    return StubDates()


@pytest.fixture
def assistant(catalog, sessions, bookings, dates):
    return ConversationOrchestrator(catalog, sessions, bookings, date_source=dates, reasoning=None)
