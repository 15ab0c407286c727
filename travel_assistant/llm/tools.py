import json
from dataclasses import asdict
from typing import Any, Optional

from langchain_core.tools import StructuredTool

from travel_assistant.agents.bookings import BookingOrchestrator
from travel_assistant.agents.selection import SelectionCriteria, select
from travel_assistant.errors import AssistantError
from travel_assistant.models import Flight
from travel_assistant.providers.booking_store import booking_id_of
from travel_assistant.providers.flight_catalog import FlightCatalog
from travel_assistant.providers.resilient import CIRCUIT_OPEN, Envelope
from travel_assistant.session import SessionStore


def _ok(data: Any) -> str:
    return json.dumps({"status": "OK", "data": data}, ensure_ascii=False)


def _error(code: str, message: str, data: Any = None) -> str:
    out = {"status": "ERROR", "error": {"code": code, "message": message}}
    if data is not None:
        out["data"] = data
    return json.dumps(out, ensure_ascii=False)


def _from_envelope(env: Envelope) -> str:
    if env.ok:
        return _ok(env.data)
    code = CIRCUIT_OPEN if env.message == CIRCUIT_OPEN else f"HTTP_{env.http_status}"
    return _error(code, env.message or "booking store error")


def _flights(flights: list[Flight]) -> list[dict]:
    return [f.to_dict() for f in flights]


def build_tools(
    session_id: str,
    catalog: FlightCatalog,
    sessions: SessionStore,
    bookings: BookingOrchestrator,
) -> list[StructuredTool]:
    """Tools for the reasoning service, bound to one session."""

    def search_flights(origin: str, destination: str, date: str) -> str:
        try:
            flights = catalog.search(origin, destination, date)
        except AssistantError as e:
            return _error(getattr(e, "code", "ERROR"), str(e))
        sessions.remember_search(session_id, flights)
        return _ok(_flights(flights[:10]))

    def select_from_last_search(
        ordinal: Optional[int] = None,
        cheapest: bool = False,
        earliest: bool = False,
        latest: bool = False,
        max_price: Optional[float] = None,
        carrier: Optional[str] = None,
        time_of_day: Optional[str] = None,
        nonstop: bool = False,
        date: Optional[str] = None,
        destination: Optional[str] = None,
    ) -> str:
        s = sessions.snapshot(session_id)
        if not s.last_search_results:
            return _error("NO_SEARCH", "Search for flights first")
        if destination:
            destination = catalog.resolve_place(destination) or destination
        chosen = select(s.last_search_results, SelectionCriteria(
            ordinal=ordinal, cheapest=cheapest, earliest=earliest, latest=latest,
            date=date, destination=destination,
            max_price=max_price, carrier=carrier, time_of_day=time_of_day, nonstop=nonstop,
        ))
        if chosen is None:
            return _error("NOT_FOUND", "No flight in the last search matches")
        sessions.remember_chosen(session_id, chosen)
        return _ok(chosen.to_dict())

    def suggest_destinations(origin: str, date: Optional[str] = None, limit: int = 5) -> str:
        try:
            flights = catalog.suggest_destinations(origin, date, limit)
        except AssistantError as e:
            return _error(getattr(e, "code", "ERROR"), str(e))
        sessions.remember_search(session_id, flights)
        return _ok(_flights(flights))

    def create_booking(trip_id: Optional[str] = None) -> str:
        s = sessions.snapshot(session_id)
        if not s.active_user_id:
            return _error("USER_REQUIRED", "Ask the user for their user id first")
        flight = catalog.lookup_by_trip_id(trip_id) if trip_id else None
        if flight is None and s.last_chosen_flight and (not trip_id or s.last_chosen_flight.trip_id == trip_id):
            flight = s.last_chosen_flight
        if flight is None:
            return _error("NO_FLIGHT", "Select a flight from the last search first")
        env = bookings.create(session_id, s.active_user_id, flight.trip_id, flight.price)
        if env.ok:
            return _ok({"bookingId": booking_id_of(env.data), "tripId": flight.trip_id})
        return _from_envelope(env)

    def list_bookings() -> str:
        s = sessions.snapshot(session_id)
        env, items = bookings.list_for_user(s.active_user_id)
        if not env.ok:
            return _from_envelope(env)
        return _ok([asdict(b) for b in items])

    def cancel_booking(booking_id: str) -> str:
        s = sessions.snapshot(session_id)
        try:
            env = bookings.cancel(booking_id, s.active_user_id)
        except AssistantError as e:
            return _error(getattr(e, "code", "ERROR"), str(e))
        return _from_envelope(env)

    def cheapest_flight(origin: str, destination: str, date: str) -> str:
        try:
            flights = catalog.search(origin, destination, date)
        except AssistantError as e:
            return _error(getattr(e, "code", "ERROR"), str(e))
        if not flights:
            return _error("NOT_FOUND", f"No flights from {origin} to {destination} on {date}")
        sessions.remember_search(session_id, flights, chosen=flights[0])
        return _ok(flights[0].to_dict())

    def recommend_from_origin(origin: str, date: Optional[str] = None) -> str:
        try:
            flight = catalog.recommend_from_origin(origin, date)
        except AssistantError as e:
            return _error(getattr(e, "code", "ERROR"), str(e))
        sessions.remember_search(session_id, [flight], chosen=flight)
        return _ok(flight.to_dict())

    def get_booking(booking_id: str) -> str:
        env, summary = bookings.get(booking_id)
        if summary is None:
            return _from_envelope(env)
        return _ok(asdict(summary))

    def reschedule_booking(booking_id: str, new_date: str, trip_id: Optional[str] = None) -> str:
        s = sessions.snapshot(session_id)
        if not s.active_user_id:
            return _error("USER_REQUIRED", "Ask the user for their user id first")
        if trip_id:
            flight = catalog.lookup_by_trip_id(trip_id)
            if flight is None:
                return _error("NO_FLIGHT", f"Unknown trip {trip_id}")
        else:
            env, booking = bookings.get(booking_id)
            if booking is None:
                return _from_envelope(env)
            current = catalog.lookup_by_trip_id(booking.trip_id or "")
            if current is None:
                return _error("NO_FLIGHT", f"Unknown trip {booking.trip_id} on booking {booking_id}")
            try:
                flight = catalog.cheapest(current.origin, current.destination, new_date)
            except AssistantError as e:
                return _error(getattr(e, "code", "ERROR"), str(e))
            if flight is None:
                return _error("NOT_FOUND", f"No flights on {new_date}")

        result = bookings.reschedule(session_id, booking_id, new_date, flight, s.active_user_id)
        payload = {
            "status": result.status.value,
            "code": result.code,
            "reason": result.reason,
            "newBookingId": result.new_booking_id,
            "tripId": flight.trip_id,
        }
        if result.ok:
            return _ok(payload)
        return _error(result.code or "ERROR", result.reason or "reschedule failed", payload)

    return [
        StructuredTool.from_function(
            func=search_flights, name="search_flights",
            description="Search flights. origin/destination: city or IATA code; date: YYYY-MM-DD. Cheapest first.",
        ),
        StructuredTool.from_function(
            func=select_from_last_search, name="select_from_last_search",
            description="Pick a flight from the last search by 1-based ordinal or criteria (cheapest, earliest, latest, max_price, carrier, time_of_day morning|evening, nonstop).",
        ),
        StructuredTool.from_function(
            func=suggest_destinations, name="suggest_destinations",
            description="Suggest cheap destinations from an origin, optionally on a date (YYYY-MM-DD).",
        ),
        StructuredTool.from_function(
            func=create_booking, name="create_booking",
            description="Book the chosen flight (or the given trip_id) for the session's user.",
        ),
        StructuredTool.from_function(
            func=list_bookings, name="list_bookings",
            description="List the bookings of the session's user.",
        ),
        StructuredTool.from_function(
            func=cancel_booking, name="cancel_booking",
            description="Cancel a booking by id.",
        ),
        StructuredTool.from_function(
            func=cheapest_flight, name="cheapest_flight",
            description="Find and choose the cheapest flight. origin/destination: city or IATA code; date: YYYY-MM-DD.",
        ),
        StructuredTool.from_function(
            func=recommend_from_origin, name="recommend_from_origin",
            description="Recommend the single cheapest trip out of an origin, optionally on a date (YYYY-MM-DD), and choose it.",
        ),
        StructuredTool.from_function(
            func=get_booking, name="get_booking",
            description="Look up one booking by id.",
        ),
        StructuredTool.from_function(
            func=reschedule_booking, name="reschedule_booking",
            description="Move a booking to new_date (YYYY-MM-DD): books the given trip_id, or the cheapest flight on the same route, then cancels the old booking.",
        ),
    ]
