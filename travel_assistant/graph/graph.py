import logging
from typing import Any, Optional

from langgraph.graph import StateGraph, END

from travel_assistant.agents.bookings import (
    BookingOrchestrator,
    ReschedulePhase,
    SagaStatus,
    reschedule_phase,
)
from travel_assistant.agents.selection import SelectionCriteria, select
from travel_assistant.errors import CatalogNotFoundError, CatalogValidationError, OwnershipError
from travel_assistant.graph import intent as intents
from travel_assistant.graph.intent import DateSource, classify
from travel_assistant.graph.state import TurnState
from travel_assistant.llm.dialogue_manager import ReasoningService
from travel_assistant.llm.tools import build_tools
from travel_assistant.models import BookingSummary, Flight
from travel_assistant.providers.booking_store import booking_id_of
from travel_assistant.providers.flight_catalog import FlightCatalog
from travel_assistant.providers.resilient import CIRCUIT_OPEN, Envelope
from travel_assistant.session import SessionStore

logger = logging.getLogger(__name__)

SHOW_TOP = 5
APOLOGY = "Sorry, something went wrong on my side. Please try again."
HELP = (
    "I can search flights (e.g. 'from SFO to JFK on 2025-12-24'), pick one of the results, "
    "book it, list, cancel or reschedule your bookings."
)


# ---------------------------
# Utilities
# ---------------------------
def add_trace(state: TurnState, node: str, detail: dict):
    state.setdefault("trace", [])
    state["trace"].append({"node": node, "detail": detail})


def _reply(state: TurnState, node: str, text: str, **detail) -> TurnState:
    state["reply"] = text
    add_trace(state, node, detail)
    return state


def _numbered(items: list, fmt) -> str:
    return "\n".join(f"{i}. {fmt(x)}" for i, x in enumerate(items, start=1))


def _pick(items: list, ordinal: Optional[int]):
    if not items or ordinal is None:
        return None
    if ordinal == -1:
        return items[-1]
    if 1 <= ordinal <= len(items):
        return items[ordinal - 1]
    return None


def _validation_reply(e: CatalogValidationError) -> str:
    if e.field == "date":
        return f"{e.message}. Which date would you like to fly (YYYY-MM-DD)?"
    if e.field in {"origin", "destination"} and e.message.startswith("Missing"):
        return f"Where are you flying {'from' if e.field == 'origin' else 'to'}?"
    return f"{e.message}. Could you check the route?"


def _store_error_reply(env: Envelope) -> str:
    if env.message == CIRCUIT_OPEN:
        return "The booking service is temporarily unavailable. Please try again in a few seconds."
    if env.http_status >= 500:
        return "Sorry, the booking service is not responding right now. Please try again later."
    if env.http_status == 404:
        return "I couldn't find that booking."
    return f"The booking service rejected the request: {env.message or env.http_status}."


class ConversationOrchestrator:
    """
    One user turn = one run of the graph:
    classify -> a deterministic handler node (or the LLM fallback) -> END.
    Turns of the same session are serialized by the session lock.
    """

    def __init__(
        self,
        catalog: FlightCatalog,
        sessions: SessionStore,
        bookings: BookingOrchestrator,
        date_source: Optional[DateSource] = None,
        reasoning: Optional[ReasoningService] = None,
    ):
        self.catalog = catalog
        self.sessions = sessions
        self.bookings = bookings
        self.date_source = date_source
        self.reasoning = reasoning
        self.graph = self.build_graph()

    # ---------------------------
    # Entry points
    # ---------------------------
    def handle(self, session_id: str, text: str, user_id: Optional[str] = None) -> dict[str, Any]:
        with self.sessions.lock(session_id):
            self.sessions.set_user(session_id, user_id)
            self.sessions.record_turn(session_id, "user", text)
            try:
                out = self.graph.invoke({
                    "session_id": session_id,
                    "user_input": text,
                    "user_id": user_id,
                })
            except Exception:
                logger.exception("Turn failed for session %s", session_id)
                out = {"reply": APOLOGY, "intent": "error", "trace": []}

            reply = out.get("reply") or HELP
            self.sessions.record_turn(session_id, "assistant", reply)
            return {
                "reply": reply,
                "intent": out.get("intent"),
                "results": out.get("results", {}),
                "trace": out.get("trace", []),
            }

    def respond(self, session_id: str, text: str, user_id: Optional[str] = None) -> str:
        return self.handle(session_id, text, user_id)["reply"]

    def list_sessions(self) -> list[str]:
        return self.sessions.keys()

    def dump_session(self, session_id: str) -> Optional[dict]:
        return self.sessions.dump(session_id)

    def clear_session(self, session_id: str) -> bool:
        return self.sessions.clear(session_id)

    # ---------------------------
    # Classification
    # ---------------------------
    def node_classify(self, state: TurnState) -> TurnState:
        sid = state["session_id"]
        c = classify(state.get("user_input") or "", self.sessions.snapshot(sid), self.date_source)
        if c.slots.get("user_id"):
            self.sessions.set_user(sid, c.slots["user_id"])
        state["intent"] = c.intent
        state["slots"] = c.slots
        logger.debug("Session %s classified as %s %s", sid, c.intent, c.slots)
        add_trace(state, "classify", {"intent": c.intent, "slots": c.slots})
        return state

    def node_route(self, state: TurnState) -> str:
        return state.get("intent", intents.FALLBACK)

    # ---------------------------
    # Flights
    # ---------------------------
    def _search(self, state: TurnState, cheapest: bool) -> TurnState:
        sid = state["session_id"]
        s = state.get("slots", {}) or {}
        node = "cheapest" if cheapest else "search"

        required = ["origin", "destination", "date"]
        known = {k: s[k] for k in required if s.get(k)}
        if cheapest:
            known["cheapest"] = True
        missing = [k for k in required if not s.get(k)]
        if missing:
            self.sessions.set_pending_search(sid, known)
            return _reply(
                state, f"{node}_missing",
                f"I can search flights, but I still need: {', '.join(missing)}.",
                missing=missing,
            )

        try:
            flights = self.catalog.search(s["origin"], s["destination"], s["date"])
        except CatalogValidationError as e:
            # keep the route so a corrected date can finish the search
            known.pop(e.field, None)
            self.sessions.set_pending_search(sid, known if e.field == "date" else None)
            return _reply(state, f"{node}_invalid", _validation_reply(e), field=e.field)

        route = f"{flights[0].origin} → {flights[0].destination}" if flights else f"{s['origin']} → {s['destination']}"
        state["results"] = {"flights": [f.to_dict() for f in flights[:SHOW_TOP]]}

        if cheapest:
            best = flights[0]
            self.sessions.remember_search(sid, flights, chosen=best)
            return _reply(
                state, "cheapest_ok",
                f"The cheapest flight {route} on {s['date']} is {best.describe()}.\n"
                "I've selected it, say 'book it' to book.",
                trip_id=best.trip_id,
            )

        self.sessions.remember_search(sid, flights)
        return _reply(
            state, "search_ok",
            f"Here are flights {route} on {s['date']} (cheapest first):\n"
            f"{_numbered(flights[:SHOW_TOP], Flight.describe)}\n\n"
            "Pick one (e.g. 'first' or 'the cheapest morning one').",
            count=len(flights),
        )

    def node_search(self, state: TurnState) -> TurnState:
        return self._search(state, cheapest=False)

    def node_cheapest(self, state: TurnState) -> TurnState:
        return self._search(state, cheapest=True)

    def node_advice(self, state: TurnState) -> TurnState:
        sid = state["session_id"]
        s = state.get("slots", {}) or {}
        try:
            flights = self.catalog.suggest_destinations(s["origin"], s.get("date"))
        except CatalogValidationError as e:
            return _reply(state, "advice_invalid", _validation_reply(e), field=e.field)
        except CatalogNotFoundError as e:
            return _reply(state, "advice_none", f"{e.message}. Try another city or date?")

        self.sessions.remember_search(sid, flights)
        state["results"] = {"flights": [f.to_dict() for f in flights]}

        def fmt(f: Flight) -> str:
            city = f.destination_city or f.destination
            return f"{city} ({f.destination}) from {f.price:.2f} {f.currency} on {f.date}, {f.carrier} {f.flight_number}"

        return _reply(
            state, "advice_ok",
            f"Cheapest destinations from {flights[0].origin}:\n{_numbered(flights, fmt)}\n\n"
            "Pick one to select that flight.",
            count=len(flights),
        )

    def node_select(self, state: TurnState) -> TurnState:
        sid = state["session_id"]
        slots = dict(state.get("slots", {}) or {})
        target = slots.pop("target", "search")
        slots.pop("user_id", None)
        s = self.sessions.snapshot(sid)

        if target == "cancel" and s.pending_cancel_candidates:
            booking = _pick(s.pending_cancel_candidates, slots.get("ordinal"))
            if booking is None:
                n = len(s.pending_cancel_candidates)
                return _reply(state, "select_cancel_range", f"Please pick a number between 1 and {n}.")
            return self._cancel(state, booking.id, s.active_user_id)

        if not s.last_search_results:
            return _reply(
                state, "select_no_search",
                "There is nothing to choose from yet. Search first, e.g. 'from SFO to JFK on 2025-12-24'.",
            )

        chosen = select(s.last_search_results, SelectionCriteria.from_slots(slots))
        if chosen is None:
            return _reply(
                state, "select_none",
                f"None of the {len(s.last_search_results)} flights from your last search match that.",
                criteria=slots,
            )

        self.sessions.remember_chosen(sid, chosen)
        state["results"] = {"chosen": chosen.to_dict()}
        return _reply(
            state, "select_ok",
            f"Selected {chosen.describe()}. Say 'book it' to book.",
            trip_id=chosen.trip_id,
        )

    # ---------------------------
    # Bookings
    # ---------------------------
    def node_create_booking(self, state: TurnState) -> TurnState:
        sid = state["session_id"]
        slots = dict(state.get("slots", {}) or {})
        slots.pop("user_id", None)
        s = self.sessions.snapshot(sid)

        flight = s.last_chosen_flight
        criteria = SelectionCriteria.from_slots(slots)
        if not criteria.is_empty() and s.last_search_results:
            flight = select(s.last_search_results, criteria)
            if flight is not None:
                self.sessions.remember_chosen(sid, flight)

        if flight is None:
            if s.last_search_results:
                return _reply(state, "book_no_choice", "Which flight should I book? Pick one, e.g. 'first'.")
            return _reply(
                state, "book_no_search",
                "Let's find a flight first, e.g. 'from SFO to JFK on 2025-12-24'.",
            )

        if not s.active_user_id:
            return _reply(
                state, "book_need_user",
                f"To book {flight.describe()} I need your user id (e.g. 'my user id is u-100').",
                trip_id=flight.trip_id,
            )

        env = self.bookings.create(sid, s.active_user_id, flight.trip_id, flight.price)
        if not env.ok:
            return _reply(state, "book_error", _store_error_reply(env), http_status=env.http_status)

        bid = booking_id_of(env.data)
        state["results"] = {"booking": env.data}
        return _reply(
            state, "book_ok",
            f"Booked {flight.describe()}. Your booking id is {bid}.",
            booking_id=bid, trip_id=flight.trip_id,
        )

    def _cancel(self, state: TurnState, booking_id: str, active_user_id: Optional[str]) -> TurnState:
        sid = state["session_id"]
        try:
            env = self.bookings.cancel(booking_id, active_user_id)
        except OwnershipError as e:
            return _reply(
                state, "cancel_not_owner",
                f"Booking {booking_id} belongs to another user, so I can't cancel it.",
                owner=e.owner,
            )
        if not env.ok:
            text = env.message if env.http_status == 409 else _store_error_reply(env)
            return _reply(state, "cancel_error", text, http_status=env.http_status)

        self.sessions.set_cancel_candidates(sid, None)
        return _reply(state, "cancel_ok", f"Booking {booking_id} is cancelled.", booking_id=booking_id)

    def node_cancel_booking(self, state: TurnState) -> TurnState:
        sid = state["session_id"]
        slots = state.get("slots", {}) or {}
        s = self.sessions.snapshot(sid)

        if slots.get("booking_id"):
            return self._cancel(state, slots["booking_id"], s.active_user_id)
        if slots.get("last") and s.last_booking_id:
            return self._cancel(state, s.last_booking_id, s.active_user_id)
        if slots.get("ordinal") is not None and s.pending_cancel_candidates:
            booking = _pick(s.pending_cancel_candidates, slots["ordinal"])
            if booking is not None:
                return self._cancel(state, booking.id, s.active_user_id)

        env, active = self.bookings.active_for_user(s.active_user_id)
        if not env.ok:
            return _reply(state, "cancel_list_error", _store_error_reply(env), http_status=env.http_status)
        if not active:
            return _reply(state, "cancel_none", "You have no active bookings to cancel.")

        self.sessions.set_cancel_candidates(sid, active)
        return _reply(
            state, "cancel_ask",
            f"Which booking should I cancel?\n{_numbered(active, BookingSummary.describe)}\n\n"
            "Reply with its number (e.g. 'first').",
            candidates=[b.id for b in active],
        )

    def node_list_bookings(self, state: TurnState) -> TurnState:
        s = self.sessions.snapshot(state["session_id"])
        env, items = self.bookings.list_for_user(s.active_user_id)
        if not env.ok:
            return _reply(state, "list_error", _store_error_reply(env), http_status=env.http_status)
        if not items:
            return _reply(state, "list_none", "You have no bookings yet.")
        state["results"] = {"bookings": [b.id for b in items]}
        whose = f" for {s.active_user_id}" if s.active_user_id else ""
        return _reply(
            state, "list_ok",
            f"Bookings{whose}:\n{_numbered(items, BookingSummary.describe)}",
            count=len(items),
        )

    # ---------------------------
    # Reschedule
    # ---------------------------
    def node_reschedule_start(self, state: TurnState) -> TurnState:
        sid = state["session_id"]
        slots = state.get("slots", {}) or {}
        s = self.sessions.snapshot(sid)

        target = slots.get("booking_id") or s.reschedule_target_booking_id or s.last_booking_id
        if not target:
            return _reply(state, "reschedule_no_target", "Which booking should I reschedule? Tell me its booking id.")

        new_date = slots.get("date")
        self.sessions.start_reschedule(sid, target)
        if not new_date:
            return _reply(state, "reschedule_ask_date", f"Which date should I move booking {target} to?", target=target)

        env, booking = self.bookings.get(target)
        if booking is None:
            self.sessions.clear_reschedule(sid)
            return _reply(state, "reschedule_lookup_error", _store_error_reply(env), http_status=env.http_status)
        if s.active_user_id and booking.user_id != s.active_user_id:
            self.sessions.clear_reschedule(sid)
            return _reply(
                state, "reschedule_not_owner",
                f"Booking {target} belongs to another user, so I can't reschedule it.",
            )

        current = self.catalog.lookup_by_trip_id(booking.trip_id or "")
        if current is None:
            self.sessions.clear_reschedule(sid)
            return _reply(
                state, "reschedule_unknown_trip",
                f"I couldn't find the flight of booking {target} ({booking.trip_id}) in the schedule.",
            )

        try:
            flights = self.catalog.search(current.origin, current.destination, new_date)
        except CatalogValidationError as e:
            return _reply(state, "reschedule_invalid_date", _validation_reply(e), field=e.field)

        self.sessions.remember_search(sid, flights)
        self.sessions.set_reschedule_date(sid, new_date)
        state["results"] = {"flights": [f.to_dict() for f in flights[:SHOW_TOP]]}
        return _reply(
            state, "reschedule_options",
            f"Options to move booking {target} ({current.origin} → {current.destination}) to {new_date}:\n"
            f"{_numbered(flights[:SHOW_TOP], Flight.describe)}\n\n"
            "Pick one (e.g. 'second') or say 'confirm' to take the cheapest.",
            target=target, count=len(flights),
        )

    def node_reschedule_confirm(self, state: TurnState) -> TurnState:
        sid = state["session_id"]
        slots = dict(state.get("slots", {}) or {})
        slots.pop("user_id", None)
        s = self.sessions.snapshot(sid)

        phase = reschedule_phase(s)
        target = s.reschedule_target_booking_id
        if phase == ReschedulePhase.IDLE:
            return _reply(state, "reschedule_idle", "There is no reschedule in progress.")
        if phase == ReschedulePhase.AWAITING_DATE:
            return _reply(state, "reschedule_ask_date", f"Which date should I move booking {target} to?")

        new_date = s.reschedule_new_date
        candidates = [f for f in s.last_search_results if f.date == new_date]
        if not candidates:
            return _reply(state, "reschedule_no_options", f"I have no options for {new_date}. Tell me the new date again.")

        criteria = SelectionCriteria.from_slots(slots)
        if not criteria.is_empty():
            chosen = select(candidates, criteria)
        elif s.last_chosen_flight in candidates:
            chosen = s.last_chosen_flight
        else:
            chosen = min(candidates, key=lambda f: f.price)
        if chosen is None:
            return _reply(state, "reschedule_no_match", "None of the options match that. Pick one by number.")

        if not s.active_user_id:
            return _reply(
                state, "reschedule_need_user",
                "I need your user id to reschedule (e.g. 'my user id is u-100').",
            )

        result = self.bookings.reschedule(sid, target, new_date, chosen, s.active_user_id)
        detail = {"status": result.status.value, "code": result.code, "new_booking_id": result.new_booking_id}

        if result.status == SagaStatus.COMPLETED:
            return _reply(
                state, "reschedule_done",
                f"Done. Booking {target} is cancelled and you are booked on {chosen.describe()} "
                f"(booking id {result.new_booking_id}).",
                **detail,
            )
        if result.status == SagaStatus.ROLLED_BACK:
            return _reply(
                state, "reschedule_rolled_back",
                f"I couldn't reschedule booking {target}: {result.reason}. "
                "The new booking was rolled back and your original booking is unchanged.",
                **detail,
            )
        if result.code == "COMPENSATION_FAILED":
            return _reply(
                state, "reschedule_failed",
                f"Reschedule failed: {result.reason}. Please contact support with booking ids "
                f"{target} and {result.new_booking_id}.",
                **detail,
            )
        if result.envelope is not None and not result.envelope.ok:
            reason = _store_error_reply(result.envelope)
        else:
            reason = result.reason
        return _reply(
            state, "reschedule_failed",
            f"I couldn't create the new booking ({reason}). Your original booking {target} is unchanged.",
            **detail,
        )

    # ---------------------------
    # Misc
    # ---------------------------
    def node_set_user(self, state: TurnState) -> TurnState:
        user_id = (state.get("slots") or {}).get("user_id")
        return _reply(state, "set_user", f"Thanks, I'll use user id {user_id} for bookings.", user_id=user_id)

    def node_fallback(self, state: TurnState) -> TurnState:
        sid = state["session_id"]
        if self.reasoning is None:
            return _reply(state, "fallback_help", HELP)

        s = self.sessions.snapshot(sid)
        context = {
            "active_user_id": s.active_user_id,
            "last_booking_id": s.last_booking_id,
            "last_search_results": [f.to_dict() for f in s.last_search_results[:SHOW_TOP]],
            "last_chosen_flight": s.last_chosen_flight.to_dict() if s.last_chosen_flight else None,
            "history": s.turns[-10:],
        }
        tools = build_tools(sid, self.catalog, self.sessions, self.bookings)
        try:
            text = self.reasoning.respond(state.get("user_input") or "", context, tools)
        except Exception as e:
            logger.warning("Reasoning service failed for session %s: %s", sid, e)
            return _reply(
                state, "fallback_unavailable",
                "Sorry, I can't answer that right now. " + HELP,
                error=str(e),
            )
        return _reply(state, "fallback_llm", text or HELP)

    # ---------------------------
    # Build graph
    # ---------------------------
    def build_graph(self):
        g = StateGraph(TurnState)

        handlers = {
            intents.SEARCH: ("search", self.node_search),
            intents.CHEAPEST: ("cheapest", self.node_cheapest),
            intents.ADVICE: ("advice", self.node_advice),
            intents.SELECT: ("select", self.node_select),
            intents.CREATE_BOOKING: ("create_booking", self.node_create_booking),
            intents.CANCEL_BOOKING: ("cancel_booking", self.node_cancel_booking),
            intents.LIST_BOOKINGS: ("list_bookings", self.node_list_bookings),
            intents.START_RESCHEDULE: ("reschedule_start", self.node_reschedule_start),
            intents.CONFIRM_RESCHEDULE: ("reschedule_confirm", self.node_reschedule_confirm),
            intents.SET_USER: ("set_user", self.node_set_user),
            intents.FALLBACK: ("fallback", self.node_fallback),
        }

        g.add_node("classify", self.node_classify)
        for name, fn in handlers.values():
            g.add_node(name, fn)
            g.add_edge(name, END)

        g.set_entry_point("classify")
        g.add_conditional_edges("classify", self.node_route, {k: v[0] for k, v in handlers.items()})

        return g.compile()
