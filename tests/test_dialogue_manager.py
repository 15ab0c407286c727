"""Tests for the LLM-backed date normalizer and the reasoning tools."""
import json
from datetime import date

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from travel_assistant.llm import dialogue_manager
from travel_assistant.llm.dialogue_manager import DateNormalizer, _safe_json_parse
from travel_assistant.llm.tools import build_tools

from conftest import TODAY


def normalizer(reply, threshold=0.6):
    model = FakeListChatModel(responses=[reply])
    return DateNormalizer(lambda: model, threshold=threshold, today=lambda: TODAY)


class TestDateNormalizer:
    """Only confident, well-formed answers are accepted."""

    def test_accepts_confident_date(self):
        """hasDate, ISO format and enough confidence."""
        n = normalizer('{"hasDate": true, "date": "2025-12-24", "confidence": 0.9}')
        assert n.normalize("christmas eve") == "2025-12-24"

    def test_threshold_is_inclusive(self):
        """Confidence equal to the threshold passes."""
        n = normalizer('{"hasDate": true, "date": "2025-12-24", "confidence": 0.6}')
        assert n.normalize("christmas eve") == "2025-12-24"

    @pytest.mark.parametrize("reply", [
        '{"hasDate": true, "date": "2025-12-24", "confidence": 0.3}',
        '{"hasDate": false, "date": null, "confidence": 0.9}',
        '{"hasDate": true, "date": "24/12/2025", "confidence": 0.9}',
        '{"hasDate": true, "date": "2025-12-24", "confidence": "high"}',
        "I think you mean Christmas Eve.",
    ])
    def test_rejects(self, reply):
        """Low confidence, no date, wrong format or no JSON."""
        assert normalizer(reply).normalize("sometime soon") is None

    def test_fenced_json(self):
        """Markdown fences around the JSON are tolerated."""
        n = normalizer('```json\n{"hasDate": true, "date": "2025-12-02", "confidence": 0.8}\n```')
        assert n.normalize("tomorrow") == "2025-12-02"

    def test_model_failure(self):
        """An unreachable model means no date, not an error."""
        def boom():
            raise RuntimeError("connection refused")

        assert DateNormalizer(boom).normalize("tomorrow") is None

    def test_blank_input(self):
        """Blank text never reaches the model."""
        def boom():
            raise AssertionError("model called")

        assert DateNormalizer(boom, today=lambda: date(2025, 12, 1)).normalize("   ") is None


def test_safe_json_parse():
    """Plain JSON, embedded JSON and garbage."""
    assert _safe_json_parse('{"a": 1}') == {"a": 1}
    assert _safe_json_parse('Sure! {"a": 2} hope it helps') == {"a": 2}
    assert _safe_json_parse("nothing here") == {}


class RecordingChatOpenAI:
    def __init__(self, **kwargs):
        self.kwargs = kwargs


def test_chat_model_cached_per_model_and_base_url(monkeypatch):
    """Each (model, base_url) gets its own client; OPENAI_MODEL is read per call."""
    monkeypatch.setattr(dialogue_manager, "ChatOpenAI", RecordingChatOpenAI)
    monkeypatch.setattr(dialogue_manager, "_llms", {})
    monkeypatch.setenv("OPENAI_MODEL", "env-model")

    default = dialogue_manager.get_chat_model()
    assert default.kwargs == {"model": "env-model", "temperature": 0}
    assert dialogue_manager.get_chat_model() is default

    local = dialogue_manager.get_chat_model("llama3", "http://localhost:11434/v1")
    assert local is not default
    assert local.kwargs["base_url"] == "http://localhost:11434/v1"
    assert dialogue_manager.get_chat_model("llama3", "http://localhost:11434/v1") is local
    assert dialogue_manager.get_chat_model("llama3") is not local

    monkeypatch.setenv("OPENAI_MODEL", "other-model")
    assert dialogue_manager.get_chat_model().kwargs["model"] == "other-model"


@pytest.fixture
def tools(catalog, sessions, bookings):
    return {t.name: t for t in build_tools("s1", catalog, sessions, bookings)}


def call(tools, name, **args):
    return json.loads(tools[name].invoke(args))


class TestTools:
    """Tools share the session with the deterministic handlers."""

    def test_search_select_book(self, tools, sessions, store):
        """Search, pick the second result, book it."""
        sessions.set_user("s1", "u-100")

        found = call(tools, "search_flights", origin="SFO", destination="JFK", date="2025-12-24")
        assert found["status"] == "OK"
        assert found["data"][0]["flight_number"] == "AS22"

        chosen = call(tools, "select_from_last_search", ordinal=2)
        assert chosen["data"]["flight_number"] == "B6816"

        booked = call(tools, "create_booking")
        assert booked["data"] == {"bookingId": "b-1", "tripId": "JetBlue-B6816-2025-12-24"}
        assert sessions.snapshot("s1").last_booking_id == "b-1"

    def test_validation_error(self, tools):
        """Catalog errors come back with their code."""
        out = call(tools, "search_flights", origin="SFO", destination="SFO", date="2025-12-24")
        assert out["status"] == "ERROR"
        assert out["error"]["code"] == "VALIDATION"

    def test_select_without_search(self, tools):
        """Selection needs a previous search."""
        assert call(tools, "select_from_last_search", cheapest=True)["error"]["code"] == "NO_SEARCH"

    def test_booking_needs_user(self, tools, store):
        """No user id, no booking call."""
        call(tools, "search_flights", origin="SFO", destination="JFK", date="2025-12-24")
        call(tools, "select_from_last_search", cheapest=True)

        assert call(tools, "create_booking")["error"]["code"] == "USER_REQUIRED"
        assert store.calls == []

    def test_book_by_trip_id(self, tools, sessions, store):
        """A known trip id can be booked without a search."""
        sessions.set_user("s1", "u-100")
        out = call(tools, "create_booking", trip_id="Delta-DL422-2025-12-25")

        assert out["status"] == "OK"
        assert store.bookings["b-1"]["price"] == 265.0

    def test_cancel_not_owner(self, tools, sessions, store):
        """Ownership errors surface as a code."""
        sessions.set_user("s1", "u-100")
        store.seed("b-5", "u-200", "Delta-DL420-2025-12-24")

        out = call(tools, "cancel_booking", booking_id="b-5")
        assert out["error"]["code"] == "OWNERSHIP_MISMATCH"

    def test_list_and_store_errors(self, tools, sessions, store):
        """Store failures are reported as HTTP codes."""
        sessions.set_user("s1", "u-100")
        store.seed("b-1", "u-100", "Delta-DL420-2025-12-24")
        assert [b["id"] for b in call(tools, "list_bookings")["data"]] == ["b-1"]

        store.fail("GET", status=403, times=1)
        assert call(tools, "list_bookings")["error"]["code"] == "HTTP_403"

    def test_suggest(self, tools):
        """Destination suggestions from an origin."""
        out = call(tools, "suggest_destinations", origin="SFO", date="2025-12-24", limit=2)
        assert [f["destination"] for f in out["data"]] == ["LAX", "JFK"]

    def test_select_by_destination_and_date(self, tools):
        """Destination takes a city or code; a date outside the results matches nothing."""
        call(tools, "suggest_destinations", origin="SFO", date="2025-12-24", limit=2)

        out = call(tools, "select_from_last_search", destination="new york")
        assert out["data"]["flight_number"] == "AS22"
        assert call(tools, "select_from_last_search", date="2025-12-25")["error"]["code"] == "NOT_FOUND"

    def test_cheapest_flight(self, tools, sessions):
        """The cheapest flight is searched and chosen in one step."""
        out = call(tools, "cheapest_flight", origin="SFO", destination="LAX", date="2025-12-24")
        assert out["data"]["flight_number"] == "WN1204"

        s = sessions.snapshot("s1")
        assert s.last_chosen_flight.flight_number == "WN1204"

    def test_recommend_from_origin(self, tools, sessions):
        """One recommendation, chosen and ready to book."""
        out = call(tools, "recommend_from_origin", origin="SFO", date="2025-12-24")
        assert out["data"]["destination"] == "LAX"
        assert sessions.snapshot("s1").last_chosen_flight.flight_number == "WN1204"

        assert call(tools, "recommend_from_origin", origin="")["error"]["code"] == "VALIDATION"

    def test_get_booking(self, tools, store):
        """Lookups return the booking or the store's status."""
        store.seed("b-5", "u-100", "Delta-DL420-2025-12-24", price=245.5)
        assert call(tools, "get_booking", booking_id="b-5")["data"]["trip_id"] == "Delta-DL420-2025-12-24"
        assert call(tools, "get_booking", booking_id="b-9")["error"]["code"] == "HTTP_404"

    def test_reschedule_to_cheapest(self, tools, sessions, store):
        """Without a trip id the cheapest flight on the same route is booked."""
        sessions.set_user("s1", "u-100")
        store.seed("b-5", "u-100", "Delta-DL420-2025-12-24")

        out = call(tools, "reschedule_booking", booking_id="b-5", new_date="2025-12-26")
        assert out["status"] == "OK"
        assert out["data"]["status"] == "COMPLETED"
        assert out["data"]["newBookingId"] == "b-1"
        assert out["data"]["tripId"] == "JetBlue-B6818-2025-12-26"
        assert store.bookings["b-5"]["status"] == "CANCELLED"
        assert sessions.snapshot("s1").last_booking_id == "b-1"

    def test_reschedule_failures(self, tools, sessions, store):
        """Missing user and a trip on the wrong date fail before any booking is made."""
        store.seed("b-5", "u-100", "Delta-DL420-2025-12-24")
        out = call(tools, "reschedule_booking", booking_id="b-5", new_date="2025-12-26")
        assert out["error"]["code"] == "USER_REQUIRED"

        sessions.set_user("s1", "u-100")
        out = call(tools, "reschedule_booking", booking_id="b-5", new_date="2025-12-26",
                   trip_id="Delta-DL422-2025-12-25")
        assert out["error"]["code"] == "DATE_MISMATCH"
        assert out["data"]["status"] == "FAILED"
        assert store.count("POST") == 0
