"""Tests for the flight catalog."""
import pytest

from travel_assistant.errors import CatalogNotFoundError, CatalogValidationError
from travel_assistant.providers.flight_catalog import FlightCatalog, slug

from conftest import TODAY


class TestSearch:
    """Dataset search, ordering and place resolution."""

    def test_route_sorted_by_price(self, catalog):
        """SFO to JFK returns dataset flights cheapest first."""
        flights = catalog.search("SFO", "JFK", "2025-12-24")

        assert [f.flight_number for f in flights] == ["AS22", "B6816", "AA178", "DL420", "UA100"]
        prices = [f.price for f in flights]
        assert prices == sorted(prices)

    def test_price_ties_keep_dataset_order(self, catalog):
        """B6816 and AA178 cost the same; dataset order decides."""
        flights = catalog.search("SFO", "JFK", "2025-12-24")
        tied = [f.flight_number for f in flights if f.price == 198.0]
        assert tied == ["B6816", "AA178"]

    def test_city_names_and_aliases_resolve(self, catalog):
        """City names, Russian names and aliases find the same flights as codes."""
        by_code = catalog.search("SFO", "JFK", "2025-12-24")
        assert catalog.search("San Francisco", "new york", "2025-12-24") == by_code
        assert catalog.search("Сан-Франциско", "Нью-Йорк", "2025-12-24") == by_code
        assert catalog.search("SF", "nyc", "2025-12-24") == by_code

    def test_exact_code_wins_over_alias(self, catalog):
        """An upper-case code is taken as is, even when it is also an alias."""
        assert catalog.resolve_place("NYC") == "NYC"
        assert catalog.resolve_place("nyc") == "JFK"
        assert catalog.resolve_place("xyz") == "XYZ"

        flights = catalog.search("SFO", "NYC", "2025-12-24")
        assert len(flights) == 4
        assert {f.destination for f in flights} == {"NYC"}
        assert flights == sorted(catalog.mock_flights("SFO", "NYC", "2025-12-24"), key=lambda f: f.price)

    def test_cheapest(self, catalog):
        """cheapest() is the head of the sorted search."""
        best = catalog.cheapest("SFO", "JFK", "2025-12-24")
        assert best.flight_number == "AS22"
        assert best.price == 176.25

    def test_departure_has_offset(self, catalog):
        """Times are ISO-8601 in the service zone."""
        best = catalog.cheapest("SFO", "JFK", "2025-12-24")
        assert best.departure == "2025-12-24T22:05:00+00:00"


class TestValidation:
    """Inputs that must be rejected before searching."""

    def test_missing_origin(self, catalog):
        """A missing origin is reported with its field."""
        with pytest.raises(CatalogValidationError) as exc:
            catalog.search("", "JFK", "2025-12-24")
        assert exc.value.code == "VALIDATION"
        assert exc.value.field == "origin"

    def test_same_origin_and_destination(self, catalog):
        """SFO and San Francisco are the same place."""
        with pytest.raises(CatalogValidationError):
            catalog.search("SFO", "San Francisco", "2025-12-24")

    def test_bad_date_format(self, catalog):
        """Only YYYY-MM-DD is accepted."""
        with pytest.raises(CatalogValidationError) as exc:
            catalog.search("SFO", "JFK", "24/12/2025")
        assert exc.value.field == "date"

    def test_past_date(self, catalog):
        """Dates before today are rejected, today is fine."""
        with pytest.raises(CatalogValidationError):
            catalog.search("SFO", "JFK", "2025-11-30")
        assert catalog.search("SFO", "JFK", TODAY.isoformat())


class TestSyntheticFlights:
    """Deterministic fallback for routes without data."""

    def test_unknown_route_gets_mock_flights(self, catalog):
        """An unmatched route still returns four priced flights."""
        flights = catalog.search("ABC", "XYZ", "2025-12-24")

        assert len(flights) == 4
        assert {f.carrier for f in flights} == {"ACME Air", "SkyLine", "BlueJet", "Nimbus"}
        assert all(96.8 <= f.price <= 240.79 for f in flights)
        assert [f.price for f in flights] == sorted(f.price for f in flights)

    def test_mock_flights_are_stable(self, catalog):
        """Identical inputs give identical flights, also across instances."""
        first = catalog.search("ABC", "XYZ", "2025-12-24")
        again = catalog.search("abc", "xyz", "2025-12-24")
        other = FlightCatalog(synthetic_count=0, timezone="UTC", today=lambda: TODAY)

        assert first == again
        assert other.search("ABC", "XYZ", "2025-12-24") == first

    def test_mock_flight_shape(self, catalog):
        """Mock flights carry the query and fixed departure slots."""
        flights = catalog.mock_flights("ABC", "XYZ", "2025-12-25")
        assert [f.flight_number for f in flights] == ["AC101", "SK202", "BL303", "NI404"]
        assert {(f.origin, f.destination, f.date) for f in flights} == {("ABC", "XYZ", "2025-12-25")}
        assert flights[1].departure == "2025-12-25T09:13:00+00:00"


class TestLoading:
    """Dataset parsing, augmentation and deduplication."""

    def test_duplicate_rows_first_wins(self, catalog):
        """The second B6816 row on the same day is dropped."""
        rows = [f for f in catalog.flights if f.flight_number == "B6816" and f.date == "2025-12-24"]
        assert len(rows) == 1
        assert rows[0].price == 198.0

    def test_short_rows_are_skipped(self, catalog):
        """Rows without city columns never load."""
        assert not [f for f in catalog.flights if f.carrier == "Broken Row"]

    def test_stops_column(self, catalog):
        """The optional stops column is parsed."""
        aa = catalog.lookup_by_trip_id("AmericanAirlines-AA178-2025-12-24")
        assert aa.stops == 1

    def test_capital_flights_added(self, catalog):
        """Generated capital flights are part of the catalog."""
        generated = [f for f in catalog.flights if f.carrier in {"CapitalAir", "MetroFly", "EuroWings", "GlobeAir"}]
        assert len(generated) == 50
        assert all("2025-12-20" <= f.date <= "2025-12-29" for f in generated)
        assert all(f.origin != f.destination for f in generated)

    def test_missing_dataset(self):
        """Without a dataset only generated flights exist."""
        c = FlightCatalog("/nonexistent/flights.csv", synthetic_count=10, timezone="UTC", today=lambda: TODAY)
        assert len(c.flights) == 10


class TestTripIds:
    """tripId lookups."""

    def test_round_trip(self, catalog):
        """A flight's trip_id finds the same flight."""
        for f in catalog.search("SFO", "JFK", "2025-12-24"):
            found = catalog.lookup_by_trip_id(f.trip_id)
            assert (found.carrier, found.flight_number, found.date) == (f.carrier, f.flight_number, f.date)

    def test_carrier_spaces_removed(self, catalog):
        """Carrier names lose their spaces inside the trip id."""
        f = catalog.cheapest("SFO", "JFK", "2025-12-24")
        assert f.trip_id == "AlaskaAirlines-AS22-2025-12-24"

    def test_generated_flight_round_trip(self, catalog):
        """Generated flights are indexed too."""
        f = catalog.flights[-1]
        assert catalog.lookup_by_trip_id(f.trip_id) == f

    @pytest.mark.parametrize("trip_id", ["", "nope", "Delta-2025-12-24", "Delta-DL420-24-12-2025"])
    def test_malformed(self, catalog, trip_id):
        """Unparseable trip ids give None."""
        assert catalog.lookup_by_trip_id(trip_id) is None


class TestSuggestions:
    """Destination suggestions from an origin."""

    def test_cheapest_per_destination(self, catalog):
        """One flight per destination, cheapest first, five by default."""
        flights = catalog.suggest_destinations("SFO", "2025-12-24")
        assert [f.destination for f in flights] == ["LAX", "JFK", "IAD", "CDG", "LHR"]
        assert flights[0].flight_number == "WN1204"

    def test_limit_is_clamped(self, catalog):
        """Limits above ten are capped, one is honored."""
        assert len(catalog.suggest_destinations("SFO", "2025-12-24", limit=50)) == 6
        assert len(catalog.suggest_destinations("SFO", "2025-12-24", limit=1)) == 1

    def test_recommend_from_origin(self, catalog):
        """The single cheapest flight out of an origin."""
        assert catalog.recommend_from_origin("San Francisco", "2025-12-24").flight_number == "WN1204"

    def test_nothing_found(self, catalog):
        """Unknown origins raise NOT_FOUND."""
        with pytest.raises(CatalogNotFoundError) as exc:
            catalog.suggest_destinations("XYZ")
        assert exc.value.code == "NOT_FOUND"


def test_slug_ignores_case_diacritics_and_punctuation():
    """Place keys are normalized."""
    assert slug("Zürich") == "zurich"
    assert slug("  Washington,  D.C. ") == "washington d c"
    assert slug("Сан-Франциско") == slug("сан франциско")
