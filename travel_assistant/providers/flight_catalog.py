import csv
import hashlib
import logging
import random
import re
import unicodedata
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from dateutil import tz as dtz

from travel_assistant.errors import CatalogNotFoundError, CatalogValidationError
from travel_assistant.models import Flight
from travel_assistant.providers.base import FlightsProvider

logger = logging.getLogger(__name__)

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TRIP_ID_RE = re.compile(r"(.*)-(\d{4}-\d{2}-\d{2})$")
EXACT_IATA_RE = re.compile(r"^[A-Z]{3}$")
IATA_RE = re.compile(r"^[A-Za-z]{3}$")

MAX_SUGGESTIONS = 10


def slug(text: str) -> str:
    """Case, diacritics and punctuation insensitive key for place names."""
    if not text:
        return ""
    s = unicodedata.normalize("NFKD", text)
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    s = re.sub(r"[^\w\s]|_", " ", s.lower())
    return re.sub(r"\s+", " ", s).strip()


IATA_TO_CITY: Dict[str, str] = {}
ALIAS_TO_IATA: Dict[str, str] = {}


def _add_mapping(iata: str, city: str, *aliases: str):
    code = iata.upper()
    IATA_TO_CITY[code] = city
    ALIAS_TO_IATA[slug(city)] = code
    ALIAS_TO_IATA[slug(code)] = code
    for a in aliases:
        ALIAS_TO_IATA[slug(a)] = code


_add_mapping("SFO", "San Francisco", "Сан-Франциско", "SF")
_add_mapping("JFK", "New York", "Нью-Йорк", "NYC")
_add_mapping("LAX", "Los Angeles", "Лос-Анджелес", "LA")
_add_mapping("IAD", "Washington", "Вашингтон", "Washington DC", "DC")
_add_mapping("LHR", "London", "Лондон", "Heathrow")
_add_mapping("LGW", "Gatwick")
_add_mapping("CDG", "Paris", "Париж")
_add_mapping("BER", "Berlin", "Берлин")
_add_mapping("MAD", "Madrid", "Мадрид")
_add_mapping("FCO", "Rome", "Рим")
_add_mapping("DUB", "Dublin", "Дублин")
_add_mapping("LIS", "Lisbon", "Лиссабон")
_add_mapping("VIE", "Vienna", "Вена")
_add_mapping("PRG", "Prague", "Прага")
_add_mapping("WAW", "Warsaw", "Варшава")
_add_mapping("AMS", "Amsterdam", "Амстердам")
_add_mapping("ZRH", "Zurich", "Цюрих")
_add_mapping("OSL", "Oslo", "Осло")
_add_mapping("CPH", "Copenhagen", "Копенгаген")
_add_mapping("HEL", "Helsinki", "Хельсинки")
_add_mapping("ARN", "Stockholm", "Стокгольм")
_add_mapping("SVO", "Moscow", "Москва")
_add_mapping("PEK", "Beijing", "Пекин", "Beijing City")
_add_mapping("HND", "Tokyo", "Токио")
_add_mapping("ICN", "Seoul", "Сеул")
_add_mapping("BKK", "Bangkok", "Бангкок")
_add_mapping("SIN", "Singapore", "Сингапур")
_add_mapping("CGK", "Jakarta", "Джакарта")
_add_mapping("DEL", "New Delhi", "Дели", "Delhi")
_add_mapping("CBR", "Canberra", "Канберра")
_add_mapping("WLG", "Wellington", "Веллингтон")
_add_mapping("MNL", "Manila", "Манила")
_add_mapping("HAN", "Hanoi", "Ханой")
_add_mapping("RUH", "Riyadh", "Эр-Рияд")
_add_mapping("AUH", "Abu Dhabi", "Абу-Даби")
_add_mapping("DOH", "Doha", "Доха")
_add_mapping("CAI", "Cairo", "Каир")
_add_mapping("NBO", "Nairobi", "Найроби")
_add_mapping("JNB", "Johannesburg", "Йоханнесбург")
_add_mapping("ADD", "Addis Ababa", "Аддис-Абеба")
_add_mapping("ATH", "Athens", "Афины")
_add_mapping("TLV", "Tel Aviv", "Тель-Авив")
_add_mapping("TUN", "Tunis", "Тунис")
_add_mapping("ALG", "Algiers", "Алжир")
_add_mapping("DKR", "Dakar", "Дакар")

CAPITALS = [
    ("LHR", "London"), ("CDG", "Paris"), ("BER", "Berlin"), ("MAD", "Madrid"), ("FCO", "Rome"),
    ("IAD", "Washington"), ("MEX", "Mexico City"), ("BSB", "Brasilia"), ("EZE", "Buenos Aires"),
    ("SVO", "Moscow"), ("PEK", "Beijing"), ("HND", "Tokyo"), ("ICN", "Seoul"), ("BKK", "Bangkok"),
    ("SIN", "Singapore"), ("CGK", "Jakarta"), ("DEL", "New Delhi"), ("CBR", "Canberra"), ("WLG", "Wellington"),
    ("MNL", "Manila"), ("HAN", "Hanoi"), ("RUH", "Riyadh"), ("AUH", "Abu Dhabi"), ("DOH", "Doha"),
    ("CAI", "Cairo"), ("NBO", "Nairobi"), ("JNB", "Johannesburg"), ("ADD", "Addis Ababa"), ("ATH", "Athens"),
    ("OSL", "Oslo"), ("CPH", "Copenhagen"), ("ARN", "Stockholm"), ("HEL", "Helsinki"), ("DUB", "Dublin"),
    ("LIS", "Lisbon"), ("VIE", "Vienna"), ("PRG", "Prague"), ("ZAG", "Zagreb"), ("BUD", "Budapest"),
    ("BTS", "Bratislava"), ("WAW", "Warsaw"), ("BRU", "Brussels"), ("AMS", "Amsterdam"), ("ZRH", "Zurich"),
    ("IST", "Istanbul"), ("TLV", "Tel Aviv"), ("TUN", "Tunis"), ("ALG", "Algiers"), ("DKR", "Dakar"),
]
CAPITAL_CARRIERS = ["CapitalAir", "MetroFly", "EuroWings", "GlobeAir"]
CAPITAL_SEED = 424242
CAPITAL_WINDOW_DAYS = 10

MOCK_CARRIERS = ["ACME Air", "SkyLine", "BlueJet", "Nimbus"]
MOCK_NUMBERS = ["101", "202", "303", "404"]


def _unique_key(carrier: str, flight_number: str, date_iso: str) -> str:
    return f"{(carrier or '').replace(' ', '').lower()}|{(flight_number or '').lower()}|{date_iso}"


def _stable_seed(*parts: str) -> int:
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


class FlightCatalog(FlightsProvider):
    """
    Flight search over a static CSV dataset, widened with generated
    capital-to-capital routes. Unknown routes get a deterministic mock list
    so identical queries always see identical flights.
    """

    def __init__(
        self,
        dataset_path: Optional[str] = None,
        synthetic_count: int = 500,
        synthetic_start: str = "2025-12-20",
        timezone: Optional[str] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.tz = dtz.gettz(timezone) if timezone else dtz.tzlocal()
        if self.tz is None:
            logger.warning("Unknown timezone %r, falling back to UTC", timezone)
            self.tz = dtz.UTC
        self._today = today or (lambda: datetime.now(self.tz).date())
        self.synthetic_count = synthetic_count
        self.synthetic_start = synthetic_start

        rows = self._load_dataset(dataset_path) if dataset_path else []
        before = len(rows)
        if synthetic_count > 0:
            rows.extend(self._generate_capital_flights(synthetic_count))

        unique: Dict[str, Flight] = {}
        for f in rows:
            unique.setdefault(_unique_key(f.carrier, f.flight_number, f.date), f)
        self.flights: List[Flight] = list(unique.values())
        self._trip_index = dict(unique)
        logger.info(
            "Loaded %d flights from %s, +%d capital flights (unique total=%d)",
            before, dataset_path, synthetic_count, len(self.flights),
        )

    # ---------------------------
    # Loading
    # ---------------------------
    def _iso(self, date_iso: str, hhmm: str) -> str:
        d = date.fromisoformat(date_iso)
        h, m = (hhmm or "00:00").split(":")[:2]
        return datetime(d.year, d.month, d.day, int(h), int(m), tzinfo=self.tz).isoformat(timespec="seconds")

    def _at(self, when: datetime) -> str:
        return when.replace(tzinfo=self.tz).isoformat(timespec="seconds")

    def _load_dataset(self, path: str) -> List[Flight]:
        p = Path(path)
        if not p.exists():
            logger.warning("Flight dataset not found at %s, using generated flights only", path)
            return []

        out: List[Flight] = []
        with p.open(newline="", encoding="utf-8") as fh:
            reader = csv.reader(fh)
            header = next(reader, None)
            if header is None:
                return []
            for parts in reader:
                if len(parts) < 11:
                    continue
                parts = [x.strip() for x in parts]
                try:
                    price = float(parts[7])
                except ValueError:
                    price = 0.0
                stops = None
                if len(parts) > 11 and parts[11].isdigit():
                    stops = int(parts[11])
                try:
                    out.append(Flight(
                        carrier=parts[0],
                        flight_number=parts[1],
                        origin=parts[2].upper(),
                        destination=parts[3].upper(),
                        date=parts[4],
                        departure=self._iso(parts[4], parts[5]),
                        arrival=self._iso(parts[4], parts[6]),
                        price=price,
                        currency=parts[8] or "USD",
                        stops=stops,
                        origin_city=parts[9],
                        destination_city=parts[10],
                    ))
                except ValueError:
                    logger.debug("Skipping malformed dataset row: %s", parts)
        return out

    def _generate_capital_flights(self, count: int) -> List[Flight]:
        rnd = random.Random(CAPITAL_SEED)
        start = date.fromisoformat(self.synthetic_start)
        dates = [(start + timedelta(days=i)).isoformat() for i in range(CAPITAL_WINDOW_DAYS)]

        out = []
        for i in range(count):
            oi = rnd.randrange(len(CAPITALS))
            di = rnd.randrange(len(CAPITALS))
            if di == oi:
                di = (di + 1) % len(CAPITALS)
            o_code, o_city = CAPITALS[oi]
            d_code, d_city = CAPITALS[di]
            day = dates[rnd.randrange(len(dates))]
            dep_h = 5 + rnd.randrange(18)
            dep_m = rnd.randrange(4) * 15
            dur_h = 2 + rnd.randrange(9)
            base = 120 + rnd.randrange(600)

            carrier = CAPITAL_CARRIERS[i % len(CAPITAL_CARRIERS)]
            dep = datetime.combine(date.fromisoformat(day), datetime.min.time()).replace(hour=dep_h, minute=dep_m)
            arr = dep + timedelta(hours=dur_h, minutes=30)
            out.append(Flight(
                carrier=carrier,
                flight_number=f"{carrier[:2].upper()}{1000 + i}",
                origin=o_code,
                destination=d_code,
                date=day,
                departure=self._at(dep),
                arrival=self._at(arr),
                price=round(float(base), 2),
                currency="USD",
                origin_city=o_city,
                destination_city=d_city,
            ))
        return out

    # ---------------------------
    # Place resolution
    # ---------------------------
    @staticmethod
    def resolve_place(text: Optional[str]) -> Optional[str]:
        """
        Accepts:
          - 'SFO' (exact code, known or unknown, wins over aliases)
          - 'San Francisco', 'сан-франциско', 'sf' (alias table)
          - 'xyz' (any other three letters, upper-cased)
        """
        if not text or not text.strip():
            return None
        t = text.strip()
        if EXACT_IATA_RE.match(t):
            return t
        code = ALIAS_TO_IATA.get(slug(t))
        if code:
            return code
        if IATA_RE.match(t):
            return t.upper()
        return None

    def _matches_place(self, query: str, code: str, city: Optional[str]) -> bool:
        resolved = self.resolve_place(query)
        if resolved and resolved == (code or "").upper():
            return True
        q = query.strip()
        if q.upper() == (code or "").upper():
            return True
        return bool(city) and slug(city) == slug(q)

    def _place_code(self, text: str) -> str:
        return self.resolve_place(text) or text.strip().upper()

    # ---------------------------
    # Validation
    # ---------------------------
    def today(self) -> date:
        return self._today()

    def _validate_date(self, date_iso: str):
        if not ISO_DATE_RE.match(date_iso or ""):
            raise CatalogValidationError(f"Date must be YYYY-MM-DD, got '{date_iso}'", field="date")
        try:
            d = date.fromisoformat(date_iso)
        except ValueError:
            raise CatalogValidationError(f"'{date_iso}' is not a calendar date", field="date")
        if d < self.today():
            raise CatalogValidationError(f"Date {date_iso} is in the past", field="date")

    def validate(self, origin: Optional[str], destination: Optional[str], date_iso: Optional[str]) -> tuple[str, str]:
        for name, value in (("origin", origin), ("destination", destination), ("date", date_iso)):
            if not value or not str(value).strip():
                raise CatalogValidationError(f"Missing {name}", field=name)

        o = self._place_code(origin)
        d = self._place_code(destination)
        if o == d:
            raise CatalogValidationError("Origin and destination must differ", field="destination")
        self._validate_date(date_iso.strip())
        return o, d

    # ---------------------------
    # Queries
    # ---------------------------
    def search(self, origin: str, destination: str, date_iso: str) -> List[Flight]:
        o, d = self.validate(origin, destination, date_iso)
        date_iso = date_iso.strip()
        found = [
            f for f in self.flights
            if f.date.startswith(date_iso)
            and self._matches_place(origin, f.origin, f.origin_city)
            and self._matches_place(destination, f.destination, f.destination_city)
        ]
        if not found:
            found = self.mock_flights(o, d, date_iso)
        # sorted() is stable, ties keep dataset order
        return sorted(found, key=lambda f: f.price)

    def cheapest(self, origin: str, destination: str, date_iso: str) -> Optional[Flight]:
        flights = self.search(origin, destination, date_iso)
        return flights[0] if flights else None

    def mock_flights(self, origin: str, destination: str, date_iso: str) -> List[Flight]:
        o = origin.upper()
        d = destination.upper()
        rnd = random.Random(_stable_seed(o, d, date_iso))
        day = date.fromisoformat(date_iso)

        out = []
        for i, carrier in enumerate(MOCK_CARRIERS):
            base = 80 + rnd.randrange(120)
            taxes = round(base * 0.21, 2)
            dep = datetime(day.year, day.month, day.day, 6 + i * 3, (i * 13) % 60)
            arr = dep + timedelta(hours=3, minutes=45)
            out.append(Flight(
                carrier=carrier,
                flight_number=f"{carrier[:2].upper()}{MOCK_NUMBERS[i]}",
                origin=o,
                destination=d,
                date=date_iso,
                departure=self._at(dep),
                arrival=self._at(arr),
                price=round(base + taxes, 2),
                currency="USD",
                origin_city=IATA_TO_CITY.get(o),
                destination_city=IATA_TO_CITY.get(d),
            ))
        return out

    def _departures(self, origin: str, date_iso: Optional[str]) -> Iterable[Flight]:
        for f in self.flights:
            if date_iso and not f.date.startswith(date_iso):
                continue
            if self._matches_place(origin, f.origin, f.origin_city):
                yield f

    def suggest_destinations(self, origin: str, date_iso: Optional[str] = None, limit: int = 5) -> List[Flight]:
        """Cheapest flight per destination out of origin, cheapest first."""
        if not origin or not origin.strip():
            raise CatalogValidationError("Missing origin", field="origin")
        if date_iso:
            date_iso = date_iso.strip()
            self._validate_date(date_iso)
        limit = max(1, min(MAX_SUGGESTIONS, int(limit or 5)))

        best: Dict[str, Flight] = {}
        for f in self._departures(origin, date_iso):
            cur = best.get(f.destination)
            if cur is None or f.price < cur.price:
                best[f.destination] = f

        if not best:
            when = f" on {date_iso}" if date_iso else ""
            raise CatalogNotFoundError(f"No flights found from {origin}{when}", field="origin")
        return sorted(best.values(), key=lambda f: f.price)[:limit]

    def recommend_from_origin(self, origin: str, date_iso: Optional[str] = None) -> Flight:
        return self.suggest_destinations(origin, date_iso, limit=1)[0]

    def lookup_by_trip_id(self, trip_id: str) -> Optional[Flight]:
        """
        tripId is <carrier>-<flightNumber>-<YYYY-MM-DD>, carrier without spaces.
        Carriers may contain dashes, so the flight number is the last segment
        before the date.
        """
        if not trip_id or not trip_id.strip():
            return None
        m = TRIP_ID_RE.match(trip_id.strip())
        if not m:
            return None
        left, day = m.group(1), m.group(2)
        cut = left.rfind("-")
        if cut <= 0:
            return None
        return self._trip_index.get(_unique_key(left[:cut], left[cut + 1:], day))
