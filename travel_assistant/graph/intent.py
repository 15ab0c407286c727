import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from travel_assistant.session import Session

SEARCH = "search"
CHEAPEST = "cheapest"
ADVICE = "advice"
SELECT = "select"
CREATE_BOOKING = "create_booking"
CANCEL_BOOKING = "cancel_booking"
LIST_BOOKINGS = "list_bookings"
START_RESCHEDULE = "start_reschedule"
CONFIRM_RESCHEDULE = "confirm_reschedule"
SET_USER = "set_user"
FALLBACK = "fallback"


class DateSource(Protocol):
    def normalize(self, text: str) -> Optional[str]:
        ...


@dataclass
class Classification:
    intent: str
    slots: dict[str, Any] = field(default_factory=dict)


# ---------------------------
# Patterns
# ---------------------------
CANCEL_RE = re.compile(r"\b(cancel\w*|delete|remove)\b|отмен\w*|удали\w*")
LIST_RE = re.compile(
    r"\b(show|list|see|view)\s+(all\s+)?(my\s+)?bookings?\b"
    r"|\bmy\s+bookings\b"
    r"|^\s*bookings?\s*[?.!]*\s*$"
    r"|мои\s+брон\w*"
    r"|покажи\s+(мои\s+)?(брони|бронирования)"
    r"|^\s*(бронирования|брони)\s*[?.!]*\s*$"
)
RESCHEDULE_RE = re.compile(r"\breschedul\w*|\b(change|move)\s+(my\s+)?(booking|flight|trip)\b|перенес\w*")
CONFIRM_RE = re.compile(r"\bconfirm\w*|\bgo ahead\b|\bdo it\b|\bproceed\b|подтвержд\w*")
BOOK_RE = re.compile(
    r"\bbook\s+(it|that|this|the|one|option|number|#|no\.|\d)"
    r"|^\s*book\s*[.!]*\s*$"
    r"|\breserve\b"
    r"|забронир\w*"
)
ADVICE_RE = re.compile(r"\b(recommend\w*|suggest\w*|advi[sc]e\w*|where\s+can\s+i\s+fly)\b|посоветуй\w*|предлож\w*")
CHEAPEST_RE = re.compile(r"\b(cheapest|lowest|cheaper)\b|сам\w*\s+дешев\w*|дешевл\w*")
FLIGHT_RE = re.compile(r"\b(flights?|fly|flying)\b|рейс\w*|билет\w*|перел[её]т\w*")
LAST_RE = re.compile(r"\b(last|latest|previous|recent)\b|последн\w*")

ISO_DATE_RE = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
DATE_HINT_RE = re.compile(
    r"\b(today|tomorrow|tonight|day after tomorrow)\b"
    r"|\bnext\s+(week|month|monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b"
    r"|\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b"
    r"|\b(jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)(uary|ruary|ch|il|e|y|ust|tember|ober|ember)?\b"
    r"|\b\d{1,2}[./]\d{1,2}([./]\d{2,4})?\b"
    r"|сегодня|завтра|послезавтра"
    r"|январ\w*|феврал\w*|март\w*|апрел\w*|\bма[йя]\b|июн\w*|июл\w*|август\w*|сентябр\w*|октябр\w*|ноябр\w*|декабр\w*"
)

IATA_PAIR_RE = re.compile(r"\b([A-Z]{3})\s*(?:-|–|→|->|to)\s*([A-Z]{3})\b")
_STOP = r"(?=\s+(?:on|at|for|in|by|next|tomorrow|today|this|around|departing|leaving)\b|\s+\d|\s*[,.?!;]|$)"
FROM_TO_RE = re.compile(r"\bfrom\s+(.+?)\s+to\s+(.+?)" + _STOP)
FROM_RE = re.compile(r"\bfrom\s+(.+?)" + r"(?=\s+(?:on|at|for|in|by|to|next|tomorrow|today|this)\b|\s+\d|\s*[,.?!;]|$)")
TO_RE = re.compile(r"\bto\s+([^\d\s].*?)" + _STOP)
BARE_CODE_RE = re.compile(r"^\s*([A-Z]{3})\s*[.!]?\s*$")

UUID_RE = re.compile(r"\b([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\b")
SHORT_ID_RE = re.compile(r"\b(bk?-\d+)\b")
NUMERIC_ID_RE = re.compile(r"\bbooking\s+(?:id\s+)?#?(\d+)\b")
USER_ID_RE = re.compile(r"\b(?:user(?:\s*id)?|my\s+id)\s*(?:is|=|:)?\s*([a-z]+-\d+)\b")

ORDINAL_WORDS = {
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
}
ORDINAL_WORD_RE = re.compile(r"\b(first|second|third|fourth|fifth)\b|\b(?:option|number)\s+(one|two|three|four|five)\b")
RU_ORDINALS = [("перв", 1), ("втор", 2), ("трет", 3), ("четв", 4), ("пят", 5)]
RU_ORDINAL_RE = re.compile(r"\b(перв|втор|трет|четв[её]рт|пят)(ый|ой|ий|ая|ую|ое|ого|ом)\b")
NUMERIC_ORDINAL_RE = re.compile(
    r"\b(\d{1,2})(?:st|nd|rd|th)\b(?!\s+(?:of\s+)?(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec))"
)
NUMBERED_RE = re.compile(r"(?:\boption|\bnumber|\bno\.|#)\s*(\d{1,2})\b")
BARE_NUMBER_RE = re.compile(r"^\s*(\d{1,2})\s*[.!]?\s*$")
LAST_ONE_RE = re.compile(r"\blast\b|последн\w*")

MAX_PRICE_RE = re.compile(r"\b(?:under|below|less than|cheaper than|up to|max(?:imum)?)\s*\$?\s*(\d+(?:\.\d+)?)|до\s+(\d+)")

YES = {"yes", "y", "yeah", "yep", "sure", "ok", "okay", "да", "ага", "конечно"}
NO = {"no", "n", "nope", "nah", "нет"}


# ---------------------------
# Extractors
# ---------------------------
def normalize_yes_no(text: str) -> str | None:
    t = text.strip().lower().strip(".!")
    if t in YES:
        return "yes"
    if t in NO:
        return "no"
    return None


def parse_ordinal(t: str) -> Optional[int]:
    """1-based position; -1 means the last one."""
    m = ORDINAL_WORD_RE.search(t)
    if m:
        return ORDINAL_WORDS[m.group(1) or m.group(2)]
    m = RU_ORDINAL_RE.search(t)
    if m:
        stem = m.group(1)
        for prefix, n in RU_ORDINALS:
            if stem.startswith(prefix):
                return n
    m = NUMBERED_RE.search(t) or NUMERIC_ORDINAL_RE.search(t) or BARE_NUMBER_RE.match(t)
    if m:
        return int(m.group(1))
    if LAST_ONE_RE.search(t):
        return -1
    return None


def extract_booking_id(t: str) -> Optional[str]:
    for rx in (UUID_RE, SHORT_ID_RE, NUMERIC_ID_RE):
        m = rx.search(t)
        if m:
            return m.group(1)
    return None


def extract_user_id(t: str) -> Optional[str]:
    m = USER_ID_RE.search(t)
    return m.group(1) if m else None


def _clean_place(x: str) -> str:
    return re.sub(r"^(the\s+)", "", x.strip(" ,.")).strip()


def extract_route(raw: str) -> tuple[Optional[str], Optional[str]]:
    """IATA pair on the original text first, then 'from X to Y'."""
    m = IATA_PAIR_RE.search(raw)
    if m:
        return m.group(1), m.group(2)
    t = raw.lower()
    m = FROM_TO_RE.search(t)
    if m:
        return _clean_place(m.group(1)), _clean_place(m.group(2))
    m = FROM_RE.search(t)
    if m:
        return _clean_place(m.group(1)), None
    return None, None


def extract_search_follow_up(raw: str, pending: dict[str, Any], origin: Optional[str],
                             date_iso: Optional[str]) -> dict[str, Any]:
    """Pieces a short reply adds to a search that was missing them."""
    out: dict[str, Any] = {}
    if date_iso:
        out["date"] = date_iso
    if origin:
        out["origin"] = origin
    m = TO_RE.search(raw.lower())
    if m:
        out["destination"] = _clean_place(m.group(1))
    m = BARE_CODE_RE.match(raw)
    if m:
        missing = [k for k in ("origin", "destination") if not pending.get(k)]
        if missing:
            out[missing[0]] = m.group(1)
    return out


def extract_date(raw: str, date_source: Optional[DateSource]) -> Optional[str]:
    m = ISO_DATE_RE.search(raw)
    if m:
        return m.group(1)
    if date_source is None or not DATE_HINT_RE.search(raw.lower()):
        return None
    return date_source.normalize(raw)


def extract_criteria(t: str) -> dict[str, Any]:
    c: dict[str, Any] = {}
    ordinal = parse_ordinal(t)
    if ordinal is not None:
        c["ordinal"] = ordinal
    if CHEAPEST_RE.search(t):
        c["cheapest"] = True
    if re.search(r"\bearliest\b|самы\w*\s+ранн\w*", t):
        c["earliest"] = True
    if re.search(r"\blatest\b|самы\w*\s+поздн\w*", t):
        c["latest"] = True
    if re.search(r"\bmorning\b|утр\w*", t):
        c["time_of_day"] = "morning"
    elif re.search(r"\bevening\b|вечер\w*", t):
        c["time_of_day"] = "evening"
    if re.search(r"\b(non-?stop|direct)\b|без\s+пересад\w*|прям\w*", t):
        c["nonstop"] = True
    m = MAX_PRICE_RE.search(t)
    if m:
        c["max_price"] = float(m.group(1) or m.group(2))
    return c


# ---------------------------
# Classification
# ---------------------------
def classify(text: str, session: Session, date_source: Optional[DateSource] = None) -> Classification:
    """
    Ordered rules, first match wins:
      list -> reschedule start -> reschedule confirm -> book -> cancel
      -> select -> advice -> follow-up to a pending search -> search/cheapest
      -> set user -> fallback
    Only free-text dates go through date_source.
    """
    raw = (text or "").strip()
    t = raw.lower()

    base: dict[str, Any] = {}
    user_id = extract_user_id(t)
    if user_id:
        base["user_id"] = user_id

    def result(intent: str, **slots) -> Classification:
        out = dict(base)
        out.update({k: v for k, v in slots.items() if v is not None})
        return Classification(intent, out)

    cancel_words = bool(CANCEL_RE.search(t))
    booking_id = extract_booking_id(t)
    origin, destination = extract_route(raw)
    has_route = bool(origin and destination)
    date_iso = extract_date(raw, date_source)
    criteria = extract_criteria(t)
    pending_target = session.reschedule_target_booking_id

    if not cancel_words and LIST_RE.search(t):
        return result(LIST_BOOKINGS)

    if not cancel_words and (
        RESCHEDULE_RE.search(t)
        or (booking_id and date_iso)
        or (pending_target and date_iso and not has_route)
    ):
        return result(START_RESCHEDULE, booking_id=booking_id, date=date_iso)

    if pending_target and not cancel_words and (CONFIRM_RE.search(t) or normalize_yes_no(t) == "yes"):
        return result(CONFIRM_RESCHEDULE, **criteria)

    if not cancel_words and BOOK_RE.search(t):
        return result(CREATE_BOOKING, **criteria)

    if cancel_words:
        last = bool(LAST_RE.search(t)) and criteria.get("ordinal") in (None, -1)
        return result(
            CANCEL_BOOKING,
            booking_id=booking_id,
            last=last or None,
            ordinal=criteria.get("ordinal") if not last else None,
        )

    if session.pending_cancel_candidates and "ordinal" in criteria:
        return result(SELECT, target="cancel", ordinal=criteria["ordinal"])

    if criteria and not has_route and not ADVICE_RE.search(t) and not origin:
        return result(SELECT, target="search", **criteria)

    if ADVICE_RE.search(t) and origin:
        return result(ADVICE, origin=origin, date=date_iso)

    if session.pending_search and not has_route:
        follow_up = extract_search_follow_up(raw, session.pending_search, origin, date_iso)
        if follow_up:
            slots = dict(session.pending_search)
            cheapest = slots.pop("cheapest", False) or bool(CHEAPEST_RE.search(t))
            slots.update(follow_up)
            return result(CHEAPEST if cheapest else SEARCH, **slots)

    if has_route or origin or (FLIGHT_RE.search(t) and (date_iso or destination)):
        intent = CHEAPEST if CHEAPEST_RE.search(t) else SEARCH
        return result(intent, origin=origin, destination=destination, date=date_iso)

    if user_id:
        return result(SET_USER)

    return result(FALLBACK)
