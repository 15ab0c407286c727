import threading
import zlib
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from travel_assistant.models import BookingSummary, Flight

MAX_TURNS = 50


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class Session:
    session_id: str
    last_search_results: list[Flight] = field(default_factory=list)
    last_chosen_flight: Optional[Flight] = None
    active_user_id: Optional[str] = None
    last_booking_id: Optional[str] = None
    reschedule_target_booking_id: Optional[str] = None
    reschedule_new_date: Optional[str] = None
    pending_cancel_candidates: Optional[list[BookingSummary]] = None
    pending_search: Optional[dict[str, Any]] = None
    turns: list[dict] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def copy(self) -> "Session":
        return replace(
            self,
            last_search_results=list(self.last_search_results),
            pending_cancel_candidates=(
                list(self.pending_cancel_candidates) if self.pending_cancel_candidates is not None else None
            ),
            pending_search=dict(self.pending_search) if self.pending_search is not None else None,
            turns=list(self.turns),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "active_user_id": self.active_user_id,
            "last_booking_id": self.last_booking_id,
            "last_search_results": [f.to_dict() for f in self.last_search_results],
            "last_chosen_flight": self.last_chosen_flight.to_dict() if self.last_chosen_flight else None,
            "reschedule_target_booking_id": self.reschedule_target_booking_id,
            "reschedule_new_date": self.reschedule_new_date,
            "pending_cancel_candidates": (
                [asdict(b) for b in self.pending_cancel_candidates]
                if self.pending_cancel_candidates is not None else None
            ),
            "pending_search": dict(self.pending_search) if self.pending_search is not None else None,
            "turns": list(self.turns),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class _Shard:
    def __init__(self):
        self.lock = threading.Lock()
        self.sessions: dict[str, Session] = {}
        self.turn_locks: dict[str, threading.RLock] = {}


class SessionStore:
    """
    In-memory per-session state, sharded by key so unrelated sessions do
    not contend on one lock. Sessions are created on first reference.
    """

    def __init__(self, shards: int = 16):
        self._shards = [_Shard() for _ in range(max(1, shards))]

    def _shard(self, session_id: str) -> _Shard:
        return self._shards[zlib.crc32(session_id.encode("utf-8")) % len(self._shards)]

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        """Serializes turns (and multi-step bookkeeping) for one session."""
        shard = self._shard(session_id)
        with shard.lock:
            turn_lock = shard.turn_locks.setdefault(session_id, threading.RLock())
        with turn_lock:
            yield

    @staticmethod
    def _ensure(shard: _Shard, session_id: str) -> Session:
        s = shard.sessions.get(session_id)
        if s is None:
            s = Session(session_id=session_id)
            shard.sessions[session_id] = s
        return s

    def get_or_create(self, session_id: str) -> Session:
        shard = self._shard(session_id)
        with shard.lock:
            return self._ensure(shard, session_id)

    def snapshot(self, session_id: str) -> Session:
        """Detached copy; mutate through update() or the typed helpers."""
        shard = self._shard(session_id)
        with shard.lock:
            return self._ensure(shard, session_id).copy()

    def update(self, session_id: str, fn: Callable[[Session], Any]) -> Any:
        shard = self._shard(session_id)
        with shard.lock:
            s = self._ensure(shard, session_id)
            out = fn(s)
            s.updated_at = _now()
            return out

    # ---------------------------
    # Typed updates
    # ---------------------------
    def set_user(self, session_id: str, user_id: Optional[str]):
        if not user_id:
            return

        def _apply(s: Session):
            s.active_user_id = user_id
        self.update(session_id, _apply)

    def remember_search(self, session_id: str, flights: list[Flight], chosen: Optional[Flight] = None):
        """New results replace the old ones; the chosen flight is cleared unless picked from them."""
        def _apply(s: Session):
            s.last_search_results = list(flights)
            s.last_chosen_flight = chosen if chosen is not None and chosen in s.last_search_results else None
            s.pending_search = None
        self.update(session_id, _apply)

    def remember_chosen(self, session_id: str, flight: Flight):
        def _apply(s: Session):
            if flight not in s.last_search_results:
                raise ValueError(f"{flight.trip_id} is not in the last search results")
            s.last_chosen_flight = flight
        self.update(session_id, _apply)

    def record_booking(self, session_id: str, booking_id: str):
        def _apply(s: Session):
            s.last_booking_id = booking_id
        self.update(session_id, _apply)

    def start_reschedule(self, session_id: str, target_booking_id: str, new_date: Optional[str] = None):
        def _apply(s: Session):
            s.reschedule_target_booking_id = target_booking_id
            s.reschedule_new_date = new_date
        self.update(session_id, _apply)

    def set_reschedule_date(self, session_id: str, new_date: str):
        def _apply(s: Session):
            s.reschedule_new_date = new_date
        self.update(session_id, _apply)

    def complete_reschedule(self, session_id: str, new_booking_id: str):
        """Records the replacement booking and clears reschedule state in one step."""
        def _apply(s: Session):
            s.last_booking_id = new_booking_id
            s.reschedule_target_booking_id = None
            s.reschedule_new_date = None
        self.update(session_id, _apply)

    def clear_reschedule(self, session_id: str):
        def _apply(s: Session):
            s.reschedule_target_booking_id = None
            s.reschedule_new_date = None
        self.update(session_id, _apply)

    def set_cancel_candidates(self, session_id: str, candidates: Optional[list[BookingSummary]]):
        def _apply(s: Session):
            s.pending_cancel_candidates = list(candidates) if candidates is not None else None
        self.update(session_id, _apply)

    def set_pending_search(self, session_id: str, slots: Optional[dict[str, Any]]):
        """Search slots gathered so far while a piece is still missing."""
        def _apply(s: Session):
            s.pending_search = dict(slots) if slots else None
        self.update(session_id, _apply)

    def record_turn(self, session_id: str, role: str, content: str):
        def _apply(s: Session):
            s.turns.append({"role": role, "content": content, "at": _now()})
            s.turns = s.turns[-MAX_TURNS:]  # keep last 50 messages
        self.update(session_id, _apply)

    # ---------------------------
    # Admin
    # ---------------------------
    def keys(self) -> list[str]:
        out = []
        for shard in self._shards:
            with shard.lock:
                out.extend(shard.sessions.keys())
        return sorted(out)

    def dump(self, session_id: str) -> Optional[dict]:
        shard = self._shard(session_id)
        with shard.lock:
            s = shard.sessions.get(session_id)
            return s.to_dict() if s else None

    def clear(self, session_id: str) -> bool:
        shard = self._shard(session_id)
        # the turn lock stays: a turn in flight may still hold it
        with shard.lock:
            return shard.sessions.pop(session_id, None) is not None
