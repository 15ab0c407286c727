import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

OK = "OK"
ERROR = "ERROR"
CIRCUIT_OPEN = "CIRCUIT_OPEN"
TRANSPORT_ERROR_STATUS = 599


@dataclass
class Envelope:
    status: str
    http_status: int
    message: Optional[str] = None
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.status == OK

    def to_dict(self) -> dict:
        out: Dict[str, Any] = {"status": self.status, "httpStatus": self.http_status}
        if self.message:
            out["message"] = self.message
        if self.data is not None:
            out["data"] = self.data
        return out


class CircuitBreaker:
    """
    Consecutive-failure breaker for one downstream target.
    After `failure_threshold` failures in a row the circuit stays open for
    `open_seconds`; the first call after that window is let through again
    and, if it fails too, opens the circuit straight away.
    """

    def __init__(self, failure_threshold: int = 3, open_seconds: float = 10.0,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.open_seconds = open_seconds
        self.clock = clock
        self.consecutive_failures = 0
        self.open_until = 0.0
        self._lock = threading.Lock()

    def is_open(self) -> bool:
        with self._lock:
            return self.clock() < self.open_until

    def record_success(self):
        with self._lock:
            self.consecutive_failures = 0
            self.open_until = 0.0

    def record_failure(self) -> bool:
        """Returns True when this failure opened the circuit."""
        with self._lock:
            self.consecutive_failures += 1
            if self.consecutive_failures >= self.failure_threshold:
                # the counter is reset by record_success only
                self.open_until = self.clock() + self.open_seconds
                return True
            return False


_breakers: Dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def breaker_for(target: str, failure_threshold: int = 3, open_seconds: float = 10.0,
                clock: Callable[[], float] = time.monotonic) -> CircuitBreaker:
    """Process-wide breaker per target; settings apply on first use."""
    with _breakers_lock:
        b = _breakers.get(target)
        if b is None:
            b = CircuitBreaker(failure_threshold, open_seconds, clock)
            _breakers[target] = b
        return b


def reset_breakers():
    with _breakers_lock:
        _breakers.clear()


class ResilientClient:
    """
    HTTP calls to a single base URL with bounded retries and a shared
    circuit breaker. Never raises on transport problems, every outcome is
    returned as an Envelope.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: float = 5.0,
        retries: int = 2,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retries = max(0, retries)
        self.breaker = breaker or breaker_for(self.base_url)

    def _circuit_open(self) -> Envelope:
        return Envelope(ERROR, 503, CIRCUIT_OPEN)

    @staticmethod
    def _parse(resp: requests.Response) -> Any:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    def call(self, method: str, path: str, json: Any = None, headers: Optional[dict] = None) -> Envelope:
        url = f"{self.base_url}{path}"
        last: Optional[Envelope] = None

        for attempt in range(self.retries + 1):
            if self.breaker.is_open():
                if last is None:
                    logger.warning("Circuit open for %s, skipping %s %s", self.base_url, method, path)
                    return self._circuit_open()
                # opened between attempts: stop and surface the last real error
                return last

            logger.debug("%s %s attempt %d", method, url, attempt + 1)
            try:
                resp = self.session.request(method, url, json=json, headers=headers, timeout=self.timeout)
            except requests.RequestException as e:
                last = Envelope(ERROR, TRANSPORT_ERROR_STATUS, str(e))
                self._failure(method, path)
                continue

            body = self._parse(resp)
            if 200 <= resp.status_code < 300:
                self.breaker.record_success()
                return Envelope(OK, resp.status_code, None, body)

            message = None
            if isinstance(body, dict):
                message = body.get("message") or body.get("error")
            elif isinstance(body, str) and body:
                message = body
            last = Envelope(ERROR, resp.status_code, message or resp.reason, body)
            self._failure(method, path)
            if resp.status_code < 500:
                return last

        logger.warning("%s %s failed after %d attempts: %s", method, path, self.retries + 1, last.message)
        return last

    def _failure(self, method: str, path: str):
        if self.breaker.record_failure():
            logger.warning(
                "Circuit opened for %s after %s %s (%.0fs)",
                self.base_url, method, path, self.breaker.open_seconds,
            )

    def get(self, path: str, headers: Optional[dict] = None) -> Envelope:
        return self.call("GET", path, headers=headers)

    def post(self, path: str, json: Any = None, headers: Optional[dict] = None) -> Envelope:
        return self.call("POST", path, json=json, headers=headers)

    def put(self, path: str, json: Any = None, headers: Optional[dict] = None) -> Envelope:
        return self.call("PUT", path, json=json, headers=headers)

    def delete(self, path: str, headers: Optional[dict] = None) -> Envelope:
        return self.call("DELETE", path, headers=headers)
