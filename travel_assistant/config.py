import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_DATASET = str(Path(__file__).resolve().parent.parent / "data" / "flights.csv")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        return int(raw) if raw not in (None, "") else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        return float(raw) if raw not in (None, "") else default
    except ValueError:
        return default


@dataclass
class AssistantConfig:
    # reasoning service
    openai_model: str = "gpt-4.1-mini"
    openai_base_url: Optional[str] = None
    agent_tools_enabled: bool = True
    date_confidence_threshold: float = 0.6

    # booking store
    booking_base_url: str = "http://localhost:18081/api"
    booking_timeout_seconds: float = 5.0
    booking_retries: int = 2
    breaker_failure_threshold: int = 3
    breaker_open_seconds: float = 10.0

    # flight catalog
    flight_dataset: str = DEFAULT_DATASET
    flight_synthetic_count: int = 500
    flight_synthetic_start: str = "2025-12-20"
    flight_timezone: Optional[str] = None

    session_shards: int = 16
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "AssistantConfig":
        """
        Read settings from the process environment (and .env when present).
        Unset or malformed values fall back to the defaults above.
        """
        if dotenv:
            load_dotenv()
        return cls(
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4.1-mini"),
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            agent_tools_enabled=_env_bool("ASSISTANT_AGENT_TOOLS_ENABLED", True),
            date_confidence_threshold=_env_float("DATE_CONFIDENCE_THRESHOLD", 0.6),
            booking_base_url=os.getenv("BOOKING_BASE_URL", "http://localhost:18081/api").rstrip("/"),
            booking_timeout_seconds=_env_float("BOOKING_TIMEOUT_SECONDS", 5.0),
            booking_retries=max(0, _env_int("BOOKING_RETRIES", 2)),
            breaker_failure_threshold=max(1, _env_int("BREAKER_FAILURE_THRESHOLD", 3)),
            breaker_open_seconds=_env_float("BREAKER_OPEN_SECONDS", 10.0),
            flight_dataset=os.getenv("FLIGHT_DATASET", DEFAULT_DATASET),
            flight_synthetic_count=max(0, _env_int("FLIGHT_SYNTHETIC_COUNT", 500)),
            flight_synthetic_start=os.getenv("FLIGHT_SYNTHETIC_START", "2025-12-20"),
            flight_timezone=os.getenv("FLIGHT_TIMEZONE") or None,
            session_shards=max(1, _env_int("SESSION_SHARDS", 16)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
