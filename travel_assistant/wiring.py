import logging
from typing import Optional

from travel_assistant.agents.bookings import BookingOrchestrator
from travel_assistant.config import AssistantConfig
from travel_assistant.graph.graph import ConversationOrchestrator
from travel_assistant.llm.dialogue_manager import DateNormalizer, ReasoningService, get_chat_model
from travel_assistant.providers.booking_store import BookingStoreClient
from travel_assistant.providers.flight_catalog import FlightCatalog
from travel_assistant.providers.resilient import ResilientClient, breaker_for
from travel_assistant.session import SessionStore

logger = logging.getLogger(__name__)


def build_assistant(config: Optional[AssistantConfig] = None) -> ConversationOrchestrator:
    config = config or AssistantConfig.from_env()

    catalog = FlightCatalog(
        dataset_path=config.flight_dataset,
        synthetic_count=config.flight_synthetic_count,
        synthetic_start=config.flight_synthetic_start,
        timezone=config.flight_timezone,
    )
    sessions = SessionStore(shards=config.session_shards)

    client = ResilientClient(
        config.booking_base_url,
        timeout=config.booking_timeout_seconds,
        retries=config.booking_retries,
        breaker=breaker_for(
            config.booking_base_url,
            failure_threshold=config.breaker_failure_threshold,
            open_seconds=config.breaker_open_seconds,
        ),
    )
    bookings = BookingOrchestrator(BookingStoreClient(client), sessions)

    def llm():
        return get_chat_model(config.openai_model, config.openai_base_url)

    logger.info(
        "Assistant ready: model=%s booking store=%s tools=%s",
        config.openai_model, config.booking_base_url, config.agent_tools_enabled,
    )
    return ConversationOrchestrator(
        catalog=catalog,
        sessions=sessions,
        bookings=bookings,
        date_source=DateNormalizer(llm, threshold=config.date_confidence_threshold, today=catalog.today),
        reasoning=ReasoningService(llm, tools_enabled=config.agent_tools_enabled),
    )
