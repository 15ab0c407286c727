from travel_assistant.config import AssistantConfig
from travel_assistant.wiring import build_assistant

__all__ = ["AssistantConfig", "build_assistant"]
