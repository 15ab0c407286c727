from typing import TypedDict, Optional, Any


class TurnState(TypedDict, total=False):
    session_id: str
    user_input: str
    user_id: Optional[str]          # explicit id passed with the request

    # classification
    intent: str                     # search|cheapest|advice|select|create_booking|...
    slots: dict[str, Any]

    # outputs
    reply: str
    results: dict[str, Any]
    trace: list[dict]
