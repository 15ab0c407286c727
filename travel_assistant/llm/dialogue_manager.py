# travel_assistant/llm/dialogue_manager.py
import json
import logging
import os
import re
import threading
from datetime import date
from typing import Any, Callable, Dict, Optional

from langchain_core.messages import HumanMessage, SystemMessage, ToolMessage
from langchain_openai import ChatOpenAI

from travel_assistant.errors import ToolCallingUnsupported

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4.1-mini"
MAX_TOOL_ROUNDS = 4
ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


DATE_PROMPT = """
You extract a single travel date from a user's message.
Today is {today}. Resolve relative phrases ("tomorrow", "next friday",
"25 декабря") against today. Never invent a date that is not implied.

You must output ONLY valid JSON (no markdown, no explanations):
{{
  "hasDate": true|false,
  "date": "YYYY-MM-DD" or null,
  "confidence": number between 0 and 1
}}
"""


AGENT_PROMPT = """
You are a flight booking assistant.

You help the user search flights, pick one of the results, book it,
list, cancel or reschedule bookings.

You receive:
- user_input
- session: active user, last search results, chosen flight, last booking id

Rules:
1) Use the tools for anything that touches flights or bookings. Never make up
   flight numbers, prices or booking ids.
2) Dates are YYYY-MM-DD. If the date, origin or destination is missing, ask for it.
3) Booking requires a user id; if the session has none, ask for it.
4) Keep answers short and actionable. Answer in the user's language.
"""


def _safe_json_parse(txt: str) -> Dict[str, Any]:
    try:
        return json.loads(txt)
    except Exception:
        m = re.search(r"\{.*\}", txt or "", re.DOTALL)
        if m:
            try:
                return json.loads(m.group(0))
            except Exception:
                return {}
        return {}


_llms: Dict[tuple, Any] = {}
_llms_lock = threading.Lock()


def get_chat_model(model: Optional[str] = None, base_url: Optional[str] = None):
    """
    Created on first use so importing the package never needs an API key.
    base_url points at any OpenAI-compatible server (e.g. a local Ollama).
    One client is kept per (model, base_url); OPENAI_MODEL is read at call
    time so a .env loaded after import still applies.
    """
    key = (model or os.getenv("OPENAI_MODEL", DEFAULT_MODEL), base_url or None)
    with _llms_lock:
        llm = _llms.get(key)
        if llm is None:
            kwargs: Dict[str, Any] = {"model": key[0], "temperature": 0}
            if base_url:
                kwargs["base_url"] = base_url
            llm = _llms[key] = ChatOpenAI(**kwargs)
    return llm


def _content(resp: Any) -> str:
    content = getattr(resp, "content", resp)
    if isinstance(content, list):
        # content blocks
        return "".join(b.get("text", "") if isinstance(b, dict) else str(b) for b in content)
    return str(content or "")


class DateNormalizer:
    """Free-text date -> YYYY-MM-DD through the chat model, gated by confidence."""

    def __init__(
        self,
        llm_factory: Callable[[], Any] = get_chat_model,
        threshold: float = 0.6,
        today: Callable[[], date] = date.today,
    ):
        self.llm_factory = llm_factory
        self.threshold = threshold
        self.today = today

    def normalize(self, text: str) -> Optional[str]:
        if not text or not text.strip():
            return None
        try:
            llm = self.llm_factory()
            resp = llm.invoke([
                SystemMessage(content=DATE_PROMPT.format(today=self.today().isoformat())),
                HumanMessage(content=text),
            ])
        except Exception as e:
            logger.warning("Date normalizer unavailable: %s", e)
            return None

        out = _safe_json_parse(_content(resp))
        if out.get("hasDate") is not True:
            return None
        value = str(out.get("date") or "").strip()
        if not ISO_DATE_RE.match(value):
            return None
        try:
            confidence = float(out.get("confidence") or 0)
        except (TypeError, ValueError):
            return None
        if confidence < self.threshold:
            logger.debug("Date %s rejected, confidence %.2f < %.2f", value, confidence, self.threshold)
            return None
        return value


_UNSUPPORTED_MARKERS = (
    "does not support tools",
    "tools are currently not supported",
    "tool use is not supported",
    "does not support function calling",
)


def _tools_unsupported(e: Exception) -> bool:
    msg = str(e).lower()
    return any(m in msg for m in _UNSUPPORTED_MARKERS)


class ReasoningService:
    """
    Free-form turns the deterministic handlers could not place.
    Runs a bind_tools loop; models without tool calling get a plain prompt.
    """

    def __init__(self, llm_factory: Callable[[], Any] = get_chat_model, tools_enabled: bool = True):
        self.llm_factory = llm_factory
        self.tools_enabled = tools_enabled

    def respond(self, user_input: str, context: Dict[str, Any], tools: Optional[list] = None) -> str:
        llm = self.llm_factory()
        messages = [
            SystemMessage(content=AGENT_PROMPT),
            HumanMessage(content=json.dumps(
                {"user_input": user_input, "session": context},
                ensure_ascii=False,
            )),
        ]

        if tools and self.tools_enabled:
            try:
                return self._run_with_tools(llm, messages, tools)
            except ToolCallingUnsupported as e:
                logger.warning("Tool calling unsupported, answering without tools: %s", e)

        return _content(llm.invoke(messages))

    def _run_with_tools(self, llm: Any, messages: list, tools: list) -> str:
        try:
            bound = llm.bind_tools(tools)
        except NotImplementedError as e:
            raise ToolCallingUnsupported(str(e) or type(llm).__name__) from e

        by_name = {t.name: t for t in tools}
        msgs = list(messages)
        last = None
        for _ in range(MAX_TOOL_ROUNDS):
            try:
                last = bound.invoke(msgs)
            except Exception as e:
                if _tools_unsupported(e):
                    raise ToolCallingUnsupported(str(e)) from e
                raise
            msgs.append(last)

            calls = getattr(last, "tool_calls", None) or []
            if not calls:
                return _content(last)

            for call in calls:
                tool = by_name.get(call["name"])
                if tool is None:
                    output = json.dumps({"status": "ERROR", "error": {"code": "UNKNOWN_TOOL", "message": call["name"]}})
                else:
                    output = tool.invoke(call.get("args") or {})
                logger.debug("Tool %s -> %s", call["name"], output)
                msgs.append(ToolMessage(content=str(output), tool_call_id=call.get("id") or call["name"]))

        # tool budget exhausted, ask for a final answer without tools
        return _content(llm.invoke(msgs))
