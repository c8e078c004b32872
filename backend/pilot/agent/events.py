"""EventStream: the ordered, replayable log of one agent session.

The stream is the single source of truth for both UI replay and LLM context
reconstruction. Events are appended synchronously and never removed; the only
mutation allowed is moving a tool-used event from loading to a final status.

Known types and payloads:
    user-message        {"text": str}
    loading-status      {"title": str, "description": str | None}
    plan-update         {"plan": [{"id", "title"}], "step": int}
    new-plan-step       {"step": int}
    agent-status        {"status": str}
    chat-text           {"text": str, "attachments": [{"path": str}]}
    tool-call-start     {"tool": str, "params": str}
    tool-used           {"id", "name", "args", "status", "batch", "result"}
    tool-result         ToolResult.to_dict()
    observation         {"content": str}
    user-interruption   {"text": str}
    complete / error / terminate  {"message": str}
"""

from __future__ import annotations

import enum
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from pilot.agent.constants import OBSERVATION_MAX_CHARS

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_CHAR_LIMIT = 10_000


class EventType(str, enum.Enum):
    USER_MESSAGE = "user-message"
    LOADING_STATUS = "loading-status"
    PLAN_UPDATE = "plan-update"
    NEW_PLAN_STEP = "new-plan-step"
    AGENT_STATUS = "agent-status"
    CHAT_TEXT = "chat-text"
    TOOL_CALL_START = "tool-call-start"
    TOOL_USED = "tool-used"
    TOOL_RESULT = "tool-result"
    OBSERVATION = "observation"
    USER_INTERRUPTION = "user-interruption"
    COMPLETE = "complete"
    ERROR = "error"
    TERMINATE = "terminate"


TERMINAL_EVENT_TYPES = frozenset(
    {EventType.COMPLETE, EventType.ERROR, EventType.TERMINATE}
)


class ActionStatus(str, enum.Enum):
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class Event:
    id: str
    type: EventType
    timestamp: int  # epoch milliseconds
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Event:
        return cls(
            id=data["id"],
            type=EventType(data["type"]),
            timestamp=int(data["timestamp"]),
            payload=dict(data.get("payload") or {}),
        )


Subscriber = Callable[[Event], Any]


class EventStream:
    """Append-only event log with synchronous fan-out to subscribers."""

    def __init__(
        self,
        session_id: str | None = None,
        prompt_char_limit: int = DEFAULT_PROMPT_CHAR_LIMIT,
    ) -> None:
        self.session_id = session_id
        self.prompt_char_limit = prompt_char_limit
        self._events: list[Event] = []
        self._index: dict[str, Event] = {}
        self._subscribers: list[Subscriber] = []

    def __len__(self) -> int:
        return len(self._events)

    # ── Writing ─────────────────────────────────────────────────

    def append(self, type: EventType, payload: dict | None = None) -> Event:
        event = Event(
            id=str(uuid.uuid4()),
            type=EventType(type),
            timestamp=int(time.time() * 1000),
            payload=dict(payload or {}),
        )
        self._events.append(event)
        self._index[event.id] = event
        self._publish(event)
        return event

    def update(self, event_id: str, **changes: Any) -> Event | None:
        """Update a tool-used event in place. Other events are immutable."""
        event = self._index.get(event_id)
        if event is None:
            logger.warning("update for unknown event %s ignored", event_id)
            return None
        if event.type != EventType.TOOL_USED:
            logger.warning(
                "event %s is %s and cannot be updated", event_id, event.type.value
            )
            return None
        event.payload.update(changes)
        self._publish(event)
        return event

    # ── Reading ─────────────────────────────────────────────────

    def get_all(self) -> list[Event]:
        return list(self._events)

    def latest(self, type: EventType) -> Event | None:
        for event in reversed(self._events):
            if event.type == type:
                return event
        return None

    def last(self) -> Event | None:
        return self._events[-1] if self._events else None

    def to_list(self) -> list[dict]:
        return [e.to_dict() for e in self._events]

    @classmethod
    def from_list(cls, data: list[dict], session_id: str | None = None) -> EventStream:
        stream = cls(session_id=session_id)
        for item in data:
            event = Event.from_dict(item)
            stream._events.append(event)
            stream._index[event.id] = event
        return stream

    # ── Subscriptions ───────────────────────────────────────────

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def _publish(self, event: Event) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", event.type.value)

    # ── Prompt reconstruction ───────────────────────────────────

    def normalize_for_prompt(self, limit: int | None = None) -> str:
        """Render the stream as a labelled transcript for the model.

        Only the trailing `limit` characters are kept so the most recent
        context survives when the history grows.
        """
        limit = self.prompt_char_limit if limit is None else limit
        lines = []
        for event in self._events:
            payload = event.payload
            if event.type == EventType.CHAT_TEXT:
                lines.append(f"AGENT: {payload.get('text', '')}")
            elif event.type == EventType.TOOL_USED:
                if payload.get("status") == ActionStatus.SUCCESS.value:
                    lines.append(
                        f"TOOL USED: {payload.get('name')}\n"
                        f"PARAMS: {payload.get('args')}\n"
                        f"RESULT: {json.dumps(payload.get('result'), ensure_ascii=False)}"
                    )
            elif event.type == EventType.OBSERVATION:
                lines.append(f"OBSERVATION: {payload.get('content', '')}")
            elif event.type in (EventType.USER_MESSAGE, EventType.USER_INTERRUPTION):
                lines.append(f"USER: {payload.get('text', '')}")
            elif event.type == EventType.AGENT_STATUS:
                lines.append(f"STATUS: {payload.get('status', '')}")

        joined = "\n\n".join(lines)
        if limit >= 0 and len(joined) > limit:
            return joined[len(joined) - limit:] if limit else ""
        return joined


def truncate_observation(text: str, limit: int = OBSERVATION_MAX_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... (truncated, {len(text)} chars total)"
