"""Conversation session, history, response and domain event models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ConversationState(str, Enum):
    """All possible states in a booking conversation."""
    INIT = "INIT"
    LANGUAGE_SELECTION = "LANGUAGE_SELECTION"
    CONSENT = "CONSENT"
    SLOT_SELECTION = "SLOT_SELECTION"
    CONFIRMATION = "CONFIRMATION"
    REMINDER_SETUP = "REMINDER_SETUP"
    MANAGEMENT = "MANAGEMENT"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class Direction(str, Enum):
    USER = "user"
    BOT = "bot"


class EventType(str, Enum):
    SESSION_CREATED = "session_created"
    MESSAGE_PROCESSED = "message_processed"
    APPOINTMENT_CREATED = "appointment_created"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    REMINDER_SCHEDULED = "reminder_scheduled"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    SESSION_EXPIRED = "session_expired"
    ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_jsonable(value: Any) -> Any:
    """Convert models, datetimes and enums nested in containers to JSON-safe values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


@dataclass
class MessageEntry:
    """One line of the append-only conversation history."""
    timestamp: datetime
    direction: Direction
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "direction": self.direction.value,
            "content": self.content,
            "metadata": to_jsonable(self.metadata),
        }


@dataclass
class Session:
    """
    Per-conversation state owned by the session store.

    Mutated only by the conversation manager while it holds the
    session's lock. ``context`` is a scratchpad for in-flight selections
    (available/selected slot, appointment id, technician, consent and
    reminder flags). ``summarized`` is set once a conversation summary has
    been emitted for the current run of the conversation.
    """
    id: str
    language: str
    state: ConversationState = ConversationState.INIT
    start_time: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    context: dict[str, Any] = field(default_factory=dict)
    message_history: list[MessageEntry] = field(default_factory=list)
    retry_count: int = 0
    completed: bool = False
    summarized: bool = False

    def record(
        self,
        direction: Direction,
        content: str,
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> MessageEntry:
        entry = MessageEntry(
            timestamp=timestamp or utcnow(),
            direction=direction,
            content=content,
            metadata=dict(metadata or {}),
        )
        self.message_history.append(entry)
        return entry

    def last_quick_replies(self) -> list[str]:
        """Quick replies offered with the most recent bot message, if any."""
        for entry in reversed(self.message_history):
            if entry.direction == Direction.BOT:
                return list(entry.metadata.get("quick", []))
        return []

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "language": self.language,
            "start_time": self.start_time.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "context": to_jsonable(self.context),
            "message_history": [entry.to_dict() for entry in self.message_history],
            "retry_count": self.retry_count,
            "completed": self.completed,
            "summarized": self.summarized,
        }


class DomainEvent(BaseModel):
    """A typed notification returned alongside a bot response."""
    type: EventType
    session_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class BotResponse(BaseModel):
    """What the façade sends back for one processed message."""
    bot: str
    quick: list[str] = Field(default_factory=list)
    state: ConversationState
    metadata: dict[str, Any] = Field(default_factory=dict)
    events: list[DomainEvent] = Field(default_factory=list, exclude=True)
