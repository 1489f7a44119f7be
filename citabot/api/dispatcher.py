"""
Routing of conversation domain events to persistence and observers.

``ConversationManager`` returns events instead of calling collaborators
itself; this dispatcher is the one place that decides what each event
means for the data layer. Persistence failures are logged and do not stop
the remaining events or the broadcast.
"""

import logging
from typing import Awaitable, Callable, Iterable, Optional

from citabot.api.connections import ConnectionManager
from citabot.schemas.conversation_schema import DomainEvent, EventType
from citabot.storage.data_manager import (
    AppointmentNotFoundError,
    AppointmentValidationError,
    DataManager,
    InvalidStatusTransitionError,
)

logger = logging.getLogger(__name__)

_EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventDispatcher:
    def __init__(self, data_manager: DataManager, connections: Optional[ConnectionManager] = None) -> None:
        self._data = data_manager
        self._connections = connections
        self._routes: dict[EventType, _EventHandler] = {
            EventType.APPOINTMENT_CREATED: self._on_appointment_created,
            EventType.REMINDER_SCHEDULED: self._on_reminder_scheduled,
            EventType.APPOINTMENT_RESCHEDULED: self._on_appointment_rescheduled,
            EventType.APPOINTMENT_CANCELLED: self._on_appointment_cancelled,
            EventType.SESSION_COMPLETED: self._on_session_finished,
            EventType.SESSION_FAILED: self._on_session_finished,
            EventType.SESSION_EXPIRED: self._on_session_finished,
        }

    async def dispatch(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            handler = self._routes.get(event.type)
            if handler is not None:
                try:
                    await handler(event)
                except (
                    AppointmentNotFoundError,
                    AppointmentValidationError,
                    InvalidStatusTransitionError,
                ) as exc:
                    logger.error(
                        "Could not apply %s for session %s: %s",
                        event.type.value, event.session_id, exc,
                    )
            if self._connections is not None:
                await self._connections.broadcast({
                    "type": event.type.value,
                    "data": event.model_dump(mode="json"),
                })

    async def _on_appointment_created(self, event: DomainEvent) -> None:
        await self._data.create_appointment({**event.payload, "session_id": event.session_id})

    async def _on_reminder_scheduled(self, event: DomainEvent) -> None:
        await self._data.update_appointment(
            event.payload["appointment_id"], {"reminder_enabled": True}
        )

    async def _on_appointment_rescheduled(self, event: DomainEvent) -> None:
        slot = event.payload["slot"]
        await self._data.update_appointment(
            event.payload["appointment_id"],
            {"start_time": slot["start"], "end_time": slot["end"]},
        )

    async def _on_appointment_cancelled(self, event: DomainEvent) -> None:
        await self._data.cancel_appointment(
            event.payload["appointment_id"], event.payload.get("reason", "")
        )

    async def _on_session_finished(self, event: DomainEvent) -> None:
        await self._data.save_conversation(event.session_id, event.payload)
