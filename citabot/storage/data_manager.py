"""
Appointment and conversation-summary store with spreadsheet persistence.

Both collections live in memory and every mutation is written through to
the workbook before the call returns. Writes and backups are serialised by
one lock and run in a worker thread. Persistence faults never propagate:
they are logged and published as ``DataEventType.ERROR`` events while the
in-memory change stands.
"""

import asyncio
import csv
import io
import json
import logging
import shutil
import sys
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from citabot.config import DataConfig, SchedulingConfig, settings
from citabot.schemas.appointment_schema import (
    ALLOWED_STATUS_TRANSITIONS,
    AUDIT_FIELDS,
    Appointment,
    AppointmentFilters,
    AppointmentStatus,
    ConversationSummary,
)
from citabot.schemas.conversation_schema import to_jsonable, utcnow
from citabot.storage.workbook import export_workbook_bytes, load_workbook_data, write_workbook
from citabot.tools.technicians import TECHNICIANS, Technician, get_technician_zone
from citabot.utils import backup_path_for, normalize_phone

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv", "xlsx")
CSV_HEADERS = ["ID Cita", "Cliente", "Inicio", "Fin", "Técnico", "Estado", "Idioma"]

_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "session_id"})
_PATCHABLE_FIELDS = frozenset(Appointment.model_fields) - _IMMUTABLE_FIELDS - AUDIT_FIELDS


class AppointmentValidationError(ValueError):
    """Malformed input to a Data Manager operation."""


class AppointmentNotFoundError(KeyError):
    """The referenced appointment id is unknown."""

    def __str__(self) -> str:
        return f"Appointment not found: {self.args[0]}"


class InvalidStatusTransitionError(Exception):
    """A status change that would leave a terminal status or move backwards."""


class DataEventType(str, Enum):
    INITIALIZED = "initialized"
    DATA_SAVED = "data_saved"
    BACKUP_CREATED = "backup_created"
    APPOINTMENT_CREATED = "appointment_created"
    APPOINTMENT_UPDATED = "appointment_updated"
    CONVERSATION_SAVED = "conversation_saved"
    ERROR = "error"


@dataclass
class DataEvent:
    type: DataEventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": to_jsonable(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }


DataListener = Callable[[DataEvent], None]


class DataManager:
    """
    Owns the appointment and conversation collections.

    Call ``initialize()`` once before use and ``close()`` on shutdown; the
    latter stops the backup task and performs a final flush.
    """

    def __init__(
        self,
        data_config: Optional[DataConfig] = None,
        scheduling: Optional[SchedulingConfig] = None,
        technicians: tuple[Technician, ...] = TECHNICIANS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = data_config or settings.data
        self._scheduling = scheduling or settings.scheduling
        self._technicians = technicians
        self._clock = clock or utcnow
        self._path = Path(self._config.workbook_path)
        self._appointments: dict[str, Appointment] = {}
        self._conversations: dict[str, ConversationSummary] = {}
        self._listeners: list[DataListener] = []
        self._write_lock = asyncio.Lock()
        self._backup_task: Optional[asyncio.Task] = None
        self._started = time.monotonic()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: DataListener) -> None:
        self._listeners.append(listener)

    def _publish(self, event_type: DataEventType, **payload: Any) -> None:
        event = DataEvent(type=event_type, payload=payload)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Data event listener failed for %s", event_type.value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the workbook, or start an empty store and write a fresh file."""
        if self._path.exists():
            try:
                appointments, conversations = await asyncio.to_thread(load_workbook_data, self._path)
            except Exception as exc:
                logger.warning("Could not read %s (%s); starting with an empty store", self._path, exc)
            else:
                self._appointments = {a.id: a for a in appointments}
                self._conversations = {c.session_id: c for c in conversations}
                logger.info(
                    "Loaded %d appointment(s) and %d conversation(s) from %s",
                    len(self._appointments), len(self._conversations), self._path,
                )
                self._publish(DataEventType.INITIALIZED, appointments=len(self._appointments))
                return

        await self._persist()
        self._publish(DataEventType.INITIALIZED, appointments=0)

    def start_backups(self) -> None:
        """Schedule the periodic backup task, if enabled."""
        if not self._config.backup_enabled or self._backup_task is not None:
            return
        self._backup_task = asyncio.create_task(self._backup_loop(), name="workbook-backup")

    async def _backup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.backup_interval_seconds)
            await self.create_backup()

    async def close(self) -> None:
        if self._backup_task is not None:
            self._backup_task.cancel()
            try:
                await self._backup_task
            except asyncio.CancelledError:
                pass
            self._backup_task = None
        await self._persist()
        self._listeners.clear()
        logger.info("Data manager closed")

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    async def create_appointment(self, data: dict[str, Any]) -> Appointment:
        """
        Build an appointment from a confirmed slot and assignment data.

        ``data`` needs ``id``, ``session_id``, ``slot`` (with ``start`` and
        ``end``), ``technician`` and ``language``.

        Raises:
            AppointmentValidationError: On missing slot data, an invalid
                record, or an id that is already stored.
        """
        slot = data.get("slot") or {}
        if not isinstance(slot, dict):
            slot = to_jsonable(slot)
        if not slot.get("start") or not slot.get("end"):
            raise AppointmentValidationError("Appointment data must include slot start and end")

        appointment_id = data.get("id")
        if appointment_id in self._appointments:
            raise AppointmentValidationError(f"Duplicate appointment id: {appointment_id}")

        technician = data.get("technician")
        try:
            appointment = Appointment(
                id=appointment_id,
                session_id=data.get("session_id"),
                customer_name=data.get("customer_name") or "",
                phone=normalize_phone(data.get("phone")),
                start_time=slot["start"],
                end_time=slot["end"],
                technician=technician,
                zone=get_technician_zone(technician, self._technicians) if technician else "N/A",
                status=AppointmentStatus.CONFIRMED,
                language=data.get("language"),
                created_at=self._clock(),
                reminder_enabled=bool(data.get("reminder_enabled", False)),
                notes=data.get("notes") or "",
            )
        except ValidationError as exc:
            raise AppointmentValidationError(str(exc)) from exc

        self._appointments[appointment.id] = appointment
        logger.info("Appointment created: %s (%s)", appointment.id, appointment.technician)
        await self._persist()
        self._publish(DataEventType.APPOINTMENT_CREATED, appointment=appointment)
        return appointment

    async def update_appointment(self, appointment_id: str, patch: dict[str, Any]) -> Appointment:
        """
        Merge ``patch`` onto an appointment and stamp ``updated_at``.

        A status change to cancelled records ``cancelled_at`` like
        ``cancel_appointment`` does, with an empty reason.

        Raises:
            AppointmentNotFoundError: If the id is unknown.
            AppointmentValidationError: If the patch touches the id, audit or
                unknown fields, or produces an invalid record.
            InvalidStatusTransitionError: If the status would move backwards.
        """
        forbidden = set(patch) - _PATCHABLE_FIELDS
        if forbidden:
            raise AppointmentValidationError(
                f"Cannot update field(s): {', '.join(sorted(forbidden))}"
            )
        return await self._apply(appointment_id, dict(patch), {})

    async def cancel_appointment(self, appointment_id: str, reason: str = "") -> Appointment:
        current = self._appointments.get(appointment_id)
        if current is not None and current.status == AppointmentStatus.CANCELLED:
            raise InvalidStatusTransitionError(f"Appointment {appointment_id} is already cancelled")
        return await self._apply(
            appointment_id,
            {"status": AppointmentStatus.CANCELLED},
            {"cancelled_at": self._clock(), "cancellation_reason": reason},
        )

    async def _apply(
        self, appointment_id: str, patch: dict[str, Any], audit: dict[str, Any]
    ) -> Appointment:
        current = self._appointments.get(appointment_id)
        if current is None:
            raise AppointmentNotFoundError(appointment_id)

        if "technician" in patch and "zone" not in patch:
            patch["zone"] = get_technician_zone(patch["technician"], self._technicians)
        if "phone" in patch:
            patch["phone"] = normalize_phone(patch["phone"])
        if (
            patch.get("status") == AppointmentStatus.CANCELLED
            and current.status != AppointmentStatus.CANCELLED
        ):
            audit = {"cancelled_at": self._clock(), "cancellation_reason": "", **audit}

        try:
            updated = Appointment.model_validate({
                **current.model_dump(),
                **patch,
                **audit,
                "updated_at": self._clock(),
            })
        except ValidationError as exc:
            raise AppointmentValidationError(str(exc)) from exc

        if updated.end_time <= updated.start_time:
            raise AppointmentValidationError("Appointment end must be after its start")
        if updated.status != current.status and (
            updated.status not in ALLOWED_STATUS_TRANSITIONS[current.status]
        ):
            raise InvalidStatusTransitionError(
                f"Cannot change appointment {appointment_id} from "
                f"'{current.status.value}' to '{updated.status.value}'"
            )

        self._appointments[appointment_id] = updated
        logger.info("Appointment updated: %s (%s)", appointment_id, ", ".join(sorted(patch)))
        await self._persist()
        self._publish(DataEventType.APPOINTMENT_UPDATED, appointment=updated)
        return updated

    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        return self._appointments.get(appointment_id)

    def get_appointments(self, filters: Optional[AppointmentFilters] = None) -> list[Appointment]:
        """Appointments matching every given filter, ascending by start time."""
        filters = self._localize_filters(filters or AppointmentFilters())
        matched = [a for a in self._appointments.values() if filters.matches(a)]
        return sorted(matched, key=lambda a: a.start_time)

    def _localize_filters(self, filters: AppointmentFilters) -> AppointmentFilters:
        tz = self._scheduling.tzinfo
        updates = {}
        for name in ("date_from", "date_to"):
            value = getattr(filters, name)
            if value is not None and value.tzinfo is None:
                updates[name] = value.replace(tzinfo=tz)
        return filters.model_copy(update=updates) if updates else filters

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def save_conversation(self, session_id: str, data: dict[str, Any]) -> ConversationSummary:
        """Derive and store the summary of a finished conversation."""
        try:
            summary = ConversationSummary(
                session_id=session_id,
                start_time=data["start_time"],
                end_time=data.get("end_time") or self._clock(),
                language=data.get("language", ""),
                message_count=int(data.get("message_count", 0)),
                completed=bool(data.get("completed", False)),
                final_state=data.get("final_state", ""),
                appointment_id=data.get("appointment_id"),
                metadata={
                    k: (None if v is None else str(v))
                    for k, v in (data.get("metadata") or {}).items()
                },
            )
        except (KeyError, ValidationError) as exc:
            raise AppointmentValidationError(f"Invalid conversation data: {exc}") from exc

        self._conversations[session_id] = summary
        logger.info("Conversation saved: %s (%s)", session_id, summary.final_state)
        await self._persist()
        self._publish(DataEventType.CONVERSATION_SAVED, conversation=summary)
        return summary

    def get_conversation(self, session_id: str) -> Optional[ConversationSummary]:
        return self._conversations.get(session_id)

    # ------------------------------------------------------------------
    # Statistics & export
    # ------------------------------------------------------------------

    def generate_stats(self) -> dict[str, Any]:
        appointments = list(self._appointments.values())
        conversations = list(self._conversations.values())
        by_status = Counter(a.status for a in appointments)
        average = (
            int(sum(c.message_count for c in conversations) / len(conversations) + 0.5)
            if conversations else 0
        )
        return {
            "appointments": {
                "total": len(appointments),
                "confirmed": by_status[AppointmentStatus.CONFIRMED],
                "pending": by_status[AppointmentStatus.PENDING],
                "cancelled": by_status[AppointmentStatus.CANCELLED],
                "completed": by_status[AppointmentStatus.COMPLETED],
                "with_reminder": sum(1 for a in appointments if a.reminder_enabled),
            },
            "conversations": {
                "total": len(conversations),
                "completed": sum(1 for c in conversations if c.completed),
                "average_messages": average,
                "by_language": dict(Counter(c.language for c in conversations)),
            },
            "system": {
                "uptime_seconds": round(time.monotonic() - self._started, 3),
                "cpu_seconds": round(time.process_time(), 3),
                "allocated_blocks": sys.getallocatedblocks(),
                "threads": threading.active_count(),
                "timestamp": self._clock().isoformat(),
            },
        }

    async def export_data(
        self, fmt: str = "xlsx", filters: Optional[AppointmentFilters] = None
    ) -> Union[str, bytes]:
        """Render the filtered, sorted appointments as ``json``, ``csv`` or ``xlsx`` bytes."""
        fmt = fmt.lower()
        if fmt not in EXPORT_FORMATS:
            raise AppointmentValidationError(
                f"Unsupported export format {fmt!r}; expected one of {EXPORT_FORMATS}"
            )
        appointments = self.get_appointments(filters)
        if fmt == "json":
            return json.dumps(
                [a.model_dump(mode="json") for a in appointments], indent=2, ensure_ascii=False
            )
        if fmt == "csv":
            return self._to_csv(appointments)
        return await asyncio.to_thread(export_workbook_bytes, appointments)

    def _to_csv(self, appointments: list[Appointment]) -> str:
        tz = self._scheduling.tzinfo
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for a in appointments:
            writer.writerow([
                a.id,
                a.customer_name,
                a.start_time.astimezone(tz).strftime("%d/%m/%Y %H:%M"),
                a.end_time.astimezone(tz).strftime("%d/%m/%Y %H:%M"),
                a.technician,
                a.status.value,
                a.language,
            ])
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self) -> bool:
        async with self._write_lock:
            appointments = list(self._appointments.values())
            conversations = list(self._conversations.values())
            stats = self.generate_stats()
            try:
                await asyncio.to_thread(write_workbook, self._path, appointments, conversations, stats)
            except Exception as exc:
                logger.exception("Failed to save workbook %s", self._path)
                self._publish(DataEventType.ERROR, operation="save", error=str(exc))
                return False
        logger.debug("Workbook saved: %s", self._path)
        self._publish(DataEventType.DATA_SAVED, path=str(self._path))
        return True

    async def create_backup(self) -> Optional[Path]:
        """Copy the workbook to a timestamp-suffixed file. Failures are reported, not raised."""
        async with self._write_lock:
            backup = backup_path_for(self._path, self._clock().astimezone(self._scheduling.tzinfo))
            try:
                await asyncio.to_thread(shutil.copy2, self._path, backup)
            except OSError as exc:
                logger.error("Backup of %s failed: %s", self._path, exc)
                self._publish(DataEventType.ERROR, operation="backup", error=str(exc))
                return None
        logger.info("Backup created: %s", backup)
        self._publish(DataEventType.BACKUP_CREATED, path=str(backup))
        return backup
