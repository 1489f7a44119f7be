"""Slot, appointment and conversation-summary data models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Forward-only status moves; cancelled and completed are terminal.
ALLOWED_STATUS_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED}
    ),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.COMPLETED: frozenset(),
}


class Slot(BaseModel):
    """A candidate appointment window, not yet committed."""
    id: str
    start: datetime
    end: datetime
    available: bool = True

    @model_validator(mode="after")
    def _end_after_start(self) -> "Slot":
        if self.end <= self.start:
            raise ValueError("slot end must be after its start")
        return self

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


class Appointment(BaseModel):
    """A confirmed booking derived from a selected slot."""
    id: str
    session_id: str
    customer_name: str = ""
    phone: str = ""
    start_time: datetime
    end_time: datetime
    technician: str
    zone: str = "N/A"
    status: AppointmentStatus = AppointmentStatus.CONFIRMED
    language: str
    created_at: datetime
    reminder_enabled: bool = False
    notes: str = ""
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


# Fields stamped by the data manager itself rather than by callers.
AUDIT_FIELDS = frozenset({"updated_at", "cancelled_at", "cancellation_reason"})


class AppointmentFilters(BaseModel):
    """Query filters for listing appointments. Date bounds are inclusive."""
    status: Optional[AppointmentStatus] = None
    technician: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None

    def matches(self, appointment: Appointment) -> bool:
        if self.status is not None and appointment.status != self.status:
            return False
        if self.technician is not None and appointment.technician != self.technician:
            return False
        if self.date_from is not None and appointment.start_time < self.date_from:
            return False
        if self.date_to is not None and appointment.start_time > self.date_to:
            return False
        return True


class ConversationSummary(BaseModel):
    """Derived record written once a session ends."""
    session_id: str
    start_time: datetime
    end_time: datetime
    language: str
    message_count: int = 0
    completed: bool = False
    final_state: str
    appointment_id: Optional[str] = None
    metadata: dict[str, Optional[str]] = Field(default_factory=dict)

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)
