from citabot.storage.data_manager import (
    AppointmentNotFoundError,
    AppointmentValidationError,
    DataEvent,
    DataEventType,
    DataManager,
    InvalidStatusTransitionError,
)

__all__ = [
    "AppointmentNotFoundError",
    "AppointmentValidationError",
    "DataEvent",
    "DataEventType",
    "DataManager",
    "InvalidStatusTransitionError",
]
