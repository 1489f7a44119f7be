"""Shared test fixtures and helpers."""

import random
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

import pytest

from citabot.config import BotConfig, DataConfig, SchedulingConfig
from citabot.conversation.manager import ConversationManager
from citabot.conversation.session_store import SessionStore
from citabot.schemas.conversation_schema import BotResponse
from citabot.storage.data_manager import DataManager

BERLIN = ZoneInfo("Europe/Berlin")

# A Monday morning; with the default template the first bookable slot is Tue 16/09 09:00.
FIXED_NOW = datetime(2025, 9, 15, 8, 0, tzinfo=BERLIN)

BOOKING_SCRIPT = ["/start", "Español", "ACEPTO", "#1", "Sí"]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bot_config():
    return BotConfig(
        default_language="es",
        session_timeout_seconds=1800,
        max_retries=3,
    )


@pytest.fixture
def scheduling():
    return SchedulingConfig(
        timezone="Europe/Berlin",
        slot_duration_minutes=120,
        advance_booking_days=14,
        min_advance_hours=24,
        session_slot_limit=10,
        listing_slot_limit=20,
    )


@pytest.fixture
def data_config(tmp_path):
    return DataConfig(
        workbook_path=str(tmp_path / "appointments.xlsx"),
        backup_enabled=False,
        backup_interval_seconds=3600,
    )


@pytest.fixture
def manager(bot_config, scheduling, clock):
    return ConversationManager(
        SessionStore(bot_config),
        bot_config=bot_config,
        scheduling=scheduling,
        rng=random.Random(42),
        clock=clock,
    )


@pytest.fixture
def data_manager(data_config, scheduling, clock):
    return DataManager(data_config, scheduling, clock=clock)


def resolve_quick(text: str, previous: Optional[BotResponse]) -> str:
    """Translate ``#n`` into the n-th quick reply of the previous response."""
    if previous is not None and text.startswith("#") and text[1:].isdigit():
        return previous.quick[int(text[1:]) - 1]
    return text


async def drive(manager: ConversationManager, session_id: str, messages: list[str]) -> list[BotResponse]:
    """Send ``messages`` in order and return every response."""
    responses: list[BotResponse] = []
    for message in messages:
        previous = responses[-1] if responses else None
        responses.append(await manager.process_message(session_id, resolve_quick(message, previous)))
    return responses


def make_appointment_data(
    appointment_id: str = "C-2025-0915-0800-AAAA",
    start: datetime = datetime(2025, 9, 16, 9, 0, tzinfo=BERLIN),
    technician: str = "CLARITY-01",
    language: str = "es",
    session_id: str = "s-1",
    **extra,
) -> dict:
    """Payload in the shape the dispatcher hands to ``create_appointment``."""
    return {
        "id": appointment_id,
        "session_id": session_id,
        "slot": {
            "id": "abc123def",
            "start": start.isoformat(),
            "end": (start + timedelta(hours=2)).isoformat(),
            "available": True,
        },
        "technician": technician,
        "language": language,
        **extra,
    }


def with_workbook(config: DataConfig, path) -> DataConfig:
    return replace(config, workbook_path=str(path))
