"""
Slot generation from the weekly availability template.

Slots are generated independently per request and are not reserved
against a shared calendar; every generated slot is ``available``.
"""

import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from citabot.config import SchedulingConfig, settings
from citabot.schemas.appointment_schema import Slot

logger = logging.getLogger(__name__)


def _parse_time(value: str) -> time:
    hour, minute = value.split(":")
    return time(int(hour), int(minute))


def _new_slot_id() -> str:
    return uuid.uuid4().hex[:9]


def generate_slots(
    now: datetime,
    *,
    tz: ZoneInfo,
    weekly_template: Mapping[int, Sequence[str]],
    slot_duration_minutes: int,
    advance_booking_days: int,
    min_advance_hours: float,
    limit: int,
) -> list[Slot]:
    """
    Produce bookable windows from a weekly template.

    Candidates start strictly after ``now + min_advance_hours`` and strictly
    before ``now + advance_booking_days``. The result is time-ascending,
    free of duplicate starts, and capped at ``limit``. A naive ``now`` is
    read as wall-clock time in ``tz``.
    """
    local_now = now.replace(tzinfo=tz) if now.tzinfo is None else now.astimezone(tz)
    earliest = local_now + timedelta(hours=min_advance_hours)
    latest = local_now + timedelta(days=advance_booking_days)
    duration = timedelta(minutes=slot_duration_minutes)

    starts: set[datetime] = set()
    cursor: date = earliest.date()
    while cursor <= latest.date():
        for value in weekly_template.get(cursor.weekday(), ()):
            start = datetime.combine(cursor, _parse_time(value), tzinfo=tz)
            if earliest < start < latest:
                starts.add(start)
        cursor += timedelta(days=1)

    slots = [
        Slot(id=_new_slot_id(), start=start, end=start + duration)
        for start in sorted(starts)[:limit]
    ]
    logger.debug(
        "Generated %d slot(s) between %s and %s", len(slots), earliest.isoformat(), latest.isoformat()
    )
    return slots


def get_available_slots(
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
    scheduling: Optional[SchedulingConfig] = None,
) -> list[Slot]:
    """Generate slots using the configured template.

    ``limit`` defaults to the session-scoped cap; the general availability
    listing passes ``scheduling.listing_slot_limit``.
    """
    scheduling = scheduling or settings.scheduling
    tz = scheduling.tzinfo
    return generate_slots(
        now or datetime.now(tz),
        tz=tz,
        weekly_template=scheduling.weekly_template,
        slot_duration_minutes=scheduling.slot_duration_minutes,
        advance_booking_days=scheduling.advance_booking_days,
        min_advance_hours=scheduling.min_advance_hours,
        limit=limit if limit is not None else scheduling.session_slot_limit,
    )
