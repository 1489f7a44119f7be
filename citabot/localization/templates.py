"""
Display formatting for slots and multi-line booking messages.

Slot labels double as quick replies, so ``format_slot`` output is also what
``find_slot_by_display`` matches against.
"""

from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from citabot.localization.messages import WEEKDAY_ABBREVIATIONS, get_message
from citabot.schemas.appointment_schema import Slot
from citabot.tools.technicians import get_technician_zone


def format_slot(slot: Slot, language: str, tz: ZoneInfo) -> str:
    """
    Render a slot as ``<Wd> DD.MM HH:mm-HH:mm`` (German) or
    ``<Wd> DD/MM HH:mm-HH:mm`` (other languages), in local time.
    """
    start = slot.start.astimezone(tz)
    end = slot.end.astimezone(tz)
    weekdays = WEEKDAY_ABBREVIATIONS.get(language, WEEKDAY_ABBREVIATIONS["en"])
    day = start.strftime("%d.%m") if language == "de" else start.strftime("%d/%m")
    return f"{weekdays[start.weekday()]} {day} {start:%H:%M}-{end:%H:%M}"


def format_slots(slots: Sequence[Slot], language: str, tz: ZoneInfo) -> list[str]:
    return [format_slot(slot, language, tz) for slot in slots]


def find_slot_by_display(
    text: str, slots: Sequence[Slot], language: str, tz: ZoneInfo
) -> Optional[Slot]:
    """First slot whose label contains the text or is contained in it."""
    needle = text.strip()
    if not needle:
        return None
    for slot in slots:
        label = format_slot(slot, language, tz)
        if needle in label or label in needle:
            return slot
    return None


def format_confirmation_message(slot: Slot, language: str, tz: ZoneInfo) -> str:
    return (
        f"{get_message('chosen', language)}: {format_slot(slot, language, tz)}\n"
        f"{get_message('confirm_q', language)}"
    )


def _booking_lines(
    slot: Slot, technician: str, appointment_id: str, language: str, tz: ZoneInfo
) -> list[str]:
    return [
        f"🗓 {format_slot(slot, language, tz)}",
        f"👨‍🔧 {get_message('technician_label', language)}: {technician}",
        f"📍 {get_message('zone_label', language)}: {get_technician_zone(technician)}",
        f"🆔 ID: {appointment_id}",
    ]


def format_appointment_confirmation(
    slot: Slot, technician: str, appointment_id: str, language: str, tz: ZoneInfo
) -> str:
    lines = [get_message("confirmed", language)]
    lines += _booking_lines(slot, technician, appointment_id, language, tz)
    lines += ["", get_message("reminder_q", language)]
    return "\n".join(lines)


def format_status_message(
    slot: Slot,
    technician: str,
    appointment_id: str,
    cancelled: bool,
    language: str,
    tz: ZoneInfo,
) -> str:
    status_key = "status_cancelled" if cancelled else "status_confirmed"
    lines = [get_message("status_info", language)]
    lines += _booking_lines(slot, technician, appointment_id, language, tz)
    lines.append(f"✅ {get_message(status_key, language)}")
    return "\n".join(lines)
