"""iCalendar (.ics) rendering for confirmed appointments."""

from datetime import datetime, timezone
from typing import Optional

_ICS_TIME_FORMAT = "%Y%m%dT%H%M%SZ"


def _ics_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(_ICS_TIME_FORMAT)


def _escape(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\n", "\\n")
    )


def build_ics(
    appointment_id: str,
    start: datetime,
    end: datetime,
    summary: str,
    location: str,
    description: str,
    stamp: Optional[datetime] = None,
) -> str:
    """
    Render a single-event VCALENDAR.

    Times are emitted in UTC. The UID is derived from the appointment id
    so re-sent invites update the same calendar entry.
    """
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//CLARITY//citabot//ES",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:{appointment_id}@clarity.local",
        f"DTSTAMP:{_ics_time(stamp or datetime.now(timezone.utc))}",
        f"DTSTART:{_ics_time(start)}",
        f"DTEND:{_ics_time(end)}",
        f"SUMMARY:{_escape(summary)}",
        f"LOCATION:{_escape(location)}",
        f"DESCRIPTION:{_escape(description)}",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines) + "\r\n"
