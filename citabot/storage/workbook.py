"""
Spreadsheet rendering and loading for the appointment store.

The workbook has three sheets: "Citas" (one styled row per appointment,
colored by status), "Conversaciones" (conversation summaries) and
"Estadísticas" (label/value rows of the derived statistics). Datetimes are
stored as ISO-8601 strings because the file format cannot carry timezone
offsets.
"""

import io
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Optional

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from pydantic import ValidationError

from citabot.schemas.appointment_schema import Appointment, AppointmentStatus, ConversationSummary
from citabot.utils import normalize_phone

logger = logging.getLogger(__name__)

APPOINTMENTS_SHEET = "Citas"
CONVERSATIONS_SHEET = "Conversaciones"
STATS_SHEET = "Estadísticas"
EXPORT_SHEET = "Citas Exportadas"

# (header, Appointment field, column width); the first thirteen are the fixed layout
APPOINTMENT_COLUMNS: list[tuple[str, str, int]] = [
    ("ID Cita", "id", 24),
    ("ID Sesión", "session_id", 18),
    ("Cliente", "customer_name", 25),
    ("Teléfono", "phone", 16),
    ("Inicio", "start_time", 27),
    ("Fin", "end_time", 27),
    ("Técnico", "technician", 15),
    ("Zona", "zone", 15),
    ("Estado", "status", 12),
    ("Idioma", "language", 8),
    ("Creado", "created_at", 34),
    ("Recordatorio", "reminder_enabled", 13),
    ("Notas", "notes", 30),
    ("Actualizado", "updated_at", 34),
    ("Cancelado", "cancelled_at", 34),
    ("Motivo Cancelación", "cancellation_reason", 25),
]

CONVERSATION_COLUMNS: list[tuple[str, str, int]] = [
    ("ID Sesión", "session_id", 18),
    ("Inicio", "start_time", 34),
    ("Fin", "end_time", 34),
    ("Duración (min)", "duration_minutes", 15),
    ("Idioma", "language", 8),
    ("Mensajes", "message_count", 10),
    ("Completada", "completed", 12),
    ("Estado Final", "final_state", 20),
    ("ID Cita", "appointment_id", 24),
]

APPOINTMENT_HEADER_COLOR = "4472C4"
CONVERSATION_HEADER_COLOR = "70AD47"

STATUS_COLORS: dict[AppointmentStatus, str] = {
    AppointmentStatus.CONFIRMED: "C6EFCE",
    AppointmentStatus.PENDING: "FFC000",
    AppointmentStatus.CANCELLED: "FFC7CE",
    AppointmentStatus.COMPLETED: "92D050",
}

STAT_LABELS: dict[str, str] = {
    "total": "Total",
    "confirmed": "Confirmadas",
    "pending": "Pendientes",
    "cancelled": "Canceladas",
    "completed": "Completadas",
    "with_reminder": "Con recordatorio",
    "average_messages": "Promedio mensajes",
    "by_language": "Por idioma",
}

_YES, _NO = "Sí", "No"


def _solid(color: str) -> PatternFill:
    return PatternFill(fill_type="solid", start_color=color, end_color=color)


def _yes_no(flag: bool) -> str:
    return _YES if flag else _NO


def _cell_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, AppointmentStatus):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def _write_header(ws: Worksheet, columns: list[tuple[str, str, int]], color: str) -> None:
    ws.append([header for header, _, _ in columns])
    for index, (_, _, width) in enumerate(columns, start=1):
        cell = ws.cell(row=1, column=index)
        cell.font = Font(bold=True, color="FFFFFF")
        cell.fill = _solid(color)
        ws.column_dimensions[get_column_letter(index)].width = width
    ws.auto_filter.ref = f"A1:{get_column_letter(len(columns))}1"


def appointment_row(appointment: Appointment) -> list[Any]:
    row = []
    for _, key, _ in APPOINTMENT_COLUMNS:
        value = getattr(appointment, key)
        row.append(_yes_no(value) if key == "reminder_enabled" else _cell_value(value))
    return row


def _write_appointments(ws: Worksheet, appointments: Iterable[Appointment]) -> None:
    _write_header(ws, APPOINTMENT_COLUMNS, APPOINTMENT_HEADER_COLOR)
    for appointment in appointments:
        ws.append(appointment_row(appointment))
        fill = _solid(STATUS_COLORS.get(appointment.status, "FFFFFF"))
        for cell in ws[ws.max_row]:
            cell.fill = fill


def _write_conversations(ws: Worksheet, conversations: Iterable[ConversationSummary]) -> None:
    _write_header(ws, CONVERSATION_COLUMNS, CONVERSATION_HEADER_COLOR)
    for summary in conversations:
        ws.append([
            summary.session_id,
            summary.start_time.isoformat(),
            summary.end_time.isoformat(),
            summary.duration_minutes,
            summary.language,
            summary.message_count,
            _yes_no(summary.completed),
            summary.final_state,
            summary.appointment_id or "",
        ])


def _write_stat_section(ws: Worksheet, row: int, title: str, values: dict[str, Any]) -> int:
    ws.cell(row=row, column=1, value=title).font = Font(bold=True)
    row += 1
    for key, value in values.items():
        label = STAT_LABELS.get(key, key)
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                ws.cell(row=row, column=1, value=f"{label} ({sub_key})")
                ws.cell(row=row, column=2, value=sub_value)
                row += 1
            continue
        ws.cell(row=row, column=1, value=label)
        ws.cell(row=row, column=2, value=value)
        row += 1
    return row


def _write_stats(ws: Worksheet, stats: dict[str, Any]) -> None:
    ws.merge_cells("A1:B1")
    title = ws["A1"]
    title.value = "ESTADÍSTICAS DEL SISTEMA"
    title.font = Font(bold=True, size=16)
    title.alignment = Alignment(horizontal="center")
    ws.column_dimensions["A"].width = 28
    ws.column_dimensions["B"].width = 16

    row = _write_stat_section(ws, 3, "CITAS", stats.get("appointments", {}))
    _write_stat_section(ws, row + 1, "CONVERSACIONES", stats.get("conversations", {}))


def build_workbook(
    appointments: Iterable[Appointment],
    conversations: Iterable[ConversationSummary],
    stats: dict[str, Any],
) -> Workbook:
    wb = Workbook()
    ws = wb.active
    ws.title = APPOINTMENTS_SHEET
    _write_appointments(ws, appointments)
    _write_conversations(wb.create_sheet(CONVERSATIONS_SHEET), conversations)
    _write_stats(wb.create_sheet(STATS_SHEET), stats)
    return wb


def write_workbook(
    path: Path,
    appointments: Iterable[Appointment],
    conversations: Iterable[ConversationSummary],
    stats: dict[str, Any],
) -> None:
    """Render and atomically replace the workbook at ``path``. Blocking."""
    path.parent.mkdir(parents=True, exist_ok=True)
    wb = build_workbook(appointments, conversations, stats)
    tmp_path = path.with_name(f".{path.stem}.tmp{path.suffix}")
    try:
        wb.save(tmp_path)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def export_workbook_bytes(appointments: Iterable[Appointment]) -> bytes:
    """Single-sheet workbook of the given appointments, as xlsx bytes."""
    wb = Workbook()
    ws = wb.active
    ws.title = EXPORT_SHEET
    _write_appointments(ws, appointments)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def _row_to_appointment(row: tuple[Any, ...]) -> Optional[Appointment]:
    values = dict(zip([key for _, key, _ in APPOINTMENT_COLUMNS], row))
    if not values.get("id"):
        return None
    data = {key: value for key, value in values.items() if value not in (None, "")}
    data["reminder_enabled"] = values.get("reminder_enabled") in (_YES, "Si", "Yes", True)
    for key in ("customer_name", "notes"):
        data[key] = str(data.get(key, ""))
    data["phone"] = normalize_phone(values.get("phone"))
    return Appointment.model_validate(data)


def _row_to_conversation(row: tuple[Any, ...]) -> Optional[ConversationSummary]:
    values = dict(zip([key for _, key, _ in CONVERSATION_COLUMNS], row))
    if not values.get("session_id"):
        return None
    return ConversationSummary(
        session_id=str(values["session_id"]),
        start_time=values["start_time"],
        end_time=values["end_time"],
        language=values.get("language") or "",
        message_count=int(values.get("message_count") or 0),
        completed=values.get("completed") in (_YES, "Si", "Yes", True),
        final_state=values.get("final_state") or "",
        appointment_id=values.get("appointment_id") or None,
    )


def load_workbook_data(path: Path) -> tuple[list[Appointment], list[ConversationSummary]]:
    """
    Read appointments and conversation summaries from ``path``. Blocking.

    Unreadable rows are skipped with a warning; a missing or corrupt file
    raises and is handled by the caller.
    """
    wb = load_workbook(path, read_only=True)
    appointments: list[Appointment] = []
    conversations: list[ConversationSummary] = []
    try:
        if APPOINTMENTS_SHEET in wb.sheetnames:
            for number, row in enumerate(wb[APPOINTMENTS_SHEET].iter_rows(min_row=2, values_only=True), start=2):
                try:
                    appointment = _row_to_appointment(row)
                except (ValidationError, ValueError, TypeError) as exc:
                    logger.warning("Skipping appointment row %d: %s", number, exc)
                    continue
                if appointment is not None:
                    appointments.append(appointment)

        if CONVERSATIONS_SHEET in wb.sheetnames:
            for number, row in enumerate(wb[CONVERSATIONS_SHEET].iter_rows(min_row=2, values_only=True), start=2):
                try:
                    summary = _row_to_conversation(row)
                except (ValidationError, ValueError, TypeError) as exc:
                    logger.warning("Skipping conversation row %d: %s", number, exc)
                    continue
                if summary is not None:
                    conversations.append(summary)
    finally:
        wb.close()
    return appointments, conversations
