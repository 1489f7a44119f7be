"""Shared utilities used across the booking assistant."""

import re
from datetime import datetime
from pathlib import Path
from typing import Any


def normalize_phone(value: Any) -> str:
    """Bring a customer phone number into its stored form.

    Separators are dropped and an ``00`` international prefix becomes ``+``.
    Empty input (including ``None``) gives an empty string.

    Examples:
        >>> normalize_phone("0151 234 5678")
        '01512345678'
        >>> normalize_phone("0049 (151) 234-5678")
        '+491512345678'
    """
    if value is None:
        return ""
    text = str(value).strip()
    digits = re.sub(r"\D", "", text)
    if text.startswith("00"):
        digits = digits[2:]
    elif not text.startswith("+"):
        return digits
    return f"+{digits}" if digits else ""


def compact_timestamp(moment: datetime) -> str:
    """Render a moment as ``YYYY-MMDD-HHmm`` (used in appointment ids).

    Examples:
        >>> compact_timestamp(datetime(2025, 9, 16, 13, 5))
        '2025-0916-1305'
    """
    return moment.strftime("%Y-%m%d-%H%M")


def backup_path_for(path: Path, moment: datetime) -> Path:
    """Build the sortable, timestamp-suffixed backup path for a data file.

    Examples:
        >>> backup_path_for(Path("data/appointments.xlsx"), datetime(2025, 9, 16, 13, 5, 9)).name
        'appointments_backup_2025-09-16_13-05-09.xlsx'
    """
    stamp = moment.strftime("%Y-%m-%d_%H-%M-%S")
    return path.with_name(f"{path.stem}_backup_{stamp}{path.suffix}")
