"""
Appointment identifier generation.

Identifiers are human-readable: ``C-<YYYY-MMDD-HHmm>-<XXXX>`` where the
timestamp is local to the scheduling timezone and ``XXXX`` is four
random uppercase alphanumerics.
"""

import logging
import random
import re
import string
from datetime import datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from citabot.utils import compact_timestamp

logger = logging.getLogger(__name__)

ID_PATTERN = re.compile(r"^C-\d{4}-\d{4}-\d{4}-[A-Z0-9]{4}$")

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
_SUFFIX_LENGTH = 4
_MAX_ATTEMPTS = 50


def generate_appointment_id(
    now: datetime, tz: ZoneInfo, rng: Optional[random.Random] = None
) -> str:
    """Build one appointment id for ``now`` rendered in ``tz``."""
    local = now.astimezone(tz) if now.tzinfo else now
    suffix = "".join((rng or random).choices(_SUFFIX_ALPHABET, k=_SUFFIX_LENGTH))
    return f"C-{compact_timestamp(local)}-{suffix}"


class AppointmentIdGenerator:
    """Issues appointment ids, never repeating one within a run."""

    def __init__(
        self,
        tz: ZoneInfo,
        rng: Optional[random.Random] = None,
        issued: Iterable[str] = (),
    ) -> None:
        self._tz = tz
        self._rng = rng or random.Random()
        self._issued: set[str] = set(issued)

    def reserve(self, appointment_id: str) -> None:
        """Mark an externally known id (e.g. loaded from disk) as taken."""
        self._issued.add(appointment_id)

    def next_id(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(self._tz)
        for _ in range(_MAX_ATTEMPTS):
            candidate = generate_appointment_id(now, self._tz, self._rng)
            if candidate not in self._issued:
                self._issued.add(candidate)
                return candidate
            logger.warning("Appointment id collision on %s, regenerating", candidate)
        raise RuntimeError(f"Could not generate a unique appointment id after {_MAX_ATTEMPTS} attempts")
