"""
Installation technician pool.

Static configuration consulted when a booking is confirmed. Technicians
are never mutated at runtime; assignment is a uniform random pick among
the active ones, with no load balancing or zone matching.
"""

import logging
import random
from dataclasses import asdict, dataclass
from typing import Optional, TypedDict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Technician:
    id: str
    name: str
    zone: str
    active: bool = True


class TechnicianInfo(TypedDict):
    id: str
    name: str
    zone: str
    active: bool


class NoActiveTechnicianError(RuntimeError):
    """Raised when assignment is attempted with an empty active pool."""


TECHNICIANS: tuple[Technician, ...] = (
    Technician("CLARITY-01", "Miguel García", "PLZ 29xxx"),
    Technician("CLARITY-02", "Anna Schmidt", "PLZ 30xxx"),
    Technician("CLARITY-03", "José Rodriguez", "PLZ 31xxx"),
    Technician("CLARITY-04", "Petra Müller", "PLZ 32xxx"),
    Technician("CLARITY-05", "Carlos López", "PLZ 33xxx"),
    Technician("CLARITY-06", "Hans Weber", "PLZ 34xxx"),
    Technician("CLARITY-07", "Sofia Fernández", "PLZ 29227"),
)


def get_active_technicians(
    technicians: tuple[Technician, ...] = TECHNICIANS,
) -> list[Technician]:
    return [t for t in technicians if t.active]


def get_technician(
    technician_id: str, technicians: tuple[Technician, ...] = TECHNICIANS
) -> Optional[Technician]:
    for technician in technicians:
        if technician.id == technician_id:
            return technician
    return None


def get_technician_zone(
    technician_id: str, technicians: tuple[Technician, ...] = TECHNICIANS
) -> str:
    """Zone served by a technician, or ``"N/A"`` for an unknown id."""
    technician = get_technician(technician_id, technicians)
    return technician.zone if technician else "N/A"


def assign_technician(
    technicians: tuple[Technician, ...] = TECHNICIANS,
    rng: Optional[random.Random] = None,
) -> Technician:
    """Pick an active technician uniformly at random."""
    active = get_active_technicians(technicians)
    if not active:
        raise NoActiveTechnicianError("No active technician available for assignment")
    chosen = (rng or random).choice(active)
    logger.debug("Assigned technician %s (%s)", chosen.id, chosen.zone)
    return chosen


def list_active_technicians(
    technicians: tuple[Technician, ...] = TECHNICIANS,
) -> list[TechnicianInfo]:
    """Active technicians as plain dicts for the listing endpoint."""
    return [TechnicianInfo(**asdict(t)) for t in get_active_technicians(technicians)]
