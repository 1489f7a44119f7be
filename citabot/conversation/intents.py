"""
Keyword-based intent classification.

Customers are expected to answer with the offered quick-reply labels, so a
case-insensitive substring match against small per-language word lists is
enough. The state machine only talks to the ``IntentClassifier`` protocol,
so a different backend can be plugged into ``ConversationManager``.
"""

from enum import Enum
from typing import Optional, Protocol


class Intent(str, Enum):
    AFFIRMATIVE = "affirmative"
    NEGATIVE = "negative"
    UNKNOWN = "unknown"


class ManagementAction(str, Enum):
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    STATUS = "status"
    COMPLETE = "complete"


class IntentClassifier(Protocol):
    def classify_response(self, text: str, language: str) -> Intent: ...

    def classify_management(self, text: str, language: str) -> Optional[ManagementAction]: ...

    def is_consent(self, text: str) -> bool: ...

    def is_data_deletion(self, text: str) -> bool: ...


POSITIVE_WORDS: dict[str, tuple[str, ...]] = {
    "es": ("sí", "si", "yes", "acepto", "confirmo"),
    "de": ("ja", "yes", "bestätigen"),
    "en": ("yes", "confirm", "accept"),
}

NEGATIVE_WORDS: dict[str, tuple[str, ...]] = {
    "es": ("no", "cancelar", "rechazar", "otra"),
    "de": ("nein", "abbrechen", "andere"),
    "en": ("no", "cancel", "reject", "other"),
}

# Checked in declaration order; first match wins
MANAGEMENT_WORDS: dict[str, dict[ManagementAction, tuple[str, ...]]] = {
    "es": {
        ManagementAction.RESCHEDULE: ("cambiar", "reprogramar", "fecha", "hora"),
        ManagementAction.CANCEL: ("cancelar", "eliminar"),
        ManagementAction.STATUS: ("estado", "ver", "consultar"),
        ManagementAction.COMPLETE: ("completar", "finalizar", "terminar"),
    },
    "de": {
        ManagementAction.RESCHEDULE: ("ändern", "datum", "uhrzeit"),
        ManagementAction.CANCEL: ("stornieren", "abbrechen"),
        ManagementAction.STATUS: ("status", "prüfen"),
        ManagementAction.COMPLETE: ("beenden", "fertig"),
    },
    "en": {
        ManagementAction.RESCHEDULE: ("change", "reschedule", "date", "time"),
        ManagementAction.CANCEL: ("cancel", "delete"),
        ManagementAction.STATUS: ("status", "check"),
        ManagementAction.COMPLETE: ("complete", "finish"),
    },
}

CONSENT_WORDS = ("acepto", "ja", "yes")
DELETION_PREFIXES = ("/borrar", "/daten_loeschen", "/delete")
RESTART_COMMAND = "/start"


def is_restart(text: str) -> bool:
    return text.strip().lower() == RESTART_COMMAND


class KeywordIntentClassifier:
    """Substring matcher over fixed word lists, defaulting to Spanish lists."""

    def __init__(self, fallback_language: str = "es") -> None:
        self._fallback = fallback_language

    def _words(self, table: dict, language: str):
        return table.get(language) or table[self._fallback]

    def classify_response(self, text: str, language: str) -> Intent:
        lowered = text.lower()
        if any(word in lowered for word in self._words(POSITIVE_WORDS, language)):
            return Intent.AFFIRMATIVE
        if any(word in lowered for word in self._words(NEGATIVE_WORDS, language)):
            return Intent.NEGATIVE
        return Intent.UNKNOWN

    def classify_management(self, text: str, language: str) -> Optional[ManagementAction]:
        lowered = text.lower()
        for action, keywords in self._words(MANAGEMENT_WORDS, language).items():
            if any(keyword in lowered for keyword in keywords):
                return action
        return None

    def is_consent(self, text: str) -> bool:
        lowered = text.lower()
        return any(word in lowered for word in CONSENT_WORDS)

    def is_data_deletion(self, text: str) -> bool:
        return text.strip().lower().startswith(DELETION_PREFIXES)
