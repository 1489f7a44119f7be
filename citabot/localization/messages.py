"""
Localization table for every bot-facing string.

Lookups resolve ``(key, language)`` and fall back to the default language,
then to a visible ``Missing translation: <key>`` marker. Message texts may
carry ``str.format`` placeholders that callers fill through ``get_message``.
"""

import logging
from typing import Optional

from citabot.config import settings

logger = logging.getLogger(__name__)

LANGUAGE_LABELS: dict[str, str] = {
    "Español": "es",
    "Deutsch": "de",
    "English": "en",
}

# Python weekday (0 = Monday) -> short name
WEEKDAY_ABBREVIATIONS: dict[str, tuple[str, ...]] = {
    "es": ("Lun", "Mar", "Mié", "Jue", "Vie", "Sáb", "Dom"),
    "de": ("Mo", "Di", "Mi", "Do", "Fr", "Sa", "So"),
    "en": ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"),
}

MESSAGES: dict[str, dict[str, str]] = {
    "welcome": {
        "es": "Hola 👋 Tu instalación de fibra está lista. Selecciona tu idioma:",
        "de": "Hallo 👋 Ihre Glasfaser-Installation ist bereit. Bitte wählen Sie Ihre Sprache:",
        "en": "Hello 👋 Your fiber installation is ready. Please select your language:",
    },
    "language_error": {
        "es": "No he reconocido el idioma. Elige una de las opciones:",
        "de": "Die Sprache wurde nicht erkannt. Bitte wählen Sie eine Option:",
        "en": "I did not recognise that language. Please pick one of the options:",
    },
    "consent": {
        "es": "Con tu confirmación aceptas nuestro aviso de privacidad (DSGVO). "
              "Responde **ACEPTO** o escribe **/borrar_datos**.",
        "de": "Mit Ihrer Bestätigung stimmen Sie unseren DSGVO-Hinweisen zu. "
              "Antworten Sie **JA** oder senden Sie **/daten_loeschen**.",
        "en": "By confirming you accept our privacy policy (GDPR). "
              "Reply **YES** or write **/delete_data**.",
    },
    "consent_required": {
        "es": "Para continuar necesitamos tu consentimiento. Responde **ACEPTO** o **/borrar_datos**.",
        "de": "Um fortzufahren benötigen wir Ihre Zustimmung. Antworten Sie **JA** oder **/daten_loeschen**.",
        "en": "We need your consent to continue. Reply **YES** or **/delete_data**.",
    },
    "data_deleted": {
        "es": "🗑 Tus datos de esta conversación han sido eliminados. ¡Hasta pronto!",
        "de": "🗑 Ihre Daten aus diesem Gespräch wurden gelöscht. Auf Wiedersehen!",
        "en": "🗑 Your data from this conversation has been deleted. Goodbye!",
    },
    "choose_slot": {
        "es": "Estos son los horarios disponibles. Toca uno para continuar:",
        "de": "Diese Zeitfenster sind verfügbar. Tippen Sie zur Auswahl:",
        "en": "These time slots are available. Tap one to continue:",
    },
    "no_slots": {
        "es": "Ahora mismo no hay horarios disponibles. Inténtalo más tarde.",
        "de": "Derzeit sind keine Zeitfenster verfügbar. Bitte versuchen Sie es später erneut.",
        "en": "There are no time slots available right now. Please try again later.",
    },
    "invalid_slot": {
        "es": "Ese horario no está en la lista. Elige una de las opciones:",
        "de": "Dieses Zeitfenster ist nicht in der Liste. Bitte wählen Sie eine Option:",
        "en": "That slot is not in the list. Please choose one of the options:",
    },
    "chosen": {
        "es": "Elegiste",
        "de": "Ausgewählt",
        "en": "You chose",
    },
    "confirm_q": {
        "es": "¿Confirmar?",
        "de": "Bestätigen?",
        "en": "Confirm?",
    },
    "confirmation_required": {
        "es": "Responde **Sí** para confirmar u **Otra hora** para elegir otro horario.",
        "de": "Antworten Sie **Ja** zum Bestätigen oder **Andere Zeit** für ein anderes Zeitfenster.",
        "en": "Reply **Yes** to confirm or **Other time** to pick another slot.",
    },
    "select_different_slot": {
        "es": "Sin problema. Elige otro horario:",
        "de": "Kein Problem. Wählen Sie ein anderes Zeitfenster:",
        "en": "No problem. Please choose another slot:",
    },
    "confirmed": {
        "es": "✅ Cita confirmada.",
        "de": "✅ Termin bestätigt.",
        "en": "✅ Appointment confirmed.",
    },
    "reminder_q": {
        "es": "¿Deseas recordatorio?",
        "de": "Erinnerung senden?",
        "en": "Would you like a reminder?",
    },
    "reminder_set": {
        "es": "🔔 Recordatorio configurado.",
        "de": "🔔 Erinnerung eingerichtet.",
        "en": "🔔 Reminder scheduled.",
    },
    "no_reminder": {
        "es": "De acuerdo, sin recordatorio.",
        "de": "In Ordnung, keine Erinnerung.",
        "en": "Alright, no reminder.",
    },
    "management_options": {
        "es": "Puedes *Cambiar*, *Cancelar* o consultar el *Estado* cuando quieras. "
              "Escribe *Finalizar* para terminar.",
        "de": "Sie können jederzeit *Ändern*, *Stornieren* oder den *Status* prüfen. "
              "Schreiben Sie *Beenden* zum Abschließen.",
        "en": "You can *Change*, *Cancel* or *Check status* at any time. "
              "Write *Finish* to end.",
    },
    "management_help": {
        "es": "No he entendido. ¿Qué deseas hacer con tu cita?",
        "de": "Das habe ich nicht verstanden. Was möchten Sie mit Ihrem Termin tun?",
        "en": "I did not understand. What would you like to do with your appointment?",
    },
    "reschedule_options": {
        "es": "¿Qué nuevo horario te viene bien?",
        "de": "Welches neue Zeitfenster passt Ihnen?",
        "en": "Which new slot suits you?",
    },
    "reschedule_done": {
        "es": "✅ Cita reprogramada: {slot}",
        "de": "✅ Termin verschoben: {slot}",
        "en": "✅ Appointment rescheduled: {slot}",
    },
    "cancel_policy": {
        "es": "Las cancelaciones son gratuitas hasta 24 horas antes de la cita.",
        "de": "Stornierungen sind bis 24 Stunden vor dem Termin kostenlos.",
        "en": "Cancellations are free of charge up to 24 hours before the appointment.",
    },
    "cancel_confirm": {
        "es": "¿Seguro que deseas cancelar la cita?",
        "de": "Möchten Sie den Termin wirklich stornieren?",
        "en": "Are you sure you want to cancel the appointment?",
    },
    "cancel_done": {
        "es": "❌ Cita {appointment_id} cancelada.",
        "de": "❌ Termin {appointment_id} storniert.",
        "en": "❌ Appointment {appointment_id} cancelled.",
    },
    "cancel_aborted": {
        "es": "Perfecto, tu cita se mantiene.",
        "de": "Gut, Ihr Termin bleibt bestehen.",
        "en": "Great, your appointment stays as it is.",
    },
    "already_cancelled": {
        "es": "Esta cita ya está cancelada.",
        "de": "Dieser Termin ist bereits storniert.",
        "en": "This appointment is already cancelled.",
    },
    "status_info": {
        "es": "📋 Estado de la cita:",
        "de": "📋 Terminstatus:",
        "en": "📋 Appointment status:",
    },
    "status_confirmed": {
        "es": "Confirmada",
        "de": "Bestätigt",
        "en": "Confirmed",
    },
    "status_cancelled": {
        "es": "Cancelada",
        "de": "Storniert",
        "en": "Cancelled",
    },
    "session_complete": {
        "es": "¡Gracias! Tu sesión ha finalizado. Escribe /start para empezar de nuevo.",
        "de": "Vielen Dank! Ihre Sitzung ist beendet. Schreiben Sie /start, um neu zu beginnen.",
        "en": "Thank you! Your session has ended. Write /start to begin again.",
    },
    "session_timeout": {
        "es": "⌛ Tu sesión ha caducado por inactividad. Escribe /start para empezar de nuevo.",
        "de": "⌛ Ihre Sitzung ist wegen Inaktivität abgelaufen. Schreiben Sie /start, um neu zu beginnen.",
        "en": "⌛ Your session expired due to inactivity. Write /start to begin again.",
    },
    "error_occurred": {
        "es": "⚠️ Algo salió mal. Por favor, inténtalo de nuevo.",
        "de": "⚠️ Etwas ist schiefgelaufen. Bitte versuchen Sie es erneut.",
        "en": "⚠️ Something went wrong. Please try again.",
    },
    "max_retries_exceeded": {
        "es": "Lo sentimos, no hemos podido completar tu solicitud. Un agente te contactará.",
        "de": "Leider konnten wir Ihre Anfrage nicht abschließen. Ein Mitarbeiter meldet sich bei Ihnen.",
        "en": "Sorry, we could not complete your request. An agent will contact you.",
    },
    "technician_label": {
        "es": "Técnico",
        "de": "Techniker",
        "en": "Technician",
    },
    "zone_label": {
        "es": "Zona",
        "de": "Gebiet",
        "en": "Zone",
    },
    "invite_summary": {
        "es": "Instalación de fibra CLARITY",
        "de": "Glasfaser-Installation CLARITY",
        "en": "CLARITY fiber installation",
    },
}

QUICK_REPLIES: dict[str, dict[str, list[str]]] = {
    "language": {
        "es": list(LANGUAGE_LABELS),
        "de": list(LANGUAGE_LABELS),
        "en": list(LANGUAGE_LABELS),
    },
    "consent": {
        "es": ["ACEPTO", "/borrar_datos"],
        "de": ["JA", "/daten_loeschen"],
        "en": ["YES", "/delete_data"],
    },
    "confirmation": {
        "es": ["Sí", "Otra hora", "Cancelar"],
        "de": ["Ja", "Andere Zeit", "Abbrechen"],
        "en": ["Yes", "Other time", "Cancel"],
    },
    "reminder": {
        "es": ["Sí 🔔", "No"],
        "de": ["Ja 🔔", "Nein"],
        "en": ["Yes 🔔", "No"],
    },
    "management": {
        "es": ["Cambiar fecha", "Cambiar hora", "Cancelar", "Ver estado", "Finalizar"],
        "de": ["Datum ändern", "Uhrzeit ändern", "Stornieren", "Status prüfen", "Beenden"],
        "en": ["Change date", "Change time", "Cancel", "Check status", "Finish"],
    },
    "cancel_confirm": {
        "es": ["Sí, cancelar", "No"],
        "de": ["Ja, stornieren", "Nein"],
        "en": ["Yes, cancel", "No"],
    },
}


def get_message(key: str, language: str, default_language: Optional[str] = None, **values: object) -> str:
    """
    Resolve a localized message.

    Falls back to ``default_language`` (the configured default when omitted)
    and finally to ``"Missing translation: <key>"``.
    """
    default_language = default_language or settings.bot.default_language
    translations = MESSAGES.get(key, {})
    text = translations.get(language) or translations.get(default_language)
    if text is None:
        logger.warning("Missing translation for key '%s' (%s)", key, language)
        return f"Missing translation: {key}"
    return text.format(**values) if values else text


def get_quick_replies(key: str, language: str, default_language: Optional[str] = None) -> list[str]:
    """Resolve a quick-reply set, falling back to the default language, then to no options."""
    default_language = default_language or settings.bot.default_language
    options = QUICK_REPLIES.get(key, {})
    return list(options.get(language) or options.get(default_language) or [])


def parse_language_label(text: str) -> Optional[str]:
    """Map a language label (or bare language code) to its code."""
    cleaned = text.strip()
    for label, code in LANGUAGE_LABELS.items():
        if cleaned.lower() in (label.lower(), code):
            return code
    return None
