"""
Conversation orchestrator.

``ConversationManager.process_message`` is the single entry point the
transport layer calls. It fetches or creates the session, checks for
inactivity timeout, dispatches to the handler for the session's current
state, applies the handler's outcome through the state machine, and returns
a ``BotResponse`` carrying the typed domain events the caller should
dispatch. Handler faults never escape: they become failure outcomes and the
retry policy decides between re-prompting and the terminal ERROR state.
"""

import logging
import random
from datetime import datetime
from typing import Any, Callable, Optional

from citabot.config import BotConfig, SchedulingConfig, settings
from citabot.conversation.intents import (
    Intent,
    IntentClassifier,
    KeywordIntentClassifier,
    ManagementAction,
    is_restart,
)
from citabot.conversation.session_store import SessionStats, SessionStore
from citabot.conversation.state_machine import (
    ConversationStateMachine,
    HandlerOutcome,
    InvalidTransitionError,
    TransitionTrigger,
)
from citabot.localization.messages import (
    get_message,
    get_quick_replies,
    parse_language_label,
)
from citabot.localization.templates import (
    find_slot_by_display,
    format_appointment_confirmation,
    format_confirmation_message,
    format_slot,
    format_slots,
    format_status_message,
)
from citabot.logging_context import get_session_logger, set_session_id
from citabot.schemas.appointment_schema import Slot
from citabot.schemas.conversation_schema import (
    BotResponse,
    ConversationState,
    Direction,
    DomainEvent,
    EventType,
    Session,
    to_jsonable,
    utcnow,
)
from citabot.tools.availability import get_available_slots
from citabot.tools.booking import AppointmentIdGenerator
from citabot.tools.calendar_invite import build_ics
from citabot.tools.technicians import (
    TECHNICIANS,
    NoActiveTechnicianError,
    Technician,
    assign_technician,
    get_technician_zone,
)

logger = get_session_logger(__name__)

Handler = Callable[[Session, str, dict[str, Any]], HandlerOutcome]


class InvalidMessageError(ValueError):
    """Raised for a missing session id or an empty message."""


class ConversationManager:
    """
    Drives booking conversations through the state machine.

    Collaborators are injected so tests can pin the clock, the random
    source and the technician pool.
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        bot_config: Optional[BotConfig] = None,
        scheduling: Optional[SchedulingConfig] = None,
        classifier: Optional[IntentClassifier] = None,
        technicians: tuple[Technician, ...] = TECHNICIANS,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = bot_config or settings.bot
        self._scheduling = scheduling or settings.scheduling
        self._store = store or SessionStore(self._config)
        self._classifier = classifier or KeywordIntentClassifier(self._config.default_language)
        self._technicians = technicians
        self._rng = rng or random.Random()
        self._clock = clock or utcnow
        self._machine = ConversationStateMachine()
        self._ids = AppointmentIdGenerator(self._scheduling.tzinfo, self._rng)
        self._unannounced: set[str] = set()
        self._handlers: dict[ConversationState, Handler] = {
            ConversationState.INIT: self._handle_init,
            ConversationState.LANGUAGE_SELECTION: self._handle_language_selection,
            ConversationState.CONSENT: self._handle_consent,
            ConversationState.SLOT_SELECTION: self._handle_slot_selection,
            ConversationState.CONFIRMATION: self._handle_confirmation,
            ConversationState.REMINDER_SETUP: self._handle_reminder_setup,
            ConversationState.MANAGEMENT: self._handle_management,
            ConversationState.COMPLETED: self._handle_completed,
            ConversationState.ERROR: self._handle_error,
        }

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def id_generator(self) -> AppointmentIdGenerator:
        return self._ids

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process_message(
        self,
        session_id: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> BotResponse:
        """
        Process one inbound message and return the bot's reply.

        Messages for the same session are handled one at a time, in arrival
        order, under the session's lock.

        Raises:
            InvalidMessageError: If ``session_id`` or ``message`` is empty.
        """
        if not isinstance(session_id, str) or not session_id.strip():
            raise InvalidMessageError("session_id is required")
        if not isinstance(message, str) or not message.strip():
            raise InvalidMessageError("message is required")

        async with self._store.lock_for(session_id):
            set_session_id(session_id)
            return self._process_locked(session_id, message, dict(metadata or {}))

    def get_session(self, session_id: str, create_if_missing: bool = True) -> Optional[Session]:
        if not create_if_missing:
            return self._store.get(session_id)
        session, created = self._store.get_or_create(session_id, self._clock())
        if created:
            self._unannounced.add(session_id)
        return session

    def get_stats(self) -> SessionStats:
        return self._store.stats()

    def cleanup_expired_sessions(self, now: Optional[datetime] = None) -> list[DomainEvent]:
        """Evict idle sessions.

        Returns one ``session_expired`` event per evicted session that has
        not already been summarized; finished conversations are evicted
        silently so their saved summary stands.
        """
        now = now or self._clock()
        events = []
        for session in self._store.sweep_expired(now):
            self._unannounced.discard(session.id)
            events.extend(self._summary_events(
                EventType.SESSION_EXPIRED, session, now, session.state
            ))
        return events

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def _process_locked(self, session_id: str, message: str, metadata: dict[str, Any]) -> BotResponse:
        now = self._clock()
        session, created = self._store.get_or_create(session_id, now)
        events: list[DomainEvent] = []
        if created or session_id in self._unannounced:
            self._unannounced.discard(session_id)
            events.append(self._event(EventType.SESSION_CREATED, session, {
                "language": session.language,
                "start_time": session.start_time.isoformat(),
            }))

        timed_out = not created and self._store.is_expired(session, now)
        session.last_activity = now

        if session.state != ConversationState.INIT:
            session.record(Direction.USER, message, metadata, timestamp=now)

        if timed_out:
            logger.info("Session %s timed out in state %s", session.id, session.state.value)
            outcome = self._handle_timeout(session, now)
        else:
            outcome = self._run_handler(session, message, metadata)

        if outcome.success:
            try:
                self._machine.transition(session, outcome.trigger)
            except InvalidTransitionError as exc:
                logger.error("Handler produced an invalid transition: %s", exc)
                outcome = HandlerOutcome.fail(str(exc))

        if outcome.success:
            events.extend(outcome.events)
            bot, quick = outcome.bot, outcome.quick
        else:
            bot, quick = self._apply_retry_policy(session, outcome, events, now)

        session.record(
            Direction.BOT, bot,
            {"state": session.state.value, "quick": list(quick)},
            timestamp=self._clock(),
        )
        events.append(self._event(EventType.MESSAGE_PROCESSED, session, {
            "message": message,
            "response": bot,
            "state": session.state.value,
        }))
        return BotResponse(
            bot=bot,
            quick=quick,
            state=session.state,
            metadata=outcome.metadata if outcome.success else {},
            events=events,
        )

    def _run_handler(self, session: Session, message: str, metadata: dict[str, Any]) -> HandlerOutcome:
        try:
            if is_restart(message) and session.state != ConversationState.ERROR:
                return self._handle_restart(session, message, metadata)
            return self._handlers[session.state](session, message, metadata)
        except Exception as exc:
            logger.exception("Handler for state %s failed", session.state.value)
            return HandlerOutcome.fail(f"{type(exc).__name__}: {exc}")

    def _apply_retry_policy(
        self,
        session: Session,
        outcome: HandlerOutcome,
        events: list[DomainEvent],
        now: datetime,
    ) -> tuple[str, list[str]]:
        session.retry_count += 1
        events.append(self._event(EventType.ERROR, session, {
            "reason": outcome.reason,
            "retry_count": session.retry_count,
        }))

        if session.retry_count >= self._config.max_retries:
            self._machine.transition(session, TransitionTrigger.MAX_RETRIES)
            logger.error(
                "Session %s failed after %d retries: %s",
                session.id, session.retry_count, outcome.reason,
            )
            events.extend(self._summary_events(
                EventType.SESSION_FAILED, session, now, session.state, reason=outcome.reason
            ))
            return get_message("max_retries_exceeded", session.language), []

        self._machine.transition(session, TransitionTrigger.HANDLER_FAILED)
        logger.warning(
            "Session %s retry %d/%d: %s",
            session.id, session.retry_count, self._config.max_retries, outcome.reason,
        )
        return get_message("error_occurred", session.language), session.last_quick_replies()

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    def _handle_init(self, session: Session, message: str, metadata: dict[str, Any]) -> HandlerOutcome:
        return HandlerOutcome.ok(
            TransitionTrigger.START,
            get_message("welcome", session.language),
            get_quick_replies("language", session.language),
        )

    def _handle_restart(self, session: Session, message: str, metadata: dict[str, Any]) -> HandlerOutcome:
        logger.info("Session %s restarted from %s", session.id, session.state.value)
        session.context.clear()
        session.completed = False
        session.summarized = False
        return self._handle_init(session, message, metadata)

    def _handle_language_selection(
        self, session: Session, message: str, metadata: dict[str, Any]
    ) -> HandlerOutcome:
        language = parse_language_label(message)
        if language is None or language not in self._config.supported_languages:
            return HandlerOutcome.ok(
                TransitionTrigger.LANGUAGE_UNRECOGNIZED,
                get_message("language_error", session.language),
                get_quick_replies("language", session.language),
            )
        session.language = language
        return HandlerOutcome.ok(
            TransitionTrigger.LANGUAGE_CHOSEN,
            get_message("consent", language),
            get_quick_replies("consent", language),
        )

    def _handle_consent(self, session: Session, message: str, metadata: dict[str, Any]) -> HandlerOutcome:
        if self._classifier.is_data_deletion(message):
            return self._handle_data_deletion(session)

        if not self._classifier.is_consent(message):
            return HandlerOutcome.ok(
                TransitionTrigger.CONSENT_MISSING,
                get_message("consent_required", session.language),
                get_quick_replies("consent", session.language),
            )

        session.context["consented"] = True
        slots = self._refresh_slots(session)
        key = "choose_slot" if slots else "no_slots"
        return HandlerOutcome.ok(
            TransitionTrigger.CONSENT_GIVEN,
            get_message(key, session.language),
            self._slot_labels(session, slots),
        )

    def _handle_data_deletion(self, session: Session) -> HandlerOutcome:
        logger.info("Session %s requested data deletion", session.id)
        session.context.clear()
        session.message_history.clear()
        session.completed = True
        session.summarized = True
        return HandlerOutcome.ok(
            TransitionTrigger.DATA_DELETION,
            get_message("data_deleted", session.language),
        )

    def _handle_slot_selection(
        self, session: Session, message: str, metadata: dict[str, Any]
    ) -> HandlerOutcome:
        slots = session.context.get("available_slots") or self._refresh_slots(session)
        slot = find_slot_by_display(message, slots, session.language, self._scheduling.tzinfo)
        if slot is None:
            return HandlerOutcome.ok(
                TransitionTrigger.SLOT_UNMATCHED,
                get_message("invalid_slot" if slots else "no_slots", session.language),
                self._slot_labels(session, slots),
            )

        session.context["selected_slot"] = slot
        return HandlerOutcome.ok(
            TransitionTrigger.SLOT_MATCHED,
            format_confirmation_message(slot, session.language, self._scheduling.tzinfo),
            get_quick_replies("confirmation", session.language),
        )

    def _handle_confirmation(
        self, session: Session, message: str, metadata: dict[str, Any]
    ) -> HandlerOutcome:
        slot: Optional[Slot] = session.context.get("selected_slot")
        if slot is None:
            return HandlerOutcome.fail("No slot selected before confirmation")

        intent = self._classifier.classify_response(message, session.language)
        if intent == Intent.AFFIRMATIVE:
            return self._confirm_booking(session, slot)
        if intent == Intent.NEGATIVE:
            slots = session.context.get("available_slots") or []
            return HandlerOutcome.ok(
                TransitionTrigger.CALLER_DECLINED,
                get_message("select_different_slot", session.language),
                self._slot_labels(session, slots),
            )
        return HandlerOutcome.ok(
            TransitionTrigger.CONFIRMATION_UNCLEAR,
            get_message("confirmation_required", session.language),
            get_quick_replies("confirmation", session.language),
        )

    def _confirm_booking(self, session: Session, slot: Slot) -> HandlerOutcome:
        try:
            technician = assign_technician(self._technicians, self._rng)
        except NoActiveTechnicianError as exc:
            return HandlerOutcome.fail(str(exc))

        now = self._clock()
        appointment_id = self._ids.next_id(now)
        session.context.update(
            appointment_id=appointment_id,
            technician=technician.id,
            confirmed=True,
        )
        tz = self._scheduling.tzinfo
        invite = build_ics(
            appointment_id,
            slot.start,
            slot.end,
            summary=get_message("invite_summary", session.language),
            location=technician.zone,
            description=(
                f"ID: {appointment_id}\n"
                f"{get_message('technician_label', session.language)}: {technician.id}"
            ),
            stamp=now,
        )
        logger.info(
            "Appointment %s confirmed for %s with %s",
            appointment_id, format_slot(slot, "en", tz), technician.id,
        )
        event = self._event(EventType.APPOINTMENT_CREATED, session, {
            "id": appointment_id,
            "slot": slot,
            "technician": technician.id,
            "zone": technician.zone,
            "language": session.language,
            "timestamp": now,
        })
        return HandlerOutcome.ok(
            TransitionTrigger.CALLER_CONFIRMED,
            format_appointment_confirmation(slot, technician.id, appointment_id, session.language, tz),
            get_quick_replies("reminder", session.language),
            metadata={"appointment_id": appointment_id, "ics": invite},
            events=[event],
        )

    def _handle_reminder_setup(
        self, session: Session, message: str, metadata: dict[str, Any]
    ) -> HandlerOutcome:
        wants_reminder = (
            self._classifier.classify_response(message, session.language) == Intent.AFFIRMATIVE
        )
        session.context["reminder_enabled"] = wants_reminder

        events = []
        if wants_reminder:
            events.append(self._event(EventType.REMINDER_SCHEDULED, session, {
                "appointment_id": session.context.get("appointment_id"),
                "slot": session.context.get("selected_slot"),
                "language": session.language,
            }))

        key = "reminder_set" if wants_reminder else "no_reminder"
        return HandlerOutcome.ok(
            TransitionTrigger.REMINDER_ANSWERED,
            self._with_management_options(session, get_message(key, session.language)),
            get_quick_replies("management", session.language),
            events=events,
        )

    def _handle_management(
        self, session: Session, message: str, metadata: dict[str, Any]
    ) -> HandlerOutcome:
        pending = session.context.pop("pending_action", None)
        if pending == ManagementAction.RESCHEDULE.value:
            outcome = self._finish_reschedule(session, message)
            if outcome is not None:
                return outcome
        elif pending == ManagementAction.CANCEL.value:
            outcome = self._finish_cancellation(session, message)
            if outcome is not None:
                return outcome

        action = self._classifier.classify_management(message, session.language)
        if action == ManagementAction.RESCHEDULE:
            return self._start_reschedule(session)
        if action == ManagementAction.CANCEL:
            return self._start_cancellation(session)
        if action == ManagementAction.STATUS:
            return self._status_inquiry(session)
        if action == ManagementAction.COMPLETE:
            session.completed = True
            logger.info("Session %s completed", session.id)
            return HandlerOutcome.ok(
                TransitionTrigger.SESSION_FINISHED,
                get_message("session_complete", session.language),
                events=self._summary_events(
                    EventType.SESSION_COMPLETED, session, self._clock(), ConversationState.COMPLETED
                ),
            )

        return self._management_reply(session, get_message("management_help", session.language))

    def _start_reschedule(self, session: Session) -> HandlerOutcome:
        if session.context.get("cancelled"):
            return self._management_reply(session, get_message("already_cancelled", session.language))
        slots = self._refresh_slots(session)
        if not slots:
            return self._management_reply(session, get_message("no_slots", session.language))
        session.context["pending_action"] = ManagementAction.RESCHEDULE.value
        return HandlerOutcome.ok(
            TransitionTrigger.MANAGEMENT_ACTION,
            get_message("reschedule_options", session.language),
            self._slot_labels(session, slots),
        )

    def _finish_reschedule(self, session: Session, message: str) -> Optional[HandlerOutcome]:
        tz = self._scheduling.tzinfo
        slots = session.context.get("available_slots") or []
        slot = find_slot_by_display(message, slots, session.language, tz)
        if slot is None:
            return None

        previous = session.context.get("selected_slot")
        session.context["selected_slot"] = slot
        logger.info("Appointment %s rescheduled", session.context.get("appointment_id"))
        event = self._event(EventType.APPOINTMENT_RESCHEDULED, session, {
            "appointment_id": session.context.get("appointment_id"),
            "slot": slot,
            "previous_slot": previous,
        })
        text = get_message("reschedule_done", session.language, slot=format_slot(slot, session.language, tz))
        return self._management_reply(session, text, events=[event])

    def _start_cancellation(self, session: Session) -> HandlerOutcome:
        if session.context.get("cancelled"):
            return self._management_reply(session, get_message("already_cancelled", session.language))
        session.context["pending_action"] = ManagementAction.CANCEL.value
        return HandlerOutcome.ok(
            TransitionTrigger.MANAGEMENT_ACTION,
            f"{get_message('cancel_policy', session.language)}\n{get_message('cancel_confirm', session.language)}",
            get_quick_replies("cancel_confirm", session.language),
        )

    def _finish_cancellation(self, session: Session, message: str) -> Optional[HandlerOutcome]:
        intent = self._classifier.classify_response(message, session.language)
        if intent == Intent.NEGATIVE:
            return self._management_reply(session, get_message("cancel_aborted", session.language))
        if intent != Intent.AFFIRMATIVE:
            return None

        appointment_id = session.context.get("appointment_id")
        session.context["cancelled"] = True
        logger.info("Appointment %s cancelled by customer", appointment_id)
        event = self._event(EventType.APPOINTMENT_CANCELLED, session, {
            "appointment_id": appointment_id,
            "reason": "customer_request",
        })
        text = get_message("cancel_done", session.language, appointment_id=appointment_id)
        return self._management_reply(session, text, events=[event])

    def _status_inquiry(self, session: Session) -> HandlerOutcome:
        appointment_id = session.context.get("appointment_id")
        slot = session.context.get("selected_slot")
        if not appointment_id or slot is None:
            return HandlerOutcome.fail("Status requested without a booked appointment")
        text = format_status_message(
            slot,
            session.context.get("technician", ""),
            appointment_id,
            bool(session.context.get("cancelled")),
            session.language,
            self._scheduling.tzinfo,
        )
        return self._management_reply(session, text, with_options=False)

    def _handle_completed(self, session: Session, message: str, metadata: dict[str, Any]) -> HandlerOutcome:
        return HandlerOutcome.ok(
            TransitionTrigger.SESSION_FINISHED,
            get_message("session_complete", session.language),
        )

    def _handle_error(self, session: Session, message: str, metadata: dict[str, Any]) -> HandlerOutcome:
        return HandlerOutcome.ok(
            TransitionTrigger.MAX_RETRIES,
            get_message("max_retries_exceeded", session.language),
        )

    def _handle_timeout(self, session: Session, now: datetime) -> HandlerOutcome:
        session.completed = True
        session.context.pop("pending_action", None)
        return HandlerOutcome.ok(
            TransitionTrigger.SESSION_TIMEOUT,
            get_message("session_timeout", session.language),
            events=self._summary_events(
                EventType.SESSION_EXPIRED, session, now, ConversationState.COMPLETED
            ),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _refresh_slots(self, session: Session) -> list[Slot]:
        slots = get_available_slots(
            now=self._clock(),
            limit=self._scheduling.session_slot_limit,
            scheduling=self._scheduling,
        )
        session.context["available_slots"] = slots
        return slots

    def _slot_labels(self, session: Session, slots: list[Slot]) -> list[str]:
        return format_slots(slots, session.language, self._scheduling.tzinfo)

    def _with_management_options(self, session: Session, text: str) -> str:
        return f"{text}\n\n{get_message('management_options', session.language)}"

    def _management_reply(
        self,
        session: Session,
        text: str,
        events: Optional[list[DomainEvent]] = None,
        with_options: bool = True,
    ) -> HandlerOutcome:
        return HandlerOutcome.ok(
            TransitionTrigger.MANAGEMENT_ACTION,
            self._with_management_options(session, text) if with_options else text,
            get_quick_replies("management", session.language),
            events=events,
        )

    @staticmethod
    def _event(event_type: EventType, session: Session, payload: dict[str, Any]) -> DomainEvent:
        return DomainEvent(type=event_type, session_id=session.id, payload=to_jsonable(payload))

    def _summary_events(
        self,
        event_type: EventType,
        session: Session,
        end_time: datetime,
        final_state: ConversationState,
        **extra: Any,
    ) -> list[DomainEvent]:
        """At most one summary-bearing event per run of a conversation."""
        if session.summarized:
            logger.debug("Session %s already summarized; no %s summary", session.id, event_type.value)
            return []
        session.summarized = True
        payload = {**self._summary_payload(session, end_time, final_state), **extra}
        return [self._event(event_type, session, payload)]

    @staticmethod
    def _summary_payload(
        session: Session, end_time: datetime, final_state: ConversationState
    ) -> dict[str, Any]:
        """Fields the data layer needs to write a conversation summary."""
        technician = session.context.get("technician")
        return {
            "start_time": session.start_time,
            "end_time": end_time,
            "language": session.language,
            "message_count": len(session.message_history),
            "completed": session.completed,
            "final_state": final_state.value,
            "appointment_id": session.context.get("appointment_id"),
            "metadata": {
                "technician": technician,
                "zone": get_technician_zone(technician) if technician else None,
                "reminder_enabled": (
                    str(session.context["reminder_enabled"]).lower()
                    if "reminder_enabled" in session.context else None
                ),
            },
        }
