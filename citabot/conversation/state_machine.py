"""
Finite state machine for the booking conversation.

Every state change the conversation manager makes goes through
``ConversationStateMachine.transition`` with an explicit trigger, so a
session can never reach a state that is not a declared successor of the
one it was in.

Usage:
    sm = ConversationStateMachine()
    sm.transition(session, TransitionTrigger.START)
    assert session.state == ConversationState.LANGUAGE_SELECTION
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from citabot.schemas.conversation_schema import ConversationState, DomainEvent, Session

logger = logging.getLogger(__name__)


class TransitionTrigger(str, Enum):
    """Events that cause state transitions."""
    START = "start"
    LANGUAGE_CHOSEN = "language_chosen"
    LANGUAGE_UNRECOGNIZED = "language_unrecognized"
    CONSENT_GIVEN = "consent_given"
    CONSENT_MISSING = "consent_missing"
    DATA_DELETION = "data_deletion"
    SLOT_MATCHED = "slot_matched"
    SLOT_UNMATCHED = "slot_unmatched"
    CALLER_CONFIRMED = "caller_confirmed"
    CALLER_DECLINED = "caller_declined"
    CONFIRMATION_UNCLEAR = "confirmation_unclear"
    REMINDER_ANSWERED = "reminder_answered"
    MANAGEMENT_ACTION = "management_action"
    SESSION_FINISHED = "session_finished"
    SESSION_TIMEOUT = "session_timeout"
    HANDLER_FAILED = "handler_failed"
    MAX_RETRIES = "max_retries"


@dataclass(frozen=True)
class Transition:
    """A single valid state transition."""
    from_state: ConversationState
    to_state: ConversationState
    trigger: TransitionTrigger


class InvalidTransitionError(Exception):
    """Raised when a transition is not valid from the current state."""


@dataclass
class HandlerOutcome:
    """
    Result of a state handler.

    A successful outcome names the trigger to apply and the reply to send;
    a failed one only carries the reason, and the manager's retry policy
    decides what the customer sees.
    """
    success: bool
    trigger: Optional[TransitionTrigger] = None
    bot: str = ""
    quick: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    events: list[DomainEvent] = field(default_factory=list)
    reason: str = ""

    @classmethod
    def ok(
        cls,
        trigger: TransitionTrigger,
        bot: str,
        quick: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        events: Optional[list[DomainEvent]] = None,
    ) -> "HandlerOutcome":
        return cls(
            success=True,
            trigger=trigger,
            bot=bot,
            quick=list(quick or []),
            metadata=dict(metadata or {}),
            events=list(events or []),
        )

    @classmethod
    def fail(cls, reason: str) -> "HandlerOutcome":
        return cls(success=False, reason=reason)


_S = ConversationState
_T = TransitionTrigger

_RESTARTABLE = [s for s in ConversationState if s != _S.ERROR]


def _build_transitions() -> list[Transition]:
    transitions = [
        Transition(_S.INIT, _S.LANGUAGE_SELECTION, _T.START),

        # --- Language ---
        Transition(_S.LANGUAGE_SELECTION, _S.CONSENT, _T.LANGUAGE_CHOSEN),
        Transition(_S.LANGUAGE_SELECTION, _S.LANGUAGE_SELECTION, _T.LANGUAGE_UNRECOGNIZED),

        # --- Consent gate ---
        Transition(_S.CONSENT, _S.SLOT_SELECTION, _T.CONSENT_GIVEN),
        Transition(_S.CONSENT, _S.CONSENT, _T.CONSENT_MISSING),
        Transition(_S.CONSENT, _S.COMPLETED, _T.DATA_DELETION),

        # --- Slot choice ---
        Transition(_S.SLOT_SELECTION, _S.CONFIRMATION, _T.SLOT_MATCHED),
        Transition(_S.SLOT_SELECTION, _S.SLOT_SELECTION, _T.SLOT_UNMATCHED),

        # --- Confirmation ---
        Transition(_S.CONFIRMATION, _S.REMINDER_SETUP, _T.CALLER_CONFIRMED),
        Transition(_S.CONFIRMATION, _S.SLOT_SELECTION, _T.CALLER_DECLINED),
        Transition(_S.CONFIRMATION, _S.CONFIRMATION, _T.CONFIRMATION_UNCLEAR),

        # --- Post-booking ---
        Transition(_S.REMINDER_SETUP, _S.MANAGEMENT, _T.REMINDER_ANSWERED),
        Transition(_S.MANAGEMENT, _S.MANAGEMENT, _T.MANAGEMENT_ACTION),
        Transition(_S.MANAGEMENT, _S.COMPLETED, _T.SESSION_FINISHED),

        # --- Terminal ---
        Transition(_S.COMPLETED, _S.COMPLETED, _T.SESSION_FINISHED),
        Transition(_S.ERROR, _S.ERROR, _T.MAX_RETRIES),
    ]
    # /start restarts the flow from anywhere except ERROR
    transitions += [
        Transition(state, _S.LANGUAGE_SELECTION, _T.START)
        for state in _RESTARTABLE if state != _S.INIT
    ]
    transitions += [
        Transition(state, _S.COMPLETED, _T.SESSION_TIMEOUT) for state in ConversationState
    ]
    # Failures below the retry ceiling keep the state; at the ceiling they end in ERROR
    transitions += [
        Transition(state, state, _T.HANDLER_FAILED) for state in ConversationState
    ]
    transitions += [
        Transition(state, _S.ERROR, _T.MAX_RETRIES)
        for state in ConversationState if state != _S.ERROR
    ]
    return transitions


class ConversationStateMachine:
    """
    Stateless transition table applied to sessions.

    The session owns its current state; the machine only validates and
    applies moves, rejecting any undeclared move with the list of
    triggers that would have been accepted.
    """

    TRANSITIONS: list[Transition] = _build_transitions()

    def transition(self, session: Session, trigger: TransitionTrigger) -> ConversationState:
        """
        Move ``session`` along ``trigger``.

        Raises:
            InvalidTransitionError: If no valid transition exists.
        """
        target = self.next_state(session.state, trigger)
        old_state = session.state
        session.state = target
        logger.debug(
            "State transition: %s -> %s (trigger: %s)",
            old_state.value, target.value, trigger.value,
        )
        return target

    def next_state(self, state: ConversationState, trigger: TransitionTrigger) -> ConversationState:
        for t in self.TRANSITIONS:
            if t.from_state == state and t.trigger == trigger:
                return t.to_state
        valid = [t.value for t in self.get_valid_triggers(state)]
        raise InvalidTransitionError(
            f"No valid transition from '{state.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def get_valid_triggers(self, state: ConversationState) -> list[TransitionTrigger]:
        """Return all triggers valid from ``state``."""
        return [t.trigger for t in self.TRANSITIONS if t.from_state == state]

    def successors(self, state: ConversationState) -> set[ConversationState]:
        """Every state reachable from ``state`` in one step."""
        return {t.to_state for t in self.TRANSITIONS if t.from_state == state}

    @staticmethod
    def is_terminal(state: ConversationState) -> bool:
        return state in (ConversationState.COMPLETED, ConversationState.ERROR)
