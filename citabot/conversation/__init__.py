from citabot.conversation.intents import Intent, KeywordIntentClassifier, ManagementAction
from citabot.conversation.manager import ConversationManager, InvalidMessageError
from citabot.conversation.session_store import SessionStore
from citabot.conversation.state_machine import (
    ConversationState,
    ConversationStateMachine,
    HandlerOutcome,
    InvalidTransitionError,
    TransitionTrigger,
)

__all__ = [
    "ConversationManager",
    "ConversationState",
    "ConversationStateMachine",
    "HandlerOutcome",
    "Intent",
    "InvalidMessageError",
    "InvalidTransitionError",
    "KeywordIntentClassifier",
    "ManagementAction",
    "SessionStore",
    "TransitionTrigger",
]
