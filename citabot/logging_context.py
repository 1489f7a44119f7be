"""Session-tagged logging.

Every log line carries the id of the conversation being processed, so one
customer's path through the state machine, the dispatcher and the data
layer can be grepped out of a busy log:

    2025-09-15 08:00:01 [citabot.conversation.manager] [web-abc123] INFO: Session web-abc123 completed

``ConversationManager.process_message`` sets the id; records logged
outside a conversation show ``-``.
"""

import logging
from contextvars import ContextVar

LOG_FORMAT = "%(asctime)s [%(name)s] [%(session_id)s] %(levelname)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_session_id: ContextVar[str] = ContextVar("session_id", default="-")


def set_session_id(session_id: str) -> None:
    _session_id.set(session_id)


def get_session_id() -> str:
    return _session_id.get()


class SessionIdFilter(logging.Filter):
    """Stamps ``session_id`` onto records that do not carry one yet."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "session_id"):
            record.session_id = _session_id.get()  # type: ignore[attr-defined]
        return True


def _attach(filterer: logging.Filterer) -> None:
    if not any(isinstance(f, SessionIdFilter) for f in filterer.filters):
        filterer.addFilter(SessionIdFilter())


def configure_logging(level: int = logging.INFO) -> None:
    """Configure the root logger with the session-tagged format.

    The filter sits on the root handlers, so records from any logger
    (including third-party ones propagating to root) can be formatted
    with ``%(session_id)s``.
    """
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in logging.getLogger().handlers:
        _attach(handler)


def get_session_logger(name: str) -> logging.Logger:
    """Return a logger that stamps the session id onto records as they are created."""
    logger = logging.getLogger(name)
    _attach(logger)
    return logger
