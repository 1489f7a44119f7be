from citabot.api.app import create_app
from citabot.api.connections import ConnectionManager
from citabot.api.dispatcher import EventDispatcher

__all__ = ["ConnectionManager", "EventDispatcher", "create_app"]
