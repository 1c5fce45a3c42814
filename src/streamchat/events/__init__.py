"""Event notification for streamchat."""

from streamchat.events.bus import EventBus

__all__ = ["EventBus"]
