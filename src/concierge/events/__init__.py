from concierge.events.bus import ConciergeEvent, EventBus, Handler

__all__ = ["ConciergeEvent", "EventBus", "Handler"]
