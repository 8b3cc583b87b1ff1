"""Named-event publish/subscribe with synchronous delivery."""

from typing import Any, Callable, Dict, List


class EventEmitter:
    """
    Dispatches named events to subscribed handlers.

    Handlers run synchronously, in subscription order, and receive the
    emitter as their first argument followed by the event payload.
    """

    def __init__(self):
        # Event name -> handlers
        self._handlers: Dict[str, List[Callable]] = {}

    def on(self, event_name: str, handler: Callable) -> Callable:
        """Subscribe a handler. Returns the handler, so this works as a decorator."""
        self._handlers.setdefault(event_name, []).append(handler)
        return handler

    def once(self, event_name: str, handler: Callable) -> Callable:
        """Subscribe a handler that is removed after its first call."""

        def wrapper(*args: Any) -> Any:
            self.off(event_name, wrapper)
            return handler(*args)

        return self.on(event_name, wrapper)

    def off(self, event_name: str, handler: Callable) -> None:
        """Unsubscribe a handler. Unknown handlers are ignored."""
        handlers = self._handlers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def listeners(self, event_name: str) -> List[Callable]:
        return list(self._handlers.get(event_name, []))

    def emit(self, event_name: str, *payload: Any) -> int:
        """Deliver an event to every handler. Returns the number of handlers called."""
        handlers = list(self._handlers.get(event_name, []))
        for handler in handlers:
            handler(self, *payload)
        return len(handlers)
