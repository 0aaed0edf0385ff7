"""Single-subscriber event emission used between providers and services."""

from typing import Any, Callable, Dict, Optional
import structlog


logger = structlog.get_logger()


class EventEmitter:
    """
    Ordered event delivery with at most one subscriber per event.

    Subscribing again to the same event replaces the previous handler, the
    same way assigning ``onresult`` on a recognizer would.
    """

    def __init__(self, *event_names: str):
        self._handlers: Dict[str, Optional[Callable[..., Any]]] = {
            name: None for name in event_names
        }

    def _check(self, name: str) -> None:
        if name not in self._handlers:
            raise ValueError(f"Unknown event: {name}")

    def on(self, name: str, handler: Callable[..., Any]) -> None:
        """Subscribe ``handler`` to ``name``, replacing any existing subscriber."""
        self._check(name)
        if self._handlers[name] is not None:
            logger.debug("Replacing event subscriber", event_name=name)
        self._handlers[name] = handler

    def off(self, name: str) -> None:
        """Remove the subscriber for ``name``."""
        self._check(name)
        self._handlers[name] = None

    def has_subscriber(self, name: str) -> bool:
        self._check(name)
        return self._handlers[name] is not None

    def emit(self, name: str, *args: Any) -> bool:
        """Deliver an event. Returns False when nobody is subscribed."""
        self._check(name)
        handler = self._handlers[name]
        if handler is None:
            return False
        handler(*args)
        return True

    @property
    def event_names(self) -> tuple:
        return tuple(self._handlers)
