"""Observable call state owned by the turn coordinator."""

from dataclasses import dataclass, replace, fields
from enum import Enum
from typing import Callable, List, Optional
import structlog


logger = structlog.get_logger()


class CallStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


@dataclass(frozen=True)
class CallState:
    """Snapshot of everything the presentation layer renders."""

    status: CallStatus = CallStatus.IDLE
    call_active: bool = False
    listening: bool = False
    interim_transcript: str = ""
    error: Optional[str] = None
    text_only: bool = False


Listener = Callable[[CallState, CallState], None]


class StateStore:
    """
    Holds the current CallState and notifies subscribers on change.

    Only the coordinator calls ``update``; observers subscribe and read.
    """

    def __init__(self, initial: Optional[CallState] = None):
        self._state = initial or CallState()
        self._listeners: List[Listener] = []
        self._field_names = {f.name for f in fields(CallState)}

    @property
    def state(self) -> CallState:
        return self._state

    def update(self, **changes) -> CallState:
        unknown = set(changes) - self._field_names
        if unknown:
            raise ValueError(f"Unknown state fields: {sorted(unknown)}")

        old = self._state
        new = replace(old, **changes)
        if new == old:
            return old

        self._state = new
        if new.status != old.status:
            logger.debug(
                "Status changed", old=old.status.value, new=new.status.value
            )

        for listener in list(self._listeners):
            try:
                listener(new, old)
            except Exception as e:
                logger.error("State listener error", error=str(e))
        return new

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
