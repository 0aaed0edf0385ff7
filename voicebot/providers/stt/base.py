"""Base interface for speech capture engines."""

from abc import ABC, abstractmethod

from ...utils.events import EventEmitter


class CaptureEngine(ABC):
    """
    Continuous speech-to-text capability.

    Engines emit on ``self.events``:
      - ``result(final: str, interim: str)``
      - ``error(code: str)`` with provider codes such as ``no-speech`` or
        ``not-allowed``
      - ``end()`` whenever a session terminates, including after ``stop()``

    Events may be emitted from any thread.
    """

    def __init__(self, locale: str = "en-US"):
        self.locale = locale
        self.events = EventEmitter("result", "error", "end")

    @abstractmethod
    def start(self) -> None:
        """Begin a capture session."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """End the current capture session."""
        pass

    @abstractmethod
    def get_status(self) -> dict:
        """Get current status of the capture engine."""
        pass
