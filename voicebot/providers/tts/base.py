"""Base interface for speech synthesis engines."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from ...utils.events import EventEmitter


@dataclass(frozen=True)
class Voice:
    """A voice offered by a synthesis engine."""
    id: str
    name: str
    lang: str = ""
    default: bool = False


@dataclass
class Utterance:
    """
    A single piece of text to speak.

    Emits ``start()``, ``end()`` and ``error(code)`` on ``events``. Engines
    report cancellation as ``error("interrupted")`` or ``error("canceled")``.
    """
    text: str
    voice: Optional[Voice] = None
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0
    lang: str = "en-US"
    events: EventEmitter = field(
        default_factory=lambda: EventEmitter("start", "end", "error"),
        repr=False,
        compare=False,
    )


class SynthesisEngine(ABC):
    """
    Text-to-speech capability.

    Voices may arrive after construction; engines emit ``voices_changed()`` on
    ``self.events`` when the list changes.
    """

    def __init__(self):
        self.events = EventEmitter("voices_changed")

    @abstractmethod
    def initialize(self) -> None:
        """Prepare the engine. Voice loading may continue in the background."""
        pass

    @abstractmethod
    def list_voices(self) -> List[Voice]:
        """Voices currently known to the engine."""
        pass

    @abstractmethod
    def speak(self, utterance: Utterance) -> None:
        """Start speaking ``utterance``. Completion is reported via its events."""
        pass

    @abstractmethod
    def cancel(self) -> None:
        """Cancel the current utterance, if any."""
        pass

    @abstractmethod
    def pause(self) -> None:
        pass

    @abstractmethod
    def resume(self) -> None:
        pass

    @property
    @abstractmethod
    def speaking(self) -> bool:
        """True while an utterance is being produced."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Shut the engine down and release audio resources."""
        pass

    @abstractmethod
    def get_status(self) -> dict:
        """Get current status of the synthesis engine."""
        pass
