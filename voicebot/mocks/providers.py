"""
Mock provider implementations for testing the voice bot.

The doubles are driven explicitly from tests (emit a transcript, finish an
utterance, release a pending chat reply) and are also used by ``voicebot
start --mock`` with automatic completion enabled.
"""

import asyncio
import itertools
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional, Sequence, Union

from voicebot.core.cancellation import CancellationToken, run_cancellable
from voicebot.core.errors import PermissionDeniedError, MicrophoneError
from voicebot.providers.chat.base import ChatClient
from voicebot.providers.microphone import MicrophoneAccess
from voicebot.providers.stt.base import CaptureEngine
from voicebot.providers.tts.base import SynthesisEngine, Utterance, Voice
from voicebot.state.conversation_log import Turn


DEFAULT_VOICES = [
    Voice(id="en-us-1", name="Samantha", lang="en-US", default=True),
    Voice(id="te-in-1", name="Telugu Female", lang="te-IN"),
    Voice(id="hi-in-1", name="Lekha", lang="hi-IN"),
]


async def drain(iterations: int = 100) -> None:
    """Let callbacks scheduled with call_soon/call_soon_threadsafe run."""
    for _ in range(iterations):
        await asyncio.sleep(0)


class FakeClock:
    """Clock whose sleeps advance virtual time and yield once to the loop."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class MockCaptureEngine(CaptureEngine):
    """Capture engine whose events are emitted by the test."""

    def __init__(self, locale: str = "en-US"):
        super().__init__(locale)
        self.is_running = False
        self.starts = 0
        self.stops = 0

    def start(self) -> None:
        self.starts += 1
        self.is_running = True

    def stop(self) -> None:
        self.stops += 1
        if self.is_running:
            self.is_running = False
            self.events.emit("end")

    def emit_final(self, text: str) -> None:
        self.events.emit("result", text, "")

    def emit_interim(self, text: str) -> None:
        self.events.emit("result", "", text)

    def emit_error(self, code: str) -> None:
        self.events.emit("error", code)

    def emit_end(self) -> None:
        """Simulate the provider ending the session on its own."""
        self.is_running = False
        self.events.emit("end")

    def get_status(self) -> dict:
        return {
            "provider": "mock_capture",
            "is_running": self.is_running,
            "starts": self.starts,
            "stops": self.stops,
        }


class MockSynthesisEngine(SynthesisEngine):
    """
    Synthesis engine that records what it was asked to say.

    Utterances stay active until ``finish()``/``fail()`` unless
    ``auto_complete`` is set, in which case they end after ``speak_duration``
    seconds (immediately when zero).
    """

    def __init__(
        self,
        voices: Optional[Sequence[Voice]] = None,
        auto_complete: bool = False,
        speak_duration: float = 0.0,
        fail_initialize: Optional[Exception] = None,
    ):
        super().__init__()
        self._voices: List[Voice] = list(DEFAULT_VOICES if voices is None else voices)
        self.auto_complete = auto_complete
        self.speak_duration = speak_duration
        self.fail_initialize = fail_initialize

        self.initialized = False
        self.spoken: List[Utterance] = []
        self.current: Optional[Utterance] = None
        self.overlaps = 0
        self.cancels = 0
        self.pauses = 0
        self.resumes = 0
        self._lock = threading.Lock()

    @property
    def spoken_texts(self) -> List[str]:
        return [utterance.text for utterance in self.spoken]

    def initialize(self) -> None:
        if self.fail_initialize:
            raise self.fail_initialize
        self.initialized = True

    def list_voices(self) -> List[Voice]:
        return list(self._voices)

    def deliver_voices(self, voices: Sequence[Voice]) -> None:
        """Simulate voices arriving after initialization."""
        self._voices = list(voices)
        self.events.emit("voices_changed")

    def speak(self, utterance: Utterance) -> None:
        with self._lock:
            if self.current is not None:
                self.overlaps += 1
            self.current = utterance
            self.spoken.append(utterance)
        utterance.events.emit("start")

        if self.auto_complete:
            if self.speak_duration > 0:
                timer = threading.Timer(self.speak_duration, self._complete, (utterance,))
                timer.daemon = True
                timer.start()
            else:
                self._complete(utterance)

    def _complete(self, utterance: Utterance) -> None:
        with self._lock:
            if self.current is not utterance:
                return
            self.current = None
        utterance.events.emit("end")

    def finish(self) -> None:
        """End the active utterance normally."""
        if self.current is not None:
            self._complete(self.current)

    def fail(self, code: str = "synthesis-failed") -> None:
        with self._lock:
            utterance, self.current = self.current, None
        if utterance is not None:
            utterance.events.emit("error", code)

    def cancel(self) -> None:
        with self._lock:
            utterance, self.current = self.current, None
            self.cancels += 1
        if utterance is not None:
            utterance.events.emit("error", "interrupted")

    def pause(self) -> None:
        self.pauses += 1

    def resume(self) -> None:
        self.resumes += 1

    @property
    def speaking(self) -> bool:
        return self.current is not None

    def stop(self) -> None:
        self.cancel()

    def get_status(self) -> dict:
        return {
            "provider": "mock_synthesis",
            "voices": len(self._voices),
            "speaking": self.speaking,
            "utterances": len(self.spoken),
        }


@dataclass
class ChatCall:
    utterance: str
    history: tuple
    token: CancellationToken


class MockChatClient(ChatClient):
    """
    Chat client with scripted replies.

    Scripted entries may be strings or exceptions (raised instead of
    returned). With ``blocking`` set, every call waits until the test calls
    ``release()``; ``ignore_cancellation`` makes such calls return even after
    their token was cancelled, like a backend that answers anyway.
    """

    mock_responses = [
        "I understand. Can you tell me more about how long you've had these symptoms?",
        "Rest, fluids and monitoring your temperature usually help. Please see a doctor if it gets worse.",
        "That sounds uncomfortable. A healthcare professional can give you personalised advice.",
    ]

    def __init__(
        self,
        responses: Optional[Sequence[Union[str, Exception]]] = None,
        delay: float = 0.0,
        blocking: bool = False,
        ignore_cancellation: bool = False,
    ):
        self.responses: Deque[Union[str, Exception]] = deque(responses or [])
        self.delay = delay
        self.blocking = blocking
        self.ignore_cancellation = ignore_cancellation
        self.calls: List[ChatCall] = []
        self.pending: List[asyncio.Future] = []
        self.closed = False
        self._cycle = itertools.cycle(self.mock_responses)

    async def send(
        self, utterance: str, history: Sequence[Turn], token: CancellationToken
    ) -> str:
        self.calls.append(ChatCall(utterance, tuple(history), token))

        if self.blocking:
            future = asyncio.get_running_loop().create_future()
            self.pending.append(future)
            if self.ignore_cancellation:
                result = await future
            else:
                result = await run_cancellable(future, token)
        else:
            if self.delay:
                await run_cancellable(asyncio.sleep(self.delay), token)
            token.raise_if_cancelled()
            result = self.responses.popleft() if self.responses else next(self._cycle)

        if isinstance(result, Exception):
            raise result
        return result

    def release(self, index: int, result: Union[str, Exception]) -> None:
        future = self.pending[index]
        if not future.done():
            future.set_result(result)

    async def aclose(self) -> None:
        self.closed = True

    def get_status(self) -> dict:
        return {
            "provider": "mock_chat",
            "calls": len(self.calls),
            "pending": sum(1 for future in self.pending if not future.done()),
        }


class MockMicrophone(MicrophoneAccess):
    """Microphone that grants access unless told otherwise."""

    def __init__(self, denied: bool = False, error: Optional[str] = None):
        self.denied = denied
        self.error = error
        self.requests = 0

    async def request(self) -> None:
        self.requests += 1
        if self.denied:
            raise PermissionDeniedError("Permission denied by user")
        if self.error:
            raise MicrophoneError(self.error)
