"""Speech output service: voice selection, readiness and exclusive speaking."""

import asyncio
from typing import Callable, List, Optional, Sequence
import structlog

from ..core.errors import SpeechOutcome, SpeechSynthesisError
from ..providers.tts.base import SynthesisEngine, Utterance, Voice
from ..utils.events import EventEmitter
from ..utils.timing import Clock, system_clock


logger = structlog.get_logger()

# Provider error codes that mean "stopped on purpose", not "failed"
INTERRUPTION_CODES = frozenset({"interrupted", "canceled", "cancelled"})


def _normalize_locale(locale: str) -> str:
    return locale.replace("_", "-").lower()


def choose_voice(
    voices: Sequence[Voice],
    preferred_locale: str = "te-IN",
    name_hint: Optional[str] = "telugu",
) -> Optional[Voice]:
    """
    Pick a voice deterministically.

    Order: exact locale match, then same language family (``te`` for
    ``te-IN``), then a voice whose name contains ``name_hint``, then the first
    voice.
    """
    if not voices:
        return None

    preferred = _normalize_locale(preferred_locale)
    family = preferred.split("-")[0]

    for voice in voices:
        if voice.lang and _normalize_locale(voice.lang) == preferred:
            return voice

    for voice in voices:
        if voice.lang and _normalize_locale(voice.lang).split("-")[0] == family:
            return voice

    if name_hint:
        hint = name_hint.lower()
        for voice in voices:
            if hint in voice.name.lower():
                return voice

    return voices[0]


class _ActiveUtterance:
    def __init__(self, utterance: Utterance, future: asyncio.Future):
        self.utterance = utterance
        self.future = future
        self.cancelled = False
        self.started = False


class SpeechOutputService:
    """
    Wraps a SynthesisEngine so that at most one utterance is active at a time.

    Starting a new utterance always cancels the previous one first. Interrupted
    utterances resolve with ``SpeechOutcome.INTERRUPTED``; only genuine
    synthesis failures raise.

    Emits ``voice_changed(Optional[Voice])`` whenever the selected voice
    changes, including when voices arrive after ``initialize()`` gave up.
    """

    def __init__(
        self,
        engine: SynthesisEngine,
        preferred_locale: str = "te-IN",
        voice_name_hint: Optional[str] = "telugu",
        init_timeout: float = 5.0,
        ready_settle: float = 0.25,
        settle_delay: float = 0.15,
        speak_ready_timeout: float = 3.0,
        readiness_wait: float = 10.0,
        poll_interval: float = 0.1,
        clock: Optional[Clock] = None,
    ):
        self.engine = engine
        self.preferred_locale = preferred_locale
        self.voice_name_hint = voice_name_hint
        self.init_timeout = init_timeout
        self.ready_settle = ready_settle
        self.settle_delay = settle_delay
        self.speak_ready_timeout = speak_ready_timeout
        self.readiness_wait = readiness_wait
        self.poll_interval = poll_interval
        self.clock = clock or system_clock
        self.events = EventEmitter("voice_changed")

        self._initialized = False
        self._voices: List[Voice] = []
        self._voice: Optional[Voice] = None
        self._active: Optional[_ActiveUtterance] = None
        self._generation = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def voices(self) -> List[Voice]:
        return list(self._voices)

    @property
    def selected_voice(self) -> Optional[Voice]:
        return self._voice

    @property
    def speaking(self) -> bool:
        return self._active is not None

    def _post(self, callback: Callable, *args) -> None:
        """Run ``callback`` on the service's loop; engines call from any thread."""
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed, dropping speech event")

    def _load_voices(self) -> bool:
        voices = self.engine.list_voices()
        if not voices:
            return False

        self._voices = list(voices)
        previous = self._voice
        if self._voice is None or self._voice not in self._voices:
            self._voice = choose_voice(
                self._voices, self.preferred_locale, self.voice_name_hint
            )
        self._initialized = True
        logger.info(
            "Speech output voices loaded",
            count=len(self._voices),
            selected_voice=self._voice.name if self._voice else None,
        )
        if self._voice != previous:
            self.events.emit("voice_changed", self._voice)
        return True

    async def initialize(self) -> bool:
        """
        Load voices and select one.

        Returns True once a voice is selected. If no voices arrive within
        ``init_timeout`` the service still marks itself initialized, so callers
        never hang, and returns False.
        """
        self._loop = asyncio.get_running_loop()
        self.engine.initialize()
        self.engine.cancel()
        self.engine.events.on(
            "voices_changed", lambda: self._post(self._load_voices)
        )

        if self._load_voices():
            await self.clock.sleep(self.ready_settle)
            return True

        start = self.clock.monotonic()
        while self.clock.monotonic() - start < self.init_timeout:
            await self.clock.sleep(self.poll_interval)
            if self._voice is not None or self._load_voices():
                await self.clock.sleep(self.ready_settle)
                return True

        logger.warning("Voice loading timeout, forcing initialized")
        self._initialized = True
        return False

    def is_ready(self) -> bool:
        return (
            self._initialized
            and len(self._voices) > 0
            and self._voice is not None
            and self._active is None
            and not self.engine.speaking
        )

    async def wait_until_ready(
        self, max_wait: Optional[float] = None, poll_interval: Optional[float] = None
    ) -> bool:
        """
        Poll until ready or ``max_wait`` elapses. Never raises.

        Defaults to ``readiness_wait`` and ``poll_interval`` from construction.
        """
        max_wait = self.readiness_wait if max_wait is None else max_wait
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        start = self.clock.monotonic()
        while True:
            if not self._voices:
                try:
                    self._load_voices()
                except Exception as e:
                    logger.warning("Voice reload failed", error=str(e))

            if self.is_ready():
                logger.debug(
                    "Speech output ready",
                    waited_ms=(self.clock.monotonic() - start) * 1000,
                )
                return True

            if self.clock.monotonic() - start >= max_wait:
                break
            await self.clock.sleep(poll_interval)

        logger.warning(
            "Speech output readiness timeout",
            initialized=self._initialized,
            voices=len(self._voices),
            selected_voice=self._voice.name if self._voice else None,
            speaking=self.engine.speaking,
        )
        return False

    async def speak(
        self, text: str, rate: float = 1.0, pitch: float = 1.0, volume: float = 1.0
    ) -> SpeechOutcome:
        """
        Speak ``text``, cancelling anything already being spoken.

        Returns COMPLETED on natural end and INTERRUPTED if this utterance was
        cancelled or superseded by a newer ``speak()``/``stop()``.

        Raises:
            SpeechSynthesisError: not initialized, no voice, or engine failure
        """
        if not self._initialized:
            raise SpeechSynthesisError("Speech synthesis not initialized")

        self._generation += 1
        generation = self._generation

        if self._active is not None or self.engine.speaking:
            self._cancel_active()
            await self.clock.sleep(self.settle_delay)
            if generation != self._generation:
                return SpeechOutcome.INTERRUPTED

        if self._voice is None:
            logger.warning("No voice selected, attempting to reload voices")
            await self.wait_until_ready(self.speak_ready_timeout, self.poll_interval)
            if generation != self._generation:
                return SpeechOutcome.INTERRUPTED
            if self._voice is None:
                raise SpeechSynthesisError("No voices available")

        loop = asyncio.get_running_loop()
        self._loop = loop
        utterance = Utterance(
            text=text,
            voice=self._voice,
            rate=rate,
            pitch=pitch,
            volume=volume,
            lang=self._voice.lang or "en-US",
        )
        active = _ActiveUtterance(utterance, loop.create_future())
        utterance.events.on("start", lambda: self._post(self._on_start, active))
        utterance.events.on(
            "end", lambda: self._post(self._settle, active, SpeechOutcome.COMPLETED)
        )
        utterance.events.on("error", lambda code: self._post(self._on_error, active, code))

        self._active = active
        try:
            self.engine.speak(utterance)
        except Exception as e:
            self._active = None
            logger.error("Error starting speech", error=str(e))
            raise SpeechSynthesisError(str(e)) from e

        try:
            return await active.future
        except asyncio.CancelledError:
            if self._active is active:
                self._cancel_active()
            raise
        finally:
            if self._active is active:
                self._active = None

    def _on_start(self, active: _ActiveUtterance) -> None:
        active.started = True
        logger.debug("Speech started", text_length=len(active.utterance.text))

    def _settle(self, active: _ActiveUtterance, outcome: SpeechOutcome) -> None:
        if not active.future.done():
            logger.debug("Speech finished", outcome=outcome.value)
            active.future.set_result(outcome)

    def _on_error(self, active: _ActiveUtterance, code: str) -> None:
        if active.cancelled or code in INTERRUPTION_CODES:
            self._settle(active, SpeechOutcome.INTERRUPTED)
            return
        logger.error("Speech synthesis error", code=code)
        if not active.future.done():
            active.future.set_exception(
                SpeechSynthesisError(f"Speech synthesis failed: {code}")
            )

    def _cancel_active(self) -> None:
        active, self._active = self._active, None
        if active is not None:
            active.cancelled = True
            self._settle(active, SpeechOutcome.INTERRUPTED)
        self.engine.cancel()

    def stop(self) -> None:
        """Cancel any active or pending utterance. Safe to call when idle."""
        self._generation += 1
        if self._active is None and not self.engine.speaking:
            return
        logger.debug("Stopping speech output")
        self._cancel_active()

    def pause(self) -> None:
        if self._active is not None:
            self.engine.pause()

    def resume(self) -> None:
        if self._active is not None:
            self.engine.resume()
