"""
Turn coordination between speech capture, the chat backend and speech output.

The coordinator owns the call lifecycle. Every final transcript becomes an
UtteranceRequest; a newer request cancels the older one and silences any
speech before it is dispatched, so at most one reply is ever audible.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional, Set, Tuple
import structlog

from .cancellation import CancellationToken
from .errors import (
    BackendConfigurationError,
    ChatError,
    MicrophoneError,
    PermissionDeniedError,
    RequestCancelled,
    SpeechOutcome,
    SpeechSynthesisError,
)
from ..config.settings import PersonaSettings, Settings
from ..metrics.collector import MetricsCollector
from ..providers.chat.base import ChatClient
from ..providers.microphone import MicrophoneAccess
from ..services.speech_capture import CaptureError, CaptureResult, SpeechCaptureService
from ..services.speech_output import SpeechOutputService
from ..state.conversation_log import ConversationLog, Turn
from ..state.store import CallState, CallStatus, StateStore
from ..utils.timing import Clock, system_clock


logger = structlog.get_logger()


@dataclass
class CoordinatorConfig:
    """Behavioural knobs for the turn coordinator."""

    persona: PersonaSettings = field(default_factory=PersonaSettings)
    history_window: int = 10
    min_utterance_chars: int = 3  # utterances must be strictly longer
    restart_backoff: float = 0.2  # seconds
    settle_delay: float = 0.15  # seconds
    max_consecutive_errors: int = 5
    barge_in: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "CoordinatorConfig":
        return cls(
            persona=settings.persona,
            history_window=settings.chat.history_window,
            min_utterance_chars=settings.capture.min_utterance_chars,
            restart_backoff=settings.capture.restart_backoff,
            settle_delay=settings.speech.settle_delay,
            max_consecutive_errors=settings.capture.max_consecutive_errors,
            barge_in=settings.capture.barge_in,
        )


@dataclass
class UtteranceRequest:
    """One unit of bot work: a user utterance, or the introduction."""

    text: str
    history: Tuple[Turn, ...]
    token: CancellationToken = field(default_factory=CancellationToken)


@dataclass
class CallSession:
    """State for one active call; discarded when the call ends."""

    call_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    current_request: Optional[UtteranceRequest] = None
    restart_pending: bool = False
    tasks: Set[asyncio.Task] = field(default_factory=set)

    @property
    def current_token(self) -> Optional[CancellationToken]:
        if self.current_request is None:
            return None
        return self.current_request.token


class TurnCoordinator:
    """
    Drives the call state machine.

    Idle -> Connecting -> Ready, then Listening <-> Processing <-> Speaking
    while a call is active. Capture keeps running during processing and
    speaking unless barge-in is disabled, in which case it is paused for the
    duration of each utterance.
    """

    def __init__(
        self,
        capture: SpeechCaptureService,
        output: SpeechOutputService,
        chat: ChatClient,
        microphone: MicrophoneAccess,
        config: Optional[CoordinatorConfig] = None,
        conversation: Optional[ConversationLog] = None,
        store: Optional[StateStore] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Clock] = None,
    ):
        self.capture = capture
        self.output = output
        self.chat = chat
        self.microphone = microphone
        self.config = config or CoordinatorConfig()
        self.conversation = conversation or ConversationLog()
        self.store = store or StateStore()
        self.metrics = metrics
        self.clock = clock or system_clock

        self.intro_spoken = False
        self._connected = False
        self._speech_available = True
        self._capture_paused = False
        self._session: Optional[CallSession] = None

        capture.events.on("result", self._on_capture_result)
        capture.events.on("error", self._on_capture_error)
        capture.events.on("end", self._on_capture_end)
        output.events.on("voice_changed", self._on_voice_changed)

    @property
    def state(self) -> CallState:
        return self.store.state

    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    @property
    def call_active(self) -> bool:
        return self._session is not None

    def subscribe(self, listener: Callable[[CallState, CallState], None]) -> Callable[[], None]:
        return self.store.subscribe(listener)

    async def connect(self) -> bool:
        """
        Initialize speech output and report Ready.

        If voice loading gives up, readiness is polled for the output
        service's ``readiness_wait`` before settling. Returns whether a voice
        was selected. Without one the coordinator still becomes Ready and the
        state is flagged ``text_only``.
        """
        self.end_call()
        self.store.update(status=CallStatus.CONNECTING, error=None)

        try:
            ready = await self.output.initialize()
            self._speech_available = True
        except Exception as e:
            logger.error("Speech output failed to initialize, continuing text-only",
                         error=str(e))
            if self.metrics:
                self.metrics.record_error("speech", str(e))
            ready = False
            self._speech_available = False

        if not ready and self._speech_available:
            # Voices can still turn up; give them the readiness window
            ready = await self.output.wait_until_ready()

        if not ready:
            logger.warning("No voice selected, replies will be text-only")

        self.intro_spoken = False
        self._connected = True
        self.store.update(status=CallStatus.READY, text_only=not ready)
        logger.info("Coordinator ready", text_only=not ready)
        return ready

    async def start_call(self) -> bool:
        """
        Acquire the microphone, start listening and introduce the bot.

        The introduction is spoken at most once per ``connect()``. Returns
        False if the coordinator is not connected or microphone access fails.
        """
        if not self._connected:
            logger.warning("Cannot start call before connect()")
            return False
        if self._session is not None:
            logger.debug("Call already active", call_id=self._session.call_id)
            return True

        session = CallSession()
        self._session = session
        structlog.contextvars.bind_contextvars(call_id=session.call_id)
        self.store.update(call_active=True, error=None)
        if self.metrics:
            self.metrics.start_call(session.call_id)

        try:
            await self.microphone.request()
        except MicrophoneError as e:
            logger.warning("Microphone access failed",
                           error=str(e),
                           permission_denied=isinstance(e, PermissionDeniedError))
            if self.metrics:
                self.metrics.record_error("microphone", str(e))
            if self._session is session:
                self._teardown(session)
                self.store.update(
                    status=CallStatus.ERROR,
                    error=self.config.persona.microphone_denied_display,
                )
            return False

        if self._session is not session:
            # Ended while waiting for the microphone
            return False

        logger.info("Call started", call_id=session.call_id, barge_in=self.config.barge_in)
        self.capture.reset_errors()
        self._start_capture()
        self.store.update(status=CallStatus.LISTENING)

        if not self.intro_spoken:
            self.intro_spoken = True
            intro = self.config.persona.intro_message
            self.conversation.add_bot_message(intro)
            request = UtteranceRequest(intro, ())
            session.current_request = request
            self._spawn(session, self._speak_reply(session, request, intro))

        return True

    def end_call(self) -> None:
        """Stop capture and speech and drop in-flight work. Safe to call repeatedly."""
        session = self._session
        if session is None:
            return
        self._teardown(session)
        logger.info("Call ended", call_id=session.call_id)

    def _teardown(self, session: CallSession) -> None:
        self._session = None
        self._capture_paused = False
        structlog.contextvars.unbind_contextvars("call_id")

        if session.current_request is not None:
            session.current_request.token.cancel()
            session.current_request = None
        for task in list(session.tasks):
            if not task.done():
                task.cancel()

        self.capture.stop()
        self.output.stop()

        if self.metrics:
            self.metrics.end_call()

        self.store.update(
            status=CallStatus.READY,
            call_active=False,
            listening=False,
            interim_transcript="",
        )

    def submit_utterance(self, text: str) -> Optional[UtteranceRequest]:
        """
        Treat ``text`` as a final transcript.

        Short utterances are ignored. Otherwise any in-flight request is
        cancelled and any speech stopped before the new request is dispatched.
        """
        session = self._session
        if session is None:
            logger.debug("Utterance ignored, no active call")
            return None

        text = text.strip()
        if len(text) <= self.config.min_utterance_chars:
            logger.debug("Ignoring short utterance", length=len(text))
            return None

        self._supersede(session)

        # History is the window before this utterance; the utterance travels separately
        history = self.conversation.recent(self.config.history_window)
        self.conversation.add_user_message(text)

        request = UtteranceRequest(text, history)
        session.current_request = request
        self.store.update(error=None)
        logger.info("User utterance", text=text[:50], history_turns=len(history))

        self._spawn(session, self._run_turn(session, request))
        return request

    def _supersede(self, session: CallSession) -> None:
        previous = session.current_request
        if previous is not None and not previous.token.cancelled:
            logger.info("Superseding in-flight turn", previous=previous.text[:50])
            previous.token.cancel()
            if self.metrics:
                self.metrics.record_interruption()
        self.output.stop()

    async def _run_turn(self, session: CallSession, request: UtteranceRequest) -> None:
        persona = self.config.persona
        token = request.token
        self._set_status(session, request, CallStatus.PROCESSING)
        started = self.clock.monotonic()

        try:
            reply = await self.chat.send(request.text, request.history, token)
        except RequestCancelled:
            logger.debug("Chat request cancelled", text=request.text[:50])
            return
        except BackendConfigurationError as e:
            logger.error("Chat backend misconfigured", error=str(e), details=e.details)
            self._record_error("chat", e)
            await self._apologize(session, request, persona.config_apology,
                                  persona.config_apology_display)
            return
        except ChatError as e:
            logger.error("Chat request failed", error=str(e), details=e.details)
            self._record_error("chat", e)
            await self._apologize(session, request, persona.apology,
                                  persona.apology_display)
            return
        except Exception as e:
            logger.error("Unexpected chat failure", error=str(e), exc_info=True)
            self._record_error("chat", e)
            await self._apologize(session, request, persona.apology,
                                  persona.apology_display)
            return

        if token.cancelled:
            logger.debug("Dropping reply for superseded request")
            return

        if self.metrics:
            self.metrics.record_chat_latency((self.clock.monotonic() - started) * 1000)
        self.conversation.add_bot_message(reply)
        await self._speak_reply(session, request, reply)
        if self.metrics:
            self.metrics.record_interaction()

    async def _apologize(
        self, session: CallSession, request: UtteranceRequest, message: str, display: str
    ) -> None:
        if request.token.cancelled:
            return
        self.conversation.add_bot_message(message)
        self.store.update(error=display)
        await self._speak_reply(session, request, message)

    async def _speak_reply(
        self, session: CallSession, request: UtteranceRequest, text: str
    ) -> None:
        token = request.token

        # Residual audio must be fully stopped before the next utterance starts
        self.output.stop()
        await self.clock.sleep(self.config.settle_delay)
        if token.cancelled or self._session is not session:
            return

        if not self._speech_available:
            self._finish(session, request)
            return

        pause_capture = not self.config.barge_in
        if pause_capture:
            self._pause_capture()
        self._set_status(session, request, CallStatus.SPEAKING)

        try:
            outcome = await self.output.speak(text, rate=self.config.persona.speech_rate)
            if outcome is SpeechOutcome.INTERRUPTED:
                logger.debug("Speech interrupted", text=text[:50])
        except SpeechSynthesisError as e:
            logger.error("Speech synthesis failed", error=str(e))
            self._record_error("speech", e)
        finally:
            if pause_capture:
                self._resume_capture(session)

        self._finish(session, request)

    def _finish(self, session: CallSession, request: UtteranceRequest) -> None:
        if self._session is session and session.current_request is request:
            session.current_request = None
            self.store.update(status=CallStatus.LISTENING)

    def _set_status(self, session: CallSession, request: UtteranceRequest,
                    status: CallStatus) -> None:
        # Superseded requests never touch the visible status
        if self._session is session and session.current_request is request:
            self.store.update(status=status)

    def _record_error(self, component: str, error: Exception) -> None:
        if self.metrics:
            self.metrics.record_error(component, str(error),
                                      {"type": type(error).__name__})

    def _spawn(self, session: CallSession, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        session.tasks.add(task)
        task.add_done_callback(lambda t: self._task_done(session, t))
        return task

    def _task_done(self, session: CallSession, task: asyncio.Task) -> None:
        session.tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Call task failed", call_id=session.call_id,
                         error=str(error), exc_info=error)
            self._record_error("coordinator", error)

    def _start_capture(self) -> None:
        self.capture.start()
        self.store.update(listening=True)

    def _pause_capture(self) -> None:
        self._capture_paused = True
        self.capture.stop()
        self.store.update(listening=False)

    def _resume_capture(self, session: CallSession) -> None:
        self._capture_paused = False
        if self._session is session:
            self._start_capture()

    def _on_voice_changed(self, voice) -> None:
        # connect() reports the initial mode itself
        if not self._connected or not self._speech_available:
            return
        text_only = voice is None
        if text_only != self.store.state.text_only:
            logger.info("Speech output mode changed", text_only=text_only,
                        voice=voice.name if voice else None)
            self.store.update(text_only=text_only)

    def _on_capture_result(self, result: CaptureResult) -> None:
        if self._session is None:
            return
        if not result.final.strip():
            if result.interim:
                self.store.update(interim_transcript=result.interim)
            return
        self.store.update(interim_transcript="")
        self.submit_utterance(result.final)

    def _on_capture_error(self, error: CaptureError) -> None:
        if self._session is None:
            return

        if self.metrics:
            self.metrics.record_error("capture", error.code)

        if error.permission_denied:
            logger.error("Microphone permission denied, ending call", code=error.code)
            self._fail_call(self.config.persona.microphone_denied_display)
            return

        if self.capture.consecutive_errors > self.config.max_consecutive_errors:
            logger.error("Too many consecutive capture errors, ending call",
                         consecutive_errors=self.capture.consecutive_errors)
            self._fail_call(self.config.persona.capture_failed_display)

    def _on_capture_end(self) -> None:
        self.store.update(listening=False)
        session = self._session
        if session is None or self._capture_paused:
            return
        if self.capture.listening or session.restart_pending:
            return
        session.restart_pending = True
        self._spawn(session, self._restart_capture(session))

    async def _restart_capture(self, session: CallSession) -> None:
        try:
            await self.clock.sleep(self.config.restart_backoff)
        finally:
            session.restart_pending = False

        if self._session is not session or self._capture_paused or self.capture.listening:
            return

        logger.info("Restarting speech capture", call_id=session.call_id)
        if self.metrics:
            self.metrics.record_capture_restart()
        self._start_capture()

    def _fail_call(self, message: str) -> None:
        self.end_call()
        self.store.update(status=CallStatus.ERROR, error=message)

    async def aclose(self) -> None:
        """End any call and release provider resources."""
        self.end_call()
        await self.chat.aclose()
        self.output.engine.stop()
        self.capture.engine.stop()

    def get_status(self) -> dict:
        state = self.store.state
        return {
            "status": state.status.value,
            "call_active": state.call_active,
            "listening": state.listening,
            "text_only": state.text_only,
            "intro_spoken": self.intro_spoken,
            "turns": len(self.conversation),
            "call_id": self._session.call_id if self._session else None,
            "capture": self.capture.get_status(),
        }
