"""Tests for the turn coordination state machine."""

import asyncio
import unittest

import structlog

from voicebot.config.settings import PersonaSettings
from voicebot.core.errors import BackendConfigurationError, BackendRequestError
from voicebot.core.turn_coordinator import CoordinatorConfig, TurnCoordinator
from voicebot.metrics.collector import MetricsCollector
from voicebot.mocks.providers import (
    DEFAULT_VOICES,
    FakeClock,
    MockCaptureEngine,
    MockChatClient,
    MockMicrophone,
    MockSynthesisEngine,
    drain,
)
from voicebot.services.speech_capture import SpeechCaptureService
from voicebot.services.speech_output import SpeechOutputService
from voicebot.state.conversation_log import Role
from voicebot.state.store import CallStatus


PERSONA = PersonaSettings()


class CoordinatorTestCase(unittest.IsolatedAsyncioTestCase):
    """Builds a coordinator wired to mock providers."""

    barge_in = True
    history_window = 10

    def make_engine(self) -> MockSynthesisEngine:
        return MockSynthesisEngine(auto_complete=True)

    def make_chat(self) -> MockChatClient:
        return MockChatClient()

    def make_microphone(self) -> MockMicrophone:
        return MockMicrophone()

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.capture_engine = MockCaptureEngine()
        self.engine = self.make_engine()
        self.chat = self.make_chat()
        self.microphone = self.make_microphone()
        self.metrics = MetricsCollector()
        self.coordinator = TurnCoordinator(
            capture=SpeechCaptureService(self.capture_engine),
            output=SpeechOutputService(self.engine, clock=self.clock),
            chat=self.chat,
            microphone=self.microphone,
            config=CoordinatorConfig(
                barge_in=self.barge_in, history_window=self.history_window
            ),
            metrics=self.metrics,
            clock=self.clock,
        )
        self.statuses = []
        self.coordinator.subscribe(self._record_status)

    async def asyncTearDown(self):
        await self.coordinator.aclose()

    def _record_status(self, new, old):
        if new.status != old.status:
            self.statuses.append(new.status)

    async def start_call(self):
        await self.coordinator.connect()
        started = await self.coordinator.start_call()
        await drain()
        self.statuses.clear()
        return started

    async def say(self, text: str):
        self.capture_engine.emit_final(text)
        await drain()

    def bot_turns(self):
        return [t.content for t in self.coordinator.conversation if t.role == Role.BOT]

    def user_turns(self):
        return [t.content for t in self.coordinator.conversation if t.role == Role.USER]


class TestConnectAndStart(CoordinatorTestCase):
    """Lifecycle up to an active call."""

    async def test_connect_reports_ready(self):
        """Connecting initializes speech output and reports Ready."""
        ready = await self.coordinator.connect()

        assert ready is True
        assert self.coordinator.state.status == CallStatus.READY
        assert self.coordinator.state.text_only is False
        assert self.statuses == [CallStatus.CONNECTING, CallStatus.READY]

    async def test_start_call_requires_connect(self):
        """A call cannot start before the coordinator is Ready."""
        assert await self.coordinator.start_call() is False
        assert self.coordinator.call_active is False
        assert self.microphone.requests == 0

    async def test_start_call_listens_and_introduces(self):
        """Starting a call starts capture and speaks the introduction."""
        assert await self.start_call() is True

        state = self.coordinator.state
        assert state.call_active is True
        assert state.listening is True
        assert state.status == CallStatus.LISTENING
        assert self.capture_engine.starts == 1
        assert self.bot_turns() == [PERSONA.intro_message]
        assert self.engine.spoken_texts == [PERSONA.intro_message]
        assert self.engine.spoken[0].rate == PERSONA.speech_rate

    async def test_intro_spoken_at_most_once(self):
        """Repeated calls do not replay the introduction until reconnect."""
        await self.start_call()
        self.coordinator.end_call()
        await self.coordinator.start_call()
        await drain()
        self.coordinator.end_call()
        await self.coordinator.start_call()
        await drain()

        assert self.bot_turns().count(PERSONA.intro_message) == 1
        assert self.engine.spoken_texts.count(PERSONA.intro_message) == 1

        self.coordinator.end_call()
        await self.coordinator.connect()
        await self.coordinator.start_call()
        await drain()

        assert self.bot_turns().count(PERSONA.intro_message) == 2

    async def test_call_id_tags_log_context(self):
        """Events logged during a call carry its id; none is left once it ends."""
        await self.start_call()
        call_id = self.coordinator.session.call_id

        assert structlog.contextvars.get_contextvars()["call_id"] == call_id

        self.coordinator.end_call()
        assert "call_id" not in structlog.contextvars.get_contextvars()

    async def test_start_call_twice_is_harmless(self):
        """A second start_call while active keeps the same session."""
        await self.start_call()
        session = self.coordinator.session

        assert await self.coordinator.start_call() is True
        assert self.coordinator.session is session
        assert self.capture_engine.starts == 1


class TestMicrophoneDenied(CoordinatorTestCase):
    """Microphone permission refused when starting a call."""

    def make_microphone(self):
        return MockMicrophone(denied=True)

    async def test_denied_microphone_reports_error(self):
        """Denial surfaces a message and leaves the call inactive."""
        await self.coordinator.connect()

        assert await self.coordinator.start_call() is False
        state = self.coordinator.state
        assert state.call_active is False
        assert state.status == CallStatus.ERROR
        assert state.error == PERSONA.microphone_denied_display
        assert self.capture_engine.starts == 0
        assert PERSONA.intro_message not in self.bot_turns()


class TestTextOnly(CoordinatorTestCase):
    """Speech output that never becomes available."""

    def make_engine(self):
        return MockSynthesisEngine(voices=[], auto_complete=True)

    async def test_no_voices_degrades_to_text_only(self):
        """Without voices the coordinator still becomes Ready and replies in text."""
        ready = await self.coordinator.connect()

        assert ready is False
        assert self.coordinator.state.status == CallStatus.READY
        assert self.coordinator.state.text_only is True
        # Voice loading timeout followed by the readiness window
        assert self.clock.now >= 15.0

        await self.coordinator.start_call()
        await drain()
        await self.say("I have a sore throat")

        assert len(self.chat.calls) == 1
        assert len(self.bot_turns()) == 2
        assert self.engine.spoken == []
        assert self.coordinator.state.status == CallStatus.LISTENING
        assert self.coordinator.state.call_active is True

    async def test_voices_within_readiness_window(self):
        """Voices that arrive while connect waits for readiness avoid text-only mode."""
        task = asyncio.ensure_future(self.coordinator.connect())
        while self.clock.now < 6.0 and not task.done():
            await asyncio.sleep(0)
        assert not task.done()

        self.engine.deliver_voices(DEFAULT_VOICES)

        assert await task is True
        assert self.coordinator.state.text_only is False
        assert self.clock.now < 15.0

    async def test_late_voices_restore_speech(self):
        """Voices arriving after connect clear text-only mode and replies are spoken."""
        await self.coordinator.connect()
        assert self.coordinator.state.text_only is True

        self.engine.deliver_voices(DEFAULT_VOICES)
        await drain()

        assert self.coordinator.state.text_only is False
        assert self.coordinator.get_status()["text_only"] is False

        await self.coordinator.start_call()
        await drain()
        await self.say("I have a sore throat")

        assert PERSONA.intro_message in self.engine.spoken_texts
        assert len(self.engine.spoken_texts) == 2


class TestEngineInitFailure(CoordinatorTestCase):
    """Synthesis engine that fails to initialize at all."""

    def make_engine(self):
        return MockSynthesisEngine(fail_initialize=ValueError("no audio device"))

    async def test_initialize_failure_is_not_fatal(self):
        """Initialization errors leave the coordinator usable in text-only mode."""
        assert await self.coordinator.connect() is False
        assert self.coordinator.state.status == CallStatus.READY
        assert self.coordinator.state.text_only is True

        await self.coordinator.start_call()
        await drain()
        await self.say("What helps with a cold?")

        assert self.engine.spoken == []
        assert len(self.bot_turns()) == 2
        assert self.coordinator.state.status == CallStatus.LISTENING


class TestUtteranceFlow(CoordinatorTestCase):
    """Final transcripts turned into chat requests and spoken replies."""

    def make_chat(self):
        return MockChatClient(responses=["You should rest and monitor your temperature."])

    async def test_fever_scenario(self):
        """A reply is logged after the utterance, spoken once, and status cycles."""
        await self.start_call()
        turns_before = len(self.coordinator.conversation)

        await self.say("I have a fever")

        new_turns = self.coordinator.conversation.turns[turns_before:]
        assert [(t.role, t.content) for t in new_turns] == [
            (Role.USER, "I have a fever"),
            (Role.BOT, "You should rest and monitor your temperature."),
        ]
        assert self.engine.spoken_texts.count(
            "You should rest and monitor your temperature."
        ) == 1
        assert self.statuses == [
            CallStatus.PROCESSING,
            CallStatus.SPEAKING,
            CallStatus.LISTENING,
        ]

    async def test_history_excludes_current_utterance(self):
        """The chat client receives prior turns only, oldest first."""
        await self.start_call()
        await self.say("I have a fever")

        call = self.chat.calls[0]
        assert call.utterance == "I have a fever"
        assert [t.content for t in call.history] == [PERSONA.intro_message]

    async def test_short_utterances_are_ignored(self):
        """Utterances of three characters or fewer never reach the log or backend."""
        await self.start_call()
        turns_before = len(self.coordinator.conversation)

        for text in ["hm", "  ok  ", "yes", ""]:
            await self.say(text)

        assert len(self.coordinator.conversation) == turns_before
        assert self.chat.calls == []

        await self.say("I have a headache")

        assert self.user_turns() == ["I have a headache"]
        assert len(self.chat.calls) == 1

    async def test_interim_transcript_is_tracked(self):
        """Interim text is exposed and cleared when the final segment arrives."""
        await self.start_call()

        self.capture_engine.emit_interim("I have a")
        await drain()
        assert self.coordinator.state.interim_transcript == "I have a"
        assert self.chat.calls == []

        await self.say("I have a fever")
        assert self.coordinator.state.interim_transcript == ""

    async def test_metrics_record_interaction(self):
        """A completed exchange is counted with its latency."""
        await self.start_call()
        await self.say("I have a fever")

        summary = self.metrics.get_summary()
        assert summary["total_interactions"] == 1
        assert summary["chat_latency_ms"]["samples"] == 1


class TestHistoryWindow(CoordinatorTestCase):
    """Bounded context sent to the backend."""

    history_window = 2

    async def test_history_is_trimmed(self):
        """Only the most recent turns are sent."""
        await self.start_call()
        await self.say("first question")
        await self.say("second question")

        history = self.chat.calls[-1].history
        assert len(history) == 2
        assert history[0].content == "first question"
        assert history[1].role == Role.BOT


class TestBackendFailures(CoordinatorTestCase):
    """Chat failures produce apologies and the call continues."""

    def make_chat(self):
        return MockChatClient(responses=[
            BackendConfigurationError("Gemini API key not configured"),
            BackendRequestError("Chat endpoint returned HTTP 502", status_code=502),
        ])

    async def test_configuration_error_uses_remediation_message(self):
        """Configuration errors get the specific message and listening resumes."""
        await self.start_call()
        await self.say("I have a fever")

        assert self.bot_turns()[-1] == PERSONA.config_apology
        assert PERSONA.config_apology in self.engine.spoken_texts
        assert PERSONA.apology not in self.bot_turns()
        state = self.coordinator.state
        assert state.error == PERSONA.config_apology_display
        assert state.status == CallStatus.LISTENING
        assert state.call_active is True

    async def test_generic_failure_uses_apology(self):
        """Other failures get the generic apology and a new utterance clears the error."""
        await self.start_call()
        await self.say("I have a fever")
        await self.say("Are you there?")

        assert self.bot_turns()[-1] == PERSONA.apology
        assert self.coordinator.state.error == PERSONA.apology_display
        assert self.coordinator.state.status == CallStatus.LISTENING

        await self.say("Hello again")
        assert self.coordinator.state.error is None


class TestSupersede(CoordinatorTestCase):
    """Newer input cancels older in-flight work."""

    def make_chat(self):
        return MockChatClient(blocking=True)

    async def test_new_utterance_cancels_in_flight_request(self):
        """Only the newest request stays current; superseded ones see cancellation."""
        await self.start_call()
        await self.say("first question")
        await self.say("second question")
        await self.say("third question")

        assert [call.token.cancelled for call in self.chat.calls] == [True, True, False]

        self.chat.release(0, "first answer")
        self.chat.release(2, "third answer")
        await drain()

        assert "first answer" not in self.bot_turns()
        assert self.bot_turns()[-1] == "third answer"
        assert self.engine.spoken_texts[-1] == "third answer"
        assert self.metrics.get_summary()["interruptions"] == 2

    async def test_end_call_cancels_in_flight_request(self):
        """Ending the call drops the pending request without a reply."""
        await self.start_call()
        await self.say("first question")

        self.coordinator.end_call()
        await drain()

        assert self.chat.calls[0].token.cancelled is True
        assert self.bot_turns() == [PERSONA.intro_message]
        assert self.coordinator.state.status == CallStatus.READY
        assert self.coordinator.state.call_active is False

    async def test_end_call_is_idempotent(self):
        """Ending twice, or with no call, raises nothing."""
        self.coordinator.end_call()
        await self.start_call()
        self.coordinator.end_call()
        self.coordinator.end_call()

        assert self.coordinator.state.call_active is False


class TestStaleReplies(CoordinatorTestCase):
    """Backends that answer even after cancellation."""

    def make_chat(self):
        return MockChatClient(blocking=True, ignore_cancellation=True)

    async def test_stale_reply_is_discarded(self):
        """A superseded reply that resolves late is neither logged nor spoken."""
        await self.start_call()
        await self.say("first question")
        await self.say("second question")

        self.chat.release(0, "stale answer")
        await drain()

        assert "stale answer" not in self.bot_turns()
        assert "stale answer" not in self.engine.spoken_texts
        assert self.coordinator.state.status == CallStatus.PROCESSING

        self.chat.release(1, "fresh answer")
        await drain()

        assert self.bot_turns()[-1] == "fresh answer"
        assert self.coordinator.state.status == CallStatus.LISTENING


class SpeechRecordingChat(MockChatClient):
    """Records whether speech was playing when each request was dispatched."""

    def __init__(self, engine, **kwargs):
        super().__init__(**kwargs)
        self.engine = engine
        self.speaking_at_dispatch = []

    async def send(self, utterance, history, token):
        self.speaking_at_dispatch.append(self.engine.speaking)
        return await super().send(utterance, history, token)


class TestBargeIn(CoordinatorTestCase):
    """Speech that stays active until finished or interrupted."""

    def make_engine(self):
        return MockSynthesisEngine()

    def make_chat(self):
        return SpeechRecordingChat(self.engine, responses=["first answer", "second answer"])

    async def test_interruption_stops_speech_before_dispatch(self):
        """Speaking over the bot stops its utterance before the next request goes out."""
        await self.start_call()
        await self.say("first question")

        assert self.engine.current.text == "first answer"
        assert self.coordinator.state.status == CallStatus.SPEAKING

        await self.say("actually, a second question")

        assert self.chat.speaking_at_dispatch == [False, False]
        assert self.engine.current.text == "second answer"
        assert self.engine.overlaps == 0
        assert self.capture_engine.stops == 0

        self.engine.finish()
        await drain()
        assert self.coordinator.state.status == CallStatus.LISTENING

    async def test_interrupted_speech_is_not_an_error(self):
        """An utterance ended by the engine as interrupted returns to listening."""
        await self.start_call()
        await self.say("first question")

        self.engine.fail("interrupted")
        await drain()

        assert self.coordinator.state.status == CallStatus.LISTENING
        assert self.coordinator.state.error is None

    async def test_synthesis_failure_resumes_listening(self):
        """A genuine synthesis failure is logged and the call continues."""
        await self.start_call()
        await self.say("first question")

        self.engine.fail("synthesis-failed")
        await drain()

        assert self.coordinator.state.status == CallStatus.LISTENING
        assert self.coordinator.call_active is True
        assert self.metrics.get_summary()["errors_by_component"] == {"speech": 1}


class TestPauseDuringSpeech(CoordinatorTestCase):
    """Barge-in disabled: capture pauses while the bot speaks."""

    barge_in = False

    def make_engine(self):
        return MockSynthesisEngine()

    async def test_capture_paused_while_speaking(self):
        """Capture stops for the utterance and restarts once it ends."""
        await self.coordinator.connect()
        await self.coordinator.start_call()
        await drain()

        assert self.engine.current.text == PERSONA.intro_message
        assert self.capture_engine.is_running is False
        assert self.coordinator.state.listening is False

        self.engine.finish()
        await drain()

        assert self.capture_engine.is_running is True
        assert self.capture_engine.starts == 2
        assert self.coordinator.state.listening is True
        assert self.metrics.get_summary()["capture_restarts"] == 0


class TestCaptureRecovery(CoordinatorTestCase):
    """Capture sessions ending and failing during a call."""

    async def test_session_end_restarts_capture(self):
        """A provider-ended session is restarted after the backoff."""
        await self.start_call()

        self.capture_engine.emit_end()
        await drain()

        assert self.capture_engine.starts == 2
        assert 0.2 in self.clock.sleeps
        assert self.coordinator.state.listening is True
        assert self.metrics.get_summary()["capture_restarts"] == 1

    async def test_no_restart_after_end_call(self):
        """Ending the call stops capture for good."""
        await self.start_call()

        self.coordinator.end_call()
        await drain()

        assert self.capture_engine.starts == 1
        assert self.capture_engine.is_running is False

    async def test_transient_error_recovers(self):
        """No-speech errors are not surfaced and capture restarts."""
        await self.start_call()

        self.capture_engine.emit_error("no-speech")
        self.capture_engine.emit_end()
        await drain()

        state = self.coordinator.state
        assert state.error is None
        assert state.call_active is True
        assert self.capture_engine.starts == 2

    async def test_permission_error_ends_call(self):
        """Permission denial during capture ends the call with a message."""
        await self.start_call()

        self.capture_engine.emit_error("not-allowed")
        await drain()

        state = self.coordinator.state
        assert state.call_active is False
        assert state.status == CallStatus.ERROR
        assert state.error == PERSONA.microphone_denied_display

    async def test_repeated_errors_end_call(self):
        """Too many consecutive capture errors end the call."""
        await self.start_call()

        for _ in range(5):
            self.capture_engine.emit_error("network")
        await drain()
        assert self.coordinator.call_active is True

        self.capture_engine.emit_error("network")
        await drain()

        assert self.coordinator.call_active is False
        assert self.coordinator.state.error == PERSONA.capture_failed_display

    async def test_result_resets_error_count(self):
        """A recognised utterance resets the consecutive error count."""
        await self.start_call()

        for _ in range(5):
            self.capture_engine.emit_error("network")
        await self.say("I have a fever")
        for _ in range(5):
            self.capture_engine.emit_error("network")
        await drain()

        assert self.coordinator.call_active is True

    async def test_silent_sessions_keep_the_call_alive(self):
        """A caller who stays quiet through many sessions is not disconnected."""
        await self.start_call()

        for _ in range(10):
            self.capture_engine.emit_error("no-speech")
            self.capture_engine.emit_end()
            await drain()

        state = self.coordinator.state
        assert state.call_active is True
        assert state.error is None
        assert state.listening is True
        assert self.capture_engine.starts == 11
        assert self.coordinator.capture.consecutive_errors == 0

    async def test_error_count_starts_fresh_each_call(self):
        """Failures from an ended call do not count against the next one."""
        await self.start_call()
        for _ in range(6):
            self.capture_engine.emit_error("network")
        await drain()
        assert self.coordinator.call_active is False

        assert await self.coordinator.start_call() is True
        await drain()
        self.capture_engine.emit_error("network")
        await drain()

        assert self.coordinator.call_active is True
        assert self.coordinator.state.error is None
        assert self.coordinator.capture.consecutive_errors == 1
