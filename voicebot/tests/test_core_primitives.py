"""Tests for events, cancellation, the conversation log and the state store."""

import asyncio
import unittest
from unittest.mock import Mock

import pytest

from voicebot.core.cancellation import CancellationToken, run_cancellable
from voicebot.core.errors import RequestCancelled
from voicebot.state.conversation_log import ConversationLog, Role
from voicebot.state.store import CallState, CallStatus, StateStore
from voicebot.utils.events import EventEmitter


class TestEventEmitter:
    """Single-subscriber events."""

    def test_emit_calls_subscriber(self):
        """Arguments are passed through to the handler."""
        events = EventEmitter("result")
        handler = Mock()
        events.on("result", handler)

        assert events.emit("result", "hello", "") is True
        handler.assert_called_once_with("hello", "")

    def test_subscribing_again_replaces_handler(self):
        """Only the latest handler receives events."""
        events = EventEmitter("end")
        first, second = Mock(), Mock()
        events.on("end", first)
        events.on("end", second)

        events.emit("end")

        first.assert_not_called()
        second.assert_called_once_with()

    def test_emit_without_subscriber(self):
        """Emitting with nobody listening is reported, not an error."""
        events = EventEmitter("end")
        assert events.emit("end") is False

        events.on("end", Mock())
        events.off("end")
        assert events.has_subscriber("end") is False

    def test_unknown_event(self):
        """Only declared events are accepted."""
        events = EventEmitter("end")
        with pytest.raises(ValueError):
            events.on("finish", Mock())
        with pytest.raises(ValueError):
            events.emit("finish")
        assert events.event_names == ("end",)


class TestCancellationToken:
    """One-shot cancellation."""

    def test_cancel_runs_callbacks_once(self):
        """Callbacks fire on the first cancel only."""
        token = CancellationToken()
        callback = Mock()
        token.add_callback(callback)

        token.cancel()
        token.cancel()

        assert token.cancelled is True
        callback.assert_called_once_with()

    def test_callback_after_cancel_runs_immediately(self):
        """Late registrations still observe the cancellation."""
        token = CancellationToken()
        token.cancel()
        callback = Mock()

        token.add_callback(callback)

        callback.assert_called_once_with()

    def test_removed_callback_does_not_run(self):
        """Removed callbacks are forgotten."""
        token = CancellationToken()
        callback = Mock()
        token.add_callback(callback)
        token.remove_callback(callback)

        token.cancel()

        callback.assert_not_called()

    def test_raise_if_cancelled(self):
        """Cancelled tokens raise RequestCancelled."""
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(RequestCancelled):
            token.raise_if_cancelled()


class TestRunCancellable(unittest.IsolatedAsyncioTestCase):
    """Awaiting work that a token can abort."""

    async def test_returns_result(self):
        """Uncancelled work returns normally."""
        async def work():
            return "done"

        assert await run_cancellable(work(), CancellationToken()) == "done"

    async def test_already_cancelled(self):
        """A cancelled token aborts before the work starts."""
        token = CancellationToken()
        token.cancel()
        started = []

        async def work():
            started.append(True)

        with pytest.raises(RequestCancelled):
            await run_cancellable(work(), token)
        assert started == []

    async def test_cancel_during_await(self):
        """Cancelling mid-flight aborts the underlying task."""
        token = CancellationToken()
        future = asyncio.get_running_loop().create_future()
        task = asyncio.ensure_future(run_cancellable(future, token))
        await asyncio.sleep(0)

        token.cancel()

        with pytest.raises(RequestCancelled):
            await task
        assert future.cancelled() is True

    async def test_outer_cancellation_propagates(self):
        """Task cancellation that did not come from the token stays CancelledError."""
        token = CancellationToken()
        future = asyncio.get_running_loop().create_future()
        task = asyncio.ensure_future(run_cancellable(future, token))
        await asyncio.sleep(0)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert token.cancelled is False


class TestConversationLog:
    """Append-only history."""

    def setup_method(self):
        self.log = ConversationLog()

    def test_append_preserves_order(self):
        """Turns are kept in insertion order with their roles."""
        self.log.add_bot_message("Hello, I'm Dr. HealthAI.")
        self.log.add_user_message("I have a fever")

        assert [(t.role, t.content) for t in self.log] == [
            (Role.BOT, "Hello, I'm Dr. HealthAI."),
            (Role.USER, "I have a fever"),
        ]
        assert len(self.log) == 2

    def test_recent(self):
        """recent() returns the newest turns, oldest first."""
        for i in range(5):
            self.log.add_user_message(f"message {i}")

        assert [t.content for t in self.log.recent(2)] == ["message 3", "message 4"]
        assert len(self.log.recent(10)) == 5
        assert self.log.recent(0) == ()

    def test_turns_are_snapshots(self):
        """Callers cannot mutate the log through returned sequences."""
        self.log.add_user_message("first")
        turns = self.log.turns
        self.log.add_user_message("second")

        assert len(turns) == 1
        assert isinstance(turns, tuple)

    def test_to_list(self):
        """Turns serialize with role, content and timestamp."""
        self.log.add_user_message("I have a fever")
        entry = self.log.to_list()[0]

        assert entry["role"] == "user"
        assert entry["content"] == "I have a fever"
        assert "timestamp" in entry

    def test_listener_errors_do_not_block_append(self):
        """A failing observer does not lose the turn."""
        self.log.set_listener(Mock(side_effect=RuntimeError("render failed")))
        self.log.add_user_message("hello there")
        assert len(self.log) == 1


class TestStateStore:
    """Observable call state."""

    def setup_method(self):
        self.store = StateStore()
        self.changes = []
        self.unsubscribe = self.store.subscribe(
            lambda new, old: self.changes.append((old.status, new.status))
        )

    def test_initial_state(self):
        """The store starts idle with no call."""
        assert self.store.state == CallState()
        assert self.store.state.status == CallStatus.IDLE

    def test_update_notifies(self):
        """Listeners see old and new state."""
        self.store.update(status=CallStatus.CONNECTING)
        assert self.changes == [(CallStatus.IDLE, CallStatus.CONNECTING)]

    def test_no_op_update_is_silent(self):
        """Updates that change nothing do not notify."""
        self.store.update(status=CallStatus.IDLE, error=None)
        assert self.changes == []

    def test_unknown_field(self):
        """Unknown fields are rejected."""
        with pytest.raises(ValueError):
            self.store.update(volume=1.0)

    def test_unsubscribe(self):
        """Unsubscribed listeners stop receiving updates."""
        self.unsubscribe()
        self.store.update(status=CallStatus.READY)
        assert self.changes == []

    def test_listener_errors_are_contained(self):
        """A failing listener does not stop the update."""
        self.store.subscribe(Mock(side_effect=RuntimeError("boom")))
        state = self.store.update(call_active=True)
        assert state.call_active is True
        assert self.store.state.call_active is True
