"""Typed-input capture engine for running without a microphone."""

import sys
import threading
from typing import Optional, TextIO
import structlog

from .base import CaptureEngine


logger = structlog.get_logger()


class KeyboardCaptureEngine(CaptureEngine):
    """Each line read from ``stream`` is delivered as a final transcript."""

    def __init__(self, locale: str = "en-US", stream: Optional[TextIO] = None):
        super().__init__(locale)
        self.stream = stream or sys.stdin
        self.is_running = False
        self.exhausted = False
        self.lines_read = 0
        self.reader_thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.is_running:
            return
        if self.exhausted:
            self.events.emit("error", "audio-capture")
            self.events.emit("end")
            return
        self.is_running = True
        if self.reader_thread is None or not self.reader_thread.is_alive():
            self.reader_thread = threading.Thread(
                target=self._read_loop, daemon=True, name="Keyboard-Capture"
            )
            self.reader_thread.start()

    def _read_loop(self) -> None:
        for line in self.stream:
            if not self.is_running:
                # Lines typed while stopped are dropped, like speech would be
                continue
            self.lines_read += 1
            self.events.emit("result", line.strip(), "")

        logger.info("Keyboard input closed")
        self.exhausted = True
        self.is_running = False
        self.events.emit("end")

    def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        self.events.emit("end")

    def get_status(self) -> dict:
        return {
            "provider": "keyboard",
            "is_running": self.is_running,
            "lines_read": self.lines_read,
        }
