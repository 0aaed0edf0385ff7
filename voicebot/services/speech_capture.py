"""Speech capture service: continuous transcripts with restartable sessions."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
import structlog

from ..providers.stt.base import CaptureEngine
from ..utils.events import EventEmitter


logger = structlog.get_logger()

PERMISSION_DENIED_CODES = frozenset({"not-allowed", "service-not-allowed"})
# Sessions that ended without speech; these are not failures
SILENCE_CODES = frozenset({"no-speech", "aborted"})


class CaptureErrorKind(Enum):
    PERMISSION_DENIED = "permission_denied"
    TRANSIENT = "transient"


def classify_capture_error(code: str) -> CaptureErrorKind:
    if code in PERMISSION_DENIED_CODES:
        return CaptureErrorKind.PERMISSION_DENIED
    return CaptureErrorKind.TRANSIENT


@dataclass(frozen=True)
class CaptureResult:
    """A transcript update. ``final`` may be empty while speech is still interim."""
    final: str
    interim: str = ""


@dataclass(frozen=True)
class CaptureError:
    code: str
    kind: CaptureErrorKind

    @property
    def permission_denied(self) -> bool:
        return self.kind == CaptureErrorKind.PERMISSION_DENIED


class SpeechCaptureService:
    """
    Wraps a CaptureEngine and re-emits its events on the asyncio loop.

    Emits ``result(CaptureResult)``, ``error(CaptureError)`` and ``end()``.
    ``end`` fires whenever a session terminates, whether or not ``stop()``
    was called; subscribers decide whether to restart.
    """

    def __init__(self, engine: CaptureEngine):
        self.engine = engine
        self.events = EventEmitter("result", "error", "end")

        self._listening = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.consecutive_errors = 0

        engine.events.on(
            "result", lambda final, interim: self._post(self._handle_result, final, interim)
        )
        engine.events.on("error", lambda code: self._post(self._handle_error, code))
        engine.events.on("end", lambda: self._post(self._handle_end))

    @property
    def listening(self) -> bool:
        return self._listening

    def _post(self, callback: Callable, *args) -> None:
        if self._loop is None:
            logger.debug("Capture event before start, dropping")
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed, dropping capture event")

    def start(self) -> None:
        """Begin a capture session. No-op if already listening."""
        if self._listening:
            return

        self._loop = asyncio.get_running_loop()
        self._listening = True
        logger.debug("Starting speech capture", locale=self.engine.locale)
        try:
            self.engine.start()
        except Exception as e:
            logger.error("Failed to start speech capture", error=str(e))
            self._post(self._handle_error, "audio-capture")
            self._post(self._handle_end)

    def stop(self) -> None:
        """End the current session. No-op if idle."""
        if not self._listening:
            return
        logger.debug("Stopping speech capture")
        self._listening = False
        self.engine.stop()

    def reset_errors(self) -> None:
        """Forget earlier failures; called when a new call begins."""
        self.consecutive_errors = 0

    def _handle_result(self, final: str, interim: str) -> None:
        if final.strip() or interim.strip():
            self.consecutive_errors = 0
        self.events.emit("result", CaptureResult(final=final, interim=interim))

    def _handle_error(self, code: str) -> None:
        error = CaptureError(code=code, kind=classify_capture_error(code))
        if code not in SILENCE_CODES:
            self.consecutive_errors += 1
        if error.permission_denied:
            logger.warning("Speech capture permission denied", code=code)
        else:
            logger.info(
                "Transient speech capture error",
                code=code,
                consecutive_errors=self.consecutive_errors,
            )
        self.events.emit("error", error)

    def _handle_end(self) -> None:
        self._listening = False
        logger.debug("Speech capture session ended")
        self.events.emit("end")

    def get_status(self) -> dict:
        return {
            "listening": self._listening,
            "consecutive_errors": self.consecutive_errors,
            "engine": self.engine.get_status(),
        }
