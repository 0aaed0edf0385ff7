"""WhisperKit speech capture using sounddevice for audio input."""

import os
import queue
import subprocess
import tempfile
import threading
import time
from typing import List, Optional
import numpy as np
import sounddevice as sd
import soundfile as sf
import structlog

from .base import CaptureEngine
from ...utils.endpointing import SpeechEndpointer, SPEECH_START, SPEECH_END


logger = structlog.get_logger()


class _CaptureSession:
    """Audio stream, block queue and stop flag owned by one capture session."""

    def __init__(self, queue_size: int = 200):
        self.audio_queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self.stopped = threading.Event()
        self.stream: Optional[sd.InputStream] = None
        self.thread: Optional[threading.Thread] = None

    def audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        """sounddevice input callback."""
        if status:
            logger.warning("Audio callback status", status=str(status))

        if indata.shape[1] > 1:
            audio_data = np.mean(indata, axis=1)
        else:
            audio_data = indata.flatten()

        try:
            self.audio_queue.put_nowait(audio_data.copy())
        except queue.Full:
            logger.warning("Audio queue full, dropping block")

    def close_stream(self) -> None:
        if self.stream is None:
            return
        try:
            self.stream.stop()
            self.stream.close()
        except Exception as e:
            logger.error("Error stopping audio stream", error=str(e))
        self.stream = None


class WhisperKitCaptureEngine(CaptureEngine):
    """
    Captures microphone audio, segments it into utterances with VAD and
    transcribes each segment with the WhisperKit CLI.

    A session ends on ``stop()``, on an audio device failure, or after
    ``max_session_seconds`` without speech (reported as ``no-speech``).
    ``stop()`` only signals the session thread, which closes its own stream
    and emits ``end`` once it has wound down. A new session may start
    before the previous one has finished.
    """

    def __init__(
        self,
        locale: str = "en-US",
        model: str = "large-v3_turbo",
        compute_units: str = "cpuAndNeuralEngine",
        whisperkit_path: str = "/opt/homebrew/bin/whisperkit-cli",
        sample_rate: int = 16000,
        channels: int = 1,
        block_duration: float = 0.1,
        vad_aggressiveness: int = 3,
        silence_duration_ms: int = 700,
        max_session_seconds: float = 60.0,
        transcribe_timeout: float = 30.0,
    ):
        super().__init__(locale)
        self.model = model
        self.compute_units = compute_units
        self.whisperkit_path = whisperkit_path
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_size = int(sample_rate * block_duration)
        self.vad_aggressiveness = vad_aggressiveness
        self.silence_duration_ms = silence_duration_ms
        self.max_session_seconds = max_session_seconds
        self.transcribe_timeout = transcribe_timeout

        self.process: Optional[subprocess.Popen] = None
        self.segments_transcribed = 0
        self._session: Optional[_CaptureSession] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        session = self._session
        return session is not None and not session.stopped.is_set()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return

            logger.info("Starting WhisperKit capture", model=self.model, locale=self.locale)
            session = _CaptureSession()
            try:
                session.stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype=np.float32,
                    blocksize=self.block_size,
                    callback=session.audio_callback,
                    latency="low",
                )
                session.stream.start()
            except sd.PortAudioError as e:
                session.close_stream()
                message = str(e).lower()
                code = "not-allowed" if "permission" in message else "audio-capture"
                logger.error("Failed to open audio stream", error=str(e), code=code)
                self.events.emit("error", code)
                self.events.emit("end")
                return

            self._session = session
            session.thread = threading.Thread(
                target=self._session_loop, args=(session,), daemon=True, name="Capture-Session"
            )
            session.thread.start()

    def _session_loop(self, session: _CaptureSession) -> None:
        endpointer = SpeechEndpointer(
            sample_rate=self.sample_rate,
            vad_aggressiveness=self.vad_aggressiveness,
            silence_duration_ms=self.silence_duration_ms,
        )
        segment: List[np.ndarray] = []
        last_activity = time.monotonic()

        try:
            while not session.stopped.is_set():
                try:
                    block = session.audio_queue.get(timeout=0.1)
                except queue.Empty:
                    block = None

                if block is not None:
                    events = endpointer.process_block(block)
                    if SPEECH_START in events or endpointer.in_speech or SPEECH_END in events:
                        segment.append(block)
                        last_activity = time.monotonic()

                    if SPEECH_END in events and segment:
                        self._emit_segment(session, np.concatenate(segment))
                        segment = []

                if (
                    not endpointer.in_speech
                    and time.monotonic() - last_activity > self.max_session_seconds
                ):
                    logger.info("Capture session limit reached without speech")
                    self.events.emit("error", "no-speech")
                    break
        finally:
            session.stopped.set()
            session.close_stream()
            with self._lock:
                if self._session is session:
                    self._session = None
            self.events.emit("end")

    def _emit_segment(self, session: _CaptureSession, samples: np.ndarray) -> None:
        try:
            text = self.transcribe(samples)
        except Exception as e:
            if session.stopped.is_set():
                logger.debug("Transcription abandoned, session stopped")
                return
            logger.error("Transcription failed", error=str(e))
            self.events.emit("error", "transcription-failed")
            return

        self.segments_transcribed += 1
        if session.stopped.is_set():
            logger.debug("Dropping transcript from stopped session")
            return
        if text:
            self.events.emit("result", text, "")

    def transcribe(self, samples: np.ndarray) -> str:
        """Transcribe one utterance with the WhisperKit CLI."""
        with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as temp_file:
            temp_filename = temp_file.name

        try:
            sf.write(temp_filename, samples, self.sample_rate)
            cmd = [
                self.whisperkit_path,
                "transcribe",
                "--audio-path",
                temp_filename,
                "--model",
                self.model,
                "--language",
                self.locale.split("-")[0],
                "--audio-encoder-compute-units",
                self.compute_units,
                "--text-decoder-compute-units",
                self.compute_units,
            ]
            self.process = subprocess.Popen(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
            )
            try:
                stdout, stderr = self.process.communicate(timeout=self.transcribe_timeout)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.communicate()
                raise
            if self.process.returncode != 0:
                raise RuntimeError(
                    f"WhisperKit failed with code {self.process.returncode}: {stderr}"
                )
            return " ".join(line.strip() for line in stdout.splitlines() if line.strip())
        finally:
            self.process = None
            try:
                os.unlink(temp_filename)
            except OSError:
                pass

    def stop(self) -> None:
        with self._lock:
            session = self._session
            if session is None or session.stopped.is_set():
                return
            session.stopped.set()

        logger.info("Stopping WhisperKit capture")
        process = self.process
        if process and process.poll() is None:
            process.terminate()

    def get_status(self) -> dict:
        session = self._session
        stream = session.stream if session else None
        return {
            "provider": "whisperkit",
            "model": self.model,
            "locale": self.locale,
            "is_running": self.is_running,
            "audio_stream_active": stream is not None and stream.active,
            "segments_transcribed": self.segments_transcribed,
            "audio_queue_size": session.audio_queue.qsize() if session else 0,
        }
