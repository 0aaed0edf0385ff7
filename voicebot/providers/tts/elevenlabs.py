"""ElevenLabs speech synthesis with pygame playback."""

import os
import threading
import time
from io import BytesIO
from typing import List, Optional
import pygame
from elevenlabs import VoiceSettings
from elevenlabs.client import ElevenLabs
import structlog

from .base import SynthesisEngine, Utterance, Voice


logger = structlog.get_logger()

# ElevenLabs accepts speaking speed in this range
MIN_SPEED = 0.7
MAX_SPEED = 1.2


class _Playback:
    def __init__(self, utterance: Utterance):
        self.utterance = utterance
        self.cancelled = threading.Event()
        self.thread: Optional[threading.Thread] = None


class ElevenLabsSynthesisEngine(SynthesisEngine):
    """
    Converts text with the ElevenLabs API and plays it through pygame.

    The voice list is fetched on a background thread after ``initialize()``,
    so callers may see an empty list until ``voices_changed`` fires.
    """

    def __init__(
        self,
        model_id: str = "eleven_flash_v2_5",
        output_format: str = "mp3_22050_32",
        stability: float = 0.5,
        similarity_boost: float = 0.8,
        style: float = 0.0,
        use_speaker_boost: bool = True,
    ):
        super().__init__()
        self.model_id = model_id
        self.output_format = output_format
        self.stability = stability
        self.similarity_boost = similarity_boost
        self.style = style
        self.use_speaker_boost = use_speaker_boost

        self.client: Optional[ElevenLabs] = None
        self._voices: List[Voice] = []
        self._current: Optional[_Playback] = None
        self._paused = False
        self._lock = threading.Lock()

    def initialize(self) -> None:
        """Create the ElevenLabs client, the mixer, and start loading voices."""
        logger.info("Initializing ElevenLabs engine", model_id=self.model_id)

        api_key = os.getenv("ELEVENLABS_API_KEY")
        if not api_key:
            raise ValueError("ELEVENLABS_API_KEY environment variable not set")

        self.client = ElevenLabs(api_key=api_key)

        pygame.mixer.pre_init(frequency=22050, size=-16, channels=2, buffer=1024)
        pygame.mixer.init()

        threading.Thread(
            target=self._load_voices, daemon=True, name="Voice-Loader"
        ).start()

    def _load_voices(self) -> None:
        try:
            response = self.client.voices.get_all()
        except Exception as e:
            logger.error("Failed to load ElevenLabs voices", error=str(e))
            return

        voices = []
        for item in response.voices:
            labels = item.labels or {}
            voices.append(
                Voice(
                    id=item.voice_id,
                    name=item.name or item.voice_id,
                    lang=labels.get("language", ""),
                )
            )
        self._voices = voices
        logger.info("ElevenLabs voices loaded", count=len(voices))
        self.events.emit("voices_changed")

    def list_voices(self) -> List[Voice]:
        return list(self._voices)

    def speak(self, utterance: Utterance) -> None:
        if not self.client:
            raise RuntimeError("ElevenLabs not initialized")
        if utterance.voice is None:
            raise ValueError("Utterance has no voice")

        self.cancel()

        playback = _Playback(utterance)
        playback.thread = threading.Thread(
            target=self._play, args=(playback,), daemon=True, name="TTS-Playback"
        )
        with self._lock:
            self._current = playback
        playback.thread.start()

    def _play(self, playback: _Playback) -> None:
        utterance = playback.utterance
        settings = VoiceSettings(
            stability=self.stability,
            similarity_boost=self.similarity_boost,
            style=self.style,
            use_speaker_boost=self.use_speaker_boost,
            speed=min(max(utterance.rate, MIN_SPEED), MAX_SPEED),
        )

        try:
            audio = self.client.text_to_speech.convert(
                voice_id=utterance.voice.id,
                text=utterance.text,
                model_id=self.model_id,
                output_format=self.output_format,
                voice_settings=settings,
            )
            if isinstance(audio, (bytes, bytearray)):
                audio_data = bytes(audio)
            else:
                audio_data = b"".join(audio)

            if playback.cancelled.is_set():
                utterance.events.emit("error", "interrupted")
                return

            pygame.mixer.music.load(BytesIO(audio_data))
            pygame.mixer.music.set_volume(min(max(utterance.volume, 0.0), 1.0))
            pygame.mixer.music.play()
            utterance.events.emit("start")

            while pygame.mixer.music.get_busy() or self._paused:
                if playback.cancelled.is_set():
                    break
                time.sleep(0.01)

            if playback.cancelled.is_set():
                utterance.events.emit("error", "interrupted")
            else:
                utterance.events.emit("end")

        except Exception as e:
            logger.error("Error generating speech", error=str(e))
            utterance.events.emit("error", "synthesis-failed")
        finally:
            with self._lock:
                if self._current is playback:
                    self._current = None
                    self._paused = False

    def cancel(self) -> None:
        with self._lock:
            playback = self._current
            self._current = None
            self._paused = False
        if playback:
            logger.debug("Cancelling ElevenLabs playback")
            playback.cancelled.set()
            if pygame.mixer.get_init():
                pygame.mixer.music.stop()

    def pause(self) -> None:
        if self._current and not self._paused:
            pygame.mixer.music.pause()
            self._paused = True

    def resume(self) -> None:
        if self._current and self._paused:
            pygame.mixer.music.unpause()
            self._paused = False

    @property
    def speaking(self) -> bool:
        return self._current is not None

    def stop(self) -> None:
        logger.info("Stopping ElevenLabs engine")
        self.cancel()
        if pygame.mixer.get_init():
            pygame.mixer.quit()
        self.client = None

    def get_status(self) -> dict:
        return {
            "provider": "elevenlabs",
            "model_id": self.model_id,
            "initialized": self.client is not None,
            "voices": len(self._voices),
            "speaking": self.speaking,
            "paused": self._paused,
            "mixer_initialized": pygame.mixer.get_init() is not None,
        }
