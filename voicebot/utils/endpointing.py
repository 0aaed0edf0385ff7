"""Voice activity endpointing for segmenting captured audio into utterances."""

import collections
from typing import Deque, List, Optional
import numpy as np
import webrtcvad
import structlog


logger = structlog.get_logger()

SPEECH_START = "start"
SPEECH_END = "end"


class SpeechEndpointer:
    """
    Detects where utterances start and end using webrtcvad plus a dynamic
    level threshold.

    Timing is counted in frames rather than wall-clock time so a given audio
    stream always segments the same way.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        frame_duration_ms: int = 30,
        vad_aggressiveness: int = 3,
        voice_threshold: float = 0.7,
        silence_duration_ms: int = 700,
        min_level_threshold: float = 0.01,
    ):
        self.sample_rate = sample_rate
        self.frame_duration_ms = frame_duration_ms
        self.frame_size = int(sample_rate * frame_duration_ms / 1000)
        self.voice_threshold = voice_threshold
        self.silence_frames_to_end = max(1, silence_duration_ms // frame_duration_ms)
        self.min_level_threshold = min_level_threshold

        self.vad = webrtcvad.Vad(vad_aggressiveness)

        self.voice_frames: Deque[bool] = collections.deque(maxlen=100)
        self.audio_levels: Deque[float] = collections.deque(maxlen=50)
        self.noise_floor = 0.0
        self.dynamic_threshold = min_level_threshold
        self.in_speech = False
        self._silent_run = 0
        self._frame_count = 0
        self._pending = np.zeros(0, dtype=np.float32)

    def reset(self) -> None:
        self.voice_frames.clear()
        self.in_speech = False
        self._silent_run = 0
        self._pending = np.zeros(0, dtype=np.float32)

    def process_block(self, audio_data: np.ndarray) -> List[str]:
        """Feed an arbitrary-length block; returns the boundary events it contains."""
        data = np.concatenate([self._pending, audio_data.astype(np.float32)])
        events = []
        offset = 0
        while offset + self.frame_size <= len(data):
            event = self.process_frame(data[offset : offset + self.frame_size])
            if event:
                events.append(event)
            offset += self.frame_size
        self._pending = data[offset:]
        return events

    def process_frame(self, audio_data: np.ndarray) -> Optional[str]:
        """
        Process one frame.

        Returns SPEECH_START on the silence-to-voice transition, SPEECH_END
        once enough consecutive silence follows speech, otherwise None.
        """
        level = float(np.sqrt(np.mean(audio_data.astype(np.float32) ** 2)))
        self.audio_levels.append(level)

        self._frame_count += 1
        if self._frame_count % 20 == 0:
            self._update_dynamic_threshold()

        if len(audio_data) < self.frame_size:
            audio_data = np.pad(audio_data, (0, self.frame_size - len(audio_data)))
        else:
            audio_data = audio_data[: self.frame_size]

        audio_bytes = (np.clip(audio_data, -1.0, 1.0) * 32767).astype(np.int16).tobytes()
        try:
            is_voice = self.vad.is_speech(audio_bytes, self.sample_rate)
        except Exception as e:
            logger.error("VAD processing error", error=str(e))
            return None

        voice_detected = is_voice and level > self.dynamic_threshold
        self.voice_frames.append(voice_detected)

        if not self.in_speech:
            if len(self.voice_frames) >= 10:
                recent = list(self.voice_frames)[-10:]
                if sum(recent) / 10 >= self.voice_threshold:
                    self.in_speech = True
                    self._silent_run = 0
                    logger.debug(
                        "Speech started",
                        audio_level=level,
                        threshold=self.dynamic_threshold,
                    )
                    return SPEECH_START
            return None

        if voice_detected:
            self._silent_run = 0
            return None

        self._silent_run += 1
        if self._silent_run >= self.silence_frames_to_end:
            self.in_speech = False
            self._silent_run = 0
            self.voice_frames.clear()
            logger.debug("Speech ended")
            return SPEECH_END
        return None

    def _update_dynamic_threshold(self) -> None:
        """Keep the level threshold above the observed noise floor."""
        if len(self.audio_levels) < 10:
            return

        recent_levels = sorted(self.audio_levels)
        self.noise_floor = float(np.mean(recent_levels[: len(recent_levels) // 4]))
        self.dynamic_threshold = max(self.noise_floor * 3.0, self.min_level_threshold)
