"""Tests for voice activity endpointing."""

from unittest.mock import patch

import numpy as np

from voicebot.utils.endpointing import SPEECH_END, SPEECH_START, SpeechEndpointer


FRAME = 480  # 30ms at 16kHz


def loud(frames: int) -> np.ndarray:
    return np.full(FRAME * frames, 0.5, dtype=np.float32)


def silence(frames: int) -> np.ndarray:
    return np.zeros(FRAME * frames, dtype=np.float32)


class TestSpeechEndpointer:
    """Utterance boundary detection."""

    def setup_method(self):
        self.vad_patcher = patch("voicebot.utils.endpointing.webrtcvad.Vad")
        vad_class = self.vad_patcher.start()
        # Any non-zero sample counts as voice
        vad_class.return_value.is_speech.side_effect = lambda audio, rate: any(audio)
        self.endpointer = SpeechEndpointer()

    def teardown_method(self):
        self.vad_patcher.stop()

    def test_speech_start_needs_sustained_voice(self):
        """Speech starts only after ten mostly-voiced frames."""
        events = [self.endpointer.process_frame(frame) for frame in loud(10).reshape(10, FRAME)]

        assert events[:9] == [None] * 9
        assert events[9] == SPEECH_START
        assert self.endpointer.in_speech is True

    def test_speech_end_after_silence(self):
        """Speech ends after the configured silence duration."""
        assert self.endpointer.process_block(loud(10)) == [SPEECH_START]

        assert self.endpointer.process_block(silence(22)) == []
        assert self.endpointer.process_block(silence(1)) == [SPEECH_END]
        assert self.endpointer.in_speech is False

    def test_block_buffering(self):
        """Partial frames are kept until the rest of the frame arrives."""
        block = loud(10)

        assert self.endpointer.process_block(block[: FRAME // 2]) == []
        assert self.endpointer.process_block(block[FRAME // 2 :]) == [SPEECH_START]

    def test_silence_never_starts_speech(self):
        """Silence alone produces no events."""
        assert self.endpointer.process_block(silence(50)) == []
        assert self.endpointer.in_speech is False

    def test_reset(self):
        """Reset drops speech state and buffered audio."""
        self.endpointer.process_block(loud(10))
        self.endpointer.process_block(loud(1)[: FRAME // 2])

        self.endpointer.reset()

        assert self.endpointer.in_speech is False
        assert len(self.endpointer._pending) == 0
        assert self.endpointer.process_block(silence(30)) == []
