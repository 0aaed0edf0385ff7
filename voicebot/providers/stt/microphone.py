"""Microphone access check backed by sounddevice."""

import asyncio
import numpy as np
import sounddevice as sd
import structlog

from ..microphone import MicrophoneAccess
from ...core.errors import MicrophoneError, PermissionDeniedError


logger = structlog.get_logger()

_DENIAL_MARKERS = ("permission", "not allowed", "denied", "not-allowed")


class SoundDeviceMicrophone(MicrophoneAccess):
    """Probes the default input device by briefly opening a stream."""

    def __init__(self, sample_rate: int = 16000, channels: int = 1):
        self.sample_rate = sample_rate
        self.channels = channels

    def _check_device(self) -> str:
        device = sd.query_devices(kind="input")
        with sd.InputStream(
            samplerate=self.sample_rate, channels=self.channels, dtype=np.float32
        ):
            pass
        return device["name"]

    async def request(self) -> None:
        try:
            name = await asyncio.to_thread(self._check_device)
        except (sd.PortAudioError, ValueError) as e:
            message = str(e)
            if any(marker in message.lower() for marker in _DENIAL_MARKERS):
                logger.warning("Microphone permission denied", error=message)
                raise PermissionDeniedError(message) from e
            logger.error("Failed to access microphone", error=message)
            raise MicrophoneError(message) from e

        logger.info("Microphone available", device=name)
