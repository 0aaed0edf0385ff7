"""Microphone acquisition contract."""

from abc import ABC, abstractmethod
import structlog


logger = structlog.get_logger()


class MicrophoneAccess(ABC):
    """Permission-gated audio input acquisition."""

    @abstractmethod
    async def request(self) -> None:
        """
        Make sure audio input can be captured.

        Raises:
            PermissionDeniedError: access was refused
            MicrophoneError: any other acquisition failure
        """
        pass


class NullMicrophone(MicrophoneAccess):
    """Always grants access; used when input does not come from audio."""

    async def request(self) -> None:
        logger.debug("No microphone required")
