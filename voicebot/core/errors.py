"""Error taxonomy shared by the providers, services and the coordinator."""

from enum import Enum
from typing import Optional


class VoicebotError(Exception):
    """Base class for all voicebot errors."""


class RequestCancelled(VoicebotError):
    """
    A chat request was superseded or the call ended.

    Not a failure: callers drop the result silently.
    """


class ChatError(VoicebotError):
    """A chat request failed."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.details = details


class BackendConfigurationError(ChatError):
    """The chat backend is misconfigured, e.g. a missing API key."""


class BackendRequestError(ChatError):
    """Network, HTTP or provider failure while talking to the chat backend."""

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class SpeechSynthesisError(VoicebotError):
    """Speech output failed for a reason other than interruption."""


class MicrophoneError(VoicebotError):
    """The microphone could not be acquired."""


class PermissionDeniedError(MicrophoneError):
    """Microphone access was denied by the user or the platform."""


class SpeechOutcome(Enum):
    """How a ``speak()`` call finished."""

    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
