"""Base interface for chat backends."""

from abc import ABC, abstractmethod
from typing import Sequence

from ...core.cancellation import CancellationToken
from ...state.conversation_log import Turn


class ChatClient(ABC):
    """Stateless request/response chat backend."""

    @abstractmethod
    async def send(
        self, utterance: str, history: Sequence[Turn], token: CancellationToken
    ) -> str:
        """
        Generate a reply to ``utterance``.

        Args:
            utterance: The new user text
            history: Most recent prior turns, oldest first
            token: Cancels the request when fired

        Returns:
            The complete reply text

        Raises:
            RequestCancelled: the token fired
            BackendConfigurationError: the backend is misconfigured
            BackendRequestError: any other failure
        """
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        pass

    @abstractmethod
    def get_status(self) -> dict:
        """Get current status of the chat client."""
        pass
