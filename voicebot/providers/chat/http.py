"""Chat client for the `/api/chat` style HTTP endpoint."""

from typing import Optional, Sequence
import httpx
import structlog

from .base import ChatClient
from ...core.cancellation import CancellationToken, run_cancellable
from ...core.errors import BackendConfigurationError, BackendRequestError, RequestCancelled
from ...state.conversation_log import Turn


logger = structlog.get_logger()


class HttpChatClient(ChatClient):
    """
    Posts ``{message, conversationHistory}`` to a chat endpoint.

    A successful response looks like ``{success, response, timestamp}``; a
    failure carries ``{error, details?}`` with an HTTP error status. Errors whose
    message contains ``config_error_marker`` are configuration problems.
    """

    def __init__(
        self,
        endpoint_url: str = "http://localhost:3000/api/chat",
        timeout: float = 30.0,
        config_error_marker: str = "API key",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self.config_error_marker = config_error_marker
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self.requests_sent = 0
        self.requests_cancelled = 0

    async def send(
        self, utterance: str, history: Sequence[Turn], token: CancellationToken
    ) -> str:
        if not utterance:
            raise BackendRequestError("Message is required")

        payload = {
            "message": utterance,
            "conversationHistory": [turn.to_dict() for turn in history],
        }
        self.requests_sent += 1
        logger.debug(
            "Sending chat request",
            endpoint=self.endpoint_url,
            history_length=len(history),
        )

        try:
            response = await run_cancellable(
                self._client.post(self.endpoint_url, json=payload), token
            )
        except httpx.HTTPError as e:
            logger.error("Chat request failed", error=str(e))
            raise BackendRequestError(
                "Failed to reach chat endpoint", details=str(e)
            ) from e
        except RequestCancelled:
            self.requests_cancelled += 1
            raise

        return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_success and isinstance(data, dict) and data.get("response"):
            return data["response"]

        error = data.get("error") if isinstance(data, dict) else None
        details = data.get("details") if isinstance(data, dict) else None
        message = error or f"Chat endpoint returned HTTP {response.status_code}"

        logger.error(
            "Chat endpoint error",
            status_code=response.status_code,
            error=message,
            details=details,
        )
        if error and self.config_error_marker in error:
            raise BackendConfigurationError(message, details=details)
        raise BackendRequestError(
            message, details=details, status_code=response.status_code
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def get_status(self) -> dict:
        return {
            "provider": "http",
            "endpoint_url": self.endpoint_url,
            "requests_sent": self.requests_sent,
            "requests_cancelled": self.requests_cancelled,
        }
