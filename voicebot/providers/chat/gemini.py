"""Gemini chat client calling the model directly."""

import os
from typing import Dict, List, Optional, Sequence
import google.generativeai as genai
import structlog

from .base import ChatClient
from ...core.cancellation import CancellationToken, run_cancellable
from ...core.errors import BackendConfigurationError, BackendRequestError, RequestCancelled
from ...state.conversation_log import Role, Turn


logger = structlog.get_logger()


def build_history(turns: Sequence[Turn]) -> List[Dict]:
    """
    Convert turns to Gemini chat history.

    Gemini requires the history to start with a user message, so any leading
    bot turns (such as the introduction) are dropped.
    """
    history = [
        {
            "role": "model" if turn.role == Role.BOT else "user",
            "parts": [turn.content],
        }
        for turn in turns
    ]
    first_user = next(
        (i for i, item in enumerate(history) if item["role"] == "user"), len(history)
    )
    return history[first_user:]


class GeminiChatClient(ChatClient):
    """
    Gemini chat backend.

    Each call starts a fresh chat seeded with the supplied history, so the
    client itself stays stateless.
    """

    def __init__(
        self,
        system_prompt: str,
        model_name: str = "gemini-2.0-flash",
        temperature: float = 0.7,
        max_tokens: int = 1024,
        api_key: Optional[str] = None,
    ):
        self.system_prompt = system_prompt
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.model: Optional[genai.GenerativeModel] = None

    def _ensure_model(self) -> genai.GenerativeModel:
        if self.model:
            return self.model

        api_key = (
            self.api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        )
        if not api_key:
            raise BackendConfigurationError("Gemini API key not configured")

        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(
            model_name=self.model_name, system_instruction=self.system_prompt
        )
        logger.info("Gemini client initialized", model=self.model_name)
        return self.model

    async def send(
        self, utterance: str, history: Sequence[Turn], token: CancellationToken
    ) -> str:
        if not utterance:
            raise BackendRequestError("Message is required")

        model = self._ensure_model()
        chat = model.start_chat(history=build_history(history))
        generation_config = genai.GenerationConfig(
            temperature=self.temperature,
            max_output_tokens=self.max_tokens,
        )

        try:
            response = await run_cancellable(
                chat.send_message_async(utterance, generation_config=generation_config),
                token,
            )
            text = response.text
        except RequestCancelled:
            raise
        except Exception as e:
            logger.error("Gemini API error", error=str(e))
            raise BackendRequestError(
                "Failed to get response from Gemini", details=str(e)
            ) from e

        if not text:
            raise BackendRequestError("Gemini returned an empty response")
        return text

    def get_status(self) -> dict:
        return {
            "provider": "gemini",
            "model": self.model_name,
            "initialized": self.model is not None,
        }
