"""Chat backends."""


def register_providers():
    """Register all chat clients."""
    # Import at function level to avoid circular imports
    from ..registry import registry
    from ...config.settings import settings

    def load_http():
        from .http import HttpChatClient
        return HttpChatClient

    def load_gemini():
        from .gemini import GeminiChatClient
        return GeminiChatClient

    registry.register_chat_client(
        "http", load_http, lambda: settings.get_provider_config("http")
    )
    registry.register_chat_client(
        "gemini", load_gemini, lambda: settings.get_provider_config("gemini")
    )
