"""Speech capture engines."""

def register_providers():
    """Register all capture engines."""
    # Import at function level to avoid circular imports
    from ..registry import registry
    from ...config.settings import settings

    def load_whisperkit():
        from .whisperkit import WhisperKitCaptureEngine
        return WhisperKitCaptureEngine

    def load_keyboard():
        from .keyboard import KeyboardCaptureEngine
        return KeyboardCaptureEngine

    registry.register_capture_engine(
        "whisperkit",
        load_whisperkit,
        lambda: settings.get_provider_config("whisperkit"),
    )
    registry.register_capture_engine(
        "keyboard",
        load_keyboard,
        lambda: settings.get_provider_config("keyboard"),
    )
