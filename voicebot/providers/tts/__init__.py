"""Speech synthesis engines."""


def register_providers():
    """Register all synthesis engines."""
    # Import at function level to avoid circular imports
    from ..registry import registry
    from ...config.settings import settings

    def load_elevenlabs():
        from .elevenlabs import ElevenLabsSynthesisEngine
        return ElevenLabsSynthesisEngine

    registry.register_synthesis_engine(
        "elevenlabs",
        load_elevenlabs,
        lambda: settings.get_provider_config("elevenlabs"),
    )
