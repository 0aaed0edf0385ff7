"""Provider contracts and implementations for capture, synthesis and chat."""

from .registry import registry

# Defer provider registration to avoid circular imports
def _register_all_providers():
    """Register all provider types."""
    from . import stt, tts, chat
    stt.register_providers()
    tts.register_providers()
    chat.register_providers()

# Register providers after module initialization
_register_all_providers()

__all__ = ['registry']
