"""Provider registry for dynamic provider loading."""

from typing import Dict, Callable, Any, Optional
import structlog

from .stt.base import CaptureEngine
from .tts.base import SynthesisEngine
from .chat.base import ChatClient


logger = structlog.get_logger()

# Loaders import the implementation on first use, so optional audio
# libraries are only needed for the engines actually selected.
Loader = Callable[[], type]
ConfigGetter = Callable[[], Dict[str, Any]]


class ProviderRegistry:
    """Registry for capture engines, synthesis engines and chat clients."""

    KINDS = ("capture", "synthesis", "chat")

    def __init__(self):
        self._loaders: Dict[str, Dict[str, Loader]] = {kind: {} for kind in self.KINDS}
        self._provider_configs: Dict[str, ConfigGetter] = {}

    def _register(
        self, kind: str, name: str, loader: Loader, config_getter: Optional[ConfigGetter]
    ) -> None:
        self._loaders[kind][name] = loader
        if config_getter:
            self._provider_configs[f"{kind}:{name}"] = config_getter
        logger.debug("Registered provider", kind=kind, name=name)

    def _create(self, kind: str, name: str, **kwargs):
        if name not in self._loaders[kind]:
            raise ValueError(f"Unknown {kind} provider: {name}")

        provider_class = self._loaders[kind][name]()
        config_key = f"{kind}:{name}"

        # Explicit keyword arguments win over configured values
        config: Dict[str, Any] = {}
        if config_key in self._provider_configs:
            config = self._provider_configs[config_key]()
        config.update(kwargs)

        return provider_class(**config)

    def register_capture_engine(
        self, name: str, loader: Loader, config_getter: Optional[ConfigGetter] = None
    ) -> None:
        """Register a speech capture engine."""
        self._register("capture", name, loader, config_getter)

    def register_synthesis_engine(
        self, name: str, loader: Loader, config_getter: Optional[ConfigGetter] = None
    ) -> None:
        """Register a speech synthesis engine."""
        self._register("synthesis", name, loader, config_getter)

    def register_chat_client(
        self, name: str, loader: Loader, config_getter: Optional[ConfigGetter] = None
    ) -> None:
        """Register a chat client."""
        self._register("chat", name, loader, config_getter)

    def get_capture_engine(self, name: str, **kwargs) -> CaptureEngine:
        return self._create("capture", name, **kwargs)

    def get_synthesis_engine(self, name: str, **kwargs) -> SynthesisEngine:
        return self._create("synthesis", name, **kwargs)

    def get_chat_client(self, name: str, **kwargs) -> ChatClient:
        return self._create("chat", name, **kwargs)

    def list_capture_engines(self) -> list[str]:
        return list(self._loaders["capture"].keys())

    def list_synthesis_engines(self) -> list[str]:
        return list(self._loaders["synthesis"].keys())

    def list_chat_clients(self) -> list[str]:
        return list(self._loaders["chat"].keys())

    def clear(self) -> None:
        """Clear all registered providers."""
        for loaders in self._loaders.values():
            loaders.clear()
        self._provider_configs.clear()


# Global registry instance
registry = ProviderRegistry()
