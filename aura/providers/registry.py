"""Provider registry for dynamic provider loading."""

from typing import Dict, Type, Callable, Any, Optional
import structlog

from .stt.base import STTProvider
from .ai.base import AIProvider
from .tts.base import TTSProvider


logger = structlog.get_logger()

ConfigGetter = Callable[[], Dict[str, Any]]


class ProviderRegistry:
    """Registry of provider implementations, keyed by kind and name."""

    KINDS = ("stt", "ai", "tts")

    def __init__(self):
        self._providers: Dict[str, Dict[str, type]] = {kind: {} for kind in self.KINDS}
        self._provider_configs: Dict[str, ConfigGetter] = {}

    def _register(self, kind: str, name: str, provider_class: type,
                  config_getter: Optional[ConfigGetter]) -> None:
        self._providers[kind][name] = provider_class
        if config_getter:
            self._provider_configs[f"{kind}:{name}"] = config_getter
        logger.debug("Registered provider", kind=kind, name=name,
                     class_name=provider_class.__name__)

    def _create(self, kind: str, name: str, **kwargs) -> Any:
        if name not in self._providers[kind]:
            raise ValueError(f"Unknown {kind.upper()} provider: {name}")

        config_key = f"{kind}:{name}"
        config: Dict[str, Any] = {}
        if config_key in self._provider_configs:
            config = dict(self._provider_configs[config_key]())
        # explicit keyword arguments win over configured values
        config.update(kwargs)
        return self._providers[kind][name](**config)

    def register_stt_provider(self, name: str, provider_class: Type[STTProvider],
                              config_getter: Optional[ConfigGetter] = None) -> None:
        self._register("stt", name, provider_class, config_getter)

    def register_ai_provider(self, name: str, provider_class: Type[AIProvider],
                             config_getter: Optional[ConfigGetter] = None) -> None:
        self._register("ai", name, provider_class, config_getter)

    def register_tts_provider(self, name: str, provider_class: Type[TTSProvider],
                              config_getter: Optional[ConfigGetter] = None) -> None:
        self._register("tts", name, provider_class, config_getter)

    def get_stt_provider(self, name: str, **kwargs) -> STTProvider:
        return self._create("stt", name, **kwargs)

    def get_ai_provider(self, name: str, **kwargs) -> AIProvider:
        return self._create("ai", name, **kwargs)

    def get_tts_provider(self, name: str, **kwargs) -> TTSProvider:
        return self._create("tts", name, **kwargs)

    def list_stt_providers(self) -> list[str]:
        return list(self._providers["stt"])

    def list_ai_providers(self) -> list[str]:
        return list(self._providers["ai"])

    def list_tts_providers(self) -> list[str]:
        return list(self._providers["tts"])

    def clear(self) -> None:
        for providers in self._providers.values():
            providers.clear()
        self._provider_configs.clear()


# Global registry instance
registry = ProviderRegistry()
