"""AI providers."""

from .base import AIProvider, AIResponse
from .generator import ResponseGenerator


def register_providers():
    """Register all AI providers."""
    # Import at function level to avoid circular imports
    from ..registry import registry
    from ...config.settings import settings
    from .gemini import GeminiProvider
    from .static import StaticResponseProvider

    registry.register_ai_provider(
        "gemini", GeminiProvider, lambda: settings.get_provider_config("gemini")
    )
    registry.register_ai_provider(
        "static", StaticResponseProvider, lambda: {"text": settings.system_prompts.apology}
    )


__all__ = ["AIProvider", "AIResponse", "ResponseGenerator", "register_providers"]
