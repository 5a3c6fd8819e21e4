"""Base interface for AI providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from ...state.models import Message


@dataclass
class AIResponse:
    """A complete generated reply."""
    text: str
    provider: str
    metadata: dict = field(default_factory=dict)


class AIProvider(ABC):
    """Abstract base class for AI providers."""

    name: str = "ai"

    def __init__(self, system_prompt: str):
        self.system_prompt = system_prompt

    @abstractmethod
    async def generate(self, history: List[Message], prompt: Optional[str] = None) -> AIResponse:
        """
        Generate the assistant's next reply.

        Args:
            history: The conversation so far, oldest first
            prompt: An instruction used instead of the conversation's last user turn

        Raises:
            TransientProviderError: the provider could not produce a reply
        """
        pass

    def get_status(self) -> dict:
        """Get current status of the AI provider."""
        return {"provider": self.name}
