"""Fixed reply used when no model can answer."""

from typing import List, Optional

from ...state.models import Message
from .base import AIProvider, AIResponse


APOLOGY = "Sorry, I couldn't generate a response. Please try again later."


class StaticResponseProvider(AIProvider):
    """Always answers with the same text."""

    name = "static"

    def __init__(self, text: str = APOLOGY):
        super().__init__(system_prompt="")
        self.text = text

    async def generate(self, history: List[Message], prompt: Optional[str] = None) -> AIResponse:
        return AIResponse(text=self.text, provider=self.name)
