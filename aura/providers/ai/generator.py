"""Reply generation with fallback to a fixed apology."""

from typing import List, Optional

from ..chain import ChainResult, FallbackChain, Tier
from ...state.models import Message
from .base import AIProvider, AIResponse
from .static import StaticResponseProvider


class ResponseGenerator:
    """Runs generation providers in order; the last tier always answers."""

    def __init__(
        self,
        providers: List[AIProvider],
        apology: Optional[str] = None,
        greeting_prompt: Optional[str] = None,
        fallback_greeting: Optional[str] = None,
        metrics=None,
    ):
        self.providers = list(providers)
        self.greeting_prompt = greeting_prompt
        static = StaticResponseProvider(apology) if apology else StaticResponseProvider()
        tiers = [Tier(p.name, p.generate, accept=lambda r: bool(r.text.strip())) for p in self.providers]
        tiers.append(Tier(static.name, static.generate))
        self.chain = FallbackChain("generation", tiers, metrics=metrics)

        greeting_static = StaticResponseProvider(fallback_greeting) if fallback_greeting else static
        greeting_tiers = tiers[:-1] + [Tier(greeting_static.name, greeting_static.generate)]
        self.greeting_chain = FallbackChain("greeting", greeting_tiers, metrics=metrics)

    async def respond(self, history: List[Message]) -> ChainResult[AIResponse]:
        """Generate the reply to the conversation's latest user message."""
        return await self.chain.run(history)

    async def greet(self, history: Optional[List[Message]] = None) -> ChainResult[AIResponse]:
        """Generate the opening line of a session."""
        return await self.greeting_chain.run(history or [], self.greeting_prompt)
