"""Placeholder transcription used when no recognizer is available."""

import random
from typing import Optional, Sequence

from .base import STTProvider, Transcript


EXAMPLE_UTTERANCES = (
    "I've been feeling anxious lately",
    "I'm having trouble sleeping at night",
    "Work has been really stressful for me",
    "I had an argument with my friend and I feel bad",
    "I'm worried about my future",
)


class PlaceholderSTTProvider(STTProvider):
    """Returns an example utterance, flagged so callers can tell it was not heard."""

    name = "placeholder"

    def __init__(self, utterances: Sequence[str] = EXAMPLE_UTTERANCES, rng: Optional[random.Random] = None):
        if not utterances:
            raise ValueError("At least one placeholder utterance is required")
        self.utterances = tuple(utterances)
        self.rng = rng or random.Random()

    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav") -> Transcript:
        return Transcript(
            text=self.rng.choice(self.utterances),
            provider=self.name,
            is_placeholder=True,
        )
