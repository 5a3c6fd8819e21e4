"""Per-session analysis: sentiment, themes and recommendations."""

import asyncio
import json
import os
import random
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import google.generativeai as genai
import structlog

from ..errors import TransientProviderError
from ..state.models import (
    Provenance,
    Role,
    Sentiment,
    Session,
    SessionAnalysis,
    SpeakingTime,
    ThemeScore,
    utcnow,
)


logger = structlog.get_logger()

ANALYSIS_PROMPT = """You are an expert therapy session analyzer. Analyze the following conversation between a user and an AI therapy assistant named Aura.

CONVERSATION:
{conversation}

Provide a detailed analysis in the following JSON format only, with no additional text:
{{
  "sentiment": {{
    "positive": [0-1 decimal representing percentage],
    "neutral": [0-1 decimal representing percentage],
    "negative": [0-1 decimal representing percentage]
  }},
  "themes": [
    {{"name": "theme name", "strength": [0-1 decimal representing strength]}}
  ],
  "recommendations": [
    "recommendation 1",
    "recommendation 2",
    "recommendation 3"
  ]
}}

Note that the sentiment values should sum to 1 exactly. Include 3-5 main themes with their strength (0-1 scale), and provide 2-3 personalized therapy recommendations based on the conversation content."""

SYNTHETIC_THEMES = (
    "Anxiety", "Stress", "Relationships", "Work-Life Balance",
    "Self-Esteem", "Depression", "Personal Growth", "Sleep Issues",
    "Communication", "Motivation",
)

SYNTHETIC_RECOMMENDATIONS = (
    "Practice deep breathing exercises when feeling anxious",
    "Consider keeping a daily journal to track your thoughts",
    "Schedule regular breaks during your workday to reduce stress",
    "Try progressive muscle relaxation techniques before bedtime",
    "Reach out to friends or family members for social support",
)

_JSON_OBJECT = re.compile(r"{[\s\S]*}")


def estimate_speaking_time(session: Session, seconds_per_char: float = 0.05) -> SpeakingTime:
    """Estimate speaking time per role from message length."""
    user_chars = sum(len(m.content) for m in session.conversation if m.role == Role.USER)
    assistant_chars = sum(len(m.content) for m in session.conversation if m.role == Role.ASSISTANT)
    return SpeakingTime(
        user=round(user_chars * seconds_per_char),
        assistant=round(assistant_chars * seconds_per_char),
    )


def parse_analysis_payload(text: str) -> Dict[str, Any]:
    """Extract and validate the JSON object in a model reply. Raises ``ValueError``."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise ValueError("no JSON object in response")
    data = json.loads(match.group(0))

    sentiment = data.get("sentiment")
    if not isinstance(sentiment, dict):
        raise ValueError("missing sentiment")
    for key in ("positive", "neutral", "negative"):
        if not isinstance(sentiment.get(key), (int, float)):
            raise ValueError(f"sentiment.{key} is not a number")

    themes = data.get("themes") or []
    if not isinstance(themes, list):
        raise ValueError("themes is not a list")
    recommendations = data.get("recommendations") or []
    if not isinstance(recommendations, list):
        raise ValueError("recommendations is not a list")
    return data


class SessionAnalyzer(ABC):
    """Produces a ``SessionAnalysis`` for one session."""

    name: str = "analyzer"

    @abstractmethod
    async def analyze(self, session: Session) -> SessionAnalysis:
        pass


class GeminiSessionAnalyzer(SessionAnalyzer):
    """Asks Gemini for a structured analysis of the conversation."""

    name = "llm"

    def __init__(
        self,
        model_name: str = "gemini-2.0-flash",
        temperature: float = 0.4,
        top_k: int = 32,
        top_p: float = 0.95,
        max_tokens: int = 1024,
        seconds_per_char: float = 0.05,
        timeout: float = 30.0,
        api_key: Optional[str] = None,
        model: Optional[genai.GenerativeModel] = None,
    ):
        self.model_name = model_name
        self.temperature = temperature
        self.top_k = top_k
        self.top_p = top_p
        self.max_tokens = max_tokens
        self.seconds_per_char = seconds_per_char
        self.timeout = timeout
        self.api_key = api_key
        self.model = model

    def initialize(self) -> None:
        api_key = self.api_key or os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
        if not api_key:
            raise TransientProviderError(self.name, "GOOGLE_API_KEY environment variable not set")
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model_name=self.model_name)

    def build_prompt(self, session: Session) -> str:
        conversation = "\n\n".join(
            f"{m.role.value.upper()}: {m.content}" for m in session.conversation
        )
        return ANALYSIS_PROMPT.format(conversation=conversation)

    async def analyze(self, session: Session) -> SessionAnalysis:
        if not session.conversation:
            raise TransientProviderError(self.name, "conversation is empty")
        if self.model is None:
            self.initialize()

        generation_config = genai.GenerationConfig(
            temperature=self.temperature,
            top_k=self.top_k,
            top_p=self.top_p,
            max_output_tokens=self.max_tokens,
        )
        try:
            response = await asyncio.wait_for(
                self.model.generate_content_async(self.build_prompt(session),
                                                  generation_config=generation_config),
                timeout=self.timeout,
            )
            data = parse_analysis_payload(response.text)
        except asyncio.TimeoutError as e:
            raise TransientProviderError(self.name, f"timed out after {self.timeout}s", e) from e
        except Exception as e:
            raise TransientProviderError(self.name, str(e), e) from e

        sentiment = data["sentiment"]
        themes = [
            ThemeScore(name=str(t["name"]).strip(), strength=round(float(t.get("strength", 0.0)), 2))
            for t in data.get("themes") or []
            if isinstance(t, dict) and t.get("name")
        ]
        return SessionAnalysis(
            sentiment=Sentiment.normalized(sentiment["positive"], sentiment["neutral"], sentiment["negative"]),
            themes=themes,
            speaking_time=estimate_speaking_time(session, self.seconds_per_char),
            recommendations=[str(r) for r in data.get("recommendations") or [] if r],
            last_updated=utcnow(),
            provenance=Provenance.LLM,
        )


class SyntheticSessionAnalyzer(SessionAnalyzer):
    """
    Plausible placeholder analysis, reproducible per session id.

    Marked ``synthetic`` so aggregation can leave it out.
    """

    name = "synthetic"

    def __init__(self, seed: int = 1729):
        self.seed = seed

    async def analyze(self, session: Session) -> SessionAnalysis:
        rng = random.Random(f"{self.seed}:{session.id}")

        positive = rng.random() * 0.6 + 0.2
        remaining = 1 - positive
        negative = rng.random() * remaining * 0.7
        neutral = remaining - negative

        themes = sorted(
            (ThemeScore(name=name, strength=round(rng.random() * 0.8 + 0.2, 2))
             for name in rng.sample(SYNTHETIC_THEMES, rng.randint(3, 5))),
            key=lambda t: -t.strength,
        )

        length = session.duration_seconds if session.duration_seconds is not None else 600.0
        speaking_time = SpeakingTime(
            user=float(int(length * (rng.random() * 0.3 + 0.2))),
            assistant=float(int(length * (rng.random() * 0.3 + 0.2))),
        )

        return SessionAnalysis(
            sentiment=Sentiment.normalized(positive, neutral, negative),
            themes=themes,
            speaking_time=speaking_time,
            recommendations=rng.sample(SYNTHETIC_RECOMMENDATIONS, rng.randint(2, 3)),
            last_updated=utcnow(),
            provenance=Provenance.SYNTHETIC,
        )
