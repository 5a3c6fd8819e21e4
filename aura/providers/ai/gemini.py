"""Gemini AI provider implementation."""

import asyncio
import os
from typing import Any, Dict, List, Optional
import google.generativeai as genai
import structlog

from ...errors import TransientProviderError
from ...state.models import Message, Role
from .base import AIProvider, AIResponse


logger = structlog.get_logger()


class GeminiProvider(AIProvider):
    """Gemini replies over a sliding window of the conversation."""

    name = "gemini"

    def __init__(
        self,
        system_prompt: str,
        model_name: str = "gemini-2.0-flash",
        temperature: float = 0.7,
        top_k: int = 40,
        top_p: float = 0.95,
        max_tokens: int = 300,
        history_window: int = 5,
        timeout: float = 30.0,
        api_key: Optional[str] = None,
        model: Optional[genai.GenerativeModel] = None,
    ):
        super().__init__(system_prompt)
        self.model_name = model_name
        self.temperature = temperature
        self.top_k = top_k
        self.top_p = top_p
        self.max_tokens = max_tokens
        self.history_window = history_window
        self.timeout = timeout
        self.api_key = api_key
        self.model = model

    def initialize(self) -> None:
        """Configure the Gemini API and create the model."""
        api_key = self.api_key or os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
        if not api_key:
            raise TransientProviderError(self.name, "GOOGLE_API_KEY environment variable not set")

        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(
            model_name=self.model_name, system_instruction=self.system_prompt
        )
        logger.info("Gemini client initialized", model=self.model_name)

    def build_contents(self, history: List[Message], prompt: Optional[str] = None) -> List[Dict[str, Any]]:
        """Map the recent conversation to Gemini contents (roles ``user`` and ``model``)."""
        window = history[-self.history_window:] if self.history_window > 0 else []
        contents = [
            {"role": "user" if m.role == Role.USER else "model", "parts": [m.content]}
            for m in window
            if m.content
        ]
        # a request must open with a user turn
        while contents and contents[0]["role"] == "model":
            contents.pop(0)
        if prompt:
            contents.append({"role": "user", "parts": [prompt]})
        return contents

    async def generate(self, history: List[Message], prompt: Optional[str] = None) -> AIResponse:
        if self.model is None:
            self.initialize()

        contents = self.build_contents(history, prompt)
        if not contents:
            raise TransientProviderError(self.name, "nothing to respond to")

        generation_config = genai.GenerationConfig(
            temperature=self.temperature,
            top_k=self.top_k,
            top_p=self.top_p,
            max_output_tokens=self.max_tokens,
        )

        try:
            response = await asyncio.wait_for(
                self.model.generate_content_async(contents, generation_config=generation_config),
                timeout=self.timeout,
            )
            text = (response.text or "").strip()
        except asyncio.TimeoutError as e:
            raise TransientProviderError(self.name, f"timed out after {self.timeout}s", e) from e
        except Exception as e:
            raise TransientProviderError(self.name, str(e), e) from e

        if not text:
            raise TransientProviderError(self.name, "empty response")

        metadata = {}
        candidates = getattr(response, "candidates", None) or []
        if candidates and getattr(candidates[0], "finish_reason", None) is not None:
            metadata["finish_reason"] = str(candidates[0].finish_reason)

        logger.debug("Gemini response generated", chars=len(text), words=len(text.split()))
        return AIResponse(text=text, provider=self.name, metadata=metadata)

    def get_status(self) -> dict:
        return {
            "provider": self.name,
            "model": self.model_name,
            "initialized": self.model is not None,
            "history_window": self.history_window,
        }
