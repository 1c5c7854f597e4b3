"""Gemini adapter for the completion port."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Mapping, Optional, Sequence

from google import genai
from google.genai import types

from .errors import CompletionError
from .journey_logging import log_performance
from .models import DEFAULT_MODEL_ID

logger = logging.getLogger("journey.gemini")

SYSTEM_INSTRUCTION = (
    "You are an engagement consultant helping an operator run a discovery journey "
    "with a client organization. Use the custom step context and the conversation "
    "so far. Answer concisely and concretely."
)

SUMMARY_INSTRUCTION = (
    "Summarize the following company research for a discovery engagement. "
    'Respond with JSON only, shaped as {"summary": str, "key_points": [str], "themes": [str]}.'
)


class GeminiCompletionClient:
    """Completion client backed by the Gemini API.

    Environment:
        GEMINI_API_KEY: API key passed to ``genai.Client``.
        JOURNEY_MODEL: default model when a call does not name one.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        *,
        temperature: float = 0.3,
        max_output_tokens: int = 4096,
    ):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY", "")
        self.model = model or os.getenv("JOURNEY_MODEL") or DEFAULT_MODEL_ID
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._client: Optional[genai.Client] = None

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self.api_key:
                raise CompletionError("GEMINI_API_KEY is not set", operation="gemini_client")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def _config(self, system_instruction: str, **overrides: Any) -> types.GenerateContentConfig:
        config = types.GenerateContentConfig(
            temperature=overrides.get("temperature", self.temperature),
            max_output_tokens=overrides.get("max_output_tokens", self.max_output_tokens),
        )
        config.system_instruction = system_instruction
        return config

    def _generate(self, model: str, contents: list, config: types.GenerateContentConfig) -> str:
        client = self._get_client()
        try:
            response = client.models.generate_content(model=model, contents=contents, config=config)
        except Exception as e:
            logger.error(f"Gemini request failed for model {model}: {e}")
            raise CompletionError(f"Gemini request failed: {e}", operation="generate_content", target_id=model) from e
        return response.text or ""

    @log_performance("gemini_complete")
    def complete(self, prompt: str, context: Sequence[Mapping[str, str]], *, model: Optional[str] = None) -> str:
        """Reply to ``prompt`` given prior ``context`` turns."""
        contents = []
        for turn in context:
            # Gemini names the assistant role "model"
            role = "model" if turn.get("role") == "assistant" else "user"
            contents.append(types.Content(role=role, parts=[types.Part(text=turn.get("content", ""))]))
        contents.append(types.Content(role="user", parts=[types.Part(text=prompt)]))
        return self._generate(model or self.model, contents, self._config(SYSTEM_INSTRUCTION))

    @log_performance("gemini_summarize")
    def summarize(self, text: str) -> Dict[str, Any]:
        """Structured summary of research text."""
        if not text or not text.strip():
            raise CompletionError("Nothing to summarize", operation="summarize")
        contents = [types.Content(role="user", parts=[types.Part(text=text)])]
        raw = self._generate(self.model, contents, self._config(SUMMARY_INSTRUCTION, temperature=0.2))
        return parse_summary(raw)


def parse_summary(raw: str) -> Dict[str, Any]:
    """Parse a model summary reply, tolerating fenced JSON."""
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise CompletionError(f"Summary was not valid JSON: {e}", operation="summarize") from e
    if not isinstance(data, dict):
        raise CompletionError("Summary was not a JSON object", operation="summarize")
    return {
        "summary": str(data.get("summary", "")),
        "key_points": [str(item) for item in data.get("key_points", []) or []],
        "themes": [str(item) for item in data.get("themes", []) or []],
    }
