"""Direct Anthropic API integration for LLM operations."""

import json
import os
from typing import Any, Dict, List, Optional

from anthropic import Anthropic

from core.errors import LLMNotAvailableError

DEFAULT_MODEL = "claude-3-5-sonnet-latest"


class LLMClientWrapper:
    """Wrapper around Anthropic client used by the interpretation service."""

    def __init__(self, client: Anthropic, model: Optional[str] = None):
        self.client = client
        self.model = model or os.getenv("LLM_MODEL", DEFAULT_MODEL)

    @property
    def messages(self):
        """Expose the underlying client's messages API for direct access."""
        return self.client.messages

    def invoke(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Invoke LLM with messages.

        Args:
            messages: List of {"role": "user"|"assistant", "content": "..."}
            system: Optional system prompt
            temperature: Override default temperature (0.0-1.0)
            max_tokens: Maximum tokens in response

        Returns:
            LLM response text
        """
        params: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or 4096,
            "messages": messages,
        }

        if system:
            params["system"] = system

        if temperature is not None:
            params["temperature"] = temperature

        response = self.client.messages.create(**params)
        return _response_text(response)

    def invoke_with_prompt(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: Optional[float] = None,
        max_tokens: int = 4096,
    ) -> str:
        """Simplified invoke with system and user prompts."""
        return self.invoke(
            messages=[{"role": "user", "content": user_prompt}],
            system=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
        )


def _response_text(response: Any) -> str:
    if hasattr(response, "content") and response.content:
        text_parts = []
        for block in response.content:
            if hasattr(block, "text"):
                text_parts.append(block.text)
            elif isinstance(block, dict) and "text" in block:
                text_parts.append(block["text"])
        return "".join(text_parts)
    return ""


def parse_json_response(response: str) -> Any:
    """Parse a JSON reply, tolerating a surrounding markdown code fence."""
    cleaned_response = response.strip()
    if cleaned_response.startswith("```"):
        lines = cleaned_response.split("\n")
        if len(lines) > 2:
            cleaned_response = "\n".join(lines[1:-1])
    return json.loads(cleaned_response)


_client: Optional[Anthropic] = None
_wrapper: Optional[LLMClientWrapper] = None


def get_llm_client() -> LLMClientWrapper:
    """Get or create Anthropic client wrapper."""
    global _client, _wrapper
    if _client is None:
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise LLMNotAvailableError("ANTHROPIC_API_KEY environment variable not set")
        timeout = float(os.getenv("INTERPRETER_TIMEOUT", "60"))
        _client = Anthropic(api_key=api_key, timeout=timeout)
        _wrapper = LLMClientWrapper(_client)
    return _wrapper


def is_llm_available() -> bool:
    """Check if LLM is configured."""
    return bool(os.getenv("ANTHROPIC_API_KEY"))
