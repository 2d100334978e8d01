"""OpenAI-compatible provider adapter."""
from typing import Dict

from marketplace.providers.base import LLMProvider


class OpenAIProvider(LLMProvider):
    """OpenAI and every other provider that accepts a bearer token."""

    @property
    def name(self) -> str:
        return "openai"

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}
