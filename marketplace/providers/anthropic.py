"""Anthropic Messages API provider adapter."""
from typing import Dict

from marketplace.config import settings
from marketplace.providers.base import LLMProvider


class AnthropicProvider(LLMProvider):
    """Anthropic-style upstream: `x-api-key` plus a pinned API version."""

    @property
    def name(self) -> str:
        return "anthropic"

    def auth_headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.token,
            "anthropic-version": settings.anthropic_version,
        }
