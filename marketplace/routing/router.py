"""Provider selection for a resolved shadow model."""
from typing import Optional

import httpx

from marketplace.config import settings
from marketplace.providers.anthropic import AnthropicProvider
from marketplace.providers.base import LLMProvider
from marketplace.providers.openai import OpenAIProvider
from marketplace.registry.shadow_models import ResolvedModel
from marketplace.routing.rules import build_provider_url


def select_provider(
    model: ResolvedModel,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LLMProvider:
    """
    Build the provider adapter for a model.

    The wire format comes from the model's base URL (or its explicit
    provider_format); see build_provider_url for the rules.
    """
    endpoint = build_provider_url(model.provider_base_url, model.provider_format)
    provider_class = AnthropicProvider if endpoint.is_anthropic else OpenAIProvider
    return provider_class(
        endpoint=endpoint,
        token=model.provider_token,
        timeout=settings.provider_timeout,
        stream_read_timeout=settings.stream_read_timeout,
        transport=transport,
    )
