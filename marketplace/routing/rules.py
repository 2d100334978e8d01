"""Provider wire-format detection from the configured base URL."""
import re
from dataclasses import dataclass
from typing import Optional

ANTHROPIC = "anthropic"
OPENAI = "openai"
PROVIDER_FORMATS = (ANTHROPIC, OPENAI)

ANTHROPIC_PATH = "/v1/messages"
OPENAI_PATH = "/v1/chat/completions"


@dataclass(frozen=True)
class ProviderEndpoint:
    """Fully qualified upstream URL and the wire format it speaks."""

    url: str
    provider_format: str

    @property
    def is_anthropic(self) -> bool:
        return self.provider_format == ANTHROPIC


def build_provider_url(base_url: str, provider_format: Optional[str] = None) -> ProviderEndpoint:
    """
    Resolve the endpoint an admin-configured base URL refers to.

    Rules, in order:
    1. URL already contains /messages -> used verbatim, Anthropic format
    2. URL already contains /chat/completions -> used verbatim, OpenAI format
    3. Explicit provider_format -> append that format's path
    4. URL mentions "anthropic" -> append /v1/messages
    5. Otherwise -> append /v1/chat/completions (OpenAI compatible)

    Args:
        base_url: URL as pasted by the admin
        provider_format: Optional explicit format configured on the model

    Returns:
        ProviderEndpoint with the URL to call and its format
    """
    url = re.sub(r"/+$", "", base_url)

    if "/messages" in url:
        return ProviderEndpoint(url, ANTHROPIC)
    if "/chat/completions" in url:
        return ProviderEndpoint(url, OPENAI)

    if provider_format == ANTHROPIC:
        return ProviderEndpoint(f"{url}{ANTHROPIC_PATH}", ANTHROPIC)
    if provider_format == OPENAI:
        return ProviderEndpoint(f"{url}{OPENAI_PATH}", OPENAI)

    if ANTHROPIC in url.lower():
        return ProviderEndpoint(f"{url}{ANTHROPIC_PATH}", ANTHROPIC)
    return ProviderEndpoint(f"{url}{OPENAI_PATH}", OPENAI)
