"""Base provider interface for upstream LLM providers."""
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from marketplace.errors import ErrorKind, MarketplaceError
from marketplace.routing.rules import ProviderEndpoint


@dataclass
class UpstreamResponse:
    """Buffered response from an upstream provider."""

    status_code: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class ProviderError(MarketplaceError):
    """Base exception for provider errors."""

    kind = ErrorKind.PROVIDER_ERROR
    default_message = "Provider request failed"


class ProviderTimeoutError(ProviderError):
    """Raised when a provider request times out."""

    default_message = "Provider request timed out"


class ProviderConnectionError(ProviderError):
    """Raised when no connection to the provider could be established."""

    default_message = "Provider connection failed"


class LLMProvider(ABC):
    """Abstract base class for upstream providers.

    Subclasses only decide how the platform's provider token is presented;
    the request body is forwarded as-is.
    """

    def __init__(
        self,
        endpoint: ProviderEndpoint,
        token: str,
        timeout: float = 60.0,
        stream_read_timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.token = token
        self.timeout = timeout
        self.stream_read_timeout = stream_read_timeout
        self.transport = transport

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider format name (e.g., 'anthropic', 'openai')."""
        pass

    @abstractmethod
    def auth_headers(self) -> Dict[str, str]:
        """Headers carrying the provider credential."""
        pass

    def headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", **self.auth_headers()}

    def _client(self, timeout: httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    async def send(self, body: Dict[str, Any]) -> UpstreamResponse:
        """
        POST the body and return the parsed JSON response.

        Non-2xx responses are returned, not raised; the caller decides how
        to bill them.

        Raises:
            ProviderTimeoutError: If the provider did not answer in time
            ProviderConnectionError: If the provider could not be reached
            ProviderError: If the response body is not JSON
        """
        try:
            async with self._client(httpx.Timeout(self.timeout)) as client:
                response = await client.post(
                    self.endpoint.url,
                    json=body,
                    headers=self.headers(),
                )
                data = response.json()
        except httpx.TimeoutException:
            raise ProviderTimeoutError(f"Provider request timed out after {self.timeout}s")
        except httpx.ConnectError as e:
            raise ProviderConnectionError(f"Provider connection failed: {e}")
        except httpx.HTTPError as e:
            raise ProviderError(f"Provider request failed: {e}")
        except ValueError:
            raise ProviderError(
                f"Provider returned a non-JSON response (status {response.status_code})"
            )

        return UpstreamResponse(status_code=response.status_code, body=data)

    @asynccontextmanager
    async def stream(self, body: Dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """
        Open a streamed POST. Transport failures while connecting or while
        reading the body inside the `async with` block become ProviderError.
        """
        timeout = httpx.Timeout(self.timeout, read=self.stream_read_timeout)
        try:
            async with self._client(timeout) as client:
                async with client.stream(
                    "POST",
                    self.endpoint.url,
                    json=body,
                    headers=self.headers(),
                ) as response:
                    yield response
        except httpx.TimeoutException:
            raise ProviderTimeoutError("Provider stream timed out")
        except httpx.ConnectError as e:
            raise ProviderConnectionError(f"Provider connection failed: {e}")
        except httpx.HTTPError as e:
            raise ProviderError(f"Provider stream failed: {e}")
