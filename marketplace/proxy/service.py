"""Request proxy: admission, upstream forwarding, metering and billing."""
import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from marketplace.auth.api_key import ApiKeyContext
from marketplace.auth.quota import QuotaTracker
from marketplace.config import settings
from marketplace.cost.ledger import CreditLedger
from marketplace.cost.recorder import RequestRecord, UsageRecorder
from marketplace.cost.tracker import TokenUsage, calculate_cost, extract_usage, merge_usage
from marketplace.errors import (
    BadRequestError,
    ForbiddenError,
    InsufficientCreditsError,
    MarketplaceError,
    QuotaExceededError,
)
from marketplace.metrics.prometheus import (
    record_charge,
    record_error,
    record_latency,
    record_request,
    record_settlement_failure,
    record_usage,
)
from marketplace.providers.base import ProviderError
from marketplace.proxy.sse import SSELineBuffer, process_line, rewrite_model
from marketplace.registry.shadow_models import ModelRegistry, ResolvedModel
from marketplace.routing.router import select_provider
from marketplace.utils.logging import get_logger
from marketplace.utils.retry import retry_with_backoff

logger = get_logger(__name__)

CLIENT_DISCONNECTED = "Stream truncated: client disconnected"


@dataclass
class ProxyRequest:
    """Normalized inbound call from either wire protocol."""

    context: ApiKeyContext
    body: Dict[str, Any]
    ip_address: Optional[str] = None
    request_id: Optional[str] = None

    @property
    def model_name(self) -> Any:
        return self.body.get("model")


@dataclass
class ProxyResult:
    """Buffered upstream response, already rewritten for the caller."""

    status_code: int
    body: Any
    tokens_input: int
    tokens_output: int
    cost: Decimal
    model: ResolvedModel


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


class ProxyService:
    """
    Orchestrates one proxied call:

    Received -> ModelResolved -> Admitted -> Forwarding -> Completed

    Ledger and quota are only touched before or after the upstream call,
    never while it is in flight.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        ledger: CreditLedger,
        quota: QuotaTracker,
        recorder: UsageRecorder,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        min_credit_threshold: Optional[Decimal] = None,
        max_attempts: Optional[int] = None,
    ):
        self.registry = registry
        self.ledger = ledger
        self.quota = quota
        self.recorder = recorder
        self.transport = transport
        self.min_credit_threshold = (
            settings.min_credit_threshold if min_credit_threshold is None else min_credit_threshold
        )
        self.max_attempts = max_attempts or settings.provider_max_attempts

    def _log_extra(self, request: ProxyRequest, **fields: Any) -> Dict[str, Any]:
        extra = {
            "request_id": request.request_id,
            "api_key_id": str(request.context.api_key_id),
            "user_id": str(request.context.user_id),
        }
        extra.update(fields)
        return extra

    def _record(
        self,
        request: ProxyRequest,
        model: ResolvedModel,
        status_code: int,
        usage: Optional[TokenUsage] = None,
        cost: Decimal = Decimal("0"),
        duration_ms: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        usage = usage or TokenUsage()
        self.recorder.log(
            RequestRecord(
                user_id=request.context.user_id,
                api_key_id=request.context.api_key_id,
                model_id=model.id,
                status_code=status_code,
                tokens_input=usage.tokens_input,
                tokens_output=usage.tokens_output,
                cost=cost,
                duration_ms=duration_ms,
                ip_address=request.ip_address,
                error_message=error_message,
            )
        )
        record_request(str(request.context.api_key_id), model.display_name, status_code)

    def admit(self, request: ProxyRequest) -> ResolvedModel:
        """
        Run every check that must pass before an upstream call.

        Raises:
            BadRequestError: No model in the body
            ForbiddenError: Model not in the key's allow-list
            ModelNotFoundError / ModelInactiveError: From the registry
            QuotaExceededError: Key quota used up
            InsufficientCreditsError: Balance below the minimum threshold
        """
        model_name = request.model_name
        if not isinstance(model_name, str) or not model_name.strip():
            raise BadRequestError("Model is required")

        if not request.context.allows_model(model_name):
            record_error(model_name, ForbiddenError.kind.value)
            raise ForbiddenError("Model not in allowed list")

        model = self.registry.resolve_active(model_name)

        if not self.quota.check(request.context.api_key_id).allowed:
            self._reject(request, model, QuotaExceededError())
        if not self.ledger.check_sufficient(request.context.user_id, self.min_credit_threshold):
            self._reject(request, model, InsufficientCreditsError())

        return model

    def _reject(self, request: ProxyRequest, model: ResolvedModel, error: MarketplaceError) -> None:
        """Log a zero-cost row for observability, then raise."""
        self._record(request, model, error.status_code, error_message=error.message)
        record_error(model.display_name, error.kind.value)
        logger.info(
            f"Request rejected: {error.message}",
            extra=self._log_extra(request, model=model.display_name, status_code=error.status_code),
        )
        raise error

    def _settle(
        self,
        request: ProxyRequest,
        model: ResolvedModel,
        usage: TokenUsage,
        status_code: int,
        duration_ms: int,
        error_message: Optional[str] = None,
    ) -> Decimal:
        """
        Log the request, then debit credits and count quota when the call
        is chargeable (2xx and non-zero cost).

        A failed debit or quota update does not fail the response: the
        upstream work is already done. It is logged and counted instead.
        """
        cost = calculate_cost(
            usage.tokens_input, usage.tokens_output, model.pricing_input, model.pricing_output
        )
        self._record(request, model, status_code, usage, cost, duration_ms, error_message)
        record_usage(model.display_name, usage.tokens_input, usage.tokens_output)

        if not (_is_success(status_code) and cost > 0):
            return cost

        try:
            self.ledger.debit(
                request.context.user_id,
                cost,
                metadata={
                    "api_key_id": str(request.context.api_key_id),
                    "model_id": str(model.id),
                    "tokens_input": usage.tokens_input,
                    "tokens_output": usage.tokens_output,
                    "request_id": request.request_id,
                },
            )
            record_charge(model.display_name, float(cost))
        except (MarketplaceError, SQLAlchemyError) as e:
            reason = e.kind.value if isinstance(e, MarketplaceError) else "storage_error"
            record_settlement_failure(model.display_name, reason)
            logger.warning(
                f"Failed to debit credits: {e}",
                extra=self._log_extra(request, model=model.display_name, cost=str(cost)),
            )

        try:
            self.quota.increment(request.context.api_key_id)
        except SQLAlchemyError as e:
            record_settlement_failure(model.display_name, "quota_error")
            logger.warning(
                f"Failed to increment quota: {e}",
                extra=self._log_extra(request, model=model.display_name),
            )
        return cost

    async def proxy_request(self, request: ProxyRequest) -> ProxyResult:
        """
        Forward a non-streaming request and bill it.

        Upstream error statuses are returned to the caller with their body;
        they are logged but never charged.

        Raises:
            Everything admit() raises, and ProviderError on transport failure
        """
        started = time.monotonic()
        model = self.admit(request)
        provider = select_provider(model, self.transport)
        body = {**request.body, "model": model.provider_model}

        try:
            response = await retry_with_backoff(
                provider.send, max_attempts=self.max_attempts, body=body
            )
        except ProviderError as e:
            duration_ms = _elapsed_ms(started)
            self._record(request, model, 502, duration_ms=duration_ms, error_message=e.message)
            record_error(model.display_name, e.kind.value)
            logger.error(
                "Provider error",
                extra=self._log_extra(request, model=model.display_name, error=e.message),
            )
            raise

        duration_ms = _elapsed_ms(started)
        record_latency(model.display_name, duration_ms / 1000)
        usage = extract_usage(response.body) or TokenUsage()
        error_message = None
        if not response.ok:
            error_message = f"Provider returned status {response.status_code}"
        cost = self._settle(request, model, usage, response.status_code, duration_ms, error_message)

        logger.info(
            "Request completed",
            extra=self._log_extra(
                request,
                model=model.display_name,
                status_code=response.status_code,
                latency_ms=duration_ms,
                tokens_input=usage.tokens_input,
                tokens_output=usage.tokens_output,
                cost=str(cost),
            ),
        )

        return ProxyResult(
            status_code=response.status_code,
            body=rewrite_model(response.body, model.display_name),
            tokens_input=usage.tokens_input,
            tokens_output=usage.tokens_output,
            cost=cost,
            model=model,
        )

    async def stream_request(
        self, request: ProxyRequest, model: Optional[ResolvedModel] = None
    ) -> AsyncIterator[str]:
        """
        Forward a streaming request, yielding rewritten SSE text as it
        arrives.

        Usage is taken from whatever chunks report it (last value wins) and
        billed once the upstream stream ends. A read failure mid-stream is
        logged and raised without billing. If the caller goes away, the
        upstream connection is closed and the usage seen so far is billed.

        Args:
            request: The inbound call
            model: Result of admit() if the caller already ran it
        """
        started = time.monotonic()
        if model is None:
            model = self.admit(request)
        provider = select_provider(model, self.transport)
        body = {**request.body, "model": model.provider_model, "stream": True}

        usage = TokenUsage()
        status_code = 502
        outcome = "failed"
        error_message: Optional[str] = None

        try:
            async with provider.stream(body) as response:
                status_code = response.status_code
                if not _is_success(status_code):
                    await response.aread()
                    raise ProviderError(f"Provider returned status {status_code}")

                lines = SSELineBuffer()
                async for text in response.aiter_text():
                    for line in lines.feed(text):
                        event = process_line(line, model.display_name)
                        usage = merge_usage(usage, event.usage)
                        if event.output:
                            yield event.output
                for line in lines.flush():
                    event = process_line(line, model.display_name)
                    usage = merge_usage(usage, event.usage)
                    if event.output:
                        yield event.output
            outcome = "completed"
        except (GeneratorExit, asyncio.CancelledError):
            outcome = "disconnected"
            raise
        except Exception as e:
            error_message = e.message if isinstance(e, MarketplaceError) else str(e)
            raise
        finally:
            duration_ms = _elapsed_ms(started)
            record_latency(model.display_name, duration_ms / 1000, streamed=True)
            if outcome == "completed":
                cost = self._settle(request, model, usage, status_code, duration_ms)
                logger.info(
                    "Stream completed",
                    extra=self._log_extra(
                        request,
                        model=model.display_name,
                        latency_ms=duration_ms,
                        tokens_input=usage.tokens_input,
                        tokens_output=usage.tokens_output,
                        cost=str(cost),
                    ),
                )
            elif outcome == "disconnected":
                self._settle(
                    request, model, usage, status_code, duration_ms, error_message=CLIENT_DISCONNECTED
                )
                logger.info(
                    CLIENT_DISCONNECTED,
                    extra=self._log_extra(request, model=model.display_name, latency_ms=duration_ms),
                )
            else:
                failed_status = status_code if not _is_success(status_code) else 502
                self._record(
                    request,
                    model,
                    failed_status,
                    usage,
                    duration_ms=duration_ms,
                    error_message=error_message,
                )
                record_error(model.display_name, ProviderError.kind.value)
                logger.error(
                    "Stream failed",
                    extra=self._log_extra(request, model=model.display_name, error=error_message),
                )
