"""Token usage extraction and cost calculation for proxied requests."""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

ONE_THOUSAND = Decimal("1000")
# Matches the scale of the Money columns
CREDIT_QUANTUM = Decimal("0.00000001")


@dataclass
class TokenUsage:
    """Token counts reported by a provider."""

    tokens_input: int = 0
    tokens_output: int = 0


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


def extract_usage(payload: Any) -> Optional[TokenUsage]:
    """
    Read token counts from a provider response or stream chunk.

    Anthropic shape (usage.input_tokens / usage.output_tokens) is tried
    first, then OpenAI (usage.prompt_tokens / usage.completion_tokens).
    A zero or missing count in one shape falls through to the other.

    Returns:
        TokenUsage, or None when the payload carries no usage object
    """
    if not isinstance(payload, dict):
        return None
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return None

    tokens_input = _as_int(usage.get("input_tokens")) or _as_int(usage.get("prompt_tokens"))
    tokens_output = _as_int(usage.get("output_tokens")) or _as_int(
        usage.get("completion_tokens")
    )
    return TokenUsage(tokens_input=tokens_input, tokens_output=tokens_output)


def merge_usage(current: TokenUsage, update: Optional[TokenUsage]) -> TokenUsage:
    """Latest non-zero value wins per field; providers often report usage
    only on the final chunk, or input and output on different chunks."""
    if update is None:
        return current
    return TokenUsage(
        tokens_input=update.tokens_input or current.tokens_input,
        tokens_output=update.tokens_output or current.tokens_output,
    )


def calculate_cost(
    tokens_in: int,
    tokens_out: int,
    pricing_input: Decimal,
    pricing_output: Decimal,
) -> Decimal:
    """
    Calculate the credit cost of a request.

    Args:
        tokens_in: Input tokens
        tokens_out: Output tokens
        pricing_input: Credits per 1K input tokens
        pricing_output: Credits per 1K output tokens

    Returns:
        Cost in credits as Decimal, rounded to 8 decimal places
    """
    input_cost = (Decimal(tokens_in) / ONE_THOUSAND) * Decimal(pricing_input)
    output_cost = (Decimal(tokens_out) / ONE_THOUSAND) * Decimal(pricing_output)
    return quantize_credits(input_cost + output_cost)


def quantize_credits(value: Decimal) -> Decimal:
    """Round an amount to the precision credits are stored with."""
    return value.quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP)
