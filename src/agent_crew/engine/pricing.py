"""Token cost estimation helpers for provider calls."""

from __future__ import annotations

import os
from dataclasses import dataclass

from agent_crew.engine.models import TokenUsage
from agent_crew.engine.routing import PROVIDERS


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


def estimate_cost_usd(
    *,
    provider: str,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
) -> float:
    """Estimate call cost from token counts.

    `AGENT_CREW_LLM_PRICING` overrides take precedence over the provider's flat rates.
    Unknown providers cost 0.
    """

    pricing = lookup_pricing(provider=provider, model=model)
    if pricing is None:
        return 0.0
    return (prompt_tokens / 1_000_000) * pricing.input_per_1m + (
        completion_tokens / 1_000_000
    ) * pricing.output_per_1m


def build_usage(
    *,
    provider: str,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
) -> TokenUsage:
    """Usage record with totals and estimated cost filled in."""

    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        cost_estimate_usd=estimate_cost_usd(
            provider=provider,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        ),
    )


def lookup_pricing(*, provider: str, model: str) -> ModelPricing | None:
    """Resolve per-1M rates, most specific `AGENT_CREW_LLM_PRICING` entry first.

    Lookup order: `provider:model`, `*:model`, `provider:*`, `*:*`, then the
    provider's flat rates.
    """

    provider_key = provider.strip().lower()
    model_key = model.strip()
    mapping = _parse_pricing_mapping(os.getenv("AGENT_CREW_LLM_PRICING", ""))
    for key in (
        (provider_key, model_key),
        ("*", model_key),
        (provider_key, "*"),
        ("*", "*"),
    ):
        override = mapping.get(key)
        if override is not None:
            return override

    spec = PROVIDERS.get(provider_key)
    if spec is None:
        return None
    return ModelPricing(input_per_1m=spec.input_per_1m, output_per_1m=spec.output_per_1m)


def _parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `AGENT_CREW_LLM_PRICING` mapping.

    Format:
    - `provider:model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - supports wildcards in provider/model (`*`)
    - model ids may contain `:` (prices are taken from the right)
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        head, _, prices = value.partition(":")
        parts = [part.strip() for part in prices.rsplit(":", 2)]
        if not head.strip() or len(parts) != 3:  # noqa: PLR2004
            continue
        model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        parsed[(head.strip().lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
