from __future__ import annotations

import allure
import pytest

from agent_crew.engine.models import BillingModel
from agent_crew.engine.pricing import (
    ModelPricing,
    build_usage,
    estimate_cost_usd,
    lookup_pricing,
)
from agent_crew.engine.usage import detect_billing_model

pytestmark = [
    allure.epic("LLM Runtime"),
    allure.feature("Usage Accounting"),
]


def test_estimate_cost_usd_uses_provider_rates(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AGENT_CREW_LLM_PRICING", raising=False)

    cost = estimate_cost_usd(
        provider="anthropic",
        model="claude-sonnet-4",
        prompt_tokens=1_000_000,
        completion_tokens=1_000_000,
    )

    assert cost == pytest.approx(18.0)


def test_estimate_cost_usd_prefers_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_CREW_LLM_PRICING", "openai:gpt-test:1.0:3.0")

    cost = estimate_cost_usd(
        provider="openai",
        model="gpt-test",
        prompt_tokens=1_000_000,
        completion_tokens=500_000,
    )

    assert cost == pytest.approx(2.5)


def test_estimate_cost_usd_applies_wildcards(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_CREW_LLM_PRICING", "openai:*:2.0:2.0,*:*:9.0:9.0")

    openai_cost = estimate_cost_usd(
        provider="openai",
        model="unknown-model",
        prompt_tokens=1_000_000,
        completion_tokens=0,
    )
    other_cost = estimate_cost_usd(
        provider="mistral",
        model="unknown-model",
        prompt_tokens=1_000_000,
        completion_tokens=0,
    )

    assert openai_cost == pytest.approx(2.0)
    assert other_cost == pytest.approx(9.0)


def test_pricing_model_ids_may_contain_colons(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_CREW_LLM_PRICING", "ollama:llama3:8b:1.0:1.0,broken-row")

    cost = estimate_cost_usd(
        provider="ollama",
        model="llama3:8b",
        prompt_tokens=1_000_000,
        completion_tokens=0,
    )

    assert cost == pytest.approx(1.0)


def test_unknown_provider_costs_nothing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AGENT_CREW_LLM_PRICING", raising=False)

    assert estimate_cost_usd(
        provider="acme",
        model="x",
        prompt_tokens=10_000,
        completion_tokens=10_000,
    ) == 0.0


def test_build_usage_fills_totals(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_CREW_LLM_PRICING", "openai:gpt-test:1.0:1.0")

    usage = build_usage(
        provider="openai",
        model="gpt-test",
        prompt_tokens=600_000,
        completion_tokens=400_000,
    )

    assert usage.total_tokens == 1_000_000
    assert usage.cost_estimate_usd == pytest.approx(1.0)


@pytest.mark.parametrize(
    ("provider", "expected"),
    [
        ("openai", BillingModel.PER_TOKEN),
        ("Anthropic", BillingModel.PER_TOKEN),
        ("ollama", BillingModel.SUBSCRIPTION_QUOTA),
        ("together", BillingModel.UNKNOWN),
        ("acme", BillingModel.UNKNOWN),
    ],
)
def test_detect_billing_model(provider: str, expected: BillingModel) -> None:
    assert detect_billing_model(provider) is expected


def test_model_wildcard_covers_any_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "AGENT_CREW_LLM_PRICING",
        "*:gpt-4o:5.0:15.0,openrouter:*:1.0:1.0,openai:gpt-4o:2.5:10.0",
    )

    via_gateway = lookup_pricing(provider="my-gateway", model="gpt-4o")
    via_openrouter = lookup_pricing(provider="openrouter", model="gpt-4o")
    via_openai = lookup_pricing(provider="openai", model="gpt-4o")

    assert via_gateway == ModelPricing(input_per_1m=5.0, output_per_1m=15.0)
    assert via_openrouter == ModelPricing(input_per_1m=5.0, output_per_1m=15.0)
    assert via_openai == ModelPricing(input_per_1m=2.5, output_per_1m=10.0)
    assert estimate_cost_usd(
        provider="my-gateway",
        model="gpt-4o",
        prompt_tokens=1_000_000,
        completion_tokens=0,
    ) == pytest.approx(5.0)
