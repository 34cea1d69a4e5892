from __future__ import annotations

import allure
import pytest

from taskpilot.orchestrator.pricing import (
    DEFAULT_RATES,
    FLAT_RATE,
    ModelPricing,
    estimate_cost_usd,
    lookup_pricing,
)
from taskpilot.orchestrator.usage import extract_usage

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Token Accounting"),
]


@pytest.fixture(autouse=True)
def no_pricing_env(monkeypatch) -> None:
    monkeypatch.delenv("TASKPILOT_PRICING", raising=False)


def test_estimate_cost_usd_uses_input_and_output_tokens() -> None:
    cost = estimate_cost_usd(
        input_tokens=1_000_000,
        output_tokens=500_000,
        pricing=ModelPricing(1.0, 3.0),
    )
    assert cost == 2.5


def test_estimate_cost_usd_is_none_without_tokens() -> None:
    assert estimate_cost_usd(input_tokens=0, output_tokens=0) is None


def test_lookup_pricing_matches_model_substring() -> None:
    assert lookup_pricing(model="claude-opus-4-1", provider_type="claude-cli") == DEFAULT_RATES[
        "claude-opus"
    ]
    assert lookup_pricing(model="gpt-4o-mini", provider_type="cursor-cli") == DEFAULT_RATES[
        "gpt-4o-mini"
    ]


def test_lookup_pricing_prefers_exact_then_longest_pattern() -> None:
    assert lookup_pricing(model="gpt-4o", provider_type="cursor-cli") == ModelPricing(2.5, 10.0)
    assert lookup_pricing(model="gpt-4o-2024-08-06", provider_type="cursor-cli") == DEFAULT_RATES[
        "gpt-4o"
    ]
    assert lookup_pricing(model="gpt-4o-mini-2024", provider_type="cursor-cli") == DEFAULT_RATES[
        "gpt-4o-mini"
    ]


def test_lookup_pricing_falls_back_per_provider_then_flat() -> None:
    assert lookup_pricing(model=None, provider_type="cursor-cli") == DEFAULT_RATES["gpt-4o"]
    assert lookup_pricing(model="mystery", provider_type="other") == FLAT_RATE


def test_lookup_pricing_prefers_configured_and_env_rates(monkeypatch) -> None:
    configured = {"claude-opus": ModelPricing(1.0, 1.0)}
    assert lookup_pricing(
        model="claude-opus-4",
        provider_type="claude-cli",
        configured=configured,
    ) == ModelPricing(1.0, 1.0)

    monkeypatch.setenv("TASKPILOT_PRICING", "house-model:2:4,broken-entry")
    assert lookup_pricing(model="house-model-v2", provider_type="claude-cli") == ModelPricing(
        2.0,
        4.0,
    )


def test_extract_usage_prefers_structured_json() -> None:
    usage = extract_usage(
        stdout='{"usage": {"input_tokens": 1200, "output_tokens": 340}}',
        stderr="input tokens: 1",
    )
    assert usage.usage_source == "agent_stdout_json"
    assert usage.to_token_usage() is not None
    assert (usage.input_tokens, usage.output_tokens) == (1200, 340)


def test_extract_usage_reads_text_counters() -> None:
    usage = extract_usage(stdout="done", stderr="Input tokens: 1,500\nOutput tokens: 20")
    assert usage.usage_source == "agent_stderr"
    assert (usage.input_tokens, usage.output_tokens) == (1500, 20)


def test_extract_usage_reports_none_when_absent() -> None:
    usage = extract_usage(stdout="hello", stderr="")
    assert usage.usage_source == "none"
    assert usage.to_token_usage() is None
