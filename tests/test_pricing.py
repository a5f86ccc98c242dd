from __future__ import annotations

import allure
import pytest

from agent_controller.controller.pricing import (
    ModelPricing,
    estimate_cost_usd,
    parse_pricing_mapping,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Attempt Telemetry"),
]


def test_estimate_cost_usd_uses_input_and_output_tokens(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_CONTROLLER_PRICING", "sonnet:3.0:15.0")
    cost = estimate_cost_usd(model="sonnet", input_tokens=1_000_000, output_tokens=100_000)
    assert cost == pytest.approx(4.5)


def test_estimate_cost_usd_applies_wildcard(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_CONTROLLER_PRICING", "sonnet:3.0:15.0,*:1.0:1.0")

    assert estimate_cost_usd(
        model="haiku",
        input_tokens=500_000,
        output_tokens=500_000,
    ) == pytest.approx(1.0)
    assert estimate_cost_usd(
        model=None,
        input_tokens=1_000_000,
        output_tokens=0,
    ) == pytest.approx(1.0)


def test_estimate_cost_usd_is_unknown_without_pricing(monkeypatch) -> None:
    monkeypatch.delenv("AGENT_CONTROLLER_PRICING", raising=False)
    assert estimate_cost_usd(model="sonnet", input_tokens=10, output_tokens=10) is None

    monkeypatch.setenv("AGENT_CONTROLLER_PRICING", "opus:15.0:75.0")
    assert estimate_cost_usd(model="sonnet", input_tokens=10, output_tokens=10) is None


def test_parse_pricing_mapping_skips_malformed_entries() -> None:
    mapping = parse_pricing_mapping(
        "claude-sonnet-4:3:15, broken, haiku:cheap:1, ,vendor:model:0.5:2",
    )

    assert mapping == {
        "claude-sonnet-4": ModelPricing(input_per_1m=3.0, output_per_1m=15.0),
        "vendor:model": ModelPricing(input_per_1m=0.5, output_per_1m=2.0),
    }
