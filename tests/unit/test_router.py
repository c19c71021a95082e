from __future__ import annotations

import logging

import pytest

from conductor.models.llm_client import LLMCompletion, LLMUsage
from conductor.models.router import ModelRouter, TaskType, round_usd


def test_default_routes_send_cheap_work_to_small_models() -> None:
    router = ModelRouter()

    assert router.route(TaskType.SPOT_CHECK).model == "gpt-5-nano"
    assert router.route("planning").model == "gpt-5-mini"
    assert router.route(TaskType.ARCHITECTURE).model == "gpt-5"


def test_unknown_task_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        ModelRouter().route("brainstorm")


def test_price_of_uses_per_million_rates() -> None:
    router = ModelRouter()

    # 1000 * 0.25 / 1e6 + 500 * 2.0 / 1e6
    assert router.price_of("gpt-5-mini", 1000, 500) == pytest.approx(0.00125)
    assert router.price_of("gpt-5", 1_000_000, 0) == pytest.approx(1.25)


def test_unknown_model_prices_at_zero_with_warning(caplog) -> None:
    router = ModelRouter()

    with caplog.at_level(logging.WARNING, logger="conductor.models.router"):
        assert router.price_of("mystery-model", 5000, 5000) == 0.0
        assert router.cache_savings("mystery-model", 5000) == 0.0

    assert "mystery-model" in caplog.text


def test_cache_savings_is_discount_on_cached_tokens() -> None:
    router = ModelRouter()

    assert router.cache_savings("gpt-5-mini", 1_000_000) == pytest.approx(0.225)
    assert router.cache_savings("gpt-5-mini", 0) == 0.0


def test_cost_of_reads_completion_usage() -> None:
    router = ModelRouter()
    completion = LLMCompletion(
        text="ok",
        model="gpt-5-nano",
        usage=LLMUsage(input_tokens=2_000_000, output_tokens=1_000_000),
    )

    assert router.cost_of(completion) == pytest.approx(0.5)


def test_from_config_applies_route_and_pricing_overrides() -> None:
    config = {
        "models": {
            "routes": {
                "review": {"model": "gpt-5"},
                "not_a_task": {"model": "gpt-5"},
            },
            "pricing": {"local-llm": {"input": 1.0, "output": 2.0}},
        }
    }

    router = ModelRouter.from_config(config)

    review = router.route(TaskType.REVIEW)
    assert review.model == "gpt-5"
    assert review.max_output_tokens == 4096
    assert router.price_of("local-llm", 1_000_000, 1_000_000) == pytest.approx(3.0)
    assert router.cache_savings("local-llm", 1_000_000) == pytest.approx(0.9)


def test_round_usd_keeps_six_decimals() -> None:
    assert round_usd(0.1234564) == 0.123456
    assert round_usd(0.0000004) == 0.0
