"""Task-type model routing and per-model token pricing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .llm_client import LLMCompletion

__all__ = [
    "DEFAULT_ROUTES",
    "MODEL_PRICING",
    "ModelPricing",
    "ModelRoute",
    "ModelRouter",
    "TaskType",
    "round_usd",
]

LOGGER = logging.getLogger(__name__)


class TaskType(str, Enum):
    """Kinds of work a model call can be routed for."""

    BRIEFING = "briefing"
    TOOL_EXECUTION = "tool_execution"
    CONVERSATION = "conversation"
    PLANNING = "planning"
    REVIEW = "review"
    ARCHITECTURE = "architecture"
    ROADMAP = "roadmap"
    SPOT_CHECK = "spot_check"


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """USD price per million tokens."""

    input: float
    output: float
    cached_input: float


@dataclass(frozen=True, slots=True)
class ModelRoute:
    """Model and generation limits selected for a task type."""

    model: str
    effort: str
    max_output_tokens: int


MODEL_PRICING: Dict[str, ModelPricing] = {
    "gpt-5": ModelPricing(input=1.25, output=10.0, cached_input=0.125),
    "gpt-5-mini": ModelPricing(input=0.25, output=2.0, cached_input=0.025),
    "gpt-5-nano": ModelPricing(input=0.05, output=0.40, cached_input=0.005),
}

DEFAULT_ROUTES: Dict[TaskType, ModelRoute] = {
    TaskType.BRIEFING: ModelRoute("gpt-5-nano", "low", 1024),
    TaskType.TOOL_EXECUTION: ModelRoute("gpt-5-mini", "medium", 4096),
    TaskType.CONVERSATION: ModelRoute("gpt-5-mini", "medium", 4096),
    TaskType.PLANNING: ModelRoute("gpt-5-mini", "high", 8192),
    TaskType.REVIEW: ModelRoute("gpt-5-mini", "high", 4096),
    TaskType.ARCHITECTURE: ModelRoute("gpt-5", "high", 8192),
    TaskType.ROADMAP: ModelRoute("gpt-5", "high", 8192),
    TaskType.SPOT_CHECK: ModelRoute("gpt-5-nano", "low", 4096),
}


def round_usd(value: float) -> float:
    """Round a currency amount to the nearest millionth."""
    return round(value * 1_000_000) / 1_000_000


class ModelRouter:
    """Resolve routes for task types and price the calls made on them."""

    def __init__(
        self,
        routes: Optional[Mapping[TaskType, ModelRoute]] = None,
        pricing: Optional[Mapping[str, ModelPricing]] = None,
    ) -> None:
        self._routes: Dict[TaskType, ModelRoute] = dict(DEFAULT_ROUTES)
        if routes:
            self._routes.update(routes)
        self._pricing: Dict[str, ModelPricing] = dict(MODEL_PRICING)
        if pricing:
            self._pricing.update(pricing)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ModelRouter":
        """Build a router applying ``models.routes`` and ``models.pricing`` overrides."""
        models_cfg = config.get("models") or {}
        routes: Dict[TaskType, ModelRoute] = {}
        for key, override in (models_cfg.get("routes") or {}).items():
            try:
                task_type = TaskType(str(key))
            except ValueError:
                LOGGER.warning("Ignoring route override for unknown task type %r", key)
                continue
            if not isinstance(override, Mapping):
                continue
            base = DEFAULT_ROUTES[task_type]
            routes[task_type] = replace(
                base,
                model=str(override.get("model") or base.model),
                effort=str(override.get("effort") or base.effort),
                max_output_tokens=int(override.get("max_output_tokens") or base.max_output_tokens),
            )

        pricing: Dict[str, ModelPricing] = {}
        for model, values in (models_cfg.get("pricing") or {}).items():
            if not isinstance(values, Mapping):
                continue
            input_price = float(values.get("input", 0.0))
            pricing[str(model)] = ModelPricing(
                input=input_price,
                output=float(values.get("output", 0.0)),
                cached_input=float(values.get("cached_input", input_price * 0.1)),
            )
        return cls(routes=routes, pricing=pricing)

    def route(self, task_type: TaskType | str) -> ModelRoute:
        """Return the route for ``task_type``."""
        return self._routes[TaskType(task_type)]

    def pricing_for(self, model: str) -> Optional[ModelPricing]:
        """Return pricing for ``model`` or ``None`` when unknown."""
        pricing = self._pricing.get(model)
        if pricing is None:
            LOGGER.warning("No pricing known for model %s; treating cost as zero", model)
        return pricing

    def price_of(self, model: str, input_tokens: int, output_tokens: int) -> float:
        """Return the USD cost of a call with the given token counts."""
        pricing = self.pricing_for(model)
        if pricing is None:
            return 0.0
        input_cost = (input_tokens / 1_000_000) * pricing.input
        output_cost = (output_tokens / 1_000_000) * pricing.output
        return round_usd(input_cost + output_cost)

    def cache_savings(self, model: str, cached_tokens: int) -> float:
        """Return the USD saved by serving ``cached_tokens`` from the prompt cache."""
        if cached_tokens <= 0:
            return 0.0
        pricing = self.pricing_for(model)
        if pricing is None:
            return 0.0
        discount = pricing.input - pricing.cached_input
        return round_usd((cached_tokens / 1_000_000) * discount)

    def cost_of(self, completion: LLMCompletion) -> float:
        """Price a completed call from its reported usage."""
        return self.price_of(
            completion.model,
            completion.usage.input_tokens,
            completion.usage.output_tokens,
        )
