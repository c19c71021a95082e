"""Reusable LLM orchestration patterns."""

from .evaluator_optimizer import (
    EvalOptConfig,
    EvalOptResult,
    IterationAttempt,
    TerminationReason,
    run_eval_opt_loop,
)

__all__ = [
    "EvalOptConfig",
    "EvalOptResult",
    "IterationAttempt",
    "TerminationReason",
    "run_eval_opt_loop",
]
