"""
Planning utilities: decomposition, task sizing, scheduling and coverage advisories.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "Decomposition": "schemas",
    "ExecutionPlan": "schemas",
    "Task": "schemas",
    "Wave": "schemas",
    "DecompositionError": "decomposition",
    "DecompositionValidationError": "decomposition",
    "decompose": "decomposition",
    "build_execution_plan": "scheduler",
    "auto_split_oversized_tasks": "task_size",
    "validate_task_file_counts": "task_size",
    "check_data_flow_coverage": "coverage",
    "check_test_coverage": "coverage",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import planning helpers so schema imports stay lightweight."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = import_module(f"conductor.planning.{module_name}")
    return getattr(module, name)
