"""Order tasks, group them into waves and derive the execution plan."""

from __future__ import annotations

import heapq
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Sequence

from .decomposition import DecompositionValidationError, validate_task_graph
from .schemas import Decomposition, ExecutionPlan, ExecutionStrategy, Task, Wave

__all__ = [
    "build_execution_plan",
    "calibrate_estimate",
    "compute_strategy",
    "detect_file_conflicts",
    "group_into_waves",
    "topological_sort",
]

LOGGER = logging.getLogger(__name__)


def topological_sort(tasks: Sequence[Task]) -> List[Task]:
    """Return tasks with every dependency before its dependents, ties broken by id."""
    validate_task_graph(tasks)
    by_id: Dict[int, Task] = {task.id: task for task in tasks}
    indegree: Dict[int, int] = {task.id: len(set(task.depends_on)) for task in tasks}
    dependents: Dict[int, List[int]] = {task.id: [] for task in tasks}
    for task in tasks:
        for dep in set(task.depends_on):
            dependents[dep].append(task.id)

    ready = [task_id for task_id, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: List[Task] = []
    while ready:
        task_id = heapq.heappop(ready)
        ordered.append(by_id[task_id])
        for child in dependents[task_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, child)

    if len(ordered) != len(tasks):
        blocked = sorted(task_id for task_id, degree in indegree.items() if degree > 0)
        raise DecompositionValidationError(f"Dependency cycle among tasks {blocked}")
    return ordered


def detect_file_conflicts(tasks: Sequence[Task]) -> List[str]:
    """List files claimed by two or more tasks as ``"<file> (tasks: a, b)"``."""
    owners: Dict[str, List[int]] = {}
    for task in tasks:
        for path in task.files:
            claimed = owners.setdefault(path, [])
            if task.id not in claimed:
                claimed.append(task.id)
    return [
        f"{path} (tasks: {', '.join(str(task_id) for task_id in task_ids)})"
        for path, task_ids in owners.items()
        if len(task_ids) > 1
    ]


def group_into_waves(tasks: Sequence[Task]) -> List[Wave]:
    """Peel off successive layers of tasks whose dependencies are already scheduled."""
    ordered = topological_sort(tasks)
    scheduled: set[int] = set()
    remaining = list(ordered)
    waves: List[Wave] = []
    while remaining:
        layer = [task for task in remaining if all(dep in scheduled for dep in task.depends_on)]
        layer.sort(key=lambda task: task.id)
        conflicts = detect_file_conflicts(layer)
        waves.append(
            Wave(
                wave_number=len(waves) + 1,
                tasks=layer,
                file_conflicts=conflicts,
                has_conflicts=bool(conflicts),
            )
        )
        layer_ids = {task.id for task in layer}
        scheduled.update(layer_ids)
        remaining = [task for task in remaining if task.id not in layer_ids]
    return waves


def compute_strategy(waves: Sequence[Wave], task_count: int) -> ExecutionStrategy:
    """Classify the wave shape as sequential, parallel or mixed."""
    real = [wave for wave in waves if not wave.is_review_checkpoint]
    if not real or all(len(wave.tasks) == 1 for wave in real):
        return "sequential"
    if len(real) == 1 and len(real[0].tasks) == task_count:
        return "parallel"
    return "mixed"


def calibrate_estimate(total_minutes: float, factor: float) -> int:
    """Scale ``total_minutes`` by ``factor`` rounding halves up."""
    scaled = Decimal(str(total_minutes)) * Decimal(str(factor))
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_execution_plan(decomposition: Decomposition, calibration_factor: float = 0.5) -> ExecutionPlan:
    """Group tasks into waves, insert review checkpoints and compute estimates."""
    implementation_waves = group_into_waves(decomposition.tasks)

    waves: List[Wave] = []
    for wave in implementation_waves:
        waves.append(wave.model_copy(update={"wave_number": len(waves) + 1}))
        if len(wave.tasks) >= 2:
            waves.append(Wave(wave_number=len(waves) + 1, is_review_checkpoint=True))

    total = sum(task.estimate_minutes for task in decomposition.tasks)
    recommend_team = any(len(wave.tasks) >= 2 for wave in implementation_waves)
    strategy = compute_strategy(implementation_waves, len(decomposition.tasks))
    if strategy != decomposition.execution_strategy:
        LOGGER.info(
            "Computed strategy %s differs from decomposer's %s",
            strategy,
            decomposition.execution_strategy,
        )
    return ExecutionPlan(
        waves=waves,
        total_estimate_minutes=total,
        calibrated_estimate_minutes=calibrate_estimate(total, calibration_factor),
        calibration_factor=calibration_factor,
        recommend_team=recommend_team,
        strategy=strategy,
    )
