"""Guard against tasks too large for a single file-scoped executor."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional, Sequence

from .schemas import Decomposition, Task

__all__ = [
    "AgentTaskAssessment",
    "DEFAULT_FILE_LIMIT",
    "TaskFileViolation",
    "assess_task_size",
    "auto_split_oversized_tasks",
    "find_leader_only_tasks",
    "format_agent_dispatch_section",
    "validate_task_file_counts",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_FILE_LIMIT = 5
TOKENS_PER_FILE = 5_000
MAX_TOKENS_PER_AGENT = 50_000

Recommendation = Literal["dispatch", "split", "leader-only"]


@dataclass(frozen=True, slots=True)
class TaskFileViolation:
    """Task whose file list exceeds the per-task limit."""

    task_id: int
    task_title: str
    file_count: int
    max_files: int


@dataclass(frozen=True, slots=True)
class AgentTaskAssessment:
    """Dispatch recommendation for a single task."""

    task_id: int
    is_valid: bool
    file_count: int
    estimated_tokens: int
    recommendation: Recommendation
    reason: Optional[str] = None


def validate_task_file_counts(
    decomposition: Decomposition,
    file_limit: int = DEFAULT_FILE_LIMIT,
) -> List[TaskFileViolation]:
    """Return one violation per task listing more than ``file_limit`` files."""
    return [
        TaskFileViolation(
            task_id=task.id,
            task_title=task.title,
            file_count=len(task.files),
            max_files=file_limit,
        )
        for task in decomposition.tasks
        if len(task.files) > file_limit
    ]


def assess_task_size(task: Task, file_limit: int = DEFAULT_FILE_LIMIT) -> AgentTaskAssessment:
    """Estimate token load from the file count and recommend how to run the task."""
    file_count = len(task.files)
    estimated_tokens = file_count * TOKENS_PER_FILE
    if file_count == 0:
        return AgentTaskAssessment(
            task_id=task.id,
            is_valid=False,
            file_count=0,
            estimated_tokens=0,
            recommendation="leader-only",
            reason="No files listed; cannot dispatch without file ownership.",
        )
    if file_count > file_limit:
        parts = math.ceil(file_count / max(1, file_limit - 1))
        return AgentTaskAssessment(
            task_id=task.id,
            is_valid=False,
            file_count=file_count,
            estimated_tokens=estimated_tokens,
            recommendation="split",
            reason=f"{file_count} files exceeds limit of {file_limit}. Split into {parts} sub-tasks.",
        )
    if estimated_tokens > MAX_TOKENS_PER_AGENT:
        return AgentTaskAssessment(
            task_id=task.id,
            is_valid=False,
            file_count=file_count,
            estimated_tokens=estimated_tokens,
            recommendation="split",
            reason=f"Estimated {estimated_tokens} tokens exceeds limit of {MAX_TOKENS_PER_AGENT}.",
        )
    return AgentTaskAssessment(
        task_id=task.id,
        is_valid=True,
        file_count=file_count,
        estimated_tokens=estimated_tokens,
        recommendation="dispatch",
    )


def find_leader_only_tasks(decomposition: Decomposition) -> List[Task]:
    """Tasks with no file ownership; they cannot be handed to an executor."""
    return [task for task in decomposition.tasks if not task.files]


def auto_split_oversized_tasks(
    decomposition: Decomposition,
    file_limit: int = DEFAULT_FILE_LIMIT,
) -> Decomposition:
    """Return a new decomposition with oversized tasks split into chained parts.

    Parts receive fresh ids after the current maximum. Part 1 keeps the parent's
    dependencies, part k depends on part k-1, and tasks that depended on the
    parent are rewired to its last part.
    """
    if file_limit < 2:
        raise ValueError("file_limit must be at least 2 to split tasks")

    chunk_size = file_limit - 1
    next_id = max((task.id for task in decomposition.tasks), default=0) + 1
    replaced: Dict[int, int] = {}
    split_tasks: List[Task] = []

    for task in decomposition.tasks:
        if len(task.files) <= file_limit:
            split_tasks.append(task)
            continue

        chunks = [task.files[i : i + chunk_size] for i in range(0, len(task.files), chunk_size)]
        total = len(chunks)
        estimate = math.ceil(task.estimate_minutes / total)
        previous: Optional[int] = None
        for index, chunk in enumerate(chunks, start=1):
            part_id = next_id
            next_id += 1
            split_tasks.append(
                task.model_copy(
                    update={
                        "id": part_id,
                        "title": f"{task.title} (part {index}/{total})",
                        "files": list(chunk),
                        "depends_on": list(task.depends_on) if previous is None else [previous],
                        "estimate_minutes": estimate,
                    }
                )
            )
            previous = part_id
        replaced[task.id] = previous  # type: ignore[assignment]
        LOGGER.info("Split task %d (%d files) into %d parts", task.id, len(task.files), total)

    if not replaced:
        return decomposition

    rewired = [
        task.model_copy(update={"depends_on": _rewire(task.depends_on, replaced)})
        if any(dep in replaced for dep in task.depends_on)
        else task
        for task in split_tasks
    ]
    return decomposition.model_copy(update={"tasks": rewired})


def _rewire(depends_on: Sequence[int], replaced: Dict[int, int]) -> List[int]:
    rewired: List[int] = []
    for dep in depends_on:
        target = replaced.get(dep, dep)
        if target not in rewired:
            rewired.append(target)
    return rewired


def format_agent_dispatch_section(tasks: Sequence[Task], file_limit: int = DEFAULT_FILE_LIMIT) -> str:
    """Render per-task dispatch recommendations as a markdown list."""
    lines = ["### Agent Dispatch Recommendations", ""]
    for task in tasks:
        assessment = assess_task_size(task, file_limit)
        status = "OK" if assessment.is_valid else "WARN"
        reason = f" ({assessment.reason})" if assessment.reason else ""
        lines.append(
            f"- **#{task.id}** [{status}] {assessment.recommendation.upper()}: "
            f"{assessment.file_count} files, ~{assessment.estimated_tokens} tokens{reason}"
        )
    return "\n".join(lines)
