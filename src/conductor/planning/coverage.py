"""Advisory checks that flag gaps in a decomposition's layer and test coverage."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .schemas import Decomposition, Task

__all__ = [
    "DataFlowWarning",
    "HANDLER_LAYER_DIRS",
    "HANDLER_LAYER_FILES",
    "SCHEMA_LAYER_DIRS",
    "SCHEMA_LAYER_FILES",
    "NO_TEST_TASKS_WARNING",
    "check_data_flow_coverage",
    "check_test_coverage",
    "collect_advisories",
    "is_handler_path",
    "is_schema_path",
]

# File names match the last path segment; directories match whole segments.
SCHEMA_LAYER_FILES: tuple[str, ...] = ("schema.prisma", "models.py")
SCHEMA_LAYER_DIRS: tuple[str, ...] = ("migrations", "alembic/versions")

HANDLER_LAYER_FILES: tuple[str, ...] = ("route.ts", "routes.py", "views.py")
HANDLER_LAYER_DIRS: tuple[str, ...] = ("api", "handlers", "endpoints")

NO_TEST_TASKS_WARNING = (
    "WARNING: No test tasks in decomposition. Consider adding tests for new functionality."
)


@dataclass(frozen=True, slots=True)
class DataFlowWarning:
    """Schema changes with no task touching the layer that serves them."""

    missing_layer: str
    message: str
    task_ids: List[int] = field(default_factory=list)
    schema_files: List[str] = field(default_factory=list)


def _in_layer(path: str, names: Sequence[str], dirs: Sequence[str]) -> bool:
    normalised = "/" + path.replace("\\", "/").lstrip("/")
    directory, _, name = normalised.rpartition("/")
    if name in names:
        return True
    directory += "/"
    return any(f"/{marker}/" in directory for marker in dirs)


def is_schema_path(path: str) -> bool:
    """Return True when ``path`` belongs to the persistence/schema layer."""
    return _in_layer(path, SCHEMA_LAYER_FILES, SCHEMA_LAYER_DIRS)


def is_handler_path(path: str) -> bool:
    """Return True when ``path`` belongs to the request handler layer."""
    return _in_layer(path, HANDLER_LAYER_FILES, HANDLER_LAYER_DIRS)


def _touches_schema(task: Task) -> bool:
    if not task.files:
        return False
    return task.type == "migration" or any(is_schema_path(path) for path in task.files)


def check_data_flow_coverage(decomposition: Decomposition) -> List[DataFlowWarning]:
    """Warn once when schema work is planned but no task touches a handler."""
    schema_tasks = [task for task in decomposition.tasks if _touches_schema(task)]
    if not schema_tasks:
        return []
    if any(is_handler_path(path) for task in decomposition.tasks for path in task.files):
        return []

    labels = ", ".join(f'#{task.id} "{task.title}"' for task in schema_tasks)
    schema_files = [path for task in schema_tasks for path in task.files if is_schema_path(path)]
    return [
        DataFlowWarning(
            missing_layer="handler",
            message=(
                f"Schema/migration changes in {labels} but no task touches the handler layer. "
                "Ensure the new fields are read and written by the API layer."
            ),
            task_ids=[task.id for task in schema_tasks],
            schema_files=schema_files,
        )
    ]


def check_test_coverage(decomposition: Decomposition) -> Optional[str]:
    """Return a warning when no task is of type ``test``."""
    if any(task.type == "test" for task in decomposition.tasks):
        return None
    return NO_TEST_TASKS_WARNING


def collect_advisories(decomposition: Decomposition) -> List[str]:
    """Gather every coverage advisory as plain text."""
    advisories = [warning.message for warning in check_data_flow_coverage(decomposition)]
    test_warning = check_test_coverage(decomposition)
    if test_warning:
        advisories.append(test_warning)
    return advisories
