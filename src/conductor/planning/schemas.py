"""Typed planning records exchanged between the decomposer and the scheduler."""

from __future__ import annotations

from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "Decomposition",
    "EvalResult",
    "ExecutionPlan",
    "ExecutionStrategy",
    "PlanningModel",
    "Task",
    "TaskKind",
    "Wave",
]

TaskKind = Literal["feature", "fix", "refactor", "test", "docs", "migration"]
ExecutionStrategy = Literal["sequential", "parallel", "mixed"]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class PlanningModel(BaseModel):
    """Base model accepting both snake_case names and camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class Task(PlanningModel):
    """Single unit of work produced by decomposition."""

    id: int
    title: str
    description: str = ""
    active_form: str = ""
    type: TaskKind = "feature"
    files: List[str] = Field(default_factory=list)
    depends_on: List[int] = Field(default_factory=list)
    estimate_minutes: float = Field(gt=0)


class Decomposition(PlanningModel):
    """Ordered task list plus the decomposer's advisory metadata."""

    tasks: List[Task] = Field(default_factory=list)
    execution_strategy: ExecutionStrategy = "sequential"
    rationale: str = ""
    total_estimate_minutes: float = 0
    team_recommendation: str = ""


class Wave(PlanningModel):
    """Group of tasks that may start together once earlier waves finish."""

    wave_number: int
    tasks: List[Task] = Field(default_factory=list)
    file_conflicts: List[str] = Field(default_factory=list)
    has_conflicts: bool = False
    is_review_checkpoint: bool = False


class ExecutionPlan(PlanningModel):
    """Waves in execution order with aggregate estimates."""

    waves: List[Wave] = Field(default_factory=list)
    total_estimate_minutes: float = 0
    calibrated_estimate_minutes: int = 0
    calibration_factor: float = 0.5
    recommend_team: bool = False
    strategy: ExecutionStrategy = "sequential"


class EvalResult(BaseModel):
    """Evaluator verdict for one generated output."""

    model_config = ConfigDict(extra="ignore")

    score: float = 0
    passed: bool = False
    feedback: str = ""
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: object) -> float:
        try:
            score = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0.0
        return min(10.0, max(0.0, score))

    @field_validator("feedback", mode="before")
    @classmethod
    def _as_text(cls, value: object) -> str:
        return "" if value is None else str(value)

    @field_validator("strengths", "weaknesses", mode="before")
    @classmethod
    def _as_string_list(cls, value: object) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value if str(item).strip()]
        return [str(value)]
