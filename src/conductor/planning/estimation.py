"""Learned calibration of task estimates from recorded actual durations."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Dict, List, Literal, Optional, Sequence

from pydantic import ValidationError

from .schemas import PlanningModel

__all__ = [
    "DEFAULT_CALIBRATION",
    "DEFAULT_COMPLEXITY_FACTORS",
    "DEFAULT_TYPE_FACTORS",
    "EstimationDataPoint",
    "EstimationModel",
    "TaskPrediction",
    "add_data_point",
    "get_calibration_factor",
    "infer_complexity",
    "infer_task_type",
    "load_estimation_data",
    "predict_task_duration",
    "save_estimation_data",
    "train_estimation_model",
]

LOGGER = logging.getLogger(__name__)

Complexity = Literal["low", "medium", "high"]
Confidence = Literal["low", "medium", "high"]

DEFAULT_TYPE_FACTORS: Dict[str, float] = {
    "migration": 0.8,
    "feature": 1.0,
    "fix": 0.9,
    "refactor": 0.9,
    "test": 0.6,
    "docs": 0.4,
}

DEFAULT_COMPLEXITY_FACTORS: Dict[str, float] = {
    "low": 0.7,
    "medium": 1.0,
    "high": 1.5,
}

DEFAULT_CALIBRATION = 0.5
MIN_DATA_POINTS = 3
MIN_GROUP_SAMPLES = 2
RECENCY_WEIGHT = 2.0
RECENCY_WINDOW_DAYS = 14

_FIX_PATTERN = re.compile(r"\b(fix|bug|patch|hotfix)\b")
_REFACTOR_PATTERN = re.compile(r"\b(refactor|cleanup|clean.?up|tech.?debt)\b")
_TEST_PATTERN = re.compile(r"\btests?\b|\bspec\b|\bcoverage\b")
_DOCS_PATTERN = re.compile(r"\bdocs?\b|\breadme\b|\bdocumentation\b")
_MIGRATION_PATTERN = re.compile(r"\bmigrat")


class EstimationDataPoint(PlanningModel):
    """One completed unit of work with its estimate and actual duration."""

    sprint_phase: str
    task_type: str
    file_count: int = 0
    estimated_minutes: float
    actual_minutes: float
    complexity: Complexity = "medium"
    date: str


@dataclass(slots=True)
class EstimationModel:
    """Calibration factors learned from historical data points."""

    overall_calibration: float
    type_factors: Dict[str, float]
    complexity_factors: Dict[str, float]
    file_count_slope: float
    data_point_count: int


@dataclass(slots=True)
class TaskPrediction:
    """Predicted duration and the factors that produced it."""

    predicted_minutes: int
    confidence: Confidence
    factors: Dict[str, float] = field(default_factory=dict)


def _ratio(point: EstimationDataPoint) -> float:
    if point.estimated_minutes > 0:
        return point.actual_minutes / point.estimated_minutes
    return 1.0


def _age_days(date_text: str, now: datetime) -> Optional[float]:
    try:
        parsed = datetime.fromisoformat(date_text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return (now - parsed).total_seconds() / 86_400


def _round3(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP))


def _group_factors(
    points: Sequence[EstimationDataPoint],
    weights: Sequence[float],
    key: str,
    defaults: Dict[str, float],
) -> Dict[str, float]:
    factors = dict(defaults)
    groups: Dict[str, List[tuple[float, float]]] = {}
    for point, weight in zip(points, weights):
        if point.estimated_minutes <= 0:
            continue
        groups.setdefault(str(getattr(point, key)), []).append((_ratio(point), weight))
    for name, samples in groups.items():
        if len(samples) < MIN_GROUP_SAMPLES:
            continue
        total_weight = sum(weight for _, weight in samples)
        factors[name] = sum(ratio * weight for ratio, weight in samples) / total_weight
    return factors


def train_estimation_model(
    points: Sequence[EstimationDataPoint],
    now: Optional[datetime] = None,
) -> Optional[EstimationModel]:
    """Fit calibration factors; ``None`` when fewer than three points exist."""
    if len(points) < MIN_DATA_POINTS:
        return None
    now = now or datetime.now(timezone.utc)

    weights: List[float] = []
    for point in points:
        age = _age_days(point.date, now)
        weights.append(RECENCY_WEIGHT if age is not None and age <= RECENCY_WINDOW_DAYS else 1.0)
    total_weight = sum(weights)
    overall = sum(_ratio(point) * weight for point, weight in zip(points, weights)) / total_weight

    type_factors = _group_factors(points, weights, "task_type", DEFAULT_TYPE_FACTORS)
    complexity_factors = _group_factors(points, weights, "complexity", DEFAULT_COMPLEXITY_FACTORS)

    avg_files = sum(point.file_count for point in points) / len(points)
    avg_ratio = sum(_ratio(point) for point in points) / len(points)
    numerator = sum((point.file_count - avg_files) * (_ratio(point) - avg_ratio) for point in points)
    denominator = sum((point.file_count - avg_files) ** 2 for point in points)
    slope = numerator / denominator if denominator > 0 else 0.0

    return EstimationModel(
        overall_calibration=_round3(overall),
        type_factors=type_factors,
        complexity_factors=complexity_factors,
        file_count_slope=_round3(slope),
        data_point_count=len(points),
    )


def predict_task_duration(
    model: EstimationModel,
    estimated_minutes: float,
    task_type: str,
    complexity: Complexity,
    file_count: int,
) -> TaskPrediction:
    """Apply the learned factors to a single estimate."""
    type_factor = model.type_factors.get(task_type, 1.0)
    complexity_factor = model.complexity_factors.get(complexity, 1.0)
    predicted = (
        estimated_minutes * model.overall_calibration * type_factor * complexity_factor
        + model.file_count_slope * file_count
    )
    confidence: Confidence = "low"
    if model.data_point_count >= 10:
        confidence = "high"
    elif model.data_point_count >= 5:
        confidence = "medium"
    rounded = int(Decimal(str(predicted)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return TaskPrediction(
        predicted_minutes=max(1, rounded),
        confidence=confidence,
        factors={
            "base_estimate": estimated_minutes,
            "calibration": model.overall_calibration,
            "type_factor": type_factor,
            "complexity_factor": complexity_factor,
        },
    )


def load_estimation_data(path: Path) -> List[EstimationDataPoint]:
    """Read stored data points; unreadable files yield an empty list."""
    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        LOGGER.warning("Failed to read estimation data %s: %s", path, error)
        return []

    entries = raw.get("dataPoints", []) if isinstance(raw, dict) else []
    points: List[EstimationDataPoint] = []
    for entry in entries:
        try:
            points.append(EstimationDataPoint.model_validate(entry))
        except ValidationError as error:
            LOGGER.warning("Skipping invalid estimation data point: %s", error)
    return points


def save_estimation_data(path: Path, points: Sequence[EstimationDataPoint]) -> None:
    """Persist ``points`` atomically via a temporary file rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"dataPoints": [point.model_dump(by_alias=True) for point in points]}
    temp_path = path.with_name(path.name + ".tmp")
    temp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    os.replace(temp_path, path)


def add_data_point(path: Path, point: EstimationDataPoint) -> None:
    """Append ``point`` to the store at ``path``."""
    points = load_estimation_data(path)
    points.append(point)
    save_estimation_data(path, points)
    LOGGER.info("Estimation data point added phase=%s type=%s", point.sprint_phase, point.task_type)


def get_calibration_factor(path: Optional[Path], default: float = DEFAULT_CALIBRATION) -> float:
    """Return the learned calibration when enough data exists, else ``default``."""
    model = train_estimation_model(load_estimation_data(path)) if path else None
    if model is not None:
        LOGGER.info(
            "Using learned calibration factor %.3f from %d data points",
            model.overall_calibration,
            model.data_point_count,
        )
        return model.overall_calibration
    LOGGER.info("Using default calibration factor %.3f", default)
    return default


def infer_task_type(title: str) -> str:
    """Guess a task type from keywords in ``title``."""
    lowered = title.lower()
    if _FIX_PATTERN.search(lowered):
        return "fix"
    if _REFACTOR_PATTERN.search(lowered):
        return "refactor"
    if _TEST_PATTERN.search(lowered):
        return "test"
    if _DOCS_PATTERN.search(lowered):
        return "docs"
    if _MIGRATION_PATTERN.search(lowered):
        return "migration"
    return "feature"


def infer_complexity(task_count: int) -> Complexity:
    """Map a task count to a complexity bucket."""
    if task_count <= 2:
        return "low"
    if task_count <= 5:
        return "medium"
    return "high"
