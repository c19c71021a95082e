"""Step-level checkpoints so an interrupted conductor run can resume."""

from __future__ import annotations

import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, ValidationError

from .planning.schemas import Decomposition, PlanningModel

__all__ = [
    "CHECKPOINT_DIRNAME",
    "CheckpointPhase",
    "ConductorCheckpoint",
    "SpecSnapshot",
    "checkpoint_dir_for",
    "clear_checkpoint",
    "compute_feature_hash",
    "load_checkpoint",
    "save_checkpoint",
]

LOGGER = logging.getLogger(__name__)

CHECKPOINT_DIRNAME = "conductor_checkpoints"

CheckpointPhase = Literal["spec", "decompose"]


class SpecSnapshot(PlanningModel):
    """Refined spec carried over from a completed spec stage."""

    output: str
    score: float = 0
    iterations: int = 0
    cost: float = 0
    converged: bool = False
    termination_reason: str = "max_iterations"


class ConductorCheckpoint(PlanningModel):
    """Last completed pipeline stage for one feature request."""

    feature_hash: str
    phase: CheckpointPhase
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    spec: SpecSnapshot
    decomposition: Optional[Decomposition] = None
    total_cost_so_far: float = 0


def compute_feature_hash(feature: str, context: Optional[str] = None) -> str:
    """Return a stable 16-hex-digit key for ``feature`` plus ``context``."""
    digest = hashlib.sha256(f"{feature}|{context or ''}".encode("utf-8")).hexdigest()
    return digest[:16]


def checkpoint_dir_for(knowledge_dir: Optional[Path]) -> Optional[Path]:
    if knowledge_dir is None:
        return None
    return knowledge_dir / CHECKPOINT_DIRNAME


def _checkpoint_path(checkpoint_dir: Path, feature_hash: str) -> Path:
    return checkpoint_dir / f"{feature_hash}.json"


def load_checkpoint(checkpoint_dir: Path, feature_hash: str) -> Optional[ConductorCheckpoint]:
    """Return the stored checkpoint, or ``None`` when absent, corrupt or mismatched."""
    path = _checkpoint_path(checkpoint_dir, feature_hash)
    if not path.exists():
        return None
    try:
        checkpoint = ConductorCheckpoint.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as error:
        LOGGER.warning("Failed to load conductor checkpoint %s: %s", feature_hash, error)
        return None
    if checkpoint.feature_hash != feature_hash:
        LOGGER.warning("Conductor checkpoint %s belongs to %s; ignoring", path.name, checkpoint.feature_hash)
        return None
    LOGGER.info("Conductor checkpoint loaded hash=%s phase=%s", feature_hash, checkpoint.phase)
    return checkpoint


def save_checkpoint(checkpoint_dir: Path, checkpoint: ConductorCheckpoint) -> Path:
    """Write ``checkpoint`` atomically via a temporary file rename."""
    checkpoint_dir.mkdir(parents=True, exist_ok=True)
    path = _checkpoint_path(checkpoint_dir, checkpoint.feature_hash)
    temp_path = path.with_name(path.name + ".tmp")
    temp_path.write_text(checkpoint.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    os.replace(temp_path, path)
    LOGGER.info("Conductor checkpoint saved hash=%s phase=%s", checkpoint.feature_hash, checkpoint.phase)
    return path


def clear_checkpoint(checkpoint_dir: Path, feature_hash: str) -> None:
    path = _checkpoint_path(checkpoint_dir, feature_hash)
    if path.exists():
        path.unlink()
        LOGGER.info("Conductor checkpoint cleared hash=%s", feature_hash)
