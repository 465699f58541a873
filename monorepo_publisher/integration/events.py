from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class DomainEvent:
    """Base type for all pipeline events."""

    occurred_at: datetime


# --- Checkpoint events -------------------------------------------------------


@dataclass(frozen=True)
class CheckpointRestored(DomainEvent):
    last_completed_stage: str
    checkpoint_timestamp: int
    resume_stage: str | None


@dataclass(frozen=True)
class CheckpointDiscarded(DomainEvent):
    reason: str  # expired | invalid | not_requested


@dataclass(frozen=True)
class CheckpointSaved(DomainEvent):
    stage: str
    units: int


# --- Stage events -----------------------------------------------------------


@dataclass(frozen=True)
class PipelineStarted(DomainEvent):
    stages: tuple[str, ...]
    start_index: int


@dataclass(frozen=True)
class StageStarted(DomainEvent):
    stage: str
    index: int
    total: int


@dataclass(frozen=True)
class StageCompleted(DomainEvent):
    stage: str
    index: int
    total: int
    duration_s: float


@dataclass(frozen=True)
class StageFailed(DomainEvent):
    stage: str
    error: str


@dataclass(frozen=True)
class PipelineFinished(DomainEvent):
    exit_code: int
