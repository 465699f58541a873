from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from monorepo_publisher.common.time_utils import now_millis
from monorepo_publisher.pipeline.errors import CorruptCheckpointError

logger = logging.getLogger(__name__)


def _atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        fh.write(json.dumps(payload, indent=2, sort_keys=True))
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, path)


class CheckpointPayload(BaseModel):
    """Pipeline-specific data captured after a stage completes."""

    model_config = ConfigDict(populate_by_name=True)

    options: dict[str, Any] = Field(default_factory=dict)
    repo_mark: str = Field(alias="repoMark")
    state: dict[str, dict[str, Any]] = Field(default_factory=dict)


class Checkpoint(BaseModel):
    """The single checkpoint document kept on disk between runs."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: int = Field(description="Epoch milliseconds when the checkpoint was written.")
    last_completed_stage: str = Field(alias="lastCompletedStage")
    payload: CheckpointPayload

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def is_expired(checkpoint: Checkpoint, expiration: timedelta, now: int | None = None) -> bool:
    if now is None:
        now = now_millis()
    age_ms = now - checkpoint.timestamp
    return age_ms > expiration.total_seconds() * 1000


@dataclass(frozen=True)
class CheckpointStore:
    """Single-slot persistence for the pipeline checkpoint.

    Design goals:
    - Always write atomically (temporary file + rename), so an interrupted
      save leaves the previous document, or no document, in place.
    - Never guess: a file that does not parse is reported as corrupt instead
      of being silently replaced with an empty state.
    """

    path: Path

    def load(self) -> Checkpoint | None:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptCheckpointError(self.path, str(exc)) from exc
        if not isinstance(raw, dict):
            raise CorruptCheckpointError(self.path, "document is not a JSON object")
        try:
            return Checkpoint.model_validate(raw)
        except ValidationError as exc:
            raise CorruptCheckpointError(self.path, str(exc)) from exc

    def save(self, checkpoint: Checkpoint) -> None:
        _atomic_write_json(self.path, checkpoint.to_document())
        logger.debug("Saved checkpoint after stage %s to %s", checkpoint.last_completed_stage, self.path)
