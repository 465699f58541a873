from __future__ import annotations

from pathlib import Path


class PipelineError(RuntimeError):
    """Base class for errors raised by the publish pipeline."""


class CorruptCheckpointError(PipelineError):
    """A checkpoint file exists but cannot be parsed or fails schema validation.

    Resuming from a partially understood checkpoint could republish or skip
    packages, so the runner aborts before any stage executes.
    """

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Checkpoint at {path} is corrupt: {reason}")
        self.path = path
        self.reason = reason


class StageFailedError(PipelineError):
    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"Stage {stage!r} failed: {cause}")
        self.stage = stage
