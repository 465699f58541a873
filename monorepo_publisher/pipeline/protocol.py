from __future__ import annotations

from typing import Any, Protocol, TypeVar

from monorepo_publisher.pipeline.checkpointing import Checkpoint, CheckpointPayload
from monorepo_publisher.pipeline.stages import Stage, WorkUnit

OptionsT = TypeVar("OptionsT", contravariant=True)


class CheckpointProtocol(Protocol[OptionsT]):
    """Pipeline-specific decisions about trusting and applying a checkpoint.

    One implementation exists per pipeline; the runner only calls these hooks
    and stays unaware of what a work unit actually is.
    """

    def validate_checkpoint(self, checkpoint: Checkpoint) -> bool:
        """Whether the checkpoint still describes the current repository and options."""
        ...

    def should_use_checkpoint(self) -> bool:
        """Whether the operator asked to resume from a valid checkpoint."""
        ...

    def build_checkpoint_payload(
        self,
        stage: Stage[Any, Any],
        units: list[WorkUnit[Any]],
        options: OptionsT,
    ) -> CheckpointPayload:
        ...

    def restore_from_checkpoint(self, checkpoint: Checkpoint, units: list[WorkUnit[Any]]) -> None:
        """Populate units (in place) from the checkpoint's state."""
        ...

    def on_validation_failed(self) -> None:
        ...
