from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from deepdiff import DeepDiff

from monorepo_publisher.common.snapshot import snapshot
from monorepo_publisher.common.time_utils import format_millis
from monorepo_publisher.pipeline.checkpointing import Checkpoint, CheckpointPayload
from monorepo_publisher.pipeline.stages import Stage, WorkUnit
from monorepo_publisher.publish.options import PublishOptions, pick_checkpoint_options
from monorepo_publisher.publish.packages import Package, new_parcel

logger = logging.getLogger(__name__)


class HeadSource(Protocol):
    def head_commit_hash(self) -> str:
        ...


class PackageLookup(Protocol):
    def get_node(self, name: str) -> Package | None:
        ...


def options_diff(current: dict[str, Any], recorded: dict[str, Any]) -> dict[str, Any]:
    """Structural difference between two option snapshots (empty when equal)."""
    return DeepDiff(recorded, current, ignore_order=False).to_dict()


@dataclass
class PublishCheckpointProtocol:
    """Decides whether a publish checkpoint can be resumed, and applies it.

    A checkpoint is trusted only when HEAD is still the commit it was taken
    on and the checkpoint-relevant options match exactly. Staged changes are
    part of a publish run, so they are not compared here.
    """

    options: PublishOptions
    git: HeadSource
    packages: PackageLookup

    def validate_checkpoint(self, checkpoint: Checkpoint) -> bool:
        payload = checkpoint.payload
        head = self.git.head_commit_hash()
        if head != payload.repo_mark:
            logger.debug("Checkpoint taken on %s, HEAD is now %s", payload.repo_mark, head)
            return False
        diff = options_diff(pick_checkpoint_options(self.options), payload.options)
        if diff:
            logger.debug("Options differ from checkpoint: %s", diff)
            return False
        return True

    def should_use_checkpoint(self) -> bool:
        if self.options.resume:
            return True
        logger.warning(
            "Found a valid checkpoint but --resume was not given; it will be overwritten by this run."
        )
        return False

    def build_checkpoint_payload(
        self,
        stage: Stage[Any, Any],
        units: list[WorkUnit[Any]],
        options: PublishOptions,
    ) -> CheckpointPayload:
        return CheckpointPayload(
            options=pick_checkpoint_options(options),
            repo_mark=self.git.head_commit_hash(),
            state={unit.identity: snapshot(unit.state) for unit in units},
        )

    def restore_from_checkpoint(self, checkpoint: Checkpoint, units: list[WorkUnit[Any]]) -> None:
        logger.info("Restoring from checkpoint saved on %s", format_millis(checkpoint.timestamp))
        for name, restored in checkpoint.payload.state.items():
            package = self.packages.get_node(name)
            if package is None:
                logger.debug("Package %s from checkpoint no longer exists; dropping its state", name)
                continue
            parcel = new_parcel(package)
            parcel.state = {**parcel.state, **snapshot(restored)}
            units.append(parcel)

    def on_validation_failed(self) -> None:
        logger.warning(
            "Found a checkpoint taken with different options or on a different commit. "
            "Continuing from scratch..."
        )
