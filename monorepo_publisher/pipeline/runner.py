from __future__ import annotations

import asyncio
import inspect
import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, NoReturn, Sequence, TypeVar

from monorepo_publisher.common.time_utils import format_millis, now_millis
from monorepo_publisher.integration.event_bus import EventBus
from monorepo_publisher.integration.events import (
    CheckpointDiscarded,
    CheckpointRestored,
    CheckpointSaved,
    DomainEvent,
    PipelineFinished,
    PipelineStarted,
    StageCompleted,
    StageFailed,
    StageStarted,
)
from monorepo_publisher.pipeline.checkpointing import Checkpoint, CheckpointStore, is_expired
from monorepo_publisher.pipeline.errors import CorruptCheckpointError, StageFailedError
from monorepo_publisher.pipeline.protocol import CheckpointProtocol
from monorepo_publisher.pipeline.stages import Stage, WorkUnit, check_unique_names, resume_index

logger = logging.getLogger(__name__)

ArgsT = TypeVar("ArgsT")
OptionsT = TypeVar("OptionsT")

DEFAULT_EXPIRATION = timedelta(hours=24)


class RunnerState(str, Enum):
    INIT = "init"
    RESUME_CHECK = "resume_check"
    FRESH = "fresh"
    RESUME = "resume"
    RUNNING = "running"
    FAILED = "failed"
    DONE = "done"


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


def _complete(result: Any) -> Any:
    """Drive an awaitable stage result to completion before the next stage."""
    if inspect.isawaitable(result):
        return asyncio.run(_await(result))
    return result


@dataclass
class PipelineRunner(Generic[ArgsT, OptionsT]):
    """Runs stages in order, checkpointing after each one that succeeds.

    On start the runner looks for a checkpoint left by a previous run. When it
    is recent enough, still valid for the current repository and options, and
    the operator wants to resume, work units are restored from it and the run
    continues with the stage right after the last completed one.

    A failing stage stops the run; the checkpoint written after the previous
    stage stays on disk untouched so the next invocation can pick up from there.
    Only one run may use a checkpoint file at a time; nothing here locks it.
    """

    stages: Sequence[Stage[ArgsT, OptionsT]]
    store: CheckpointStore
    protocol: CheckpointProtocol[OptionsT]
    expiration: timedelta = DEFAULT_EXPIRATION
    bus: EventBus | None = None
    clock: Callable[[], int] = now_millis
    state: RunnerState = field(default=RunnerState.INIT, init=False)
    current_stage: str | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        self.stages = list(self.stages)
        check_unique_names(self.stages)

    def run_and_exit(self, initial_args: ArgsT, options: OptionsT) -> NoReturn:
        sys.exit(self.run(initial_args, options))

    def run(self, initial_args: ArgsT, options: OptionsT) -> int:
        """Run the pipeline and return the process exit status."""
        units: list[WorkUnit[Any]] = []
        self.state = RunnerState.INIT
        try:
            start = self._resume_point(units)
        except CorruptCheckpointError as exc:
            logger.error("%s. Inspect or remove the file before running again.", exc)
            self.state = RunnerState.FAILED
            return self._finish(1)
        except Exception:
            logger.exception("Could not decide whether to resume from the checkpoint")
            self.state = RunnerState.FAILED
            return self._finish(1)

        names = tuple(s.name for s in self.stages)
        self._publish(PipelineStarted(occurred_at=_utcnow(), stages=names, start_index=start))
        if start >= len(self.stages) and self.state is RunnerState.RESUME:
            logger.info("All stages were already completed by the previous run; nothing to resume.")

        args = initial_args
        total = len(self.stages)
        for index in range(start, total):
            st = self.stages[index]
            self.state = RunnerState.RUNNING
            self.current_stage = st.name
            logger.info("Stage %d/%d: %s", index + 1, total, st.name)
            self._publish(StageStarted(occurred_at=_utcnow(), stage=st.name, index=index, total=total))
            t0 = time.monotonic()

            try:
                args = _complete(st(args, options, units))
            except Exception as exc:
                failure = StageFailedError(st.name, exc)
                logger.error("%s", failure, exc_info=exc)
                self._publish(StageFailed(occurred_at=_utcnow(), stage=st.name, error=str(exc)))
                self.state = RunnerState.FAILED
                return self._finish(1)

            try:
                self._save_checkpoint(st, units, options)
            except Exception:
                logger.exception("Stage %s completed but its checkpoint could not be saved", st.name)
                self.state = RunnerState.FAILED
                return self._finish(1)

            self._publish(
                StageCompleted(
                    occurred_at=_utcnow(),
                    stage=st.name,
                    index=index,
                    total=total,
                    duration_s=time.monotonic() - t0,
                )
            )

        self.state = RunnerState.DONE
        self.current_stage = None
        return self._finish(0)

    def _resume_point(self, units: list[WorkUnit[Any]]) -> int:
        checkpoint = self.store.load()
        if checkpoint is None:
            self.state = RunnerState.FRESH
            return 0

        self.state = RunnerState.RESUME_CHECK
        if is_expired(checkpoint, self.expiration, now=self.clock()):
            logger.info(
                "Ignoring checkpoint saved on %s: older than %s.",
                format_millis(checkpoint.timestamp),
                self.expiration,
            )
            return self._start_fresh("expired")

        if not self.protocol.validate_checkpoint(checkpoint):
            self.protocol.on_validation_failed()
            return self._start_fresh("invalid")

        if not self.protocol.should_use_checkpoint():
            return self._start_fresh("not_requested")

        self.protocol.restore_from_checkpoint(checkpoint, units)
        start = resume_index(self.stages, checkpoint.last_completed_stage)
        if start == 0:
            logger.warning(
                "Stage %r from the checkpoint is not part of this pipeline; starting from the first stage.",
                checkpoint.last_completed_stage,
            )
        self.state = RunnerState.RESUME
        self._publish(
            CheckpointRestored(
                occurred_at=_utcnow(),
                last_completed_stage=checkpoint.last_completed_stage,
                checkpoint_timestamp=checkpoint.timestamp,
                resume_stage=self.stages[start].name if start < len(self.stages) else None,
            )
        )
        return start

    def _start_fresh(self, reason: str) -> int:
        self.state = RunnerState.FRESH
        self._publish(CheckpointDiscarded(occurred_at=_utcnow(), reason=reason))
        return 0

    def _save_checkpoint(self, st: Stage[ArgsT, OptionsT], units: list[WorkUnit[Any]], options: OptionsT) -> None:
        payload = self.protocol.build_checkpoint_payload(st, units, options)
        checkpoint = Checkpoint(timestamp=self.clock(), last_completed_stage=st.name, payload=payload)
        self.store.save(checkpoint)
        self._publish(CheckpointSaved(occurred_at=_utcnow(), stage=st.name, units=len(units)))

    def _finish(self, exit_code: int) -> int:
        self._publish(PipelineFinished(occurred_at=_utcnow(), exit_code=exit_code))
        return exit_code

    def _publish(self, event: DomainEvent) -> None:
        if self.bus is not None:
            self.bus.publish(event)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
