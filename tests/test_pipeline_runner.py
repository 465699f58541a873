from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from monorepo_publisher.common.snapshot import snapshot
from monorepo_publisher.integration.event_bus import InMemoryEventBus
from monorepo_publisher.integration.events import (
    CheckpointDiscarded,
    DomainEvent,
    PipelineFinished,
    StageCompleted,
    StageFailed,
)
from monorepo_publisher.pipeline.checkpointing import Checkpoint, CheckpointPayload, CheckpointStore
from monorepo_publisher.pipeline.errors import PipelineError
from monorepo_publisher.pipeline.runner import PipelineRunner, RunnerState
from monorepo_publisher.pipeline.stages import Stage, WorkUnit

NOW = 1_700_000_000_000


@dataclass(frozen=True)
class _Item:
    name: str


@dataclass
class _Protocol:
    head: str = "head-1"
    options_match: bool = True
    use: bool = True
    universe: tuple[str, ...] = ("pkgA", "pkgB")
    calls: list[str] = field(default_factory=list)

    def validate_checkpoint(self, checkpoint: Checkpoint) -> bool:
        self.calls.append("validate")
        return self.options_match and checkpoint.payload.repo_mark == self.head

    def should_use_checkpoint(self) -> bool:
        self.calls.append("should_use")
        return self.use

    def build_checkpoint_payload(self, stage: Stage[Any, Any], units: list[WorkUnit[Any]], options: Any) -> CheckpointPayload:
        return CheckpointPayload(
            options={},
            repo_mark=self.head,
            state={u.identity: snapshot(u.state) for u in units},
        )

    def restore_from_checkpoint(self, checkpoint: Checkpoint, units: list[WorkUnit[Any]]) -> None:
        self.calls.append("restore")
        for name, state in checkpoint.payload.state.items():
            if name in self.universe:
                units.append(WorkUnit(item=_Item(name), state=snapshot(state)))

    def on_validation_failed(self) -> None:
        self.calls.append("validation_failed")


@dataclass
class _Recorder:
    ran: list[str] = field(default_factory=list)
    seen_state: dict[str, dict[str, Any]] = field(default_factory=dict)


def _bump(rec: _Recorder) -> Stage[Any, Any]:
    def run(args: Any, options: Any, units: list[WorkUnit[Any]]) -> Any:
        rec.ran.append("Bump")
        if not units:
            units.append(WorkUnit(item=_Item("pkgA")))
        for u in units:
            u.state["version"] = "1.2.0"
        return args

    return Stage(name="Bump", fn=run)


def _publish(rec: _Recorder, fail: bool) -> Stage[Any, Any]:
    def run(args: Any, options: Any, units: list[WorkUnit[Any]]) -> Any:
        rec.ran.append("Publish")
        rec.seen_state = {u.identity: dict(u.state) for u in units}
        for u in units:
            u.state["published"] = True
        if fail:
            raise ConnectionError("registry unreachable")
        return args

    return Stage(name="Publish", fn=run)


def _runner(
    stages: list[Stage[Any, Any]],
    path: Path,
    protocol: _Protocol,
    **kwargs: Any,
) -> PipelineRunner[Any, Any]:
    kwargs.setdefault("clock", lambda: NOW)
    return PipelineRunner(stages=stages, store=CheckpointStore(path), protocol=protocol, **kwargs)


def _write_checkpoint(path: Path, *, stage: str = "Bump", timestamp: int = NOW, head: str = "head-1") -> None:
    CheckpointStore(path).save(
        Checkpoint(
            timestamp=timestamp,
            last_completed_stage=stage,
            payload=CheckpointPayload(options={}, repo_mark=head, state={"pkgA": {"version": "1.2.0"}}),
        )
    )


def test_fresh_run_checkpoints_after_each_stage(tmp_path: Path) -> None:
    path = tmp_path / "checkpoint.json"
    rec = _Recorder()
    bus = InMemoryEventBus()
    completed: list[str] = []
    bus.subscribe(StageCompleted, lambda e: completed.append(e.stage))

    runner = _runner([_bump(rec), _publish(rec, fail=False)], path, _Protocol(), bus=bus)
    assert runner.run(None, None) == 0

    assert rec.ran == ["Bump", "Publish"]
    assert completed == ["Bump", "Publish"]
    assert runner.state is RunnerState.DONE
    ck = CheckpointStore(path).load()
    assert ck is not None
    assert ck.last_completed_stage == "Publish"
    assert ck.timestamp == NOW
    assert ck.payload.state == {"pkgA": {"version": "1.2.0", "published": True}}


def test_failure_does_not_advance_checkpoint_bytes(tmp_path: Path) -> None:
    path = tmp_path / "checkpoint.json"
    rec = _Recorder()
    written_after_bump: list[bytes] = []

    def publish(args: Any, options: Any, units: list[WorkUnit[Any]]) -> Any:
        written_after_bump.append(path.read_bytes())
        units[0].state["version"] = "mutated"
        raise ConnectionError("registry unreachable")

    runner = _runner([_bump(rec), Stage(name="Publish", fn=publish)], path, _Protocol())
    assert runner.run(None, None) == 1
    assert path.read_bytes() == written_after_bump[0]


def test_resume_restores_state_and_starts_after_last_stage(tmp_path: Path) -> None:
    path = tmp_path / "checkpoint.json"
    protocol = _Protocol()

    first = _Recorder()
    failed: list[str] = []
    bus = InMemoryEventBus()
    bus.subscribe(StageFailed, lambda e: failed.append(e.stage))
    assert _runner([_bump(first), _publish(first, fail=True)], path, protocol, bus=bus).run(None, None) == 1
    assert failed == ["Publish"]

    ck = CheckpointStore(path).load()
    assert ck is not None
    assert ck.last_completed_stage == "Bump"
    assert ck.payload.state == {"pkgA": {"version": "1.2.0"}}

    second = _Recorder()
    runner = _runner([_bump(second), _publish(second, fail=False)], path, protocol)
    assert runner.run(None, None) == 0

    assert second.ran == ["Publish"]
    assert second.seen_state == {"pkgA": {"version": "1.2.0"}}
    assert protocol.calls[-3:] == ["validate", "should_use", "restore"]


def test_expired_checkpoint_is_treated_as_absent(tmp_path: Path) -> None:
    path = tmp_path / "checkpoint.json"
    _write_checkpoint(path, timestamp=NOW - int(timedelta(hours=25).total_seconds() * 1000))
    protocol = _Protocol()
    rec = _Recorder()
    events: list[DomainEvent] = []
    bus = InMemoryEventBus()
    bus.subscribe(CheckpointDiscarded, events.append)

    runner = _runner([_bump(rec), _publish(rec, fail=False)], path, protocol, expiration=timedelta(hours=24), bus=bus)
    assert runner.run(None, None) == 0

    assert protocol.calls == []
    assert rec.ran == ["Bump", "Publish"]
    assert [e.reason for e in events] == ["expired"]  # type: ignore[attr-defined]


def test_invalid_checkpoint_notifies_and_starts_fresh(tmp_path: Path) -> None:
    path = tmp_path / "checkpoint.json"
    _write_checkpoint(path, head="old-head")
    protocol = _Protocol(head="new-head")
    rec = _Recorder()

    assert _runner([_bump(rec), _publish(rec, fail=False)], path, protocol).run(None, None) == 0

    assert protocol.calls == ["validate", "validation_failed"]
    assert rec.ran == ["Bump", "Publish"]


def test_valid_checkpoint_not_requested_is_kept_but_unused(tmp_path: Path) -> None:
    path = tmp_path / "checkpoint.json"
    _write_checkpoint(path)
    before = path.read_bytes()
    protocol = _Protocol(use=False)

    seen_units: list[int] = []

    def boom(args: Any, options: Any, units: list[WorkUnit[Any]]) -> Any:
        seen_units.append(len(units))
        raise RuntimeError("first stage fails")

    runner = _runner([Stage(name="Bump", fn=boom)], path, protocol)
    assert runner.run(None, None) == 1
    assert seen_units == [0]

    assert "restore" not in protocol.calls
    assert path.read_bytes() == before


def test_unknown_last_stage_restarts_from_first(tmp_path: Path) -> None:
    path = tmp_path / "checkpoint.json"
    _write_checkpoint(path, stage="RemovedStage")
    rec = _Recorder()

    assert _runner([_bump(rec), _publish(rec, fail=False)], path, _Protocol()).run(None, None) == 0
    assert rec.ran == ["Bump", "Publish"]


def test_restore_gap_drops_unknown_items(tmp_path: Path) -> None:
    path = tmp_path / "checkpoint.json"
    CheckpointStore(path).save(
        Checkpoint(
            timestamp=NOW,
            last_completed_stage="Bump",
            payload=CheckpointPayload(
                options={},
                repo_mark="head-1",
                state={"pkgA": {"version": "1.2.0"}, "old-pkg": {"version": "0.1.0"}},
            ),
        )
    )
    rec = _Recorder()

    assert _runner([_bump(rec), _publish(rec, fail=False)], path, _Protocol()).run(None, None) == 0
    assert set(rec.seen_state) == {"pkgA"}


def test_corrupt_checkpoint_aborts_before_any_stage(tmp_path: Path) -> None:
    path = tmp_path / "checkpoint.json"
    path.write_text('{"timestamp": 1, "lastCompleted')
    rec = _Recorder()

    runner = _runner([_bump(rec), _publish(rec, fail=False)], path, _Protocol())
    assert runner.run(None, None) == 1
    assert rec.ran == []
    assert path.read_text() == '{"timestamp": 1, "lastCompleted'


def test_nothing_left_after_last_stage(tmp_path: Path) -> None:
    path = tmp_path / "checkpoint.json"
    _write_checkpoint(path, stage="Publish")
    rec = _Recorder()

    assert _runner([_bump(rec), _publish(rec, fail=False)], path, _Protocol()).run(None, None) == 0
    assert rec.ran == []


def test_args_are_threaded_between_stages(tmp_path: Path) -> None:
    seen: list[Any] = []

    def first(args: Any, options: Any, units: list[WorkUnit[Any]]) -> Any:
        seen.append(args)
        return args + [options["suffix"]]

    def second(args: Any, options: Any, units: list[WorkUnit[Any]]) -> Any:
        seen.append(args)
        return args

    stages = [Stage(name="first", fn=first), Stage(name="second", fn=second)]
    assert _runner(stages, tmp_path / "ck.json", _Protocol()).run(["start"], {"suffix": "x"}) == 0
    assert seen == [["start"], ["start", "x"]]


def test_async_stage_is_awaited_before_next(tmp_path: Path) -> None:
    order: list[str] = []

    async def slow(args: Any, options: Any, units: list[WorkUnit[Any]]) -> Any:
        await asyncio.sleep(0.01)
        order.append("slow")
        return "from-slow"

    def after(args: Any, options: Any, units: list[WorkUnit[Any]]) -> Any:
        order.append(f"after:{args}")
        return args

    stages = [Stage(name="slow", fn=slow), Stage(name="after", fn=after)]
    assert _runner(stages, tmp_path / "ck.json", _Protocol()).run(None, None) == 0
    assert order == ["slow", "after:from-slow"]


def test_run_and_exit_terminates_with_status(tmp_path: Path) -> None:
    rec = _Recorder()
    ok = _runner([_bump(rec)], tmp_path / "ok.json", _Protocol())
    with pytest.raises(SystemExit) as excinfo:
        ok.run_and_exit(None, None)
    assert excinfo.value.code == 0

    failing = _runner([_publish(rec, fail=True)], tmp_path / "fail.json", _Protocol())
    with pytest.raises(SystemExit) as excinfo:
        failing.run_and_exit(None, None)
    assert excinfo.value.code == 1


def test_duplicate_stage_names_are_rejected(tmp_path: Path) -> None:
    rec = _Recorder()
    with pytest.raises(ValueError):
        _runner([_bump(rec), _bump(rec)], tmp_path / "ck.json", _Protocol())


@dataclass
class _BrokenProtocol(_Protocol):
    failing_hook: str = "validate"

    def validate_checkpoint(self, checkpoint: Checkpoint) -> bool:
        if self.failing_hook == "validate":
            raise PipelineError("git rev-parse HEAD failed")
        return super().validate_checkpoint(checkpoint)

    def restore_from_checkpoint(self, checkpoint: Checkpoint, units: list[WorkUnit[Any]]) -> None:
        if self.failing_hook == "restore":
            raise TypeError("state is not a mapping")
        super().restore_from_checkpoint(checkpoint, units)


@pytest.mark.parametrize("hook", ["validate", "restore"])
def test_failing_protocol_hook_ends_run_with_status(tmp_path: Path, hook: str) -> None:
    path = tmp_path / "checkpoint.json"
    _write_checkpoint(path)
    before = path.read_bytes()
    rec = _Recorder()
    finished: list[int] = []
    bus = InMemoryEventBus()
    bus.subscribe(PipelineFinished, lambda e: finished.append(e.exit_code))

    runner = _runner([_bump(rec), _publish(rec, fail=False)], path, _BrokenProtocol(failing_hook=hook), bus=bus)
    assert runner.run(None, None) == 1

    assert rec.ran == []
    assert finished == [1]
    assert runner.state is RunnerState.FAILED
    assert path.read_bytes() == before
