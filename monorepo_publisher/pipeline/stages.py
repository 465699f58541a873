from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Protocol, Sequence, TypeVar, Union

ArgsT = TypeVar("ArgsT")
OptionsT = TypeVar("OptionsT")


class Item(Protocol):
    """Anything a work unit can be keyed by. Only the name is relied upon."""

    @property
    def name(self) -> str:
        ...


ItemT = TypeVar("ItemT", bound=Item)


@dataclass
class WorkUnit(Generic[ItemT]):
    """Pairs an external item with the state accumulated for it across stages."""

    item: ItemT
    state: dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return self.item.name


StageFn = Callable[[ArgsT, OptionsT, list[WorkUnit[Any]]], Union[ArgsT, Awaitable[ArgsT]]]


@dataclass(frozen=True)
class Stage(Generic[ArgsT, OptionsT]):
    """A named step of a pipeline.

    The callable receives the args returned by the previous stage, the
    invocation options and the whole live list of work units, and returns
    the args for the next stage. It may mutate the units (and the list) in
    place. Coroutine functions are allowed; the runner awaits them before
    moving on.
    """

    name: str
    fn: StageFn[ArgsT, OptionsT]
    description: str = ""

    def __call__(self, args: ArgsT, options: OptionsT, units: list[WorkUnit[Any]]) -> ArgsT | Awaitable[ArgsT]:
        return self.fn(args, options, units)


def check_unique_names(stages: Sequence[Stage[Any, Any]]) -> None:
    seen: set[str] = set()
    for s in stages:
        if s.name in seen:
            raise ValueError(f"Duplicate stage name: {s.name}")
        seen.add(s.name)


def resume_index(stages: Sequence[Stage[Any, Any]], last_completed_stage: str) -> int:
    """Index of the stage right after last_completed_stage (0 when unknown)."""
    for i, s in enumerate(stages):
        if s.name == last_completed_stage:
            return i + 1
    return 0
