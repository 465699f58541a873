from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from monorepo_publisher.common.time_utils import format_millis
from monorepo_publisher.integration.event_bus import EventBus
from monorepo_publisher.integration.events import (
    CheckpointDiscarded,
    CheckpointRestored,
    PipelineStarted,
    StageCompleted,
    StageFailed,
    StageStarted,
)


@dataclass
class Ui:
    console: Console
    progress: Progress
    _task: TaskID | None = field(default=None, init=False)

    def log(self, message: str) -> None:
        self.console.print(message)

    def attach(self, bus: EventBus) -> list[Callable[[], None]]:
        """Follow runner events on the bus. Returns the unsubscribe callables."""
        return [
            bus.subscribe(PipelineStarted, self._on_started),
            bus.subscribe(CheckpointRestored, self._on_restored),
            bus.subscribe(CheckpointDiscarded, self._on_discarded),
            bus.subscribe(StageStarted, self._on_stage_started),
            bus.subscribe(StageCompleted, self._on_stage_completed),
            bus.subscribe(StageFailed, self._on_stage_failed),
        ]

    def _on_started(self, event: PipelineStarted) -> None:
        self._task = self.progress.add_task(
            "stages",
            total=len(event.stages),
            completed=event.start_index,
        )

    def _on_restored(self, event: CheckpointRestored) -> None:
        saved_on = format_millis(event.checkpoint_timestamp)
        self.log(f"[green]Restored checkpoint saved on [magenta]{saved_on}[/magenta][/green]")
        if event.resume_stage is not None:
            self.log(f"Resuming at stage [bold]{event.resume_stage}[/bold]")

    def _on_discarded(self, event: CheckpointDiscarded) -> None:
        if event.reason != "not_requested":
            self.log(f"[yellow]Checkpoint not used ({event.reason}); starting from scratch[/yellow]")

    def _on_stage_started(self, event: StageStarted) -> None:
        if self._task is not None:
            self.progress.update(self._task, description=event.stage)

    def _on_stage_completed(self, event: StageCompleted) -> None:
        if self._task is not None:
            self.progress.update(self._task, completed=event.index + 1)
        self.log(f"[green]✔[/green] {event.stage} ({event.duration_s:.1f}s)")

    def _on_stage_failed(self, event: StageFailed) -> None:
        self.log(f"[red]✘ {event.stage}: {event.error}[/red]")
        self.log("Fix the problem, then run the same command with [bold]--resume[/bold].")


@contextmanager
def progress_ui(bus: EventBus | None = None) -> Iterator[Ui]:
    console = Console(stderr=True)
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=False,
    )
    ui = Ui(console=console, progress=progress)
    unsubscribers = ui.attach(bus) if bus is not None else []
    try:
        with progress:
            yield ui
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()
