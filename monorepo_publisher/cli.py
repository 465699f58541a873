from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from monorepo_publisher.adapters.git.git_ops import GitError
from monorepo_publisher.common.logging_config import configure_logging
from monorepo_publisher.common.time_utils import format_millis
from monorepo_publisher.integration.event_bus import InMemoryEventBus
from monorepo_publisher.pipeline.checkpointing import CheckpointStore, is_expired
from monorepo_publisher.pipeline.config import PublisherConfig
from monorepo_publisher.pipeline.errors import CorruptCheckpointError, PipelineError
from monorepo_publisher.pipeline.progress_ui import progress_ui
from monorepo_publisher.publish.options import PublishOptions
from monorepo_publisher.publish.pipeline import create_runner

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="Publish the packages of a Python monorepo.")

MODES = ("publish", "canary", "list-unpublished")


def _load_config(config: str, verbose: bool) -> PublisherConfig:
    cfg = PublisherConfig.load(Path(config).expanduser())
    level = logging.DEBUG if verbose else cfg.logging.level
    configure_logging(level, cfg.log_dir)
    return cfg


@app.command()
def publish(
    packages: Optional[list[str]] = typer.Argument(None, help="Packages to publish; all when omitted."),
    config: str = typer.Option("publisher.toml", help="Path to publisher.toml"),
    prerelease: Optional[str] = typer.Option(None, "--prerelease", "-p", help="Publish as prerelease: a | b | rc"),
    tag: str = typer.Option("next", "--tag", "-t", help="Distribution tag passed to the upload command."),
    resume: bool = typer.Option(
        False,
        "--resume",
        "-r",
        help="Resume the previous run from its checkpoint. Other options must stay the same.",
    ),
    commit_message: Optional[str] = typer.Option(None, "--commit-message", "-m"),
    force: bool = typer.Option(False, "--force", "-f", help="Publish packages without changes too."),
    deps: bool = typer.Option(True, "--deps/--no-deps", help="Include workspace dependencies."),
    list_unpublished: bool = typer.Option(
        False,
        "--list-unpublished",
        "-l",
        help="List packages with changes since their last release and exit.",
    ),
    canary: bool = typer.Option(False, "--canary", "-C", help="Publish development versions; nothing is committed."),
    skip_repo_checks: bool = typer.Option(False, "--skip-repo-checks", "-S"),
    dry: bool = typer.Option(False, "--dry", "-D", help="Do not upload nor push; commits are still made."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Bump, commit, tag and upload packages. Each step is checkpointed.

    If a run fails, fix the cause and run the exact same command again with
    --resume. Leave staged changes as they are: they belong to the checkpoint.
    """
    if resume and list_unpublished:
        raise typer.BadParameter("--resume cannot be combined with --list-unpublished")
    if canary and list_unpublished:
        raise typer.BadParameter("--canary cannot be combined with --list-unpublished")

    cfg = _load_config(config, verbose)
    options = PublishOptions(
        package_names=tuple(packages or ()),
        prerelease=prerelease,
        tag=tag,
        commit_message=commit_message,
        force=force,
        deps=deps,
        dry=dry,
        resume=resume,
        canary=canary,
        list_unpublished=list_unpublished,
        skip_repo_checks=skip_repo_checks,
    )

    bus = InMemoryEventBus()
    try:
        runner = create_runner(cfg, options, bus=bus)
    except (PipelineError, GitError) as exc:
        logger.error("%s", exc)
        raise typer.Exit(code=1) from exc

    with progress_ui(bus):
        runner.run_and_exit(None, options)


@app.command("show-checkpoint")
def show_checkpoint(
    config: str = typer.Option("publisher.toml", help="Path to publisher.toml"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw checkpoint document."),
    mode: str = typer.Option(
        "publish",
        "--mode",
        help="Pipeline whose checkpoint to show: publish | canary | list-unpublished",
    ),
) -> None:
    """Print the checkpoint left by the last run, if any."""
    if mode not in MODES:
        raise typer.BadParameter(f"unknown mode {mode!r}; choose one of {', '.join(MODES)}")
    cfg = _load_config(config, verbose=False)
    store = CheckpointStore(cfg.checkpoint_slot(mode))
    try:
        checkpoint = store.load()
    except CorruptCheckpointError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc

    if checkpoint is None:
        typer.echo(f"No checkpoint at {store.path}")
        return
    if as_json:
        typer.echo(json.dumps(checkpoint.to_document(), indent=2, sort_keys=True))
        return

    console = Console()
    expired = is_expired(checkpoint, cfg.checkpoint.expiration)
    console.print(f"Checkpoint: [bold]{store.path}[/bold]")
    console.print(f"Saved on:   {format_millis(checkpoint.timestamp)}" + (" [red](expired)[/red]" if expired else ""))
    console.print(f"Last stage: [bold]{checkpoint.last_completed_stage}[/bold]")
    console.print(f"Commit:     {checkpoint.payload.repo_mark}")
    for name, state in sorted(checkpoint.payload.state.items()):
        version = state.get("release_version", "-")
        flag = " [green]published[/green]" if state.get("published") else ""
        console.print(f"  {name} {version}{flag}")
