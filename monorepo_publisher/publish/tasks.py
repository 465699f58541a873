from __future__ import annotations

import glob
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from monorepo_publisher.adapters.git.git_ops import GitRepository
from monorepo_publisher.common.time_utils import millis_to_datetime, now_millis
from monorepo_publisher.pipeline.config import PublisherConfig
from monorepo_publisher.pipeline.errors import PipelineError
from monorepo_publisher.pipeline.stages import Stage
from monorepo_publisher.publish.options import PublishOptions
from monorepo_publisher.publish.packages import Package, PackageGraph, Parcel, new_parcel
from monorepo_publisher.publish.versions import canary_version, next_version, set_manifest_version

logger = logging.getLogger(__name__)


def release_tag(name: str, version: str) -> str:
    return f"{name}@{version}"


def _expand_command(template: list[str], **fields: str) -> list[str]:
    out: list[str] = []
    for arg in template:
        value = arg.format(**fields)
        matches = sorted(glob.glob(value)) if any(ch in value for ch in "*?[") else []
        out.extend(matches or [value])
    return out


@dataclass
class PublishTasks:
    """Stages of the publish pipeline, bound to one workspace.

    Every stage receives the whole list of parcels and keeps what it learns
    in their state bags, which is what gets checkpointed. Args are passed
    through unchanged: they are not persisted and are therefore reset to the
    initial value on resume.
    """

    git: GitRepository
    graph: PackageGraph
    config: PublisherConfig
    clock: Callable[[], int] = field(default=now_millis, repr=False)

    @property
    def root(self) -> Path:
        return self.config.workspace_root

    def _relpath(self, pkg: Package) -> str:
        try:
            return str(pkg.path.relative_to(self.root))
        except ValueError:
            return str(pkg.path)

    def _changes_since_release(self, pkg: Package) -> list[str]:
        tag = release_tag(pkg.name, pkg.version)
        ref = tag if self.git.tag_exists(tag) else None
        return self.git.log_since(ref, [self._relpath(pkg)])

    # --- stages ---------------------------------------------------------------

    def check_repository_status(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Make sure we publish from a clean main branch."""
        if options.skip_repo_checks:
            logger.warning("Skipping repository checks")
            return args
        branch = self.git.current_branch()
        expected = self.config.workspace.main_branch
        if branch != expected:
            raise PipelineError(f"Publishing is only allowed from {expected!r}, current branch is {branch!r}")
        if self.git.has_uncommitted_changes():
            raise PipelineError("Working tree has unstaged changes; commit or stash them first")
        return args

    def load_requested_parcels(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Create parcels for the requested packages and their dependencies."""
        requested = list(options.package_names) or self.graph.names
        names: set[str] = set()
        for name in requested:
            pkg = self.graph.get_node(name)
            if pkg is None:
                raise PipelineError(f"Unknown package: {name}")
            names.add(pkg.name)
            if options.deps:
                names |= self.graph.dependencies_of(pkg.name)

        loaded = []
        for name in self.graph.publish_order(names):
            pkg = self.graph.get_node(name)
            if pkg is not None:
                loaded.append(new_parcel(pkg))
        parcels[:] = loaded
        logger.info("Loaded %d package(s)", len(parcels))
        return args

    def select_packages_to_publish(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Keep packages that changed since their last release."""
        selected = []
        for parcel in parcels:
            changes = self._changes_since_release(parcel.item)
            parcel.state["changes"] = changes
            if changes or options.force:
                selected.append(parcel)
            else:
                logger.info("%s has no changes since %s", parcel.identity, parcel.item.version)
        parcels[:] = selected
        if not parcels:
            logger.info("Nothing to publish")
        return args

    def resolve_release_versions(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Compute the version each package is released as."""
        for parcel in parcels:
            version = next_version(parcel.item.version, options.prerelease)
            parcel.state["release_version"] = version
            logger.info("%s: %s -> %s", parcel.identity, parcel.item.version, version)
        return args

    def update_versions(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Write release versions into the manifests and stage them."""
        manifests = []
        for parcel in parcels:
            manifest = parcel.item.manifest_path
            set_manifest_version(manifest, parcel.state["release_version"])
            manifests.append(manifest)
        if manifests:
            self.git.add(manifests)
        return args

    def commit_staged_changes(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Commit the version bumps and tag every released package."""
        if not self.git.has_staged_changes():
            logger.info("No staged changes to commit")
        else:
            self.git.commit(options.commit_message or self._commit_message(parcels))
        for parcel in parcels:
            tag = release_tag(parcel.identity, parcel.state["release_version"])
            if not self.git.tag_exists(tag):
                self.git.tag(tag, message=f"Release {tag}")
            parcel.state["tag"] = tag
        return args

    def publish_packages(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Build and upload the distributions, dependencies first.

        The stage runs again as a whole after a failure, so packages uploaded
        before it failed are uploaded again; the upload command is expected to
        skip existing files (twine --skip-existing).
        """
        publish = self.config.publish
        for parcel in parcels:
            fields = {
                "path": str(parcel.item.path),
                "name": parcel.identity,
                "version": parcel.state["release_version"],
                "tag": options.tag,
            }
            for template in (publish.build_command, publish.upload_command):
                cmd = _expand_command(template, **fields)
                if options.dry:
                    logger.info("[dry] %s", " ".join(cmd))
                    continue
                logger.info("Running %s", " ".join(cmd))
                try:
                    subprocess.run(cmd, check=True, cwd=self.root)
                except (OSError, subprocess.CalledProcessError) as exc:
                    raise PipelineError(f"Publishing {parcel.identity} failed: {exc}") from exc
            parcel.state["published"] = not options.dry
        return args

    def push_commit(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Push the release commit and tags."""
        if options.dry:
            logger.info("[dry] Skipping push to %s", self.config.publish.remote)
            return args
        self.git.push(self.config.publish.remote, self.git.current_branch())
        return args

    def resolve_canary_versions(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Compute a development version of every package for the canary release."""
        stamp = millis_to_datetime(self.clock()).strftime("%Y%m%d%H%M%S")
        for parcel in parcels:
            version = canary_version(parcel.item.version, stamp, options.prerelease)
            parcel.state["release_version"] = version
            logger.info("%s: canary %s", parcel.identity, version)
        return args

    def apply_canary_versions(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Write canary versions into the manifests without staging them."""
        for parcel in parcels:
            set_manifest_version(parcel.item.manifest_path, parcel.state["release_version"])
        return args

    def restore_manifests(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Put the manifests back to their committed versions."""
        manifests = [parcel.item.manifest_path for parcel in parcels]
        if manifests:
            self.git.restore(manifests)
        return args

    def list_unpublished(self, args: Any, options: PublishOptions, parcels: list[Parcel]) -> Any:
        """Report packages with changes since their last release."""
        found = 0
        for name in self.graph.names:
            pkg = self.graph.get_node(name)
            if pkg is None:
                continue
            changes = self._changes_since_release(pkg)
            if not changes:
                continue
            found += 1
            logger.info("%s@%s has %d unpublished commit(s):", pkg.name, pkg.version, len(changes))
            for line in changes:
                logger.info("    %s", line)
        if not found:
            logger.info("All packages are published")
        return args

    @staticmethod
    def _commit_message(parcels: list[Parcel]) -> str:
        lines = [f"- {p.identity}@{p.state['release_version']}" for p in parcels]
        return "Publish packages\n\n" + "\n".join(lines)


PUBLISH_PIPELINE: tuple[str, ...] = (
    "check_repository_status",
    "load_requested_parcels",
    "select_packages_to_publish",
    "resolve_release_versions",
    "update_versions",
    "commit_staged_changes",
    "publish_packages",
    "push_commit",
)

CANARY_PIPELINE: tuple[str, ...] = (
    "check_repository_status",
    "load_requested_parcels",
    "resolve_canary_versions",
    "apply_canary_versions",
    "publish_packages",
    "restore_manifests",
)


def stages_for_options(options: PublishOptions, tasks: PublishTasks) -> list[Stage[Any, PublishOptions]]:
    """Stage list for the mode selected by the options."""
    if options.list_unpublished:
        names: tuple[str, ...] = ("list_unpublished",)
    elif options.canary:
        names = CANARY_PIPELINE
    else:
        names = PUBLISH_PIPELINE
    stages = []
    for name in names:
        fn = getattr(tasks, name)
        doc = (fn.__doc__ or "").strip()
        stages.append(Stage(name=name, fn=fn, description=doc.splitlines()[0] if doc else ""))
    return stages
