from __future__ import annotations

import os
import tomllib
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


def _expand(path: str, base: Path | None = None) -> Path:
    p = Path(os.path.expanduser(path))
    if base is not None and not p.is_absolute():
        p = base / p
    return p.resolve()


def _read_toml(path: Path) -> dict[str, Any]:
    return tomllib.loads(path.read_bytes().decode("utf-8"))


class WorkspaceConfig(BaseModel):
    """Where the monorepo lives and how to find its packages."""

    root: str = Field(default=".", description="Repository root; relative paths resolve against the config file.")
    package_globs: list[str] = Field(
        default_factory=lambda: ["packages/*"],
        description="Glob patterns (relative to root) of directories holding a pyproject.toml.",
    )
    main_branch: str = Field(default="main")


class CheckpointConfig(BaseModel):
    path: str = Field(default=".publisher/checkpoint.json", description="Relative to the workspace root.")
    expiration_hours: float = Field(default=24.0, gt=0)

    @property
    def expiration(self) -> timedelta:
        return timedelta(hours=self.expiration_hours)


class PublishConfig(BaseModel):
    build_command: list[str] = Field(
        default_factory=lambda: ["python", "-m", "build", "--outdir", "{path}/dist", "{path}"],
        description="Run per package; placeholders: {path} {name} {version} {tag}.",
    )
    upload_command: list[str] = Field(
        default_factory=lambda: ["python", "-m", "twine", "upload", "--skip-existing", "{path}/dist/*"],
    )
    remote: str = Field(default="origin")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    log_dir: str | None = Field(default=None)


class PublisherConfig(BaseModel):
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    publish: PublishConfig = Field(default_factory=PublishConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Directory the relative workspace root is resolved against.
    base_dir: Path = Field(default_factory=Path.cwd, exclude=True)

    @classmethod
    def load(cls, path: Path) -> "PublisherConfig":
        """Load configuration from TOML. A missing file yields the defaults."""
        base = path.expanduser().resolve().parent
        if not path.exists():
            return cls(base_dir=Path.cwd())
        raw = _read_toml(path)
        return cls.model_validate({**raw, "base_dir": base})

    @property
    def workspace_root(self) -> Path:
        return _expand(self.workspace.root, self.base_dir)

    @property
    def checkpoint_path(self) -> Path:
        return _expand(self.checkpoint.path, self.workspace_root)

    def checkpoint_slot(self, mode: str = "publish") -> Path:
        """Checkpoint file of a pipeline mode; other modes sit next to the publish one."""
        path = self.checkpoint_path
        if mode == "publish":
            return path
        return path.with_name(f"{mode}{path.suffix or '.json'}")

    @property
    def log_dir(self) -> Path | None:
        if self.logging.log_dir is None:
            return None
        return _expand(self.logging.log_dir, self.workspace_root)
