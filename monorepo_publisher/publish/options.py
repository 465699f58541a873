from __future__ import annotations

from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field


class PublishOptions(BaseModel):
    """Options of a single publish invocation."""

    model_config = ConfigDict(frozen=True)

    package_names: tuple[str, ...] = Field(default=(), description="Requested packages; all when empty.")
    prerelease: str | None = Field(default=None, description="Prerelease identifier, e.g. 'rc'.")
    tag: str = Field(default="next")
    commit_message: str | None = Field(default=None)
    force: bool = Field(default=False, description="Publish packages without changes as well.")
    deps: bool = Field(default=True, description="Include workspace dependencies of requested packages.")
    dry: bool = Field(default=False, description="Do not push nor upload; print the commands instead.")
    canary: bool = Field(default=False, description="Publish development versions without committing.")

    resume: bool = Field(default=False, description="Resume from a valid checkpoint.")
    list_unpublished: bool = Field(default=False)
    skip_repo_checks: bool = Field(default=False)

    @property
    def mode(self) -> str:
        """Name of the pipeline these options select. Each mode keeps its own checkpoint."""
        if self.list_unpublished:
            return "list-unpublished"
        if self.canary:
            return "canary"
        return "publish"


# Options that change what a run produces. A checkpoint taken with different
# values for any of these cannot be resumed.
CHECKPOINT_OPTION_FIELDS: Final[tuple[str, ...]] = (
    "package_names",
    "prerelease",
    "tag",
    "commit_message",
    "force",
    "deps",
    "dry",
    "canary",
)


def pick_checkpoint_options(options: PublishOptions) -> dict[str, Any]:
    return options.model_dump(mode="json", include=set(CHECKPOINT_OPTION_FIELDS))
