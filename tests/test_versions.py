from __future__ import annotations

from pathlib import Path

import pytest
from packaging.version import Version

from monorepo_publisher.pipeline.errors import PipelineError
from monorepo_publisher.publish.versions import canary_version, next_version, set_manifest_version


@pytest.mark.parametrize(
    ("current", "prerelease", "expected"),
    [
        ("1.2.0", None, "1.2.1"),
        ("1.2", None, "1.2.1"),
        ("1.2.1rc2", None, "1.2.1"),
        ("1.2.0", "rc", "1.2.1rc0"),
        ("1.2.1rc0", "rc", "1.2.1rc1"),
        ("1.2.1a3", "beta", "1.2.1b0"),
        ("1.2.0.dev1", None, "1.2.0"),
        ("1.2.0.dev1", "rc", "1.2.0rc0"),
        ("1.2.1rc1.dev2", "rc", "1.2.1rc1"),
    ],
)
def test_next_version(current: str, prerelease: str | None, expected: str) -> None:
    assert next_version(current, prerelease) == expected


def test_next_version_rejects_unknown_identifier() -> None:
    with pytest.raises(PipelineError):
        next_version("1.0.0", "nightly")


def test_canary_version_is_a_dev_release_of_the_next_version() -> None:
    assert canary_version("1.2.0", "20240501123000") == "1.2.1.dev20240501123000"
    assert canary_version("1.2.1rc0", "20240501123000", "rc") == "1.2.1rc1.dev20240501123000"
    assert Version(canary_version("1.2.0", "20240502000000")) > Version(canary_version("1.2.0", "20240501235959"))

    with pytest.raises(PipelineError):
        canary_version("1.2.0", "2024-05-01")


def test_set_manifest_version_only_touches_project_table(tmp_path: Path) -> None:
    manifest = tmp_path / "pyproject.toml"
    manifest.write_text(
        '[build-system]\nrequires = ["setuptools"]\n\n'
        '[project]\nname = "core"\nversion = "1.0.0"\n\n'
        '[tool.other]\nversion = "keep"\n'
    )

    assert set_manifest_version(manifest, "1.0.1")
    text = manifest.read_text()
    assert 'version = "1.0.1"' in text
    assert 'version = "keep"' in text
    assert not set_manifest_version(manifest, "1.0.1")
