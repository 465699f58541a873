from __future__ import annotations

import re
from pathlib import Path

from packaging.version import InvalidVersion, Version

from monorepo_publisher.pipeline.errors import PipelineError

# PEP 440 spellings of the usual prerelease identifiers.
_PRERELEASE_ALIASES = {
    "a": "a",
    "alpha": "a",
    "b": "b",
    "beta": "b",
    "rc": "rc",
    "c": "rc",
    "pre": "rc",
    "preview": "rc",
}

_VERSION_LINE = re.compile(r'^(?P<prefix>\s*version\s*=\s*)(?P<quote>["\'])(?P<value>[^"\']*)(?P=quote)', re.MULTILINE)


def next_version(current: str, prerelease: str | None = None) -> str:
    """Version to release next.

    Without a prerelease identifier the patch number is bumped, or a pending
    prerelease or development release is finalized (1.2.0rc1 -> 1.2.0,
    1.2.0.dev1 -> 1.2.0). With one, a new prerelease series of the next patch
    is started (1.2.0 -> 1.2.1rc0), or the running series is continued
    (1.2.1rc0 -> 1.2.1rc1).
    """
    try:
        v = Version(current)
    except InvalidVersion as exc:
        raise PipelineError(f"Invalid version {current!r}") from exc

    major, minor, micro = (list(v.release) + [0, 0, 0])[:3]

    pending = v.pre is not None or v.dev is not None
    if prerelease is None:
        if pending:
            return f"{major}.{minor}.{micro}"
        return f"{major}.{minor}.{micro + 1}"

    label = _PRERELEASE_ALIASES.get(prerelease.lower())
    if label is None:
        raise PipelineError(f"Unsupported prerelease identifier {prerelease!r} (use a, b or rc)")
    if v.pre is not None and v.pre[0] == label:
        number = v.pre[1] if v.dev is not None else v.pre[1] + 1
        return f"{major}.{minor}.{micro}{label}{number}"
    if pending:
        return f"{major}.{minor}.{micro}{label}0"
    return f"{major}.{minor}.{micro + 1}{label}0"


def canary_version(current: str, stamp: str, prerelease: str | None = None) -> str:
    """Development release of the next version, e.g. 1.2.1.dev20240501123000.

    The stamp must be digits; later stamps sort as newer versions.
    """
    if not stamp.isdigit():
        raise PipelineError(f"Canary stamp must be numeric, got {stamp!r}")
    base = Version(next_version(current, prerelease))
    return str(Version(f"{base.public}.dev{int(stamp)}"))


def set_manifest_version(manifest: Path, version: str) -> bool:
    """Rewrite the [project] version of a pyproject.toml. Returns True if changed."""
    text = manifest.read_text(encoding="utf-8")
    start = text.find("[project]")
    if start < 0:
        raise PipelineError(f"{manifest} has no [project] table")
    end = text.find("\n[", start + 1)
    section = text[start:] if end < 0 else text[start:end]

    match = _VERSION_LINE.search(section)
    if match is None:
        raise PipelineError(f"{manifest} has no static version in [project]")
    if match.group("value") == version:
        return False

    updated = _VERSION_LINE.sub(
        lambda m: f"{m.group('prefix')}{m.group('quote')}{version}{m.group('quote')}",
        section,
        count=1,
    )
    manifest.write_text(text[:start] + updated + text[start + len(section):], encoding="utf-8")
    return True
