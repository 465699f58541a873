from __future__ import annotations

import glob
import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import networkx as nx
from packaging.requirements import InvalidRequirement, Requirement
from packaging.utils import canonicalize_name

from monorepo_publisher.pipeline.errors import PipelineError
from monorepo_publisher.pipeline.stages import WorkUnit

logger = logging.getLogger(__name__)


class PackageDiscoveryError(PipelineError):
    pass


@dataclass(frozen=True)
class Package:
    name: str
    version: str
    path: Path
    requirements: tuple[str, ...] = ()

    @property
    def manifest_path(self) -> Path:
        return self.path / "pyproject.toml"


Parcel = WorkUnit[Package]


def default_state() -> dict[str, Any]:
    return {"published": False}


def new_parcel(package: Package) -> Parcel:
    return WorkUnit(item=package, state=default_state())


def read_package(path: Path) -> Package:
    manifest = path / "pyproject.toml"
    try:
        data = tomllib.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise PackageDiscoveryError(f"Cannot read {manifest}: {exc}") from exc

    project = data.get("project") or {}
    name = project.get("name")
    version = project.get("version")
    if not name or not version:
        raise PackageDiscoveryError(f"{manifest} must define [project] name and a static version")

    requirements: list[str] = []
    for spec in project.get("dependencies", []) or []:
        try:
            requirements.append(canonicalize_name(Requirement(spec).name))
        except InvalidRequirement:
            logger.warning("Ignoring invalid requirement %r in %s", spec, manifest)
    return Package(name=canonicalize_name(name), version=str(version), path=path, requirements=tuple(requirements))


def discover_packages(root: Path, package_globs: Iterable[str]) -> list[Package]:
    """Find workspace packages: directories matching a glob that hold a pyproject.toml."""
    seen: set[Path] = set()
    out: list[Package] = []
    for pattern in package_globs:
        for match in sorted(glob.glob(str(root / pattern))):
            p = Path(match).resolve()
            if p in seen or not p.is_dir() or not (p / "pyproject.toml").exists():
                continue
            seen.add(p)
            out.append(read_package(p))
    return out


class PackageGraph:
    """Dependency graph of the workspace packages.

    Edges point from a package to the workspace packages it depends on;
    requirements on anything outside the workspace are not part of the graph.
    """

    def __init__(self, packages: Iterable[Package]) -> None:
        self._graph: nx.DiGraph = nx.DiGraph()
        for pkg in packages:
            if pkg.name in self._graph:
                raise PackageDiscoveryError(f"Duplicate package name in workspace: {pkg.name}")
            self._graph.add_node(pkg.name, package=pkg)
        for name in list(self._graph.nodes):
            pkg = self._graph.nodes[name]["package"]
            for dep in pkg.requirements:
                if dep in self._graph and dep != name:
                    self._graph.add_edge(name, dep)

    @classmethod
    def discover(cls, root: Path, package_globs: Iterable[str]) -> "PackageGraph":
        return cls(discover_packages(root, package_globs))

    def __len__(self) -> int:
        return self._graph.number_of_nodes()

    @property
    def names(self) -> list[str]:
        return sorted(self._graph.nodes)

    def get_node(self, name: str) -> Package | None:
        key = canonicalize_name(name)
        if key not in self._graph:
            return None
        return self._graph.nodes[key]["package"]

    def dependencies_of(self, name: str) -> set[str]:
        return set(nx.descendants(self._graph, canonicalize_name(name)))

    def publish_order(self, names: Iterable[str]) -> list[str]:
        """Dependencies first, ties broken by name."""
        sub = self._graph.subgraph(canonicalize_name(n) for n in names)
        try:
            order = list(nx.lexicographical_topological_sort(sub.reverse(copy=True)))
        except nx.NetworkXUnfeasible as exc:
            raise PackageDiscoveryError("Workspace packages have a dependency cycle") from exc
        return order
