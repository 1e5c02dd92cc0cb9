"""Parse a ``cargo metadata`` style document into package records and resolved edges."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from crategraph.core.ids import (
    BuildTarget,
    DeclaredDependency,
    DependencyInstance,
    DependencyKind,
    PackageId,
    PackageRecord,
    parse_version,
)
from crategraph.errors import MalformedIdError, MetadataParseError

logger = logging.getLogger(__name__)


@dataclass
class ResolvedDep:
    """One entry of ``resolve.nodes[].deps``."""

    name: str
    pkg: PackageId
    kinds: frozenset[DependencyKind] = frozenset()


@dataclass
class MetadataDocument:
    """The parts of a metadata document the package graph is built from."""

    packages: list[PackageRecord] = field(default_factory=list)
    workspace_members: list[PackageId] = field(default_factory=list)
    workspace_root: str = ""
    resolve: dict[PackageId, list[ResolvedDep]] | None = None


def load_json(text: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MetadataParseError(f"metadata is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MetadataParseError("metadata must be a JSON object")
    return data


def read_metadata_file(path: Path) -> dict[str, Any]:
    """Read and decode a metadata JSON file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise MetadataParseError(f"cannot read {path}: {e}") from e
    return load_json(text)


def _expect(obj: Any, key: str, kind: type | tuple[type, ...], where: str) -> Any:
    if not isinstance(obj, dict) or key not in obj:
        raise MetadataParseError(f"{where}: missing field {key!r}")
    value = obj[key]
    if not isinstance(value, kind):
        raise MetadataParseError(f"{where}: field {key!r} has the wrong type")
    return value


def _parse_id(raw: Any) -> PackageId:
    if not isinstance(raw, str):
        raise MalformedIdError(raw, "package id must be a string")
    return PackageId(raw)


def _parse_declared(raw: dict, where: str) -> DeclaredDependency:
    name = _expect(raw, "name", str, where)
    try:
        kind = DependencyKind.from_metadata(raw.get("kind"))
    except ValueError as e:
        raise MetadataParseError(f"{where}: {e}") from e
    instance = DependencyInstance(
        kind=kind,
        optional=bool(raw.get("optional", False)),
        uses_default_features=bool(raw.get("uses_default_features", True)),
        features=tuple(raw.get("features") or ()),
        target=raw.get("target"),
        version_req=raw.get("req") or "*",
    )
    return DeclaredDependency(name=name, rename=raw.get("rename"), instance=instance)


def _parse_dep_kinds(raw: list, where: str) -> frozenset[DependencyKind]:
    # Older documents leave dep_kinds out, which means "any kind".
    try:
        return frozenset(DependencyKind.from_metadata(k.get("kind")) for k in raw)
    except (AttributeError, ValueError) as e:
        raise MetadataParseError(f"{where}.dep_kinds: {e}") from e


def _parse_target(raw: dict, where: str) -> BuildTarget:
    return BuildTarget(
        name=_expect(raw, "name", str, where),
        kinds=tuple(raw.get("kind") or ()),
        crate_types=tuple(raw.get("crate_types") or ()),
        src_path=raw.get("src_path") or "",
    )


def _parse_package(raw: Any, index: int) -> PackageRecord:
    where = f"packages[{index}]"
    if not isinstance(raw, dict):
        raise MetadataParseError(f"{where}: expected an object")
    package_id = _parse_id(raw.get("id"))
    name = _expect(raw, "name", str, where)
    version_str = raw.get("version")
    version = parse_version(package_id.repr, version_str)
    features_raw = raw.get("features") or {}
    if not isinstance(features_raw, dict):
        raise MetadataParseError(f"{where}: features must be an object")
    publish = raw.get("publish")
    return PackageRecord(
        id=package_id,
        name=name,
        version=version,
        version_str=version_str,
        source=raw.get("source"),
        manifest_path=raw.get("manifest_path") or "",
        features={k: tuple(v) for k, v in features_raw.items()},
        declared=[
            _parse_declared(d, f"{where}.dependencies[{i}]")
            for i, d in enumerate(raw.get("dependencies") or [])
        ],
        targets=tuple(
            _parse_target(t, f"{where}.targets[{i}]")
            for i, t in enumerate(raw.get("targets") or [])
        ),
        description=raw.get("description"),
        license=raw.get("license"),
        authors=tuple(raw.get("authors") or ()),
        edition=raw.get("edition") or "2015",
        links=raw.get("links"),
        publish=tuple(publish) if isinstance(publish, list) else None,
    )


def parse_metadata(data: dict[str, Any]) -> MetadataDocument:
    """
    Turn a decoded metadata document into typed records.

    Args:
        data: Decoded JSON object (``cargo metadata --format-version 1`` shape).

    Returns:
        MetadataDocument with packages, workspace members and resolved edges.
    """
    if not isinstance(data, dict):
        raise MetadataParseError("metadata must be a JSON object")
    packages_raw = _expect(data, "packages", list, "metadata")
    doc = MetadataDocument(
        packages=[_parse_package(p, i) for i, p in enumerate(packages_raw)],
        workspace_members=[_parse_id(m) for m in data.get("workspace_members") or []],
        workspace_root=data.get("workspace_root") or "",
    )
    resolve = data.get("resolve")
    if resolve is not None:
        nodes = _expect(resolve, "nodes", list, "resolve")
        doc.resolve = {}
        for i, node in enumerate(nodes):
            where = f"resolve.nodes[{i}]"
            from_id = _parse_id(_expect(node, "id", str, where))
            deps = []
            for j, dep in enumerate(node.get("deps") or []):
                dep_where = f"{where}.deps[{j}]"
                deps.append(
                    ResolvedDep(
                        name=_expect(dep, "name", str, dep_where),
                        pkg=_parse_id(_expect(dep, "pkg", str, dep_where)),
                        kinds=_parse_dep_kinds(dep.get("dep_kinds") or [], dep_where),
                    )
                )
            doc.resolve[from_id] = deps
    logger.debug(
        "Parsed metadata: %d packages, %d workspace members",
        len(doc.packages),
        len(doc.workspace_members),
    )
    return doc
