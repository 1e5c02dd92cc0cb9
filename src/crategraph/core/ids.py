"""Identifier and small value types shared by the package and feature graphs."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from functools import total_ordering
from pathlib import PurePosixPath

from semantic_version import SimpleSpec, Version

from crategraph.errors import MalformedIdError

CRATES_IO_REGISTRY = "registry+https://github.com/rust-lang/crates.io-index"


@total_ordering
class PackageId:
    """Opaque package identifier. Ordering and hashing use the full string."""

    __slots__ = ("_repr",)

    def __init__(self, repr_: str) -> None:
        if not isinstance(repr_, str) or not repr_.strip():
            raise MalformedIdError(repr_, "package id must be a non-empty string")
        self._repr = repr_

    @property
    def repr(self) -> str:
        return self._repr

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PackageId):
            return self._repr == other._repr
        return NotImplemented

    def __lt__(self, other: PackageId) -> bool:
        if not isinstance(other, PackageId):
            return NotImplemented
        return self._repr < other._repr

    def __hash__(self) -> int:
        return hash(self._repr)

    def __str__(self) -> str:
        return self._repr

    def __repr__(self) -> str:
        return f"PackageId({self._repr!r})"


def parse_version(package_id: str, raw: object) -> Version:
    """Parse a package version, reporting the owning id on failure."""
    if not isinstance(raw, str) or not raw:
        raise MalformedIdError(package_id, f"missing version ({raw!r})")
    try:
        return Version(raw)
    except ValueError as e:
        raise MalformedIdError(package_id, f"invalid version {raw!r}") from e


def _cargo_clause(clause: str) -> str:
    # Cargo reads a bare version as a caret requirement and "=" as exact.
    if clause[0].isdigit():
        return ("==" if "*" in clause else "^") + clause
    if clause.startswith("=") and not clause.startswith("=="):
        return "=" + clause
    return clause


def parse_version_req(req: str) -> SimpleSpec | None:
    """
    Parse a Cargo version requirement such as ``^1.2``, ``>=0.3, <0.5`` or ``=2.0.1``.

    Returns None for ``*``, which matches every version including prereleases.
    Raises ValueError if the requirement can't be parsed.
    """
    req = req.strip()
    if req in ("", "*"):
        return None
    clauses = [c.replace(" ", "") for c in req.split(",")]
    return SimpleSpec(",".join(_cargo_clause(c) for c in clauses if c))


def version_matches(req: str, version: Version) -> bool:
    """Whether ``version`` satisfies the Cargo requirement ``req``."""
    spec = parse_version_req(req)
    return spec is None or spec.match(version)


class SourceKind(enum.Enum):
    WORKSPACE = "workspace"
    PATH = "path"
    EXTERNAL = "external"


@dataclass(frozen=True)
class PackageSource:
    """Where a package comes from: a workspace member, a local path, or a registry/git source."""

    kind: SourceKind
    location: str

    @classmethod
    def workspace(cls, path: str) -> PackageSource:
        return cls(SourceKind.WORKSPACE, path)

    @classmethod
    def path(cls, path: str) -> PackageSource:
        return cls(SourceKind.PATH, path)

    @classmethod
    def external(cls, source: str) -> PackageSource:
        return cls(SourceKind.EXTERNAL, source)

    def is_workspace(self) -> bool:
        return self.kind is SourceKind.WORKSPACE

    def is_path(self) -> bool:
        return self.kind is SourceKind.PATH

    def is_local(self) -> bool:
        return self.kind is not SourceKind.EXTERNAL

    def is_external(self) -> bool:
        return self.kind is SourceKind.EXTERNAL

    def is_crates_io(self) -> bool:
        return self.is_external() and self.location == CRATES_IO_REGISTRY

    def __str__(self) -> str:
        if self.is_crates_io():
            return "crates.io"
        return self.location


def relative_dir(manifest_path: str, workspace_root: str) -> str:
    """Directory of a manifest relative to the workspace root ('.' for the root)."""
    manifest_dir = PurePosixPath(manifest_path).parent
    try:
        rel = manifest_dir.relative_to(PurePosixPath(workspace_root))
    except ValueError:
        return str(manifest_dir)
    return str(rel) if str(rel) else "."


@dataclass(frozen=True)
class BuildTarget:
    """A library, binary, test, example, bench or build script of a package."""

    name: str
    kinds: tuple[str, ...] = ()
    crate_types: tuple[str, ...] = ()
    src_path: str = ""

    @property
    def is_lib(self) -> bool:
        return any(k in ("lib", "rlib", "dylib", "proc-macro", "cdylib", "staticlib") for k in self.kinds)

    @property
    def is_proc_macro(self) -> bool:
        return "proc-macro" in self.kinds

    @property
    def is_build_script(self) -> bool:
        return "custom-build" in self.kinds

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kinds": list(self.kinds),
            "crate_types": list(self.crate_types),
        }


class DependencyKind(enum.Enum):
    NORMAL = "normal"
    BUILD = "build"
    DEV = "dev"

    @classmethod
    def from_metadata(cls, value: str | None) -> DependencyKind:
        """Map the ``kind`` field of a declared dependency (None means normal)."""
        if value is None or value == "normal":
            return cls.NORMAL
        if value == "build":
            return cls.BUILD
        if value in ("dev", "development"):
            return cls.DEV
        raise ValueError(f"unknown dependency kind: {value!r}")


class DependencyDirection(enum.Enum):
    """Direction to traverse links in: dependencies, dependents, or both."""

    FORWARD = "forward"
    REVERSE = "reverse"
    BOTH = "both"

    def opposite(self) -> DependencyDirection:
        if self is DependencyDirection.FORWARD:
            return DependencyDirection.REVERSE
        if self is DependencyDirection.REVERSE:
            return DependencyDirection.FORWARD
        return self


@dataclass(frozen=True)
class DependencyInstance:
    """One declared requirement that a resolved link was matched against."""

    kind: DependencyKind
    optional: bool = False
    uses_default_features: bool = True
    features: tuple[str, ...] = ()
    target: str | None = None
    version_req: str = "*"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "optional": self.optional,
            "uses_default_features": self.uses_default_features,
            "features": list(self.features),
            "target": self.target,
            "req": self.version_req,
        }


@dataclass
class PackageRecord:
    """Parsed package entry of a metadata document, before graph construction."""

    id: PackageId
    name: str
    version: Version
    version_str: str
    source: str | None
    manifest_path: str
    features: dict[str, tuple[str, ...]] = field(default_factory=dict)
    declared: list[DeclaredDependency] = field(default_factory=list)
    targets: tuple[BuildTarget, ...] = ()
    description: str | None = None
    license: str | None = None
    authors: tuple[str, ...] = ()
    edition: str = "2015"
    links: str | None = None
    publish: tuple[str, ...] | None = None


@dataclass(frozen=True)
class DeclaredDependency:
    """A dependency as written in a package manifest."""

    name: str
    rename: str | None
    instance: DependencyInstance

    @property
    def dep_name(self) -> str:
        """Name by which the depending package refers to the dependency."""
        return self.rename if self.rename is not None else self.name

    @property
    def resolved_name(self) -> str:
        return self.dep_name.replace("-", "_")
