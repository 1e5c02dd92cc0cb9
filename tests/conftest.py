"""Shared fixtures: build ``cargo metadata`` documents in memory."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from crategraph.core.graph import PackageGraph
from crategraph.core.ids import CRATES_IO_REGISTRY

WORKSPACE_ROOT = "/ws"


class MetadataBuilder:
    """Assemble a metadata document package by package, dependency by dependency."""

    def __init__(self, root: str = WORKSPACE_ROOT) -> None:
        self.root = root
        self.packages: dict[str, dict[str, Any]] = {}
        self.members: list[str] = []
        self.resolve: dict[str, list[dict[str, Any]]] = {}

    def package(
        self,
        name: str,
        version: str = "0.1.0",
        *,
        workspace: bool = True,
        features: dict[str, list[str]] | None = None,
        proc_macro: bool = False,
        build_script: bool = False,
        source: str | None = None,
        **extra: Any,
    ) -> str:
        """Add a package and return its id."""
        if workspace:
            package_id = f"{name} {version} (path+file://{self.root}/{name})"
            manifest = f"{self.root}/{name}/Cargo.toml"
            source = None
        else:
            source = source or CRATES_IO_REGISTRY
            package_id = f"{name} {version} ({source})"
            manifest = f"/registry/src/{name}-{version}/Cargo.toml"
        targets = [{"name": name, "kind": ["proc-macro" if proc_macro else "lib"], "crate_types": ["lib"]}]
        if build_script:
            targets.append({"name": "build-script-build", "kind": ["custom-build"], "crate_types": ["bin"]})
        self.packages[package_id] = {
            "id": package_id,
            "name": name,
            "version": version,
            "source": source,
            "manifest_path": manifest,
            "features": features or {},
            "dependencies": [],
            "targets": targets,
            **extra,
        }
        if workspace:
            self.members.append(package_id)
        self.resolve.setdefault(package_id, [])
        return package_id

    def dep(
        self,
        from_id: str,
        to_id: str,
        *,
        kind: str | None = None,
        optional: bool = False,
        features: list[str] | None = None,
        default_features: bool = True,
        target: str | None = None,
        rename: str | None = None,
        req: str = "*",
    ) -> None:
        """Declare a dependency and add the matching resolved edge."""
        to_name = self.packages[to_id]["name"]
        self.packages[from_id]["dependencies"].append(
            {
                "name": to_name,
                "rename": rename,
                "kind": kind,
                "optional": optional,
                "uses_default_features": default_features,
                "features": features or [],
                "target": target,
                "req": req,
            }
        )
        resolved_name = (rename or to_name).replace("-", "_")
        deps = self.resolve[from_id]
        if not any(d["pkg"] == to_id and d["name"] == resolved_name for d in deps):
            deps.append({"name": resolved_name, "pkg": to_id, "dep_kinds": []})

    def build(self) -> dict[str, Any]:
        return {
            "packages": list(self.packages.values()),
            "workspace_members": list(self.members),
            "workspace_root": self.root,
            "resolve": {
                "nodes": [{"id": pid, "deps": deps} for pid, deps in self.resolve.items()],
                "root": None,
            },
            "version": 1,
        }

    def graph(self) -> PackageGraph:
        return PackageGraph.from_metadata(self.build())

    def write(self, path: Path) -> Path:
        path.write_text(json.dumps(self.build()))
        return path


@pytest.fixture
def builder() -> MetadataBuilder:
    return MetadataBuilder()


@pytest.fixture
def chain(builder: MetadataBuilder) -> dict[str, str]:
    """app -> lib -> (optional, behind feature ``extra``) helper, all in the workspace."""
    ids = {
        "app": builder.package("app"),
        "lib": builder.package("lib", features={"extra": ["dep:helper"]}),
        "helper": builder.package("helper"),
    }
    builder.dep(ids["app"], ids["lib"])
    builder.dep(ids["lib"], ids["helper"], optional=True)
    return ids


@pytest.fixture
def sample(builder: MetadataBuilder) -> dict[str, str]:
    """
    A small realistic workspace.

    cli -> core (default features) -> serde (features derive) -> serde_derive (proc macro)
    core -> cc (build-dependency, core has a build script)
    core -> libc only on cfg(unix)
    cli -> tempfile (dev-dependency)
    core -> log (optional, feature ``logging``; default enables it)
    """
    ids = {
        "cli": builder.package("cli", description="Command line front end"),
        "core": builder.package(
            "core",
            build_script=True,
            features={"default": ["logging"], "logging": ["dep:log"], "serialize": ["dep:serde", "serde/derive"]},
        ),
        "serde": builder.package("serde", "1.0.200", workspace=False, features={"derive": ["dep:serde_derive"], "std": []}),
        "serde_derive": builder.package("serde_derive", "1.0.200", workspace=False, proc_macro=True),
        "cc": builder.package("cc", "1.0.90", workspace=False),
        "libc": builder.package("libc", "0.2.150", workspace=False),
        "tempfile": builder.package("tempfile", "3.10.0", workspace=False),
        "log": builder.package("log", "0.4.21", workspace=False),
    }
    builder.dep(ids["serde"], ids["serde_derive"], optional=True)
    builder.dep(ids["cli"], ids["core"])
    builder.dep(ids["cli"], ids["tempfile"], kind="dev")
    builder.dep(ids["core"], ids["serde"], optional=True, default_features=False)
    builder.dep(ids["core"], ids["cc"], kind="build")
    builder.dep(ids["core"], ids["libc"], target="cfg(unix)")
    builder.dep(ids["core"], ids["log"], optional=True)
    return ids
