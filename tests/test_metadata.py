"""Tests for metadata parsing and structural validation."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from crategraph.core.graph import PackageGraph
from semantic_version import Version

from crategraph.core.ids import DependencyKind, PackageId, version_matches
from crategraph.core.metadata import load_json, parse_metadata, read_metadata_file
from crategraph.errors import (
    DuplicateWorkspaceMemberError,
    MalformedIdError,
    MetadataParseError,
    PackageGraphConstructError,
    UnknownDependencyError,
)


class TestLoadJson:
    """Tests for decoding metadata text."""

    def test_valid_object(self) -> None:
        assert load_json('{"packages": []}') == {"packages": []}

    def test_invalid_json(self) -> None:
        with pytest.raises(MetadataParseError, match="not valid JSON"):
            load_json("{not json")

    def test_top_level_must_be_object(self) -> None:
        with pytest.raises(MetadataParseError):
            load_json("[1, 2, 3]")

    def test_read_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(MetadataParseError, match="cannot read"):
            read_metadata_file(tmp_path / "missing.json")

    def test_read_file(self, tmp_path: Path) -> None:
        path = tmp_path / "metadata.json"
        path.write_text(json.dumps({"packages": [], "workspace_members": []}))
        assert read_metadata_file(path)["packages"] == []


class TestParseMetadata:
    """Tests for turning a metadata dict into records."""

    def test_packages_and_members(self, builder, chain) -> None:
        doc = parse_metadata(builder.build())
        assert [p.name for p in doc.packages] == ["app", "lib", "helper"]
        assert doc.workspace_members == [PackageId(chain["app"]), PackageId(chain["lib"]), PackageId(chain["helper"])]
        assert doc.workspace_root == "/ws"

    def test_declared_dependencies(self, builder, chain) -> None:
        doc = parse_metadata(builder.build())
        lib = doc.packages[1]
        assert len(lib.declared) == 1
        declared = lib.declared[0]
        assert declared.name == "helper"
        assert declared.instance.optional is True
        assert declared.instance.kind is DependencyKind.NORMAL

    def test_dev_kind_spellings(self, builder) -> None:
        a = builder.package("a")
        b = builder.package("b")
        builder.dep(a, b, kind="dev")
        data = builder.build()
        assert parse_metadata(data).packages[0].declared[0].instance.kind is DependencyKind.DEV

    def test_unknown_dependency_kind(self, builder) -> None:
        a = builder.package("a")
        b = builder.package("b")
        builder.dep(a, b, kind="weird")
        with pytest.raises(MetadataParseError, match="unknown dependency kind"):
            parse_metadata(builder.build())

    def test_missing_packages_field(self) -> None:
        with pytest.raises(MetadataParseError, match="packages"):
            parse_metadata({"workspace_members": []})

    def test_missing_resolve_means_no_edges(self, builder, chain) -> None:
        data = builder.build()
        del data["resolve"]
        graph = PackageGraph.from_metadata(data)
        assert graph.package_count() == 3
        assert graph.link_count() == 0

    def test_non_string_id(self, builder) -> None:
        builder.package("a")
        data = builder.build()
        data["packages"][0]["id"] = 42
        with pytest.raises(MalformedIdError):
            parse_metadata(data)

    def test_empty_id(self, builder) -> None:
        builder.package("a")
        data = builder.build()
        data["packages"][0]["id"] = "  "
        with pytest.raises(MalformedIdError):
            parse_metadata(data)

    def test_bad_version(self, builder) -> None:
        builder.package("a", version="not-a-version")
        with pytest.raises(MalformedIdError, match="invalid version"):
            parse_metadata(builder.build())

    def test_prerelease_version(self, builder) -> None:
        builder.package("a", version="1.0.0-rc.1")
        graph = builder.graph()
        package = graph.packages()[0]
        assert package.version == "1.0.0-rc.1"
        assert package.parsed_version.prerelease == ("rc", "1")

    def test_versions_are_semver(self, builder) -> None:
        builder.package("a", version="1.0")
        with pytest.raises(MalformedIdError, match="invalid version"):
            parse_metadata(builder.build())

    def test_dep_kinds(self, builder) -> None:
        a = builder.package("a", build_script=True)
        b = builder.package("b", workspace=False)
        builder.dep(a, b, kind="build")
        data = builder.build()
        data["resolve"]["nodes"][0]["deps"][0]["dep_kinds"] = [{"kind": "build", "target": None}]
        (dep,) = parse_metadata(data).resolve[PackageId(a)]
        assert dep.kinds == frozenset({DependencyKind.BUILD})

    def test_bad_dep_kind(self, builder) -> None:
        a = builder.package("a")
        b = builder.package("b", workspace=False)
        builder.dep(a, b)
        data = builder.build()
        data["resolve"]["nodes"][0]["deps"][0]["dep_kinds"] = [{"kind": "sideways"}]
        with pytest.raises(MetadataParseError, match="dep_kinds"):
            parse_metadata(data)


class TestStructuralValidation:
    """Tests for errors raised while building the package graph."""

    def test_unknown_workspace_member(self, builder) -> None:
        builder.package("a")
        data = builder.build()
        data["workspace_members"].append("ghost 0.1.0 (path+file:///ws/ghost)")
        with pytest.raises(UnknownDependencyError) as exc_info:
            PackageGraph.from_metadata(data)
        assert "ghost" in str(exc_info.value)

    def test_unknown_resolved_dependency(self, builder) -> None:
        a = builder.package("a")
        data = builder.build()
        data["resolve"]["nodes"][0]["deps"].append({"name": "ghost", "pkg": "ghost 1.0.0 (registry)"})
        with pytest.raises(UnknownDependencyError) as exc_info:
            PackageGraph.from_metadata(data)
        assert exc_info.value.referenced_by == a

    def test_duplicate_package_id(self, builder) -> None:
        builder.package("a")
        data = builder.build()
        data["packages"].append(dict(data["packages"][0]))
        with pytest.raises(PackageGraphConstructError, match="duplicate package id"):
            PackageGraph.from_metadata(data)

    def test_duplicate_workspace_member_name(self, builder) -> None:
        builder.package("a", "0.1.0")
        second = builder.package("a", "0.2.0")
        data = builder.build()
        data["packages"][1]["manifest_path"] = "/ws/other/Cargo.toml"
        with pytest.raises(DuplicateWorkspaceMemberError) as exc_info:
            PackageGraph.from_metadata(data)
        assert exc_info.value.key == "a"
        assert exc_info.value.second == second

    def test_duplicate_workspace_member_path(self, builder) -> None:
        builder.package("a")
        builder.package("b")
        data = builder.build()
        data["packages"][1]["manifest_path"] = data["packages"][0]["manifest_path"]
        with pytest.raises(DuplicateWorkspaceMemberError):
            PackageGraph.from_metadata(data)

    def test_resolved_dep_without_declaration(self, builder) -> None:
        builder.package("a")
        b = builder.package("b")
        data = builder.build()
        data["resolve"]["nodes"][0]["deps"].append({"name": "b", "pkg": b})
        with pytest.raises(PackageGraphConstructError, match="matches no declared dependency"):
            PackageGraph.from_metadata(data)

    def test_renamed_dependency(self, builder) -> None:
        a = builder.package("a")
        b = builder.package("my-b")
        builder.dep(a, b, rename="bee-alias")
        graph = builder.graph()
        (link,) = graph.direct_links(a)
        assert link.dep_name == "bee-alias"
        assert link.resolved_name == "bee_alias"
        assert str(link.to.id) == b

    def test_errors_share_base_class(self) -> None:
        from crategraph.errors import CrateGraphError

        assert issubclass(MalformedIdError, PackageGraphConstructError)
        assert issubclass(PackageGraphConstructError, CrateGraphError)
        assert MalformedIdError.code == "malformed_id"


class TestVersionRequirements:
    """Tests for matching Cargo version requirements."""

    @pytest.mark.parametrize(
        ("req", "version", "expected"),
        [
            ("^1", "1.4.0", True),
            ("^1", "0.2.11", False),
            ("^0.2", "0.2.11", True),
            ("^0.2", "0.3.0", False),
            ("1.2", "1.9.0", True),
            ("1.2", "2.0.0", False),
            ("=1.2.3", "1.2.3", True),
            ("=1.2.3", "1.2.4", False),
            ("~1.2", "1.2.7", True),
            ("~1.2", "1.3.0", False),
            (">=0.3, <0.5", "0.4.1", True),
            (">=0.3, <0.5", "0.5.0", False),
        ],
    )
    def test_matches(self, req: str, version: str, expected: bool) -> None:
        assert version_matches(req, Version(version)) is expected

    def test_star_matches_prereleases(self) -> None:
        assert version_matches("*", Version("1.0.0-alpha.beta"))
        assert version_matches(" * ", Version("0.9.0-nightly"))

    def test_unparseable(self) -> None:
        with pytest.raises(ValueError):
            version_matches("latest", Version("1.0.0"))
