"""Tests for the package graph, package queries and package sets."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from crategraph.core.graph import PackageGraph
from crategraph.core.ids import DependencyDirection, DependencyKind, PackageId
from crategraph.core.query import LinkFilter
from crategraph.errors import (
    GraphMismatchError,
    PackageGraphConstructError,
    PackageGraphInternalError,
    UnknownPackageIdError,
)


def _names(package_set) -> set[str]:
    return {p.name for p in package_set.packages()}


class TestConstruction:
    """Tests for building graphs from the different input forms."""

    def test_counts(self, builder, chain) -> None:
        graph = builder.graph()
        assert graph.package_count() == 3
        assert graph.link_count() == 2
        assert len(graph.workspace()) == 3

    def test_from_json(self, builder, chain) -> None:
        graph = PackageGraph.from_json(json.dumps(builder.build()))
        assert graph.contains(chain["lib"])

    def test_from_path(self, builder, chain, tmp_path: Path) -> None:
        path = builder.write(tmp_path / "metadata.json")
        graph = PackageGraph.from_path(path)
        assert sorted(str(p) for p in graph.package_ids()) == sorted(chain.values())

    def test_to_json(self, builder, chain) -> None:
        data = json.loads(builder.graph().to_json())
        assert data["workspace_root"] == "/ws"
        assert len(data["links"]) == 2
        assert {p["name"] for p in data["packages"]} == {"app", "lib", "helper"}

    def test_links_of_different_kinds_are_separate(self, builder) -> None:
        a = builder.package("a", build_script=True)
        b = builder.package("b", workspace=False)
        builder.dep(a, b)
        builder.dep(a, b, kind="build")
        graph = builder.graph()
        kinds = sorted(link.kind.value for link in graph.direct_links(a))
        assert kinds == ["build", "normal"]

    def test_instances_merge_per_kind(self, builder) -> None:
        a = builder.package("a")
        b = builder.package("b", workspace=False)
        builder.dep(a, b, target="cfg(unix)")
        builder.dep(a, b, target="cfg(windows)", features=["x"])
        graph = builder.graph()
        (link,) = graph.direct_links(a)
        assert len(link.instances) == 2
        assert link.status().required.conditions == ("cfg(unix)", "cfg(windows)")
        assert link.features() == ["x"]

    def test_version_requirements_pick_declarations(self, builder) -> None:
        app = builder.package("app")
        new = builder.package("lazy_static", "1.4.0", workspace=False)
        old = builder.package("lazy_static", "0.2.11", workspace=False)
        builder.dep(app, new, req="^1")
        builder.dep(app, old, kind="dev", req="^0.2")
        graph = builder.graph()
        links = {(link.to.version, link.kind) for link in graph.direct_links(app)}
        assert links == {("1.4.0", DependencyKind.NORMAL), ("0.2.11", DependencyKind.DEV)}

    def test_resolved_dep_kinds_pick_declarations(self, builder) -> None:
        a = builder.package("a")
        b = builder.package("b", workspace=False)
        builder.dep(a, b)
        builder.dep(a, b, kind="dev")
        builder.resolve[a][0]["dep_kinds"] = [{"kind": None, "target": None}]
        (link,) = builder.graph().direct_links(a)
        assert link.kind is DependencyKind.NORMAL

    def test_unmatched_requirement(self, builder) -> None:
        a = builder.package("a")
        b = builder.package("b", "2.0.0", workspace=False)
        builder.dep(a, b, req="^1.0")
        with pytest.raises(PackageGraphConstructError, match="matches no declared dependency"):
            builder.graph()

    def test_unparseable_requirement_matches_by_name(self, builder, caplog) -> None:
        a = builder.package("a")
        b = builder.package("b", workspace=False)
        builder.dep(a, b, req="latest please")
        with caplog.at_level(logging.WARNING, logger="crategraph.core.graph"):
            (link,) = builder.graph().direct_links(a)
        assert link.to.name == "b"
        assert "can't parse version requirement" in caplog.text

    def test_optional_dev_dependency(self, builder) -> None:
        a = builder.package("a")
        b = builder.package("b", workspace=False)
        builder.dep(a, b, kind="dev", optional=True)
        with pytest.raises(PackageGraphConstructError, match="dev-dependency 'b' marked optional"):
            builder.graph()

    def test_prerelease_versions(self, builder) -> None:
        a = builder.package("a")
        alpha = builder.package("alpha", "1.0.0-alpha.beta", workspace=False)
        nightly = builder.package("nightly", "0.9.0-nightly", workspace=False)
        builder.dep(a, alpha)
        builder.dep(a, nightly)
        graph = builder.graph()
        assert graph.metadata(alpha).parsed_version.prerelease == ("alpha", "beta")
        assert {link.to.version for link in graph.direct_links(a)} == {"1.0.0-alpha.beta", "0.9.0-nightly"}


class TestPackageMetadata:
    """Tests for the package view."""

    def test_workspace_package(self, builder, sample) -> None:
        graph = builder.graph()
        cli = graph.metadata(sample["cli"])
        assert cli.name == "cli"
        assert cli.version == "0.1.0"
        assert cli.in_workspace
        assert cli.source.is_workspace()
        assert str(cli.source) == "cli"
        assert cli.description == "Command line front end"

    def test_external_package(self, builder, sample) -> None:
        serde = builder.graph().metadata(sample["serde"])
        assert not serde.in_workspace
        assert serde.source.is_crates_io()
        assert str(serde.source) == "crates.io"
        assert serde.optional_dependency_names() == ["serde_derive"]
        assert str(serde.parsed_version) == "1.0.200"

    def test_flags(self, builder, sample) -> None:
        graph = builder.graph()
        assert graph.metadata(sample["core"]).has_build_script
        assert not graph.metadata(sample["cli"]).has_build_script
        assert graph.metadata(sample["serde_derive"]).is_proc_macro

    def test_named_features(self, builder, sample) -> None:
        core = builder.graph().metadata(sample["core"])
        assert core.named_features() == ["default", "logging", "serialize"]
        assert core.optional_dependency_names() == ["log", "serde"]

    def test_to_dict(self, builder, sample) -> None:
        data = builder.graph().metadata(sample["core"]).to_dict()
        assert data["name"] == "core"
        assert data["has_build_script"] is True
        assert data["features"]["logging"] == ["dep:log"]

    def test_unknown_id(self, builder, chain) -> None:
        graph = builder.graph()
        with pytest.raises(UnknownPackageIdError) as exc_info:
            graph.metadata("nope 1.0.0 (x)")
        assert str(exc_info.value.package_id) == "nope 1.0.0 (x)"

    def test_packages_by_name(self, builder, sample) -> None:
        graph = builder.graph()
        assert [str(p.id) for p in graph.packages_by_name("libc")] == [sample["libc"]]
        assert graph.packages_by_name("missing") == []


class TestPackageLink:
    """Tests for the link view."""

    def test_link_fields(self, builder, sample) -> None:
        graph = builder.graph()
        links = {link.to.name: link for link in graph.direct_links(sample["core"])}
        assert links["cc"].kind is DependencyKind.BUILD
        assert links["serde"].is_optional()
        assert not links["serde"].uses_default_features()
        assert links["libc"].status().required.conditions == ("cfg(unix)",)
        assert links["log"].status().required.is_never()
        assert links["log"].status().optional.is_always()

    def test_dev_link(self, builder, sample) -> None:
        graph = builder.graph()
        (dev,) = [l for l in graph.direct_links(sample["cli"]) if l.is_dev()]
        assert dev.to.name == "tempfile"

    def test_reverse_links(self, builder, sample) -> None:
        graph = builder.graph()
        reverse = graph.direct_links(sample["core"], DependencyDirection.REVERSE)
        assert [l.from_.name for l in reverse] == ["cli"]

    def test_to_dict(self, builder, sample) -> None:
        graph = builder.graph()
        links = {link.to.name: link for link in graph.direct_links(sample["core"])}
        data = links["libc"].to_dict()
        assert data["kind"] == "normal"
        assert data["required"] == {"conditions": ["cfg(unix)"]}
        assert data["optional"] == "never"


class TestWorkspace:
    """Tests for workspace lookups."""

    def test_members_sorted_by_path(self, builder, sample) -> None:
        members = builder.graph().workspace().members()
        assert [m.name for m in members] == ["cli", "core"]

    def test_lookup(self, builder, sample) -> None:
        workspace = builder.graph().workspace()
        assert str(workspace.member_by_name("core").id) == sample["core"]
        assert str(workspace.member_by_path("cli").id) == sample["cli"]
        assert workspace.member_by_name("serde") is None

    def test_contains(self, builder, sample) -> None:
        workspace = builder.graph().workspace()
        assert sample["cli"] in workspace
        assert sample["serde"] not in workspace


class TestDependsOn:
    """Tests for reachability checks."""

    def test_transitive(self, builder, chain) -> None:
        graph = builder.graph()
        assert graph.depends_on(chain["app"], chain["helper"])
        assert not graph.depends_on(chain["helper"], chain["app"])

    def test_direct(self, builder, chain) -> None:
        graph = builder.graph()
        assert graph.directly_depends_on(chain["app"], chain["lib"])
        assert not graph.directly_depends_on(chain["app"], chain["helper"])


class TestPackageQuery:
    """Tests for resolving package queries."""

    def test_forward(self, builder, chain) -> None:
        graph = builder.graph()
        result = graph.query_forward([chain["lib"]]).resolve()
        assert _names(result) == {"lib", "helper"}

    def test_reverse(self, builder, chain) -> None:
        graph = builder.graph()
        result = graph.query_reverse([chain["lib"]]).resolve()
        assert _names(result) == {"app", "lib"}

    def test_both_is_union(self, builder, chain) -> None:
        graph = builder.graph()
        result = graph.resolve(graph.query([chain["lib"]], DependencyDirection.BOTH))
        assert _names(result) == {"app", "lib", "helper"}

    def test_starts_from(self, builder, chain) -> None:
        graph = builder.graph()
        query = graph.query_forward([chain["app"]])
        assert query.starts_from(chain["app"])
        assert not query.starts_from(chain["lib"])
        assert query.initials() == [PackageId(chain["app"])]
        with pytest.raises(UnknownPackageIdError):
            query.starts_from("ghost 0.1.0 (x)")

    def test_unknown_initial(self, builder, chain) -> None:
        with pytest.raises(UnknownPackageIdError):
            builder.graph().query_forward(["ghost 0.1.0 (x)"])

    def test_query_from_other_graph(self, builder, chain) -> None:
        graph = builder.graph()
        other = builder.graph()
        with pytest.raises(GraphMismatchError):
            other.resolve(graph.query_forward([chain["app"]]))

    def test_link_filters(self, builder, sample) -> None:
        graph = builder.graph()
        query = graph.query_forward([sample["cli"]])
        assert "tempfile" not in _names(query.resolve_with(LinkFilter.NO_DEV))
        assert _names(query.resolve_with(LinkFilter.NORMAL_ONLY)) == {
            "cli", "core", "serde", "serde_derive", "libc", "log",
        }
        assert "cc" not in _names(query.resolve_with(LinkFilter.NO_BUILD))
        assert _names(query.resolve_with(LinkFilter.WORKSPACE_ONLY)) == {"cli", "core"}
        direct = _names(query.resolve_with(LinkFilter.DIRECT_EXTERNAL))
        assert "serde" in direct
        assert "serde_derive" not in direct

    def test_callable_predicate(self, builder, sample) -> None:
        graph = builder.graph()
        seen = []

        def predicate(link) -> bool:
            seen.append(link)
            return link.kind is DependencyKind.NORMAL and not link.is_optional()

        result = graph.query_forward([sample["cli"]]).resolve_with(predicate)
        assert _names(result) == {"cli", "core", "libc"}
        assert len(seen) == len(set(seen))

    def test_query_workspace(self, builder, sample) -> None:
        graph = builder.graph()
        assert graph.query_workspace().resolve() == graph.resolve_all()


class TestPackageSet:
    """Tests for package set ordering and algebra."""

    def test_topological_order(self, builder, chain) -> None:
        graph = builder.graph()
        result = graph.resolve_all()
        names = [graph.metadata(p).name for p in result.package_ids()]
        assert names == ["app", "lib", "helper"]
        reverse = [graph.metadata(p).name for p in result.package_ids(DependencyDirection.REVERSE)]
        assert reverse == ["helper", "lib", "app"]

    def test_root_ids(self, builder, chain) -> None:
        result = builder.graph().resolve_all()
        assert result.root_ids() == [PackageId(chain["app"])]
        assert result.root_ids(DependencyDirection.REVERSE) == [PackageId(chain["helper"])]

    def test_links_inside_set(self, builder, chain) -> None:
        graph = builder.graph()
        result = graph.resolve_ids([chain["app"], chain["lib"]])
        assert [(l.from_.name, l.to.name) for l in result.links()] == [("app", "lib")]

    def test_membership(self, builder, chain) -> None:
        graph = builder.graph()
        result = graph.resolve_ids([chain["app"]])
        assert chain["app"] in result
        assert chain["lib"] not in result
        assert "ghost 0.1.0 (x)" not in result
        with pytest.raises(UnknownPackageIdError):
            result.contains("ghost 0.1.0 (x)")

    def test_set_algebra(self, builder, chain) -> None:
        graph = builder.graph()
        a = graph.resolve_ids([chain["app"], chain["lib"]])
        b = graph.resolve_ids([chain["lib"], chain["helper"]])
        assert _names(a | b) == {"app", "lib", "helper"}
        assert _names(a & b) == {"lib"}
        assert _names(a - b) == {"app"}
        assert _names(a ^ b) == {"app", "helper"}
        assert graph.resolve_ids([chain["lib"]]).issubset(a)
        assert graph.resolve_none().is_empty()
        assert not graph.resolve_none()

    def test_sets_from_different_graphs(self, builder, chain) -> None:
        graph = builder.graph()
        other = builder.graph()
        assert graph.resolve_all() != other.resolve_all()
        with pytest.raises(GraphMismatchError):
            graph.resolve_all().union(other.resolve_all())

    def test_iteration_and_dict(self, builder, chain) -> None:
        result = builder.graph().resolve_all()
        assert len(list(result)) == 3
        assert [p["name"] for p in result.to_dict()["packages"]] == ["app", "lib", "helper"]


class TestCycles:
    """Tests for dev-dependency cycles in the package graph."""

    @pytest.fixture
    def cyclic(self, builder) -> dict[str, str]:
        ids = {"a": builder.package("a"), "b": builder.package("b")}
        builder.dep(ids["a"], ids["b"], kind="dev")
        builder.dep(ids["b"], ids["a"])
        return ids

    def test_is_cyclic(self, builder, cyclic) -> None:
        cycles = builder.graph().cycles()
        assert cycles.is_cyclic(cyclic["a"], cyclic["b"])

    def test_all_cycles_in_build_order(self, builder, cyclic) -> None:
        cycles = builder.graph().cycles().all_cycles()
        assert cycles == [[PackageId(cyclic["b"]), PackageId(cyclic["a"])]]

    def test_order_follows_non_dev_edges(self, builder, cyclic) -> None:
        graph = builder.graph()
        assert [str(p) for p in graph.resolve_all().package_ids()] == [cyclic["b"], cyclic["a"]]

    def test_acyclic(self, builder, chain) -> None:
        cycles = builder.graph().cycles()
        assert not cycles.is_cyclic(chain["app"], chain["lib"])
        assert cycles.all_cycles() == []

    def test_verify_accepts_dev_cycle(self, builder, cyclic) -> None:
        builder.graph().verify()

    def test_reverse_query_through_cycle(self, builder, cyclic) -> None:
        graph = builder.graph()
        for start in (cyclic["a"], cyclic["b"]):
            ids = graph.resolve(graph.query_reverse([start])).package_ids()
            assert sorted(str(p) for p in ids) == sorted([cyclic["a"], cyclic["b"]])

    def test_reverse_query_skips_dev_link(self, builder, cyclic) -> None:
        graph = builder.graph()
        from_b = graph.resolve_with(graph.query_reverse([cyclic["b"]]), LinkFilter.NO_DEV)
        assert [str(p) for p in from_b.package_ids()] == [cyclic["b"]]
        from_a = graph.resolve_with(graph.query_reverse([cyclic["a"]]), LinkFilter.NO_DEV)
        assert _names(from_a) == {"a", "b"}


class TestVerify:
    """Tests for invariant checking."""

    def test_valid_graph(self, builder, sample) -> None:
        builder.graph().verify()

    def test_cycle_without_dev_link(self, builder) -> None:
        a = builder.package("a")
        b = builder.package("b")
        builder.dep(a, b)
        builder.dep(b, a)
        with pytest.raises(PackageGraphInternalError, match="cycle"):
            builder.graph().verify()

    def test_disconnected_package(self, builder, chain) -> None:
        builder.package("orphan", workspace=False)
        with pytest.raises(PackageGraphInternalError, match="orphan"):
            builder.graph().verify()
