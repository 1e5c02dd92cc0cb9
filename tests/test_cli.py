"""Tests for crategraph CLI."""

from __future__ import annotations

import json
from pathlib import Path
from unittest import mock

import pytest

from crategraph.cli import _mermaid_id, main


@pytest.fixture
def metadata(builder, sample, tmp_path) -> str:
    return str(builder.write(tmp_path / "metadata.json"))


class TestListCommand:
    """Tests for crategraph list."""

    def test_all_packages(self, metadata, capsys) -> None:
        assert main(["list", "-m", metadata]) == 0
        out = capsys.readouterr().out
        assert "Found 8 package(s):" in out
        assert "  core 0.1.0 [workspace]" in out
        assert "  serde 1.0.200 [crates.io]" in out

    def test_sorted_by_name(self, metadata, capsys) -> None:
        main(["list", "-m", metadata])
        lines = [l.split()[0] for l in capsys.readouterr().out.splitlines() if l.startswith("  ")]
        assert lines == sorted(lines)

    def test_workspace_only_json(self, metadata, capsys) -> None:
        assert main(["list", "-m", metadata, "-w", "--json"]) == 0
        rows = json.loads(capsys.readouterr().out)
        assert [r["name"] for r in rows] == ["cli", "core"]
        assert rows[0]["source"] == "workspace"

    def test_empty(self, builder, tmp_path, capsys) -> None:
        path = builder.write(tmp_path / "empty.json")
        assert main(["list", "-m", str(path)]) == 1
        assert "No packages found." in capsys.readouterr().out

    def test_missing_metadata(self, tmp_path, capsys) -> None:
        assert main(["list", "-m", str(tmp_path / "nope.json")]) == 1
        assert "Error:" in capsys.readouterr().err


class TestDepsCommand:
    """Tests for crategraph deps and rdeps."""

    def test_transitive(self, metadata, capsys) -> None:
        assert main(["deps", "core", "-m", metadata]) == 0
        out = capsys.readouterr().out
        assert "core: 5 dependencies" in out
        assert "  serde_derive 1.0.200 [crates.io]" in out

    def test_no_dev(self, metadata, capsys) -> None:
        main(["deps", "cli", "-m", metadata, "--no-dev"])
        out = capsys.readouterr().out
        assert "cli: 6 dependencies" in out
        assert "tempfile" not in out

    def test_direct(self, metadata, capsys) -> None:
        assert main(["deps", "core", "-m", metadata, "--direct"]) == 0
        out = capsys.readouterr().out
        assert "  cc 1.0.90 (build)" in out
        assert "  libc 0.2.150 (normal)" in out
        assert "serde_derive" not in out

    def test_direct_json(self, metadata, capsys) -> None:
        main(["deps", "cli", "-m", metadata, "--direct", "--json"])
        links = json.loads(capsys.readouterr().out)
        assert len(links) == 2

    def test_json(self, metadata, capsys) -> None:
        main(["deps", "core", "-m", metadata, "--json"])
        names = {r["name"] for r in json.loads(capsys.readouterr().out)}
        assert names == {"cc", "libc", "log", "serde", "serde_derive"}

    def test_rdeps(self, metadata, capsys) -> None:
        assert main(["rdeps", "libc", "-m", metadata]) == 0
        out = capsys.readouterr().out
        assert "libc: 2 dependents" in out
        assert "  cli 0.1.0 [workspace]" in out

    def test_tree(self, metadata, capsys) -> None:
        assert main(["deps", "cli", "-m", metadata, "--tree"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines[0] == "cli (0.1.0)"
        assert any("core (0.1.0)" in l for l in lines)
        assert any(l.lstrip("│ ").startswith("└── ") for l in lines)
        assert any("serde_derive (1.0.200)" in l for l in lines)

    def test_tree_depth(self, metadata, capsys) -> None:
        main(["deps", "cli", "-m", metadata, "--tree", "-d", "1"])
        out = capsys.readouterr().out
        assert "core (0.1.0)" in out
        assert "serde" not in out

    def test_tree_marks_cycles(self, builder, tmp_path, capsys) -> None:
        a = builder.package("a")
        b = builder.package("b")
        builder.dep(a, b, kind="dev")
        builder.dep(b, a)
        path = builder.write(tmp_path / "cyclic.json")
        main(["deps", "a", "-m", str(path), "--tree"])
        assert "a (0.1.0) [cycle]" in capsys.readouterr().out

    def test_unknown_package(self, metadata, capsys) -> None:
        assert main(["deps", "ghost", "-m", metadata]) == 1
        assert "unknown package id: ghost" in capsys.readouterr().err


class TestBuildCommand:
    """Tests for crategraph build."""

    def test_text_summary(self, metadata, capsys) -> None:
        assert main(["build", "cli", "-m", metadata]) == 0
        out = capsys.readouterr().out
        assert "Target: 4 package(s)" in out
        assert "Host: 1 package(s)" in out
        assert "  cli 0.1.0 (initial)" in out
        assert "  core 0.1.0 (workspace)" in out
        assert "      features: default, log, logging" in out

    def test_json(self, metadata, capsys) -> None:
        assert main(["build", "cli", "-m", metadata, "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert [e["name"] for e in data["host"]] == ["cc"]
        assert data["iterations"] == 1

    def test_target(self, metadata, capsys) -> None:
        main(["build", "cli", "-m", metadata, "--target", "x86_64-pc-windows-msvc", "--json"])
        data = json.loads(capsys.readouterr().out)
        assert "libc" not in {e["name"] for e in data["target"]}

    def test_resolver_and_features(self, metadata, capsys) -> None:
        main(["build", "core", "-m", metadata, "--resolver", "2", "-F", "serialize", "--json"])
        data = json.loads(capsys.readouterr().out)
        assert {e["name"] for e in data["host"]} == {"cc", "serde_derive"}
        assert "serde" in {e["name"] for e in data["target"]}

    def test_no_default_features(self, metadata, capsys) -> None:
        main(["build", "core", "-m", metadata, "--no-default-features", "--json"])
        data = json.loads(capsys.readouterr().out)
        assert {e["name"] for e in data["target"]} == {"core", "libc"}

    def test_dev_and_omit(self, metadata, capsys) -> None:
        main(["build", "cli", "-m", metadata, "--dev", "--omit", "log", "--json"])
        names = {e["name"] for e in json.loads(capsys.readouterr().out)["target"]}
        assert "tempfile" in names
        assert "log" not in names

    def test_unknown_package(self, metadata, capsys) -> None:
        assert main(["build", "ghost", "-m", metadata]) == 1
        assert "Error:" in capsys.readouterr().err


class TestReportCommands:
    """Tests for cycles, order and warnings."""

    def test_no_cycles(self, metadata, capsys) -> None:
        assert main(["cycles", "-m", metadata]) == 0
        assert "No cycles found." in capsys.readouterr().out

    def test_cycles(self, builder, tmp_path, capsys) -> None:
        a = builder.package("a")
        b = builder.package("b")
        builder.dep(a, b, kind="dev")
        builder.dep(b, a)
        path = builder.write(tmp_path / "cyclic.json")
        assert main(["cycles", "-m", str(path)]) == 0
        out = capsys.readouterr().out
        assert "Found 1 cycle(s):" in out
        assert "  b -> a -> b" in out

    def test_order(self, metadata, capsys) -> None:
        assert main(["order", "-m", metadata]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert len(lines) == 8
        assert lines[0].startswith("   1. ")
        names = [l.split()[1] for l in lines]
        assert names.index("core") < names.index("cli")

    def test_order_json(self, metadata, sample, capsys) -> None:
        main(["order", "-m", metadata, "--json"])
        order = json.loads(capsys.readouterr().out)
        assert order.index(sample["cc"]) < order.index(sample["core"])

    def test_no_warnings(self, metadata, capsys) -> None:
        assert main(["warnings", "-m", metadata]) == 0
        assert "No feature graph warnings." in capsys.readouterr().out

    def test_warnings(self, builder, tmp_path, capsys) -> None:
        builder.package("broken", features={"extra": ["missing"]})
        path = builder.write(tmp_path / "broken.json")
        assert main(["warnings", "-m", str(path)]) == 0
        assert "missing feature 'missing'" in capsys.readouterr().out


class TestGraphCommand:
    """Tests for crategraph graph."""

    def test_dot(self, metadata, capsys) -> None:
        assert main(["graph", "-m", metadata]) == 0
        out = capsys.readouterr().out
        assert out.startswith("digraph dependencies {")
        assert 'label="Workspace dependencies";' in out
        assert '"cli" [style="rounded,filled", fillcolor=lightblue];' in out
        assert '"core" -> "serde";' in out
        assert '"cli" -> "tempfile";' in out

    def test_dot_no_dev(self, metadata, capsys) -> None:
        main(["graph", "-m", metadata, "--no-dev"])
        assert '"cli" -> "tempfile";' not in capsys.readouterr().out

    def test_package_without_title(self, metadata, capsys) -> None:
        main(["graph", "core", "-m", metadata, "--no-title"])
        out = capsys.readouterr().out
        assert "label=" not in out
        assert '"cli"' not in out
        assert '"core" -> "cc";' in out

    def test_mermaid(self, metadata, capsys) -> None:
        assert main(["graph", "-m", metadata, "-f", "mermaid"]) == 0
        out = capsys.readouterr().out
        assert out.startswith("---\ntitle: Workspace dependencies\n---\ngraph LR")
        assert "    serde --> serde_derive" in out
        assert "    style core fill:#lightblue" in out

    def test_output_file(self, metadata, tmp_path, capsys) -> None:
        target = tmp_path / "deps.dot"
        assert main(["graph", "-m", metadata, "-o", str(target)]) == 0
        assert target.read_text().startswith("digraph dependencies {")
        assert "Graph written to:" in capsys.readouterr().err

    def test_versions_disambiguate_labels(self, builder, tmp_path, capsys) -> None:
        app = builder.package("app")
        old = builder.package("rand", "0.7.3", workspace=False)
        new = builder.package("rand", "0.8.5", workspace=False)
        builder.dep(app, new)
        builder.dep(new, old, rename="rand-old")
        path = builder.write(tmp_path / "versions.json")
        main(["graph", "-m", str(path), "-f", "mermaid"])
        assert "    rand_0_8_5 --> rand_0_7_3" in capsys.readouterr().out

    def test_mermaid_id(self) -> None:
        assert _mermaid_id("serde-json 1.0") == "serde_json_1_0"


class TestMain:
    """Tests for argument handling and the TUI default."""

    def test_no_command_launches_tui(self) -> None:
        with mock.patch("crategraph.tui.app.CrateGraphApp") as app_cls:
            assert main([]) == 0
        app_cls.assert_called_once_with(metadata_path=Path("metadata.json"), root_package=None)
        app_cls.return_value.run.assert_called_once()

    def test_tui_command(self, metadata) -> None:
        with mock.patch("crategraph.tui.app.CrateGraphApp") as app_cls:
            assert main(["tui", "-m", metadata, "core"]) == 0
        app_cls.assert_called_once_with(metadata_path=Path(metadata), root_package="core")

    def test_verbose_sets_up_logging(self, metadata) -> None:
        with mock.patch("crategraph.cli.setup_logging") as setup:
            main(["-v", "list", "-m", metadata])
        setup.assert_called_once_with("cli", "DEBUG", json_output=None, log_file=None)

    def test_log_json(self, metadata) -> None:
        with mock.patch("crategraph.cli.setup_logging") as setup:
            main(["--log-json", "list", "-m", metadata])
        setup.assert_called_once_with("cli", None, json_output=True, log_file=None)

    def test_tui_logs_as_tui(self, metadata, tmp_path) -> None:
        log_file = str(tmp_path / "tui.log")
        with mock.patch("crategraph.cli.setup_logging") as setup, mock.patch("crategraph.tui.app.CrateGraphApp"):
            main(["--log-file", log_file, "tui", "-m", metadata])
        setup.assert_called_once_with("tui", None, json_output=None, log_file=log_file)

    def test_level_from_environment(self, metadata, monkeypatch) -> None:
        monkeypatch.setenv("CRATEGRAPH_LOG_LEVEL", "INFO")
        with mock.patch("crategraph.cli.setup_logging") as setup:
            main(["list", "-m", metadata])
        setup.assert_called_once_with("cli", None, json_output=None, log_file=None)

    def test_quiet_by_default(self, metadata, monkeypatch) -> None:
        monkeypatch.delenv("CRATEGRAPH_LOG_LEVEL", raising=False)
        with mock.patch("crategraph.cli.setup_logging") as setup:
            main(["list", "-m", metadata])
        setup.assert_not_called()
