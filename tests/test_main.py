import json
from pathlib import Path

import pytest
from click.testing import CliRunner

import main
import vcs_helpers
from build_planner import artifact_filename
from provisioning import InstalledLedger
from revision_resolver import ResolvedRevision
from test_fixtures import FakeHistory

CONFIG = """
[grammars.c]
url = "https://github.com/tree-sitter/tree-sitter-c"

[grammars.cpp]
url = "https://github.com/tree-sitter/tree-sitter-cpp"
dependencies = ["c"]
"""


@pytest.fixture
def localdir(test_tmp_dir, monkeypatch) -> Path:
    localdir = test_tmp_dir / "local"
    localdir.mkdir()
    (localdir / "config.toml").write_text(CONFIG)
    for var in ("TREESMITH_CONFIG", "TREESMITH_ABI_CEILING", "TREESMITH_REGISTRATION_DIR"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("TREESMITH_LOCALDIR", str(localdir))
    return localdir


def test_resolve_prints_commit_and_abi(localdir, monkeypatch):
    histories = {
        "https://github.com/tree-sitter/tree-sitter-c": FakeHistory.with_abis([15, 14, 13]),
    }
    monkeypatch.setattr(vcs_helpers, "require_git", lambda: None)
    monkeypatch.setattr(vcs_helpers, "HistoryFetcher", lambda url, gitdir, ref: histories[url])

    result = CliRunner().invoke(main.cli, ["--abi-ceiling", "14", "resolve", "c"])

    assert result.exit_code == 0, result.output
    assert "c\tc1\tABI 14" in result.output


def test_resolve_without_ceiling_fails(localdir, monkeypatch):
    monkeypatch.setattr(vcs_helpers, "require_git", lambda: None)

    result = CliRunner().invoke(main.cli, ["resolve", "c"])

    assert result.exit_code == 1
    assert "Error: no ABI ceiling configured" in result.output


def test_install_unknown_language_fails(localdir, monkeypatch):
    monkeypatch.setattr(vcs_helpers, "require_git", lambda: None)

    result = CliRunner().invoke(main.cli, ["--abi-ceiling", "14", "install", "cobol"])

    assert result.exit_code == 1
    assert "Error: [cobol]" in result.output


def test_cyclic_config_fails_before_any_command(localdir):
    (localdir / "config.toml").write_text(
        CONFIG.replace('tree-sitter-c"\n', 'tree-sitter-c"\ndependencies = ["cpp"]\n', 1)
    )

    result = CliRunner().invoke(main.cli, ["status"])

    assert result.exit_code == 1
    assert "Error: [c] dependency cycle: c -> cpp -> c" in result.output


def test_status_reports_each_grammar(localdir):
    grammars = localdir / "grammars"
    grammars.mkdir()
    (grammars / artifact_filename("c")).write_bytes(b"")
    InstalledLedger(localdir).note_we_have(ResolvedRevision("c", "0123456789abcdef", 14))

    result = CliRunner().invoke(main.cli, ["status"])

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert "c\tinstalled\t0123456789ab (ABI 14)" in lines
    assert "cpp\tnot_installed" in lines


def test_export_writes_loadable_pinned_config(localdir, tmp_path):
    InstalledLedger(localdir).note_we_have(ResolvedRevision("c", "0123456789abcdef", 14))

    result = CliRunner().invoke(main.cli, ["export"])

    assert result.exit_code == 0, result.output
    doc = json.loads(result.output)
    assert doc["grammars"]["c"]["revision"] == "0123456789abcdef"

    pinned = tmp_path / "pinned.json"
    pinned.write_text(result.output)
    result = CliRunner().invoke(main.cli, ["--config", str(pinned), "status"])
    assert result.exit_code == 0, result.output
    assert "cpp" not in result.output


def test_export_of_uninstalled_grammar_fails(localdir):
    result = CliRunner().invoke(main.cli, ["export", "cpp"])

    assert result.exit_code == 1
    assert "has not been installed" in result.output
