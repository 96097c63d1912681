from pathlib import Path

import pytest

import build_planner
import toolchain
from build_planner import BuildPlanner, StepKind
from constants import C_COMPILER, CXX_COMPILER, OBJECT_GLOB
from errors import CompileError
from test_fixtures import RecordingRunner, parser_c


def grammar_src(root: Path, scanner: str | None = None) -> Path:
    srcdir = root / "src"
    srcdir.mkdir(parents=True)
    (srcdir / "parser.c").write_text(parser_c(14))
    if scanner is not None:
        (srcdir / scanner).write_text("/* external scanner */\n")
    return srcdir


def test_artifact_filename_per_platform():
    assert build_planner.artifact_filename("c", "Linux") == "libtree-sitter-c.so"
    assert build_planner.artifact_filename("c", "Darwin") == "libtree-sitter-c.dylib"
    assert build_planner.artifact_filename("c", "Windows") == "libtree-sitter-c.dll"
    assert build_planner.artifact_filename("c", "MINGW64_NT-10.0") == "libtree-sitter-c.dll"


def test_plan_without_scanner(tmp_path: Path):
    plan = build_planner.plan_build("json", grammar_src(tmp_path), "Linux")

    assert [(i.tool, i.kind) for i in plan] == [
        (C_COMPILER, StepKind.COMPILE),
        (C_COMPILER, StepKind.LINK),
    ]
    assert plan[-1].args == ["-fPIC", "-shared", OBJECT_GLOB, "-o", "libtree-sitter-json.so"]


def test_plan_with_cxx_scanner_links_with_cxx(tmp_path: Path):
    plan = build_planner.plan_build("cpp", grammar_src(tmp_path, "scanner.cc"), "Linux")

    assert [i.tool for i in plan] == [C_COMPILER, CXX_COMPILER, CXX_COMPILER]
    assert plan[1].args[-1] == "scanner.cc"


def test_plan_on_windows_links_runtime_statically(tmp_path: Path):
    plan = build_planner.plan_build("c", grammar_src(tmp_path, "scanner.c"), "Windows")

    assert [i.tool for i in plan] == [C_COMPILER, C_COMPILER, C_COMPILER]
    assert plan[-1].args[:2] == ["-static-libgcc", "-static-libstdc++"]
    assert plan[-1].args[-1] == "libtree-sitter-c.dll"


def test_build_passthrough_leaves_link_glob_to_the_shell(tmp_path: Path, runner, monkeypatch):
    monkeypatch.setattr(toolchain.shutil, "which", lambda p: None)
    srcdir = grammar_src(tmp_path, "scanner.c")
    planner = BuildPlanner(toolchain.PassthroughToolResolver(), tmp_path / "reg", runner)

    artifact = planner.build("c", srcdir)

    link_argv, cwd, shell = runner.calls[-1]
    assert shell
    assert cwd == srcdir
    assert link_argv[0] == "cc"
    assert OBJECT_GLOB in link_argv
    assert artifact == tmp_path / "reg" / build_planner.artifact_filename("c")
    assert artifact.read_bytes() == b"\x7fELF shared"


def test_build_substituted_link_names_objects_explicitly(tmp_path: Path, runner):
    srcdir = grammar_src(tmp_path, "scanner.c")
    tools = toolchain.SubstitutingToolResolver(
        {C_COMPILER: toolchain.ToolSpec(C_COMPILER, "zig", ("cc",))}
    )
    planner = BuildPlanner(tools, tmp_path / "reg", runner)

    planner.build("c", srcdir)

    assert all(not shell for _, _, shell in runner.calls)
    assert [argv[:2] for argv, _, _ in runner.calls] == [["zig", "cc"]] * 3
    link_argv = runner.calls[-1][0]
    assert OBJECT_GLOB not in link_argv
    assert link_argv[-2:] == ["parser.o", "scanner.o"]


def test_failed_step_raises_compile_error(tmp_path: Path):
    srcdir = grammar_src(tmp_path, "scanner.c")
    runner = RecordingRunner(fail_when="scanner.c")
    planner = BuildPlanner(toolchain.PassthroughToolResolver(), tmp_path / "reg", runner)

    with pytest.raises(CompileError) as excinfo:
        planner.build("c", srcdir)

    assert excinfo.value.returncode == 1
    assert excinfo.value.language_id == "c"
    assert "it broke" in excinfo.value.output
    assert not (tmp_path / "reg").exists()


def test_missing_compiler_raises_compile_error(tmp_path: Path):
    def runner(argv, cwd, shell):
        raise FileNotFoundError(argv[0])

    planner = BuildPlanner(toolchain.PassthroughToolResolver(), tmp_path / "reg", runner)

    with pytest.raises(CompileError) as excinfo:
        planner.build("c", grammar_src(tmp_path))
    assert excinfo.value.returncode is None


def test_register_replaces_existing_artifact(tmp_path: Path):
    reg = tmp_path / "reg"
    reg.mkdir()
    (reg / "libtree-sitter-c.so").write_text("old")
    built = tmp_path / "libtree-sitter-c.so"
    built.write_text("new")

    planner = BuildPlanner(toolchain.PassthroughToolResolver(), reg)
    dest = planner.register(built)

    assert dest.read_text() == "new"
    assert sorted(p.name for p in reg.iterdir()) == ["libtree-sitter-c.so"]
