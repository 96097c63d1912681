"""Compiling a grammar's sources into a loadable shared library.

A grammar's `src/` directory holds the generated `parser.c` and, for many
languages, a hand-written external scanner in C (`scanner.c`) or C++
(`scanner.cc`). Each compilation unit becomes an object file in the source
directory; the link step then combines `*.o` into the shared library, which
is finally copied into the registration directory where the editor looks
for grammars.
"""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, TypeAlias

import hermetic
import toolchain
from constants import C_COMPILER, CXX_COMPILER, OBJECT_GLOB, PARSER_FILENAME
from errors import CompileError
from tsm_types import LanguageId, LogicalToolName


class StepKind(Enum):
    COMPILE = "compile"
    LINK = "link"


@dataclass
class Invocation:
    tool: LogicalToolName
    args: list[str]
    kind: StepKind


StepRunner: TypeAlias = Callable[[list[str], Path, bool], subprocess.CompletedProcess]


def is_windows_like(system: str) -> bool:
    return system == "Windows" or system.startswith(("CYGWIN", "MSYS", "MINGW"))


def artifact_filename(language_id: LanguageId, system: str | None = None) -> str:
    system = system or platform.system()
    if system == "Darwin":
        ext = ".dylib"
    elif is_windows_like(system):
        ext = ".dll"
    else:
        ext = ".so"
    return f"libtree-sitter-{language_id}{ext}"


def plan_build(
    language_id: LanguageId, srcdir: Path, system: str | None = None
) -> list[Invocation]:
    system = system or platform.system()

    plan = [Invocation(C_COMPILER, ["-fPIC", "-c", "-I.", PARSER_FILENAME], StepKind.COMPILE)]

    link_tool = C_COMPILER
    if (srcdir / "scanner.c").is_file():
        plan.append(Invocation(C_COMPILER, ["-fPIC", "-c", "-I.", "scanner.c"], StepKind.COMPILE))
    else:
        for name in ("scanner.cc", "scanner.cpp"):
            if (srcdir / name).is_file():
                plan.append(
                    Invocation(CXX_COMPILER, ["-fPIC", "-c", "-I.", name], StepKind.COMPILE)
                )
                # The C++ runtime must come along, which only the C++ driver knows how to do.
                link_tool = CXX_COMPILER
                break

    link_args = []
    if is_windows_like(system):
        link_args += ["-static-libgcc", "-static-libstdc++"]
    link_args += ["-fPIC", "-shared", OBJECT_GLOB, "-o", artifact_filename(language_id, system)]
    plan.append(Invocation(link_tool, link_args, StepKind.LINK))
    return plan


def run_step(argv: list[str], cwd: Path, shell: bool) -> subprocess.CompletedProcess:
    if shell:
        return hermetic.run_shell_cmd(
            argv,
            cwd=cwd,
            unquoted=(OBJECT_GLOB,),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    return hermetic.run(
        argv,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )


class BuildPlanner:
    def __init__(
        self,
        tools: toolchain.ToolResolver,
        registration_dir: Path,
        runner: StepRunner = run_step,
    ):
        self.tools = tools
        self.registration_dir = registration_dir
        self.runner = runner

    def artifact_path(self, language_id: LanguageId) -> Path:
        return self.registration_dir / artifact_filename(language_id)

    def command_for(self, inv: Invocation, srcdir: Path) -> tuple[list[str], bool]:
        """The argv to execute for `inv`, and whether it goes through the shell."""
        spec = self.tools.resolve(inv.tool)
        if not self.tools.is_substituted(inv.tool):
            return spec.argv(inv.args), True

        args = inv.args
        if inv.kind is StepKind.LINK:
            args = toolchain.with_explicit_objects(args, srcdir)
        return spec.argv(args), False

    def build(self, language_id: LanguageId, srcdir: Path) -> Path:
        """Compile and link the grammar in `srcdir`; returns the registered artifact."""
        argv: list[str] = []
        for inv in plan_build(language_id, srcdir):
            argv, shell = self.command_for(inv, srcdir)
            try:
                cp = self.runner(argv, srcdir, shell)
            except OSError as e:
                raise CompileError(argv, None, str(e), language_id) from e
            if cp.returncode != 0:
                raise CompileError(argv, cp.returncode, cp.stdout or "", language_id)

        built = srcdir / artifact_filename(language_id)
        if not built.is_file():
            raise CompileError(argv, 0, f"link step did not produce {built.name}", language_id)
        return self.register(built)

    def register(self, built: Path) -> Path:
        """Copy `built` into the registration directory without ever exposing a partial file."""
        self.registration_dir.mkdir(parents=True, exist_ok=True)
        dest = self.registration_dir / built.name
        fd, tmp = tempfile.mkstemp(
            dir=self.registration_dir, prefix=f".{built.name}.", suffix=".tmp"
        )
        os.close(fd)
        try:
            shutil.copyfile(built, tmp)
            os.replace(tmp, dest)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return dest
