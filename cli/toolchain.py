"""Which program actually runs when a build asks for "the C compiler".

Builds name tools logically ("c-compiler", or a conventional alias such as
"cc"/"gcc"/"clang"). Users may substitute a different toolchain, for example
`zig cc`, for a logical tool; every alias of that tool then resolves to the
substitute. Nothing here patches global state: a resolver is handed to the
build planner, which asks it for each step.
"""

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

from constants import DEFAULT_PROGRAMS, OBJECT_GLOB, TOOL_ALIASES
from tsm_types import LogicalToolName


@dataclass(frozen=True)
class ToolSpec:
    logical_name: LogicalToolName
    program: str
    prefix: tuple[str, ...] = ()

    def argv(self, args: Sequence[str]) -> list[str]:
        return [self.program, *self.prefix, *args]


def canonical_tool_name(name: str) -> LogicalToolName:
    return TOOL_ALIASES.get(name, name)


class ToolResolver(Protocol):
    def resolve(self, name: str) -> ToolSpec: ...

    def is_substituted(self, name: str) -> bool: ...


class PassthroughToolResolver:
    """Plain executable lookup on PATH, as if nothing were configured."""

    def resolve(self, name: str) -> ToolSpec:
        program = DEFAULT_PROGRAMS.get(name, name)
        # If the lookup fails we keep the bare name and let the eventual
        # invocation report the missing program.
        return ToolSpec(canonical_tool_name(name), shutil.which(program) or program)

    def is_substituted(self, name: str) -> bool:
        return False


class SubstitutingToolResolver:
    def __init__(
        self,
        substitutions: dict[LogicalToolName, ToolSpec],
        fallback: ToolResolver | None = None,
    ):
        self.substitutions = {canonical_tool_name(k): v for k, v in substitutions.items()}
        self.fallback = fallback or PassthroughToolResolver()

    def resolve(self, name: str) -> ToolSpec:
        logical = canonical_tool_name(name)
        if logical in self.substitutions:
            return self.substitutions[logical]
        return self.fallback.resolve(name)

    def is_substituted(self, name: str) -> bool:
        return canonical_tool_name(name) in self.substitutions


def make_tool_resolver(substitutions: dict[LogicalToolName, ToolSpec]) -> ToolResolver:
    if not substitutions:
        return PassthroughToolResolver()
    return SubstitutingToolResolver(substitutions)


def with_explicit_objects(args: Sequence[str], workdir: Path) -> list[str]:
    """Link arguments for a toolchain that must be told its inputs.

    The nominal link step leaves `*.o` for the shell to expand. A substitute
    is executed directly, so the glob is dropped and the object files present
    in `workdir` are appended by name.
    """
    kept = [a for a in args if a != OBJECT_GLOB]
    objects = sorted(p.name for p in workdir.glob(OBJECT_GLOB))
    return [*kept, *(o for o in objects if o not in kept)]
