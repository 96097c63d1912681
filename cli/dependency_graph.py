"""Installing grammars in dependency order.

Some grammars are built on top of others (tsx on typescript, cpp on c), and
a recipe lists those as dependencies. Each top-level install walks the
dependency graph depth-first, building every dependency before the grammar
that needs it. The chain of grammars currently being installed lives in an
`InstallContext` owned by that one top-level call, so a grammar that shows
up again further down its own chain is reported as a cycle, however
indirect, before anything in the cycle is built.
"""

import enum
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, Sequence

from errors import ArtifactMissing, CyclicDependency
from tsm_types import LanguageId


class InstallState(enum.Enum):
    PENDING = "pending"
    INSTALLING = "installing"
    INSTALLED = "installed"


@dataclass
class InstallContext:
    """State for a single top-level install; never shared between calls."""

    stack: list[LanguageId] = field(default_factory=list)
    states: dict[LanguageId, InstallState] = field(default_factory=dict)
    artifacts: dict[LanguageId, Path] = field(default_factory=dict)
    built: list[LanguageId] = field(default_factory=list)

    def state(self, language_id: LanguageId) -> InstallState:
        return self.states.get(language_id, InstallState.PENDING)

    def mark_installed(self, language_id: LanguageId, artifact: Path) -> None:
        self.states[language_id] = InstallState.INSTALLED
        self.artifacts[language_id] = artifact

    @contextmanager
    def installing(self, language_id: LanguageId) -> Iterator[None]:
        if language_id in self.stack:
            start = self.stack.index(language_id)
            raise CyclicDependency([*self.stack[start:], language_id])

        self.stack.append(language_id)
        self.states[language_id] = InstallState.INSTALLING
        try:
            yield
        except BaseException:
            self.states[language_id] = InstallState.PENDING
            raise
        finally:
            popped = self.stack.pop()
            assert popped == language_id


def check_acyclic(
    roots: Iterable[LanguageId], dependencies_of: Callable[[LanguageId], Sequence[LanguageId]]
) -> None:
    """Raise CyclicDependency if any grammar reachable from `roots` depends on itself.

    This looks at the whole graph, so a cycle is found even when some of its
    members are already installed and an install would never walk through it.
    """
    done: set[LanguageId] = set()
    path: list[LanguageId] = []

    def visit(language_id: LanguageId) -> None:
        if language_id in done:
            return
        if language_id in path:
            raise CyclicDependency([*path[path.index(language_id) :], language_id])
        path.append(language_id)
        for dep in dependencies_of(language_id):
            visit(dep)
        path.pop()
        done.add(language_id)

    for root in roots:
        visit(root)


class BuildLocks:
    """One lock per language id, so that concurrent installs never build the same grammar twice."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[LanguageId, threading.Lock] = {}

    def for_language(self, language_id: LanguageId) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(language_id, threading.Lock())


class DependencyGraphResolver:
    def __init__(
        self,
        dependencies_of: Callable[[LanguageId], Sequence[LanguageId]],
        locate: Callable[[LanguageId], Path],
        install_one: Callable[[LanguageId], Path],
        locks: BuildLocks | None = None,
    ):
        """
        - `dependencies_of` lists the direct dependencies of a grammar.
        - `locate` returns the installed artifact, or raises ArtifactMissing.
        - `install_one` resolves and builds a single grammar, dependencies aside.
        """
        self.dependencies_of = dependencies_of
        self.locate = locate
        self.install_one = install_one
        self.locks = locks or BuildLocks()

    def install(self, language_id: LanguageId, ctx: InstallContext | None = None) -> Path:
        """Install `language_id` and its dependencies; each call gets a fresh context by default."""
        check_acyclic([language_id], self.dependencies_of)
        return self._install(language_id, ctx if ctx is not None else InstallContext())

    def _located(self, language_id: LanguageId) -> Path | None:
        try:
            return self.locate(language_id)
        except ArtifactMissing:
            return None

    def _install(self, language_id: LanguageId, ctx: InstallContext) -> Path:
        if ctx.state(language_id) is InstallState.INSTALLED:
            return ctx.artifacts[language_id]

        artifact = self._located(language_id)
        if artifact is not None:
            ctx.mark_installed(language_id, artifact)
            return artifact

        with ctx.installing(language_id):
            for dep in self.dependencies_of(language_id):
                self._install(dep, ctx)

            with self.locks.for_language(language_id):
                # A concurrent install may have finished this one while we waited.
                artifact = self._located(language_id)
                if artifact is None:
                    artifact = self.install_one(language_id)
                    ctx.built.append(language_id)

        ctx.mark_installed(language_id, artifact)
        return artifact
