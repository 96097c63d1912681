from pathlib import Path
import enum
import json
import tempfile
import threading
from typing import Callable, Protocol

import click

import vcs_helpers
from build_planner import BuildPlanner
from config import Settings
from constants import LEDGER_FILENAME
from dependency_graph import BuildLocks, DependencyGraphResolver, InstallContext
from errors import ArtifactMissing, GrammarError, UnknownLanguage
from recipes import Recipe, pin
from revision_resolver import History, ResolvedRevision, RevisionResolver
from toolchain import make_tool_resolver
from tsm_types import CommitId, LanguageId


class InstallationState(enum.Enum):
    NOT_INSTALLED = 0
    INSTALLED = 1
    # An artifact is present, but we have no record of which revision built it.
    UNTRACKED = 2


class InstalledLedger:
    """Which revision each installed grammar was built from, persisted as JSON."""

    def __init__(self, localdir: Path):
        self.path = localdir / LEDGER_FILENAME
        self._lock = threading.Lock()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                self._have = json.load(f)
        except OSError:
            self._have = {}
        except json.JSONDecodeError:
            sez(f"Ignoring unreadable ledger {self.path}", ctx="(ledger) ", err=True)
            self._have = {}

    def save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(self._have, f, indent=2, sort_keys=True)

    def note_we_have(self, resolved: ResolvedRevision):
        now = resolved.to_dict()
        del now["language_id"]
        with self._lock:
            had = self._have.get(resolved.language_id)
            self._have[resolved.language_id] = now
            if had != now:
                self.save()

    def query(self, language_id: LanguageId) -> ResolvedRevision | None:
        entry = self._have.get(language_id)
        if entry is None:
            return None
        return ResolvedRevision.from_dict({**entry, "language_id": language_id})

    def all(self) -> list[ResolvedRevision]:
        return [r for lang in sorted(self._have) if (r := self.query(lang)) is not None]


def sez(msg: str, ctx: str, err=False):
    click.echo("TREESMITH SEZ: " + ctx + msg, err=err)


class SourceHistory(History, Protocol):
    def export_tree(self, commit: CommitId, dest: Path) -> None: ...


def short(commit: CommitId) -> str:
    return commit[:12]


class GrammarProvisioner:
    """The "make this language available" entry point.

    Composes recipe lookup, dependency ordering, revision resolution and
    building. One instance serves any number of top-level `ensure()` calls,
    including concurrent ones: each call gets its own InstallContext, and
    builds of the same grammar are serialized.
    """

    def __init__(
        self,
        settings: Settings,
        resolver: RevisionResolver | None = None,
        planner: BuildPlanner | None = None,
        history_for: Callable[[Recipe], SourceHistory] | None = None,
        ledger: InstalledLedger | None = None,
    ):
        self.settings = settings
        self._resolver = resolver
        self.planner = planner or BuildPlanner(
            make_tool_resolver(settings.substitutions), settings.registration_dir
        )
        self.history_for = history_for or self._mirror_for
        self.ledger = ledger or InstalledLedger(settings.localdir)
        self.graph = DependencyGraphResolver(
            self.dependencies_of, self.locate, self.install_one, BuildLocks()
        )
        self._histories: dict[LanguageId, SourceHistory] = {}
        self._histories_lock = threading.Lock()
        self._resolver_lock = threading.Lock()

    @property
    def resolver(self) -> RevisionResolver:
        # Built on first use, so that commands which never resolve anything
        # (status, export) work without an ABI ceiling.
        with self._resolver_lock:
            if self._resolver is None:
                self._resolver = RevisionResolver(
                    self.settings.require_ceiling(),
                    self.settings.search,
                    self.settings.probe_workers,
                )
            return self._resolver

    def recipe(self, language_id: LanguageId) -> Recipe:
        try:
            return self.settings.recipes[language_id]
        except KeyError:
            raise UnknownLanguage(f"no recipe for grammar {language_id!r}", language_id) from None

    def dependencies_of(self, language_id: LanguageId) -> tuple[LanguageId, ...]:
        return self.recipe(language_id).dependencies

    def locate(self, language_id: LanguageId) -> Path:
        artifact = self.planner.artifact_path(language_id)
        if not artifact.is_file():
            raise ArtifactMissing(f"{artifact} does not exist", language_id)
        return artifact

    def state(self, language_id: LanguageId) -> InstallationState:
        try:
            self.locate(language_id)
        except ArtifactMissing:
            return InstallationState.NOT_INSTALLED
        if self.ledger.query(language_id) is None:
            return InstallationState.UNTRACKED
        return InstallationState.INSTALLED

    def _mirror_for(self, recipe: Recipe) -> SourceHistory:
        gitdir = self.settings.localdir / "repos" / f"{recipe.language_id}.git"
        return vcs_helpers.HistoryFetcher(recipe.url, gitdir, recipe.ref)

    def history(self, recipe: Recipe) -> SourceHistory:
        with self._histories_lock:
            if recipe.language_id not in self._histories:
                self._histories[recipe.language_id] = self.history_for(recipe)
            return self._histories[recipe.language_id]

    def resolve_revision(self, language_id: LanguageId) -> ResolvedRevision:
        recipe = self.recipe(language_id)
        ctx = f"({language_id}) "
        if recipe.is_auto:
            sez(
                f"Searching {recipe.url} for a commit with ABI <= {self.resolver.ceiling}...",
                ctx,
            )
        resolved = self.resolver.resolve(
            language_id, self.history(recipe), recipe.parser_path, recipe.revision
        )
        sez(f"Using commit {short(resolved.commit)} (ABI {resolved.abi})", ctx)
        return resolved

    def install_one(self, language_id: LanguageId) -> Path:
        """Resolve and build a single grammar whose dependencies are already in place."""
        recipe = self.recipe(language_id)
        try:
            resolved = self.resolve_revision(language_id)
            with tempfile.TemporaryDirectory(prefix=f"treesmith-{language_id}-") as tmp:
                checkout = Path(tmp)
                self.history(recipe).export_tree(resolved.commit, checkout)
                sez(f"Building {language_id}...", ctx=f"({language_id}) ")
                artifact = self.planner.build(language_id, checkout / recipe.source_dir)
        except GrammarError as e:
            raise e.with_language(language_id)

        self.ledger.note_we_have(resolved)
        sez(f"Installed {artifact}", ctx=f"({language_id}) ")
        return artifact

    def ensure(self, language_id: LanguageId) -> Path:
        """Make `language_id` (and everything it depends on) available; returns its artifact."""
        return self.graph.install(language_id, InstallContext())

    def pinned_recipes(self, language_ids: list[LanguageId] | None = None) -> list[Recipe]:
        """Recipes fixed to the revisions recorded for installed grammars."""
        if not language_ids:
            language_ids = [r.language_id for r in self.ledger.all()]
        pinned = []
        for lang in language_ids:
            resolved = self.ledger.query(lang)
            if resolved is None and self._resolver is not None:
                resolved = self._resolver.cached(lang)
            if resolved is None:
                raise GrammarError(f"{lang} has not been installed yet", lang)
            pinned.append(pin(self.recipe(lang), resolved))
        return pinned
