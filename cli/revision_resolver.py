"""Finding a grammar revision whose declared ABI this host can load.

Grammar repositories rarely tag ABI changes, and the ABI a host accepts
varies by build, so the declared `LANGUAGE_VERSION` in the grammar's own
parser is the only trustworthy signal. In auto mode we walk the remote
history newest-first, a bounded chunk at a time, and take the first commit
whose declared ABI fits under the ceiling. ABI numbers are not assumed to
be monotonic over history: a newer commit may declare a lower ABI than an
older one, and the scan simply takes whichever qualifying commit is newest.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Protocol

from dataclasses_json import DataClassJsonMixin

import version_probe
from constants import DEFAULT_DEPTH_STEP, DEFAULT_INITIAL_DEPTH, DEFAULT_MAX_ATTEMPTS
from errors import (
    AbiIncompatible,
    ExhaustedSearch,
    GrammarError,
    NetworkError,
    NotFoundAtCommit,
    ParseError,
)
from tsm_types import CommitId, LanguageId
from vcs_helpers import HistoryCursor

# Failures that merely disqualify one candidate commit during a search.
PROBE_SKIPPABLE = (ParseError, NetworkError, NotFoundAtCommit)


@dataclass(frozen=True)
class ResolvedRevision(DataClassJsonMixin):
    language_id: LanguageId
    commit: CommitId
    abi: int


@dataclass(frozen=True)
class SearchBounds:
    initial_depth: int = DEFAULT_INITIAL_DEPTH
    depth_step: int = DEFAULT_DEPTH_STEP
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self):
        for name in ("initial_depth", "depth_step", "max_attempts"):
            if getattr(self, name) < 1:
                raise ValueError(f"search bound `{name}` must be at least 1")

    def depth_for_attempt(self, attempt: int) -> int:
        return self.initial_depth + attempt * self.depth_step


class History(Protocol):
    @property
    def depth(self) -> int: ...

    def fetch(self, depth: int) -> None: ...

    def list_new_commits(self, cursor: HistoryCursor) -> list[CommitId]: ...

    def read_file_at_commit(self, commit: CommitId, path: str) -> str: ...

    def fetch_revision(self, revision: str) -> CommitId: ...


class RevisionResolver:
    def __init__(
        self,
        ceiling: int,
        bounds: SearchBounds | None = None,
        probe_workers: int = 1,
    ):
        self.ceiling = ceiling
        self.bounds = bounds or SearchBounds()
        self.probe_workers = probe_workers
        self._cache: dict[LanguageId, ResolvedRevision] = {}

    def cached(self, language_id: LanguageId) -> ResolvedRevision | None:
        return self._cache.get(language_id)

    def resolve(
        self,
        language_id: LanguageId,
        history: History,
        path: str,
        revision: str | None = None,
    ) -> ResolvedRevision:
        """Resolve `language_id` to a commit whose `path` declares an acceptable ABI.

        With a fixed `revision`, only that revision is examined; otherwise
        the history is searched within `self.bounds`.
        """
        if language_id in self._cache:
            return self._cache[language_id]

        try:
            if revision is None:
                resolved = self._search(language_id, history, path)
            else:
                resolved = self._check_fixed(language_id, history, path, revision)
        except GrammarError as e:
            raise e.with_language(language_id)

        assert resolved.abi <= self.ceiling
        self._cache[language_id] = resolved
        return resolved

    def _check_fixed(
        self, language_id: LanguageId, history: History, path: str, revision: str
    ) -> ResolvedRevision:
        commit = history.fetch_revision(revision)
        abi = version_probe.extract_abi(history.read_file_at_commit(commit, path))
        if abi > self.ceiling:
            raise AbiIncompatible(commit, abi, self.ceiling, language_id)
        return ResolvedRevision(language_id, commit, abi)

    def _probe(self, history: History, commit: CommitId, path: str) -> int | None:
        try:
            return version_probe.extract_abi(history.read_file_at_commit(commit, path))
        except PROBE_SKIPPABLE:
            return None

    def _newest_qualifying(
        self, language_id: LanguageId, history: History, commits: list[CommitId], path: str
    ) -> ResolvedRevision | None:
        """`commits` is newest-first; so is the scan, whatever order probes finish in."""
        abis: dict[CommitId, int | None] | None = None
        if self.probe_workers > 1 and len(commits) > 1:
            with ThreadPoolExecutor(max_workers=self.probe_workers) as pool:
                futures = {c: pool.submit(self._probe, history, c, path) for c in commits}
                abis = {c: f.result() for c, f in futures.items()}

        for commit in commits:
            abi = abis[commit] if abis is not None else self._probe(history, commit, path)
            if abi is not None and abi <= self.ceiling:
                return ResolvedRevision(language_id, commit, abi)
        return None

    def _search(self, language_id: LanguageId, history: History, path: str) -> ResolvedRevision:
        cursor = HistoryCursor()
        scanned = 0
        for attempt in range(self.bounds.max_attempts):
            history.fetch(self.bounds.depth_for_attempt(attempt))
            commits = history.list_new_commits(cursor)
            if not commits:
                # Deepening surfaced nothing new, so the whole history is visible.
                break

            found = self._newest_qualifying(language_id, history, commits, path)
            if found is not None:
                return found
            scanned += len(commits)

        raise ExhaustedSearch(self.ceiling, scanned, history.depth, language_id)
