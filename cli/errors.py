from __future__ import annotations

from typing import Self

from tsm_types import CommitId, LanguageId


class GrammarError(Exception):
    """Root of every failure a treesmith operation reports.

    `language_id` is filled in as the error propagates out of the step that
    was working on a particular grammar; see `with_language()`.
    """

    def __init__(self, msg: str, language_id: LanguageId | None = None):
        super().__init__(msg)
        self.msg = msg
        self.language_id = language_id

    def with_language(self, language_id: LanguageId) -> Self:
        if self.language_id is None:
            self.language_id = language_id
        return self

    def __str__(self) -> str:
        if self.language_id is None:
            return self.msg
        return f"[{self.language_id}] {self.msg}"


class NetworkError(GrammarError):
    """Transient; the caller may retry."""


class RepoNotFound(GrammarError):
    pass


class NotFoundAtCommit(GrammarError):
    """`path` is None when the revision itself could not be found."""

    def __init__(
        self, commit: CommitId, path: str | None, language_id: LanguageId | None = None
    ):
        if path is None:
            msg = f"revision {commit} does not exist"
        else:
            msg = f"{path} does not exist at commit {commit}"
        super().__init__(msg, language_id)
        self.commit = commit
        self.path = path


class ParseError(GrammarError):
    pass


class AbiIncompatible(GrammarError):
    def __init__(
        self, commit: CommitId, abi: int, ceiling: int, language_id: LanguageId | None = None
    ):
        super().__init__(
            f"revision {commit} declares ABI {abi}, but this host accepts at most {ceiling}",
            language_id,
        )
        self.commit = commit
        self.abi = abi
        self.ceiling = ceiling


class ExhaustedSearch(GrammarError):
    def __init__(
        self,
        ceiling: int,
        scanned: int,
        depth: int,
        language_id: LanguageId | None = None,
    ):
        super().__init__(
            f"no commit declaring ABI <= {ceiling} among {scanned} commits"
            f" (history depth {depth}); widen the search bounds or pin a revision",
            language_id,
        )
        self.ceiling = ceiling
        self.scanned = scanned
        self.depth = depth


class CompileError(GrammarError):
    def __init__(
        self,
        command: list[str],
        returncode: int | None,
        output: str,
        language_id: LanguageId | None = None,
    ):
        status = "could not be run" if returncode is None else f"exited with {returncode}"
        super().__init__(f"build command {command[0]!r} {status}:\n{output}", language_id)
        self.command = command
        self.returncode = returncode
        self.output = output


class CyclicDependency(GrammarError):
    def __init__(self, chain: list[LanguageId]):
        super().__init__("dependency cycle: " + " -> ".join(chain), chain[-1])
        self.chain = chain


class ExportError(GrammarError):
    """A commit's sources could not be written out for building."""


class ArtifactMissing(GrammarError):
    """Internal signal: a grammar has no built artifact yet. Never shown to users."""


class UnknownLanguage(GrammarError):
    pass


class ConfigError(GrammarError):
    pass
