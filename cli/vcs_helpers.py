import io
import re
import shutil
import subprocess
import tarfile
from dataclasses import dataclass, field
from pathlib import Path

from packaging.version import Version

import hermetic
from constants import DEFAULT_REMOTE_REF, MIN_GIT_VERSION, PINNED_TIP_REF
from errors import ExportError, GrammarError, NetworkError, NotFoundAtCommit, RepoNotFound
from tsm_types import CommitId, RepoLocator

# Matched against git's stderr (hermetic.mk_env_for forces LC_ALL=C).
# GitHub answers "terminal prompts disabled" for repositories that don't
# exist, since it asks for credentials rather than admitting to a 404.
REPO_NOT_FOUND_MARKERS = (
    "repository not found",
    "does not appear to be a git repository",
    "terminal prompts disabled",
    "' not found",
)

MISSING_REVISION_MARKERS = (
    "couldn't find remote ref",
    "not our ref",
    "unadvertised object",
    "no such remote ref",
)

NETWORK_MARKERS = (
    "could not read from remote",
    "unable to access",
    "could not resolve host",
    "connection timed out",
    "connection refused",
    "early eof",
    "could not fetch",
)


@dataclass
class HistoryCursor:
    """Remembers which commits have already been handed to the caller."""

    seen: set[CommitId] = field(default_factory=set)


class HistoryFetcher:
    """A bare, blobless local mirror of one remote grammar repository.

    History is made visible incrementally: the first `fetch()` grabs the
    newest `depth` commits of `ref`, later calls `--deepen` by the difference,
    so commits already present are never transferred again. File contents
    are fetched lazily, one blob at a time, when `read_file_at_commit()` asks
    for them. No working tree is ever checked out.
    """

    def __init__(self, url: RepoLocator, gitdir: Path, ref: str = DEFAULT_REMOTE_REF):
        self.url = url
        self.gitdir = gitdir
        self.ref = ref
        self._depth = 0

    @property
    def depth(self) -> int:
        return self._depth

    def _git(self, args: list[str], text: bool = True) -> subprocess.CompletedProcess:
        return hermetic.run(
            ["git", "--git-dir", str(self.gitdir), *args],
            check=False,
            capture_output=True,
            text=text,
        )

    def _ensure_repo(self) -> None:
        if (self.gitdir / "HEAD").is_file():
            self._git(["config", "remote.origin.url", self.url])
            return

        self.gitdir.mkdir(parents=True, exist_ok=True)
        cp = hermetic.run(
            ["git", "init", "--bare", "--quiet", str(self.gitdir)],
            check=False,
            capture_output=True,
            text=True,
        )
        if cp.returncode != 0:
            raise GrammarError(f"could not initialize {self.gitdir}: {cp.stderr.strip()}")

        # The same configuration `git clone --filter=blob:none` would write,
        # so that missing blobs are fetched from origin on demand.
        for key, value in [
            ("remote.origin.url", self.url),
            ("remote.origin.promisor", "true"),
            ("remote.origin.partialclonefilter", "blob:none"),
            ("core.repositoryformatversion", "1"),
            ("extensions.partialClone", "origin"),
        ]:
            self._git(["config", key, value])

    def _fetch_failure(self, stderr: str) -> GrammarError:
        lowered = stderr.lower()
        if any(marker in lowered for marker in REPO_NOT_FOUND_MARKERS):
            return RepoNotFound(f"repository {self.url} not found: {stderr.strip()}")
        return NetworkError(f"fetching {self.url} failed: {stderr.strip()}")

    def fetch(self, depth: int) -> None:
        """Make at least the newest `depth` commits of `ref` visible locally."""
        if depth <= self._depth:
            return
        self._ensure_repo()

        if self._depth == 0:
            args = [f"--depth={depth}", "origin", f"+{self.ref}:{PINNED_TIP_REF}"]
        else:
            # Deliberately not updating the pinned tip: if upstream moved
            # meanwhile, we keep walking the history we started with.
            args = [f"--deepen={depth - self._depth}", "origin", self.ref]

        cp = self._git(["fetch", "--quiet", "--no-tags", "--filter=blob:none", *args])
        if cp.returncode != 0:
            raise self._fetch_failure(cp.stderr)
        self._depth = depth

    def list_new_commits(self, cursor: HistoryCursor) -> list[CommitId]:
        """Commits visible now but not yet surfaced through `cursor`, newest first."""
        if self._depth == 0:
            return []
        # The shallow boundary limits the walk; with merges it can hold more
        # than `depth` commits, all of which are already here to be probed.
        cp = self._git(["rev-list", PINNED_TIP_REF])
        if cp.returncode != 0:
            raise GrammarError(f"could not list history of {self.url}: {cp.stderr.strip()}")

        new = [c for c in cp.stdout.split() if c not in cursor.seen]
        cursor.seen.update(new)
        return new

    def read_file_at_commit(self, commit: CommitId, path: str) -> str:
        cp = self._git(["cat-file", "blob", f"{commit}:{path}"], text=False)
        if cp.returncode != 0:
            stderr = cp.stderr.decode("utf-8", errors="replace")
            if any(marker in stderr.lower() for marker in NETWORK_MARKERS):
                raise NetworkError(f"fetching {path}@{commit} from {self.url} failed: {stderr}")
            raise NotFoundAtCommit(commit, path)
        return cp.stdout.decode("utf-8", errors="replace")

    def fetch_revision(self, revision: str) -> CommitId:
        """Fetch a single named revision (no history) and return its commit id."""
        self._ensure_repo()

        cp = self._git(["rev-parse", "--verify", "--quiet", f"{revision}^{{commit}}"])
        if cp.returncode == 0:
            return cp.stdout.strip()

        cp = self._git(
            ["fetch", "--quiet", "--no-tags", "--filter=blob:none", "--depth=1", "origin", revision]
        )
        if cp.returncode != 0:
            if any(marker in cp.stderr.lower() for marker in MISSING_REVISION_MARKERS):
                raise NotFoundAtCommit(revision, None)
            raise self._fetch_failure(cp.stderr)

        cp = self._git(["rev-parse", "FETCH_HEAD^{commit}"])
        if cp.returncode != 0:
            raise GrammarError(f"fetched {revision} but cannot find it: {cp.stderr.strip()}")
        return cp.stdout.strip()

    def _prefetch_blobs(self, commit: CommitId) -> None:
        """Fetch every blob of `commit`'s tree that we don't have yet, in one request.

        Left to itself, git would fetch missing blobs one round-trip at a time.
        """
        cp = self._git(["rev-list", "--objects", "--no-walk", "--missing=print", commit])
        if cp.returncode != 0:
            raise NotFoundAtCommit(commit, None)
        missing = [line[1:] for line in cp.stdout.splitlines() if line.startswith("?")]
        if not missing:
            return

        # The same command git runs internally to lazily fetch promised objects.
        cp = hermetic.run(
            [
                "git",
                "--git-dir",
                str(self.gitdir),
                "-c",
                "fetch.negotiationAlgorithm=noop",
                "fetch",
                "origin",
                "--quiet",
                "--no-tags",
                "--no-write-fetch-head",
                "--recurse-submodules=no",
                "--filter=blob:none",
                "--stdin",
            ],
            check=False,
            capture_output=True,
            text=True,
            input="\n".join(missing) + "\n",
        )
        if cp.returncode != 0:
            raise NetworkError(f"fetching sources of {commit} from {self.url} failed: {cp.stderr}")

    def export_tree(self, commit: CommitId, dest: Path) -> None:
        """Write the full tree of `commit` below `dest`, without any working tree or index.

        The whole tree is needed because grammars in a monorepo routinely
        include headers from outside their own source directory.
        """
        self._prefetch_blobs(commit)
        cp = self._git(["archive", "--format=tar", commit], text=False)
        if cp.returncode != 0:
            stderr = cp.stderr.decode("utf-8", errors="replace")
            if any(marker in stderr.lower() for marker in NETWORK_MARKERS):
                raise NetworkError(f"exporting {commit} from {self.url} failed: {stderr}")
            raise NotFoundAtCommit(commit, None)

        # The "data" filter refuses absolute paths and links leading out of `dest`.
        try:
            dest.mkdir(parents=True, exist_ok=True)
            with tarfile.open(fileobj=io.BytesIO(cp.stdout), mode="r:") as tf:
                tf.extractall(dest, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise ExportError(f"cannot unpack sources of {commit} into {dest}: {e}") from e


def git_version() -> Version | None:
    git = shutil.which("git")
    if git is None:
        return None
    out = hermetic.check_output([git, "--version"]).decode("utf-8")
    # e.g. "git version 2.39.3 (Apple Git-146)" or "git version 2.45.1.windows.1"
    m = re.search(r"(\d+)\.(\d+)(?:\.(\d+))?", out)
    if m is None:
        return None
    return Version(".".join(x for x in m.groups() if x is not None))


def require_git() -> None:
    have = git_version()
    if have is None:
        raise GrammarError("git is not installed, or is not available on your $PATH")
    if have < Version(MIN_GIT_VERSION):
        raise GrammarError(f"git {have} is too old; treesmith needs at least {MIN_GIT_VERSION}")
