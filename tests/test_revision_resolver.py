import pytest

from errors import AbiIncompatible, ExhaustedSearch, NetworkError, NotFoundAtCommit, ParseError
from revision_resolver import ResolvedRevision, RevisionResolver, SearchBounds
from test_fixtures import FakeHistory, parser_c

PATH = "src/parser.c"


def test_auto_picks_newest_commit_under_ceiling():
    history = FakeHistory.with_abis([15, 15, 14, 14, 13])
    resolver = RevisionResolver(14, SearchBounds(initial_depth=2, depth_step=2, max_attempts=5))

    resolved = resolver.resolve("rust", history, PATH)

    assert resolved == ResolvedRevision("rust", "c2", 14)
    # The first chunk held only ABI 15, so one deepening was needed.
    assert history.fetches == [2, 4]


def test_auto_never_reads_past_the_first_match():
    history = FakeHistory.with_abis([15, 14, 13, 12])
    resolver = RevisionResolver(14, SearchBounds(initial_depth=4))

    resolver.resolve("rust", history, PATH)

    assert [c for c, _ in history.reads] == ["c0", "c1"]


def test_auto_takes_newest_even_when_abi_is_not_monotonic():
    history = FakeHistory.with_abis([15, 12, 14, 13])
    resolver = RevisionResolver(14, SearchBounds(initial_depth=4))

    assert resolver.resolve("go", history, PATH).commit == "c1"


def test_auto_skips_commits_that_cannot_be_probed():
    history = FakeHistory(
        {
            "c0": NetworkError("connection reset"),
            "c1": "/* no marker here */\n",
            "c2": None,
            "c3": parser_c(13),
        }
    )
    resolver = RevisionResolver(14, SearchBounds(initial_depth=10))

    assert resolver.resolve("lua", history, PATH) == ResolvedRevision("lua", "c3", 13)


def test_auto_exhausts_when_nothing_qualifies():
    history = FakeHistory.with_abis([15] * 50)
    resolver = RevisionResolver(14, SearchBounds(initial_depth=3, depth_step=3, max_attempts=2))

    with pytest.raises(ExhaustedSearch) as excinfo:
        resolver.resolve("zig", history, PATH)

    assert excinfo.value.language_id == "zig"
    assert excinfo.value.ceiling == 14
    assert excinfo.value.scanned == 6
    assert history.fetches == [3, 6]


def test_auto_stops_early_once_history_is_exhausted():
    history = FakeHistory.with_abis([15, 15, 15])
    resolver = RevisionResolver(14, SearchBounds(initial_depth=2, depth_step=2, max_attempts=10))

    with pytest.raises(ExhaustedSearch) as excinfo:
        resolver.resolve("zig", history, PATH)

    assert excinfo.value.scanned == 3
    assert history.fetches == [2, 4, 6]


def test_fixed_revision_is_checked_without_searching():
    history = FakeHistory.with_abis([15, 14, 13])
    resolver = RevisionResolver(14)

    resolved = resolver.resolve("c", history, PATH, revision="c2")

    assert resolved == ResolvedRevision("c", "c2", 13)
    assert history.fetches == []
    assert history.revision_fetches == ["c2"]
    assert history.reads == [("c2", PATH)]


def test_fixed_revision_above_ceiling_is_incompatible():
    history = FakeHistory.with_abis([15, 14])
    resolver = RevisionResolver(14)

    with pytest.raises(AbiIncompatible) as excinfo:
        resolver.resolve("c", history, PATH, revision="c0")

    assert (excinfo.value.commit, excinfo.value.abi, excinfo.value.ceiling) == ("c0", 15, 14)
    assert excinfo.value.language_id == "c"
    assert len(history.reads) == 1


def test_fixed_revision_errors_propagate():
    resolver = RevisionResolver(14)

    with pytest.raises(NotFoundAtCommit) as excinfo:
        resolver.resolve("c", FakeHistory.with_abis([14]), PATH, revision="nope")
    assert excinfo.value.path is None

    with pytest.raises(ParseError):
        resolver.resolve("cpp", FakeHistory({"c0": "garbage"}), PATH, revision="c0")


def test_resolutions_are_cached_per_language():
    history = FakeHistory.with_abis([14])
    resolver = RevisionResolver(14)

    first = resolver.resolve("c", history, PATH)
    reads = len(history.reads)
    second = resolver.resolve("c", history, PATH)

    assert first == second
    assert len(history.reads) == reads
    assert resolver.cached("c") == first
    assert resolver.cached("cpp") is None


def test_parallel_probing_still_prefers_the_newest_commit():
    # The newest qualifying commit answers last.
    history = FakeHistory.with_abis(
        [15, 14, 14, 13, 13],
        delays={"c1": 0.2, "c2": 0.0, "c3": 0.0, "c4": 0.0},
    )
    resolver = RevisionResolver(14, SearchBounds(initial_depth=5), probe_workers=4)

    assert resolver.resolve("tsx", history, PATH).commit == "c1"


def test_search_bounds_must_be_positive():
    with pytest.raises(ValueError):
        SearchBounds(initial_depth=0)
    assert SearchBounds(initial_depth=5, depth_step=3).depth_for_attempt(2) == 11
