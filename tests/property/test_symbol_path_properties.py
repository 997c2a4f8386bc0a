"""Property-based tests for path normalization and cache keys."""

from __future__ import annotations

from hypothesis import given, settings, strategies as st

from symserver.symbol_proxy.paths import derive_cache_key, normalize_request_path

SEGMENT_ALPHABET = st.sampled_from(list("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789._-:"))
segments = st.one_of(
    st.text(SEGMENT_ALPHABET, min_size=1, max_size=12),
    st.sampled_from(["slack", "Slack.exe.pdb", "slack%20helper.pdb", "out", "Default", "c:", "c%3a", "%20"]),
)
paths = st.lists(segments, min_size=1, max_size=8).map(lambda parts: "/" + "/".join(parts))


@given(paths, st.lists(st.sampled_from(["slack", "teams", "discord"]), max_size=3, unique=True))
def test_normalization_is_idempotent_without_plus(raw: str, aliases: list[str]) -> None:
    once = normalize_request_path(raw, "", aliases)
    assert normalize_request_path(once, "", aliases) == once


@given(paths)
def test_normalized_path_is_lowercase(raw: str) -> None:
    canonical = normalize_request_path(raw, "", ["slack"])
    assert canonical == canonical.lower()
    assert "+" not in canonical
    assert "%2b" not in canonical


@given(paths)
@settings(max_examples=50)
def test_alias_free_paths_only_change_case(raw: str) -> None:
    if "slack" in raw.lower() or ":" in raw or "%3a" in raw.lower():
        return
    assert normalize_request_path(raw, "", ["slack"]) == raw.lower()


def test_distinct_paths_yield_distinct_keys() -> None:
    corpus = {
        f"/lib{index % 97}.pdb/{index:032x}{index % 7}/lib{index % 97}.pdb"
        for index in range(20_000)
    }
    keys = {derive_cache_key(path) for path in corpus}
    assert len(keys) == len(corpus)
