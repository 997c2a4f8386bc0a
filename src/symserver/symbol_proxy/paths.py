"""Canonical symbol paths and the cache keys derived from them.

``symsrv.dll`` and ``symstore.exe`` disagree on the case of a given symbol
file path, some clients send ``+`` where they mean a space, and some apps ship
renamed Electron binaries. S3 keys are case-sensitive and were uploaded in
lowercase, so every incoming path is folded into one canonical form before it
is used either upstream or as a cache key.
"""

from __future__ import annotations

import hashlib
import re
from typing import Iterable, Sequence

CANONICAL_APP = "electron"
DEFAULT_APP_ALIASES: tuple[str, ...] = ("slack",)

# Windows build roots leaked into symbol paths, e.g. "/c:/projects/src/out/default/".
BUILD_PATH_REPLACEMENTS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?<=/)[a-z](?::|%3a)/(?:[^/]+/)*?out/[^/]+/"), ""),
)

_ENCODED_PLUS = "%2b"
_ENCODED_SPACE = "%20"


def _alias_replacements(aliases: Iterable[str]) -> list[tuple[re.Pattern[str], str]]:
    # Matches "/{app}/", "/{app}%20" and "/{app}." only, so an app name that
    # happens to appear inside a hash is left alone. The terminator is a
    # lookahead so "/slack/slack/" rewrites both segments in one pass.
    replacements: list[tuple[re.Pattern[str], str]] = []
    for app_name in aliases:
        name = re.escape(app_name.lower())
        replacements.append((re.compile(f"/{name}(?=/|%20|\\.)"), f"/{CANONICAL_APP}"))
    return replacements


def normalize_request_path(
    raw_path: str,
    path_prefix: str = "",
    aliases: Sequence[str] = DEFAULT_APP_ALIASES,
) -> str:
    """Return the upstream path for ``raw_path``.

    ``raw_path`` must still be percent-encoded. The steps run in a fixed
    order: lowercase, ``+``/``%2b`` to ``%20``, app alias rewrites, build root
    stripping, then the storage prefix is prepended.
    """
    path = raw_path.lower()
    path = path.replace(_ENCODED_PLUS, _ENCODED_SPACE).replace("+", _ENCODED_SPACE)

    for pattern, replacement in _alias_replacements(aliases):
        path = pattern.sub(replacement, path)

    for pattern, replacement in BUILD_PATH_REPLACEMENTS:
        path = pattern.sub(replacement, path)

    return f"{path_prefix or ''}{path}"


def derive_cache_key(canonical_path: str) -> str:
    """Hex SHA-256 of the canonical path; safe as a file name."""
    return hashlib.sha256(canonical_path.encode("utf-8")).hexdigest().lower()


def cache_key_for(
    raw_path: str,
    path_prefix: str = "",
    aliases: Sequence[str] = DEFAULT_APP_ALIASES,
) -> str:
    return derive_cache_key(normalize_request_path(raw_path, path_prefix, aliases))
