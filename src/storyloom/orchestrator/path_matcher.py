"""Reservation overlap matching.

Reservations are literal paths or glob patterns. Two entries conflict
when, after separators are normalised to ``/``, they are equal or either
one matches the other read as a pattern. Matching is tried in both
directions because either side may be the pattern.

Patterns follow minimatch-style glob rules through :mod:`wcmatch.glob`:
``*`` and ``?`` stay within one directory level, ``**`` spans any
number of levels (``src/**/*.ts`` covers ``src/app.ts`` and
``src/a/b.ts``) and ``{a,b}`` braces expand. Matching is case-sensitive
and uses ``/`` on every platform.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from wcmatch import glob

from storyloom.exceptions import InvalidPatternError

GLOB_FLAGS = glob.GLOBSTAR | glob.BRACE | glob.CASE | glob.FORCEUNIX


def normalise_path(path: str) -> str:
    """Normalise a reservation entry for comparison.

    Converts backslashes to forward slashes, strips surrounding
    whitespace and a leading ``./``.

    Args:
        path: Raw path or pattern.

    Returns:
        Normalised path string.
    """
    normalised = path.strip().replace("\\", "/")
    while normalised.startswith("./"):
        normalised = normalised[2:]
    return normalised


def validate_patterns(patterns: Iterable[str]) -> list[str]:
    """Normalise reservation entries and reject unusable ones.

    Duplicates are dropped while keeping first-seen order.

    Args:
        patterns: Raw paths or glob patterns.

    Returns:
        Normalised entries in their original order.

    Raises:
        InvalidPatternError: If an entry is blank or contains a NUL byte.
    """
    result: list[str] = []
    for raw in patterns:
        if "\x00" in raw:
            raise InvalidPatternError(f"Reservation contains a NUL byte: {raw!r}")
        path = normalise_path(raw)
        if not path or path == ".":
            raise InvalidPatternError(f"Empty reservation pattern: {raw!r}")
        if path not in result:
            result.append(path)
    return result


def _matches(path: str, pattern: str) -> bool:
    return glob.globmatch(path, pattern, flags=GLOB_FLAGS)


def paths_conflict(first: str, second: str) -> bool:
    """Return True if two reservation entries overlap.

    Args:
        first: Path or glob pattern.
        second: Path or glob pattern.
    """
    a = normalise_path(first)
    b = normalise_path(second)
    if not a or not b:
        return False
    return a == b or _matches(a, b) or _matches(b, a)


def overlaps(paths_a: Sequence[str], paths_b: Sequence[str]) -> list[str]:
    """Find the entries of ``paths_a`` that conflict with any of ``paths_b``.

    Conflict existence is symmetric: ``overlaps(a, b)`` is empty exactly
    when ``overlaps(b, a)`` is. The report itself is indexed by
    ``paths_a`` and keeps its original order and spelling.

    Args:
        paths_a: Reservations being checked.
        paths_b: Reservations already held.

    Returns:
        Entries of ``paths_a`` that overlap ``paths_b``; empty when either
        side is empty.
    """
    if not paths_a or not paths_b:
        return []
    return [a for a in paths_a if any(paths_conflict(a, b) for b in paths_b)]


def matching_patterns(path: str, patterns: Iterable[str]) -> list[str]:
    """Return the patterns in ``patterns`` that overlap ``path``."""
    return [p for p in patterns if paths_conflict(path, p)]
