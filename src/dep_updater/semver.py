"""
Semantic version parsing, comparison and range matching.

Implements the subset of node-semver behaviour needed to pick upgrade
targets: strict ``major.minor.patch[-pre][+build]`` parsing, loose coercion,
ordering, release-type diffs and ``satisfies`` over ranges using the
``^``, ``~``, hyphen, x-range and ``||`` shorthands.

All functions are pure. Parse, coerce and range results are memoized in a
``SemverCache``; pass your own instance for isolation, otherwise the module
default (registered with the global cache manager) is used.
"""

import re
from dataclasses import dataclass
from functools import total_ordering
from typing import List, Optional, Tuple, Union

from .cache_manager import MemoCache, get_cache_manager

SEMVER_RE = re.compile(
    r"^v?(\d+)\.(\d+)\.(\d+)"
    r"(?:-([a-zA-Z0-9._-]+(?:\.[a-zA-Z0-9._-]+)*))?"
    r"(?:\+[a-zA-Z0-9._-]+)?$"
)
COERCE_RE = re.compile(r"(?:^|[^.\d])(\d+)(?:\.(\d+))?(?:\.(\d+))?")
COMPARATOR_RE = re.compile(
    r"^(>=|<=|>|<|=)?\s*v?(\d+)(?:\.(\d+))?(?:\.(\d+))?"
    r"((?:-[a-zA-Z0-9._-]+(?:\.[a-zA-Z0-9._-]+)*)?)$"
)

_TILDE_RE = re.compile(r"~\s*v?(\d+)(?:\.(\d+))?(?:\.(\d+))?((?:-[a-zA-Z0-9._-]+)?)")
_CARET_RE = re.compile(r"\^\s*v?(\d+)(?:\.(\d+))?(?:\.(\d+))?((?:-[a-zA-Z0-9._-]+)?)")
_HYPHEN_RE = re.compile(
    r"v?(\d+)(?:\.(\d+))?(?:\.(\d+))?((?:-[a-zA-Z0-9._-]+)?)"
    r"\s+-\s+"
    r"v?(\d+)(?:\.(\d+))?(?:\.(\d+))?((?:-[a-zA-Z0-9._-]+)?)"
)
_WILDCARD_RE = re.compile(r"^\s*[*xX]\s*$")
_X_MAJOR_RE = re.compile(r"v?(\d+)\.[xX*](?:\.[xX*])?")
_X_MINOR_RE = re.compile(r"v?(\d+)\.(\d+)\.[xX*]")
_BARE_MINOR_RE = re.compile(r"(^|[\s|])(\d+)\.(\d+)(?=\s|$)")
_BARE_MAJOR_RE = re.compile(r"(^|[\s|])(\d+)(?=\s|$)")
_EXACT_RE = re.compile(
    r"(^|[\s])v?(\d+\.\d+\.\d+(?:-[a-zA-Z0-9._-]+(?:\.[a-zA-Z0-9._-]+)*)?)\b"
)
_OPERATOR_SPACE_RE = re.compile(r"(>=|<=|>|<|=)\s+")
_TRAILING_OPERATOR_RE = re.compile(r"[<>=]$")

Identifier = Union[int, str]


@total_ordering
@dataclass(frozen=True)
class Version:
    """A parsed semantic version. Build metadata is not retained."""

    major: int
    minor: int
    patch: int
    prerelease: Tuple[Identifier, ...] = ()

    @property
    def version(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += "-" + ".".join(str(part) for part in self.prerelease)
        return text

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    def __str__(self) -> str:
        return self.version

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return compare_versions(self, other) < 0


@dataclass(frozen=True)
class Comparator:
    """A single ``<op><version>`` test inside a range group."""

    op: str
    version: Version

    def test(self, candidate: Version) -> bool:
        cmp = compare_versions(candidate, self.version)
        if self.op == ">=":
            return cmp >= 0
        if self.op == "<=":
            return cmp <= 0
        if self.op == ">":
            return cmp > 0
        if self.op == "<":
            return cmp < 0
        return cmp == 0


RangeGroups = Tuple[Tuple[Comparator, ...], ...]


class SemverCache:
    """Memo tables for parse, coerce and range expansion, keyed by input text."""

    def __init__(
        self,
        parsed: Optional[MemoCache] = None,
        coerced: Optional[MemoCache] = None,
        ranges: Optional[MemoCache] = None,
    ):
        self.parsed = parsed if parsed is not None else MemoCache("semver.parse")
        self.coerced = coerced if coerced is not None else MemoCache("semver.coerce")
        self.ranges = ranges if ranges is not None else MemoCache("semver.range")

    def clear(self) -> None:
        self.parsed.clear()
        self.coerced.clear()
        self.ranges.clear()


_default_cache: Optional[SemverCache] = None


def get_default_cache() -> SemverCache:
    """Get the process-wide cache, registered with the global cache manager."""
    global _default_cache
    if _default_cache is None:
        manager = get_cache_manager()
        _default_cache = SemverCache(
            manager.get_cache("semver.parse"),
            manager.get_cache("semver.coerce"),
            manager.get_cache("semver.range"),
        )
    return _default_cache


def _compare_identifiers(a: Identifier, b: Identifier) -> int:
    a_num = isinstance(a, int)
    b_num = isinstance(b, int)
    if a_num and b_num:
        return (a > b) - (a < b)
    if a_num:
        return -1
    if b_num:
        return 1
    return (a > b) - (a < b)


def _compare_main(a: Version, b: Version) -> int:
    left = (a.major, a.minor, a.patch)
    right = (b.major, b.minor, b.patch)
    return (left > right) - (left < right)


def compare_versions(a: Version, b: Version) -> int:
    """Total order over parsed versions, returning -1, 0 or 1."""
    main = _compare_main(a, b)
    if main:
        return main
    if not a.prerelease and not b.prerelease:
        return 0
    # a release outranks any prerelease of the same triple
    if a.prerelease and not b.prerelease:
        return -1
    if not a.prerelease and b.prerelease:
        return 1
    for index in range(max(len(a.prerelease), len(b.prerelease))):
        if index >= len(a.prerelease):
            return -1
        if index >= len(b.prerelease):
            return 1
        cmp = _compare_identifiers(a.prerelease[index], b.prerelease[index])
        if cmp:
            return cmp
    return 0


def _parse_uncached(text: str) -> Optional[Version]:
    match = SEMVER_RE.match(text.strip())
    if not match:
        return None
    prerelease: Tuple[Identifier, ...] = ()
    if match.group(4):
        prerelease = tuple(
            int(part) if part.isdigit() else part
            for part in match.group(4).split(".")
        )
    return Version(
        int(match.group(1)), int(match.group(2)), int(match.group(3)), prerelease
    )


def parse(text: str, cache: Optional[SemverCache] = None) -> Optional[Version]:
    """
    Parse a strict semantic version.

    Args:
        text: Version text, optionally prefixed with ``v``
        cache: Memo tables to use instead of the module default

    Returns:
        Optional[Version]: The parsed version, or None if ``text`` is not valid
    """
    if isinstance(text, Version):
        return text
    if not isinstance(text, str):
        return None
    cache = cache or get_default_cache()
    return cache.parsed.get_or_compute(text, lambda: _parse_uncached(text))


def valid(text: str, cache: Optional[SemverCache] = None) -> Optional[str]:
    """Return the normalized version string, or None if ``text`` is invalid."""
    parsed = parse(text, cache)
    return parsed.version if parsed else None


def _coerce_uncached(text: str) -> Optional[Version]:
    match = COERCE_RE.search(text)
    if not match:
        return None
    return Version(
        int(match.group(1)),
        int(match.group(2) or 0),
        int(match.group(3) or 0),
    )


def coerce(text: str, cache: Optional[SemverCache] = None) -> Optional[Version]:
    """
    Loosely extract a ``major.minor.patch`` version from arbitrary text.

    The first numeric run not preceded by a dot or digit is taken and missing
    components default to zero, so ``"6.0"`` becomes ``6.0.0``, ``"v2"``
    becomes ``2.0.0`` and ``"^1.2"`` becomes ``1.2.0``. Prerelease tags are
    dropped.
    """
    if not isinstance(text, str):
        return None
    cache = cache or get_default_cache()
    return cache.coerced.get_or_compute(text, lambda: _coerce_uncached(text))


def coerce_to_version(text: str, cache: Optional[SemverCache] = None) -> str:
    """Coerce to a version string, returning an empty string on failure."""
    coerced = coerce(text, cache)
    return coerced.version if coerced else ""


def strip_v(text: str) -> str:
    return text[1:] if text.startswith("v") else text


def compare(a, b, cache: Optional[SemverCache] = None) -> int:
    """
    Compare two versions.

    Args:
        a: Version or version text
        b: Version or version text
        cache: Optional memo tables

    Returns:
        int: -1, 0 or 1

    Raises:
        ValueError: If either side is not a valid version
    """
    left = parse(a, cache)
    right = parse(b, cache)
    if left is None:
        raise ValueError(f"Invalid version: {a!r}")
    if right is None:
        raise ValueError(f"Invalid version: {b!r}")
    return compare_versions(left, right)


def diff(a, b, cache: Optional[SemverCache] = None) -> Optional[str]:
    """
    Classify the release type between two versions.

    Returns one of ``major``, ``minor``, ``patch``, ``premajor``,
    ``preminor``, ``prepatch``, ``prerelease`` or None when the versions are
    equal or invalid. A move from a prerelease to a release is charged as a
    real bump so it can be bounded by patch/minor ceilings.
    """
    left = parse(a, cache)
    right = parse(b, cache)
    if left is None or right is None:
        return None
    if left.version == right.version:
        return None

    if compare_versions(left, right) > 0:
        high, low = left, right
    else:
        high, low = right, left

    if low.prerelease and not high.prerelease:
        if not low.patch and not low.minor:
            return "major"
        if _compare_main(low, high) == 0:
            if low.minor and not low.patch:
                return "minor"
            return "patch"

    prefix = "pre" if high.prerelease else ""
    if left.major != right.major:
        return f"{prefix}major"
    if left.minor != right.minor:
        return f"{prefix}minor"
    if left.patch != right.patch:
        return f"{prefix}patch"
    return "prerelease"


def gt(a, b, cache: Optional[SemverCache] = None) -> bool:
    left, right = parse(a, cache), parse(b, cache)
    if left is None or right is None:
        return False
    return compare_versions(left, right) > 0


def gte(a, b, cache: Optional[SemverCache] = None) -> bool:
    left, right = parse(a, cache), parse(b, cache)
    if left is None or right is None:
        return False
    return compare_versions(left, right) >= 0


def lt(a, b, cache: Optional[SemverCache] = None) -> bool:
    left, right = parse(a, cache), parse(b, cache)
    if left is None or right is None:
        return False
    return compare_versions(left, right) < 0


def neq(a, b, cache: Optional[SemverCache] = None) -> bool:
    """True when the versions differ; invalid input counts as different."""
    left, right = parse(a, cache), parse(b, cache)
    if left is None or right is None:
        return True
    return compare_versions(left, right) != 0


def _upper_bound(major: int, minor: int, patch: int) -> str:
    # "-0" makes the exclusive bound sort below every prerelease of that triple
    return f"{major}.{minor}.{patch}-0"


def expand_hyphen(text: str) -> str:
    """``1.2.3 - 2.3`` becomes ``>=1.2.3 <2.4.0-0``; a full upper bound is inclusive."""

    def replace(match: "re.Match") -> str:
        a_major, a_minor, a_patch, a_pre, b_major, b_minor, b_patch, b_pre = (
            match.groups()
        )
        lower = f">={int(a_major)}.{int(a_minor or 0)}.{int(a_patch or 0)}{a_pre or ''}"
        to_major = int(b_major)
        if b_patch is not None:
            upper = f"<={to_major}.{int(b_minor)}.{int(b_patch)}{b_pre or ''}"
        elif b_minor is not None:
            upper = f"<{_upper_bound(to_major, int(b_minor) + 1, 0)}"
        else:
            upper = f"<{_upper_bound(to_major + 1, 0, 0)}"
        return f"{lower} {upper}"

    return _HYPHEN_RE.sub(replace, text)


def expand_caret(text: str) -> str:
    """Expand ``^`` ranges, which allow changes that keep the left-most non-zero part."""

    def replace(match: "re.Match") -> str:
        major, minor, patch, pre = match.groups()
        major_num = int(major)
        pre = pre or ""
        if minor is None:
            return f">={major_num}.0.0 <{_upper_bound(major_num + 1, 0, 0)}"
        minor_num = int(minor)
        if patch is None:
            if major_num == 0:
                return f">={major_num}.{minor_num}.0 <{_upper_bound(0, minor_num + 1, 0)}"
            return f">={major_num}.{minor_num}.0 <{_upper_bound(major_num + 1, 0, 0)}"
        patch_num = int(patch)
        lower = f">={major_num}.{minor_num}.{patch_num}{pre}"
        if major_num == 0:
            if minor_num == 0:
                return f"{lower} <{_upper_bound(0, 0, patch_num + 1)}"
            return f"{lower} <{_upper_bound(0, minor_num + 1, 0)}"
        return f"{lower} <{_upper_bound(major_num + 1, 0, 0)}"

    return _CARET_RE.sub(replace, text)


def expand_tilde(text: str) -> str:
    """Expand ``~`` ranges, which allow patch-level changes (minor when only major is given)."""

    def replace(match: "re.Match") -> str:
        major, minor, patch, pre = match.groups()
        major_num = int(major)
        if minor is None:
            return f">={major_num}.0.0 <{_upper_bound(major_num + 1, 0, 0)}"
        minor_num = int(minor)
        patch_num = int(patch) if patch is not None else 0
        return (
            f">={major_num}.{minor_num}.{patch_num}{pre or ''} "
            f"<{_upper_bound(major_num, minor_num + 1, 0)}"
        )

    return _TILDE_RE.sub(replace, text)


def expand_x_ranges(text: str) -> str:
    """Expand ``*``, ``1.x``, ``1.2.x`` and bare partials like ``1`` or ``1.2``."""
    if _WILDCARD_RE.match(text):
        return ">=0.0.0"

    def replace_major(match: "re.Match") -> str:
        major = int(match.group(1))
        return f">={major}.0.0 <{_upper_bound(major + 1, 0, 0)}"

    def replace_minor(match: "re.Match") -> str:
        major, minor = int(match.group(1)), int(match.group(2))
        return f">={major}.{minor}.0 <{_upper_bound(major, minor + 1, 0)}"

    def preceded_by_operator(match: "re.Match") -> bool:
        return bool(_TRAILING_OPERATOR_RE.search(match.string[: match.start()].rstrip()))

    def replace_bare_minor(match: "re.Match") -> str:
        if preceded_by_operator(match):
            return match.group(0)
        prefix, major, minor = match.group(1), int(match.group(2)), int(match.group(3))
        return f"{prefix}>={major}.{minor}.0 <{_upper_bound(major, minor + 1, 0)}"

    def replace_bare_major(match: "re.Match") -> str:
        if preceded_by_operator(match):
            return match.group(0)
        prefix, major = match.group(1), int(match.group(2))
        return f"{prefix}>={major}.0.0 <{_upper_bound(major + 1, 0, 0)}"

    text = _X_MAJOR_RE.sub(replace_major, text)
    text = _X_MINOR_RE.sub(replace_minor, text)
    text = _BARE_MINOR_RE.sub(replace_bare_minor, text)
    text = _BARE_MAJOR_RE.sub(replace_bare_major, text)
    return text


def _parse_comparator(token: str, cache: Optional[SemverCache]) -> Optional[Comparator]:
    match = COMPARATOR_RE.match(token.strip())
    if not match:
        return None
    op, major, minor, patch, pre = match.groups()
    version = parse(f"{major}.{minor or 0}.{patch or 0}{pre or ''}", cache)
    if version is None:
        return None
    return Comparator(op or "=", version)


def _parse_range_uncached(text: str, cache: Optional[SemverCache]) -> Optional[RangeGroups]:
    groups: List[Tuple[Comparator, ...]] = []
    for group in (part.strip() for part in text.split("||")):
        if not group:
            # an empty alternative matches everything
            groups.append(())
            continue

        # order matters: hyphen, caret, tilde, then x-ranges
        group = expand_hyphen(group)
        group = expand_caret(group)
        group = expand_tilde(group)
        group = expand_x_ranges(group)
        group = _EXACT_RE.sub(lambda m: f"{m.group(1)}={m.group(0).strip()}", group)
        group = _OPERATOR_SPACE_RE.sub(r"\1", group)

        comparators = []
        for token in group.split():
            comparator = _parse_comparator(token, cache)
            if comparator is None:
                return None
            comparators.append(comparator)
        if not comparators:
            return None
        groups.append(tuple(comparators))
    return tuple(groups) if groups else None


def parse_range(text: str, cache: Optional[SemverCache] = None) -> Optional[RangeGroups]:
    """
    Expand and tokenize a range into OR'd groups of AND'd comparators.

    Returns:
        Optional[RangeGroups]: Comparator groups, or None if ``text`` is not a range
    """
    if not isinstance(text, str):
        return None
    memo = cache or get_default_cache()
    return memo.ranges.get_or_compute(text, lambda: _parse_range_uncached(text, cache))


def _test_group(version: Version, comparators: Tuple[Comparator, ...]) -> bool:
    if not all(comparator.test(version) for comparator in comparators):
        return False
    if version.prerelease:
        # prereleases only match when the range opts in on the same triple
        return any(
            comparator.version.prerelease
            and _compare_main(comparator.version, version) == 0
            for comparator in comparators
        )
    return True


def satisfies(version, range_text: str, cache: Optional[SemverCache] = None) -> bool:
    """Test whether ``version`` matches any group of ``range_text``."""
    parsed = parse(version, cache)
    if parsed is None:
        return False
    groups = parse_range(range_text, cache)
    if groups is None:
        return False
    for comparators in groups:
        if not comparators or _test_group(parsed, comparators):
            return True
    return False


def valid_range(text: str, cache: Optional[SemverCache] = None) -> Optional[str]:
    """Return ``text`` unchanged when it parses as a range, otherwise None."""
    return text if parse_range(text, cache) is not None else None
