"""
Version selection policy.

Given a declared range, the versions a registry publishes and the flags in
effect for a dependency, decide which version (if any) to move to. The
functions here are pure: candidate data is never mutated, so resolving the
same input twice always gives the same answer.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional, Pattern, Union

from . import semver
from .error_handling import ConfigError

DEFAULT_SEMVERS: FrozenSet[str] = frozenset({"patch", "minor", "major"})
MINOR_SEMVERS: FrozenSet[str] = frozenset({"patch", "minor"})
PATCH_SEMVERS: FrozenSet[str] = frozenset({"patch"})

NON_PACKAGE_ENGINES = ("node", "deno", "bun")

GO_PSEUDO_VERSION_RE = re.compile(r"\d{14}-[0-9a-f]{12}$")
RANGE_PRERELEASE_RE = re.compile(r"[0-9]+\.[0-9]+\.[0-9]+-.+")
GO_MAJOR_SUFFIX_RE = re.compile(r"/v\d+$")
_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([a-z])$", re.IGNORECASE)
_DURATION_UNITS = {"y": 365, "m": 30, "w": 7, "d": 1, "h": 1 / 24, "s": 1 / 86400}

# True/False apply to every name, a set of patterns to matching names only
Matcher = Union[bool, FrozenSet[Pattern]]


@dataclass(frozen=True)
class ResolutionFlags:
    """Flags in effect for a single dependency."""

    use_greatest: bool = False
    use_prerelease: bool = False
    use_release_only: bool = False
    semvers: FrozenSet[str] = DEFAULT_SEMVERS
    allow_downgrade: bool = False
    pinned_range: Optional[str] = None


@dataclass
class ResolutionOptions:
    """Run-wide resolution settings, resolved per dependency name."""

    greatest: Matcher = False
    prerelease: Matcher = False
    release: Matcher = False
    patch: Matcher = False
    minor: Matcher = False
    allow_downgrade: Matcher = False
    pin: Dict[str, str] = field(default_factory=dict)

    def semvers_for(self, name: str) -> FrozenSet[str]:
        if matches_any(name, self.patch):
            return PATCH_SEMVERS
        if matches_any(name, self.minor):
            return MINOR_SEMVERS
        return DEFAULT_SEMVERS

    def flags_for(self, name: str, pin: Optional[Dict[str, str]] = None) -> ResolutionFlags:
        """
        Derive the flags for one dependency.

        Args:
            name: Dependency name matched against the option patterns
            pin: Pinned ranges to use instead of ``self.pin``

        Returns:
            ResolutionFlags: Immutable flags for this dependency
        """
        pins = self.pin if pin is None else pin
        return ResolutionFlags(
            use_greatest=matches_any(name, self.greatest),
            use_prerelease=matches_any(name, self.prerelease),
            use_release_only=matches_any(name, self.release),
            semvers=self.semvers_for(name),
            allow_downgrade=matches_any(name, self.allow_downgrade),
            pinned_range=pins.get(name),
        )


@dataclass(frozen=True)
class CandidateSet:
    """Normalized registry data for one dependency.

    ``timestamps`` drives latest-by-date selection and is None when the
    registry publishes no per-version time map. ``publish_dates`` is only
    used for reporting the age of the chosen version.
    """

    name: str
    versions: List[str]
    timestamps: Optional[Dict[str, str]] = None
    publish_dates: Dict[str, str] = field(default_factory=dict)
    latest: Optional[str] = None
    latest_original: Optional[str] = None


@dataclass(frozen=True)
class GoCandidates:
    """Result of a Go proxy or VCS lookup including the major-version search."""

    name: str
    new: str
    time: str = ""
    new_path: Optional[str] = None
    same_major_new: str = ""
    same_major_time: str = ""


@dataclass(frozen=True)
class GoSelection:
    version: str
    time: str = ""
    new_path: Optional[str] = None


def matches_any(name: str, patterns: Matcher) -> bool:
    """Test ``name`` against a matcher; booleans apply to every name."""
    if isinstance(patterns, bool):
        return patterns
    return any(pattern.search(name) for pattern in patterns)


def glob_to_regex(glob: str, insensitive: bool = False) -> Pattern:
    escaped = re.escape(glob).replace(r"\*", ".*")
    return re.compile(f"^{escaped}$", re.IGNORECASE if insensitive else 0)


def compile_matcher(value: str, insensitive: bool = False) -> Pattern:
    """Compile ``/regex/`` literally and anything else as a glob."""
    if len(value) > 2 and value.startswith("/") and value.endswith("/"):
        return re.compile(value[1:-1])
    return glob_to_regex(value, insensitive)


def compile_matchers(values: Optional[Iterable[str]], insensitive: bool = False) -> FrozenSet[Pattern]:
    return frozenset(compile_matcher(value, insensitive) for value in values or () if value)


def to_matcher(value: Union[bool, Iterable[str], None], insensitive: bool = False) -> Matcher:
    """Convert a CLI or config value into a matcher."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return compile_matchers(value, insensitive)


def is_prerelease(version: str) -> bool:
    parsed = semver.parse(version)
    return bool(parsed and parsed.prerelease)


def is_range_prerelease(declared_range: str) -> bool:
    # coerce drops prerelease tags so it cannot be used here
    return bool(RANGE_PRERELEASE_RE.search(declared_range))


def is_go_pseudo_version(version: str) -> bool:
    return bool(GO_PSEUDO_VERSION_RE.search(version))


def extract_go_major(module_path: str) -> int:
    match = re.search(r"/v(\d+)$", module_path)
    return int(match.group(1)) if match else 1


def build_go_module_path(module_path: str, major: int) -> str:
    """Module path for ``major``; majors 0 and 1 carry no ``/vN`` suffix."""
    base = GO_MAJOR_SUFFIX_RE.sub("", module_path)
    return base if major <= 1 else f"{base}/v{major}"


def _parse_timestamp(text: Optional[str]) -> Optional[float]:
    if not text or not isinstance(text, str):
        return None
    try:
        parsed = datetime.fromisoformat(text.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _allowed_semvers(semvers: FrozenSet[str], use_prerelease: bool) -> FrozenSet[str]:
    if not use_prerelease:
        return semvers
    allowed = set(semvers)
    allowed.add("prerelease")
    for kind in ("patch", "minor", "major"):
        if kind in semvers:
            allowed.add(f"pre{kind}")
    return frozenset(allowed)


def find_version(
    candidates: CandidateSet,
    declared_range: str,
    flags: ResolutionFlags,
) -> Optional[str]:
    """
    Pick the best candidate reachable from ``declared_range`` under ``flags``.

    The walk starts at the coerced declared version and only steps to a
    candidate whose release-type diff from the current best lies within the
    allowed ceiling. With timestamps and greatest mode off the most recently
    published candidate wins, otherwise the highest version does.

    Args:
        candidates: Registry data for the dependency
        declared_range: Normalized range from the manifest
        flags: Flags for this dependency

    Returns:
        Optional[str]: The best version, the coerced old version when nothing
        beats it, or None when the range cannot be coerced
    """
    old_version = semver.coerce_to_version(declared_range)
    if not old_version:
        return None

    use_prerelease = is_range_prerelease(declared_range) or flags.use_prerelease
    allowed = _allowed_semvers(flags.semvers, use_prerelease)
    by_date = candidates.timestamps is not None and not flags.use_greatest

    greatest_date = 0.0
    new_version = old_version

    for version in candidates.versions:
        parsed = semver.parse(version)
        if parsed is None:
            continue
        if parsed.prerelease and (not use_prerelease or flags.use_release_only):
            continue
        candidate = parsed.version

        if flags.pinned_range and not semver.satisfies(candidate, flags.pinned_range):
            continue

        release_type = semver.diff(new_version, candidate)
        if not release_type or release_type not in allowed:
            continue

        if by_date:
            date = _parse_timestamp(candidates.timestamps.get(version))
            if date is not None and date >= 0 and date > greatest_date:
                new_version = candidate
                greatest_date = date
        elif semver.gte(semver.coerce_to_version(candidate), new_version):
            new_version = candidate

    return new_version or None


def find_new_version(
    candidates: CandidateSet,
    declared_range: str,
    flags: ResolutionFlags,
) -> Optional[str]:
    """
    Decide the new version for an npm, JSR or PyPI dependency.

    In greatest mode this is ``find_version``. Otherwise the registry's own
    latest version is preferred unless a prerelease, ceiling, downgrade or
    pin rule says the bounded ``find_version`` result must be used instead.

    Returns:
        Optional[str]: New version, or None for no update
    """
    if declared_range == "*" or "||" in declared_range:
        return None

    version = find_version(candidates, declared_range, flags)
    if not version:
        return None

    if flags.use_greatest:
        return version

    latest = candidates.latest or ""
    old_version = semver.coerce_to_version(declared_range)
    old_is_pre = is_range_prerelease(declared_range)
    new_is_pre = is_prerelease(version)
    latest_is_pre = is_prerelease(latest)
    is_greater = semver.gt(version, old_version)
    use_pre = flags.use_prerelease
    use_rel = flags.use_release_only

    # update to a new prerelease
    if (not use_rel and use_pre) or (old_is_pre and new_is_pre):
        return version

    # downgrade from prerelease to release on release-only
    if use_rel and not is_greater and old_is_pre and not new_is_pre:
        return version

    # update from prerelease to release
    if old_is_pre and not new_is_pre and is_greater:
        return version

    # never downgrade from prerelease to release otherwise
    if old_is_pre and not new_is_pre and not is_greater:
        return None

    # latest is beyond the allowed ceiling
    release_type = semver.diff(old_version, latest)
    if release_type and release_type != "prerelease":
        base_type = release_type[3:] if release_type.startswith("pre") else release_type
        if base_type not in flags.semvers:
            return version

    # release-only never jumps to a prerelease latest
    if use_rel and latest_is_pre:
        return version

    # latest is older than what is declared
    if semver.lt(latest, old_version) and not latest_is_pre:
        return latest if flags.allow_downgrade else None

    # do not move from a release to a prerelease latest by default
    if not old_is_pre and latest_is_pre and not use_pre:
        return version

    if flags.pinned_range and not semver.satisfies(latest, flags.pinned_range):
        return version

    return candidates.latest_original or latest or None


def find_go_version(
    candidates: GoCandidates,
    declared_range: str,
    flags: ResolutionFlags,
) -> Optional[GoSelection]:
    """
    Decide the new version for a Go module.

    A cross-major candidate found by probing is tried first, then the
    same-major latest. Pseudo-versions are never offered.

    Args:
        candidates: Proxy or VCS lookup result
        declared_range: Declared version without the ``v`` prefix
        flags: Flags for this module

    Returns:
        Optional[GoSelection]: Version, its time and the new module path when
        the major changes, or None for no update
    """
    old_version = semver.coerce_to_version(declared_range)
    if not old_version:
        return None

    use_pre = flags.use_prerelease or is_range_prerelease(declared_range)

    def acceptable(version: str) -> bool:
        coerced = semver.coerce_to_version(version)
        if not coerced or is_go_pseudo_version(version):
            return False
        if is_prerelease(version) and (not use_pre or flags.use_release_only):
            return False
        release_type = semver.diff(old_version, coerced)
        return bool(release_type and release_type in flags.semvers)

    if candidates.new and acceptable(candidates.new):
        return GoSelection(candidates.new, candidates.time, candidates.new_path)

    if candidates.same_major_new and acceptable(candidates.same_major_new):
        return GoSelection(candidates.same_major_new, candidates.same_major_time, None)

    return None


def select_tag(tags: List[str], old_ref: str, use_greatest: bool) -> Optional[str]:
    """
    Choose a new tag for a ref-pinned dependency.

    Latest mode takes the last tag in ``tags``; greatest mode takes the
    highest valid semver tag. Either way the result must differ from
    ``old_ref``.
    """
    old_bare = semver.strip_v(old_ref)
    if not semver.valid(old_bare):
        return None

    if not use_greatest:
        if not tags:
            return None
        last_tag = tags[-1]
        last_bare = semver.strip_v(last_tag)
        if not semver.valid(last_bare):
            return None
        return last_tag if semver.neq(old_bare, last_bare) else None

    greatest_tag = old_ref
    greatest_bare = old_bare
    for tag in tags:
        bare = semver.strip_v(tag)
        if not semver.valid(bare):
            continue
        if semver.gt(bare, greatest_bare):
            greatest_tag = tag
            greatest_bare = bare

    return greatest_tag if semver.neq(old_bare, greatest_bare) else None


def can_include(
    name: str,
    kind: str,
    include: FrozenSet[Pattern],
    exclude: FrozenSet[Pattern],
    dep_type: str,
) -> bool:
    """
    Decide whether a dependency takes part in the run.

    Engines that are runtimes rather than packages and the PyPI ``python``
    entry are always skipped. Go modules also match on their name without
    the ``/vN`` suffix.
    """
    if dep_type == "engines" and name in NON_PACKAGE_ENGINES:
        return False
    if kind == "pypi" and name == "python":
        return False
    if not include and not exclude:
        return True

    base_name = GO_MAJOR_SUFFIX_RE.sub("", name) if kind == "go" else name
    for pattern in exclude:
        if pattern.search(name) or pattern.search(base_name):
            return False
    for pattern in include:
        if pattern.search(name) or pattern.search(base_name):
            return True
    return not include


def parse_duration(text: Union[str, float, int]) -> float:
    """
    Parse a cooldown duration into days.

    Accepts a plain number of days or a number followed by one of the units
    ``y``, ``m``, ``w``, ``d``, ``h`` or ``s``.

    Raises:
        ConfigError: If the value is not a valid duration
    """
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return float(text)

    value = str(text).strip()
    match = _DURATION_RE.match(value)
    if match:
        multiplier = _DURATION_UNITS.get(match.group(2).lower())
        if multiplier:
            return float(match.group(1)) * multiplier

    try:
        days = float(value)
    except ValueError:
        raise ConfigError(f"Invalid cooldown value: {text}") from None
    if not math.isfinite(days):
        raise ConfigError(f"Invalid cooldown value: {text}")
    return days


def can_include_by_date(
    date: Optional[str],
    cooldown_days: float,
    now: Optional[datetime] = None,
) -> bool:
    """True when ``date`` is at least ``cooldown_days`` old, or unknown."""
    if not date or not cooldown_days:
        return True
    published = _parse_timestamp(date)
    if published is None:
        return False
    current = (now or datetime.now(timezone.utc)).timestamp()
    return (current - published) / 86400 >= cooldown_days
