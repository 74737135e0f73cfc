"""
Version selection policy tests.
Tests candidate selection, ceilings, pins, tags, filters and durations.
"""

from datetime import datetime, timedelta, timezone

import pytest

from src.dep_updater.error_handling import ConfigError
from src.dep_updater.policy import (
    MINOR_SEMVERS,
    PATCH_SEMVERS,
    CandidateSet,
    GoCandidates,
    ResolutionFlags,
    ResolutionOptions,
    build_go_module_path,
    can_include,
    can_include_by_date,
    compile_matchers,
    extract_go_major,
    find_go_version,
    find_new_version,
    find_version,
    parse_duration,
    select_tag,
    to_matcher,
)


def make_candidates(versions, latest, timestamps=None):
    return CandidateSet(name="pkg", versions=versions, timestamps=timestamps, latest=latest)


class TestFindNewVersion:
    """Test choosing the new version for registry packages."""

    def test_exact_version_moves_to_latest(self):
        """Test that a pinned exact version moves to the registry latest."""
        candidates = make_candidates(
            ["6.0.0", "7.0.0", "7.5.0", "7.7.6", "8.0.0-beta.1"], latest="7.7.6"
        )

        assert find_new_version(candidates, "7.0.0", ResolutionFlags()) == "7.7.6"

    def test_major_update_from_tilde_range(self):
        """Test that a tilde range may cross a major boundary by default."""
        candidates = make_candidates(["6.0.0", "6.0.3", "7.7.6"], latest="7.7.6")

        assert find_new_version(candidates, "~6.0.0", ResolutionFlags()) == "7.7.6"

    def test_prerelease_to_newer_prerelease(self):
        """Test that a declared prerelease follows the most recently published prerelease."""
        candidates = make_candidates(
            ["3.2.1", "4.0.0-alpha.2", "4.0.0-beta.11", "5.0.0"],
            latest="5.0.0",
            timestamps={
                "3.2.1": "2019-03-01T00:00:00Z",
                "4.0.0-alpha.2": "2019-06-01T00:00:00Z",
                "5.0.0": "2019-08-01T00:00:00Z",
                "4.0.0-beta.11": "2019-09-01T00:00:00Z",
            },
        )

        assert find_new_version(candidates, "4.0.0-alpha.2", ResolutionFlags()) == "4.0.0-beta.11"
        greatest = ResolutionFlags(use_greatest=True)
        assert find_new_version(candidates, "4.0.0-alpha.2", greatest) == "5.0.0"

    def test_patch_ceiling(self):
        """Test that --patch keeps the update within the patch level."""
        candidates = make_candidates(["1.0.0", "1.0.1", "1.1.0", "2.0.0"], latest="2.0.0")
        flags = ResolutionFlags(semvers=PATCH_SEMVERS)

        assert find_new_version(candidates, "1.0.0", flags) == "1.0.1"

    def test_minor_ceiling(self):
        """Test that --minor allows minor but not major updates."""
        candidates = make_candidates(["1.0.0", "1.0.1", "1.1.0", "2.0.0"], latest="2.0.0")
        flags = ResolutionFlags(semvers=MINOR_SEMVERS)

        assert find_new_version(candidates, "1.0.0", flags) == "1.1.0"

    def test_downgrade_needs_opt_in(self):
        """Test that an older latest is only proposed with allow_downgrade."""
        candidates = make_candidates(["1.0.0", "1.5.0", "2.0.0"], latest="1.5.0")

        assert find_new_version(candidates, "2.0.0", ResolutionFlags()) is None
        assert find_new_version(candidates, "2.0.0", ResolutionFlags(allow_downgrade=True)) == "1.5.0"

    def test_pinned_range_bounds_the_result(self):
        """Test that a pin keeps the update inside the pinned range."""
        candidates = make_candidates(["1.0.0", "1.0.1", "1.1.0", "2.0.0"], latest="2.0.0")
        flags = ResolutionFlags(pinned_range="^1.0.0")

        assert find_new_version(candidates, "1.0.0", flags) == "1.1.0"

    def test_wildcard_and_alternatives_are_skipped(self):
        """Test that * and || ranges never update."""
        candidates = make_candidates(["1.0.0", "2.0.0"], latest="2.0.0")

        assert find_new_version(candidates, "*", ResolutionFlags()) is None
        assert find_new_version(candidates, "1.0.0 || 2.0.0", ResolutionFlags()) is None

    def test_prerelease_latest_is_ignored_by_default(self):
        """Test that a prerelease latest is not offered to a release range."""
        candidates = make_candidates(["1.0.0", "1.1.0", "2.0.0-rc.1"], latest="2.0.0-rc.1")

        assert find_new_version(candidates, "1.0.0", ResolutionFlags()) == "1.1.0"

    def test_resolution_is_repeatable(self):
        """Test that resolving the same input twice gives the same answer."""
        candidates = make_candidates(["1.0.0", "1.2.0", "2.0.0"], latest="2.0.0")
        flags = ResolutionFlags(use_greatest=True)

        first = find_new_version(candidates, "1.0.0", flags)
        second = find_new_version(candidates, "1.0.0", flags)

        assert first == second == "2.0.0"
        assert candidates.versions == ["1.0.0", "1.2.0", "2.0.0"]


class TestFindVersion:
    """Test the bounded candidate walk."""

    def test_latest_by_date(self):
        """Test that the most recently published candidate wins by default."""
        timestamps = {
            "1.0.0": "2023-01-01T00:00:00Z",
            "1.2.0": "2023-06-01T00:00:00Z",
            "1.1.5": "2023-09-01T00:00:00Z",
        }
        candidates = make_candidates(["1.0.0", "1.2.0", "1.1.5"], "1.1.5", timestamps)

        assert find_version(candidates, "1.0.0", ResolutionFlags()) == "1.1.5"
        assert find_version(candidates, "1.0.0", ResolutionFlags(use_greatest=True)) == "1.2.0"

    def test_uncoercible_range(self):
        """Test that a range without a version yields None."""
        candidates = make_candidates(["1.0.0"], "1.0.0")

        assert find_version(candidates, "latest", ResolutionFlags()) is None

    def test_release_only_skips_prereleases(self):
        """Test that release-only ignores prerelease candidates."""
        candidates = make_candidates(["1.0.0", "1.1.0-beta.1"], "1.1.0-beta.1")
        flags = ResolutionFlags(use_prerelease=True, use_release_only=True)

        assert find_version(candidates, "1.0.0", flags) == "1.0.0"


class TestGoSelection:
    """Test Go version selection and module paths."""

    def test_cross_major_candidate(self):
        """Test that a higher major found on the proxy is offered with its module path."""
        candidates = GoCandidates(
            name="example.com/mod/v3",
            new="5.0.0",
            new_path="example.com/mod/v5",
            same_major_new="3.1.0",
        )

        selection = find_go_version(candidates, "v3.0.0", ResolutionFlags())

        assert selection.version == "5.0.0"
        assert selection.new_path == "example.com/mod/v5"

    def test_minor_ceiling_falls_back_to_same_major(self):
        """Test that a ceiling excludes the cross-major candidate."""
        candidates = GoCandidates(
            name="example.com/mod/v3",
            new="5.0.0",
            new_path="example.com/mod/v5",
            same_major_new="3.1.0",
            same_major_time="2024-01-01T00:00:00Z",
        )

        selection = find_go_version(candidates, "v3.0.0", ResolutionFlags(semvers=MINOR_SEMVERS))

        assert selection.version == "3.1.0"
        assert selection.new_path is None
        assert selection.time == "2024-01-01T00:00:00Z"

    def test_pseudo_versions_are_never_offered(self):
        """Test that pseudo-versions are rejected."""
        candidates = GoCandidates(
            name="example.com/mod",
            new="1.2.1-0.20240101120000-abcdef123456",
            same_major_new="1.2.1-0.20240101120000-abcdef123456",
        )

        assert find_go_version(candidates, "v1.2.0", ResolutionFlags(use_prerelease=True)) is None

    def test_module_path_helpers(self):
        """Test major extraction and path building."""
        assert extract_go_major("example.com/mod") == 1
        assert extract_go_major("example.com/mod/v4") == 4
        assert build_go_module_path("example.com/mod/v4", 5) == "example.com/mod/v5"
        assert build_go_module_path("example.com/mod/v4", 1) == "example.com/mod"


class TestSelectTag:
    """Test tag selection for ref-pinned dependencies."""

    def test_latest_mode_takes_last_tag(self):
        """Test that latest mode takes the last listed tag."""
        tags = ["v1.0.0", "v2.0.0", "v1.5.0"]

        assert select_tag(tags, "v1.0.0", use_greatest=False) == "v1.5.0"

    def test_greatest_mode_takes_highest_tag(self):
        """Test that greatest mode takes the highest version."""
        tags = ["v1.0.0", "v2.0.0", "v1.5.0"]

        assert select_tag(tags, "v1.0.0", use_greatest=True) == "v2.0.0"

    def test_no_change(self):
        """Test that the current tag or an invalid ref gives no update."""
        assert select_tag(["v1.0.0"], "v1.0.0", use_greatest=False) is None
        assert select_tag(["v1.0.0"], "main", use_greatest=True) is None
        assert select_tag([], "v1.0.0", use_greatest=False) is None


class TestFilters:
    """Test include/exclude filtering and option matchers."""

    def test_runtime_engines_are_skipped(self):
        """Test that node/deno/bun engines and python are never checked."""
        assert not can_include("node", "npm", frozenset(), frozenset(), "engines")
        assert can_include("pnpm", "npm", frozenset(), frozenset(), "engines")
        assert not can_include("python", "pypi", frozenset(), frozenset(), "tool.poetry.dependencies")

    def test_include_and_exclude(self):
        """Test glob and regex patterns."""
        include = compile_matchers(["react*", "/^@types\\//"])
        exclude = compile_matchers(["react-dom"])

        assert can_include("react", "npm", include, exclude, "dependencies")
        assert can_include("@types/node", "npm", include, exclude, "dependencies")
        assert not can_include("react-dom", "npm", include, exclude, "dependencies")
        assert not can_include("lodash", "npm", include, exclude, "dependencies")

    def test_go_matches_without_major_suffix(self):
        """Test that Go patterns also match the path without /vN."""
        include = compile_matchers(["example.com/mod"])

        assert can_include("example.com/mod/v2", "go", include, frozenset(), "deps")

    def test_case_insensitive_cli_patterns(self):
        """Test that insensitive matchers ignore case."""
        options = ResolutionOptions(
            greatest=to_matcher(["React"], insensitive=True),
            patch=to_matcher(True),
        )

        flags = options.flags_for("react")

        assert flags.use_greatest
        assert flags.semvers == PATCH_SEMVERS
        assert not options.flags_for("vue").use_greatest

    def test_pins_override(self):
        """Test that explicit pins replace the configured ones."""
        options = ResolutionOptions(pin={"react": "^18"})

        assert options.flags_for("react").pinned_range == "^18"
        assert options.flags_for("react", pin={}).pinned_range is None


class TestDurations:
    """Test cooldown parsing and filtering."""

    @pytest.mark.parametrize(
        "value,expected",
        [("7", 7.0), ("2w", 14.0), ("12h", 0.5), ("1y", 365.0), ("3d", 3.0), (3, 3.0)],
    )
    def test_parse_duration(self, value, expected):
        """Test durations with and without units."""
        assert parse_duration(value) == pytest.approx(expected)

    def test_parse_duration_invalid(self):
        """Test that garbage raises ConfigError."""
        with pytest.raises(ConfigError):
            parse_duration("soon")

    def test_can_include_by_date(self):
        """Test the cooldown filter."""
        now = datetime(2024, 6, 15, tzinfo=timezone.utc)
        ten_days = (now - timedelta(days=10)).isoformat()
        three_days = (now - timedelta(days=3)).isoformat()

        assert can_include_by_date(ten_days, 7, now=now)
        assert not can_include_by_date(three_days, 7, now=now)
        assert can_include_by_date("", 7, now=now)
        assert can_include_by_date(three_days, 0, now=now)
        assert not can_include_by_date("not a date", 7, now=now)
