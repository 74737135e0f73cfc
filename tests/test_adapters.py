"""
Ecosystem adapter tests.
Tests info URLs, tag selection and resolution for actions, docker and URL dependencies.
"""

import pytest

from src.dep_updater.adapters import (
    ActionsAdapter,
    DockerAdapter,
    NpmAdapter,
    PypiAdapter,
    ResolutionContext,
    find_docker_version,
    format_action_version,
    get_adapter,
    get_docker_info_url,
    get_go_info_url,
    get_info_url,
    get_pypi_info_url,
    resolve_package_json_url,
)
from src.dep_updater.dependency import Dependency
from src.dep_updater.policy import DEFAULT_SEMVERS, MINOR_SEMVERS, ResolutionFlags
from src.dep_updater.registry_clients import RegistrySession

CHECKOUT_TAGS = "https://api.github.com/repos/actions/checkout/tags?per_page=100"


def make_context(session, network, temp_dir):
    return ResolutionContext(session=session, network=network, project_dir=temp_dir, env={})


def action_dependency(name, ref, is_hash=False):
    owner, repo = name.split("/")
    return Dependency(
        "actions",
        name,
        ref,
        extra={"host": None, "owner": owner, "repo": repo, "is_hash": is_hash},
    )


class TestInfoUrls:
    """Test upstream URLs shown next to updates."""

    def test_resolve_package_json_url(self):
        """Test normalizing repository values."""
        assert resolve_package_json_url("git+https://github.com/user/repo.git") == (
            "https://github.com/user/repo"
        )
        assert resolve_package_json_url("user/repo") == "https://github.com/user/repo"
        assert resolve_package_json_url("gitlab:user/repo") == "https://gitlab.com/user/repo"

    def test_repository_directory(self):
        """Test that monorepo packages link into their directory."""
        package = {
            "repository": {
                "type": "git",
                "url": "git+https://github.com/facebook/react.git",
                "directory": "packages/react",
            }
        }

        assert get_info_url(package, "https://registry.npmjs.org", "react") == (
            "https://github.com/facebook/react/tree/HEAD/packages/react"
        )

    def test_bitbucket_directory(self):
        """Test that Bitbucket uses its own tree path."""
        package = {"repository": {"url": "https://bitbucket.org/u/r", "directory": "pkg"}}

        assert get_info_url(package, None, "r") == "https://bitbucket.org/u/r/src/HEAD/pkg"

    def test_homepage_fallback(self):
        """Test the homepage when no repository is declared."""
        assert get_info_url({"homepage": "https://example.com"}, None, "pkg") == "https://example.com"
        assert get_info_url(None, None, "pkg") == ""

    def test_github_packages_registry(self):
        """Test packages hosted on GitHub Packages."""
        assert get_info_url({}, "https://npm.pkg.github.com", "@owner/pkg") == (
            "https://github.com/owner/pkg"
        )

    def test_go_info_url(self):
        """Test module URLs with major suffixes and subdirectories."""
        assert get_go_info_url("github.com/user/repo/v2") == "https://github.com/user/repo"
        assert get_go_info_url("github.com/user/repo/sub/pkg/v3") == (
            "https://github.com/user/repo/tree/HEAD/sub/pkg"
        )

    def test_docker_info_url(self):
        """Test official and namespaced images."""
        assert get_docker_info_url("library", "node") == "https://hub.docker.com/_/node"
        assert get_docker_info_url("bitnami", "redis") == "https://hub.docker.com/r/bitnami/redis"

    def test_pypi_info_url(self):
        """Test project URLs and the PyPI page fallback."""
        info = {"project_urls": {"Source": "https://github.com/encode/httpx"}}

        assert get_pypi_info_url(info, "httpx") == "https://github.com/encode/httpx"
        assert get_pypi_info_url({}, "httpx") == "https://pypi.org/project/httpx/"


class TestDockerVersions:
    """Test docker tag selection."""

    TAGS = {
        "18.19-alpine": "2023-01-01T00:00:00Z",
        "18.20-alpine": "2023-06-01T00:00:00Z",
        "20.11-alpine": "2024-01-01T00:00:00Z",
        "21.0-alpine": "2024-03-01T00:00:00Z",
        "22.0": "2024-05-01T00:00:00Z",
    }

    def test_same_suffix_highest_tag(self):
        """Test that only tags with the same suffix are considered."""
        assert find_docker_version(self.TAGS, "18.19-alpine", DEFAULT_SEMVERS) == (
            "21.0-alpine",
            "2024-03-01T00:00:00Z",
        )

    def test_minor_ceiling(self):
        """Test that a minor ceiling stays within the major."""
        assert find_docker_version(self.TAGS, "18.19-alpine", MINOR_SEMVERS) == (
            "18.20-alpine",
            "2023-06-01T00:00:00Z",
        )

    def test_no_newer_tag(self):
        """Test that the newest tag yields no update."""
        assert find_docker_version(self.TAGS, "21.0-alpine", DEFAULT_SEMVERS) is None
        assert find_docker_version(self.TAGS, "latest", DEFAULT_SEMVERS) is None

    def test_format_action_version(self):
        """Test shaping tags like the declared ref."""
        assert format_action_version("v5.1.0", "v4") == "v5"
        assert format_action_version("5.1.0", "4.0") == "5.1"
        assert format_action_version("v5.1.0", "v4.0.0") == "v5.1.0"

    @pytest.mark.asyncio
    async def test_docker_adapter(self, network, fake_registry, temp_dir):
        """Test resolving an image through Docker Hub."""
        fake_registry.add(
            "https://hub.test/v2/repositories/library/node/tags?page_size=100&ordering=last_updated&page=1",
            {
                "count": 2,
                "results": [
                    {"name": "18-alpine", "tag_last_pushed": "2023-01-01T00:00:00Z"},
                    {"name": "20-alpine", "tag_last_pushed": "2024-01-01T00:00:00Z"},
                ],
            },
        )
        dependency = Dependency(
            "docker", "node", "18-alpine", extra={"namespace": "library", "repo": "node"}
        )

        async with RegistrySession(network, transport=fake_registry.transport) as session:
            adapter = DockerAdapter(make_context(session, network, temp_dir))
            result = await adapter.resolve(dependency, ResolutionFlags())

        assert result.new == "20-alpine"
        assert result.date == "2024-01-01T00:00:00Z"
        assert result.info == "https://hub.docker.com/_/node"


class TestActionsAdapter:
    """Test resolving workflow action references."""

    def add_checkout_tags(self, fake_registry):
        fake_registry.add(
            CHECKOUT_TAGS,
            [
                {"name": "v5.0.0", "commit": {"sha": "e" * 40}},
                {"name": "v4.2.0", "commit": {"sha": "d" * 40}},
                {"name": "v4.0.0", "commit": {"sha": "c" * 40}},
            ],
        )
        fake_registry.add(
            "https://api.github.com/repos/actions/checkout/git/commits/" + "e" * 40,
            {"committer": {"date": "2025-01-01T00:00:00Z"}},
        )

    @pytest.mark.asyncio
    async def test_ref_pinned_actions_share_tag_fetch(self, network, fake_registry, temp_dir):
        """Test two refs of one action resolved from a single tag request."""
        self.add_checkout_tags(fake_registry)
        flags = ResolutionFlags()

        async with RegistrySession(network, transport=fake_registry.transport) as session:
            adapter = ActionsAdapter(make_context(session, network, temp_dir))
            major = await adapter.resolve(action_dependency("actions/checkout", "v4"), flags)
            full = await adapter.resolve(action_dependency("actions/checkout", "v4.0.0"), flags)

        assert major.new == "v5"
        assert full.new == "v5.0.0"
        assert major.date == "2025-01-01T00:00:00Z"
        assert major.info == "https://github.com/actions/checkout"
        assert len(fake_registry.requested(CHECKOUT_TAGS)) == 1

    @pytest.mark.asyncio
    async def test_hash_pinned_action(self, network, fake_registry, temp_dir):
        """Test that a commit pin moves to the commit of the newest tag."""
        self.add_checkout_tags(fake_registry)
        dependency = action_dependency("actions/checkout", "c" * 40, is_hash=True)

        async with RegistrySession(network, transport=fake_registry.transport) as session:
            adapter = ActionsAdapter(make_context(session, network, temp_dir))
            result = await adapter.resolve(dependency, ResolutionFlags())

        assert result.new == "e" * 40
        assert result.old_print == "v4.0.0"
        assert result.new_print == "v5.0.0"

    @pytest.mark.asyncio
    async def test_missing_repository_is_no_update(self, network, fake_registry, temp_dir):
        """Test that a failed tag lookup gives no update."""
        async with RegistrySession(network, transport=fake_registry.transport) as session:
            adapter = ActionsAdapter(make_context(session, network, temp_dir))
            result = await adapter.resolve(action_dependency("nobody/nothing", "v1"), ResolutionFlags())

        assert result is None


class TestNpmUrlDependencies:
    """Test GitHub URL dependencies in package.json."""

    @pytest.mark.asyncio
    async def test_tag_ref_update(self, network, fake_registry, temp_dir):
        """Test that a tag ref moves to the newest tag."""
        fake_registry.add(
            "https://api.github.com/repos/sindresorhus/got/tags?per_page=100",
            [{"name": "v11.0.0"}, {"name": "v10.0.0"}, {"name": "v9.6.0"}],
        )
        url = "https://github.com/sindresorhus/got/tarball/v9.6.0"
        dependency = Dependency(
            "dependencies",
            "got",
            url,
            url,
            extra={"source": "url", "user": "sindresorhus", "repo": "got", "ref": "v9.6.0"},
        )

        async with RegistrySession(network, transport=fake_registry.transport) as session:
            adapter = NpmAdapter(make_context(session, network, temp_dir))
            result = await adapter.resolve(dependency, ResolutionFlags())

        assert result.new == "https://github.com/sindresorhus/got/tarball/v11.0.0"
        assert result.old_print == "v9.6.0"
        assert result.new_print == "v11.0.0"


class TestPypiFormatting:
    """Test how new PyPI versions are written back."""

    def test_poetry_comparison_becomes_bare_version(self, network, temp_dir):
        """Test that only caret and tilde Poetry constraints keep their operator."""
        adapter = PypiAdapter(make_context(RegistrySession(network), network, temp_dir))
        poetry = "tool.poetry.dependencies"

        assert adapter.format_range(Dependency(poetry, "requests", ">=2.28.0", ">=2.28"), "2.32.3") == "2.32.3"
        assert adapter.format_range(Dependency(poetry, "requests", "^2.28.0", "^2.28"), "2.32.3") == "^2.32"


class TestAdapterFactory:
    """Test the adapter factory."""

    def test_unknown_kind(self, network, temp_dir):
        """Test that unknown ecosystems raise ValueError."""
        context = make_context(RegistrySession(network), network, temp_dir)

        assert isinstance(get_adapter("docker", context), DockerAdapter)
        with pytest.raises(ValueError):
            get_adapter("cargo", context)
