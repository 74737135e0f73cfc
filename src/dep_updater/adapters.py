"""
Ecosystem adapters.

An adapter turns one declared dependency into an ``UpdateResult``: it
fetches the registry payload through a registry client, normalizes it into
candidates, applies the selection policy and formats the new range the way
the manifest expects. It also knows how to patch its manifest's text.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from . import semver
from .auth import ForgeTokenResolver
from .cli_config import NetworkConfig
from .dependency import Dependency, UpdateResult
from .error_handling import FetchError, NoopResult, log_network_error, ErrorLevel
from .parsers import DOCKER_TAG_RE, HASH_RE, Manifest
from .policy import (
    DEFAULT_SEMVERS,
    GO_MAJOR_SUFFIX_RE,
    CandidateSet,
    GoCandidates,
    ResolutionFlags,
    find_go_version,
    find_new_version,
    find_version,
    select_tag,
)
from .registry_clients import (
    DockerHubClient,
    ForgeClient,
    GoProxyClient,
    JsrClient,
    NpmClient,
    PyPIClient,
    RegistryPayload,
    RegistrySession,
    TagEntry,
    get_registry_client,
)
from .rewriter import (
    format_version_precision,
    rewrite_go_imports,
    update_docker_refs,
    update_go_mod,
    update_npm_range,
    update_package_json,
    update_pyproject,
    update_workflow_file,
)
from .structured_logging import log_resolution

GITHUB_PACKAGES_REGISTRY = "https://npm.pkg.github.com"
PYPI_PROJECT_URL_KEYS = (
    "repository",
    "Repository",
    "repo",
    "Repo",
    "source",
    "Source",
    "source code",
    "Source code",
    "Source Code",
    "homepage",
    "Homepage",
)

# Extra files to write besides the manifest, e.g. Go sources with rewritten imports
ExtraWrites = Dict[Path, str]


@dataclass
class ResolutionContext:
    """Everything adapters of one project share during a run."""

    session: RegistrySession
    network: NetworkConfig
    project_dir: Path
    npmrc: Dict[str, Any] = field(default_factory=dict)
    registry: Optional[str] = None
    env: Optional[Mapping[str, str]] = None


def resolve_package_json_url(url: str) -> str:
    """Turn a ``repository`` value into a browsable https URL."""
    url = url.replace("git@", "", 1)
    url = re.sub(r"^.+?//", "https://", url, count=1)
    url = re.sub(r"\.git$", "", url)
    if re.match(r"^[a-z]+:[a-z0-9-]+/[a-z0-9-]+$", url):  # foo:user/repo
        return re.sub(r"^(.+?):", lambda m: f"https://{m.group(1)}.com/", url, count=1)
    if re.match(r"^[a-z0-9-]+/[a-z0-9-]+$", url):  # user/repo
        return f"https://github.com/{url}"
    return url


def get_sub_dir(url: str) -> str:
    return "src/HEAD" if url.startswith("https://bitbucket.org") else "tree/HEAD"


def get_info_url(package: Optional[Mapping[str, Any]], registry: Optional[str], name: str) -> str:
    """Upstream URL for an npm version document."""
    if registry == GITHUB_PACKAGES_REGISTRY:
        return f"https://github.com/{name.lstrip('@')}"

    package = package or {}
    repository = package.get("repository")
    info_url = ""
    if repository:
        url = repository if isinstance(repository, str) else repository.get("url") or ""
        info_url = resolve_package_json_url(url) if url else ""
        if info_url and isinstance(repository, dict) and repository.get("directory"):
            info_url = f"{info_url}/{get_sub_dir(info_url)}/{repository['directory']}"

    homepage = package.get("homepage")
    return info_url or (homepage if isinstance(homepage, str) else "") or ""


def get_pypi_info_url(info: Mapping[str, Any], name: str) -> str:
    project_urls = info.get("project_urls") or {}
    for key in PYPI_PROJECT_URL_KEYS:
        if project_urls.get(key):
            return resolve_package_json_url(project_urls[key])
    return f"https://pypi.org/project/{name}/"


def shorten_go_module(module_path: str) -> str:
    return GO_MAJOR_SUFFIX_RE.sub("", module_path)


def get_go_info_url(module_path: str) -> str:
    """Repository URL for a module; subdirectory modules link into the tree."""
    url = f"https://{shorten_go_module(module_path)}"
    parts = urlsplit(url)
    path_parts = parts.path.split("/")  # ["", "user", "repo", ...]
    if len(path_parts) > 3:
        _, user, repo, *rest = path_parts
        return f"https://{parts.netloc}/{user}/{repo}/{get_sub_dir(url)}/{'/'.join(rest)}"
    return url


def get_docker_info_url(namespace: str, repo: str) -> str:
    if namespace == "library":
        return f"https://hub.docker.com/_/{repo}"
    return f"https://hub.docker.com/r/{namespace}/{repo}"


def parse_docker_tag(tag: str) -> Optional[Tuple[str, str]]:
    match = DOCKER_TAG_RE.match(tag)
    if not match:
        return None
    return match.group(1), match.group(2) or ""


def find_docker_version(
    tags: Mapping[str, str], old_tag: str, semvers: frozenset
) -> Optional[Tuple[str, str]]:
    """
    Pick the greatest tag with the same suffix within the allowed ceiling.

    Args:
        tags: Tag name to last-pushed date
        old_tag: Current tag, e.g. ``18.19-alpine``
        semvers: Allowed release types

    Returns:
        Optional[Tuple[str, str]]: New tag shaped like ``old_tag`` and its
        date, or None when nothing newer fits
    """
    old_parsed = parse_docker_tag(old_tag)
    if not old_parsed:
        return None
    old_version, old_suffix = old_parsed
    old_coerced = semver.coerce_to_version(semver.strip_v(old_version))
    if not old_coerced:
        return None

    best_version = old_coerced
    best_tag = ""
    best_date = ""
    for tag_name, last_updated in tags.items():
        parsed = parse_docker_tag(tag_name)
        if not parsed or parsed[1] != old_suffix:
            continue
        coerced = semver.coerce_to_version(semver.strip_v(parsed[0]))
        if not coerced or not semver.valid(coerced):
            continue
        release_type = semver.diff(best_version, coerced)
        if not release_type or release_type not in semvers:
            continue
        if semver.gte(coerced, best_version):
            best_version = coerced
            best_tag = tag_name
            best_date = last_updated

    if not best_tag or best_version == old_coerced:
        return None
    new_tag = format_version_precision(best_version, old_version, old_suffix)
    if new_tag == old_tag:
        return None
    return new_tag, best_date


def format_action_version(new_tag: str, old_ref: str) -> str:
    parsed = semver.parse(semver.strip_v(new_tag))
    return format_version_precision(parsed.version if parsed else semver.strip_v(new_tag), old_ref)


class Adapter(ABC):
    """Resolve and rewrite the dependencies of one ecosystem."""

    kind: str = ""

    def __init__(self, context: ResolutionContext):
        self.context = context

    @abstractmethod
    async def fetch(self, dependency: Dependency) -> RegistryPayload:
        """Fetch the registry payload for a dependency."""
        pass

    def extract_candidates(self, payload: RegistryPayload, dependency: Dependency) -> Any:
        """Normalize a payload into the input of the selection policy."""
        raise NotImplementedError

    @abstractmethod
    async def _resolve(self, dependency: Dependency, flags: ResolutionFlags) -> UpdateResult:
        """Resolve a dependency, raising ``NoopResult`` when there is no update."""
        pass

    @abstractmethod
    def rewrite(
        self, manifest: Manifest, text: str, updates: List[UpdateResult]
    ) -> Tuple[str, ExtraWrites]:
        """
        Apply updates to the manifest text.

        Returns:
            Tuple[str, ExtraWrites]: New manifest text and other files to write
        """
        pass

    async def aclose(self) -> None:
        """Cancel lookups still running for other dependencies."""

    async def resolve(self, dependency: Dependency, flags: ResolutionFlags) -> Optional[UpdateResult]:
        """
        Resolve one dependency.

        Returns:
            Optional[UpdateResult]: The update, or None when there is none

        Raises:
            FetchError: If the registry cannot be reached
        """
        try:
            result = await self._resolve(dependency, flags)
        except NoopResult as e:
            log_resolution(dependency.name, dependency.dep_type, dependency.old, None, str(e))
            return None
        log_resolution(dependency.name, dependency.dep_type, dependency.old, result.new)
        return result

    @staticmethod
    def _check_range(dependency: Dependency) -> None:
        declared = dependency.old
        if not declared or declared == "*" or "||" in declared:
            raise NoopResult(f"{dependency.name}: wildcard or alternative range {declared!r}")


class NpmAdapter(Adapter):
    """npm registry packages, JSR packages and GitHub URL dependencies."""

    kind = "npm"

    def __init__(self, context: ResolutionContext):
        super().__init__(context)
        session = context.session
        self.npm_client: NpmClient = get_registry_client(
            "npm",
            session,
            npmrc=context.npmrc,
            registry_override=context.registry,
            network=context.network,
            env=context.env,
        )
        self.jsr_client: JsrClient = get_registry_client("jsr", session, network=context.network)
        self.forge_client: ForgeClient = get_registry_client(
            "forge", session, network=context.network, token_resolver=ForgeTokenResolver(context.env)
        )

    async def fetch(self, dependency: Dependency) -> RegistryPayload:
        if dependency.extra.get("source") == "jsr":
            return await self.jsr_client.fetch(dependency.extra["package"], dependency.dep_type)
        return await self.npm_client.fetch(dependency.name, dependency.dep_type)

    def extract_candidates(self, payload: RegistryPayload, dependency: Dependency) -> CandidateSet:
        data = payload.data or {}
        versions = [v for v in (data.get("versions") or {}) if semver.valid(v)]
        times = data.get("time")
        latest = (data.get("dist-tags") or {}).get("latest")
        return CandidateSet(
            name=data.get("name") or dependency.name,
            versions=versions,
            timestamps=times if isinstance(times, dict) else None,
            publish_dates=times if isinstance(times, dict) else {},
            latest=latest,
        )

    def format_range(self, dependency: Dependency, new_version: str) -> str:
        original = dependency.old_original or ""
        if dependency.extra.get("source") == "jsr":
            match = re.match(r"^(npm:@jsr/[^@]+@|jsr:@[^@]+@)", original)
            if match:
                return f"{match.group(1)}{new_version}"
            return f"jsr:{new_version}"
        return update_npm_range(dependency.old, new_version, dependency.old_original)

    async def _resolve(self, dependency: Dependency, flags: ResolutionFlags) -> UpdateResult:
        if dependency.extra.get("source") == "url":
            return await self._resolve_url(dependency, flags)

        self._check_range(dependency)
        payload = await self.fetch(dependency)
        candidates = self.extract_candidates(payload, dependency)

        new_version = find_new_version(candidates, dependency.old, flags)
        if not new_version:
            raise NoopResult(f"{dependency.name}: no newer version")
        new_range = self.format_range(dependency, new_version)
        if dependency.old_original is not None and dependency.old_original == new_range:
            raise NoopResult(f"{dependency.name}: already at {new_range}")

        data = payload.data or {}
        if dependency.extra.get("source") == "jsr":
            info = f"https://jsr.io/{dependency.extra['package']}"
            new_print: Optional[str] = new_version
        else:
            package = (data.get("versions") or {}).get(new_version)
            info = get_info_url(package, payload.registry, candidates.name)
            new_print = None

        return UpdateResult(
            dependency,
            new_range,
            info=info,
            date=candidates.publish_dates.get(new_version) or "",
            new_print=new_print,
        )

    async def _resolve_url(self, dependency: Dependency, flags: ResolutionFlags) -> UpdateResult:
        """Propose a newer commit or tag for a GitHub URL dependency."""
        user = dependency.extra["user"]
        repo = dependency.extra["repo"]
        old_ref = dependency.extra["ref"]
        api_url = self.forge_client.api_url()
        info = f"https://github.com/{user}/{repo}"
        # the ref is always the last part of the URL
        prefix = dependency.old[: len(dependency.old) - len(old_ref)]

        if HASH_RE.match(old_ref):
            sha, commit = await self.forge_client.fetch_latest_commit(api_url, user, repo)
            if not sha:
                raise NoopResult(f"{dependency.name}: no commits found")
            new_ref = sha[: len(old_ref)]
            if new_ref == old_ref:
                raise NoopResult(f"{dependency.name}: already at latest commit")
            date = (commit.get("committer") or {}).get("date") or (commit.get("author") or {}).get("date") or ""
            return UpdateResult(
                dependency,
                f"{prefix}{new_ref}",
                info=info,
                date=date,
                old_print=old_ref[:7],
                new_print=new_ref[:7],
            )

        try:
            tags = await self.forge_client.fetch_tags(api_url, user, repo)
        except FetchError as e:
            log_network_error(
                f"Unable to fetch tags for {dependency.name}: {e}",
                "adapters",
                "_resolve_url",
                url=e.url,
                status_code=e.status,
                exception=e,
                level=ErrorLevel.DEBUG,
            )
            raise NoopResult(f"{dependency.name}: tag lookup failed") from e

        new_tag = select_tag([tag.name for tag in tags], old_ref, flags.use_greatest)
        if not new_tag:
            raise NoopResult(f"{dependency.name}: no newer tag")
        return UpdateResult(
            dependency,
            f"{prefix}{new_tag}",
            info=info,
            old_print=old_ref,
            new_print=new_tag,
        )

    def rewrite(
        self, manifest: Manifest, text: str, updates: List[UpdateResult]
    ) -> Tuple[str, ExtraWrites]:
        return update_package_json(text, updates), {}


class PypiAdapter(Adapter):
    """PyPI packages declared in pyproject.toml."""

    kind = "pypi"

    def __init__(self, context: ResolutionContext):
        super().__init__(context)
        self.client: PyPIClient = get_registry_client("pypi", context.session, network=context.network)

    async def fetch(self, dependency: Dependency) -> RegistryPayload:
        return await self.client.fetch(dependency.name, dependency.dep_type)

    def extract_candidates(self, payload: RegistryPayload, dependency: Dependency) -> CandidateSet:
        data = payload.data or {}
        releases = data.get("releases") or {}
        publish_dates = {}
        for version, files in releases.items():
            if files and isinstance(files, list):
                publish_dates[version] = files[0].get("upload_time_iso_8601") or ""

        latest_original = (data.get("info") or {}).get("version") or ""
        return CandidateSet(
            name=dependency.name,
            versions=[v for v in releases if semver.valid(v)],
            # no per-version time map, so selection is by highest version
            timestamps=None,
            publish_dates=publish_dates,
            latest=semver.coerce_to_version(latest_original) or None,
            latest_original=latest_original or None,
        )

    def format_range(self, dependency: Dependency, new_version: str) -> str:
        # Poetry keeps its caret/tilde constraint, PEP 508 strings hold a bare version
        if dependency.dep_type.startswith("tool.poetry") and dependency.old[:1] in ("^", "~"):
            return update_npm_range(dependency.old, new_version, dependency.old_original)
        return new_version

    async def _resolve(self, dependency: Dependency, flags: ResolutionFlags) -> UpdateResult:
        self._check_range(dependency)
        payload = await self.fetch(dependency)
        candidates = self.extract_candidates(payload, dependency)

        new_version = find_new_version(candidates, dependency.old, flags)
        if not new_version:
            raise NoopResult(f"{dependency.name}: no newer version")
        new_range = self.format_range(dependency, new_version)
        if dependency.old_original == new_range:
            raise NoopResult(f"{dependency.name}: already at {new_range}")

        info = get_pypi_info_url((payload.data or {}).get("info") or {}, dependency.name)
        return UpdateResult(
            dependency,
            new_range,
            info=info,
            date=candidates.publish_dates.get(new_version) or "",
        )

    def rewrite(
        self, manifest: Manifest, text: str, updates: List[UpdateResult]
    ) -> Tuple[str, ExtraWrites]:
        return update_pyproject(text, updates), {}


class GoAdapter(Adapter):
    """Go modules, including major-version moves to ``/vN`` paths."""

    kind = "go"

    def __init__(self, context: ResolutionContext):
        super().__init__(context)
        self.client: GoProxyClient = get_registry_client(
            "go",
            context.session,
            project_dir=context.project_dir,
            network=context.network,
            env=context.env,
        )

    async def fetch(self, dependency: Dependency) -> RegistryPayload:
        return await self.client.fetch(dependency.name, dependency.dep_type)

    def extract_candidates(self, payload: RegistryPayload, dependency: Dependency) -> GoCandidates:
        return payload.data

    async def _resolve(self, dependency: Dependency, flags: ResolutionFlags) -> UpdateResult:
        payload = await self.fetch(dependency)
        selection = find_go_version(self.extract_candidates(payload, dependency), dependency.old, flags)
        if selection is None:
            raise NoopResult(f"{dependency.name}: no acceptable version")
        if selection.version == dependency.old_original:
            raise NoopResult(f"{dependency.name}: already at {selection.version}")

        return UpdateResult(
            dependency,
            selection.version,
            info=get_go_info_url(selection.new_path or dependency.name),
            date=selection.time,
            new_path=selection.new_path,
        )

    def rewrite(
        self, manifest: Manifest, text: str, updates: List[UpdateResult]
    ) -> Tuple[str, ExtraWrites]:
        new_text, major_rewrites = update_go_mod(text, updates)
        extra: ExtraWrites = {}
        rewrite_go_imports(manifest.project_dir, major_rewrites, write=extra.__setitem__)
        return new_text, extra


class DockerAdapter(Adapter):
    """Docker Hub image tags in Dockerfiles, compose files and workflows."""

    kind = "docker"

    def __init__(self, context: ResolutionContext):
        super().__init__(context)
        self.client: DockerHubClient = get_registry_client("docker", context.session, network=context.network)

    async def fetch(self, dependency: Dependency) -> RegistryPayload:
        return await self.client.fetch(dependency.name, dependency.dep_type)

    def extract_candidates(self, payload: RegistryPayload, dependency: Dependency) -> Dict[str, str]:
        return (payload.data or {}).get("tags") or {}

    async def _resolve(self, dependency: Dependency, flags: ResolutionFlags) -> UpdateResult:
        payload = await self.fetch(dependency)
        found = find_docker_version(
            self.extract_candidates(payload, dependency), dependency.old, flags.semvers
        )
        if not found:
            raise NoopResult(f"{dependency.name}: no newer tag")
        new_tag, date = found
        return UpdateResult(
            dependency,
            new_tag,
            info=get_docker_info_url(dependency.extra["namespace"], dependency.extra["repo"]),
            date=date,
        )

    def rewrite(
        self, manifest: Manifest, text: str, updates: List[UpdateResult]
    ) -> Tuple[str, ExtraWrites]:
        return update_docker_refs(text, updates, manifest.docker_file_kind or "dockerfile"), {}


class ActionsAdapter(Adapter):
    """
    GitHub Actions ``uses:`` references on GitHub or Forgejo/Gitea hosts.

    Tags are fetched once per repository and commit dates once per commit,
    however many workflow steps reference them.
    """

    kind = "actions"

    def __init__(self, context: ResolutionContext):
        super().__init__(context)
        self.client: ForgeClient = get_registry_client(
            "forge",
            context.session,
            network=context.network,
            token_resolver=ForgeTokenResolver(context.env),
        )
        self._tag_requests: Dict[Tuple[str, str, str], "asyncio.Future[List[TagEntry]]"] = {}
        self._date_requests: Dict[Tuple[str, str], "asyncio.Future[str]"] = {}

    def _api_url(self, dependency: Dependency) -> str:
        return self.client.api_url(dependency.extra.get("host"))

    async def aclose(self) -> None:
        futures = [*self._tag_requests.values(), *self._date_requests.values()]
        for future in futures:
            if not future.done():
                future.cancel()
        # also retrieves failures of lookups nobody awaited after a cancel
        await asyncio.gather(*futures, return_exceptions=True)

    async def fetch(self, dependency: Dependency) -> RegistryPayload:
        api_url = self._api_url(dependency)
        owner = dependency.extra["owner"]
        repo = dependency.extra["repo"]
        key = (api_url, owner, repo)
        if key not in self._tag_requests:
            self._tag_requests[key] = asyncio.ensure_future(
                self.client.fetch_tags(api_url, owner, repo)
            )
        tags = await asyncio.shield(self._tag_requests[key])
        return RegistryPayload(tags, dependency.dep_type, api_url, dependency.name)

    def extract_candidates(self, payload: RegistryPayload, dependency: Dependency) -> CandidateSet:
        versions = []
        for tag in payload.data:
            bare = semver.strip_v(tag.name)
            if semver.valid(bare):
                versions.append(bare)
        return CandidateSet(name=dependency.name, versions=versions)

    async def _commit_date(self, api_url: str, dependency: Dependency, commit_sha: str) -> str:
        key = (api_url, commit_sha)
        if key not in self._date_requests:
            self._date_requests[key] = asyncio.ensure_future(
                self.client.fetch_commit_date(
                    api_url, dependency.extra["owner"], dependency.extra["repo"], commit_sha
                )
            )
        return await asyncio.shield(self._date_requests[key])

    async def _resolve(self, dependency: Dependency, flags: ResolutionFlags) -> UpdateResult:
        try:
            payload = await self.fetch(dependency)
        except FetchError as e:
            log_network_error(
                f"Unable to fetch tags for {dependency.name}: {e}",
                "adapters",
                "ActionsAdapter._resolve",
                url=e.url,
                status_code=e.status,
                exception=e,
                level=ErrorLevel.DEBUG,
            )
            raise NoopResult(f"{dependency.name}: tag lookup failed") from e

        tags: List[TagEntry] = payload.data
        candidates = self.extract_candidates(payload, dependency)
        api_url = payload.registry or self._api_url(dependency)
        host = dependency.extra.get("host") or "github.com"
        info = f"https://{host}/{dependency.extra['owner']}/{dependency.extra['repo']}"
        old_ref = dependency.old

        def tag_for(version: str) -> Optional[TagEntry]:
            return next((tag for tag in tags if semver.strip_v(tag.name) == version), None)

        if dependency.extra.get("is_hash"):
            hash_flags = replace(flags, use_greatest=True, semvers=DEFAULT_SEMVERS)
            new_version = find_version(candidates, "0.0.0", hash_flags)
            new_tag = tag_for(new_version) if new_version else None
            if new_tag is None:
                raise NoopResult(f"{dependency.name}: no release tag")

            new_sha = new_tag.commit_sha
            if not new_sha or new_sha.startswith(old_ref) or old_ref.startswith(new_sha):
                raise NoopResult(f"{dependency.name}: already at {new_tag.name}")

            old_tag_name = next(
                (tag.name for tag in tags if tag.commit_sha == old_ref), None
            ) or next((tag.name for tag in tags if tag.commit_sha.startswith(old_ref)), None)

            return UpdateResult(
                dependency,
                new_sha[: len(old_ref)],
                info=info,
                date=await self._commit_date(api_url, dependency, new_sha),
                old_print=old_tag_name or old_ref[:7],
                new_print=new_tag.name,
            )

        coerced = semver.coerce_to_version(semver.strip_v(old_ref))
        if not coerced:
            raise NoopResult(f"{dependency.name}: ref {old_ref} is not a version")

        new_version = find_version(candidates, coerced, replace(flags, use_greatest=True))
        if not new_version or new_version == coerced:
            raise NoopResult(f"{dependency.name}: no newer tag")
        new_tag = tag_for(new_version)
        if new_tag is None:
            raise NoopResult(f"{dependency.name}: no tag for {new_version}")

        formatted = format_action_version(new_tag.name, old_ref)
        if formatted == old_ref:
            raise NoopResult(f"{dependency.name}: already at {old_ref}")

        date = ""
        if new_tag.commit_sha:
            date = await self._commit_date(api_url, dependency, new_tag.commit_sha)
        return UpdateResult(dependency, formatted, info=info, date=date)

    def rewrite(
        self, manifest: Manifest, text: str, updates: List[UpdateResult]
    ) -> Tuple[str, ExtraWrites]:
        action_updates = [(update.name, update.dependency.old, update.new) for update in updates]
        return update_workflow_file(text, action_updates), {}


ADAPTERS = {
    "npm": NpmAdapter,
    "pypi": PypiAdapter,
    "go": GoAdapter,
    "docker": DockerAdapter,
    "actions": ActionsAdapter,
}


def get_adapter(kind: str, context: ResolutionContext) -> Adapter:
    """
    Factory function to get the adapter for an ecosystem.

    Raises:
        ValueError: If kind is not supported
    """
    adapter_class = ADAPTERS.get(kind)
    if adapter_class is None:
        raise ValueError(f"Unsupported ecosystem: {kind}")
    return adapter_class(context)
