"""
Registry clients for querying package repositories.

All clients share one ``RegistrySession`` per run: a single
``httpx.AsyncClient`` whose connection limit caps in-flight requests across
every level of concurrency, with a hard per-request deadline. Non-2xx
responses and transport failures surface as ``FetchError``.
"""

import asyncio
import json
import math
import os
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

import httpx

from . import __version__
from .auth import ForgeTokenResolver, NpmAuthResolver, normalize_url
from .cli_config import NetworkConfig, get_config
from .concurrency import BoundedPool
from .error_handling import (
    ErrorLevel,
    FetchError,
    NoopResult,
    log_network_error,
    sanitize_url,
)
from .policy import GoCandidates, build_go_module_path, extract_go_major
from .semver import strip_v
from .structured_logging import get_registry_logger, log_registry_request

DEFAULT_GO_PROXY = "https://proxy.golang.org"
GITHUB_API_URL = "https://api.github.com"
DOCKER_PAGE_SIZE = 100


@dataclass
class RegistryPayload:
    """Raw registry response for one dependency."""

    data: Any
    dep_type: str
    registry: Optional[str]
    name: str


@dataclass(frozen=True)
class TagEntry:
    name: str
    commit_sha: str = ""


@dataclass(frozen=True)
class GoLookup:
    version: str
    time: str
    path: str


class RegistrySession:
    """
    Shared HTTP transport for one run.

    Uses the async context manager pattern for ``httpx.AsyncClient``
    resource management: the client is created on entry and closed on exit.
    """

    def __init__(
        self,
        network: Optional[NetworkConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.network = network or get_config().network
        self.timeout = self.network.fetch_timeout
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None
        self.request_count = 0

        self._headers = {
            "User-Agent": self.network.user_agent or f"dep-updater/{__version__}",
            "Accept-Encoding": "gzip, deflate, br",
        }

    async def __aenter__(self):
        """Initialize the HTTP client when entering the context."""
        max_sockets = self.network.max_sockets
        self.client = httpx.AsyncClient(
            headers=self._headers,
            # deadlines come from asyncio.wait_for around each request
            timeout=httpx.Timeout(None),
            limits=httpx.Limits(
                max_connections=max_sockets, max_keepalive_connections=max_sockets
            ),
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Clean up the HTTP client when exiting the context."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def get(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        dependency: Optional[str] = None,
    ) -> httpx.Response:
        """
        Perform a GET with a total deadline.

        Args:
            url: Request URL
            headers: Extra headers, e.g. Authorization
            timeout: Deadline in seconds, defaults to the fetch timeout
            dependency: Dependency name used in error messages

        Returns:
            httpx.Response: The response, whatever its status

        Raises:
            FetchError: On timeout or transport failure
        """
        if self.client is None:
            raise RuntimeError("RegistrySession must be used as an async context manager")

        deadline = timeout if timeout is not None else self.timeout
        self.request_count += 1
        start_time = time.time()
        suffix = f" for {dependency}" if dependency else ""

        try:
            response = await asyncio.wait_for(
                self.client.get(url, headers=headers), timeout=deadline
            )
        except asyncio.TimeoutError as e:
            log_registry_request(url, None, (time.time() - start_time) * 1000)
            raise FetchError(
                f"Request to {sanitize_url(url)} timed out after {deadline}s{suffix}",
                url=url,
                dependency=dependency,
                retryable=True,
            ) from e
        except httpx.HTTPError as e:
            log_registry_request(url, None, (time.time() - start_time) * 1000)
            raise FetchError(
                f"Unable to fetch {sanitize_url(url)}{suffix}: {e}",
                url=url,
                dependency=dependency,
                retryable=True,
            ) from e

        log_registry_request(url, response.status_code, (time.time() - start_time) * 1000)
        return response

    async def get_json(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        dependency: Optional[str] = None,
    ) -> Any:
        """GET and decode JSON, raising ``FetchError`` on any non-2xx status."""
        response = await self.get(url, headers=headers, timeout=timeout, dependency=dependency)
        if not response.is_success:
            raise FetchError.from_status(response.status_code, url, dependency)
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(
                f"Invalid JSON from {sanitize_url(url)} for {dependency or url}",
                url=url,
                status=response.status_code,
                dependency=dependency,
            ) from e


class BaseRegistryClient(ABC):
    """Base class for registry clients sharing one session."""

    def __init__(self, session: RegistrySession, network: Optional[NetworkConfig] = None):
        self.session = session
        self.network = network or session.network

    @abstractmethod
    async def fetch(self, name: str, dep_type: str) -> RegistryPayload:
        """Fetch the registry document for a dependency."""
        pass

    @abstractmethod
    def get_registry_type(self) -> str:
        """Get the registry type identifier."""
        pass


class NpmClient(BaseRegistryClient):
    """Client for npm-compatible registries with .npmrc credential support."""

    def __init__(
        self,
        session: RegistrySession,
        npmrc: Mapping[str, Any],
        registry_override: Optional[str] = None,
        network: Optional[NetworkConfig] = None,
        auth_resolver: Optional[NpmAuthResolver] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        super().__init__(session, network)
        self.registry = normalize_url(
            registry_override or npmrc.get("registry") or self.network.npm_registry
        )
        self.auth_resolver = auth_resolver or NpmAuthResolver(npmrc, env=env)

    def get_registry_type(self) -> str:
        return "npm"

    async def fetch(self, name: str, dep_type: str) -> RegistryPayload:
        """
        Fetch the full package document.

        Scoped packages may live on a scope-specific registry. ``resolutions``
        keys are paths, so only their last segment names the package.
        """
        resolved = self.auth_resolver.get_auth_and_registry(name, self.registry)
        package_name = name.rsplit("/", 1)[-1] if dep_type == "resolutions" else name
        url = f"{resolved.registry}/{package_name.replace('/', '%2f')}"

        headers = {}
        if resolved.auth:
            headers["Authorization"] = resolved.auth.header

        data = await self.session.get_json(url, headers=headers, dependency=name)
        return RegistryPayload(data, dep_type, resolved.registry, name)


class JsrClient(BaseRegistryClient):
    """Client for the JSR registry, reshaping its metadata like an npm document."""

    def get_registry_type(self) -> str:
        return "jsr"

    async def fetch(self, name: str, dep_type: str) -> RegistryPayload:
        if not name.startswith("@") or "/" not in name:
            raise FetchError(f"Invalid JSR package name: {name}", dependency=name)
        scope, package = name[1:].split("/", 1)
        api_url = normalize_url(self.network.jsr_api_url)
        url = f"{api_url}/@{scope}/{package}/meta.json"

        data = await self.session.get_json(url, dependency=name)

        versions: Dict[str, Dict[str, Any]] = {}
        times: Dict[str, str] = {}
        for version, metadata in (data.get("versions") or {}).items():
            created_at = (metadata or {}).get("createdAt", "")
            versions[version] = {"version": version, "time": created_at}
            times[version] = created_at

        reshaped = {
            "name": name,
            "dist-tags": {"latest": data.get("latest")},
            "versions": versions,
            "time": times,
        }
        return RegistryPayload(reshaped, dep_type, api_url, name)


class PyPIClient(BaseRegistryClient):
    """Client for the PyPI JSON API."""

    def get_registry_type(self) -> str:
        return "pypi"

    async def fetch(self, name: str, dep_type: str) -> RegistryPayload:
        api_url = normalize_url(self.network.pypi_api_url)
        data = await self.session.get_json(f"{api_url}/pypi/{name}/json", dependency=name)
        return RegistryPayload(data, dep_type, None, name)


def resolve_go_proxy(env: Optional[Mapping[str, str]] = None) -> str:
    """First GOPROXY entry that is neither ``direct`` nor ``off``."""
    env = os.environ if env is None else env
    proxy_env = env.get("GOPROXY") or f"{DEFAULT_GO_PROXY},direct"
    for entry in proxy_env.replace("|", ",").split(","):
        entry = entry.strip()
        if entry and entry not in ("direct", "off"):
            return normalize_url(entry)
    return DEFAULT_GO_PROXY


def parse_go_no_proxy(env: Optional[Mapping[str, str]] = None) -> List[str]:
    env = os.environ if env is None else env
    value = env.get("GONOPROXY") or env.get("GOPRIVATE") or ""
    return [entry.strip() for entry in value.split(",") if entry.strip()]


def is_go_no_proxy(module_path: str, patterns: List[str]) -> bool:
    return any(
        module_path == pattern or module_path.startswith(f"{pattern}/")
        for pattern in patterns
    )


def encode_go_module_path(module_path: str) -> str:
    """Case-encode a module path for the proxy protocol (``A`` becomes ``!a``)."""
    return "".join(f"!{c.lower()}" if c.isupper() else c for c in module_path)


MajorLookupFn = Callable[[int], Awaitable[Optional[GoLookup]]]


async def search_major_versions(
    current_major: int,
    first_lookup: Optional[GoLookup],
    fetch_major: MajorLookupFn,
    batch_size: int = 20,
    max_gap: int = 100,
) -> Optional[GoLookup]:
    """
    Find the highest published major above ``current_major``.

    ``first_lookup`` is the result for ``current_major + 1``. When it exists
    ``current_major + 2`` is looked up, and when that exists too the following
    majors are looked up in parallel batches of ``batch_size`` until a batch
    has no hit or ``current_major + max_gap`` is reached.

    Returns:
        Optional[GoLookup]: The highest major found, or None when there is none
    """
    if first_lookup is None:
        return None
    highest = first_lookup

    limit = current_major + max_gap
    if current_major + 2 > limit:
        return highest
    second = await fetch_major(current_major + 2)
    if second is None:
        return highest
    highest = second

    pool = BoundedPool(batch_size)
    next_major = current_major + 3
    while next_major <= limit:
        majors = list(range(next_major, min(next_major + batch_size, limit + 1)))
        results = await pool.map(fetch_major, majors)
        hits = [result for result in results if result is not None]
        if not hits:
            break
        highest = hits[-1]
        next_major = majors[-1] + 1

    return highest


class GoProxyClient(BaseRegistryClient):
    """
    Client for the Go module proxy with a ``go list`` fallback.

    Private modules (GONOPROXY/GOPRIVATE) and modules the proxy cannot
    serve are looked up with the go tool run in the project directory.
    """

    def __init__(
        self,
        session: RegistrySession,
        project_dir: Optional[Path] = None,
        network: Optional[NetworkConfig] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        super().__init__(session, network)
        self.env = dict(os.environ if env is None else env)
        self.project_dir = project_dir
        self.proxy_url = normalize_url(self.network.go_proxy_url or resolve_go_proxy(self.env))
        self.no_proxy = parse_go_no_proxy(self.env)
        self.lookup_timeout = self.network.effective_go_lookup_timeout

    def get_registry_type(self) -> str:
        return "go"

    async def fetch(self, name: str, dep_type: str) -> RegistryPayload:
        """
        Look up the latest version and the highest available major.

        Raises:
            NoopResult: If neither the proxy nor the go tool can resolve the module
        """
        if is_go_no_proxy(name, self.no_proxy):
            return await self._fetch_vcs(name, dep_type)

        current_major = extract_go_major(name)

        async def fetch_major(major: int) -> Optional[GoLookup]:
            return await self._proxy_latest(
                build_go_module_path(name, major), self.lookup_timeout
            )

        latest, first_lookup = await asyncio.gather(
            self._proxy_latest(name, self.session.timeout, log_failure=True),
            fetch_major(current_major + 1),
        )
        if latest is None:
            return await self._fetch_vcs(name, dep_type)

        highest = await search_major_versions(
            current_major,
            first_lookup,
            fetch_major,
            self.network.go_lookup_batch_size,
            self.network.go_lookup_max_gap,
        )
        return RegistryPayload(self._build_candidates(name, latest, highest), dep_type, None, name)

    async def _proxy_latest(
        self, module_path: str, timeout: float, log_failure: bool = False
    ) -> Optional[GoLookup]:
        url = f"{self.proxy_url}/{encode_go_module_path(module_path)}/@latest"
        try:
            data = await self.session.get_json(url, timeout=timeout, dependency=module_path)
        except FetchError as e:
            if log_failure:
                log_network_error(
                    f"Go proxy lookup failed, trying go list: {e}",
                    "registry_clients",
                    "_proxy_latest",
                    url=url,
                    status_code=e.status,
                    exception=e,
                    level=ErrorLevel.DEBUG,
                )
            return None

        version = data.get("Version") if isinstance(data, dict) else None
        if not version:
            return None
        return GoLookup(version, data.get("Time") or "", module_path)

    async def _go_list(self, module_path: str, timeout: float) -> Optional[GoLookup]:
        """Run ``go list -m -json path@latest``; any failure means absent."""
        try:
            process = await asyncio.create_subprocess_exec(
                "go",
                "list",
                "-m",
                "-json",
                f"{module_path}@latest",
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(self.project_dir) if self.project_dir else None,
                env=self.env,
            )
        except OSError as e:
            get_registry_logger().debug("go_list_unavailable", go_module=module_path, error=str(e))
            return None

        try:
            stdout_data, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return None

        if process.returncode != 0:
            return None
        try:
            data = json.loads(stdout_data.decode("utf-8", errors="replace"))
        except ValueError:
            return None
        if not data.get("Version"):
            return None
        return GoLookup(data["Version"], data.get("Time") or "", module_path)

    async def _fetch_vcs(self, name: str, dep_type: str) -> RegistryPayload:
        current_major = extract_go_major(name)

        async def fetch_major(major: int) -> Optional[GoLookup]:
            return await self._go_list(build_go_module_path(name, major), self.lookup_timeout)

        latest, first_lookup = await asyncio.gather(
            self._go_list(name, self.session.timeout),
            fetch_major(current_major + 1),
        )
        if latest is None:
            raise NoopResult(f"Unable to resolve {name} through the proxy or go list")

        highest = await search_major_versions(
            current_major,
            first_lookup,
            fetch_major,
            self.network.go_lookup_batch_size,
            self.network.go_lookup_max_gap,
        )
        return RegistryPayload(self._build_candidates(name, latest, highest), dep_type, None, name)

    @staticmethod
    def _build_candidates(
        name: str, latest: GoLookup, highest: Optional[GoLookup]
    ) -> GoCandidates:
        best = highest or latest
        return GoCandidates(
            name=name,
            new=strip_v(best.version),
            time=best.time,
            new_path=best.path if best.path != name else None,
            same_major_new=strip_v(latest.version),
            same_major_time=latest.time,
        )


class DockerHubClient(BaseRegistryClient):
    """Client for the Docker Hub v2 tags API."""

    def get_registry_type(self) -> str:
        return "docker"

    async def fetch(self, name: str, dep_type: str) -> RegistryPayload:
        """
        Fetch ``{tag: last pushed}`` for a Docker Hub image.

        Pages are requested speculatively in parallel; only the first page
        must succeed since pages past the end return errors.
        """
        namespace, _, repo = name.rpartition("/")
        namespace = namespace or "library"
        api_url = normalize_url(self.network.docker_api_url)
        base_url = f"{api_url}/v2/repositories/{namespace}/{repo}/tags"
        max_pages = self.network.docker_max_pages

        async def fetch_page(page: int) -> Optional[Dict[str, Any]]:
            url = f"{base_url}?page_size={DOCKER_PAGE_SIZE}&ordering=last_updated&page={page}"
            if page == 1:
                return await self.session.get_json(url, dependency=name)
            try:
                return await self.session.get_json(url, dependency=name)
            except FetchError:
                return None

        pages = await BoundedPool(max_pages).map(fetch_page, range(1, max_pages + 1))

        tags: Dict[str, str] = {}
        total_pages = min(math.ceil((pages[0].get("count") or 0) / DOCKER_PAGE_SIZE), max_pages)
        for page in pages[:total_pages]:
            if not page:
                continue
            for result in page.get("results") or []:
                tags[result["name"]] = result.get("tag_last_pushed") or result.get("last_updated") or ""

        return RegistryPayload({"name": name, "tags": tags}, dep_type, None, name)


def get_forge_api_base_url(host: Optional[str], forge_api_url: str) -> str:
    if not host:
        return normalize_url(forge_api_url)
    if host == "github.com":
        return GITHUB_API_URL
    return f"https://{host}/api/v1"


class ForgeClient(BaseRegistryClient):
    """Client for GitHub-compatible tag and commit APIs (GitHub, Forgejo, Gitea)."""

    def __init__(
        self,
        session: RegistrySession,
        network: Optional[NetworkConfig] = None,
        token_resolver: Optional[ForgeTokenResolver] = None,
    ):
        super().__init__(session, network)
        self.token_resolver = token_resolver or ForgeTokenResolver()

    def get_registry_type(self) -> str:
        return "forge"

    def api_url(self, host: Optional[str] = None) -> str:
        return get_forge_api_base_url(host, self.network.forge_api_url)

    def _headers(self, url: str) -> Dict[str, str]:
        token = self.token_resolver.get_token(url)
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _get(self, url: str, dependency: str) -> httpx.Response:
        response = await self.session.get(url, headers=self._headers(url), dependency=dependency)
        if not response.is_success:
            raise FetchError.from_status(response.status_code, url, dependency)
        return response

    async def fetch(self, name: str, dep_type: str) -> RegistryPayload:
        """Fetch the tags of ``owner/repo`` on the default forge."""
        owner, _, repo = name.partition("/")
        tags = await self.fetch_tags(self.api_url(), owner, repo)
        return RegistryPayload(tags, dep_type, self.api_url(), name)

    async def fetch_tags(self, api_url: str, owner: str, repo: str) -> List[TagEntry]:
        """
        Fetch all tags of a repository, oldest first.

        Pagination follows the ``last`` link of the first page.

        Raises:
            FetchError: If the first page cannot be fetched
        """
        name = f"{owner}/{repo}"
        base_url = f"{api_url}/repos/{owner}/{repo}/tags?per_page=100"
        first = await self._get(base_url, name)
        pages = [first.json()]

        last_url = first.links.get("last", {}).get("url")
        last_page = 1
        if last_url:
            try:
                last_page = int(parse_qs(urlsplit(last_url).query).get("page", ["1"])[0])
            except ValueError:
                last_page = 1

        if last_page > 1:

            async def fetch_page(page: int) -> Any:
                response = await self._get(f"{base_url}&page={page}", name)
                return response.json()

            pages.extend(
                await BoundedPool(self.network.max_sockets).map(fetch_page, range(2, last_page + 1))
            )

        entries: List[TagEntry] = []
        for page in pages:
            for tag in page or []:
                commit = tag.get("commit") or {}
                entries.append(TagEntry(tag["name"], commit.get("sha") or ""))
        entries.reverse()
        return entries

    async def fetch_latest_commit(self, api_url: str, owner: str, repo: str) -> Tuple[str, Dict[str, Any]]:
        """Newest commit sha and its commit object; ``("", {})`` on failure."""
        url = f"{api_url}/repos/{owner}/{repo}/commits"
        try:
            response = await self._get(url, f"{owner}/{repo}")
            data = response.json()
            return data[0]["sha"], data[0].get("commit") or {}
        except (FetchError, ValueError, LookupError, TypeError) as e:
            log_network_error(
                f"Unable to fetch latest commit of {owner}/{repo}: {e}",
                "registry_clients",
                "fetch_latest_commit",
                url=url,
                level=ErrorLevel.DEBUG,
            )
            return "", {}

    async def fetch_commit_date(self, api_url: str, owner: str, repo: str, commit_sha: str) -> str:
        """Committer (or author) date of a commit; empty on failure."""
        url = f"{api_url}/repos/{owner}/{repo}/git/commits/{commit_sha}"
        try:
            response = await self._get(url, f"{owner}/{repo}")
            data = response.json()
        except (FetchError, ValueError) as e:
            log_network_error(
                f"Unable to fetch commit date of {owner}/{repo}@{commit_sha[:7]}: {e}",
                "registry_clients",
                "fetch_commit_date",
                url=url,
                level=ErrorLevel.DEBUG,
            )
            return ""
        committer = data.get("committer") or {}
        author = data.get("author") or {}
        return committer.get("date") or author.get("date") or ""


def get_registry_client(
    registry_type: str, session: RegistrySession, **kwargs: Any
) -> BaseRegistryClient:
    """
    Factory function to get the appropriate registry client.

    Args:
        registry_type: Type of registry ('npm', 'jsr', 'pypi', 'go', 'docker', 'forge')
        session: Shared session for the run
        **kwargs: Client specific arguments

    Returns:
        Configured registry client

    Raises:
        ValueError: If registry_type is not supported
    """
    if registry_type == "npm":
        return NpmClient(session, **kwargs)
    elif registry_type == "jsr":
        return JsrClient(session, **kwargs)
    elif registry_type == "pypi":
        return PyPIClient(session, **kwargs)
    elif registry_type == "go":
        return GoProxyClient(session, **kwargs)
    elif registry_type == "docker":
        return DockerHubClient(session, **kwargs)
    elif registry_type == "forge":
        return ForgeClient(session, **kwargs)
    else:
        raise ValueError(f"Unsupported registry type: {registry_type}")
