"""
Core update engine.

Checks every resolved manifest: parses it, resolves each dependency through
its ecosystem adapter with bounded concurrency, filters the results by
cooldown and, when asked, writes the patched text back.
"""

import asyncio
import os
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

import httpx

from .adapters import Adapter, ResolutionContext, get_adapter
from .cli_config import SUPPORTED_MODES, NetworkConfig, ProjectConfig, get_config, load_project_config
from .concurrency import BoundedPool
from .dependency import Dependency, UpdateResult, format_age
from .error_handling import ParseError
from .parsers import (
    NPM_TYPES,
    OPTIONAL_NPM_TYPES,
    Manifest,
    ParseOptions,
    detect_manifest_kind,
    parse_manifest,
    resolve_files,
)
from .policy import ResolutionOptions, can_include_by_date, compile_matchers, parse_duration
from .rc import load_rc
from .registry_clients import RegistrySession
from .rewriter import write_file
from .structured_logging import get_updater_logger, log_run_complete, log_run_start


@dataclass
class CheckOptions:
    """What to check and how; built by the CLI from its flags."""

    files: Optional[List[str]] = None
    modes: Sequence[str] = SUPPORTED_MODES
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    types: Optional[List[str]] = None
    registry: Optional[str] = None
    cooldown: Optional[str] = None
    resolution: ResolutionOptions = field(default_factory=ResolutionOptions)
    update: bool = False
    include_engines: bool = False
    cwd: Optional[Path] = None
    env: Optional[Mapping[str, str]] = None


@dataclass
class ManifestResult:
    """Outcome of checking one manifest."""

    path: Path
    kind: str
    total_dependencies: int = 0
    updates: List[UpdateResult] = field(default_factory=list)
    written_files: List[Path] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def written(self) -> bool:
        return bool(self.written_files)


@dataclass
class CheckResult:
    """Outcome of a whole run."""

    manifests: List[ManifestResult]
    duration_ms: int = 0

    @property
    def total_dependencies(self) -> int:
        return sum(m.total_dependencies for m in self.manifests)

    @property
    def updates(self) -> List[Tuple[ManifestResult, UpdateResult]]:
        return [(m, update) for m in self.manifests for update in m.updates]

    @property
    def errors(self) -> List[str]:
        return [m.error for m in self.manifests if m.error]

    @property
    def has_updates(self) -> bool:
        return any(m.updates for m in self.manifests)


def dependency_mode(manifest: Manifest, dependency: Dependency) -> str:
    """The mode a dependency belongs to; workflows also carry docker images."""
    if dependency.dep_type == "docker":
        return "docker"
    return manifest.kind


def manifest_modes(kind: str) -> Set[str]:
    return {"actions", "docker"} if kind == "actions" else {kind}


class DependencyUpdater:
    """
    Check manifests for outdated dependencies.

    One ``RegistrySession`` is shared by the whole run. Adapters are kept
    per project so npm credentials and Go working directories stay local
    to the manifest, while Actions and Docker lookups are shared across
    files.
    """

    def __init__(
        self,
        options: CheckOptions,
        network: Optional[NetworkConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the updater.

        Args:
            options: Run options
            network: Endpoints and limits, defaults to the global config
            transport: Optional httpx transport, used by tests
        """
        self.options = options
        self.network = network or get_config().network
        self.transport = transport
        self.env = os.environ if options.env is None else options.env
        self.pool = BoundedPool(self.network.max_sockets)
        self.cooldown_days = parse_duration(options.cooldown) if options.cooldown else 0.0
        self._adapters: Dict[Tuple[str, Optional[Path], Optional[str]], Adapter] = {}
        self._npmrc: Dict[Path, Dict] = {}

    async def check(self) -> CheckResult:
        """
        Run the check over every resolved manifest.

        Returns:
            CheckResult: Per-manifest results in file order

        Raises:
            ParseError: If a file given on the command line does not exist
            FetchError: If a registry lookup fails
            ConfigError: If a project config or cooldown value is invalid
        """
        start_time = asyncio.get_event_loop().time()
        files, explicit = resolve_files(self.options.files, self.options.cwd)

        manifests: List[ManifestResult] = []
        async with RegistrySession(self.network, transport=self.transport) as session:
            try:
                for path in files:
                    result = await self.check_manifest(session, path, path in explicit)
                    if result is not None:
                        manifests.append(result)
            finally:
                # shared lookups must not outlive the session
                for adapter in self._adapters.values():
                    await adapter.aclose()

        duration_ms = int((asyncio.get_event_loop().time() - start_time) * 1000)
        return CheckResult(manifests=manifests, duration_ms=duration_ms)

    def _enabled_modes(self, kind: str, explicit: bool) -> Set[str]:
        modes = manifest_modes(kind)
        if explicit:
            return modes
        return modes & set(self.options.modes)

    def _parse_options(self, kind: str, project: ProjectConfig) -> ParseOptions:
        include = compile_matchers(self.options.include, insensitive=True)
        exclude = compile_matchers(self.options.exclude, insensitive=True)
        if kind in ("actions", "docker"):
            # workflows and images only honour command line patterns
            return ParseOptions(types=None, include=include, exclude=exclude)

        types = self.options.types or project.types
        if not types and kind == "npm" and self.options.include_engines:
            types = NPM_TYPES + OPTIONAL_NPM_TYPES
        return ParseOptions(
            types=types,
            include=include | compile_matchers(project.include),
            exclude=exclude | compile_matchers(project.exclude),
        )

    def _resolution_options(self, kind: str, project: ProjectConfig) -> ResolutionOptions:
        resolution = self.options.resolution
        if kind in ("actions", "docker"):
            return resolution
        return replace(resolution, pin={**project.pin, **resolution.pin})

    def _cooldown_days(self, kind: str, project: ProjectConfig) -> float:
        if self.cooldown_days or kind in ("actions", "docker") or not project.cooldown:
            return self.cooldown_days
        return parse_duration(project.cooldown)

    def _npmrc_for(self, project_dir: Path) -> Dict:
        if project_dir not in self._npmrc:
            self._npmrc[project_dir] = load_rc(
                "npm", {"registry": self.network.npm_registry}, cwd=project_dir, env=self.env
            )
        return self._npmrc[project_dir]

    def get_adapter(
        self, session: RegistrySession, mode: str, manifest: Manifest, project: ProjectConfig
    ) -> Adapter:
        """Adapter for ``mode``, created once per project (npm, Go) or per run."""
        registry = self.options.registry or project.registry
        project_dir = manifest.project_dir if mode in ("npm", "go", "pypi") else None
        key = (mode, project_dir, registry if mode == "npm" else None)
        if key not in self._adapters:
            context = ResolutionContext(
                session=session,
                network=self.network,
                project_dir=manifest.project_dir,
                npmrc=self._npmrc_for(manifest.project_dir) if mode == "npm" else {},
                registry=registry,
                env=self.env,
            )
            self._adapters[key] = get_adapter(mode, context)
        return self._adapters[key]

    async def check_manifest(
        self, session: RegistrySession, path: Path, explicit: bool = False
    ) -> Optional[ManifestResult]:
        """
        Check one manifest.

        Parse errors are recorded on the result so the run can continue with
        the remaining manifests.

        Args:
            session: Shared session for the run
            path: Manifest path
            explicit: Whether the file was named on the command line

        Returns:
            Optional[ManifestResult]: The result, or None when all of the
            manifest's modes are disabled
        """
        logger = get_updater_logger()
        try:
            kind = detect_manifest_kind(path)
        except ParseError as e:
            return ManifestResult(path=path, kind="unknown", error=str(e))

        modes = self._enabled_modes(kind, explicit)
        if not modes:
            logger.debug("manifest_skipped", file_path=str(path), kind=kind)
            return None

        project = (
            ProjectConfig() if kind in ("actions", "docker") else load_project_config(path.parent)
        )
        try:
            manifest = parse_manifest(path, self._parse_options(kind, project))
        except ParseError as e:
            return ManifestResult(path=path, kind=kind, error=str(e))

        dependencies = [
            dep for dep in manifest.dependencies.values() if dependency_mode(manifest, dep) in modes
        ]
        result = ManifestResult(path=path, kind=kind, total_dependencies=len(dependencies))
        if not dependencies:
            return result

        run_id = uuid.uuid4().hex[:12]
        start_time = asyncio.get_event_loop().time()
        log_run_start(run_id, str(path), len(dependencies))

        resolution = self._resolution_options(kind, project)
        cooldown_days = self._cooldown_days(kind, project)

        async def resolve_one(dependency: Dependency) -> Optional[UpdateResult]:
            adapter = self.get_adapter(session, dependency_mode(manifest, dependency), manifest, project)
            flags = resolution.flags_for(dependency.name)
            return await adapter.resolve(dependency, flags)

        resolved = await self.pool.map(resolve_one, dependencies)

        for update in resolved:
            if update is None:
                continue
            if not can_include_by_date(update.date, cooldown_days):
                logger.debug(
                    "update_in_cooldown",
                    package_name=update.name,
                    new=update.new,
                    date=update.date,
                )
                continue
            age = format_age(update.date) if update.date else ""
            result.updates.append(update.with_age(update.date, age))

        if self.options.update and result.updates:
            result.written_files = self.write_updates(session, manifest, project, result.updates)

        duration_ms = int((asyncio.get_event_loop().time() - start_time) * 1000)
        log_run_complete(run_id, duration_ms, len(result.updates), written=result.written)
        return result

    def write_updates(
        self,
        session: RegistrySession,
        manifest: Manifest,
        project: ProjectConfig,
        updates: List[UpdateResult],
    ) -> List[Path]:
        """
        Apply all updates of a manifest and write the changed files.

        Returns:
            List[Path]: Files written, the manifest first
        """
        by_mode: Dict[str, List[UpdateResult]] = {}
        for update in updates:
            by_mode.setdefault(dependency_mode(manifest, update.dependency), []).append(update)

        text = manifest.text
        extra_files: Dict[Path, str] = {}
        for mode, mode_updates in by_mode.items():
            adapter = self.get_adapter(session, mode, manifest, project)
            text, extra = adapter.rewrite(manifest, text, mode_updates)
            extra_files.update(extra)

        written: List[Path] = []
        if text != manifest.text:
            write_file(manifest.path, text)
            written.append(manifest.path)
        for extra_path, content in extra_files.items():
            write_file(extra_path, content)
            written.append(extra_path)
        return written


async def check_dependencies(
    options: CheckOptions,
    network: Optional[NetworkConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CheckResult:
    """Convenience wrapper running one ``DependencyUpdater`` check."""
    return await DependencyUpdater(options, network, transport).check()
