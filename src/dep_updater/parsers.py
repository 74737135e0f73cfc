"""
Manifest parsers.

Each parser turns the text of one manifest into an ordered mapping of
``(dependency type, name)`` to ``Dependency``. Parsers never touch the
network; registry lookups happen in the adapters.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Pattern, Set, Tuple

import toml

from . import semver
from .dependency import Dependency, DependencyKey, is_jsr
from .error_handling import ParseError, log_parsing_error
from .policy import can_include
from .rc import find_up
from .rewriter import normalize_range

MANIFEST_FILE_NAMES = {
    "package.json": "npm",
    "pyproject.toml": "pypi",
    "go.mod": "go",
}
DOCKER_EXACT_FILE_NAMES = (
    "Dockerfile",
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)

NPM_TYPES = [
    "dependencies",
    "devDependencies",
    "peerDependencies",
    "optionalDependencies",
    "resolutions",
    "packageManager",
]
OPTIONAL_NPM_TYPES = ["engines"]
UV_TYPES = [
    "project.dependencies",
    "project.optional-dependencies",
    "dependency-groups.dev",
    "dependency-groups.lint",
    "dependency-groups.test",
]
POETRY_TYPES = [
    "tool.poetry.dependencies",
    "tool.poetry.dev-dependencies",
    "tool.poetry.test-dependencies",
    "tool.poetry.group.dev.dependencies",
    "tool.poetry.group.test.dependencies",
]
GO_TYPES = ["deps", "replace"]

DOCKERFILE_NAME_RE = re.compile(r"^Dockerfile(\..+)?$")
COMPOSE_NAME_RES = (
    re.compile(r"^(?:docker-)?compose\.ya?ml$"),
    re.compile(r"^docker-.+\.ya?ml$"),
)
WORKFLOW_PATH_RE = re.compile(r"\.github/workflows/[^/]+\.ya?ml$")

DOCKER_TAG_RE = re.compile(r"^(v?\d+(?:\.\d+){0,2})(-.+)?$")
DOCKERFILE_FROM_RE = re.compile(r"^\s*FROM\s+(?:--platform=\S+\s+)?(\S+)", re.MULTILINE)
COMPOSE_IMAGE_RE = re.compile(r"^\s*image:\s*['\"]?([^\s'\"#]+)['\"]?", re.MULTILINE)
# shorthand `container: image:tag` only, not the mapping form
WORKFLOW_CONTAINER_RE = re.compile(
    r"^\s*container:\s*['\"]?([^\s'\"#{}]+:[^\s'\"#{}]+)['\"]?\s*$", re.MULTILINE
)
WORKFLOW_DOCKER_USES_RE = re.compile(
    r"^\s*-?\s*uses:\s*['\"]?docker://([^'\"#\s]+)['\"]?", re.MULTILINE
)
ACTIONS_USES_RE = re.compile(r"^\s*-?\s*uses:\s*['\"]?([^'\"#\s]+)['\"]?", re.MULTILINE)
ACTION_URL_RE = re.compile(r"^https?://([^/]+)/(.+)$")
HASH_RE = re.compile(r"^[0-9a-f]{7,40}$")

NPM_JSR_RE = re.compile(r"^npm:@jsr/([^_]+)__([^@]+)@(.+)$")
JSR_SCOPED_RE = re.compile(r"^jsr:@([^/]+)/([^@]+)@(.+)$")
URL_STRIP_RE = re.compile(r"^.*?://(.*?@)?(github\.com[:/])", re.IGNORECASE)
URL_PARTS_RE = re.compile(
    r"^([^/]+)/([^/#]+)?.*?/([0-9a-f]+|v?[0-9]+\.[0-9]+\.[0-9]+)$", re.IGNORECASE
)
GITHUB_SHORTHAND_RE = re.compile(r"^github:", re.IGNORECASE)
UV_VERSION_RE = re.compile(r"^[0-9.a-z]+$")


@dataclass(frozen=True)
class ParseOptions:
    """Which dependencies a manifest parse keeps."""

    types: Optional[List[str]] = None
    include: FrozenSet[Pattern] = frozenset()
    exclude: FrozenSet[Pattern] = frozenset()


@dataclass
class Manifest:
    """A parsed manifest and its dependencies in declaration order."""

    path: Path
    kind: str
    text: str
    dependencies: Dict[DependencyKey, Dependency] = field(default_factory=dict)

    @property
    def project_dir(self) -> Path:
        return self.path.parent

    @property
    def docker_file_kind(self) -> Optional[str]:
        """Which docker rewrite patterns apply to this file."""
        if self.kind == "actions":
            return "workflow"
        if self.kind != "docker":
            return None
        return "dockerfile" if is_dockerfile(self.path.name) else "compose"

    def add(self, dependency: Dependency) -> None:
        # the first declaration of a key wins
        self.dependencies.setdefault(dependency.key, dependency)


@dataclass(frozen=True)
class ActionRef:
    host: Optional[str]
    owner: str
    repo: str
    ref: str
    name: str
    is_hash: bool


@dataclass(frozen=True)
class DockerImageRef:
    registry: Optional[str]
    namespace: str
    repo: str
    tag: str
    image: str


def is_dockerfile(filename: str) -> bool:
    return bool(DOCKERFILE_NAME_RE.match(filename))


def is_compose_file(filename: str) -> bool:
    return any(pattern.match(filename) for pattern in COMPOSE_NAME_RES)


def is_workflow_file(path: Path) -> bool:
    return bool(WORKFLOW_PATH_RE.search(path.as_posix()))


def detect_manifest_kind(file_path: Path) -> str:
    """
    Detect the manifest kind from a file path.

    Args:
        file_path: Path to the manifest

    Returns:
        str: One of ``npm``, ``pypi``, ``go``, ``docker`` or ``actions``

    Raises:
        ParseError: If the file is not a supported manifest
    """
    path = Path(file_path)
    if is_workflow_file(path):
        return "actions"
    if path.name in MANIFEST_FILE_NAMES:
        return MANIFEST_FILE_NAMES[path.name]
    if is_dockerfile(path.name) or is_compose_file(path.name):
        return "docker"
    raise ParseError(f"Unsupported manifest: {path.name}", str(path))


def _safe_read_file(file_path: Path) -> str:
    """
    Read a manifest keeping its line endings.

    Raises:
        ParseError: If the file cannot be read
    """
    try:
        with open(file_path, encoding="utf-8", newline="") as f:
            return f.read()
    except UnicodeDecodeError as e:
        raise ParseError(f"Unable to open {file_path}: invalid UTF-8", str(file_path)) from e
    except OSError as e:
        raise ParseError(f"Unable to open {file_path}: {e}", str(file_path)) from e


def _parse_error(file_path: Path, function: str, message: str, exception: Exception) -> ParseError:
    log_parsing_error(message, "parsers", function, file_path=str(file_path), exception=exception)
    return ParseError(message, str(file_path))


def get_property(data: Any, dotted_path: str) -> Any:
    """Look up ``a.b.c`` in nested mappings; None when any part is missing."""
    current = data
    for part in dotted_path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def parse_jsr_dependency(value: str, package_name: Optional[str] = None) -> Tuple[Optional[str], str]:
    """
    Split a JSR value into the ``@scope/name`` package and its version.

    ``jsr:1.0.5`` carries no package name, so ``package_name`` supplies it.

    Returns:
        Tuple[Optional[str], str]: Package name (None when unknown) and version
    """
    match = NPM_JSR_RE.match(value) or JSR_SCOPED_RE.match(value)
    if match:
        return f"@{match.group(1)}/{match.group(2)}", match.group(3)
    if value.startswith("jsr:") and not value.startswith("jsr:@"):
        version = value[len("jsr:"):]
        if package_name and re.match(r"^@[^/]+/.+$", package_name):
            return package_name, version
        return None, version
    return None, ""


def parse_github_url(value: str) -> Optional[Tuple[str, str, str]]:
    """Extract ``(user, repo, ref)`` from a GitHub dependency URL or shorthand."""
    stripped = URL_STRIP_RE.sub("", value)
    stripped = GITHUB_SHORTHAND_RE.sub("", stripped)
    match = URL_PARTS_RE.match(stripped)
    if not match or not match.group(1) or not match.group(2):
        return None
    return match.group(1), match.group(2), match.group(3)


def parse_uv_dependencies(specs: Iterable[Any]) -> List[Tuple[str, str]]:
    """Extract ``(name, version)`` from PEP 508 strings with a single simple version."""
    result = []
    for spec in specs:
        if not isinstance(spec, str):
            continue
        parts = re.split(r"[<>=~]+", re.sub(r"\s+", "", spec))
        if len(parts) < 2:
            continue
        name, version = parts[0], parts[1]
        if name and UV_VERSION_RE.match(version):
            result.append((name, version))
    return result


def parse_go_mod_text(content: str) -> Tuple[Dict[str, str], Dict[str, str]]:
    """
    Parse require and replace directives of a go.mod.

    Indirect requirements are skipped. Replaced modules are removed from the
    requirements and their non-local replacement targets are returned
    instead.

    Returns:
        Tuple[Dict[str, str], Dict[str, str]]: Requirements and replace targets,
        each mapping module path to version
    """
    deps: Dict[str, str] = {}
    replace: Dict[str, str] = {}
    replaced_modules: Set[str] = set()
    in_require = False
    in_replace = False

    for line in content.splitlines():
        trimmed = line.strip()
        if re.match(r"^require\s*\(", trimmed):
            in_require = True
            continue
        if re.match(r"^replace\s*\(", trimmed):
            in_replace = True
            continue
        if trimmed == ")":
            in_require = in_replace = False
            continue
        if "// indirect" in trimmed:
            continue

        if in_replace or re.match(r"^replace\s+", trimmed):
            prefix = "" if in_replace else r"replace\s+"
            match = re.match(rf"^{prefix}(\S+)(?:\s+v\S+)?\s+=>\s+(\S+)\s+(v\S+)", trimmed)
            if match:
                source, target, target_version = match.groups()
                if not target.startswith(("./", "/", "../")):
                    replace[target] = target_version
                    replaced_modules.add(source)
            continue

        pattern = r"^(\S+)\s+(v\S+)" if in_require else r"^require\s+(\S+)\s+(v\S+)"
        match = re.match(pattern, trimmed)
        if match:
            deps[match.group(1)] = match.group(2)

    for module in replaced_modules:
        deps.pop(module, None)

    return deps, replace


def shorten_go_version(version: str) -> str:
    """Shorten the timestamp of a pseudo-version to its first seven digits."""
    return re.sub(r"(\d{7})\d{7}-[0-9a-f]{12}$", r"\1", version)


def parse_action_ref(uses: str) -> Optional[ActionRef]:
    """Parse the value of a workflow ``uses:`` key; local and docker actions yield None."""
    if uses.startswith(("docker://", "./")):
        return None
    url_match = ACTION_URL_RE.match(uses)
    host = url_match.group(1) if url_match else None
    rest = url_match.group(2) if url_match else uses

    path_part, sep, ref = rest.partition("@")
    if not sep or not ref:
        return None
    segments = path_part.split("/")
    if len(segments) < 2:
        return None
    name = f"{host}/{path_part}" if host else path_part
    return ActionRef(host, segments[0], segments[1], ref, name, bool(HASH_RE.match(ref)))


def parse_image_parts(image: str) -> Tuple[Optional[str], str, str]:
    """Split an image name into ``(registry, namespace, repo)``."""
    parts = image.split("/")
    if len(parts) == 1:
        return None, "library", parts[0]
    if len(parts) == 2 and "." not in parts[0] and ":" not in parts[0]:
        return None, parts[0], parts[1]
    return parts[0], "/".join(parts[1:-1]) or parts[1], parts[-1]


def parse_docker_image_ref(ref: str) -> Optional[DockerImageRef]:
    """
    Parse ``image:tag``.

    Digest-pinned refs, refs without a tag and tags that are not
    version-like yield None.
    """
    if ref.startswith("docker://"):
        ref = ref[len("docker://"):]
    if "@" in ref:
        return None

    colon_index = ref.rfind(":")
    if colon_index == -1 or ref.rfind("/") > colon_index:
        return None
    image = ref[:colon_index]
    tag = ref[colon_index + 1:]
    if not tag or not DOCKER_TAG_RE.match(tag):
        return None

    registry, namespace, repo = parse_image_parts(image)
    return DockerImageRef(registry, namespace, repo, tag, image)


def _docker_dependency(ref: DockerImageRef, file_path: Path) -> Dependency:
    return Dependency(
        "docker",
        ref.image,
        ref.tag,
        source_file=str(file_path),
        extra={"namespace": ref.namespace, "repo": ref.repo},
    )


def _add_docker_refs(
    manifest: Manifest, patterns: Iterable[Pattern], options: ParseOptions
) -> None:
    for pattern in patterns:
        for match in pattern.finditer(manifest.text):
            ref = parse_docker_image_ref(match.group(1))
            # only Docker Hub is supported
            if ref is None or ref.registry:
                continue
            if not can_include(ref.image, "docker", options.include, options.exclude, "docker"):
                continue
            manifest.add(_docker_dependency(ref, manifest.path))


def parse_package_json(file_path: Path, text: str, options: ParseOptions) -> Manifest:
    """
    Parse a package.json.

    Registry ranges, JSR values and GitHub URL dependencies are kept;
    local ``file:``/``link:`` values and anything else are skipped.

    Raises:
        ParseError: If the file is not a JSON object
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise _parse_error(file_path, "parse_package_json", f"Error parsing {file_path}: {e}", e) from e
    if not isinstance(data, dict):
        raise ParseError(f"Error parsing {file_path}: expected a JSON object", str(file_path))

    manifest = Manifest(file_path, "npm", text)
    for dep_type in options.types or NPM_TYPES:
        section = data.get(dep_type)
        if section is None:
            continue

        if isinstance(section, str):
            # packageManager: "pnpm@8.15.0"
            name, _, value = section.partition("@")
            if name and value and can_include(name, "npm", options.include, options.exclude, dep_type):
                manifest.add(
                    Dependency(dep_type, name, normalize_range(value), value, str(file_path))
                )
            continue

        if not isinstance(section, dict):
            continue

        for name, value in section.items():
            if not isinstance(value, str):
                continue
            if not can_include(name, "npm", options.include, options.exclude, dep_type):
                continue

            if is_jsr(value):
                package, version = parse_jsr_dependency(value, name)
                if version:
                    manifest.add(
                        Dependency(
                            dep_type,
                            name,
                            version,
                            value,
                            str(file_path),
                            extra={"source": "jsr", "package": package or name},
                        )
                    )
            elif semver.valid_range(value) is not None:
                manifest.add(
                    Dependency(dep_type, name, normalize_range(value), value, str(file_path))
                )
            elif url_parts := parse_github_url(value):
                user, repo, ref = url_parts
                manifest.add(
                    Dependency(
                        dep_type,
                        name,
                        value,
                        source_file=str(file_path),
                        extra={"source": "url", "user": user, "repo": repo, "ref": ref},
                    )
                )

    return manifest


def parse_pyproject(file_path: Path, text: str, options: ParseOptions) -> Manifest:
    """
    Parse a pyproject.toml for uv (PEP 621 lists) and Poetry (tables).

    Raises:
        ParseError: If the file is not valid TOML
    """
    try:
        data = toml.loads(text)
    except toml.TomlDecodeError as e:
        raise _parse_error(file_path, "parse_pyproject", f"Error parsing {file_path}: {e}", e) from e

    manifest = Manifest(file_path, "pypi", text)

    def add(dep_type: str, name: str, value: str) -> None:
        if can_include(name, "pypi", options.include, options.exclude, dep_type):
            manifest.add(Dependency(dep_type, name, normalize_range(value), value, str(file_path)))

    for dep_type in options.types or UV_TYPES + POETRY_TYPES:
        section = get_property(data, dep_type)
        if isinstance(section, list):
            for name, version in parse_uv_dependencies(section):
                add(dep_type, name, version)
        elif isinstance(section, dict):
            for name, value in section.items():
                if isinstance(value, list):
                    # optional-dependencies: extra name -> requirement list
                    for dep_name, version in parse_uv_dependencies(value):
                        add(dep_type, dep_name, version)
                elif isinstance(value, str) and semver.valid_range(value) is not None:
                    add(dep_type, name, value)

    return manifest


def parse_go_mod(file_path: Path, text: str, options: ParseOptions) -> Manifest:
    """Parse a go.mod into ``deps`` and ``replace`` dependencies."""
    deps, replace = parse_go_mod_text(text)
    manifest = Manifest(file_path, "go", text)
    sections = {"deps": deps, "replace": replace}

    for dep_type in options.types or GO_TYPES:
        for name, value in sections.get(dep_type, {}).items():
            if can_include(name, "go", options.include, options.exclude, dep_type):
                manifest.add(
                    Dependency(
                        dep_type,
                        name,
                        shorten_go_version(value),
                        semver.strip_v(value),
                        str(file_path),
                    )
                )

    return manifest


def parse_docker_file(file_path: Path, text: str, options: ParseOptions) -> Manifest:
    """Parse image references from a Dockerfile or a compose file."""
    manifest = Manifest(file_path, "docker", text)
    pattern = DOCKERFILE_FROM_RE if is_dockerfile(file_path.name) else COMPOSE_IMAGE_RE
    _add_docker_refs(manifest, (pattern,), options)
    return manifest


def parse_workflow(file_path: Path, text: str, options: ParseOptions) -> Manifest:
    """
    Parse a GitHub Actions workflow.

    Yields ``actions`` dependencies for ``uses:`` references and ``docker``
    dependencies for job containers, service images and ``docker://`` steps.
    """
    manifest = Manifest(file_path, "actions", text)

    for match in ACTIONS_USES_RE.finditer(text):
        action = parse_action_ref(match.group(1))
        if action is None:
            continue
        if not can_include(action.name, "actions", options.include, options.exclude, "actions"):
            continue
        manifest.add(
            Dependency(
                "actions",
                action.name,
                action.ref,
                source_file=str(file_path),
                extra={
                    "host": action.host,
                    "owner": action.owner,
                    "repo": action.repo,
                    "is_hash": action.is_hash,
                },
            )
        )

    _add_docker_refs(
        manifest,
        (WORKFLOW_CONTAINER_RE, COMPOSE_IMAGE_RE, WORKFLOW_DOCKER_USES_RE),
        options,
    )
    return manifest


ParserFn = Callable[[Path, str, ParseOptions], Manifest]

PARSERS: Dict[str, ParserFn] = {
    "npm": parse_package_json,
    "pypi": parse_pyproject,
    "go": parse_go_mod,
    "docker": parse_docker_file,
    "actions": parse_workflow,
}


def parse_manifest(file_path: Path, options: Optional[ParseOptions] = None) -> Manifest:
    """
    Read and parse any supported manifest.

    Args:
        file_path: Path to the manifest
        options: Type selection and include/exclude patterns

    Returns:
        Manifest: The parsed manifest

    Raises:
        ParseError: If the file is unsupported, unreadable or malformed
    """
    path = Path(file_path).resolve()
    kind = detect_manifest_kind(path)
    text = _safe_read_file(path)
    return PARSERS[kind](path, text, options or ParseOptions())


def resolve_workflow_files(directory: Path) -> List[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        path.resolve()
        for path in directory.iterdir()
        if path.is_file() and re.search(r"\.ya?ml$", path.name)
    )


def _workflow_dir_for(directory: Path) -> Path:
    posix = directory.as_posix()
    if posix.endswith(".github/workflows"):
        return directory
    if posix.endswith(".github"):
        return directory / "workflows"
    return directory / ".github" / "workflows"


def resolve_files(
    files: Optional[Iterable[str]] = None, cwd: Optional[Path] = None
) -> Tuple[List[Path], Set[Path]]:
    """
    Resolve manifest paths to check.

    Without ``files`` each manifest name is searched from ``cwd`` upward,
    together with the nearest ``.github/workflows`` directory. Directories
    in ``files`` are scanned for manifests and workflows.

    Returns:
        Tuple[List[Path], Set[Path]]: Files in order, and those named
        explicitly (which are checked even when their mode is disabled)

    Raises:
        ParseError: If a given path does not exist
    """
    base = (cwd or Path.cwd()).resolve()
    resolved: List[Path] = []
    explicit: Set[Path] = set()

    def add(path: Path, is_explicit: bool = False) -> None:
        if path not in resolved:
            resolved.append(path)
        if is_explicit:
            explicit.add(path)

    if files:
        for entry in files:
            path = Path(entry)
            if not path.is_absolute():
                path = base / path
            if path.is_file():
                add(path.resolve(), True)
            elif path.is_dir():
                for filename in (*MANIFEST_FILE_NAMES, *DOCKER_EXACT_FILE_NAMES):
                    candidate = path / filename
                    if candidate.is_file():
                        add(candidate.resolve())
                for workflow in resolve_workflow_files(_workflow_dir_for(path.resolve())):
                    add(workflow, True)
            elif path.exists():
                raise ParseError(f"{entry} is neither a file nor directory", str(path))
            else:
                raise ParseError(f"Unable to open {entry}: no such file or directory", str(path))
    else:
        for filename in (*MANIFEST_FILE_NAMES, *DOCKER_EXACT_FILE_NAMES):
            found = find_up(filename, base)
            if found:
                add(found.resolve())
        directory = base
        while True:
            workflow_dir = directory / ".github" / "workflows"
            if workflow_dir.is_dir():
                for workflow in resolve_workflow_files(workflow_dir):
                    add(workflow)
                break
            if directory.parent == directory:
                break
            directory = directory.parent

    return resolved, explicit
