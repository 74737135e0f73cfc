"""
Configuration management for dep-updater.

Settings are grouped in dataclass sections (network, resolution, logging)
loaded from an optional config file and overridden by ``DEP_UPDATER_*``
environment variables. Per-project settings (include/exclude patterns,
dependency types, registry, cooldown and pins) live in the ``project``
section of a config file next to each manifest.
"""

import json
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from rich.console import Console

from . import __version__
from .error_handling import ConfigError

console = Console(stderr=True)

CONFIG_FILE_NAMES = (".dep-updater.json", ".dep-updater.yaml", ".dep-updater.yml")
SUPPORTED_MODES = ("npm", "pypi", "go", "actions", "docker")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class NetworkConfig:
    """Registry endpoints, timeouts and concurrency limits."""

    user_agent: str = f"dep-updater/{__version__}"
    npm_registry: str = "https://registry.npmjs.org"
    pypi_api_url: str = "https://pypi.org"
    jsr_api_url: str = "https://jsr.io"
    forge_api_url: str = "https://api.github.com"
    docker_api_url: str = "https://hub.docker.com"
    # None means: derive from the GOPROXY environment variable
    go_proxy_url: Optional[str] = None
    fetch_timeout: float = 5.0
    # None means: half of fetch_timeout
    go_lookup_timeout: Optional[float] = None
    max_sockets: int = 96
    go_lookup_batch_size: int = 20
    go_lookup_max_gap: int = 100
    docker_max_pages: int = 10

    @property
    def effective_go_lookup_timeout(self) -> float:
        if self.go_lookup_timeout is not None:
            return self.go_lookup_timeout
        return self.fetch_timeout / 2


@dataclass
class ResolutionConfig:
    """Defaults for a run when the CLI does not say otherwise."""

    modes: List[str] = field(default_factory=lambda: list(SUPPORTED_MODES))
    cooldown: Optional[str] = None
    include_engines: bool = False


@dataclass
class LoggingConfig:
    """Log level for the error handler and event loggers, plus an optional JSON log file."""

    log_level: str = "WARNING"
    enable_file_logging: bool = False
    log_file_path: Optional[str] = None


@dataclass
class UpdaterConfig:
    """Process-wide settings; per-project settings live in ProjectConfig."""

    network: NetworkConfig = field(default_factory=NetworkConfig)
    resolution: ResolutionConfig = field(default_factory=ResolutionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@dataclass
class ProjectConfig:
    """Per-project settings read from the directory holding a manifest."""

    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    types: Optional[List[str]] = None
    registry: Optional[str] = None
    cooldown: Optional[str] = None
    pin: Dict[str, str] = field(default_factory=dict)
    source: Optional[Path] = None


CONFIG_SECTIONS = ("network", "resolution", "logging")

# DEP_UPDATER_* variable -> (section, attribute, converter)
ENV_OVERRIDES = {
    "DEP_UPDATER_USER_AGENT": ("network", "user_agent", str),
    "DEP_UPDATER_REGISTRY": ("network", "npm_registry", str),
    "DEP_UPDATER_PYPI_API_URL": ("network", "pypi_api_url", str),
    "DEP_UPDATER_JSR_API_URL": ("network", "jsr_api_url", str),
    "DEP_UPDATER_FORGE_API_URL": ("network", "forge_api_url", str),
    "DEP_UPDATER_DOCKER_API_URL": ("network", "docker_api_url", str),
    "DEP_UPDATER_TIMEOUT": ("network", "fetch_timeout", float),
    "DEP_UPDATER_SOCKETS": ("network", "max_sockets", int),
    "DEP_UPDATER_COOLDOWN": ("resolution", "cooldown", str),
    "DEP_UPDATER_LOG_LEVEL": ("logging", "log_level", str.upper),
    "DEP_UPDATER_LOG_FILE": ("logging", "log_file_path", str),
}

_global_config: Optional[UpdaterConfig] = None


def validate_config_values(config: UpdaterConfig) -> List[str]:
    """
    Check value ranges across all sections.

    Args:
        config: Configuration to check

    Returns:
        List[str]: One message per problem, empty when the config is usable
    """
    errors = []

    network = config.network
    positive = (
        "fetch_timeout",
        "max_sockets",
        "go_lookup_batch_size",
        "go_lookup_max_gap",
        "docker_max_pages",
    )
    for key in positive:
        if getattr(network, key) <= 0:
            errors.append(f"network.{key} must be positive")
    if network.go_lookup_timeout is not None and network.go_lookup_timeout <= 0:
        errors.append("network.go_lookup_timeout must be positive")
    for key in ("npm_registry", "pypi_api_url", "jsr_api_url", "forge_api_url", "docker_api_url"):
        value = getattr(network, key)
        if not isinstance(value, str) or not value.startswith(("http://", "https://")):
            errors.append(f"network.{key} must be an http(s) URL")

    unknown_modes = [mode for mode in config.resolution.modes if mode not in SUPPORTED_MODES]
    if unknown_modes:
        errors.append(f"resolution.modes contains unknown modes: {', '.join(unknown_modes)}")

    if config.logging.log_level.upper() not in LOG_LEVELS:
        errors.append(f"logging.log_level must be one of {', '.join(LOG_LEVELS)}")

    return errors


def load_config_file(config_path: Path) -> Optional[Dict[str, Any]]:
    """
    Read a JSON or YAML config file, picking the parser by suffix.

    Returns None when the file does not exist.

    Raises:
        ConfigError: If the file exists but is not a valid mapping
    """
    if not config_path.exists():
        return None

    is_yaml = config_path.suffix.lower() in (".yaml", ".yml")
    try:
        text = config_path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) if is_yaml else json.loads(text)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Unable to parse config file {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return data


def find_config_file(directory: Optional[Path] = None) -> Optional[Path]:
    """Return the first config file in ``directory`` (default: cwd), then ~/.config/dep-updater."""
    user_dir = Path.home() / ".config" / "dep-updater"
    candidates = [(directory or Path.cwd()) / name for name in CONFIG_FILE_NAMES]
    candidates += [user_dir / "config.json", user_dir / "config.yaml"]
    return next((path for path in candidates if path.exists()), None)


def load_environment_overrides(config: UpdaterConfig) -> None:
    """Apply ``DEP_UPDATER_*`` variables; unparsable numbers are ignored with a warning."""
    for variable, (section, key, convert) in ENV_OVERRIDES.items():
        raw = os.environ.get(variable)
        if not raw:
            continue
        try:
            value = convert(raw)
        except ValueError:
            console.print(f"⚠️  Ignoring {variable}={raw!r}: not a number", style="yellow")
            continue
        setattr(getattr(config, section), key, value)

    if config.logging.log_file_path and "DEP_UPDATER_LOG_FILE" in os.environ:
        config.logging.enable_file_logging = True


def apply_config_section(
    config: Any, section_data: Dict[str, Any], section_name: str
) -> None:
    """Copy known keys of ``section_data`` onto a config section, warning on the rest."""
    if not isinstance(section_data, dict):
        console.print(f"⚠️  '{section_name}' must be a mapping, ignoring it", style="yellow")
        return
    unknown = [key for key in section_data if not hasattr(config, key)]
    for key, value in section_data.items():
        if key not in unknown:
            setattr(config, key, value)
    if unknown:
        console.print(
            f"⚠️  Ignoring unknown keys in '{section_name}': {', '.join(unknown)}", style="yellow"
        )


def config_from_mapping(data: Dict[str, Any]) -> UpdaterConfig:
    """Build a config from defaults plus the sections present in ``data``."""
    config = UpdaterConfig()
    for section in CONFIG_SECTIONS:
        if section in data:
            apply_config_section(getattr(config, section), data[section], section)
    return config


def load_config() -> UpdaterConfig:
    """
    Build the effective configuration.

    Precedence, lowest first: defaults, the config file found by
    ``find_config_file``, then environment variables. A section that fails
    validation falls back to its defaults.
    """
    global _global_config

    if _global_config is not None:
        return _global_config

    file_data: Optional[Dict[str, Any]] = None
    config_file = find_config_file()
    if config_file:
        try:
            file_data = load_config_file(config_file)
        except ConfigError as e:
            console.print(f"⚠️  {e}", style="yellow")
    config = config_from_mapping(file_data or {})

    load_environment_overrides(config)

    errors = validate_config_values(config)
    if errors:
        console.print("⚠️  Invalid configuration, falling back to defaults for:", style="red")
        for error in errors:
            console.print(f"  • {error}", style="red")
        config = _merge_valid_sections(config)

    _global_config = config
    return config


def _merge_valid_sections(config: UpdaterConfig) -> UpdaterConfig:
    defaults = UpdaterConfig()
    for section in CONFIG_SECTIONS:
        candidate = replace(defaults, **{section: getattr(config, section)})
        if validate_config_values(candidate):
            setattr(config, section, getattr(defaults, section))
    return config


def get_config() -> UpdaterConfig:
    return load_config()


def reset_config() -> None:
    """Forget the cached configuration so the next access reloads it."""
    global _global_config
    _global_config = None


def _string_list(value: Any, key: str, source: Path) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"'{key}' in {source} must be a list of strings")
    return list(value)


def load_project_config(project_dir: Path) -> ProjectConfig:
    """
    Load the ``project`` section of the config file in ``project_dir``.

    Args:
        project_dir: Directory containing the manifest

    Returns:
        ProjectConfig: Project settings, empty when no config file exists

    Raises:
        ConfigError: If the file or its ``project`` section is malformed
    """
    for name in CONFIG_FILE_NAMES:
        path = project_dir / name
        data = load_config_file(path)
        if data is None:
            continue

        section = data.get("project") or {}
        if not isinstance(section, dict):
            raise ConfigError(f"'project' in {path} must be a mapping")

        pin = section.get("pin") or {}
        if not isinstance(pin, dict):
            raise ConfigError(f"'pin' in {path} must be a mapping of name to range")

        types = section.get("types")
        cooldown = section.get("cooldown")
        registry = section.get("registry")
        return ProjectConfig(
            include=_string_list(section.get("include"), "include", path),
            exclude=_string_list(section.get("exclude"), "exclude", path),
            types=_string_list(types, "types", path) if types is not None else None,
            registry=str(registry) if registry else None,
            cooldown=str(cooldown) if cooldown is not None else None,
            pin={str(k): str(v) for k, v in pin.items()},
            source=path,
        )

    return ProjectConfig()


def create_sample_config() -> str:
    """Render the default settings, plus an empty ``project`` section, as JSON."""
    sample = asdict(UpdaterConfig())
    sample["project"] = {"include": [], "exclude": [], "pin": {}}
    return json.dumps(sample, indent=2)
