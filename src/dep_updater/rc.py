"""
rc-style configuration loading for ``.npmrc``.

Files are read from the system, user and nearest project location in
increasing order of precedence, then ``npm_config_*`` environment variables
override them. Lines are ``key = value`` pairs; a file that starts with
``{`` is read as JSON.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


def parse_ini(content: str) -> Dict[str, Any]:
    """Parse ``key = value`` lines, skipping blanks and ``#``/``;`` comments."""
    if content.lstrip().startswith("{"):
        return json.loads(content)

    result: Dict[str, Any] = {}
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", ";")):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        result[key.strip()] = value.strip()
    return result


def _read_config_file(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, encoding="utf-8") as f:
            return parse_ini(f.read())
    except (OSError, ValueError) as e:
        logger.debug(f"Skipping rc file {path}: {e}")
        return None


def find_up(filename: str, start: Optional[Path] = None) -> Optional[Path]:
    """Find ``filename`` in ``start`` or its nearest parent directory."""
    directory = (start or Path.cwd()).resolve()
    while True:
        candidate = directory / filename
        if candidate.is_file():
            return candidate
        if directory.parent == directory:
            return None
        directory = directory.parent


def parse_env_vars(prefix: str, env: Mapping[str, str]) -> Dict[str, Any]:
    """Collect variables starting with ``prefix`` (case-insensitive); ``__`` nests keys."""
    result: Dict[str, Any] = {}
    prefix_lower = prefix.lower()
    for key, value in env.items():
        if not key.lower().startswith(prefix_lower):
            continue
        key_path = [part for part in key[len(prefix):].split("__") if part]
        if not key_path:
            continue
        cursor = result
        for part in key_path[:-1]:
            nested = cursor.setdefault(part, {})
            if not isinstance(nested, dict):
                break
            cursor = nested
        else:
            cursor[key_path[-1]] = value
    return result


def load_rc(
    name: str,
    defaults: Optional[Dict[str, Any]] = None,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Load a flat key/value mapping for ``name`` (e.g. ``npm``).

    Args:
        name: Application name, selecting ``.{name}rc`` files and ``{name}_`` variables
        defaults: Values used when no source sets a key
        cwd: Directory to start the upward project search from
        env: Environment mapping, defaults to ``os.environ``
        home: Home directory, defaults to ``Path.home()``

    Returns:
        Dict[str, Any]: Merged configuration; ``configs`` lists the files read
    """
    env = os.environ if env is None else env
    home = home or Path.home()

    configs: List[Dict[str, Any]] = [dict(defaults or {})]
    config_files: List[Path] = []

    def add_config_file(path: Optional[Path]) -> None:
        if path is None or path in config_files or not path.is_file():
            return
        config = _read_config_file(path)
        if config is not None:
            configs.append(config)
            config_files.append(path)

    if os.name != "nt":
        add_config_file(Path("/etc") / name / "config")
        add_config_file(Path("/etc") / f"{name}rc")

    add_config_file(home / ".config" / name / "config")
    add_config_file(home / ".config" / name)
    add_config_file(home / f".{name}" / "config")
    add_config_file(home / f".{name}rc")

    add_config_file(find_up(f".{name}rc", cwd))

    env_config = parse_env_vars(f"{name}_config_", env)
    if isinstance(env_config.get("config"), str):
        add_config_file(Path(env_config["config"]))

    merged: Dict[str, Any] = {}
    for config in configs:
        merged.update(config)
    merged.update(env_config)
    if config_files:
        merged["configs"] = [str(path) for path in config_files]
        merged["config"] = str(config_files[-1])
    return merged
