"""
Registry credential resolution.

npm credentials come from an rc mapping (``.npmrc`` keys) using the
longest-prefix walk npm itself performs. Forge tokens come from the
environment.
"""

import base64
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

from .cache_manager import MemoCache
from .error_handling import log_credential_error

DEFAULT_NPM_REGISTRY = "https://registry.npmjs.org"

FORGE_TOKEN_FALLBACK_VARS = (
    "DEP_UPDATER_GITHUB_API_TOKEN",
    "GITHUB_API_TOKEN",
    "GH_TOKEN",
    "GITHUB_TOKEN",
    "HOMEBREW_GITHUB_API_TOKEN",
)

_ENV_VAR_RE = re.compile(r"^\$\{?([^}]*)\}?$")
_SCOPE_RE = re.compile(r"@[a-z0-9][\w.-]+")


@dataclass(frozen=True)
class RegistryAuth:
    token: str
    type: str
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def header(self) -> str:
        return f"{self.type} {self.token}"


@dataclass(frozen=True)
class AuthAndRegistry:
    auth: Optional[RegistryAuth]
    registry: str


def normalize_url(url: str) -> str:
    return url[:-1] if url.endswith("/") else url


def replace_env_var(token: str, env: Optional[Mapping[str, str]] = None) -> str:
    """Expand a token written as ``${VAR}`` or ``$VAR``; unset variables become empty."""
    env = os.environ if env is None else env
    return _ENV_VAR_RE.sub(lambda m: env.get(m.group(1), ""), token)


def _lookup(config: Mapping[str, Any], reg_url: str, suffix: str) -> Optional[str]:
    value = config.get(f"{reg_url}{suffix}") or config.get(f"{reg_url}/{suffix}")
    return value if isinstance(value, str) and value else None


def _b64decode(value: str) -> str:
    try:
        return base64.b64decode(value).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        log_credential_error("Unable to decode base64 npm password", "auth", "_b64decode")
        return ""


def get_auth_info_for_url(
    reg_url: str, config: Mapping[str, Any], env: Optional[Mapping[str, str]] = None
) -> Optional[RegistryAuth]:
    """Check bearer, then username/password, then legacy auth keys for ``reg_url``."""
    bearer = _lookup(config, reg_url, ":_authToken")
    if bearer:
        token = replace_env_var(bearer, env)
        if token:
            return RegistryAuth(token=token, type="Bearer")

    username = _lookup(config, reg_url, ":username")
    password = _lookup(config, reg_url, ":_password")
    if username and password:
        decoded = _b64decode(replace_env_var(password, env))
        token = base64.b64encode(f"{username}:{decoded}".encode("utf-8")).decode("ascii")
        return RegistryAuth(token=token, type="Basic", username=username, password=decoded)

    legacy = _lookup(config, reg_url, ":_auth")
    if legacy:
        token = replace_env_var(legacy, env)
        if token:
            return RegistryAuth(token=token, type="Basic")

    return None


def registry_auth_token(
    registry_url: str, config: Mapping[str, Any], env: Optional[Mapping[str, str]] = None
) -> Optional[RegistryAuth]:
    """
    Resolve credentials for a registry URL.

    Walks from the full path up to ``/``, checking ``//{host}{path}`` keys
    at each level, then falls back to the global ``_auth``.

    Args:
        registry_url: Registry URL, possibly protocol-relative
        config: rc mapping
        env: Environment used for ``${VAR}`` expansion

    Returns:
        Optional[RegistryAuth]: Credentials, or None when none are configured
    """
    if registry_url.startswith("//"):
        registry_url = f"http:{registry_url}"
    parts = urlsplit(registry_url)
    host = parts.netloc
    path = parts.path or "/"

    while True:
        reg_url = f"//{host}{path.rstrip('/')}"
        auth = get_auth_info_for_url(reg_url, config, env)
        if auth:
            return auth
        if path == "/":
            break
        parent = path.rstrip("/").rsplit("/", 1)[0]
        path = f"{parent}/" if parent else "/"

    global_auth = config.get("_auth")
    if isinstance(global_auth, str) and global_auth:
        token = replace_env_var(global_auth, env)
        if token:
            return RegistryAuth(token=token, type="Basic")
    return None


def scope_registry_url(scope: str, config: Mapping[str, Any]) -> str:
    url = config.get(f"{scope}:registry") or config.get("registry") or DEFAULT_NPM_REGISTRY
    return url if url.endswith("/") else f"{url}/"


class NpmAuthResolver:
    """Resolve the registry and credentials per package, cached per (scope, registry)."""

    def __init__(
        self,
        npmrc: Mapping[str, Any],
        env: Optional[Mapping[str, str]] = None,
        cache: Optional[MemoCache] = None,
    ):
        self.npmrc = npmrc
        self.env = env
        self.cache = cache if cache is not None else MemoCache("npm.auth")

    def get_auth_and_registry(self, name: str, registry: str) -> AuthAndRegistry:
        """
        Resolve the registry and credentials for ``name``.

        Scoped names use ``@scope:registry`` when it is configured and has
        credentials, otherwise ``registry``.
        """
        scope = ""
        if name.startswith("@"):
            match = _SCOPE_RE.match(name)
            scope = match.group(0) if match else ""
        return self.cache.get_or_compute(
            (scope, registry), lambda: self._resolve(name, scope, registry)
        )

    def _resolve(self, name: str, scope: str, registry: str) -> AuthAndRegistry:
        default = AuthAndRegistry(registry_auth_token(registry, self.npmrc, self.env), registry)
        if not name.startswith("@"):
            return default

        url = normalize_url(scope_registry_url(scope, self.npmrc))
        if url == registry:
            return default

        scoped_auth = registry_auth_token(url, self.npmrc, self.env)
        if scoped_auth and scoped_auth.token:
            return AuthAndRegistry(scoped_auth, url)
        return default


class ForgeTokenResolver:
    """Resolve bearer tokens for GitHub-compatible forges."""

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self.env = os.environ if env is None else env
        self.tokens_by_host = self._parse_host_tokens(
            self.env.get("DEP_UPDATER_FORGE_TOKENS", "")
        )

    @staticmethod
    def _parse_host_tokens(value: str) -> Dict[str, str]:
        tokens: Dict[str, str] = {}
        for entry in value.split(","):
            host, sep, token = entry.partition(":")
            if sep and host:
                tokens[host.strip()] = token.strip()
        return tokens

    def get_token(self, url: str) -> Optional[str]:
        """Token for the host of ``url``, falling back to the generic variables."""
        hostname = urlsplit(url).hostname
        if hostname and self.tokens_by_host.get(hostname):
            return self.tokens_by_host[hostname]
        for var in FORGE_TOKEN_FALLBACK_VARS:
            if self.env.get(var):
                return self.env[var]
        return None
