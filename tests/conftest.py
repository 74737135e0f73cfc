"""
Shared fixtures for dep-updater tests.
"""

import json

import httpx
import pytest

from src.dep_updater.cache_manager import reset_caches
from src.dep_updater.cli_config import NetworkConfig, reset_config


class FakeRegistry:
    """Serve canned JSON responses by URL through an httpx mock transport.

    Unknown URLs answer 404, like a registry without the package.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, url, data=None, status=200, headers=None):
        self.routes[url] = (status, data, headers or {})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url not in self.routes:
            return httpx.Response(404, json={"error": "not found"})
        status, data, headers = self.routes[url]
        return httpx.Response(status, content=json.dumps(data).encode(), headers={
            "Content-Type": "application/json",
            **headers,
        })

    def requested(self, url):
        return [request for request in self.requests if str(request.url) == url]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset global configuration and memo caches around every test."""
    reset_config()
    reset_caches()
    yield
    reset_config()
    reset_caches()


@pytest.fixture
def temp_dir(tmp_path):
    """Temporary project directory."""
    return tmp_path


@pytest.fixture
def network():
    """Network settings pointing at test hosts."""
    return NetworkConfig(
        npm_registry="https://registry.test",
        pypi_api_url="https://pypi.test",
        jsr_api_url="https://jsr.test",
        forge_api_url="https://api.github.com",
        docker_api_url="https://hub.test",
        go_proxy_url="https://proxy.test",
        fetch_timeout=5.0,
        max_sockets=8,
        go_lookup_max_gap=10,
        docker_max_pages=3,
    )


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest.fixture
def sample_package_json(temp_dir):
    """Create a sample package.json file."""
    content = {
        "name": "test-project",
        "version": "1.0.0",
        "dependencies": {
            "react": "^18.2.0",
            "lodash": "4.17.21",
            "local-lib": "file:../local-lib",
        },
        "devDependencies": {
            "typescript": "~5.0",
        },
        "engines": {
            "node": ">=18",
        },
    }

    file_path = temp_dir / "package.json"
    file_path.write_text(json.dumps(content, indent=2) + "\n")
    return file_path


@pytest.fixture
def sample_pyproject(temp_dir):
    """Create a sample pyproject.toml with uv and Poetry sections."""
    content = """[project]
name = "test-project"
version = "1.0.0"
dependencies = [
    "httpx>=0.24.0",
    "rich",
    "click==8.1.7",
]

[tool.poetry.dependencies]
python = "^3.11"
requests = "^2.28"
"""

    file_path = temp_dir / "pyproject.toml"
    file_path.write_text(content)
    return file_path


@pytest.fixture
def sample_go_mod(temp_dir):
    """Create a sample go.mod and a source file importing a module."""
    content = """module example.com/app

go 1.21

require (
	example.com/mod/v3 v3.0.0
	github.com/other/lib v1.2.0
	github.com/indirect/dep v0.1.0 // indirect
)
"""

    file_path = temp_dir / "go.mod"
    file_path.write_text(content)
    (temp_dir / "main.go").write_text(
        'package main\n\nimport (\n\t"example.com/mod/v3"\n\t"example.com/mod/v3/sub"\n)\n'
    )
    return file_path


@pytest.fixture
def sample_workflow(temp_dir):
    """Create a sample GitHub Actions workflow."""
    content = """name: ci
on: push
jobs:
  test:
    runs-on: ubuntu-latest
    container: node:18
    services:
      db:
        image: postgres:15
    steps:
      - uses: actions/checkout@v4
      - uses: actions/setup-node@v4.0.0
      - uses: ./local-action
      - uses: docker://alpine:3.18
"""

    workflow_dir = temp_dir / ".github" / "workflows"
    workflow_dir.mkdir(parents=True)
    file_path = workflow_dir / "ci.yml"
    file_path.write_text(content)
    return file_path
