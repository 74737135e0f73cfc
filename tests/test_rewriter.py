"""
Manifest rewriting tests.
Tests that updates touch only the declared text and keep its shape.
"""

import json

from src.dep_updater.dependency import Dependency, UpdateResult
from src.dep_updater.rewriter import (
    format_version_precision,
    normalize_range,
    remove_go_replace,
    rewrite_go_imports,
    update_docker_refs,
    update_go_mod,
    update_npm_range,
    update_package_json,
    update_pyproject,
    update_workflow_file,
)


def make_update(dep_type, name, old, new, old_original=None, **kwargs):
    return UpdateResult(Dependency(dep_type, name, old, old_original), new, **kwargs)


class TestRangeFormatting:
    """Test how new versions are shaped like the declared range."""

    def test_normalize_range(self):
        """Test expanding a single partial version."""
        assert normalize_range("^5") == "^5.0.0"
        assert normalize_range("~1.2") == "~1.2.0"
        assert normalize_range("1.2.3 - 2") == "1.2.3 - 2"

    def test_update_npm_range_keeps_operator(self):
        """Test that the operator survives the substitution."""
        assert update_npm_range("^1.2.3", "2.0.1", "^1.2.3") == "^2.0.1"
        assert update_npm_range("~6.0.0", "7.7.6", "~6.0.0") == "~7.7.6"
        assert update_npm_range("7.0.0", "7.7.6", "7.0.0") == "7.7.6"

    def test_update_npm_range_keeps_precision(self):
        """Test that a shortened declaration stays short."""
        assert update_npm_range("^5.0.0", "6.1.0", "^5") == "^6"
        assert update_npm_range("~1.2.0", "1.4.3", "~1.2") == "~1.4"
        assert update_npm_range(">= 1.2.0", "2.3.4", ">= 1.2") == ">= 2.3"
        assert update_npm_range(">=1.2.0", "2.3.4", ">=1.2") == ">=2.3"

    def test_format_version_precision(self):
        """Test shaping a version like a tag."""
        assert format_version_precision("5.2.1", "v4") == "v5"
        assert format_version_precision("5.2.1", "18.19", "-alpine") == "5.2-alpine"
        assert format_version_precision("5.2.1", "1.2.3") == "5.2.1"


class TestPackageJson:
    """Test package.json rewriting."""

    def test_only_the_named_dependency_changes(self):
        """Test that equal version literals elsewhere are untouched."""
        text = json.dumps(
            {
                "name": "app",
                "version": "1.0.0",
                "dependencies": {"foo": "1.0.0", "bar": "1.0.0"},
            },
            indent=2,
        )
        update = make_update("dependencies", "foo", "1.0.0", "2.0.0", "1.0.0")

        result = json.loads(update_package_json(text, [update]))

        assert result["dependencies"] == {"foo": "2.0.0", "bar": "1.0.0"}
        assert result["version"] == "1.0.0"

    def test_package_manager_field(self):
        """Test rewriting the packageManager field."""
        text = '{\n  "packageManager": "pnpm@8.15.0"\n}\n'
        update = make_update("packageManager", "pnpm", "8.15.0", "9.1.0", "8.15.0")

        assert update_package_json(text, [update]) == '{\n  "packageManager": "pnpm@9.1.0"\n}\n'

    def test_formatting_is_preserved(self):
        """Test that whitespace and line endings survive."""
        text = '{\r\n    "dependencies": {\r\n        "foo": "^1.0.0"\r\n    }\r\n}\r\n'
        update = make_update("dependencies", "foo", "^1.0.0", "^1.1.0", "^1.0.0")

        assert update_package_json(text, [update]) == text.replace("^1.0.0", "^1.1.0")


class TestPyproject:
    """Test pyproject.toml rewriting."""

    def test_poetry_assignment(self):
        """Test that only the exact key is rewritten."""
        text = 'requests = "^2.28"\nrequests-mock = "^2.28"\n'
        update = make_update("tool.poetry.dependencies", "requests", "^2.28.0", "^2.32", "^2.28")

        assert update_pyproject(text, [update]) == 'requests = "^2.32"\nrequests-mock = "^2.28"\n'

    def test_poetry_comparison_replaced_by_version(self):
        """Test that a Poetry >= constraint is replaced by the bare new version."""
        text = 'requests = ">=2.28"\n'
        update = make_update("tool.poetry.dependencies", "requests", ">=2.28.0", "2.32.3", ">=2.28")

        assert update_pyproject(text, [update]) == 'requests = "2.32.3"\n'

    def test_uv_requirement_string(self):
        """Test rewriting a PEP 508 requirement string."""
        text = 'dependencies = [\n    "httpx>=0.24.0",\n    "httpx-sse>=0.24.0",\n]\n'
        update = make_update("project.dependencies", "httpx", "0.24.0", "0.27.0", "0.24.0")

        result = update_pyproject(text, [update])

        assert '"httpx>=0.27.0"' in result
        assert '"httpx-sse>=0.24.0"' in result


class TestGoMod:
    """Test go.mod rewriting."""

    GO_MOD = """module example.com/app

go 1.21

require (
	example.com/mod/v3 v3.0.0
	github.com/other/lib v1.2.0
)

replace github.com/other/lib v1.2.0 => github.com/fork/lib v1.2.1
"""

    def test_same_major_update(self):
        """Test a require update and removal of its replace directive."""
        update = make_update("deps", "github.com/other/lib", "v1.2.0", "1.3.0", "1.2.0")

        text, rewrites = update_go_mod(self.GO_MOD, [update])

        assert "\tgithub.com/other/lib v1.3.0\n" in text
        assert "replace" not in text
        assert rewrites == {}

    def test_major_update_rewrites_module_path(self):
        """Test that a major bump moves the module path."""
        update = make_update(
            "deps", "example.com/mod/v3", "v3.0.0", "5.0.0", "3.0.0", new_path="example.com/mod/v5"
        )

        text, rewrites = update_go_mod(self.GO_MOD, [update])

        assert "\texample.com/mod/v5 v5.0.0\n" in text
        assert "example.com/mod/v3" not in text
        assert rewrites == {"example.com/mod/v3": "example.com/mod/v5"}

    def test_replace_target_update(self):
        """Test updating the version of a replace target."""
        update = make_update("replace", "github.com/fork/lib", "v1.2.1", "1.4.0", "1.2.1")

        text, _ = update_go_mod(self.GO_MOD, [update])

        assert "=> github.com/fork/lib v1.4.0" in text
        assert "\tgithub.com/other/lib v1.2.0\n" in text

    def test_remove_go_replace_block(self):
        """Test removing an entry from a replace block."""
        text = "replace (\n\tgithub.com/a/b v1.0.0 => github.com/c/b v1.0.1\n)\n"

        assert remove_go_replace(text, "github.com/a/b") == ""

    def test_rewrite_go_imports(self, temp_dir):
        """Test rewriting imports of a bumped module across source files."""
        source = (
            'package main\n\nimport (\n\t"example.com/mod/v3"\n'
            '\t"example.com/mod/v3/sub"\n\t"example.com/mod/v30"\n)\n'
        )
        (temp_dir / "main.go").write_text(source)
        (temp_dir / "other.go").write_text('package main\n\nimport "fmt"\n')
        written = {}

        changed = rewrite_go_imports(
            temp_dir, {"example.com/mod/v3": "example.com/mod/v5"}, write=written.__setitem__
        )

        assert changed == [temp_dir / "main.go"]
        content = written[temp_dir / "main.go"]
        assert '"example.com/mod/v5"' in content
        assert '"example.com/mod/v5/sub"' in content
        assert '"example.com/mod/v30"' in content


class TestWorkflowsAndImages:
    """Test workflow and docker reference rewriting."""

    def test_workflow_uses(self):
        """Test that refs sharing a prefix are left alone."""
        text = (
            "steps:\n"
            "  - uses: actions/checkout@v4\n"
            "  - uses: actions/checkout@v4.1.0\n"
            "  - uses: 'actions/checkout@v4' # pinned\n"
        )

        result = update_workflow_file(text, [("actions/checkout", "v4", "v5")])

        assert result == (
            "steps:\n"
            "  - uses: actions/checkout@v5\n"
            "  - uses: actions/checkout@v4.1.0\n"
            "  - uses: 'actions/checkout@v5' # pinned\n"
        )

    def test_dockerfile_tags(self):
        """Test that other tags of the same image are untouched."""
        text = "FROM node:18-alpine AS build\nFROM --platform=linux/amd64 node:18\n"
        update = make_update("docker", "node", "18", "20")

        result = update_docker_refs(text, [update], "dockerfile")

        assert result == "FROM node:18-alpine AS build\nFROM --platform=linux/amd64 node:20\n"

    def test_compose_image(self):
        """Test rewriting a compose image."""
        text = 'services:\n  db:\n    image: "postgres:15"\n  cache:\n    image: redis:7\n'
        update = make_update("docker", "postgres", "15", "16")

        result = update_docker_refs(text, [update], "compose")

        assert 'image: "postgres:16"' in result
        assert "image: redis:7" in result

    def test_workflow_docker_refs(self):
        """Test container, image and docker:// references in workflows."""
        text = (
            "    container: node:18\n"
            "      - uses: docker://node:18\n"
            "    services:\n"
            "      db:\n"
            "        image: node:18\n"
        )
        update = make_update("docker", "node", "18", "20")

        result = update_docker_refs(text, [update], "workflow")

        assert result.count("node:20") == 3
        assert "node:18" not in result
