"""
Text-preserving manifest rewriting.

Every substitution is driven by the verbatim declared text and anchored on
the syntax around it (a JSON key, a TOML assignment, a ``uses:`` or
``image:`` key, a go.mod column), so other occurrences of the same version
literal elsewhere in a file are never touched.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from . import semver
from .dependency import UpdateResult
from .policy import build_go_module_path, extract_go_major

NPM_VERSION_RE = re.compile(r"[0-9]+(\.[0-9]+)?(\.[0-9]+)?")
NPM_VERSION_PRE_RE = re.compile(r"[0-9]+\.[0-9]+\.[0-9]+(-.+)?")

# a version must be followed by a quote, whitespace, comment or line end
TERMINATOR = r"(?=['\"\s#,]|$)"


@dataclass(frozen=True)
class RewritePattern:
    """A syntax-anchored regex that locates one declared version.

    ``template`` and ``replacement`` use ``{name}``, ``{old}`` and ``{new}``
    placeholders. Name and old text are regex-escaped before substitution.
    Regex quantifier braces must be doubled.
    """

    description: str
    template: str
    replacement: str

    def compile(self, name: str, old: str) -> "re.Pattern[str]":
        return re.compile(
            self.template.format(name=re.escape(name), old=re.escape(old)),
            re.MULTILINE,
        )

    def apply(self, text: str, name: str, old: str, new: str) -> str:
        replacement = self.replacement.format(name=name, new=new)
        return self.compile(name, old).sub(lambda m: m.expand(replacement), text)


PACKAGE_JSON_PATTERN = RewritePattern(
    "package.json dependency value",
    r'"{name}": *"{old}"',
    r'"{name}": "{new}"',
)
PACKAGE_MANAGER_PATTERN = RewritePattern(
    "package.json packageManager field",
    r'"packageManager": *"{name}@{old}"',
    r'"packageManager": "{name}@{new}"',
)
POETRY_PATTERN = RewritePattern(
    "poetry assignment",
    r'(?<![\w.-]){name} *= *"{old}"',
    r'{name} = "{new}"',
)
UV_PATTERN = RewritePattern(
    "uv requirement string",
    r'("{name} *[<>=~]+ *){old}(")',
    r"\g<1>{new}\g<2>",
)
GO_REPLACE_PATTERN = RewritePattern(
    "go.mod replace target",
    r"(=>\s+{name}\s+)v{old}(?=\s|$)",
    r"\g<1>v{new}",
)
GO_REQUIRE_PATTERN = RewritePattern(
    "go.mod require line",
    r"(?<![^\s(])({name}) +v{old}(?=\s|$)",
    r"\g<1> v{new}",
)
WORKFLOW_USES_PATTERN = RewritePattern(
    "workflow uses reference",
    r"(uses:\s*['\"]?){name}@{old}" + TERMINATOR,
    r"\g<1>{name}@{new}",
)
DOCKERFILE_PATTERNS = (
    RewritePattern(
        "Dockerfile FROM",
        r"(FROM\s+(?:--platform=\S+\s+)?){name}:{old}" + TERMINATOR,
        r"\g<1>{name}:{new}",
    ),
)
COMPOSE_PATTERNS = (
    RewritePattern(
        "compose image",
        r"(image:\s*['\"]?){name}:{old}" + TERMINATOR,
        r"\g<1>{name}:{new}",
    ),
)
WORKFLOW_DOCKER_PATTERNS = (
    RewritePattern(
        "workflow container or image",
        r"((?:container|image):\s*['\"]?){name}:{old}" + TERMINATOR,
        r"\g<1>{name}:{new}",
    ),
    RewritePattern(
        "workflow docker action",
        r"(uses:\s*['\"]?docker://){name}:{old}" + TERMINATOR,
        r"\g<1>{name}:{new}",
    ),
)
DOCKER_PATTERNS = {
    "dockerfile": DOCKERFILE_PATTERNS,
    "compose": COMPOSE_PATTERNS,
    "workflow": WORKFLOW_DOCKER_PATTERNS,
}


def update_npm_range(old_range: str, new_version: str, old_original: Optional[str]) -> str:
    """
    Substitute ``new_version`` into ``old_range``.

    When the declared text was shorter than the normalized range (``^5``
    normalized to ``^5.0.0``), the new range keeps the declared component
    count. ``^``/``~`` and ``>=`` are handled by separate rules; ``>=`` also
    keeps its spacing.

    Args:
        old_range: Normalized declared range
        new_version: Version chosen by the policy
        old_original: Verbatim declared text

    Returns:
        str: The new range text
    """
    new_range = NPM_VERSION_PRE_RE.sub(lambda _: new_version, old_range)

    if old_original and old_original != old_range and new_range[:1] in ("^", "~"):
        old_parts = old_original[1:].split(".")
        new_parts = new_range[1:].split(".")
        if len(old_parts) != len(new_parts):
            new_range = new_range[0] + ".".join(new_parts[: len(old_parts)])

    if old_original and old_original != old_range and new_range.startswith(">="):
        prefix = ">= " if re.match(r">=\s", old_original) else ">="
        old_parts = re.sub(r"^>=\s*", "", old_original).split(".")
        new_parts = re.sub(r"^>=\s*", "", new_range).split(".")
        if len(old_parts) != len(new_parts):
            new_range = prefix + ".".join(new_parts[: len(old_parts)])

    return new_range


def normalize_range(declared: str) -> str:
    """Expand the single version inside a range to three parts (``^5`` to ``^5.0.0``)."""
    matches = NPM_VERSION_RE.findall(declared)
    if len(matches) != 1:
        return declared
    match = NPM_VERSION_RE.search(declared)
    return NPM_VERSION_RE.sub(
        lambda _: semver.coerce_to_version(match.group(0)), declared
    )


def format_version_precision(new_version: str, old_ref: str, suffix: str = "") -> str:
    """
    Shape ``new_version`` like ``old_ref``.

    The result has as many numeric parts as ``old_ref``, keeps its ``v``
    prefix and ends in ``suffix``: ``5.2.1`` against ``v4`` gives ``v5``,
    against ``18.19`` with suffix ``-alpine`` it gives ``5.2-alpine``.
    """
    prefix = "v" if old_ref.startswith("v") else ""
    bare_new = semver.strip_v(new_version)
    old_core = semver.strip_v(old_ref).split("-", 1)[0]
    old_count = len(old_core.split("."))

    if old_count >= 3:
        formatted = bare_new
    else:
        formatted = ".".join(bare_new.split("-", 1)[0].split(".")[:old_count])

    return f"{prefix}{formatted}{suffix}"


def update_package_json(text: str, updates: Iterable[UpdateResult]) -> str:
    new_text = text
    for update in updates:
        dependency = update.dependency
        if dependency.dep_type == "packageManager":
            pattern = PACKAGE_MANAGER_PATTERN
        else:
            pattern = PACKAGE_JSON_PATTERN
        new_text = pattern.apply(new_text, dependency.name, dependency.rewrite_text, update.new)
    return new_text


def update_pyproject(text: str, updates: Iterable[UpdateResult]) -> str:
    new_text = text
    for update in updates:
        dependency = update.dependency
        for pattern in (POETRY_PATTERN, UV_PATTERN):
            new_text = pattern.apply(new_text, dependency.name, dependency.rewrite_text, update.new)
    return new_text


def remove_go_replace(text: str, name: str) -> str:
    """Drop replace directives whose source module is ``name``."""
    escaped = re.escape(name)
    text = re.sub(
        rf"^replace\s+{escaped}(\s+v\S+)?\s+=>\s+\S+(\s+v\S+)?[ \t]*\r?\n",
        "",
        text,
        flags=re.MULTILINE,
    )
    text = re.sub(
        rf"^[ \t]+{escaped}(\s+v\S+)?\s+=>\s+\S+(\s+v\S+)?[ \t]*\r?\n",
        "",
        text,
        flags=re.MULTILINE,
    )
    return re.sub(r"^replace\s*\(\s*\)[ \t]*\r?\n", "", text, flags=re.MULTILINE)


def update_go_mod(text: str, updates: Iterable[UpdateResult]) -> Tuple[str, Dict[str, str]]:
    """
    Rewrite require and replace versions in a go.mod.

    A major bump rewrites the module path as well and drops any replace
    directive for the old module.

    Returns:
        Tuple[str, Dict[str, str]]: New text and the old to new module paths
        whose imports need rewriting
    """
    new_text = text
    major_rewrites: Dict[str, str] = {}

    for update in updates:
        dependency = update.dependency
        name = dependency.name
        old = dependency.rewrite_text
        new = update.new

        if dependency.dep_type == "replace":
            new_text = GO_REPLACE_PATTERN.apply(new_text, name, old, new)
            continue

        old_major = extract_go_major(name)
        try:
            new_major = int(new.split(".")[0])
        except ValueError:
            new_major = old_major

        if old_major != new_major and new_major > 1:
            new_path = build_go_module_path(name, new_major)
            pattern = re.compile(
                rf"(?<![^\s(]){re.escape(name)} +v{re.escape(old)}(?=\s|$)", re.MULTILINE
            )
            new_text = pattern.sub(lambda _: f"{new_path} v{new}", new_text)
            major_rewrites[name] = new_path
        else:
            new_text = GO_REQUIRE_PATTERN.apply(new_text, name, old, new)

        new_text = remove_go_replace(new_text, name)

    return new_text, major_rewrites


def write_file(path: Path, content: str) -> None:
    """Write ``content`` keeping the file's existing line endings untouched."""
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


def rewrite_go_imports(
    project_dir: Path,
    major_rewrites: Dict[str, str],
    write: Callable[[Path, str], None] = write_file,
) -> List[Path]:
    """
    Rewrite import paths of bumped modules across all ``*.go`` files.

    Returns:
        List[Path]: Files that were changed
    """
    if not major_rewrites:
        return []

    patterns = [
        (re.compile(rf'"{re.escape(old_path)}(/|")'), new_path)
        for old_path, new_path in major_rewrites.items()
    ]

    changed: List[Path] = []
    for go_file in sorted(Path(project_dir).rglob("*.go")):
        if not go_file.is_file():
            continue
        with open(go_file, encoding="utf-8", newline="") as f:
            content = f.read()
        updated = content
        for pattern, new_path in patterns:
            updated = pattern.sub(lambda m, p=new_path: f'"{p}{m.group(1)}', updated)
        if updated != content:
            write(go_file, updated)
            changed.append(go_file)
    return changed


def update_workflow_file(text: str, action_updates: Iterable[Tuple[str, str, str]]) -> str:
    """Rewrite ``uses: name@old`` references; each update is ``(name, old, new)``."""
    new_text = text
    for name, old_ref, new_ref in action_updates:
        new_text = WORKFLOW_USES_PATTERN.apply(new_text, name, old_ref, new_ref)
    return new_text


def update_docker_refs(text: str, updates: Iterable[UpdateResult], file_kind: str) -> str:
    """
    Rewrite image tags.

    Args:
        text: File content
        updates: Resolved docker dependencies, named by image
        file_kind: ``dockerfile``, ``compose`` or ``workflow``
    """
    patterns = DOCKER_PATTERNS[file_kind]
    new_text = text
    for update in updates:
        dependency = update.dependency
        for pattern in patterns:
            new_text = pattern.apply(new_text, dependency.name, dependency.rewrite_text, update.new)
    return new_text
