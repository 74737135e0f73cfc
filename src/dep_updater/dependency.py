"""
Dependency data structures.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

DependencyKey = Tuple[str, str]


@dataclass(frozen=True)
class Dependency:
    """A dependency as declared in a manifest.

    ``old`` is the normalized range used for resolution, ``old_original`` the
    verbatim text found in the file and used to anchor rewrites.
    """

    dep_type: str
    name: str
    old: str
    old_original: Optional[str] = None
    source_file: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> DependencyKey:
        return (self.dep_type, self.name)

    @property
    def rewrite_text(self) -> str:
        """The text to locate in the manifest when rewriting."""
        return self.old_original if self.old_original is not None else self.old

    def __str__(self) -> str:
        return f"{self.name}@{self.old}"


@dataclass(frozen=True)
class UpdateResult:
    """The outcome of resolving one dependency to a newer version."""

    dependency: Dependency
    new: str
    info: str = ""
    date: str = ""
    age: str = ""
    old_print: Optional[str] = None
    new_print: Optional[str] = None
    new_path: Optional[str] = None

    @property
    def key(self) -> DependencyKey:
        return self.dependency.key

    @property
    def name(self) -> str:
        return self.dependency.name

    @property
    def dep_type(self) -> str:
        return self.dependency.dep_type

    @property
    def old(self) -> str:
        return self.dependency.old

    def with_age(self, date: str, age: str) -> "UpdateResult":
        return replace(self, date=date, age=age)

    def display(self, kind: str) -> Dict[str, str]:
        """Values shown to the user.

        Display overrides win over raw values, the verbatim declared text
        replaces the normalized range except for JSR values, and workflow
        refs lose their ``v`` prefix.
        """
        old = self.dependency.old
        new = self.new
        if self.old_print is not None:
            old = self.old_print
        if self.new_print is not None:
            new = self.new_print
        original = self.dependency.old_original
        if original is not None and not is_jsr(original):
            old = original
        if kind == "actions":
            old = old[1:] if old.startswith("v") else old
            new = new[1:] if new.startswith("v") else new

        return {"old": old, "new": new, "info": self.info, "age": self.age}


def is_jsr(value: str) -> bool:
    return value.startswith("npm:@jsr/") or value.startswith("jsr:")


_AGE_UNITS = (
    ("year", 365 * 86400),
    ("month", 30 * 86400),
    ("week", 7 * 86400),
    ("day", 86400),
    ("hour", 3600),
    ("minute", 60),
    ("second", 1),
)


def format_age(date: str, now: Optional[datetime] = None) -> str:
    """
    Format the time elapsed since ``date`` as e.g. ``3 months``.

    Args:
        date: ISO 8601 timestamp
        now: Reference time, defaults to the current time

    Returns:
        str: Relative age, or an empty string when ``date`` is not a timestamp
    """
    try:
        published = datetime.fromisoformat(date.replace("Z", "+00:00"))
    except ValueError:
        return ""
    if published.tzinfo is None:
        published = published.replace(tzinfo=timezone.utc)

    seconds = ((now or datetime.now(timezone.utc)) - published).total_seconds()
    for unit, size in _AGE_UNITS:
        if seconds >= size:
            count = int(seconds // size)
            return f"{count} {unit}{'s' if count != 1 else ''}"
    return "now"
