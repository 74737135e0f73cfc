"""
Reporting and output formatting for update results.

Provides the colored console table using the Rich library and the JSON
documents printed with ``--json``.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console
from rich.table import Table
from rich.text import Text

from .adapters import shorten_go_module
from .dependency import UpdateResult
from .updater import CheckResult, ManifestResult

NO_DEPENDENCIES_MESSAGE = "No dependencies found, nothing to do."
UP_TO_DATE_MESSAGE = "All dependencies are up to date."

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_OUTDATED = 2


def highlight_diff(a: str, b: str, color: str) -> Text:
    """
    Color the part of ``a`` that differs from ``b``.

    The split point backs up to the last ``.`` or ``-`` so numbers are never
    cut in half; without such a boundary only a non-digit prefix like ``^``
    or ``>=`` stays uncolored.
    """
    if a == b:
        return Text(a)

    i = 0
    while i < len(a) and i < len(b) and a[i] == b[i]:
        i += 1

    if i > 0 and a[i - 1] not in ".-":
        j = i - 1
        while j >= 0 and a[j] not in ".-":
            j -= 1
        if j >= 0:
            i = j + 1
        else:
            d = 0
            while d < i and not a[d].isdigit():
                d += 1
            i = d

    diff = a[i:]
    if not diff:
        return Text(a)
    return Text.assemble(a[:i], (diff, color))


def display_name(mode: str, name: str) -> str:
    return shorten_go_module(name) if mode == "go" else name


def relative_path(path: Path, cwd: Optional[Path] = None) -> str:
    try:
        return os.path.relpath(path, cwd or Path.cwd())
    except ValueError:
        return str(path)


def _rows(result: CheckResult) -> List[Tuple[str, ManifestResult, UpdateResult]]:
    return [
        (dependency_mode_for(manifest, update), manifest, update)
        for manifest, update in result.updates
    ]


def dependency_mode_for(manifest: ManifestResult, update: UpdateResult) -> str:
    return "docker" if update.dep_type == "docker" else manifest.kind


def build_json_output(result: CheckResult, cwd: Optional[Path] = None) -> Dict[str, Any]:
    """
    Build ``{"results": {mode: {type: {name: {old, new, info, age}}}}}``.

    Actions are keyed by the workflow path instead of a dependency type.
    """
    results: Dict[str, Dict[str, Dict[str, Dict[str, str]]]] = {}
    for mode, manifest, update in _rows(result):
        dep_type = relative_path(manifest.path, cwd) if mode == "actions" else update.dep_type
        results.setdefault(mode, {}).setdefault(dep_type, {})[update.name] = update.display(mode)
    return {"results": results}


def build_table(result: CheckResult) -> Table:
    """Build the NAME/OLD/NEW/AGE/INFO table; MODE is added when several modes have updates."""
    rows = _rows(result)
    modes = {mode for mode, _, _ in rows}
    multiple_modes = len(modes) > 1

    table = Table(box=None, show_edge=False, pad_edge=False, header_style="bold")
    table.add_column("NAME")
    if multiple_modes:
        table.add_column("MODE")
    table.add_column("OLD")
    table.add_column("NEW")
    table.add_column("AGE")
    table.add_column("INFO", overflow="fold")

    seen = set()
    for mode, _, update in rows:
        row_id = (mode, update.name)
        if row_id in seen:
            continue
        seen.add(row_id)

        values = update.display(mode)
        row: List[Any] = [display_name(mode, update.name)]
        if multiple_modes:
            row.append(mode)
        row.append(highlight_diff(values["old"], values["new"], "red"))
        row.append(highlight_diff(values["new"], values["old"], "green"))
        row.append(values["age"])
        row.append(values["info"])
        table.add_row(*row)
    return table


def get_exit_code(has_updates: bool, error_on_outdated: bool, error_on_unchanged: bool) -> int:
    if error_on_outdated:
        return EXIT_OUTDATED if has_updates else EXIT_OK
    if error_on_unchanged:
        return EXIT_OK if has_updates else EXIT_OUTDATED
    return EXIT_OK


class UpdateReporter:
    """Formats and displays the results of a check."""

    def __init__(self, console: Optional[Console] = None, json_output: bool = False):
        self.console = console or Console()
        self.json_output = json_output

    def _print_json(self, data: Dict[str, Any]) -> None:
        print(json.dumps(data, ensure_ascii=False))

    def print_message(self, message: str) -> None:
        if self.json_output:
            self._print_json({"message": message})
        else:
            self.console.print(message, highlight=False)

    def print_error(self, error: Any) -> None:
        if self.json_output:
            self._print_json({"error": str(error)})
        else:
            self.console.print(str(error), style="red", markup=False, highlight=False)

    def print_results(self, result: CheckResult, cwd: Optional[Path] = None) -> None:
        """
        Print the outcome of a check.

        Manifest errors are printed first; then either the table (or JSON
        document) or the matching "nothing to do" message.
        """
        for error in result.errors:
            self.print_error(error)

        if result.total_dependencies == 0:
            if not result.errors:
                self.print_message(NO_DEPENDENCIES_MESSAGE)
            return

        if not result.has_updates:
            self.print_message(UP_TO_DATE_MESSAGE)
            return

        if self.json_output:
            self._print_json(build_json_output(result, cwd))
        else:
            self.console.print(build_table(result))

    def print_written(self, result: CheckResult, cwd: Optional[Path] = None) -> None:
        if self.json_output:
            return
        for manifest in result.manifests:
            for path in manifest.written_files:
                self.console.print(f"✨ {relative_path(path, cwd)} updated", style="green", highlight=False)
