"""Finding the project root and the lint/test command for an edited file.

Discovery walks up from the edited file's directory to the project root and
picks the first directory that declares a matching target, checking in order:

1. Makefile / makefile / GNUmakefile target (``make lint``)
2. justfile recipe (``just lint``)
3. package.json script (``npm run --silent lint``)
4. executable scripts/<type> (``./scripts/lint``)
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Optional

from hookd.runner import CommandSpec

logger = logging.getLogger(__name__)

PROJECT_MARKERS = (
    ".git",
    "Makefile",
    "makefile",
    "GNUmakefile",
    "justfile",
    "pyproject.toml",
    "package.json",
    "go.mod",
    "Cargo.toml",
)

MAKEFILE_NAMES = ("Makefile", "makefile", "GNUmakefile")
JUSTFILE_NAMES = ("justfile", "Justfile", ".justfile")


def find_project_root(start_dir: str | Path) -> Optional[Path]:
    """Return the nearest ancestor (inclusive) containing a project marker."""
    current = Path(start_dir).resolve()
    for directory in (current, *current.parents):
        if any((directory / marker).exists() for marker in PROJECT_MARKERS):
            return directory
    return None


def _has_make_target(makefile: Path, target: str) -> bool:
    pattern = re.compile(rf"^{re.escape(target)}\s*:(?!=)", re.MULTILINE)
    try:
        return bool(pattern.search(makefile.read_text(errors="replace")))
    except OSError:
        return False


def _has_just_recipe(justfile: Path, recipe: str) -> bool:
    # Recipes may take parameters: "test *args:"
    pattern = re.compile(rf"^@?{re.escape(recipe)}(\s+[^:=]*)?:(?!=)", re.MULTILINE)
    try:
        return bool(pattern.search(justfile.read_text(errors="replace")))
    except OSError:
        return False


def _has_npm_script(package_json: Path, script: str) -> bool:
    try:
        data = json.loads(package_json.read_text())
    except (OSError, json.JSONDecodeError):
        return False
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return isinstance(scripts, dict) and script in scripts


def _discover_in(directory: Path, check_type: str) -> Optional[CommandSpec]:
    for name in MAKEFILE_NAMES:
        makefile = directory / name
        if makefile.is_file() and _has_make_target(makefile, check_type):
            return CommandSpec(check_type, ("make", check_type), str(directory))

    for name in JUSTFILE_NAMES:
        justfile = directory / name
        if justfile.is_file() and _has_just_recipe(justfile, check_type):
            return CommandSpec(check_type, ("just", check_type), str(directory))

    package_json = directory / "package.json"
    if package_json.is_file() and _has_npm_script(package_json, check_type):
        return CommandSpec(check_type, ("npm", "run", "--silent", check_type), str(directory))

    script = directory / "scripts" / check_type
    if script.is_file() and os.access(script, os.X_OK):
        return CommandSpec(check_type, (f"./scripts/{check_type}",), str(directory))

    return None


def discover(
    start_dir: str | Path,
    check_type: str,
    project_root: Optional[str | Path] = None,
) -> Optional[CommandSpec]:
    """Find the command for ``check_type`` starting at ``start_dir``.

    Args:
        start_dir: Directory of the edited file
        check_type: "lint" or "test"
        project_root: Upper bound of the search (defaults to find_project_root)

    Returns:
        The command to run, or None if the project declares none.
    """
    start = Path(start_dir).resolve()
    root = Path(project_root).resolve() if project_root is not None else find_project_root(start)
    if root is None:
        return None

    for directory in (start, *start.parents):
        spec = _discover_in(directory, check_type)
        if spec is not None:
            logger.debug(f"Discovered {check_type} command {spec.command_line()} in {directory}")
            return spec
        if directory == root:
            break

    logger.debug(f"No {check_type} command found between {start} and {root}")
    return None
