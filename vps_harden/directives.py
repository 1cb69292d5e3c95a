"""
Line-oriented config files as directive stores.

A store keeps the raw lines of one file (line endings included) and re-parses
them on demand, so an index is never older than the last read of the file.
``apply_directive`` reconciles one key against the store with a fixed
precedence: active line, then commented line, then append.
"""

import contextlib
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Tuple, Union

from .models import Action, Directive, Outcome

logger = logging.getLogger(__name__)

# key, then whitespace and/or "=", then the value
_LINE_RE = re.compile(
    r"^(?P<marker>#)?(?P<key>[A-Za-z0-9_.\-/]+)(?:[ \t]*=[ \t]*|[ \t]+)(?P<value>.*?)[ \t]*$"
)


class DirectiveEntry(NamedTuple):
    line_number: int
    commented: bool
    value: str


def _split_ending(line: str) -> Tuple[str, str]:
    if line.endswith("\r\n"):
        return line[:-2], "\r\n"
    if line.endswith("\n"):
        return line[:-1], "\n"
    return line, ""


def parse_line(line: str) -> Optional[Directive]:
    """Parse ``key value``, ``#key value`` or ``key=value``."""
    match = _LINE_RE.match(_split_ending(line)[0])
    if not match:
        return None
    return Directive(match.group("key"), match.group("value"), bool(match.group("marker")))


def build_index(lines: List[str]) -> Dict[str, List[DirectiveEntry]]:
    """Map every directive key to its occurrences, in file order."""
    index: Dict[str, List[DirectiveEntry]] = {}
    for number, line in enumerate(lines):
        directive = parse_line(line)
        if directive is None:
            continue
        index.setdefault(directive.key, []).append(
            DirectiveEntry(number, directive.commented, directive.value)
        )
    return index


def _newline_of(lines: List[str]) -> str:
    for line in lines:
        ending = _split_ending(line)[1]
        if ending:
            return ending
    return "\n"


def plan_directive(
    lines: List[str], key: str, value: str, separator: str = " "
) -> Tuple[Action, List[str]]:
    """
    Compute the new content for ``key`` without touching the file.

    Precedence: first active line (unchanged or rewritten), else first
    commented line (uncommented), else a new line at the end of the file.
    """
    entries = build_index(lines).get(key, [])
    active = next((e for e in entries if not e.commented), None)
    commented = next((e for e in entries if e.commented), None)
    rendered = f"{key}{separator}{value}"
    new_lines = list(lines)

    if active is not None:
        if active.value.strip() == value.strip():
            return Action.UNCHANGED, new_lines
        ending = _split_ending(lines[active.line_number])[1]
        new_lines[active.line_number] = rendered + ending
        return Action.REWRITTEN, new_lines

    if commented is not None:
        ending = _split_ending(lines[commented.line_number])[1]
        new_lines[commented.line_number] = rendered + ending
        return Action.UNCOMMENTED, new_lines

    newline = _newline_of(lines)
    if new_lines and not _split_ending(new_lines[-1])[1]:
        new_lines[-1] = new_lines[-1] + newline
    new_lines.append(rendered + newline)
    return Action.APPENDED, new_lines


def atomic_write(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` in one rename, keeping its mode and owner."""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        if path.exists():
            shutil.copymode(path, tmp_name)
            if os.geteuid() == 0:
                st = path.stat()
                os.chown(tmp_name, st.st_uid, st.st_gid)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


class DirectiveStore:
    """The directives of one config file, backed by its raw lines."""

    def __init__(self, path: Union[str, Path], separator: str = " ") -> None:
        self.path = Path(path)
        self.separator = separator
        self.lines: List[str] = []

    def reload(self) -> List[str]:
        """Re-read the file; external edits invalidate any previous view."""
        self.lines = self.path.read_bytes().decode("utf-8").splitlines(keepends=True)
        return self.lines

    def index(self) -> Dict[str, List[DirectiveEntry]]:
        return build_index(self.lines)

    def get(self, key: str) -> Optional[str]:
        """Value of the first active line for ``key``."""
        for entry in self.index().get(key, []):
            if not entry.commented:
                return entry.value
        return None

    def content(self) -> str:
        return "".join(self.lines)

    def write(self, lines: List[str]) -> None:
        atomic_write(self.path, "".join(lines).encode("utf-8"))
        self.lines = list(lines)


def apply_directive(store: DirectiveStore, key: str, value: str) -> Outcome:
    """Make ``key`` resolve to ``value`` in the store's file, idempotently."""
    try:
        lines = store.reload()
    except (OSError, UnicodeDecodeError) as e:
        return Outcome.fatal(
            f"Cannot read {store.path}: {e}",
            f"Check that {store.path} exists and is readable",
        )

    action, new_lines = plan_directive(lines, key, value, store.separator)
    if action is Action.UNCHANGED:
        logger.debug(f"{key} already set to {value} in {store.path}")
        return Outcome.ok(f"{key} already set to {value}", data=action)

    try:
        store.write(new_lines)
    except OSError as e:
        return Outcome.fatal(
            f"Cannot write {store.path}: {e}",
            f"{store.path} was left unchanged; check permissions and free space",
            data=action,
        )

    logger.info(f"{key} {action.value} in {store.path} ({key}{store.separator}{value})")
    return Outcome.ok(f"{key} set to {value}", data=action)
