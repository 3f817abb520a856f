"""Managing a marked block of local host entries in the hosts file."""

from __future__ import annotations

import contextlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

DEFAULT_HOSTS_FILE = "/etc/hosts"

MARKER_START = "# kubectl-localmesh: managed by kubectl-localmesh"
MARKER_END = "# kubectl-localmesh: end"


@dataclass
class HostsFileState:
    """The result of inspecting the hosts file for managed marker blocks."""

    is_valid: bool = True
    marker_block_count: int = 0
    has_unclosed_block: bool = False
    has_orphan_end: bool = False
    has_nested_markers: bool = False
    problems: list[str] = field(default_factory=list)
    file_content: str = ""


class HostsFileCorruptedError(Exception):
    """Raised when the hosts file holds leftover or broken managed blocks."""

    def __init__(self, state: HostsFileState) -> None:
        self.state = state
        super().__init__(self._message())

    def _message(self) -> str:
        parts = [
            "/etc/hosts is in an invalid state and cannot be automatically fixed.\n",
            "Please manually fix the following problems:\n\n",
        ]
        parts.extend(
            f"{number}. {problem}\n"
            for number, problem in enumerate(self.state.problems, start=1)
        )
        parts.extend(
            [
                "\nCurrent /etc/hosts content:\n",
                "---\n",
                self.state.file_content,
                "---\n",
                "\nTo fix:\n",
                "1. Manually edit /etc/hosts with sudo, like `sudo vim -u NONE /etc/hosts`\n",
                "2. Remove all lines between and including:\n",
                f"     {MARKER_START}\n",
                f"     {MARKER_END}\n",
                "3. Run kubectl-localmesh again\n",
            ]
        )
        return "".join(parts)


def _read_text(path: str | Path) -> str:
    with open(path, encoding="utf-8", errors="surrogateescape", newline="") as f:
        return f.read()


def _read_lines(path: str | Path) -> list[str]:
    """Split the file into lines the way a line scanner would."""
    lines = _read_text(path).split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _write_lines(path: str | Path, lines: Iterable[str]) -> None:
    """Write lines, each ending in a newline, replacing the file atomically."""
    tmp = Path(f"{path}.tmp")
    try:
        with open(
            tmp, "w", encoding="utf-8", errors="surrogateescape", newline=""
        ) as out:
            out.writelines(line + "\n" for line in lines)
        os.replace(tmp, path)
    finally:
        with contextlib.suppress(FileNotFoundError):
            tmp.unlink()


def trim_trailing_empty_lines(lines: list[str]) -> list[str]:
    """Return the lines without any empty lines at the end."""
    end = len(lines)
    while end > 0 and lines[end - 1] == "":
        end -= 1
    return list(lines[:end])


def has_permission(path: str | Path = DEFAULT_HOSTS_FILE) -> bool:
    """Whether the hosts file can be opened for writing."""
    try:
        fd = os.open(path, os.O_WRONLY | os.O_APPEND)
    except OSError:
        return False
    os.close(fd)
    return True


def validate_hosts_file(path: str | Path = DEFAULT_HOSTS_FILE) -> HostsFileState:
    """Inspect the hosts file for managed blocks; any block makes it invalid."""
    state = HostsFileState()
    try:
        state.file_content = _read_text(path)
    except FileNotFoundError:
        return state

    in_block = False
    block_count = 0
    start_line = -1

    for line_num, line in enumerate(state.file_content.split("\n"), start=1):
        trimmed = line.strip()
        if trimmed == MARKER_START:
            if in_block:
                state.has_nested_markers = True
                state.problems.append(
                    f"Nested start marker found at line {line_num} "
                    f"(block started at line {start_line})"
                )
            in_block = True
            start_line = line_num
            block_count += 1
        elif trimmed == MARKER_END:
            if not in_block:
                state.has_orphan_end = True
                state.problems.append(
                    f"End marker without start marker found at line {line_num}"
                )
            in_block = False

    if in_block:
        state.has_unclosed_block = True
        state.problems.append(
            f"Unclosed block: start marker at line {start_line} has no matching end marker"
        )

    state.marker_block_count = block_count

    if block_count == 1 and not (
        state.has_unclosed_block or state.has_orphan_end or state.has_nested_markers
    ):
        state.problems.insert(
            0,
            f"Existing kubectl-localmesh entries found ({block_count} block). "
            "Clean shutdown may have failed.",
        )
    elif block_count > 1:
        state.problems.insert(
            0,
            f"Multiple marker blocks found ({block_count} blocks). Only one is expected.",
        )

    if (
        block_count > 0
        or state.has_unclosed_block
        or state.has_orphan_end
        or state.has_nested_markers
    ):
        state.is_valid = False

    return state


def add_entries(
    hostnames: Iterable[str], path: str | Path = DEFAULT_HOSTS_FILE
) -> None:
    """Append a managed block mapping each hostname to 127.0.0.1.

    Raises HostsFileCorruptedError if a managed block is already present.
    """
    state = validate_hosts_file(path)
    if not state.is_valid:
        raise HostsFileCorruptedError(state)

    try:
        lines = trim_trailing_empty_lines(_read_lines(path))
    except FileNotFoundError:
        lines = []

    if lines:
        lines.append("")
    lines.append(MARKER_START)
    lines.extend(f"127.0.0.1 {hostname}" for hostname in hostnames)
    lines.append(MARKER_END)

    _write_lines(path, lines)


def remove_entries(path: str | Path = DEFAULT_HOSTS_FILE) -> None:
    """Remove every managed block and the blank line before it."""
    try:
        lines = _read_lines(path)
    except FileNotFoundError:
        return

    kept: list[str] = []
    in_block = False
    for line in lines:
        trimmed = line.strip()
        if trimmed == MARKER_START:
            in_block = True
            if kept and kept[-1] == "":
                kept.pop()
            continue
        if trimmed == MARKER_END:
            in_block = False
            continue
        if not in_block:
            kept.append(line)

    _write_lines(path, trim_trailing_empty_lines(kept))