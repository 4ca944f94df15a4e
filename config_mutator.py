"""
Idempotent line edits for defconfigs, Kconfig and Makefiles

Every helper can be called any number of times against the same file
and leaves it in the same state as a single call. Unrelated lines keep
their content and order.
"""
import re
from pathlib import Path

from build_common import log_message

CONFIG_KEY_RE = re.compile(r"^(CONFIG_[A-Za-z0-9_]+)=")


def read_lines(path: Path) -> list[str]:
    """
    Reads a file as lines split on "\\n" only

    Bytes that are not valid UTF-8 and "\\r" line endings survive a
    read_lines/write_lines round trip unchanged.
    """
    with open(path, encoding="utf-8", errors="surrogateescape", newline="") as f:
        lines = f.read().split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def write_lines(path: Path, lines: list[str]):
    text = "\n".join(lines)
    if lines:
        text += "\n"
    with open(path, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
        f.write(text)


def has_line(lines: list[str], line: str) -> bool:
    return any(existing.rstrip("\r") == line for existing in lines)


def append_if_absent(path: Path, line: str) -> bool:
    """
    Appends a line unless a textually identical line already exists

    Args:
        path (Path): File to edit
        line (str): Line to append, without trailing newline

    Returns:
        bool: True if the file was changed
    """
    lines = read_lines(path)
    if has_line(lines, line):
        return False

    # Same key with another value, Kconfig keeps the last one
    match = CONFIG_KEY_RE.match(line)
    if match:
        key = match.group(1)
        for existing in lines:
            if existing.startswith(f"{key}="):
                log_message(f"WARNING: '{existing}' in '{path.name}' "
                            f"is overridden by '{line}'")
                break

    lines.append(line)
    write_lines(path, lines)
    return True


def substitute_pattern(path: Path, pattern: str, replacement: str) -> int:
    """
    Rewrites every line matching a regular expression

    A file where nothing matches (e.g. already substituted by an earlier
    run) is left untouched.

    Returns:
        int: Number of rewritten lines
    """
    regex = re.compile(pattern)
    lines = read_lines(path)
    changed = 0

    for index, line in enumerate(lines):
        if regex.search(line):
            new_line = regex.sub(replacement, line)
            if new_line != line:
                lines[index] = new_line
                changed += 1

    if changed:
        write_lines(path, lines)
    return changed


def insert_before(path: Path, line: str, anchor: str) -> bool:
    """
    Inserts a line before the last line matching anchor, unless present.
    Falls back to appending when no line matches the anchor.
    """
    lines = read_lines(path)
    if has_line(lines, line):
        return False

    regex = re.compile(anchor)
    position = None
    for index, existing in enumerate(lines):
        if regex.search(existing):
            position = index

    if position is None:
        log_message(f"WARNING: Anchor '{anchor}' not found in '{path.name}', appending")
        lines.append(line)
    else:
        lines.insert(position, line)

    write_lines(path, lines)
    return True
