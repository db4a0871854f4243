"""Normalize SEARCH/REPLACE agent output into unified diff text.

The emitted hunks use a zero-extent header (``@@ -0,0 +0,0 @@``): they are
meant for review and visualization, not for ``git apply``.

Known limitation: one "current file" slot is kept, not a stack. Blocks for
different files interleaved without a filename line in between are all
attributed to the last filename seen.
"""

from __future__ import annotations

import re

from coding_engines.models import FileChange

SEARCH_MARKER = "<<<<<<< SEARCH"
DIVIDER_MARKER = "======="
REPLACE_MARKER = ">>>>>>> REPLACE"

_FILENAME_LINE = re.compile(
    r"^[\w\-./]+\.(ts|tsx|js|jsx|cs|md|json|yaml|yml|py|java|go|rs|php|cpp|c|sql|sh|bash)$",
    re.IGNORECASE,
)
_GIT_HEADER = re.compile(r"^diff --git a/(\S+) b/(\S+)")
_NEW_FILE_HEADER = re.compile(r"^\+\+\+ (?:b/)?(\S+)")
_OLD_FILE_HEADER = re.compile(r"^--- (?:a/)?(\S+)")


def is_unified_diff(text: str) -> bool:
    return "diff --git" in text or ("--- " in text and "+++ " in text)


def convert_search_replace_to_diff(output: str) -> str:
    """Convert SEARCH/REPLACE blocks to unified diff; pass anything else through."""

    if not output:
        return ""
    if is_unified_diff(output):
        return output

    fragments: list[str] = []
    current_file = ""
    in_search = False
    in_replace = False
    search_lines: list[str] = []
    replace_lines: list[str] = []

    for line in output.split("\n"):
        stripped = line.strip()

        if not (in_search or in_replace) and _FILENAME_LINE.match(stripped):
            current_file = stripped

        if stripped == SEARCH_MARKER:
            in_search = True
            in_replace = False
            search_lines = []
            continue
        if stripped == DIVIDER_MARKER and (in_search or in_replace):
            in_search = False
            in_replace = True
            replace_lines = []
            continue
        if stripped == REPLACE_MARKER and (in_search or in_replace):
            in_search = False
            in_replace = False
            if current_file:
                fragments.append(_render_fragment(current_file, search_lines, replace_lines))
            continue

        if in_search:
            search_lines.append(line)
        elif in_replace:
            replace_lines.append(line)

    if not fragments:
        return output
    return "".join(fragments)


def _render_fragment(path: str, search_lines: list[str], replace_lines: list[str]) -> str:
    lines = [
        f"diff --git a/{path} b/{path}",
        f"--- a/{path}",
        f"+++ b/{path}",
        "@@ -0,0 +0,0 @@",
        *(f"-{line}" for line in search_lines),
        *(f"+{line}" for line in replace_lines),
        "",
    ]
    return "\n".join(lines)


def split_unified_diff(diff_text: str) -> list[FileChange]:
    """Split unified diff text into per-file entries in encounter order.

    Returns an empty list when the text holds no recognizable file headers.
    """

    if not diff_text or not is_unified_diff(diff_text):
        return []

    lines = diff_text.split("\n")
    if any(_GIT_HEADER.match(line) for line in lines):
        return _split_on(lines, _is_git_header, _path_from_git_header)
    return _split_on(lines, _is_old_file_header, _path_from_plain_headers)


def _is_git_header(lines: list[str], index: int) -> bool:
    return _GIT_HEADER.match(lines[index]) is not None


def _is_old_file_header(lines: list[str], index: int) -> bool:
    return (
        _OLD_FILE_HEADER.match(lines[index]) is not None
        and index + 1 < len(lines)
        and lines[index + 1].startswith("+++ ")
    )


def _path_from_git_header(lines: list[str], index: int) -> str:
    match = _GIT_HEADER.match(lines[index])
    assert match is not None
    return match.group(2)


def _path_from_plain_headers(lines: list[str], index: int) -> str:
    new_match = _NEW_FILE_HEADER.match(lines[index + 1])
    if new_match is not None and new_match.group(1) != "/dev/null":
        return new_match.group(1)
    old_match = _OLD_FILE_HEADER.match(lines[index])
    assert old_match is not None
    return old_match.group(1)


def _split_on(lines: list[str], is_header, path_of) -> list[FileChange]:
    changes: list[FileChange] = []
    start: int | None = None
    path = ""
    for index in range(len(lines)):
        if not is_header(lines, index):
            continue
        if start is not None:
            changes.append(FileChange(path=path, diff=_join(lines[start:index])))
        start = index
        path = path_of(lines, index)
    if start is not None:
        changes.append(FileChange(path=path, diff=_join(lines[start:])))
    return changes


def _join(chunk: list[str]) -> str:
    text = "\n".join(chunk).rstrip("\n")
    return f"{text}\n"
