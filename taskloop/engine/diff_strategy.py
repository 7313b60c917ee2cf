"""SEARCH/REPLACE block parsing and application for apply_diff.

A diff is one or more blocks:

    <<<<<<< SEARCH
    exact lines to find
    =======
    replacement lines
    >>>>>>> REPLACE

Each SEARCH section is located in the current content by exact match,
then by a whitespace-insensitive line match, then by the best difflib
window whose similarity ratio reaches the fuzzy threshold.
"""
from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_BLOCK = re.compile(
    r"<<<<<<< SEARCH\n(?P<search>.*?)\n?=======\n(?P<replace>.*?)\n?>>>>>>> REPLACE",
    re.DOTALL,
)


@dataclass
class SearchReplaceBlock:
    search: str
    replace: str


@dataclass
class DiffResult:
    success: bool
    content: str = ""
    error: str = ""
    applied: int = 0
    failed_blocks: list[int] = field(default_factory=list)


def parse_blocks(diff: str) -> list[SearchReplaceBlock]:
    return [
        SearchReplaceBlock(search=m.group("search"), replace=m.group("replace"))
        for m in _BLOCK.finditer(diff.replace("\r\n", "\n"))
    ]


def _find_exact(lines: list[str], search: list[str]) -> int | None:
    size = len(search)
    for i in range(len(lines) - size + 1):
        if lines[i:i + size] == search:
            return i
    return None


def _find_loose(lines: list[str], search: list[str]) -> int | None:
    wanted = [" ".join(s.split()) for s in search]
    size = len(wanted)
    for i in range(len(lines) - size + 1):
        if [" ".join(line.split()) for line in lines[i:i + size]] == wanted:
            return i
    return None


def _find_fuzzy(
    lines: list[str], search: list[str], threshold: float,
) -> tuple[int | None, float]:
    size = len(search)
    target = "\n".join(search)
    best_index: int | None = None
    best_ratio = 0.0
    for i in range(len(lines) - size + 1):
        ratio = difflib.SequenceMatcher(
            None, "\n".join(lines[i:i + size]), target,
        ).ratio()
        if ratio > best_ratio:
            best_index, best_ratio = i, ratio
    if best_index is not None and best_ratio >= threshold:
        return best_index, best_ratio
    return None, best_ratio


def _reindent(replace: list[str], original_first: str, search_first: str) -> list[str]:
    """Shift replacement lines by the indentation the match actually had."""
    found = original_first[:len(original_first) - len(original_first.lstrip())]
    expected = search_first[:len(search_first) - len(search_first.lstrip())]
    if found == expected:
        return replace
    out = []
    for line in replace:
        if line.startswith(expected):
            out.append(found + line[len(expected):])
        else:
            out.append(line)
    return out


def apply_diff(content: str, diff: str, fuzzy_threshold: float = 1.0) -> DiffResult:
    """Apply every SEARCH/REPLACE block in diff to content.

    The result is unsuccessful if any block could not be located; no
    partial edit is returned in that case.
    """
    blocks = parse_blocks(diff)
    if not blocks:
        return DiffResult(
            success=False,
            error=(
                "Invalid diff format: expected one or more "
                "<<<<<<< SEARCH / ======= / >>>>>>> REPLACE blocks"
            ),
        )

    line_ending = "\r\n" if "\r\n" in content else "\n"
    lines = content.replace("\r\n", "\n").split("\n")
    errors: list[str] = []
    failed: list[int] = []

    for number, block in enumerate(blocks, start=1):
        search = block.search.split("\n") if block.search else []
        replace = block.replace.split("\n") if block.replace else []
        if not search:
            if len(lines) == 1 and lines[0] == "":
                lines = replace
                continue
            failed.append(number)
            errors.append(f"Block {number}: empty SEARCH section on a non-empty file")
            continue

        index = _find_exact(lines, search)
        if index is None:
            index = _find_loose(lines, search)
        ratio = 1.0
        if index is None and fuzzy_threshold < 1.0:
            index, ratio = _find_fuzzy(lines, search, fuzzy_threshold)
        if index is None:
            failed.append(number)
            errors.append(
                f"Block {number}: no sufficiently similar match found "
                f"(threshold {fuzzy_threshold:.0%})"
            )
            continue
        if ratio < 1.0:
            logger.debug("Diff block %d matched fuzzily at line %d (%.2f)", number, index + 1, ratio)
        replacement = _reindent(replace, lines[index], search[0])
        lines[index:index + len(search)] = replacement

    if failed:
        return DiffResult(
            success=False,
            error="\n".join(errors),
            applied=len(blocks) - len(failed),
            failed_blocks=failed,
        )
    return DiffResult(
        success=True,
        content=line_ending.join(lines),
        applied=len(blocks),
    )
