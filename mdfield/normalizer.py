"""Structural repair of hand-typed or pasted markdown before parsing.

Every pass is a small pure function over the whole text. `normalize()` runs
the pass list in order and re-runs it until the text stops changing, so the
result is a fixpoint: ``normalize(normalize(x)) == normalize(x)``.

Passes never rewrite the inside of fenced code blocks except for the global
text-encoding repairs (entities, line endings, invisible characters).
"""

from __future__ import annotations

import html
import logging
import re
from typing import Callable

from .errors import NormalizationFailure

logger = logging.getLogger(__name__)

MAX_NORMALIZE_ROUNDS = 6
ALERT_TYPES = ("NOTE", "TIP", "IMPORTANT", "WARNING", "CAUTION")

_TEXT = "text"
_FENCE_OPEN = "fence-open"
_FENCE_CLOSE = "fence-close"
_CODE = "code"

_FENCE_OPEN_RE = re.compile(r"^[ \t]*(`{3,}|~{3,})(.*)$")
_ZERO_WIDTH_RE = re.compile(r"[\u200b-\u200d\ufeff]")
_BULLET_GLYPH_RE = re.compile(r"^([ \t]*)[•●◦○][ \t]*")
_ORDERED_MARKER_RE = re.compile(r"^([ \t]*)(\d{1,9})[.)](?!\d)[ \t]*(?=\S)")
_LIST_ITEM_RE = re.compile(r"^([ \t]*)(?:([-*+])|(\d{1,9})\.)(?:[ \t]+|$)")
_RULE_RE = re.compile(r"^ {0,3}([-*_])(?:[ \t]*\1){2,}[ \t]*$")
_TABLE_SEPARATOR_RE = re.compile(r"^[ \t]*\|?[ \t]*:?-+:?[ \t]*(?:\|[ \t]*:?-+:?[ \t]*)*\|?[ \t]*$")
_UNESCAPED_PIPE_RE = re.compile(r"(?<!\\)\|")
ALERT_MARKER_RE = re.compile(r"^[ \t]*\[!(" + "|".join(ALERT_TYPES) + r")\]", re.IGNORECASE)


def _fence_roles(lines: list[str]) -> list[str]:
    """Classify each line as plain text, fence delimiter, or code content."""
    roles: list[str] = []
    fence: tuple[str, int] | None = None
    for line in lines:
        if fence is None:
            match = _FENCE_OPEN_RE.match(line)
            # Backtick fences may not carry backticks in their info string.
            if match and not (match.group(1)[0] == "`" and "`" in match.group(2)):
                fence = (match.group(1)[0], len(match.group(1)))
                roles.append(_FENCE_OPEN)
            else:
                roles.append(_TEXT)
            continue
        stripped = line.strip()
        char, length = fence
        if stripped and set(stripped) == {char} and len(stripped) >= length:
            roles.append(_FENCE_CLOSE)
            fence = None
        else:
            roles.append(_CODE)
    return roles


def _map_text_lines(text: str, transform: Callable[[str], str]) -> str:
    lines = text.split("\n")
    roles = _fence_roles(lines)
    return "\n".join(
        transform(line) if role == _TEXT else line
        for line, role in zip(lines, roles)
    )


def _indent_width(prefix: str) -> int:
    return len(prefix.expandtabs(4))


def _is_blank(line: str) -> bool:
    return not line.strip()


def decode_entities(text: str) -> str:
    """Decode literal HTML entities, repeating until double escapes are gone."""
    previous = None
    while previous != text:
        previous, text = text, html.unescape(text)
    return text


def unify_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def strip_invisible(text: str) -> str:
    return _ZERO_WIDTH_RE.sub("", text)


def canonicalize_bullets(text: str) -> str:
    """Rewrite pasted bullet glyphs (•, ●, ◦, ○) into ``- `` markers."""
    return _map_text_lines(text, lambda line: _BULLET_GLYPH_RE.sub(r"\1- ", line, count=1))


def canonicalize_ordered_markers(text: str) -> str:
    """Rewrite ``N)``, ``N.item`` and ``N.   item`` into ``N. item``."""
    return _map_text_lines(
        text,
        lambda line: _ORDERED_MARKER_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}. ", line, count=1),
    )


def _split_table_row(line: str) -> list[str]:
    inner = line.strip()
    if inner.startswith("|"):
        inner = inner[1:]
    if inner.endswith("|") and not inner.endswith("\\|"):
        inner = inner[:-1]
    return [cell.strip() for cell in _UNESCAPED_PIPE_RE.split(inner)]


def repair_table_separators(text: str) -> str:
    """Make each separator row carry exactly as many cells as its header."""
    lines = text.split("\n")
    roles = _fence_roles(lines)
    for index in range(len(lines) - 1):
        header, separator = lines[index], lines[index + 1]
        if roles[index] != _TEXT or roles[index + 1] != _TEXT:
            continue
        if "|" not in header or "|" not in separator:
            continue
        if _TABLE_SEPARATOR_RE.match(header) or not _TABLE_SEPARATOR_RE.match(separator):
            continue
        column_count = len(_split_table_row(header))
        cells = _split_table_row(separator)
        if len(cells) == column_count:
            continue
        cells = (cells + ["---"] * column_count)[:column_count]
        lines[index + 1] = "| " + " | ".join(cells) + " |"
    return "\n".join(lines)


def separate_blocks(text: str) -> str:
    """Put blank lines around fences, rules and list runs; tighten list runs.

    A list run is a sequence of items sharing one indentation and one marker
    type. A run start gets a blank line before it unless the line above is
    its parent item. Blank lines sitting directly between two items of the
    same run are dropped so the run parses as a single list.
    """
    lines = text.split("\n")
    roles = _fence_roles(lines)
    out: list[str] = []
    runs: list[tuple[int, str]] = []
    pending_blanks = 0
    blank_needed = False
    previous_item_indent: int | None = None

    def emit(line: str, separate: bool) -> None:
        nonlocal pending_blanks, blank_needed
        if pending_blanks:
            out.extend([""] * pending_blanks)
        elif (separate or blank_needed) and out:
            out.append("")
        pending_blanks = 0
        blank_needed = False
        out.append(line)

    def close_runs(indent: int) -> None:
        # A non-item line after a blank ends every run it is not nested in.
        if pending_blanks:
            while runs and runs[-1][0] >= indent:
                runs.pop()

    for line, role in zip(lines, roles):
        if role == _CODE:
            out.append(line)
            continue
        if role == _FENCE_CLOSE:
            out.append(line)
            blank_needed = True
            previous_item_indent = None
            continue
        if _is_blank(line):
            pending_blanks += 1
            continue

        indent = _indent_width(line[: len(line) - len(line.lstrip())])
        if role == _FENCE_OPEN:
            close_runs(indent)
            emit(line, separate=True)
            previous_item_indent = None
            continue
        if _RULE_RE.match(line):
            close_runs(indent)
            emit(line, separate=True)
            blank_needed = True
            previous_item_indent = None
            continue

        item = _LIST_ITEM_RE.match(line)
        if item is None:
            close_runs(indent)
            emit(line, separate=False)
            previous_item_indent = None
            continue

        kind = item.group(2) or "."
        while runs and runs[-1][0] > indent:
            runs.pop()
        if runs and runs[-1] == (indent, kind):
            if previous_item_indent is not None and previous_item_indent >= indent:
                pending_blanks = 0
            emit(line, separate=False)
        else:
            if runs and runs[-1][0] == indent:
                runs.pop()
            runs.append((indent, kind))
            under_parent = previous_item_indent is not None and previous_item_indent < indent
            emit(line, separate=not under_parent)
        previous_item_indent = indent

    out.extend([""] * pending_blanks)
    return "\n".join(out)


def isolate_alerts(text: str) -> str:
    """Surround each ``[!TYPE] ...`` span with blank lines.

    A span starts at the marker line and runs to the next blank line, the
    next marker line, or the next code fence.
    """
    lines = text.split("\n")
    roles = _fence_roles(lines)
    out: list[str] = []
    in_alert = False
    for line, role in zip(lines, roles):
        if role == _TEXT and ALERT_MARKER_RE.match(line):
            if out and not _is_blank(out[-1]):
                out.append("")
            in_alert = True
        elif role == _FENCE_OPEN and in_alert:
            if out and not _is_blank(out[-1]):
                out.append("")
            in_alert = False
        elif role != _TEXT or _is_blank(line):
            in_alert = False
        out.append(line)
    return "\n".join(out)


def collapse_blank_lines(text: str) -> str:
    """Squeeze blank-line runs outside fences and trim the text's edges."""
    lines = text.split("\n")
    roles = _fence_roles(lines)
    out: list[tuple[str, str]] = []
    for line, role in zip(lines, roles):
        if role == _TEXT and _is_blank(line):
            if out and out[-1] == (_TEXT, ""):
                continue
            out.append((_TEXT, ""))
        else:
            out.append((role, line))
    while out and out[0] == (_TEXT, ""):
        out.pop(0)
    while out and out[-1] == (_TEXT, ""):
        out.pop()
    return "\n".join(line for _role, line in out)


REPAIR_PASSES: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("decode_entities", decode_entities),
    ("unify_line_endings", unify_line_endings),
    ("strip_invisible", strip_invisible),
    ("canonicalize_bullets", canonicalize_bullets),
    ("canonicalize_ordered_markers", canonicalize_ordered_markers),
    ("repair_table_separators", repair_table_separators),
    ("separate_blocks", separate_blocks),
    ("isolate_alerts", isolate_alerts),
    ("collapse_blank_lines", collapse_blank_lines),
)


def _run_passes(text: str) -> str:
    for name, repair in REPAIR_PASSES:
        try:
            text = repair(text)
        except Exception as exc:
            # Fail open: this pass is skipped, the others still run.
            logger.warning("%s", NormalizationFailure(name, exc))
    return text


def normalize(raw) -> str:
    """Repair raw markdown. Never raises; non-string input yields ``""``."""
    if not isinstance(raw, str):
        return ""
    text = raw
    for _round in range(MAX_NORMALIZE_ROUNDS):
        updated = _run_passes(text)
        if updated == text:
            return text
        text = updated
    logger.debug("normalize did not settle after %d rounds", MAX_NORMALIZE_ROUNDS)
    return text
