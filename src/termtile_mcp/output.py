"""Helpers for cleaning and slicing captured terminal text."""

from __future__ import annotations

import unicodedata

DEFAULT_READ_LINES = 50
MAX_READ_LINES = 100
IDLE_SCAN_LINES = 5
IDLE_PROMPT_MAX_BYTES = 40

_CHROME_ASCII = set("+-|=")


def _is_chrome_char(char: str) -> bool:
    # Box drawing U+2500-U+257F and block elements U+2580-U+259F.
    return "─" <= char <= "▟" or char in _CHROME_ASCII


def is_chrome_line(line: str) -> bool:
    """Return whether a non-blank line is made only of borders and box drawing."""

    stripped = line.strip()
    if not stripped:
        return False
    return all(_is_chrome_char(char) for char in stripped)


def strip_control_chars(line: str) -> str:
    return "".join(
        char for char in line if char in "\t\n" or unicodedata.category(char) != "Cc"
    )


def clean_output(raw: str) -> str:
    """Drop TUI chrome lines, collapse blank runs to two lines and trim the edges."""

    cleaned: list[str] = []
    blank_run = 0
    for line in raw.split("\n"):
        if is_chrome_line(line):
            continue
        if not line.strip():
            blank_run += 1
            if blank_run <= 2:
                cleaned.append("")
            continue
        blank_run = 0
        cleaned.append(strip_control_chars(line))

    while cleaned and not cleaned[0].strip():
        cleaned.pop(0)
    while cleaned and not cleaned[-1].strip():
        cleaned.pop()
    return "\n".join(cleaned)


def last_non_empty_line(text: str) -> str:
    for line in reversed(text.split("\n")):
        if line.strip():
            return line.strip()
    return ""


def contains_idle_pattern(text: str, pattern: str) -> bool:
    """Look for a short prompt line starting with ``pattern`` near the end of ``text``.

    Long lines that merely start with the prompt character are hint text, not a
    waiting prompt.
    """

    checked = 0
    for line in reversed(text.split("\n")):
        if checked >= IDLE_SCAN_LINES:
            break
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith(pattern) and len(stripped.encode("utf-8")) < IDLE_PROMPT_MAX_BYTES:
            return True
        checked += 1
    return False


def normalize_read_lines(lines: int | None) -> int:
    if lines is None or lines <= 0:
        return DEFAULT_READ_LINES
    return min(lines, MAX_READ_LINES)


def tail_output_lines(text: str, lines: int) -> str:
    if lines <= 0:
        return text
    parts = text.rstrip("\n").split("\n")
    return "\n".join(parts[-lines:])


def output_delta(previous: str, current: str) -> str:
    """Return the part of ``current`` not already seen in ``previous``.

    The overlap is the longest run of trailing lines of ``previous`` that opens
    ``current``; without any overlap the whole of ``current`` is new.
    """

    if not previous:
        return current
    if previous == current:
        return ""
    old_lines = previous.split("\n")
    new_lines = current.split("\n")
    for size in range(min(len(old_lines), len(new_lines)), 0, -1):
        if old_lines[-size:] == new_lines[:size]:
            return "\n".join(new_lines[size:])
    return current


__all__ = [
    "DEFAULT_READ_LINES",
    "MAX_READ_LINES",
    "clean_output",
    "contains_idle_pattern",
    "is_chrome_line",
    "last_non_empty_line",
    "normalize_read_lines",
    "output_delta",
    "strip_control_chars",
    "tail_output_lines",
]
