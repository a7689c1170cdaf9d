"""Response-fence protocol: markers that delimit an agent's final answer."""

from __future__ import annotations

import bisect
import re
from dataclasses import dataclass

FENCE_OPEN = "[termtile-response]"
FENCE_CLOSE = "[/termtile-response]"

FENCE_INSTRUCTION = (
    "IMPORTANT: When you are completely finished, wrap ONLY your final answer inside "
    f"{FENCE_OPEN} and {FENCE_CLOSE} tags. Do not include any other text outside these "
    "tags in your final response.\n\n"
)

# The instruction sentence renders as an inline pair around this word.
_INSTRUCTION_PAIR_CONTENT = "and"

_MARKER_PATTERN = re.compile(re.escape(FENCE_OPEN) + "|" + re.escape(FENCE_CLOSE))


@dataclass(slots=True, frozen=True)
class FencePair:
    """One open/close marker pair found in terminal text."""

    content: str
    inline: bool
    open_line: int
    close_line: int

    @property
    def is_instruction_echo(self) -> bool:
        return self.inline and self.content == _INSTRUCTION_PAIR_CONTENT


def wrap_task_with_fence(task: str) -> str:
    """Prepend the fence instruction to ``task``."""

    return FENCE_INSTRUCTION + task


def _scan(text: str) -> tuple[list[FencePair], int]:
    """Return every pair (instruction echoes included) and the total close-marker count."""

    line_starts = [0]
    for match in re.finditer("\n", text):
        line_starts.append(match.end())
    lines = text.split("\n")

    pairs: list[FencePair] = []
    closes = 0
    pending: re.Match[str] | None = None
    pending_line = -1

    for match in _MARKER_PATTERN.finditer(text):
        line_index = bisect.bisect_right(line_starts, match.start()) - 1
        if match.group(0) == FENCE_OPEN:
            pending, pending_line = match, line_index
            continue

        closes += 1
        if pending is None:
            continue
        if pending_line == line_index:
            content = text[pending.end() : match.start()].strip()
            pairs.append(FencePair(content, True, pending_line, line_index))
        else:
            body = "\n".join(lines[pending_line + 1 : line_index])
            pairs.append(FencePair(body.strip(), False, pending_line, line_index))
        pending = None

    return pairs, closes


def response_pairs(text: str) -> list[FencePair]:
    """Return the real response pairs in ``text``, oldest first."""

    pairs, _ = _scan(text)
    return [pair for pair in pairs if not pair.is_instruction_echo]


def count_response_pairs(text: str) -> int:
    return len(response_pairs(text))


def count_close_tags(text: str) -> int:
    """Count close markers, ignoring the one closing the echoed instruction.

    Close markers whose open marker scrolled out of view still count, so a
    bounded tail capture can see a long response finish.
    """

    pairs, closes = _scan(text)
    return closes - sum(1 for pair in pairs if pair.is_instruction_echo)


def last_response(text: str) -> str | None:
    """Return the content of the most recent real pair, or ``None``."""

    pairs = response_pairs(text)
    if not pairs:
        return None
    return pairs[-1].content


def extract_last_response(text: str) -> str:
    """Return the most recent fenced answer, or ``text`` unchanged when there is none."""

    content = last_response(text)
    return text if content is None else content


def trim_output(text: str, response_fence: bool) -> str:
    """Reduce captured output to the fenced answer when the fence is active."""

    if not response_fence:
        return text
    return extract_last_response(text)


__all__ = [
    "FENCE_CLOSE",
    "FENCE_INSTRUCTION",
    "FENCE_OPEN",
    "FencePair",
    "count_close_tags",
    "count_response_pairs",
    "extract_last_response",
    "last_response",
    "response_pairs",
    "trim_output",
    "wrap_task_with_fence",
]
