from __future__ import annotations

from termtile_mcp.fence import (
    FENCE_CLOSE,
    FENCE_INSTRUCTION,
    FENCE_OPEN,
    count_close_tags,
    count_response_pairs,
    extract_last_response,
    last_response,
    trim_output,
    wrap_task_with_fence,
)


def _answer(body: str) -> str:
    return f"{FENCE_OPEN}\n{body}\n{FENCE_CLOSE}\n"


def test_wrap_prepends_instruction() -> None:
    wrapped = wrap_task_with_fence("fix the tests")

    assert wrapped.startswith(FENCE_INSTRUCTION)
    assert wrapped.endswith("fix the tests")


def test_echoed_instruction_is_not_a_response() -> None:
    screen = "> " + wrap_task_with_fence("fix the tests") + "\nthinking..."

    assert count_close_tags(screen) == 0
    assert count_response_pairs(screen) == 0
    assert last_response(screen) is None


def test_multiline_answer_after_echo_is_counted() -> None:
    screen = "> " + wrap_task_with_fence("summarize") + "\n" + _answer("all tests pass")

    assert count_close_tags(screen) == 1
    assert last_response(screen) == "all tests pass"


def test_inline_answer_is_extracted() -> None:
    screen = f"{FENCE_OPEN}done{FENCE_CLOSE}"

    assert count_close_tags(screen) == 1
    assert last_response(screen) == "done"


def test_latest_answer_wins() -> None:
    screen = _answer("first") + "more work\n" + _answer("second\nline two")

    assert count_response_pairs(screen) == 2
    assert count_close_tags(screen) == 2
    assert last_response(screen) == "second\nline two"


def test_close_without_visible_open_still_counts() -> None:
    screen = "...tail of a long answer\n" + FENCE_CLOSE + "\n"

    assert count_close_tags(screen) == 1
    assert last_response(screen) is None
    assert extract_last_response(screen) == screen


def test_trim_output_only_applies_with_fence() -> None:
    screen = "noise\n" + _answer("result")

    assert trim_output(screen, False) == screen
    assert trim_output(screen, True) == "result"
    assert trim_output("no markers here", True) == "no markers here"
