"""Tests for console capture diffing."""

from branchpod.streaming.diff import DeltaKind, compute_delta, normalize_capture


def test_identical_capture_yields_nothing() -> None:
    assert compute_delta("a\nb", "a\nb").kind == DeltaKind.NONE


def test_appended_line_yields_exactly_that_line() -> None:
    delta = compute_delta("$ ls\nfile1", "$ ls\nfile1\nX")

    assert delta.kind == DeltaKind.APPEND
    assert delta.lines == ("X",)


def test_several_appended_lines() -> None:
    delta = compute_delta("one", "one\ntwo\nthree")
    assert delta.lines == ("two", "three")


def test_first_capture_appends_everything() -> None:
    delta = compute_delta("", "hello\nworld")
    assert delta.kind == DeltaKind.APPEND
    assert delta.lines == ("hello", "world")


def test_shorter_capture_refreshes() -> None:
    delta = compute_delta("a\nb\nc", "b\nc")

    assert delta.kind == DeltaKind.REFRESH
    assert delta.full_content == "b\nc"


def test_in_place_edit_of_last_line_refreshes() -> None:
    """Typing after a prompt changes the last line without adding a new one."""
    delta = compute_delta("out\n$ ", "out\n$ ls")

    assert delta.kind == DeltaKind.REFRESH
    assert delta.full_content == "out\n$ ls"


def test_cleared_screen_refreshes_to_empty() -> None:
    delta = compute_delta("a\nb", "")
    assert delta.kind == DeltaKind.REFRESH
    assert delta.full_content == ""


def test_normalize_strips_trailing_blank_rows() -> None:
    assert normalize_capture("a\nb\n\n   \n\n") == "a\nb"
    assert normalize_capture("\n\n") == ""
    assert normalize_capture("  indented\n") == "  indented"
