"""Repeat expansion on raw ABC text."""

import pytest

from abcplay.errors import RepeatExpansionError
from abcplay.repeats import expand_repeats, expand_section, split_header


def test_text_without_markers_is_unchanged() -> None:
    text = "X:1\nT:Plain\nK:C\nA B c d|e f g a|\n"
    assert expand_repeats(text) == text


def test_simple_repeat_is_duplicated() -> None:
    assert expand_repeats("A B |: C D :|") == "A B C D C D"


def test_first_and_second_endings() -> None:
    assert expand_repeats("|: A B |1 C :|2 D |") == "A B C | A B D|"


def test_closing_marker_without_opening_repeats_from_start() -> None:
    assert expand_repeats("A B :|") == "A B A B"


def test_header_is_left_alone() -> None:
    text = "X:1\nT:|: not music :|\nK:C\n|: C :|"
    out = expand_repeats(text)
    assert out.splitlines()[1] == "T:|: not music :|"
    assert out.splitlines()[-1] == "C C"


def test_repeats_stay_inside_their_voice_section() -> None:
    text = "V:1\n|: A B :|\nV:2\nC D"
    assert expand_repeats(text) == "V:1\nA B A B\nV:2\nC D"


def test_double_colon_is_end_and_start() -> None:
    assert expand_repeats("|: A :: B :|") == "A A B B"


def test_iteration_limit_raises_with_partial_text() -> None:
    with pytest.raises(RepeatExpansionError) as exc:
        expand_repeats("|: A :| |: B :|", max_iterations=1)
    assert exc.value.limit == 1
    assert exc.value.partial.startswith("A A")
    assert "expansion limit exceeded" in str(exc.value)


def test_split_header_without_key_has_no_header() -> None:
    header, body = split_header("A B\nC D")
    assert header == []
    assert body == ["A B", "C D"]


def test_expand_section_ignores_tuplet_colons() -> None:
    assert expand_section("(3::2 ABC") == "(3::2 ABC"


def test_comment_lines_stay_in_place() -> None:
    assert expand_repeats("% intro\n|: A :|") == "% intro\nA A"
    text = "X:1\nK:C\n% just a remark\nA B|\n"
    assert expand_repeats(text) == text
