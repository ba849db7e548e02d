"""Music line parsing: durations, tuplets, graces, ties, chords, parts, merging."""

import pytest

from abcplay.analyze import analyze_abc
from abcplay.music import chord_symbol_pitches, tuplet_default_q


def parse(body: str, header: str = "X:1\nL:1/4\nK:C"):
    return analyze_abc(header + "\n" + body)


def melody(res):
    return [n for n in res.tune.notes if not n.is_grace]


def test_triplet_of_eighths_fills_one_beat() -> None:
    res = parse("(3ABC D|", header="X:1\nL:1/8\nK:C")
    notes = res.tune.notes
    assert [n.start for n in notes] == pytest.approx([0.0, 1 / 3, 2 / 3, 1.0])
    assert sum(n.duration for n in notes[:3]) == pytest.approx(1.0)
    assert res.ok


def test_tuplet_with_explicit_ratio() -> None:
    res = parse("(3:2:2AB C")
    notes = res.tune.notes
    assert [n.duration for n in notes] == pytest.approx([2 / 3, 2 / 3, 1.0])


def test_tuplet_default_q_depends_on_meter() -> None:
    assert tuplet_default_q(3, False) == 2
    assert tuplet_default_q(2, True) == 3
    assert tuplet_default_q(5, True) == 3
    assert tuplet_default_q(5, False) == 2


def test_broken_rhythm() -> None:
    a, b, c = parse("A>B C").tune.notes
    assert (a.start, a.duration) == pytest.approx((0.0, 1.5))
    assert (b.start, b.duration) == pytest.approx((1.5, 0.5))
    assert c.start == pytest.approx(2.0)

    a, b = parse("A<B").tune.notes
    assert (a.duration, b.start, b.duration) == pytest.approx((0.5, 0.5, 1.5))

    a, _ = parse("A>>B").tune.notes
    assert a.duration == pytest.approx(1.75)


def test_grace_notes_borrow_time() -> None:
    notes = parse("{g}A B").tune.notes
    grace, a, b = notes
    assert grace.is_grace
    assert grace.pitch == 79
    assert (grace.start, grace.duration) == pytest.approx((0.0, 0.125))
    assert (a.start, a.duration) == pytest.approx((0.125, 0.875))
    assert b.start == pytest.approx(1.0)


def test_tie_merges_notes() -> None:
    notes = parse("A-A B").tune.notes
    assert [n.pitch for n in notes] == [69, 71]
    assert notes[0].duration == pytest.approx(2.0)
    assert notes[1].start == pytest.approx(2.0)


def test_chord_shares_start() -> None:
    notes = parse("[CEG]2 A").tune.notes
    assert [n.pitch for n in notes] == [60, 64, 67, 69]
    assert [n.start for n in notes] == pytest.approx([0, 0, 0, 2])
    assert [n.duration for n in notes[:3]] == pytest.approx([2, 2, 2])


def test_key_and_bar_accidentals() -> None:
    notes = parse("F =F F | F f", header="X:1\nL:1/4\nK:G").tune.notes
    assert [n.pitch for n in notes] == [66, 65, 65, 66, 78]


def test_accidental_applies_to_one_octave_only() -> None:
    assert [n.pitch for n in parse("^C c C").tune.notes] == [61, 72, 61]


def test_octave_marks() -> None:
    assert [n.pitch for n in parse("C, C c c'").tune.notes] == [48, 60, 72, 84]


def test_inline_key_change() -> None:
    assert [n.pitch for n in parse("F [K:G] F").tune.notes] == [65, 66]


def test_multi_measure_rest() -> None:
    notes = parse("Z2 C").tune.notes
    assert notes[0].start == pytest.approx(8.0)


def test_rest_advances_cursor() -> None:
    notes = parse("z C z/ D").tune.notes
    assert [n.start for n in notes] == pytest.approx([1.0, 2.5])


@pytest.mark.parametrize("body, what", [
    ("(3AB", "unterminated tuplet"),
    ("{gA", "unterminated grace notes"),
    ("[CE", "unterminated chord"),
])
def test_unterminated_contexts_are_line_errors(body: str, what: str) -> None:
    res = analyze_abc(f"K:C\n{body}\nC")
    assert any(e.startswith("Line 2:") and what in e for e in res.errors)
    assert not res.ok
    assert not res.tune.complete
    # der Rest wird trotzdem geparst
    assert res.tune.notes[-1].pitch == 60


def test_dynamics_set_velocity() -> None:
    a, b, c = parse("!p! A B !f! C").tune.notes
    assert a.velocity == 51
    assert b.velocity == 51
    assert c.velocity == 102


def test_staccato_and_accent() -> None:
    a, b = parse(".A LB").tune.notes
    assert a.duration == pytest.approx(0.5)
    assert b.velocity == 96


def test_trill_expands_to_alternating_notes() -> None:
    notes = parse("TA B").tune.notes
    trill = notes[:8]
    assert [n.pitch for n in trill] == [69, 70] * 4
    assert all(n.duration == pytest.approx(0.125) for n in trill)
    assert notes[8].pitch == 71


def test_chord_symbol_adds_backing_notes() -> None:
    notes = parse('"C"C2').tune.notes
    backing = [n for n in notes if n.velocity == 50]
    assert sorted(n.pitch for n in backing) == [48, 52, 55]
    assert all(n.duration == pytest.approx(2.0) for n in backing)
    assert sorted(n.pitch for n in notes) == [48, 52, 55, 60]


def test_chord_symbol_pitches() -> None:
    assert chord_symbol_pitches("Am") == [57, 60, 64]
    assert chord_symbol_pitches("G7/B") == [47, 55, 59, 62, 65]
    assert chord_symbol_pitches("Xyz") is None


def test_merge_sorts_by_start_then_declaration_order() -> None:
    res = parse("V:1\nC D\nV:2\nE F")
    assert [n.pitch for n in res.tune.notes] == [60, 64, 62, 65]

    res = analyze_abc("X:1\nV:2\nV:1\nL:1/4\nK:C\nV:1\nC\nV:2\nE")
    assert [n.pitch for n in res.tune.notes] == [64, 60]


def test_part_sequence_expands_sections() -> None:
    res = analyze_abc("X:1\nP:ABA\nL:1/4\nK:C\nP:A\nC D\nP:B\nE F\n")
    notes = res.tune.notes
    assert [n.pitch for n in notes] == [60, 62, 64, 65, 60, 62]
    assert [n.start for n in notes] == pytest.approx([0, 1, 2, 3, 4, 5])
    assert res.tune.parts == {"A": (0.0, 2.0), "B": (2.0, 4.0)}
    assert res.ok


def test_repeated_part_groups() -> None:
    res = analyze_abc("X:1\nP:(AB)2\nL:1/4\nK:C\nP:A\nC\nP:B\nE\n")
    assert [n.pitch for n in res.tune.notes] == [60, 64, 60, 64]


def test_undefined_part_is_an_error() -> None:
    res = analyze_abc("X:1\nP:AC\nL:1/4\nK:C\nP:A\nC D\n")
    assert "Line 2: undefined part 'C'" in res.errors
    assert not res.ok


def test_repeat_expansion_feeds_the_parser() -> None:
    res = parse("|: C D :|")
    assert [n.pitch for n in res.tune.notes] == [60, 62, 60, 62]


def test_tempo_change_after_notes_is_ignored() -> None:
    res = parse("C\nQ:1/4=60\nD", header="X:1\nQ:1/4=100\nL:1/4\nK:C")
    assert res.tune.tempo.qpm == pytest.approx(100.0)
    assert any("tempo change" in w for w in res.warnings)


def test_body_tempo_is_range_checked_like_the_header() -> None:
    res = parse("Q:1/4=0\nC D", header="X:1\nL:1/4\nK:C")
    assert res.ok
    assert res.tune.tempo.qpm == pytest.approx(120.0)
    assert any("out of range" in w for w in res.warnings)


def test_annotations_do_not_disturb_the_melody() -> None:
    res = parse('"^rit."A B| "_Fine"C "<left"D ">right"E|')
    assert res.ok
    assert [n.pitch for n in res.tune.notes] == [69, 71, 60, 62, 64]
