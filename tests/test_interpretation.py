"""Hairpin ramps, ornament expansion and articulation post-processing."""

import pytest

from abcplay.analyze import analyze_abc
from abcplay.decorations import make_decoration
from abcplay.humanize.ornaments import expand_ornaments
from abcplay.humanize.velocity import ArticulationConfig, apply_articulations, dynamics_to_velocity
from abcplay.interpretation import apply_hairpins, hairpin_curve
from abcplay.timeline import NoteEvent


def _note(start: float, vel: int = 60, *decos) -> NoteEvent:
    return NoteEvent(pitch=60, velocity=vel, start=start, duration=1.0, decorations=list(decos))


def test_linear_hairpin_curve() -> None:
    assert list(hairpin_curve(3, 60, 80)) == pytest.approx([60, 70, 80])
    assert list(hairpin_curve(1, 60, 80)) == [60]
    assert len(hairpin_curve(0, 60, 80)) == 0


def test_s_curve_keeps_endpoints() -> None:
    curve = hairpin_curve(5, 40, 100, alpha=2.0)
    assert curve[0] == pytest.approx(40, abs=1e-6)
    assert curve[-1] == pytest.approx(100, abs=1e-6)
    assert curve[2] == pytest.approx(70)


def test_crescendo_without_target_uses_step() -> None:
    span = make_decoration("crescendo", extended=True, span_id=1)
    notes = [_note(0, 60, span), _note(1, 60, span), _note(2, 60, span)]
    apply_hairpins(notes, step=20)
    assert [n.velocity for n in notes] == [60, 70, 80]


def test_diminuendo_towards_next_dynamic() -> None:
    span = make_decoration(">", extended=True, span_id=3)
    target = make_decoration("pp")
    notes = [_note(0, 100, span), _note(1, 100, span), _note(2, 40, target)]
    apply_hairpins(notes)
    assert [n.velocity for n in notes] == [100, 40, 40]


def test_crescendo_in_abc() -> None:
    res = analyze_abc("X:1\nL:1/4\nK:C\n!crescendo(! C D E !crescendo)! F")
    assert [n.velocity for n in res.tune.notes] == [80, 90, 100, 80]


def test_mordent_expansion() -> None:
    n = NoteEvent(pitch=62, velocity=80, start=0.0, duration=0.75,
                  decorations=[make_decoration("lowermordent")])
    out = expand_ornaments([n])
    assert [o.pitch for o in out] == [62, 61, 62]
    assert [o.start for o in out] == pytest.approx([0.0, 0.25, 0.375])
    assert [o.duration for o in out] == pytest.approx([0.25, 0.125, 0.375])


def test_turn_expansion() -> None:
    n = NoteEvent(pitch=60, velocity=80, start=1.0, duration=1.0,
                  decorations=[make_decoration("turn")])
    out = expand_ornaments([n])
    assert [o.pitch for o in out] == [61, 60, 59, 60]
    assert out[-1].end == pytest.approx(2.0)


def test_grace_notes_are_not_ornamented() -> None:
    n = NoteEvent(pitch=60, velocity=80, start=0.0, duration=0.1, is_grace=True,
                  decorations=[make_decoration("trill")])
    assert expand_ornaments([n]) == [n]


def test_articulations() -> None:
    cfg = ArticulationConfig(enabled=True, staccato=0.5, tenuto=1.0, fermata=1.5,
                             accent=1.2, min_duration=0.01)
    notes = [
        _note(0, 60, make_decoration("staccato")),
        _note(1, 60, make_decoration("fermata")),
        _note(2, 120, make_decoration("accent")),
    ]
    apply_articulations(notes, cfg)
    assert [n.duration for n in notes] == pytest.approx([0.5, 1.5, 1.0])
    assert notes[2].velocity == 127


def test_articulations_can_be_disabled() -> None:
    cfg = ArticulationConfig(False, 0.5, 1.0, 1.5, 1.2, 0.01)
    notes = [_note(0, 60, make_decoration("staccato"))]
    apply_articulations(notes, cfg)
    assert notes[0].duration == 1.0


def test_dynamics_to_velocity_clamps() -> None:
    assert dynamics_to_velocity(0.4) == 51
    assert dynamics_to_velocity(2.0) == 127
    assert dynamics_to_velocity(0.0) == 1


def test_unknown_decoration_kind() -> None:
    assert make_decoration("wibble").kind == "unknown"
    assert make_decoration("3").kind == "fingering"
    assert make_decoration("mf").kind == "dynamic"
