"""Header fields: key, meter, unit length, tempo, voice definitions."""

from fractions import Fraction

import pytest

from abcplay.analyze import analyze_abc
from abcplay.header import parse_key, parse_meter, parse_tempo, parse_unit_length, parse_voice_field


def test_parse_key_major_and_minor() -> None:
    g = parse_key("G")
    assert g.sharps == 1
    assert g.accidentals == {"F": 1}
    am = parse_key("Am")
    assert am.mode == "minor"
    assert am.sharps == 0
    assert am.name == "Am"


def test_parse_key_modes_and_flats() -> None:
    assert parse_key("D dorian").sharps == 0
    assert parse_key("Bb").accidentals == {"B": -1, "E": -1}
    assert parse_key("A mix").sharps == 2


def test_parse_key_explicit_accidentals() -> None:
    key = parse_key("D ^g")
    assert key.accidentals["G"] == 1
    assert key.accidentals["F"] == 1


def test_parse_key_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        parse_key("H")


def test_parse_meter_variants() -> None:
    m = parse_meter("6/8")
    assert m.compound
    assert m.beats_per_measure == 3
    assert (parse_meter("C|").num, parse_meter("C|").den) == (2, 2)
    assert parse_meter("2+3/8").num == 5
    assert parse_meter("none").free


def test_default_unit_length_follows_meter() -> None:
    assert parse_meter("2/4").default_unit() == Fraction(1, 16)
    assert parse_meter("3/4").default_unit() == Fraction(1, 8)
    assert parse_unit_length("1/4") == Fraction(1, 4)


def test_parse_tempo_forms() -> None:
    assert parse_tempo("1/8=200").qpm == pytest.approx(100.0)
    assert parse_tempo('"Allegro" 1/4=132').bpm == 132
    assert parse_tempo("90").qpm == pytest.approx(90.0)
    assert parse_tempo("3/8=40").qpm == pytest.approx(60.0)


def test_parse_voice_field_with_quoted_values() -> None:
    ident, attrs = parse_voice_field('1 name="Soprano Voice" clef=treble')
    assert ident == "1"
    assert attrs == {"name": "Soprano Voice", "clef": "treble"}


def test_header_metadata_is_collected() -> None:
    res = analyze_abc("X:7\nT:Main\nT:Second\nC:Someone\nN:a note\nM:3/4\nQ:1/4=90\nK:D\nA")
    tune = res.tune
    assert tune.number == 7
    assert tune.title == "Main"
    assert tune.subtitles == ["Second"]
    assert tune.composer == "Someone"
    assert tune.info["N"] == ["a note"]
    assert tune.meter.num == 3
    assert tune.tempo.qpm == pytest.approx(90.0)
    assert tune.key.sharps == 2
    assert res.ok


def test_tempo_out_of_range_falls_back_with_warning() -> None:
    res = analyze_abc("X:1\nQ:400\nK:C\nC")
    assert res.tune.tempo.qpm == pytest.approx(120.0)
    assert any("out of range" in w for w in res.warnings)
    assert res.ok


def test_invalid_meter_is_an_error() -> None:
    res = analyze_abc("X:1\nM:abc\nK:C\nC")
    assert any(e.startswith("Line 2:") and "meter" in e for e in res.errors)
    assert not res.ok


def test_unknown_header_field_warns() -> None:
    res = analyze_abc("X:1\nY:whatever\nK:C\nC")
    assert any("unknown header field" in w for w in res.warnings)


def test_text_only_tempo_keeps_default_with_warning() -> None:
    res = analyze_abc('X:1\nQ:"Allegro"\nL:1/4\nK:C\nC D')
    assert res.ok
    assert res.tune.tempo.qpm == pytest.approx(120.0)
    assert any(w.startswith("Line 2:") and "no beat rate" in w for w in res.warnings)
