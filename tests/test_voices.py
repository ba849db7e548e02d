"""Voice registry and cursor save/restore."""

from fractions import Fraction

import pytest

from abcplay.analyze import analyze_abc
from abcplay.errors import Diagnostics
from abcplay.timeline import VOICE_ACTIVE, VOICE_DEFINED, VOICE_SUSPENDED
from abcplay.voices import VoiceManager, resolve_instrument


def test_voice_cursors_align_on_switch_back() -> None:
    res = analyze_abc("V:1\nA B\nV:2\nC D\nV:1\nE F")
    v1 = res.tune.voices["1"]
    v2 = res.tune.voices["2"]
    assert [n.pitch for n in v1.notes] == [69, 71, 64, 65]
    assert [n.pitch for n in v2.notes] == [60, 62]
    a, b, e, _ = v1.notes
    assert e.start == pytest.approx(b.end)
    assert v2.notes[0].start == 0.0
    assert res.ok


def test_switch_saves_and_restores_time() -> None:
    vm = VoiceManager()
    assert vm.switch("a", Fraction(0)) == 0
    assert vm.switch("b", Fraction(3)) == 0
    assert vm.voices["a"].state == VOICE_SUSPENDED
    assert vm.switch("a", Fraction(1)) == 3
    assert vm.voices["b"].time == 1
    assert vm.voices["a"].state == VOICE_ACTIVE


def test_define_sets_state_and_attributes() -> None:
    vm = VoiceManager()
    diag = Diagnostics()
    v = vm.define("S", {"name": "Soprano", "instrument": "flute", "channel": "10",
                        "volume": "64", "octave": "-1"}, 1, diag)
    assert v.state == VOICE_DEFINED
    assert v.instrument == 73
    assert v.channel == 9
    assert v.volume == pytest.approx(64 / 127)
    assert v.octave_shift == -1
    assert vm.find("Soprano") is v
    assert diag.ok


def test_unknown_voice_attribute_warns() -> None:
    vm = VoiceManager()
    diag = Diagnostics()
    vm.define("1", {"colour": "red"}, 4, diag)
    assert diag.warnings == ["Line 4: voice 1: unknown attribute 'colour'"]


def test_channels_skip_percussion() -> None:
    vm = VoiceManager()
    channels = [vm.get_or_create(str(i)).channel for i in range(11)]
    assert channels == [0, 1, 2, 3, 4, 5, 6, 7, 8, 10, 11]


def test_resolve_instrument() -> None:
    assert resolve_instrument("violin") == 40
    assert resolve_instrument("Acoustic Grand Piano") == 0
    assert resolve_instrument("200") == 127
    with pytest.raises(ValueError):
        resolve_instrument("kazoo")


def test_voice_transpose_and_mute() -> None:
    res = analyze_abc('X:1\nV:1 transpose=2\nV:2 muted=yes\nL:1/4\nK:C\nV:1\nC\nV:2\nE')
    assert [n.pitch for n in res.tune.notes] == [62]


def test_implicit_default_voice() -> None:
    res = analyze_abc("X:1\nK:C\nC D")
    assert list(res.tune.voices) == ["default"]
    assert len(res.tune.voices["default"].notes) == 2
