"""PlaybackScheduler driven by a fake clock and a RecordingBackend."""

import pytest

from abcplay.backend import RecordingBackend
from abcplay.errors import AbcParseError, QueueFullError, SchedulerError
from abcplay.scheduler import PlaybackScheduler
from abcplay.timeline import MusicData


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def tune(body: str, title: str = "Tune", qpm: int = 60) -> str:
    return f"X:1\nT:{title}\nL:1/4\nQ:1/4={qpm}\nK:C\n{body}\n"


def make(cfg=None):
    clock = FakeClock()
    backend = RecordingBackend(clock=clock)
    return PlaybackScheduler(backend, cfg, clock=clock), backend, clock


def run(sched, clock, until: float, step: float = 0.01) -> None:
    t = clock.now
    while t <= until + 1e-9:
        clock.now = t
        sched.tick(t)
        t = round(t + step, 6)


def test_slots_play_in_fifo_order() -> None:
    sched, backend, clock = make()
    ids = [sched.enqueue(MusicData(tune(p, title=p))) for p in ("C", "D", "E")]
    assert ids == [1, 2, 3]
    run(sched, clock, 5.0)
    assert [e[3] for e in backend.of_kind("note_on")] == [60, 62, 64]
    st = sched.status()
    assert st.queue_size == 0
    assert not st.playing
    # jedes note_on hat sein note_off
    assert len(backend.of_kind("note_off")) == 3


def test_program_change_at_slot_start() -> None:
    sched, backend, clock = make()
    sched.enqueue(MusicData("X:1\nV:1 instrument=violin\nK:C\nC"))
    sched.tick(0.0)
    assert backend.events[0][1:] == ("program_change", 0, 40)


def test_stop_releases_every_sounding_note() -> None:
    sched, backend, clock = make()
    sched.enqueue(MusicData(tune("[CEG]4")))
    sched.enqueue(MusicData(tune("A")))
    sched.tick(0.0)
    on = {(e[2], e[3]) for e in backend.of_kind("note_on")}
    assert on == {(0, 60), (0, 64), (0, 67)}
    sched.stop()
    off = {(e[2], e[3]) for e in backend.of_kind("note_off")}
    assert off == on
    st = sched.status()
    assert (st.queue_size, st.playing) == (0, False)


def test_double_tempo_halves_note_spacing() -> None:
    spacing = {}
    for mult in (1.0, 2.0):
        sched, backend, clock = make()
        sched.set_tempo(mult)
        sched.enqueue(MusicData(tune("C D")))
        run(sched, clock, 3.0)
        first, second = backend.of_kind("note_on")[:2]
        spacing[mult] = second[0] - first[0]
    assert spacing[1.0] == pytest.approx(1.0, abs=0.02)
    assert spacing[2.0] == pytest.approx(0.5, abs=0.02)


def test_tune_tempo_override() -> None:
    sched, backend, clock = make()
    sched.enqueue(MusicData(tune("C D"), tempo_bpm=120))
    run(sched, clock, 2.0)
    first, second = backend.of_kind("note_on")[:2]
    assert second[0] - first[0] == pytest.approx(0.5, abs=0.02)


def test_pause_freezes_cursor_without_note_offs() -> None:
    sched, backend, clock = make()
    sched.enqueue(MusicData(tune("C D")))
    sched.tick(0.0)
    sched.tick(0.5)
    sched.pause()
    sched.tick(5.0)
    assert backend.of_kind("note_off") == []
    assert sched.status().paused
    sched.resume()
    sched.tick(5.25)
    assert len(backend.of_kind("note_on")) == 1
    sched.tick(5.5)
    assert [e[3] for e in backend.of_kind("note_on")] == [60, 62]
    assert backend.of_kind("note_off")[0][3] == 60


def test_skip_moves_to_next_slot() -> None:
    sched, backend, clock = make()
    sched.enqueue(MusicData(tune("C4")))
    sched.enqueue(MusicData(tune("D")))
    sched.tick(0.0)
    assert sched.skip()
    assert backend.events[-1][1:] == ("note_off", 0, 60)
    sched.tick(0.01)
    assert backend.of_kind("note_on")[-1][3] == 62
    assert sched.status().current_id == 2


def test_remove_queued_and_current_slot() -> None:
    sched, backend, clock = make()
    for p in ("C", "D", "E"):
        sched.enqueue(MusicData(tune(p)))
    sched.tick(0.0)
    assert sched.remove(3)
    assert [s.id for s in sched.list_slots()] == [2]
    assert not sched.remove(99)
    assert sched.remove(1)
    assert sched.status().current_id is None
    sched.tick(0.01)
    assert sched.status().current_id == 2


def test_loop_restarts_the_tune() -> None:
    sched, backend, clock = make()
    sched.enqueue(MusicData(tune("C"), loop=True))
    run(sched, clock, 3.5)
    assert len(backend.of_kind("note_on")) == 4
    assert sched.status().playing


def test_wait_after_delays_next_slot() -> None:
    sched, backend, clock = make()
    sched.enqueue(MusicData(tune("C"), wait_after_ms=1000))
    sched.enqueue(MusicData(tune("D")))
    run(sched, clock, 1.5)
    assert len(backend.of_kind("note_on")) == 1
    run(sched, clock, 2.5)
    assert [e[3] for e in backend.of_kind("note_on")] == [60, 62]


def test_queue_full_leaves_queue_untouched() -> None:
    sched, _, _ = make({"scheduler": {"max_queue": 1}})
    sched.enqueue(MusicData(tune("C")))
    with pytest.raises(QueueFullError):
        sched.enqueue(MusicData(tune("D")))
    assert len(sched.list_slots()) == 1


def test_broken_tune_never_reaches_the_queue() -> None:
    sched, _, _ = make()
    with pytest.raises(AbcParseError) as exc:
        sched.enqueue(MusicData("K:C\n(3AB"))
    assert "unterminated tuplet" in exc.value.errors[0]
    assert sched.status().queue_size == 0


def test_volume_scales_velocity_and_clamps() -> None:
    sched, backend, _ = make()
    assert sched.set_volume(0.5) == 0.5
    sched.enqueue(MusicData(tune("C")))
    sched.tick(0.0)
    assert backend.of_kind("note_on")[0][4] == 40
    assert sched.set_volume(3) == 1.0
    assert sched.set_tempo(10) == 4.0
    assert sched.set_tempo(0) == 0.1


def test_active_registry_is_bounded() -> None:
    sched, backend, _ = make({"scheduler": {"max_active_notes": 2}})
    sched.enqueue(MusicData(tune("[CEG]")))
    sched.tick(0.0)
    kinds = [(e[1], e[3]) for e in backend.events if e[1] != "program_change"]
    assert kinds == [("note_on", 60), ("note_on", 64), ("note_off", 60), ("note_on", 67)]


def test_clear_keeps_current_slot() -> None:
    sched, _, _ = make()
    for p in ("C", "D", "E"):
        sched.enqueue(MusicData(tune(p)))
    sched.tick(0.0)
    assert sched.clear() == 2
    st = sched.status()
    assert (st.queue_size, st.playing, st.current_id) == (0, True, 1)


def test_slot_name_defaults_to_title() -> None:
    sched, _, _ = make()
    sched.enqueue(MusicData(tune("C", title="Morning")))
    assert sched.list_slots()[0].data.name == "Morning"


@pytest.mark.integration
def test_background_thread_plays_until_idle() -> None:
    backend = RecordingBackend()
    sched = PlaybackScheduler(backend, {"scheduler": {"tick_ms": 2}})
    sched.enqueue(MusicData(tune("C D E", qpm=300)))
    sched.start()
    try:
        assert sched.wait_until_idle(timeout=5.0)
    finally:
        sched.shutdown()
    assert [e[3] for e in backend.of_kind("note_on")] == [60, 62, 64]
    assert len(backend.of_kind("note_off")) == 3


def test_tempo_change_only_affects_future_ticks() -> None:
    sched, backend, clock = make()
    sched.enqueue(MusicData(tune("C D E")))
    run(sched, clock, 1.0)
    sched.set_tempo(2.0)
    run(sched, clock, 2.0)
    on = {e[3]: e[0] for e in backend.of_kind("note_on")}
    off = {e[3]: e[0] for e in backend.of_kind("note_off")}
    # schon gespielte Noten behalten ihr Timing
    assert on[60] == pytest.approx(0.0)
    assert off[60] == pytest.approx(1.0, abs=0.02)
    assert on[62] == pytest.approx(1.0, abs=0.02)
    # danach dauert ein Beat nur noch eine halbe Sekunde
    assert off[62] == pytest.approx(1.5, abs=0.02)
    assert on[64] == pytest.approx(1.5, abs=0.02)


def test_status_reports_position_and_length() -> None:
    sched, _, _ = make()
    sched.enqueue(MusicData(tune("C D"), wait_after_ms=1000))
    sched.tick(0.0)
    sched.tick(0.5)
    st = sched.status()
    assert st.position == pytest.approx(0.5)
    assert st.length == pytest.approx(3.0)
    sched.stop()
    assert (sched.status().position, sched.status().length) == (0.0, 0.0)


def test_seek_skips_to_later_notes() -> None:
    sched, backend, clock = make()
    assert not sched.seek(1.0)
    sched.enqueue(MusicData(tune("C D E F")))
    sched.tick(0.0)
    assert sched.seek(2.5)
    assert backend.events[-1][1:] == ("note_off", 0, 60)
    sched.tick(0.01)
    sched.tick(0.5)
    assert [e[3] for e in backend.of_kind("note_on")] == [60, 65]


def two_voices() -> str:
    return "X:1\nL:1/4\nQ:1/4=60\nK:C\nV:1\nC D\nV:2\nE F\n"


def test_mute_voice_at_runtime() -> None:
    sched, backend, clock = make()
    sched.enqueue(MusicData(two_voices()))
    sched.tick(0.0)
    assert sorted(e[3] for e in backend.of_kind("note_on")) == [60, 64]
    assert sched.mute_voice("2") == "2"
    assert backend.events[-1][1] == "note_off"
    assert backend.events[-1][3] == 64
    run(sched, clock, 1.0)
    assert sorted(e[3] for e in backend.of_kind("note_on")) == [60, 62, 64]


def test_voice_volume_and_instrument_at_runtime() -> None:
    sched, backend, clock = make()
    sched.enqueue(MusicData(two_voices()))
    sched.tick(0.0)
    assert sched.set_voice_volume("1", 0.5) == 0.5
    assert sched.set_voice_instrument("2", "cello") == 42
    assert backend.events[-1][1:3] == ("program_change", backend.of_kind("note_on")[1][2])
    run(sched, clock, 1.0)
    late = {e[3]: e[4] for e in backend.of_kind("note_on")[2:]}
    assert late == {62: 40, 65: 80}


def test_voice_controls_need_a_playing_known_voice() -> None:
    sched, _, _ = make()
    with pytest.raises(SchedulerError):
        sched.mute_voice("1")
    sched.enqueue(MusicData(two_voices()))
    sched.tick(0.0)
    with pytest.raises(SchedulerError):
        sched.set_voice_volume("nope", 0.5)


def test_zero_body_tempo_still_finishes() -> None:
    sched, backend, clock = make()
    sched.enqueue(MusicData("X:1\nL:1/4\nK:C\nQ:1/4=0\nC D"))
    run(sched, clock, 1.5)
    assert not sched.status().playing
    assert len(backend.of_kind("note_off")) == 2
