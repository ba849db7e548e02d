# src/abcplay/write.py
from __future__ import annotations
import logging
import os
import re
from typing import Iterable, List, Optional, Tuple

import mido

from .process import build_timelines
from .timeline import ConductorTimeline, MidiNote, TimelineBundle, Tune, DEFAULT_BPM

log = logging.getLogger(__name__)

# ---------- interne Helfer ----------

MAX_TEMPO_MICRO = 0xFFFFFF  # 3 Byte im set_tempo-Event

def _qpm_to_micro(qpm: float) -> int:
    if qpm <= 0:
        qpm = DEFAULT_BPM
    return min(MAX_TEMPO_MICRO, int(round(60_000_000 / float(qpm))))

def _is_pow2(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0

def _emit_conductor(track: mido.MidiTrack, conductor: ConductorTimeline):
    """Tempo-, Takt- und Tonart-Metaevents, sortiert mit delta-times."""
    events: List[Tuple[int, int, mido.MetaMessage]] = []
    for tick, num, den in conductor.timesigs:
        if num <= 0 or not _is_pow2(den):
            # SMF kennt nur Zweierpotenzen als Nenner
            log.debug("time signature %d/%d not representable, skipped", num, den)
            continue
        events.append((tick, 0, mido.MetaMessage("time_signature", numerator=num, denominator=den)))
    for tick, key in conductor.keysigs:
        events.append((tick, 1, mido.MetaMessage("key_signature", key=key)))
    for tick, qpm in conductor.tempos:
        events.append((tick, 2, mido.MetaMessage("set_tempo", tempo=_qpm_to_micro(qpm))))
    events.sort(key=lambda x: (x[0], x[1]))

    last = 0
    for tick, _, msg in events:
        track.append(msg.copy(time=tick - last))
        last = tick

def _emit_notes(mt: mido.MidiTrack, notes: Iterable[MidiNote]):
    evs = []
    for n in notes:
        evs.append((n.start_tick, 1, "note_on", n))
        evs.append((n.end_tick, 0, "note_off", n))  # Off zuerst bei gleichem Tick
    evs.sort(key=lambda x: (x[0], x[1]))

    last = 0
    for tick, _, kind, n in evs:
        vel = n.velocity if kind == "note_on" else 0
        mt.append(mido.Message(kind, note=n.midi, velocity=vel, channel=n.channel, time=tick - last))
        last = tick

def _sanitize_filename(name: str) -> str:
    name = re.sub(r"[^\w\s\-\.\(\)\[\]]+", "_", name.strip())
    name = re.sub(r"\s+", " ", name)
    return name or "tune"

# ---------- öffentliche Writer-APIs ----------

def write_midi(bundle: TimelineBundle, out_path: str):
    """
    Typ-1-Datei: Conductor-Track (Tempo/Takt/Tonart) + ein Track pro Stimme
    mit Program Change am Anfang.
    """
    mid = mido.MidiFile(type=1, ticks_per_beat=bundle.ticks_per_beat)

    t_con = mido.MidiTrack()
    t_con.append(mido.MetaMessage("track_name", name=bundle.title or "Conductor", time=0))
    _emit_conductor(t_con, bundle.conductor)
    mid.tracks.append(t_con)

    for name, tr in bundle.tracks.items():
        mt = mido.MidiTrack()
        mt.append(mido.MetaMessage("track_name", name=tr.name or name, time=0))
        mt.append(mido.Message("program_change", channel=tr.channel, program=tr.program, time=0))
        _emit_notes(mt, tr.notes)
        mid.tracks.append(mt)

    out_dir = os.path.dirname(out_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    mid.save(out_path)
    log.info("wrote %s (%d tracks)", out_path, len(mid.tracks))

def default_midi_name(tune: Tune) -> str:
    return _sanitize_filename(tune.title) + ".mid"

def export_tune(tune: Tune, out_path: Optional[str] = None, cfg: Optional[dict] = None) -> str:
    """Tune -> MIDI-Datei. Ohne Pfad: '<Titel>.mid' im aktuellen Verzeichnis."""
    path = out_path or default_midi_name(tune)
    write_midi(build_timelines(tune, cfg), path)
    return path
