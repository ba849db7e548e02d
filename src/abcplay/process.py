from __future__ import annotations
from dataclasses import replace
from typing import Dict, List, Optional
import logging

from .config import get_ticks_per_beat
from .errors import Diagnostics
from .humanize.ornaments import expand_ornaments
from .humanize.velocity import apply_articulations, articulation_config
from .interpretation import apply_hairpins
from .timeline import (
    Tune, NoteEvent, KeySignature, TimelineBundle, ConductorTimeline,
    TrackTimeline, MidiNote,
)
from .util.time import beats_to_ticks
from .voices import VoiceManager

log = logging.getLogger(__name__)

MAJOR_BY_SHARPS = {
    0: "C", 1: "G", 2: "D", 3: "A", 4: "E", 5: "B", 6: "F#", 7: "C#",
    -1: "F", -2: "Bb", -3: "Eb", -4: "Ab", -5: "Db", -6: "Gb", -7: "Cb",
}
MINOR_BY_SHARPS = {
    0: "Am", 1: "Em", 2: "Bm", 3: "F#m", 4: "C#m", 5: "G#m", 6: "D#m", 7: "A#m",
    -1: "Dm", -2: "Gm", -3: "Cm", -4: "Fm", -5: "Bbm", -6: "Ebm", -7: "Abm",
}

def mido_key_name(key: KeySignature) -> str:
    """Kirchentonarten -> Dur-Tonart mit gleichen Vorzeichen."""
    if key.mode == "minor":
        return MINOR_BY_SHARPS.get(key.sharps, "Am")
    return MAJOR_BY_SHARPS.get(key.sharps, "C")

def expand_part_sequence(seq: str) -> List[str]:
    """
    'ABA' -> [A,B,A]; 'A2B' -> [A,A,B]; '(AB)2C' -> [A,B,A,B,C].
    Punkte und Leerzeichen werden ignoriert. ValueError bei kaputten Klammern.
    """
    s = "".join(ch for ch in (seq or "") if ch not in " .\t")
    pos = 0

    def group() -> List[str]:
        nonlocal pos
        out: List[str] = []
        while pos < len(s):
            ch = s[pos]
            if ch == ")":
                return out
            if ch == "(":
                pos += 1
                item = group()
                if pos >= len(s) or s[pos] != ")":
                    raise ValueError(f"unbalanced '(' in part sequence '{seq}'")
                pos += 1
            elif ch.isalpha():
                item = [ch]
                pos += 1
            else:
                raise ValueError(f"unexpected '{ch}' in part sequence '{seq}'")
            j = pos
            while j < len(s) and s[j].isdigit():
                j += 1
            times = int(s[pos:j]) if j > pos else 1
            pos = j
            out.extend(item * times)
        return out

    result = group()
    if pos < len(s):
        raise ValueError(f"unbalanced ')' in part sequence '{seq}'")
    return result

def _apply_parts(notes: List[NoteEvent], tune: Tune, diag: Diagnostics, line_no: int) -> List[NoteEvent]:
    try:
        seq = expand_part_sequence(tune.part_sequence)
    except ValueError as e:
        diag.error(line_no, str(e))
        return notes
    if not seq:
        return notes
    missing = sorted({name for name in seq if name not in tune.parts})
    for name in missing:
        diag.error(line_no, f"undefined part '{name}'")
    if not tune.parts:
        return notes
    first = min(s for s, _ in tune.parts.values())
    out = [n for n in notes if n.start < first]
    offset = first
    for name in seq:
        if name not in tune.parts:
            continue
        s, e = tune.parts[name]
        out.extend(replace(n, start=n.start - s + offset) for n in notes if s <= n.start < e)
        offset += e - s
    return out

def _sort_key(rank: Dict[str, int]):
    return lambda n: (n.start, rank.get(n.voice, len(rank)))

def assemble_tune(tune: Tune, voices: VoiceManager, diag: Diagnostics,
                  cfg: Optional[dict] = None, part_line: int = 0) -> Tune:
    """
    Stimmen -> eine chronologische Notenliste.
    Sortierung: Startzeit, dann Deklarationsreihenfolge der Stimme (stabil).
    """
    cfg = cfg or {}
    if not voices.voices:
        voices.ensure_default()
    tune.voices = dict(voices.voices)
    tune.voice_order = list(voices.order)
    rank = {vid: i for i, vid in enumerate(voices.order)}

    merged: List[NoteEvent] = []
    for vid in voices.order:
        v = voices.voices[vid]
        if v.muted:
            continue
        for n in v.notes:
            vel = max(0, min(127, int(round(n.velocity * v.volume))))
            merged.append(replace(n, channel=v.channel, velocity=vel, decorations=list(n.decorations)))
    merged.sort(key=_sort_key(rank))

    pcfg = cfg.get("parser", {}) or {}
    hcfg = cfg.get("hairpins", {}) or {}
    apply_hairpins(merged, int(hcfg.get("step", 20)), float(hcfg.get("curve", 1.0)))
    apply_articulations(merged, articulation_config(cfg))

    if tune.part_sequence:
        merged = _apply_parts(merged, tune, diag, part_line)
        merged.sort(key=_sort_key(rank))
    if pcfg.get("expand_ornaments", True):
        merged = expand_ornaments(merged)
        merged.sort(key=_sort_key(rank))

    tune.notes = merged
    log.debug("assembled '%s': %d notes, %d voices", tune.title, len(merged), len(tune.voices))
    return tune

# ---------- Tick-Timeline für den MIDI-Export ----------

def build_timelines(tune: Tune, cfg: Optional[dict] = None) -> TimelineBundle:
    tpb = get_ticks_per_beat(cfg or {})
    conductor = ConductorTimeline(
        tempos=[(0, tune.tempo.qpm)],
        timesigs=[(0, tune.meter.num, tune.meter.den)],
        keysigs=[(0, mido_key_name(tune.key))],
    )
    tracks: Dict[str, TrackTimeline] = {}
    for vid in tune.voice_order:
        v = tune.voices[vid]
        if v.muted:
            continue
        tracks[vid] = TrackTimeline(name=v.name or vid, channel=v.channel, program=v.instrument)
    for n in tune.notes:
        tr = tracks.get(n.voice)
        if tr is None or n.velocity <= 0 or n.duration <= 0:
            continue
        start = beats_to_ticks(n.start, tpb)
        end = max(start + 1, beats_to_ticks(n.end, tpb))
        tr.notes.append(MidiNote(start, end, n.pitch, n.velocity, tr.channel))
    for tr in tracks.values():
        tr.notes.sort(key=lambda mn: (mn.start_tick, mn.end_tick, mn.midi))
    return TimelineBundle(conductor=conductor, tracks=tracks, ticks_per_beat=tpb, title=tune.title)
