from __future__ import annotations
from dataclasses import replace
from typing import List

from ..timeline import NoteEvent

TRILL_NOTES = 8
ORNAMENT_KINDS = ("trill", "mordent", "turn")

def _ornament_of(note: NoteEvent):
    for d in note.decorations:
        if d.kind in ORNAMENT_KINDS:
            return d
    return None

def _vel(v: int, factor: float) -> int:
    return max(1, min(127, int(v * factor)))

def _trill(n: NoteEvent) -> List[NoteEvent]:
    # Wechsel Hauptnote / oberer Halbton
    step = n.duration / TRILL_NOTES
    upper = min(127, n.pitch + 1)
    return [
        replace(n, pitch=(n.pitch if i % 2 == 0 else upper), start=n.start + i * step,
                duration=step, velocity=_vel(n.velocity, 0.9))
        for i in range(TRILL_NOTES)
    ]

def _mordent(n: NoteEvent, upper: bool) -> List[NoteEvent]:
    part = n.duration / 3.0
    neighbour = max(0, min(127, n.pitch + (1 if upper else -1)))
    return [
        replace(n, duration=part),
        replace(n, pitch=neighbour, start=n.start + part, duration=part * 0.5,
                velocity=_vel(n.velocity, 0.8)),
        replace(n, start=n.start + part * 1.5, duration=n.duration - part * 1.5),
    ]

def _turn(n: NoteEvent, inverted: bool) -> List[NoteEvent]:
    q = n.duration / 4.0
    hi, lo = min(127, n.pitch + 1), max(0, n.pitch - 1)
    first, third = (lo, hi) if inverted else (hi, lo)
    return [
        replace(n, pitch=first, duration=q, velocity=_vel(n.velocity, 0.8)),
        replace(n, start=n.start + q, duration=q),
        replace(n, pitch=third, start=n.start + 2 * q, duration=q, velocity=_vel(n.velocity, 0.8)),
        replace(n, start=n.start + 3 * q, duration=q),
    ]

def expand_ornaments(notes: List[NoteEvent]) -> List[NoteEvent]:
    """Triller/Mordent/Doppelschlag -> Einzelnoten. Reihenfolge bleibt erhalten."""
    out: List[NoteEvent] = []
    for n in notes:
        d = _ornament_of(n)
        if d is None or n.is_grace:
            out.append(n)
        elif d.kind == "trill":
            out.extend(_trill(n))
        elif d.kind == "mordent":
            out.extend(_mordent(n, d.variant == "upper"))
        else:
            out.extend(_turn(n, d.variant == "inverted"))
    return out
