# src/abcplay/interpretation.py
from __future__ import annotations
from typing import Dict, List, Tuple
import numpy as np

from .timeline import NoteEvent

HAIRPINS = ("crescendo", "diminuendo")

def _ease_s(start: float, end: float, s: np.ndarray, alpha: float = 2.0) -> np.ndarray:
    s2 = np.power(s, alpha)
    sE = s2 / (s2 + np.power(1 - s, alpha) + 1e-12)
    return start + (end - start) * sE

def hairpin_curve(n: int, v_start: float, v_end: float, alpha: float = 1.0) -> np.ndarray:
    """
    Velocity-Verlauf über n Noten (inkl. Endpunkte).
    alpha=1 -> linear, >1 -> S-Kurve (langsamer Start, langsames Ende).
    """
    if n <= 0:
        return np.array([], dtype=float)
    if n == 1:
        return np.array([float(v_start)])
    s = np.linspace(0.0, 1.0, n)
    if abs(alpha - 1.0) < 1e-9:
        return (1.0 - s) * float(v_start) + s * float(v_end)
    return _ease_s(float(v_start), float(v_end), s, alpha)

def _spans(notes: List[NoteEvent]) -> Dict[Tuple[str, int], Tuple[str, List[int]]]:
    """(voice, span_id) -> (kind, Indizes der Noten im Span)"""
    spans: Dict[Tuple[str, int], Tuple[str, List[int]]] = {}
    for i, n in enumerate(notes):
        if n.is_grace:
            continue
        for d in n.decorations:
            if d.extended and d.kind in HAIRPINS and d.span_id is not None:
                key = (n.voice, d.span_id)
                spans.setdefault(key, (d.kind, []))[1].append(i)
    return spans

def _velocity_after(notes: List[NoteEvent], voice: str, after: float) -> int:
    """Velocity der ersten Note nach dem Span, falls dort eine Dynamik steht, sonst -1."""
    for n in notes:
        if n.voice == voice and not n.is_grace and n.start >= after - 1e-9:
            if any(d.kind == "dynamic" for d in n.decorations):
                return n.velocity
            return -1
    return -1

def apply_hairpins(notes: List[NoteEvent], step: int = 20, alpha: float = 1.0):
    """
    Crescendo/Diminuendo-Spans: Velocity rampt vom Spanbeginn zum Ziel.
    Ziel = nächste Dynamikangabe direkt nach dem Span, sonst Start +/- step.
    Erwartet chronologisch sortierte Noten.
    """
    for (voice, _), (kind, idx) in _spans(notes).items():
        if not idx:
            continue
        v0 = notes[idx[0]].velocity
        span_end = max(notes[i].end for i in idx)
        target = _velocity_after(notes, voice, span_end)
        if target < 0 or (kind == "crescendo" and target <= v0) or (kind == "diminuendo" and target >= v0):
            target = v0 + step if kind == "crescendo" else v0 - step
        # Akkordtöne gleicher Startzeit bekommen denselben Wert
        starts = sorted({notes[i].start for i in idx})
        curve = np.clip(np.rint(hairpin_curve(len(starts), v0, target, alpha)), 1, 127)
        level = {t: int(v) for t, v in zip(starts, curve)}
        for i in idx:
            notes[i].velocity = level[notes[i].start]
