from __future__ import annotations
from typing import Dict, Optional

from .timeline import DecorationEvent

# Dynamik -> Intensität (0..1)
DYNAMICS: Dict[str, float] = {
    "pppp": 0.1, "ppp": 0.2, "pp": 0.3, "p": 0.4, "mp": 0.6,
    "mf": 0.7, "f": 0.8, "ff": 0.9, "fff": 0.95, "ffff": 1.0,
    "sfz": 0.9,
}

# name -> (kind, variant, intensity, affects_velocity, affects_duration)
_TABLE = {
    "trill":          ("trill", "standard", 1.0, False, True),
    "tr":             ("trill", "standard", 1.0, False, True),
    "roll":           ("trill", "roll", 1.0, False, True),
    "uppermordent":   ("mordent", "upper", 1.0, False, True),
    "pralltriller":   ("mordent", "upper", 1.0, False, True),
    "lowermordent":   ("mordent", "lower", 1.0, False, True),
    "mordent":        ("mordent", "lower", 1.0, False, True),
    "turn":           ("turn", "normal", 1.0, False, True),
    "turnx":          ("turn", "normal", 1.0, False, True),
    "invertedturn":   ("turn", "inverted", 1.0, False, True),
    "invertedturnx":  ("turn", "inverted", 1.0, False, True),
    "fermata":        ("fermata", "normal", 1.5, False, True),
    "invertedfermata": ("fermata", "inverted", 1.5, False, True),
    "staccato":       ("staccato", "", 0.5, False, True),
    "tenuto":         ("tenuto", "", 1.0, False, True),
    "accent":         ("accent", "", 1.2, True, False),
    "emphasis":       ("accent", "", 1.2, True, False),
    ">":              ("accent", "", 1.2, True, False),
    "breath":         ("breath", "", 1.0, False, False),
    "upbow":          ("bowing", "up", 1.0, False, False),
    "downbow":        ("bowing", "down", 1.0, False, False),
    "segno":          ("navigation", "segno", 1.0, False, False),
    "coda":           ("navigation", "coda", 1.0, False, False),
    "D.S.":           ("navigation", "D.S.", 1.0, False, False),
    "D.C.":           ("navigation", "D.C.", 1.0, False, False),
    "dacapo":         ("navigation", "D.C.", 1.0, False, False),
    "dacoda":         ("navigation", "dacoda", 1.0, False, False),
    "fine":           ("navigation", "fine", 1.0, False, False),
}

# Span-Dekorationen !x(! ... !x)!
_SPANS = {
    "crescendo": "crescendo", "<": "crescendo",
    "diminuendo": "diminuendo", ">": "diminuendo",
    "trill": "trill",
    "slur": "slur",
}

def make_decoration(name: str, extended: bool = False,
                    span_id: Optional[int] = None) -> DecorationEvent:
    n = (name or "").strip()
    if extended:
        kind = _SPANS.get(n, n or "unknown")
        return DecorationEvent(kind, n, extended=True,
                               affects_velocity=kind in ("crescendo", "diminuendo"),
                               affects_duration=(kind == "trill"), span_id=span_id)
    if n in DYNAMICS:
        return DecorationEvent("dynamic", n, intensity=DYNAMICS[n], affects_velocity=True)
    if n in _TABLE:
        kind, variant, intensity, av, ad = _TABLE[n]
        return DecorationEvent(kind, variant, intensity=intensity,
                               affects_velocity=av, affects_duration=ad)
    if n in ("0", "1", "2", "3", "4", "5"):
        return DecorationEvent("fingering", n)
    return DecorationEvent("unknown", n)