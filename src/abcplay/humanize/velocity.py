from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from ..timeline import NoteEvent

@dataclass
class DynamicsConfig:
    min_velocity: int
    max_velocity: int
    per_mark: Dict[str, float]   # Mark -> Level 0..1

@dataclass
class ArticulationConfig:
    enabled: bool
    staccato: float              # Längenfaktor
    tenuto: float
    fermata: float
    accent: float                # Velocity-Faktor
    min_duration: float          # beats

def _clamp(v: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, v))

def dynamics_config(cfg: dict) -> DynamicsConfig:
    d = cfg.get("dynamics", {}) or {}
    lo, hi = d.get("velocity_range", [1, 127])
    return DynamicsConfig(int(lo), int(hi), dict(d.get("levels", {}) or {}))

def articulation_config(cfg: dict) -> ArticulationConfig:
    a = cfg.get("decorations", {}) or {}
    return ArticulationConfig(
        enabled=bool(a.get("enabled", True)),
        staccato=float(a.get("staccato", 0.5)),
        tenuto=float(a.get("tenuto", 1.0)),
        fermata=float(a.get("fermata", 1.5)),
        accent=float(a.get("accent", 1.2)),
        min_duration=float(a.get("min_duration", 0.01)),
    )

def dynamics_to_velocity(level: float, cfg: Optional[DynamicsConfig] = None) -> int:
    """Intensität 0..1 -> MIDI-Velocity (linear, geklemmt)."""
    lo, hi = (cfg.min_velocity, cfg.max_velocity) if cfg else (1, 127)
    return int(_clamp(int(round(float(level) * 127)), lo, hi))

def mark_level(mark: str, cfg: DynamicsConfig, fallback: float) -> float:
    return float(cfg.per_mark.get((mark or "").lower(), fallback))

def apply_articulations(notes: Iterable[NoteEvent], cfg: ArticulationConfig):
    """
    Staccato/Tenuto/Fermate skalieren die Länge, Akzente die Velocity.
    Ornamente (Triller etc.) macht humanize.ornaments.
    """
    if not cfg.enabled:
        return
    for n in notes:
        for d in n.decorations:
            if d.extended:
                continue
            if d.kind == "staccato":
                n.duration = max(cfg.min_duration, n.duration * cfg.staccato)
            elif d.kind == "tenuto":
                n.duration = max(cfg.min_duration, n.duration * cfg.tenuto)
            elif d.kind == "fermata":
                n.duration = n.duration * cfg.fermata
            elif d.kind == "accent":
                n.velocity = _clamp(int(round(n.velocity * cfg.accent)), 1, 127)
