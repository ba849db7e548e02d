# src/abcplay/voices.py
from __future__ import annotations
import logging
from fractions import Fraction
from typing import Dict, List, Optional

from .errors import Diagnostics
from .timeline import (
    VoiceState, DEFAULT_VELOCITY,
    VOICE_DEFINED, VOICE_ACTIVE, VOICE_SUSPENDED,
)

log = logging.getLogger(__name__)

PERCUSSION_CHANNEL = 9
DEFAULT_VOICE_ID = "default"

# GM-Programme (0-basiert) für instrument=<name>
GM_INSTRUMENTS: Dict[str, int] = {
    "piano": 0, "acoustic_grand_piano": 0, "bright_piano": 1, "electric_grand": 2,
    "honky_tonk": 3, "electric_piano": 4, "harpsichord": 6, "clavinet": 7,
    "celesta": 8, "glockenspiel": 9, "music_box": 10, "vibraphone": 11,
    "marimba": 12, "xylophone": 13, "tubular_bells": 14, "dulcimer": 15,
    "organ": 16, "drawbar_organ": 16, "percussive_organ": 17, "rock_organ": 18,
    "church_organ": 19, "reed_organ": 20, "accordion": 21, "harmonica": 22,
    "tango_accordion": 23,
    "guitar": 24, "nylon_guitar": 24, "steel_guitar": 25, "jazz_guitar": 26,
    "clean_guitar": 27, "muted_guitar": 28, "overdriven_guitar": 29,
    "distortion_guitar": 30,
    "bass": 32, "acoustic_bass": 32, "fingered_bass": 33, "picked_bass": 34,
    "fretless_bass": 35, "slap_bass": 36,
    "violin": 40, "viola": 41, "cello": 42, "contrabass": 43,
    "tremolo_strings": 44, "pizzicato_strings": 45, "harp": 46, "timpani": 47,
    "strings": 48, "string_ensemble_1": 48, "string_ensemble_2": 49,
    "synth_strings": 50, "choir_aahs": 52, "choir": 52, "voice_oohs": 53,
    "synth_voice": 54, "orchestra_hit": 55,
    "trumpet": 56, "trombone": 57, "tuba": 58, "muted_trumpet": 59,
    "french_horn": 60, "horn": 60, "brass": 61, "brass_section": 61,
    "soprano_sax": 64, "alto_sax": 65, "tenor_sax": 66, "baritone_sax": 67,
    "sax": 65, "oboe": 68, "english_horn": 69, "bassoon": 70, "clarinet": 71,
    "piccolo": 72, "flute": 73, "recorder": 74, "pan_flute": 75,
    "bottle": 76, "shakuhachi": 77, "whistle": 78, "ocarina": 79,
    "square_lead": 80, "sawtooth_lead": 81, "pad": 88, "sitar": 104,
    "banjo": 105, "shamisen": 106, "koto": 107, "kalimba": 108,
    "bagpipe": 109, "fiddle": 110, "shanai": 111,
}

CLEFS = ("treble", "bass", "alto", "tenor", "perc", "none")

def resolve_instrument(value) -> int:
    """Zahl (0..127, geklemmt) oder GM-Name -> Programmnummer. ValueError bei unbekanntem Namen."""
    if isinstance(value, int):
        return max(0, min(127, value))
    s = str(value).strip().lower().replace(" ", "_").replace("-", "_")
    try:
        return max(0, min(127, int(s)))
    except ValueError:
        pass
    if s in GM_INSTRUMENTS:
        return GM_INSTRUMENTS[s]
    raise ValueError(f"unknown instrument '{value}'")

def _parse_bool(s: str) -> bool:
    return str(s).strip().lower() in ("1", "true", "yes", "on", "y")

class VoiceManager:
    """
    Stimmen-Register: Definition, Aktivierung und Zeitcursor pro Stimme.
    Zustände: unseen -> defined -> active -> suspended -> active ...
    Beim Wegschalten wird der laufende Cursor gesichert, beim Zurückschalten
    wiederhergestellt (0 für neue Stimmen).
    """

    def __init__(self, default_velocity: int = DEFAULT_VELOCITY):
        self.voices: Dict[str, VoiceState] = {}
        self.order: List[str] = []
        self.current: Optional[str] = None
        self.default_velocity = int(default_velocity)
        self._next_channel = 0

    # --- Lookup / Anlage ---

    def _allocate_channel(self) -> int:
        ch = self._next_channel % 16
        if ch == PERCUSSION_CHANNEL:
            ch += 1
        self._next_channel = ch + 1
        return ch % 16

    def find(self, ident: str) -> Optional[VoiceState]:
        """Suche nach ID, Name oder Kurzname."""
        if ident in self.voices:
            return self.voices[ident]
        for vid in self.order:
            v = self.voices[vid]
            if ident and (ident == v.name or ident == v.short_name):
                return v
        return None

    def get_or_create(self, ident: str) -> VoiceState:
        v = self.find(ident)
        if v is None:
            v = VoiceState(id=ident, name=ident, velocity=self.default_velocity,
                           channel=self._allocate_channel())
            self.voices[ident] = v
            self.order.append(ident)
            log.debug("voice created: %s (channel %d)", ident, v.channel)
        return v

    def ensure_default(self) -> VoiceState:
        """Erste bekannte Stimme, sonst implizite Stimme 'default'."""
        if self.order:
            return self.voices[self.order[0]]
        return self.get_or_create(DEFAULT_VOICE_ID)

    @property
    def active(self) -> Optional[VoiceState]:
        return self.voices.get(self.current) if self.current else None

    # --- Definition ---

    def define(self, ident: str, attrs: Dict[str, str], line_no: int = 0,
               diag: Optional[Diagnostics] = None) -> VoiceState:
        v = self.get_or_create(ident)
        if v.state not in (VOICE_ACTIVE, VOICE_SUSPENDED):
            v.state = VOICE_DEFINED
        for key, raw in (attrs or {}).items():
            try:
                self._apply_attr(v, key, raw)
            except ValueError as e:
                if diag is not None:
                    diag.warning(line_no, f"voice {ident}: {e}")
        return v

    def _apply_attr(self, v: VoiceState, key: str, raw: str):
        if key in ("name", "nm"):
            v.name = raw
        elif key in ("sname", "snm", "subname", "short"):
            v.short_name = raw
        elif key in ("instrument", "program"):
            v.instrument = resolve_instrument(raw)
        elif key == "clef":
            clef = raw.lower().rstrip("0123456789+-")
            if clef not in CLEFS:
                raise ValueError(f"unknown clef '{raw}'")
            v.clef = clef
        elif key == "transpose":
            v.transpose = int(raw)
        elif key == "octave":
            v.octave_shift = int(raw)
        elif key == "volume":
            vol = float(raw)
            v.volume = max(0.0, min(1.0, vol / 127.0 if vol > 1.0 else vol))
        elif key == "velocity":
            v.velocity = max(1, min(127, int(raw)))
        elif key == "channel":
            ch = int(raw)
            if not 1 <= ch <= 16:
                raise ValueError(f"channel {ch} out of range 1..16")
            v.channel = ch - 1
        elif key in ("muted", "mute"):
            v.muted = _parse_bool(raw)
        else:
            raise ValueError(f"unknown attribute '{key}'")

    # --- Umschalten ---

    def switch(self, ident: str, now: Fraction) -> Fraction:
        """
        Aktiviert 'ident'. Der Cursor der bisherigen Stimme wird gesichert,
        Rückgabe ist der gespeicherte Cursor der neuen Stimme.
        """
        target = self.get_or_create(ident)
        prev = self.active
        if prev is target:
            return Fraction(now)
        if prev is not None:
            prev.time = Fraction(now)
            prev.state = VOICE_SUSPENDED
        target.state = VOICE_ACTIVE
        self.current = target.id
        return target.time

    def save_current(self, now: Fraction):
        v = self.active
        if v is not None:
            v.time = Fraction(now)
