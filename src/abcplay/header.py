# src/abcplay/header.py
from __future__ import annotations
import re
from fractions import Fraction
from typing import Dict, Optional, Tuple

from .errors import Diagnostics
from .timeline import Tune, Meter, Tempo, KeySignature, DEFAULT_BPM
from .util.time import parse_fraction
from .voices import VoiceManager

FIELD_RE = re.compile(r"^([A-Za-z]):\s*(.*)$")
_TEMPO_RE = re.compile(r"(?:(\d+)/(\d+)\s*=\s*)?(\d+)")
_KEY_RE = re.compile(
    r"^([A-G])([#b]?)\s*(maj\w*|min\w*|m(?![a-z])|ion\w*|aeo\w*|dor\w*|phr\w*|lyd\w*|mix\w*|loc\w*)?",
    re.I,
)
_ATTR_RE = re.compile(r'([A-Za-z_]+)\s*=\s*("([^"]*)"|\S+)')

TEMPO_MIN, TEMPO_MAX = 30, 300

# Quintenzirkel: Tonika -> Vorzeichen (Dur)
KEY_FIFTHS = {
    "C": 0, "G": 1, "D": 2, "A": 3, "E": 4, "B": 5, "F#": 6, "C#": 7,
    "F": -1, "Bb": -2, "Eb": -3, "Ab": -4, "Db": -5, "Gb": -6, "Cb": -7,
    "G#": 8, "D#": 9, "A#": 10, "Fb": -8,
}
MODE_OFFSET = {
    "major": 0, "minor": -3, "dorian": -2, "phrygian": -4,
    "lydian": 1, "mixolydian": -1, "locrian": -5,
}
SHARP_ORDER = "FCGDAEB"
FLAT_ORDER = "BEADGCF"

def _mode_name(raw: str) -> str:
    m = (raw or "").lower()
    if not m or m.startswith("maj") or m.startswith("ion"):
        return "major"
    if m == "m" or m.startswith("min") or m.startswith("aeo"):
        return "minor"
    return {"dor": "dorian", "phr": "phrygian", "lyd": "lydian",
            "mix": "mixolydian", "loc": "locrian"}[m[:3]]

def accidentals_for(sharps: int) -> Dict[str, int]:
    if sharps >= 0:
        return {ch: 1 for ch in SHARP_ORDER[:sharps]}
    return {ch: -1 for ch in FLAT_ORDER[:-sharps]}

def parse_key(text: str) -> KeySignature:
    """
    'G', 'Am', 'D dorian', 'Bbmix', 'D ^g _b', 'none'.
    Clef-/Transpose-Zusätze (key=value) werden hier ignoriert.
    """
    s = (text or "").strip()
    if not s or s.lower() in ("none", "hp"):
        return KeySignature()
    m = _KEY_RE.match(s)
    if not m:
        raise ValueError(f"invalid key '{text}'")
    root = m.group(1).upper() + m.group(2)
    mode = _mode_name(m.group(3) or "")
    if root not in KEY_FIFTHS:
        raise ValueError(f"invalid key '{text}'")
    sharps = KEY_FIFTHS[root] + MODE_OFFSET[mode]
    if not -7 <= sharps <= 7:
        raise ValueError(f"key '{text}' needs more than 7 accidentals")
    acc = accidentals_for(sharps)
    # explizite Vorzeichen: K:D ^g _b =c
    for tok in s[m.end():].split():
        am = re.fullmatch(r"(\^\^|\^|__|_|=)([a-gA-G])", tok)
        if am:
            acc[am.group(2).upper()] = {"^^": 2, "^": 1, "=": 0, "_": -1, "__": -2}[am.group(1)]
    return KeySignature(root=root, mode=mode, sharps=sharps, accidentals=acc)

def parse_meter(text: str) -> Meter:
    s = (text or "").strip()
    if s == "C":
        return Meter(4, 4)
    if s == "C|":
        return Meter(2, 2)
    if not s or s.lower() == "none":
        return Meter(4, 4, free=True)
    if "/" not in s:
        raise ValueError(f"invalid meter '{text}'")
    num_s, den_s = s.split("/", 1)
    # '2+3/8' -> 5/8
    num = sum(int(x) for x in num_s.replace("(", "").replace(")", "").split("+"))
    den = int(den_s.strip())
    if num <= 0 or den <= 0:
        raise ValueError(f"invalid meter '{text}'")
    return Meter(num, den)

def parse_unit_length(text: str) -> Fraction:
    frac = parse_fraction(text)
    if frac <= 0:
        raise ValueError(f"invalid unit length '{text}'")
    return frac

def parse_tempo(text: str) -> Tempo:
    """Q:1/4=120, Q:3/8=40, Q:120, Q:"Allegro" 1/4=132. Beat-Default 1/4."""
    s = re.sub(r'"[^"]*"', " ", text or "").strip()
    if "=" in s:
        left, right = s.split("=", 1)
        beat = Fraction(0)
        for f in re.findall(r"\d+/\d+", left):
            beat += parse_fraction(f)
        digits = re.search(r"\d+", right)
        if not digits:
            raise ValueError(f"invalid tempo '{text}'")
        return Tempo(float(digits.group(0)), beat or Fraction(1, 4))
    m = _TEMPO_RE.search(s)
    if not m:
        raise ValueError(f"invalid tempo '{text}'")
    return Tempo(float(m.group(3)), Fraction(1, 4))

def read_tempo_field(value: str, line_no: int, diag: Diagnostics) -> Optional[Tempo]:
    """
    Q:-Feld mit Diagnose, für Header und Body gleich.
    Reiner Text ('Q:"Allegro"') -> Warnung, None (Tempo bleibt).
    Unlesbar -> Fehler, None. Außerhalb TEMPO_MIN..TEMPO_MAX -> Warnung, Default.
    """
    if not re.search(r"\d", re.sub(r'"[^"]*"', " ", value or "")):
        diag.warning(line_no, f"tempo '{value}' has no beat rate, ignored")
        return None
    try:
        tempo = parse_tempo(value)
    except (ValueError, ZeroDivisionError):
        diag.error(line_no, f"invalid tempo '{value}'")
        return None
    if not TEMPO_MIN <= tempo.bpm <= TEMPO_MAX:
        diag.warning(line_no, f"tempo {tempo.bpm:g} out of range, using {DEFAULT_BPM:g}")
        return Tempo(DEFAULT_BPM, tempo.beat)
    return tempo

def parse_voice_field(text: str) -> Tuple[str, Dict[str, str]]:
    """'1 name="Soprano" clef=treble' -> ('1', {'name': 'Soprano', 'clef': 'treble'})"""
    s = (text or "").strip()
    if not s:
        return "", {}
    parts = s.split(None, 1)
    ident = parts[0]
    attrs: Dict[str, str] = {}
    if len(parts) > 1:
        for m in _ATTR_RE.finditer(parts[1]):
            key = m.group(1).lower()
            attrs[key] = m.group(3) if m.group(3) is not None else m.group(2)
    return ident, attrs

class HeaderFieldParser:
    """
    Parst Einbuchstaben-Felder im HEADER-Zustand. K: beendet den Header.
    Body-Felder, die den Notenparser betreffen (K/L/M/V/P), behandelt analyze.
    """

    INFO_FIELDS = "ABDFGHINSUZmrs"

    def __init__(self, tune: Tune, voices: VoiceManager, diag: Diagnostics):
        self.tune = tune
        self.voices = voices
        self.diag = diag
        self.part_line = 0

    def parse(self, line: str, line_no: int) -> Optional[str]:
        """Gibt den Feldbuchstaben zurück (None, wenn keine Feldzeile)."""
        m = FIELD_RE.match(line.strip())
        if not m:
            return None
        letter, value = m.group(1), m.group(2).strip()
        handler = getattr(self, f"_field_{letter}", None)
        if handler is not None:
            handler(value, line_no)
        elif letter in self.INFO_FIELDS:
            self.tune.info.setdefault(letter, []).append(value)
        else:
            self.diag.warning(line_no, f"unknown header field '{letter}:'")
        return letter

    # --- einzelne Felder ---

    def _field_X(self, value: str, line_no: int):
        try:
            self.tune.number = int(value.split()[0]) if value else None
        except ValueError:
            self.diag.warning(line_no, f"invalid tune number '{value}'")

    def _field_T(self, value: str, line_no: int):
        if self.tune.title == "Untitled" and not self.tune.subtitles:
            self.tune.title = value or "Untitled"
        else:
            self.tune.subtitles.append(value)

    def _field_C(self, value: str, line_no: int):
        self.tune.composer = value if not self.tune.composer else f"{self.tune.composer}; {value}"

    def _field_O(self, value: str, line_no: int):
        self.tune.origin = value

    def _field_R(self, value: str, line_no: int):
        self.tune.rhythm = value

    def _field_P(self, value: str, line_no: int):
        self.tune.part_sequence = value
        self.part_line = line_no

    def _field_L(self, value: str, line_no: int):
        try:
            self.tune.unit_length = parse_unit_length(value)
        except (ValueError, ZeroDivisionError):
            self.diag.error(line_no, f"invalid unit length '{value}'")

    def _field_M(self, value: str, line_no: int):
        try:
            self.tune.meter = parse_meter(value)
        except (ValueError, ZeroDivisionError):
            self.diag.error(line_no, f"invalid meter '{value}'")

    def _field_Q(self, value: str, line_no: int):
        tempo = read_tempo_field(value, line_no, self.diag)
        if tempo is not None:
            self.tune.tempo = tempo

    def _field_K(self, value: str, line_no: int):
        try:
            self.tune.key = parse_key(value)
        except ValueError as e:
            self.diag.error(line_no, str(e))

    def _field_V(self, value: str, line_no: int):
        ident, attrs = parse_voice_field(value)
        if not ident:
            self.diag.error(line_no, "voice field without id")
            return
        self.voices.define(ident, attrs, line_no, self.diag)

    def _field_w(self, value: str, line_no: int):
        self.tune.lyrics.append(value)

    _field_W = _field_w
