from __future__ import annotations
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Optional, List, Dict, Tuple, Any
import time

DEFAULT_TPB = 480
DEFAULT_BPM = 120.0
DEFAULT_VELOCITY = 80

# Zeitbasis: 1 Beat = 1 Viertelnote

# --- Pass 1: Tokens / Parser-Objekte ---

@dataclass
class Token:
    kind: str
    text: str
    line: int = 0
    col: int = 0
    props: Dict[str, Any] = field(default_factory=dict)

@dataclass
class DecorationEvent:
    kind: str                     # "trill" | "mordent" | "dynamic" | "crescendo" | ...
    variant: str = ""
    extended: bool = False        # Teil eines !x(! ... !x)! Spans
    intensity: float = 1.0
    affects_velocity: bool = False
    affects_duration: bool = False
    span_id: Optional[int] = None

@dataclass
class NoteEvent:
    pitch: int
    velocity: int
    start: float                  # beats
    duration: float               # beats
    channel: int = 0
    voice: str = "default"
    decorations: List[DecorationEvent] = field(default_factory=list)
    is_grace: bool = False

    @property
    def end(self) -> float:
        return self.start + self.duration

    def has(self, kind: str) -> bool:
        return any(d.kind == kind for d in self.decorations)

@dataclass
class TupletContext:
    p: int                        # Noten in der Gruppe
    q: int                        # belegte Zeitschläge
    r: int                        # verbleibende Noten
    active: bool = True

    @property
    def ratio(self) -> Fraction:
        return Fraction(self.q, self.p)

VOICE_UNSEEN = "unseen"
VOICE_DEFINED = "defined"
VOICE_ACTIVE = "active"
VOICE_SUSPENDED = "suspended"

@dataclass
class VoiceState:
    id: str
    name: str = ""
    short_name: str = ""
    instrument: int = 0           # GM program 0..127
    channel: int = -1             # -1 = automatisch
    clef: str = "treble"
    transpose: int = 0
    octave_shift: int = 0
    muted: bool = False
    volume: float = 1.0
    velocity: int = DEFAULT_VELOCITY
    time: Fraction = Fraction(0)  # gespeicherter Zeitcursor
    state: str = VOICE_UNSEEN
    notes: List[NoteEvent] = field(default_factory=list)

@dataclass
class Meter:
    num: int = 4
    den: int = 4
    free: bool = False

    @property
    def compound(self) -> bool:
        return self.num > 3 and self.num % 3 == 0 and self.den in (4, 8, 16)

    @property
    def beats_per_measure(self) -> Fraction:
        """Taktlänge in Vierteln (6/8 -> 3)."""
        return Fraction(self.num * 4, self.den)

    def default_unit(self) -> Fraction:
        if self.free:
            return Fraction(1, 8)
        return Fraction(1, 16) if Fraction(self.num, self.den) < Fraction(3, 4) else Fraction(1, 8)

@dataclass
class Tempo:
    bpm: float = DEFAULT_BPM
    beat: Fraction = Fraction(1, 4)  # Notenwert, auf den sich bpm bezieht

    @property
    def qpm(self) -> float:
        """Viertel pro Minute."""
        return float(self.bpm) * float(self.beat) * 4.0

@dataclass
class KeySignature:
    root: str = "C"
    mode: str = "major"
    sharps: int = 0                                           # <0 = b
    accidentals: Dict[str, int] = field(default_factory=dict)  # 'F' -> +1

    @property
    def name(self) -> str:
        return self.root + ("m" if self.mode == "minor" else "")

@dataclass
class Tune:
    number: Optional[int] = None
    title: str = "Untitled"
    subtitles: List[str] = field(default_factory=list)
    composer: str = ""
    origin: str = ""
    rhythm: str = ""
    info: Dict[str, List[str]] = field(default_factory=dict)  # N:, Z:, S:, ...
    meter: Meter = field(default_factory=Meter)
    tempo: Tempo = field(default_factory=Tempo)
    key: KeySignature = field(default_factory=KeySignature)
    unit_length: Optional[Fraction] = None
    voices: Dict[str, VoiceState] = field(default_factory=dict)
    voice_order: List[str] = field(default_factory=list)
    notes: List[NoteEvent] = field(default_factory=list)
    lyrics: List[str] = field(default_factory=list)
    parts: Dict[str, Tuple[float, float]] = field(default_factory=dict)  # name -> (start, end)
    part_sequence: str = ""
    complete: bool = False

    @property
    def length(self) -> float:
        return max((n.end for n in self.notes), default=0.0)

@dataclass
class ParseResult:
    tune: Tune
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and self.tune.complete

# --- Playback ---

@dataclass
class MusicData:
    notation: str
    name: str = ""
    tempo_bpm: Optional[float] = None   # Override in Vierteln/min
    loop: bool = False
    wait_after_ms: int = 0
    source: str = "abc"                 # "abc" | "file"
    path: Optional[str] = None

@dataclass
class MusicSlot:
    id: int
    data: MusicData
    created_at: float = field(default_factory=time.time)

@dataclass
class ActiveNote:
    pitch: int
    channel: int
    end: float                          # beats

# --- Pass 2: Tick-Timeline für MIDI-Export ---

@dataclass
class MidiNote:
    start_tick: int
    end_tick: int
    midi: int
    velocity: int
    channel: int

@dataclass
class TrackTimeline:
    name: str
    channel: int
    program: int = 0
    notes: List[MidiNote] = field(default_factory=list)

@dataclass
class ConductorTimeline:
    tempos: List[Tuple[int,float]] = field(default_factory=list)           # (tick, qpm)
    timesigs: List[Tuple[int,int,int]] = field(default_factory=list)       # (tick, num, den)
    keysigs: List[Tuple[int,str]] = field(default_factory=list)            # (tick, mido key)

@dataclass
class TimelineBundle:
    conductor: ConductorTimeline
    tracks: Dict[str, TrackTimeline]
    ticks_per_beat: int = DEFAULT_TPB
    title: str = ""
