# src/abcplay/music.py
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Dict, List, Optional, Tuple

from .decorations import make_decoration
from .errors import Diagnostics
from .header import parse_key, parse_meter, parse_unit_length, parse_voice_field, read_tempo_field
from .humanize.velocity import dynamics_config, dynamics_to_velocity, mark_level
from .timeline import (
    Token, Tune, NoteEvent, DecorationEvent, TupletContext, VoiceState,
)
from .util.time import parse_duration
from .voices import VoiceManager

log = logging.getLogger(__name__)

SEMITONES = {"C": 0, "D": 2, "E": 4, "F": 5, "G": 7, "A": 9, "B": 11}
MIDDLE_C = 60

# Standard-q für (p ohne explizites q
TUPLET_Q = {2: 3, 3: 2, 4: 3, 6: 2, 8: 3}

CHORD_INTERVALS = {
    "": (0, 4, 7),
    "maj": (0, 4, 7),
    "m": (0, 3, 7),
    "min": (0, 3, 7),
    "7": (0, 4, 7, 10),
    "maj7": (0, 4, 7, 11),
    "M7": (0, 4, 7, 11),
    "m7": (0, 3, 7, 10),
    "min7": (0, 3, 7, 10),
    "dim": (0, 3, 6),
    "dim7": (0, 3, 6, 9),
    "m7b5": (0, 3, 6, 10),
    "aug": (0, 4, 8),
    "+": (0, 4, 8),
    "sus2": (0, 2, 7),
    "sus4": (0, 5, 7),
    "6": (0, 4, 7, 9),
    "m6": (0, 3, 7, 9),
    "9": (0, 4, 7, 10, 14),
}
_CHORD_RE = re.compile(r"^([A-G])([#b]?)([^/]*)(?:/([A-G][#b]?))?$")
BACKING_LOW, BACKING_HIGH = 36, 72

def tuplet_default_q(p: int, compound: bool) -> int:
    """q aus dem Takt ableiten (auch für explizites q=0)."""
    return TUPLET_Q.get(p, 3 if compound else 2)

def chord_symbol_pitches(symbol: str) -> Optional[List[int]]:
    """'Am7' -> MIDI-Töne im Bereich 36..72 (Grundton eine Oktave unter dem mittleren C)."""
    m = _CHORD_RE.match((symbol or "").strip())
    if not m:
        return None
    quality = m.group(3).strip()
    if quality not in CHORD_INTERVALS:
        return None
    root = MIDDLE_C - 12 + SEMITONES[m.group(1)] + {"#": 1, "b": -1, "": 0}[m.group(2)]
    pitches = []
    for iv in CHORD_INTERVALS[quality]:
        p = root + iv
        while p > BACKING_HIGH:
            p -= 12
        while p < BACKING_LOW:
            p += 12
        pitches.append(p)
    if m.group(4):
        b = m.group(4)
        bass = MIDDLE_C - 24 + SEMITONES[b[0]] + {"#": 1, "b": -1}.get(b[1:], 0)
        while bass < BACKING_LOW:
            bass += 12
        pitches.insert(0, bass)
    return sorted(set(pitches))

@dataclass
class _Spec:
    pitch: int
    base: Fraction
    decorations: List[DecorationEvent]
    tie: bool = False

@dataclass
class _VoiceParse:
    """Parserzustand pro Stimme (überlebt Stimmwechsel mitten in der Zeile)."""
    velocity: int
    bar_acc: Dict[Tuple[str, int], int] = field(default_factory=dict)
    tuplets: List[int] = field(default_factory=list)        # IDs in MusicLineParser._tuplets
    grace_open: bool = False
    grace_buf: List[int] = field(default_factory=list)
    chord_open: bool = False
    chord: List[_Spec] = field(default_factory=list)
    chord_decos: List[DecorationEvent] = field(default_factory=list)
    pending_decos: List[DecorationEvent] = field(default_factory=list)
    open_spans: Dict[str, DecorationEvent] = field(default_factory=dict)
    broken_next: Fraction = Fraction(1)
    last_group: List[NoteEvent] = field(default_factory=list)
    last_advance: Fraction = Fraction(0)
    tie_from: List[NoteEvent] = field(default_factory=list)
    slur_depth: int = 0
    pending_chord: Optional[str] = None
    backing: List[NoteEvent] = field(default_factory=list)

class MusicLineParser:
    """
    Tokens der aktiven Stimme -> NoteEvents mit Startzeit/Dauer in Beats.
    Der laufende Cursor gehört der aktiven Stimme; Stimmwechsel laufen über den VoiceManager.
    """

    def __init__(self, tune: Tune, voices: VoiceManager, diag: Diagnostics, cfg: Optional[dict] = None):
        cfg = cfg or {}
        pcfg = cfg.get("parser", {}) or {}
        self.tune = tune
        self.voices = voices
        self.diag = diag
        self.time = Fraction(0)
        self.chord_symbols = bool(pcfg.get("chord_symbols", True))
        self.backing_velocity = int(pcfg.get("backing_velocity", 50))
        self.dyn_cfg = dynamics_config(cfg)
        self.key = tune.key
        self.meter = tune.meter
        self.unit = tune.unit_length or tune.meter.default_unit()
        self.part_marks: List[Tuple[str, Fraction]] = []
        self._states: Dict[str, _VoiceParse] = {}
        self._tuplets: Dict[int, TupletContext] = {}
        self._next_tuplet = 1
        self._next_span = 1
        self._line = 0

    # ---------- Zustand ----------

    def begin_body(self):
        """Header-Werte übernehmen (nach K: bzw. beim ersten Musiktext)."""
        self.key = self.tune.key
        self.meter = self.tune.meter
        self.unit = self.tune.unit_length or self.tune.meter.default_unit()

    def _voice(self) -> VoiceState:
        v = self.voices.active
        if v is None:
            v = self.voices.ensure_default()
            self.time = self.voices.switch(v.id, self.time)
        return v

    def _state(self, v: VoiceState) -> _VoiceParse:
        st = self._states.get(v.id)
        if st is None:
            st = _VoiceParse(velocity=v.velocity)
            self._states[v.id] = st
        return st

    def switch_voice(self, ident: str):
        self.time = self.voices.switch(ident, self.time)

    # ---------- Felder im Body (auch inline [X:...]) ----------

    def apply_field(self, letter: str, value: str, line_no: int):
        value = value.strip()
        if letter == "V":
            ident, attrs = parse_voice_field(value)
            if not ident:
                self.diag.error(line_no, "voice field without id")
                return
            if attrs:
                self.voices.define(ident, attrs, line_no, self.diag)
            self.switch_voice(ident)
        elif letter == "K":
            try:
                self.key = parse_key(value)
            except ValueError as e:
                self.diag.error(line_no, str(e))
        elif letter == "L":
            try:
                self.unit = parse_unit_length(value)
            except (ValueError, ZeroDivisionError):
                self.diag.error(line_no, f"invalid unit length '{value}'")
        elif letter == "M":
            try:
                self.meter = parse_meter(value)
            except (ValueError, ZeroDivisionError):
                self.diag.error(line_no, f"invalid meter '{value}'")
        elif letter == "Q":
            tempo = read_tempo_field(value, line_no, self.diag)
            if tempo is None:
                return
            if any(v.notes for v in self.voices.voices.values()):
                self.diag.warning(line_no, "tempo change inside the tune is ignored")
            else:
                self.tune.tempo = tempo
        elif letter == "P":
            self.mark_part(value, line_no)
        elif letter in ("w", "W"):
            self.tune.lyrics.append(value)
        elif letter in ("T", "N", "I", "r"):
            pass
        else:
            self.diag.warning(line_no, f"field '{letter}:' ignored in tune body")

    def mark_part(self, name: str, line_no: int):
        name = name.strip()
        if not name:
            self.diag.error(line_no, "empty part label")
            return
        # Abschnitt beginnt für alle Stimmen am spätesten Cursor
        self.voices.save_current(self.time)
        t = max([v.time for v in self.voices.voices.values()] + [self.time])
        for v in self.voices.voices.values():
            v.time = t
        self.time = t
        if any(n == name for n, _ in self.part_marks):
            self.diag.warning(line_no, f"part '{name}' defined twice, using the last one")
            self.part_marks = [(n, s) for n, s in self.part_marks if n != name]
        self.part_marks.append((name, t))

    # ---------- Tokens ----------

    def parse_tokens(self, tokens: List[Token], line_no: int):
        self._line = line_no
        for tok in tokens:
            handler = getattr(self, f"_tok_{tok.kind.lower()}", None)
            if handler is None:
                self._tok_bar(tok)
            else:
                handler(tok)

    def _tok_note(self, tok: Token):
        v = self._voice()
        st = self._state(v)
        pitch = self._pitch(tok, st, v)
        if st.grace_open:
            st.grace_buf.append(pitch)
            return
        base = self._base_duration(tok.props.get("duration", ""))
        decos = st.pending_decos
        st.pending_decos = []
        if st.chord_open:
            st.chord.append(_Spec(pitch, base, decos))
            return
        self._place(st, v, [_Spec(pitch, base, decos)])

    def _tok_rest(self, tok: Token):
        v = self._voice()
        st = self._state(v)
        if st.chord_open:
            # Pause im Akkord: ignorieren
            return
        base = self._base_duration(tok.props.get("duration", ""))
        adv = base * st.broken_next * self._consume_tuplet(st)
        st.broken_next = Fraction(1)
        self._drop_graces(st, "rest")
        st.pending_decos = []
        if st.pending_chord is not None:
            self._start_backing(st, v, self.time)
        self.time += adv
        st.last_group = []
        st.last_advance = adv
        st.tie_from = []

    def _tok_multi_rest(self, tok: Token):
        v = self._voice()
        st = self._state(v)
        self._close_backing(st, self.time)
        self.time += int(tok.props.get("bars", 1)) * self.meter.beats_per_measure
        st.last_group = []
        st.last_advance = Fraction(0)
        st.tie_from = []

    def _tok_bar(self, tok: Token):
        # Taktstrich, Repeat-Reste, Endungen: Vorzeichen gelten nur bis zum Taktstrich
        v = self._voice()
        self._state(v).bar_acc.clear()

    def _tok_chord_start(self, tok: Token):
        v = self._voice()
        st = self._state(v)
        if st.chord_open:
            self.diag.error(self._line, "nested chord")
            return
        st.chord_open = True
        st.chord = []
        st.chord_decos = st.pending_decos
        st.pending_decos = []

    def _tok_chord_end(self, tok: Token):
        v = self._voice()
        st = self._state(v)
        if not st.chord_open:
            self.diag.warning(self._line, "']' without open chord")
            return
        st.chord_open = False
        if not st.chord:
            return
        mult = self._multiplier(tok.props.get("duration", ""))
        specs = [
            _Spec(s.pitch, s.base * mult, st.chord_decos + s.decorations, s.tie)
            for s in st.chord
        ]
        st.chord = []
        st.chord_decos = []
        self._place(st, v, specs)

    def _tok_grace_start(self, tok: Token):
        st = self._state(self._voice())
        if st.grace_open:
            self.diag.error(self._line, "nested grace notes")
            return
        st.grace_open = True
        st.grace_buf = []

    def _tok_grace_end(self, tok: Token):
        st = self._state(self._voice())
        if not st.grace_open:
            self.diag.warning(self._line, "'}' without open grace notes")
            return
        st.grace_open = False

    def _tok_tuplet(self, tok: Token):
        st = self._state(self._voice())
        p = int(tok.props["p"])
        if p < 2:
            self.diag.warning(self._line, f"invalid tuplet '{tok.text}'")
            return
        q = tok.props.get("q") or tuplet_default_q(p, self.meter.compound)
        r = tok.props.get("r") or p
        tid = self._next_tuplet
        self._next_tuplet += 1
        self._tuplets[tid] = TupletContext(p=p, q=int(q), r=int(r))
        st.tuplets.append(tid)

    def _tok_tie(self, tok: Token):
        st = self._state(self._voice())
        if st.chord_open and st.chord:
            st.chord[-1].tie = True
        elif st.last_group:
            st.tie_from = list(st.last_group)
        else:
            self.diag.warning(self._line, "tie without preceding note")

    def _tok_slur_start(self, tok: Token):
        self._state(self._voice()).slur_depth += 1

    def _tok_slur_end(self, tok: Token):
        st = self._state(self._voice())
        if st.slur_depth <= 0:
            self.diag.warning(self._line, "')' without open slur")
            return
        st.slur_depth -= 1

    def _tok_decoration(self, tok: Token):
        st = self._state(self._voice())
        deco = make_decoration(tok.props.get("name", ""))
        if deco.kind == "dynamic":
            level = mark_level(deco.variant, self.dyn_cfg, deco.intensity)
            deco.intensity = level
            st.velocity = dynamics_to_velocity(level, self.dyn_cfg)
        elif deco.kind == "unknown":
            self.diag.warning(self._line, f"unknown decoration '{deco.variant}'")
        st.pending_decos.append(deco)

    def _tok_decoration_extended(self, tok: Token):
        st = self._state(self._voice())
        name = tok.props.get("name", "")
        if tok.props.get("edge") == "start":
            deco = make_decoration(name, extended=True, span_id=self._next_span)
            self._next_span += 1
            st.open_spans[deco.kind] = deco
        else:
            kind = make_decoration(name, extended=True).kind
            if st.open_spans.pop(kind, None) is None:
                self.diag.warning(self._line, f"'{tok.text}' closes no open decoration")

    def _tok_broken_rhythm(self, tok: Token):
        st = self._state(self._voice())
        if not st.last_advance:
            self.diag.warning(self._line, f"broken rhythm '{tok.text}' without preceding note")
            return
        count = min(3, int(tok.props.get("count", 1)))
        short = Fraction(1, 2 ** count)
        long = 2 - short
        prev_f, next_f = (long, short) if tok.props.get("direction") == ">" else (short, long)
        extra = st.last_advance * (prev_f - 1)
        for n in st.last_group:
            n.duration = max(0.0, n.duration + float(extra))
        self.time += extra
        st.last_advance *= prev_f
        st.broken_next = next_f

    def _tok_chord_symbol(self, tok: Token):
        if not self.chord_symbols:
            return
        st = self._state(self._voice())
        st.pending_chord = tok.props.get("symbol", "")

    def _tok_annotation(self, tok: Token):
        pass

    def _tok_inline_field(self, tok: Token):
        self.apply_field(tok.props["field"], tok.props.get("value", ""), self._line)

    def _tok_unknown(self, tok: Token):
        self.diag.warning(self._line, f"unrecognized '{tok.text}' at column {tok.col}")

    # ---------- Platzierung ----------

    def _pitch(self, tok: Token, st: _VoiceParse, v: VoiceState) -> int:
        letter = tok.props["letter"]
        upper = letter.upper()
        natural = MIDDLE_C + SEMITONES[upper] + (12 if letter.islower() else 0) + 12 * int(tok.props.get("octave", 0))
        acc = tok.props.get("accidental")
        slot = (upper, natural)
        if acc is not None:
            st.bar_acc[slot] = acc
            off = acc
        elif slot in st.bar_acc:
            off = st.bar_acc[slot]
        else:
            off = self.key.accidentals.get(upper, 0)
        pitch = natural + off + v.transpose + 12 * v.octave_shift
        if not 0 <= pitch <= 127:
            self.diag.warning(self._line, f"note '{tok.text}' out of MIDI range")
            pitch = max(0, min(127, pitch))
        return pitch

    def _multiplier(self, text: str) -> Fraction:
        try:
            return parse_duration(text)
        except (ValueError, ZeroDivisionError):
            self.diag.warning(self._line, f"invalid duration '{text}'")
            return Fraction(1)

    def _base_duration(self, text: str) -> Fraction:
        return self.unit * 4 * self._multiplier(text)

    def _consume_tuplet(self, st: _VoiceParse) -> Fraction:
        ratio = Fraction(1)
        for tid in list(st.tuplets):
            ctx = self._tuplets[tid]
            ratio *= ctx.ratio
            ctx.r -= 1
            if ctx.r <= 0:
                ctx.active = False
                del self._tuplets[tid]
                st.tuplets.remove(tid)
        return ratio

    def _drop_graces(self, st: _VoiceParse, before: str):
        if st.grace_buf:
            self.diag.warning(self._line, f"grace notes before {before} dropped")
            st.grace_buf = []

    def _place(self, st: _VoiceParse, v: VoiceState, specs: List[_Spec]):
        factor = st.broken_next
        st.broken_next = Fraction(1)
        ratio = self._consume_tuplet(st)
        durs = [s.base * factor * ratio for s in specs]
        advance = durs[0]
        start = self.time

        # Vorschläge: Dauer wird von der Hauptnote geliehen, Cursor bleibt
        shift = Fraction(0)
        if st.grace_buf:
            g = min(advance / 8, advance / (2 * len(st.grace_buf)))
            for i, gp in enumerate(st.grace_buf):
                v.notes.append(NoteEvent(
                    pitch=gp, velocity=st.velocity, start=float(start + i * g), duration=float(g),
                    channel=v.channel, voice=v.id, is_grace=True,
                ))
            shift = g * len(st.grace_buf)
            st.grace_buf = []

        if st.pending_chord is not None:
            self._start_backing(st, v, start)

        spans = list(st.open_spans.values())
        group: List[NoteEvent] = []
        new_ties: List[NoteEvent] = []
        for spec, d in zip(specs, durs):
            tied = next((n for n in st.tie_from if n.pitch == spec.pitch), None)
            if tied is not None:
                st.tie_from.remove(tied)
                tied.duration = float(start + d) - tied.start
                note = tied
            else:
                note = NoteEvent(
                    pitch=spec.pitch, velocity=st.velocity,
                    start=float(start + shift), duration=float(d - shift),
                    channel=v.channel, voice=v.id,
                    decorations=list(spec.decorations) + spans,
                )
                v.notes.append(note)
            group.append(note)
            if spec.tie:
                new_ties.append(note)
        st.tie_from = new_ties
        self.time = start + advance
        st.last_group = group
        st.last_advance = advance

    # ---------- Begleitakkorde ----------

    def _close_backing(self, st: _VoiceParse, at: Fraction):
        for n in st.backing:
            n.duration = max(0.0, float(at) - n.start)
        st.backing = []

    def _start_backing(self, st: _VoiceParse, v: VoiceState, at: Fraction):
        symbol = st.pending_chord
        st.pending_chord = None
        self._close_backing(st, at)
        if symbol in ("N.C.", "NC"):
            return
        pitches = chord_symbol_pitches(symbol)
        if pitches is None:
            self.diag.warning(self._line, f"unknown chord symbol '{symbol}'")
            return
        for p in pitches:
            n = NoteEvent(pitch=p, velocity=self.backing_velocity, start=float(at), duration=0.0,
                          channel=v.channel, voice=v.id)
            v.notes.append(n)
            st.backing.append(n)

    # ---------- Zeilen-/Tune-Ende ----------

    def end_line(self, line_no: int):
        """Offene Tuplet/Vorschlag/Akkord-Kontexte am Zeilenende sind Strukturfehler."""
        for vid, st in self._states.items():
            if st.tuplets:
                self.diag.error(line_no, f"unterminated tuplet in voice {vid}")
                for tid in st.tuplets:
                    self._tuplets.pop(tid, None)
                st.tuplets = []
            if st.grace_open:
                self.diag.error(line_no, f"unterminated grace notes in voice {vid}")
                st.grace_open = False
                st.grace_buf = []
            if st.chord_open:
                self.diag.error(line_no, f"unterminated chord in voice {vid}")
                st.chord_open = False
                st.chord = []
                st.chord_decos = []
            if st.grace_buf:
                self.diag.warning(line_no, f"grace notes without principal note in voice {vid}")
                st.grace_buf = []

    def finish(self):
        self.voices.save_current(self.time)
        for vid, st in self._states.items():
            self._close_backing(st, self.voices.voices[vid].time)
            if st.open_spans:
                self.diag.warning(0, f"unclosed decoration span(s) {sorted(st.open_spans)} in voice {vid}")
        end = max([v.time for v in self.voices.voices.values()] + [self.time])
        log.debug("parsed %d voice(s), end at %s beats", len(self.voices.voices), end)
        marks = sorted(self.part_marks, key=lambda m: m[1])
        for i, (name, start) in enumerate(marks):
            stop = marks[i + 1][1] if i + 1 < len(marks) else end
            self.tune.parts[name] = (float(start), float(stop))
