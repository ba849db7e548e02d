# src/abcplay/lexer.py
from __future__ import annotations
import re
from typing import List

from .timeline import Token

# Token-Arten
NOTE = "NOTE"
REST = "REST"
MULTI_REST = "MULTI_REST"
BAR = "BAR"
DOUBLE_BAR = "DOUBLE_BAR"
THIN_THICK = "THIN_THICK"
THICK_THIN = "THICK_THIN"
REPEAT_START = "REPEAT_START"
REPEAT_END = "REPEAT_END"
REPEAT_BOTH = "REPEAT_BOTH"
FIRST_ENDING = "FIRST_ENDING"
SECOND_ENDING = "SECOND_ENDING"
CHORD_START = "CHORD_START"
CHORD_END = "CHORD_END"
GRACE_START = "GRACE_START"
GRACE_END = "GRACE_END"
TUPLET = "TUPLET"
TIE = "TIE"
SLUR_START = "SLUR_START"
SLUR_END = "SLUR_END"
DECORATION = "DECORATION"
DECORATION_EXTENDED = "DECORATION_EXTENDED"
BROKEN_RHYTHM = "BROKEN_RHYTHM"
CHORD_SYMBOL = "CHORD_SYMBOL"
ANNOTATION = "ANNOTATION"
INLINE_FIELD = "INLINE_FIELD"
UNKNOWN = "UNKNOWN"

# Einzelzeichen-Dekorationen (ABC 2.1 Kurzformen)
SHORT_DECORATIONS = {
    "~": "roll",
    "H": "fermata",
    "L": "accent",
    "M": "lowermordent",
    "O": "coda",
    "P": "uppermordent",
    "S": "segno",
    "T": "trill",
    "u": "upbow",
    "v": "downbow",
    ".": "staccato",
}

# Reihenfolge = Priorität (längster Treffer zuerst)
_BAR_TOKENS = [
    (":|:", REPEAT_BOTH),
    ("|:", REPEAT_START),
    (":|", REPEAT_END),
    ("::", REPEAT_BOTH),
    ("[|", THICK_THIN),
    ("|]", THIN_THICK),
    ("||", DOUBLE_BAR),
    ("|", BAR),
]

_NOTE_RE = re.compile(r"(\^\^|\^|__|_|=)?([A-Ga-g])([',]*)(\d*/*\d*)")
_REST_RE = re.compile(r"([zx])(\d*/*\d*)")
_MULTI_REST_RE = re.compile(r"([ZX])(\d*)")
_TUPLET_RE = re.compile(r"\((\d+)(?::(\d*))?(?::(\d*))?")
_INLINE_FIELD_RE = re.compile(r"\[([A-Za-z]):([^\]]*)\]")
_ENDING_RE = re.compile(r"\[?(\d+)")
_DURATION_RE = re.compile(r"\d*/*\d*")

_ACCIDENTALS = {"^^": 2, "^": 1, "=": 0, "_": -1, "__": -2}

def _decoration_token(body: str, text: str, line_no: int, col: int) -> Token:
    name = body.strip()
    if len(name) > 1 and name[-1] in "()":
        edge = "start" if name[-1] == "(" else "end"
        return Token(DECORATION_EXTENDED, text, line_no, col, {"name": name[:-1], "edge": edge})
    return Token(DECORATION, text, line_no, col, {"name": name})

def tokenize_line(line: str, line_no: int = 0) -> List[Token]:
    """
    Zerlegt eine Musikzeile in Tokens. Unbekanntes wird UNKNOWN, es wird nie abgebrochen.
    Leerzeichen und Kommentare (ab '%') erzeugen keine Tokens.
    """
    tokens: List[Token] = []
    i, n = 0, len(line)
    in_chord = False

    def add(kind: str, text: str, col: int, **props):
        tokens.append(Token(kind, text, line_no, col, props))

    while i < n:
        c = line[i]
        col = i + 1

        if c in " \t\r`y":
            i += 1
            continue
        if c == "%":
            break
        if c == "\\":
            # Zeilenfortsetzung
            i += 1
            continue

        # --- Strings: Akkordsymbol / Annotation ---
        if c == '"':
            j = line.find('"', i + 1)
            if j < 0:
                add(UNKNOWN, line[i:], col)
                break
            body = line[i + 1:j]
            if body[:1] in ("^", "_", "<", ">", "@"):
                add(ANNOTATION, line[i:j + 1], col, label=body[1:], position=body[:1])
            else:
                add(CHORD_SYMBOL, line[i:j + 1], col, symbol=body)
            i = j + 1
            continue

        # --- !deco! / +deco+ vor Einzelzeichen ---
        if c in "!+":
            j = line.find(c, i + 1)
            if j > i + 1 and " " not in line[i + 1:j]:
                tokens.append(_decoration_token(line[i + 1:j], line[i:j + 1], line_no, col))
                i = j + 1
                continue
            add(UNKNOWN, c, col)
            i += 1
            continue

        # --- Inline-Felder, Endungen, Akkorde ---
        if c == "[":
            m = _INLINE_FIELD_RE.match(line, i)
            if m:
                add(INLINE_FIELD, m.group(0), col, field=m.group(1), value=m.group(2).strip())
                i = m.end()
                continue
            if line.startswith("[|", i):
                add(THICK_THIN, "[|", col)
                i += 2
                continue
            m = _ENDING_RE.match(line, i)
            if m and line[i + 1:i + 2].isdigit():
                num = int(m.group(1))
                add(FIRST_ENDING if num == 1 else SECOND_ENDING, m.group(0), col, number=num)
                i = m.end()
                continue
            add(CHORD_START, "[", col)
            in_chord = True
            i += 1
            continue

        if c == "]":
            m = _DURATION_RE.match(line, i + 1)
            dur = m.group(0) if m else ""
            add(CHORD_END, "]" + dur, col, duration=dur)
            in_chord = False
            i += 1 + len(dur)
            continue

        # --- Taktstriche / Repeats ---
        if c in "|:":
            for text, kind in _BAR_TOKENS:
                if line.startswith(text, i):
                    add(kind, text, col)
                    i += len(text)
                    # '|1' / ':|2' -> Endung direkt am Taktstrich
                    if i < n and line[i].isdigit() and kind in (BAR, REPEAT_END):
                        m = _ENDING_RE.match(line, i)
                        num = int(m.group(1))
                        add(FIRST_ENDING if num == 1 else SECOND_ENDING, m.group(0), i + 1, number=num)
                        i = m.end()
                    break
            else:
                add(UNKNOWN, c, col)
                i += 1
            continue

        # --- Grace, Tuplets, Slurs ---
        if c == "{":
            acc = line.startswith("{/", i)
            add(GRACE_START, "{/" if acc else "{", col, acciaccatura=acc)
            i += 2 if acc else 1
            continue
        if c == "}":
            add(GRACE_END, "}", col)
            i += 1
            continue
        if c == "(":
            m = _TUPLET_RE.match(line, i)
            if m:
                p = int(m.group(1))
                q = int(m.group(2)) if m.group(2) else None
                r = int(m.group(3)) if m.group(3) else None
                add(TUPLET, m.group(0), col, p=p, q=q, r=r)
                i = m.end()
                continue
            add(SLUR_START, "(", col)
            i += 1
            continue
        if c == ")":
            add(SLUR_END, ")", col)
            i += 1
            continue
        if c == "-":
            add(TIE, "-", col)
            i += 1
            continue

        if c in "<>":
            j = i
            while j < n and line[j] == c and j - i < 3:
                j += 1
            add(BROKEN_RHYTHM, line[i:j], col, direction=c, count=j - i)
            i = j
            continue

        # --- Noten / Pausen ---
        m = _NOTE_RE.match(line, i)
        if m:
            acc = m.group(1)
            octave = m.group(3).count("'") - m.group(3).count(",")
            add(NOTE, m.group(0), col,
                letter=m.group(2), accidental=_ACCIDENTALS[acc] if acc else None,
                octave=octave, duration=m.group(4), in_chord=in_chord)
            i = m.end()
            continue
        m = _REST_RE.match(line, i)
        if m:
            add(REST, m.group(0), col, invisible=(m.group(1) == "x"), duration=m.group(2))
            i = m.end()
            continue
        m = _MULTI_REST_RE.match(line, i)
        if m:
            add(MULTI_REST, m.group(0), col, bars=int(m.group(2)) if m.group(2) else 1)
            i = m.end()
            continue

        if c in SHORT_DECORATIONS:
            add(DECORATION, c, col, name=SHORT_DECORATIONS[c])
            i += 1
            continue

        add(UNKNOWN, c, col)
        i += 1

    return tokens
