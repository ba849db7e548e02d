# src/abcplay/analyze.py
from __future__ import annotations
import logging
import re
from pathlib import Path
from typing import Optional

from .errors import Diagnostics, RepeatExpansionError
from .header import HeaderFieldParser, FIELD_RE, parse_voice_field
from .lexer import tokenize_line
from .music import MusicLineParser
from .process import assemble_tune
from .repeats import expand_repeats, DEFAULT_MAX_ITERATIONS
from .timeline import Tune, ParseResult
from .voices import VoiceManager

log = logging.getLogger(__name__)

# Feldzeilen im Body; "E:|" o.ä. ist Musik, kein Feld
_BODY_FIELD_RE = re.compile(r"^([A-Za-z]):(?![|:])\s*(.*)$")
_COMMENT_RE = re.compile(r"(?<!\\)%.*$")

HEADER, BODY = "header", "body"

def _strip_comment(line: str) -> str:
    return _COMMENT_RE.sub("", line).rstrip()

def analyze_abc(text: str, cfg: Optional[dict] = None) -> ParseResult:
    """
    ABC-Text -> ParseResult (Tune + Diagnosen).
    Ablauf: Wiederholungen expandieren, zeilenweise Header/Body parsen,
    Stimmen zusammenführen. Fehler werden gesammelt, nicht geworfen.
    """
    cfg = cfg or {}
    pcfg = cfg.get("parser", {}) or {}
    diag = Diagnostics()

    limit = int(pcfg.get("max_repeat_iterations", DEFAULT_MAX_ITERATIONS))
    try:
        expanded = expand_repeats(text or "", limit)
    except RepeatExpansionError as e:
        diag.error(0, str(e))
        expanded = e.partial

    tune = Tune()
    voices = VoiceManager(int(pcfg.get("default_velocity", 80)))
    header = HeaderFieldParser(tune, voices, diag)
    music = MusicLineParser(tune, voices, diag, cfg)

    state = HEADER
    seen_x = False
    for line_no, raw in enumerate(expanded.splitlines(), start=1):
        line = _strip_comment(raw)
        if not line.strip():
            continue

        if state == HEADER:
            m = FIELD_RE.match(line.strip())
            if m:
                letter = m.group(1)
                if letter == "X":
                    seen_x = True
                if letter == "V":
                    ident, attrs = parse_voice_field(m.group(2))
                    if not attrs and ident in voices.voices:
                        music.switch_voice(ident)
                        continue
                header.parse(line, line_no)
                if letter == "K":
                    state = BODY
                    music.begin_body()
                continue
            # Musik ohne K: -> Body mit Header-Defaults
            diag.warning(line_no, "missing K: field, header ends here")
            state = BODY
            music.begin_body()

        m = _BODY_FIELD_RE.match(line.strip())
        if m:
            letter = m.group(1)
            if letter == "X" and seen_x:
                diag.warning(line_no, "only the first tune of a file is played")
                break
            music.apply_field(letter, m.group(2), line_no)
            continue

        music.parse_tokens(tokenize_line(line, line_no), line_no)
        music.end_line(line_no)

    music.finish()
    assemble_tune(tune, voices, diag, cfg, part_line=header.part_line)

    if not tune.notes and diag.ok:
        diag.warning(0, "tune contains no notes")
    tune.complete = diag.ok
    log.debug("analyzed '%s': %d errors, %d warnings", tune.title, len(diag.errors), len(diag.warnings))
    return ParseResult(tune=tune, errors=list(diag.errors), warnings=list(diag.warnings))

def load_abc_file(path, cfg: Optional[dict] = None) -> ParseResult:
    """Datei lesen und analysieren. OSError geht an den Aufrufer."""
    text = Path(path).read_text(encoding="utf-8")
    return analyze_abc(text, cfg)
