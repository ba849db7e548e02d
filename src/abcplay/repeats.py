# src/abcplay/repeats.py
from __future__ import annotations
import logging
import re
from typing import List, Tuple

from .errors import RepeatExpansionError

log = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 100

# innerster |: ... :| Block (Inhalt ohne weitere Repeat-Marker)
_REPEAT_RE = re.compile(r"\|:\s*((?:(?!\|:|:\|).)*?)\s*:\|", re.S)
_FIRST_ENDING_RE = re.compile(r"(?:\[1|\|1)(?!\d)\s*")
_SECOND_ENDING_RE = re.compile(r"\s*\[?2(?!\d)\s*([^|]*)")
_VOICE_LINE_RE = re.compile(r"^\s*(\[V:|V:)")

def split_header(text: str) -> Tuple[List[str], List[str]]:
    """Header = alle Zeilen bis inkl. erster K:-Zeile; ohne K: gibt es keinen Header."""
    lines = text.split("\n")
    for i, ln in enumerate(lines):
        if ln.lstrip().startswith("K:"):
            return lines[:i + 1], lines[i + 1:]
    return [], lines

def _voice_sections(body: List[str]) -> List[List[str]]:
    sections: List[List[str]] = [[]]
    for ln in body:
        if _VOICE_LINE_RE.match(ln) and sections[-1]:
            sections.append([])
        sections[-1].append(ln)
    return sections

def _normalize_markers(seg: str) -> str:
    # ':|:' und '::' sind Ende+Anfang; '(3::' (Tuplet) nicht anfassen
    seg = seg.replace(":|:", ":| |:")
    return re.sub(r"(?<![\d(:])::(?!\|)", ":| |:", seg)

def _expand_match(text: str, m: re.Match) -> str:
    content = m.group(1).strip()
    tail = text[m.end():]
    em = _FIRST_ENDING_RE.search(content)
    if em:
        body = content[:em.start()].strip()
        first = content[em.end():].strip()
        sm = _SECOND_ENDING_RE.match(tail)
        if sm:
            second = sm.group(1).strip()
            tail = tail[sm.end():]
            expanded = f"{body} {first} | {body} {second}"
        else:
            expanded = f"{body} {first} | {body}"
    else:
        expanded = f"{content} {content}"
    return text[:m.start()] + expanded + tail

def expand_section(seg: str, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> str:
    if "|:" not in seg and ":|" not in seg and "::" not in seg:
        return seg
    seg = _normalize_markers(seg)
    iterations = 0
    while True:
        m = _REPEAT_RE.search(seg)
        if m is None:
            if ":|" in seg:
                # ':|' ohne öffnendes '|:' wiederholt ab Abschnittsanfang
                seg = _open_at_start(seg)
                m = _REPEAT_RE.search(seg)
            if m is None:
                break
        iterations += 1
        if iterations > max_iterations:
            log.warning("repeat expansion stopped after %d iterations", max_iterations)
            raise RepeatExpansionError(max_iterations, partial=seg)
        seg = _expand_match(seg, m)
    return seg

def _open_at_start(seg: str) -> str:
    lines = seg.split("\n")
    idx = 0
    # Voice-/Feldzeilen am Abschnittsanfang überspringen
    while idx < len(lines) and (_VOICE_LINE_RE.match(lines[idx]) or re.match(r"^[A-Za-z]:", lines[idx])
                                or not lines[idx].strip()):
        idx += 1
    if idx >= len(lines):
        return seg.replace(":|", "|", 1)
    lines[idx] = "|: " + lines[idx]
    return "\n".join(lines)

def expand_repeats(text: str, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> str:
    """
    Expandiert |: ... :| (inkl. [1/[2-Endungen) durch wörtliches Duplizieren.
    Header bleibt unverändert, der Body wird pro Voice-Abschnitt expandiert,
    damit ein Repeat nie Text einer anderen Stimme verschluckt.
    Text ohne Repeat-Marker kommt unverändert zurück.
    """
    header, body = split_header(text)
    out: List[str] = list(header)
    sections = [sec for sec in _voice_sections(body) if sec]
    for i, sec in enumerate(sections):
        seg = "\n".join(sec)
        try:
            seg = expand_section(seg, max_iterations)
        except RepeatExpansionError as e:
            # Teilergebnis: bisher expandiert + Rest unverändert
            out.extend(e.partial.split("\n"))
            for rest in sections[i + 1:]:
                out.extend(rest)
            raise RepeatExpansionError(max_iterations, partial="\n".join(out)) from None
        out.extend(seg.split("\n"))
    return "\n".join(out)
