from __future__ import annotations
from fractions import Fraction
import re

_DUR_RE = re.compile(r"^(\d*)(/*)(\d*)$")

def parse_fraction(text: str) -> Fraction:
    """'1/8' -> Fraction(1, 8); '1' -> Fraction(1). ValueError bei Müll."""
    s = (text or "").strip()
    if "/" in s:
        num, den = s.split("/", 1)
        return Fraction(int(num.strip()), int(den.strip()))
    return Fraction(int(s))

def parse_duration(text: str) -> Fraction:
    """
    ABC-Längenangabe relativ zur Einheitsnote:
      ''   -> 1      '2' -> 2      '3/2' -> 3/2
      '/'  -> 1/2    '//' -> 1/4   '/4' -> 1/4    '3//' -> 3/4
    """
    m = _DUR_RE.match(text or "")
    if not m:
        raise ValueError(f"bad duration: {text!r}")
    num_s, slashes, den_s = m.groups()
    num = int(num_s) if num_s else 1
    if not slashes:
        return Fraction(num)
    if den_s:
        # '//4' wie '/8'
        return Fraction(num, int(den_s) * (2 ** (len(slashes) - 1)))
    return Fraction(num, 2 ** len(slashes))

def beats_to_ticks(beats: float, tpb: int) -> int:
    return int(round(float(beats) * tpb))
