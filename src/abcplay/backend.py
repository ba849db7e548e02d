# src/abcplay/backend.py
from __future__ import annotations
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import mido

from .errors import BackendUnavailableError

log = logging.getLogger(__name__)

class SoundBackend:
    """Ziel für Echtzeit-Events. Kanäle 0..15, Pitches 0..127."""

    def note_on(self, channel: int, pitch: int, velocity: int):
        raise NotImplementedError

    def note_off(self, channel: int, pitch: int):
        raise NotImplementedError

    def program_change(self, channel: int, program: int):
        raise NotImplementedError

    def close(self):
        pass

class NullBackend(SoundBackend):
    """Verwirft alles (Server ohne MIDI-Ausgang)."""

    def note_on(self, channel: int, pitch: int, velocity: int):
        pass

    def note_off(self, channel: int, pitch: int):
        pass

    def program_change(self, channel: int, program: int):
        pass

class RecordingBackend(SoundBackend):
    """Protokolliert (zeit, art, args...) – für Tests und Debugging."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.events: List[Tuple] = []

    def note_on(self, channel: int, pitch: int, velocity: int):
        self.events.append((self.clock(), "note_on", channel, pitch, velocity))

    def note_off(self, channel: int, pitch: int):
        self.events.append((self.clock(), "note_off", channel, pitch))

    def program_change(self, channel: int, program: int):
        self.events.append((self.clock(), "program_change", channel, program))

    def of_kind(self, kind: str) -> List[Tuple]:
        return [e for e in self.events if e[1] == kind]

class MidoBackend(SoundBackend):
    """MIDI-Ausgang über mido (braucht ein Backend wie python-rtmidi)."""

    def __init__(self, port_name: Optional[str] = None):
        try:
            self.port = mido.open_output(port_name) if port_name else mido.open_output()
        except (OSError, IOError, ImportError, ValueError) as e:
            raise BackendUnavailableError(f"cannot open MIDI output '{port_name or 'default'}': {e}") from e
        log.info("MIDI output: %s", getattr(self.port, "name", port_name))

    def note_on(self, channel: int, pitch: int, velocity: int):
        self.port.send(mido.Message("note_on", channel=channel, note=pitch, velocity=velocity))

    def note_off(self, channel: int, pitch: int):
        self.port.send(mido.Message("note_off", channel=channel, note=pitch, velocity=0))

    def program_change(self, channel: int, program: int):
        self.port.send(mido.Message("program_change", channel=channel, program=program))

    def close(self):
        try:
            self.port.reset()
        finally:
            self.port.close()

def output_names() -> List[str]:
    try:
        return list(mido.get_output_names())
    except (OSError, ImportError) as e:
        log.warning("cannot list MIDI outputs: %s", e)
        return []

def open_backend(cfg: Optional[Dict[str, Any]] = None) -> SoundBackend:
    """backend.kind: 'mido' (Default) oder 'null'."""
    bcfg = (cfg or {}).get("backend", {}) or {}
    kind = str(bcfg.get("kind", "mido")).lower()
    if kind == "null":
        return NullBackend()
    if kind == "mido":
        return MidoBackend(bcfg.get("port"))
    raise BackendUnavailableError(f"unknown backend kind '{kind}'")
