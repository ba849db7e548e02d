# src/abcplay/scheduler.py
from __future__ import annotations
import bisect
import logging
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from .analyze import analyze_abc
from .backend import SoundBackend
from .errors import AbcParseError, QueueFullError, SchedulerError
from .timeline import ActiveNote, MusicData, MusicSlot, Tune, VoiceState, DEFAULT_BPM
from .voices import resolve_instrument

log = logging.getLogger(__name__)

VOLUME_MIN, VOLUME_MAX = 0.0, 1.0
TEMPO_MIN, TEMPO_MAX = 0.1, 4.0

@dataclass
class SchedulerStatus:
    queue_size: int
    playing: bool
    paused: bool
    volume: float
    tempo: float
    current_id: Optional[int] = None
    current_name: str = ""
    position: float = 0.0               # beats
    length: float = 0.0                 # beats, inkl. Pause danach

class _Playback:
    """Laufende Wiedergabe eines Slots (Cursor in Beats) + Stimm-Overrides zur Laufzeit."""

    def __init__(self, slot: MusicSlot, tune: Tune):
        self.slot = slot
        self.tune = tune
        self.bpm = float(slot.data.tempo_bpm or tune.tempo.qpm)
        if self.bpm <= 0:
            self.bpm = DEFAULT_BPM
        # Pause nach dem Stück = angehängte Stille in Beats
        silence = max(0, int(slot.data.wait_after_ms)) / 1000.0 * self.bpm / 60.0
        self.length = tune.length + silence
        self.cursor = 0.0
        self.index = 0
        self.muted: Set[str] = set()
        self.voice_volume: Dict[str, float] = {}

    def voice(self, ident: str) -> VoiceState:
        """Stimme nach ID, Name oder Kurzname; SchedulerError wenn unbekannt."""
        v = self.tune.voices.get(ident)
        if v is None:
            v = next((x for x in self.tune.voices.values()
                      if ident and ident in (x.name, x.short_name)), None)
        if v is None:
            raise SchedulerError(f"unknown voice '{ident}'")
        return v

def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))

class PlaybackScheduler:
    """
    FIFO-Queue von MusicSlots + Echtzeit-Dispatch an ein SoundBackend.

    Ein Lock schützt Queue, aktuelle Wiedergabe und Flags. Backend-Aufrufe
    eines Ticks werden unter dem Lock gesammelt und danach gesendet; ein
    zweiter Lock (_send_lock) hält die Reihenfolge zwischen Tick-Thread
    und Steuerbefehlen ein, damit kein note_on nach dem zugehörigen
    note_off eines Stop ankommt.
    """

    def __init__(self, backend: SoundBackend, cfg: Optional[dict] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.cfg = cfg or {}
        scfg = self.cfg.get("scheduler", {}) or {}
        self.backend = backend
        self.clock = clock
        self.tick_s = max(0.001, float(scfg.get("tick_ms", 10)) / 1000.0)
        self.max_queue = int(scfg.get("max_queue", 64))
        self.max_active = max(1, int(scfg.get("max_active_notes", 256)))

        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._queue: Deque[MusicSlot] = deque()
        self._tunes: Dict[int, Tune] = {}
        self._next_id = 1
        self._current: Optional[_Playback] = None
        self._active: "OrderedDict[Tuple[int, int], ActiveNote]" = OrderedDict()
        self._paused = False
        self._volume = _clamp(float(scfg.get("volume", 1.0)), VOLUME_MIN, VOLUME_MAX)
        self._tempo = _clamp(float(scfg.get("tempo", 1.0)), TEMPO_MIN, TEMPO_MAX)
        self._last_tick: Optional[float] = None

        self._thread: Optional[threading.Thread] = None
        self._halt = threading.Event()

    # ---------- Queue ----------

    def enqueue(self, data: MusicData) -> int:
        """Parst sofort; fehlerhafte Stücke landen nie in der Queue."""
        text = data.notation
        if data.source == "file":
            try:
                text = Path(data.path or data.notation).read_text(encoding="utf-8")
            except OSError as e:
                raise SchedulerError(f"cannot read {data.path or data.notation}: {e}") from e
        result = analyze_abc(text, self.cfg)
        if not result.ok:
            raise AbcParseError(result.errors, result.warnings)
        if not data.name:
            data.name = result.tune.title

        with self._lock:
            if self.max_queue > 0 and len(self._queue) >= self.max_queue:
                raise QueueFullError(self.max_queue)
            slot = MusicSlot(id=self._next_id, data=data)
            self._next_id += 1
            self._queue.append(slot)
            self._tunes[slot.id] = result.tune
        log.info("queued slot %d: %s", slot.id, data.name)
        return slot.id

    def clear(self) -> int:
        """Leert die Queue; das laufende Stück spielt weiter."""
        with self._lock:
            n = len(self._queue)
            self._queue.clear()
            self._tunes = {sid: t for sid, t in self._tunes.items()
                           if self._current and sid == self._current.slot.id}
        return n

    def remove(self, slot_id: int) -> bool:
        with self._send_lock:
            with self._lock:
                if self._current is not None and self._current.slot.id == slot_id:
                    calls = self._end_current()
                else:
                    for slot in self._queue:
                        if slot.id == slot_id:
                            self._queue.remove(slot)
                            self._tunes.pop(slot_id, None)
                            return True
                    return False
            self._send(calls)
        return True

    def list_slots(self) -> List[MusicSlot]:
        with self._lock:
            return list(self._queue)

    # ---------- Transport ----------

    def stop(self):
        """Alles anhalten: klingende Noten aus, Queue leer."""
        with self._send_lock:
            with self._lock:
                calls = self._release_all()
                self._current = None
                self._queue.clear()
                self._tunes.clear()
                self._paused = False
            self._send(calls)
        log.info("playback stopped")

    def skip(self) -> bool:
        with self._send_lock:
            with self._lock:
                if self._current is None:
                    return False
                calls = self._end_current()
            self._send(calls)
        return True

    def pause(self):
        with self._lock:
            self._paused = True

    def resume(self):
        with self._lock:
            self._paused = False

    def set_volume(self, volume: float) -> float:
        with self._lock:
            self._volume = _clamp(float(volume), VOLUME_MIN, VOLUME_MAX)
            return self._volume

    def set_tempo(self, multiplier: float) -> float:
        with self._lock:
            self._tempo = _clamp(float(multiplier), TEMPO_MIN, TEMPO_MAX)
            return self._tempo

    def seek(self, position: float) -> bool:
        """
        Springt im laufenden Stück auf `position` Beats (geklemmt auf 0..Länge).
        Klingende Noten werden beendet; Noten, die vor dem Ziel begonnen haben,
        werden nicht neu angeschlagen.
        """
        with self._send_lock:
            with self._lock:
                cur = self._current
                if cur is None:
                    return False
                calls = self._release_all()
                cur.cursor = _clamp(float(position), 0.0, cur.length)
                starts = [n.start for n in cur.tune.notes]
                cur.index = bisect.bisect_left(starts, cur.cursor - 1e-9)
            self._send(calls)
        return True

    # ---------- Stimmen zur Laufzeit (nur laufendes Stück) ----------

    def _playing(self) -> _Playback:
        if self._current is None:
            raise SchedulerError("nothing playing")
        return self._current

    def mute_voice(self, ident: str, muted: bool = True) -> str:
        """Gibt die aufgelöste Stimm-ID zurück. Stummschalten beendet klingende Noten der Stimme."""
        with self._send_lock:
            with self._lock:
                cur = self._playing()
                v = cur.voice(ident)
                calls: List[Tuple] = []
                if muted:
                    cur.muted.add(v.id)
                    for key in [k for k in self._active if k[0] == v.channel]:
                        self._active.pop(key)
                        calls.append(("note_off", key[0], key[1]))
                else:
                    cur.muted.discard(v.id)
            self._send(calls)
        return v.id

    def set_voice_volume(self, ident: str, volume: float) -> float:
        with self._lock:
            cur = self._playing()
            v = cur.voice(ident)
            vol = _clamp(float(volume), VOLUME_MIN, VOLUME_MAX)
            cur.voice_volume[v.id] = vol
            return vol

    def set_voice_instrument(self, ident: str, instrument) -> int:
        """GM-Programm (Zahl oder Name) sofort auf dem Kanal der Stimme setzen."""
        program = resolve_instrument(instrument)
        with self._send_lock:
            with self._lock:
                v = self._playing().voice(ident)
                calls = [("program_change", v.channel, program)]
            self._send(calls)
        return program

    def status(self) -> SchedulerStatus:
        with self._lock:
            cur = self._current
            return SchedulerStatus(
                queue_size=len(self._queue),
                playing=cur is not None,
                paused=self._paused,
                volume=self._volume,
                tempo=self._tempo,
                current_id=cur.slot.id if cur else None,
                current_name=cur.slot.data.name if cur else "",
                position=min(cur.cursor, cur.length) if cur else 0.0,
                length=cur.length if cur else 0.0,
            )

    # ---------- Timing ----------

    def tick(self, now: Optional[float] = None):
        """Einen Zeitschritt verarbeiten (Thread-Loop oder manuell in Tests)."""
        now = self.clock() if now is None else now
        with self._send_lock:
            with self._lock:
                calls = self._advance(now)
            self._send(calls)

    def _advance(self, now: float) -> List[Tuple]:
        dt = 0.0 if self._last_tick is None else max(0.0, now - self._last_tick)
        self._last_tick = now
        if self._paused:
            return []

        calls: List[Tuple] = []
        cur = self._current
        if cur is None:
            cur = self._start_next(calls)
            if cur is None:
                return calls
        else:
            cur.cursor += dt * cur.bpm * self._tempo / 60.0

        while True:
            self._release_due(cur.cursor, calls)
            self._dispatch_due(cur, calls)
            if cur.cursor < cur.length:
                break
            if cur.slot.data.loop and cur.length > 0:
                cur.cursor -= cur.length
                cur.index = 0
                self._release_due(float("inf"), calls)
                continue
            calls.extend(self._end_current())
            break
        return calls

    def _start_next(self, calls: List[Tuple]) -> Optional[_Playback]:
        if not self._queue:
            return None
        slot = self._queue.popleft()
        tune = self._tunes.pop(slot.id)
        self._current = _Playback(slot, tune)
        log.info("playing slot %d: %s", slot.id, slot.data.name)
        for vid in tune.voice_order:
            v = tune.voices[vid]
            if not v.muted:
                calls.append(("program_change", v.channel, v.instrument))
        return self._current

    def _dispatch_due(self, cur: _Playback, calls: List[Tuple]):
        notes = cur.tune.notes
        while cur.index < len(notes) and notes[cur.index].start <= cur.cursor + 1e-9:
            n = notes[cur.index]
            cur.index += 1
            if n.voice in cur.muted:
                continue
            vel = int(round(n.velocity * self._volume * cur.voice_volume.get(n.voice, 1.0)))
            if vel <= 0 or n.duration <= 0:
                continue
            key = (n.channel, n.pitch)
            if key in self._active:
                # gleicher Ton erneut angeschlagen
                self._active.pop(key)
                calls.append(("note_off", n.channel, n.pitch))
            elif len(self._active) >= self.max_active:
                (ch, p), _ = self._active.popitem(last=False)
                calls.append(("note_off", ch, p))
            calls.append(("note_on", n.channel, n.pitch, min(127, vel)))
            self._active[key] = ActiveNote(n.pitch, n.channel, n.end)

    def _release_due(self, cursor: float, calls: List[Tuple]):
        due = [k for k, a in self._active.items() if a.end <= cursor + 1e-9]
        for k in due:
            a = self._active.pop(k)
            calls.append(("note_off", a.channel, a.pitch))

    def _release_all(self) -> List[Tuple]:
        calls = [("note_off", a.channel, a.pitch) for a in self._active.values()]
        self._active.clear()
        return calls

    def _end_current(self) -> List[Tuple]:
        calls = self._release_all()
        if self._current is not None:
            log.info("finished slot %d", self._current.slot.id)
            self._tunes.pop(self._current.slot.id, None)
        self._current = None
        return calls

    def _send(self, calls: List[Tuple]):
        for kind, *args in calls:
            try:
                getattr(self.backend, kind)(*args)
            except Exception:
                log.exception("backend %s%s failed", kind, tuple(args))

    # ---------- Thread ----------

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._halt.clear()
        self._last_tick = None
        self._thread = threading.Thread(target=self._run, name="abcplay-scheduler", daemon=True)
        self._thread.start()

    def _run(self):
        while not self._halt.is_set():
            self.tick()
            self._halt.wait(self.tick_s)

    def shutdown(self, timeout: float = 1.0):
        self.stop()
        self._halt.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def wait_until_idle(self, timeout: Optional[float] = None, poll: float = 0.05) -> bool:
        """Blockiert, bis Queue leer und nichts mehr spielt."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            st = self.status()
            if not st.playing and st.queue_size == 0:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(poll)
