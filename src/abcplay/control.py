# src/abcplay/control.py
from __future__ import annotations
import logging
import os
import socket
import socketserver
import subprocess
import sys
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import AbcParseError, AbcPlayError, ConnectionFailedError, ControlError
from .scheduler import PlaybackScheduler
from .timeline import MusicData

log = logging.getLogger(__name__)

GREETING = "ABC Socket Player Ready"
END = "END"
COMMANDS = (
    "QUEUE_ABC", "QUEUE_FILE", "STOP", "PAUSE", "RESUME", "CLEAR", "SKIP",
    "VOLUME", "TEMPO", "REMOVE", "STATUS", "LIST",
    "SEEK", "MUTE", "UNMUTE", "VOICE_VOLUME", "INSTRUMENT",
)

# ---------- Zeilenkodierung ----------

def escape(text: str) -> str:
    """Notation -> eine Zeile ('\\' -> '\\\\', Zeilenumbruch -> '\\n')."""
    return text.replace("\\", "\\\\").replace("\r\n", "\n").replace("\n", "\\n")

def unescape(text: str) -> str:
    out: List[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            if nxt == "n":
                out.append("\n")
                i += 2
                continue
            if nxt == "\\":
                out.append("\\")
                i += 2
                continue
        out.append(ch)
        i += 1
    return "".join(out)

def parse_command(line: str) -> Tuple[str, str]:
    """'VOLUME 0.5' -> ('VOLUME', '0.5'). ControlError bei leeren/unbekannten Kommandos."""
    s = (line or "").strip("\r\n").strip()
    if not s:
        raise ControlError("empty command")
    name, _, arg = s.partition(" ")
    name = name.upper()
    if name not in COMMANDS:
        raise ControlError(f"unknown command '{name}'")
    return name, arg.strip()

def _yes_no(flag: bool) -> str:
    return "Yes" if flag else "No"

def _voice_arg(arg: str, name: str) -> Tuple[str, str]:
    """'<voice> <wert>' -> (voice, wert). Der Wert ist das letzte Wort."""
    ident, _, value = arg.rpartition(" ")
    if not ident.strip() or not value:
        raise ControlError(f"{name} needs <voice> <value>")
    return ident.strip(), value

# ---------- Server-Seite ----------

class ControlChannel:
    """Übersetzt Textkommandos in Scheduler-Aufrufe. Antwort ohne END-Zeile."""

    def __init__(self, scheduler: PlaybackScheduler):
        self.scheduler = scheduler

    def handle(self, line: str) -> List[str]:
        try:
            name, arg = parse_command(line)
            return getattr(self, f"_cmd_{name.lower()}")(arg)
        except AbcParseError as e:
            return [f"ERROR: {msg}" for msg in e.errors] or [f"ERROR: {e}"]
        except (AbcPlayError, ValueError) as e:
            return [f"ERROR: {e}"]

    def _cmd_queue_abc(self, arg: str) -> List[str]:
        if not arg:
            raise ControlError("QUEUE_ABC needs notation")
        sid = self.scheduler.enqueue(MusicData(notation=unescape(arg)))
        return [f"OK: queued {sid}"]

    def _cmd_queue_file(self, arg: str) -> List[str]:
        if not arg:
            raise ControlError("QUEUE_FILE needs a path")
        path = os.path.expanduser(arg)
        data = MusicData(notation="", name=os.path.basename(path), source="file", path=path)
        sid = self.scheduler.enqueue(data)
        return [f"OK: queued {sid}"]

    def _cmd_stop(self, arg: str) -> List[str]:
        self.scheduler.stop()
        return ["OK: stopped"]

    def _cmd_pause(self, arg: str) -> List[str]:
        self.scheduler.pause()
        return ["OK: paused"]

    def _cmd_resume(self, arg: str) -> List[str]:
        self.scheduler.resume()
        return ["OK: resumed"]

    def _cmd_clear(self, arg: str) -> List[str]:
        n = self.scheduler.clear()
        return [f"OK: cleared {n}"]

    def _cmd_skip(self, arg: str) -> List[str]:
        if not self.scheduler.skip():
            return ["OK: nothing playing"]
        return ["OK: skipped"]

    def _cmd_volume(self, arg: str) -> List[str]:
        v = self.scheduler.set_volume(float(arg))
        return [f"OK: volume {v:.2f}"]

    def _cmd_tempo(self, arg: str) -> List[str]:
        t = self.scheduler.set_tempo(float(arg))
        return [f"OK: tempo {t:.2f}"]

    def _cmd_remove(self, arg: str) -> List[str]:
        sid = int(arg)
        if not self.scheduler.remove(sid):
            raise ControlError(f"no slot {sid}")
        return [f"OK: removed {sid}"]

    def _cmd_seek(self, arg: str) -> List[str]:
        if not self.scheduler.seek(float(arg)):
            return ["OK: nothing playing"]
        return [f"OK: position {self.scheduler.status().position:.2f}"]

    def _cmd_mute(self, arg: str) -> List[str]:
        if not arg:
            raise ControlError("MUTE needs a voice")
        return [f"OK: muted {self.scheduler.mute_voice(arg)}"]

    def _cmd_unmute(self, arg: str) -> List[str]:
        if not arg:
            raise ControlError("UNMUTE needs a voice")
        return [f"OK: unmuted {self.scheduler.mute_voice(arg, muted=False)}"]

    def _cmd_voice_volume(self, arg: str) -> List[str]:
        ident, value = _voice_arg(arg, "VOICE_VOLUME")
        v = self.scheduler.set_voice_volume(ident, float(value))
        return [f"OK: voice {ident} volume {v:.2f}"]

    def _cmd_instrument(self, arg: str) -> List[str]:
        ident, value = _voice_arg(arg, "INSTRUMENT")
        program = self.scheduler.set_voice_instrument(ident, value)
        return [f"OK: voice {ident} instrument {program}"]

    def _cmd_status(self, arg: str) -> List[str]:
        st = self.scheduler.status()
        lines = [
            f"Queue size: {st.queue_size}",
            f"Playing: {_yes_no(st.playing)}",
            f"Paused: {_yes_no(st.paused)}",
            f"Volume: {st.volume:.2f}",
            f"Tempo: {st.tempo:.2f}",
        ]
        if st.current_id is not None:
            lines.append(f"Current: {st.current_id} {st.current_name}")
            lines.append(f"Position: {st.position:.2f}")
            lines.append(f"Length: {st.length:.2f}")
        return lines

    def _cmd_list(self, arg: str) -> List[str]:
        slots = self.scheduler.list_slots()
        if not slots:
            return ["Queue empty"]
        out = []
        for slot in slots:
            d = slot.data
            if d.source == "file":
                out.append(f"{slot.id}. FILE: {d.path}")
            else:
                out.append(f"{slot.id}. ABC: {d.name}")
        return out

class _Handler(socketserver.StreamRequestHandler):
    def handle(self):
        channel: ControlChannel = self.server.channel
        self._write([GREETING])
        for raw in self.rfile:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            reply = channel.handle(line)
            log.debug("%s -> %s", line[:40], reply[0] if reply else "")
            self._write(reply + [END])

    def _write(self, lines: List[str]):
        self.wfile.write(("\n".join(lines) + "\n").encode("utf-8"))
        self.wfile.flush()

def _socket_alive(path: str, timeout: float = 0.5) -> bool:
    """Nimmt unter `path` noch ein Server Verbindungen an?"""
    probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    probe.settimeout(timeout)
    try:
        probe.connect(path)
        return True
    except OSError:
        return False
    finally:
        probe.close()

class ControlServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True

    def __init__(self, socket_path: str, scheduler: PlaybackScheduler):
        self.socket_path = socket_path
        self.channel = ControlChannel(scheduler)
        if os.path.exists(socket_path):
            if _socket_alive(socket_path):
                raise ControlError(f"player already running on {socket_path}")
            # alter Socket eines abgestürzten Servers
            os.unlink(socket_path)
        super().__init__(socket_path, _Handler)
        log.info("control socket: %s", socket_path)

    def server_close(self):
        super().server_close()
        try:
            os.unlink(self.socket_path)
        except FileNotFoundError:
            pass

# ---------- Client-Seite ----------

@dataclass
class PlayerStatus:
    queue_size: int = 0
    playing: bool = False
    paused: bool = False
    volume: float = 1.0
    position: float = 0.0
    length: float = 0.0
    extra: Dict[str, str] = field(default_factory=dict)

def parse_status(lines: List[str]) -> PlayerStatus:
    st = PlayerStatus()
    for line in lines:
        key, _, value = line.partition(":")
        value = value.strip()
        if key == "Queue size":
            st.queue_size = int(value)
        elif key == "Playing":
            st.playing = value == "Yes"
        elif key == "Paused":
            st.paused = value == "Yes"
        elif key == "Position":
            st.position = float(value)
        elif key == "Length":
            st.length = float(value)
        elif key == "Volume":
            st.volume = float(value)
        elif value:
            st.extra[key] = value
    return st

def parse_list(lines: List[str]) -> List[str]:
    out = []
    for line in lines:
        if ". FILE: " in line or ". ABC: " in line:
            out.append(line.split(": ", 1)[1])
    return out

class ControlClient:
    """
    Verbindung zum Player-Prozess. Ohne Server: einmal 'abcplay serve'
    starten, kurz warten, erneut verbinden; danach nur noch available=False.
    """

    def __init__(self, cfg: Optional[dict] = None, socket_path: Optional[str] = None):
        ccfg = (cfg or {}).get("control", {}) or {}
        self.socket_path = socket_path or ccfg.get("socket_path", "/tmp/abcplay.sock")
        self.timeout = float(ccfg.get("connect_timeout_ms", 5000)) / 1000.0
        self.start_wait = float(ccfg.get("server_start_wait_ms", 2000)) / 1000.0
        self.auto_start = bool(ccfg.get("auto_start", True))
        self._sock: Optional[socket.socket] = None
        self._rfile = None
        self._start_attempted = False
        self.available = True

    # --- Verbindung ---

    def _open(self):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
            rfile = sock.makefile("rb")
            greeting = rfile.readline().decode("utf-8", errors="replace").strip()
        except OSError as e:
            sock.close()
            raise ConnectionFailedError(f"cannot connect to {self.socket_path}: {e}") from e
        if greeting != GREETING:
            rfile.close()
            sock.close()
            raise ConnectionFailedError(f"unexpected greeting '{greeting}'")
        self._sock, self._rfile = sock, rfile

    def _start_server(self):
        self._start_attempted = True
        log.info("starting player server")
        subprocess.Popen(
            [sys.executable, "-m", "abcplay.cli", "serve", "--socket", self.socket_path],
            stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        deadline = time.monotonic() + self.start_wait
        while time.monotonic() < deadline and not os.path.exists(self.socket_path):
            time.sleep(0.05)

    def connect(self) -> bool:
        if self._sock is not None:
            return True
        if not self.available:
            return False
        try:
            self._open()
            return True
        except ConnectionFailedError as e:
            log.debug("%s", e)
            if not self.auto_start or self._start_attempted:
                self.available = False
                return False
        try:
            self._start_server()
            self._open()
            return True
        except (OSError, ConnectionFailedError) as e:
            log.warning("player unavailable: %s", e)
            self.available = False
            return False

    def close(self):
        if self._rfile is not None:
            self._rfile.close()
        if self._sock is not None:
            self._sock.close()
        self._sock = self._rfile = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # --- Kommandos ---

    def request(self, command: str) -> List[str]:
        """Sendet ein Kommando, liefert die Antwortzeilen (ohne END). [] wenn nicht verfügbar."""
        if not self.connect():
            return []
        try:
            self._sock.sendall((command + "\n").encode("utf-8"))
            lines: List[str] = []
            while True:
                raw = self._rfile.readline()
                if not raw:
                    raise ConnectionFailedError("connection closed by server")
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if line == END:
                    return lines
                lines.append(line)
        except (OSError, ConnectionFailedError) as e:
            log.warning("control request failed: %s", e)
            self.close()
            return []

    def _ok(self, command: str) -> bool:
        reply = self.request(command)
        return bool(reply) and reply[0].startswith("OK")

    def queue_abc(self, notation: str) -> bool:
        return self._ok("QUEUE_ABC " + escape(notation))

    def queue_file(self, path: str) -> bool:
        # der Server hat ein eigenes Arbeitsverzeichnis
        return self._ok("QUEUE_FILE " + os.path.abspath(os.path.expanduser(path)))

    def stop(self) -> bool:
        return self._ok("STOP")

    def pause(self) -> bool:
        return self._ok("PAUSE")

    def resume(self) -> bool:
        return self._ok("RESUME")

    def clear(self) -> bool:
        return self._ok("CLEAR")

    def skip(self) -> bool:
        return self._ok("SKIP")

    def set_volume(self, volume: float) -> bool:
        return self._ok(f"VOLUME {volume}")

    def set_tempo(self, multiplier: float) -> bool:
        return self._ok(f"TEMPO {multiplier}")

    def remove(self, slot_id: int) -> bool:
        return self._ok(f"REMOVE {slot_id}")

    def seek(self, position: float) -> bool:
        return self._ok(f"SEEK {position}")

    def mute_voice(self, voice: str, muted: bool = True) -> bool:
        return self._ok(f"{'MUTE' if muted else 'UNMUTE'} {voice}")

    def set_voice_volume(self, voice: str, volume: float) -> bool:
        return self._ok(f"VOICE_VOLUME {voice} {volume}")

    def set_voice_instrument(self, voice: str, instrument) -> bool:
        return self._ok(f"INSTRUMENT {voice} {instrument}")

    def status(self) -> PlayerStatus:
        return parse_status(self.request("STATUS"))

    def queue_list(self) -> List[str]:
        return parse_list(self.request("LIST"))
