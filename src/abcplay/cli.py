from __future__ import annotations
import argparse, pathlib, signal, sys, traceback
from . import analyze, write
from .backend import open_backend, output_names
from .config import load_config
from .control import ControlClient, ControlServer, escape
from .errors import AbcParseError, AbcPlayError, BackendUnavailableError, ControlError
from .log import init_logging
from .scheduler import PlaybackScheduler
from .timeline import MusicData

def _input_path(raw: str) -> pathlib.Path:
    in_path = pathlib.Path(raw).expanduser().resolve()
    if not in_path.exists():
        print(f"[cli] ERROR: Input not found: {in_path}", file=sys.stderr)
        sys.exit(1)
    return in_path

def _report(result, in_path) -> bool:
    for w in result.warnings:
        print(f"[cli] warning: {w}")
    for e in result.errors:
        print(f"[cli] ERROR: {e}", file=sys.stderr)
    t = result.tune
    print(f"[cli] {in_path.name}: '{t.title}' voices={len(t.voices)} notes={len(t.notes)} "
          f"length={t.length:.2f} beats tempo={t.tempo.qpm:g} qpm")
    return result.ok

def cmd_check(args, cfg) -> int:
    in_path = _input_path(args.infile)
    result = analyze.load_abc_file(in_path, cfg)
    return 0 if _report(result, in_path) else 2

def cmd_export(args, cfg) -> int:
    in_path = _input_path(args.infile)
    result = analyze.load_abc_file(in_path, cfg)
    if not _report(result, in_path):
        return 2
    out_path = pathlib.Path(args.outfile).expanduser().resolve() if args.outfile else in_path.with_suffix(".mid")
    write.export_tune(result.tune, str(out_path), cfg)
    print(f"[cli] midi -> {out_path}")
    return 0

def cmd_play(args, cfg) -> int:
    in_path = _input_path(args.infile)
    try:
        backend = open_backend(cfg)
    except BackendUnavailableError as e:
        print(f"[cli] ERROR: {e}", file=sys.stderr)
        return 2
    sched = PlaybackScheduler(backend, cfg)
    if args.tempo:
        sched.set_tempo(args.tempo)
    if args.volume is not None:
        sched.set_volume(args.volume)
    try:
        sid = sched.enqueue(MusicData(notation="", name=in_path.stem, source="file", path=str(in_path)))
        print(f"[cli] playing slot {sid}: {in_path.name}")
        sched.start()
        sched.wait_until_idle()
    except AbcParseError as e:
        for msg in e.errors:
            print(f"[cli] ERROR: {msg}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("[cli] interrupted")
    finally:
        sched.shutdown()
        backend.close()
    return 0

def cmd_serve(args, cfg) -> int:
    socket_path = args.socket or cfg["control"].get("socket_path", "/tmp/abcplay.sock")
    try:
        backend = open_backend(cfg)
    except BackendUnavailableError as e:
        print(f"[cli] ERROR: {e}", file=sys.stderr)
        return 2
    sched = PlaybackScheduler(backend, cfg)
    try:
        server = ControlServer(socket_path, sched)
    except (ControlError, OSError) as e:
        print(f"[cli] ERROR: {e}", file=sys.stderr)
        backend.close()
        return 2

    def _terminate(signum, frame):
        raise SystemExit(0)
    signal.signal(signal.SIGTERM, _terminate)

    sched.start()
    print(f"[cli] serving on {socket_path}")
    try:
        server.serve_forever(poll_interval=0.2)
    except KeyboardInterrupt:
        print("[cli] interrupted")
    finally:
        server.server_close()
        sched.shutdown()
        backend.close()
    return 0

def cmd_send(args, cfg) -> int:
    client = ControlClient(cfg, socket_path=args.socket)
    if args.abc:
        text = _input_path(args.abc).read_text(encoding="utf-8")
        command = "QUEUE_ABC " + escape(text)
    else:
        command = " ".join(args.command).strip()
        name, _, rest = command.partition(" ")
        if name.upper() == "QUEUE_FILE" and rest.strip():
            # Pfad relativ zu unserem cwd, nicht dem des Servers
            command = f"{name} {pathlib.Path(rest.strip()).expanduser().resolve()}"
    if not command.strip():
        print("[cli] ERROR: nothing to send", file=sys.stderr)
        return 1
    with client:
        reply = client.request(command)
    if not client.available:
        print("[cli] ERROR: player unavailable", file=sys.stderr)
        return 2
    for line in reply:
        print(line)
    return 2 if any(line.startswith("ERROR") for line in reply) else 0

def cmd_ports(args, cfg) -> int:
    names = output_names()
    if not names:
        print("[cli] ERROR: no MIDI outputs found", file=sys.stderr)
        return 2
    for name in names:
        print(name)
    return 0

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="abcplay", description="ABC notation player / MIDI exporter")
    p.add_argument("--config", dest="config", default=None, help="YAML config (defaults applied if omitted)")
    p.add_argument("--log-level", dest="log_level", default=None, help="DEBUG, INFO, WARNING, ...")
    sub = p.add_subparsers(dest="cmd", required=True)

    c = sub.add_parser("check", help="Parse an .abc file and print diagnostics")
    c.add_argument("infile")
    c.set_defaults(func=cmd_check)

    e = sub.add_parser("export", help="Write a .mid file")
    e.add_argument("infile")
    e.add_argument("--out", dest="outfile", default=None, help="Output MIDI file (default: input with .mid)")
    e.set_defaults(func=cmd_export)

    pl = sub.add_parser("play", help="Play an .abc file on the MIDI output")
    pl.add_argument("infile")
    pl.add_argument("--tempo", type=float, default=None, help="Tempo multiplier (0.1 .. 4.0)")
    pl.add_argument("--volume", type=float, default=None, help="Master volume (0 .. 1)")
    pl.add_argument("--port", default=None, help="MIDI output port name")
    pl.set_defaults(func=cmd_play)

    s = sub.add_parser("serve", help="Run the player with a control socket")
    s.add_argument("--socket", default=None, help="Unix socket path")
    s.add_argument("--port", default=None, help="MIDI output port name")
    s.set_defaults(func=cmd_serve)

    se = sub.add_parser("send", help="Send one control command to a running player")
    se.add_argument("command", nargs="*", help="e.g. STATUS, 'VOLUME 0.5', 'QUEUE_FILE tune.abc'")
    se.add_argument("--abc", default=None, help="Queue this .abc file as inline notation")
    se.add_argument("--socket", default=None, help="Unix socket path")
    se.set_defaults(func=cmd_send)

    po = sub.add_parser("ports", help="List MIDI output ports (for --port / backend.port)")
    po.set_defaults(func=cmd_ports)
    return p

def main(argv=None):
    args = build_parser().parse_args(argv)
    overrides = {}
    if getattr(args, "port", None):
        overrides["backend"] = {"port": args.port}
    cfg = load_config(args.config, overrides=overrides)
    init_logging(cfg, args.log_level)

    try:
        code = args.func(args, cfg)
    except AbcPlayError as e:
        print(f"[cli] ERROR: {e}", file=sys.stderr)
        code = 2
    except OSError:
        traceback.print_exc()
        code = 2
    sys.exit(code)

if __name__ == "__main__":
    main()
