# src/abcplay/config.py
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Optional
import copy
import logging
import os
import yaml

log = logging.getLogger(__name__)

PKG_ROOT = Path(__file__).resolve().parent
DEFAULT_CFG_PATH = PKG_ROOT / "config.default.yaml"
USER_CFG_PATH = Path.home() / ".config" / "abcplay" / "config.yaml"
ENV_VAR = "ABCPLAY_CONFIG"

SECTIONS = ("parser", "dynamics", "decorations", "hairpins",
            "scheduler", "control", "backend", "logging")

def _safe_load(path: Path) -> Dict[str, Any]:
    """YAML-Datei -> Dict. Fehlt sie oder ist sie kaputt: leeres Dict + Warnung."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        log.warning("ignoring unreadable config %s: %s", path, e)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        log.warning("ignoring config %s: top level is not a mapping", path)
        return {}
    return data

def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (extra or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged

def user_config_path(user_path: Optional[Path] = None) -> Path:
    """Explizit > $ABCPLAY_CONFIG > ~/.config/abcplay/config.yaml"""
    if user_path:
        return Path(user_path).expanduser()
    env = os.environ.get(ENV_VAR)
    return Path(env).expanduser() if env else USER_CFG_PATH

def load_config(
    user_path: Optional[Path] = None,
    default_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Defaults (Paket) + User-Datei + Laufzeit-Overrides (z.B. CLI-Flags),
    tief gemergt. Fehlende Dateien sind kein Fehler.
    """
    defaults = _safe_load(Path(default_path) if default_path else DEFAULT_CFG_PATH)
    cfg = _deep_merge(defaults, _safe_load(user_config_path(user_path)))
    if overrides:
        cfg = _deep_merge(cfg, overrides)

    cfg.setdefault("ticks_per_beat", 480)
    for section in SECTIONS:
        if not isinstance(cfg.get(section), dict):
            cfg[section] = {}
    return cfg

def get_ticks_per_beat(cfg: Dict[str, Any]) -> int:
    try:
        return int(cfg.get("ticks_per_beat", 480))
    except (TypeError, ValueError):
        return 480
