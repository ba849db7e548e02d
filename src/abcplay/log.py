from __future__ import annotations
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

def init_logging(cfg: Optional[Dict[str, Any]] = None, level: Optional[str] = None):
    """
    Root-Logger einrichten (Konsole + optional rotierende Logdatei).
    Mehrfachaufruf ist harmlos: vorhandene Handler bleiben.
    """
    lcfg = (cfg or {}).get("logging", {}) or {}
    lvl = getattr(logging, str(level or lcfg.get("level", "INFO")).upper(), logging.INFO)

    root = logging.getLogger()
    if root.handlers:
        root.setLevel(lvl)
        return

    logging.basicConfig(level=lvl, format=LOG_FORMAT)

    log_file = lcfg.get("file")
    if log_file:
        path = os.path.expanduser(str(log_file))
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            fh = RotatingFileHandler(
                path,
                maxBytes=int(lcfg.get("max_bytes", 2 * 1024 * 1024)),
                backupCount=int(lcfg.get("backup_count", 3)),
                encoding="utf-8",
            )
        except OSError as e:
            logging.getLogger(__name__).warning("log file %s unavailable: %s", path, e)
            return
        fh.setLevel(lvl)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(fh)
