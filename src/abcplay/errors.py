# src/abcplay/errors.py
from __future__ import annotations
from typing import List, Optional


class AbcPlayError(Exception):
    """Basisklasse für alle Fehler aus abcplay."""


class RepeatExpansionError(AbcPlayError):
    """Wiederholungs-Expansion hat das Iterationslimit überschritten."""

    def __init__(self, limit: int, partial: str = ""):
        super().__init__(f"expansion limit exceeded ({limit} iterations)")
        self.limit = limit
        self.partial = partial


class AbcParseError(AbcPlayError):
    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        first = errors[0] if errors else "unknown parse error"
        more = f" (+{len(errors) - 1} more)" if len(errors) > 1 else ""
        super().__init__(first + more)
        self.errors = list(errors)
        self.warnings = list(warnings or [])


class SchedulerError(AbcPlayError):
    pass


class QueueFullError(SchedulerError):
    def __init__(self, limit: int):
        super().__init__(f"queue full ({limit} slots)")
        self.limit = limit


class BackendUnavailableError(SchedulerError):
    pass


class ControlError(AbcPlayError):
    """Ungültiges oder unbekanntes Steuerkommando."""


class ConnectionFailedError(ControlError):
    pass


class Diagnostics:
    """
    Sammelt Fehler/Warnungen zeilenweise ("Line N: msg").
    Der Parser bricht nie beim ersten Fehler ab.
    """

    def __init__(self):
        self.errors: List[str] = []
        self.warnings: List[str] = []

    @staticmethod
    def _fmt(line_no: int, msg: str) -> str:
        return f"Line {line_no}: {msg}" if line_no > 0 else msg

    def error(self, line_no: int, msg: str):
        self.errors.append(self._fmt(line_no, msg))

    def warning(self, line_no: int, msg: str):
        self.warnings.append(self._fmt(line_no, msg))

    @property
    def ok(self) -> bool:
        return not self.errors
