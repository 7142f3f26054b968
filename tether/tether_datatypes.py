"""
Core data types for the tether engine.

Errors, the tagged `Completion` delivered on resume, the exports cell handed
to every unit, and the `ContinuationHandle` a suspended unit blocks on.
"""

import os
import sys
import threading
from dataclasses import dataclass
from typing import Any, Literal, Optional


def _dbg(*parts):
    if os.environ.get("TETHER_DEBUG"):
        try:
            print("[DBG]", *parts, file=sys.stderr)
        except Exception:
            pass


# =================================================================
# Errors
# =================================================================

class TetherError(Exception):
    """Base class for engine errors."""
    pass


class ModuleNotFound(TetherError):
    def __init__(self, path: str):
        super().__init__(f"Path did not exist: {path}")
        self.path = path


class EngineBusy(TetherError):
    pass


class ResumeError(TetherError):
    pass


class GuestImportError(ImportError):
    pass


class Aborted(BaseException):
    """Raised inside discarded units. Not an Exception so guest handlers don't swallow it."""
    def __init__(self, reason: str = "aborted"):
        super().__init__(reason)
        self.reason = reason


# =================================================================
# Exports cell
# =================================================================

class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET = _Unset()


class ModuleCell:
    """The `module` object a guest sees; writing `module.exports` overrides the completion value."""
    __slots__ = ("exports", "path")

    def __init__(self, path: str):
        self.exports = UNSET
        self.path = path

    @property
    def written(self) -> bool:
        return self.exports is not UNSET

    def __repr__(self):
        return f"<module {self.path!r} exports={self.exports!r}>"


def resolve_export(cell: ModuleCell, completion_value: Any) -> Any:
    if cell.written:
        return cell.exports
    return completion_value


# =================================================================
# Tagged results
# =================================================================

@dataclass(frozen=True)
class Completion:
    """A normal value or a thrown error, delivered to a caller on resume."""
    type: Literal['normal', 'throw']
    value: Any = None

    @classmethod
    def normal(cls, value: Any) -> 'Completion':
        return cls('normal', value)

    @classmethod
    def throw(cls, error: BaseException) -> 'Completion':
        return cls('throw', error)

    @classmethod
    def aborted(cls, reason: str = "aborted") -> 'Completion':
        return cls('throw', Aborted(reason))

    @property
    def is_abort(self) -> bool:
        return self.type == 'throw' and isinstance(self.value, Aborted)

    def unwrap(self) -> Any:
        if self.type == 'throw':
            raise self.value
        return self.value


class ContinuationHandle:
    """
    The captured continuation of a suspended unit.

    The unit's thread parks in `wait()`; whoever owns the handle calls
    `resume()` exactly once with a tagged completion, or `discard()` to wake
    it with `Aborted`.
    """

    def __init__(self, unit_path: str):
        self.unit_path = unit_path
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._completion: Optional[Completion] = None
        self.discarded = False

    @property
    def pending(self) -> bool:
        return not self._event.is_set()

    def resume(self, completion: Completion) -> None:
        with self._lock:
            if self.discarded:
                raise ResumeError(f"continuation of {self.unit_path} was discarded")
            if self._event.is_set():
                raise ResumeError(f"continuation of {self.unit_path} already resumed")
            self._completion = completion
            self._event.set()

    def discard(self, reason: str = "aborted") -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self.discarded = True
            self._completion = Completion.aborted(reason)
            self._event.set()
            return True

    def wait(self) -> Completion:
        self._event.wait()
        return self._completion


__all__ = [
    "TetherError", "ModuleNotFound", "EngineBusy", "ResumeError",
    "GuestImportError", "Aborted", "UNSET", "ModuleCell", "resolve_export",
    "Completion", "ContinuationHandle",
]
