"""
Module resolution and the two loaders.

`SyncLoader` runs an imported unit inline with native call/return.
`PausableLoader` runs every unit on its own thread and turns each `require()`
into a suspension of the calling unit: the request is handed to the host
event loop, the callee runs, and the caller is resumed with a tagged
`Completion`. Both loaders share resolution, the built-in table and the
export convention, so guest code behaves the same under either.
"""

from __future__ import annotations

import asyncio
import sys
import threading
from typing import Any, Callable, Dict, List, Optional, Set

from tether.tether_builtins import BuiltinTable
from tether.tether_datatypes import Aborted, Completion, ContinuationHandle, ModuleNotFound, _dbg
from tether.tether_fs import VirtualFileSystem
from tether.tether_unit import ComputationUnit, install_safe_points


def resolve_path(fs: VirtualFileSystem, cwd: str, import_path: str) -> str:
    """Join `import_path` onto `cwd`, normalize, and require that it exists."""
    path = fs.join_path(cwd, import_path)
    if not fs.exists(path):
        raise ModuleNotFound(path)
    return path


class DirectoryTracker:
    """The directory of whichever unit is currently running."""
    __slots__ = ("cwd",)

    def __init__(self, cwd: str = "/"):
        self.cwd = cwd

    def __call__(self) -> str:
        return self.cwd


class Chain:
    """
    The runner stack of one run: the active unit on top, suspended callers
    beneath it. Aborting discards the whole chain at once.
    """

    def __init__(self):
        self.units: List[ComputationUnit] = []
        self.aborted = False
        self.reason: Optional[str] = None
        self.root_future: Optional[asyncio.Future] = None
        self._pending: Set[Any] = set()
        self._lock = threading.Lock()

    @property
    def current(self) -> Optional[ComputationUnit]:
        return self.units[-1] if self.units else None

    def push(self, unit: ComputationUnit) -> None:
        self.units.append(unit)

    def pop(self, unit: ComputationUnit) -> None:
        if unit in self.units:
            self.units.remove(unit)

    def suspended(self) -> List[ComputationUnit]:
        return [u for u in self.units if u.handle is not None and u.handle.pending]

    def track(self, fut) -> None:
        with self._lock:
            self._pending.add(fut)
        fut.add_done_callback(self._untrack)

    def _untrack(self, fut) -> None:
        with self._lock:
            self._pending.discard(fut)

    def abort(self, reason: str = "aborted") -> int:
        """Discard every suspended continuation and cancel in-flight requests."""
        self.aborted = True
        self.reason = reason
        count = 0
        for unit in reversed(list(self.units)):
            if unit.handle is not None and unit.handle.discard(reason):
                count += 1
        with self._lock:
            pending = list(self._pending)
        for fut in pending:
            fut.cancel()
        _dbg("abort", reason, "discarded", count)
        return count


class _LoaderBase:
    def __init__(self, fs: VirtualFileSystem, *,
                 builtins: Optional[BuiltinTable] = None,
                 tracker: Optional[DirectoryTracker] = None,
                 console: Any = None,
                 host_globals: Optional[Dict[str, Any]] = None):
        self.fs = fs
        self.builtins = builtins if builtins is not None else BuiltinTable()
        self.tracker = tracker if tracker is not None else DirectoryTracker()
        self.console = console
        self.host_globals = dict(host_globals or {})
        self.sources: Dict[str, str] = {}

    def make_unit(self, path: str) -> ComputationUnit:
        source = self.fs.read_text(path)
        self.sources[path] = source
        return ComputationUnit(path, source, console=self.console, cwd=self.tracker,
                               host_globals=self.host_globals)


class SyncLoader(_LoaderBase):
    """Runs imports inline; nested imports nest native calls."""

    def require(self, import_path: str) -> Any:
        found, value = self.builtins.resolve(import_path)
        if found:
            return value
        old_wd = self.tracker.cwd
        try:
            path = resolve_path(self.fs, old_wd, import_path)
            self.tracker.cwd = self.fs.dir_of(path)
            _dbg("require(sync)", import_path, "->", path)
            unit = self.make_unit(path).bind(self.require)
            return unit.run().unwrap()
        finally:
            self.tracker.cwd = old_wd

    def load(self, import_path: str) -> Completion:
        try:
            return Completion.normal(self.require(import_path))
        except (Exception, SystemExit, Aborted) as e:
            return Completion.throw(e)


def _settle(fut: asyncio.Future, completion: Completion) -> None:
    if not fut.done():
        fut.set_result(completion)


class PausableLoader(_LoaderBase):
    """
    Loads modules so that the importing unit is suspended, not blocked inline.

    All resolution and tracker updates happen on the event loop thread; a
    unit's thread only suspends itself and waits to be resumed.
    """

    def __init__(self, fs: VirtualFileSystem, *,
                 loop: asyncio.AbstractEventLoop,
                 chain: Optional[Chain] = None,
                 safe_points: bool = True,
                 **kwargs):
        super().__init__(fs, **kwargs)
        self.loop = loop
        self.chain = chain if chain is not None else Chain()
        self.safe_points = safe_points

    async def load(self, import_path: str, caller: Optional[ComputationUnit] = None) -> Completion:
        found, value = self.builtins.resolve(import_path)
        if found:
            return Completion.normal(value)
        base = caller.directory if caller is not None else self.tracker.cwd
        old_wd = self.tracker.cwd
        try:
            path = resolve_path(self.fs, base, import_path)
            self.tracker.cwd = self.fs.dir_of(path)
            _dbg("require(pausable)", import_path, "->", path)
            unit = self.make_unit(path)
        except Exception as e:
            return Completion.throw(e)
        finally:
            self.tracker.cwd = old_wd
        unit.bind(self._bind_require(unit))
        return await self._execute(unit)

    async def _execute(self, unit: ComputationUnit) -> Completion:
        if self.chain.aborted:
            return Completion.aborted(self.chain.reason or "aborted")
        done = self.loop.create_future()
        chain = self.chain
        loop = self.loop

        def target():
            if self.safe_points:
                install_safe_points(lambda: chain.aborted)
            try:
                completion = unit.run()
            finally:
                sys.settrace(None)
            try:
                loop.call_soon_threadsafe(_settle, done, completion)
            except RuntimeError:
                _dbg("loop closed before", unit.path, "finished")

        chain.push(unit)
        self.tracker.cwd = unit.directory
        threading.Thread(target=target, name=f"tether:{unit.path}", daemon=True).start()
        try:
            return await done
        finally:
            chain.pop(unit)

    def _bind_require(self, unit: ComputationUnit) -> Callable[[str], Any]:
        def require(import_path: str) -> Any:
            found, value = self.builtins.resolve(import_path)
            if found:
                return value
            if self.chain.aborted:
                raise Aborted(self.chain.reason or "aborted")
            handle = unit.suspend()
            if self.chain.aborted:
                handle.discard(self.chain.reason or "aborted")
            else:
                fut = asyncio.run_coroutine_threadsafe(self._serve(import_path, unit, handle), self.loop)
                self.chain.track(fut)
            return unit.await_resume(handle)
        return require

    async def _serve(self, import_path: str, caller: ComputationUnit, handle: ContinuationHandle) -> None:
        if self.chain.aborted:
            handle.discard(self.chain.reason or "aborted")
            return
        try:
            completion = await self.load(import_path, caller)
        except asyncio.CancelledError:
            handle.discard(self.chain.reason or "aborted")
            raise
        except Exception as e:
            completion = Completion.throw(e)
        if self.chain.aborted or not handle.pending:
            handle.discard(self.chain.reason or "aborted")
            return
        self.tracker.cwd = caller.directory
        caller.resume(handle, completion)


__all__ = [
    "resolve_path",
    "DirectoryTracker",
    "Chain",
    "SyncLoader",
    "PausableLoader",
]
