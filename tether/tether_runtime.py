"""
The engine facade the IDE talks to: `start(root_path)`, `abort()` and the
structured `ExecutionResult` of a run.
"""

import asyncio
import sys
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional

from tether.tether_builtins import BuiltinTable, HostObject
from tether.tether_datatypes import Aborted, Completion, EngineBusy, ModuleNotFound, _dbg
from tether.tether_fs import VirtualFileSystem, normalize
from tether.tether_loader import Chain, DirectoryTracker, PausableLoader, SyncLoader, _settle
from tether.tether_printer import Printer
from tether.tether_unit import BODY_NAME


# ===================================================================
# Console
# ===================================================================

class Console:
    """
    The console-equivalent injected into every unit.

    Each call becomes a side-effect record; records are also forwarded to the
    host's `on_output` callback, on the event loop when one is given.
    """

    def __init__(self, sink: Optional[Callable[[Dict], Any]] = None, *,
                 live: Optional[Callable[[], bool]] = None,
                 loop: Optional[asyncio.AbstractEventLoop] = None,
                 printer: Optional[Printer] = None):
        self.side_effects: List[Dict] = []
        self._sink = sink
        self._live = live
        self._loop = loop
        self._printer = printer or Printer()

    def _emit(self, stream: str, level: str, message: str):
        # Output from a discarded chain is dropped
        if self._live is not None and not self._live():
            return None
        event = {"topics": [stream], "level": level, "message": message}
        self.side_effects.append(event)
        if self._sink is not None:
            if self._loop is not None and not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self._sink, event)
            else:
                self._sink(event)
        return None

    def log(self, *args):
        return self._emit("stdout", "log", self._printer.format_args(args))

    def info(self, *args):
        return self._emit("stdout", "info", self._printer.format_args(args))

    def debug(self, *args):
        return self._emit("stdout", "debug", self._printer.format_args(args))

    def warn(self, *args):
        return self._emit("stderr", "warn", self._printer.format_args(args))

    def error(self, *args):
        return self._emit("stderr", "error", self._printer.format_args(args))

    def print(self, *args, sep=" ", end="\n", file=None, flush=False):
        """Stands in for the builtin `print` inside the sandbox."""
        stream = "stderr" if file is sys.stderr else "stdout"
        message = (sep if sep is not None else " ").join(self._printer.pformat(a) for a in args)
        return self._emit(stream, "print", message)


# ===================================================================
# Results
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of a run."""
    status: Literal['success', 'error', 'aborted']
    value: Any = None
    error: Optional[BaseException] = None
    error_message: Optional[str] = None
    side_effects: List[Dict] = field(default_factory=list)

    @property
    def stdout(self) -> List[str]:
        return [e["message"] for e in self.side_effects if e.get("topics") == ["stdout"]]

    @property
    def stderr(self) -> List[str]:
        return [e["message"] for e in self.side_effects if e.get("topics") == ["stderr"]]

    def format_error(self) -> str:
        if self.status == 'success':
            return ""
        return str(self.error_message or "Unknown error")


def _source_context(source: str, line: int, col: Optional[int], radius: int = 2) -> str:
    lines = source.splitlines()
    if not line or line < 1 or line > len(lines):
        return ""
    start = max(1, line - radius)
    end = min(len(lines), line + radius)
    width = len(str(end))
    out = []
    for i in range(start, end + 1):
        prefix = ">" if i == line else " "
        ln = str(i).rjust(width)
        out.append(f"{prefix} {ln} | {lines[i - 1]}")
        if i == line and col is not None:
            caret = " " * max(col - 1, 0)
            out.append(f"  {' ' * width} | {caret}^")
    return "\n".join(out)


def format_guest_error(e: BaseException, sources: Dict[str, str]) -> str:
    """Render an error with the guest frames and a source excerpt of the failing line."""
    match e:
        case Aborted():
            return f"Aborted: {e.reason}"
        case ModuleNotFound():
            msg = f"ModuleNotFound: {e.path}"
        case SyntaxError():
            msg = f"SyntaxError: {e.msg}"
        case _:
            detail = str(e)
            msg = f"{type(e).__name__}: {detail}" if detail else type(e).__name__

    frames = [f for f in traceback.extract_tb(e.__traceback__) if f.filename in sources]
    if frames:
        msg += "\nGuest stack:"
        for f in frames:
            name = "<module>" if f.name == BODY_NAME else f.name
            msg += f'\n  File "{f.filename}", line {f.lineno}, in {name}'

    if isinstance(e, SyntaxError) and e.filename in sources:
        ctx = _source_context(sources[e.filename], e.lineno, e.offset)
        if ctx:
            msg += f"\n({e.filename}, line {e.lineno})\n{ctx}"
    elif frames:
        last = frames[-1]
        ctx = _source_context(sources[last.filename], last.lineno, None)
        if ctx:
            msg += f"\n({last.filename}, line {last.lineno})\n{ctx}"
    return msg


def _task_completion(task: asyncio.Task, chain: Chain) -> Completion:
    if task.cancelled():
        return Completion.aborted(chain.reason or "aborted")
    exc = task.exception()
    if exc is not None:
        return Completion.throw(exc)
    return task.result()


# ===================================================================
# Engine
# ===================================================================

class Engine:
    """
    Runs guest module chains against a virtual filesystem.

    One chain at a time: `start()` while a chain is running raises
    `EngineBusy`; `abort()` tears the whole chain down and returns the engine
    to idle.
    """

    def __init__(self, fs: VirtualFileSystem, *,
                 base_path: str = "/",
                 builtins: Optional[BuiltinTable | Dict[str, Any]] = None,
                 host_object: Optional[HostObject] = None,
                 on_output: Optional[Callable[[Dict], Any]] = None,
                 safe_points: bool = True):
        self.fs = fs
        self.base_path = normalize(base_path)
        self.builtins = builtins if isinstance(builtins, BuiltinTable) else BuiltinTable(builtins)
        self.host_object = host_object
        self.on_output = on_output
        self.safe_points = safe_points
        self.tracker = DirectoryTracker(self.base_path)
        self._chain: Optional[Chain] = None

    @property
    def state(self) -> str:
        return "running" if self._chain is not None else "idle"

    @property
    def cwd(self) -> str:
        return self.tracker.cwd

    @property
    def chain(self) -> Optional[Chain]:
        return self._chain

    def _host_globals(self) -> Dict[str, Any]:
        if self.host_object is None:
            return {}
        return self.host_object.api_methods()

    def _claim(self) -> Chain:
        if self._chain is not None:
            raise EngineBusy("a run is already in progress; abort() it first")
        chain = self._chain = Chain()
        self.tracker.cwd = self.base_path
        return chain

    def _release(self, chain: Chain) -> None:
        if self._chain is chain:
            self._chain = None
        self.tracker.cwd = self.base_path

    async def start(self, root_path: str) -> ExecutionResult:
        """Run `root_path` and every module it imports on the pausable loader."""
        chain = self._claim()
        loop = asyncio.get_running_loop()
        chain.root_future = loop.create_future()
        console = Console(self.on_output, live=lambda: not chain.aborted, loop=loop)
        loader = PausableLoader(
            self.fs, loop=loop, chain=chain, safe_points=self.safe_points,
            builtins=self.builtins, tracker=self.tracker, console=console,
            host_globals=self._host_globals(),
        )
        _dbg("start", root_path, "in", self.base_path)
        task = loop.create_task(loader.load(root_path))
        chain.track(task)
        task.add_done_callback(lambda t: _settle(chain.root_future, _task_completion(t, chain)))
        try:
            completion = await chain.root_future
        except asyncio.CancelledError:
            self.abort("cancelled")
            raise
        finally:
            self._release(chain)
        return self._result(completion, console, loader.sources)

    def run_sync(self, root_path: str) -> ExecutionResult:
        """Run `root_path` inline with the synchronous loader."""
        chain = self._claim()
        console = Console(self.on_output)
        loader = SyncLoader(
            self.fs, builtins=self.builtins, tracker=self.tracker, console=console,
            host_globals=self._host_globals(),
        )
        _dbg("run_sync", root_path, "in", self.base_path)
        try:
            completion = loader.load(root_path)
        finally:
            self._release(chain)
        return self._result(completion, console, loader.sources)

    def abort(self, reason: str = "aborted") -> int:
        """Discard the whole running chain. Returns the number of suspended units discarded."""
        chain = self._chain
        if chain is None:
            return 0
        self._chain = None
        count = chain.abort(reason)
        fut = chain.root_future
        if fut is not None and not fut.done():
            fut.get_loop().call_soon_threadsafe(_settle, fut, Completion.aborted(reason))
        return count

    def _result(self, completion: Completion, console: Console, sources: Dict[str, str]) -> ExecutionResult:
        if completion.type == 'normal':
            return ExecutionResult(status='success', value=completion.value,
                                   side_effects=console.side_effects)
        err = completion.value
        msg = format_guest_error(err, sources)
        status = 'aborted' if isinstance(err, Aborted) else 'error'
        if status == 'error':
            console.side_effects.append({"topics": ["stderr"], "level": "error", "message": msg})
        return ExecutionResult(status=status, error=err, error_message=msg,
                               side_effects=console.side_effects)


__all__ = [
    "Console",
    "ExecutionResult",
    "Engine",
    "format_guest_error",
]
