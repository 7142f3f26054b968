from tether.tether_datatypes import (
    Aborted, Completion, ContinuationHandle, EngineBusy, GuestImportError,
    ModuleNotFound, ResumeError, TetherError, UNSET,
)
from tether.tether_builtins import BuiltinTable, HostObject, host_api
from tether.tether_fs import HttpFileSystem, LocalFileSystem, MemoryFileSystem, VirtualFileSystem
from tether.tether_loader import PausableLoader, SyncLoader, resolve_path
from tether.tether_runtime import Console, Engine, ExecutionResult

__all__ = [
    "Aborted", "Completion", "ContinuationHandle", "EngineBusy", "GuestImportError",
    "ModuleNotFound", "ResumeError", "TetherError", "UNSET",
    "BuiltinTable", "HostObject", "host_api",
    "HttpFileSystem", "LocalFileSystem", "MemoryFileSystem", "VirtualFileSystem",
    "PausableLoader", "SyncLoader", "resolve_path",
    "Console", "Engine", "ExecutionResult",
]
