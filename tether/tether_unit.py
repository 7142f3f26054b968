"""
The Computation Unit: one loaded module's sandboxed body, its exports cell,
and its suspend/resume capability.

Guest source is parsed with `ast` and its top-level statements are moved
into a function that is then invoked, so a top-level `return` and a trailing
bare expression both become the unit's completion value.
"""

import ast
import builtins
import inspect
import posixpath
import sys
from typing import Any, Callable, Dict, Optional

from tether.tether_datatypes import (
    Aborted, Completion, ContinuationHandle, GuestImportError, ModuleCell,
    ResumeError, resolve_export, _dbg,
)

BODY_NAME = "__module_body__"
UNIT_MARKER = "__tether_unit__"

SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytearray", "bytes", "callable",
    "chr", "classmethod", "complex", "dict", "dir", "divmod", "enumerate", "filter",
    "float", "format", "frozenset", "getattr", "hasattr", "hash", "hex", "id", "int",
    "isinstance", "issubclass", "iter", "len", "list", "map", "max", "min", "next",
    "object", "oct", "ord", "pow", "print", "property", "range", "repr", "reversed",
    "round", "set", "setattr", "slice", "sorted", "staticmethod", "str", "sum",
    "super", "tuple", "type", "zip", "__build_class__",
    # exceptions guests commonly raise and catch
    "BaseException", "Exception", "ArithmeticError", "AssertionError", "AttributeError",
    "IndexError", "KeyError", "LookupError", "NameError", "NotImplementedError",
    "OverflowError", "RuntimeError", "StopIteration", "TypeError", "ValueError",
    "ZeroDivisionError", "ImportError", "NotImplemented", "Ellipsis",
)

# Unit lifecycle
CREATED, RUNNING, SUSPENDED, COMPLETED, FAILED, ABORTED = (
    "created", "running", "suspended", "completed", "failed", "aborted",
)


def _guest_import(name, *args, **kwargs):
    raise GuestImportError(f"import {name!r} is not available in the sandbox; use require()")


def sandbox_builtins() -> Dict[str, Any]:
    out = {n: getattr(builtins, n) for n in SAFE_BUILTIN_NAMES if hasattr(builtins, n)}
    out["__import__"] = _guest_import
    return out


class _ModuleScope(ast.NodeTransformer):
    """
    Collects the names a module binds at top level so the wrapped body can
    declare them `global`. Function, class and lambda bodies are not entered.

    Statements that may not follow a `global` declaration are rewritten:
    top-level `global` becomes `pass` and annotated assignments to plain
    names become ordinary assignments.
    """

    def __init__(self):
        self.names = []

    def _bind(self, name):
        if name not in self.names:
            self.names.append(name)

    def visit_Name(self, node):
        if isinstance(node.ctx, (ast.Store, ast.Del)):
            self._bind(node.id)
        return node

    def visit_FunctionDef(self, node):
        self._bind(node.name)
        return node

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node):
        self._bind(node.name)
        return node

    def visit_Lambda(self, node):
        return node

    def _visit_comprehension(self, node):
        # Only walrus targets leak out of a comprehension
        for sub in ast.walk(node):
            if isinstance(sub, ast.NamedExpr) and isinstance(sub.target, ast.Name):
                self._bind(sub.target.id)
        return node

    visit_ListComp = visit_SetComp = visit_DictComp = visit_GeneratorExp = _visit_comprehension

    def visit_Import(self, node):
        for alias in node.names:
            if alias.name != "*":
                self._bind(alias.asname or alias.name.split(".")[0])
        return node

    visit_ImportFrom = visit_Import

    def visit_ExceptHandler(self, node):
        if node.name:
            self._bind(node.name)
        self.generic_visit(node)
        return node

    def visit_MatchAs(self, node):
        if node.name:
            self._bind(node.name)
        self.generic_visit(node)
        return node

    visit_MatchStar = visit_MatchAs

    def visit_MatchMapping(self, node):
        if node.rest:
            self._bind(node.rest)
        self.generic_visit(node)
        return node

    def visit_Global(self, node):
        for name in node.names:
            self._bind(name)
        return ast.copy_location(ast.Pass(), node)

    def visit_AnnAssign(self, node):
        if not isinstance(node.target, ast.Name):
            self.generic_visit(node)
            return node
        if node.value is None:
            return ast.copy_location(ast.Pass(), node)
        self._bind(node.target.id)
        target = ast.Name(id=node.target.id, ctx=ast.Store())
        assign = ast.Assign(targets=[ast.copy_location(target, node.target)],
                            value=self.visit(node.value))
        return ast.copy_location(assign, node)


def compile_module(source: str, path: str):
    """
    Compile guest source into a module that defines the wrapped body function.

    Names bound at top level are declared `global` in the body, so they live
    in the unit's globals and guest functions can rebind them with `global`.
    """
    tree = ast.parse(source, filename=path, mode="exec")
    scope = _ModuleScope()
    body = [scope.visit(stmt) for stmt in tree.body] or [ast.Pass()]
    last = body[-1]
    if isinstance(last, ast.Expr):
        body[-1] = ast.copy_location(ast.Return(value=last.value), last)
    if scope.names:
        body.insert(0, ast.Global(names=scope.names))
    fn = ast.FunctionDef(
        name=BODY_NAME,
        args=ast.arguments(posonlyargs=[], args=[], vararg=None, kwonlyargs=[],
                           kw_defaults=[], kwarg=None, defaults=[]),
        body=body,
        decorator_list=[],
        returns=None,
    )
    if "type_params" in ast.FunctionDef._fields:
        fn.type_params = []
    wrapper = ast.Module(body=[fn], type_ignores=[])
    ast.fix_missing_locations(wrapper)
    return compile(wrapper, path, "exec")


class ComputationUnit:
    """
    Wraps one module's executable body.

    `run()` executes the body to completion on the calling thread and returns
    a tagged `Completion` with the export convention applied. A unit that
    imports through the pausable loader calls `suspend()` and then parks in
    `await_resume()` until its owner calls `resume()` with a completion.
    """

    def __init__(self, path: str, source: str, *,
                 console: Any = None,
                 cwd: Optional[Callable[[], str]] = None,
                 host_globals: Optional[Dict[str, Any]] = None):
        self.path = path
        self.directory = posixpath.dirname(path) or "/"
        self.source = source
        self.module = ModuleCell(path)
        self.state = CREATED
        self.handle: Optional[ContinuationHandle] = None
        self.result: Optional[Completion] = None
        self._require: Optional[Callable[[str], Any]] = None
        self.globals: Dict[str, Any] = {
            "__builtins__": sandbox_builtins(),
            "__name__": path,
            "__file__": path,
            UNIT_MARKER: self,
            "module": self.module,
            "console": console,
            "cwd": cwd or (lambda: self.directory),
        }
        if console is not None:
            self.globals["__builtins__"]["print"] = console.print
        self.globals.update(host_globals or {})

    def bind(self, require: Callable[[str], Any]) -> 'ComputationUnit':
        self._require = require
        self.globals["require"] = require
        return self

    def _build(self) -> Callable[[], Any]:
        code = compile_module(self.source, self.path)
        exec(code, self.globals)
        body = self.globals.pop(BODY_NAME)
        if inspect.isgeneratorfunction(body) or inspect.isasyncgenfunction(body):
            raise SyntaxError("'yield' outside function", (self.path, 1, 0, None))
        return body

    def run(self) -> Completion:
        """Run to completion or failure; never raises for guest errors."""
        if self._require is None:
            raise RuntimeError(f"unit {self.path} has no require bound")
        self.state = RUNNING
        try:
            body = self._build()
            value = body()
        except Aborted as e:
            self.state = ABORTED
            self.result = Completion.throw(e)
        except (Exception, SystemExit) as e:
            self.state = FAILED
            self.result = Completion.throw(e)
        else:
            self.state = COMPLETED
            self.result = Completion.normal(resolve_export(self.module, value))
        _dbg("unit", self.state, self.path)
        return self.result

    # --- suspend / resume ---

    def suspend(self) -> ContinuationHandle:
        if self.state != RUNNING:
            raise ResumeError(f"cannot suspend unit {self.path} in state {self.state}")
        self.handle = ContinuationHandle(self.path)
        self.state = SUSPENDED
        _dbg("suspend", self.path)
        return self.handle

    def resume(self, handle: ContinuationHandle, completion: Completion) -> None:
        if handle is not self.handle:
            raise ResumeError(f"stale continuation for unit {self.path}")
        _dbg("resume", self.path, completion.type)
        handle.resume(completion)

    def await_resume(self, handle: ContinuationHandle) -> Any:
        """Called on the unit's own thread; blocks until resumed, then unwraps."""
        completion = handle.wait()
        self.handle = None
        if handle.discarded:
            self.state = ABORTED
        else:
            self.state = RUNNING
        return completion.unwrap()

    def __repr__(self):
        return f"<ComputationUnit {self.path} {self.state}>"


def install_safe_points(should_abort: Callable[[], bool]) -> None:
    """Raise `Aborted` at the next guest line once `should_abort()` turns true."""

    def local_trace(frame, event, arg):
        if event == "line" and should_abort():
            raise Aborted("aborted at safe point")
        return local_trace

    def global_trace(frame, event, arg):
        if UNIT_MARKER not in frame.f_globals:
            return None
        if should_abort():
            raise Aborted("aborted at safe point")
        return local_trace

    sys.settrace(global_trace)


__all__ = [
    "ComputationUnit",
    "compile_module",
    "sandbox_builtins",
    "install_safe_points",
    "CREATED", "RUNNING", "SUSPENDED", "COMPLETED", "FAILED", "ABORTED",
]
