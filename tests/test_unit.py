import pytest

from tether.tether_datatypes import Aborted, Completion, GuestImportError, ResumeError
from tether.tether_unit import (
    ABORTED, COMPLETED, CREATED, FAILED, RUNNING, SUSPENDED, ComputationUnit,
)


def _no_require(path):
    raise AssertionError(f"unexpected require({path!r})")


class _Ctx:
    def __enter__(self):
        return "box"

    def __exit__(self, *exc):
        return False


def run_source(src: str, path: str = "/proj/m.py"):
    unit = ComputationUnit(path, src).bind(_no_require)
    return unit, unit.run()


def test_trailing_expression_is_the_completion_value():
    unit, res = run_source("x = 1\nx + 2\n")
    assert res == Completion.normal(3)
    assert unit.state == COMPLETED


def test_top_level_return_ends_the_module():
    _, res = run_source("return 5\nraise RuntimeError('unreachable')\n")
    assert res == Completion.normal(5)


def test_fall_through_without_expression_is_none():
    _, res = run_source("x = 1\n")
    assert res == Completion.normal(None)


def test_empty_module_completes_with_none():
    _, res = run_source("")
    assert res == Completion.normal(None)


def test_exports_win_over_completion_value():
    _, res = run_source("module.exports = 1\nmodule.exports = 2\n3\n")
    assert res == Completion.normal(2)


def test_falsy_exports_still_win():
    _, res = run_source("module.exports = 0\n7\n")
    assert res == Completion.normal(0)


def test_functions_and_classes_see_top_level_names():
    src = """
x = 2
def triple():
    return x * 3
class Box:
    size = 4
triple() + Box.size
"""
    _, res = run_source(src)
    assert res == Completion.normal(10)


def test_global_statement_rebinds_top_level_name():
    src = """
counter = 0
def inc():
    global counter
    counter += 1
inc()
inc()
counter
"""
    unit, res = run_source(src)
    assert res == Completion.normal(2)
    assert unit.globals["counter"] == 2


def test_top_level_bindings_live_in_unit_globals():
    src = """
total: int = 1
for i in range(3):
    total += i
with open_box() as box:
    pass
try:
    raise KeyError('k')
except KeyError as err:
    caught = type(err).__name__
if (n := 5) > 0:
    pass
class Box:
    pass
def helper():
    local_only = 1
    return local_only
def bump():
    global total, late
    total += 10
    late = 'set'
bump()
[total, late, n, caught]
"""
    unit = ComputationUnit("/proj/m.py", src, host_globals={"open_box": _Ctx}).bind(_no_require)
    res = unit.run()
    assert res == Completion.normal([14, 'set', 5, 'KeyError'])
    for name in ("total", "i", "box", "n", "Box", "helper", "bump", "late"):
        assert name in unit.globals, name
    assert "local_only" not in unit.globals


def test_top_level_global_declaration_is_accepted():
    _, res = run_source("global x\nx = 3\nx\n")
    assert res == Completion.normal(3)


def test_guest_exception_becomes_throw_completion():
    unit, res = run_source("raise KeyError('k')\n")
    assert res.type == "throw"
    assert isinstance(res.value, KeyError)
    assert unit.state == FAILED


def test_import_statement_is_blocked():
    _, res = run_source("import os\n")
    assert res.type == "throw"
    assert isinstance(res.value, GuestImportError)
    assert "require" in str(res.value)


def test_open_is_not_a_builtin():
    _, res = run_source("open('/etc/passwd')\n")
    assert isinstance(res.value, NameError)


def test_syntax_error_is_a_throw_completion():
    _, res = run_source("def f(:\n")
    assert isinstance(res.value, SyntaxError)


def test_top_level_yield_is_rejected():
    _, res = run_source("yield 1\n")
    assert isinstance(res.value, SyntaxError)


def test_globals_expose_file_and_default_cwd():
    _, res = run_source("[__file__, __name__, cwd()]\n", path="/proj/lib/m.py")
    assert res.value == ["/proj/lib/m.py", "/proj/lib/m.py", "/proj/lib"]


def test_require_is_injected():
    unit = ComputationUnit("/a.py", "require('./b.py') * 2\n").bind(lambda p: 21)
    assert unit.run() == Completion.normal(42)


def test_run_without_bound_require_is_a_host_error():
    unit = ComputationUnit("/a.py", "1\n")
    with pytest.raises(RuntimeError):
        unit.run()


def test_suspend_resume_lifecycle():
    unit = ComputationUnit("/a.py", "1\n").bind(_no_require)
    assert unit.state == CREATED
    unit.state = RUNNING
    handle = unit.suspend()
    assert unit.state == SUSPENDED
    with pytest.raises(ResumeError):
        unit.suspend()
    unit.resume(handle, Completion.normal("v"))
    assert unit.await_resume(handle) == "v"
    assert unit.state == RUNNING
    assert unit.handle is None


def test_resume_with_stale_handle_is_refused():
    unit = ComputationUnit("/a.py", "1\n").bind(_no_require)
    unit.state = RUNNING
    first = unit.suspend()
    unit.resume(first, Completion.normal(1))
    unit.await_resume(first)
    second = unit.suspend()
    with pytest.raises(ResumeError):
        unit.resume(first, Completion.normal(2))
    second.discard()
    with pytest.raises(Aborted):
        unit.await_resume(second)
    assert unit.state == ABORTED
