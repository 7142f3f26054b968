import threading

import pytest

from tether.tether_datatypes import (
    Aborted, Completion, ContinuationHandle, ModuleCell, ModuleNotFound,
    ResumeError, UNSET, resolve_export,
)


def test_completion_unwrap_normal_and_throw():
    assert Completion.normal(5).unwrap() == 5
    err = ValueError("boom")
    with pytest.raises(ValueError) as ei:
        Completion.throw(err).unwrap()
    # the very same exception object is re-raised
    assert ei.value is err


def test_completion_aborted_is_tagged_throw():
    c = Completion.aborted("stop")
    assert c.type == "throw"
    assert c.is_abort
    assert not Completion.throw(RuntimeError("x")).is_abort
    with pytest.raises(Aborted):
        c.unwrap()


def test_aborted_is_not_an_exception():
    # guest `except Exception:` handlers must not swallow an abort
    assert not issubclass(Aborted, Exception)


def test_module_cell_written_even_for_falsy_values():
    cell = ModuleCell("/m.py")
    assert cell.exports is UNSET
    assert resolve_export(cell, "fallthrough") == "fallthrough"
    cell.exports = 0
    assert cell.written
    assert resolve_export(cell, "fallthrough") == 0
    cell.exports = None
    assert resolve_export(cell, "fallthrough") is None


def test_module_not_found_carries_path():
    e = ModuleNotFound("/proj/missing.py")
    assert e.path == "/proj/missing.py"
    assert "/proj/missing.py" in str(e)


def test_handle_resume_delivers_completion_to_waiting_thread():
    handle = ContinuationHandle("/a.py")
    out = []
    t = threading.Thread(target=lambda: out.append(handle.wait()))
    t.start()
    assert handle.pending
    handle.resume(Completion.normal(5))
    t.join(2)
    assert out == [Completion.normal(5)]
    assert not handle.pending


def test_handle_resumes_only_once():
    handle = ContinuationHandle("/a.py")
    handle.resume(Completion.normal(1))
    with pytest.raises(ResumeError):
        handle.resume(Completion.normal(2))
    assert handle.wait() == Completion.normal(1)


def test_discarded_handle_wakes_with_abort_and_refuses_resume():
    handle = ContinuationHandle("/a.py")
    assert handle.discard("stop") is True
    assert handle.discarded
    assert handle.wait().is_abort
    with pytest.raises(ResumeError):
        handle.resume(Completion.normal(1))
    # discarding twice is a no-op
    assert handle.discard() is False
