import httpx
import pytest

from tether.tether_builtins import List, Map
from tether.tether_fs import HttpFileSystem, MemoryFileSystem
from tether.tether_runtime import Engine


def assert_ok(res, expected=None):
    assert res.status == 'success', res.error_message
    if expected is not None:
        assert res.value == expected, f"expected {expected!r}, got {res.value!r}"


@pytest.mark.asyncio
async def test_guest_uses_assert_and_immutable_builtins():
    fs = MemoryFileSystem({
        "/main.py": (
            "assert_ = require('assert')\n"
            "im = require('immutable')\n"
            "m = im.Map(a=1)\n"
            "m2 = m.set('b', 2)\n"
            "assert_.equal(len(m), 1)\n"
            "[dict(m2), m2 is not m]\n"
        ),
    })
    assert_ok(await Engine(fs).start("/main.py"), [{"a": 1, "b": 2}, True])


@pytest.mark.asyncio
async def test_failed_guest_assertion_is_an_error():
    fs = MemoryFileSystem({"/main.py": "require('assert').equal(1, 2, 'one is not two')\n"})
    res = await Engine(fs).start("/main.py")
    assert res.status == "error"
    assert isinstance(res.error, AssertionError)
    assert "one is not two" in res.error_message


@pytest.mark.asyncio
async def test_immutable_values_cross_module_boundaries():
    fs = MemoryFileSystem({
        "/state.py": "module.exports = require('immutable').from_py({'items': [1, 2]})\n",
        "/main.py": "s = require('./state.py')\ns['items'].push(3)\n",
    })
    res = await Engine(fs).start("/main.py")
    assert_ok(res)
    assert isinstance(res.value, List)
    assert res.value == (1, 2, 3)


@pytest.mark.asyncio
async def test_extra_builtin_entries_are_importable():
    shared = Map(version="1.0")
    fs = MemoryFileSystem({"/main.py": "require('app-config')['version']\n"})
    res = await Engine(fs, builtins={"app-config": shared}).start("/main.py")
    assert_ok(res, "1.0")


@pytest.mark.asyncio
async def test_project_served_over_http():
    files = {
        "/proj/main.py": "require('./lib/util.py')(20)\n",
        "/proj/lib/util.py": "def double_plus(x):\n    return x * 2 + 2\nmodule.exports = double_plus\n",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path in files:
            return httpx.Response(200, text=files[request.url.path])
        return httpx.Response(404)

    with HttpFileSystem("http://ide.test", transport=httpx.MockTransport(handler)) as fs:
        engine = Engine(fs)
        assert_ok(await engine.start("/proj/main.py"), 42)
        assert_ok(engine.run_sync("/proj/main.py"), 42)


@pytest.mark.asyncio
async def test_snapshot_project_runs():
    snap = """
proj:
  main.py: |
    b = require("./lib/b.py")
    b + 1
  lib:
    b.py: "41"
"""
    res = await Engine(MemoryFileSystem.from_snapshot(snap)).start("/proj/main.py")
    assert_ok(res, 42)
