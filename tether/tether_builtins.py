"""
The built-in module table: reserved import names mapped to host objects.

Lookups happen before any path resolution, so a built-in name shadows a file
of the same name and never touches the filesystem or the working directory.
"""
import collections.abc
from typing import Any, Dict, Iterable, Optional


def host_api(func):
    """A decorator to mark host methods that are injected into every unit."""
    func._is_host_api = True
    return func


class HostObject:
    """Base class for host objects whose `@host_api` methods guests may call."""

    def api_methods(self) -> Dict[str, Any]:
        out = {}
        for name in dir(self):
            if name.startswith("_"):
                continue
            member = getattr(self, name, None)
            if not callable(member):
                continue
            func = getattr(member, "__func__", member)
            if getattr(func, "_is_host_api", False):
                out[name] = member
        return out


# ===================================================================
# assert
# ===================================================================

class AssertModule:
    """Assertion helpers in the shape guest authors know from node's `assert`."""

    AssertionError = AssertionError

    def __call__(self, value, message=None):
        return self.ok(value, message)

    def _fail(self, message, default):
        raise AssertionError(message if message is not None else default)

    def ok(self, value, message=None):
        if not value:
            self._fail(message, f"{value!r} is not truthy")

    def equal(self, actual, expected, message=None):
        if actual != expected:
            self._fail(message, f"{actual!r} == {expected!r}")

    def not_equal(self, actual, expected, message=None):
        if actual == expected:
            self._fail(message, f"{actual!r} != {expected!r}")

    def strict_equal(self, actual, expected, message=None):
        if type(actual) is not type(expected) or actual != expected:
            self._fail(message, f"{actual!r} === {expected!r}")

    def deep_equal(self, actual, expected, message=None):
        if _plain(actual) != _plain(expected):
            self._fail(message, f"{actual!r} deep-equals {expected!r}")

    def throws(self, fn, error=Exception, message=None):
        try:
            fn()
        except error as e:
            return e
        self._fail(message, f"expected {getattr(fn, '__name__', 'function')} to raise {error.__name__}")

    def fail(self, message="Failed"):
        raise AssertionError(message)


def _plain(value):
    if isinstance(value, (str, bytes)):
        return value
    if isinstance(value, collections.abc.Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, collections.abc.Set):
        return frozenset(_plain(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


# ===================================================================
# immutable
# ===================================================================

class Map(collections.abc.Mapping):
    """A persistent mapping: updates return a new Map and leave the original intact."""
    __slots__ = ("_data", "_hash")

    def __init__(self, *args, **kwargs):
        self._data = dict(*args, **kwargs)
        self._hash = None

    def __getitem__(self, key): return self._data[key]
    def __iter__(self): return iter(self._data)
    def __len__(self): return len(self._data)

    def __hash__(self):
        """A Map is hashable only when all of its values are."""
        if self._hash is None:
            for key, value in self._data.items():
                try:
                    hash(value)
                except TypeError:
                    raise TypeError(
                        f"unhashable Map: value for key {key!r} is an unhashable "
                        f"{type(value).__name__}"
                    ) from None
            self._hash = hash(frozenset(self._data.items()))
        return self._hash

    def set(self, key, value) -> 'Map':
        data = dict(self._data)
        data[key] = value
        return Map(data)

    def delete(self, key) -> 'Map':
        data = dict(self._data)
        data.pop(key, None)
        return Map(data)

    def merge(self, *others: collections.abc.Mapping, **kwargs) -> 'Map':
        data = dict(self._data)
        for other in others:
            data.update(other)
        data.update(kwargs)
        return Map(data)

    def update_in(self, key, fn, default=None) -> 'Map':
        return self.set(key, fn(self._data.get(key, default)))

    def to_dict(self) -> dict:
        return dict(self._data)

    def __repr__(self):
        return f"Map({self._data!r})"


class List(tuple):
    """A persistent sequence backed by a tuple."""

    def __new__(cls, items: Iterable = ()):
        return super().__new__(cls, items)

    def push(self, value) -> 'List':
        return List(self + (value,))

    def pop(self) -> 'List':
        return List(self[:-1])

    def set(self, index, value) -> 'List':
        items = list(self)
        items[index] = value
        return List(items)

    def insert(self, index, value) -> 'List':
        items = list(self)
        items.insert(index, value)
        return List(items)

    def delete(self, index) -> 'List':
        items = list(self)
        del items[index]
        return List(items)

    def to_list(self) -> list:
        return list(self)

    def __repr__(self):
        return f"List({list(self)!r})"


class Set(frozenset):
    """A persistent set backed by a frozenset."""

    def add(self, value) -> 'Set':
        return Set(self | {value})

    def remove(self, value) -> 'Set':
        return Set(self - {value})

    def __repr__(self):
        return f"Set({set(self)!r})"


def from_py(value):
    """Deeply convert dicts, lists and sets into their persistent counterparts."""
    if isinstance(value, (str, bytes)):
        return value
    if isinstance(value, collections.abc.Mapping):
        return Map({k: from_py(v) for k, v in value.items()})
    if isinstance(value, (set, frozenset)):
        return Set(from_py(v) for v in value)
    if isinstance(value, (list, tuple)):
        return List(from_py(v) for v in value)
    return value


class ImmutableModule:
    Map = Map
    List = List
    Set = Set
    from_py = staticmethod(from_py)

    def is_immutable(self, value) -> bool:
        return isinstance(value, (Map, List, Set))


# ===================================================================
# The table
# ===================================================================

def default_builtins() -> Dict[str, Any]:
    return {
        "assert": AssertModule(),
        "immutable": ImmutableModule(),
    }


class BuiltinTable:
    """Static mapping of reserved import names to host objects."""

    def __init__(self, entries: Optional[Dict[str, Any]] = None, *, include_defaults: bool = True):
        self._entries: Dict[str, Any] = default_builtins() if include_defaults else {}
        self._entries.update(entries or {})

    def resolve(self, name: str) -> tuple[bool, Any]:
        """Returns (found, value); never touches the filesystem."""
        if name in self._entries:
            return True, self._entries[name]
        return False, None

    def __contains__(self, name):
        return name in self._entries

    def __getitem__(self, name):
        return self._entries[name]

    def names(self):
        return sorted(self._entries)


__all__ = [
    "host_api",
    "HostObject",
    "AssertModule",
    "ImmutableModule",
    "Map",
    "List",
    "Set",
    "from_py",
    "default_builtins",
    "BuiltinTable",
]
