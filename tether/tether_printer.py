"""
Formats guest values for the console and the command line.
"""
import collections.abc
import inspect

from tether.tether_datatypes import UNSET, ModuleCell
from tether.tether_serialize import serialize


class Printer:
    """Renders values the way the IDE's log panel shows them."""

    def __init__(self, indent_width=4):
        self.indent_width = indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def format_args(self, args) -> str:
        return " ".join(self.pformat(a) for a in args)

    def _get_handler(self, obj):
        if obj is UNSET:
            return lambda o, l: "unset"
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, BaseException):
            return self._pformat_exception
        if isinstance(obj, ModuleCell):
            return lambda o, l: repr(o)
        if inspect.isclass(obj):
            return lambda o, l: f"[class {o.__name__}]"
        if callable(obj):
            return self._pformat_callable
        if isinstance(obj, (collections.abc.Mapping, list, tuple, collections.abc.Set)):
            return self._pformat_structured
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_primitive,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            bytes: lambda o, l: repr(o),
        }

    def _pformat_str(self, obj, level):
        # Top-level strings print verbatim, nested ones quoted
        return obj if level == 0 else repr(obj)

    def _pformat_primitive(self, obj, level):
        return repr(obj)

    def _pformat_bool(self, obj, level):
        return "True" if obj else "False"

    def _pformat_none(self, obj, level):
        return "None"

    def _pformat_exception(self, obj, level):
        msg = str(obj)
        return f"{type(obj).__name__}: {msg}" if msg else type(obj).__name__

    def _pformat_callable(self, obj, level):
        name = getattr(obj, "__name__", None) or type(obj).__name__
        return f"[function {name}]"

    def _pformat_structured(self, obj, level):
        return serialize(obj, fmt="json", indent=self.indent_width)
