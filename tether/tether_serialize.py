from __future__ import annotations

import json
import collections.abc
import tomllib
from typing import Any, Optional

import yaml


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        return data.decode(encoding or 'utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _to_builtin(obj: Any) -> Any:
    # Persistent collections and other mappings/sequences flatten to plain containers
    if isinstance(obj, (str, bytes, bytearray)):
        return obj
    if isinstance(obj, collections.abc.Mapping):
        return {k: _to_builtin(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, collections.abc.Set)):
        return [_to_builtin(x) for x in obj]
    return obj


def detect_format(path: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json', 'yaml' or 'toml' from a file extension, else by sniffing.
    """
    p = (path or "").lower()
    if p.endswith(".json"):
        return 'json'
    if p.endswith((".yaml", ".yml")):
        return 'yaml'
    if p.endswith(".toml"):
        return 'toml'
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
        # YAML is a superset of JSON and the most forgiving guess
        return 'yaml'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str, *, fmt: Optional[str] = None) -> Any:
    """
    Convert snapshot text to native Python structures.
    Supported fmt: 'json', 'yaml', 'toml'. If fmt is None the text is sniffed.
    """
    text = _norm_text(data)
    f = fmt or detect_format(data_hint=text)
    if f == 'json':
        return json.loads(text)
    if f == 'yaml':
        return yaml.safe_load(text)
    if f == 'toml':
        return tomllib.loads(text)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def serialize(value: Any, *, fmt: str, indent: int = 2) -> str:
    """
    Convert a native value into text.
    - fmt: 'json' | 'yaml'
    - Values json cannot encode fall back to their repr().
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=indent or None, default=repr)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    if f == 'toml':
        raise RuntimeError("TOML serialization is not supported (tomllib is read-only)")
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
]
