from __future__ import annotations

import os
import posixpath
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional

import httpx

from tether.tether_serialize import deserialize, serialize


def normalize(path: str) -> str:
    """Normalize a virtual path to an absolute POSIX path rooted at '/'."""
    p = posixpath.normpath(path or "/")
    return "/" + p.lstrip("/") if p != "." else "/"


class VirtualFileSystem(ABC):
    """
    The file access collaborator consumed by the loaders.

    Reads are synchronous and side-effect free. Paths are virtual and rooted
    at '/', independent of the host filesystem.
    """

    @abstractmethod
    def exists(self, path: str) -> bool: raise NotImplementedError

    @abstractmethod
    def read_text(self, path: str) -> str: raise NotImplementedError

    def join_path(self, base: str, relative: str) -> str:
        # An absolute import string starts over from the virtual root
        return normalize(posixpath.join(base or "/", relative))

    def dir_of(self, path: str) -> str:
        return posixpath.dirname(normalize(path)) or "/"


class MemoryFileSystem(VirtualFileSystem):
    """An in-memory project tree, the analogue of the IDE's local-storage filesystem."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self._files: Dict[str, str] = {}
        for path, text in (files or {}).items():
            self.write_text(path, text)

    @classmethod
    def from_mapping(cls, tree: Dict[str, Any], root: str = "/") -> 'MemoryFileSystem':
        """Build from a nested mapping: directories are dicts, files are strings."""
        fs = cls()

        def walk(node: Dict[str, Any], prefix: str):
            for name, value in node.items():
                path = posixpath.join(prefix, str(name))
                if isinstance(value, dict):
                    walk(value, path)
                else:
                    fs.write_text(path, "" if value is None else str(value))

        walk(tree or {}, normalize(root))
        return fs

    @classmethod
    def from_snapshot(cls, text: str | bytes, fmt: Optional[str] = None) -> 'MemoryFileSystem':
        tree = deserialize(text, fmt=fmt)
        if not isinstance(tree, dict):
            raise ValueError("project snapshot must be a mapping of names to files/directories")
        return cls.from_mapping(tree)

    def to_mapping(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for path in sorted(self._files):
            parts = path.strip("/").split("/")
            node = out
            for part in parts[:-1]:
                node = node.setdefault(part, {})
            node[parts[-1]] = self._files[path]
        return out

    def to_snapshot(self, fmt: str = "yaml") -> str:
        return serialize(self.to_mapping(), fmt=fmt)

    def _is_dir(self, path: str) -> bool:
        if path == "/":
            return True
        prefix = path.rstrip("/") + "/"
        return any(p.startswith(prefix) for p in self._files)

    def exists(self, path: str) -> bool:
        p = normalize(path)
        return p in self._files or self._is_dir(p)

    def read_text(self, path: str) -> str:
        p = normalize(path)
        if p in self._files:
            return self._files[p]
        if self._is_dir(p):
            raise IsADirectoryError(p)
        raise FileNotFoundError(p)

    def write_text(self, path: str, text: str) -> None:
        p = normalize(path)
        if self._is_dir(p):
            raise IsADirectoryError(p)
        self._files[p] = text

    def remove(self, path: str) -> None:
        p = normalize(path)
        if p not in self._files:
            raise FileNotFoundError(p)
        del self._files[p]

    def listdir(self, path: str = "/") -> List[str]:
        p = normalize(path)
        prefix = "/" if p == "/" else p + "/"
        names = set()
        for f in self._files:
            if f.startswith(prefix):
                names.add(f[len(prefix):].split("/", 1)[0])
        if not names and not self._is_dir(p):
            raise FileNotFoundError(p)
        return sorted(names)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._files))

    def __len__(self):
        return len(self._files)


class LocalFileSystem(VirtualFileSystem):
    """Maps the virtual root '/' onto a real directory; paths never escape it."""

    def __init__(self, root: str):
        self.root = os.path.realpath(root)

    def _real(self, path: str) -> str:
        real = os.path.realpath(os.path.join(self.root, normalize(path).lstrip("/")))
        if os.path.commonpath([self.root, real]) != self.root:
            raise PermissionError(f"{path} escapes {self.root}")
        return real

    def exists(self, path: str) -> bool:
        try:
            return os.path.exists(self._real(path))
        except PermissionError:
            return False

    def read_text(self, path: str) -> str:
        real = self._real(path)
        if os.path.isdir(real):
            raise IsADirectoryError(path)
        with open(real, "r", encoding="utf-8") as f:
            return f.read()


class HttpFileSystem(VirtualFileSystem):
    """
    Serves a project from an HTTP origin.

    `exists` issues HEAD, `read_text` issues GET. The client is synchronous
    because the loaders treat file access as synchronous.
    """

    def __init__(self, base_url: str, *, client: Optional[httpx.Client] = None,
                 transport: Optional[httpx.BaseTransport] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.Client(base_url=self.base_url, transport=transport,
                                             timeout=timeout, follow_redirects=True)

    def _url(self, path: str) -> str:
        return self.base_url + normalize(path)

    def exists(self, path: str) -> bool:
        resp = self.client.head(self._url(path))
        return resp.status_code < 400

    def read_text(self, path: str) -> str:
        resp = self.client.get(self._url(path))
        if resp.status_code == 404:
            raise FileNotFoundError(normalize(path))
        resp.raise_for_status()
        return resp.text

    def close(self):
        if self._owns_client:
            self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


__all__ = [
    "normalize",
    "VirtualFileSystem",
    "MemoryFileSystem",
    "LocalFileSystem",
    "HttpFileSystem",
]
