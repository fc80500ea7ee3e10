from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional, Union

FileSource = Union[bytes, bytearray, memoryview, str, os.PathLike]


class FileRef:
    """
    Uniform handle to the bytes of one input file.

    Origins:
    - inline buffer (bytes / bytearray / memoryview) - a name must be supplied
    - local filesystem path (str / PathLike) - name defaults to the basename
    - host file object (anything with .read()) - name taken from its .name

    Nothing is read at construction time; path-backed refs are read on demand
    and host file objects are drained into an internal buffer the first time
    their bytes are requested.
    """

    def __init__(self, source: Any, name: Optional[str] = None) -> None:
        self._path: Optional[str] = None
        self._buffer: Optional[bytes] = None
        self._handle: Any = None

        if isinstance(source, (bytes, bytearray, memoryview)):
            if not name:
                raise ValueError("a name must be supplied for a FileRef backed by a buffer")
            self._buffer = bytes(source)
            self._name = name

        elif isinstance(source, (str, os.PathLike)):
            self._path = os.fspath(source)
            self._name = name or Path(self._path).name

        elif hasattr(source, "read"):
            self._handle = source
            inferred = getattr(source, "name", None)
            if not name and isinstance(inferred, str):
                name = Path(inferred).name
            if not name:
                raise ValueError("a name must be supplied for a FileRef backed by a file object")
            self._name = name

        else:
            raise TypeError(f"unknown FileRef origin of type '{type(source).__name__}'")

    @classmethod
    def coerce(cls, value: Any) -> FileRef:
        """
        Accept a FileRef, a path, or a (bytes, name) pair.
        """
        if isinstance(value, FileRef):
            return value
        if isinstance(value, tuple) and len(value) == 2:
            return cls(value[0], name=value[1])
        return cls(value)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------
    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> Optional[str]:
        return self._path

    @property
    def size(self) -> int:
        if self._path is not None:
            return os.path.getsize(self._path)
        return len(self._materialize())

    def buffer(self, copy: bool = False) -> bytes:
        """
        :param copy: for buffer-backed refs, return a fresh copy rather than the stored bytes
        :return: the complete file contents
        """
        if self._path is not None:
            with open(self._path, "rb") as f:
                return f.read()

        data = self._materialize()
        if copy:
            return bytes(bytearray(data))
        return data

    def content(self) -> Union[str, bytes]:
        """
        A path where one exists (so native loaders can open the file directly),
        otherwise the bytes.
        """
        if self._path is not None:
            return self._path
        return self._materialize()

    def _materialize(self) -> bytes:
        if self._buffer is None:
            data = self._handle.read()
            if isinstance(data, str):
                data = data.encode("utf-8")
            self._buffer = bytes(data)
            self._handle = None
        return self._buffer

    def __repr__(self) -> str:
        origin = "path" if self._path is not None else "buffer"
        return f"FileRef(name={self._name!r}, origin={origin})"
