from __future__ import annotations

import io
import logging
import zipfile
from typing import List, Optional, Set

from sc_readers.core.exceptions import RequiredFieldMissingError, ResourceFailureError
from sc_readers.core.file_ref import FileRef
from sc_readers.navigators.base import ProjectNavigator

logger = logging.getLogger(__name__)


def open_archive(file_ref: FileRef) -> zipfile.ZipFile:
    content = file_ref.content()
    try:
        if isinstance(content, bytes):
            return zipfile.ZipFile(io.BytesIO(content))
        return zipfile.ZipFile(content)
    except (zipfile.BadZipFile, OSError) as e:
        raise ResourceFailureError(f"failed to open ZIP archive '{file_ref.name}': {e}") from e


class ZippedProjectNavigator(ProjectNavigator):
    """
    Navigator over a project packed in a ZIP archive.

    The archive is opened on first access and shared by every subsequent call.
    An already-open archive can be injected so several navigators (e.g. one per
    object in the same file) avoid re-reading the central directory.
    """

    def __init__(self, file_ref: FileRef, existing_handle: Optional[zipfile.ZipFile] = None) -> None:
        self._file_ref = file_ref
        self._handle = existing_handle
        self._owns_handle = existing_handle is None
        self._names: Optional[Set[str]] = None

    def handle(self) -> zipfile.ZipFile:
        if self._handle is None:
            self._handle = open_archive(self._file_ref)
            self._owns_handle = True
            logger.debug("Opened ZIP archive", extra={"archive": self._file_ref.name})
        return self._handle

    def _namelist(self) -> Set[str]:
        if self._names is None:
            self._names = set(self.handle().namelist())
        return self._names

    async def file(self, path: str) -> bytes:
        try:
            return self.handle().read(path)
        except KeyError as e:
            raise RequiredFieldMissingError(f"'{path}' not found in archive '{self._file_ref.name}'") from e

    async def exists(self, path: str) -> bool:
        names = self._namelist()
        if path in names:
            return True
        prefix = path.rstrip("/") + "/"
        return any(n.startswith(prefix) for n in names)

    async def list(self, path: str) -> List[str]:
        prefix = path.rstrip("/") + "/" if path else ""
        children = set()
        for name in self._namelist():
            if not name.startswith(prefix):
                continue
            remainder = name[len(prefix):]
            if not remainder:
                continue
            children.add(remainder.split("/", 1)[0])
        return sorted(children)

    def clear(self) -> None:
        if self._handle is not None and self._owns_handle:
            self._handle.close()
            self._handle = None
        self._names = None
