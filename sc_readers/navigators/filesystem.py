from __future__ import annotations

import logging
import os
import posixpath
import shutil
import tempfile
from typing import List, Set

from sc_readers.core.exceptions import RequiredFieldMissingError
from sc_readers.navigators.base import FileContent, ProjectNavigator

logger = logging.getLogger(__name__)


class FilesystemNavigator(ProjectNavigator):
    """
    Navigator over a project directory on local disk.

    Project paths always use '/' separators, whatever the host. With `copy=True`
    every file is first copied to a private temporary location, so that readers
    never hold the original open; `clean()` deletes those copies.
    """

    def __init__(self, root: str | os.PathLike, copy: bool = False) -> None:
        self._root = os.fspath(root)
        self._copy = copy
        self._materialized: Set[str] = set()

    @property
    def root(self) -> str:
        return self._root

    def _local(self, path: str) -> str:
        relative = posixpath.normpath(path).lstrip("/")
        return os.path.join(self._root, *relative.split("/"))

    async def file(self, path: str) -> str:
        local = self._local(path)
        if not os.path.isfile(local):
            raise RequiredFieldMissingError(f"'{path}' not found under '{self._root}'")
        if not self._copy:
            return local

        fd, tmp = tempfile.mkstemp(prefix="sc_readers_", suffix="_" + posixpath.basename(path))
        os.close(fd)
        shutil.copyfile(local, tmp)
        self._materialized.add(tmp)
        return tmp

    async def exists(self, path: str) -> bool:
        return os.path.exists(self._local(path))

    async def list(self, path: str) -> List[str]:
        local = self._local(path)
        if not os.path.isdir(local):
            return []
        return sorted(os.listdir(local))

    async def clean(self, local: FileContent) -> None:
        if isinstance(local, str) and local in self._materialized:
            self._materialized.discard(local)
            try:
                os.unlink(local)
            except FileNotFoundError:
                pass

    def clear(self) -> None:
        for tmp in list(self._materialized):
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                logger.debug("Temporary copy already removed", extra={"path": tmp})
        self._materialized.clear()
