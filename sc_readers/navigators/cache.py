from __future__ import annotations

from typing import Any, Dict, List

from sc_readers.navigators.base import FileContent, ProjectNavigator, json_path, resolve_redirections


class MetadataCache(ProjectNavigator):
    """
    Memoizes `metadata()` of a wrapped navigator until `clear()`.

    Every path visited while resolving a redirection chain is cached against
    the final document, so each distinct path is fetched at most once.
    """

    def __init__(self, navigator: ProjectNavigator) -> None:
        self._navigator = navigator
        self._cache: Dict[str, Dict[str, Any]] = {}

    @property
    def navigator(self) -> ProjectNavigator:
        return self._navigator

    def cached_paths(self) -> List[str]:
        return list(self._cache.keys())

    async def file(self, path: str) -> FileContent:
        return await self._navigator.file(path)

    async def exists(self, path: str) -> bool:
        return await self._navigator.exists(path)

    async def list(self, path: str) -> List[str]:
        return await self._navigator.list(path)

    async def clean(self, local: FileContent) -> None:
        await self._navigator.clean(local)

    async def read_metadata(self, path: str) -> Dict[str, Any]:
        return await self._navigator.read_metadata(path)

    async def metadata(self, path: str) -> Dict[str, Any]:
        key = json_path(path)
        if key in self._cache:
            return self._cache[key]

        document, visited = await resolve_redirections(
            self._navigator.read_metadata, key, known=self._cache
        )
        for p in visited:
            self._cache[p] = document
        return document

    def clear(self) -> None:
        self._cache.clear()
        self._navigator.clear()
