from __future__ import annotations

import abc
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from sc_readers.core.exceptions import RedirectionError
from sc_readers.utils.text import unpack_text

logger = logging.getLogger(__name__)

MAX_REDIRECTIONS = 32

FileContent = Union[bytes, str]


def json_path(path: str) -> str:
    """ArtifactDB metadata for `path` lives in `path.json`."""
    return path if path.endswith(".json") else path + ".json"


def redirection_target(document: Dict[str, Any]) -> Optional[str]:
    schema = document.get("$schema", "")
    if not isinstance(schema, str) or not schema.startswith("redirection/"):
        return None
    try:
        return document["redirection"]["targets"][0]["location"]
    except (KeyError, IndexError, TypeError) as e:
        raise RedirectionError(f"malformed redirection document: {e}") from e


async def resolve_redirections(
        fetch: Callable[[str], Awaitable[Dict[str, Any]]],
        path: str,
        known: Optional[Dict[str, Dict[str, Any]]] = None,
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Fetch metadata for `path`, following redirections until a real document turns up.

    :param fetch: raw metadata reader taking a '.json' path
    :param known: already-resolved documents by '.json' path; a hit ends the walk
    :return: (document, list of '.json' paths fetched along the way)
    :raises RedirectionError: on a cycle or more than MAX_REDIRECTIONS hops
    """
    visited: List[str] = []
    current = json_path(path)

    for _ in range(MAX_REDIRECTIONS + 1):
        if known is not None and current in known:
            return known[current], visited

        visited.append(current)
        document = await fetch(current)
        target = redirection_target(document)
        if target is None:
            return document, visited

        logger.debug("Following redirection", extra={"source": current, "target": target})
        current = json_path(target)
        if current in visited:
            raise RedirectionError(f"redirection cycle detected at '{current}' (chain: {visited})")

    raise RedirectionError(
        f"more than {MAX_REDIRECTIONS} redirections starting from '{json_path(path)}'"
    )


class ProjectNavigator(abc.ABC):
    """
    Path-addressed access to the files of one project directory.

    Design Notes:
    - `file()` returns bytes or a local path; callers hand the result back to
      `clean()` once they are done with it.
    - `metadata()` follows ArtifactDB redirections; `read_metadata()` does not.
    - Not safe for concurrent use on the same instance.
    """

    @abc.abstractmethod
    async def file(self, path: str) -> FileContent:
        ...

    @abc.abstractmethod
    async def exists(self, path: str) -> bool:
        ...

    @abc.abstractmethod
    async def list(self, path: str) -> List[str]:
        ...

    async def clean(self, local: FileContent) -> None:
        return None

    def clear(self) -> None:
        return None

    async def read_metadata(self, path: str) -> Dict[str, Any]:
        return await self.read_json(json_path(path))

    async def metadata(self, path: str) -> Dict[str, Any]:
        document, _ = await resolve_redirections(self.read_metadata, path)
        return document

    async def read_json(self, path: str) -> Any:
        """
        Parse a (possibly gzipped) JSON file from the project.
        """
        content = await self.file(path)
        try:
            if isinstance(content, (str, os.PathLike)):
                with open(content, "rb") as handle:
                    data = handle.read()
            else:
                data = content
            return json.loads(unpack_text(data))
        finally:
            await self.clean(content)
