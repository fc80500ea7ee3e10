from __future__ import annotations

import enum
import inspect
import logging
import struct
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from sc_readers.core.exceptions import FormatMismatchError
from sc_readers.core.file_ref import FileRef
from sc_readers.readers.base import Reader
from sc_readers.registry import ReaderRegistry, create_default_registry

logger = logging.getLogger(__name__)

FORMAT_VERSION = 2001000

_PREAMBLE = struct.Struct("<QQQ")

CreateLink = Callable[[str, str, bytes], str]
ResolveLink = Callable[[str], Any]


class FileStorage(enum.Enum):
    """
    Where serialized file bodies go: inline in the bundle, or behind caller-managed links.
    """
    EMBEDDED = 0
    LINKED = 1


class EmbeddedWriter:
    """
    Accumulates file bodies for an embedded bundle and hands out their coordinates.
    """

    def __init__(self) -> None:
        self._chunks: List[bytes] = []
        self._size = 0

    @property
    def size(self) -> int:
        return self._size

    def add(self, data: bytes) -> Tuple[int, int]:
        """
        :return: (offset, size) of `data` inside the bundle body
        """
        offset = self._size
        self._chunks.append(bytes(data))
        self._size += len(data)
        return offset, len(data)

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)


def dump_dataset(
        dataset: Reader,
        storage: FileStorage,
        *,
        embedded: Optional[EmbeddedWriter] = None,
        create_link: Optional[CreateLink] = None,
) -> Dict[str, Any]:
    """
    Turn a reader into a JSON-ready record whose files are either embedded or linked.

    :param storage: {@link FileStorage.EMBEDDED} appends every file body to `embedded`;
        {@link FileStorage.LINKED} hands it to `create_link(type, name, data)` and keeps the id
    :return: `{"format", "files": [{"type", "name", "offset", "size"} | {"type", "name", "id"}], "options"}`
    :raises ValueError: if the callback matching `storage` is missing
    """
    if storage is FileStorage.EMBEDDED and embedded is None:
        raise ValueError("embedded storage needs an EmbeddedWriter")
    if storage is FileStorage.LINKED and create_link is None:
        raise ValueError("linked storage needs a create_link callback")

    record = dataset.serialize()
    files: List[Dict[str, Any]] = []
    for entry in record["files"]:
        file_ref: FileRef = entry["file"]
        data = file_ref.buffer()
        if storage is FileStorage.EMBEDDED:
            offset, size = embedded.add(data)
            files.append({"type": entry["type"], "name": file_ref.name, "offset": offset, "size": size})
        else:
            link = create_link(entry["type"], file_ref.name, data)
            files.append({"type": entry["type"], "name": file_ref.name, "id": link})

    logger.debug(
        "Dumped dataset",
        extra={"dataset_format": dataset.format(), "storage": storage.name, "n_files": len(files)},
    )
    return {"format": dataset.format(), "files": files, "options": record["options"]}


async def _restore_file(
        entry: Mapping[str, Any],
        embedded: Optional[bytes],
        resolve_link: Optional[ResolveLink],
) -> FileRef:
    has_id = "id" in entry
    has_coords = "offset" in entry or "size" in entry
    if has_id == has_coords:
        raise FormatMismatchError(
            f"file record for '{entry.get('name')}' must carry exactly one of 'id' or 'offset'+'size'"
        )

    if has_id:
        if resolve_link is None:
            raise FormatMismatchError(f"file '{entry.get('name')}' is linked but no resolve_link was supplied")
        content = resolve_link(entry["id"])
        if inspect.isawaitable(content):
            content = await content
        return FileRef(content, name=entry.get("name"))

    if "offset" not in entry or "size" not in entry:
        raise FormatMismatchError(f"file record for '{entry.get('name')}' needs both 'offset' and 'size'")
    if embedded is None:
        raise FormatMismatchError(f"file '{entry.get('name')}' is embedded but no bundle body was supplied")
    start = int(entry["offset"])
    end = start + int(entry["size"])
    if start < 0 or end > len(embedded):
        raise FormatMismatchError(f"file '{entry.get('name')}' lies outside the bundle body")
    return FileRef(bytes(embedded[start:end]), name=entry["name"])


async def restore_dataset(
        record: Mapping[str, Any],
        *,
        registry: Optional[ReaderRegistry] = None,
        embedded: Optional[Union[bytes, bytearray, memoryview]] = None,
        resolve_link: Optional[ResolveLink] = None,
) -> Reader:
    """
    Rebuild a reader from the output of {@link dump_dataset}.

    :param registry: {@link ReaderRegistry} to look the format up in; the default registry if None
    :param embedded: bundle body that `offset`/`size` coordinates point into
    :param resolve_link: maps an id to bytes or a local path; may be a coroutine function
    :raises FormatMismatchError: on malformed file records
    :raises KeyError: on an unknown format
    """
    if registry is None:
        registry = create_default_registry()

    body = bytes(embedded) if embedded is not None else None
    files = []
    for entry in record.get("files", []):
        files.append({"type": entry.get("type"), "file": await _restore_file(entry, body, resolve_link)})

    return await registry.unserialize(
        {"format": record["format"], "files": files, "options": dict(record.get("options") or {})}
    )


def create_preamble(embedded: bool, state_size: int) -> bytes:
    """
    Header of a saved bundle: storage kind, FORMAT_VERSION and the size of the state that follows.
    """
    storage = FileStorage.EMBEDDED if embedded else FileStorage.LINKED
    return _PREAMBLE.pack(storage.value, FORMAT_VERSION, state_size)


def parse_preamble(data: bytes) -> Tuple[FileStorage, int, int]:
    """
    :return: (storage, version, state size)
    :raises FormatMismatchError: if `data` is too short or names an unknown storage kind
    """
    if len(data) < _PREAMBLE.size:
        raise FormatMismatchError(f"bundle preamble needs {_PREAMBLE.size} bytes, got {len(data)}")
    kind, version, state_size = _PREAMBLE.unpack_from(data)
    try:
        storage = FileStorage(kind)
    except ValueError:
        raise FormatMismatchError(f"unknown bundle storage kind {kind}")
    return storage, version, state_size
