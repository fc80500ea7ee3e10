from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type

from sc_readers.readers.artifactdb import ZippedArtifactdbDataset
from sc_readers.readers.base import Reader
from sc_readers.readers.h5ad import H5adDataset
from sc_readers.readers.mtx import MatrixMarketDataset
from sc_readers.readers.se import SummarizedExperimentDataset
from sc_readers.readers.takane import ZippedAlabasterDataset
from sc_readers.readers.tenx import TenxHdf5Dataset

logger = logging.getLogger(__name__)


class ReaderRegistry:
    """
    Registry of reader classes ({@link Dataset} or {@link Result}) keyed by their format tag.

    Purpose:
    - Lets callers (config loading, bundle restoration) build readers from a
      format tag alone, via {@link create} and {@link unserialize}
    - Keeps the set of supported formats open: new readers are registered,
      not hardcoded

    Design Notes:
    - Stores classes, not instances; each call builds a fresh reader
    - Enforces:
        * only {@link Reader} subclasses can be registered
        * each `format()` is unique across the registry
    """

    def __init__(self) -> None:
        self._readers: Dict[str, Type[Reader]] = {}

    def register(self, reader_cls: Type[Reader]) -> None:
        """
        Register a {@link Reader} subclass under its `format()`.

        :param reader_cls: the reader class
        :raises TypeError: if reader_cls is not a subclass of {@link Reader}
        :raises ValueError: if a reader with the same format is already registered
        """
        if not isinstance(reader_cls, type) or not issubclass(reader_cls, Reader):
            raise TypeError(f"Reader '{reader_cls!r}' must be a subclass of Reader")

        tag = reader_cls.format()
        if tag in self._readers:
            raise ValueError(f"Format '{tag}' already registered")

        self._readers[tag] = reader_cls
        logger.debug("Registered reader", extra={"dataset_format": tag, "reader": reader_cls.__name__})

    def get(self, format_name: str) -> Type[Reader]:
        """
        :raises KeyError: if no reader is registered for format_name
        """
        try:
            return self._readers[format_name]
        except KeyError:
            raise KeyError(f"Format '{format_name}' not found (registered: {self.formats()})")

    def formats(self) -> List[str]:
        return list(self._readers.keys())

    def create(
            self,
            format_name: str,
            files: Sequence[Mapping[str, Any]],
            options: Optional[Mapping[str, Any]] = None,
    ) -> Reader:
        """
        Build a reader from `(type, file)` entries, as found in serialize() output or a config file.

        :param files: entries with a "type" and a "file" (anything FileRef accepts)
        :raises KeyError: for an unknown format
        :raises FormatMismatchError: if the file types do not fit the format
        """
        cls = self.get(format_name)
        return cls._from_files(cls.group_files(files), dict(options or {}))

    async def unserialize(self, record: Mapping[str, Any]) -> Reader:
        """
        Rebuild a reader from `{"format", "files", "options"}`.
        """
        cls = self.get(record["format"])
        return await cls.unserialize(record.get("files", []), record.get("options"))


def create_default_registry() -> ReaderRegistry:
    """
    Builds a registry with every built-in file-based reader.
    """
    registry = ReaderRegistry()
    registry.register(TenxHdf5Dataset)
    registry.register(H5adDataset)
    registry.register(MatrixMarketDataset)
    registry.register(SummarizedExperimentDataset)
    registry.register(ZippedArtifactdbDataset)
    registry.register(ZippedAlabasterDataset)
    return registry
