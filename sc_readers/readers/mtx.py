from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from sc_readers import engine
from sc_readers.core import frames
from sc_readers.core.exceptions import DimensionMismatchError
from sc_readers.core.file_ref import FileRef
from sc_readers.readers.base import (
    FEATURE_TYPE_DEFAULTS,
    FEATURE_TYPE_KINDS,
    Dataset,
    feature_type_mapping,
    primary_mapping,
)
from sc_readers.utils import features as futils
from sc_readers.utils.text import promote_to_number, read_table

logger = logging.getLogger(__name__)

HEADERLESS_FEATURE_COLUMNS = ("id", "name", "type")


def _compression(file_ref: FileRef) -> Optional[str]:
    return "gz" if file_ref.name.endswith(".gz") else None


def _promote(values: List[str]) -> Any:
    promoted = promote_to_number(values)
    if promoted is not None:
        return promoted
    return frames.string_column(values)


def _table_to_frame(header: List[str], body: List[List[str]], source: str) -> pd.DataFrame:
    columns = []
    for i, name in enumerate(header):
        columns.append((name, [r[i] if i < len(r) else "" for r in body]))
    return frames.make_frame(columns, len(body), source=source)


def read_feature_file(file_ref: FileRef, nrows: int) -> pd.DataFrame:
    """
    Parse a genes/features file for a matrix with `nrows` rows.

    `nrows + 1` lines means there is a header; exactly `nrows` lines means the
    10X layout of id, name and (optionally) type.

    :raises DimensionMismatchError: for any other number of lines
    """
    rows = read_table(file_ref.content(), delim="\t", compression=_compression(file_ref))

    if len(rows) == nrows + 1:
        frame = _table_to_frame(rows[0], rows[1:], file_ref.name)
    elif len(rows) == nrows:
        width = max((len(r) for r in rows), default=0)
        header = list(HEADERLESS_FEATURE_COLUMNS[:width]) + [str(i) for i in range(len(HEADERLESS_FEATURE_COLUMNS), width)]
        frame = _table_to_frame(header, rows, file_ref.name)
    else:
        raise DimensionMismatchError(
            f"number of matrix rows ({nrows}) is not equal to the number of rows in '{file_ref.name}' ({len(rows)})"
        )
    return frame


def read_barcode_file(file_ref: FileRef, ncols: int) -> pd.DataFrame:
    """
    Parse a barcodes/annotations file for a matrix with `ncols` columns.

    Numeric columns are promoted to float64. Header-less files get columns named "0", "1", ...

    :raises DimensionMismatchError: if the file has neither `ncols` nor `ncols + 1` lines
    """
    rows = read_table(file_ref.content(), delim="\t", compression=_compression(file_ref))

    if len(rows) == ncols + 1:
        header, body = rows[0], rows[1:]
    elif len(rows) == ncols:
        width = max((len(r) for r in rows), default=0)
        header, body = [str(i) for i in range(width)], rows
    else:
        raise DimensionMismatchError(
            f"number of matrix columns ({ncols}) is not equal to the number of rows in '{file_ref.name}' ({len(rows)})"
        )

    columns = []
    for i, name in enumerate(header):
        columns.append((name, _promote([r[i] if i < len(r) else "" for r in body])))
    return frames.make_frame(columns, len(body), source=file_ref.name)


class MatrixMarketDataset(Dataset):
    """
    Dataset in the Matrix Market coordinate format, with optional feature and barcode files.

    Gzipped inputs are recognized by their `.gz` suffix or their magic bytes.
    """

    FILE_TYPES = ("mtx",)
    OPTIONAL_FILE_TYPES = ("genes", "annotations")
    OPTION_KINDS = FEATURE_TYPE_KINDS

    def __init__(
            self,
            mtx_file: Any,
            genes_file: Any = None,
            annotations_file: Any = None,
            options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._mtx = FileRef.coerce(mtx_file)
        self._genes = FileRef.coerce(genes_file) if genes_file is not None else None
        self._annotations = FileRef.coerce(annotations_file) if annotations_file is not None else None

        self._dimensions: Optional[Tuple[int, int]] = None
        self._raw_features: Optional[pd.DataFrame] = None
        self._raw_cells: Optional[pd.DataFrame] = None
        super().__init__(options)

    @classmethod
    def format(cls) -> str:
        return "MatrixMarket"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return dict(FEATURE_TYPE_DEFAULTS)

    def files(self) -> List[Tuple[str, FileRef]]:
        output = [("mtx", self._mtx)]
        if self._genes is not None:
            output.append(("genes", self._genes))
        if self._annotations is not None:
            output.append(("annotations", self._annotations))
        return output

    @classmethod
    def _from_files(cls, files: Dict[str, FileRef], options: Dict[str, Any]) -> MatrixMarketDataset:
        return cls(files["mtx"], files.get("genes"), files.get("annotations"), options=options)

    # -------------------------------------------------------------------------
    # Caches
    # -------------------------------------------------------------------------
    def _reset(self) -> None:
        self._dimensions = None
        self._raw_features = None
        self._raw_cells = None

    def _mtx_compressed(self) -> Optional[bool]:
        return True if self._mtx.name.endswith(".gz") else None

    def _fetch_dimensions(self) -> Tuple[int, int]:
        if self._dimensions is None:
            self._dimensions = engine.extract_matrix_market_dimensions(
                self._mtx.content(), compressed=self._mtx_compressed()
            )
        return self._dimensions

    def _features(self) -> pd.DataFrame:
        if self._raw_features is None:
            nrows, _ = self._fetch_dimensions()
            if self._genes is None:
                self._raw_features = frames.empty_frame(nrows)
            else:
                self._raw_features = read_feature_file(self._genes, nrows)
            self._mark_populated()
        return self._raw_features

    def _cells(self) -> pd.DataFrame:
        if self._raw_cells is None:
            _, ncols = self._fetch_dimensions()
            if self._annotations is None:
                self._raw_cells = frames.empty_frame(ncols)
            else:
                self._raw_cells = read_barcode_file(self._annotations, ncols)
        return self._raw_cells

    # -------------------------------------------------------------------------
    # Public calls
    # -------------------------------------------------------------------------
    async def _summary(self) -> Dict[str, Any]:
        return {
            "modality_features": futils.features_by_label(self._features(), "type"),
            "cells": self._cells(),
        }

    async def _preview_primary_ids(self) -> Dict[str, Optional[List[Optional[str]]]]:
        split = futils.split_features(self._features(), "type", feature_type_mapping(self._options), "RNA")
        return futils.extract_primary_ids(split, primary_mapping(self._options))

    async def _load(self) -> Dict[str, Any]:
        raw_features = self._features()
        cells = self._cells()

        loaded = engine.initialize_sparse_matrix_from_matrix_market(
            self._mtx.content(), compressed=self._mtx_compressed()
        )
        split = futils.split_matrix_and_features(
            loaded, raw_features, "type", feature_type_mapping(self._options), "RNA"
        )
        logger.info(
            "Loaded Matrix Market file",
            extra={"dataset_format": self.format(), "file": self._mtx.name, "modalities": split.matrix.available()},
        )

        return {
            "matrix": split.matrix,
            "features": split.features,
            "cells": cells,
            "row_ids": split.row_ids,
            "primary_ids": futils.extract_primary_ids(split.features, primary_mapping(self._options)),
        }
