from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import h5py
import pandas as pd

from sc_readers import engine
from sc_readers.core import frames
from sc_readers.core.exceptions import RequiredFieldMissingError
from sc_readers.core.file_ref import FileRef
from sc_readers.readers.base import (
    FEATURE_TYPE_DEFAULTS,
    FEATURE_TYPE_KINDS,
    Dataset,
    feature_type_mapping,
    primary_mapping,
)
from sc_readers.utils import features as futils
from sc_readers.utils import hdf5 as h5utils

logger = logging.getLogger(__name__)


class TenxHdf5Dataset(Dataset):
    """
    Dataset in the 10X HDF5 feature-barcode matrix format.

    The file must contain a `matrix` group with a `matrix/features/id` string
    dataset; `matrix/features/name` and `matrix/features/feature_type` are
    picked up when present, the latter becoming the `type` column that drives
    the modality split.

    Primary ids are strict here: a selector that does not resolve to a column
    gives None rather than falling back to row names.
    """

    FILE_TYPES = ("h5",)
    OPTION_KINDS = FEATURE_TYPE_KINDS

    def __init__(self, h5_file: Any, options: Optional[Dict[str, Any]] = None) -> None:
        self._file = FileRef.coerce(h5_file)
        self._path: Optional[str] = None
        self._flush: Optional[Callable[[], None]] = None
        self._raw_features: Optional[pd.DataFrame] = None
        self._raw_cells: Optional[pd.DataFrame] = None
        super().__init__(options)

    @classmethod
    def format(cls) -> str:
        return "10X"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return dict(FEATURE_TYPE_DEFAULTS)

    def files(self) -> List[Tuple[str, FileRef]]:
        return [("h5", self._file)]

    # -------------------------------------------------------------------------
    # Caches
    # -------------------------------------------------------------------------
    def _instantiate(self) -> str:
        if self._path is None:
            self._path, self._flush = engine.realize_file(self._file.content())
        return self._path

    def _reset(self) -> None:
        if self._flush is not None:
            self._flush()
        self._flush = None
        self._path = None
        self._raw_features = None
        self._raw_cells = None

    def _features(self) -> pd.DataFrame:
        if self._raw_features is not None:
            return self._raw_features

        path = self._instantiate()
        with engine.open_hdf5(path) as handle:
            if not isinstance(handle.get("matrix"), h5py.Group):
                raise RequiredFieldMissingError("expected a 'matrix' group at the top level of the file")
            mhandle = handle["matrix"]

            if not isinstance(mhandle.get("features"), h5py.Group):
                raise RequiredFieldMissingError("expected a 'matrix/features' group containing the feature annotation")
            fhandle = mhandle["features"]

            ids = h5utils.extract_strings(fhandle, "id")
            if ids is None:
                raise RequiredFieldMissingError("expected a 'matrix/features/id' string dataset containing the feature IDs")

            columns: List[Tuple[str, Any]] = [("id", frames.string_column(ids))]
            names = h5utils.extract_strings(fhandle, "name")
            if names is not None:
                columns.append(("name", frames.string_column(names)))
            ftype = h5utils.extract_strings(fhandle, "feature_type")
            if ftype is not None:
                columns.append(("type", frames.string_column(ftype)))

        self._raw_features = frames.make_frame(columns, len(ids), source=f"{self._file.name}:matrix/features")
        self._mark_populated()
        return self._raw_features

    def _cells(self) -> pd.DataFrame:
        if self._raw_cells is None:
            _, ncells = engine.extract_hdf5_matrix_details(self._instantiate(), "matrix")
            self._raw_cells = frames.empty_frame(ncells)
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
        return futils.extract_primary_ids(split, primary_mapping(self._options), fallback_to_row_names=False)

    async def _load(self) -> Dict[str, Any]:
        raw_features = self._features()
        cells = self._cells()

        loaded = engine.initialize_sparse_matrix_from_hdf5(self._instantiate(), "matrix")
        split = futils.split_matrix_and_features(
            loaded, raw_features, "type", feature_type_mapping(self._options), "RNA"
        )
        logger.info(
            "Loaded 10X HDF5 matrix",
            extra={"dataset_format": self.format(), "file": self._file.name, "modalities": split.matrix.available()},
        )

        return {
            "matrix": split.matrix,
            "features": split.features,
            "cells": cells,
            "row_ids": split.row_ids,
            "primary_ids": futils.extract_primary_ids(
                split.features, primary_mapping(self._options), fallback_to_row_names=False
            ),
        }
