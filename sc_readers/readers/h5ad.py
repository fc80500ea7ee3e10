from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

import h5py
import numpy as np
import pandas as pd

from sc_readers import engine
from sc_readers.core import frames
from sc_readers.core.exceptions import RequiredFieldMissingError, SelectorInvalidError
from sc_readers.core.file_ref import FileRef
from sc_readers.readers.base import (
    FEATURE_TYPE_DEFAULTS,
    FEATURE_TYPE_KINDS,
    RESULT_KINDS,
    Dataset,
    Result,
    add_primary_matrix,
    feature_type_mapping,
    option_for_modality,
    primary_mapping,
)
from sc_readers.utils import features as futils
from sc_readers.utils import hdf5 as h5utils

logger = logging.getLogger(__name__)

_NAME_LIKE = re.compile(r"name|symb", re.IGNORECASE)


# -------------------------------------------------------------------------
# Column decoding
# -------------------------------------------------------------------------

def _index_name(group: h5py.Group) -> str:
    return str(h5utils.read_attribute(group, "_index", "_index"))


def _read_column(group: h5py.Group, key: str) -> Any:
    """
    Decode one obs/var entry: a string or numeric dataset, or an encoded categorical group.

    :return: column values, or None if the entry is not a 1-dimensional column
    """
    node = group[key]

    if isinstance(node, h5py.Group):
        if h5utils.read_attribute(node, "encoding-type") != "categorical":
            return None
        categories = h5utils.extract_strings(node, "categories")
        if categories is None or "codes" not in node:
            return None
        ordered = bool(h5utils.read_attribute(node, "ordered", False))
        return frames.factor_column(node["codes"][()], categories, placeholder=-1, ordered=ordered)

    if len(node.shape) != 1:
        return None
    if h5utils.is_string_dataset(node):
        return frames.string_column(h5utils.read_strings(node))

    values = np.asarray(node[()])
    if values.dtype.kind == "b":
        return frames.boolean_column(values)
    if values.dtype.kind in "iu":
        return frames.integer_column(values)
    return frames.number_column(values)


class H5adFile:
    """
    Lazily-opened view over one H5AD file, shared by the Dataset and Result readers.
    """

    def __init__(self, file_ref: FileRef) -> None:
        self.file_ref = file_ref
        self._path: Optional[str] = None
        self._flush: Optional[Callable[[], None]] = None
        self._assays: Optional[Tuple[List[str], int, int]] = None
        self._features: Dict[Optional[str], pd.DataFrame] = {}
        self._cells: Optional[pd.DataFrame] = None

    def path(self) -> str:
        if self._path is None:
            self._path, self._flush = engine.realize_file(self.file_ref.content())
        return self._path

    def clear(self) -> None:
        if self._flush is not None:
            self._flush()
        self._flush = None
        self._path = None
        self._assays = None
        self._features = {}
        self._cells = None

    def assay_details(self) -> Tuple[List[str], int, int]:
        """
        :return: (assay names, number of features, number of cells)
        """
        if self._assays is not None:
            return self._assays

        available: List[str] = []
        with engine.open_hdf5(self.path()) as handle:
            if "X" in handle:
                available.append("X")
            if "layers" in handle:
                layers = handle["layers"]
                if not isinstance(layers, h5py.Group):
                    raise RequiredFieldMissingError("expected 'layers' to be a group in a H5AD file")
                available.extend("layers/" + k for k in layers.keys())

        if not available:
            raise RequiredFieldMissingError(f"failed to find any assay in the H5AD file '{self.file_ref.name}'")

        nfeatures, ncells = engine.extract_hdf5_matrix_details(self.path(), available[0])
        self._assays = (available, nfeatures, ncells)
        return self._assays

    def features(self, type_column: Optional[str]) -> pd.DataFrame:
        if type_column in self._features:
            return self._features[type_column]

        columns: List[Tuple[str, Any]] = []
        with engine.open_hdf5(self.path()) as handle:
            vhandle = handle.get("var")
            if isinstance(vhandle, h5py.Group):
                index_key = _index_name(vhandle)
                index = h5utils.extract_strings(vhandle, index_key)
                if index is not None:
                    columns.append((index_key, frames.string_column(index)))
                    for key, node in vhandle.items():
                        if key == index_key or key == type_column or not isinstance(node, h5py.Dataset):
                            continue
                        if _NAME_LIKE.search(key) and h5utils.is_string_dataset(node):
                            columns.append((key, frames.string_column(h5utils.read_strings(node))))

                if type_column is not None and type_column in vhandle:
                    columns.append((type_column, _read_column(vhandle, type_column)))

        if columns:
            nrows = len(columns[0][1])
        else:
            _, nrows, _ = self.assay_details()

        frame = frames.make_frame(columns, nrows, source=f"{self.file_ref.name}:var")
        self._features[type_column] = frame
        return frame

    def cells(self) -> pd.DataFrame:
        if self._cells is not None:
            return self._cells

        columns: Dict[str, Any] = {}
        with engine.open_hdf5(self.path()) as handle:
            ohandle = handle.get("obs")
            if isinstance(ohandle, h5py.Group):
                index_key = _index_name(ohandle)
                index = h5utils.extract_strings(ohandle, index_key)
                if index is not None:
                    columns[index_key] = frames.string_column(index)

                for key in ohandle.keys():
                    if key in columns or key == "__categories":
                        continue
                    values = _read_column(ohandle, key)
                    if values is not None:
                        columns[key] = values

                # Older files keep factor levels apart from the codes.
                legacy = ohandle.get("__categories")
                if isinstance(legacy, h5py.Group):
                    for key in legacy.keys():
                        if key not in columns:
                            continue
                        levels = h5utils.extract_strings(legacy, key)
                        if levels is not None:
                            codes = np.asarray(ohandle[key][()])
                            columns[key] = frames.factor_column(codes, levels, placeholder=-1)

        if columns:
            nrows = len(next(iter(columns.values())))
        else:
            _, _, nrows = self.assay_details()

        self._cells = frames.make_frame(columns.items(), nrows, source=f"{self.file_ref.name}:obs")
        return self._cells

    def choose_assay(self, name: Optional[str]) -> str:
        available, _, _ = self.assay_details()
        if name is None:
            return available[0]
        if name not in available:
            raise SelectorInvalidError(f"assay '{name}' not found (available: {available})")
        return name

    def reduced_dimension_names(self) -> List[str]:
        names: List[str] = []
        with engine.open_hdf5(self.path()) as handle:
            ohandle = handle.get("obsm")
            if isinstance(ohandle, h5py.Group):
                for key, node in ohandle.items():
                    if isinstance(node, h5py.Dataset) and len(node.shape) == 2:
                        names.append(key)
        return names

    def reduced_dimension(self, name: str) -> List[np.ndarray]:
        """
        Read obsm/<name> (cells x dimensions) as one float64 vector per dimension.
        """
        with engine.open_hdf5(self.path()) as handle:
            values = np.asarray(handle["obsm"][name][()], dtype=np.float64)
        return [values[:, d].copy() for d in range(values.shape[1])]


class H5adDataset(Dataset):
    """
    Dataset in the H5AD format used by AnnData.

    The count matrix is `X` or one of `layers/*`, stored cells x genes and
    transposed on load. Features are taken from the `var` index plus any
    name-like string columns; cells from every `obs` column.
    """

    FILE_TYPES = ("h5",)
    OPTION_KINDS = dict(FEATURE_TYPE_KINDS, count_matrix_name="label", feature_type_column_name="label")

    def __init__(self, h5_file: Any, options: Optional[Dict[str, Any]] = None) -> None:
        self._h5 = H5adFile(FileRef.coerce(h5_file))
        super().__init__(options)

    @classmethod
    def format(cls) -> str:
        return "H5AD"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return dict(FEATURE_TYPE_DEFAULTS, count_matrix_name=None, feature_type_column_name=None)

    def files(self) -> List[Tuple[str, FileRef]]:
        return [("h5", self._h5.file_ref)]

    def _reset(self) -> None:
        self._h5.clear()

    def _raw_features(self) -> pd.DataFrame:
        features = self._h5.features(self._options["feature_type_column_name"])
        self._mark_populated()
        return features

    async def _summary(self) -> Dict[str, Any]:
        available, _, _ = self._h5.assay_details()
        return {
            "modality_features": futils.features_by_label(
                self._raw_features(), self._options["feature_type_column_name"]
            ),
            "cells": self._h5.cells(),
            "all_assay_names": list(available),
        }

    async def _preview_primary_ids(self) -> Dict[str, Optional[List[Optional[str]]]]:
        split = futils.split_features(
            self._raw_features(),
            self._options["feature_type_column_name"],
            feature_type_mapping(self._options),
            "RNA",
        )
        return futils.extract_primary_ids(split, primary_mapping(self._options))

    async def _load(self) -> Dict[str, Any]:
        raw_features = self._raw_features()
        cells = self._h5.cells()
        chosen = self._h5.choose_assay(self._options["count_matrix_name"])

        loaded = engine.initialize_sparse_matrix_from_hdf5(self._h5.path(), chosen)
        split = futils.split_matrix_and_features(
            loaded,
            raw_features,
            self._options["feature_type_column_name"],
            feature_type_mapping(self._options),
            "RNA",
        )
        logger.info(
            "Loaded H5AD matrix",
            extra={"dataset_format": self.format(), "assay": chosen, "modalities": split.matrix.available()},
        )

        return {
            "matrix": split.matrix,
            "features": split.features,
            "cells": cells,
            "row_ids": split.row_ids,
            "primary_ids": futils.extract_primary_ids(split.features, primary_mapping(self._options)),
        }


class H5adResult(Result):
    """
    Analysis result stored as H5AD.

    Modalities are keyed by the raw feature type label ("" when there is no
    type column). Reduced dimensions come from `obsm`.
    """

    FILE_TYPES = ("h5",)
    OPTION_KINDS = {
        "primary_matrix_name": "label",
        "feature_type_column_name": "label",
        "is_primary_normalized": RESULT_KINDS["is_primary_normalized"],
        "reduced_dimension_names": RESULT_KINDS["reduced_dimension_names"],
    }

    def __init__(self, h5_file: Any, options: Optional[Dict[str, Any]] = None) -> None:
        self._h5 = H5adFile(FileRef.coerce(h5_file))
        super().__init__(options)

    @classmethod
    def format(cls) -> str:
        return "H5AD"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return {
            "primary_matrix_name": None,
            "feature_type_column_name": None,
            "is_primary_normalized": True,
            "reduced_dimension_names": None,
        }

    def files(self) -> List[Tuple[str, FileRef]]:
        return [("h5", self._h5.file_ref)]

    def _reset(self) -> None:
        self._h5.clear()

    async def _summary(self) -> Dict[str, Any]:
        available, _, _ = self._h5.assay_details()
        features = self._h5.features(self._options["feature_type_column_name"])
        self._mark_populated()
        return {
            "modality_features": futils.features_by_label(features, self._options["feature_type_column_name"]),
            "cells": self._h5.cells(),
            "all_assay_names": list(available),
            "reduced_dimension_names": self._h5.reduced_dimension_names(),
            "other_metadata": {},
        }

    async def _load(self) -> Dict[str, Any]:
        type_column = self._options["feature_type_column_name"]
        raw_features = self._h5.features(type_column)
        cells = self._h5.cells()
        chosen = self._h5.choose_assay(self._options["primary_matrix_name"])
        self._mark_populated()

        labels = list(futils.features_by_label(raw_features, type_column).keys())
        normalized = {k: option_for_modality(self._options["is_primary_normalized"], k, True) for k in labels}

        reduced = {}
        wanted = self._options["reduced_dimension_names"]
        available_dims = self._h5.reduced_dimension_names()
        for name in available_dims if wanted is None else wanted:
            if name not in available_dims:
                logger.warning("Skipping unknown reduced dimension", extra={"reduced_dimension": name})
                continue
            reduced[name] = self._h5.reduced_dimension(name)

        # Counts stay integral only when every modality still needs normalizing.
        loaded = engine.initialize_sparse_matrix_from_hdf5(
            self._h5.path(), chosen, force_integer=not any(normalized.values())
        )
        split = futils.split_matrix_and_features(
            loaded, raw_features, type_column, {k: k for k in labels}, ""
        )
        try:
            for key in split.matrix.available():
                add_primary_matrix(split.matrix, key, split.matrix.get(key), normalized.get(key, True))
        except Exception:
            split.matrix.free()
            raise

        return {
            "matrix": split.matrix,
            "features": split.features,
            "cells": cells,
            "row_ids": split.row_ids,
            "reduced_dimensions": reduced,
            "other_metadata": {},
        }
