from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from sc_readers import engine
from sc_readers.core import frames
from sc_readers.core.exceptions import (
    DimensionMismatchError,
    FormatMismatchError,
    ScReadersError,
    SchemaUnknownError,
)
from sc_readers.core.file_ref import FileRef
from sc_readers.engine import MatrixHandle, MultiMatrix
from sc_readers.loaders.assays import resolve_assay_index
from sc_readers.rds import RObject, r_data_frame, r_list_to_python, r_strings
from sc_readers.readers.base import (
    EXPERIMENT_DEFAULTS,
    EXPERIMENT_KINDS,
    RESULT_DEFAULTS,
    RESULT_KINDS,
    Dataset,
    Result,
    add_primary_matrix,
    experiment_mapping,
    option_for_modality,
    primary_mapping,
    resolve_experiment,
)
from sc_readers.utils import features as futils

logger = logging.getLogger(__name__)

MAIN_EXPERIMENT = ""

SE_CLASSES = ("SummarizedExperiment", "RangedSummarizedExperiment", "SingleCellExperiment", "SpatialExperiment")


# -------------------------------------------------------------------------
# Slot helpers
# -------------------------------------------------------------------------

def check_for_se(obj: RObject) -> None:
    if obj.type != "S4" or obj.class_name not in SE_CLASSES:
        raise FormatMismatchError(
            f"expected a SummarizedExperiment or one of its recognized subclasses, got '{obj.class_name}'"
        )


def _names_slot(obj: Optional[RObject]) -> Optional[List[Optional[str]]]:
    if obj is None:
        return None
    found = obj.attribute("NAMES")
    if found is None or found.type != "string":
        return None
    return r_strings(found)


def extract_features(se: RObject) -> pd.DataFrame:
    """
    Row annotations of a SummarizedExperiment, with row names when it has any.
    """
    ranges = se.attribute("rowRanges")
    if ranges is None:
        features = r_data_frame(se.require_attribute("elementMetadata"))
        names = _names_slot(se)
    else:
        features = r_data_frame(ranges.require_attribute("elementMetadata"))
        # GRangesList keeps its names on the partitioning, GRanges on the ranges.
        partitioning = ranges.attribute("partitioning")
        names = _names_slot(partitioning if partitioning is not None else ranges.attribute("ranges"))

    if names is not None:
        if len(names) != len(features):
            raise DimensionMismatchError(
                f"{len(names)} row names for {len(features)} rows of a '{se.class_name}'"
            )
        features = features.copy()
        features.index = pd.Index(names, dtype=object)
    return features


def _assay_list(se: RObject) -> RObject:
    return se.require_attribute("assays").require_attribute("data").require_attribute("listData")


def extract_assay_names(se: RObject) -> List[Optional[str]]:
    listing = _assay_list(se)
    names = listing.names()
    if names is None:
        return [None] * listing.length()
    return list(names)


def r_matrix_to_handle(obj: RObject, force_integer: bool = True) -> MatrixHandle:
    """
    Load a dgCMatrix, or a dense integer/double matrix, into the matrix engine.

    :raises SchemaUnknownError: for any other matrix class
    """
    if obj.type == "S4":
        if obj.class_name != "dgCMatrix":
            raise SchemaUnknownError(f"assays of class '{obj.class_name}' are not supported")
        nrow, ncol = (int(x) for x in obj.require_attribute("Dim").values())
        return engine.initialize_sparse_matrix_from_arrays(
            nrow,
            ncol,
            np.asarray(obj.require_attribute("x").values()),
            np.asarray(obj.require_attribute("i").values()),
            np.asarray(obj.require_attribute("p").values()),
            by_column=True,
            force_integer=force_integer,
        )

    dims = obj.dim()
    if obj.type not in ("integer", "double") or dims is None or len(dims) != 2:
        raise SchemaUnknownError(f"assays of type '{obj.type}' are not supported")
    values = engine.coerce_values(np.asarray(obj.values()), force_integer)
    return MatrixHandle(np.ascontiguousarray(values.reshape(dims, order="F")))


def extract_assay(se: RObject, selector: Any, force_integer: bool = True) -> MatrixHandle:
    index = resolve_assay_index(extract_assay_names(se), selector)
    return r_matrix_to_handle(_assay_list(se).element(index), force_integer=force_integer)


def _int_col_data_entry(se: RObject, name: str) -> Optional[RObject]:
    internal = se.attribute("int_colData")
    if internal is None:
        return None
    listing = internal.attribute("listData")
    if listing is None:
        return None
    entry = listing.named_element(name)
    if entry is None:
        return None
    return entry.attribute("listData")


def extract_alt_exps(se: RObject) -> "OrderedDict[str, RObject]":
    output: "OrderedDict[str, RObject]" = OrderedDict()
    listing = _int_col_data_entry(se, "altExps")
    if listing is None:
        return output

    for name, wrapper in zip(listing.names() or [], listing.elements()):
        alt = wrapper.attribute("se")
        if alt is None:
            raise SchemaUnknownError(f"alternative experiment '{name}' has no 'se' slot")
        check_for_se(alt)
        output[name] = alt
    return output


def extract_reduced_dims(se: RObject) -> "OrderedDict[str, RObject]":
    """
    Double-precision matrices in reducedDims; everything else is skipped.
    """
    output: "OrderedDict[str, RObject]" = OrderedDict()
    listing = _int_col_data_entry(se, "reducedDims")
    if listing is None:
        return output

    for name, matrix in zip(listing.names() or [], listing.elements()):
        dims = matrix.dim()
        if matrix.type == "double" and dims is not None and len(dims) == 2:
            output[name] = matrix
        else:
            logger.warning("Skipping unsupported reduced dimension", extra={"reduced_dimension": name, "r_type": matrix.type})
    return output


def reduced_dim_vectors(matrix: RObject) -> List[np.ndarray]:
    ncells, ndims = matrix.dim()
    flat = np.asarray(matrix.values(), dtype=np.float64).reshape(-1)
    return [flat[d * ncells:(d + 1) * ncells].copy() for d in range(ndims)]


# -------------------------------------------------------------------------
# Shared loader
# -------------------------------------------------------------------------

class SummarizedExperimentFile:
    """
    Parsed R object tree of one RDS file, plus decoded annotations.
    """

    def __init__(self, file_ref: FileRef) -> None:
        self.file_ref = file_ref
        self._se: Optional[RObject] = None
        self._alts: Optional["OrderedDict[str, RObject]"] = None
        self._features: Optional[Dict[str, pd.DataFrame]] = None
        self._cells: Optional[pd.DataFrame] = None

    def clear(self) -> None:
        self._se = None
        self._alts = None
        self._features = None
        self._cells = None

    def se(self) -> RObject:
        if self._se is None:
            path, flush = engine.realize_file(self.file_ref.content(), suffix=".rds")
            try:
                se = RObject.from_file(path)
            finally:
                flush()
            check_for_se(se)
            self._alts = extract_alt_exps(se)
            self._se = se
        return self._se

    def alternatives(self) -> "OrderedDict[str, RObject]":
        self.se()
        return self._alts

    def experiment(self, name: str) -> RObject:
        if name == MAIN_EXPERIMENT:
            return self.se()
        return self.alternatives()[name]

    def features(self) -> Dict[str, pd.DataFrame]:
        if self._features is None:
            features = {MAIN_EXPERIMENT: extract_features(self.se())}
            for name, alt in self.alternatives().items():
                try:
                    features[name] = extract_features(alt)
                except ScReadersError as e:
                    logger.warning(
                        "Failed to extract features for alternative experiment",
                        extra={"experiment": name, "error": str(e)},
                    )
            self._features = features
        return self._features

    def cells(self) -> pd.DataFrame:
        if self._cells is None:
            self._cells = r_data_frame(self.se().require_attribute("colData"))
        return self._cells

    def assay_names(self) -> Dict[str, List[Optional[str]]]:
        assays = {MAIN_EXPERIMENT: extract_assay_names(self.se())}
        for name, alt in self.alternatives().items():
            try:
                assays[name] = extract_assay_names(alt)
            except ScReadersError as e:
                logger.warning(
                    "Failed to extract assay names for alternative experiment",
                    extra={"experiment": name, "error": str(e)},
                )
        return assays

    def other_metadata(self) -> Any:
        meta = self.se().attribute("metadata")
        if meta is None:
            return {}
        return r_list_to_python(meta)


def _load_experiment_assay(
        source: SummarizedExperimentFile,
        name: str,
        selector: Any,
        force_integer: bool,
) -> Tuple[MatrixHandle, pd.DataFrame]:
    features = source.features().get(name)
    if features is None:
        raise SchemaUnknownError(f"no features available for experiment '{name}'")
    loaded = extract_assay(source.experiment(name), selector, force_integer=force_integer)
    if loaded.number_of_rows() != len(features):
        loaded.free()
        raise DimensionMismatchError(
            f"assay of experiment '{name}' has {loaded.number_of_rows()} rows, features have {len(features)}"
        )
    return loaded, features


class SummarizedExperimentDataset(Dataset):
    """
    Dataset stored as an RDS file holding a SummarizedExperiment (or one of its subclasses).

    Modalities are mapped onto the main experiment ("") or onto alternative
    experiments by name or position; see {@link resolve_experiment}.
    """

    FILE_TYPES = ("rds",)
    OPTION_KINDS = EXPERIMENT_KINDS

    def __init__(self, rds_file: Any, options: Optional[Dict[str, Any]] = None) -> None:
        self._rds = SummarizedExperimentFile(FileRef.coerce(rds_file))
        super().__init__(options)

    @classmethod
    def format(cls) -> str:
        return "SummarizedExperiment"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return dict(EXPERIMENT_DEFAULTS)

    def files(self) -> List[Tuple[str, FileRef]]:
        return [("rds", self._rds.file_ref)]

    def _reset(self) -> None:
        self._rds.clear()

    def _experiment_for(self, modality: str, selector: Any) -> Optional[str]:
        return resolve_experiment(selector, MAIN_EXPERIMENT, list(self._rds.alternatives().keys()), modality)

    async def _summary(self) -> Dict[str, Any]:
        features = self._rds.features()
        self._mark_populated()
        return {
            "modality_features": dict(features),
            "cells": self._rds.cells(),
            "modality_assay_names": self._rds.assay_names(),
        }

    async def _preview_primary_ids(self) -> Dict[str, Optional[List[Optional[str]]]]:
        features = self._rds.features()
        experiments = {m: self._experiment_for(m, exp) for m, (exp, _) in experiment_mapping(self._options).items()}
        remapped = futils.remap_experiment_names(features, experiments)
        return futils.extract_primary_ids(remapped, primary_mapping(self._options))

    async def _load(self) -> Dict[str, Any]:
        cells = self._rds.cells()
        self._rds.features()
        self._mark_populated()

        output = MultiMatrix()
        features: Dict[str, pd.DataFrame] = {}
        row_ids: Dict[str, np.ndarray] = {}
        try:
            for modality, (exp, assay) in experiment_mapping(self._options).items():
                name = self._experiment_for(modality, exp)
                if name is None:
                    continue
                loaded, current = _load_experiment_assay(self._rds, name, assay, force_integer=True)
                try:
                    output.add(modality, loaded)
                except DimensionMismatchError:
                    loaded.free()
                    raise
                row_ids[modality] = loaded.identities()
                features[modality] = frames.slice_rows(current, row_ids[modality])
        except Exception:
            output.free()
            raise

        return {
            "matrix": output,
            "features": features,
            "cells": cells,
            "row_ids": row_ids,
            "primary_ids": futils.extract_primary_ids(features, primary_mapping(self._options)),
        }


class SummarizedExperimentResult(Result):
    """
    Analysis result stored as an RDS file holding a SingleCellExperiment.

    Every experiment (main and alternative) is loaded under its own name;
    reduced dimensions and the `metadata` list are reported as well.
    """

    FILE_TYPES = ("rds",)
    OPTION_KINDS = RESULT_KINDS

    def __init__(self, rds_file: Any, options: Optional[Dict[str, Any]] = None) -> None:
        self._rds = SummarizedExperimentFile(FileRef.coerce(rds_file))
        self._reduced: Optional["OrderedDict[str, RObject]"] = None
        super().__init__(options)

    @classmethod
    def format(cls) -> str:
        return "SummarizedExperiment"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return dict(RESULT_DEFAULTS)

    def files(self) -> List[Tuple[str, FileRef]]:
        return [("rds", self._rds.file_ref)]

    def _reset(self) -> None:
        self._rds.clear()
        self._reduced = None

    def _reduced_dims(self) -> "OrderedDict[str, RObject]":
        if self._reduced is None:
            self._reduced = extract_reduced_dims(self._rds.se())
        return self._reduced

    async def _summary(self) -> Dict[str, Any]:
        features = self._rds.features()
        self._mark_populated()
        return {
            "modality_features": dict(features),
            "cells": self._rds.cells(),
            "modality_assay_names": self._rds.assay_names(),
            "reduced_dimension_names": list(self._reduced_dims().keys()),
            "other_metadata": self._rds.other_metadata(),
        }

    async def _load(self) -> Dict[str, Any]:
        all_features = self._rds.features()
        cells = self._rds.cells()
        self._mark_populated()

        reduced: Dict[str, List[np.ndarray]] = {}
        available = self._reduced_dims()
        wanted = self._options["reduced_dimension_names"]
        for name in available.keys() if wanted is None else wanted:
            if name not in available:
                logger.warning("Skipping unknown reduced dimension", extra={"reduced_dimension": name})
                continue
            reduced[name] = reduced_dim_vectors(available[name])

        output = MultiMatrix()
        features: Dict[str, pd.DataFrame] = {}
        try:
            for name in all_features:
                assay = option_for_modality(self._options["primary_assay"], name, None)
                if assay is None:
                    continue
                normalized = option_for_modality(self._options["is_primary_normalized"], name, True)
                loaded, current = _load_experiment_assay(self._rds, name, assay, force_integer=not normalized)
                add_primary_matrix(output, name, loaded, normalized)
                features[name] = current
        except Exception:
            output.free()
            raise

        return {
            "matrix": output,
            "features": features,
            "cells": cells,
            "reduced_dimensions": reduced,
            "other_metadata": self._rds.other_metadata(),
        }
