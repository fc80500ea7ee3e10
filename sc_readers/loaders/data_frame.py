from __future__ import annotations

import logging
import posixpath
from typing import Any, Dict, List, Optional, Tuple

import h5py
import numpy as np
import pandas as pd

from sc_readers import engine
from sc_readers.core import frames
from sc_readers.core.exceptions import (
    RequiredFieldMissingError,
    ScReadersError,
    SchemaUnknownError,
)
from sc_readers.navigators.base import ProjectNavigator
from sc_readers.utils import hdf5 as h5utils
from sc_readers.utils.text import promote_to_number, read_table

logger = logging.getLogger(__name__)

BOOLEAN_NA = -2147483648

_TRUE_STRINGS = {"true", "TRUE", "True", "T"}
_FALSE_STRINGS = {"false", "FALSE", "False", "F"}
_NA_STRINGS = {"", "NA"}


# -------------------------------------------------------------------------
# Column coercion shared by the CSV and HDF5 decoders
# -------------------------------------------------------------------------

def _coerce_csv_column(values: List[str], declared: str, name: str) -> Any:
    if declared == "integer":
        missing = np.array([v in _NA_STRINGS for v in values], dtype=bool)
        try:
            parsed = np.array([0 if m else int(float(v)) for v, m in zip(values, missing)], dtype=np.int64)
        except ValueError:
            raise SchemaUnknownError(f"column '{name}' is declared as integer but holds non-integer values")
        return frames.integer_column(parsed, missing=missing)

    if declared == "number":
        promoted = promote_to_number(values)
        if promoted is None:
            raise SchemaUnknownError(f"column '{name}' is declared as number but holds non-numeric values")
        return promoted

    if declared == "boolean":
        flags = np.array([v in _TRUE_STRINGS for v in values], dtype=bool)
        missing = np.array([v in _NA_STRINGS for v in values], dtype=bool)
        unknown = [v for v in values if v not in _TRUE_STRINGS and v not in _FALSE_STRINGS and v not in _NA_STRINGS]
        if unknown:
            raise SchemaUnknownError(f"column '{name}' is declared as boolean but holds '{unknown[0]}'")
        return frames.boolean_column(flags, missing=missing)

    return frames.string_column(values)


def _coerce_hdf5_column(dataset: h5py.Dataset, declared: str) -> Any:
    placeholder_mask: Optional[np.ndarray] = None

    if declared in ("string", "date", "date-time", "factor"):
        return frames.string_column(h5utils.read_strings(dataset))

    raw = np.asarray(dataset[()]).reshape(-1)
    if h5utils.has_placeholder(dataset):
        placeholder = h5utils.read_attribute(dataset, h5utils.PLACEHOLDER_ATTR)
        if raw.dtype.kind == "f" and np.isnan(float(placeholder)):
            placeholder_mask = np.isnan(raw)
        else:
            placeholder_mask = raw == placeholder

    if declared == "integer":
        return frames.integer_column(raw, missing=placeholder_mask)

    if declared == "number":
        return frames.number_column(raw, missing=placeholder_mask)

    if declared == "boolean":
        missing = raw == BOOLEAN_NA
        if placeholder_mask is not None:
            missing = missing | placeholder_mask
        return frames.boolean_column(raw, missing=missing)

    raise SchemaUnknownError(f"unknown column type '{declared}'")


# -------------------------------------------------------------------------
# Legacy ArtifactDB frames
# -------------------------------------------------------------------------

async def load_legacy_data_frame(meta: Dict[str, Any], navigator: ProjectNavigator) -> pd.DataFrame:
    """
    Decode an ArtifactDB csv_data_frame / hdf5_data_frame document into a DataFrame.

    :param meta: the (redirection-resolved) metadata document of the frame
    :param navigator: navigator of the project holding the frame
    :raises SchemaUnknownError: for any other schema
    """
    schema = meta.get("$schema", "")
    info = meta.get("data_frame")
    if info is None:
        raise RequiredFieldMissingError(f"'{meta.get('path')}' has no 'data_frame' section")

    declared_columns = info.get("columns", [])
    nrows = int(info["dimensions"][0])
    has_row_names = bool(info.get("row_names", False))

    if schema.startswith("csv_data_frame/"):
        names, columns, row_names = await _read_legacy_csv(meta, declared_columns, nrows, has_row_names, navigator)
    elif schema.startswith("hdf5_data_frame/"):
        names, columns, row_names = await _read_legacy_hdf5(meta, declared_columns, has_row_names, navigator)
    else:
        raise SchemaUnknownError(f"data frame schema '{schema}' is not supported")

    # Nested frames are loaded last, once the parent file has been released.
    for i, col in enumerate(declared_columns):
        if col.get("type") != "other":
            continue
        columns[i] = await _load_legacy_nested(col, navigator)

    return frames.make_frame(
        zip(names, columns), nrows, row_names=row_names, source=str(meta.get("path", "data frame"))
    )


async def _load_legacy_nested(col: Dict[str, Any], navigator: ProjectNavigator) -> Optional[pd.DataFrame]:
    try:
        nested_path = col["resource"]["path"]
        nested_meta = await navigator.metadata(nested_path)
        return await load_legacy_data_frame(nested_meta, navigator)
    except (ScReadersError, KeyError, OSError) as e:
        logger.warning(
            "Failed to load nested data frame; dropping column",
            extra={"column": col.get("name"), "error": str(e)},
        )
        return None


async def _read_legacy_csv(
        meta: Dict[str, Any],
        declared_columns: List[Dict[str, Any]],
        nrows: int,
        has_row_names: bool,
        navigator: ProjectNavigator,
) -> Tuple[List[str], List[Any], Optional[List[str]]]:
    content = await navigator.file(meta["path"])
    try:
        rows = read_table(content, delim=",")
    finally:
        await navigator.clean(content)

    if not rows:
        raise RequiredFieldMissingError(f"'{meta['path']}' has no header row")
    body = rows[1:]
    if len(body) != nrows:
        logger.warning(
            "CSV row count disagrees with declared dimensions",
            extra={"path": meta["path"], "declared": nrows, "observed": len(body)},
        )

    row_names = None
    if has_row_names:
        row_names = [r[0] if r else "" for r in body]
        body = [r[1:] for r in body]

    names: List[str] = []
    columns: List[Any] = []
    for i, col in enumerate(declared_columns):
        names.append(col["name"])
        if col.get("type") == "other":
            columns.append(None)
            continue
        values = [r[i] if i < len(r) else "" for r in body]
        columns.append(_coerce_csv_column(values, col.get("type", "string"), col["name"]))

    return names, columns, row_names


async def _read_legacy_hdf5(
        meta: Dict[str, Any],
        declared_columns: List[Dict[str, Any]],
        has_row_names: bool,
        navigator: ProjectNavigator,
) -> Tuple[List[str], List[Any], Optional[List[str]]]:
    group_name = meta.get("hdf5_data_frame", {}).get("group")
    if group_name is None:
        raise RequiredFieldMissingError(f"'{meta['path']}' has no 'hdf5_data_frame.group'")

    content = await navigator.file(meta["path"])
    path, flush = engine.realize_file(content)
    try:
        with engine.open_hdf5(path) as f:
            if group_name not in f:
                raise RequiredFieldMissingError(f"group '{group_name}' missing from '{meta['path']}'")
            group = f[group_name]

            stored_names = h5utils.extract_strings(group, "column_names")
            if stored_names is None:
                raise RequiredFieldMissingError(f"'column_names' missing from group '{group_name}'")

            row_names = None
            if has_row_names:
                row_names = h5utils.extract_strings(group, "row_names")
                if row_names is None:
                    raise RequiredFieldMissingError(f"'row_names' missing from group '{group_name}'")

            data = group.get("data")
            names: List[str] = []
            columns: List[Any] = []
            for i, col in enumerate(declared_columns):
                names.append(stored_names[i] if i < len(stored_names) else col["name"])
                key = str(i)
                if col.get("type") == "other" or data is None or key not in data:
                    columns.append(None)
                    continue
                columns.append(_coerce_hdf5_column(data[key], col.get("type", "string")))
    finally:
        flush()
        await navigator.clean(content)

    return names, columns, row_names


# -------------------------------------------------------------------------
# takane frames
# -------------------------------------------------------------------------

async def load_takane_data_frame(path: str, navigator: ProjectNavigator) -> pd.DataFrame:
    """
    Decode a takane `data_frame` object directory.

    :param path: object directory inside the project
    """
    info = await navigator.read_json(posixpath.join(path, "OBJECT"))
    if info.get("type") != "data_frame":
        raise SchemaUnknownError(f"'{path}' is a '{info.get('type')}', expected a data_frame")

    content = await navigator.file(posixpath.join(path, "basic_columns.h5"))
    local, flush = engine.realize_file(content)
    try:
        with engine.open_hdf5(local) as f:
            if "data_frame" not in f:
                raise RequiredFieldMissingError(f"'data_frame' group missing from '{path}/basic_columns.h5'")
            group = f["data_frame"]
            nrows = h5utils.read_attribute(group, "row-count")
            if nrows is None:
                raise RequiredFieldMissingError(f"'row-count' attribute missing from '{path}'")
            nrows = int(nrows)

            names = h5utils.extract_strings(group, "column_names")
            if names is None:
                raise RequiredFieldMissingError(f"'column_names' missing from '{path}'")
            row_names = h5utils.extract_strings(group, "row_names")

            data = group.get("data")
            columns: List[Any] = []
            nested: List[int] = []
            for i in range(len(names)):
                key = str(i)
                if data is None or key not in data:
                    columns.append(None)
                    nested.append(i)
                    continue
                columns.append(_read_takane_column(data[key]))
    finally:
        flush()
        await navigator.clean(content)

    for i in nested:
        columns[i] = await _load_takane_nested(posixpath.join(path, "other_columns", str(i)), names[i], navigator)

    return frames.make_frame(zip(names, columns), nrows, row_names=row_names, source=path)


def _read_takane_column(node: Any) -> Any:
    declared = h5utils.read_attribute(node, "type")

    if isinstance(node, h5py.Group):
        if declared != "factor":
            raise SchemaUnknownError(f"unknown grouped column type '{declared}' at '{node.name}'")
        codes_ds = node["codes"]
        levels = h5utils.extract_strings(node, "levels")
        if levels is None:
            raise RequiredFieldMissingError(f"'levels' missing from factor column '{node.name}'")
        placeholder = h5utils.read_attribute(codes_ds, h5utils.PLACEHOLDER_ATTR, -1)
        ordered = bool(h5utils.read_attribute(node, "ordered", 0))
        return frames.factor_column(codes_ds[()], levels, placeholder=int(placeholder), ordered=ordered)

    if declared is None:
        raise RequiredFieldMissingError(f"'type' attribute missing from column '{node.name}'")
    return _coerce_hdf5_column(node, declared)


async def _load_takane_nested(path: str, name: str, navigator: ProjectNavigator) -> Optional[pd.DataFrame]:
    try:
        return await load_takane_data_frame(path, navigator)
    except (ScReadersError, KeyError, OSError) as e:
        logger.warning(
            "Failed to load nested data frame; dropping column",
            extra={"column": name, "path": path, "error": str(e)},
        )
        return None
