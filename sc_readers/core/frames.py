from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from sc_readers.core.exceptions import DimensionMismatchError

# -------------------------------------------------------------------------
# Canonical frame helpers.
#
# Row names live in the index; a frame without row names keeps a RangeIndex.
# Missing values are normalised to the single null of each column's dtype.
# -------------------------------------------------------------------------


def empty_frame(nrows: int, row_names: Optional[Sequence[str]] = None) -> pd.DataFrame:
    if row_names is not None:
        return pd.DataFrame(index=pd.Index(list(row_names), dtype=object))
    return pd.DataFrame(index=pd.RangeIndex(nrows))


def has_row_names(frame: pd.DataFrame) -> bool:
    return not isinstance(frame.index, pd.RangeIndex)


def row_names(frame: pd.DataFrame) -> Optional[List[str]]:
    if not has_row_names(frame):
        return None
    return [None if pd.isna(x) else str(x) for x in frame.index]


def make_frame(
        columns: Iterable[Tuple[str, Any]],
        nrows: int,
        row_names: Optional[Sequence[Any]] = None,
        source: str = "data frame",
) -> pd.DataFrame:
    """
    Assemble a frame from (name, values) pairs.

    Columns whose values are None are dropped along with their name. Every
    remaining column must contain exactly `nrows` entries.

    :param source: description of where the columns came from, used in error messages
    :raises DimensionMismatchError: if a column or the row names have the wrong length
    """
    if row_names is not None and len(row_names) != nrows:
        raise DimensionMismatchError(
            f"{source}: expected {nrows} row names, got {len(row_names)}"
        )

    frame = empty_frame(nrows, row_names)
    data: Dict[str, Any] = {}
    for name, values in columns:
        if values is None:
            continue
        if len(values) != nrows:
            raise DimensionMismatchError(
                f"{source}: column '{name}' has {len(values)} entries, expected {nrows}"
            )
        if name in data:
            raise DimensionMismatchError(f"{source}: duplicate column name '{name}'")
        if isinstance(values, pd.DataFrame):
            values = nested_column(values)
        data[name] = _as_array(values)

    if not data:
        return frame

    return pd.DataFrame(data, index=frame.index)


def _as_array(values: Any) -> Any:
    if isinstance(values, (np.ndarray, pd.Categorical, pd.api.extensions.ExtensionArray)):
        return values
    if isinstance(values, pd.Series):
        return values.array
    # Plain lists are kept as object arrays so that pandas does not guess dtypes.
    out = np.empty(len(values), dtype=object)
    for i, v in enumerate(values):
        out[i] = v
    return out


# -------------------------------------------------------------------------
# Typed columns
# -------------------------------------------------------------------------

def integer_column(values: Any, missing: Optional[np.ndarray] = None) -> Any:
    """
    int32 column; floats are truncated, and masked entries become <NA>.
    """
    arr = np.asarray(values)
    if arr.dtype.kind == "f":
        nan_mask = np.isnan(arr)
        missing = nan_mask if missing is None else (missing | nan_mask)
        arr = np.trunc(np.where(nan_mask, 0, arr))
    arr = arr.astype(np.int32)
    if missing is not None and missing.any():
        return pd.arrays.IntegerArray(arr, missing.astype(bool))
    return arr


def number_column(values: Any, missing: Optional[np.ndarray] = None) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64).copy()
    if missing is not None and missing.any():
        arr[missing] = np.nan
    return arr


def boolean_column(values: Any, missing: Optional[np.ndarray] = None) -> Any:
    arr = np.asarray(values)
    flags = arr != 0 if arr.dtype.kind != "b" else arr
    if missing is not None and missing.any():
        return pd.arrays.BooleanArray(np.asarray(flags, dtype=bool), missing.astype(bool))
    return np.asarray(flags, dtype=bool)


def string_column(values: Sequence[Optional[str]]) -> Any:
    if any(v is None for v in values):
        return pd.array(list(values), dtype="string")
    return _as_array(list(values))


def factor_column(
        codes: Any,
        levels: Sequence[str],
        placeholder: Optional[int] = None,
        ordered: bool = False,
) -> pd.Categorical:
    """
    Expand codes into a categorical. Codes equal to the placeholder or outside
    [0, len(levels)) become missing.
    """
    arr = np.asarray(codes).astype(np.int64).reshape(-1).copy()
    invalid = (arr < 0) | (arr >= len(levels))
    if placeholder is not None:
        invalid |= arr == placeholder
    arr[invalid] = -1
    return pd.Categorical.from_codes(arr, categories=pd.Index(list(levels), dtype=object), ordered=ordered)


def nested_column(frame: pd.DataFrame) -> np.ndarray:
    """
    Store a nested frame as one record dict per row.
    """
    records = frame.to_dict("records")
    out = np.empty(len(records), dtype=object)
    for i, r in enumerate(records):
        out[i] = r
    return out


# -------------------------------------------------------------------------
# Row subsetting
# -------------------------------------------------------------------------

def slice_rows(frame: pd.DataFrame, indices: Sequence[int]) -> pd.DataFrame:
    """
    Subset rows by position, keeping row names if the frame has any.
    """
    out = frame.iloc[np.asarray(indices, dtype=np.int64)]
    if not has_row_names(frame):
        out = out.reset_index(drop=True)
    return out


def split_frame(frame: pd.DataFrame, groups: Dict[str, np.ndarray]) -> Dict[str, pd.DataFrame]:
    return {k: slice_rows(frame, v) for k, v in groups.items()}


def group_rows(values: Sequence[Any]) -> Dict[Any, np.ndarray]:
    """
    Map each distinct value to the row positions holding it, in order of first appearance.
    Missing values are skipped.
    """
    order: Dict[Any, List[int]] = {}
    for i, v in enumerate(values):
        if v is None or (isinstance(v, float) and np.isnan(v)) or v is pd.NA:
            continue
        order.setdefault(v, []).append(i)
    return {k: np.asarray(v, dtype=np.int32) for k, v in order.items()}
