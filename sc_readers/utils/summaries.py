from __future__ import annotations

from typing import Any, Dict

import numpy as np
import pandas as pd


def summarize_array(values: Any, limit: int = 50) -> Dict[str, Any]:
    """
    Describe one annotation column for display.

    Numeric (non-boolean) columns are "continuous" and report `min` and `max`,
    ignoring missing values; with nothing to compare, `min` is +inf and `max`
    is -inf. Everything else is "categorical" and reports its sorted unique
    non-missing values, cut at `limit`, with `truncated` set when that happened.

    :param values: a pandas Series or anything pandas can wrap in one
    :param limit: maximum number of categories to report
    """
    series = values if isinstance(values, pd.Series) else pd.Series(values)

    if pd.api.types.is_numeric_dtype(series.dtype) and not pd.api.types.is_bool_dtype(series.dtype):
        present = series.dropna().to_numpy(dtype=np.float64)
        present = present[~np.isnan(present)]
        if present.size == 0:
            return {"type": "continuous", "min": float("inf"), "max": float("-inf")}
        return {"type": "continuous", "min": float(present.min()), "max": float(present.max())}

    unique = sorted({_plain(x) for x in series.dropna()}, key=lambda x: (str(type(x)), x))
    truncated = len(unique) > limit
    return {"type": "categorical", "values": unique[:limit], "truncated": truncated}


def summarize_frame(frame: pd.DataFrame, limit: int = 50) -> Dict[str, Dict[str, Any]]:
    """
    {@link summarize_array} for every column, skipping nested frame columns.
    """
    output: Dict[str, Dict[str, Any]] = {}
    for name in frame.columns:
        column = frame[name]
        if column.dtype == object and any(isinstance(x, dict) for x in column):
            continue
        output[str(name)] = summarize_array(column, limit=limit)
    return output


def _plain(x: Any) -> Any:
    if isinstance(x, np.generic):
        return x.item()
    return x
