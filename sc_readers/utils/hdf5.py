from __future__ import annotations

from typing import Any, List, Optional

import h5py
import numpy as np

PLACEHOLDER_ATTR = "missing-value-placeholder"


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, np.ndarray):
        return [_decode(v) for v in value.tolist()]
    if isinstance(value, np.generic):
        return value.item()
    return value


def is_string_dataset(dataset: h5py.Dataset) -> bool:
    dtype = dataset.dtype
    return h5py.check_string_dtype(dtype) is not None or dtype.kind in ("S", "U")


def read_attribute(obj: Any, name: str, default: Any = None) -> Any:
    """
    Read an attribute as a plain Python value (strings decoded, scalars unwrapped).
    """
    if name not in obj.attrs:
        return default
    value = _decode(obj.attrs[name])
    if isinstance(value, list) and len(value) == 1:
        return value[0]
    return value


def has_placeholder(dataset: h5py.Dataset) -> bool:
    return PLACEHOLDER_ATTR in dataset.attrs


def read_strings(dataset: h5py.Dataset) -> List[Optional[str]]:
    """
    Read a string dataset as a list, turning placeholder values into None.
    """
    raw = dataset[()]
    if np.ndim(raw) == 0:
        values = [_decode(raw)]
    else:
        values = [_decode(v) for v in raw.tolist()]

    if has_placeholder(dataset):
        placeholder = read_attribute(dataset, PLACEHOLDER_ATTR)
        values = [None if v == placeholder else v for v in values]
    return values


def extract_strings(group: Any, name: str) -> Optional[List[Optional[str]]]:
    """
    Fetch a child string dataset if there is one.

    :param group: an open h5py Group (or File)
    :param name: name of the child
    :return: the decoded strings, or None if the child is absent, not a dataset or not string-typed
    """
    if name not in group:
        return None

    child = group.get(name)
    if not isinstance(child, h5py.Dataset):
        return None

    if not is_string_dataset(child):
        return None

    return read_strings(child)


def read_string_scalar(group: Any, name: str) -> str:
    value = read_strings(group[name])
    return value[0]


def read_numeric(dataset: h5py.Dataset) -> np.ndarray:
    """
    Read a numeric dataset as a 1-D float64 array with placeholder values set to NaN.
    """
    values = np.asarray(dataset[()], dtype=np.float64).reshape(-1)
    if has_placeholder(dataset):
        placeholder = float(read_attribute(dataset, PLACEHOLDER_ATTR))
        if np.isnan(placeholder):
            mask = np.isnan(values)
        else:
            mask = values == placeholder
        values = values.copy()
        values[mask] = np.nan
    return values


def read_scalar(group: Any, name: str) -> Any:
    value = group[name][()]
    if isinstance(value, np.ndarray):
        value = value.reshape(-1)[0]
    return _decode(value)
