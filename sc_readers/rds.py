from __future__ import annotations

import logging
import math
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from rds2py import parse_rds

from sc_readers.core import frames
from sc_readers.core.exceptions import SchemaUnknownError

logger = logging.getLogger(__name__)

NA_INTEGER = -2147483648

# Vector type spellings used by the parser, mapped onto our own names.
_TYPE_ALIASES = {
    "integer": "integer",
    "int": "integer",
    "double": "double",
    "numeric": "double",
    "real": "double",
    "string": "string",
    "character": "string",
    "str": "string",
    "boolean": "logical",
    "logical": "logical",
    "bool": "logical",
    "vector": "list",
    "list": "list",
    "S4": "S4",
    "null": "null",
    "NULL": "null",
}

DATA_FRAME_CLASSES = ("DFrame", "DataFrame")


class RObject:
    """
    Read-only view over one node of a parsed R object tree.

    Each node is a dict with a 'type', optional 'data', 'attributes' (name ->
    node), and for S4 instances 'class_name' / 'package_name'.
    """

    def __init__(self, raw: Dict[str, Any]) -> None:
        if not isinstance(raw, dict):
            raise SchemaUnknownError(f"unexpected R object representation of type '{type(raw).__name__}'")
        self._raw = raw

    @classmethod
    def from_file(cls, path: Union[str, os.PathLike]) -> RObject:
        return cls(parse_rds(os.fspath(path)))

    # -------------------------------------------------------------------------
    # Type information
    # -------------------------------------------------------------------------
    @property
    def type(self) -> str:
        raw_type = self._raw.get("type", "null")
        return _TYPE_ALIASES.get(raw_type, "other")

    @property
    def class_name(self) -> Optional[str]:
        if self._raw.get("class_name"):
            return self._raw["class_name"]
        cls = self.attribute("class")
        if cls is not None and cls.type == "string":
            values = cls.values()
            if values:
                return values[0]
        return None

    @property
    def package_name(self) -> Optional[str]:
        return self._raw.get("package_name")

    def classes(self) -> List[str]:
        cls = self.attribute("class")
        if cls is not None and cls.type == "string":
            return [v for v in cls.values() if v is not None]
        return [self.class_name] if self.class_name else []

    def is_null(self) -> bool:
        return self.type == "null"

    # -------------------------------------------------------------------------
    # Attributes and elements
    # -------------------------------------------------------------------------
    def attribute_names(self) -> List[str]:
        return list((self._raw.get("attributes") or {}).keys())

    def attribute(self, name: str) -> Optional[RObject]:
        attrs = self._raw.get("attributes") or {}
        if name not in attrs or attrs[name] is None:
            return None
        return RObject(attrs[name])

    def require_attribute(self, name: str) -> RObject:
        found = self.attribute(name)
        if found is None:
            raise SchemaUnknownError(f"R object of class '{self.class_name}' has no '{name}' slot")
        return found

    def values(self) -> Any:
        """Vector contents; a list for character vectors and lists, an array otherwise."""
        data = self._raw.get("data")
        if data is None:
            return []
        if self.type in ("string", "list"):
            return list(data)
        return np.asarray(data)

    def length(self) -> int:
        return len(self.values())

    def names(self) -> Optional[List[Optional[str]]]:
        found = self.attribute("names")
        if found is None or found.type != "string":
            return None
        return found.values()

    def element(self, i: int) -> RObject:
        return RObject(self.values()[i])

    def elements(self) -> List[RObject]:
        return [RObject(x) for x in self.values()]

    def named_element(self, name: str) -> Optional[RObject]:
        names = self.names()
        if names is None or name not in names:
            return None
        return self.element(names.index(name))

    def dim(self) -> Optional[List[int]]:
        found = self.attribute("dim")
        if found is None:
            return None
        return [int(x) for x in found.values()]

    def __repr__(self) -> str:
        return f"RObject(type={self.type!r}, class={self.class_name!r})"


# -------------------------------------------------------------------------
# Atomic vectors
# -------------------------------------------------------------------------

def r_strings(obj: RObject) -> List[Optional[str]]:
    return [None if v is None else str(v) for v in obj.values()]


def _masked_integers(data: Any) -> Tuple[np.ndarray, np.ndarray]:
    """
    Integer-like R data as (int64 values, missing mask).

    NA may arrive as the R sentinel, as NaN in a float array or as None in an
    object array, depending on how the vector was parsed.
    """
    arr = np.asarray(data)
    if arr.dtype == object:
        missing = np.array([v is None or (isinstance(v, float) and math.isnan(v)) for v in arr], dtype=bool)
        values = np.where(missing, 0, arr).astype(np.int64)
    elif arr.dtype.kind == "f":
        missing = np.isnan(arr)
        values = np.where(missing, 0, arr).astype(np.int64)
    else:
        values = arr.astype(np.int64)
        missing = np.zeros(values.shape, dtype=bool)
    missing |= values == NA_INTEGER
    return values, missing


def r_vector_column(obj: RObject) -> Any:
    """
    Convert an atomic R vector (possibly a factor) into a column, normalising NA.

    :return: a column suitable for frames.make_frame, or None if unsupported
    """
    kind = obj.type
    if kind == "integer" and "factor" in obj.classes():
        levels = obj.attribute("levels")
        codes, missing = _masked_integers(obj.values())
        # R factor codes are 1-based.
        codes = np.where(missing, -1, codes - 1)
        return frames.factor_column(
            codes,
            r_strings(levels) if levels is not None else [],
            ordered="ordered" in obj.classes(),
        )

    if kind == "integer":
        values, missing = _masked_integers(obj.values())
        return frames.integer_column(values, missing=missing)

    if kind == "double":
        return np.asarray(obj.values(), dtype=np.float64)

    if kind == "logical":
        values, missing = _masked_integers(obj.values())
        return frames.boolean_column(values, missing=missing)

    if kind == "string":
        return frames.string_column(r_strings(obj))

    return None


def r_list_to_python(obj: RObject) -> Any:
    """
    Convert an R list (or atomic vector) into plain Python values for 'other metadata'.
    Named lists become dicts, unnamed lists become lists, length-1 vectors become scalars.
    """
    kind = obj.type
    if kind == "null":
        return None

    if kind == "list":
        items = [r_list_to_python(e) for e in obj.elements()]
        names = obj.names()
        if names is not None and all(n for n in names):
            return dict(zip(names, items))
        return items

    if kind in ("integer", "double", "logical", "string"):
        column = r_vector_column(obj)
        if isinstance(column, pd.Categorical):
            values = [None if pd.isna(v) else v for v in column]
        elif kind == "string":
            values = list(obj.values())
        else:
            values = [None if pd.isna(v) else v.item() if hasattr(v, "item") else v for v in column]
        names = obj.names()
        if names is not None and all(n for n in names):
            return dict(zip(names, values))
        if len(values) == 1:
            return values[0]
        return values

    if kind == "S4" and obj.class_name in DATA_FRAME_CLASSES:
        return r_data_frame(obj)

    logger.warning("Skipping unsupported R object in metadata", extra={"r_class": obj.class_name, "r_type": kind})
    return None


# -------------------------------------------------------------------------
# Data frames
# -------------------------------------------------------------------------

def _row_names_from(obj: Optional[RObject]) -> Optional[List[Optional[str]]]:
    if obj is None or obj.type != "string":
        return None
    return r_strings(obj)


def r_data_frame(obj: RObject) -> pd.DataFrame:
    """
    Convert an S4Vectors DFrame or a base data.frame into a pandas DataFrame.
    Unsupported columns are dropped with a warning.
    """
    if obj.type == "S4":
        if obj.class_name not in DATA_FRAME_CLASSES:
            raise SchemaUnknownError(f"expected a DFrame, got an R object of class '{obj.class_name}'")
        list_data = obj.require_attribute("listData")
        nrows_attr = obj.attribute("nrows")
        row_names = _row_names_from(obj.attribute("rownames"))
        if nrows_attr is not None and nrows_attr.length():
            nrows = int(np.asarray(nrows_attr.values()).reshape(-1)[0])
        elif row_names is not None:
            nrows = len(row_names)
        else:
            nrows = list_data.element(0).length() if list_data.length() else 0
        columns = list_data.elements()
        names = list_data.names() or []

    elif obj.type == "list" and "data.frame" in obj.classes():
        columns = obj.elements()
        names = obj.names() or []
        row_names = _row_names_from(obj.attribute("row.names"))
        if row_names is not None:
            nrows = len(row_names)
        else:
            compact = obj.attribute("row.names")
            if compact is None or compact.type != "integer":
                nrows = columns[0].length() if columns else 0
            else:
                values, missing = _masked_integers(compact.values())
                # Compact row names are either c(NA, -n) as stored, or already expanded to 1..n.
                if len(values) == 2 and missing[0]:
                    nrows = abs(int(values[1]))
                else:
                    nrows = len(values)

    else:
        raise SchemaUnknownError(f"R object of class '{obj.class_name}' is not a data frame")

    collected = []
    for name, column in zip(names, columns):
        if (column.type == "S4" and column.class_name in DATA_FRAME_CLASSES) or "data.frame" in column.classes():
            try:
                collected.append((name, r_data_frame(column)))
            except SchemaUnknownError as e:
                logger.warning("Dropping nested data frame column", extra={"column": name, "error": str(e)})
            continue

        values = r_vector_column(column)
        if values is None:
            logger.warning(
                "Dropping unsupported data frame column",
                extra={"column": name, "r_type": column.type, "r_class": column.class_name},
            )
        collected.append((name, values))

    return frames.make_frame(collected, nrows, row_names=row_names, source="R data frame")


def r_matrix_dims(obj: RObject) -> Optional[Sequence[int]]:
    if obj.type == "S4":
        dim = obj.attribute("Dim")
        return None if dim is None else [int(x) for x in dim.values()]
    return obj.dim()
