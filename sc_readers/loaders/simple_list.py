from __future__ import annotations

import json
import logging
import math
import posixpath
from typing import Any, Dict, List, Optional

import h5py
import numpy as np

from sc_readers import engine
from sc_readers.core.exceptions import RequiredFieldMissingError, SchemaUnknownError
from sc_readers.navigators.base import ProjectNavigator
from sc_readers.utils import hdf5 as h5utils
from sc_readers.utils.text import unpack_text

logger = logging.getLogger(__name__)

_SPECIAL_NUMBERS = {"NaN": math.nan, "Inf": math.inf, "-Inf": -math.inf}


def _named(values: List[Any], names: Optional[List[str]]) -> Any:
    if names is not None:
        return dict(zip(names, values))
    return values


# -------------------------------------------------------------------------
# JSON representation
# -------------------------------------------------------------------------

def _json_number(x: Any) -> float:
    if x is None:
        return math.nan
    if isinstance(x, str):
        if x in _SPECIAL_NUMBERS:
            return _SPECIAL_NUMBERS[x]
        raise SchemaUnknownError(f"unexpected string '{x}' in a number vector")
    return float(x)


def decode_json_list(node: Dict[str, Any]) -> Any:
    """
    Convert a uzuki2 JSON node into Python values.

    Lists become dicts when named, vectors become scalars when stored as a
    scalar, and 'nothing' becomes None.
    """
    node_type = node.get("type")

    if node_type == "list":
        values = [decode_json_list(v) for v in node.get("values", [])]
        return _named(values, node.get("names"))

    if node_type == "nothing":
        return None

    if node_type in ("integer", "number", "boolean", "string", "date", "date-time", "factor"):
        raw = node.get("values")
        scalar = not isinstance(raw, list)
        values = [raw] if scalar else list(raw)

        if node_type == "number":
            values = [_json_number(v) for v in values]
        elif node_type == "integer":
            values = [None if v is None else int(v) for v in values]
        elif node_type == "boolean":
            values = [None if v is None else bool(v) for v in values]
        elif node_type == "factor":
            levels = node.get("levels", [])
            values = [None if v is None or not 0 <= v < len(levels) else levels[v] for v in values]

        if scalar:
            return values[0]
        return _named(values, node.get("names"))

    if node_type == "external":
        logger.warning("Ignoring external object in simple list", extra={"index": node.get("index")})
        return None

    raise SchemaUnknownError(f"unknown simple list node type '{node_type}'")


# -------------------------------------------------------------------------
# HDF5 representation
# -------------------------------------------------------------------------

def decode_hdf5_list(group: h5py.Group) -> Any:
    kind = h5utils.read_attribute(group, "uzuki_object")

    if kind == "list":
        data = group.get("data")
        count = len(data) if data is not None else 0
        values = [decode_hdf5_list(data[str(i)]) for i in range(count)]
        return _named(values, h5utils.extract_strings(group, "names"))

    if kind == "nothing":
        return None

    if kind == "vector":
        vtype = h5utils.read_attribute(group, "uzuki_type")
        if "data" not in group:
            raise RequiredFieldMissingError(f"'data' missing from simple list vector '{group.name}'")
        ds = group["data"]
        scalar = ds.shape == ()

        if vtype in ("string", "date", "date-time"):
            values: List[Any] = h5utils.read_strings(ds)
        elif vtype == "factor":
            levels = h5utils.extract_strings(group, "levels") or []
            placeholder = h5utils.read_attribute(ds, h5utils.PLACEHOLDER_ATTR)
            codes = np.asarray(ds[()]).reshape(-1).tolist()
            values = [
                None if c == placeholder or not 0 <= c < len(levels) else levels[c]
                for c in codes
            ]
        elif vtype in ("integer", "boolean"):
            raw = np.asarray(ds[()]).reshape(-1)
            placeholder = h5utils.read_attribute(ds, h5utils.PLACEHOLDER_ATTR)
            cast = bool if vtype == "boolean" else int
            values = [None if placeholder is not None and v == placeholder else cast(v) for v in raw.tolist()]
        elif vtype == "number":
            values = h5utils.read_numeric(ds).tolist()
        else:
            raise SchemaUnknownError(f"unknown simple list vector type '{vtype}'")

        if scalar:
            return values[0]
        return _named(values, h5utils.extract_strings(group, "names"))

    if kind == "external":
        logger.warning("Ignoring external object in simple list", extra={"group": group.name})
        return None

    raise SchemaUnknownError(f"unknown simple list object '{kind}' at '{group.name}'")


# -------------------------------------------------------------------------
# Project-level entry points
# -------------------------------------------------------------------------

async def load_takane_simple_list(path: str, navigator: ProjectNavigator) -> Any:
    """
    Load a takane simple_list object directory (list.json.gz or list.h5).
    """
    info = await navigator.read_json(posixpath.join(path, "OBJECT"))
    if info.get("type") != "simple_list":
        raise SchemaUnknownError(f"'{path}' is a '{info.get('type')}', expected a simple_list")

    fmt = info.get("simple_list", {}).get("format", "hdf5")
    if fmt == "json.gz":
        document = await navigator.read_json(posixpath.join(path, "list.json.gz"))
        return decode_json_list(document)

    content = await navigator.file(posixpath.join(path, "list.h5"))
    local, flush = engine.realize_file(content)
    try:
        with engine.open_hdf5(local) as f:
            if "simple_list" not in f:
                raise RequiredFieldMissingError(f"'simple_list' group missing from '{path}/list.h5'")
            return decode_hdf5_list(f["simple_list"])
    finally:
        flush()
        await navigator.clean(content)


async def load_legacy_simple_list(meta: Dict[str, Any], navigator: ProjectNavigator) -> Any:
    """
    Load an ArtifactDB json_simple_list / hdf5_simple_list document.
    """
    schema = meta.get("$schema", "")

    if schema.startswith("json_simple_list/"):
        content = await navigator.file(meta["path"])
        try:
            if isinstance(content, bytes):
                data = content
            else:
                with open(content, "rb") as handle:
                    data = handle.read()
        finally:
            await navigator.clean(content)
        compression = meta.get("json_simple_list", {}).get("compression")
        text = unpack_text(data, compression="gz" if compression == "gzip" else None)
        return decode_json_list(json.loads(text))

    if schema.startswith("hdf5_simple_list/"):
        group_name = meta.get("hdf5_simple_list", {}).get("group", "simple_list")
        content = await navigator.file(meta["path"])
        local, flush = engine.realize_file(content)
        try:
            with engine.open_hdf5(local) as f:
                if group_name not in f:
                    raise RequiredFieldMissingError(f"group '{group_name}' missing from '{meta['path']}'")
                return decode_hdf5_list(f[group_name])
        finally:
            flush()
            await navigator.clean(content)

    raise SchemaUnknownError(f"simple list schema '{schema}' is not supported")
