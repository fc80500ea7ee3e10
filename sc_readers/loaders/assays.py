from __future__ import annotations

import logging
import posixpath
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from sc_readers import engine
from sc_readers.core.exceptions import (
    DelayedUnsupportedError,
    RequiredFieldMissingError,
    SchemaUnknownError,
    SelectorInvalidError,
)
from sc_readers.engine import MatrixHandle
from sc_readers.loaders.delayed import (
    ALABASTER_SEED,
    TAKANE_SEED,
    ArraySeed,
    DelayedOp,
    parse_delayed,
    realize_delayed,
)
from sc_readers.navigators.base import ProjectNavigator
from sc_readers.utils import hdf5 as h5utils

logger = logging.getLogger(__name__)

AssaySelector = Union[str, int]

TAKANE_ARRAY_TYPES = ("compressed_sparse_matrix", "dense_array", "delayed_array")


def resolve_assay_index(names: Sequence[Optional[str]], selector: AssaySelector) -> int:
    """
    Turn an assay name or position into a position.

    :raises SelectorInvalidError: if the name is absent or the position is out of range
    """
    if isinstance(selector, str):
        for i, name in enumerate(names):
            if name == selector:
                return i
        raise SelectorInvalidError(f"assay '{selector}' not found (available: {list(names)})")

    if isinstance(selector, (int, np.integer)) and not isinstance(selector, bool):
        if 0 <= selector < len(names):
            return int(selector)
        raise SelectorInvalidError(f"assay {selector} out of range for {len(names)} assays")

    raise SelectorInvalidError(f"assay selector must be a name or an index, got {selector!r}")


def _section(meta: Dict[str, Any], section: str, key: str) -> Any:
    try:
        return meta[section][key]
    except (KeyError, TypeError):
        raise RequiredFieldMissingError(f"'{section}.{key}' missing from metadata of '{meta.get('path')}'")


# -------------------------------------------------------------------------
# Legacy ArtifactDB arrays
# -------------------------------------------------------------------------

def legacy_assay_names(meta: Dict[str, Any]) -> List[Optional[str]]:
    return [a.get("name") for a in meta.get("summarized_experiment", {}).get("assays", [])]


async def extract_legacy_assay(
        meta: Dict[str, Any],
        selector: AssaySelector,
        navigator: ProjectNavigator,
        force_integer: bool = True,
) -> MatrixHandle:
    """
    Load one assay of a legacy summarized_experiment document.

    :param meta: metadata of the experiment holding the assay
    :param selector: assay name or index
    """
    assays = meta.get("summarized_experiment", {}).get("assays", [])
    index = resolve_assay_index([a.get("name") for a in assays], selector)
    try:
        path = assays[index]["resource"]["path"]
    except (KeyError, TypeError):
        raise RequiredFieldMissingError(f"assay {index} has no 'resource.path'")
    return await extract_legacy_array(path, navigator, force_integer)


async def extract_legacy_array(path: str, navigator: ProjectNavigator, force_integer: bool = True) -> MatrixHandle:
    meta = await navigator.metadata(path)
    schema = meta.get("$schema", "")
    tree: Optional[DelayedOp] = None

    content = await navigator.file(meta["path"])
    local, flush = engine.realize_file(content)
    try:
        if schema.startswith("hdf5_sparse_matrix/"):
            group = _section(meta, "hdf5_sparse_matrix", "group")
            return engine.initialize_sparse_matrix_from_hdf5(local, group, force_integer=force_integer)

        if schema.startswith("hdf5_dense_array/"):
            dataset = _section(meta, "hdf5_dense_array", "dataset")
            return engine.initialize_matrix_from_hdf5_dataset(
                local, dataset, transposed=False, force_integer=force_integer
            )

        if schema.startswith("hdf5_delayed_array/"):
            group = _section(meta, "hdf5_delayed_array", "group")
            with engine.open_hdf5(local) as f:
                if group not in f:
                    raise RequiredFieldMissingError(f"group '{group}' missing from '{meta['path']}'")
                tree = parse_delayed(f[group])
        else:
            raise SchemaUnknownError(f"array schema '{schema}' is not supported")
    finally:
        flush()
        await navigator.clean(content)

    async def load_seed(seed: ArraySeed, seed_integer: bool) -> MatrixHandle:
        if seed.kind != ALABASTER_SEED:
            raise DelayedUnsupportedError(seed.kind, "only local array seeds are allowed in ArtifactDB projects")
        return await extract_legacy_array(seed.payload["path"], navigator, seed_integer)

    return await realize_delayed(tree, load_seed, force_integer=force_integer)


async def extract_legacy_reduced_dimension(meta: Dict[str, Any], navigator: ProjectNavigator) -> List[np.ndarray]:
    """
    Read a 2-dimensional hdf5_dense_array of cells x dimensions as one vector per dimension.
    """
    dims = meta.get("array", {}).get("dimensions", [])
    if len(dims) != 2:
        raise SchemaUnknownError(f"reduced dimensions at '{meta.get('path')}' are not 2-dimensional")
    dataset = _section(meta, "hdf5_dense_array", "dataset")

    content = await navigator.file(meta["path"])
    local, flush = engine.realize_file(content)
    try:
        with engine.open_hdf5(local) as f:
            if dataset not in f:
                raise RequiredFieldMissingError(f"dataset '{dataset}' missing from '{meta['path']}'")
            values = np.asarray(f[dataset][()], dtype=np.float64)
    finally:
        flush()
        await navigator.clean(content)

    # HDF5 lists the dimensions in reverse, so each stored row is one dimension.
    return [values[d, :].copy() for d in range(values.shape[0])]


# -------------------------------------------------------------------------
# takane arrays
# -------------------------------------------------------------------------

async def object_type(path: str, navigator: ProjectNavigator) -> Optional[str]:
    info = await navigator.read_json(posixpath.join(path, "OBJECT"))
    return info.get("type")


async def takane_assay_names(path: str, navigator: ProjectNavigator) -> List[Optional[str]]:
    return list(await navigator.read_json(posixpath.join(path, "assays", "names.json")))


async def extract_takane_assay(
        path: str,
        selector: AssaySelector,
        navigator: ProjectNavigator,
        force_integer: bool = True,
) -> MatrixHandle:
    """
    Load one assay of a takane summarized_experiment directory.

    :param path: experiment directory inside the project
    :param selector: assay name or index into assays/names.json
    """
    names = await takane_assay_names(path, navigator)
    index = resolve_assay_index(names, selector)
    return await extract_takane_array(posixpath.join(path, "assays", str(index)), navigator, force_integer)


async def extract_takane_array(path: str, navigator: ProjectNavigator, force_integer: bool = True) -> MatrixHandle:
    kind = await object_type(path, navigator)

    if kind == "compressed_sparse_matrix":
        content = await navigator.file(posixpath.join(path, "matrix.h5"))
        local, flush = engine.realize_file(content)
        try:
            with engine.open_hdf5(local) as f:
                if "compressed_sparse_matrix" not in f:
                    raise RequiredFieldMissingError(f"'compressed_sparse_matrix' group missing from '{path}/matrix.h5'")
                group = f["compressed_sparse_matrix"]
                layout = h5utils.read_attribute(group, "layout", "CSC")
                if "shape" not in group:
                    raise RequiredFieldMissingError(f"'shape' missing from '{path}/matrix.h5'")
                nrow, ncol = (int(x) for x in np.asarray(group["shape"][()]).reshape(-1)[:2])
            return engine.initialize_sparse_matrix_from_hdf5_group(
                local, "compressed_sparse_matrix", nrow, ncol, csr=layout == "CSR", force_integer=force_integer
            )
        finally:
            flush()
            await navigator.clean(content)

    if kind == "dense_array":
        content = await navigator.file(posixpath.join(path, "array.h5"))
        local, flush = engine.realize_file(content)
        try:
            with engine.open_hdf5(local) as f:
                if "dense_array" not in f:
                    raise RequiredFieldMissingError(f"'dense_array' group missing from '{path}/array.h5'")
                transposed = bool(h5utils.read_attribute(f["dense_array"], "transposed", 0))
            return engine.initialize_matrix_from_hdf5_dataset(
                local, "dense_array/data", transposed=transposed, force_integer=force_integer, force_sparse=False
            )
        finally:
            flush()
            await navigator.clean(content)

    if kind == "delayed_array":
        content = await navigator.file(posixpath.join(path, "array.h5"))
        local, flush = engine.realize_file(content)
        try:
            with engine.open_hdf5(local) as f:
                if "delayed_array" not in f:
                    raise RequiredFieldMissingError(f"'delayed_array' group missing from '{path}/array.h5'")
                tree = parse_delayed(f["delayed_array"])
        finally:
            flush()
            await navigator.clean(content)

        async def load_seed(seed: ArraySeed, seed_integer: bool) -> MatrixHandle:
            if seed.kind != TAKANE_SEED:
                raise DelayedUnsupportedError(seed.kind, "only takane seeds are allowed in takane projects")
            seed_path = posixpath.join(path, "seeds", str(seed.payload["index"]))
            return await extract_takane_array(seed_path, navigator, seed_integer)

        return await realize_delayed(tree, load_seed, force_integer=force_integer)

    raise SchemaUnknownError(f"array type '{kind}' at '{path}' is not supported")


async def extract_takane_reduced_dimension(path: str, navigator: ProjectNavigator) -> List[np.ndarray]:
    """
    Read a dense_array of cells x dimensions as one vector per dimension.
    """
    kind = await object_type(path, navigator)
    if kind != "dense_array":
        raise SchemaUnknownError(f"reduced dimensions of type '{kind}' are not supported")

    content = await navigator.file(posixpath.join(path, "array.h5"))
    local, flush = engine.realize_file(content)
    try:
        with engine.open_hdf5(local) as f:
            if "dense_array" not in f or "data" not in f["dense_array"]:
                raise RequiredFieldMissingError(f"'dense_array/data' missing from '{path}/array.h5'")
            transposed = bool(h5utils.read_attribute(f["dense_array"], "transposed", 0))
            values = np.asarray(f["dense_array/data"][()], dtype=np.float64)
    finally:
        flush()
        await navigator.clean(content)

    if values.ndim != 2:
        raise SchemaUnknownError(f"reduced dimensions at '{path}' are not 2-dimensional")
    if transposed:
        return [values[:, d].copy() for d in range(values.shape[1])]
    return [values[d, :].copy() for d in range(values.shape[0])]
