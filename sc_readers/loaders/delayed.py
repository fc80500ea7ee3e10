from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import h5py
import numpy as np
import scipy.sparse as sp

from sc_readers import engine
from sc_readers.core.exceptions import DelayedUnsupportedError, RequiredFieldMissingError
from sc_readers.engine import MatrixHandle
from sc_readers.utils import hdf5 as h5utils

logger = logging.getLogger(__name__)

LOG2_TOLERANCE = 1e-8

TAKANE_SEED = "custom takane seed array"
ALABASTER_SEED = "custom alabaster local array"


# -------------------------------------------------------------------------
# Expression tree
# -------------------------------------------------------------------------

class DelayedOp:
    """Base of the parsed delayed-array expression tree."""


@dataclass(frozen=True, eq=False)
class UnaryArith(DelayedOp):
    op: str
    value: Any
    side: str
    along: Optional[int]
    seed: DelayedOp


@dataclass(frozen=True, eq=False)
class UnaryMath(DelayedOp):
    method: str
    log_base: Optional[float]
    seed: DelayedOp


@dataclass(frozen=True, eq=False)
class Transpose(DelayedOp):
    permutation: Tuple[int, ...]
    seed: DelayedOp


@dataclass(frozen=True, eq=False)
class Subset(DelayedOp):
    row_index: Optional[np.ndarray]
    column_index: Optional[np.ndarray]
    seed: DelayedOp


@dataclass(frozen=True, eq=False)
class Combine(DelayedOp):
    along: int
    seeds: Tuple[DelayedOp, ...]


@dataclass(frozen=True, eq=False)
class ArraySeed(DelayedOp):
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, eq=False)
class LogNormTemplate:
    size_factors: np.ndarray
    seed: DelayedOp


# -------------------------------------------------------------------------
# Parsing
# -------------------------------------------------------------------------

def _values(group: h5py.Group, name: str) -> np.ndarray:
    if name not in group:
        raise RequiredFieldMissingError(f"'{name}' missing from delayed node '{group.name}'")
    return np.asarray(group[name][()])


def _indexed_children(group: h5py.Group) -> Dict[int, Any]:
    return {int(k): group[k] for k in group.keys()}


def parse_delayed(group: h5py.Group) -> DelayedOp:
    """
    Parse a chihaya-style delayed array group into a {@link DelayedOp} tree.

    Values of in-file seeds are read eagerly, so the tree outlives the HDF5 handle.

    :raises DelayedUnsupportedError: for operations or seeds outside the recognized set
    """
    node_type = h5utils.read_attribute(group, "delayed_type")

    if node_type == "operation":
        operation = h5utils.read_attribute(group, "delayed_operation")

        if operation == "unary arithmetic":
            value = _values(group, "value").astype(np.float64)
            along = int(h5utils.read_scalar(group, "along")) if "along" in group else None
            return UnaryArith(
                op=h5utils.read_string_scalar(group, "method"),
                value=float(value) if value.ndim == 0 else value.reshape(-1),
                side=h5utils.read_string_scalar(group, "side"),
                along=along,
                seed=parse_delayed(group["seed"]),
            )

        if operation == "unary math":
            base = float(h5utils.read_scalar(group, "base")) if "base" in group else None
            return UnaryMath(
                method=h5utils.read_string_scalar(group, "method"),
                log_base=base,
                seed=parse_delayed(group["seed"]),
            )

        if operation == "transpose":
            perm = tuple(int(x) for x in _values(group, "permutation").reshape(-1))
            return Transpose(permutation=perm, seed=parse_delayed(group["seed"]))

        if operation == "subset":
            index = _indexed_children(group["index"]) if "index" in group else {}
            for axis in index:
                if axis not in (0, 1):
                    raise DelayedUnsupportedError("subset", f"axis {axis}")
            return Subset(
                row_index=np.asarray(index[0][()]).astype(np.int64) if 0 in index else None,
                column_index=np.asarray(index[1][()]).astype(np.int64) if 1 in index else None,
                seed=parse_delayed(group["seed"]),
            )

        if operation == "combine":
            along = int(h5utils.read_scalar(group, "along"))
            children = _indexed_children(group["seeds"])
            return Combine(along=along, seeds=tuple(parse_delayed(children[i]) for i in sorted(children)))

        raise DelayedUnsupportedError(str(operation))

    if node_type == "array":
        kind = h5utils.read_attribute(group, "delayed_array")

        if kind == TAKANE_SEED:
            return ArraySeed(kind=kind, payload={"index": int(h5utils.read_scalar(group, "index"))})

        if kind == ALABASTER_SEED:
            return ArraySeed(kind=kind, payload={"path": h5utils.read_string_scalar(group, "path")})

        if kind == "dense array":
            native = bool(h5utils.read_scalar(group, "native")) if "native" in group else False
            return ArraySeed(kind=kind, payload={"values": _values(group, "data"), "native": native})

        if kind == "sparse matrix":
            by_column = bool(h5utils.read_scalar(group, "by_column")) if "by_column" in group else True
            return ArraySeed(
                kind=kind,
                payload={
                    "shape": tuple(int(x) for x in _values(group, "shape").reshape(-1)),
                    "data": _values(group, "data"),
                    "indices": _values(group, "indices").astype(np.int64),
                    "indptr": _values(group, "indptr").astype(np.int64),
                    "by_column": by_column,
                },
            )

        raise DelayedUnsupportedError(str(kind))

    raise DelayedUnsupportedError(str(node_type), "unknown delayed_type")


# -------------------------------------------------------------------------
# Recognition of the log-normalized counts template
# -------------------------------------------------------------------------

def match_log_normalization(tree: DelayedOp) -> Optional[LogNormTemplate]:
    """
    Recognize log2(1 + X / size_factors), stored as
    (log1p(X / sf, along columns)) / log(2).
    """
    if not isinstance(tree, UnaryArith) or tree.op != "/" or tree.side != "right":
        return None
    if not isinstance(tree.value, float) or abs(tree.value - math.log(2)) > LOG2_TOLERANCE:
        return None

    inner = tree.seed
    if not isinstance(inner, UnaryMath) or inner.method != "log1p":
        return None

    scaled = inner.seed
    if not isinstance(scaled, UnaryArith) or scaled.op != "/" or scaled.side != "right":
        return None
    if scaled.along != 1 or isinstance(scaled.value, float):
        return None

    return LogNormTemplate(size_factors=np.asarray(scaled.value, dtype=np.float64), seed=scaled.seed)


# -------------------------------------------------------------------------
# Evaluation
# -------------------------------------------------------------------------

SeedLoader = Callable[[ArraySeed, bool], Awaitable[MatrixHandle]]


def _in_memory_seed(seed: ArraySeed, force_integer: bool) -> MatrixHandle:
    payload = seed.payload
    if seed.kind == "dense array":
        values = engine.coerce_values(payload["values"], force_integer)
        if values.ndim != 2:
            raise DelayedUnsupportedError("dense array", f"{values.ndim} dimensions")
        # Natively-written arrays list their dimensions in reverse.
        if payload["native"]:
            values = values.T
        return MatrixHandle(sp.csc_matrix(values))

    nrow, ncol = payload["shape"]
    return engine.initialize_sparse_matrix_from_arrays(
        nrow,
        ncol,
        payload["data"],
        payload["indices"],
        payload["indptr"],
        by_column=payload["by_column"],
        force_integer=force_integer,
    )


async def realize_delayed(tree: DelayedOp, load_seed: SeedLoader, force_integer: bool = True) -> MatrixHandle:
    """
    Evaluate a parsed tree through the matrix engine.

    :param load_seed: loader for seeds that refer to other arrays in the project
    :param force_integer: passed on to seed loads
    """
    template = match_log_normalization(tree)
    if template is not None:
        logger.debug("Recognized log-normalized delayed array", extra={"cells": int(template.size_factors.shape[0])})
        # Counts behind the template are loaded as-is, integer or not.
        seed = await realize_delayed(template.seed, load_seed, force_integer=False)
        try:
            return engine.log_norm_counts(seed, size_factors=template.size_factors, center=False)
        finally:
            seed.free()

    if isinstance(tree, ArraySeed):
        if tree.kind in ("dense array", "sparse matrix"):
            return _in_memory_seed(tree, force_integer)
        return await load_seed(tree, force_integer)

    if isinstance(tree, Combine):
        parts = []
        try:
            for s in tree.seeds:
                parts.append(await realize_delayed(s, load_seed, force_integer))
            if tree.along == 0:
                return engine.rbind(parts)
            if tree.along == 1:
                return engine.cbind(parts)
            raise DelayedUnsupportedError("combine", f"along={tree.along}")
        finally:
            for p in parts:
                p.free()

    child = await realize_delayed(tree.seed, load_seed, force_integer)
    try:
        if isinstance(tree, UnaryArith):
            if tree.side == "none":
                if tree.op == "-":
                    return engine.delayed_arithmetic(child, "*", -1.0)
                if tree.op == "+":
                    return engine.delayed_arithmetic(child, "*", 1.0)
                raise DelayedUnsupportedError("unary arithmetic", f"unary '{tree.op}'")
            return engine.delayed_arithmetic(
                child, tree.op, tree.value, right=tree.side == "right", along=tree.along
            )

        if isinstance(tree, UnaryMath):
            return engine.delayed_math(child, tree.method, log_base=tree.log_base)

        if isinstance(tree, Transpose):
            if tree.permutation == (0, 1):
                return engine.subset_rows(child, np.arange(child.number_of_rows()))
            if tree.permutation == (1, 0):
                return engine.transpose(child)
            raise DelayedUnsupportedError("transpose", f"permutation {tree.permutation}")

        if isinstance(tree, Subset):
            current = child
            if tree.row_index is not None:
                current = engine.subset_rows(current, tree.row_index)
            if tree.column_index is not None:
                previous = current
                current = engine.subset_columns(current, tree.column_index)
                if previous is not child:
                    previous.free()
            if current is child:
                current = engine.subset_rows(child, np.arange(child.number_of_rows()))
            return current

        raise DelayedUnsupportedError(type(tree).__name__)
    finally:
        child.free()
