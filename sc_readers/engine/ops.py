from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import scipy.sparse as sp

from sc_readers.core.exceptions import DimensionMismatchError, ResourceFailureError
from sc_readers.engine.matrix import MatrixHandle

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------------
# Normalization
# -------------------------------------------------------------------------


def _column_sums(values: Any) -> np.ndarray:
    return np.asarray(values.sum(axis=0), dtype=np.float64).reshape(-1)


def _scale_columns(values: Any, factors: np.ndarray) -> Any:
    if sp.issparse(values):
        return sp.csc_matrix(values.astype(np.float64) @ sp.diags(factors))
    return np.asarray(values, dtype=np.float64) * factors.reshape(1, -1)


def _checked_size_factors(size_factors: Any, ncol: int, allow_zeros: bool) -> np.ndarray:
    sf = np.asarray(size_factors, dtype=np.float64).reshape(-1).copy()
    if sf.shape[0] != ncol:
        raise DimensionMismatchError(
            f"expected {ncol} size factors, got {sf.shape[0]}"
        )
    if not np.all(np.isfinite(sf)) or np.any(sf < 0):
        raise ValueError("size factors must be finite and non-negative")

    zero = sf == 0
    if zero.any():
        if not allow_zeros:
            raise ValueError("size factors of zero are not allowed (see 'allow_zeros')")
        positive = sf[~zero]
        # Zero factors borrow the smallest positive one, or 1 if there are none.
        sf[zero] = positive.min() if positive.size else 1.0
    return sf


def normalize_counts(
        matrix: MatrixHandle,
        size_factors: Any,
        log: bool = True,
        allow_zeros: bool = False,
) -> MatrixHandle:
    """
    Divide each column by its size factor and optionally log2-transform with a pseudo-count of 1.
    """
    values = matrix.values()
    sf = _checked_size_factors(size_factors, values.shape[1], allow_zeros)
    scaled = _scale_columns(values, 1.0 / sf)
    if log:
        if sp.issparse(scaled):
            scaled.data = np.log2(scaled.data + 1.0)
        else:
            scaled = np.log2(scaled + 1.0)
    return MatrixHandle(scaled, identities=matrix.identities())


def log_norm_counts(
        matrix: MatrixHandle,
        size_factors: Optional[Any] = None,
        center: bool = True,
        allow_zeros: bool = False,
) -> MatrixHandle:
    """
    Log-normalized expression values.

    :param size_factors: per-cell factors; defaults to the library sizes
    :param center: scale the size factors to have a mean of 1 first
    :param allow_zeros: replace zero size factors by the smallest positive one instead of failing
    """
    values = matrix.values()
    if size_factors is None:
        size_factors = _column_sums(values)
    sf = _checked_size_factors(size_factors, values.shape[1], allow_zeros)
    if center and sf.size:
        sf = sf / sf.mean()
    return normalize_counts(matrix, sf, log=True, allow_zeros=allow_zeros)


# -------------------------------------------------------------------------
# Delayed operations
# -------------------------------------------------------------------------

_ARITHMETIC: Dict[str, Callable[[Any, Any], Any]] = {
    "+": np.add,
    "-": np.subtract,
    "*": np.multiply,
    "/": np.divide,
    "^": np.power,
    "%%": np.mod,
    "%/%": np.floor_divide,
}

_MATH: Dict[str, Callable[[Any], Any]] = {
    "abs": np.abs,
    "sign": np.sign,
    "sqrt": np.sqrt,
    "ceiling": np.ceil,
    "floor": np.floor,
    "trunc": np.trunc,
    "round": np.round,
    "exp": np.exp,
    "expm1": np.expm1,
    "log1p": np.log1p,
    "log2": np.log2,
    "log10": np.log10,
    "sin": np.sin,
    "cos": np.cos,
    "tan": np.tan,
}


def _operand(value: Any, along: Optional[int], shape: Sequence[int]) -> Any:
    arr = np.asarray(value, dtype=np.float64)
    if arr.size == 1:
        return float(arr.reshape(-1)[0])
    if along not in (0, 1):
        raise ValueError("a vector operand needs 'along' to be 0 (rows) or 1 (columns)")
    arr = arr.reshape(-1)
    if arr.shape[0] != shape[along]:
        raise DimensionMismatchError(
            f"operand of length {arr.shape[0]} does not match dimension {along} of extent {shape[along]}"
        )
    return arr.reshape(-1, 1) if along == 0 else arr.reshape(1, -1)


def _sparse_operand(values: sp.csc_matrix, operand: Any, along: Optional[int]) -> Any:
    """Line up a broadcast operand with the stored entries of a CSC matrix."""
    if isinstance(operand, float):
        return operand
    flat = operand.reshape(-1)
    if along == 0:
        return flat[values.indices]
    return np.repeat(flat, np.diff(values.indptr))


def _preserves_zero(fn: Callable[[Any], Any], operand: Any) -> bool:
    with np.errstate(all="ignore"):
        zeros = fn(np.zeros_like(np.asarray(operand, dtype=np.float64)))
    return bool(np.all(zeros == 0))


def delayed_arithmetic(
        matrix: MatrixHandle,
        operation: str,
        value: Any,
        right: bool = True,
        along: Optional[int] = None,
) -> MatrixHandle:
    """
    Apply `matrix OP value` (right=True) or `value OP matrix` (right=False).

    :param value: scalar, or a vector running along rows (along=0) or columns (along=1)
    """
    if operation not in _ARITHMETIC:
        raise ResourceFailureError(f"unknown arithmetic operation '{operation}'")
    op = _ARITHMETIC[operation]
    values = matrix.values()
    operand = _operand(value, along, values.shape)

    if right:
        fn = lambda x, v=operand: op(x, v)
    else:
        fn = lambda x, v=operand: op(v, x)

    with np.errstate(all="ignore"):
        if sp.issparse(values) and _preserves_zero(fn, operand):
            out = values.astype(np.float64).copy()
            aligned = _sparse_operand(out, operand, along)
            out.data = op(out.data, aligned) if right else op(aligned, out.data)
        else:
            dense = values.toarray() if sp.issparse(values) else values
            out = fn(np.asarray(dense, dtype=np.float64))

    return MatrixHandle(out, identities=matrix.identities())


def delayed_math(matrix: MatrixHandle, operation: str, log_base: Optional[float] = None) -> MatrixHandle:
    """
    Apply an element-wise unary function; 'log' honours an optional base.
    """
    if operation == "log":
        if log_base is None:
            fn = np.log
        else:
            denom = np.log(log_base)
            fn = lambda x: np.log(x) / denom
    elif operation in _MATH:
        fn = _MATH[operation]
    else:
        raise ResourceFailureError(f"unknown math operation '{operation}'")

    values = matrix.values()
    with np.errstate(all="ignore"):
        if sp.issparse(values) and _preserves_zero(fn, 0.0):
            out = values.astype(np.float64).copy()
            out.data = fn(out.data)
        else:
            dense = values.toarray() if sp.issparse(values) else values
            out = fn(np.asarray(dense, dtype=np.float64))

    return MatrixHandle(out, identities=matrix.identities())


def transpose(matrix: MatrixHandle) -> MatrixHandle:
    return MatrixHandle(matrix.values().T)


def subset_rows(matrix: MatrixHandle, indices: Sequence[int]) -> MatrixHandle:
    idx = np.asarray(indices, dtype=np.int64)
    values = matrix.values()
    if idx.size and (idx.min() < 0 or idx.max() >= values.shape[0]):
        raise DimensionMismatchError("row subset indices out of range")
    return MatrixHandle(values[idx, :], identities=matrix.identities()[idx])


def subset_columns(matrix: MatrixHandle, indices: Sequence[int]) -> MatrixHandle:
    idx = np.asarray(indices, dtype=np.int64)
    values = matrix.values()
    if idx.size and (idx.min() < 0 or idx.max() >= values.shape[1]):
        raise DimensionMismatchError("column subset indices out of range")
    return MatrixHandle(values[:, idx], identities=matrix.identities())


def split_rows(matrix: MatrixHandle, groups: Dict[str, Sequence[int]]) -> Dict[str, MatrixHandle]:
    """
    One row subset per group; the input handle is left untouched.
    """
    output: Dict[str, MatrixHandle] = {}
    try:
        for name, indices in groups.items():
            output[name] = subset_rows(matrix, indices)
    except Exception:
        for m in output.values():
            m.free()
        raise
    return output


def _stack(matrices: List[MatrixHandle], along: int) -> Any:
    values = [m.values() for m in matrices]
    if any(sp.issparse(v) for v in values):
        values = [sp.csc_matrix(v) for v in values]
        return sp.vstack(values, format="csc") if along == 0 else sp.hstack(values, format="csc")
    return np.vstack(values) if along == 0 else np.hstack(values)


def rbind(matrices: List[MatrixHandle]) -> MatrixHandle:
    if not matrices:
        raise ValueError("need at least one matrix to combine")
    ncol = {m.number_of_columns() for m in matrices}
    if len(ncol) != 1:
        raise DimensionMismatchError("all matrices must have the same number of columns for rbind")
    return MatrixHandle(_stack(matrices, 0))


def cbind(matrices: List[MatrixHandle]) -> MatrixHandle:
    if not matrices:
        raise ValueError("need at least one matrix to combine")
    nrow = {m.number_of_rows() for m in matrices}
    if len(nrow) != 1:
        raise DimensionMismatchError("all matrices must have the same number of rows for cbind")
    return MatrixHandle(_stack(matrices, 1), identities=matrices[0].identities())


# -------------------------------------------------------------------------
# Feature identifier guessing
# -------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureGuess:
    type: str
    species: str
    confidence: float


_FEATURE_PATTERNS = [
    ("ensembl", "human", re.compile(r"^ENSG\d{11}(\.\d+)?$")),
    ("ensembl", "mouse", re.compile(r"^ENSMUSG\d{11}(\.\d+)?$")),
    ("symbol", "human", re.compile(r"^(?=.*[A-Z])[A-Z0-9][A-Z0-9\-.]*$")),
    ("symbol", "mouse", re.compile(r"^[A-Z](?=.*[a-z])[a-z0-9\-.]*$")),
]


def guess_features(values: Sequence[Optional[str]]) -> FeatureGuess:
    """
    Guess whether identifiers are Ensembl IDs or gene symbols, and for which species.

    The confidence is the fraction of non-missing values matching the winning pattern.
    """
    present = [str(v) for v in values if v is not None and not (isinstance(v, float) and np.isnan(v))]
    if not present:
        return FeatureGuess(type="symbol", species="human", confidence=0.0)

    best = None
    for ftype, species, pattern in _FEATURE_PATTERNS:
        hits = sum(1 for v in present if pattern.match(v))
        score = hits / len(present)
        if best is None or score > best.confidence:
            best = FeatureGuess(type=ftype, species=species, confidence=score)
    return best
