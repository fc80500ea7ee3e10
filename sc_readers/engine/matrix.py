from __future__ import annotations

import itertools
from collections import OrderedDict
from typing import Dict, Iterator, List, Optional, Union

import numpy as np
import scipy.sparse as sp

from sc_readers.core.exceptions import DimensionMismatchError, ResourceFailureError

MatrixData = Union[sp.csc_matrix, np.ndarray]

_handle_ids = itertools.count()
_live_handles: Dict[int, "MatrixHandle"] = {}


def coerce_values(values: np.ndarray, force_integer: bool) -> np.ndarray:
    """
    Integer storage truncates towards zero; otherwise everything is float64.
    """
    values = np.asarray(values)
    if force_integer:
        if values.dtype.kind == "f":
            values = np.trunc(values)
        return values.astype(np.int32)
    return values.astype(np.float64)


def live_handle_count() -> int:
    """Number of MatrixHandles created and not yet freed."""
    return len(_live_handles)


class MatrixHandle:
    """
    Owner of one feature-by-cell matrix.

    Sparse data is held column-compressed so per-cell access is cheap. The
    handle remembers which rows of the originally loaded matrix it holds, so
    callers can re-align feature annotations after subsetting or splitting.
    """

    def __init__(self, data: MatrixData, identities: Optional[np.ndarray] = None) -> None:
        if sp.issparse(data):
            data = sp.csc_matrix(data)
            data.sort_indices()
        else:
            data = np.asarray(data)
            if data.ndim != 2:
                raise ValueError(f"expected a 2-dimensional matrix, got {data.ndim} dimensions")

        if identities is None:
            identities = np.arange(data.shape[0], dtype=np.int32)
        else:
            identities = np.asarray(identities, dtype=np.int32)
            if identities.shape[0] != data.shape[0]:
                raise DimensionMismatchError(
                    f"row identities have length {identities.shape[0]}, matrix has {data.shape[0]} rows"
                )

        self._data: Optional[MatrixData] = data
        self._identities = identities
        self._id = next(_handle_ids)
        _live_handles[self._id] = self

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------
    def _check(self) -> MatrixData:
        if self._data is None:
            raise ResourceFailureError("matrix handle has already been freed")
        return self._data

    @property
    def is_freed(self) -> bool:
        return self._data is None

    @property
    def shape(self) -> tuple:
        return self._check().shape

    def number_of_rows(self) -> int:
        return self._check().shape[0]

    def number_of_columns(self) -> int:
        return self._check().shape[1]

    def identities(self) -> np.ndarray:
        self._check()
        return self._identities.copy()

    def is_sparse(self) -> bool:
        return sp.issparse(self._check())

    def values(self) -> MatrixData:
        """The underlying scipy.sparse.csc_matrix or numpy array (not copied)."""
        return self._check()

    def dense(self) -> np.ndarray:
        data = self._check()
        if sp.issparse(data):
            return data.toarray()
        return data

    def column(self, j: int) -> np.ndarray:
        data = self._check()
        if sp.issparse(data):
            return data.getcol(j).toarray().reshape(-1).astype(np.float64)
        return np.asarray(data[:, j], dtype=np.float64)

    def row(self, i: int) -> np.ndarray:
        data = self._check()
        if sp.issparse(data):
            return data.getrow(i).toarray().reshape(-1).astype(np.float64)
        return np.asarray(data[i, :], dtype=np.float64)

    def free(self) -> None:
        if self._data is not None:
            self._data = None
            _live_handles.pop(self._id, None)

    def __repr__(self) -> str:
        if self._data is None:
            return "MatrixHandle(<freed>)"
        kind = "sparse" if self.is_sparse() else "dense"
        return f"MatrixHandle({self._data.shape[0]}x{self._data.shape[1]}, {kind}, {self._data.dtype})"


class MultiMatrix:
    """
    Ordered mapping of modality name to MatrixHandle, all sharing the same columns.
    """

    def __init__(self, store: Optional[Dict[str, MatrixHandle]] = None) -> None:
        self._store: "OrderedDict[str, MatrixHandle]" = OrderedDict()
        if store:
            try:
                for k, v in store.items():
                    self.add(k, v)
            except Exception:
                for v in store.values():
                    v.free()
                raise

    def add(self, name: str, matrix: MatrixHandle) -> None:
        """
        Add a matrix; an existing entry with the same name is freed and replaced.

        :raises DimensionMismatchError: if the number of columns differs from existing entries
        """
        for key, existing in self._store.items():
            if key != name and existing.number_of_columns() != matrix.number_of_columns():
                raise DimensionMismatchError(
                    f"matrix '{name}' has {matrix.number_of_columns()} columns, "
                    f"expected {existing.number_of_columns()}"
                )
        previous = self._store.get(name)
        if previous is not None and previous is not matrix:
            previous.free()
        self._store[name] = matrix

    def get(self, name: str) -> MatrixHandle:
        try:
            return self._store[name]
        except KeyError:
            raise KeyError(f"no matrix named '{name}' (available: {self.available()})")

    def has(self, name: str) -> bool:
        return name in self._store

    def available(self) -> List[str]:
        return list(self._store.keys())

    def rename(self, old: str, new: str) -> None:
        if old == new:
            return
        matrix = self._store.pop(old)
        if new in self._store:
            self._store.pop(new).free()
        self._store[new] = matrix

    def remove(self, name: str) -> None:
        self._store.pop(name).free()

    def number_of_columns(self) -> int:
        if not self._store:
            return 0
        return next(iter(self._store.values())).number_of_columns()

    def free(self) -> None:
        for matrix in self._store.values():
            matrix.free()
        self._store.clear()

    def __contains__(self, name: str) -> bool:
        return name in self._store

    def __iter__(self) -> Iterator[str]:
        return iter(self._store)

    def __len__(self) -> int:
        return len(self._store)

    def __repr__(self) -> str:
        inner = ", ".join(f"{k!r}: {v!r}" for k, v in self._store.items())
        return f"MultiMatrix({{{inner}}})"


def free(obj: Union[MatrixHandle, MultiMatrix, None]) -> None:
    if obj is not None:
        obj.free()


def initialize_sparse_matrix_from_arrays(
        nrow: int,
        ncol: int,
        data: np.ndarray,
        indices: np.ndarray,
        indptr: np.ndarray,
        by_column: bool = True,
        force_integer: bool = True,
) -> MatrixHandle:
    """
    Wrap compressed sparse vectors that are already in memory.

    :param by_column: whether `indptr` runs over columns (CSC) or rows (CSR)
    """
    values = coerce_values(data, force_integer)
    indices = np.asarray(indices).astype(np.int64)
    indptr = np.asarray(indptr).astype(np.int64)
    try:
        if by_column:
            matrix = sp.csc_matrix((values, indices, indptr), shape=(nrow, ncol))
        else:
            matrix = sp.csr_matrix((values, indices, indptr), shape=(nrow, ncol))
    except ValueError as e:
        raise ResourceFailureError(f"invalid compressed sparse matrix of shape ({nrow}, {ncol}): {e}") from e
    return MatrixHandle(matrix)
