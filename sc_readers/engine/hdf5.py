from __future__ import annotations

import contextlib
import logging
from typing import Any, Iterator, Tuple

import h5py
import numpy as np
import scipy.sparse as sp

from sc_readers.core.exceptions import RequiredFieldMissingError, ResourceFailureError, SchemaUnknownError
from sc_readers.engine.matrix import MatrixHandle, coerce_values

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def open_hdf5(path: str) -> Iterator[h5py.File]:
    """
    Open an HDF5 file read-only, reporting low-level failures as ResourceFailureError.
    """
    try:
        handle = h5py.File(path, "r")
    except OSError as e:
        raise ResourceFailureError(f"failed to open HDF5 file '{path}': {e}") from e
    with handle:
        yield handle


def _child(parent: Any, name: str) -> Any:
    if name not in parent:
        raise RequiredFieldMissingError(f"missing '{name}' in HDF5 file")
    return parent[name]


def _sparse_encoding(group: h5py.Group) -> Tuple[str, Tuple[int, int]]:
    """
    Work out how a sparse group is laid out.

    :return: ("10x", (features, cells)) for 10X-style groups with a 'shape' dataset,
             otherwise ("csr"|"csc", (cells, features)) for H5AD-style groups
    """
    if "shape" in group and isinstance(group["shape"], h5py.Dataset):
        shape = np.asarray(group["shape"][()]).astype(np.int64)
        return "10x", (int(shape[0]), int(shape[1]))

    fmt = group.attrs.get("encoding-type", group.attrs.get("h5sparse_format"))
    shape = group.attrs.get("shape", group.attrs.get("h5sparse_shape"))
    if fmt is None or shape is None:
        raise SchemaUnknownError(f"cannot determine the sparse layout of HDF5 group '{group.name}'")

    if isinstance(fmt, bytes):
        fmt = fmt.decode("utf-8")
    fmt = fmt.replace("_matrix", "")
    if fmt not in ("csr", "csc"):
        raise SchemaUnknownError(f"unknown sparse encoding '{fmt}' for HDF5 group '{group.name}'")
    return fmt, (int(shape[0]), int(shape[1]))


def _read_compressed(group: h5py.Group, force_integer: bool) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    data = coerce_values(_child(group, "data")[()], force_integer)
    indices = np.asarray(_child(group, "indices")[()]).astype(np.int64)
    indptr = np.asarray(_child(group, "indptr")[()]).astype(np.int64)
    return data, indices, indptr


def initialize_sparse_matrix_from_hdf5(path: str, name: str, force_integer: bool = True) -> MatrixHandle:
    """
    Load a features-by-cells sparse matrix from a 10X-style or H5AD-style HDF5 node.

    - Groups with a 'shape' dataset are 10X CSC matrices (features x cells).
    - Groups with encoding attributes are H5AD CSR/CSC matrices (cells x features).
    - Datasets are H5AD dense matrices (cells x features).

    H5AD layouts are transposed so that the result always has features in rows.
    """
    with open_hdf5(path) as f:
        node = _child(f, name)
        try:
            if isinstance(node, h5py.Dataset):
                values = coerce_values(node[()], force_integer)
                if values.ndim != 2:
                    raise SchemaUnknownError(f"HDF5 dataset '{name}' is not 2-dimensional")
                return MatrixHandle(sp.csc_matrix(values.T))

            layout, shape = _sparse_encoding(node)
            data, indices, indptr = _read_compressed(node, force_integer)
            if layout == "10x":
                matrix = sp.csc_matrix((data, indices, indptr), shape=shape)
            elif layout == "csr":
                matrix = sp.csr_matrix((data, indices, indptr), shape=shape).T
            else:
                matrix = sp.csc_matrix((data, indices, indptr), shape=shape).T
        except (KeyError, ValueError) as e:
            raise ResourceFailureError(f"failed to load sparse matrix '{name}' from '{path}': {e}") from e

    return MatrixHandle(matrix)


def extract_hdf5_matrix_details(path: str, name: str) -> Tuple[int, int]:
    """
    Dimensions (features, cells) of the matrix that initialize_sparse_matrix_from_hdf5 would load,
    without reading any values.
    """
    with open_hdf5(path) as f:
        node = _child(f, name)
        if isinstance(node, h5py.Dataset):
            if len(node.shape) != 2:
                raise SchemaUnknownError(f"HDF5 dataset '{name}' is not 2-dimensional")
            return int(node.shape[1]), int(node.shape[0])

        layout, shape = _sparse_encoding(node)
        if layout == "10x":
            return shape
        return shape[1], shape[0]


def initialize_sparse_matrix_from_hdf5_group(
        path: str,
        name: str,
        nrow: int,
        ncol: int,
        csr: bool,
        force_integer: bool = True,
) -> MatrixHandle:
    """
    Load a compressed sparse matrix from a group holding 'data', 'indices' and 'indptr'.

    :param csr: whether the pointers run over rows (CSR) rather than columns (CSC)
    """
    with open_hdf5(path) as f:
        group = _child(f, name)
        try:
            data, indices, indptr = _read_compressed(group, force_integer)
            if csr:
                matrix = sp.csr_matrix((data, indices, indptr), shape=(nrow, ncol))
            else:
                matrix = sp.csc_matrix((data, indices, indptr), shape=(nrow, ncol))
        except ValueError as e:
            raise ResourceFailureError(f"failed to load sparse matrix '{name}' from '{path}': {e}") from e

    return MatrixHandle(matrix)


def initialize_matrix_from_hdf5_dataset(
        path: str,
        name: str,
        transposed: bool = False,
        force_integer: bool = True,
        force_sparse: bool = True,
) -> MatrixHandle:
    """
    Load a 2-dimensional dataset.

    HDF5 lists dimensions with the fastest-changing last, so a column-major
    matrix shows up with its dimensions reversed. Unless `transposed` is set,
    the dataset is therefore flipped to recover the intended matrix.
    """
    with open_hdf5(path) as f:
        ds = _child(f, name)
        if not isinstance(ds, h5py.Dataset) or len(ds.shape) != 2:
            raise SchemaUnknownError(f"'{name}' is not a 2-dimensional HDF5 dataset")
        values = coerce_values(ds[()], force_integer)

    if not transposed:
        values = values.T

    if force_sparse:
        return MatrixHandle(sp.csc_matrix(values))
    return MatrixHandle(np.ascontiguousarray(values))


def initialize_dense_matrix_from_hdf5(path: str, name: str, force_integer: bool = True) -> MatrixHandle:
    return initialize_matrix_from_hdf5_dataset(
        path, name, transposed=False, force_integer=force_integer, force_sparse=False
    )
