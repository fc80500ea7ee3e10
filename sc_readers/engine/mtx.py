from __future__ import annotations

import gzip
import io
import os
from typing import Optional, Tuple, Union

import scipy.io
import scipy.sparse as sp

from sc_readers.core.exceptions import ResourceFailureError, SchemaUnknownError
from sc_readers.engine.matrix import MatrixHandle, coerce_values
from sc_readers.utils.text import is_gzipped

MtxContent = Union[bytes, str, os.PathLike]


def _read_bytes(content: MtxContent) -> bytes:
    if isinstance(content, (str, os.PathLike)):
        with open(content, "rb") as handle:
            return handle.read()
    return bytes(content)


def _decompress(data: bytes, compressed: Optional[bool]) -> bytes:
    if compressed is None:
        compressed = is_gzipped(data)
    if compressed:
        return gzip.decompress(data)
    return data


def extract_matrix_market_dimensions(content: MtxContent, compressed: Optional[bool] = None) -> Tuple[int, int]:
    """
    Read (rows, columns) from the size line of a Matrix Market file without decoding its entries.
    """
    if isinstance(content, (str, os.PathLike)):
        opener = gzip.open if compressed or (compressed is None and _path_is_gzipped(content)) else open
        with opener(content, "rb") as handle:
            return _parse_size_line(handle)

    data = _decompress(_read_bytes(content), compressed)
    return _parse_size_line(io.BytesIO(data))


def _path_is_gzipped(path: MtxContent) -> bool:
    with open(path, "rb") as handle:
        return is_gzipped(handle.read(3))


def _parse_size_line(handle) -> Tuple[int, int]:
    first = True
    for raw in handle:
        line = raw.decode("utf-8").strip()
        if first:
            first = False
            if not line.startswith("%%MatrixMarket"):
                raise SchemaUnknownError("missing '%%MatrixMarket' banner in Matrix Market file")
            continue
        if not line or line.startswith("%"):
            continue
        fields = line.split()
        if len(fields) < 2:
            break
        return int(fields[0]), int(fields[1])
    raise SchemaUnknownError("could not find the size line of the Matrix Market file")


def initialize_sparse_matrix_from_matrix_market(
        content: MtxContent,
        compressed: Optional[bool] = None,
        force_integer: bool = True,
) -> MatrixHandle:
    """
    Decode a (possibly gzipped) Matrix Market coordinate file into a features-by-cells matrix.
    """
    data = _decompress(_read_bytes(content), compressed)
    try:
        loaded = scipy.io.mmread(io.BytesIO(data))
    except (ValueError, IndexError) as e:
        raise ResourceFailureError(f"failed to parse Matrix Market content: {e}") from e

    matrix = sp.csc_matrix(loaded)
    matrix.data = coerce_values(matrix.data, force_integer)
    return MatrixHandle(matrix)
