from __future__ import annotations

import csv
import gzip
import io
import logging
import os
import zlib
from typing import Any, Iterator, List, Optional, Sequence

import numpy as np

from sc_readers.core.file_ref import FileRef

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b\x08"
DEFAULT_CHUNK_SIZE = 65536

_NAN_STRINGS = {"", "NA", "na", "NaN", "nan"}
_POS_INF_STRINGS = {"Inf", "inf"}
_NEG_INF_STRINGS = {"-Inf", "-inf"}


def is_gzipped(data: bytes) -> bool:
    return len(data) >= 3 and data[:3] == GZIP_MAGIC


def _resolve_compression(head: bytes, compression: Optional[str]) -> bool:
    if compression is None:
        return is_gzipped(head)
    return compression in ("gz", "gzip")


def unpack_text(data: bytes, compression: Optional[str] = None) -> str:
    """
    Decode a byte buffer as UTF-8, inflating it first if it is gzipped.

    :param data: raw file contents
    :param compression: None to auto-detect via the gzip magic bytes, "gz" to force, "none" to skip
    """
    if _resolve_compression(data, compression):
        data = gzip.decompress(data)
    return data.decode("utf-8")


def _open_source(source: Any) -> io.BufferedIOBase:
    if isinstance(source, FileRef):
        source = source.content()
    if isinstance(source, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(source))
    if isinstance(source, (str, os.PathLike)):
        return open(source, "rb")
    raise TypeError(f"cannot read text from an object of type '{type(source).__name__}'")


def iter_chunks(
        source: Any,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        compression: Optional[str] = None,
) -> Iterator[bytes]:
    """
    Yield decompressed byte chunks from bytes, a path or a FileRef.
    Gzip streams are inflated chunk by chunk.
    """
    with _open_source(source) as handle:
        first = handle.read(chunk_size)
        if not first:
            return

        if not _resolve_compression(first, compression):
            yield first
            while True:
                chunk = handle.read(chunk_size)
                if not chunk:
                    return
                yield chunk

        # 16 + MAX_WBITS: expect a gzip header; loop handles concatenated members.
        inflater = zlib.decompressobj(16 + zlib.MAX_WBITS)
        pending = first
        while pending:
            out = inflater.decompress(pending)
            if out:
                yield out
            while inflater.unused_data:
                leftover = inflater.unused_data
                inflater = zlib.decompressobj(16 + zlib.MAX_WBITS)
                out = inflater.decompress(leftover)
                if out:
                    yield out
            pending = handle.read(chunk_size)

        tail = inflater.flush()
        if tail:
            yield tail


def _iter_line_blocks(chunks: Iterator[bytes], chunk_size: int) -> Iterator[str]:
    # Buffer until there's a newline AND enough bytes to be worth parsing.
    buffer = bytearray()
    for chunk in chunks:
        buffer.extend(chunk)
        if len(buffer) < chunk_size:
            continue
        cut = buffer.rfind(b"\n")
        if cut < 0:
            continue
        block = bytes(buffer[:cut + 1])
        del buffer[:cut + 1]
        yield block.decode("utf-8")

    if buffer:
        yield bytes(buffer).decode("utf-8")


def iter_table(
        source: Any,
        delim: str = "\t",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        compression: Optional[str] = None,
) -> Iterator[List[str]]:
    """
    Lazily parse a delimited text file into rows of strings.

    Quoted fields are unquoted, but newlines embedded inside quotes are not
    supported since rows are split on raw newlines before parsing.
    """
    chunks = iter_chunks(source, chunk_size=chunk_size, compression=compression)
    ends_with_newline = True
    for block in _iter_line_blocks(chunks, chunk_size):
        lines = block.split("\n")
        ends_with_newline = lines[-1] == ""
        if ends_with_newline:
            lines.pop()
        for row in csv.reader(lines, delimiter=delim):
            yield row if row else [""]

    # Mirror a plain split of the whole text, which leaves an empty final entry.
    if ends_with_newline:
        yield [""]


def read_table(
        source: Any,
        delim: str = "\t",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        compression: Optional[str] = None,
        first_only: bool = False,
) -> List[List[str]]:
    """
    :param source: bytes, a path or a FileRef
    :param delim: field delimiter
    :param chunk_size: number of bytes to read (and to accumulate before parsing) at a time
    :param compression: None to auto-detect gzip, "gz" to force, "none" to skip
    :param first_only: only return the first row
    :return: list of rows, each a list of strings, without a trailing empty row
    """
    rows: List[List[str]] = []
    for row in iter_table(source, delim=delim, chunk_size=chunk_size, compression=compression):
        rows.append(row)
        if first_only:
            break

    # Only the newline terminating the file is ignored.
    if rows and rows[-1] == [""]:
        rows.pop()

    return rows


def read_lines(
        source: Any,
        compression: Optional[str] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> List[str]:
    """
    Read a text file into lines, ignoring the newline that terminates the file.
    """
    data = b"".join(iter_chunks(source, chunk_size=chunk_size, compression=compression))
    lines = data.decode("utf-8").split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def promote_to_number(values: Sequence[Any]) -> Optional[np.ndarray]:
    """
    Convert strings to float64, recognising the usual spellings of missing
    and infinite values.

    :return: a float64 array, or None if any value cannot be interpreted as a number
    """
    if isinstance(values, np.ndarray) and values.dtype.kind == "f":
        return values.astype(np.float64, copy=False)

    output = np.empty(len(values), dtype=np.float64)
    for i, v in enumerate(values):
        if v is None:
            output[i] = np.nan
            continue

        if isinstance(v, (int, float, np.integer, np.floating)) and not isinstance(v, bool):
            output[i] = float(v)
            continue

        s = str(v)
        if s in _NAN_STRINGS:
            output[i] = np.nan
        elif s in _POS_INF_STRINGS:
            output[i] = np.inf
        elif s in _NEG_INF_STRINGS:
            output[i] = -np.inf
        else:
            try:
                output[i] = float(s)
            except ValueError:
                return None
            # float() also accepts spellings like "infinity" or "nan" that
            # we do not want to promote silently.
            if not np.isfinite(output[i]):
                return None

    return output
