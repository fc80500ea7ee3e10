import gzip
import os

import h5py
import numpy as np
import pytest
import scipy.io
import scipy.sparse as sp

from sc_readers import engine
from sc_readers.core.exceptions import RequiredFieldMissingError, ResourceFailureError, SchemaUnknownError

from conftest import TENX_COUNTS


def _consume(handle):
    try:
        return handle.dense()
    finally:
        handle.free()


# -------------------------------------------------------------------------
# HDF5
# -------------------------------------------------------------------------

def _make_h5ad_style(tmp_path):
    """Cells x features matrices in the layouts AnnData writes."""
    dense = np.array([[1, 0, 2], [0, 3, 0]], dtype=np.float32)
    csr = sp.csr_matrix(dense)
    csc = sp.csc_matrix(dense)
    path = tmp_path / "layouts.h5"
    with h5py.File(path, "w") as f:
        f.create_dataset("dense", data=dense)
        g = f.create_group("csr")
        g.attrs["encoding-type"] = "csr_matrix"
        g.attrs["shape"] = np.array(dense.shape)
        g.create_dataset("data", data=csr.data)
        g.create_dataset("indices", data=csr.indices)
        g.create_dataset("indptr", data=csr.indptr)
        g = f.create_group("csc")
        g.attrs["h5sparse_format"] = "csc"
        g.attrs["h5sparse_shape"] = np.array(dense.shape)
        g.create_dataset("data", data=csc.data)
        g.create_dataset("indices", data=csc.indices)
        g.create_dataset("indptr", data=csc.indptr)
        f.create_group("unknown")
    return path, dense


def test_sparse_hdf5_loader_transposes_h5ad_layouts(tmp_path, no_leaks):
    path, dense = _make_h5ad_style(tmp_path)

    for name in ("dense", "csr", "csc"):
        assert engine.extract_hdf5_matrix_details(str(path), name) == (3, 2)
        assert _consume(engine.initialize_sparse_matrix_from_hdf5(str(path), name)).tolist() == dense.T.tolist()


def test_sparse_hdf5_loader_reads_tenx_layout(tenx_h5, no_leaks):
    assert engine.extract_hdf5_matrix_details(str(tenx_h5), "matrix") == (3, 4)

    loaded = engine.initialize_sparse_matrix_from_hdf5(str(tenx_h5), "matrix")
    assert loaded.values().dtype == np.int32
    assert _consume(loaded).tolist() == TENX_COUNTS.tolist()


def test_sparse_hdf5_loader_reports_unknown_layouts(tmp_path):
    path, _ = _make_h5ad_style(tmp_path)

    with pytest.raises(SchemaUnknownError, match="sparse layout"):
        engine.initialize_sparse_matrix_from_hdf5(str(path), "unknown")
    with pytest.raises(RequiredFieldMissingError, match="missing 'absent'"):
        engine.initialize_sparse_matrix_from_hdf5(str(path), "absent")


def test_open_hdf5_wraps_low_level_failures(tmp_path):
    bogus = tmp_path / "not-hdf5.h5"
    bogus.write_bytes(b"definitely not HDF5")

    with pytest.raises(ResourceFailureError, match="failed to open HDF5 file"):
        with engine.open_hdf5(str(bogus)):
            pass


def test_dense_dataset_orientation(tmp_path, no_leaks):
    path = tmp_path / "dense.h5"
    stored = np.arange(6, dtype=np.float64).reshape(2, 3)
    with h5py.File(path, "w") as f:
        f.create_dataset("values", data=stored)

    flipped = engine.initialize_matrix_from_hdf5_dataset(str(path), "values", force_integer=False)
    kept = engine.initialize_matrix_from_hdf5_dataset(str(path), "values", transposed=True, force_sparse=False)
    dense = engine.initialize_dense_matrix_from_hdf5(str(path), "values")

    assert flipped.is_sparse()
    assert _consume(flipped).tolist() == stored.T.tolist()
    assert not kept.is_sparse()
    assert _consume(kept).tolist() == stored.tolist()
    assert _consume(dense).tolist() == stored.T.tolist()


def test_sparse_group_loader(tmp_path, no_leaks):
    dense = np.array([[0, 1], [2, 0], [0, 3]])
    csr = sp.csr_matrix(dense)
    path = tmp_path / "group.h5"
    with h5py.File(path, "w") as f:
        g = f.create_group("m")
        g.create_dataset("data", data=csr.data)
        g.create_dataset("indices", data=csr.indices)
        g.create_dataset("indptr", data=csr.indptr)

    loaded = engine.initialize_sparse_matrix_from_hdf5_group(str(path), "m", 3, 2, csr=True)

    assert _consume(loaded).tolist() == dense.tolist()


# -------------------------------------------------------------------------
# Matrix Market
# -------------------------------------------------------------------------

def test_matrix_market_dimensions_and_load(mtx_dir, no_leaks):
    plain = mtx_dir / "matrix.mtx"
    compressed = mtx_dir / "matrix.mtx.gz"

    assert engine.extract_matrix_market_dimensions(str(plain)) == (5, 3)
    assert engine.extract_matrix_market_dimensions(str(compressed)) == (5, 3)
    assert engine.extract_matrix_market_dimensions(compressed.read_bytes()) == (5, 3)

    from_path = _consume(engine.initialize_sparse_matrix_from_matrix_market(str(compressed)))
    from_bytes = _consume(engine.initialize_sparse_matrix_from_matrix_market(plain.read_bytes(), compressed=False))
    assert from_path.tolist() == from_bytes.tolist()
    assert from_path[3].tolist() == [4, 0, 5]


def test_matrix_market_without_banner_is_rejected():
    with pytest.raises(SchemaUnknownError, match="banner"):
        engine.extract_matrix_market_dimensions(b"5 3 2\n1 1 1\n")


def test_matrix_market_gzip_detection_by_magic_bytes(tmp_path):
    path = tmp_path / "m.mtx"
    scipy.io.mmwrite(str(path), sp.coo_matrix(np.eye(2)))

    assert engine.extract_matrix_market_dimensions(gzip.compress(path.read_bytes())) == (2, 2)


# -------------------------------------------------------------------------
# Temporary files
# -------------------------------------------------------------------------

def test_realize_file_passes_paths_through(tmp_path):
    path, flush = engine.realize_file(str(tmp_path / "x.h5"))

    assert path == str(tmp_path / "x.h5")
    flush()


def test_realize_file_writes_bytes_until_flushed():
    before = engine.live_temporary_files()

    path, flush = engine.realize_file(b"payload", suffix=".rds")
    assert path.endswith(".rds")
    assert path in engine.live_temporary_files()
    with open(path, "rb") as f:
        assert f.read() == b"payload"

    flush()
    flush()
    assert not os.path.exists(path)
    assert engine.live_temporary_files() == before
