import gzip

import anndata as ad
import h5py
import numpy as np
import pandas as pd
import pytest
import scipy.io
import scipy.sparse as sp

from sc_readers import engine

TENX_COUNTS = np.array(
    [
        [1, 0, 2, 0],
        [0, 3, 0, 4],
        [5, 0, 0, 6],
    ],
    dtype=np.int32,
)


def _strings(group, name, values):
    return group.create_dataset(name, data=list(values), dtype=h5py.string_dtype())


@pytest.fixture
def tenx_h5(tmp_path):
    """10X HDF5 file with two RNA features and one ADT feature over four cells."""
    path = tmp_path / "filtered.h5"
    counts = sp.csc_matrix(TENX_COUNTS)

    with h5py.File(path, "w") as f:
        m = f.create_group("matrix")
        m.create_dataset("data", data=counts.data)
        m.create_dataset("indices", data=counts.indices)
        m.create_dataset("indptr", data=counts.indptr)
        m.create_dataset("shape", data=np.array(counts.shape, dtype=np.int64))
        _strings(m, "barcodes", ["c1", "c2", "c3", "c4"])
        feats = m.create_group("features")
        _strings(feats, "id", ["g1", "g2", "a1"])
        _strings(feats, "name", ["G1", "G2", "A1"])
        _strings(feats, "feature_type", ["Gene Expression", "Gene Expression", "Antibody Capture"])

    return path


@pytest.fixture
def h5ad_file(tmp_path):
    """H5AD with 3 cells x 4 genes, a feature type column and a PCA embedding."""
    obs = pd.DataFrame(
        {
            "cluster": pd.Categorical(["A", "B", "A"]),
            "total": [10.0, 20.0, 30.0],
        },
        index=pd.Index(["c1", "c2", "c3"]),
    )
    var = pd.DataFrame(
        {
            "gene_symbols": ["S1", "S2", "S3", "S4"],
            "feature_types": ["Gene Expression", "Gene Expression", "Gene Expression", "Antibody Capture"],
        },
        index=pd.Index(["ENSG00000000001", "ENSG00000000002", "ENSG00000000003", "ab1"]),
    )
    X = sp.csr_matrix(np.array([[1, 0, 2, 7], [0, 3, 0, 8], [4, 0, 5, 9]], dtype=np.float32))

    adata = ad.AnnData(X=X, obs=obs, var=var)
    adata.layers["counts"] = X.copy()
    adata.obsm["X_pca"] = np.array([[0.1, 0.2], [0.3, 0.4], [0.5, 0.6]])

    path = tmp_path / "small.h5ad"
    adata.write_h5ad(path)
    return path


@pytest.fixture
def mtx_dir(tmp_path):
    """
    Directory holding a gzipped 5x3 Matrix Market file and a header-less gzipped genes file.
    """
    counts = sp.coo_matrix(
        np.array(
            [
                [1, 0, 0],
                [0, 2, 0],
                [0, 0, 3],
                [4, 0, 5],
                [0, 6, 0],
            ],
            dtype=np.int64,
        )
    )
    plain = tmp_path / "matrix.mtx"
    scipy.io.mmwrite(str(plain), counts)
    with open(plain, "rb") as f:
        (tmp_path / "matrix.mtx.gz").write_bytes(gzip.compress(f.read()))

    lines = [f"ENSG0000000000{i}\tSYM{i}\tGene Expression" for i in range(5)]
    (tmp_path / "genes.tsv.gz").write_bytes(gzip.compress(("\n".join(lines) + "\n").encode("utf-8")))
    return tmp_path


@pytest.fixture
def no_leaks():
    """
    Fails the test if it leaves MatrixHandles or temporary files behind.
    """
    handles = engine.live_handle_count()
    temporaries = engine.live_temporary_files()
    yield
    assert engine.live_handle_count() == handles
    assert engine.live_temporary_files() == temporaries
