import numpy as np
import pandas as pd
import pytest

from sc_readers.engine import MatrixHandle, MultiMatrix
from sc_readers.integrations.anndata import to_anndata
from sc_readers.readers import H5adResult, TenxHdf5Dataset

from conftest import TENX_COUNTS


async def test_dataset_modality_becomes_cells_by_features(tenx_h5, no_leaks):
    # Arrange
    loaded = await TenxHdf5Dataset(str(tenx_h5)).load()

    # Act
    try:
        adata = to_anndata(loaded, "RNA")
    finally:
        loaded["matrix"].free()

    # Assert
    assert adata.shape == (4, 2)
    assert list(adata.var_names) == ["g1", "g2"]
    assert adata.X.toarray().tolist() == TENX_COUNTS[:2].T.tolist()
    assert list(adata.var.columns) == ["id", "name", "type"]


async def test_result_reduced_dimensions_land_in_obsm(h5ad_file, no_leaks):
    loaded = await H5adResult(str(h5ad_file)).load()

    try:
        adata = to_anndata(loaded, "", feature_id_column="gene_symbols")
    finally:
        loaded["matrix"].free()

    assert list(adata.var_names) == ["S1", "S2", "S3", "S4"]
    np.testing.assert_allclose(adata.obsm["X_pca"], [[0.1, 0.2], [0.3, 0.4], [0.5, 0.6]])


def test_duplicate_names_are_made_unique(no_leaks):
    matrix = MultiMatrix({"RNA": MatrixHandle(np.array([[1, 2], [3, 4]]))})
    loaded = {
        "matrix": matrix,
        "features": {"RNA": pd.DataFrame({"symbol": ["A", "A"]})},
        "cells": pd.DataFrame({"nested": [{"x": 1}, {"x": 2}]}),
        "primary_ids": {"RNA": ["A", "A"]},
    }

    adata = to_anndata(loaded)
    matrix.free()

    assert adata.var_names.is_unique
    assert list(adata.obs_names) == ["0", "1"]
    assert "nested" not in adata.obs.columns


def test_unknown_modality(no_leaks):
    loaded = {"matrix": MultiMatrix(), "features": {}, "cells": pd.DataFrame()}

    with pytest.raises(KeyError, match="'ADT' not loaded"):
        to_anndata(loaded, "ADT")
