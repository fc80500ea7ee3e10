import numpy as np
import pytest
import scipy.sparse as sp

from sc_readers import engine
from sc_readers.core.exceptions import DimensionMismatchError, ResourceFailureError
from sc_readers.engine import MatrixHandle, MultiMatrix


def test_coerce_values_truncates_for_integers():
    values = np.array([1.9, -1.9, 2.0])

    assert engine.coerce_values(values, True).tolist() == [1, -1, 2]
    assert engine.coerce_values(values, True).dtype == np.int32
    assert engine.coerce_values(np.array([1, 2]), False).dtype == np.float64


def test_handle_accounting_and_free(no_leaks):
    before = engine.live_handle_count()

    handle = MatrixHandle(sp.csr_matrix(np.eye(3)))
    assert engine.live_handle_count() == before + 1
    assert handle.is_sparse()
    assert isinstance(handle.values(), sp.csc_matrix)

    handle.free()
    handle.free()
    assert engine.live_handle_count() == before
    assert handle.is_freed
    with pytest.raises(ResourceFailureError, match="already been freed"):
        handle.values()


def test_handle_rows_columns_and_identities(no_leaks):
    handle = MatrixHandle(np.array([[1, 2], [3, 4], [5, 6]]), identities=np.array([4, 5, 6]))
    try:
        assert handle.shape == (3, 2)
        assert handle.number_of_rows() == 3
        assert handle.number_of_columns() == 2
        assert handle.identities().tolist() == [4, 5, 6]
        assert handle.row(1).tolist() == [3.0, 4.0]
        assert handle.column(1).tolist() == [2.0, 4.0, 6.0]
    finally:
        handle.free()


def test_handle_rejects_mismatched_identities():
    with pytest.raises(DimensionMismatchError):
        MatrixHandle(np.zeros((2, 2)), identities=np.array([0]))


def test_multi_matrix_requires_shared_columns(no_leaks):
    multi = MultiMatrix()
    multi.add("RNA", MatrixHandle(np.zeros((2, 3))))
    bad = MatrixHandle(np.zeros((2, 4)))
    try:
        with pytest.raises(DimensionMismatchError, match="has 4 columns, expected 3"):
            multi.add("ADT", bad)
    finally:
        bad.free()
        multi.free()


def test_multi_matrix_add_replaces_and_frees_previous(no_leaks):
    first = MatrixHandle(np.zeros((2, 3)))
    second = MatrixHandle(np.ones((2, 3)))
    multi = MultiMatrix({"RNA": first})

    multi.add("RNA", second)

    assert first.is_freed
    assert multi.get("RNA") is second
    assert multi.available() == ["RNA"]
    multi.free()
    assert second.is_freed
    assert len(multi) == 0


def test_multi_matrix_rename_remove_and_lookup(no_leaks):
    multi = MultiMatrix({"": MatrixHandle(np.zeros((1, 2))), "ADT": MatrixHandle(np.zeros((1, 2)))})

    multi.rename("", "RNA")
    assert multi.available() == ["ADT", "RNA"]
    assert "RNA" in multi
    assert multi.has("ADT")
    assert multi.number_of_columns() == 2

    multi.remove("ADT")
    assert multi.available() == ["RNA"]
    with pytest.raises(KeyError, match="no matrix named 'ADT'"):
        multi.get("ADT")
    engine.free(multi)


def test_initialize_sparse_matrix_from_arrays(no_leaks):
    dense = np.array([[1, 0], [0, 2], [3, 0]])
    csc = sp.csc_matrix(dense)
    csr = sp.csr_matrix(dense)

    by_column = engine.initialize_sparse_matrix_from_arrays(3, 2, csc.data, csc.indices, csc.indptr)
    by_row = engine.initialize_sparse_matrix_from_arrays(3, 2, csr.data, csr.indices, csr.indptr, by_column=False)

    try:
        assert by_column.dense().tolist() == dense.tolist()
        assert by_row.dense().tolist() == dense.tolist()
    finally:
        by_column.free()
        by_row.free()


def test_initialize_sparse_matrix_from_inconsistent_arrays_fails():
    with pytest.raises(ResourceFailureError):
        engine.initialize_sparse_matrix_from_arrays(2, 2, np.array([1.0]), np.array([0]), np.array([0, 1]))
