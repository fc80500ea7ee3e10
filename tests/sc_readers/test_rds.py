import numpy as np
import pandas as pd
from biocutils import IntegerList, NamedList, StringList
from rds2py import save_rds

from sc_readers.rds import RObject, r_data_frame, r_list_to_python, r_vector_column


def _vec(kind, data, **attributes):
    return {"type": kind, "data": data, "attributes": attributes}


def _strings(values):
    return _vec("string", list(values))


def _base_data_frame(columns, row_names):
    return _vec(
        "vector",
        list(columns.values()),
        names=_strings(columns.keys()),
        **{"class": _strings(["data.frame"]), "row.names": row_names},
    )


# -------------------------------------------------------------------------
# Missing values as the parser delivers them
# -------------------------------------------------------------------------

def test_integer_na_arrives_as_nan():
    column = r_vector_column(RObject(_vec("integer", np.array([1.0, np.nan, 3.0]))))

    assert pd.isna(column[1])
    assert [column[0], column[2]] == [1, 3]


def test_logical_na_arrives_as_none():
    column = r_vector_column(RObject(_vec("boolean", np.array([True, None, False], dtype=object))))

    assert column[0]
    assert pd.isna(column[1])
    assert not column[2]


def test_factor_with_missing_codes():
    factor = _vec("integer", np.array([2.0, np.nan, 1.0]), levels=_strings(["lo", "hi"]), **{"class": _strings(["factor"])})

    column = r_vector_column(RObject(factor))

    assert list(column.categories) == ["lo", "hi"]
    assert column[0] == "hi"
    assert pd.isna(column[1])
    assert column[2] == "lo"


def test_base_data_frame_row_counts():
    # Arrange: expanded 1..n row names and the stored c(NA, -n) form
    expanded = _base_data_frame({"n": _vec("integer", np.array([4, 5]))}, _vec("integer", range(1, 3)))
    stored = _base_data_frame(
        {"n": _vec("integer", np.array([4.0, np.nan, 6.0]))},
        _vec("integer", np.array([-2147483648, -3], dtype=np.int32)),
    )

    # Act
    two = r_data_frame(RObject(expanded))
    three = r_data_frame(RObject(stored))

    # Assert
    assert two.shape == (2, 1)
    assert three.shape == (3, 1)
    assert three["n"].isna().tolist() == [False, True, False]


# -------------------------------------------------------------------------
# Real files
# -------------------------------------------------------------------------

def test_saved_integer_vector_keeps_na(tmp_path):
    path = tmp_path / "ints.rds"
    save_rds(IntegerList([1, None, 3]), str(path))

    column = r_vector_column(RObject.from_file(path))

    assert pd.isna(column[1])
    assert [column[0], column[2]] == [1, 3]


def test_saved_named_list_becomes_metadata(tmp_path):
    path = tmp_path / "metadata.rds"
    save_rds(NamedList([StringList(["wet"]), IntegerList([2, None])], names=["lab", "counts"]), str(path))

    metadata = r_list_to_python(RObject.from_file(path))

    assert metadata == {"lab": "wet", "counts": [2, None]}
