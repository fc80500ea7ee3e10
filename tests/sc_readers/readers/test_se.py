import numpy as np
import pytest

from sc_readers.core.exceptions import FormatMismatchError, SelectorInvalidError
from sc_readers.core.file_ref import FileRef
from sc_readers.readers import SummarizedExperimentDataset, SummarizedExperimentResult

MAIN_COUNTS = np.arange(12, dtype=np.int32).reshape(3, 4)
ADT_COUNTS = np.array([[5, 6, 7, 8]], dtype=np.int32)
PCA = np.array([[0.1, 1.0], [0.2, 2.0], [0.3, 3.0], [0.4, 4.0]])


def _vec(kind, data, **attributes):
    return {"type": kind, "data": data, "attributes": attributes}


def _strings(values):
    return _vec("string", list(values))


def _named_list(entries):
    return _vec("vector", list(entries.values()), names=_strings(entries.keys()))


def _s4(class_name, **attributes):
    return {"type": "S4", "class_name": class_name, "attributes": attributes}


def _dframe(columns, nrows, row_names=None):
    attributes = {"listData": _named_list(columns), "nrows": _vec("integer", np.array([nrows], dtype=np.int32))}
    if row_names is not None:
        attributes["rownames"] = _strings(row_names)
    return _s4("DFrame", **attributes)


def _matrix(values, kind="integer"):
    flat = np.asarray(values).flatten(order="F")
    return _vec(kind, flat, dim=_vec("integer", np.array(values.shape, dtype=np.int32)))


def _se(class_name, row_names, row_data, assays, **extra):
    return _s4(
        class_name,
        NAMES=_strings(row_names),
        elementMetadata=_dframe(row_data, len(row_names)),
        assays=_s4("SimpleAssays", data=_s4("SimpleList", listData=_named_list(assays))),
        **extra,
    )


def _make_sce():
    adt = _se("SummarizedExperiment", ["a1"], {}, {"counts": _matrix(ADT_COUNTS)})
    int_col_data = _dframe(
        {
            "altExps": _dframe({"ADT": _s4("SummarizedExperimentByColumn", se=adt)}, 4),
            "reducedDims": _dframe({"PCA": _matrix(PCA, kind="double"), "labels": _strings(["x"] * 4)}, 4),
        },
        4,
    )
    return _se(
        "SingleCellExperiment",
        ["g1", "g2", "g3"],
        {"symbol": _strings(["G1", "G2", "G3"])},
        {"counts": _matrix(MAIN_COUNTS), "logcounts": _matrix(np.log1p(MAIN_COUNTS), kind="double")},
        colData=_dframe({"sample": _strings(["a", "b", "a", "b"])}, 4, row_names=["c1", "c2", "c3", "c4"]),
        int_colData=int_col_data,
        metadata=_named_list({"author": _strings(["me"])}),
    )


@pytest.fixture
def sce_rds(monkeypatch):
    tree = _make_sce()
    monkeypatch.setattr("sc_readers.rds.parse_rds", lambda path: tree)
    return FileRef(b"serialized R object", name="sce.rds")


async def test_dataset_maps_modalities_onto_experiments(sce_rds, no_leaks):
    # Arrange
    dataset = SummarizedExperimentDataset(sce_rds, {"adt_experiment": 0, "crispr_experiment": None})

    # Act
    loaded = await dataset.load()

    # Assert
    try:
        assert loaded["matrix"].available() == ["RNA", "ADT"]
        assert loaded["matrix"].get("RNA").dense().tolist() == MAIN_COUNTS.tolist()
        assert loaded["matrix"].get("ADT").dense().tolist() == ADT_COUNTS.tolist()
    finally:
        loaded["matrix"].free()
    assert loaded["primary_ids"] == {"RNA": ["g1", "g2", "g3"], "ADT": ["a1"]}
    assert loaded["features"]["RNA"]["symbol"].tolist() == ["G1", "G2", "G3"]
    assert list(loaded["cells"].index) == ["c1", "c2", "c3", "c4"]


async def test_unmatched_experiment_names_skip_the_modality(sce_rds, no_leaks):
    dataset = SummarizedExperimentDataset(sce_rds)

    loaded = await dataset.load()

    try:
        assert loaded["matrix"].available() == ["RNA"]
    finally:
        loaded["matrix"].free()
    assert list(loaded["features"].keys()) == ["RNA"]


async def test_assay_setters_target_their_own_modality(sce_rds, no_leaks):
    dataset = SummarizedExperimentDataset(sce_rds)
    dataset.set_options({"rna_count_assay": "logcounts", "crispr_count_assay": 1, "adt_experiment": "ADT"})

    options = dataset.options()
    loaded = await dataset.load()

    try:
        assert options["rna_count_assay"] == "logcounts"
        assert options["adt_count_assay"] == 0
        assert options["crispr_count_assay"] == 1
        assert loaded["matrix"].get("RNA").dense().tolist() == np.trunc(np.log1p(MAIN_COUNTS)).tolist()
    finally:
        loaded["matrix"].free()


async def test_summary_and_preview(sce_rds, no_leaks):
    dataset = SummarizedExperimentDataset(sce_rds, {"adt_experiment": "ADT", "primary_rna_feature_id_column": "symbol"})

    summary = await dataset.summary()
    preview = await dataset.preview_primary_ids()

    assert list(summary["modality_features"].keys()) == ["", "ADT"]
    assert summary["modality_assay_names"] == {"": ["counts", "logcounts"], "ADT": ["counts"]}
    assert preview == {"RNA": ["G1", "G2", "G3"], "ADT": ["a1"]}


async def test_bad_assay_selector(sce_rds, no_leaks):
    dataset = SummarizedExperimentDataset(sce_rds, {"rna_count_assay": "spliced"})

    with pytest.raises(SelectorInvalidError, match="spliced"):
        await dataset.load()


async def test_non_experiment_objects_are_rejected(monkeypatch, no_leaks):
    monkeypatch.setattr("sc_readers.rds.parse_rds", lambda path: _s4("GRanges"))

    with pytest.raises(FormatMismatchError, match="GRanges"):
        await SummarizedExperimentDataset(FileRef(b"x", name="ranges.rds")).summary()


# -------------------------------------------------------------------------
# Results
# -------------------------------------------------------------------------

async def test_result_loads_every_experiment(sce_rds, no_leaks):
    result = SummarizedExperimentResult(sce_rds, {"primary_assay": {"": "logcounts", "ADT": 0}})

    summary = await result.summary()
    loaded = await result.load()

    assert summary["reduced_dimension_names"] == ["PCA"]
    assert summary["other_metadata"] == {"author": "me"}
    try:
        assert loaded["matrix"].available() == ["", "ADT"]
        np.testing.assert_allclose(loaded["matrix"].get("").dense(), np.log1p(MAIN_COUNTS))
    finally:
        loaded["matrix"].free()
    assert [d.tolist() for d in loaded["reduced_dimensions"]["PCA"]] == [PCA[:, 0].tolist(), PCA[:, 1].tolist()]


async def test_result_normalizes_raw_experiments(sce_rds, no_leaks):
    result = SummarizedExperimentResult(
        sce_rds,
        {"primary_assay": {"ADT": "counts"}, "is_primary_normalized": {"ADT": False}, "reduced_dimension_names": []},
    )

    loaded = await result.load()

    try:
        assert loaded["matrix"].available() == ["ADT"]
        adt = loaded["matrix"].get("ADT").dense()
        assert adt.shape == (1, 4)
        assert adt.dtype == np.float64
    finally:
        loaded["matrix"].free()
    assert loaded["reduced_dimensions"] == {}
