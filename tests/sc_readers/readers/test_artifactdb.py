import gzip
import io
import json
import zipfile

import h5py
import numpy as np
import pytest
import scipy.sparse as sp

from sc_readers.core.exceptions import FormatMismatchError
from sc_readers.core.file_ref import FileRef
from sc_readers.readers import ZippedArtifactdbDataset, ZippedArtifactdbResult, search_zipped_artifactdb

COUNTS = np.array([[1, 0, 2, 0], [0, 3, 0, 4], [5, 0, 0, 6]], dtype=np.int32)
ADT = np.array([[7, 8, 9, 10]], dtype=np.int32)
PCA = np.array([[0.5, 1.5, 2.5, 3.5], [-1.0, -2.0, -3.0, -4.0]])


def _h5_bytes(tmp_path, name, write):
    path = tmp_path / name
    with h5py.File(path, "w") as f:
        write(f)
    return path.read_bytes()


def _write_sparse(f):
    csc = sp.csc_matrix(COUNTS)
    group = f.create_group("matrix")
    group.create_dataset("data", data=csc.data)
    group.create_dataset("indices", data=csc.indices)
    group.create_dataset("indptr", data=csc.indptr)
    group.create_dataset("shape", data=np.array(COUNTS.shape))


def _frame_meta(path, columns, nrows, row_names):
    return {
        "$schema": "csv_data_frame/v1.json",
        "path": path,
        "data_frame": {"columns": columns, "dimensions": [nrows, len(columns)], "row_names": row_names},
    }


def _make_project(tmp_path):
    """
    ArtifactDB project with one SingleCellExperiment ('sce') holding an ADT
    alternative experiment, plus an unrelated top-level experiment ('bulk').
    """
    experiment = {
        "$schema": "single_cell_experiment/v1.json",
        "path": "sce/experiment.json",
        "summarized_experiment": {
            "dimensions": [3, 4],
            "assays": [
                {"name": "counts", "resource": {"type": "local", "path": "sce/assay-1/matrix.h5"}},
            ],
            "row_data": {"resource": {"type": "local", "path": "sce/rowdata"}},
            "column_data": {"resource": {"type": "local", "path": "sce/coldata/simple.csv"}},
            "other_data": {"resource": {"type": "local", "path": "sce/other/list.json.gz"}},
        },
        "single_cell_experiment": {
            "alternative_experiments": [
                {"name": "ADT", "resource": {"type": "local", "path": "sce/altexp-1/experiment.json"}},
            ],
            "reduced_dimensions": [
                {"name": "PCA", "resource": {"type": "local", "path": "sce/reddim-1/matrix.h5"}},
            ],
        },
    }
    adt = {
        "$schema": "summarized_experiment/v1.json",
        "path": "sce/altexp-1/experiment.json",
        "summarized_experiment": {
            "dimensions": [1, 4],
            "assays": [{"name": "counts", "resource": {"type": "local", "path": "sce/altexp-1/assay-1/matrix.h5"}}],
        },
    }
    bulk = {
        "$schema": "summarized_experiment/v1.json",
        "path": "bulk/experiment.json",
        "summarized_experiment": {"dimensions": [10, 2], "assays": []},
    }
    other = {"type": "list", "names": ["version"], "values": [{"type": "string", "values": "1.0"}]}

    entries = {
        "sce/experiment.json": json.dumps(experiment),
        "sce/assay-1/matrix.h5": _h5_bytes(tmp_path, "main.h5", _write_sparse),
        "sce/assay-1/matrix.h5.json": json.dumps(
            {"$schema": "hdf5_sparse_matrix/v1.json", "path": "sce/assay-1/matrix.h5", "hdf5_sparse_matrix": {"group": "matrix"}}
        ),
        "sce/rowdata.json": json.dumps(
            {
                "$schema": "redirection/v1.json",
                "redirection": {"targets": [{"type": "local", "location": "sce/rowdata/simple.csv"}]},
            }
        ),
        "sce/rowdata/simple.csv": '"","symbol"\n"g1","G1"\n"g2","G2"\n"g3","G3"\n',
        "sce/rowdata/simple.csv.json": json.dumps(
            _frame_meta("sce/rowdata/simple.csv", [{"name": "symbol", "type": "string"}], 3, True)
        ),
        "sce/coldata/simple.csv": '"sample"\n"a"\n"b"\n"a"\n"b"\n',
        "sce/coldata/simple.csv.json": json.dumps(
            _frame_meta("sce/coldata/simple.csv", [{"name": "sample", "type": "string"}], 4, False)
        ),
        "sce/other/list.json.gz": gzip.compress(json.dumps(other).encode("utf-8")),
        "sce/other/list.json.gz.json": json.dumps(
            {"$schema": "json_simple_list/v1.json", "path": "sce/other/list.json.gz", "json_simple_list": {"compression": "gzip"}}
        ),
        "sce/altexp-1/experiment.json": json.dumps(adt),
        "sce/altexp-1/assay-1/matrix.h5": _h5_bytes(
            tmp_path, "adt.h5", lambda f: f.create_dataset("counts", data=ADT.T)
        ),
        "sce/altexp-1/assay-1/matrix.h5.json": json.dumps(
            {"$schema": "hdf5_dense_array/v1.json", "path": "sce/altexp-1/assay-1/matrix.h5", "hdf5_dense_array": {"dataset": "counts"}}
        ),
        "sce/reddim-1/matrix.h5": _h5_bytes(tmp_path, "pca.h5", lambda f: f.create_dataset("pca", data=PCA)),
        "sce/reddim-1/matrix.h5.json": json.dumps(
            {
                "$schema": "hdf5_dense_array/v1.json",
                "path": "sce/reddim-1/matrix.h5",
                "array": {"dimensions": [4, 2]},
                "hdf5_dense_array": {"dataset": "pca"},
            }
        ),
        "bulk/experiment.json": json.dumps(bulk),
        "notes.json": "not json at all",
    }

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    path = tmp_path / "project.zip"
    path.write_bytes(buffer.getvalue())
    return path


@pytest.fixture
def project_zip(tmp_path):
    return _make_project(tmp_path)


def test_search_finds_top_level_experiments_only(project_zip):
    with zipfile.ZipFile(project_zip) as archive:
        found = search_zipped_artifactdb(archive)

    assert found == {"bulk/experiment": [10, 2], "sce/experiment": [3, 4]}


def test_search_keeps_sibling_experiments(tmp_path):
    # Arrange: two experiments side by side, one referencing an alternative
    # experiment that sorts before it, and an object nested under the first
    def se(dims, **extra):
        return json.dumps({"summarized_experiment": {"dimensions": dims}, **extra})

    path = tmp_path / "siblings.zip"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("proj/first.json", se([5, 2]))
        archive.writestr("proj/first/nested.json", se([1, 2]))
        archive.writestr("proj/adt.json", se([3, 6]))
        archive.writestr(
            "proj/second.json",
            se(
                [4, 6],
                single_cell_experiment={
                    "alternative_experiments": [{"name": "ADT", "resource": {"path": "proj/adt.json"}}]
                },
            ),
        )

    # Act
    with zipfile.ZipFile(path) as archive:
        found = search_zipped_artifactdb(archive)

    # Assert
    assert found == {"proj/first": [5, 2], "proj/second": [4, 6]}


async def test_dataset_loads_main_and_alternative_experiments(project_zip, no_leaks):
    # Arrange
    dataset = ZippedArtifactdbDataset("sce/experiment", str(project_zip), {"adt_experiment": "ADT"})

    # Act
    loaded = await dataset.load()

    # Assert
    try:
        assert loaded["matrix"].available() == ["RNA", "ADT"]
        assert loaded["matrix"].get("RNA").dense().tolist() == COUNTS.tolist()
        assert loaded["matrix"].get("ADT").dense().tolist() == ADT.tolist()
    finally:
        loaded["matrix"].free()
    assert loaded["primary_ids"]["RNA"] == ["g1", "g2", "g3"]
    assert loaded["primary_ids"]["ADT"] is None
    assert loaded["features"]["RNA"]["symbol"].tolist() == ["G1", "G2", "G3"]
    assert loaded["cells"]["sample"].tolist() == ["a", "b", "a", "b"]


async def test_dataset_summary(project_zip, no_leaks):
    summary = await ZippedArtifactdbDataset("sce/experiment", str(project_zip)).summary()

    assert list(summary["modality_features"].keys()) == ["", "ADT"]
    assert summary["modality_features"]["ADT"].shape == (1, 0)
    assert summary["modality_assay_names"] == {"": ["counts"], "ADT": ["counts"]}


async def test_shared_archive_handle_stays_open(project_zip, no_leaks):
    with zipfile.ZipFile(project_zip) as archive:
        names = search_zipped_artifactdb(archive)
        dataset = ZippedArtifactdbDataset("sce/experiment", str(project_zip), existing_handle=archive)

        first = await dataset.preview_primary_ids()
        second = await dataset.preview_primary_ids()

        assert "sce/experiment" in names
        assert first == second == {"RNA": ["g1", "g2", "g3"]}


async def test_dataset_serialization_carries_the_object_path(project_zip):
    dataset = ZippedArtifactdbDataset("sce/experiment", str(project_zip), {"rna_count_assay": "counts"})

    serialized = dataset.serialize()
    rebuilt = await ZippedArtifactdbDataset.unserialize(serialized["files"], serialized["options"])

    assert serialized["options"]["dataset_name"] == "sce/experiment"
    assert "dataset_name" not in rebuilt.options()
    assert rebuilt.serialize()["options"] == serialized["options"]

    with pytest.raises(FormatMismatchError, match="dataset_name"):
        await ZippedArtifactdbDataset.unserialize(serialized["files"], {})


async def test_result_reads_reduced_dimensions_and_metadata(project_zip, no_leaks):
    result = ZippedArtifactdbResult("sce/experiment", FileRef(project_zip.read_bytes(), name="project.zip"))

    summary = await result.summary()
    loaded = await result.load()

    assert summary["reduced_dimension_names"] == ["PCA"]
    assert summary["other_metadata"] == {"version": "1.0"}
    try:
        assert loaded["matrix"].available() == ["", "ADT"]
    finally:
        loaded["matrix"].free()
    assert [d.tolist() for d in loaded["reduced_dimensions"]["PCA"]] == PCA.tolist()
    assert loaded["other_metadata"] == {"version": "1.0"}


async def test_result_normalizes_selected_experiments(project_zip, no_leaks):
    result = ZippedArtifactdbResult(
        "sce/experiment",
        str(project_zip),
        {"primary_assay": {"": "counts"}, "is_primary_normalized": False, "reduced_dimension_names": []},
    )

    loaded = await result.load()

    try:
        assert loaded["matrix"].available() == [""]
        normalized = loaded["matrix"].get("").dense()
        assert normalized[0, 1] == 0.0
        assert normalized[0, 0] > 0.0
    finally:
        loaded["matrix"].free()
