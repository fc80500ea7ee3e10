import pytest

from sc_readers.core.exceptions import DimensionMismatchError
from sc_readers.core.file_ref import FileRef
from sc_readers.readers import MatrixMarketDataset
from sc_readers.readers.mtx import read_barcode_file, read_feature_file


async def test_headerless_gzipped_features(mtx_dir, no_leaks):
    # Arrange
    dataset = MatrixMarketDataset(str(mtx_dir / "matrix.mtx.gz"), str(mtx_dir / "genes.tsv.gz"))

    # Act
    loaded = await dataset.load()

    # Assert
    try:
        assert loaded["matrix"].available() == ["RNA"]
        assert loaded["matrix"].get("RNA").shape == (5, 3)
        assert loaded["matrix"].get("RNA").row(3).tolist() == [4.0, 0.0, 5.0]
    finally:
        loaded["matrix"].free()
    assert list(loaded["features"]["RNA"].columns) == ["id", "name", "type"]
    assert loaded["cells"].shape == (3, 0)
    assert loaded["primary_ids"]["RNA"][0] == "ENSG00000000000"


async def test_barcode_dimension_mismatch_names_the_file(mtx_dir, no_leaks):
    barcodes = mtx_dir / "barcodes.tsv"
    barcodes.write_text("".join(f"BC{i}\n" for i in range(5)))
    dataset = MatrixMarketDataset(str(mtx_dir / "matrix.mtx.gz"), str(mtx_dir / "genes.tsv.gz"), str(barcodes))

    with pytest.raises(DimensionMismatchError, match="barcodes.tsv"):
        await dataset.load()


async def test_matrix_without_annotation_files(mtx_dir, no_leaks):
    dataset = MatrixMarketDataset(FileRef((mtx_dir / "matrix.mtx").read_bytes(), name="matrix.mtx"))

    summary = await dataset.summary()
    preview = await dataset.preview_primary_ids()

    assert list(summary["modality_features"].keys()) == [""]
    assert summary["modality_features"][""].shape == (5, 0)
    assert summary["cells"].shape == (3, 0)
    assert preview == {"RNA": None}


def test_feature_file_with_header():
    content = b"gene_id\tsymbol\nENSG1\tA\nENSG2\tB\n"

    frame = read_feature_file(FileRef(content, name="features.tsv"), 2)

    assert list(frame.columns) == ["gene_id", "symbol"]
    assert frame["symbol"].tolist() == ["A", "B"]


def test_barcode_file_promotes_numeric_columns():
    content = b"barcode\tsize\tbatch\nAAA\t100\tb1\nCCC\t250\tb2\n"

    frame = read_barcode_file(FileRef(content, name="barcodes.tsv"), 2)

    assert frame["size"].tolist() == [100.0, 250.0]
    assert frame["batch"].tolist() == ["b1", "b2"]


def test_feature_file_of_the_wrong_length_is_fatal():
    with pytest.raises(DimensionMismatchError, match="number of matrix rows \\(5\\)"):
        read_feature_file(FileRef(b"a\nb\n", name="genes.tsv"), 5)


async def test_round_trip_through_serialize(mtx_dir):
    dataset = MatrixMarketDataset(str(mtx_dir / "matrix.mtx.gz"), str(mtx_dir / "genes.tsv.gz"), options={"feature_type_rna_name": "RNA"})

    serialized = dataset.serialize()
    rebuilt = await MatrixMarketDataset.unserialize(serialized["files"], serialized["options"])

    assert [t for t, _ in rebuilt.files()] == ["mtx", "genes"]
    assert rebuilt.options()["feature_type_rna_name"] == "RNA"
    assert dataset.abbreviate()["files"][1] == {"type": "genes", "name": "genes.tsv.gz", "size": (mtx_dir / "genes.tsv.gz").stat().st_size}
