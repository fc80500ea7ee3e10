import gzip
import json
import math

import h5py
import numpy as np
import pytest

from sc_readers.core.exceptions import SchemaUnknownError
from sc_readers.loaders.simple_list import (
    decode_hdf5_list,
    decode_json_list,
    load_legacy_simple_list,
    load_takane_simple_list,
)
from sc_readers.navigators import FilesystemNavigator

DOCUMENT = {
    "type": "list",
    "names": ["title", "counts", "scores", "level", "nothing"],
    "values": [
        {"type": "string", "values": "PBMC"},
        {"type": "integer", "values": [1, None, 3]},
        {"type": "number", "values": [0.5, "NaN", "-Inf", None]},
        {"type": "factor", "values": [1, 0], "levels": ["lo", "hi"]},
        {"type": "nothing"},
    ],
}


def test_json_lists_decode_to_python_values():
    decoded = decode_json_list(DOCUMENT)

    assert decoded["title"] == "PBMC"
    assert decoded["counts"] == [1, None, 3]
    assert decoded["scores"][0] == 0.5
    assert math.isnan(decoded["scores"][1]) and math.isnan(decoded["scores"][3])
    assert decoded["scores"][2] == -math.inf
    assert decoded["level"] == ["hi", "lo"]
    assert decoded["nothing"] is None


def test_json_lists_reject_unknown_nodes():
    with pytest.raises(SchemaUnknownError, match="unknown simple list node type"):
        decode_json_list({"type": "matrix"})
    with pytest.raises(SchemaUnknownError, match="unexpected string"):
        decode_json_list({"type": "number", "values": ["oops"]})


def test_hdf5_lists_decode_to_python_values(tmp_path):
    with h5py.File(tmp_path / "list.h5", "w") as f:
        root = f.create_group("simple_list")
        root.attrs["uzuki_object"] = "list"
        root.create_dataset("names", data=["n", "label", "flags"], dtype=h5py.string_dtype())
        data = root.create_group("data")

        n = data.create_group("0")
        n.attrs["uzuki_object"] = "vector"
        n.attrs["uzuki_type"] = "integer"
        ds = n.create_dataset("data", data=np.array([4, -2147483648, 6], dtype=np.int32))
        ds.attrs["missing-value-placeholder"] = np.int32(-2147483648)

        label = data.create_group("1")
        label.attrs["uzuki_object"] = "vector"
        label.attrs["uzuki_type"] = "string"
        label.create_dataset("data", data="hello", dtype=h5py.string_dtype())

        flags = data.create_group("2")
        flags.attrs["uzuki_object"] = "vector"
        flags.attrs["uzuki_type"] = "boolean"
        flags.create_dataset("data", data=np.array([1, 0], dtype=np.int32))

        decoded = decode_hdf5_list(root)

    assert decoded == {"n": [4, None, 6], "label": "hello", "flags": [True, False]}


async def test_takane_simple_list_from_json(tmp_path):
    directory = tmp_path / "other_data"
    directory.mkdir()
    (directory / "OBJECT").write_text('{"type": "simple_list", "simple_list": {"format": "json.gz"}}')
    (directory / "list.json.gz").write_bytes(gzip.compress(json.dumps(DOCUMENT).encode("utf-8")))

    decoded = await load_takane_simple_list("other_data", FilesystemNavigator(tmp_path))

    assert decoded["title"] == "PBMC"


async def test_legacy_simple_list_with_gzip_compression(tmp_path):
    (tmp_path / "list.json.gz").write_bytes(gzip.compress(json.dumps(DOCUMENT).encode("utf-8")))
    meta = {
        "$schema": "json_simple_list/v1.json",
        "path": "list.json.gz",
        "json_simple_list": {"compression": "gzip"},
    }

    decoded = await load_legacy_simple_list(meta, FilesystemNavigator(tmp_path))

    assert decoded["counts"] == [1, None, 3]


async def test_legacy_simple_list_rejects_unknown_schema(tmp_path):
    with pytest.raises(SchemaUnknownError, match="not supported"):
        await load_legacy_simple_list({"$schema": "rds_list/v1.json"}, FilesystemNavigator(tmp_path))
