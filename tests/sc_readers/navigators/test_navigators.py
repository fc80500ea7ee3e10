import gzip
import io
import json
import os
import zipfile

import pytest

from sc_readers.core.exceptions import RedirectionError, RequiredFieldMissingError
from sc_readers.core.file_ref import FileRef
from sc_readers.navigators import (
    MAX_REDIRECTIONS,
    FilesystemNavigator,
    MetadataCache,
    ProjectNavigator,
    ZippedProjectNavigator,
)


class _DictNavigator(ProjectNavigator):
    """In-memory navigator that counts metadata fetches per path."""

    def __init__(self, files):
        self.files = files
        self.fetches = {}

    async def file(self, path):
        if path not in self.files:
            raise RequiredFieldMissingError(path)
        return self.files[path]

    async def exists(self, path):
        return path in self.files

    async def list(self, path):
        return []

    async def read_metadata(self, path):
        self.fetches[path] = self.fetches.get(path, 0) + 1
        return await super().read_metadata(path)


def _redirect(target):
    document = {
        "$schema": "redirection/v1.json",
        "redirection": {"targets": [{"type": "local", "location": target}]},
    }
    return json.dumps(document).encode("utf-8")


def _make_project(tmp_path):
    root = tmp_path / "project"
    (root / "assays" / "0").mkdir(parents=True)
    (root / "OBJECT").write_text('{"type": "summarized_experiment"}')
    (root / "assays" / "names.json").write_text('["counts"]')
    (root / "assays" / "0" / "OBJECT").write_text('{"type": "dense_array"}')
    return root


def _make_zip(entries):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return FileRef(buffer.getvalue(), name="project.zip")


# -------------------------------------------------------------------------
# Filesystem
# -------------------------------------------------------------------------

async def test_filesystem_navigator_reads_lists_and_checks(tmp_path):
    nav = FilesystemNavigator(_make_project(tmp_path))

    local = await nav.file("assays/names.json")

    assert os.path.isfile(local)
    assert await nav.read_json("assays/names.json") == ["counts"]
    assert await nav.list("assays") == ["0", "names.json"]
    assert await nav.list("missing") == []
    assert await nav.exists("assays/0")
    assert not await nav.exists("assays/1")
    with pytest.raises(RequiredFieldMissingError, match="not found"):
        await nav.file("assays/1/OBJECT")


async def test_filesystem_navigator_copy_mode_cleans_up(tmp_path):
    root = _make_project(tmp_path)
    nav = FilesystemNavigator(root, copy=True)

    first = await nav.file("OBJECT")
    second = await nav.file("assays/0/OBJECT")

    assert not first.startswith(str(root))
    assert os.path.exists(first) and os.path.exists(second)

    await nav.clean(first)
    assert not os.path.exists(first)

    nav.clear()
    assert not os.path.exists(second)
    assert (root / "OBJECT").exists()


async def test_read_json_handles_gzip(tmp_path):
    root = _make_project(tmp_path)
    (root / "list.json.gz").write_bytes(gzip.compress(b'{"values": [1, 2]}'))

    nav = FilesystemNavigator(root)

    assert await nav.read_json("list.json.gz") == {"values": [1, 2]}


# -------------------------------------------------------------------------
# ZIP
# -------------------------------------------------------------------------

async def test_zipped_navigator_lists_children_and_directories():
    ref = _make_zip({"sce/OBJECT": "{}", "sce/assays/names.json": "[]", "sce/assays/0/OBJECT": "{}"})
    nav = ZippedProjectNavigator(ref)

    assert await nav.list("sce") == ["OBJECT", "assays"]
    assert await nav.list("sce/assays/") == ["0", "names.json"]
    assert await nav.list("") == ["sce"]
    assert await nav.exists("sce/assays")
    assert await nav.exists("sce/OBJECT")
    assert not await nav.exists("sce/assay")
    assert await nav.file("sce/OBJECT") == b"{}"

    with pytest.raises(RequiredFieldMissingError, match="not found in archive"):
        await nav.file("sce/missing")
    nav.clear()


async def test_zipped_navigator_shares_an_existing_handle():
    ref = _make_zip({"a.json": '{"x": 1}'})
    owner = ZippedProjectNavigator(ref)
    borrower = ZippedProjectNavigator(ref, existing_handle=owner.handle())

    borrower.clear()

    assert await owner.read_json("a.json") == {"x": 1}
    owner.clear()


# -------------------------------------------------------------------------
# Redirections and metadata caching
# -------------------------------------------------------------------------

async def test_metadata_follows_redirections_and_caches_every_hop():
    # Arrange
    inner = _DictNavigator(
        {
            "a.json": _redirect("b"),
            "b.json": _redirect("c"),
            "c.json": b'{"$schema": "csv_data_frame/v1.json", "path": "c"}',
        }
    )
    nav = MetadataCache(inner)

    # Act
    first = await nav.metadata("a")
    again = await nav.metadata("a.json")
    via_b = await nav.metadata("b")

    # Assert
    assert first["path"] == "c"
    assert again is first and via_b is first
    assert sorted(nav.cached_paths()) == ["a.json", "b.json", "c.json"]
    assert inner.fetches == {"a.json": 1, "b.json": 1, "c.json": 1}

    nav.clear()
    assert nav.cached_paths() == []


async def test_uncached_metadata_also_follows_redirections():
    inner = _DictNavigator({"a.json": _redirect("b.json"), "b.json": b'{"path": "b"}'})

    assert (await inner.metadata("a"))["path"] == "b"
    assert (await inner.read_metadata("a"))["$schema"] == "redirection/v1.json"


async def test_redirection_cycle_is_an_error():
    inner = _DictNavigator({"a.json": _redirect("b"), "b.json": _redirect("a")})

    with pytest.raises(RedirectionError, match="cycle"):
        await inner.metadata("a")


async def test_redirection_chain_depth_is_bounded():
    files = {f"r{i}.json": _redirect(f"r{i + 1}") for i in range(MAX_REDIRECTIONS + 2)}
    inner = _DictNavigator(files)

    with pytest.raises(RedirectionError, match=f"more than {MAX_REDIRECTIONS}"):
        await MetadataCache(inner).metadata("r0")


async def test_malformed_redirection_is_an_error():
    inner = _DictNavigator({"a.json": b'{"$schema": "redirection/v1.json", "redirection": {}}'})

    with pytest.raises(RedirectionError, match="malformed"):
        await inner.metadata("a")
