import logging

import numpy as np
import pytest

from sc_readers.core.exceptions import DimensionMismatchError, FormatMismatchError
from sc_readers.core.file_ref import FileRef
from sc_readers.engine import MatrixHandle, MultiMatrix
from sc_readers.readers import AbstractTakaneResult, H5adResult, SummarizedExperimentResult, ZippedArtifactdbResult
from sc_readers.readers.base import (
    EXPERIMENT_DEFAULTS,
    EXPERIMENT_KINDS,
    Dataset,
    DatasetState,
    Result,
    add_primary_matrix,
    option_for_modality,
    resolve_experiment,
)
from sc_readers.validation.errors import ValidationError


class _Recorder(Dataset):
    """Minimal reader that records lifecycle calls."""

    FILE_TYPES = ("main",)
    OPTIONAL_FILE_TYPES = ("extra",)
    OPTION_KINDS = EXPERIMENT_KINDS

    def __init__(self, main, extra=None, options=None):
        self._main = FileRef.coerce(main)
        self._extra = None if extra is None else FileRef.coerce(extra)
        self.resets = 0
        super().__init__(options)

    @classmethod
    def format(cls):
        return "recorder"

    @classmethod
    def defaults(cls):
        return dict(EXPERIMENT_DEFAULTS)

    def files(self):
        output = [("main", self._main)]
        if self._extra is not None:
            output.append(("extra", self._extra))
        return output

    def _reset(self):
        self.resets += 1

    async def _summary(self):
        self._mark_populated()
        return {"state": self.state}

    async def _load(self):
        raise FormatMismatchError("nothing to load")

    async def _preview_primary_ids(self):
        return {"RNA": None}

    @classmethod
    def _from_files(cls, files, options):
        return cls(files["main"], files.get("extra"), options=options)


def _recorder(**options):
    return _Recorder(FileRef(b"abc", name="main.bin"), options=options or None)


async def test_uncached_calls_clear_even_on_failure():
    dataset = _recorder()
    assert dataset.state == DatasetState.FRESH

    summary = await dataset.summary()
    assert summary["state"] == DatasetState.POPULATED
    assert dataset.state == DatasetState.CLEARED

    with pytest.raises(FormatMismatchError):
        await dataset.load()
    assert dataset.resets == 2


async def test_cached_calls_keep_state_until_clear():
    dataset = _recorder()

    await dataset.summary(cache=True)
    assert dataset.state == DatasetState.POPULATED
    assert dataset.resets == 0

    dataset.clear()
    assert dataset.state == DatasetState.CLEARED


async def test_preview_clears_like_other_calls():
    dataset = _recorder()

    assert await dataset.preview_primary_ids() == {"RNA": None}
    assert dataset.state == DatasetState.CLEARED
    assert dataset.resets == 1


@pytest.mark.parametrize("result_cls", [H5adResult, SummarizedExperimentResult, AbstractTakaneResult, ZippedArtifactdbResult])
def test_results_have_no_primary_id_preview(result_cls):
    assert issubclass(result_cls, Result)
    assert not issubclass(result_cls, Dataset)
    assert not hasattr(result_cls, "preview_primary_ids")


def test_options_are_merged_and_copied():
    dataset = _recorder(adt_experiment="ADT")

    options = dataset.options()
    options["rna_count_assay"] = "mutated"

    assert dataset.options()["adt_experiment"] == "ADT"
    assert dataset.options()["rna_count_assay"] == 0


def test_invalid_options_leave_the_current_ones_untouched():
    dataset = _recorder()

    with pytest.raises(ValidationError) as info:
        dataset.set_options({"rna_count_assay": 1, "adt_experiment": 1.5})

    assert [issue.code for issue in info.value.issues] == ["OPTION_TYPE"]
    assert dataset.options()["rna_count_assay"] == 0


def test_abbreviate_reports_names_and_sizes():
    dataset = _Recorder(FileRef(b"abc", name="main.bin"), FileRef(b"12345", name="extra.bin"))

    assert dataset.abbreviate()["files"] == [
        {"type": "main", "name": "main.bin", "size": 3},
        {"type": "extra", "name": "extra.bin", "size": 5},
    ]


async def test_unserialize_accepts_optional_files():
    main = FileRef(b"abc", name="main.bin")

    rebuilt = await _Recorder.unserialize([{"type": "main", "file": main}], {"rna_experiment": "RNA"})

    assert rebuilt.files() == [("main", main)]
    assert rebuilt.options()["rna_experiment"] == "RNA"


@pytest.mark.parametrize(
    "files, message",
    [
        ([], "requires files of type \\['main'\\]"),
        ([{"type": "other", "file": (b"x", "x")}], "unexpected file type 'other'"),
        ([{"type": "main", "file": (b"x", "x")}, {"type": "main", "file": (b"y", "y")}], "more than one"),
    ],
)
def test_group_files_rejects_bad_file_lists(files, message):
    with pytest.raises(FormatMismatchError, match=message):
        _Recorder.group_files(files)


# -------------------------------------------------------------------------
# Shared helpers
# -------------------------------------------------------------------------

def test_resolve_experiment(caplog):
    alternatives = ["ADT", "CRISPR"]

    assert resolve_experiment("", "", alternatives, "RNA") == ""
    assert resolve_experiment("main", "main", alternatives, "RNA") == "main"
    assert resolve_experiment("ADT", "", alternatives, "ADT") == "ADT"
    assert resolve_experiment(1, "", alternatives, "CRISPR") == "CRISPR"
    assert resolve_experiment(None, "", alternatives, "ADT") is None

    with caplog.at_level(logging.WARNING, logger="sc_readers.readers.base"):
        assert resolve_experiment("HTO", "", alternatives, "ADT") is None
        assert resolve_experiment(2, "", alternatives, "ADT") is None

    assert len(caplog.records) == 2


def test_option_for_modality():
    assert option_for_modality("counts", "ADT", None) == "counts"
    assert option_for_modality({"": "logcounts"}, "", None) == "logcounts"
    assert option_for_modality({"": "logcounts"}, "ADT", None) is None
    assert option_for_modality({"ADT": False}, "", True) is True


def test_add_primary_matrix_keeps_normalized_matrices(no_leaks):
    output = MultiMatrix()
    loaded = MatrixHandle(np.array([[1.5, 0.0], [2.0, 3.0]]))

    add_primary_matrix(output, "", loaded, normalized=True)

    assert output.get("") is loaded
    output.free()


def test_add_primary_matrix_replaces_raw_counts(no_leaks):
    output = MultiMatrix()
    raw = MatrixHandle(np.array([[1, 0], [3, 4]]))

    add_primary_matrix(output, "", raw, normalized=False)

    assert raw.is_freed
    assert output.get("").dense()[0, 1] == 0.0
    output.free()


def test_add_primary_matrix_frees_mismatched_matrices(no_leaks):
    output = MultiMatrix({"": MatrixHandle(np.zeros((2, 3)))})
    other = MatrixHandle(np.zeros((2, 4)))

    with pytest.raises(DimensionMismatchError):
        add_primary_matrix(output, "ADT", other, normalized=True)

    assert other.is_freed
    output.free()
