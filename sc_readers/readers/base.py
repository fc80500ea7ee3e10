from __future__ import annotations

import abc
import copy
import enum
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar, Union

from sc_readers import engine
from sc_readers.core.exceptions import FormatMismatchError
from sc_readers.core.file_ref import FileRef
from sc_readers.engine import MatrixHandle, MultiMatrix
from sc_readers.validation.options_validation import validate_options

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="Reader")

ExperimentSelector = Union[str, int, None]


class DatasetState(enum.Enum):
    FRESH = "fresh"
    OPENED = "opened"
    POPULATED = "populated"
    CLEARED = "cleared"


class Reader(abc.ABC):
    """
    Base class of every reader, {@link Dataset} and {@link Result} alike.

    A reader wraps one or more {@link FileRef}s of a given format and turns
    them into feature/cell annotations and count matrices on demand.

    Design Notes:
    - Construction does no I/O; files are opened on the first public call.
    - `cache=False` (the default) clears every handle and decoded cache at the
      end of each call, whether it succeeded or not.
    - Calls on one instance must not overlap.
    - Subclasses declare FILE_TYPES (required, in serialization order),
      OPTIONAL_FILE_TYPES and OPTION_KINDS (see validate_options).
    """

    FILE_TYPES: Tuple[str, ...] = ()
    OPTIONAL_FILE_TYPES: Tuple[str, ...] = ()
    OPTION_KINDS: Dict[str, str] = {}

    def __init__(self, options: Optional[Mapping[str, Any]] = None) -> None:
        self._options: Dict[str, Any] = self.defaults()
        self._state = DatasetState.FRESH
        if options:
            self.set_options(options)

    # -------------------------------------------------------------------------
    # Identity and options
    # -------------------------------------------------------------------------
    @classmethod
    @abc.abstractmethod
    def format(cls) -> str:
        ...

    @classmethod
    @abc.abstractmethod
    def defaults(cls) -> Dict[str, Any]:
        ...

    def options(self) -> Dict[str, Any]:
        return copy.deepcopy(self._options)

    def set_options(self, options: Mapping[str, Any]) -> None:
        """
        Merge a partial set of options into the current ones.

        :raises ValidationError: on unknown keys or wrongly-typed values
        """
        validate_options(self.format(), self.OPTION_KINDS, options)
        for key, value in options.items():
            self._options[key] = copy.deepcopy(value)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    @property
    def state(self) -> DatasetState:
        return self._state

    def _mark_opened(self) -> None:
        if self._state != DatasetState.POPULATED:
            self._state = DatasetState.OPENED

    def _mark_populated(self) -> None:
        self._state = DatasetState.POPULATED

    def clear(self) -> None:
        """
        Release temporary files, open handles and decoded caches.
        """
        self._reset()
        self._state = DatasetState.CLEARED

    @abc.abstractmethod
    def _reset(self) -> None:
        ...

    # -------------------------------------------------------------------------
    # Public calls
    # -------------------------------------------------------------------------
    async def summary(self, cache: bool = False) -> Dict[str, Any]:
        """
        Annotations only: `modality_features`, `cells` and format-specific extras.
        """
        try:
            self._mark_opened()
            return await self._summary()
        finally:
            if not cache:
                self.clear()

    async def load(self, cache: bool = False) -> Dict[str, Any]:
        """
        Annotations and matrices. The returned `matrix` belongs to the caller.
        """
        try:
            self._mark_opened()
            return await self._load()
        finally:
            if not cache:
                self.clear()

    @abc.abstractmethod
    async def _summary(self) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _load(self) -> Dict[str, Any]:
        ...

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------
    @abc.abstractmethod
    def files(self) -> List[Tuple[str, FileRef]]:
        """
        (type, file) pairs in serialization order.
        """
        ...

    def abbreviate(self) -> Dict[str, Any]:
        """
        Cheap description of the inputs, without touching their contents.
        """
        return {
            "files": [{"type": t, "name": f.name, "size": f.size} for t, f in self.files()],
            "options": self._serialized_options(),
        }

    def serialize(self) -> Dict[str, Any]:
        return {
            "files": [{"type": t, "file": f} for t, f in self.files()],
            "options": self._serialized_options(),
        }

    def _serialized_options(self) -> Dict[str, Any]:
        return self.options()

    @classmethod
    async def unserialize(cls: Type[T], files: Sequence[Mapping[str, Any]], options: Optional[Mapping[str, Any]]) -> T:
        """
        Rebuild a reader from the output of serialize().

        :raises FormatMismatchError: on missing, duplicated or unexpected file types
        """
        return cls._from_files(cls.group_files(files), dict(options or {}))

    @classmethod
    def group_files(cls, files: Sequence[Mapping[str, Any]]) -> Dict[str, FileRef]:
        """
        Index `{"type", "file"}` entries by type, checking them against FILE_TYPES.

        :raises FormatMismatchError: on missing, duplicated or unexpected file types
        """
        allowed = cls.FILE_TYPES + cls.OPTIONAL_FILE_TYPES
        by_type: Dict[str, FileRef] = {}
        for entry in files:
            ftype = entry.get("type")
            if ftype not in allowed:
                raise FormatMismatchError(f"unexpected file type '{ftype}' for format '{cls.format()}'")
            if ftype in by_type:
                raise FormatMismatchError(f"more than one file of type '{ftype}' for format '{cls.format()}'")
            by_type[ftype] = FileRef.coerce(entry["file"])

        missing = [t for t in cls.FILE_TYPES if t not in by_type]
        if missing:
            raise FormatMismatchError(f"format '{cls.format()}' requires files of type {missing}")

        return by_type

    @classmethod
    def _from_files(cls: Type[T], files: Dict[str, FileRef], options: Dict[str, Any]) -> T:
        return cls(*[files[t] for t in cls.FILE_TYPES], options=options)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(state={self._state.value})"


class Dataset(Reader):
    """
    Reader of raw counts, split into one modality per feature type or experiment.
    """

    async def preview_primary_ids(self, cache: bool = False) -> Dict[str, Optional[List[Optional[str]]]]:
        """
        The `primary_ids` that load() would report, without loading any matrix.
        """
        try:
            self._mark_opened()
            return await self._preview_primary_ids()
        finally:
            if not cache:
                self.clear()

    @abc.abstractmethod
    async def _preview_primary_ids(self) -> Dict[str, Optional[List[Optional[str]]]]:
        ...


class Result(Reader):
    """
    Reader of an analysis result: primary assays keyed by experiment (or label),
    plus reduced dimensions and other metadata.

    Results carry no primary-id selectors, hence no preview_primary_ids().
    """


# -------------------------------------------------------------------------
# Option groups shared by several formats
# -------------------------------------------------------------------------

FEATURE_TYPE_DEFAULTS: Dict[str, Any] = {
    "feature_type_rna_name": "Gene Expression",
    "feature_type_adt_name": "Antibody Capture",
    "feature_type_crispr_name": "CRISPR Guide Capture",
    "primary_rna_feature_id_column": 0,
    "primary_adt_feature_id_column": 0,
    "primary_crispr_feature_id_column": 0,
}

FEATURE_TYPE_KINDS: Dict[str, str] = {
    "feature_type_rna_name": "label",
    "feature_type_adt_name": "label",
    "feature_type_crispr_name": "label",
    "primary_rna_feature_id_column": "selector",
    "primary_adt_feature_id_column": "selector",
    "primary_crispr_feature_id_column": "selector",
}

EXPERIMENT_DEFAULTS: Dict[str, Any] = {
    "rna_count_assay": 0,
    "adt_count_assay": 0,
    "crispr_count_assay": 0,
    "rna_experiment": "",
    "adt_experiment": "Antibody Capture",
    "crispr_experiment": "CRISPR Guide Capture",
    "primary_rna_feature_id_column": None,
    "primary_adt_feature_id_column": None,
    "primary_crispr_feature_id_column": None,
}

EXPERIMENT_KINDS: Dict[str, str] = {
    "rna_count_assay": "assay",
    "adt_count_assay": "assay",
    "crispr_count_assay": "assay",
    "rna_experiment": "selector",
    "adt_experiment": "selector",
    "crispr_experiment": "selector",
    "primary_rna_feature_id_column": "selector",
    "primary_adt_feature_id_column": "selector",
    "primary_crispr_feature_id_column": "selector",
}

RESULT_DEFAULTS: Dict[str, Any] = {
    "primary_assay": 0,
    "is_primary_normalized": True,
    "reduced_dimension_names": None,
}

RESULT_KINDS: Dict[str, str] = {
    "primary_assay": "assay_map",
    "is_primary_normalized": "flag_map",
    "reduced_dimension_names": "names",
}


def feature_type_mapping(options: Mapping[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "RNA": options["feature_type_rna_name"],
        "ADT": options["feature_type_adt_name"],
        "CRISPR": options["feature_type_crispr_name"],
    }


def primary_mapping(options: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "RNA": options["primary_rna_feature_id_column"],
        "ADT": options["primary_adt_feature_id_column"],
        "CRISPR": options["primary_crispr_feature_id_column"],
    }


def experiment_mapping(options: Mapping[str, Any]) -> Dict[str, Tuple[ExperimentSelector, Any]]:
    """
    :return: modality -> (experiment selector, assay selector)
    """
    return {
        "RNA": (options["rna_experiment"], options["rna_count_assay"]),
        "ADT": (options["adt_experiment"], options["adt_count_assay"]),
        "CRISPR": (options["crispr_experiment"], options["crispr_count_assay"]),
    }


def resolve_experiment(
        selector: ExperimentSelector,
        main_name: str,
        alternatives: Sequence[str],
        modality: str,
) -> Optional[str]:
    """
    Name of the experiment an experiment selector points at.

    "" (or the main experiment's own name) is the main experiment, None disables
    the modality, and an integer indexes the alternative experiments. Invalid
    selectors are logged and give None.
    """
    if selector is None:
        return None

    if isinstance(selector, str):
        if selector == "" or selector == main_name:
            return main_name
        if selector in alternatives:
            return selector
    elif 0 <= selector < len(alternatives):
        return alternatives[selector]

    logger.warning(
        "Experiment selector matches nothing; skipping modality",
        extra={"modality": modality, "selector": selector, "alternatives": list(alternatives)},
    )
    return None


def option_for_modality(value: Any, modality: str, missing: Any) -> Any:
    """
    Pick a modality's entry out of a scalar-or-dict option.

    :param missing: returned when `value` is a dict without `modality`
    """
    if isinstance(value, dict):
        return value.get(modality, missing)
    return value


def add_primary_matrix(output: MultiMatrix, key: str, loaded: MatrixHandle, normalized: bool) -> None:
    """
    Store a Result's primary matrix, log-normalizing it first when it holds raw counts.

    The raw matrix is added before being replaced by its normalized version, so it
    is owned by `output` (and freed with it) at every point.
    """
    try:
        output.add(key, loaded)
    except Exception:
        loaded.free()
        raise
    if not normalized:
        output.add(key, engine.log_norm_counts(loaded, allow_zeros=True))
