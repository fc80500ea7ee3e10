from __future__ import annotations

import json
import logging
import posixpath
import zipfile
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from sc_readers.core import frames
from sc_readers.core.exceptions import (
    DimensionMismatchError,
    FormatMismatchError,
    RequiredFieldMissingError,
    SchemaUnknownError,
    ScReadersError,
)
from sc_readers.core.file_ref import FileRef
from sc_readers.engine import MatrixHandle, MultiMatrix
from sc_readers.loaders.assays import (
    TAKANE_ARRAY_TYPES,
    extract_takane_assay,
    extract_takane_reduced_dimension,
    object_type,
)
from sc_readers.loaders.data_frame import load_takane_data_frame
from sc_readers.loaders.simple_list import load_takane_simple_list
from sc_readers.navigators.base import ProjectNavigator
from sc_readers.navigators.zipped import ZippedProjectNavigator
from sc_readers.readers.base import (
    EXPERIMENT_DEFAULTS,
    EXPERIMENT_KINDS,
    RESULT_DEFAULTS,
    RESULT_KINDS,
    Dataset,
    Result,
    add_primary_matrix,
    experiment_mapping,
    option_for_modality,
    primary_mapping,
    resolve_experiment,
)
from sc_readers.utils import features as futils

logger = logging.getLogger(__name__)

MAIN_EXPERIMENT = ""

EXPERIMENT_TYPES = (
    "summarized_experiment",
    "ranged_summarized_experiment",
    "single_cell_experiment",
    "spatial_experiment",
)


class TakaneProject:
    """
    One SummarizedExperiment object directory of a takane project.

    Optional children (row_data, column_data, other_data, ...) are detected
    either from the parent's listing or by probing each child path, depending
    on what the navigator supports.

    Design Notes:
    - `OBJECT` files and listings are cached until `clear()`.
    - The main experiment is always keyed by "".
    """

    def __init__(self, path: str, navigator: ProjectNavigator, use_listing: bool) -> None:
        self.path = path
        self.navigator = navigator
        self.use_listing = use_listing
        self._objects: Dict[str, Dict[str, Any]] = {}
        self._listings: Dict[str, List[str]] = {}
        self._experiments: Optional[Dict[str, str]] = None
        self._features: Optional[Dict[str, pd.DataFrame]] = None
        self._cells: Optional[pd.DataFrame] = None

    def clear(self) -> None:
        self._objects = {}
        self._listings = {}
        self._experiments = None
        self._features = None
        self._cells = None
        self.navigator.clear()

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------
    async def object_info(self, path: str) -> Dict[str, Any]:
        if path not in self._objects:
            self._objects[path] = await self.navigator.read_json(posixpath.join(path, "OBJECT"))
        return self._objects[path]

    async def has_child(self, path: str, child: str) -> bool:
        if not self.use_listing:
            return await self.navigator.exists(posixpath.join(path, child))
        if path not in self._listings:
            self._listings[path] = await self.navigator.list(path)
        return child in self._listings[path]

    async def experiment_info(self, path: str) -> Dict[str, Any]:
        info = await self.object_info(path)
        if info.get("type") not in EXPERIMENT_TYPES:
            raise FormatMismatchError(f"'{path}' is a '{info.get('type')}', expected a SummarizedExperiment")
        return info

    async def _names(self, path: str, child: str) -> List[Any]:
        if not await self.has_child(path, child):
            return []
        return list(await self.navigator.read_json(posixpath.join(path, child, "names.json")))

    async def main_experiment_name(self) -> Optional[str]:
        info = await self.experiment_info(self.path)
        return (info.get("single_cell_experiment") or {}).get("main_experiment_name")

    async def experiments(self) -> Dict[str, str]:
        """
        :return: experiment name -> object directory, main experiment first
        """
        if self._experiments is None:
            await self.experiment_info(self.path)
            output = {MAIN_EXPERIMENT: self.path}
            alt_root = posixpath.join(self.path, "alternative_experiments")
            for i, name in enumerate(await self._names(self.path, "alternative_experiments")):
                output[name] = posixpath.join(alt_root, str(i))
            self._experiments = output
        return self._experiments

    async def alternatives(self) -> List[str]:
        return [name for name in (await self.experiments()) if name != MAIN_EXPERIMENT]

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------
    async def _dimensions(self, path: str) -> List[int]:
        info = await self.experiment_info(path)
        try:
            return [int(x) for x in info["summarized_experiment"]["dimensions"]]
        except (KeyError, TypeError):
            raise RequiredFieldMissingError(f"'summarized_experiment.dimensions' missing from '{path}/OBJECT'")

    async def _experiment_features(self, path: str) -> pd.DataFrame:
        nrows = (await self._dimensions(path))[0]
        if await self.has_child(path, "row_data"):
            return await load_takane_data_frame(posixpath.join(path, "row_data"), self.navigator)
        return frames.empty_frame(nrows)

    async def features(self) -> Dict[str, pd.DataFrame]:
        if self._features is None:
            output: Dict[str, pd.DataFrame] = {}
            for name, path in (await self.experiments()).items():
                if name == MAIN_EXPERIMENT:
                    output[name] = await self._experiment_features(path)
                    continue
                try:
                    output[name] = await self._experiment_features(path)
                except ScReadersError as e:
                    logger.warning(
                        "Failed to extract features for alternative experiment",
                        extra={"experiment": name, "path": path, "error": str(e)},
                    )
            self._features = output
        return self._features

    async def cells(self) -> pd.DataFrame:
        if self._cells is None:
            ncols = (await self._dimensions(self.path))[1]
            if await self.has_child(self.path, "column_data"):
                self._cells = await load_takane_data_frame(posixpath.join(self.path, "column_data"), self.navigator)
            else:
                self._cells = frames.empty_frame(ncols)
        return self._cells

    async def _experiment_assay_names(self, path: str) -> List[Optional[str]]:
        output = []
        for i, name in enumerate(await self._names(path, "assays")):
            kind = await object_type(posixpath.join(path, "assays", str(i)), self.navigator)
            if kind in TAKANE_ARRAY_TYPES:
                output.append(name)
        return output

    async def assay_names(self) -> Dict[str, List[Optional[str]]]:
        output: Dict[str, List[Optional[str]]] = {}
        for name, path in (await self.experiments()).items():
            try:
                output[name] = await self._experiment_assay_names(path)
            except ScReadersError as e:
                if name == MAIN_EXPERIMENT:
                    raise
                logger.warning(
                    "Failed to extract assay names for alternative experiment",
                    extra={"experiment": name, "path": path, "error": str(e)},
                )
        return output

    async def other_metadata(self) -> Any:
        if await self.has_child(self.path, "other_data"):
            return await load_takane_simple_list(posixpath.join(self.path, "other_data"), self.navigator)
        return {}

    async def reduced_dimensions(self) -> Dict[str, str]:
        """
        :return: name -> object directory, restricted to dense arrays
        """
        output: Dict[str, str] = {}
        red_root = posixpath.join(self.path, "reduced_dimensions")
        for i, name in enumerate(await self._names(self.path, "reduced_dimensions")):
            path = posixpath.join(red_root, str(i))
            kind = (await self.object_info(path)).get("type")
            if kind == "dense_array":
                output[name] = path
            else:
                logger.warning("Skipping unsupported reduced dimension", extra={"reduced_dimension": name, "type": kind})
        return output

    async def load_assay(self, name: str, selector: Any, force_integer: bool) -> Tuple[MatrixHandle, pd.DataFrame]:
        features = (await self.features()).get(name)
        if features is None:
            raise SchemaUnknownError(f"no features available for experiment '{name}'")
        path = (await self.experiments())[name]
        loaded = await extract_takane_assay(path, selector, self.navigator, force_integer=force_integer)
        if loaded.number_of_rows() != len(features):
            loaded.free()
            raise DimensionMismatchError(
                f"assay of experiment '{name}' has {loaded.number_of_rows()} rows, features have {len(features)}"
            )
        return loaded, features


class AbstractTakaneDataset(Dataset):
    """
    Dataset stored as a SummarizedExperiment object directory in the takane layout.

    :param path: object directory inside the project ("" for the project root)
    :param navigator: {@link ProjectNavigator} over the project; its `list()` is
        used to find optional children

    Modalities map onto experiments as in {@link SummarizedExperimentDataset};
    the main experiment can also be selected by its `main_experiment_name`.
    """

    OPTION_KINDS = EXPERIMENT_KINDS
    USE_LISTING = True

    def __init__(self, path: str, navigator: ProjectNavigator, options: Optional[Dict[str, Any]] = None) -> None:
        self._project = TakaneProject(path, navigator, use_listing=self.USE_LISTING)
        super().__init__(options)

    @classmethod
    def format(cls) -> str:
        return "takane"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return dict(EXPERIMENT_DEFAULTS)

    def files(self) -> List[Tuple[str, FileRef]]:
        return []

    def _reset(self) -> None:
        self._project.clear()

    async def _experiments(self) -> Dict[str, Optional[str]]:
        main_name = await self._project.main_experiment_name()
        alternatives = await self._project.alternatives()
        output: Dict[str, Optional[str]] = {}
        for modality, (exp, _) in experiment_mapping(self._options).items():
            resolved = resolve_experiment(exp, main_name or MAIN_EXPERIMENT, alternatives, modality)
            if resolved is not None and resolved == main_name and resolved not in alternatives:
                resolved = MAIN_EXPERIMENT
            output[modality] = resolved
        return output

    async def _summary(self) -> Dict[str, Any]:
        features = await self._project.features()
        self._mark_populated()
        return {
            "modality_features": dict(features),
            "cells": await self._project.cells(),
            "modality_assay_names": await self._project.assay_names(),
        }

    async def _preview_primary_ids(self) -> Dict[str, Optional[List[Optional[str]]]]:
        features = await self._project.features()
        remapped = futils.remap_experiment_names(features, await self._experiments())
        return futils.extract_primary_ids(remapped, primary_mapping(self._options))

    async def _load(self) -> Dict[str, Any]:
        await self._project.features()
        cells = await self._project.cells()
        experiments = await self._experiments()
        self._mark_populated()

        output = MultiMatrix()
        features: Dict[str, pd.DataFrame] = {}
        row_ids: Dict[str, np.ndarray] = {}
        try:
            for modality, (_, assay) in experiment_mapping(self._options).items():
                name = experiments[modality]
                if name is None:
                    continue
                loaded, current = await self._project.load_assay(name, assay, force_integer=True)
                try:
                    output.add(modality, loaded)
                except DimensionMismatchError:
                    loaded.free()
                    raise
                row_ids[modality] = loaded.identities()
                features[modality] = frames.slice_rows(current, row_ids[modality])
        except Exception:
            output.free()
            raise

        logger.info(
            "Loaded takane experiment",
            extra={"dataset_format": self.format(), "path": self._project.path, "modalities": output.available()},
        )
        return {
            "matrix": output,
            "features": features,
            "cells": cells,
            "row_ids": row_ids,
            "primary_ids": futils.extract_primary_ids(features, primary_mapping(self._options)),
        }


class AbstractTakaneResult(Result):
    """
    Analysis result stored as a SingleCellExperiment object directory in the takane layout.
    """

    OPTION_KINDS = RESULT_KINDS
    USE_LISTING = True

    def __init__(self, path: str, navigator: ProjectNavigator, options: Optional[Dict[str, Any]] = None) -> None:
        self._project = TakaneProject(path, navigator, use_listing=self.USE_LISTING)
        self._other: Any = None
        super().__init__(options)

    @classmethod
    def format(cls) -> str:
        return "takane"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return dict(RESULT_DEFAULTS)

    def files(self) -> List[Tuple[str, FileRef]]:
        return []

    def _reset(self) -> None:
        self._project.clear()
        self._other = None

    async def _other_metadata(self) -> Any:
        if self._other is None:
            self._other = await self._project.other_metadata()
        return self._other

    async def _summary(self) -> Dict[str, Any]:
        features = await self._project.features()
        self._mark_populated()
        return {
            "modality_features": dict(features),
            "cells": await self._project.cells(),
            "modality_assay_names": await self._project.assay_names(),
            "reduced_dimension_names": list((await self._project.reduced_dimensions()).keys()),
            "other_metadata": await self._other_metadata(),
        }

    async def _load(self) -> Dict[str, Any]:
        all_features = await self._project.features()
        cells = await self._project.cells()
        other = await self._other_metadata()
        self._mark_populated()

        reduced: Dict[str, List[np.ndarray]] = {}
        available = await self._project.reduced_dimensions()
        wanted = self._options["reduced_dimension_names"]
        for name in available.keys() if wanted is None else wanted:
            if name not in available:
                logger.warning("Skipping unknown reduced dimension", extra={"reduced_dimension": name})
                continue
            reduced[name] = await extract_takane_reduced_dimension(available[name], self._project.navigator)

        output = MultiMatrix()
        features: Dict[str, pd.DataFrame] = {}
        try:
            for name in all_features:
                assay = option_for_modality(self._options["primary_assay"], name, None)
                if assay is None:
                    continue
                normalized = option_for_modality(self._options["is_primary_normalized"], name, True)
                loaded, current = await self._project.load_assay(name, assay, force_integer=not normalized)
                add_primary_matrix(output, name, loaded, normalized)
                features[name] = current
        except Exception:
            output.free()
            raise

        return {
            "matrix": output,
            "features": features,
            "cells": cells,
            "reduced_dimensions": reduced,
            "other_metadata": other,
        }


class AbstractAlabasterDataset(AbstractTakaneDataset):
    """
    {@link AbstractTakaneDataset} for navigators that can only test whether a path exists.
    """

    USE_LISTING = False

    @classmethod
    def format(cls) -> str:
        return "alabaster"


class AbstractAlabasterResult(AbstractTakaneResult):
    """
    {@link AbstractTakaneResult} for navigators that can only test whether a path exists.
    """

    USE_LISTING = False

    @classmethod
    def format(cls) -> str:
        return "alabaster"


# -------------------------------------------------------------------------
# ZIP archives
# -------------------------------------------------------------------------

def _prefix_from_options(options: Dict[str, Any], format_name: str) -> str:
    if "dataset_prefix" not in options:
        raise FormatMismatchError(f"format '{format_name}' requires the 'dataset_prefix' option")
    return options.pop("dataset_prefix")


class ZippedAlabasterDataset(AbstractAlabasterDataset):
    """
    {@link AbstractAlabasterDataset} over a project packed in a ZIP file.

    :param prefix: object directory inside the archive ("" when the object is at the root)
    :param zip_file: the archive
    :param existing_handle: an already-open `zipfile.ZipFile` of the same archive;
        it stays owned by the caller

    The prefix travels through serialization as the `dataset_prefix` option.
    """

    FILE_TYPES = ("zip",)

    def __init__(
            self,
            prefix: str,
            zip_file: Any,
            options: Optional[Dict[str, Any]] = None,
            existing_handle: Optional[zipfile.ZipFile] = None,
    ) -> None:
        self._zip = FileRef.coerce(zip_file)
        self._prefix = prefix
        super().__init__(prefix, ZippedProjectNavigator(self._zip, existing_handle), options)

    @classmethod
    def format(cls) -> str:
        return "alabaster-zipped"

    def files(self) -> List[Tuple[str, FileRef]]:
        return [("zip", self._zip)]

    def _serialized_options(self) -> Dict[str, Any]:
        output = self.options()
        output["dataset_prefix"] = self._prefix
        return output

    @classmethod
    def _from_files(cls, files: Dict[str, FileRef], options: Dict[str, Any]) -> ZippedAlabasterDataset:
        prefix = _prefix_from_options(options, cls.format())
        return cls(prefix, files["zip"], options=options)


class ZippedAlabasterResult(AbstractAlabasterResult):
    """
    {@link AbstractAlabasterResult} over a project packed in a ZIP file.
    """

    FILE_TYPES = ("zip",)

    def __init__(
            self,
            prefix: str,
            zip_file: Any,
            options: Optional[Dict[str, Any]] = None,
            existing_handle: Optional[zipfile.ZipFile] = None,
    ) -> None:
        self._zip = FileRef.coerce(zip_file)
        self._prefix = prefix
        super().__init__(prefix, ZippedProjectNavigator(self._zip, existing_handle), options)

    @classmethod
    def format(cls) -> str:
        return "alabaster-zipped"

    def files(self) -> List[Tuple[str, FileRef]]:
        return [("zip", self._zip)]

    def _serialized_options(self) -> Dict[str, Any]:
        output = self.options()
        output["dataset_prefix"] = self._prefix
        return output

    @classmethod
    def _from_files(cls, files: Dict[str, FileRef], options: Dict[str, Any]) -> ZippedAlabasterResult:
        prefix = _prefix_from_options(options, cls.format())
        return cls(prefix, files["zip"], options=options)


def _object_prefix(name: str) -> Optional[str]:
    if name == "OBJECT":
        return ""
    if name.endswith("/OBJECT"):
        return name[: -len("/OBJECT")]
    return None


def search_zipped_alabaster(archive: zipfile.ZipFile) -> Dict[str, List[int]]:
    """
    Find the SummarizedExperiment objects of a takane project in a ZIP file.

    Objects are visited from the top of the archive down; once one is found,
    every object beneath it (assays, alternative experiments, ...) is skipped.

    :param archive: open ZIP file
    :return: object prefix (usable with {@link ZippedAlabasterDataset}) -> dimensions
    """
    prefixes = [p for p in (_object_prefix(n) for n in archive.namelist()) if p is not None]
    prefixes.sort(key=lambda p: (0 if p == "" else p.count("/") + 1, p))

    found: Dict[str, List[int]] = {}
    for prefix in prefixes:
        if any(root == "" or prefix.startswith(root + "/") for root in found):
            continue

        try:
            info = json.loads(archive.read(posixpath.join(prefix, "OBJECT")))
        except ValueError:
            continue
        if not isinstance(info, dict) or not isinstance(info.get("summarized_experiment"), dict):
            continue

        found[prefix] = [int(x) for x in info["summarized_experiment"].get("dimensions", [])]

    return found
