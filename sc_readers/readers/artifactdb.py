from __future__ import annotations

import json
import logging
import zipfile
from typing import Any, Dict, Iterator, List, Optional, Tuple

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
    extract_legacy_assay,
    extract_legacy_reduced_dimension,
    legacy_assay_names,
)
from sc_readers.loaders.data_frame import load_legacy_data_frame
from sc_readers.loaders.simple_list import load_legacy_simple_list
from sc_readers.navigators.base import ProjectNavigator
from sc_readers.navigators.cache import MetadataCache
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


def _resource_path(entry: Dict[str, Any], where: str) -> str:
    try:
        return entry["resource"]["path"]
    except (KeyError, TypeError):
        raise RequiredFieldMissingError(f"'{where}' has no 'resource.path'")


def _se_section(meta: Dict[str, Any]) -> Dict[str, Any]:
    section = meta.get("summarized_experiment")
    if not isinstance(section, dict):
        raise FormatMismatchError(f"'{meta.get('path')}' does not describe a SummarizedExperiment")
    return section


class LegacyProject:
    """
    One SummarizedExperiment object of an ArtifactDB project, with its
    alternative experiments, decoded lazily and cached until `clear()`.

    All metadata goes through a {@link MetadataCache}, so a redirection chain
    or a shared child document is only ever fetched once per cache lifetime.
    """

    def __init__(self, path: str, navigator: ProjectNavigator) -> None:
        self.path = path
        self.navigator = MetadataCache(navigator)
        self._features: Optional[Dict[str, pd.DataFrame]] = None
        self._cells: Optional[pd.DataFrame] = None
        self._other: Any = None

    def clear(self) -> None:
        self._features = None
        self._cells = None
        self._other = None
        self.navigator.clear()

    async def meta(self) -> Dict[str, Any]:
        meta = await self.navigator.metadata(self.path)
        _se_section(meta)
        return meta

    async def alternatives(self) -> Dict[str, str]:
        """
        :return: alternative experiment name -> object path, in declaration order
        """
        sce = (await self.meta()).get("single_cell_experiment") or {}
        output: Dict[str, str] = {}
        for alt in sce.get("alternative_experiments", []):
            output[alt["name"]] = _resource_path(alt, f"alternative experiment '{alt.get('name')}'")
        return output

    async def experiment_meta(self, name: str) -> Dict[str, Any]:
        if name == MAIN_EXPERIMENT:
            return await self.meta()
        alts = await self.alternatives()
        if name not in alts:
            raise SchemaUnknownError(f"no alternative experiment named '{name}'")
        return await self.navigator.metadata(alts[name])

    async def _experiment_features(self, meta: Dict[str, Any]) -> pd.DataFrame:
        section = _se_section(meta)
        if "row_data" in section:
            row_meta = await self.navigator.metadata(_resource_path(section["row_data"], "row_data"))
            return await load_legacy_data_frame(row_meta, self.navigator)
        return frames.empty_frame(int(section["dimensions"][0]))

    async def features(self) -> Dict[str, pd.DataFrame]:
        if self._features is None:
            output = {MAIN_EXPERIMENT: await self._experiment_features(await self.meta())}
            for name, path in (await self.alternatives()).items():
                try:
                    output[name] = await self._experiment_features(await self.navigator.metadata(path))
                except ScReadersError as e:
                    logger.warning(
                        "Failed to extract features for alternative experiment",
                        extra={"experiment": name, "error": str(e)},
                    )
            self._features = output
        return self._features

    async def cells(self) -> pd.DataFrame:
        if self._cells is None:
            section = _se_section(await self.meta())
            if "column_data" in section:
                col_meta = await self.navigator.metadata(_resource_path(section["column_data"], "column_data"))
                self._cells = await load_legacy_data_frame(col_meta, self.navigator)
            else:
                self._cells = frames.empty_frame(int(section["dimensions"][1]))
        return self._cells

    async def assay_names(self) -> Dict[str, List[Optional[str]]]:
        output = {MAIN_EXPERIMENT: legacy_assay_names(await self.meta())}
        for name, path in (await self.alternatives()).items():
            try:
                output[name] = legacy_assay_names(await self.navigator.metadata(path))
            except ScReadersError as e:
                logger.warning(
                    "Failed to extract assay names for alternative experiment",
                    extra={"experiment": name, "error": str(e)},
                )
        return output

    async def other_metadata(self) -> Any:
        if self._other is None:
            section = _se_section(await self.meta())
            if "other_data" in section:
                other_meta = await self.navigator.metadata(_resource_path(section["other_data"], "other_data"))
                self._other = await load_legacy_simple_list(other_meta, self.navigator)
            else:
                self._other = {}
        return self._other

    async def reduced_dimensions(self) -> Dict[str, Dict[str, Any]]:
        """
        :return: name -> metadata, restricted to 2-dimensional HDF5 dense arrays
        """
        sce = (await self.meta()).get("single_cell_experiment") or {}
        output: Dict[str, Dict[str, Any]] = {}
        for red in sce.get("reduced_dimensions", []):
            red_meta = await self.navigator.metadata(_resource_path(red, f"reduced dimension '{red.get('name')}'"))
            schema = red_meta.get("$schema", "")
            if schema.startswith("hdf5_dense_array/") and len(red_meta.get("array", {}).get("dimensions", [])) == 2:
                output[red["name"]] = red_meta
            else:
                logger.warning(
                    "Skipping unsupported reduced dimension",
                    extra={"reduced_dimension": red.get("name"), "schema": schema},
                )
        return output

    async def load_assay(self, name: str, selector: Any, force_integer: bool) -> Tuple[MatrixHandle, pd.DataFrame]:
        features = (await self.features()).get(name)
        if features is None:
            raise SchemaUnknownError(f"no features available for experiment '{name}'")
        loaded = await extract_legacy_assay(
            await self.experiment_meta(name), selector, self.navigator, force_integer=force_integer
        )
        if loaded.number_of_rows() != len(features):
            loaded.free()
            raise DimensionMismatchError(
                f"assay of experiment '{name}' has {loaded.number_of_rows()} rows, features have {len(features)}"
            )
        return loaded, features


class AbstractArtifactdbDataset(Dataset):
    """
    Dataset stored as a SummarizedExperiment object of a legacy ArtifactDB project.

    :param path: path of the object inside the project (its metadata lives at `path.json`)
    :param navigator: {@link ProjectNavigator} over the project

    Modalities map onto experiments as in {@link SummarizedExperimentDataset}.
    Any metadata already cached by the navigator is respected until `clear()`.
    """

    OPTION_KINDS = EXPERIMENT_KINDS

    def __init__(self, path: str, navigator: ProjectNavigator, options: Optional[Dict[str, Any]] = None) -> None:
        self._project = LegacyProject(path, navigator)
        super().__init__(options)

    @classmethod
    def format(cls) -> str:
        return "ArtifactDB"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return dict(EXPERIMENT_DEFAULTS)

    def files(self) -> List[Tuple[str, FileRef]]:
        return []

    def _reset(self) -> None:
        self._project.clear()

    async def _experiments(self) -> Dict[str, Optional[str]]:
        alternatives = list((await self._project.alternatives()).keys())
        return {
            modality: resolve_experiment(exp, MAIN_EXPERIMENT, alternatives, modality)
            for modality, (exp, _) in experiment_mapping(self._options).items()
        }

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
            "Loaded ArtifactDB experiment",
            extra={"dataset_format": self.format(), "path": self._project.path, "modalities": output.available()},
        )
        return {
            "matrix": output,
            "features": features,
            "cells": cells,
            "row_ids": row_ids,
            "primary_ids": futils.extract_primary_ids(features, primary_mapping(self._options)),
        }


class AbstractArtifactdbResult(Result):
    """
    Analysis result stored as a SingleCellExperiment object of a legacy ArtifactDB project.

    Every experiment is loaded under its own name (`""` for the main one).
    """

    OPTION_KINDS = RESULT_KINDS

    def __init__(self, path: str, navigator: ProjectNavigator, options: Optional[Dict[str, Any]] = None) -> None:
        self._project = LegacyProject(path, navigator)
        super().__init__(options)

    @classmethod
    def format(cls) -> str:
        return "ArtifactDB"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return dict(RESULT_DEFAULTS)

    def files(self) -> List[Tuple[str, FileRef]]:
        return []

    def _reset(self) -> None:
        self._project.clear()

    async def _summary(self) -> Dict[str, Any]:
        features = await self._project.features()
        self._mark_populated()
        return {
            "modality_features": dict(features),
            "cells": await self._project.cells(),
            "modality_assay_names": await self._project.assay_names(),
            "reduced_dimension_names": list((await self._project.reduced_dimensions()).keys()),
            "other_metadata": await self._project.other_metadata(),
        }

    async def _load(self) -> Dict[str, Any]:
        all_features = await self._project.features()
        cells = await self._project.cells()
        other = await self._project.other_metadata()
        self._mark_populated()

        reduced: Dict[str, List[np.ndarray]] = {}
        available = await self._project.reduced_dimensions()
        wanted = self._options["reduced_dimension_names"]
        for name in available.keys() if wanted is None else wanted:
            if name not in available:
                logger.warning("Skipping unknown reduced dimension", extra={"reduced_dimension": name})
                continue
            reduced[name] = await extract_legacy_reduced_dimension(available[name], self._project.navigator)

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


# -------------------------------------------------------------------------
# ZIP archives
# -------------------------------------------------------------------------

def _zipped_files(zip_ref: FileRef) -> List[Tuple[str, FileRef]]:
    return [("zip", zip_ref)]


def _pop_reserved(options: Dict[str, Any], key: str, format_name: str) -> str:
    if key not in options:
        raise FormatMismatchError(f"format '{format_name}' requires the '{key}' option")
    return options.pop(key)


class ZippedArtifactdbDataset(AbstractArtifactdbDataset):
    """
    {@link AbstractArtifactdbDataset} over a project packed in a ZIP file.

    :param name: object path inside the archive
    :param zip_file: the archive
    :param existing_handle: an already-open `zipfile.ZipFile` of the same archive, e.g.
        the one given to {@link search_zipped_artifactdb}; it stays owned by the caller

    The object path travels through serialization as the `dataset_name` option.
    """

    FILE_TYPES = ("zip",)

    def __init__(
            self,
            name: str,
            zip_file: Any,
            options: Optional[Dict[str, Any]] = None,
            existing_handle: Optional[zipfile.ZipFile] = None,
    ) -> None:
        self._zip = FileRef.coerce(zip_file)
        self._name = name
        super().__init__(name, ZippedProjectNavigator(self._zip, existing_handle), options)

    @classmethod
    def format(cls) -> str:
        return "ArtifactDB-zipped"

    def files(self) -> List[Tuple[str, FileRef]]:
        return _zipped_files(self._zip)

    def _serialized_options(self) -> Dict[str, Any]:
        output = self.options()
        output["dataset_name"] = self._name
        return output

    @classmethod
    def _from_files(cls, files: Dict[str, FileRef], options: Dict[str, Any]) -> ZippedArtifactdbDataset:
        name = _pop_reserved(options, "dataset_name", cls.format())
        return cls(name, files["zip"], options=options)


class ZippedArtifactdbResult(AbstractArtifactdbResult):
    """
    {@link AbstractArtifactdbResult} over a project packed in a ZIP file.
    """

    FILE_TYPES = ("zip",)

    def __init__(
            self,
            name: str,
            zip_file: Any,
            options: Optional[Dict[str, Any]] = None,
            existing_handle: Optional[zipfile.ZipFile] = None,
    ) -> None:
        self._zip = FileRef.coerce(zip_file)
        self._name = name
        super().__init__(name, ZippedProjectNavigator(self._zip, existing_handle), options)

    @classmethod
    def format(cls) -> str:
        return "ArtifactDB-zipped"

    def files(self) -> List[Tuple[str, FileRef]]:
        return _zipped_files(self._zip)

    def _serialized_options(self) -> Dict[str, Any]:
        output = self.options()
        output["dataset_name"] = self._name
        return output

    @classmethod
    def _from_files(cls, files: Dict[str, FileRef], options: Dict[str, Any]) -> ZippedArtifactdbResult:
        name = _pop_reserved(options, "dataset_name", cls.format())
        return cls(name, files["zip"], options=options)


def _depth_order(name: str) -> Tuple[int, str]:
    return name.count("/"), name


def _referenced_paths(meta: Any) -> Iterator[str]:
    """
    Every `resource.path` mentioned anywhere in an object's metadata, without the '.json' suffix.
    """
    if isinstance(meta, dict):
        resource = meta.get("resource")
        if isinstance(resource, dict) and isinstance(resource.get("path"), str):
            path = resource["path"]
            yield path[: -len(".json")] if path.endswith(".json") else path
        for value in meta.values():
            yield from _referenced_paths(value)
    elif isinstance(meta, list):
        for value in meta:
            yield from _referenced_paths(value)


def search_zipped_artifactdb(archive: zipfile.ZipFile) -> Dict[str, List[int]]:
    """
    Find the SummarizedExperiment objects of a legacy ArtifactDB project in a ZIP file.

    Objects referenced by another object (alternative experiments, for example)
    are not reported, and neither is anything nested under a reported object's
    own path. Sibling objects in the same directory are independent.

    :param archive: open ZIP file
    :return: object path (usable as `name` for {@link ZippedArtifactdbDataset}) -> dimensions
    """
    candidates = sorted((n for n in archive.namelist() if n.endswith(".json")), key=_depth_order)

    experiments: Dict[str, Dict[str, Any]] = {}
    for name in candidates:
        try:
            meta = json.loads(archive.read(name))
        except ValueError:
            continue
        if isinstance(meta, dict) and isinstance(meta.get("summarized_experiment"), dict):
            experiments[name[: -len(".json")]] = meta

    referenced = set()
    for meta in experiments.values():
        referenced.update(_referenced_paths(meta))

    found: Dict[str, List[int]] = {}
    for path, meta in experiments.items():
        if path in referenced or any(path.startswith(f + "/") for f in found):
            continue
        found[path] = list(meta["summarized_experiment"].get("dimensions", []))

    return found
