from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

from sc_readers import engine
from sc_readers.core import frames
from sc_readers.engine import MatrixHandle, MultiMatrix

logger = logging.getLogger(__name__)

Selector = Union[str, int, None]

MODALITIES = ("RNA", "ADT", "CRISPR")

# Label of features whose type column is missing.
MISSING_TYPE = ""


@dataclass
class SplitMatrix:
    """
    Output of {@link split_matrix_and_features}: one entry per modality in each mapping.
    """
    matrix: MultiMatrix
    features: Dict[str, pd.DataFrame] = field(default_factory=dict)
    row_ids: Dict[str, np.ndarray] = field(default_factory=dict)


def split_matrix_and_features(
        loaded: MatrixHandle,
        raw_features: pd.DataFrame,
        type_column: Optional[str],
        mapping: Mapping[str, Optional[str]],
        default: str,
) -> SplitMatrix:
    """
    Partition a freshly loaded matrix and its feature annotations by modality.

    :param loaded: the full matrix; ownership passes to this function
    :param raw_features: per-feature annotations for every row of the original file
    :param type_column: name of the column holding the feature type, if any
    :param mapping: target modality -> feature type label (None disables the modality)
    :param default: modality that receives every row when there is no type column
    :return: a {@link SplitMatrix}; the split features keep the type column
    """
    output = MultiMatrix()
    try:
        output.add(default, loaded)
        row_ids = loaded.identities()
        current = frames.slice_rows(raw_features, row_ids)

        if type_column is None or type_column not in current.columns:
            return SplitMatrix(
                matrix=output,
                features={default: current},
                row_ids={default: row_ids},
            )

        present = _type_groups(current, type_column)
        by_type: Dict[str, np.ndarray] = {}
        for modality, label in mapping.items():
            if label is not None and label in present:
                by_type[modality] = present[label]

        if len(by_type) == 1 and len(present) == 1:
            output.rename(default, next(iter(by_type)))
        elif by_type:
            # Unmapped groups are dropped by the split too.
            pieces = engine.split_rows(loaded, by_type)
            output.free()
            output = MultiMatrix(pieces)
        else:
            logger.warning(
                "No feature types matched the configured labels; no modalities loaded",
                extra={"type_column": type_column, "labels": sorted(present.keys())},
            )
            output.free()

        return SplitMatrix(
            matrix=output,
            features=frames.split_frame(current, by_type),
            row_ids={k: row_ids[v] for k, v in by_type.items()},
        )

    except Exception:
        output.free()
        loaded.free()
        raise


def _type_groups(raw_features: pd.DataFrame, type_column: str) -> Dict[str, np.ndarray]:
    labels = [MISSING_TYPE if pd.isna(x) else str(x) for x in raw_features[type_column]]
    return frames.group_rows(labels)


def features_by_label(raw_features: pd.DataFrame, type_column: Optional[str]) -> Dict[str, pd.DataFrame]:
    """
    Split annotations by their raw feature type label, without any modality mapping.

    :return: label -> FeatureTable; everything sits under MISSING_TYPE if there is no type column
    """
    if type_column is None or type_column not in raw_features.columns:
        return {MISSING_TYPE: raw_features}
    groups = _type_groups(raw_features, type_column)
    return frames.split_frame(raw_features, groups)


def split_features(
        raw_features: pd.DataFrame,
        type_column: Optional[str],
        mapping: Mapping[str, Optional[str]],
        default: str,
) -> Dict[str, pd.DataFrame]:
    """
    Same partition as {@link split_matrix_and_features}, for annotations only.
    """
    if type_column is None or type_column not in raw_features.columns:
        return {default: raw_features}
    groups = _type_groups(raw_features, type_column)
    by_type = {m: groups[label] for m, label in mapping.items() if label is not None and label in groups}
    return frames.split_frame(raw_features, by_type)


def _resolve_column(frame: pd.DataFrame, selector: Selector) -> Optional[pd.Series]:
    if isinstance(selector, str):
        if selector in frame.columns:
            return frame[selector]
        return None
    if isinstance(selector, (int, np.integer)) and not isinstance(selector, bool):
        if 0 <= selector < frame.shape[1]:
            return frame.iloc[:, int(selector)]
    return None


def _as_ids(values: Any) -> List[Optional[str]]:
    return [None if pd.isna(x) else str(x) for x in values]


def primary_ids_for(
        frame: pd.DataFrame,
        selector: Selector,
        fallback_to_row_names: bool = True,
) -> Optional[List[Optional[str]]]:
    """
    Identifiers chosen by `selector` (column name or position), else the row names, else None.
    """
    column = _resolve_column(frame, selector)
    if column is not None:
        return _as_ids(column)
    if fallback_to_row_names and frames.has_row_names(frame):
        return frames.row_names(frame)
    return None


def extract_primary_ids(
        features: Mapping[str, pd.DataFrame],
        selectors: Mapping[str, Selector],
        fallback_to_row_names: bool = True,
) -> Dict[str, Optional[List[Optional[str]]]]:
    """
    :return: modality -> primary ids (None when nothing suitable was found)
    """
    output: Dict[str, Optional[List[Optional[str]]]] = {}
    for modality, frame in features.items():
        output[modality] = primary_ids_for(
            frame, selectors.get(modality), fallback_to_row_names=fallback_to_row_names
        )
    return output


def decorate_with_primary_ids(
        features: Dict[str, pd.DataFrame],
        selectors: Mapping[str, Selector],
        fallback_to_row_names: bool = True,
) -> None:
    """
    Replace each frame's index with its primary ids, where they can be resolved.
    """
    for modality, frame in list(features.items()):
        ids = primary_ids_for(frame, selectors.get(modality), fallback_to_row_names=fallback_to_row_names)
        if ids is not None:
            decorated = frame.copy()
            decorated.index = pd.Index(ids, dtype=object)
            features[modality] = decorated


def remap_experiment_names(
        per_experiment: Mapping[str, Any],
        experiments: Mapping[str, Optional[str]],
) -> Dict[str, Any]:
    """
    Re-key summary-time values (keyed by experiment name or feature type label)
    into modalities; modalities whose experiment is missing are skipped.
    """
    output: Dict[str, Any] = {}
    for modality, experiment in experiments.items():
        if experiment is not None and experiment in per_experiment:
            output[modality] = per_experiment[experiment]
    return output
