from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from sc_readers import engine
from sc_readers.core import frames
from sc_readers.readers.base import Reader
from sc_readers.utils.summaries import summarize_frame
from sc_readers.validation.errors import ValidationError, ValidationIssue

logger = logging.getLogger(__name__)

ROW_NAMES_FIELD = "row_names"

FEATURE_TYPES = ("symbol-mouse", "symbol-human", "ensembl-mouse", "ensembl-human")

# Summary keys that stand for each modality, in order of preference.
MODALITY_KEYS: Dict[str, Sequence[str]] = {
    "RNA": ("RNA", "Gene Expression", ""),
    "ADT": ("ADT", "Antibody Capture"),
    "CRISPR": ("CRISPR", "CRISPR Guide Capture"),
}


@dataclass
class FeatureTypeChoice:
    """
    Outcome of {@link common_feature_types}.

    `best_type` is None when no identifier type is available in every dataset;
    `best_fields` then stays empty.
    """
    best_type: Optional[Dict[str, str]] = None
    best_fields: Dict[str, str] = field(default_factory=dict)


def common_feature_types(genes: Mapping[str, Mapping[str, Sequence[Optional[str]]]]) -> FeatureTypeChoice:
    """
    Choose, for each dataset, the feature column holding the same kind of identifiers as the others.

    Each column is classified with {@link engine.guess_features}; per dataset the
    most confident column wins for each type-species pair. The pair present in
    every dataset with the highest product of confidences is chosen.

    :param genes: dataset name -> (column name -> identifiers)
    """
    scores: Dict[str, List[float]] = {t: [] for t in FEATURE_TYPES}
    fields: Dict[str, List[str]] = {t: [] for t in FEATURE_TYPES}

    for name, columns in genes.items():
        best_scores: Dict[str, float] = {}
        best_fields: Dict[str, str] = {}
        for column, values in columns.items():
            guess = engine.guess_features(values)
            key = f"{guess.type}-{guess.species}"
            if key not in best_scores or guess.confidence > best_scores[key]:
                best_scores[key] = guess.confidence
                best_fields[key] = column
        for key, column in best_fields.items():
            fields[key].append(column)
            scores[key].append(best_scores[key])

    best_type: Optional[str] = None
    best_score = -1.0
    for key, values in scores.items():
        if len(values) != len(genes) or not values:
            continue
        score = float(np.prod(values))
        if score > best_score:
            best_score = score
            best_type = key

    if best_type is None:
        return FeatureTypeChoice()

    ftype, species = best_type.split("-")
    return FeatureTypeChoice(
        best_type={"type": ftype, "species": species},
        best_fields=dict(zip(genes.keys(), fields[best_type])),
    )


def _identifier_columns(frame: pd.DataFrame) -> Dict[str, List[Optional[str]]]:
    output: Dict[str, List[Optional[str]]] = {}
    if frames.has_row_names(frame):
        output[ROW_NAMES_FIELD] = frames.row_names(frame)
    for name in frame.columns:
        column = frame[name]
        if pd.api.types.is_string_dtype(column.dtype) or isinstance(column.dtype, pd.CategoricalDtype):
            if column.dtype == object and any(isinstance(x, dict) for x in column):
                continue
            output[str(name)] = [None if pd.isna(x) else str(x) for x in column]
    return output


def guess_default_modalities(summaries: Sequence[Mapping[str, Any]]) -> Dict[str, List[str]]:
    """
    Map each modality to the `modality_features` key standing for it in every summary.

    A summary with a single unrecognized key is taken to be RNA-only.

    :return: modality -> one key per summary; modalities missing from any summary are dropped
    """
    output: Dict[str, List[str]] = {}
    for modality, candidates in MODALITY_KEYS.items():
        chosen: List[str] = []
        for summary in summaries:
            available = summary["modality_features"]
            hit = next((c for c in candidates if c in available), None)
            if hit is None and modality == "RNA" and len(available) == 1:
                hit = next(iter(available))
            if hit is None:
                break
            chosen.append(hit)
        else:
            output[modality] = chosen
    return output


async def validate_annotations(datasets: Mapping[str, Reader]) -> Dict[str, Any]:
    """
    Check that a set of datasets can be analyzed together, before loading any matrix.

    :param datasets: dataset name -> reader
    :return: `{"annotations": name -> column summaries of the cells,
        "features": modality -> {"fields": name -> identifier column, "common": number of shared ids}}`
    :raises ValidationError: if no modality is shared or a modality has no common identifier type
    """
    names = list(datasets.keys())
    summaries = await asyncio.gather(*(datasets[n].summary() for n in names))

    modalities = guess_default_modalities(summaries)
    if not modalities:
        raise ValidationError([ValidationIssue("NO_COMMON_MODALITY", "failed to find any common modalities.")])

    annotations = {n: summarize_frame(s["cells"]) for n, s in zip(names, summaries)}

    features: Dict[str, Dict[str, Any]] = {}
    for modality, keys in modalities.items():
        genes = {
            n: _identifier_columns(s["modality_features"][k])
            for n, s, k in zip(names, summaries, keys)
        }
        choice = common_feature_types(genes)
        if choice.best_type is None:
            raise ValidationError([
                ValidationIssue(
                    "NO_COMMON_FEATURE_TYPE",
                    f"cannot find common feature types across all datasets for modality '{modality}'.",
                )
            ])

        if len(names) > 1:
            common = None
            for n in names:
                current = set(genes[n][choice.best_fields[n]])
                common = current if common is None else common & current
            ncommon = len(common)
        else:
            ncommon = len(genes[names[0]][choice.best_fields[names[0]]])

        features[modality] = {"fields": dict(choice.best_fields), "common": ncommon}

    logger.info(
        "Validated dataset annotations",
        extra={"datasets": names, "modalities": list(features.keys())},
    )
    return {"annotations": annotations, "features": features}
