from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from sc_readers.core import frames
from sc_readers.utils.features import decorate_with_primary_ids

logger = logging.getLogger(__name__)


def _plain_columns(frame: pd.DataFrame) -> pd.DataFrame:
    nested = [c for c in frame.columns if frame[c].dtype == object and any(isinstance(x, dict) for x in frame[c])]
    if nested:
        frame = frame.drop(columns=nested)
    frame = frame.copy()
    frame.columns = [str(c) for c in frame.columns]
    return frame


def _named(frame: pd.DataFrame, ids: Optional[Any] = None) -> pd.DataFrame:
    output = _plain_columns(frame)
    if ids is not None:
        output.index = pd.Index([f"{i}" if x is None else str(x) for i, x in enumerate(ids)], dtype=object)
    elif frames.has_row_names(output):
        output.index = pd.Index([str(x) for x in output.index], dtype=object)
    else:
        output.index = pd.Index([str(i) for i in range(len(output))], dtype=object)
    return output


def to_anndata(
        loaded: Mapping[str, Any],
        modality: str = "RNA",
        feature_id_column: Optional[Any] = None,
) -> ad.AnnData:
    """
    Wrap one modality of a `load()` result in an AnnData (cells x features).

    The matrix is copied, so the caller still owns (and must free) `loaded["matrix"]`.
    Feature names come from `primary_ids` when the result has them, else from
    `feature_id_column` (a column name or position), else from the feature row
    names. Reduced dimensions of a Result land in `obsm`.

    :param loaded: output of Dataset.load() or Result.load()
    :param modality: key of `loaded["matrix"]` to convert
    :param feature_id_column: fallback source of feature names for results without `primary_ids`
    :raises KeyError: if `modality` was not loaded
    """
    matrix = loaded["matrix"]
    if modality not in matrix.available():
        raise KeyError(f"modality '{modality}' not loaded (available: {matrix.available()})")

    values = matrix.get(modality).values()
    X = sp.csr_matrix(values.T) if sp.issparse(values) else np.array(values.T)

    features: Dict[str, pd.DataFrame] = {modality: loaded["features"][modality]}
    primary = (loaded.get("primary_ids") or {}).get(modality)
    if primary is None:
        if feature_id_column is not None:
            decorate_with_primary_ids(features, {modality: feature_id_column})
        var = _named(features[modality])
    else:
        var = _named(features[modality], primary)

    obs = _named(loaded["cells"])

    adata = ad.AnnData(X=X, obs=obs, var=var)
    for name, dims in (loaded.get("reduced_dimensions") or {}).items():
        adata.obsm[name] = np.column_stack(dims) if dims else np.zeros((adata.n_obs, 0))

    if not adata.obs_names.is_unique:
        logger.warning("Observation names are not unique; calling .obs_names_make_unique()")
        adata.obs_names_make_unique()
    if not adata.var_names.is_unique:
        logger.warning(
            "Variable names are not unique; calling .var_names_make_unique()",
            extra={"modality": modality},
        )
        adata.var_names_make_unique()

    return adata
