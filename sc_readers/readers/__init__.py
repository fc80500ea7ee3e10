"""
Per-format readers. Each `*Dataset` turns raw inputs into annotations and
count matrices; each `*Result` reads back a finished analysis.
"""

from .artifactdb import (
    AbstractArtifactdbDataset,
    AbstractArtifactdbResult,
    ZippedArtifactdbDataset,
    ZippedArtifactdbResult,
    search_zipped_artifactdb,
)
from .base import Dataset, DatasetState, Reader, Result
from .h5ad import H5adDataset, H5adResult
from .mtx import MatrixMarketDataset
from .se import SummarizedExperimentDataset, SummarizedExperimentResult
from .takane import (
    AbstractAlabasterDataset,
    AbstractAlabasterResult,
    AbstractTakaneDataset,
    AbstractTakaneResult,
    ZippedAlabasterDataset,
    ZippedAlabasterResult,
    search_zipped_alabaster,
)
from .tenx import TenxHdf5Dataset

__all__ = [
    "AbstractAlabasterDataset",
    "AbstractAlabasterResult",
    "AbstractArtifactdbDataset",
    "AbstractArtifactdbResult",
    "AbstractTakaneDataset",
    "AbstractTakaneResult",
    "Dataset",
    "DatasetState",
    "H5adDataset",
    "H5adResult",
    "MatrixMarketDataset",
    "Reader",
    "Result",
    "SummarizedExperimentDataset",
    "SummarizedExperimentResult",
    "TenxHdf5Dataset",
    "ZippedAlabasterDataset",
    "ZippedAlabasterResult",
    "ZippedArtifactdbDataset",
    "ZippedArtifactdbResult",
    "search_zipped_alabaster",
    "search_zipped_artifactdb",
]
