"""
Top-level package for sc_readers.

Readers for single-cell datasets (10X HDF5, H5AD, Matrix Market,
SummarizedExperiment RDS, ArtifactDB and takane/alabaster projects).
Most code should import from submodules such as:
    sc_readers.readers
    sc_readers.registry
    sc_readers.serialize
"""

__all__: list[str] = []
