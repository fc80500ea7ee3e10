"""
In-process matrix engine: loads count matrices into scipy/numpy storage and
applies the handful of transformations that the readers need.
"""
from sc_readers.engine.files import live_temporary_files, realize_file
from sc_readers.engine.hdf5 import (
    extract_hdf5_matrix_details,
    initialize_dense_matrix_from_hdf5,
    initialize_matrix_from_hdf5_dataset,
    initialize_sparse_matrix_from_hdf5,
    initialize_sparse_matrix_from_hdf5_group,
    open_hdf5,
)
from sc_readers.engine.matrix import (
    MatrixHandle,
    MultiMatrix,
    coerce_values,
    free,
    initialize_sparse_matrix_from_arrays,
    live_handle_count,
)
from sc_readers.engine.mtx import extract_matrix_market_dimensions, initialize_sparse_matrix_from_matrix_market
from sc_readers.engine.ops import (
    FeatureGuess,
    cbind,
    delayed_arithmetic,
    delayed_math,
    guess_features,
    log_norm_counts,
    normalize_counts,
    rbind,
    split_rows,
    subset_columns,
    subset_rows,
    transpose,
)
