"""
Config package for sc_readers.

Responsible for:
- config models (GlobalConfig, DatasetConfig, NamedDataset)
- config I/O helpers (load_datasets / load_global_config)
"""

from .model import DatasetConfig, FileEntry, GlobalConfig, NamedDataset
from .io import load_datasets, load_global_config
