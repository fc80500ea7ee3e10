from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from sc_readers.config.model import DatasetConfig, GlobalConfig, NamedDataset
from sc_readers.core.exceptions import ConfigError, ScReadersError
from sc_readers.registry import ReaderRegistry, create_default_registry

logger = logging.getLogger(__name__)


def load_global_config(root: Path) -> GlobalConfig:
    """
    Load configuration from a directory.

    Expected structure:

        root/
            global.json
            datasets/
                dataset_1.json
                dataset_2.json
                ...

    - data_root: directory that relative dataset file paths are resolved against.
                 If 'data_root' is relative in global.json, it is resolved relative to 'root';
                 without it, paths are resolved relative to 'root' itself.

    Entries in 'datasets/' that are structurally invalid are logged and skipped.

    :param root: Directory containing 'global.json' and optionally 'datasets/'.
    :return: A GlobalConfig instance.
    :raises FileNotFoundError: if global.json does not exist.
    :raises ConfigError: if global.json is not a JSON object.
    """
    root = Path(root)
    logger.info("Loading global config", extra={"config_root": str(root)})

    global_path = root / "global.json"
    if not global_path.is_file():
        raise FileNotFoundError(f"File not found at {global_path}")

    with global_path.open() as f:
        raw_global = json.load(f)
    if not isinstance(raw_global, dict):
        raise ConfigError(f"{global_path} must contain a JSON object")

    # Absolute paths are used as-is; relative ones are resolved against the config root.
    data_root_raw = raw_global.get("data_root")
    if data_root_raw is None:
        data_root = None
    else:
        data_root_path = Path(data_root_raw)
        data_root = data_root_path if data_root_path.is_absolute() else (root / data_root_path).resolve()

    base_dir = data_root if data_root is not None else root
    datasets: List[DatasetConfig] = []
    datasets_dir = root / "datasets"
    if datasets_dir.is_dir():
        for idx, config_file in enumerate(sorted(datasets_dir.glob("*.json"))):
            try:
                with config_file.open() as f:
                    raw = json.load(f)
                datasets.append(DatasetConfig.from_raw(raw, source_path=config_file, index=idx, base_dir=base_dir))
            except (ValueError, ConfigError) as e:
                logger.warning(
                    "Skipping invalid dataset config",
                    extra={"config_file": str(config_file), "error": str(e)},
                )

    return GlobalConfig(data_root=data_root, datasets=datasets)


def load_datasets(
        root: Path,
        registry: Optional[ReaderRegistry] = None,
) -> Tuple[GlobalConfig, List[NamedDataset]]:
    """
    Load the global configuration and instantiate a reader for every dataset entry.

    Readers are only constructed here; no file is opened until they are used.

    :param root: config directory
    :param registry: where formats are looked up; the default registry if None
    :return: (GlobalConfig, readers in config file order)
    :raises ConfigError: if no entry could be turned into a reader
    """
    registry = registry or create_default_registry()
    global_config = load_global_config(root)

    datasets: List[NamedDataset] = []
    for ds_cfg in global_config.datasets:
        try:
            reader = registry.create(ds_cfg.format, ds_cfg.file_records(), ds_cfg.options)
        except (KeyError, ScReadersError) as e:
            logger.warning(
                "Skipping dataset that could not be created",
                extra={"dataset": ds_cfg.name, "dataset_format": ds_cfg.format, "error": str(e)},
            )
            continue
        datasets.append(NamedDataset(name=ds_cfg.name, dataset=reader, config=ds_cfg))

    if not datasets:
        raise ConfigError(f"no loadable dataset found under {root}")

    logger.info(
        "Datasets loaded from config root",
        extra={
            "config_root": str(root),
            "n_datasets": len(datasets),
            "dataset_names": [ds.name for ds in datasets],
        },
    )
    return global_config, datasets
