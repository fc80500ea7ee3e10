from __future__ import annotations

import logging
import os
from typing import IO, Optional

from pythonjsonlogger import jsonlogger

LOG_FORMAT_ENV = "SC_READERS_LOG_FORMAT"

LIBRARY_LOGGER = "sc_readers"

_PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_JSON_FIELDS = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _build_formatter(format_mode: str) -> logging.Formatter:
    if format_mode == "plain":
        return logging.Formatter(_PLAIN_FORMAT)
    if format_mode == "json":
        return jsonlogger.JsonFormatter(_JSON_FIELDS)
    raise ValueError(f"unknown log format '{format_mode}' (expected 'json' or 'plain')")


def configure_logging(
        level: int = logging.INFO,
        force_format: Optional[str] = None,
        *,
        library_level: Optional[int] = None,
        stream: Optional[IO[str]] = None,
) -> None:
    """
    Install a single handler on the root logger, for hosts embedding sc_readers.

    Readers never call this; they only emit through module-level loggers, with
    context such as `dataset_format`, `path` or `modality` passed in `extra`.
    The JSON formatter keeps those fields as top-level keys.

    Selection Order:
        1) force_format argument ("json" or "plain") if provided
        2) env var SC_READERS_LOG_FORMAT
        3) default = "json"

    :param library_level: level for the "sc_readers" logger alone, e.g. DEBUG to
        trace redirections and file realization without flooding other libraries
    :param stream: where records go; stderr if None
    :raises ValueError: on a format other than "json" or "plain"
    """
    if force_format is not None:
        format_mode = force_format.lower()
    else:
        format_mode = os.getenv(LOG_FORMAT_ENV, "json").lower()
    formatter = _build_formatter(format_mode)

    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)

    # Replace any existing handlers to avoid duplicate logs
    root.handlers.clear()
    root.addHandler(handler)

    if library_level is not None:
        logging.getLogger(LIBRARY_LOGGER).setLevel(library_level)
