from __future__ import annotations

import logging
import os
import tempfile
from typing import Callable, Set, Tuple, Union

logger = logging.getLogger(__name__)

_live_temporaries: Set[str] = set()


def live_temporary_files() -> Set[str]:
    """Paths of temporary files handed out by realize_file and not yet flushed."""
    return set(_live_temporaries)


def realize_file(content: Union[str, os.PathLike, bytes], suffix: str = ".h5") -> Tuple[str, Callable[[], None]]:
    """
    Give native, path-addressed loaders a file they can open.

    Paths are passed through untouched. Bytes are written to a temporary file
    that is removed by the returned flush callback; callers must invoke it on
    every exit path.

    :return: (path, flush)
    """
    if isinstance(content, (str, os.PathLike)):
        return os.fspath(content), _noop

    fd, path = tempfile.mkstemp(suffix=suffix, prefix="sc_readers_")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
    except BaseException:
        os.unlink(path)
        raise

    _live_temporaries.add(path)
    logger.debug("Realized temporary file", extra={"path": path, "size": len(content)})

    def flush() -> None:
        if path in _live_temporaries:
            _live_temporaries.discard(path)
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

    return path, flush


def _noop() -> None:
    return None
