"""
Core types shared by every reader: file references, data frame helpers and exceptions.
"""

from .file_ref import FileRef

__all__ = ["FileRef"]
