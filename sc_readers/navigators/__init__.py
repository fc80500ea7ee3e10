"""
Path-addressed access to the files of a project directory (on disk or in a ZIP).
"""

from .base import MAX_REDIRECTIONS, ProjectNavigator
from .cache import MetadataCache
from .filesystem import FilesystemNavigator
from .zipped import ZippedProjectNavigator, open_archive

__all__ = [
    "MAX_REDIRECTIONS",
    "FilesystemNavigator",
    "MetadataCache",
    "ProjectNavigator",
    "ZippedProjectNavigator",
    "open_archive",
]
