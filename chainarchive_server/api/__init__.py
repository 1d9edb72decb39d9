"""
HTTP API for Chain Archive.

Read-only views over the archive plus the manual backfill endpoint.
"""

from .app import ArchiveServices, create_app
from .config import Settings

__all__ = [
    "ArchiveServices",
    "create_app",
    "Settings",
]
