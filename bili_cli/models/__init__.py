"""
Data Models Layer.

This package contains the Pydantic models and dataclasses that define the core
data structures used throughout the application: configuration, sessions,
resolved media and session statistics.
"""

from .config import DownloadConfig
from .media import ContentKind, ContentRef, Episode, Manifest, Stream, StreamSelection
from .session import CookieEntry, Session
from .stats import DownloadStats

__all__ = [
    "ContentKind",
    "ContentRef",
    "CookieEntry",
    "DownloadConfig",
    "DownloadStats",
    "Episode",
    "Manifest",
    "Session",
    "Stream",
    "StreamSelection",
]
