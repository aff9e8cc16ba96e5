"""
Media Processing Layer.

This package is responsible for all media file operations: segmented
downloading, muxing of separate tracks, and integrity validation.
"""

from .downloader import DownloadTask, SegmentBudget, SegmentDownloader
from .integrity import FileIntegrityChecker
from .merger import Merger, MergeResult

__all__ = [
    "DownloadTask",
    "FileIntegrityChecker",
    "MergeResult",
    "Merger",
    "SegmentBudget",
    "SegmentDownloader",
]
