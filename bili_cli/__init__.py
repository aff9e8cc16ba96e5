"""
bili-cli: a concurrent, resumable downloader for bilibili videos, series and courses.
"""

__version__ = "0.1.0"
