"""
Core application engine for orchestrating the download process.

This package contains the primary logic. The `DownloadManager` acts as the
high-level session coordinator, delegating each episode to an `EpisodeJob`
that resolves, downloads and merges it. `BiliService` exposes the same
operations as plain callables.
"""
