"""
Storage Layer.

This package handles all data persistence: the configuration file, the session
record, and the per-stream download checkpoints.
"""

from .checkpoint import Checkpoint, CheckpointStore
from .config_manager import ConfigManager
from .session_store import SessionStore

__all__ = ["Checkpoint", "CheckpointStore", "ConfigManager", "SessionStore"]
