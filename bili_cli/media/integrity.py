"""
Provides methods for checking the integrity of merged media files.
"""

import logging
from pathlib import Path

from mutagen import MutagenError
from mutagen.mp4 import MP4, MP4StreamInfoError

log = logging.getLogger(__name__)


class FileIntegrityChecker:
    """A collection of static methods for validating media file integrity."""

    @staticmethod
    def check_nonempty(filepath: Path) -> bool:
        """The minimal check applied to every merged output."""
        try:
            return filepath.is_file() and filepath.stat().st_size > 0
        except OSError:
            return False

    @staticmethod
    def check_mp4(filepath: Path) -> bool:
        """
        Performs a basic integrity check on an MP4 container.

        Checks if the file can be opened by mutagen and has valid stream info.

        Args:
            filepath: Path to the MP4 file.

        Returns:
            True if the file appears to be a valid MP4 file, False otherwise.
        """
        try:
            media = MP4(filepath)
            # A valid container should have stream info with a positive duration
            if media.info and media.info.length > 0:
                return True
            log.warning(
                f"MP4 integrity check failed for '{filepath}': No valid stream info."
            )
            return False
        except MP4StreamInfoError:
            log.warning(
                f"MP4 integrity check failed for '{filepath}': Missing stream info."
            )
            return False
        except MutagenError as e:
            log.debug(f"MP4 check failed for '{filepath}': {e}")
            return False
