"""
Utilities for handling file paths and output templates.
"""

import re
from pathlib import Path
from typing import Any, Dict

from pathvalidate import sanitize_filename, sanitize_filepath

from bili_cli.models.media import Episode


class PathFormatter:
    """
    Formats an output path template string using episode metadata.

    Besides `str.format` fields, templates support conditionals of the form
    `%{?flag,text if set|text if not}`.
    """

    def __init__(self, template: str) -> None:
        self.template = template

    def format_path(
        self, episode: Episode, file_extension: str, multipart: bool = True
    ) -> Path:
        """
        Generates a final, sanitized file path from the template.
        """
        template_vars = self._get_template_vars(episode, file_extension, multipart)
        formatted_str = self._resolve_conditionals(self.template, template_vars)
        final_str = formatted_str.format(**template_vars)
        return Path(sanitize_filepath(final_str, platform="auto"))

    def _resolve_conditionals(
        self, template_str: str, variables: Dict[str, Any]
    ) -> str:
        pattern = re.compile(r"%\{\?(\w+),([^|]*?)\|([^}]*?)\}")

        def replacer(match: re.Match) -> str:
            key, true_val, false_val = match.groups()
            return true_val if variables.get(key) else false_val

        return pattern.sub(replacer, template_str)

    def _get_template_vars(
        self, episode: Episode, ext: str, multipart: bool
    ) -> Dict[str, Any]:
        """Builds the variable dictionary for template formatting."""
        parent = episode.parent_title or episode.title
        return {
            "parent": sanitize_filename(parent or "Untitled"),
            "title": sanitize_filename(episode.title or "Untitled"),
            "ordinal": episode.ordinal,
            "kind": episode.kind.value,
            "id": episode.key,
            "bvid": episode.bvid or "",
            "ext": ext,
            "is_multipart": 1 if multipart else 0,
        }
