"""
Episode range expressions such as "1-5,7,9-12".
"""

import logging
import re
from typing import Sequence, TypeVar

from bili_cli.exceptions import InvalidRangeError

log = logging.getLogger(__name__)

T = TypeVar("T")

_TOKEN = re.compile(r"^(\d+)(?:-(\d+))?$")


def parse_range(expression: str) -> list[int]:
    """
    Parses a comma-separated list of 1-based indices and inclusive ranges.

    Returns:
        The selected indices, sorted and de-duplicated.

    Raises:
        InvalidRangeError: On empty or malformed tokens, zero, or descending ranges.
    """
    selected: set[int] = set()
    for raw_token in expression.split(","):
        token = re.sub(r"\s+", "", raw_token)
        match = _TOKEN.match(token)
        if not match:
            raise InvalidRangeError(f"Invalid range token '{raw_token.strip()}'.")
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) else start
        if start == 0 or end == 0:
            raise InvalidRangeError("Episode numbers start at 1.")
        if end < start:
            raise InvalidRangeError(f"Descending range '{token}' is not allowed.")
        selected.update(range(start, end + 1))
    return sorted(selected)


def apply_range(items: Sequence[T], expression: str) -> list[T]:
    """
    Selects items by a range expression. Indices beyond the available count are
    skipped with a warning; selecting nothing is an error.
    """
    indices = parse_range(expression)
    if missing := [i for i in indices if i > len(items)]:
        log.warning(
            f"[yellow]⚠ Ignoring episode(s) {', '.join(map(str, missing))}: "
            f"only {len(items)} available.[/yellow]"
        )
    chosen = [items[i - 1] for i in indices if i <= len(items)]
    if not chosen:
        raise InvalidRangeError(
            f"Range '{expression}' selects no episodes (only {len(items)} available)."
        )
    return chosen
