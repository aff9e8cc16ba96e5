"""
Risk-control guard and retry policy.

Risk control (HTTP 412, code -352 and friends) is the site telling us to slow
down. It is tracked separately from transient failures: every occurrence opens a
cooldown window that all requests wait out, and a run of consecutive
occurrences stops the client entirely.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass

from bili_cli.exceptions import RiskControlBlockedError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with uniform jitter for transient failures."""

    attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5

    def delay(self, attempt: int) -> float:
        """The wait before retry number `attempt` (1-based)."""
        backoff = min(self.max_delay, self.base_delay * 2 ** (attempt - 1))
        return backoff + random.uniform(0, self.jitter * self.base_delay)


class RiskControlGuard:
    """
    Shared by every request of a client, API calls and media fetches alike.

    States:
    - clear: no recent risk-control responses, requests pass through
    - cooling: a cooldown window is open; requests wait until it closes
    - blocked: the threshold was reached; `wait` and `record` raise

    Each window opening bumps `epoch`. Callers read the epoch right before
    sending and hand it back with the outcome, so responses to requests that
    were already in flight when a window opened are not counted again.
    """

    def __init__(
        self,
        threshold: int = 3,
        cooldown: float = 30.0,
        max_cooldown: float = 600.0,
    ):
        """
        Initialize the guard.

        Args:
            threshold: Consecutive risk-control responses that mean "blocked"
            cooldown: Seconds to wait after the first occurrence
            max_cooldown: Upper bound for the exponentially growing window
        """
        self.threshold = threshold
        self.cooldown = cooldown
        self.max_cooldown = max_cooldown

        self._consecutive = 0
        self._epoch = 0
        self._cooldown_until = 0.0
        self._lock = asyncio.Lock()

    @property
    def consecutive(self) -> int:
        """Number of counted risk-control responses since the last success."""
        return self._consecutive

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def blocked(self) -> bool:
        return self._consecutive >= self.threshold

    @property
    def clear(self) -> bool:
        return self._consecutive == 0

    def _blocked_error(self, reason: str) -> RiskControlBlockedError:
        return RiskControlBlockedError(
            f"Risk control triggered {self._consecutive} consecutive times "
            f"({reason}); the client is likely blocked."
        )

    async def wait(self) -> int:
        """
        Waits out the current cooldown window, if any, and returns the epoch
        the next request is sent under.

        Raises:
            RiskControlBlockedError: If the guard is already blocked.
        """
        while True:
            if self.blocked:
                raise self._blocked_error("still blocked")
            remaining = self._cooldown_until - time.monotonic()
            if remaining <= 0:
                return self._epoch
            log.debug(f"Risk-control cooldown: waiting {remaining:.1f}s")
            await asyncio.sleep(remaining)

    async def record(self, reason: str, epoch: int) -> bool:
        """
        Registers one risk-control response to a request sent under `epoch`.

        Returns True when the response opened a new cooldown window, False when
        it belongs to a request sent before the current window opened.

        Raises:
            RiskControlBlockedError: When the consecutive count reaches the threshold.
        """
        async with self._lock:
            if self.blocked:
                raise self._blocked_error(reason)
            if epoch != self._epoch:
                log.debug(f"Risk control on an earlier request ({reason}); not counted")
                return False

            self._consecutive += 1
            self._epoch += 1
            if self.blocked:
                log.error(
                    f"[red]✗ Risk control triggered {self._consecutive} times in a "
                    f"row ({reason}). Requests are likely blocked.[/red]"
                )
                raise self._blocked_error(reason)

            window = min(
                self.max_cooldown, self.cooldown * 2 ** (self._consecutive - 1)
            )
            self._cooldown_until = time.monotonic() + window
            log.warning(
                f"[yellow]⚠ Risk control detected ({reason}). "
                f"Cooling down for {window:.0f}s.[/yellow]"
            )
            return True

    async def reset(self, epoch: int) -> None:
        """Called after a successful response to a request sent under `epoch`."""
        if self._consecutive == 0 or epoch != self._epoch:
            return
        async with self._lock:
            if self._consecutive and epoch == self._epoch and not self.blocked:
                log.info("[green]✓ Risk control cleared.[/green]")
                self._consecutive = 0
                self._cooldown_until = 0.0
