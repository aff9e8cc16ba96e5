"""
Paces API calls and slows them down while the site applies risk control.
"""

import asyncio
import logging

log = logging.getLogger(__name__)


class AdaptiveRateLimiter:
    """
    Hands out evenly spaced call slots.

    Every counted risk-control occurrence halves the rate. The rate only climbs
    back, one step at a time, after `recovery_calls` successful responses in a
    row, so it stays low for as long as the site keeps pushing back.
    """

    def __init__(
        self,
        calls_per_second: float = 4.0,
        max_calls_per_second: float = 8.0,
        min_calls_per_second: float = 0.5,
        recovery_calls: int = 20,
    ):
        self._rate = calls_per_second
        self._max_rate = max_calls_per_second
        self._min_rate = min(min_calls_per_second, calls_per_second)
        self.recovery_calls = recovery_calls

        self._next_slot = 0.0
        self._clean_streak = 0

    @property
    def rate(self) -> float:
        return self._rate

    def on_risk_control(self) -> None:
        self._clean_streak = 0
        slower = max(self._min_rate, self._rate / 2)
        if slower < self._rate:
            self._rate = slower
            log.warning(
                f"[yellow]Request rate reduced to {self._rate:.1f} calls/s[/yellow]"
            )

    def on_success(self) -> None:
        if self._rate >= self._max_rate:
            return
        self._clean_streak += 1
        if self._clean_streak >= self.recovery_calls:
            self._clean_streak = 0
            self._rate = min(self._max_rate, self._rate * 1.25)
            log.debug(f"Request rate raised to {self._rate:.1f} calls/s")

    async def acquire(self) -> None:
        """Reserves the next free slot and sleeps until it arrives."""
        now = asyncio.get_running_loop().time()
        slot = max(now, self._next_slot)
        self._next_slot = slot + 1.0 / self._rate
        if slot > now:
            await asyncio.sleep(slot - now)
