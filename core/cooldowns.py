"""
Per-product trade cooldowns.

One entry per product holding the time of its last executed trade. Entries
never expire on their own; activity is checked lazily against the clock.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CooldownEntry:
    product: str
    last_trade_time: datetime


class CooldownStore:
    """In-memory cooldown map owned by the derivatives engine."""

    def __init__(self, cooldown_minutes: float = 30.0, clock: Optional[Callable[[], datetime]] = None):
        self.cooldown_minutes = float(cooldown_minutes)
        self._clock = clock or utc_now
        self._entries: Dict[str, CooldownEntry] = {}

    def now(self) -> datetime:
        return self._clock()

    def record_trade(self, product: str, when: Optional[datetime] = None) -> None:
        when = when or self.now()
        self._entries[product] = CooldownEntry(product=product, last_trade_time=when)
        logger.debug(f"Cooldown set: {product} at {when.isoformat()} ({self.cooldown_minutes:.0f}m)")

    def get(self, product: str) -> Optional[CooldownEntry]:
        return self._entries.get(product)

    def minutes_since_last_trade(self, product: str) -> Optional[float]:
        entry = self._entries.get(product)
        if entry is None:
            return None
        return (self.now() - entry.last_trade_time).total_seconds() / 60.0

    def remaining_minutes(self, product: str) -> float:
        elapsed = self.minutes_since_last_trade(product)
        if elapsed is None:
            return 0.0
        return max(self.cooldown_minutes - elapsed, 0.0)

    def is_active(self, product: str) -> bool:
        elapsed = self.minutes_since_last_trade(product)
        return elapsed is not None and elapsed < self.cooldown_minutes

    def snapshot(self) -> Dict[str, str]:
        return {product: entry.last_trade_time.isoformat() for product, entry in self._entries.items()}

    def __len__(self) -> int:
        return len(self._entries)
