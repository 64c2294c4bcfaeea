"""Zone registry — bounded, insertion-ordered store of live zones.

Rules:
  - At most one zone per bar timestamp, whatever its direction.
  - Never more than ``capacity`` zones.  When full, the *new* zone is
    dropped; existing zones are never evicted to make room.
  - ``purge`` removes zones that are too old or that price has broken
    through by more than 10 % of the zone height, keeping survivors in order.
  - A zone that was consumed or purged is retired: its timestamp stays known
    until it ages past ``max_age_days``, so detection never registers it
    again.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterator

from zoneforge.errors import CapacityExceeded
from zoneforge.strategy.models import Zone

logger = logging.getLogger("zoneforge.registry")

_BREAK_MARGIN = 0.1


class ZoneRegistry:
    """Ordered store of live zones, oldest first.

    Args:
        capacity: Maximum number of zones held at once.
        max_age_days: Zones older than this are purged.
    """

    def __init__(self, capacity: int = 100, max_age_days: float = 5.0) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if max_age_days <= 0:
            raise ValueError(f"max_age_days must be positive, got {max_age_days}")
        self._capacity = capacity
        self._max_age = timedelta(seconds=max_age_days * 86400)
        self._zones: list[Zone] = []
        self._retired: set[datetime] = set()
        self.dropped: int = 0

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_full(self) -> bool:
        return len(self._zones) >= self._capacity

    @property
    def zones(self) -> tuple[Zone, ...]:
        """Snapshot of the live zones, oldest first."""
        return tuple(self._zones)

    def times(self) -> set[datetime]:
        """Timestamps that already have a registered zone."""
        return {z.created_at for z in self._zones}

    def known_times(self) -> set[datetime]:
        """Live and retired timestamps; detection must skip all of them."""
        return self.times() | self._retired

    def __len__(self) -> int:
        return len(self._zones)

    def __iter__(self) -> Iterator[Zone]:
        return iter(tuple(self._zones))

    def __getitem__(self, index: int) -> Zone:
        return self._zones[index]

    def __contains__(self, zone: object) -> bool:
        return zone in self._zones

    def to_dicts(self) -> list[dict]:
        return [z.to_dict() for z in self._zones]

    # ── Mutation ─────────────────────────────────────────────────────────

    def insert(self, zone: Zone) -> bool:
        """Append *zone* unless its timestamp is taken or the registry is full.

        Returns ``True`` if the zone was stored.
        """
        if any(z.created_at == zone.created_at for z in self._zones):
            logger.debug("Zone at %s already registered — skipped", zone.created_at)
            return False
        if self.is_full:
            self.dropped += 1
            logger.warning(
                "%s — dropped %s zone at %s",
                CapacityExceeded(f"zone registry full ({self._capacity})"),
                zone.direction, zone.created_at.isoformat(),
            )
            return False
        self._zones.append(zone)
        logger.info(
            "Registered %s zone %.5f–%.5f from %s (%d/%d)",
            zone.direction, zone.bottom, zone.top, zone.created_at.isoformat(),
            len(self._zones), self._capacity,
        )
        return True

    def remove(self, zone: Zone) -> bool:
        """Remove *zone* (consumed by an entry).  Returns ``True`` if present."""
        try:
            self._zones.remove(zone)
        except ValueError:
            return False
        self._retired.add(zone.created_at)
        return True

    def purge(self, now: datetime, current_price: float) -> list[Zone]:
        """Drop expired and broken zones.

        Idempotent: a second call with the same *now* and *current_price*
        removes nothing.

        Returns:
            The removed zones, in their former order.
        """
        survivors: list[Zone] = []
        removed: list[Zone] = []
        for zone in self._zones:
            if self._is_expired(zone, now) or self._is_broken(zone, current_price):
                removed.append(zone)
            else:
                survivors.append(zone)

        self._retired = {t for t in self._retired if now - t <= self._max_age}
        self._retired.update(
            z.created_at for z in removed if now - z.created_at <= self._max_age
        )

        if removed:
            self._zones = survivors
            logger.info(
                "Purged %d zone(s) at price %.5f — %d remain",
                len(removed), current_price, len(survivors),
            )
        return removed

    # ── Rules ────────────────────────────────────────────────────────────

    def _is_expired(self, zone: Zone, now: datetime) -> bool:
        return now - zone.created_at > self._max_age

    @staticmethod
    def _is_broken(zone: Zone, price: float) -> bool:
        margin = _BREAK_MARGIN * zone.height
        return price > zone.top + margin or price < zone.bottom - margin
