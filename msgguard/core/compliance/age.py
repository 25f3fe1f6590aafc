from __future__ import annotations

import time
from typing import Callable, Optional

from msgguard.core.cache import BoundedCache

# cached marker for "profile has no birthdate"
_UNKNOWN = ""


def age_on(birthdate: str, ts: float) -> int:
    """
    Whole years between an ISO birthdate and an epoch timestamp (UTC).
    """
    b = time.strptime(birthdate, "%Y-%m-%d")
    n = time.gmtime(float(ts))
    years = n.tm_year - b.tm_year
    if (n.tm_mon, n.tm_mday) < (b.tm_mon, b.tm_mday):
        years -= 1
    return max(0, years)


def utc_day(ts: float) -> int:
    """
    Day number since the epoch; part of every cache key that depends on an age.
    """
    return int(float(ts) // 86400)


class AgeResolver:
    """
    Birthdate lookups cached per user. The age itself is computed against the
    clock on every call, and caches holding age-derived results key on
    utc_day(), so nothing goes stale on a birthday.
    """

    def __init__(self, *, store, cache: Optional[BoundedCache] = None, clock: Callable[[], float] = time.time, logger=None):
        self.store = store
        self.cache: BoundedCache = cache or BoundedCache(max_entries=20000, name="ages")
        self.clock = clock
        self.logger = logger

    def birthdate(self, user_id: str) -> Optional[str]:
        """
        Raises whatever the store raises; failures are not cached.
        """
        uid = str(user_id)
        bd = self.cache.get_or_compute(uid, lambda: self.store.get_birthdate(uid) or _UNKNOWN)
        return bd or None

    def lookup_age(self, user_id: str) -> Optional[int]:
        """
        Age in years, None when no usable birthdate is on file. Store failures
        propagate.
        """
        bd = self.birthdate(user_id)
        if not bd:
            return None
        try:
            return age_on(bd, self.clock())
        except ValueError:
            return None

    def today(self) -> int:
        return utc_day(self.clock())

    def invalidate(self, user_id: str) -> bool:
        return self.cache.invalidate(str(user_id))
