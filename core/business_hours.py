"""Business-hours window used to hold automated sends outside office time."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from config.settings import BusinessHoursConfig


class BusinessHours:
    """
    Window of `[start_hour, end_hour)` local time, optionally Monday–Friday
    only. A disabled window is always open.
    """

    def __init__(self, config: BusinessHoursConfig = None):
        self.config = config or BusinessHoursConfig()
        self.tz = ZoneInfo(self.config.timezone)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def _open_day(self, local: datetime) -> bool:
        return not self.config.weekdays_only or local.weekday() < 5

    def is_open(self, now: datetime) -> bool:
        if not self.config.enabled:
            return True
        local = now.astimezone(self.tz)
        return self._open_day(local) and self.config.start_hour <= local.hour < self.config.end_hour

    def next_opening(self, now: datetime) -> datetime:
        """First window opening strictly after `now`, in UTC."""
        local = now.astimezone(self.tz)
        candidate = local.replace(hour=self.config.start_hour, minute=0, second=0, microsecond=0)
        if candidate <= local:
            candidate += timedelta(days=1)
        while not self._open_day(candidate):
            candidate += timedelta(days=1)
        return candidate.astimezone(timezone.utc)
