from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from .config import QuotaConfig


class QuotaResetClock:
    """Computes when a daily quota, reset at a local wall-clock time, is available again.

    The reset time is interpreted in ``timezone`` so daylight-saving transitions
    move the absolute instant, not the local time. A reset time inside a
    spring-forward gap is shifted forward by the length of the gap; an ambiguous
    fall-back time resolves to its first occurrence.
    """

    def __init__(self, timezone: str = "America/Los_Angeles", hour: int = 0, minute: int = 0) -> None:
        self.zone = ZoneInfo(timezone)
        self.reset_time = time(hour=hour, minute=minute)

    @classmethod
    def from_config(cls, config: QuotaConfig) -> QuotaResetClock:
        return cls(config.timezone, config.reset_hour, config.reset_minute)

    def next_resume(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            raise ValueError("now must be timezone-aware")
        local_date = now.astimezone(self.zone).date()
        resume = self._instant_on(local_date)
        if resume <= now:
            resume = self._instant_on(local_date + timedelta(days=1))
        return resume

    def _instant_on(self, local_date: date) -> datetime:
        return datetime.combine(local_date, self.reset_time, tzinfo=self.zone).astimezone(UTC)
