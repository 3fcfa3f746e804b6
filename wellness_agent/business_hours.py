from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from .config import Settings

logger = logging.getLogger("wellness.business_hours")

DAY_NAMES = ("Senin", "Selasa", "Rabu", "Kamis", "Jumat", "Sabtu", "Minggu")
LOOKAHEAD_DAYS = 14


@dataclass(frozen=True)
class BusinessHoursStatus:
    is_open: bool
    next_open_time: Optional[str] = None
    is_weekend: bool = False
    is_holiday: bool = False
    current_time: str = ""


class BusinessHoursOracle:
    """Knows when the human team is reachable (weekday hours in the business timezone)."""

    def __init__(
        self,
        timezone: str = "Asia/Jakarta",
        open_at: str = "09:00",
        close_at: str = "18:00",
        weekend_open: bool = False,
        holidays: Iterable[str] = (),
    ) -> None:
        """Purpose: Configure opening hours, weekend policy and holidays.
        Inputs/Outputs: Inputs are an IANA timezone, HH:MM open/close, weekend flag and
            YYYY-MM-DD holidays; no return value.
        Side Effects / State: Parses and stores the schedule.
        Dependencies: zoneinfo (tzdata on platforms without a system database).
        Failure Modes: Unknown timezone or malformed times raise at construction.
        If Removed: Escalations cannot decide between notifying now and queueing.
        Testing Notes: Pass fixed datetimes to is_business_hours().
        """
        # Keep parsed values so every check is a cheap comparison.
        self._zone = ZoneInfo(timezone)
        self._open = _parse_clock(open_at)
        self._close = _parse_clock(close_at)
        self._weekend_open = weekend_open
        self._holidays = {date.fromisoformat(day) for day in holidays}
        self._label = "WIB" if timezone == "Asia/Jakarta" else timezone

    @classmethod
    def from_settings(cls, settings: Settings) -> "BusinessHoursOracle":
        return cls(
            timezone=settings.business_timezone,
            open_at=settings.business_open,
            close_at=settings.business_close,
            weekend_open=settings.weekend_open,
            holidays=settings.holidays,
        )

    def is_business_hours(self, now: Optional[datetime] = None) -> BusinessHoursStatus:
        """Purpose: Report whether humans are available and when they next will be.
        Inputs/Outputs: Optional aware or naive datetime (naive is read as UTC); output is
            BusinessHoursStatus with next_open_time set only when closed.
        Side Effects / State: None.
        Dependencies: _is_working_day and the parsed schedule.
        Failure Modes: next_open_time stays None if nothing opens within two weeks.
        If Removed: Escalation routing has no hours signal.
        Testing Notes: Monday 10:00 WIB is open; Saturday is closed with next open Monday.
        """
        # Convert to business-local time, then check day and clock window.
        local = self._localize(now)
        is_weekend = local.weekday() >= 5
        is_holiday = local.date() in self._holidays
        is_open = self._is_working_day(local.date()) and self._open <= local.time() < self._close

        next_open = None if is_open else self._next_open(local)
        status = BusinessHoursStatus(
            is_open=is_open,
            next_open_time=next_open,
            is_weekend=is_weekend,
            is_holiday=is_holiday,
            current_time=f"{local:%H:%M} {self._label}",
        )
        logger.debug("business_hours open=%s next=%s now=%s", is_open, next_open, status.current_time)
        return status

    def _localize(self, now: Optional[datetime]) -> datetime:
        if now is None:
            return datetime.now(self._zone)
        if now.tzinfo is None:
            now = now.replace(tzinfo=ZoneInfo("UTC"))
        return now.astimezone(self._zone)

    def _is_working_day(self, day: date) -> bool:
        if day in self._holidays:
            return False
        if day.weekday() >= 5 and not self._weekend_open:
            return False
        return True

    def _next_open(self, local: datetime) -> Optional[str]:
        for offset in range(LOOKAHEAD_DAYS):
            day = local.date() + timedelta(days=offset)
            if not self._is_working_day(day):
                continue
            if offset == 0:
                if local.time() < self._open:
                    return f"hari ini pukul {self._open:%H:%M} {self._label}"
                continue
            if offset == 1:
                return f"besok pukul {self._open:%H:%M} {self._label}"
            return f"{DAY_NAMES[day.weekday()]} pukul {self._open:%H:%M} {self._label}"
        return None


def _parse_clock(value: str) -> time:
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))
