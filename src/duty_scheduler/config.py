"""
Configuration for the Duty Scheduler fairness engine.

Module-level defaults plus the request-scoped FairnessConfig that every
scoring and distribution call receives explicitly.
"""

from dataclasses import dataclass, field, replace
from functools import lru_cache
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, Optional

import holidays

# ---------------------------------------------------------------------------
# Points system defaults
# ---------------------------------------------------------------------------
DEFAULT_MEMORY_HORIZON_DAYS = 90
DEFAULT_HOLIDAY_MULTIPLIER = 1.5
DEFAULT_PREFERENCE_BONUS = -2.0  # Negative lowers the score = higher priority
DEFAULT_HOLIDAY_COUNTRY = "SE"  # Public holidays detected automatically; None disables

RESET_ROLLING = "rolling"
RESET_MONTHLY = "monthly"
RESET_QUARTERLY = "quarterly"
RESET_YEARLY = "yearly"
RESET_NEVER = "never"
RESET_PERIODS = (RESET_ROLLING, RESET_MONTHLY, RESET_QUARTERLY, RESET_YEARLY, RESET_NEVER)

# ---------------------------------------------------------------------------
# Reporting thresholds
# ---------------------------------------------------------------------------
QUOTA_DECIMALS = 1
TREND_THRESHOLD_RATIO = 0.1  # 10% change between halves of a period
DEVIATION_LOW_RATIO = 0.10  # |deviation| / average
DEVIATION_MEDIUM_RATIO = 0.25


@dataclass(frozen=True)
class FairnessConfig:
    """Per-request knobs for the fairness scorer and the auto distributor."""

    memory_horizon_days: int = DEFAULT_MEMORY_HORIZON_DAYS
    reset_period: str = RESET_ROLLING
    reset_date: Optional[date] = None  # Explicit periodic reset, overrides reset_period
    holiday_multiplier: float = DEFAULT_HOLIDAY_MULTIPLIER
    holiday_dates: FrozenSet[date] = field(default_factory=frozenset)  # Extra holidays on top of the country calendar
    holiday_country: Optional[str] = DEFAULT_HOLIDAY_COUNTRY
    preference_bonus: float = DEFAULT_PREFERENCE_BONUS
    as_of: Optional[datetime] = None  # Reference "now"; None means datetime.now()

    @property
    def is_periodic(self) -> bool:
        return self.reset_date is not None or self.reset_period in (
            RESET_MONTHLY, RESET_QUARTERLY, RESET_YEARLY
        )

    def reference_time(self) -> datetime:
        return self.as_of if self.as_of is not None else datetime.now()

    def with_as_of(self, as_of: datetime) -> 'FairnessConfig':
        return replace(self, as_of=as_of)

    def is_holiday(self, day: date) -> bool:
        if day in self.holiday_dates:
            return True
        return self.holiday_country is not None and day in holiday_calendar(self.holiday_country)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memoryHorizonDays": self.memory_horizon_days,
            "resetPeriod": self.reset_period,
            "resetDate": self.reset_date.isoformat() if self.reset_date else None,
            "holidayMultiplier": self.holiday_multiplier,
            "holidayDates": sorted(d.isoformat() for d in self.holiday_dates),
            "holidayCountry": self.holiday_country,
            "preferenceBonus": self.preference_bonus,
        }

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]]) -> 'FairnessConfig':
        """Build a config from a persisted points-system settings dict"""
        settings = settings or {}
        reset_date = settings.get("resetDate")
        return cls(
            memory_horizon_days=int(settings.get("memoryHorizonDays", DEFAULT_MEMORY_HORIZON_DAYS)),
            reset_period=settings.get("resetPeriod", RESET_ROLLING),
            reset_date=date.fromisoformat(reset_date) if reset_date else None,
            holiday_multiplier=float(settings.get("holidayMultiplier", DEFAULT_HOLIDAY_MULTIPLIER)),
            holiday_dates=frozenset(date.fromisoformat(d) for d in settings.get("holidayDates", [])),
            holiday_country=settings.get("holidayCountry", DEFAULT_HOLIDAY_COUNTRY),
            preference_bonus=float(settings.get("preferenceBonus", DEFAULT_PREFERENCE_BONUS)),
        )


@lru_cache(maxsize=None)
def holiday_calendar(country: str) -> holidays.HolidayBase:
    """Public holidays for a country code; years are filled in on first lookup"""
    if country == "SE":
        # Sundays are listed as holidays in the Swedish calendar unless excluded
        return holidays.Sweden(include_sundays=False)
    return holidays.country_holidays(country)
