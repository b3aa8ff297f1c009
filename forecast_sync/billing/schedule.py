"""
Billing Schedule Calculator.

Turns a billable item's billing configuration into the ordered list of
occurrence dates that should exist as forecast records:

- Fixed term: up to min(term, hard cap) dates from the configured start.
- Auto-renew: up to hard cap dates from the effective generation start.
  The generation start only moves forward (today, next billing hint, day
  after the last ticketed date), so consumed history is never regenerated.
- No series runs past generation start + horizon.
- One-time items (no frequency): a single date.
- A frequency that cannot be mapped to a step degrades to a single date
  and flags the result so callers can surface it.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from forecast_sync.billing.schemas import BillingConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Interval:
    """A billing period: months are applied first, then days."""
    months: int = 0
    days: int = 0

    def advance(self, d: date) -> date:
        # relativedelta clamps to month end (Jan 31 + 1 month -> Feb 28/29)
        return d + relativedelta(months=self.months) + timedelta(days=self.days)


FREQUENCY_INTERVALS: Dict[str, Interval] = {
    "weekly": Interval(days=7),
    "biweekly": Interval(days=14),
    "monthly": Interval(months=1),
    "bimonthly": Interval(months=2),
    "quarterly": Interval(months=3),
    "per_six_months": Interval(months=6),
    "semiannual": Interval(months=6),
    "annually": Interval(months=12),
    "yearly": Interval(months=12),
    "per_two_years": Interval(months=24),
    "per_three_years": Interval(months=36),
    "per_four_years": Interval(months=48),
    "per_five_years": Interval(months=60),
    # Legacy labels still found on older items
    "week": Interval(days=7),
    "semanal": Interval(days=7),
    "every 2 weeks": Interval(days=14),
    "quincenal": Interval(days=14),
    "month": Interval(months=1),
    "mensual": Interval(months=1),
    "every 2 months": Interval(months=2),
    "bimestral": Interval(months=2),
    "trimestral": Interval(months=3),
    "semi-annual": Interval(months=6),
    "semi annual": Interval(months=6),
    "semestral": Interval(months=6),
    "annual": Interval(months=12),
    "anual": Interval(months=12),
}


def interval_for_frequency(frequency: Optional[str]) -> Optional[Interval]:
    """Map a frequency label to its interval, None when unknown."""
    if not frequency:
        return None
    return FREQUENCY_INTERVALS.get(str(frequency).strip().lower())


def billing_today(tz_name: str) -> date:
    """Today's date in the billing timezone."""
    return datetime.now(ZoneInfo(tz_name)).date()


@dataclass
class ScheduleResult:
    """Desired occurrence dates for one item."""
    dates: List[date] = field(default_factory=list)
    generation_start: Optional[date] = None
    auto_renew: bool = False
    degraded: bool = False  # frequency set but not mappable to an interval

    @property
    def count(self) -> int:
        return len(self.dates)

    @property
    def ymd(self) -> List[str]:
        return [d.isoformat() for d in self.dates]


class BillingScheduleCalculator:
    """Computes desired occurrence dates from a billing configuration."""

    def __init__(self, hard_cap: int = 24, horizon_years: int = 2):
        if hard_cap < 1:
            raise ValueError("hard_cap must be positive")
        self.hard_cap = hard_cap
        self.horizon_years = horizon_years

    def generation_start(self, config: BillingConfig, today: date) -> Optional[date]:
        """
        First date the series may be generated from.

        Fixed-term items always start at their configured start date.
        Auto-renew items start at the latest of today, the start date,
        the next-billing hint and the day after the last ticketed date.
        """
        if config.start_date is None:
            return None
        if not config.is_auto_renew:
            return config.start_date

        candidates = [today, config.start_date]
        if config.next_billing_date:
            candidates.append(config.next_billing_date)
        if config.last_ticketed_date:
            candidates.append(config.last_ticketed_date + timedelta(days=1))
        return max(candidates)

    def compute(self, config: BillingConfig, today: date) -> ScheduleResult:
        """Compute the full desired-date window for one item."""
        if config.start_date is None:
            return ScheduleResult()

        if not config.frequency:
            return ScheduleResult(
                dates=[config.start_date],
                generation_start=config.start_date,
            )

        interval = interval_for_frequency(config.frequency)
        if interval is None:
            logger.warning(
                f"Unresolved billing frequency {config.frequency!r}, "
                f"falling back to a single occurrence at {config.start_date}"
            )
            return ScheduleResult(
                dates=[config.start_date],
                generation_start=config.start_date,
                degraded=True,
            )

        auto_renew = config.is_auto_renew
        start = self.generation_start(config, today)

        max_count = self.hard_cap if auto_renew else min(config.term, self.hard_cap)
        horizon = start + relativedelta(years=self.horizon_years)

        dates: List[date] = []
        current = start
        while len(dates) < max_count:
            if current > horizon:
                break
            dates.append(current)

            following = interval.advance(current)
            if following <= current:
                logger.warning(
                    f"Billing interval {interval} does not advance from {current}, stopping"
                )
                break
            current = following

        return ScheduleResult(
            dates=dates,
            generation_start=start,
            auto_renew=auto_renew,
        )
