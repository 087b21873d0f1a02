"""
Proration Calculator
====================

Prices a mid-period billing-cycle change. Pure: no I/O, no clock.

The unused share of the current period is credited at the old price and
the new cadence starts immediately, so the full new period is charged::

    credit = old_price * remaining / total      (rounded half-up to cents)
    charge = new_price
    delta  = charge - credit

A positive delta is charged now; a negative delta is a credit balance.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from app.config import settings
from app.core.errors import ProrationError
from app.models.subscription import BillingCycle

CENT = Decimal("0.01")


@dataclass(frozen=True)
class ProrationQuote:
    """Result of pricing a cycle change."""

    current_cycle: BillingCycle
    target_cycle: BillingCycle
    credit: Decimal
    charge: Decimal
    delta: Decimal
    remaining_fraction: Decimal
    new_period_start: datetime
    new_period_end: datetime

    @property
    def is_upgrade(self) -> bool:
        return self.delta > 0

    def as_dict(self) -> dict:
        return {
            "currentCycle": self.current_cycle.value,
            "targetCycle": self.target_cycle.value,
            "credit": str(self.credit),
            "charge": str(self.charge),
            "delta": str(self.delta),
            "remainingFraction": str(self.remaining_fraction),
            "newPeriodStart": self.new_period_start.isoformat(),
            "newPeriodEnd": self.new_period_end.isoformat(),
        }


def cycle_price(cycle: BillingCycle) -> Decimal:
    """List price for one period of ``cycle``."""
    if cycle == BillingCycle.MONTHLY:
        return settings.MONTHLY_PRICE
    if cycle == BillingCycle.YEARLY:
        return settings.YEARLY_PRICE
    raise ProrationError(f"No price for billing cycle {cycle.value}")


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def next_period_end(start: datetime, cycle: BillingCycle) -> datetime:
    """End of a period of ``cycle`` that starts at ``start``."""
    if cycle == BillingCycle.MONTHLY:
        return add_months(start, 1)
    if cycle == BillingCycle.YEARLY:
        return add_months(start, 12)
    raise ProrationError(f"Billing cycle {cycle.value} has no period length")


def remaining_fraction(
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> Decimal:
    """Unused share of the period at ``now``, clamped to [0, 1]."""
    total = (period_end - period_start).total_seconds()
    if total <= 0:
        raise ProrationError("Current period has no length")

    remaining = (period_end - now).total_seconds()
    remaining = max(0.0, min(remaining, total))
    return Decimal(str(remaining)) / Decimal(str(total))


def quote_cycle_change(
    current_cycle: BillingCycle,
    target_cycle: BillingCycle,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> ProrationQuote:
    """
    Price switching from ``current_cycle`` to ``target_cycle`` at ``now``.

    Raises:
        ProrationError: same cycle, a free cycle, or an empty period.
    """
    if current_cycle == target_cycle:
        raise ProrationError(f"Already on the {target_cycle.value} cycle")

    old_price = cycle_price(current_cycle)
    new_price = cycle_price(target_cycle)

    fraction = remaining_fraction(period_start, period_end, now)
    credit = (old_price * fraction).quantize(CENT, rounding=ROUND_HALF_UP)
    charge = new_price.quantize(CENT, rounding=ROUND_HALF_UP)

    return ProrationQuote(
        current_cycle=current_cycle,
        target_cycle=target_cycle,
        credit=credit,
        charge=charge,
        delta=charge - credit,
        remaining_fraction=fraction.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP),
        new_period_start=now,
        new_period_end=next_period_end(now, target_cycle),
    )
