"""
Vacation ledger: balance arithmetic over a user's vacation counters.

The ledger adds and subtracts; it never blocks a balance from going
negative. Checking that a request fits the balance is done up front by
``validate_leave_request`` before the request is submitted.

Counters on ``User``:
    vacation_days_used               debited by Annual and OnDemand leave
    on_demand_vacation_days_used     debited by OnDemand leave only
    circumstantial_leave_days_used   not touched at approval time
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from portal.core.exceptions import ValidationError
from portal.models.org import User
from portal.models.vacation import LeaveType

logger = logging.getLogger(__name__)

ON_DEMAND_DAYS_PER_YEAR = 4
CIRCUMSTANTIAL_DAYS_PER_EVENT = 2


def business_days_inclusive(start: date, end: date) -> int:
    """Count Mon–Fri dates in ``[start, end]``. Returns 0 when ``end < start``."""
    if end < start:
        return 0
    total_days = (end - start).days + 1
    full_weeks, remainder = divmod(total_days, 7)
    count = full_weeks * 5
    for offset in range(remainder):
        if (start + timedelta(days=full_weeks * 7 + offset)).weekday() < 5:
            count += 1
    return count


def apply_leave(user: User, leave_type: str, days: int) -> bool:
    """Debit an approved leave. Returns False for leave types the ledger ignores."""
    if leave_type == LeaveType.ANNUAL:
        user.vacation_days_used = (user.vacation_days_used or 0) + days
    elif leave_type == LeaveType.ON_DEMAND:
        user.on_demand_vacation_days_used = (user.on_demand_vacation_days_used or 0) + days
        user.vacation_days_used = (user.vacation_days_used or 0) + days
    else:
        return False
    logger.info(
        "Applied %d %s day(s) to user %s (used=%s, on_demand=%s)",
        days, leave_type, user.id, user.vacation_days_used, user.on_demand_vacation_days_used,
        extra={"user_id": user.id},
    )
    return True


def reverse_leave(user: User, leave_type: str, days: int) -> None:
    """Credit back a cancelled leave. No floor at zero."""
    user.vacation_days_used = (user.vacation_days_used or 0) - days
    if leave_type == LeaveType.ON_DEMAND:
        user.on_demand_vacation_days_used = (user.on_demand_vacation_days_used or 0) - days
    logger.info(
        "Reversed %d %s day(s) for user %s (used=%s, on_demand=%s)",
        days, leave_type, user.id, user.vacation_days_used, user.on_demand_vacation_days_used,
        extra={"user_id": user.id},
    )


def validate_leave_request(user: User, leave_type: str, start: date, end: date) -> int:
    """Check that ``user`` may take this leave; return the business-day count.

    Raises:
        ValidationError: empty range, exhausted allowance or unknown type.
    """
    requested = business_days_inclusive(start, end)
    if requested <= 0:
        raise ValidationError(
            "Invalid vacation date range",
            details={"start_date": start.isoformat(), "end_date": end.isoformat()},
        )

    if leave_type == LeaveType.ON_DEMAND:
        used = user.on_demand_vacation_days_used or 0
        if used >= ON_DEMAND_DAYS_PER_YEAR:
            raise ValidationError(
                f"All {ON_DEMAND_DAYS_PER_YEAR} on-demand vacation days have been used this year",
                details={"leave_type": leave_type},
            )
        remaining = ON_DEMAND_DAYS_PER_YEAR - used
        if requested > remaining:
            raise ValidationError(
                f"Only {remaining} on-demand vacation day(s) remaining",
                details={"leave_type": leave_type, "requested": requested},
            )
    elif leave_type == LeaveType.CIRCUMSTANTIAL:
        if requested > CIRCUMSTANTIAL_DAYS_PER_EVENT:
            raise ValidationError(
                f"Circumstantial leave is limited to {CIRCUMSTANTIAL_DAYS_PER_EVENT} days per event",
                details={"leave_type": leave_type, "requested": requested},
            )
    elif leave_type == LeaveType.ANNUAL:
        available = user.total_available_vacation_days
        if requested > available:
            raise ValidationError(
                f"Not enough vacation days. Available: {available}",
                details={"leave_type": leave_type, "requested": requested},
            )
    elif leave_type == LeaveType.SICK:
        pass
    else:
        raise ValidationError(f"Unknown leave type {leave_type!r}", details={"leave_type": leave_type})

    logger.debug(
        "Leave validation passed for user %s: %s, %d day(s)", user.id, leave_type, requested,
        extra={"user_id": user.id},
    )
    return requested
