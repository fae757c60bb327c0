"""
Expiry calculator.

Pure functions: account record + clock → trial/expiry facts. No side
effects, deterministic given their inputs.

Rules:
- subscriptionEndDate present → never a trial. An elapsed end date marks the
  subscription as elapsed regardless of subscriptionStatus.
- else trialEndDate in the future → trial active.
- else → no expiry facts.

"Expiring soon" is judged on whole calendar days (days <= 3) with no
timezone correction at day boundaries.
"""

from datetime import datetime, timedelta
from typing import Optional

from src.entitlements.models import AccountRecord, ExpiryFacts

DEFAULT_EXPIRING_SOON_DAYS = 3

_SECONDS_PER_HOUR = 60 * 60
_SECONDS_PER_DAY = 24 * _SECONDS_PER_HOUR


def whole_days(diff: timedelta) -> int:
    return int(diff.total_seconds() // _SECONDS_PER_DAY)


def format_remaining(diff: timedelta) -> str:
    """
    Render remaining time for badges and banners.

    Under 24h: "{hours}h remaining" (never less than 1h).
    Otherwise: "1 day" / "{days} days".
    """
    seconds = diff.total_seconds()
    if seconds < _SECONDS_PER_DAY:
        hours = max(1, int(seconds // _SECONDS_PER_HOUR))
        return f"{hours}h remaining"
    days = whole_days(diff)
    return f"{days} day" if days == 1 else f"{days} days"


def _facts_for_window(
    end: datetime,
    now: datetime,
    is_trial: bool,
    expiring_soon_days: int,
) -> ExpiryFacts:
    diff = end - now
    return ExpiryFacts(
        is_trial_active=is_trial,
        is_expiring_soon=diff.total_seconds() > 0 and whole_days(diff) <= expiring_soon_days,
        days_remaining_text=format_remaining(diff),
        expires_at=end,
    )


def compute_expiry(
    account: Optional[AccountRecord],
    now: datetime,
    expiring_soon_days: int = DEFAULT_EXPIRING_SOON_DAYS,
) -> ExpiryFacts:
    """
    Derive trial/expiry facts for an account at `now`.

    Args:
        account: Backend account record (None is treated as empty)
        now: Timezone-aware current time
        expiring_soon_days: Threshold for is_expiring_soon

    Returns:
        ExpiryFacts
    """
    if account is None:
        return ExpiryFacts()

    end = account.subscription_end_date
    if end is not None:
        if end - now <= timedelta(0):
            # Elapsed end date wins over a stale "Active" status.
            return ExpiryFacts(expires_at=end, subscription_elapsed=True)
        return _facts_for_window(end, now, False, expiring_soon_days)

    trial_end = account.trial_end_date
    if trial_end is not None and trial_end > now:
        return _facts_for_window(trial_end, now, True, expiring_soon_days)

    return ExpiryFacts()


def format_trial_countdown(trial_end: Optional[datetime], now: datetime) -> str:
    """
    Paywall countdown: "{h}h {m}m {s}s", "Expired" once elapsed,
    empty string when there is no trial.
    """
    if trial_end is None:
        return ""
    total = int((trial_end - now).total_seconds())
    if total <= 0:
        return "Expired"
    hours, rest = divmod(total, _SECONDS_PER_HOUR)
    minutes, seconds = divmod(rest, 60)
    return f"{hours}h {minutes}m {seconds}s"
