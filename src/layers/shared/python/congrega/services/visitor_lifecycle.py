"""Visitor follow-up and conversion rules.

Stateless functions over a Visitor value. Nothing here touches the store;
the repository and the API layer call these to decide what to write or
show. Functions that depend on the current time take an optional ``now``.
"""

import math
import re
from datetime import date, datetime, timedelta
from typing import Any

from congrega.models.base import ensure_utc, utc_now
from congrega.models.visitor import ContactAttempt, FollowUpStatus, Visitor, VisitorStatus

DEFAULT_MIN_VISITS_FOR_CONVERSION = 3
DEFAULT_AT_RISK_DAYS = 30
DEFAULT_RECENT_CONTACT_DAYS = 7

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
# Brazilian numbers: optional area code parentheses, optional 9th digit
_PHONE_RE = re.compile(r"^\(?[1-9]{2}\)?\s?9?\d{4}-?\d{4}$")


def _today(now: datetime | None) -> datetime:
    return ensure_utc(now) if now else utc_now()


def follow_up_status_after_attempt(successful: bool) -> FollowUpStatus:
    """Follow-up status after logging an attempt.

    Only the attempt's outcome matters; the previous status is ignored.
    """
    return FollowUpStatus.COMPLETED if successful else FollowUpStatus.IN_PROGRESS


def calculate_age(visitor: Visitor, now: datetime | None = None) -> int | None:
    """Age in whole years, or None without a birth date."""
    if not visitor.birth_date:
        return None
    today: date = _today(now).date()
    born = visitor.birth_date
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age


def needs_follow_up(visitor: Visitor) -> bool:
    """Whether the visitor still needs outreach."""
    if visitor.status in (VisitorStatus.CONVERTED, VisitorStatus.INACTIVE):
        return False
    if visitor.follow_up_status == FollowUpStatus.COMPLETED:
        return False
    return visitor.follow_up_status in (FollowUpStatus.PENDING, FollowUpStatus.IN_PROGRESS)


def is_eligible_for_conversion(
    visitor: Visitor,
    min_visits: int = DEFAULT_MIN_VISITS_FOR_CONVERSION,
) -> bool:
    """Whether the visitor can be converted to a member.

    Requires: not yet a member, active, at least ``min_visits`` visits and
    completed follow-up.
    """
    return not conversion_blockers(visitor, min_visits)


def conversion_blockers(
    visitor: Visitor,
    min_visits: int = DEFAULT_MIN_VISITS_FOR_CONVERSION,
) -> list[str]:
    """Reasons the visitor cannot be converted yet (empty when eligible)."""
    reasons = []
    if visitor.is_member:
        reasons.append("already a member")
    if visitor.status != VisitorStatus.ACTIVE:
        reasons.append(f"status is {visitor.status}")
    if visitor.total_visits < min_visits:
        reasons.append(f"{visitor.total_visits} of {min_visits} visits")
    if visitor.follow_up_status != FollowUpStatus.COMPLETED:
        reasons.append(f"follow-up is {visitor.follow_up_status}")
    return reasons


def _days_between(then: datetime, now: datetime) -> int:
    """Whole days between two instants, rounded up."""
    return math.ceil(abs((now - ensure_utc(then)).total_seconds()) / 86400)


def get_days_since_first_visit(visitor: Visitor, now: datetime | None = None) -> int:
    """Days since the first visit, rounded up."""
    return _days_between(visitor.first_visit_date, _today(now))


def get_days_since_last_visit(visitor: Visitor, now: datetime | None = None) -> int | None:
    """Days since the last recorded visit, or None if none was recorded."""
    if not visitor.last_visit_date:
        return None
    return _days_between(visitor.last_visit_date, _today(now))


def is_at_risk(
    visitor: Visitor,
    threshold_days: int = DEFAULT_AT_RISK_DAYS,
    now: datetime | None = None,
) -> bool:
    """Whether an active visitor has been away longer than the threshold.

    Falls back to the first visit when no later visit was recorded.
    """
    if visitor.status != VisitorStatus.ACTIVE:
        return False
    days = get_days_since_last_visit(visitor, now)
    if days is None:
        days = get_days_since_first_visit(visitor, now)
    return days > threshold_days


def has_recent_contact(
    visitor: Visitor,
    within_days: int = DEFAULT_RECENT_CONTACT_DAYS,
    now: datetime | None = None,
) -> bool:
    """Whether any contact attempt happened within the last ``within_days``."""
    cutoff = _today(now) - timedelta(days=within_days)
    return any(attempt.date >= cutoff for attempt in visitor.contact_attempts)


def get_last_contact_attempt(visitor: Visitor) -> ContactAttempt | None:
    """The most recent contact attempt by date."""
    if not visitor.contact_attempts:
        return None
    # max keeps the first of equal dates, matching a stable descending sort
    return max(visitor.contact_attempts, key=lambda attempt: attempt.date)


def get_contact_success_rate(visitor: Visitor) -> float:
    """Percentage of successful contact attempts (0 without attempts)."""
    if not visitor.contact_attempts:
        return 0.0
    successful = sum(1 for attempt in visitor.contact_attempts if attempt.successful)
    return successful / len(visitor.contact_attempts) * 100


def get_next_scheduled_contact(visitor: Visitor) -> datetime | None:
    """Next contact date planned on the most recent attempt."""
    last = get_last_contact_attempt(visitor)
    return last.next_contact_date if last else None


def is_valid_email(email: str) -> bool:
    """Loose email shape check."""
    return bool(_EMAIL_RE.match(email))


def is_valid_phone(phone: str) -> bool:
    """Check a Brazilian phone number such as (11) 99999-9999."""
    return bool(_PHONE_RE.match(phone))


def format_phone(phone: str) -> str:
    """Format 10 or 11 digit numbers as (AA) NNNN-NNNN / (AA) NNNNN-NNNN.

    Anything else is returned unchanged.
    """
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 11:
        return f"({digits[:2]}) {digits[2:7]}-{digits[7:]}"
    if len(digits) == 10:
        return f"({digits[:2]}) {digits[2:6]}-{digits[6:]}"
    return phone


def summarize(visitor: Visitor, now: datetime | None = None) -> dict[str, Any]:
    """Derived follow-up indicators for display alongside a visitor."""
    now = _today(now)
    next_contact = get_next_scheduled_contact(visitor)
    return {
        "age": calculate_age(visitor, now),
        "needs_follow_up": needs_follow_up(visitor),
        "is_eligible_for_conversion": is_eligible_for_conversion(visitor),
        "is_at_risk": is_at_risk(visitor, now=now),
        "has_recent_contact": has_recent_contact(visitor, now=now),
        "contact_success_rate": round(get_contact_success_rate(visitor), 2),
        "days_since_first_visit": get_days_since_first_visit(visitor, now),
        "days_since_last_visit": get_days_since_last_visit(visitor, now),
        "next_scheduled_contact": next_contact.isoformat() if next_contact else None,
    }
