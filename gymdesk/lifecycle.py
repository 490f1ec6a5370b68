"""
Membership lifecycle rules.

Everything here is pure: callers pass the member, the plan and `now`, and get
back a status, a date or a string. The stored `status` column is only a cache
of what `effective_status` computes; admission decisions must go through
`effective_status` / `is_admissible`.
"""

import random
import re
from datetime import date, datetime, timedelta
from typing import Optional, Union

from .models import MEMBER_ACTIVE, MEMBER_EXPIRED, Member, Membership, MemberView

DateLike = Union[date, datetime, str]

_WHITESPACE_RUN = re.compile(r"\s+")


def as_date(value: DateLike) -> date:
    """Accepts a date, a datetime or an ISO string (date or timestamp)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def effective_status(member: Union[Member, MemberView], now: datetime) -> str:
    if member.status == MEMBER_EXPIRED:
        return MEMBER_EXPIRED
    if as_date(member.expiry_date) < as_date(now):
        return MEMBER_EXPIRED
    return member.status


def is_admissible(member: Member, now: datetime) -> bool:
    return effective_status(member, now) == MEMBER_ACTIVE


def needs_status_write_back(member: Member, now: datetime) -> bool:
    """True when the cached status says otherwise but the dates say expired."""
    return (
        effective_status(member, now) == MEMBER_EXPIRED
        and member.status != MEMBER_EXPIRED
    )


def compute_initial_expiry(join_date: DateLike, plan: Membership) -> date:
    return as_date(join_date) + timedelta(days=plan.duration_days)


def compute_renewal_expiry(member: Member, plan: Membership, now: datetime) -> date:
    """
    New expiry for a renewal.

    Renewing before expiry extends from the current expiry date; renewing a
    lapsed membership starts the new period today (the lapsed gap is not
    credited).
    """
    base = max(as_date(member.expiry_date), as_date(now))
    return base + timedelta(days=plan.duration_days)


def normalize_name(name: str) -> str:
    return _WHITESPACE_RUN.sub("_", name.strip().upper())


def generate_access_code(member_id: str, name: str, birth_date: DateLike) -> str:
    """QR payload: NAME_NORMALIZED-BIRTHDATE-MEMBERID."""
    return f"{normalize_name(name)}-{as_date(birth_date).isoformat()}-{member_id}"


def access_code_changed(
    member: Member, name: Optional[str], birth_date: Optional[DateLike]
) -> bool:
    if name is not None and normalize_name(name) != normalize_name(member.name):
        return True
    if birth_date is not None and as_date(birth_date) != as_date(member.birth_date):
        return True
    return False


def generate_invoice_number(now: datetime, rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    timestamp = str(int(now.timestamp() * 1000))[-8:]
    return f"INV-{timestamp}-{rng.randrange(1000):03d}"


def days_until_expiry(member: Member, now: datetime) -> int:
    return (as_date(member.expiry_date) - as_date(now)).days
