from dataclasses import dataclass, field
from typing import Any, List, Optional

MEMBER_ACTIVE = "active"
MEMBER_INACTIVE = "inactive"
MEMBER_EXPIRED = "expired"
MEMBER_STATUSES = (MEMBER_ACTIVE, MEMBER_INACTIVE, MEMBER_EXPIRED)

ATTENDANCE_ALLOWED = "allowed"
ATTENDANCE_DENIED = "denied"
ATTENDANCE_STATUSES = (ATTENDANCE_ALLOWED, ATTENDANCE_DENIED)

PAYMENT_PAID = "paid"
PAYMENT_PENDING = "pending"
PAYMENT_OVERDUE = "overdue"
PAYMENT_STATUSES = (PAYMENT_PAID, PAYMENT_PENDING, PAYMENT_OVERDUE)

MESSAGE_TYPES = ("renewal", "birthday", "payment_reminder", "custom")
MESSAGE_SENT = "sent"
MESSAGE_PENDING = "pending"
MESSAGE_STATUSES = (MESSAGE_SENT, MESSAGE_PENDING)

# Outcomes of a single check-in attempt
CHECK_IN_NOT_FOUND = "not_found"
CHECK_IN_EXPIRED = "expired"
CHECK_IN_INACTIVE = "inactive"
CHECK_IN_ALLOWED = "allowed"
CHECK_IN_ERROR = "error"


@dataclass
class Membership:
    id: Optional[int]
    name: str
    price: float
    duration_days: int
    features: List[str] = field(default_factory=list)
    description: str = ""
    created_at: Optional[str] = None


@dataclass
class MembershipView:
    id: int
    name: str
    price: float
    duration_days: int
    features: List[str]
    description: str
    active_members_count: int = 0


@dataclass
class Member:
    id: Optional[str]
    name: str
    email: Optional[str]
    phone: str
    birth_date: str  # YYYY-MM-DD
    join_date: str  # YYYY-MM-DD
    expiry_date: str  # YYYY-MM-DD, authoritative
    status: str  # cached, see lifecycle.effective_status
    membership_id: int
    qr_code: str
    photo: Optional[str] = None
    version: int = 1
    created_at: Optional[str] = None


@dataclass
class MemberView:
    id: str
    name: str
    email: Optional[str]
    phone: str
    status: str
    join_date: str
    expiry_date: str
    birth_date: str
    qr_code: str
    membership_id: int
    membership_name: str
    photo: Optional[str] = None
    # what the check-in gate would decide now; `status` is the stored value
    effective_status: Optional[str] = None


@dataclass
class Payment:
    id: Optional[int]
    member_id: str
    amount: float
    date: str  # YYYY-MM-DD HH:MM:SS
    status: str
    invoice_number: str
    membership_name: str  # snapshot, not a foreign key


@dataclass
class PaymentView:
    id: int
    member_id: str
    member_name: str
    amount: float
    date: str
    status: str
    invoice_number: str
    membership_name: str
    member_email: Optional[str] = None
    member_phone: Optional[str] = None


@dataclass
class Attendance:
    id: Optional[int]
    member_id: str
    date: str  # YYYY-MM-DD HH:MM:SS
    time: str  # local presentation, e.g. "07:45"
    status: str
    attended: bool


@dataclass
class AttendanceView:
    id: int
    member_id: str
    member_name: str
    date: str
    time: str
    status: str
    attended: bool


@dataclass
class Message:
    id: Optional[int]
    type: str
    recipient: str
    content: str
    status: str = MESSAGE_PENDING
    date: Optional[str] = None


@dataclass
class GymSettings:
    gym_name: str = "GYM PRO"
    email: str = "contact@gympro.com"
    currency: str = "USD"
    opening_time: str = "06:00"
    closing_time: str = "22:00"
    time_format: str = "%H:%M"
    expiry_warning_days: int = 7


@dataclass
class CheckInResult:
    outcome: str
    message: str
    member: Optional[Member] = None
    attendance: Optional[Attendance] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == CHECK_IN_ALLOWED


@dataclass
class ActionResult:
    """What every AppAPI operation hands back to its caller."""

    success: bool
    message: str
    data: Any = None
    error_code: Optional[str] = None
