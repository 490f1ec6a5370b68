"""
Input validation for members, plans, settings and messages.

Each validator collects every problem it finds and raises a single
ValidationError whose message is the first one. Nothing here touches the
database.
"""

import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from .exceptions import ValidationError
from .models import (
    ATTENDANCE_STATUSES,
    MEMBER_STATUSES,
    MESSAGE_STATUSES,
    MESSAGE_TYPES,
    GymSettings,
)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[\d\s\-\+\(\)]+$")
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def sanitize_string(value: Optional[str]) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split())


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email))


def is_valid_phone(phone: str) -> bool:
    digits = re.sub(r"\D", "", phone)
    return bool(PHONE_RE.match(phone)) and len(digits) >= 7


def _parse_date(value: Any, label: str, errors: List[str]) -> Optional[str]:
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()).isoformat()
    except (TypeError, ValueError):
        errors.append(f"{label} must be a valid date (YYYY-MM-DD).")
        return None


def _raise_if_any(errors: List[str]) -> None:
    if errors:
        raise ValidationError(errors)


def validate_member_fields(
    data: Dict[str, Any], today: date, partial: bool = False
) -> Dict[str, Any]:
    """
    Validates member form data.

    With partial=True only the keys present in `data` (and not None) are
    checked, which is what an edit form sends.
    """
    errors: List[str] = []
    cleaned: Dict[str, Any] = {}

    def present(key: str) -> bool:
        return not partial or data.get(key) is not None

    if present("name"):
        name = sanitize_string(data.get("name"))
        if not name:
            errors.append("Name is required.")
        cleaned["name"] = name

    if "email" in data and data.get("email") is not None:
        email = str(data["email"]).strip()
        if email and not is_valid_email(email):
            errors.append(f"Email '{email}' is not a valid address.")
        cleaned["email"] = email or None
    elif not partial:
        cleaned["email"] = None

    if present("phone"):
        phone = str(data.get("phone") or "").strip()
        if not phone:
            errors.append("Phone is required.")
        elif not is_valid_phone(phone):
            errors.append(f"Phone '{phone}' is not a valid phone number.")
        cleaned["phone"] = phone

    if present("birth_date"):
        raw = data.get("birth_date")
        if raw in (None, ""):
            errors.append("Birth date is required.")
        else:
            birth_date = _parse_date(raw, "Birth date", errors)
            if birth_date and date.fromisoformat(birth_date) > today:
                errors.append("Birth date cannot be in the future.")
            cleaned["birth_date"] = birth_date

    if present("membership_id"):
        membership_id = data.get("membership_id")
        try:
            cleaned["membership_id"] = int(membership_id)
        except (TypeError, ValueError):
            errors.append("A membership plan must be selected.")

    if "photo" in data:
        cleaned["photo"] = data.get("photo") or None

    _raise_if_any(errors)
    return cleaned


def validate_membership_fields(
    data: Dict[str, Any], partial: bool = False
) -> Dict[str, Any]:
    errors: List[str] = []
    cleaned: Dict[str, Any] = {}

    def present(key: str) -> bool:
        return not partial or data.get(key) is not None

    if present("name"):
        name = sanitize_string(data.get("name"))
        if not name:
            errors.append("Plan name is required.")
        cleaned["name"] = name

    if present("price"):
        try:
            price = float(data.get("price"))
            if price < 0:
                errors.append("Price cannot be negative.")
            cleaned["price"] = price
        except (TypeError, ValueError):
            errors.append("Price must be a number.")

    if present("duration_days"):
        raw_duration = data.get("duration_days")
        try:
            if isinstance(raw_duration, bool) or float(raw_duration) != int(raw_duration):
                raise ValueError
            duration = int(raw_duration)
            if duration <= 0:
                errors.append("Duration must be a positive number of days.")
            cleaned["duration_days"] = duration
        except (TypeError, ValueError):
            errors.append("Duration must be a whole number of days.")

    if present("features"):
        features = data.get("features")
        if isinstance(features, str) or not isinstance(features, (list, tuple)):
            errors.append("Features must be a list.")
        else:
            features = [sanitize_string(f) for f in features if sanitize_string(f)]
            if not features:
                errors.append("At least one feature is required.")
            cleaned["features"] = features

    if "description" in data and data.get("description") is not None:
        cleaned["description"] = str(data["description"]).strip()
    elif not partial:
        cleaned["description"] = ""

    _raise_if_any(errors)
    return cleaned


def validate_member_status(status: str) -> str:
    if status not in MEMBER_STATUSES:
        raise ValidationError(
            f"Invalid member status '{status}'. Allowed: {', '.join(MEMBER_STATUSES)}."
        )
    return status


def validate_attendance_fields(
    data: Dict[str, Any], time_format: str = "%H:%M"
) -> Dict[str, Any]:
    """
    Cleans a manual attendance correction. `date` may be a date or a full
    timestamp and is stored as YYYY-MM-DD HH:MM:SS; `time` must match the
    gym's configured time format, the same one the check-in gate writes.
    """
    errors: List[str] = []
    cleaned: Dict[str, Any] = {}
    if data.get("status") is not None:
        if data["status"] not in ATTENDANCE_STATUSES:
            errors.append(f"Invalid attendance status '{data['status']}'.")
        cleaned["status"] = data["status"]
    if data.get("attended") is not None:
        if not isinstance(data["attended"], bool):
            errors.append("Attended must be true or false.")
        cleaned["attended"] = data["attended"]
    if data.get("date") is not None:
        value = data["date"]
        if isinstance(value, date) and not isinstance(value, datetime):
            value = datetime.combine(value, datetime.min.time())
        try:
            if not isinstance(value, datetime):
                value = datetime.fromisoformat(str(value).strip())
            cleaned["date"] = value.strftime(TIMESTAMP_FORMAT)
        except ValueError:
            errors.append("Date must be a valid date or timestamp (YYYY-MM-DD HH:MM:SS).")
    if data.get("time") is not None:
        try:
            datetime.strptime(str(data["time"]), time_format)
        except ValueError:
            errors.append(f"Time must match the format {time_format}.")
        cleaned["time"] = str(data["time"])
    _raise_if_any(errors)
    return cleaned


def validate_settings_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    errors: List[str] = []
    cleaned: Dict[str, Any] = {}
    known = GymSettings.__dataclass_fields__
    for key, value in data.items():
        if key not in known:
            errors.append(f"Unknown setting '{key}'.")
            continue
        if value is None:
            continue
        if key == "expiry_warning_days":
            try:
                days = int(value)
                if days < 0:
                    errors.append("Expiry warning days cannot be negative.")
                cleaned[key] = days
            except (TypeError, ValueError):
                errors.append("Expiry warning days must be a whole number.")
        elif key in ("opening_time", "closing_time"):
            if not TIME_RE.match(str(value)):
                errors.append(f"{key.replace('_', ' ').capitalize()} must be in HH:MM format.")
            cleaned[key] = str(value)
        elif key == "email":
            if value and not is_valid_email(str(value)):
                errors.append(f"Email '{value}' is not a valid address.")
            cleaned[key] = str(value)
        elif key == "gym_name":
            name = sanitize_string(value)
            if not name:
                errors.append("Gym name is required.")
            cleaned[key] = name
        else:
            cleaned[key] = str(value)
    _raise_if_any(errors)
    return cleaned


def validate_message_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    errors: List[str] = []
    message_type = data.get("type")
    if message_type not in MESSAGE_TYPES:
        errors.append(f"Invalid message type '{message_type}'.")
    recipient = str(data.get("recipient") or "").strip()
    if not recipient:
        errors.append("Recipient is required.")
    content = str(data.get("content") or "").strip()
    if not content:
        errors.append("Message content is required.")
    status = data.get("status") or "pending"
    if status not in MESSAGE_STATUSES:
        errors.append(f"Invalid message status '{status}'.")
    _raise_if_any(errors)
    return {
        "type": message_type,
        "recipient": recipient,
        "content": content,
        "status": status,
    }
