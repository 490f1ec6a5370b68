import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional

from .database import DB_FILE, create_database
from .database_manager import DatabaseManager
from .exceptions import (
    ConcurrentModificationError,
    DataIntegrityError,
    GymDeskError,
    NotFoundError,
    TransactionFailure,
    ValidationError,
)
from .lifecycle import days_until_expiry
from .models import CHECK_IN_ERROR, ActionResult, CheckInResult
from .reports import ReportGenerator

RENEWAL_MAX_ATTEMPTS = 3
PORTAL_ATTENDANCE_LIMIT = 50
DEFAULT_RECENT_PAYMENT_DAYS = 30


class AppAPI:
    """
    API layer for the gym back office.
    Acts as the bridge between the HTTP routes and the DatabaseManager: every
    operation returns an ActionResult, and errors from the store are logged
    here and turned into short messages for the front desk.
    """

    def __init__(
        self,
        connection: Optional[sqlite3.Connection] = None,
        db_manager: Optional[DatabaseManager] = None,
        clock: Optional[Callable] = None,
        renewal_max_attempts: int = RENEWAL_MAX_ATTEMPTS,
        invoice_max_attempts: int = 5,
    ) -> None:
        """
        Uses the given DatabaseManager, or builds one over `connection`, or
        opens the default database file when neither is given.
        """
        if db_manager is None:
            if connection is None:
                connection = create_database(DB_FILE)
                if connection is None:
                    raise RuntimeError(f"Could not open database at {DB_FILE}")
            db_manager = DatabaseManager(
                connection=connection, clock=clock, invoice_max_attempts=invoice_max_attempts
            )
        self.db_manager: DatabaseManager = db_manager
        self.reports = ReportGenerator(db_manager.conn, clock=db_manager.clock)
        self.renewal_max_attempts = renewal_max_attempts

    def _run(self, action: str, operation: Callable[[], Any], success_message: str) -> ActionResult:
        try:
            data = operation()
        except DataIntegrityError as e:
            logging.error(f"{action} failed on inconsistent stored data: {e.message}", exc_info=True)
            return ActionResult(
                False, "Stored data is inconsistent. Please contact support.", error_code=e.code
            )
        except TransactionFailure as e:
            logging.error(f"{action} failed: {e.message}", exc_info=True)
            return ActionResult(False, e.message, error_code=e.code)
        except GymDeskError as e:
            logging.warning(f"{action} rejected: {e.message}")
            return ActionResult(False, e.message, error_code=e.code)
        except sqlite3.Error as e:
            logging.error(f"{action} failed with a database error: {e}", exc_info=True)
            return ActionResult(
                False,
                "The database is unavailable. Please try again.",
                error_code=TransactionFailure.code,
            )
        return ActionResult(True, success_message, data)

    # Member operations
    def add_member(
        self,
        name: str,
        phone: str,
        birth_date: Any,
        membership_id: Any,
        email: Optional[str] = None,
        photo: Optional[str] = None,
    ) -> ActionResult:
        return self._run(
            "Add member",
            lambda: self.db_manager.add_member(name, phone, birth_date, membership_id, email, photo),
            "Member added successfully.",
        )

    def get_member(self, member_id: str) -> ActionResult:
        return self._run(
            "Get member", lambda: self.db_manager.get_member_view(member_id), "Member found."
        )

    def get_all_members(
        self, search: Optional[str] = None, status_filter: Optional[str] = None
    ) -> ActionResult:
        return self._run(
            "List members",
            lambda: self.db_manager.get_all_members(search=search, status_filter=status_filter),
            "Members loaded.",
        )

    def update_member(self, member_id: str, **changes: Any) -> ActionResult:
        return self._run(
            "Update member",
            lambda: self.db_manager.update_member(member_id, **changes),
            "Member updated successfully.",
        )

    def update_member_status(self, member_id: str, status: str) -> ActionResult:
        return self._run(
            "Update member status",
            lambda: self.db_manager.update_member_status(member_id, status),
            f"Member status changed to {status}.",
        )

    def delete_member(self, member_id: str) -> ActionResult:
        return self._run(
            "Delete member",
            lambda: self.db_manager.delete_member(member_id),
            "Member deleted successfully.",
        )

    def get_expiring_members(self, days: Optional[int] = None) -> ActionResult:
        def expiring():
            window = days if days is not None else self.db_manager.get_settings().expiry_warning_days
            if window < 0:
                raise ValidationError("Days must not be negative.")
            return self.db_manager.get_expiring_members(window)

        return self._run("List expiring members", expiring, "Expiring members loaded.")

    def refresh_member_statuses(self) -> ActionResult:
        return self._run(
            "Refresh member statuses",
            self.db_manager.refresh_member_statuses,
            "Member statuses refreshed.",
        )

    def get_member_payments(self, member_id: str) -> ActionResult:
        def payments():
            self.db_manager.require_member(member_id)
            return self.db_manager.get_payments_for_member(member_id)

        return self._run("List member payments", payments, "Payments loaded.")

    def get_member_attendances(self, member_id: str, limit: Optional[int] = None) -> ActionResult:
        def attendances():
            self.db_manager.require_member(member_id)
            return self.db_manager.get_attendances_by_member(member_id, limit=limit)

        return self._run("List member attendances", attendances, "Attendances loaded.")

    def get_member_portal(self, code: str) -> ActionResult:
        """Self-service view for a member identified by QR code or id."""

        def portal():
            member = self.db_manager.find_member_by_code(code)
            if member is None:
                raise NotFoundError("Invalid code. Member not found.")
            return {
                "member": self.db_manager.get_member_view(member.id),
                "payments": self.db_manager.get_payments_for_member(member.id),
                "attendances": self.db_manager.get_attendances_by_member(
                    member.id, limit=PORTAL_ATTENDANCE_LIMIT
                ),
            }

        return self._run("Portal lookup", portal, "Member found.")

    # Renewal
    def renew_membership(self, member_id: str, membership_id: Optional[Any] = None) -> ActionResult:
        """
        Renews the member, retrying the whole transaction when another write
        to the same member got in first. Each attempt re-reads the member.
        """

        def renew():
            for attempt in range(1, self.renewal_max_attempts + 1):
                try:
                    member, payment = self.db_manager.renew_membership(member_id, membership_id)
                    return {"member": member, "payment": payment}
                except ConcurrentModificationError:
                    if attempt == self.renewal_max_attempts:
                        raise
                    logging.warning(
                        f"Renewal of member {member_id} lost a concurrent update (attempt {attempt}); retrying."
                    )

        return self._run("Renew membership", renew, "Membership renewed successfully.")

    # Attendance gate
    def check_in(self, code: str) -> CheckInResult:
        try:
            return self.db_manager.mark_attendance(code)
        except DataIntegrityError as e:
            logging.error(f"Check-in failed on inconsistent stored data: {e.message}", exc_info=True)
        except TransactionFailure as e:
            logging.error(f"Check-in failed: {e.message}", exc_info=True)
        except sqlite3.Error as e:
            logging.error(f"Check-in failed with a database error: {e}", exc_info=True)
        return CheckInResult(CHECK_IN_ERROR, "Check-in could not be recorded. Please try again.")

    # Attendance records
    def get_attendances(
        self,
        start: Optional[str] = None,
        end: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> ActionResult:
        def attendances():
            if start or end:
                if not (start and end):
                    raise ValidationError("Both start and end dates are required.")
                try:
                    return self.db_manager.get_attendances_by_date_range(start, end)
                except ValueError:
                    raise ValidationError("Dates must be valid (YYYY-MM-DD).")
            return self.db_manager.get_all_attendances(limit=limit)

        return self._run("List attendances", attendances, "Attendances loaded.")

    def get_attendance(self, attendance_id: int) -> ActionResult:
        return self._run(
            "Get attendance",
            lambda: self.db_manager.get_attendance_by_id(attendance_id),
            "Attendance found.",
        )

    def update_attendance(self, attendance_id: int, **changes: Any) -> ActionResult:
        return self._run(
            "Update attendance",
            lambda: self.db_manager.update_attendance(attendance_id, **changes),
            "Attendance updated successfully.",
        )

    def delete_attendance(self, attendance_id: int) -> ActionResult:
        return self._run(
            "Delete attendance",
            lambda: self.db_manager.delete_attendance(attendance_id),
            "Attendance deleted successfully.",
        )

    # Membership plan operations
    def add_membership(
        self,
        name: str,
        price: Any,
        duration_days: Any,
        features: List[str],
        description: str = "",
    ) -> ActionResult:
        return self._run(
            "Add membership",
            lambda: self.db_manager.add_membership(name, price, duration_days, features, description),
            "Membership created successfully.",
        )

    def get_membership(self, membership_id: int) -> ActionResult:
        def membership():
            return {
                "membership": self.db_manager.require_membership(membership_id),
                "members": self.db_manager.get_members_for_membership(membership_id),
            }

        return self._run("Get membership", membership, "Membership found.")

    def get_all_memberships(self) -> ActionResult:
        return self._run(
            "List memberships", self.db_manager.get_all_memberships, "Memberships loaded."
        )

    def update_membership(self, membership_id: int, **changes: Any) -> ActionResult:
        return self._run(
            "Update membership",
            lambda: self.db_manager.update_membership(membership_id, **changes),
            "Membership updated successfully.",
        )

    def delete_membership(self, membership_id: int) -> ActionResult:
        return self._run(
            "Delete membership",
            lambda: self.db_manager.delete_membership(membership_id),
            "Membership deleted successfully.",
        )

    # Payment operations
    def get_recent_payments(self, days: int = DEFAULT_RECENT_PAYMENT_DAYS) -> ActionResult:
        return self._run(
            "List recent payments",
            lambda: self.db_manager.get_recent_payments(days),
            "Payments loaded.",
        )

    def get_payment(self, payment_id: int) -> ActionResult:
        return self._run(
            "Get payment", lambda: self.db_manager.get_payment_by_id(payment_id), "Payment found."
        )

    # Settings
    def get_settings(self) -> ActionResult:
        return self._run("Get settings", self.db_manager.get_settings, "Settings loaded.")

    def update_settings(self, **changes: Any) -> ActionResult:
        return self._run(
            "Update settings",
            lambda: self.db_manager.update_settings(**changes),
            "Settings saved successfully.",
        )

    # Messages
    def create_message(self, type: str, recipient: str, content: str) -> ActionResult:
        return self._run(
            "Create message",
            lambda: self.db_manager.add_message(type, recipient, content),
            "Message created.",
        )

    def send_bulk_message(self, type: str, recipients: List[str], content: str) -> ActionResult:
        """Queues the same content for every recipient; all of them or none are stored."""

        def bulk():
            if not isinstance(recipients, (list, tuple)) or not recipients:
                raise ValidationError("At least one recipient is required.")
            return self.db_manager.add_messages(
                [
                    {"type": type, "recipient": recipient, "content": content}
                    for recipient in recipients
                ]
            )

        result = self._run("Send bulk message", bulk, "Messages created.")
        if result.success:
            result.message = f"{len(result.data)} message(s) created."
        return result

    def get_messages(
        self, status: Optional[str] = None, type: Optional[str] = None
    ) -> ActionResult:
        return self._run(
            "List messages",
            lambda: self.db_manager.get_all_messages(status, message_type=type),
            "Messages loaded.",
        )

    def get_message(self, message_id: int) -> ActionResult:
        return self._run(
            "Get message", lambda: self.db_manager.get_message_by_id(message_id), "Message found."
        )

    def message_stats(self) -> ActionResult:
        return self.get_report("messages")

    def mark_message_sent(self, message_id: int) -> ActionResult:
        return self._run(
            "Mark message sent",
            lambda: self.db_manager.mark_message_sent(message_id),
            "Message marked as sent.",
        )

    def delete_message(self, message_id: int) -> ActionResult:
        return self._run(
            "Delete message",
            lambda: self.db_manager.delete_message(message_id),
            "Message deleted.",
        )

    def mark_messages_sent(self, message_ids: List[int]) -> ActionResult:
        result = self._run(
            "Mark messages sent",
            lambda: self.db_manager.mark_messages_sent(message_ids),
            "Messages marked as sent.",
        )
        if result.success:
            result.message = f"{result.data} message(s) marked as sent."
        return result

    def delete_messages(self, message_ids: List[int]) -> ActionResult:
        result = self._run(
            "Delete messages",
            lambda: self.db_manager.delete_messages(message_ids),
            "Messages deleted.",
        )
        if result.success:
            result.message = f"{result.data} message(s) deleted."
        return result

    def create_renewal_reminders(self, days: Optional[int] = None) -> ActionResult:
        """Queues one renewal message per active member expiring within `days`."""

        def reminders():
            settings = self.db_manager.get_settings()
            window = days if days is not None else settings.expiry_warning_days
            now = self.db_manager.clock()
            entries: List[Dict[str, Any]] = []
            for member in self.db_manager.get_expiring_members(window):
                days_left = days_until_expiry(member, now)
                when = "today" if days_left == 0 else f"in {days_left} day(s)"
                entries.append(
                    {
                        "type": "renewal",
                        "recipient": member.email or member.phone,
                        "content": (
                            f"Hi {member.name}, your {member.membership_name} membership "
                            f"expires {when} ({member.expiry_date}). "
                            f"Renew at {settings.gym_name} to keep training."
                        ),
                    }
                )
            return self.db_manager.add_messages(entries) if entries else []

        result = self._run("Create renewal reminders", reminders, "Renewal reminders created.")
        if result.success:
            result.message = f"{len(result.data)} renewal reminder(s) created."
        return result

    def create_birthday_messages(self) -> ActionResult:
        def birthdays():
            settings = self.db_manager.get_settings()
            today = self.db_manager.clock().date()
            entries = [
                {
                    "type": "birthday",
                    "recipient": member.email or member.phone,
                    "content": (
                        f"Happy birthday {member.name}! Everyone at {settings.gym_name} "
                        f"wishes you a great day."
                    ),
                }
                for member in self.db_manager.get_active_members_with_birthday(today)
            ]
            return self.db_manager.add_messages(entries) if entries else []

        result = self._run("Create birthday messages", birthdays, "Birthday messages created.")
        if result.success:
            result.message = f"{len(result.data)} birthday message(s) created."
        return result

    # Reports
    REPORTS = {
        "dashboard": "dashboard_stats",
        "monthly-revenue": "monthly_revenue",
        "membership-distribution": "membership_distribution",
        "weekly-attendance": "weekly_attendance",
        "attendance-buckets": "weekly_attendance_buckets",
        "attendance": "attendance_stats",
        "reports": "reports_stats",
        "recent-activity": "recent_activity",
        "messages": "message_stats",
    }

    def get_report(self, name: str) -> ActionResult:
        """Runs a named report. DataFrames come back as lists of records."""

        def report():
            method_name = self.REPORTS.get(name)
            if method_name is None:
                raise NotFoundError(f"Unknown report '{name}'.")
            data = getattr(self.reports, method_name)()
            if hasattr(data, "to_dict") and not isinstance(data, dict):
                return data.to_dict(orient="records")
            return data

        return self._run("Run report", report, "Report generated.")
