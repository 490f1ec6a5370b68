import json
import logging
import random
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import fields as dataclass_fields
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .exceptions import (
    ConcurrentModificationError,
    DataIntegrityError,
    NotFoundError,
    PlanNotFoundError,
    ReferentialConflictError,
    TransactionFailure,
    ValidationError,
)
from .lifecycle import (
    access_code_changed,
    as_date,
    compute_initial_expiry,
    compute_renewal_expiry,
    effective_status,
    generate_access_code,
    generate_invoice_number,
    needs_status_write_back,
)
from .models import (
    ATTENDANCE_ALLOWED,
    ATTENDANCE_DENIED,
    ATTENDANCE_STATUSES,
    CHECK_IN_ALLOWED,
    CHECK_IN_EXPIRED,
    CHECK_IN_INACTIVE,
    CHECK_IN_NOT_FOUND,
    MEMBER_ACTIVE,
    MEMBER_EXPIRED,
    MEMBER_INACTIVE,
    MEMBER_STATUSES,
    MESSAGE_SENT,
    MESSAGE_STATUSES,
    MESSAGE_TYPES,
    PAYMENT_PAID,
    PAYMENT_STATUSES,
    Attendance,
    AttendanceView,
    CheckInResult,
    GymSettings,
    Member,
    MemberView,
    Membership,
    MembershipView,
    Message,
    Payment,
    PaymentView,
)
from .validation import (
    validate_attendance_fields,
    validate_member_fields,
    validate_member_status,
    validate_membership_fields,
    validate_message_fields,
    validate_settings_fields,
)

# Basic logging configuration (can be overridden by application's config)
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
INVOICE_MAX_ATTEMPTS = 5

MEMBER_COLUMNS = (
    "m.id, m.name, m.email, m.phone, m.birth_date, m.join_date, m.expiry_date, "
    "m.status, m.membership_id, m.qr_code, m.photo, m.version, m.created_at"
)
MEMBER_VIEW_COLUMNS = (
    "m.id, m.name, m.email, m.phone, m.status, m.join_date, m.expiry_date, "
    "m.birth_date, m.qr_code, m.membership_id, ms.name AS membership_name, m.photo"
)
MEMBERSHIP_COLUMNS = "id, name, price, duration_days, features, description, created_at"
ATTENDANCE_VIEW_COLUMNS = (
    "a.id, a.member_id, m.name AS member_name, a.date, a.time, a.status, a.attended"
)


def _check_value(value: str, allowed: Sequence[str], label: str) -> str:
    if value not in allowed:
        raise DataIntegrityError(
            f"Stored {label} '{value}' is not one of: {', '.join(allowed)}."
        )
    return value


def _row_to_member(row: sqlite3.Row) -> Member:
    member = Member(**row)
    _check_value(member.status, MEMBER_STATUSES, "member status")
    return member


def _row_to_member_view(row: sqlite3.Row, now: datetime) -> MemberView:
    view = MemberView(**row)
    _check_value(view.status, MEMBER_STATUSES, "member status")
    view.effective_status = effective_status(view, now)
    return view


def _row_to_membership(row: sqlite3.Row) -> Membership:
    data = dict(row)
    data["features"] = json.loads(data["features"] or "[]")
    return Membership(**data)


def _row_to_payment(row: sqlite3.Row) -> Payment:
    payment = Payment(**row)
    _check_value(payment.status, PAYMENT_STATUSES, "payment status")
    return payment


def _row_to_payment_view(row: sqlite3.Row) -> PaymentView:
    view = PaymentView(**row)
    _check_value(view.status, PAYMENT_STATUSES, "payment status")
    return view


def _row_to_attendance_view(row: sqlite3.Row) -> AttendanceView:
    data = dict(row)
    data["attended"] = bool(data["attended"])
    _check_value(data["status"], ATTENDANCE_STATUSES, "attendance status")
    return AttendanceView(**data)


def _row_to_message(row: sqlite3.Row) -> Message:
    message = Message(**row)
    _check_value(message.type, MESSAGE_TYPES, "message type")
    _check_value(message.status, MESSAGE_STATUSES, "message status")
    return message


def _day_bounds(value: Any) -> Tuple[str, str]:
    day = as_date(value).isoformat()
    return f"{day} 00:00:00", f"{day} 23:59:59"


class DatabaseManager:
    def __init__(
        self,
        connection: sqlite3.Connection,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        invoice_max_attempts: int = INVOICE_MAX_ATTEMPTS,
    ):
        self.conn = connection
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON;")
        self.clock = clock or datetime.now
        self.rng = rng or random.Random()
        self.invoice_max_attempts = invoice_max_attempts

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        One atomic unit of work. Takes the write lock up front (BEGIN IMMEDIATE)
        so that everything read inside it is still current when written.
        Commits on success, rolls back on any exception.
        """
        cursor = self.conn.cursor()
        try:
            if not self.conn.in_transaction:
                cursor.execute("BEGIN IMMEDIATE")
            yield cursor
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            logging.error(f"Database error, transaction rolled back: {e}", exc_info=True)
            raise TransactionFailure(
                "The operation could not be saved. Please try again."
            ) from e
        except Exception:
            self.conn.rollback()
            raise

    def _fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        try:
            cursor = self.conn.cursor()
            cursor.execute(sql, tuple(params))
            return cursor.fetchall()
        except sqlite3.Error as e:
            logging.error(f"Database error running query: {e}", exc_info=True)
            raise TransactionFailure("The database is unavailable. Please try again.") from e

    def _fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        rows = self._fetch_all(sql, params)
        return rows[0] if rows else None

    def _now_str(self, now: Optional[datetime] = None) -> str:
        return (now or self.clock()).strftime(TIMESTAMP_FORMAT)

    # ------------------------------------------------------------------
    # Membership plans
    # ------------------------------------------------------------------

    def add_membership(
        self,
        name: str,
        price: float,
        duration_days: int,
        features: List[str],
        description: str = "",
    ) -> Membership:
        """Adds a new membership plan. Plan names are unique."""
        cleaned = validate_membership_fields(
            {
                "name": name,
                "price": price,
                "duration_days": duration_days,
                "features": features,
                "description": description,
            }
        )
        created_at = self._now_str()
        with self.transaction() as cursor:
            cursor.execute("SELECT id FROM memberships WHERE name = ?", (cleaned["name"],))
            if cursor.fetchone():
                logging.warning(
                    f"Attempt to add membership with existing name: {cleaned['name']}"
                )
                raise ReferentialConflictError(
                    f"A membership named '{cleaned['name']}' already exists."
                )
            cursor.execute(
                """
                INSERT INTO memberships (name, price, duration_days, features, description, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    cleaned["name"],
                    cleaned["price"],
                    cleaned["duration_days"],
                    json.dumps(cleaned["features"]),
                    cleaned["description"],
                    created_at,
                ),
            )
            membership_id = cursor.lastrowid
        logging.info(f"Membership '{cleaned['name']}' added with ID {membership_id}.")
        return Membership(id=membership_id, created_at=created_at, **cleaned)

    def get_membership_by_id(self, membership_id: int) -> Optional[Membership]:
        row = self._fetch_one(
            f"SELECT {MEMBERSHIP_COLUMNS} FROM memberships WHERE id = ?", (membership_id,)
        )
        return _row_to_membership(row) if row else None

    def require_membership(self, membership_id: Any) -> Membership:
        try:
            membership_id = int(membership_id)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid membership id '{membership_id}'.")
        membership = self.get_membership_by_id(membership_id)
        if membership is None:
            raise PlanNotFoundError(f"Membership {membership_id} not found.")
        return membership

    def get_all_memberships(self) -> List[MembershipView]:
        """All plans, cheapest first, with the number of active members on each."""
        rows = self._fetch_all(
            """
            SELECT ms.id, ms.name, ms.price, ms.duration_days, ms.features, ms.description,
                   COUNT(m.id) AS active_members_count
            FROM memberships ms
            LEFT JOIN members m ON m.membership_id = ms.id AND m.status = 'active'
            GROUP BY ms.id
            ORDER BY ms.price ASC, ms.name ASC
            """
        )
        views = []
        for row in rows:
            data = dict(row)
            data["features"] = json.loads(data["features"] or "[]")
            views.append(MembershipView(**data))
        return views

    def get_members_for_membership(self, membership_id: int) -> List[MemberView]:
        self.require_membership(membership_id)
        rows = self._fetch_all(
            f"""
            SELECT {MEMBER_VIEW_COLUMNS}
            FROM members m JOIN memberships ms ON m.membership_id = ms.id
            WHERE m.membership_id = ?
            ORDER BY m.name ASC
            """,
            (membership_id,),
        )
        return [_row_to_member_view(row, self.clock()) for row in rows]

    def update_membership(self, membership_id: int, **changes: Any) -> Membership:
        """
        Partial update of a plan. Historical payments are not touched; they keep
        the name and amount they were created with.
        """
        cleaned = validate_membership_fields(changes, partial=True)
        with self.transaction() as cursor:
            current = self.require_membership(membership_id)
            if "name" in cleaned and cleaned["name"] != current.name:
                cursor.execute(
                    "SELECT id FROM memberships WHERE name = ? AND id != ?",
                    (cleaned["name"], current.id),
                )
                if cursor.fetchone():
                    raise ReferentialConflictError(
                        f"A membership named '{cleaned['name']}' already exists."
                    )
            if not cleaned:
                logging.info(f"No fields provided to update for membership ID {current.id}.")
                return current
            values = dict(cleaned)
            if "features" in values:
                values["features"] = json.dumps(values["features"])
            assignments = ", ".join(f"{column} = ?" for column in values)
            cursor.execute(
                f"UPDATE memberships SET {assignments} WHERE id = ?",
                (*values.values(), current.id),
            )
        logging.info(f"Membership ID {current.id} updated successfully.")
        return self.require_membership(current.id)

    def delete_membership(self, membership_id: int) -> bool:
        """Deletes a plan. Refused while any member is on it."""
        with self.transaction() as cursor:
            membership = self.require_membership(membership_id)
            cursor.execute(
                "SELECT COUNT(*) FROM members WHERE membership_id = ?", (membership.id,)
            )
            members_count = cursor.fetchone()[0]
            if members_count > 0:
                logging.warning(
                    f"Refused to delete membership ID {membership.id}: {members_count} member(s) reference it."
                )
                raise ReferentialConflictError(
                    f"Cannot delete membership '{membership.name}' because it has "
                    f"{members_count} associated member(s)."
                )
            cursor.execute("DELETE FROM memberships WHERE id = ?", (membership.id,))
        logging.info(f"Membership ID {membership.id} deleted successfully.")
        return True

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def get_member_by_id(self, member_id: str) -> Optional[Member]:
        row = self._fetch_one(
            f"SELECT {MEMBER_COLUMNS} FROM members m WHERE m.id = ?", (member_id,)
        )
        return _row_to_member(row) if row else None

    def get_member_by_qr_code(self, qr_code: str) -> Optional[Member]:
        row = self._fetch_one(
            f"SELECT {MEMBER_COLUMNS} FROM members m WHERE m.qr_code = ?", (qr_code,)
        )
        return _row_to_member(row) if row else None

    def find_member_by_code(self, code: str) -> Optional[Member]:
        """Accepts either the QR code payload or the raw member id."""
        code = (code or "").strip()
        if not code:
            return None
        return self.get_member_by_qr_code(code) or self.get_member_by_id(code)

    def require_member(self, member_id: str) -> Member:
        member = self.get_member_by_id(member_id)
        if member is None:
            raise NotFoundError(f"Member {member_id} not found.")
        return member

    def get_member_view(self, member_id: str) -> MemberView:
        row = self._fetch_one(
            f"""
            SELECT {MEMBER_VIEW_COLUMNS}
            FROM members m JOIN memberships ms ON m.membership_id = ms.id
            WHERE m.id = ?
            """,
            (member_id,),
        )
        if row is None:
            raise NotFoundError(f"Member {member_id} not found.")
        return _row_to_member_view(row, self.clock())

    def _ensure_email_available(
        self, cursor: sqlite3.Cursor, email: str, exclude_member_id: Optional[str] = None
    ) -> None:
        cursor.execute(
            "SELECT id FROM members WHERE email = ? AND id != ?",
            (email, exclude_member_id or ""),
        )
        if cursor.fetchone():
            logging.warning(f"Attempt to use an email that is already registered: {email}")
            raise ReferentialConflictError(f"Email {email} is already registered.")

    def _insert_payment(
        self, cursor: sqlite3.Cursor, member_id: str, plan: Membership, now: datetime
    ) -> Payment:
        for attempt in range(1, self.invoice_max_attempts + 1):
            invoice_number = generate_invoice_number(now, self.rng)
            cursor.execute(
                "SELECT 1 FROM payments WHERE invoice_number = ?", (invoice_number,)
            )
            if cursor.fetchone() is None:
                break
            logging.warning(
                f"Invoice number {invoice_number} already used (attempt {attempt}); generating another."
            )
        else:
            raise TransactionFailure(
                "Could not generate a unique invoice number. Please try again."
            )
        payment = Payment(
            id=None,
            member_id=member_id,
            amount=plan.price,
            date=now.strftime(TIMESTAMP_FORMAT),
            status=PAYMENT_PAID,
            invoice_number=invoice_number,
            membership_name=plan.name,
        )
        cursor.execute(
            """
            INSERT INTO payments (member_id, amount, date, status, invoice_number, membership_name)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                payment.member_id,
                payment.amount,
                payment.date,
                payment.status,
                payment.invoice_number,
                payment.membership_name,
            ),
        )
        payment.id = cursor.lastrowid
        return payment

    def _update_member_row(
        self, cursor: sqlite3.Cursor, member: Member, updates: Dict[str, Any]
    ) -> None:
        """Compare-and-swap on the version the member was read with."""
        assignments = ", ".join(f"{column} = ?" for column in updates)
        cursor.execute(
            f"UPDATE members SET {assignments}, version = version + 1 WHERE id = ? AND version = ?",
            (*updates.values(), member.id, member.version),
        )
        if cursor.rowcount == 0:
            logging.warning(
                f"Version conflict updating member {member.id} (expected version {member.version})."
            )
            raise ConcurrentModificationError(
                "The member was changed by another operation. Please try again."
            )

    def add_member(
        self,
        name: str,
        phone: str,
        birth_date: Any,
        membership_id: int,
        email: Optional[str] = None,
        photo: Optional[str] = None,
    ) -> Member:
        """
        Registers a member on a plan and records the initial payment.

        The id is generated before the insert so the QR code goes in with the
        row itself. Member and payment are written in one transaction.
        """
        now = self.clock()
        cleaned = validate_member_fields(
            {
                "name": name,
                "email": email,
                "phone": phone,
                "birth_date": birth_date,
                "membership_id": membership_id,
                "photo": photo,
            },
            today=now.date(),
        )
        with self.transaction() as cursor:
            plan = self.require_membership(cleaned["membership_id"])
            if cleaned["email"]:
                self._ensure_email_available(cursor, cleaned["email"])

            member_id = uuid.uuid4().hex
            join_date = now.date()
            member = Member(
                id=member_id,
                name=cleaned["name"],
                email=cleaned["email"],
                phone=cleaned["phone"],
                birth_date=cleaned["birth_date"],
                join_date=join_date.isoformat(),
                expiry_date=compute_initial_expiry(join_date, plan).isoformat(),
                status=MEMBER_ACTIVE,
                membership_id=plan.id,
                qr_code=generate_access_code(member_id, cleaned["name"], cleaned["birth_date"]),
                photo=cleaned.get("photo"),
                version=1,
                created_at=now.strftime(TIMESTAMP_FORMAT),
            )
            cursor.execute(
                """
                INSERT INTO members (id, name, email, phone, birth_date, join_date, expiry_date,
                                     status, membership_id, qr_code, photo, version, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    member.id,
                    member.name,
                    member.email,
                    member.phone,
                    member.birth_date,
                    member.join_date,
                    member.expiry_date,
                    member.status,
                    member.membership_id,
                    member.qr_code,
                    member.photo,
                    member.version,
                    member.created_at,
                ),
            )
            payment = self._insert_payment(cursor, member.id, plan, now)
        logging.info(
            f"Member '{member.name}' added with ID {member.id} on plan '{plan.name}' "
            f"(invoice {payment.invoice_number})."
        )
        return member

    def update_member(
        self,
        member_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        birth_date: Any = None,
        membership_id: Optional[int] = None,
        photo: Optional[str] = None,
    ) -> Member:
        """Updates an existing member's details.
        Changing the plan restarts the period from today. Changing the name or the
        birth date regenerates the QR code. An empty email clears it.
        """
        now = self.clock()
        provided = {
            "name": name,
            "email": email,
            "phone": phone,
            "birth_date": birth_date,
            "membership_id": membership_id,
            "photo": photo,
        }
        cleaned = validate_member_fields(
            {key: value for key, value in provided.items() if value is not None},
            today=now.date(),
            partial=True,
        )
        with self.transaction() as cursor:
            member = self.require_member(member_id)
            updates: Dict[str, Any] = {}
            for key in ("name", "phone", "birth_date", "photo"):
                if key in cleaned and cleaned[key] != getattr(member, key):
                    updates[key] = cleaned[key]
            if "email" in cleaned and cleaned["email"] != member.email:
                if cleaned["email"]:
                    self._ensure_email_available(cursor, cleaned["email"], member.id)
                updates["email"] = cleaned["email"]
            if "membership_id" in cleaned and cleaned["membership_id"] != member.membership_id:
                plan = self.require_membership(cleaned["membership_id"])
                updates["membership_id"] = plan.id
                updates["expiry_date"] = compute_initial_expiry(now, plan).isoformat()
            if access_code_changed(member, cleaned.get("name"), cleaned.get("birth_date")):
                updates["qr_code"] = generate_access_code(
                    member.id,
                    cleaned.get("name", member.name),
                    cleaned.get("birth_date", member.birth_date),
                )
            if not updates:
                logging.info(f"No changes to apply for member ID {member.id}.")
                return member
            self._update_member_row(cursor, member, updates)
        logging.info(f"Member ID {member_id} updated ({', '.join(updates)}).")
        return self.require_member(member_id)

    def update_member_status(self, member_id: str, status: str) -> Member:
        """Manual status change from the back office."""
        validate_member_status(status)
        with self.transaction() as cursor:
            member = self.require_member(member_id)
            if member.status != status:
                self._update_member_row(cursor, member, {"status": status})
        logging.info(f"Member ID {member_id} status set to '{status}'.")
        return self.require_member(member_id)

    def delete_member(self, member_id: str) -> bool:
        """Deletes a member together with their attendances and payments."""
        with self.transaction() as cursor:
            member = self.require_member(member_id)
            cursor.execute("DELETE FROM attendances WHERE member_id = ?", (member.id,))
            attendances_deleted = cursor.rowcount
            cursor.execute("DELETE FROM payments WHERE member_id = ?", (member.id,))
            payments_deleted = cursor.rowcount
            cursor.execute("DELETE FROM members WHERE id = ?", (member.id,))
        logging.info(
            f"Member ID {member_id} deleted with {payments_deleted} payment(s) "
            f"and {attendances_deleted} attendance record(s)."
        )
        return True

    def get_all_members(
        self, search: Optional[str] = None, status_filter: Optional[str] = None
    ) -> List[MemberView]:
        """Newest first. `search` matches name, email or phone; `status_filter` the stored status."""
        sql = f"""
            SELECT {MEMBER_VIEW_COLUMNS}
            FROM members m JOIN memberships ms ON m.membership_id = ms.id
            WHERE 1=1
        """
        params: List[Any] = []
        if search and search.strip():
            like = f"%{search.strip()}%"
            sql += " AND (m.name LIKE ? OR m.email LIKE ? OR m.phone LIKE ?)"
            params.extend([like, like, like])
        if status_filter:
            validate_member_status(status_filter)
            sql += " AND m.status = ?"
            params.append(status_filter)
        sql += " ORDER BY m.created_at DESC, m.name ASC"
        return [_row_to_member_view(row, self.clock()) for row in self._fetch_all(sql, params)]

    def get_expiring_members(self, days: int) -> List[MemberView]:
        """Active members whose expiry falls between today and today + days."""
        today = self.clock().date()
        rows = self._fetch_all(
            f"""
            SELECT {MEMBER_VIEW_COLUMNS}
            FROM members m JOIN memberships ms ON m.membership_id = ms.id
            WHERE m.status = 'active' AND m.expiry_date BETWEEN ? AND ?
            ORDER BY m.expiry_date ASC, m.name ASC
            """,
            (today.isoformat(), (today + timedelta(days=days)).isoformat()),
        )
        return [_row_to_member_view(row, self.clock()) for row in rows]

    def get_active_members_with_birthday(self, on_day: date) -> List[MemberView]:
        rows = self._fetch_all(
            f"""
            SELECT {MEMBER_VIEW_COLUMNS}
            FROM members m JOIN memberships ms ON m.membership_id = ms.id
            WHERE m.status = 'active' AND strftime('%m-%d', m.birth_date) = ?
            ORDER BY m.name ASC
            """,
            (on_day.strftime("%m-%d"),),
        )
        return [_row_to_member_view(row, self.clock()) for row in rows]

    def refresh_member_statuses(self) -> int:
        """Writes 'expired' onto every member whose expiry date has passed."""
        today = self.clock().date().isoformat()
        with self.transaction() as cursor:
            cursor.execute(
                """
                UPDATE members SET status = 'expired', version = version + 1
                WHERE status != 'expired' AND expiry_date < ?
                """,
                (today,),
            )
            updated = cursor.rowcount
        if updated:
            logging.info(f"Marked {updated} member(s) as expired.")
        return updated

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    def renew_membership(
        self, member_id: str, membership_id: Optional[int] = None
    ) -> Tuple[Member, Payment]:
        """
        Renews a member on their current plan, or on `membership_id` when given.

        The new expiry is computed from fresh state inside the transaction, the
        member is reactivated and a paid Payment is recorded; both writes commit
        together or not at all.
        """
        now = self.clock()
        with self.transaction() as cursor:
            member = self.require_member(member_id)
            target_id = membership_id if membership_id is not None else member.membership_id
            plan = self.require_membership(target_id)
            new_expiry = compute_renewal_expiry(member, plan, now)
            self._update_member_row(
                cursor,
                member,
                {
                    "expiry_date": new_expiry.isoformat(),
                    "status": MEMBER_ACTIVE,
                    "membership_id": plan.id,
                },
            )
            payment = self._insert_payment(cursor, member.id, plan, now)
        logging.info(
            f"Member ID {member_id} renewed on '{plan.name}' until {new_expiry.isoformat()} "
            f"(invoice {payment.invoice_number})."
        )
        return self.require_member(member_id), payment

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def get_payments_for_member(self, member_id: str) -> List[Payment]:
        rows = self._fetch_all(
            """
            SELECT id, member_id, amount, date, status, invoice_number, membership_name
            FROM payments WHERE member_id = ?
            ORDER BY date DESC, id DESC
            """,
            (member_id,),
        )
        return [_row_to_payment(row) for row in rows]

    def get_recent_payments(self, days: int = 30) -> List[PaymentView]:
        since = (self.clock() - timedelta(days=days)).strftime(TIMESTAMP_FORMAT)
        rows = self._fetch_all(
            """
            SELECT p.id, p.member_id, m.name AS member_name, p.amount, p.date, p.status,
                   p.invoice_number, p.membership_name, m.email AS member_email,
                   m.phone AS member_phone
            FROM payments p JOIN members m ON p.member_id = m.id
            WHERE p.date >= ?
            ORDER BY p.date DESC, p.id DESC
            """,
            (since,),
        )
        return [_row_to_payment_view(row) for row in rows]

    def get_payment_by_id(self, payment_id: int) -> PaymentView:
        row = self._fetch_one(
            """
            SELECT p.id, p.member_id, m.name AS member_name, p.amount, p.date, p.status,
                   p.invoice_number, p.membership_name, m.email AS member_email,
                   m.phone AS member_phone
            FROM payments p JOIN members m ON p.member_id = m.id
            WHERE p.id = ?
            """,
            (payment_id,),
        )
        if row is None:
            raise NotFoundError(f"Payment {payment_id} not found.")
        return _row_to_payment_view(row)

    # ------------------------------------------------------------------
    # Attendance gate
    # ------------------------------------------------------------------

    def _insert_attendance(
        self,
        cursor: sqlite3.Cursor,
        member_id: str,
        now: datetime,
        status: str,
        attended: bool,
        settings: GymSettings,
    ) -> Attendance:
        attendance = Attendance(
            id=None,
            member_id=member_id,
            date=now.strftime(TIMESTAMP_FORMAT),
            time=now.strftime(settings.time_format),
            status=status,
            attended=attended,
        )
        cursor.execute(
            """
            INSERT INTO attendances (member_id, date, time, status, attended, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                attendance.member_id,
                attendance.date,
                attendance.time,
                attendance.status,
                1 if attendance.attended else 0,
                attendance.date,
            ),
        )
        attendance.id = cursor.lastrowid
        return attendance

    def mark_attendance(
        self, code: str, settings: Optional[GymSettings] = None
    ) -> CheckInResult:
        """
        Decides one check-in attempt and records it.

        Unknown codes write nothing. A known member always gets exactly one
        attendance row, allowed or denied. When the dates show the membership
        has lapsed but the stored status does not, the status is corrected in
        the same transaction, before the attendance row is written.
        """
        now = self.clock()
        settings = settings or self.get_settings()
        with self.transaction() as cursor:
            member = self.find_member_by_code(code)
            if member is None:
                logging.info(f"Check-in rejected: no member for code '{code}'.")
                return CheckInResult(CHECK_IN_NOT_FOUND, "Invalid code. Member not found.")

            status = effective_status(member, now)
            if status == MEMBER_EXPIRED:
                if needs_status_write_back(member, now):
                    self._update_member_row(cursor, member, {"status": MEMBER_EXPIRED})
                    member.status = MEMBER_EXPIRED
                    member.version += 1
                    logging.info(f"Member ID {member.id} status corrected to 'expired'.")
                attendance = self._insert_attendance(
                    cursor, member.id, now, ATTENDANCE_DENIED, False, settings
                )
                outcome = CHECK_IN_EXPIRED
                message = "Membership expired. Please renew your membership."
            elif status == MEMBER_INACTIVE:
                attendance = self._insert_attendance(
                    cursor, member.id, now, ATTENDANCE_DENIED, False, settings
                )
                outcome = CHECK_IN_INACTIVE
                message = "Membership inactive. Please contact the front desk."
            else:
                attendance = self._insert_attendance(
                    cursor, member.id, now, ATTENDANCE_ALLOWED, True, settings
                )
                outcome = CHECK_IN_ALLOWED
                message = f"Welcome {member.name} to {settings.gym_name}. Enjoy your workout."
        logging.info(f"Check-in for member ID {member.id}: {outcome}.")
        return CheckInResult(outcome, message, member, attendance)

    # ------------------------------------------------------------------
    # Attendance records
    # ------------------------------------------------------------------

    def get_all_attendances(self, limit: Optional[int] = None) -> List[AttendanceView]:
        sql = f"""
            SELECT {ATTENDANCE_VIEW_COLUMNS}
            FROM attendances a JOIN members m ON a.member_id = m.id
            ORDER BY a.created_at DESC, a.id DESC
        """
        params: List[Any] = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [_row_to_attendance_view(row) for row in self._fetch_all(sql, params)]

    def get_attendances_by_date_range(self, start: Any, end: Any) -> List[AttendanceView]:
        start_bound, _ = _day_bounds(start)
        _, end_bound = _day_bounds(end)
        rows = self._fetch_all(
            f"""
            SELECT {ATTENDANCE_VIEW_COLUMNS}
            FROM attendances a JOIN members m ON a.member_id = m.id
            WHERE a.date BETWEEN ? AND ?
            ORDER BY a.created_at DESC, a.id DESC
            """,
            (start_bound, end_bound),
        )
        return [_row_to_attendance_view(row) for row in rows]

    def get_attendances_by_member(
        self, member_id: str, limit: Optional[int] = None
    ) -> List[AttendanceView]:
        sql = f"""
            SELECT {ATTENDANCE_VIEW_COLUMNS}
            FROM attendances a JOIN members m ON a.member_id = m.id
            WHERE a.member_id = ?
            ORDER BY a.date DESC, a.id DESC
        """
        params: List[Any] = [member_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [_row_to_attendance_view(row) for row in self._fetch_all(sql, params)]

    def get_attendance_by_id(self, attendance_id: int) -> AttendanceView:
        row = self._fetch_one(
            f"""
            SELECT {ATTENDANCE_VIEW_COLUMNS}
            FROM attendances a JOIN members m ON a.member_id = m.id
            WHERE a.id = ?
            """,
            (attendance_id,),
        )
        if row is None:
            raise NotFoundError(f"Attendance record {attendance_id} not found.")
        return _row_to_attendance_view(row)

    def update_attendance(
        self,
        attendance_id: int,
        status: Optional[str] = None,
        attended: Optional[bool] = None,
        date: Any = None,
        time: Optional[str] = None,
    ) -> AttendanceView:
        """Manual correction of a recorded attempt."""
        cleaned = validate_attendance_fields(
            {"status": status, "attended": attended, "date": date, "time": time},
            time_format=self.get_settings().time_format,
        )
        with self.transaction() as cursor:
            self.get_attendance_by_id(attendance_id)
            if cleaned:
                values = dict(cleaned)
                if "attended" in values:
                    values["attended"] = 1 if values["attended"] else 0
                assignments = ", ".join(f"{column} = ?" for column in values)
                cursor.execute(
                    f"UPDATE attendances SET {assignments} WHERE id = ?",
                    (*values.values(), attendance_id),
                )
        logging.info(f"Attendance ID {attendance_id} updated.")
        return self.get_attendance_by_id(attendance_id)

    def delete_attendance(self, attendance_id: int) -> bool:
        with self.transaction() as cursor:
            self.get_attendance_by_id(attendance_id)
            cursor.execute("DELETE FROM attendances WHERE id = ?", (attendance_id,))
        logging.info(f"Attendance ID {attendance_id} deleted.")
        return True

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> GymSettings:
        rows = self._fetch_all("SELECT key, value FROM gym_settings")
        stored = {row["key"]: row["value"] for row in rows}
        values: Dict[str, Any] = {}
        for settings_field in dataclass_fields(GymSettings):
            if settings_field.name not in stored:
                continue
            raw = stored[settings_field.name]
            if settings_field.name == "expiry_warning_days":
                try:
                    values[settings_field.name] = int(raw)
                except ValueError:
                    raise DataIntegrityError(
                        f"Stored setting expiry_warning_days '{raw}' is not a number."
                    )
            else:
                values[settings_field.name] = raw
        return GymSettings(**values)

    def update_settings(self, **changes: Any) -> GymSettings:
        cleaned = validate_settings_fields(changes)
        with self.transaction() as cursor:
            cursor.executemany(
                """
                INSERT INTO gym_settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                [(key, str(value)) for key, value in cleaned.items()],
            )
        logging.info(f"Settings updated: {', '.join(cleaned) or 'nothing'}.")
        return self.get_settings()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_messages(self, entries: List[Dict[str, Any]]) -> List[Message]:
        """Stores several messages atomically. Each entry has type, recipient, content."""
        cleaned_entries = [validate_message_fields(entry) for entry in entries]
        date_str = self._now_str()
        created: List[Message] = []
        with self.transaction() as cursor:
            for entry in cleaned_entries:
                cursor.execute(
                    """
                    INSERT INTO messages (type, recipient, content, status, date)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (entry["type"], entry["recipient"], entry["content"], entry["status"], date_str),
                )
                created.append(Message(id=cursor.lastrowid, date=date_str, **entry))
        logging.info(f"Stored {len(created)} message(s).")
        return created

    def add_message(
        self, type: str, recipient: str, content: str, status: str = "pending"
    ) -> Message:
        return self.add_messages(
            [{"type": type, "recipient": recipient, "content": content, "status": status}]
        )[0]

    def get_all_messages(
        self, status: Optional[str] = None, message_type: Optional[str] = None
    ) -> List[Message]:
        sql = "SELECT id, type, recipient, content, status, date FROM messages WHERE 1=1"
        params: List[Any] = []
        if status:
            if status not in MESSAGE_STATUSES:
                raise ValidationError(f"Invalid message status '{status}'.")
            sql += " AND status = ?"
            params.append(status)
        if message_type:
            if message_type not in MESSAGE_TYPES:
                raise ValidationError(f"Invalid message type '{message_type}'.")
            sql += " AND type = ?"
            params.append(message_type)
        sql += " ORDER BY date DESC, id DESC"
        return [_row_to_message(row) for row in self._fetch_all(sql, params)]

    def get_message_by_id(self, message_id: int) -> Message:
        row = self._fetch_one(
            "SELECT id, type, recipient, content, status, date FROM messages WHERE id = ?",
            (message_id,),
        )
        if row is None:
            raise NotFoundError(f"Message {message_id} not found.")
        return _row_to_message(row)

    def mark_message_sent(self, message_id: int) -> Message:
        with self.transaction() as cursor:
            self.get_message_by_id(message_id)
            cursor.execute(
                "UPDATE messages SET status = ? WHERE id = ?", (MESSAGE_SENT, message_id)
            )
        return self.get_message_by_id(message_id)

    def delete_message(self, message_id: int) -> bool:
        with self.transaction() as cursor:
            self.get_message_by_id(message_id)
            cursor.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        logging.info(f"Message ID {message_id} deleted.")
        return True

    def _require_messages(
        self, cursor: sqlite3.Cursor, message_ids: Sequence[int]
    ) -> List[int]:
        if not message_ids or any(
            isinstance(message_id, bool) or not isinstance(message_id, int)
            for message_id in message_ids
        ):
            raise ValidationError("Message ids must be a non-empty list of integers.")
        unique_ids = list(dict.fromkeys(message_ids))
        placeholders = ", ".join("?" for _ in unique_ids)
        cursor.execute(f"SELECT id FROM messages WHERE id IN ({placeholders})", unique_ids)
        found = {row["id"] for row in cursor.fetchall()}
        missing = [message_id for message_id in unique_ids if message_id not in found]
        if missing:
            raise NotFoundError(
                f"Message(s) not found: {', '.join(str(message_id) for message_id in missing)}."
            )
        return unique_ids

    def mark_messages_sent(self, message_ids: Sequence[int]) -> int:
        """Marks every listed message as sent, or none of them if any id is unknown."""
        with self.transaction() as cursor:
            unique_ids = self._require_messages(cursor, message_ids)
            placeholders = ", ".join("?" for _ in unique_ids)
            cursor.execute(
                f"UPDATE messages SET status = ? WHERE id IN ({placeholders})",
                (MESSAGE_SENT, *unique_ids),
            )
        logging.info(f"{len(unique_ids)} message(s) marked as sent.")
        return len(unique_ids)

    def delete_messages(self, message_ids: Sequence[int]) -> int:
        with self.transaction() as cursor:
            unique_ids = self._require_messages(cursor, message_ids)
            placeholders = ", ".join("?" for _ in unique_ids)
            cursor.execute(f"DELETE FROM messages WHERE id IN ({placeholders})", unique_ids)
        logging.info(f"{len(unique_ids)} message(s) deleted.")
        return len(unique_ids)
