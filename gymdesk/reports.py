import logging
import sqlite3
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import pandas as pd

from .exceptions import TransactionFailure
from .models import MESSAGE_PENDING, MESSAGE_SENT, MESSAGE_TYPES

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _growth(current: float, previous: float) -> float:
    """Percentage change, rounded to one decimal. 0 when there is no baseline."""
    if not previous:
        return 0.0
    return round((current - previous) / previous * 100, 1)


def _month_starts(today: date, months: int) -> List[date]:
    starts = []
    year, month = today.year, today.month
    for _ in range(months):
        starts.append(date(year, month, 1))
        month -= 1
        if month == 0:
            month = 12
            year -= 1
    return list(reversed(starts))


def _day_start(day: date) -> str:
    return f"{day.isoformat()} 00:00:00"


class ReportGenerator:
    """
    Read-only aggregates for the dashboard and the reports page.

    Queries run outside any write transaction, so a report may be a moment
    behind a concurrent check-in or renewal.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.conn = connection
        self.clock = clock or datetime.now

    def _read(self, query: str, params: Sequence[Any] = ()) -> pd.DataFrame:
        try:
            return pd.read_sql_query(query, self.conn, params=tuple(params))
        except (sqlite3.Error, pd.errors.DatabaseError) as e:
            logging.error(f"Error running report query: {e}", exc_info=True)
            raise TransactionFailure("Report data is unavailable. Please try again.") from e

    def _scalar(self, query: str, params: Sequence[Any] = ()) -> float:
        df = self._read(query, params)
        if df.empty:
            return 0
        value = df.iloc[0, 0]
        return 0 if pd.isna(value) else value

    def _paid_revenue_between(self, start: str, end: str) -> float:
        return float(
            self._scalar(
                "SELECT SUM(amount) FROM payments WHERE status = 'paid' AND date >= ? AND date < ?",
                (start, end),
            )
        )

    def _allowed_check_ins_between(self, start: str, end: str) -> int:
        return int(
            self._scalar(
                "SELECT COUNT(*) FROM attendances WHERE status = 'allowed' AND date >= ? AND date < ?",
                (start, end),
            )
        )

    def _allowed_check_ins_since(self, start: str) -> int:
        return int(
            self._scalar(
                "SELECT COUNT(*) FROM attendances WHERE status = 'allowed' AND date >= ?",
                (start,),
            )
        )

    def _active_members(self, today: date) -> int:
        # Counted by date so a stale cached status does not inflate the figure
        return int(
            self._scalar(
                "SELECT COUNT(*) FROM members WHERE status = 'active' AND expiry_date >= ?",
                (today.isoformat(),),
            )
        )

    def dashboard_stats(self) -> Dict[str, Any]:
        now = self.clock()
        today = now.date()
        tomorrow = today + timedelta(days=1)
        yesterday = today - timedelta(days=1)
        month_start = today.replace(day=1)
        last_month_start = (month_start - timedelta(days=1)).replace(day=1)

        monthly_revenue = self._paid_revenue_between(_day_start(month_start), _day_start(tomorrow))
        last_month_revenue = self._paid_revenue_between(
            _day_start(last_month_start), _day_start(month_start)
        )

        total_members = int(self._scalar("SELECT COUNT(*) FROM members"))
        members_before_month = int(
            self._scalar(
                "SELECT COUNT(*) FROM members WHERE join_date < ?", (month_start.isoformat(),)
            )
        )
        expiring_soon = int(
            self._scalar(
                """
                SELECT COUNT(*) FROM members
                WHERE status = 'active' AND expiry_date BETWEEN ? AND ?
                """,
                (today.isoformat(), (today + timedelta(days=7)).isoformat()),
            )
        )
        today_attendance = self._allowed_check_ins_between(_day_start(today), _day_start(tomorrow))
        yesterday_attendance = self._allowed_check_ins_between(
            _day_start(yesterday), _day_start(today)
        )

        return {
            "monthly_revenue": monthly_revenue,
            "active_members": self._active_members(today),
            "total_members": total_members,
            "expiring_soon": expiring_soon,
            "today_attendance": today_attendance,
            "revenue_growth": _growth(monthly_revenue, last_month_revenue),
            "member_growth": _growth(total_members, members_before_month),
            "attendance_growth": _growth(today_attendance, yesterday_attendance),
        }

    def monthly_revenue(self, months: int = 6) -> pd.DataFrame:
        """Paid revenue and new members per calendar month, oldest month first."""
        today = self.clock().date()
        starts = _month_starts(today, months)
        since = starts[0]

        payments = self._read(
            """
            SELECT substr(date, 1, 7) AS month, amount
            FROM payments WHERE status = 'paid' AND date >= ?
            """,
            (_day_start(since),),
        )
        joined = self._read(
            "SELECT substr(join_date, 1, 7) AS month FROM members WHERE join_date >= ?",
            (since.isoformat(),),
        )
        revenue_by_month = payments.groupby("month")["amount"].sum()
        members_by_month = joined.groupby("month").size()

        keys = [start.strftime("%Y-%m") for start in starts]
        return pd.DataFrame(
            {
                "month": [start.strftime("%b %Y") for start in starts],
                "revenue": [float(revenue_by_month.get(key, 0.0)) for key in keys],
                "members": [int(members_by_month.get(key, 0)) for key in keys],
            }
        )

    def membership_distribution(self) -> pd.DataFrame:
        df = self._read(
            """
            SELECT ms.name, ms.price, COUNT(m.id) AS value
            FROM memberships ms
            LEFT JOIN members m ON m.membership_id = ms.id AND m.status = 'active'
            GROUP BY ms.id
            ORDER BY ms.price ASC, ms.name ASC
            """
        )
        df["revenue"] = df["value"] * df["price"]
        return df[["name", "value", "revenue"]]

    def weekly_attendance(self) -> pd.DataFrame:
        """Every check-in attempt per day over the last seven days, oldest first."""
        today = self.clock().date()
        days = [today - timedelta(days=offset) for offset in range(6, -1, -1)]
        attempts = self._read(
            "SELECT substr(date, 1, 10) AS day FROM attendances WHERE date >= ?",
            (_day_start(days[0]),),
        )
        per_day = attempts.groupby("day").size()
        return pd.DataFrame(
            {
                "day": [day.strftime("%a") for day in days],
                "date": [day.isoformat() for day in days],
                "count": [int(per_day.get(day.isoformat(), 0)) for day in days],
            }
        )

    def weekly_attendance_buckets(self, weeks: int = 4) -> pd.DataFrame:
        """Allowed check-ins per seven-day bucket; the last bucket ends today."""
        today = self.clock().date()
        labels, counts = [], []
        for index in range(weeks):
            start = today - timedelta(days=7 * (weeks - index) - 1)
            end = start + timedelta(days=7)
            labels.append(f"Week {index + 1}")
            counts.append(self._allowed_check_ins_between(_day_start(start), _day_start(end)))
        return pd.DataFrame({"week": labels, "count": counts})

    def attendance_stats(self) -> Dict[str, int]:
        now = self.clock()
        return {
            "today": self._allowed_check_ins_since(_day_start(now.date())),
            "week": self._allowed_check_ins_since(
                (now - timedelta(days=7)).strftime(TIMESTAMP_FORMAT)
            ),
            "month": self._allowed_check_ins_since(
                (now - timedelta(days=30)).strftime(TIMESTAMP_FORMAT)
            ),
        }

    def reports_stats(self) -> Dict[str, Any]:
        now = self.clock()
        today = now.date()
        tomorrow = _day_start(today + timedelta(days=1))
        last_30 = _day_start(today - timedelta(days=29))
        previous_30 = _day_start(today - timedelta(days=59))

        total_revenue = float(
            self._scalar("SELECT SUM(amount) FROM payments WHERE status = 'paid'")
        )
        recent_revenue = self._paid_revenue_between(last_30, tomorrow)
        previous_revenue = self._paid_revenue_between(previous_30, last_30)
        recent_check_ins = self._allowed_check_ins_between(last_30, tomorrow)

        return {
            "total_revenue": total_revenue,
            "active_members": self._active_members(today),
            "average_daily_attendance": round(recent_check_ins / 30, 1),
            "revenue_growth": _growth(recent_revenue, previous_revenue),
        }

    def recent_activity(self, limit: int = 10) -> List[Dict[str, Any]]:
        """New members, paid payments and allowed check-ins of the last 30 days, newest first."""
        since = (self.clock() - timedelta(days=30)).strftime(TIMESTAMP_FORMAT)
        frames = [
            self._read(
                """
                SELECT 'member' AS type, 'New member: ' || name AS description,
                       created_at AS date
                FROM members WHERE created_at >= ?
                """,
                (since,),
            ),
            self._read(
                """
                SELECT 'payment' AS type,
                       'Payment ' || p.invoice_number || ' from ' || m.name AS description,
                       p.date AS date
                FROM payments p JOIN members m ON p.member_id = m.id
                WHERE p.status = 'paid' AND p.date >= ?
                """,
                (since,),
            ),
            self._read(
                """
                SELECT 'attendance' AS type, 'Check-in: ' || m.name AS description,
                       a.date AS date
                FROM attendances a JOIN members m ON a.member_id = m.id
                WHERE a.status = 'allowed' AND a.date >= ?
                """,
                (since,),
            ),
        ]
        frames = [frame for frame in frames if not frame.empty]
        if not frames:
            return []
        activity = pd.concat(frames, ignore_index=True)
        activity = activity.sort_values("date", ascending=False, kind="stable").head(limit)
        return activity.to_dict(orient="records")

    def message_stats(self) -> Dict[str, Any]:
        """Queued message counts: total, by status and by type (every type listed)."""
        df = self._read("SELECT type, status FROM messages")
        by_type = df["type"].value_counts()
        by_status = df["status"].value_counts()
        return {
            "total": int(len(df)),
            "sent": int(by_status.get(MESSAGE_SENT, 0)),
            "pending": int(by_status.get(MESSAGE_PENDING, 0)),
            "by_type": {
                message_type: int(by_type.get(message_type, 0)) for message_type in MESSAGE_TYPES
            },
        }
