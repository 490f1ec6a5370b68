import pandas as pd
import pytest

from gymdesk.reports import ReportGenerator

MEMBER_JOHN = {"name": "John Doe", "phone": "555-123-4567", "birth_date": "1990-05-15"}
MEMBER_JANE = {"name": "Jane Smith", "phone": "555-987-6543", "birth_date": "1988-11-02"}
MEMBER_ALICE = {"name": "Alice Brown", "phone": "555-112-2334", "birth_date": "2000-01-10"}


@pytest.fixture
def reports(db_manager, clock):
    return ReportGenerator(db_manager.conn, clock=clock)


@pytest.fixture
def gym(db_manager, clock, monthly_plan, quarterly_plan):
    """John joins in January; in February John renews and Jane joins."""
    john = db_manager.add_member(membership_id=monthly_plan.id, **MEMBER_JOHN)
    db_manager.mark_attendance(john.qr_code)
    clock.advance(days=31)  # 2024-02-10
    db_manager.renew_membership(john.id)
    jane = db_manager.add_member(membership_id=quarterly_plan.id, **MEMBER_JANE)
    db_manager.mark_attendance(john.qr_code)
    db_manager.mark_attendance(jane.qr_code)
    return {"john": john, "jane": jane}


def test_empty_database_reports(reports):
    stats = reports.dashboard_stats()
    assert stats["monthly_revenue"] == 0.0
    assert stats["active_members"] == 0
    assert stats["revenue_growth"] == 0.0
    assert reports.recent_activity() == []
    assert reports.membership_distribution().empty
    assert reports.weekly_attendance()["count"].sum() == 0


def test_dashboard_stats(reports, gym):
    stats = reports.dashboard_stats()
    assert stats["monthly_revenue"] == 700.0
    assert stats["active_members"] == 2
    assert stats["total_members"] == 2
    assert stats["expiring_soon"] == 0
    assert stats["today_attendance"] == 2
    assert stats["revenue_growth"] == 250.0
    assert stats["member_growth"] == 100.0
    assert stats["attendance_growth"] == 0.0


def test_expiring_soon_counts_next_seven_days(db_manager, reports, clock, monthly_plan):
    db_manager.add_member(membership_id=monthly_plan.id, **MEMBER_JOHN)
    clock.advance(days=25)
    assert reports.dashboard_stats()["expiring_soon"] == 1


def test_active_members_ignores_stale_status(db_manager, reports, clock, monthly_plan):
    db_manager.add_member(membership_id=monthly_plan.id, **MEMBER_JOHN)
    clock.advance(days=31)
    assert reports.dashboard_stats()["active_members"] == 0


def test_monthly_revenue(reports, gym):
    df = reports.monthly_revenue()
    assert isinstance(df, pd.DataFrame)
    assert list(df["month"]) == ["Sep 2023", "Oct 2023", "Nov 2023", "Dec 2023", "Jan 2024", "Feb 2024"]
    assert list(df["revenue"]) == [0.0, 0.0, 0.0, 0.0, 200.0, 700.0]
    assert list(df["members"]) == [0, 0, 0, 0, 1, 1]


def test_membership_distribution(reports, gym):
    df = reports.membership_distribution()
    rows = df.to_dict(orient="records")
    assert rows == [
        {"name": "Monthly", "value": 1, "revenue": 200.0},
        {"name": "Quarterly", "value": 1, "revenue": 500.0},
    ]


def test_weekly_attendance(reports, gym):
    df = reports.weekly_attendance()
    assert len(df) == 7
    assert df.iloc[-1]["date"] == "2024-02-10"
    assert df.iloc[-1]["day"] == "Sat"
    assert df.iloc[-1]["count"] == 2
    assert df["count"].sum() == 2


def test_weekly_attendance_counts_denied_attempts(db_manager, reports, clock, monthly_plan):
    john = db_manager.add_member(membership_id=monthly_plan.id, **MEMBER_JOHN)
    clock.advance(days=31)
    db_manager.mark_attendance(john.qr_code)
    assert reports.weekly_attendance()["count"].sum() == 1
    assert reports.attendance_stats()["today"] == 0


def test_weekly_attendance_buckets(reports, gym):
    df = reports.weekly_attendance_buckets()
    assert list(df["week"]) == ["Week 1", "Week 2", "Week 3", "Week 4"]
    assert list(df["count"]) == [0, 0, 0, 2]
    assert list(reports.weekly_attendance_buckets(weeks=5)["count"]) == [1, 0, 0, 0, 2]


def test_attendance_stats(reports, gym):
    assert reports.attendance_stats() == {"today": 2, "week": 2, "month": 2}


def test_reports_stats(reports, gym):
    stats = reports.reports_stats()
    assert stats["total_revenue"] == 900.0
    assert stats["active_members"] == 2
    assert stats["average_daily_attendance"] == 0.1
    assert stats["revenue_growth"] == 250.0


def test_recent_activity_newest_first(db_manager, reports, gym, clock):
    clock.advance(hours=1)
    db_manager.mark_attendance(gym["jane"].qr_code)

    activity = reports.recent_activity()
    assert len(activity) == 6
    assert activity[0] == {
        "type": "attendance",
        "description": "Check-in: Jane Smith",
        "date": "2024-02-10 10:30:00",
    }
    dates = [item["date"] for item in activity]
    assert dates == sorted(dates, reverse=True)
    assert {item["type"] for item in activity} == {"member", "payment", "attendance"}
    assert all(item["date"] >= "2024-01-11 09:30:00" for item in activity)
    assert len(reports.recent_activity(limit=2)) == 2
