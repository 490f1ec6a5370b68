import sqlite3

import pytest

import gymdesk.database_manager as database_manager_module
from gymdesk.app_api import AppAPI
from gymdesk.database_manager import DatabaseManager
from gymdesk.exceptions import (
    ConcurrentModificationError,
    NotFoundError,
    PlanNotFoundError,
    TransactionFailure,
)
from gymdesk.models import CHECK_IN_ALLOWED, CHECK_IN_EXPIRED

MEMBER_JOHN = {"name": "John Doe", "phone": "555-123-4567", "birth_date": "1990-05-15"}


@pytest.fixture
def john(db_manager, monthly_plan):
    return db_manager.add_member(membership_id=monthly_plan.id, **MEMBER_JOHN)


def test_early_renewal_extends_from_current_expiry(db_manager, clock, john):
    clock.advance(days=10)
    member, payment = db_manager.renew_membership(john.id)

    assert member.expiry_date == "2024-03-10"
    assert member.status == "active"
    assert member.version == 2
    assert payment.amount == 200.0
    assert payment.status == "paid"
    assert payment.membership_name == "Monthly"
    assert payment.date == "2024-01-20 09:30:00"


def test_late_renewal_starts_from_today(db_manager, clock, john):
    clock.advance(days=45)
    member, _ = db_manager.renew_membership(john.id)
    assert member.expiry_date == "2024-03-25"


def test_renewal_with_plan_change(db_manager, clock, john, quarterly_plan):
    clock.advance(days=5)
    member, payment = db_manager.renew_membership(john.id, quarterly_plan.id)

    assert member.membership_id == quarterly_plan.id
    assert member.expiry_date == "2024-05-09"
    assert payment.amount == 500.0
    assert payment.membership_name == "Quarterly"


def test_renewal_reactivates_inactive_member(db_manager, john):
    db_manager.update_member_status(john.id, "inactive")
    member, _ = db_manager.renew_membership(john.id)
    assert member.status == "active"


def test_renewals_get_distinct_invoice_numbers(db_manager, john):
    invoices = {db_manager.get_payments_for_member(john.id)[0].invoice_number}
    for _ in range(5):
        _, payment = db_manager.renew_membership(john.id)
        invoices.add(payment.invoice_number)
    assert len(invoices) == 6


def test_renew_unknown_member(db_manager):
    with pytest.raises(NotFoundError):
        db_manager.renew_membership("missing")


def test_renew_with_unknown_plan_changes_nothing(db_manager, john, count_rows):
    with pytest.raises(PlanNotFoundError):
        db_manager.renew_membership(john.id, 999)
    assert db_manager.get_member_by_id(john.id) == john
    assert count_rows("payments") == 1


def test_expired_check_in_then_renewal_scenario(db_manager, clock, john, count_rows):
    # day 35: past expiry, stored status still active
    clock.advance(days=35)
    assert db_manager.get_member_by_id(john.id).status == "active"
    result = db_manager.mark_attendance(john.qr_code)
    assert result.outcome == CHECK_IN_EXPIRED
    assert db_manager.get_member_by_id(john.id).status == "expired"
    assert count_rows("attendances") == 1
    first_invoice = db_manager.get_payments_for_member(john.id)[0].invoice_number

    # day 36: renewal on the same plan
    clock.advance(days=1)
    member, payment = db_manager.renew_membership(john.id)
    assert member.expiry_date == "2024-03-16"  # day 66
    assert member.status == "active"
    assert payment.amount == 200.0
    assert payment.invoice_number != first_invoice
    assert count_rows("payments") == 2

    assert db_manager.mark_attendance(john.qr_code).outcome == CHECK_IN_ALLOWED


def test_invoice_collision_is_retried(db_manager, john, monkeypatch):
    taken = db_manager.get_payments_for_member(john.id)[0].invoice_number
    candidates = iter([taken, taken, "INV-00000001-001"])
    monkeypatch.setattr(
        database_manager_module, "generate_invoice_number", lambda now, rng=None: next(candidates)
    )

    _, payment = db_manager.renew_membership(john.id)
    assert payment.invoice_number == "INV-00000001-001"


def test_invoice_exhaustion_rolls_back_renewal(db_manager, john, monkeypatch, count_rows):
    taken = db_manager.get_payments_for_member(john.id)[0].invoice_number
    monkeypatch.setattr(
        database_manager_module, "generate_invoice_number", lambda now, rng=None: taken
    )

    with pytest.raises(TransactionFailure, match="unique invoice number"):
        db_manager.renew_membership(john.id)

    assert db_manager.get_member_by_id(john.id) == john
    assert count_rows("payments") == 1


def test_failed_payment_insert_rolls_back_member_creation(
    db_manager, monthly_plan, monkeypatch, count_rows
):
    def broken_payment(self, *args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(DatabaseManager, "_insert_payment", broken_payment)

    with pytest.raises(TransactionFailure):
        db_manager.add_member(membership_id=monthly_plan.id, **MEMBER_JOHN)
    assert count_rows("members") == 0
    assert count_rows("payments") == 0


def test_app_api_retries_renewal_after_concurrent_update(db_manager, clock, john, monkeypatch):
    api = AppAPI(db_manager=db_manager)
    original = db_manager.renew_membership
    calls = []

    def flaky_renew(member_id, membership_id=None):
        calls.append(member_id)
        if len(calls) == 1:
            # another writer renews first; the retry must build on its result
            original(member_id, membership_id)
            raise ConcurrentModificationError("The member was changed by another operation.")
        return original(member_id, membership_id)

    monkeypatch.setattr(db_manager, "renew_membership", flaky_renew)

    result = api.renew_membership(john.id)

    assert result.success
    assert len(calls) == 2
    assert result.data["member"].expiry_date == "2024-04-09"
    assert len(db_manager.get_payments_for_member(john.id)) == 3


def test_app_api_gives_up_after_max_attempts(db_manager, john, monkeypatch):
    api = AppAPI(db_manager=db_manager, renewal_max_attempts=2)
    calls = []

    def always_conflicting(member_id, membership_id=None):
        calls.append(member_id)
        raise ConcurrentModificationError("The member was changed by another operation.")

    monkeypatch.setattr(db_manager, "renew_membership", always_conflicting)

    result = api.renew_membership(john.id)
    assert not result.success
    assert result.error_code == "transaction"
    assert len(calls) == 2
