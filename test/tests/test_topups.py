from datetime import date, timedelta
from decimal import Decimal

import pytest

from errors import InvalidState, ValidationError
from models import Parent, Topup, db
from topups import approve_topup, decline_topup, low_balance_parents, request_topup, topup_statistics


def test_request_topup_is_pending(make_parent, clock):
    parent = make_parent()
    topup = request_topup(parent, "250.00", clock.now(), payment_method="bank_transfer",
                          transaction_reference="BT-0042")
    assert topup.status == "pending"
    assert topup.amount == Decimal("250.00")
    assert topup.request_date == clock.now()
    assert db.session.get(Parent, parent.user_id).balance == Decimal("0.00")


@pytest.mark.parametrize("amount", ["0", "-5.00", "abc", "100000.01"])
def test_request_topup_rejects_bad_amounts(make_parent, clock, amount):
    parent = make_parent()
    with pytest.raises(ValidationError):
        request_topup(parent, amount, clock.now())
    assert db.session.query(Topup).filter_by(parent_id=parent.user_id).count() == 0


def test_request_topup_respects_configured_max(make_parent, clock):
    parent = make_parent()
    with pytest.raises(ValidationError):
        request_topup(parent, "600.00", clock.now(), max_amount="500.00")


def test_approve_credits_and_completes(ledger, make_parent, clock):
    parent = make_parent(balance="100.00")
    topup = request_topup(parent, "250.00", clock.now())

    entry = approve_topup(ledger, topup, admin_id=1, admin_notes="cash received")

    topup = db.session.get(Topup, topup.id)
    assert topup.status == "completed"
    assert topup.processed_by == 1
    assert topup.admin_notes == "cash received"
    assert entry.topup_id == topup.id
    assert db.session.get(Parent, parent.user_id).balance == Decimal("350.00")


def test_approve_twice_is_rejected(ledger, make_parent, clock):
    parent = make_parent()
    topup = request_topup(parent, "50.00", clock.now())
    approve_topup(ledger, topup, admin_id=1)

    with pytest.raises(InvalidState):
        approve_topup(ledger, db.session.get(Topup, topup.id), admin_id=1)
    assert db.session.get(Parent, parent.user_id).balance == Decimal("50.00")


def test_decline_leaves_balance(ledger, make_parent, clock):
    parent = make_parent(balance="20.00")
    topup = request_topup(parent, "50.00", clock.now())

    decline_topup(topup, admin_id=1, now=clock.now(), admin_notes="no receipt")

    assert topup.status == "declined"
    assert topup.processed_at == clock.now()
    assert db.session.get(Parent, parent.user_id).balance == Decimal("20.00")
    with pytest.raises(InvalidState):
        approve_topup(ledger, topup, admin_id=1)
    with pytest.raises(InvalidState):
        decline_topup(topup, admin_id=1, now=clock.now())


def test_topup_statistics(ledger, make_parent, clock):
    parent = make_parent()
    done = request_topup(parent, "100.00", clock.now())
    approve_topup(ledger, done, admin_id=1)
    declined = request_topup(parent, "40.00", clock.now())
    decline_topup(declined, admin_id=1, now=clock.now())
    request_topup(parent, "30.00", clock.now())
    request_topup(parent, "20.00", clock.now() - timedelta(days=2))

    topups = db.session.query(Topup).filter_by(parent_id=parent.user_id).all()
    stats = topup_statistics(topups, today=date(2025, 11, 3))

    assert stats["total_requests"] == 4
    assert stats["counts"] == {"pending": 2, "approved": 0, "declined": 1, "completed": 1}
    assert stats["approved_amount"] == Decimal("100.00")
    assert stats["pending_amount"] == Decimal("50.00")
    assert stats["pending_today"] == 1


def test_low_balance_parents(make_parent):
    low = make_parent(name="Low", balance="40.00")
    make_parent(name="Fine", balance="400.00")
    empty = make_parent(name="Empty")

    found = low_balance_parents("100.00")
    assert [p.user_id for p in found] == [empty.user_id, low.user_id]
