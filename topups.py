"""
Project: School Canteen Wallet
Date: October 2026

Description:
Top-up requests and their admin review. Approving a request hands it to
WalletLedger.apply_topup, which credits the wallet and completes it.
"""

from sqlalchemy import select

from app_logger import get_logger
from errors import InvalidState, ValidationError
from models import Parent, PaymentMethod, Topup, TopupStatus, db
from money import ZERO, to_cents, to_money

logger = get_logger("topups")

TOPUP_TRANSITIONS = {
    TopupStatus.PENDING.value: {TopupStatus.APPROVED.value, TopupStatus.DECLINED.value},
    TopupStatus.APPROVED.value: {TopupStatus.COMPLETED.value},
    TopupStatus.DECLINED.value: set(),
    TopupStatus.COMPLETED.value: set(),
}


def _move(topup, target):
    if target not in TOPUP_TRANSITIONS[topup.status]:
        raise InvalidState(f"top-up {topup.id} is {topup.status} and cannot become {target}",
                           topup_id=topup.id, current=topup.status, target=target)
    topup.status = target


def request_topup(parent, amount, now, max_amount="100000.00", payment_method=PaymentMethod.CASH.value,
                  student_id=None, transaction_reference=None, notes=None):
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("top-up amount must be greater than zero", field="amount")
    if amount > to_money(max_amount):
        raise ValidationError(f"top-up amount cannot exceed {to_money(max_amount)}", field="amount")
    topup = Topup(
        parent_id=parent.user_id,
        student_id=student_id,
        amount_cents=to_cents(amount),
        status=TopupStatus.PENDING.value,
        payment_method=payment_method,
        transaction_reference=transaction_reference,
        notes=notes,
        request_date=now,
        created_at=now,
    )
    db.session.add(topup)
    db.session.commit()
    logger.info("top-up %s requested by parent %s amount=%s", topup.id, parent.user_id, amount)
    return topup


def approve_topup(ledger, topup, admin_id, admin_notes=None):
    """pending -> approved, then credit the wallet (approved -> completed)."""
    if topup.status == TopupStatus.PENDING.value:
        _move(topup, TopupStatus.APPROVED.value)
        topup.processed_by = admin_id
        topup.processed_at = ledger.clock.now()
        if admin_notes:
            topup.admin_notes = admin_notes
        db.session.commit()
        logger.info("top-up %s approved by %s", topup.id, admin_id)
    parent = db.session.get(Parent, topup.parent_id)
    return ledger.apply_topup(parent, topup)


def decline_topup(topup, admin_id, now, admin_notes=None):
    _move(topup, TopupStatus.DECLINED.value)
    topup.processed_by = admin_id
    topup.processed_at = now
    topup.admin_notes = admin_notes
    db.session.commit()
    logger.info("top-up %s declined by %s", topup.id, admin_id)
    return topup


def topup_statistics(topups, today=None) -> dict:
    counts = {s.value: 0 for s in TopupStatus}
    amounts = {s.value: ZERO for s in TopupStatus}
    pending_today = 0
    for t in topups:
        counts[t.status] += 1
        amounts[t.status] += t.amount
        if today is not None and t.status == TopupStatus.PENDING.value and t.request_date.date() == today:
            pending_today += 1
    credited = amounts[TopupStatus.APPROVED.value] + amounts[TopupStatus.COMPLETED.value]
    return {
        "total_requests": sum(counts.values()),
        "counts": counts,
        "amounts": amounts,
        "approved_amount": credited,
        "pending_amount": amounts[TopupStatus.PENDING.value],
        "pending_today": pending_today,
    }


def low_balance_parents(threshold) -> list:
    threshold_cents = to_cents(threshold)
    stmt = select(Parent).where(Parent.balance_cents < threshold_cents).order_by(Parent.balance_cents)
    return list(db.session.scalars(stmt))
