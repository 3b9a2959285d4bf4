"""
Project: School Canteen Wallet
Date: October 2026

Description:
Parent wallet ledger. WalletLedger is the only code that moves
Parent.balance_cents, and every movement appends a ParentTransaction.

Balance writes are a compare-and-swap on (user_id, version_id,
balance_cents) in the database. Losing the swap means another writer got
there first: the parent is re-read, preconditions are checked again
against the fresh balance, and after LEDGER_MAX_RETRIES lost swaps the
caller gets Conflict. Any failure rolls the session back, so a failed
operation leaves the balance and the ledger exactly as they were.
"""

import enum
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from app_logger import get_logger
from clock import SystemClock
from errors import (
    AmountMismatch,
    CanteenError,
    Conflict,
    InsufficientFunds,
    InvalidState,
    NotFound,
    TransientFailure,
    ValidationError,
)
from models import Order, OrderStatus, Parent, ParentTransaction, Topup, TopupStatus, TransactionKind, db
from money import ZERO, format_cents, quantize, to_money

logger = get_logger("ledger")

REASON_SINGLE_ORDER = "single_order"
REASON_WEEKLY_ORDER = "weekly_order"
REASON_WEEKLY_DEFERRED = "weekly_order_deferred"
REASON_TOPUP = "topup"

# A top-up is credited while approved; crediting moves it to completed.
CREDITABLE_TOPUP_STATES = frozenset({TopupStatus.APPROVED.value})


class TransactionClass(str, enum.Enum):
    TOPUP = "topup"
    DEDUCTION = "deduction"
    PENDING_DEFERRED = "pending"
    REALIZED_DEFERRED = "realized"
    VOID_DEFERRED = "void"


TRANSACTION_FILTERS = ("all", "pending", "topups", "deductions")


def compute_order_total(items) -> Decimal:
    total = sum((Decimal(item.price) * item.quantity for item in items), ZERO)
    return quantize(total)


def _field(txn, name):
    if isinstance(txn, dict):
        return txn.get(name)
    return getattr(txn, name)


def _amount(txn) -> Decimal:
    if isinstance(txn, dict):
        return to_money(txn.get("amount") or 0)
    return txn.amount


def realized_origins(transactions) -> set:
    return {_field(t, "origin_id") for t in transactions if _field(t, "origin_id") is not None}


def classify(txn, realized=frozenset(), cancelled_orders=frozenset()) -> TransactionClass:
    """Topup, deduction or deferred charge, decided by the entry's kind.

    A deferred charge stays pending until a realization points at it
    (realized); if one of its orders was cancelled first it is void.
    """
    kind = _field(txn, "kind")
    if kind == TransactionKind.DEFERRED_CHARGE:
        if _field(txn, "id") in realized:
            return TransactionClass.REALIZED_DEFERRED
        if cancelled_orders and cancelled_orders.intersection(_field(txn, "order_ids") or ()):
            return TransactionClass.VOID_DEFERRED
        return TransactionClass.PENDING_DEFERRED
    amount = _amount(txn)
    if amount > 0:
        return TransactionClass.TOPUP
    if amount < 0:
        return TransactionClass.DEDUCTION
    raise ValidationError(f"transaction {_field(txn, 'id')} has a zero amount but is not a deferred charge")


_FILTER_CLASSES = {
    "pending": TransactionClass.PENDING_DEFERRED,
    "topups": TransactionClass.TOPUP,
    "deductions": TransactionClass.DEDUCTION,
}


def filter_transactions(transactions, which="all", cancelled_orders=frozenset()):
    if which not in TRANSACTION_FILTERS:
        raise ValidationError(f"filter must be one of: {', '.join(TRANSACTION_FILTERS)}", field="filter")
    transactions = list(transactions)
    if which == "all":
        return transactions
    realized = realized_origins(transactions)
    wanted = _FILTER_CLASSES[which]
    return [t for t in transactions if classify(t, realized, cancelled_orders) == wanted]


def summarize(transactions, cancelled_orders=frozenset()) -> dict:
    transactions = list(transactions)
    realized = realized_origins(transactions)
    credited = debited = outstanding = ZERO
    pending = 0
    for t in transactions:
        kind = classify(t, realized, cancelled_orders)
        if kind == TransactionClass.TOPUP:
            credited += _amount(t)
        elif kind == TransactionClass.DEDUCTION:
            debited += -_amount(t)
        elif kind == TransactionClass.PENDING_DEFERRED:
            pending += 1
            deferred = _field(t, "deferred_amount")
            outstanding += to_money(deferred) if deferred is not None else ZERO
    return {
        "total_credited": credited,
        "total_debited": debited,
        "outstanding_deferred": outstanding,
        "pending_count": pending,
        "count": len(transactions),
    }


def _creation_key(txn):
    return (_field(txn, "created_at") is None, _field(txn, "created_at") or 0, _field(txn, "id") or 0)


def reconcile(parent, transactions) -> Decimal:
    """Sum of the ledger in creation order. A mismatch is logged, never corrected."""
    ordered = sorted(transactions, key=_creation_key)
    total = sum((_amount(t) for t in ordered), ZERO)
    if total != parent.balance:
        logger.warning(
            "ledger mismatch for parent %s: balance=%s ledger=%s",
            parent.user_id,
            parent.balance,
            total,
        )
    return quantize(total)


class WalletLedger:
    def __init__(self, session=None, clock=None, bus=None, max_retries=3):
        self.session = session or db.session
        self.clock = clock or SystemClock()
        self.bus = bus
        self.max_retries = max(1, int(max_retries))

    # ---------- reads ----------
    def history(self, parent):
        stmt = (
            select(ParentTransaction)
            .where(ParentTransaction.parent_id == parent.user_id)
            .order_by(ParentTransaction.created_at, ParentTransaction.id)
        )
        return list(self.session.scalars(stmt))

    def cancelled_orders(self, transactions) -> frozenset:
        """Ids of cancelled orders referenced by the deferred charges in transactions."""
        ids = {
            order_id
            for t in transactions
            if _field(t, "kind") == TransactionKind.DEFERRED_CHARGE
            for order_id in (_field(t, "order_ids") or ())
        }
        if not ids:
            return frozenset()
        stmt = select(Order.id).where(Order.id.in_(ids), Order.status == OrderStatus.CANCELLED.value)
        return frozenset(self.session.scalars(stmt))

    def statement(self, parent, which="all"):
        """(entry, classification) pairs of the parent's history passing which, oldest first."""
        history = self.history(parent)
        cancelled = self.cancelled_orders(history)
        realized = realized_origins(history)
        return [(t, classify(t, realized, cancelled)) for t in filter_transactions(history, which, cancelled)]

    def pending_deferred(self, parent):
        history = self.history(parent)
        return filter_transactions(history, "pending", self.cancelled_orders(history))

    def summary(self, parent) -> dict:
        history = self.history(parent)
        return summarize(history, self.cancelled_orders(history))

    def reconcile(self, parent) -> Decimal:
        return reconcile(parent, self.history(parent))

    # ---------- mutations ----------
    def charge_order(self, parent, order, reason=REASON_SINGLE_ORDER):
        def mutate(fresh):
            total = self._checked_total(order)
            if total <= 0:
                raise ValidationError("order total must be greater than zero", order_id=order.id)
            if fresh.balance_cents < total:
                raise InsufficientFunds(
                    "insufficient balance",
                    balance=format_cents(fresh.balance_cents),
                    required=format_cents(total),
                )
            return self._append(
                fresh,
                -total,
                kind=TransactionKind.CHARGE.value,
                reason=reason,
                order_ids=[order.id],
            )

        return self._mutate(parent.user_id, "charge_order", mutate, "wallet.debited")

    def defer_charge(self, parent, order):
        def mutate(fresh):
            total = self._checked_total(order)
            return self._append(
                fresh,
                0,
                kind=TransactionKind.DEFERRED_CHARGE.value,
                reason=REASON_WEEKLY_DEFERRED,
                order_ids=[order.id],
                deferred_amount_cents=total,
            )

        return self._mutate(parent.user_id, "defer_charge", mutate, "wallet.deferred")

    def realize_deferred(self, parent, deferred):
        def mutate(fresh):
            origin = self.session.get(ParentTransaction, deferred.id)
            if origin is None or origin.parent_id != fresh.user_id:
                raise NotFound(f"deferred charge {deferred.id} not found for parent {fresh.user_id}")
            if origin.kind != TransactionKind.DEFERRED_CHARGE:
                raise InvalidState(f"transaction {origin.id} is not a deferred charge")
            if self._realization_of(origin.id) is not None:
                raise InvalidState(f"deferred charge {origin.id} was already realized")
            cancelled = sorted(self.cancelled_orders([origin]))
            if cancelled:
                raise InvalidState(
                    f"deferred charge {origin.id} covers a cancelled order",
                    transaction_id=origin.id,
                    order_ids=cancelled,
                )
            total = origin.deferred_amount_cents or 0
            if fresh.balance_cents < total:
                raise InsufficientFunds(
                    "insufficient balance",
                    balance=format_cents(fresh.balance_cents),
                    required=format_cents(total),
                )
            return self._append(
                fresh,
                -total,
                kind=TransactionKind.REALIZED_CHARGE.value,
                reason=REASON_WEEKLY_ORDER,
                order_ids=list(origin.order_ids or []),
                origin_id=origin.id,
            )

        return self._mutate(parent.user_id, "realize_deferred", mutate, "wallet.debited")

    def apply_topup(self, parent, topup):
        def mutate(fresh):
            current = self.session.get(Topup, topup.id, populate_existing=True)
            if current is None or current.parent_id != fresh.user_id:
                raise NotFound(f"top-up {topup.id} not found for parent {fresh.user_id}")
            if current.status == TopupStatus.COMPLETED or self._topup_entry(current.id) is not None:
                raise InvalidState(f"top-up {current.id} was already applied")
            if current.status not in CREDITABLE_TOPUP_STATES:
                raise InvalidState(f"top-up {current.id} is {current.status} and cannot be credited")
            entry = self._append(
                fresh,
                current.amount_cents,
                kind=TransactionKind.TOPUP.value,
                reason=REASON_TOPUP,
                order_ids=[],
                topup_id=current.id,
            )
            if entry is not None:
                current.status = TopupStatus.COMPLETED.value
                current.processed_at = current.processed_at or self.clock.now()
            return entry

        return self._mutate(parent.user_id, "apply_topup", mutate, "wallet.credited")

    # ---------- internals ----------
    def _checked_total(self, order) -> int:
        expected = compute_order_total(order.items)
        if order.total_amount != expected:
            raise AmountMismatch(
                "order total does not match its items",
                order_id=order.id,
                total_amount=format_cents(order.total_cents),
                expected=str(expected),
            )
        return order.total_cents

    def _realization_of(self, origin_id):
        stmt = select(ParentTransaction).where(ParentTransaction.origin_id == origin_id)
        return self.session.scalars(stmt).first()

    def _topup_entry(self, topup_id):
        stmt = select(ParentTransaction).where(ParentTransaction.topup_id == topup_id)
        return self.session.scalars(stmt).first()

    def _load_parent(self, parent_id):
        parent = self.session.get(Parent, parent_id, populate_existing=True)
        if parent is None:
            raise NotFound(f"parent {parent_id} not found")
        return parent

    def _swap_balance(self, parent, before_cents, after_cents) -> bool:
        result = self.session.execute(
            update(Parent)
            .where(
                Parent.user_id == parent.user_id,
                Parent.version_id == parent.version_id,
                Parent.balance_cents == before_cents,
            )
            .values(balance_cents=after_cents, version_id=Parent.version_id + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _append(self, parent, delta_cents, **fields):
        parent_id = parent.user_id
        before = parent.balance_cents
        after = before + delta_cents
        if after < 0:
            raise InsufficientFunds("insufficient balance", balance=format_cents(before))
        if delta_cents and not self._swap_balance(parent, before, after):
            return None
        self.session.expire(parent)
        entry = ParentTransaction(
            parent_id=parent_id,
            amount_cents=delta_cents,
            balance_before_cents=before,
            balance_after_cents=after,
            created_at=self.clock.now(),
            **fields,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def _mutate(self, parent_id, action, mutate, event_type):
        for attempt in range(1, self.max_retries + 1):
            try:
                parent = self._load_parent(parent_id)
                entry = mutate(parent)
                if entry is not None:
                    self.session.commit()
            except CanteenError:
                self.session.rollback()
                raise
            except IntegrityError as exc:
                self.session.rollback()
                raise InvalidState(f"{action}: ledger entry already recorded") from exc
            except (OperationalError, PoolTimeoutError) as exc:
                self.session.rollback()
                logger.error("%s for parent %s failed: %s", action, parent_id, exc)
                raise TransientFailure("the database is unavailable, please try again") from exc
            except Exception:
                self.session.rollback()
                raise

            if entry is not None:
                logger.info(
                    "%s parent=%s amount=%s balance=%s->%s entry=%s",
                    action,
                    parent_id,
                    entry.amount,
                    entry.balance_before,
                    entry.balance_after,
                    entry.id,
                )
                self._publish(event_type, entry)
                return entry

            logger.warning(
                "%s for parent %s lost a balance race (attempt %d/%d)",
                action,
                parent_id,
                attempt,
                self.max_retries,
            )

        self.session.rollback()
        raise Conflict(f"{action}: balance changed concurrently, please retry", parent_id=parent_id)

    def _publish(self, event_type, entry):
        if self.bus is None:
            return
        self.bus.publish(
            event_type,
            {
                "parent_id": entry.parent_id,
                "transaction": entry.to_dict(),
                "balance": format_cents(entry.balance_after_cents),
            },
        )
