"""
Project: School Canteen Wallet
Date: October 2026

Description:
Order placement and the order status state machine.

A one-time order is charged to the parent's wallet as it is placed; a
weekly order must pick from the published menu of its delivery day and
is recorded as a deferred charge, realized later. Either way the order,
its stock decrements and its ledger entry commit together or not at all.
"""

import secrets
from datetime import date

from sqlalchemy import select

from app_logger import get_logger
from errors import (
    InsufficientStock,
    InvalidTransition,
    MenuItemUnavailable,
    NotFound,
    ValidationError,
)
from ledger import compute_order_total
from models import MenuItem, Order, OrderItem, OrderStatus, OrderType, Student, db
from money import to_cents
from weekly_menus import check_weekly_lines

logger = get_logger("orders")

ORDER_TRANSITIONS = {
    OrderStatus.PENDING.value: {OrderStatus.CONFIRMED.value, OrderStatus.CANCELLED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.PREPARING.value, OrderStatus.CANCELLED.value},
    OrderStatus.PREPARING.value: {OrderStatus.READY.value, OrderStatus.CANCELLED.value},
    OrderStatus.READY.value: {OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value},
    OrderStatus.COMPLETED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}


def can_transition(current, target) -> bool:
    return target in ORDER_TRANSITIONS.get(current, set())


def transition(order, target, now):
    """Move order to target status, stamping completed_at/cancelled_at."""
    try:
        target = OrderStatus(target).value
    except ValueError:
        raise ValidationError(f"unknown order status: {target}", field="status")
    if not can_transition(order.status, target):
        raise InvalidTransition(
            f"order {order.id} cannot move from {order.status} to {target}",
            order_id=order.id,
            current=order.status,
            target=target,
        )
    order.status = target
    if target == OrderStatus.COMPLETED.value:
        order.completed_at = now
    elif target == OrderStatus.CANCELLED.value:
        order.cancelled_at = now
    return order


def order_number(now) -> str:
    # millisecond timestamp plus a short random suffix; two orders can share a millisecond
    return "ORD-" + now.strftime("%Y%m%d%H%M%S") + f"{now.microsecond // 1000:03d}-{secrets.token_hex(2).upper()}"


def parse_date(value, field):
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", field=field)


def _parse_quantity(value):
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise ValidationError("quantity must be a whole number", field="quantity")
    if isinstance(value, float) and value != quantity:
        raise ValidationError("quantity must be a whole number", field="quantity")
    if quantity < 1:
        raise ValidationError("quantity must be at least 1", field="quantity")
    return quantity


def build_order(parent, student, lines, delivery_date, now, order_type=OrderType.ONE_TIME.value,
                delivery_time=None, special_instructions=None):
    """Snapshot menu lines into a new pending Order, taking stock as it goes.

    lines: [{"menu_item_id": ..., "quantity": ...}] in the current schema.
    """
    if student is None or student.parent_id != parent.user_id:
        raise ValidationError("student is not linked to this parent", field="student_id")
    if not lines:
        raise ValidationError("an order needs at least one item", field="items")

    order = Order(
        order_number=order_number(now),
        parent_id=parent.user_id,
        student_id=student.id,
        order_type=order_type,
        status=OrderStatus.PENDING.value,
        delivery_date=parse_date(delivery_date, "delivery_date"),
        delivery_time=delivery_time,
        special_instructions=special_instructions,
        created_at=now,
    )
    for line in lines:
        menu_item = db.session.get(MenuItem, line["menu_item_id"])
        if menu_item is None:
            raise NotFound(f"menu item {line['menu_item_id']} not found")
        if not menu_item.available:
            raise MenuItemUnavailable(f"{menu_item.name} is not available", menu_item_id=menu_item.id)
        quantity = _parse_quantity(line.get("quantity", 1))
        if menu_item.stock_quantity is not None:
            if menu_item.stock_quantity < quantity:
                raise InsufficientStock(
                    f"only {menu_item.stock_quantity} {menu_item.name} left",
                    menu_item_id=menu_item.id,
                    available=menu_item.stock_quantity,
                    requested=quantity,
                )
            menu_item.stock_quantity = menu_item.stock_quantity - quantity
        order.items.append(
            OrderItem(
                menu_item_id=menu_item.id,
                name=menu_item.name,
                price_cents=menu_item.price_cents,
                quantity=quantity,
            )
        )
    order.total_cents = to_cents(compute_order_total(order.items))
    if order.total_cents <= 0:
        raise ValidationError("order total must be greater than zero", field="items")
    return order


def place_order(ledger, parent, student_id, lines, delivery_date, order_type=OrderType.ONE_TIME.value,
                delivery_time=None, special_instructions=None):
    """Create the order and charge (one-time) or defer (weekly) it. Returns (order, entry)."""
    try:
        order_type = OrderType(order_type).value
    except ValueError:
        raise ValidationError("order_type must be one-time or weekly", field="order_type")
    try:
        student = db.session.get(Student, student_id) if student_id is not None else None
        delivery_date = parse_date(delivery_date, "delivery_date")
        if order_type == OrderType.WEEKLY.value:
            check_weekly_lines(delivery_date, lines or [])
        order = build_order(
            parent,
            student,
            lines,
            delivery_date,
            ledger.clock.now(),
            order_type=order_type,
            delivery_time=delivery_time,
            special_instructions=special_instructions,
        )
        db.session.add(order)
        db.session.flush()
    except Exception:
        db.session.rollback()
        raise

    if order_type == OrderType.WEEKLY.value:
        entry = ledger.defer_charge(parent, order)
    else:
        entry = ledger.charge_order(parent, order)
    logger.info("placed %s order %s for parent %s total=%s", order_type, order.order_number,
                order.parent_id, order.total_amount)
    return order, entry


def orders_for_parent(parent, between=None):
    stmt = select(Order).where(Order.parent_id == parent.user_id)
    if between is not None:
        start, end = between
        stmt = stmt.where(Order.delivery_date >= start, Order.delivery_date <= end)
    return list(db.session.scalars(stmt.order_by(Order.delivery_date.desc(), Order.id.desc())))
