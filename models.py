"""
Project: School Canteen Wallet
Date: October 2026

Description:
Database models for users, parents, students, the menu, orders, top-ups
and the parent wallet ledger. Money columns hold integer cents.
"""

import enum
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.orm import validates

from errors import AppendOnlyViolation, ValidationError
from money import format_cents, from_cents

db = SQLAlchemy()


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderType(str, enum.Enum):
    ONE_TIME = "one-time"
    WEEKLY = "weekly"


class TopupStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    COMPLETED = "completed"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    ONLINE = "online"


class PublishStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class TransactionKind(str, enum.Enum):
    TOPUP = "topup"
    CHARGE = "charge"
    DEFERRED_CHARGE = "deferred_charge"
    REALIZED_CHARGE = "realized_charge"


MENU_CATEGORIES = ("Lunch", "Snacks", "Drinks", "Desserts", "Combo Meals", "Special Items")


def _enum_value(enum_cls, value, field):
    try:
        return enum_cls(value).value
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"{field} must be one of: {allowed}", field=field, value=value)


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), default="parent")

    @validates("role")
    def _check_role(self, key, value):
        if value not in ("admin", "parent"):
            raise ValidationError("role must be admin or parent", field=key)
        return value


class Parent(db.Model):
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(40))
    address = db.Column(db.String(255))
    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    user = db.relationship("User", backref=db.backref("parent", uselist=False))
    children = db.relationship("Student", backref="parent", lazy=True, order_by="Student.id")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def balance(self):
        return from_cents(self.balance_cents)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "name": self.name,
            "phone": self.phone,
            "address": self.address,
            "balance": format_cents(self.balance_cents),
            "children": [s.id for s in self.children],
            "version_id": self.version_id,
        }


class Student(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    grade = db.Column(db.String(40), nullable=False)
    allergies = db.Column(db.String(255))
    dietary_notes = db.Column(db.String(255))
    parent_id = db.Column(db.Integer, db.ForeignKey("parent.user_id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    @validates("name", "grade")
    def _check_required(self, key, value):
        if not value or not str(value).strip():
            raise ValidationError(f"{key} is required", field=key)
        return str(value).strip()

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "grade": self.grade,
            "allergies": self.allergies,
            "dietary_notes": self.dietary_notes,
            "parent_id": self.parent_id,
        }


class MenuItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(255), default="")
    price_cents = db.Column(db.Integer, nullable=False)
    category = db.Column(db.String(80), default="Lunch")
    available = db.Column(db.Boolean, default=True)
    stock_quantity = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @validates("price_cents")
    def _check_price(self, key, value):
        if value is None or value < 0:
            raise ValidationError("price must be zero or more", field="price")
        return value

    @validates("category")
    def _check_category(self, key, value):
        if value not in MENU_CATEGORIES:
            raise ValidationError(f"category must be one of: {', '.join(MENU_CATEGORIES)}", field=key)
        return value

    @validates("stock_quantity")
    def _check_stock(self, key, value):
        if value is not None and (isinstance(value, bool) or int(value) < 0):
            raise ValidationError("stock_quantity must be zero or more", field=key)
        return None if value is None else int(value)

    @property
    def price(self):
        return from_cents(self.price_cents)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": format_cents(self.price_cents),
            "category": self.category,
            "available": self.available,
            "stock_quantity": self.stock_quantity,
        }


class WeeklyMenu(db.Model):
    """Menu items offered on each school day of one week (Monday to Friday)."""

    id = db.Column(db.Integer, primary_key=True)
    week_start = db.Column(db.Date, nullable=False, unique=True)
    # {"Monday": [menu_item_id, ...], ...}
    menu_items_by_day = db.Column(db.JSON, nullable=False, default=dict)
    publish_status = db.Column(db.String(20), nullable=False, default=PublishStatus.DRAFT.value)
    current_version = db.Column(db.Integer, nullable=False, default=0)
    published_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @validates("publish_status")
    def _check_status(self, key, value):
        return _enum_value(PublishStatus, value, key)

    @validates("week_start")
    def _check_week_start(self, key, value):
        if value is None or value.weekday() != 0:
            raise ValidationError("week_start must be a Monday", field=key)
        return value

    @property
    def is_published(self):
        return self.publish_status == PublishStatus.PUBLISHED.value

    def item_ids_for(self, day_name):
        return list((self.menu_items_by_day or {}).get(day_name, []))

    def to_dict(self):
        return {
            "id": self.id,
            "week_start": self.week_start.isoformat(),
            "menu_items_by_day": {day: list(ids) for day, ids in (self.menu_items_by_day or {}).items()},
            "publish_status": self.publish_status,
            "current_version": self.current_version,
            "published_at": _iso(self.published_at),
        }


class Order(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(40), unique=True, nullable=False)
    parent_id = db.Column(db.Integer, db.ForeignKey("parent.user_id"), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey("student.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=OrderStatus.PENDING.value)
    order_type = db.Column(db.String(20), nullable=False, default=OrderType.ONE_TIME.value)
    total_cents = db.Column(db.Integer, nullable=False)
    delivery_date = db.Column(db.Date, nullable=False)
    delivery_time = db.Column(db.String(20))
    special_instructions = db.Column(db.String(500))
    completed_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "OrderItem", backref="order", cascade="all, delete-orphan", lazy=True, order_by="OrderItem.id"
    )
    student = db.relationship("Student")

    @validates("status")
    def _check_status(self, key, value):
        return _enum_value(OrderStatus, value, key)

    @validates("order_type")
    def _check_type(self, key, value):
        return _enum_value(OrderType, value, key)

    @property
    def total_amount(self):
        return from_cents(self.total_cents)

    def to_dict(self):
        return {
            "id": self.id,
            "order_number": self.order_number,
            "parent_id": self.parent_id,
            "student_id": self.student_id,
            "status": self.status,
            "order_type": self.order_type,
            "items": [i.to_dict() for i in self.items],
            "total_amount": format_cents(self.total_cents),
            "delivery_date": self.delivery_date.isoformat(),
            "delivery_time": self.delivery_time,
            "special_instructions": self.special_instructions,
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "created_at": _iso(self.created_at),
        }


class OrderItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_item.id"), nullable=True)
    name = db.Column(db.String(120), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, default=1)

    @validates("quantity")
    def _check_quantity(self, key, value):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValidationError("quantity must be a whole number of at least 1", field=key)
        return value

    @validates("price_cents")
    def _check_price(self, key, value):
        if value is None or value < 0:
            raise ValidationError("price must be zero or more", field="price")
        return value

    @property
    def price(self):
        return from_cents(self.price_cents)

    @property
    def total(self):
        return from_cents(self.price_cents * self.quantity)

    def to_dict(self):
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "price": format_cents(self.price_cents),
            "quantity": self.quantity,
            "total": format_cents(self.price_cents * self.quantity),
        }


class Topup(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("parent.user_id"), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey("student.id"), nullable=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=TopupStatus.PENDING.value)
    payment_method = db.Column(db.String(30), nullable=False, default=PaymentMethod.CASH.value)
    transaction_reference = db.Column(db.String(120))
    notes = db.Column(db.String(500))
    admin_notes = db.Column(db.String(500))
    processed_by = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    request_date = db.Column(db.DateTime, default=utcnow)
    processed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    parent = db.relationship("Parent", backref=db.backref("topups", lazy=True))

    @validates("amount_cents")
    def _check_amount(self, key, value):
        if value is None or value <= 0:
            raise ValidationError("top-up amount must be greater than zero", field="amount")
        return value

    @validates("status")
    def _check_status(self, key, value):
        return _enum_value(TopupStatus, value, key)

    @validates("payment_method")
    def _check_method(self, key, value):
        return _enum_value(PaymentMethod, value, key)

    @property
    def amount(self):
        return from_cents(self.amount_cents)

    def to_dict(self):
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "parent_name": self.parent.name if self.parent else None,
            "student_id": self.student_id,
            "amount": format_cents(self.amount_cents),
            "status": self.status,
            "payment_method": self.payment_method,
            "transaction_reference": self.transaction_reference,
            "notes": self.notes,
            "admin_notes": self.admin_notes,
            "processed_by": self.processed_by,
            "request_date": _iso(self.request_date),
            "processed_at": _iso(self.processed_at),
        }


class ParentTransaction(db.Model):
    """One balance movement (or deferred charge) on a parent wallet. Append-only."""

    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("parent.user_id"), nullable=False, index=True)
    kind = db.Column(db.String(20), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_before_cents = db.Column(db.Integer, nullable=True)
    balance_after_cents = db.Column(db.Integer, nullable=True)
    deferred_amount_cents = db.Column(db.Integer, nullable=True)
    order_ids = db.Column(db.JSON, nullable=False, default=list)
    reason = db.Column(db.String(60), nullable=False)
    topup_id = db.Column(db.Integer, db.ForeignKey("topup.id"), nullable=True, unique=True)
    origin_id = db.Column(db.Integer, db.ForeignKey("parent_transaction.id"), nullable=True, unique=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    @validates("kind")
    def _check_kind(self, key, value):
        return _enum_value(TransactionKind, value, key)

    @property
    def amount(self):
        return from_cents(self.amount_cents)

    @property
    def balance_before(self):
        return from_cents(self.balance_before_cents)

    @property
    def balance_after(self):
        return from_cents(self.balance_after_cents)

    @property
    def deferred_amount(self):
        return from_cents(self.deferred_amount_cents)

    def to_dict(self):
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "kind": self.kind,
            "amount": format_cents(self.amount_cents),
            "balance_before": format_cents(self.balance_before_cents),
            "balance_after": format_cents(self.balance_after_cents),
            "deferred_amount": format_cents(self.deferred_amount_cents),
            "order_ids": list(self.order_ids or []),
            "reason": self.reason,
            "topup_id": self.topup_id,
            "origin_id": self.origin_id,
            "created_at": _iso(self.created_at),
        }


@event.listens_for(ParentTransaction, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise AppendOnlyViolation(f"ledger entry {target.id} cannot be modified")


@event.listens_for(ParentTransaction, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"ledger entry {target.id} cannot be deleted")
