"""
Project: School Canteen Wallet
Date: October 2026

Description:
Shared fixtures: an app bound to an in-memory database and a fixed clock,
logged-in clients, and factories for parents, students, menu items and
weekly menus.
Parents are funded through approved top-ups so the ledger always
reconciles with the balance.
"""

import os
import sys
from datetime import datetime

import pytest
from werkzeug.security import generate_password_hash

# --- Make sure project root is importable ---
TESTS_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(TESTS_DIR, os.pardir, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from app import create_app  # noqa: E402
from clock import FixedClock  # noqa: E402
from models import MenuItem, Order, OrderItem, Parent, Student, Topup, User, db  # noqa: E402
from money import to_cents  # noqa: E402
from weekly_menus import publish_weekly_menu  # noqa: E402

# Monday, so "week" ranges start on this day
START = datetime(2025, 11, 3, 9, 0, 0)


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def app(clock):
    app = create_app(testing=True, clock=clock)
    with app.app_context():
        db.drop_all()
        db.create_all()
        admin = User(username="admin", password_hash=generate_password_hash("password"), role="admin")
        db.session.add(admin)
        db.session.commit()
        yield app
        db.session.remove()


@pytest.fixture
def ledger(app):
    return app.extensions["canteen"]["ledger"]


@pytest.fixture
def bus(app):
    return app.extensions["canteen"]["bus"]


@pytest.fixture
def events(bus):
    seen = []
    bus.subscribe(lambda event_type, payload: seen.append((event_type, payload)))
    return seen


@pytest.fixture
def client(app):
    return app.test_client()


def _login(client, username, password="password"):
    resp = client.post("/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return client


@pytest.fixture
def admin_client(client):
    return _login(client, "admin")


@pytest.fixture
def make_parent(app, ledger):
    counter = {"n": 0}

    def factory(name="Maria Santos", balance="0.00", username=None):
        counter["n"] += 1
        username = username or f"parent{counter['n']}"
        user = User(username=username, password_hash=generate_password_hash("password"), role="parent")
        db.session.add(user)
        db.session.flush()
        parent = Parent(user_id=user.id, name=name)
        db.session.add(parent)
        db.session.commit()
        if to_cents(balance) > 0:
            topup = Topup(parent_id=parent.user_id, amount_cents=to_cents(balance), status="approved")
            db.session.add(topup)
            db.session.commit()
            ledger.apply_topup(parent, topup)
        return db.session.get(Parent, user.id)

    return factory


@pytest.fixture
def make_student(app):
    def factory(parent=None, name="Juan Santos", grade="Grade 3"):
        student = Student(name=name, grade=grade, parent_id=parent.user_id if parent else None)
        db.session.add(student)
        db.session.commit()
        return student

    return factory


@pytest.fixture
def make_menu_item(app):
    def factory(name="Chicken Adobo Rice", price="45.00", category="Lunch", stock_quantity=None, available=True):
        item = MenuItem(name=name, price_cents=to_cents(price), category=category,
                        stock_quantity=stock_quantity, available=available)
        db.session.add(item)
        db.session.commit()
        return item

    return factory


@pytest.fixture
def make_order(app, make_student):
    """An order row built directly, bypassing placement, for ledger tests."""

    def factory(parent, lines, total=None, order_type="one-time"):
        student = make_student(parent)
        order = Order(order_number=f"ORD-TEST-{parent.user_id}-{student.id}", parent_id=parent.user_id,
                      student_id=student.id, order_type=order_type, delivery_date=START.date())
        for price, quantity in lines:
            order.items.append(OrderItem(name="Item", price_cents=to_cents(price), quantity=quantity))
        computed = sum(to_cents(price) * quantity for price, quantity in lines)
        order.total_cents = to_cents(total) if total is not None else computed
        db.session.add(order)
        db.session.commit()
        return order

    return factory


@pytest.fixture
def login(client):
    def do(username, password="password"):
        return _login(client, username, password)

    return do


@pytest.fixture
def make_weekly_menu(app, clock):
    """Publish a menu for a week: make_weekly_menu(Wednesday=[item, ...])."""

    def factory(week_start=START.date(), **days):
        menu_items_by_day = {day: [item.id for item in items] for day, items in days.items()}
        return publish_weekly_menu(week_start, menu_items_by_day, clock.now())

    return factory
