from datetime import timedelta

from sqlalchemy import func, select
from werkzeug.security import generate_password_hash

from app import create_app
from models import MenuItem, Parent, Student, Topup, User, db
from topups import approve_topup, request_topup
from weekly_menus import WEEKDAYS, publish_weekly_menu, weekly_menu_for

app = create_app()
with app.app_context():
    db.create_all()
    admin = db.session.scalars(select(User).filter_by(username="admin")).first()
    if admin is None:
        admin = User(username="admin", password_hash=generate_password_hash("password"), role="admin")
        db.session.add(admin)
        db.session.commit()

    if db.session.scalar(select(func.count(MenuItem.id))) == 0:
        items = [
            MenuItem(name="Chicken Adobo Rice", price_cents=4500, category="Lunch"),
            MenuItem(name="Spaghetti", price_cents=4000, category="Lunch"),
            MenuItem(name="Banana Cue", price_cents=2000, category="Snacks", stock_quantity=40),
            MenuItem(name="Calamansi Juice", price_cents=2000, category="Drinks"),
            MenuItem(name="Leche Flan", price_cents=3500, category="Desserts", stock_quantity=20),
        ]
        db.session.add_all(items)
        db.session.commit()

    ledger = app.extensions["canteen"]["ledger"]
    today = ledger.clock.today()
    if weekly_menu_for(today) is None:
        lunch = db.session.scalars(select(MenuItem.id).where(MenuItem.category == "Lunch")).all()
        snacks = db.session.scalars(select(MenuItem.id).where(MenuItem.category != "Lunch")).all()
        # lunches alternate by day; snacks, drinks and desserts every day
        menu = {day: [lunch[i % len(lunch)]] + list(snacks) for i, day in enumerate(WEEKDAYS)}
        publish_weekly_menu(today, menu, ledger.clock.now())

    user = db.session.scalars(select(User).filter_by(username="parent")).first()
    if user is None:
        user = User(username="parent", password_hash=generate_password_hash("password"), role="parent")
        db.session.add(user)
        db.session.flush()
        parent = Parent(user_id=user.id, name="Maria Santos", phone="+63 900 000 0000")
        db.session.add(parent)
        db.session.add(Student(name="Juan Santos", grade="Grade 3", allergies="peanuts", parent_id=user.id))
        db.session.commit()

        # opening funds go through the ledger like any other top-up
        topup = request_topup(parent, "500.00", ledger.clock.now() - timedelta(minutes=1))
        approve_topup(ledger, topup, admin.id, admin_notes="opening balance")

    print(f"Seeded. Top-ups on file: {db.session.scalar(select(func.count(Topup.id)))}")
    print("Admin: admin/password  Parent: parent/password")
