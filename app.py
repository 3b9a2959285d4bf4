"""
Project: School Canteen Wallet
Date: October 2026

Description:
Main application entry point. Initializes Flask, the database, Socket.IO,
the wallet ledger and the date refresh signal, and registers the JSON API
for menus, students, parents, orders, wallet transactions and top-ups.
"""

from flask import Flask, jsonify, request, session
from flask_socketio import SocketIO
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.security import check_password_hash, generate_password_hash

from app_logger import get_logger, setup_logging
from clock import DateRefresh, SystemClock, date_range
from config import Config, TestConfig
from errors import CanteenError, Conflict, InvalidState, NotFound, ValidationError
from events import EventBus
from ledger import WalletLedger, classify, realized_origins, summarize
from models import (
    MENU_CATEGORIES,
    MenuItem,
    Order,
    Parent,
    ParentTransaction,
    Student,
    Topup,
    User,
    db,
)
from money import format_cents, format_money, to_cents
from orders import orders_for_parent, parse_date, place_order, transition
from schema import load_order_request, load_topup_request, load_transaction_row, upgrade
from topups import approve_topup, decline_topup, low_balance_parents, request_topup, topup_statistics
from weekly_menus import publish_weekly_menu, unpublish_weekly_menu, weekly_menu_for

# Create SocketIO once (no app yet), then bind inside factory
socketio = SocketIO(cors_allowed_origins="*")

logger = get_logger("app")


def _summary_json(summary):
    return {k: (format_money(v) if k not in ("pending_count", "count") else v) for k, v in summary.items()}


def create_app(testing: bool = False, clock=None):
    app = Flask(__name__)
    app.config.from_object(TestConfig if testing else Config)
    setup_logging(app.config["LOG_LEVEL"])

    db.init_app(app)
    socketio.init_app(app, async_mode=app.config["SOCKETIO_ASYNC_MODE"])

    clock = clock or SystemClock()
    bus = EventBus()
    ledger = WalletLedger(clock=clock, bus=bus, max_retries=app.config["LEDGER_MAX_RETRIES"])
    date_refresh = DateRefresh(clock, bus)
    app.extensions["canteen"] = {"clock": clock, "bus": bus, "ledger": ledger, "date_refresh": date_refresh}

    @bus.subscribe
    def relay_to_socketio(event_type, payload):
        socketio.emit("event", {"type": event_type, **payload})

    # --------- helpers ---------
    def require_login():
        if not session.get("user_id"):
            return jsonify({"error": "login_required"}), 401

    def require_admin():
        if not session.get("user_id"):
            return jsonify({"error": "login_required"}), 401
        u = db.session.get(User, session["user_id"])
        if not u or getattr(u, "role", "") != "admin":
            return jsonify({"error": "admin_only"}), 403

    def require_parent_access(parent_id):
        """Admins see every wallet; a parent only their own."""
        resp = require_login()
        if resp:
            return resp
        u = db.session.get(User, session["user_id"])
        if not u or (u.role != "admin" and u.id != parent_id):
            return jsonify({"error": "forbidden"}), 403

    def get_or_404(model, ident):
        obj = db.session.get(model, ident)
        if obj is None:
            raise NotFound(f"{model.__name__} {ident} not found")
        return obj

    def parent_id_from(data):
        """parent_id from a request body, defaulting to the logged-in user."""
        value = data.get("parent_id")
        if value is None:
            return session["user_id"]
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError("parent_id must be a number", field="parent_id")

    def body():
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    @app.before_request
    def tick_clock():
        date_refresh.tick()

    @app.errorhandler(CanteenError)
    def handle_canteen_error(err):
        if err.status_code >= 500 or err.retryable:
            logger.warning("%s %s -> %s: %s", request.method, request.path, err.code, err.message)
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(StaleDataError)
    def handle_stale(err):
        db.session.rollback()
        return handle_canteen_error(Conflict("record changed concurrently, please retry"))

    # --------- core routes ---------
    @app.get("/")
    def index():
        return jsonify({"service": "School Canteen Wallet", "status": "ok"})

    @app.post("/login")
    def login():
        data = request.form if request.form else body()
        username = (data.get("username") or "").strip()
        password = data.get("password") or ""
        user = db.session.scalars(select(User).filter_by(username=username)).first()
        if user and check_password_hash(user.password_hash, password):
            session["user_id"] = user.id
            session["username"] = user.username
            session["role"] = user.role
            return jsonify({"ok": True, "user_id": user.id, "role": user.role})
        return jsonify({"ok": False, "error": "Invalid credentials"}), 401

    @app.post("/logout")
    def logout():
        session.clear()
        return jsonify({"ok": True})

    # ---------- MENU ----------
    @app.get("/api/menu")
    def list_menu():
        stmt = select(MenuItem).order_by(MenuItem.category, MenuItem.name)
        category = request.args.get("category")
        if category:
            stmt = stmt.where(MenuItem.category == category)
        if request.args.get("available") == "true":
            stmt = stmt.where(MenuItem.available.is_(True))
        return jsonify([m.to_dict() for m in db.session.scalars(stmt)])

    @app.get("/api/menu/categories")
    def list_categories():
        return jsonify(list(MENU_CATEGORIES))

    @app.post("/api/menu")
    def create_menu():
        resp = require_admin()
        if resp:
            return resp
        data = upgrade(body())
        m = MenuItem(
            name=data.get("name") or "Item",
            description=data.get("description") or "",
            price_cents=to_cents(data.get("price", 0)),
            category=data.get("category", "Lunch"),
            available=bool(data.get("available", True)),
            stock_quantity=data.get("stock_quantity"),
        )
        db.session.add(m)
        db.session.commit()
        bus.publish("menu.created", {"item": m.to_dict()})
        return jsonify(m.to_dict()), 201

    @app.put("/api/menu/<int:item_id>")
    def update_menu(item_id):
        resp = require_admin()
        if resp:
            return resp
        data = upgrade(body())
        m = get_or_404(MenuItem, item_id)
        for k in ["name", "description", "category", "stock_quantity"]:
            if k in data:
                setattr(m, k, data[k])
        if "available" in data:
            m.available = bool(data["available"])
        if "price" in data:
            m.price_cents = to_cents(data["price"])
        db.session.commit()
        bus.publish("menu.updated", {"item": m.to_dict()})
        return jsonify(m.to_dict())

    @app.delete("/api/menu/<int:item_id>")
    def delete_menu(item_id):
        resp = require_admin()
        if resp:
            return resp
        m = get_or_404(MenuItem, item_id)
        db.session.delete(m)
        db.session.commit()
        bus.publish("menu.deleted", {"id": item_id})
        return jsonify({"ok": True})

    # ---------- WEEKLY MENUS ----------
    @app.get("/api/weekly-menus")
    def get_weekly_menu():
        resp = require_login()
        if resp:
            return resp
        day = parse_date(request.args.get("date") or clock.today().isoformat(), "date")
        menu = weekly_menu_for(day)
        if menu is None or (not menu.is_published and session.get("role") != "admin"):
            raise NotFound(f"no published weekly menu for the week of {day.isoformat()}")
        return jsonify(menu.to_dict())

    @app.post("/api/weekly-menus")
    def publish_menu():
        resp = require_admin()
        if resp:
            return resp
        data = upgrade(body())
        week_start = parse_date(data.get("week_start"), "week_start")
        menu = publish_weekly_menu(week_start, data.get("menu_items_by_day"), clock.now())
        bus.publish("weekly_menu.published", {"menu": menu.to_dict()})
        return jsonify(menu.to_dict()), 201

    @app.post("/api/weekly-menus/<week_start>/unpublish")
    def unpublish_menu(week_start):
        resp = require_admin()
        if resp:
            return resp
        menu = unpublish_weekly_menu(parse_date(week_start, "week_start"))
        bus.publish("weekly_menu.unpublished", {"menu": menu.to_dict()})
        return jsonify(menu.to_dict())

    # ---------- PARENTS ----------
    @app.get("/api/parents")
    def list_parents():
        resp = require_admin()
        if resp:
            return resp
        parents = db.session.scalars(select(Parent).order_by(Parent.name))
        return jsonify([p.to_dict() for p in parents])

    @app.post("/api/parents")
    def create_parent():
        resp = require_admin()
        if resp:
            return resp
        data = body()
        username = (data.get("username") or "").strip()
        if not username or not data.get("password"):
            raise ValidationError("username and password are required")
        if db.session.scalars(select(User).filter_by(username=username)).first():
            raise InvalidState(f"username {username} is taken", field="username")
        user = User(username=username, password_hash=generate_password_hash(data["password"]), role="parent")
        db.session.add(user)
        db.session.flush()
        # balance starts at zero; money only arrives through the ledger
        p = Parent(user_id=user.id, name=data.get("name") or username, phone=data.get("phone"),
                   address=data.get("address"))
        db.session.add(p)
        db.session.commit()
        return jsonify(p.to_dict()), 201

    @app.get("/api/parents/low-balance")
    def list_low_balance():
        resp = require_admin()
        if resp:
            return resp
        threshold = request.args.get("threshold", app.config["LOW_BALANCE_THRESHOLD"])
        return jsonify([p.to_dict() for p in low_balance_parents(threshold)])

    @app.get("/api/parents/<int:parent_id>")
    def get_parent(parent_id):
        resp = require_parent_access(parent_id)
        if resp:
            return resp
        return jsonify(get_or_404(Parent, parent_id).to_dict())

    @app.put("/api/parents/<int:parent_id>")
    def update_parent(parent_id):
        resp = require_parent_access(parent_id)
        if resp:
            return resp
        p = get_or_404(Parent, parent_id)
        data = body()
        for k in ["name", "phone", "address"]:
            if k in data:
                setattr(p, k, data[k])
        db.session.commit()
        return jsonify(p.to_dict())

    # ---------- STUDENTS ----------
    @app.get("/api/students")
    def list_students():
        resp = require_admin()
        if resp:
            return resp
        return jsonify([s.to_dict() for s in db.session.scalars(select(Student).order_by(Student.name))])

    @app.post("/api/students")
    def create_student():
        resp = require_admin()
        if resp:
            return resp
        data = upgrade(body())
        s = Student(name=data.get("name"), grade=data.get("grade"), allergies=data.get("allergies"),
                    dietary_notes=data.get("dietary_notes"))
        db.session.add(s)
        db.session.commit()
        return jsonify(s.to_dict()), 201

    @app.put("/api/students/<int:student_id>")
    def update_student(student_id):
        resp = require_admin()
        if resp:
            return resp
        s = get_or_404(Student, student_id)
        data = upgrade(body())
        for k in ["name", "grade", "allergies", "dietary_notes"]:
            if k in data:
                setattr(s, k, data[k])
        db.session.commit()
        return jsonify(s.to_dict())

    @app.post("/api/parents/<int:parent_id>/students/<int:student_id>")
    def link_student(parent_id, student_id):
        resp = require_parent_access(parent_id)
        if resp:
            return resp
        p = get_or_404(Parent, parent_id)
        s = get_or_404(Student, student_id)
        if s.parent_id is not None and s.parent_id != p.user_id:
            raise InvalidState(f"student {s.id} is already linked to another parent")
        s.parent_id = p.user_id
        db.session.commit()
        return jsonify(s.to_dict())

    @app.delete("/api/parents/<int:parent_id>/students/<int:student_id>")
    def unlink_student(parent_id, student_id):
        resp = require_parent_access(parent_id)
        if resp:
            return resp
        s = get_or_404(Student, student_id)
        if s.parent_id != parent_id:
            raise NotFound(f"student {s.id} is not linked to parent {parent_id}")
        s.parent_id = None
        db.session.commit()
        return jsonify(s.to_dict())

    # ---------- ORDERS ----------
    @app.get("/api/orders")
    def list_orders():
        resp = require_admin()
        if resp:
            return resp
        stmt = select(Order).order_by(Order.id.desc())
        if request.args.get("status"):
            stmt = stmt.where(Order.status == request.args["status"])
        return jsonify([o.to_dict() for o in db.session.scalars(stmt)])

    @app.post("/api/orders")
    def create_order():
        resp = require_login()
        if resp:
            return resp
        data = load_order_request(body())
        parent_id = parent_id_from(data)
        resp = require_parent_access(parent_id)
        if resp:
            return resp
        parent = get_or_404(Parent, parent_id)
        order, entry = place_order(
            ledger,
            parent,
            data.get("student_id"),
            data["items"],
            data.get("delivery_date") or clock.today().isoformat(),
            order_type=data.get("order_type", "one-time"),
            delivery_time=data.get("delivery_time"),
            special_instructions=data.get("special_instructions"),
        )
        bus.publish("order.created", {"order": order.to_dict()})
        return jsonify({"order": order.to_dict(), "transaction": entry.to_dict(),
                        "balance": format_money(get_or_404(Parent, parent_id).balance)}), 201

    @app.get("/api/orders/<int:order_id>")
    def get_order(order_id):
        order = get_or_404(Order, order_id)
        resp = require_parent_access(order.parent_id)
        if resp:
            return resp
        return jsonify(order.to_dict())

    @app.post("/api/orders/<int:order_id>/status")
    def update_order_status(order_id):
        resp = require_admin()
        if resp:
            return resp
        order = get_or_404(Order, order_id)
        transition(order, body().get("status"), clock.now())
        db.session.commit()
        bus.publish("order.updated", {"order": order.to_dict()})
        return jsonify(order.to_dict())

    @app.post("/api/orders/<int:order_id>/cancel")
    def cancel_order(order_id):
        order = get_or_404(Order, order_id)
        resp = require_parent_access(order.parent_id)
        if resp:
            return resp
        transition(order, "cancelled", clock.now())
        db.session.commit()
        bus.publish("order.updated", {"order": order.to_dict()})
        return jsonify(order.to_dict())

    @app.get("/api/parents/<int:parent_id>/orders")
    def list_parent_orders(parent_id):
        resp = require_parent_access(parent_id)
        if resp:
            return resp
        parent = get_or_404(Parent, parent_id)
        between = date_range(request.args.get("range", "all"), clock)
        return jsonify([o.to_dict() for o in orders_for_parent(parent, between)])

    # ---------- WALLET ----------
    @app.get("/api/parents/<int:parent_id>/transactions")
    def list_transactions(parent_id):
        resp = require_parent_access(parent_id)
        if resp:
            return resp
        parent = get_or_404(Parent, parent_id)
        entries = ledger.statement(parent, request.args.get("filter", "all"))
        return jsonify([dict(t.to_dict(), classification=c.value) for t, c in reversed(entries)])

    @app.get("/api/parents/<int:parent_id>/transactions/summary")
    def transactions_summary(parent_id):
        resp = require_parent_access(parent_id)
        if resp:
            return resp
        parent = get_or_404(Parent, parent_id)
        out = _summary_json(ledger.summary(parent))
        out["balance"] = format_money(parent.balance)
        return jsonify(out)

    @app.post("/api/parents/<int:parent_id>/transactions/<int:txn_id>/realize")
    def realize_transaction(parent_id, txn_id):
        resp = require_parent_access(parent_id)
        if resp:
            return resp
        parent = get_or_404(Parent, parent_id)
        deferred = get_or_404(ParentTransaction, txn_id)
        entry = ledger.realize_deferred(parent, deferred)
        return jsonify({"transaction": entry.to_dict(), "balance": format_money(get_or_404(Parent, parent_id).balance)}), 201

    @app.get("/api/parents/<int:parent_id>/reconcile")
    def reconcile_wallet(parent_id):
        resp = require_admin()
        if resp:
            return resp
        parent = get_or_404(Parent, parent_id)
        ledger_total = ledger.reconcile(parent)
        return jsonify({
            "parent_id": parent_id,
            "balance": format_money(parent.balance),
            "ledger_total": format_money(ledger_total),
            "consistent": ledger_total == parent.balance,
        })

    @app.post("/api/transactions/classify")
    def classify_rows():
        resp = require_login()
        if resp:
            return resp
        data = request.get_json(silent=True)
        if not isinstance(data, list):
            raise ValidationError("expected a list of transaction rows")
        rows = [load_transaction_row(r) for r in data]
        realized = realized_origins(rows)
        return jsonify({
            "transactions": [dict(r, classification=classify(r, realized).value) for r in rows],
            "summary": _summary_json(summarize(rows)),
        })

    # ---------- TOP-UPS ----------
    @app.get("/api/topups")
    def list_topups():
        resp = require_login()
        if resp:
            return resp
        stmt = select(Topup).order_by(Topup.id.desc())
        if session.get("role") != "admin":
            stmt = stmt.where(Topup.parent_id == session["user_id"])
        if request.args.get("status"):
            stmt = stmt.where(Topup.status == request.args["status"])
        return jsonify([t.to_dict() for t in db.session.scalars(stmt)])

    @app.post("/api/topups")
    def create_topup():
        resp = require_login()
        if resp:
            return resp
        data = load_topup_request(body())
        parent_id = parent_id_from(data)
        resp = require_parent_access(parent_id)
        if resp:
            return resp
        parent = get_or_404(Parent, parent_id)
        topup = request_topup(
            parent,
            data.get("amount"),
            clock.now(),
            max_amount=app.config["TOPUP_MAX_AMOUNT"],
            payment_method=data.get("payment_method", "cash"),
            student_id=data.get("student_id"),
            transaction_reference=data.get("transaction_reference"),
            notes=data.get("notes"),
        )
        bus.publish("topup.requested", {"topup": topup.to_dict()})
        return jsonify(topup.to_dict()), 201

    @app.get("/api/topups/stats")
    def topups_stats():
        resp = require_admin()
        if resp:
            return resp
        stats = topup_statistics(db.session.scalars(select(Topup)), today=clock.today())
        stats["amounts"] = {k: format_money(v) for k, v in stats["amounts"].items()}
        stats["approved_amount"] = format_money(stats["approved_amount"])
        stats["pending_amount"] = format_money(stats["pending_amount"])
        return jsonify(stats)

    @app.post("/api/topups/<int:topup_id>/approve")
    def approve(topup_id):
        resp = require_admin()
        if resp:
            return resp
        topup = get_or_404(Topup, topup_id)
        entry = approve_topup(ledger, topup, session["user_id"], admin_notes=body().get("admin_notes"))
        topup = get_or_404(Topup, topup_id)
        return jsonify({"topup": topup.to_dict(), "transaction": entry.to_dict()})

    @app.post("/api/topups/<int:topup_id>/decline")
    def decline(topup_id):
        resp = require_admin()
        if resp:
            return resp
        topup = get_or_404(Topup, topup_id)
        decline_topup(topup, session["user_id"], clock.now(), admin_notes=body().get("admin_notes"))
        bus.publish("topup.declined", {"topup": topup.to_dict()})
        return jsonify(topup.to_dict())

    # ---------- REPORTS ----------
    @app.get("/api/reports/sales")
    def sales_report():
        resp = require_admin()
        if resp:
            return resp
        by_day = {}
        for o in db.session.scalars(select(Order).where(Order.status != "cancelled")):
            day = o.delivery_date.isoformat()
            by_day.setdefault(day, {"date": day, "revenue_cents": 0, "orders": 0})
            by_day[day]["revenue_cents"] += o.total_cents
            by_day[day]["orders"] += 1
        rows = sorted(by_day.values(), key=lambda x: x["date"], reverse=True)
        return jsonify([{"date": r["date"], "revenue": format_cents(r["revenue_cents"]), "orders": r["orders"]}
                        for r in rows])

    # ---------- HEALTH ----------
    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok"})

    return app


if __name__ == "__main__":
    app = create_app()
    with app.app_context():
        db.create_all()
    socketio.run(app, host="0.0.0.0", port=5013, debug=True)
