"""
Project: School Canteen Wallet
Date: October 2026

Description:
Versioned payload shapes. Rows and request bodies have been written in
three shapes over time; each historical shape has one adapter that lifts
it to the current (snake_case) shape, so readers never chain fallbacks.

  version 0  legacy debit/credit rows: type, description, reference_id
  version 1  camelCase rows: parentId, balanceBefore, orderIds, menuItemId
  version 2  current snake_case rows, tagged with schema_version
"""

from errors import ValidationError
from money import to_money

SCHEMA_VERSION = 2

_CAMEL_TO_SNAKE = {
    "parentId": "parent_id",
    "studentId": "student_id",
    "balanceBefore": "balance_before",
    "balanceAfter": "balance_after",
    "deferredAmount": "deferred_amount",
    "orderIds": "order_ids",
    "topupId": "topup_id",
    "originId": "origin_id",
    "createdAt": "created_at",
    "menuItemId": "menu_item_id",
    "menuItemName": "name",
    "deliveryDate": "delivery_date",
    "deliveryTime": "delivery_time",
    "specialInstructions": "special_instructions",
    "orderType": "order_type",
    "totalAmount": "total_amount",
    "paymentMethod": "payment_method",
    "transactionReference": "transaction_reference",
    "stockQuantity": "stock_quantity",
    "isAvailable": "available",
    "dietaryNotes": "dietary_notes",
    "weekStart": "week_start",
    "menuItemsByDay": "menu_items_by_day",
}


def detect_version(row: dict) -> int:
    if "schema_version" in row:
        return int(row["schema_version"])
    if "type" in row and row.get("type") in ("debit", "credit"):
        return 0
    if any(key in row for key in _CAMEL_TO_SNAKE):
        return 1
    return SCHEMA_VERSION


def _from_legacy(row):
    """Version 0: 'type' debit/credit, 'description' as reason, single reference_id."""
    out = {k: v for k, v in row.items() if k not in ("type", "description", "reference_id", "status")}
    reason = row.get("reason") or row.get("description")
    if not reason:
        reason = "single_order" if row.get("type") == "debit" else "topup"
    out["reason"] = reason
    if "order_ids" not in out:
        ref = row.get("reference_id")
        out["order_ids"] = [ref] if ref is not None and row.get("type") == "debit" else []
    return _from_camel(out)


def _from_camel(row):
    out = {}
    for key, value in row.items():
        out[_CAMEL_TO_SNAKE.get(key, key)] = value
    return out


_MIGRATIONS = {
    0: _from_legacy,
    1: _from_camel,
}


def upgrade(row: dict) -> dict:
    """Return row in the current shape, tagged with schema_version."""
    if not isinstance(row, dict):
        raise ValidationError("payload must be an object")
    version = detect_version(row)
    if version > SCHEMA_VERSION or version < 0:
        raise ValidationError(f"unsupported schema version {version}")
    if version < SCHEMA_VERSION:
        row = _MIGRATIONS[version](row)
    out = dict(row)
    out["schema_version"] = SCHEMA_VERSION
    return out


def _infer_kind(row):
    if row.get("kind"):
        return row["kind"]
    reason = (row.get("reason") or "").lower()
    amount = row.get("amount") or 0
    before, after = row.get("balance_before"), row.get("balance_after")
    if "deferred" in reason or (before is not None and before == after and "weekly" in reason):
        return "deferred_charge"
    if to_money(amount) > 0:
        return "topup"
    if reason == "weekly_order":
        return "realized_charge"
    return "charge"


def load_transaction_row(row: dict) -> dict:
    """Upgrade a ledger row of any historical shape and fill in its kind."""
    out = upgrade(row)
    out["kind"] = _infer_kind(out)
    out.setdefault("order_ids", [])
    out["order_ids"] = list(out["order_ids"])
    return out


def load_order_request(body: dict) -> dict:
    out = upgrade(body)
    items = out.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list", field="items")
    out["items"] = [load_order_item(item) for item in items]
    return out


def load_order_item(item: dict) -> dict:
    out = upgrade(item)
    # older clients sent qty
    if "quantity" not in out and "qty" in out:
        out["quantity"] = out.pop("qty")
    if out.get("menu_item_id") is None:
        raise ValidationError("menu_item_id is required for every item", field="menu_item_id")
    return out


def load_topup_request(body: dict) -> dict:
    return upgrade(body)
