"""
Project: School Canteen Wallet
Date: October 2026

Description:
Weekly menus. An admin publishes, for one week, the menu items offered on
each school day; weekly orders may only pick items from the published
menu of their delivery day. Republishing a week bumps its version.
"""

from datetime import date

from sqlalchemy import select

from app_logger import get_logger
from clock import week_bounds
from errors import MenuItemUnavailable, NotFound, ValidationError
from models import MenuItem, PublishStatus, WeeklyMenu, db

logger = get_logger("weekly_menus")

DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
WEEKDAYS = DAY_NAMES[:5]


def day_name(day: date) -> str:
    return DAY_NAMES[day.weekday()]


def _normalize(menu_items_by_day):
    if not isinstance(menu_items_by_day, dict):
        raise ValidationError("menu_items_by_day must be an object keyed by weekday", field="menu_items_by_day")
    out = {}
    for day, ids in menu_items_by_day.items():
        name = str(day).capitalize()
        if name not in WEEKDAYS:
            raise ValidationError(f"{day} is not a school day", field="menu_items_by_day")
        if not isinstance(ids, list):
            raise ValidationError(f"{name} must list menu item ids", field="menu_items_by_day")
        try:
            clean = [int(i) for i in ids]
        except (TypeError, ValueError):
            raise ValidationError(f"{name} has a menu item id that is not a number", field="menu_items_by_day")
        known = set(db.session.scalars(select(MenuItem.id).where(MenuItem.id.in_(clean))))
        missing = [i for i in clean if i not in known]
        if missing:
            raise NotFound(f"menu items {missing} not found", menu_item_ids=missing)
        out[name] = list(dict.fromkeys(clean))
    return out


def weekly_menu_for(day: date):
    """The weekly menu row for the week containing day, published or not."""
    week_start, _ = week_bounds(day)
    stmt = select(WeeklyMenu).where(WeeklyMenu.week_start == week_start)
    return db.session.scalars(stmt).first()


def publish_weekly_menu(week_start: date, menu_items_by_day, now) -> WeeklyMenu:
    week_start, _ = week_bounds(week_start)
    menu_items_by_day = _normalize(menu_items_by_day)
    menu = weekly_menu_for(week_start)
    if menu is None:
        menu = WeeklyMenu(week_start=week_start, created_at=now)
        db.session.add(menu)
    menu.menu_items_by_day = menu_items_by_day
    menu.publish_status = PublishStatus.PUBLISHED.value
    menu.current_version = (menu.current_version or 0) + 1
    menu.published_at = now
    db.session.commit()
    logger.info("weekly menu %s published (version %s)", week_start.isoformat(), menu.current_version)
    return menu


def unpublish_weekly_menu(week_start: date) -> WeeklyMenu:
    menu = weekly_menu_for(week_start)
    if menu is None:
        raise NotFound(f"no weekly menu for the week of {week_start.isoformat()}")
    menu.publish_status = PublishStatus.DRAFT.value
    db.session.commit()
    logger.info("weekly menu %s unpublished", menu.week_start.isoformat())
    return menu


def check_weekly_lines(delivery_date: date, lines):
    """Reject weekly order lines whose items are not on the delivery day's published menu."""
    name = day_name(delivery_date)
    if name not in WEEKDAYS:
        raise ValidationError(f"weekly orders are delivered on school days, not {name}", field="delivery_date")
    menu = weekly_menu_for(delivery_date)
    if menu is None or not menu.is_published:
        raise ValidationError(
            f"no published weekly menu for the week of {week_bounds(delivery_date)[0].isoformat()}",
            field="delivery_date",
        )
    offered = set(menu.item_ids_for(name))
    for line in lines:
        try:
            item_id = int(line["menu_item_id"])
        except (TypeError, ValueError):
            raise ValidationError("menu_item_id must be a number", field="menu_item_id")
        if item_id not in offered:
            raise MenuItemUnavailable(
                f"menu item {item_id} is not on the {name} menu",
                menu_item_id=item_id,
                delivery_date=delivery_date.isoformat(),
            )
