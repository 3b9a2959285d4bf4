"""
Project: School Canteen Wallet
Date: October 2026

Description:
In-process publish/subscribe channel. The app subscribes a relay that
forwards every event to Socket.IO clients as ("event", {"type": ...}).
"""

from app_logger import get_logger

logger = get_logger("events")


class EventBus:
    def __init__(self):
        self._subscribers = []

    def subscribe(self, callback):
        self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event_type: str, payload: dict | None = None):
        payload = payload or {}
        logger.debug("publish %s %s", event_type, payload)
        for callback in list(self._subscribers):
            callback(event_type, payload)
