"""
Project: School Canteen Wallet
Date: October 2026

Description:
Application configuration. Values come from the environment with
development defaults; create_app() loads this with app.config.from_object.
"""

import os


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///canteen.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # eventlet for the standalone server; tests switch to threading
    SOCKETIO_ASYNC_MODE = os.getenv("SOCKETIO_ASYNC_MODE", "eventlet")

    LEDGER_MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "3"))
    TOPUP_MAX_AMOUNT = os.getenv("TOPUP_MAX_AMOUNT", "100000.00")
    LOW_BALANCE_THRESHOLD = os.getenv("LOW_BALANCE_THRESHOLD", "100.00")

    LOG_LEVEL = os.getenv("CANTEEN_LOG_LEVEL", "INFO").upper()


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SOCKETIO_ASYNC_MODE = "threading"
