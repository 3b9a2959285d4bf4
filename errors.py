"""
Project: School Canteen Wallet
Date: October 2026

Description:
Typed error kinds raised by the ledger, the order and top-up workflows and
the models. The Flask app renders every CanteenError as
{"error": code, "message": ..., "retryable": ...} with its HTTP status.
"""


class CanteenError(Exception):
    code = "canteen_error"
    status_code = 400
    retryable = False

    def __init__(self, message=None, **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self):
        body = {"error": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CanteenError):
    code = "validation_error"


class NotFound(CanteenError):
    code = "not_found"
    status_code = 404


class InsufficientFunds(CanteenError):
    code = "insufficient_funds"
    status_code = 402


class AmountMismatch(CanteenError):
    code = "amount_mismatch"


class InvalidState(CanteenError):
    code = "invalid_state"
    status_code = 409


class InvalidTransition(CanteenError):
    code = "invalid_transition"
    status_code = 409


class InsufficientStock(CanteenError):
    code = "insufficient_stock"
    status_code = 409


class MenuItemUnavailable(CanteenError):
    code = "menu_item_unavailable"
    status_code = 409


class AppendOnlyViolation(CanteenError):
    code = "append_only_violation"
    status_code = 500


class Conflict(CanteenError):
    """Lost an optimistic-concurrency race on a parent balance too many times."""

    code = "conflict"
    status_code = 409
    retryable = True


class TransientFailure(CanteenError):
    """The database could not be reached or timed out."""

    code = "transient_failure"
    status_code = 503
    retryable = True
