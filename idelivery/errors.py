# errors.py
"""
Structured failures returned by every command.

Each error carries a stable ``code`` (surfaced to clients as ``error``) and the
HTTP status the API layer maps it to. The message is the user-visible reason,
e.g. "order already has a driver assigned".
"""


class DeliveryError(Exception):
    code = "delivery_error"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail}


class InvalidTransition(DeliveryError):
    code = "invalid_transition"
    status_code = 409


class NotFound(DeliveryError):
    code = "not_found"
    status_code = 404


class AlreadyReviewed(DeliveryError):
    code = "already_reviewed"
    status_code = 409


class LedgerInconsistency(DeliveryError):
    code = "ledger_inconsistency"
    status_code = 500


class ValidationError(DeliveryError):
    code = "validation_error"
    status_code = 422


class Forbidden(DeliveryError):
    code = "forbidden"
    status_code = 403
