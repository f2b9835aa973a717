"""
Application errors

Service functions raise these; main.py turns them into JSON responses
with the matching HTTP status code.
"""
from typing import Dict, Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}

    def to_dict(self) -> dict:
        body = {"status": "fail" if self.status_code < 500 else "error", "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(AppError):
    """A field constraint was violated. `errors` maps field name to reason."""
    status_code = 400


class AuthError(AppError):
    """Bad credentials, bad or expired token."""
    status_code = 401


class ForbiddenError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    """Unique constraint violated (tour name, user email, one review per tour)."""
    status_code = 409


class PaymentError(AppError):
    status_code = 502


def from_pydantic(exc) -> Dict[str, str]:
    """Flatten a pydantic ValidationError into {field: message}."""
    errors: Dict[str, str] = {}
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ())) or "__root__"
        msg = err.get("msg", "Invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        errors.setdefault(field, msg)
    return errors
