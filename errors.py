"""
Domain errors

Raised by the domain modules and rendered by a single handler in main.py.
None of them is fatal; each maps to a structured 4xx response.
"""


class DomainError(Exception):
    status_code = 400
    kind = "DomainError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"detail": self.message, "error": self.kind}


class ValidationFailed(DomainError):
    status_code = 400
    kind = "ValidationFailed"


class InvalidAmount(ValidationFailed):
    kind = "InvalidAmount"


class UnknownTransactionKind(ValidationFailed):
    kind = "UnknownTransactionKind"


class NotFound(DomainError):
    status_code = 404
    kind = "NotFound"


class Forbidden(DomainError):
    status_code = 403
    kind = "Forbidden"


class InvalidTransition(DomainError):
    status_code = 409
    kind = "InvalidTransition"


class Conflict(DomainError):
    status_code = 409
    kind = "Conflict"


def describe_validation_error(exc) -> str:
    """Flatten a pydantic ValidationError into one line."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", ""))
    return "; ".join(parts) or "Invalid payload"
