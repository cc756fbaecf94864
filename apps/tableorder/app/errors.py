from __future__ import annotations

from typing import Any, Dict, List, Optional


class OrderError(Exception):
    """
    Base for every failure raised by the ordering core. `status_code` and
    `detail` are what the HTTP layer surfaces to the caller.
    """

    status_code = 400
    default_detail = "order error"

    def __init__(self, detail: Optional[Any] = None):
        self.detail = detail if detail is not None else self.default_detail
        super().__init__(str(self.detail))


class ValidationError(OrderError):
    status_code = 400
    default_detail = "validation failed"

    def __init__(self, message: str = "validation failed", errors: Optional[List[Dict[str, str]]] = None):
        self.errors = list(errors or [])
        detail: Any = {"message": message, "errors": self.errors} if self.errors else message
        super().__init__(detail)

    @classmethod
    def field(cls, field: str, message: str) -> "ValidationError":
        return cls("validation failed", [{"field": field, "message": message}])


class Unauthorized(OrderError):
    # Never says which entity or whose it is.
    status_code = 403
    default_detail = "forbidden"

    def __init__(self):
        super().__init__(self.default_detail)


class NotFound(OrderError):
    status_code = 404
    default_detail = "not found"


class InvalidTransition(OrderError):
    status_code = 409

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"cannot move order from {current} to {target}")


class PreconditionFailed(OrderError):
    status_code = 409
    default_detail = "precondition failed"


class SubmitGateClosed(PreconditionFailed):
    default_detail = "order submission is currently disabled"


class NoRecurringOrders(PreconditionFailed):
    default_detail = "no recurring orders for this table"


class TransientStorageError(OrderError):
    status_code = 503
    default_detail = "storage unavailable"
