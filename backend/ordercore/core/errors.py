"""Error taxonomy shared by intake, reconciliation and settlement.

Each class is an ``HTTPException`` so services can raise it directly and the
app-level handler renders ``{"detail", "code", "data", "retryable"}``. ``retryable``
marks the only kind an operator (or a provider re-delivery) should retry as-is.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class CoreError(HTTPException):
    status_code_default: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"
    retryable: bool = False

    def __init__(
        self,
        detail: Any = None,
        *,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=self.status_code_default, detail=detail, headers=headers)
        self.data = data


class ValidationFailed(CoreError):
    status_code_default = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class ConflictError(CoreError):
    status_code_default = status.HTTP_409_CONFLICT
    code = "conflict"


class InvalidTransition(ConflictError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str, *, subject: str = "order") -> None:
        super().__init__(
            f"Invalid {subject} status transition: {current} -> {target}",
            data={"from": current, "to": target},
        )
        self.current = current
        self.target = target


class InsufficientInventory(ConflictError):
    code = "insufficient_inventory"

    def __init__(self, insufficient_items: list[dict[str, Any]]) -> None:
        names = ", ".join(str(item.get("name") or item.get("id")) for item in insufficient_items)
        super().__init__(
            f"Insufficient inventory for {names}",
            data={"insufficient_items": insufficient_items},
        )
        self.insufficient_items = insufficient_items


class Unauthorized(CoreError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    code = "unauthorized"


class Forbidden(CoreError):
    status_code_default = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class NotFound(CoreError):
    status_code_default = status.HTTP_404_NOT_FOUND
    code = "not_found"

    def __init__(self, resource: str, **kwargs: Any) -> None:
        super().__init__(f"{resource} not found", **kwargs)


class UpstreamFailure(CoreError):
    status_code_default = status.HTTP_502_BAD_GATEWAY
    code = "upstream_failure"
    retryable = True


class InternalFailure(CoreError):
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "internal_error"


class RateLimited(CoreError):
    status_code_default = status.HTTP_429_TOO_MANY_REQUESTS
    code = "rate_limited"
