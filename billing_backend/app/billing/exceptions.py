"""Typed errors raised by the billing engines."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass(eq=False)
class BillingError(Exception):
    """Base class for every error surfaced by the billing engines."""

    message: str
    detail: Optional[Mapping[str, Any]] = None

    code: ClassVar[str] = "billing_error"
    status_code: ClassVar[int] = status.HTTP_400_BAD_REQUEST

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class NotFoundError(BillingError):
    """A referenced entity does not exist."""

    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND

    @classmethod
    def for_entity(cls, kind: str, field: str, value: object) -> "NotFoundError":
        return cls(
            f"{kind} not found with {field}: {value}",
            detail={"resource": kind, "field": field, "value": str(value)},
        )


class ConflictError(BillingError):
    """A uniqueness rule would be violated."""

    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class InvalidStateError(BillingError):
    """The operation is not valid for the entity's current status."""

    code = "invalid_state"
    status_code = status.HTTP_409_CONFLICT


class ValidationError(BillingError):
    """Caller supplied data fails a business rule."""

    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(BillingError):
    """The entity does not belong to the caller."""

    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class PaymentRequiredError(BillingError):
    """The plan requires a verified payment order before subscribing."""

    code = "payment_required"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class PaymentProcessingError(BillingError):
    """The payment gateway failed or raised while handling a request."""

    code = "payment_processing_error"
    status_code = status.HTTP_502_BAD_GATEWAY


__all__ = [
    "AuthorizationError",
    "BillingError",
    "ConflictError",
    "InvalidStateError",
    "NotFoundError",
    "PaymentProcessingError",
    "PaymentRequiredError",
    "ValidationError",
]
