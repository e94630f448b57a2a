"""Entity store contract and the in-memory implementation."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Type, TypeVar
from uuid import uuid4

from .exceptions import ConflictError
from .models import (
    CURRENT_SUBSCRIPTION_STATUSES,
    Entity,
    Invoice,
    PaymentLog,
    PaymentOrder,
    Plan,
    Subscription,
    User,
)

E = TypeVar("E", bound=Entity)


@dataclass(frozen=True)
class UniqueConstraint:
    """Uniqueness rule over one field, optionally limited to matching rows."""

    name: str
    field: str
    where: Optional[Callable[[Entity], bool]] = None

    def applies_to(self, entity: Entity) -> bool:
        return self.where is None or self.where(entity)


UNIQUE_CONSTRAINTS: Dict[type, Tuple[UniqueConstraint, ...]] = {
    User: (UniqueConstraint("users_email_key", "email"),),
    Plan: (UniqueConstraint("plans_name_key", "name"),),
    Invoice: (UniqueConstraint("invoices_invoice_number_key", "invoice_number"),),
    PaymentLog: (UniqueConstraint("payment_logs_transaction_id_key", "transaction_id"),),
    PaymentOrder: (UniqueConstraint("payment_orders_external_order_id_key", "external_order_id"),),
    Subscription: (
        UniqueConstraint(
            "subscriptions_one_current_per_user",
            "user_id",
            where=lambda entity: entity.status in CURRENT_SUBSCRIPTION_STATUSES,
        ),
    ),
}


class EntityStore(Protocol):
    """Per-kind persistence used by every billing engine."""

    def get(self, kind: Type[E], entity_id: str) -> Optional[E]:
        ...

    def get_by_unique_field(self, kind: Type[E], field: str, value: object) -> Optional[E]:
        ...

    def query_by_field(self, kind: Type[E], field: str, value: object) -> List[E]:
        ...

    def list_all(self, kind: Type[E]) -> List[E]:
        ...

    def save(self, entity: E) -> E:
        ...

    def save_if_status(self, entity: E, expected_status: object) -> Optional[E]:
        ...

    def delete(self, entity: Entity) -> None:
        ...


def new_entity_id() -> str:
    return uuid4().hex


def _field_value(entity: Entity, field: str) -> object:
    value = getattr(entity, field)
    return getattr(value, "value", value)


class InMemoryEntityStore:
    """Thread-safe store suitable for tests and local development."""

    def __init__(
        self,
        *,
        constraints: Optional[Dict[type, Sequence[UniqueConstraint]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._constraints = UNIQUE_CONSTRAINTS if constraints is None else constraints
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entities: Dict[type, Dict[str, Entity]] = {}
        self._lock = RLock()

    def _table(self, kind: type) -> Dict[str, Entity]:
        return self._entities.setdefault(kind, {})

    def get(self, kind: Type[E], entity_id: str) -> Optional[E]:
        with self._lock:
            return self._table(kind).get(entity_id)  # type: ignore[return-value]

    def get_by_unique_field(self, kind: Type[E], field: str, value: object) -> Optional[E]:
        matches = self.query_by_field(kind, field, value)
        return matches[0] if matches else None

    def query_by_field(self, kind: Type[E], field: str, value: object) -> List[E]:
        wanted = getattr(value, "value", value)
        with self._lock:
            return [
                entity  # type: ignore[misc]
                for entity in self._table(kind).values()
                if _field_value(entity, field) == wanted
            ]

    def list_all(self, kind: Type[E]) -> List[E]:
        with self._lock:
            return list(self._table(kind).values())  # type: ignore[arg-type]

    def save(self, entity: E) -> E:
        kind = type(entity)
        with self._lock:
            now = self._clock()
            stored = entity.model_copy(
                update={
                    "id": entity.id or new_entity_id(),
                    "created_at": entity.created_at or now,
                    "updated_at": now,
                }
            )
            self._check_constraints(kind, stored)
            self._table(kind)[stored.id] = stored
            return stored

    def save_if_status(self, entity: E, expected_status: object) -> Optional[E]:
        """Save ``entity`` only while the stored copy still has ``expected_status``.

        Returns ``None`` without writing when the row is missing or its status
        changed since the caller read it.
        """

        if entity.id is None:
            raise ValueError("save_if_status requires a persisted entity")
        with self._lock:
            current = self._table(type(entity)).get(entity.id)
            if current is None or getattr(current, "status", None) != expected_status:
                return None
            return self.save(entity)

    def delete(self, entity: Entity) -> None:
        if entity.id is None:
            return
        with self._lock:
            self._table(type(entity)).pop(entity.id, None)

    def _check_constraints(self, kind: type, candidate: Entity) -> None:
        for constraint in self._constraints.get(kind, ()):
            if not constraint.applies_to(candidate):
                continue
            value = _field_value(candidate, constraint.field)
            for existing in self._table(kind).values():
                if existing.id == candidate.id or not constraint.applies_to(existing):
                    continue
                if _field_value(existing, constraint.field) == value:
                    raise ConflictError(
                        f"{kind.__name__} with {constraint.field} {value!r} already exists",
                        detail={"constraint": constraint.name},
                    )


__all__ = [
    "EntityStore",
    "InMemoryEntityStore",
    "UNIQUE_CONSTRAINTS",
    "UniqueConstraint",
    "new_entity_id",
]
