"""Plan catalog and user directory lookups backed by the entity store."""
from __future__ import annotations

import logging
from typing import List, Optional, Protocol

from .exceptions import ConflictError
from .models import Plan, User
from .store import EntityStore

logger = logging.getLogger(__name__)


class PlanCatalog(Protocol):
    """Read-mostly lookup of plan terms."""

    def get_by_id(self, plan_id: str) -> Optional[Plan]:
        ...

    def exists_by_name(self, name: str) -> bool:
        ...


class UserDirectory(Protocol):
    """Lookup of account holders."""

    def get_by_id(self, user_id: str) -> Optional[User]:
        ...


class StorePlanCatalog:
    """Plan catalog reading plans from the entity store."""

    def __init__(self, store: EntityStore) -> None:
        self._store = store

    def get_by_id(self, plan_id: str) -> Optional[Plan]:
        return self._store.get(Plan, plan_id)

    def exists_by_name(self, name: str) -> bool:
        return self._store.get_by_unique_field(Plan, "name", name) is not None

    def list_active(self) -> List[Plan]:
        plans = [plan for plan in self._store.list_all(Plan) if plan.active]
        return sorted(plans, key=lambda plan: (plan.sort_order, plan.name))

    def register(self, plan: Plan) -> Plan:
        """Persist a new plan, rejecting duplicate names."""

        if self.exists_by_name(plan.name):
            raise ConflictError(f"Plan with name '{plan.name}' already exists")
        stored = self._store.save(plan)
        logger.info("Plan registered %s name=%s price=%s %s", stored.id, stored.name, stored.price, stored.currency)
        return stored


class StoreUserDirectory:
    """User directory reading users from the entity store."""

    def __init__(self, store: EntityStore) -> None:
        self._store = store

    def get_by_id(self, user_id: str) -> Optional[User]:
        return self._store.get(User, user_id)

    def get_by_email(self, email: str) -> Optional[User]:
        return self._store.get_by_unique_field(User, "email", email.strip().lower())

    def register(self, user: User) -> User:
        if self.get_by_email(user.email) is not None:
            raise ConflictError(f"User with email '{user.email}' already exists")
        return self._store.save(user)


__all__ = ["PlanCatalog", "StorePlanCatalog", "StoreUserDirectory", "UserDirectory"]
