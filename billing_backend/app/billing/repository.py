"""PostgreSQL implementation of the entity store."""
from __future__ import annotations

from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type, TypeVar

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .exceptions import ConflictError
from .models import Entity, Invoice, PaymentLog, PaymentOrder, Plan, Subscription, User
from .store import new_entity_id
from ...app_context import get_conn

E = TypeVar("E", bound=Entity)

TABLE_NAMES: Dict[type, str] = {
    User: "users",
    Plan: "plans",
    Subscription: "subscriptions",
    Invoice: "invoices",
    PaymentLog: "payment_logs",
    PaymentOrder: "payment_orders",
}

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    name TEXT,
    role TEXT NOT NULL DEFAULT 'user',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT users_email_key UNIQUE (email)
);

CREATE TABLE IF NOT EXISTS plans (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    price NUMERIC(12, 2) NOT NULL CHECK (price >= 0),
    currency CHAR(3) NOT NULL,
    billing_cycle TEXT NOT NULL,
    trial_days INTEGER NOT NULL DEFAULT 0 CHECK (trial_days >= 0),
    active BOOLEAN NOT NULL DEFAULT TRUE,
    features TEXT[] NOT NULL DEFAULT '{}',
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT plans_name_key UNIQUE (name)
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    user_email TEXT NOT NULL,
    plan_name TEXT NOT NULL,
    plan_currency CHAR(3) NOT NULL,
    status TEXT NOT NULL,
    start_date TIMESTAMPTZ NOT NULL,
    end_date TIMESTAMPTZ NOT NULL,
    trial_end_date TIMESTAMPTZ,
    next_billing_date TIMESTAMPTZ,
    auto_renew BOOLEAN NOT NULL DEFAULT TRUE,
    cancelled_at TIMESTAMPTZ,
    cancellation_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE UNIQUE INDEX IF NOT EXISTS subscriptions_one_current_per_user
    ON subscriptions (user_id)
    WHERE status IN ('active', 'trial');

CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    invoice_number TEXT NOT NULL,
    user_id TEXT NOT NULL,
    subscription_id TEXT,
    user_email TEXT NOT NULL,
    user_name TEXT,
    plan_name TEXT,
    amount NUMERIC(12, 2) NOT NULL,
    tax_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
    discount_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
    total_amount NUMERIC(12, 2) NOT NULL,
    currency CHAR(3) NOT NULL,
    status TEXT NOT NULL,
    invoice_date DATE NOT NULL,
    due_date DATE NOT NULL,
    paid_date DATE,
    billing_period_start DATE,
    billing_period_end DATE,
    notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT invoices_invoice_number_key UNIQUE (invoice_number),
    CONSTRAINT invoices_total_check CHECK (total_amount = amount + tax_amount - discount_amount)
);

CREATE TABLE IF NOT EXISTS payment_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    invoice_id TEXT,
    user_email TEXT NOT NULL,
    invoice_number TEXT,
    transaction_id TEXT NOT NULL,
    external_payment_id TEXT,
    amount NUMERIC(12, 2) NOT NULL,
    currency CHAR(3) NOT NULL,
    status TEXT NOT NULL,
    payment_method TEXT NOT NULL,
    payment_gateway TEXT NOT NULL,
    failure_reason TEXT,
    refunded_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
    refund_id TEXT,
    refund_reason TEXT,
    processed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT payment_logs_transaction_id_key UNIQUE (transaction_id)
);

CREATE TABLE IF NOT EXISTS payment_orders (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    amount NUMERIC(12, 2) NOT NULL,
    currency CHAR(3) NOT NULL,
    status TEXT NOT NULL,
    external_order_id TEXT NOT NULL,
    external_payment_id TEXT,
    external_signature TEXT,
    user_email TEXT NOT NULL,
    plan_name TEXT NOT NULL,
    failure_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT payment_orders_external_order_id_key UNIQUE (external_order_id)
);
"""

_MANAGED_COLUMNS = ("id", "created_at", "updated_at")


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _table_for(kind: type) -> str:
    try:
        return TABLE_NAMES[kind]
    except KeyError as exc:
        raise TypeError(f"No table registered for {kind.__name__}") from exc


def _columns_for(kind: Type[Entity]) -> List[str]:
    columns = [name for name in kind.model_fields if name not in _MANAGED_COLUMNS]
    columns.extend(kind.model_computed_fields)
    return columns


def _check_field(kind: Type[Entity], field: str) -> None:
    if field not in kind.model_fields and field not in kind.model_computed_fields:
        raise ValueError(f"{kind.__name__} has no field {field!r}")


def _adapt(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _entity_params(entity: Entity, columns: Sequence[str]) -> Dict[str, Any]:
    params = {column: _adapt(getattr(entity, column)) for column in columns}
    params["id"] = entity.id or new_entity_id()
    params["created_at"] = entity.created_at
    return params


def _row_to_entity(kind: Type[E], row: Optional[dict]) -> Optional[E]:
    if not row:
        return None
    return kind.model_validate(dict(row))


class PostgresEntityStore:
    """Concrete entity store persisting billing models in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def create_schema(self) -> None:
        with self._cursor() as cursor:
            cursor.execute(SCHEMA_SQL)

    def get(self, kind: Type[E], entity_id: str) -> Optional[E]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM {_table_for(kind)} WHERE id = %s LIMIT 1",
                (entity_id,),
            )
            return _row_to_entity(kind, cursor.fetchone())

    def get_by_unique_field(self, kind: Type[E], field: str, value: object) -> Optional[E]:
        _check_field(kind, field)
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM {_table_for(kind)} WHERE {field} = %s LIMIT 1",
                (_adapt(value),),
            )
            return _row_to_entity(kind, cursor.fetchone())

    def query_by_field(self, kind: Type[E], field: str, value: object) -> List[E]:
        _check_field(kind, field)
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM {_table_for(kind)} WHERE {field} = %s ORDER BY created_at",
                (_adapt(value),),
            )
            rows = cursor.fetchall() or []
            return [kind.model_validate(dict(row)) for row in rows]

    def list_all(self, kind: Type[E]) -> List[E]:
        with self._cursor() as cursor:
            cursor.execute(f"SELECT * FROM {_table_for(kind)} ORDER BY created_at")
            rows = cursor.fetchall() or []
            return [kind.model_validate(dict(row)) for row in rows]

    def save(self, entity: E) -> E:
        kind = type(entity)
        table = _table_for(kind)
        columns = _columns_for(kind)
        column_list = ", ".join(("id", *columns, "created_at", "updated_at"))
        placeholders = ", ".join(f"%({column})s" for column in ("id", *columns))
        updates = ",\n                    ".join(f"{column} = EXCLUDED.{column}" for column in columns)
        query = f"""
                INSERT INTO {table} ({column_list})
                VALUES ({placeholders}, COALESCE(%(created_at)s, NOW()), NOW())
                ON CONFLICT (id) DO UPDATE SET
                    {updates},
                    updated_at = NOW()
                RETURNING *
                """
        try:
            with self._cursor() as cursor:
                cursor.execute(query, _entity_params(entity, columns))
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
            raise ConflictError(
                f"{kind.__name__} violates a uniqueness constraint",
                detail={"constraint": constraint},
            ) from exc
        stored = _row_to_entity(kind, row)
        if stored is None:
            raise RuntimeError(f"Failed to persist {kind.__name__}")
        return stored

    def save_if_status(self, entity: E, expected_status: object) -> Optional[E]:
        """Update ``entity`` only while its row still has ``expected_status``."""

        if entity.id is None:
            raise ValueError("save_if_status requires a persisted entity")
        kind = type(entity)
        columns = _columns_for(kind)
        assignments = ",\n                    ".join(f"{column} = %({column})s" for column in columns)
        query = f"""
                UPDATE {_table_for(kind)} SET
                    {assignments},
                    updated_at = NOW()
                WHERE id = %(id)s AND status = %(expected_status)s
                RETURNING *
                """
        params = _entity_params(entity, columns)
        params["expected_status"] = _adapt(expected_status)
        try:
            with self._cursor() as cursor:
                cursor.execute(query, params)
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
            raise ConflictError(
                f"{kind.__name__} violates a uniqueness constraint",
                detail={"constraint": constraint},
            ) from exc
        return _row_to_entity(kind, row)

    def delete(self, entity: Entity) -> None:
        if entity.id is None:
            return
        with self._cursor() as cursor:
            cursor.execute(f"DELETE FROM {_table_for(type(entity))} WHERE id = %s", (entity.id,))


__all__ = ["PostgresEntityStore", "SCHEMA_SQL", "TABLE_NAMES", "managed_connection"]
