from types import SimpleNamespace

import pytest
from fastapi import HTTPException

import billing_backend.main as billing_main
from billing_backend import app_context
from billing_backend.app.billing import InMemoryEntityStore, StoreUserDirectory, User


@pytest.fixture
def users(monkeypatch) -> StoreUserDirectory:
    directory = StoreUserDirectory(InMemoryEntityStore())
    monkeypatch.setattr(billing_main, "get_billing_engines", lambda: SimpleNamespace(users=directory))
    return directory


def test_get_current_user_missing_header_is_unauthorized(users):
    with pytest.raises(HTTPException) as excinfo:
        billing_main.get_current_user(None)

    assert excinfo.value.status_code == 401


def test_get_current_user_unknown_id_is_unauthorized(users):
    with pytest.raises(HTTPException) as excinfo:
        billing_main.get_current_user("does-not-exist")

    assert excinfo.value.status_code == 401


def test_get_current_user_returns_registered_user(users):
    user = users.register(User(email="alice@example.com", name="Alice"))

    assert billing_main.get_current_user(user.id) == user


def test_app_context_routes_through_configured_dependency(users):
    user = users.register(User(email="bob@example.com", name="Bob"))

    assert app_context.get_current_user(user_id=user.id) == user


def test_app_context_requires_configuration(monkeypatch):
    monkeypatch.setattr(app_context, "_get_current_user", None)

    with pytest.raises(RuntimeError):
        app_context.get_current_user(user_id="anything")
