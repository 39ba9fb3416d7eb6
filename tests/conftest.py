# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest
from flask import Flask
from flask.testing import FlaskClient

from app import create_app
from todo_store import Identity, SessionStore, TodoStore

from .fakes import FakeGeminiModel

ADMIN_EMAIL = "admin@example.com"


@pytest.fixture()
def store(tmp_path: Path) -> TodoStore:
    return TodoStore(tmp_path / "todo.sqlite3")


@pytest.fixture()
def fake_model() -> FakeGeminiModel:
    return FakeGeminiModel()


@pytest.fixture()
def app(tmp_path: Path, fake_model: FakeGeminiModel) -> Flask:
    """
    App wired to a temp database and a fake Gemini model.

    Nothing here reaches Google: OAuth routes are not exercised, users are
    signed in by writing a server-side session token into the cookie session.
    """
    return create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "DATABASE_PATH": str(tmp_path / "app.sqlite3"),
            "ADMIN_EMAIL": ADMIN_EMAIL,
            "GEMINI_MODEL_CLIENT": fake_model,
        }
    )


@pytest.fixture()
def client(app: Flask) -> FlaskClient:
    return app.test_client()


def sign_in(app: Flask, client: FlaskClient, email: str, name: str | None = None) -> Identity:
    identity = app.extensions["todo_store"].upsert_user(email, name)
    sessions: SessionStore = app.extensions["todo_sessions"]
    token = sessions.create(identity.id)
    with client.session_transaction() as sess:
        sess["session_token"] = token
    return identity


@pytest.fixture()
def alice(app: Flask, client: FlaskClient) -> Identity:
    return sign_in(app, client, "alice@example.com", "Alice")
