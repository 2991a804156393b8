import os

# must be set before config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ.pop("ADMIN_EMAIL", None)
os.environ.pop("ADMIN_PASSWORD", None)

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

import models  # noqa: F401
from db import get_session, make_engine
from main import app
from models import Resource, ResourceCategory, Role, User
from routers.auth import create_access_token, hash_password

PASSWORD = "secret123"


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(session):
    # handlers share the test's session so assertions see their writes
    def _get_session():
        return session

    app.dependency_overrides[get_session] = _get_session
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(session):
    def _make(email, role=Role.customer, first_name="Test", last_name="User", **extra):
        user = User(
            first_name=first_name,
            last_name=last_name,
            email=email,
            password_hash=hash_password(PASSWORD),
            role=role,
            **extra,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin@example.com", role=Role.admin, first_name="Ada", last_name="Admin")


@pytest.fixture
def alice(make_user):
    return make_user("alice@example.com", first_name="Alice", last_name="Adams")


@pytest.fixture
def bob(make_user):
    return make_user("bob@example.com", first_name="Bob", last_name="Brown")


@pytest.fixture
def make_resource(session):
    def _make(name="Laptop", quantity=1, owner=None, category=ResourceCategory.hardware, is_verified=True, **extra):
        resource = Resource(
            name=name,
            category=category,
            quantity=quantity,
            available_qty=quantity,
            owner_id=owner.id if owner else None,
            is_verified=is_verified,
            **extra,
        )
        session.add(resource)
        session.commit()
        session.refresh(resource)
        return resource

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    return _headers
