import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from schemas import AuthedUser


@pytest.fixture
def db():
    handle = mongomock.MongoClient()["recyclehub_test"]
    database.ensure_indexes(handle)
    return handle


@pytest.fixture
def ids():
    counter = itertools.count(1)
    database.set_id_factory(lambda: f"id{next(counter)}")
    yield
    database.set_id_factory(None)


def make_user(db, name, role="user"):
    doc = database.create_document(db, "user", "userID", {
        "name": name,
        "email": f"{name.lower()}@example.com",
        "passwordHash": "x",
        "role": role,
        "token": f"token-{name.lower()}",
        "badges": [],
    })
    return AuthedUser(id=doc["userID"], role=role, name=name)


@pytest.fixture
def giver(db):
    return make_user(db, "Gina")


@pytest.fixture
def collector(db):
    return make_user(db, "Carlo", role="collector")


@pytest.fixture
def stranger(db):
    return make_user(db, "Sam")


@pytest.fixture
def client(db):
    import main

    main.app.dependency_overrides[main.get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth(user):
    return {"Authorization": f"Bearer token-{user.name.lower()}"}
