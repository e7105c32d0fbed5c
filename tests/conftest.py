import pytest
from fastapi.testclient import TestClient

import main
from identity import IdentityStore
from store import SchoolStore

ADMIN = {"id": "1", "name": "John Admin", "email": "admin@school.com", "role": "system_admin"}
TEACHER = {"id": "7", "name": "Tara Teacher", "email": "tara@school.com", "role": "teacher"}
PARENT = {"id": "9", "name": "Pat Parent", "email": "pat@school.com", "role": "parent"}


@pytest.fixture
def store():
    return SchoolStore.with_demo_data()


@pytest.fixture
def identity():
    return IdentityStore()


@pytest.fixture
def client(store, identity):
    main.app.dependency_overrides[main.get_db] = lambda: store
    main.app.dependency_overrides[main.get_identity] = lambda: identity
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def login_as(client):
    def login(user):
        res = client.post("/auth/login", json=user)
        assert res.status_code == 200, res.text
        return {"Authorization": f"Bearer {res.json()['access_token']}"}

    return login
