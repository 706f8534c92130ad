"""Auth API: login, listing, current user and permission-guarded writes."""

from __future__ import annotations

import re
from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from auth import security
from auth.service import parse_search_terms
from main import create_app

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(scope="module")
def password_hash():
    return security.hash_password("correct horse")


class FakeUsersDb:
    """
    Answers the statements the auth feature sends, keyed on their SQL shape.
    """

    def __init__(self, password_hash: str) -> None:
        self.users = [
            {
                "id": 1,
                "tenant_id": None,
                "username": "admin",
                "role_id": 1,
                "created_at": CREATED,
                "updated_at": CREATED,
                "auth_token": password_hash,
                "role": "admin",
            },
            {
                "id": 2,
                "tenant_id": None,
                "username": "viewer",
                "role_id": 2,
                "created_at": CREATED,
                "updated_at": CREATED,
                "auth_token": password_hash,
                "role": "viewer",
            },
        ]
        self.permissions = [
            {"role": "admin", "feature_key": "users", "read_access": True, "write_access": True,
             "edit_access": True, "delete_access": False},
            {"role": "viewer", "feature_key": "users", "read_access": True, "write_access": False,
             "edit_access": False, "delete_access": False},
        ]
        self.inserted: list[list] = []

    def _public(self, row: dict, *, with_secret: bool = False) -> dict:
        hidden = set() if with_secret else {"auth_token"}
        return {key: value for key, value in row.items() if key not in hidden}

    def __call__(self, sql: str, args: list):
        if sql.startswith("SELECT") and "FROM roles_permissions" in sql:
            return self.permissions
        if sql.startswith("SELECT") and "ROW_NUMBER()" in sql:
            rows = self.users
            if "LIKE $1" in sql:
                needle = args[0].strip("%")
                rows = [row for row in rows if needle in row["username"]]
            return [
                dict(self._public(row), sr=index, total=len(rows))
                for index, row in enumerate(rows, start=1)
            ]
        if sql.startswith("SELECT") and "users.username = $1" in sql:
            return [self._public(row, with_secret=True) for row in self.users if row["username"] == args[0]]
        if sql.startswith("SELECT") and "users.id = $1" in sql:
            return [self._public(row) for row in self.users if row["id"] == args[0]]
        if sql.startswith("INSERT INTO users"):
            self.inserted.append(args)
            username, _, tenant_id, role_id = args
            return [
                {"id": 3, "tenant_id": tenant_id, "username": username, "role_id": role_id,
                 "created_at": CREATED, "updated_at": CREATED}
            ]
        if sql.startswith("UPDATE users"):
            user_id = args[-1]
            return [self._public(row) for row in self.users if row["id"] == user_id]
        return []


@pytest.fixture
def users_db(pool, password_hash):
    db = FakeUsersDb(password_hash)
    pool.responder = db
    return db


@pytest.fixture
def app(settings, manager, logger, users_db):
    return create_app(settings, database=manager, logger=logger)


def client_for(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def bearer(settings, user_id, username, role):
    token = security.build_access_token(settings.auth, user_id=user_id, username=username, role=role)
    return {"Authorization": f"Bearer {token}"}


def all_sql(pool):
    return [sql for raw in pool.connections for sql, _, _ in raw.queries]


@pytest.mark.asyncio
async def test_login_success(app, settings, pool):
    async with client_for(app) as client:
        response = await client.post("/auth/login", json={"username": "admin", "password": "correct horse"})

    assert response.status_code == 200
    body = response.json()
    assert body["error"] is False
    assert body["message"] == "Logged in."
    claims = security.decode_access_token(settings.auth, body["token"])
    assert claims["sub"] == "1"
    assert claims["role"] == "admin"

    assert all_sql(pool)[0] == (
        "SELECT users.id, users.tenant_id, users.username, users.role_id, users.created_at, "
        "users.updated_at, users.auth_token, users_roles.name AS role FROM users "
        "LEFT JOIN users_roles ON users_roles.id = users.role_id "
        "WHERE users.username = $1 LIMIT 1;"
    )
    assert pool.connections[0].log[-1] == "COMMIT"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"username": "admin", "password": "wrong"},
        {"username": "ghost", "password": "correct horse"},
    ],
)
async def test_login_failure(app, pool, payload):
    async with client_for(app) as client:
        response = await client.post("/auth/login", json=payload)

    assert response.status_code == 401
    assert response.json() == {"error": True, "message": "Invalid username or password."}
    assert pool.connections[0].log[-1] == "ROLLBACK"


@pytest.mark.asyncio
async def test_login_requires_fields(app):
    async with client_for(app) as client:
        response = await client.post("/auth/login", json={"username": "admin"})
    assert response.status_code == 422
    assert response.json()["error"] is True


@pytest.mark.asyncio
async def test_list_users_with_search(app, pool):
    async with client_for(app) as client:
        response = await client.get("/auth/list", params={"search": "username:adm", "limit": 500, "offset": 0})

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Users fetched."
    assert [row["username"] for row in body["data"]] == ["admin"]
    assert body["data"][0]["sr"] == 1
    assert "auth_token" not in body["data"][0]

    sql, args, _ = pool.connections[0].queries[0]
    assert "WHERE users.username LIKE $1" in sql
    assert sql.endswith("ORDER BY users.created_at DESC LIMIT 100 OFFSET 0;")
    assert args == ["%adm%"]


@pytest.mark.asyncio
async def test_list_users_rejects_unknown_search_column(app, pool):
    async with client_for(app) as client:
        response = await client.get("/auth/list", params={"search": "auth_token:x"})

    assert response.status_code == 400
    assert response.json() == {"error": True, "message": "Cannot search on 'auth_token'."}
    assert pool.connections[0].queries == []


def test_parse_search_terms():
    assert parse_search_terms(["Username: jo "]) == {"username": "%jo%"}
    assert parse_search_terms([]) == {}


@pytest.mark.asyncio
async def test_me_requires_token(app):
    async with client_for(app) as client:
        missing = await client.get("/auth/me")
        garbage = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        wrong_scheme = await client.get("/auth/me", headers={"Authorization": "Basic abc"})

    assert missing.status_code == 401
    assert missing.json() == {"error": True, "message": "Missing Authorization header."}
    assert garbage.status_code == 401
    assert garbage.json()["message"] == "Invalid access token."
    assert wrong_scheme.status_code == 401


@pytest.mark.asyncio
async def test_me_returns_user_without_secret(app, settings):
    async with client_for(app) as client:
        response = await client.get("/auth/me", headers=bearer(settings, 1, "admin", "admin"))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["username"] == "admin"
    assert data["role"] == "admin"
    assert "auth_token" not in data


@pytest.mark.asyncio
async def test_create_user_needs_permission(app, settings, pool, users_db):
    async with client_for(app) as client:
        response = await client.post(
            "/auth/users",
            json={"username": "newbie", "password": "long enough"},
            headers=bearer(settings, 2, "viewer", "viewer"),
        )

    assert response.status_code == 403
    assert response.json() == {"error": True, "message": "Not allowed to create users."}
    assert users_db.inserted == []


@pytest.mark.asyncio
async def test_create_user(app, settings, pool, users_db):
    async with client_for(app) as client:
        response = await client.post(
            "/auth/users",
            json={"username": " newbie ", "password": "long enough", "role_id": 2},
            headers=bearer(settings, 1, "admin", "admin"),
        )

    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "User created."
    assert body["data"]["username"] == "newbie"
    assert "auth_token" not in body["data"]

    (args,) = users_db.inserted
    assert args[0] == "newbie"
    # The stored token is a bcrypt hash of the password, never the password.
    assert args[1] != "long enough"
    assert security.verify_password("long enough", args[1])

    insert_sql = [sql for sql in all_sql(pool) if sql.startswith("INSERT")]
    assert re.match(r"^INSERT INTO users \(username, auth_token, tenant_id, role_id\) VALUES \(\$1, \$2, \$3, \$4\)", insert_sql[0])
    assert pool.connections[0].log[-1] == "COMMIT"


@pytest.mark.asyncio
async def test_create_user_conflict(app, settings, users_db):
    async with client_for(app) as client:
        response = await client.post(
            "/auth/users",
            json={"username": "viewer", "password": "long enough"},
            headers=bearer(settings, 1, "admin", "admin"),
        )
    assert response.status_code == 409
    assert users_db.inserted == []


@pytest.mark.asyncio
async def test_update_user_username_conflict(app, settings, pool):
    async with client_for(app) as client:
        response = await client.patch(
            "/auth/users/2",
            json={"username": " admin "},
            headers=bearer(settings, 1, "admin", "admin"),
        )

    assert response.status_code == 409
    assert response.json() == {"error": True, "message": "Username is already taken."}
    assert not [sql for sql in all_sql(pool) if sql.startswith("UPDATE")]
    assert pool.connections[0].log[-1] == "ROLLBACK"


@pytest.mark.asyncio
async def test_update_user_keeps_own_username(app, settings, pool):
    async with client_for(app) as client:
        response = await client.patch(
            "/auth/users/2",
            json={"username": "viewer"},
            headers=bearer(settings, 1, "admin", "admin"),
        )

    assert response.status_code == 200
    assert [sql for sql in all_sql(pool) if sql.startswith("UPDATE")]


@pytest.mark.asyncio
async def test_update_user(app, settings, pool):
    async with client_for(app) as client:
        response = await client.patch(
            "/auth/users/2",
            json={"role_id": 1},
            headers=bearer(settings, 1, "admin", "admin"),
        )

    assert response.status_code == 200
    assert response.json()["data"]["id"] == 2
    (update_sql, args) = next((sql, args) for sql, args, _ in pool.connections[0].queries if sql.startswith("UPDATE"))
    assert update_sql.startswith("UPDATE users SET role_id = $1, updated_at = $2 WHERE users.id = $3 RETURNING")
    assert args[0] == 1
    assert args[-1] == 2


@pytest.mark.asyncio
async def test_update_user_missing(app, settings):
    async with client_for(app) as client:
        empty = await client.patch("/auth/users/2", json={}, headers=bearer(settings, 1, "admin", "admin"))
        missing = await client.patch("/auth/users/99", json={"role_id": 1}, headers=bearer(settings, 1, "admin", "admin"))

    assert empty.status_code == 400
    assert missing.status_code == 404
    assert missing.json() == {"error": True, "message": "User not found."}


@pytest.mark.asyncio
async def test_permissions_listing(app, settings):
    async with client_for(app) as client:
        response = await client.get("/permissions", headers=bearer(settings, 2, "viewer", "viewer"))

    assert response.status_code == 200
    assert response.json()["data"] == {
        "admin": {"users": ["read", "create", "edit"]},
        "viewer": {"users": ["read"]},
    }
