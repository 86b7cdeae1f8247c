"""Integration tests for user, account, alias and default sender administration."""

import inspect

import pytest
from fastapi.testclient import TestClient

from w9mail import app as app_module
from w9mail.api import routes
from w9mail.service.runtime import get_runtime
from w9mail.storage.models import Role, SenderKind

ADMIN_EMAIL = "admin@w9.test"
ADMIN_PASSWORD = "admin-password-1"


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def admin_headers(client):
    get_runtime().auth.ensure_default_admin()
    token = client.post(
        "/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}
    ).json()["token"]
    client.post(
        "/api/auth/change-password",
        json={"currentPassword": ADMIN_PASSWORD, "newPassword": "admin-password-2"},
        headers=_bearer(token),
    )
    return _bearer(token)


@pytest.fixture
def user_headers(client):
    runtime = get_runtime()
    runtime.store.create_user("user@w9.test", runtime.hasher.hash("user-password"), role=Role.USER)
    token = client.post(
        "/api/auth/login", json={"email": "user@w9.test", "password": "user-password"}
    ).json()["token"]
    return _bearer(token)


def _create_account(client, headers, email="box@w9.test", **extra):
    payload = {"email": email, "displayName": "Box", "password": "smtp-secret", **extra}
    return client.post("/api/accounts", json=payload, headers=headers)


def _create_alias(client, headers, account_id, alias_email="hello@w9.test", **extra):
    payload = {"accountId": account_id, "aliasEmail": alias_email, **extra}
    return client.post("/api/aliases", json=payload, headers=headers)


class TestUsers:
    def test_create_list_update_delete(self, client, admin_headers):
        created = client.post(
            "/api/users",
            json={"email": "Dev@W9.test", "password": "dev-password", "role": "dev"},
            headers=admin_headers,
        )
        assert created.status_code == 201
        user = created.json()
        assert user["email"] == "dev@w9.test"
        assert user["role"] == "dev"

        emails = [u["email"] for u in client.get("/api/users", headers=admin_headers).json()]
        assert set(emails) == {ADMIN_EMAIL, "dev@w9.test"}

        updated = client.patch(
            f"/api/users/{user['id']}",
            json={"role": "admin", "mustChangePassword": True},
            headers=admin_headers,
        )
        assert updated.json()["role"] == "admin"
        assert updated.json()["mustChangePassword"] is True

        assert client.delete(f"/api/users/{user['id']}", headers=admin_headers).status_code == 204
        assert client.delete(f"/api/users/{user['id']}", headers=admin_headers).status_code == 404

    def test_default_role_is_user(self, client, admin_headers):
        resp = client.post(
            "/api/users", json={"email": "a@x.com", "password": "password1"}, headers=admin_headers
        )

        assert resp.json()["role"] == "user"
        assert resp.json()["mustChangePassword"] is False

    def test_duplicate_email_is_409(self, client, admin_headers):
        resp = client.post(
            "/api/users", json={"email": ADMIN_EMAIL, "password": "password1"}, headers=admin_headers
        )

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_unknown_role_is_400(self, client, admin_headers):
        resp = client.post(
            "/api/users",
            json={"email": "a@x.com", "password": "password1", "role": "root"},
            headers=admin_headers,
        )

        assert resp.status_code == 400

    def test_admin_cannot_delete_self(self, client, admin_headers):
        me = client.get("/api/auth/me", headers=admin_headers).json()

        resp = client.delete(f"/api/users/{me['id']}", headers=admin_headers)

        assert resp.status_code == 400
        assert get_runtime().store.get_user(me["id"]) is not None

    def test_update_unknown_user_is_404(self, client, admin_headers):
        resp = client.patch("/api/users/missing", json={"role": "dev"}, headers=admin_headers)

        assert resp.status_code == 404

    def test_non_admin_is_403(self, client, user_headers):
        assert client.get("/api/users", headers=user_headers).status_code == 403

    def test_password_reset_by_admin_clears_forced_change(self, client, admin_headers):
        runtime = get_runtime()
        user = runtime.store.create_user(
            "b@x.com", runtime.hasher.hash("old-password"), must_change_password=True
        )

        resp = client.patch(
            f"/api/users/{user.id}", json={"password": "new-password"}, headers=admin_headers
        )

        assert resp.json()["mustChangePassword"] is False
        login = client.post("/api/auth/login", json={"email": "b@x.com", "password": "new-password"})
        assert login.status_code == 200


class TestAccounts:
    def test_create_and_list(self, client, admin_headers):
        resp = _create_account(client, admin_headers)

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "success"
        assert body["account"]["email"] == "box@w9.test"
        assert body["account"]["isActive"] is True
        assert "password" not in body["account"]

        listed = client.get("/api/accounts", headers=admin_headers).json()
        assert [a["displayName"] for a in listed] == ["Box"]

    def test_duplicate_is_soft_error(self, client, admin_headers):
        _create_account(client, admin_headers)

        resp = _create_account(client, admin_headers)

        assert resp.status_code == 200
        assert resp.json() == {
            "status": "error",
            "message": "Email address already exists",
            "account": None,
        }

    def test_regular_user_can_list_but_not_create(self, client, admin_headers, user_headers):
        _create_account(client, admin_headers)

        assert len(client.get("/api/accounts", headers=user_headers).json()) == 1
        assert _create_account(client, user_headers, "other@w9.test").status_code == 403

    def test_update_and_delete(self, client, admin_headers):
        account = _create_account(client, admin_headers).json()["account"]

        updated = client.patch(
            f"/api/accounts/{account['id']}", json={"isActive": False}, headers=admin_headers
        )
        assert updated.json()["isActive"] is False

        assert client.delete(f"/api/accounts/{account['id']}", headers=admin_headers).status_code == 204
        assert client.delete(f"/api/accounts/{account['id']}", headers=admin_headers).status_code == 404


class TestAliases:
    def test_create_reports_owning_account(self, client, admin_headers):
        account = _create_account(client, admin_headers).json()["account"]

        resp = _create_alias(client, admin_headers, account["id"], displayName="Hello")

        assert resp.status_code == 201
        body = resp.json()
        assert body["aliasEmail"] == "hello@w9.test"
        assert body["accountEmail"] == "box@w9.test"
        assert body["accountIsActive"] is True

    def test_unknown_account_is_400(self, client, admin_headers):
        resp = _create_alias(client, admin_headers, "missing")

        assert resp.status_code == 400

    def test_duplicate_alias_is_409(self, client, admin_headers):
        account = _create_account(client, admin_headers).json()["account"]
        _create_alias(client, admin_headers, account["id"])

        resp = _create_alias(client, admin_headers, account["id"])

        assert resp.status_code == 409

    def test_patch_display_name_only_when_sent(self, client, admin_headers):
        account = _create_account(client, admin_headers).json()["account"]
        alias = _create_alias(client, admin_headers, account["id"], displayName="Hello").json()

        kept = client.patch(f"/api/aliases/{alias['id']}", json={"isActive": False}, headers=admin_headers)
        assert kept.json()["displayName"] == "Hello"
        assert kept.json()["isActive"] is False

        cleared = client.patch(
            f"/api/aliases/{alias['id']}", json={"displayName": None}, headers=admin_headers
        )
        assert cleared.json()["displayName"] is None

    def test_delete_account_removes_aliases(self, client, admin_headers):
        account = _create_account(client, admin_headers).json()["account"]
        _create_alias(client, admin_headers, account["id"])

        client.delete(f"/api/accounts/{account['id']}", headers=admin_headers)

        assert client.get("/api/aliases", headers=admin_headers).json() == []


class TestDefaultSender:
    def test_unset_is_null(self, client, admin_headers):
        resp = client.get("/api/settings/default-sender", headers=admin_headers)

        assert resp.status_code == 200
        assert resp.json() is None

    def test_set_alias_and_read_back(self, client, admin_headers):
        account = _create_account(client, admin_headers).json()["account"]
        alias = _create_alias(client, admin_headers, account["id"], displayName="Hello").json()

        put = client.put(
            "/api/settings/default-sender",
            json={"senderType": "alias", "senderId": alias["id"]},
            headers=admin_headers,
        )
        got = client.get("/api/settings/default-sender", headers=admin_headers)

        assert put.status_code == 200
        assert got.json() == put.json()
        assert got.json()["senderType"] == "alias"
        assert got.json()["email"] == "hello@w9.test"
        assert got.json()["viaDisplay"]

    def test_inactive_target_is_400(self, client, admin_headers):
        account = _create_account(client, admin_headers, isActive=False).json()["account"]

        resp = client.put(
            "/api/settings/default-sender",
            json={"senderType": "account", "senderId": account["id"]},
            headers=admin_headers,
        )

        assert resp.status_code == 400
        assert get_runtime().store.get_default_sender() is None

    def test_unknown_type_is_400(self, client, admin_headers):
        resp = client.put(
            "/api/settings/default-sender",
            json={"senderType": "group", "senderId": "x"},
            headers=admin_headers,
        )

        assert resp.status_code == 400

    def test_dangling_default_is_500(self, client, admin_headers):
        get_runtime().store.upsert_default_sender(SenderKind.ACCOUNT, "vanished")

        resp = client.get("/api/settings/default-sender", headers=admin_headers)

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "server_error"

    def test_deleting_target_clears_default(self, client, admin_headers):
        account = _create_account(client, admin_headers).json()["account"]
        client.put(
            "/api/settings/default-sender",
            json={"senderType": "account", "senderId": account["id"]},
            headers=admin_headers,
        )

        client.delete(f"/api/accounts/{account['id']}", headers=admin_headers)

        assert client.get("/api/settings/default-sender", headers=admin_headers).json() is None


@pytest.mark.parametrize(
    "handler",
    [
        routes.get_principal,
        routes.list_users,
        routes.create_user,
        routes.list_accounts,
        routes.create_alias,
        routes.set_default_sender,
    ],
)
def test_store_bound_handlers_run_in_threadpool(handler):
    assert not inspect.iscoroutinefunction(handler)
