"""
Tests for account management and password changes.
"""

import pytest

import orders
import users as accounts
from auth import verify_password
from errors import AuthenticationError, AuthorizationError, NotFoundError, ValidationError

PASSWORD = "secret123"


def new_account(**overrides):
    data = {"username": "driver3", "email": "Driver3@Test.Local", "password": "longenough", "role": "driver"}
    data.update(overrides)
    return data


def password_hash(conn, user_id):
    return conn.execute("SELECT password_hash FROM users WHERE id=?", [user_id]).fetchone()[0]


class TestListing:

    def test_office_lists_everyone(self, conn, users):
        listed = accounts.list_users(conn, users["office"])
        assert {u["username"] for u in listed} == set(users)
        assert all("password_hash" not in u for u in listed)

    def test_driver_cannot_list(self, conn, users):
        with pytest.raises(AuthorizationError):
            accounts.list_users(conn, users["driver1"])

    def test_drivers_exclude_inactive(self, conn, users):
        conn.execute("UPDATE users SET is_active=0 WHERE id=?", [users["driver2"]["id"]])
        assert [d["username"] for d in accounts.list_drivers(conn)] == ["driver1"]

    def test_get_own_profile_only(self, conn, users):
        me = accounts.get_user(conn, users["driver1"]["id"], users["driver1"])
        assert me["role"] == "driver"
        with pytest.raises(AuthorizationError):
            accounts.get_user(conn, users["driver2"]["id"], users["driver1"])
        with pytest.raises(NotFoundError):
            accounts.get_user(conn, 999, users["office"])


class TestCreateUser:

    def test_admin_creates(self, conn, users):
        user = accounts.create_user(conn, new_account(), users["admin"])
        assert user["email"] == "driver3@test.local"
        assert user["full_name"] == "driver3"
        assert user["is_active"] is True
        assert verify_password(password_hash(conn, user["id"]), "longenough")

    def test_office_cannot_create(self, conn, users):
        with pytest.raises(AuthorizationError):
            accounts.create_user(conn, new_account(), users["office"])

    @pytest.mark.parametrize("bad, field", [
        ({"username": "ab"}, "username"),
        ({"email": "not-an-email"}, "email"),
        ({"password": "12345"}, "password"),
        ({"role": "manager"}, "role"),
        ({"username": "Office"}, "username"),
        ({"email": "admin@test.local"}, "email"),
    ])
    def test_validation(self, conn, users, bad, field):
        with pytest.raises(ValidationError) as exc:
            accounts.create_user(conn, new_account(**bad), users["admin"])
        assert exc.value.field == field


class TestUpdateUser:

    def test_user_edits_own_profile(self, conn, users):
        user = accounts.update_user(conn, users["driver1"]["id"], {"full_name": "Dana Driver"}, users["driver1"])
        assert user["full_name"] == "Dana Driver"

    def test_user_cannot_edit_others(self, conn, users):
        with pytest.raises(AuthorizationError):
            accounts.update_user(conn, users["driver2"]["id"], {"full_name": "X"}, users["driver1"])
        with pytest.raises(AuthorizationError):
            accounts.update_user(conn, users["driver1"]["id"], {"full_name": "X"}, users["office"])

    def test_only_admin_changes_role(self, conn, users):
        with pytest.raises(AuthorizationError) as exc:
            accounts.update_user(conn, users["office"]["id"], {"role": "admin"}, users["office"])
        assert exc.value.details["fields"] == ["role"]

        user = accounts.update_user(conn, users["driver1"]["id"], {"role": "office"}, users["admin"])
        assert user["role"] == "office"

    def test_duplicate_email_rejected(self, conn, users):
        with pytest.raises(ValidationError):
            accounts.update_user(conn, users["driver1"]["id"], {"email": "driver2@test.local"}, users["driver1"])

    def test_admin_cannot_deactivate_self(self, conn, users):
        with pytest.raises(ValidationError):
            accounts.update_user(conn, users["admin"]["id"], {"is_active": False}, users["admin"])

    def test_empty_update(self, conn, users):
        with pytest.raises(ValidationError):
            accounts.update_user(conn, users["driver1"]["id"], {"nickname": "D"}, users["driver1"])


class TestChangePassword:

    def test_own_password_needs_current(self, conn, users):
        driver = users["driver1"]
        with pytest.raises(ValidationError):
            accounts.change_password(conn, driver["id"], {"new_password": "newsecret"}, driver)
        with pytest.raises(AuthenticationError):
            accounts.change_password(conn, driver["id"],
                                     {"current_password": "wrong", "new_password": "newsecret"}, driver)

        accounts.change_password(conn, driver["id"],
                                 {"current_password": PASSWORD, "new_password": "newsecret"}, driver)
        assert verify_password(password_hash(conn, driver["id"]), "newsecret")

    def test_admin_resets_without_current(self, conn, users):
        accounts.change_password(conn, users["driver1"]["id"], {"new_password": "resetpw"}, users["admin"])
        assert verify_password(password_hash(conn, users["driver1"]["id"]), "resetpw")

    def test_minimum_length(self, conn, users):
        with pytest.raises(ValidationError) as exc:
            accounts.change_password(conn, users["driver1"]["id"], {"new_password": "short"}, users["admin"])
        assert exc.value.field == "new_password"

    def test_office_cannot_change_others(self, conn, users):
        with pytest.raises(AuthorizationError):
            accounts.change_password(conn, users["driver1"]["id"], {"new_password": "resetpw"}, users["office"])


class TestDeleteUser:

    def test_unused_account_deleted(self, conn, users):
        result = accounts.delete_user(conn, users["driver2"]["id"], users["admin"])
        assert result["deactivated"] is False
        with pytest.raises(NotFoundError):
            accounts.get_user(conn, users["driver2"]["id"], users["admin"])

    def test_account_on_jobs_deactivated(self, conn, users):
        orders.create_order(conn, {
            "customer_name": "Jones", "address": "1 Main St", "delivery_date": "2026-03-02",
            "assigned_driver": users["driver1"]["id"],
        }, [{"product_name": "Mulch", "quantity": 1, "unit": "yards"}], users["office"])

        result = accounts.delete_user(conn, users["driver1"]["id"], users["admin"])

        assert result["deactivated"] is True
        assert accounts.get_user(conn, users["driver1"]["id"], users["admin"])["is_active"] is False

    def test_cannot_delete_self(self, conn, users):
        with pytest.raises(ValidationError):
            accounts.delete_user(conn, users["admin"]["id"], users["admin"])

    def test_admin_only(self, conn, users):
        with pytest.raises(AuthorizationError):
            accounts.delete_user(conn, users["driver2"]["id"], users["office"])
