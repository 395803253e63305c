"""
HTTP tests through the Flask test client.
"""

import pytest

PASSWORD = "secret123"


def job_body(**overrides):
    body = {
        "customer_name": "Johnson Residence",
        "address": "123 Maple Street",
        "delivery_date": "2026-03-02",
        "products": [{"product_name": "Premium Bark Mulch", "quantity": 3, "unit": "yards", "unit_price": 10}],
    }
    body.update(overrides)
    return body


class TestHealthAndAuth:

    def test_health_is_public(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "ok"
        assert data["price_schema"]["version"] == "dual"

    def test_login_with_username(self, client, users):
        resp = client.post("/api/auth/login", json={"username": "Office", "password": PASSWORD})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["user"]["role"] == "office"
        assert "password_hash" not in data["user"]

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.get_json()["user"]["username"] == "office"

    def test_login_with_email(self, client, users):
        resp = client.post("/api/auth/login", json={"email": "admin@test.local", "password": PASSWORD})
        assert resp.status_code == 200

    def test_bad_password(self, client, users):
        resp = client.post("/api/auth/login", json={"username": "office", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid credentials"

    def test_missing_token(self, client):
        assert client.get("/api/jobs").status_code == 401

    def test_tampered_token(self, client, auth_headers):
        headers = auth_headers("office")
        headers["Authorization"] += "0"
        assert client.get("/api/jobs", headers=headers).status_code == 401

    def test_unknown_route(self, client, auth_headers):
        assert client.get("/api/nowhere", headers=auth_headers("office")).status_code == 404

    def test_users_listing_is_office_only(self, client, auth_headers):
        assert client.get("/api/users", headers=auth_headers("driver1")).status_code == 403
        resp = client.get("/api/users/drivers", headers=auth_headers("driver1"))
        assert [d["username"] for d in resp.get_json()] == ["driver1", "driver2"]


class TestUserEndpoints:

    def test_admin_creates_account_that_can_log_in(self, client, auth_headers):
        account = {"username": "driver3", "email": "driver3@test.local", "password": "newpass1", "role": "driver"}
        assert client.post("/api/users", headers=auth_headers("office"), json=account).status_code == 403

        resp = client.post("/api/users", headers=auth_headers("admin"), json=account)
        assert resp.status_code == 201
        assert "password_hash" not in resp.get_json()

        login = client.post("/api/auth/login", json={"username": "driver3", "password": "newpass1"})
        assert login.status_code == 200

    def test_change_own_password(self, client, auth_headers, users):
        url = f"/api/users/{users['driver1']['id']}/password"
        headers = auth_headers("driver1")
        bad = client.put(url, headers=headers, json={"current_password": "nope", "new_password": "another1"})
        assert bad.status_code == 401
        assert client.put(url, headers=headers, json={"current_password": PASSWORD, "new_password": "abc"}).status_code == 400

        resp = client.put(url, headers=headers, json={"current_password": PASSWORD, "new_password": "another1"})
        assert resp.status_code == 200
        assert client.post("/api/auth/login", json={"username": "driver1", "password": "another1"}).status_code == 200

    def test_update_and_delete(self, client, auth_headers, users):
        url = f"/api/users/{users['driver2']['id']}"
        assert client.put(url, headers=auth_headers("driver1"), json={"full_name": "X"}).status_code == 403
        resp = client.put(url, headers=auth_headers("admin"), json={"full_name": "Sam Driver"})
        assert resp.get_json()["full_name"] == "Sam Driver"

        own = f"/api/users/{users['admin']['id']}"
        assert client.delete(own, headers=auth_headers("admin")).status_code == 400
        assert client.delete(url, headers=auth_headers("office")).status_code == 403
        assert client.delete(url, headers=auth_headers("admin")).status_code == 200
        assert client.get(url, headers=auth_headers("admin")).status_code == 404


class TestPricingEndpoint:

    def test_contractor_prices(self, client, auth_headers, make_customer, make_product):
        customer_id = make_customer("Pioneer", contractor=True)
        make_product("Mulch", retail=50.0)

        resp = client.get(f"/api/products/pricing/{customer_id}", headers=auth_headers("office"))

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["is_contractor"] is True
        assert data["products"][0]["current_price"] == 45.0
        assert data["products"][0]["price_type"] == "contractor"

    def test_unknown_customer_gets_retail(self, client, auth_headers, make_product):
        make_product("Mulch", retail=50.0)
        data = client.get("/api/products/pricing/9999", headers=auth_headers("office")).get_json()
        assert data["is_contractor"] is False
        assert data["products"][0]["current_price"] == 50.0

    def test_non_numeric_customer_id(self, client, auth_headers):
        resp = client.get("/api/products/pricing/abc", headers=auth_headers("office"))
        assert resp.status_code == 400
        assert resp.get_json()["details"]["field"] == "customer_id"


class TestProductEndpoints:

    def test_create_and_list(self, client, auth_headers):
        resp = client.post("/api/products", headers=auth_headers("office"),
                           json={"name": "Play Sand", "unit": "yards", "retail_price": 32})
        assert resp.status_code == 201
        assert resp.get_json()["contractor_price"] == 28.8

        active = client.get("/api/products/active", headers=auth_headers("driver1")).get_json()
        assert [p["name"] for p in active] == ["Play Sand"]

    def test_driver_cannot_create(self, client, auth_headers):
        resp = client.post("/api/products", headers=auth_headers("driver1"), json={"name": "X", "unit": "bag"})
        assert resp.status_code == 403


class TestJobEndpoints:

    def test_create_job(self, client, auth_headers):
        resp = client.post("/api/jobs", headers=auth_headers("office"), json=job_body())
        assert resp.status_code == 201
        job = resp.get_json()
        assert job["total_amount"] == 30.0
        assert job["products"][0]["total_price"] == 30.0
        assert job["customer_created"] is True

    def test_driver_cannot_create(self, client, auth_headers):
        resp = client.post("/api/jobs", headers=auth_headers("driver1"), json=job_body())
        assert resp.status_code == 403

    def test_validation_error_shape(self, client, auth_headers):
        resp = client.post("/api/jobs", headers=auth_headers("office"), json=job_body(delivery_date="soon"))
        assert resp.status_code == 400
        data = resp.get_json()
        assert "error" in data
        assert data["details"]["field"] == "delivery_date"

    def test_dangling_customer(self, client, auth_headers):
        resp = client.post("/api/jobs", headers=auth_headers("office"), json=job_body(customer_id=9999))
        assert resp.status_code == 400

    def test_driver_update_rules(self, client, auth_headers, users):
        job = client.post("/api/jobs", headers=auth_headers("office"),
                          json=job_body(assigned_driver=users["driver1"]["id"])).get_json()
        url = f"/api/jobs/{job['id']}"

        assert client.put(url, headers=auth_headers("driver1"), json={"address": "Elsewhere"}).status_code == 403
        assert client.put(url, headers=auth_headers("driver2"), json={"status": "in_progress"}).status_code == 403

        assert client.put(url, headers=auth_headers("driver1"), json={"status": "completed"}).status_code == 400
        assert client.put(url, headers=auth_headers("driver1"), json={"status": "in_progress"}).status_code == 200
        resp = client.put(url, headers=auth_headers("driver1"), json={"status": "completed"})
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "completed"

        assert client.put(url, headers=auth_headers("office"), json={"status": "scheduled"}).status_code == 400

    def test_list_and_get(self, client, auth_headers):
        client.post("/api/jobs", headers=auth_headers("office"), json=job_body())
        jobs = client.get("/api/jobs?date=2026-03-02", headers=auth_headers("office")).get_json()
        assert len(jobs) == 1
        assert client.get(f"/api/jobs/{jobs[0]['id']}", headers=auth_headers("office")).status_code == 200
        assert client.get("/api/jobs", headers=auth_headers("driver1")).get_json() == []

    def test_delete(self, client, auth_headers):
        job = client.post("/api/jobs", headers=auth_headers("office"), json=job_body()).get_json()
        url = f"/api/jobs/{job['id']}"
        assert client.delete(url, headers=auth_headers("driver1")).status_code == 403
        assert client.delete(url, headers=auth_headers("office")).status_code == 200
        assert client.get(url, headers=auth_headers("office")).status_code == 404
        assert client.put(url, headers=auth_headers("office"), json={"truck": "T1"}).status_code == 404


class TestCustomerEndpoints:

    def test_crud(self, client, auth_headers):
        resp = client.post("/api/customers", headers=auth_headers("office"),
                           json={"name": "Jones", "addresses": ["1 Main St"]})
        assert resp.status_code == 201
        url = f"/api/customers/{resp.get_json()['id']}"

        resp = client.put(url, headers=auth_headers("office"), json={"contractor": True})
        assert resp.get_json()["contractor"] is True

        found = client.get("/api/customers/search?q=jon", headers=auth_headers("office")).get_json()
        assert [c["name"] for c in found] == ["Jones"]

        assert client.delete(url, headers=auth_headers("office")).status_code == 200
        assert client.get(url, headers=auth_headers("office")).status_code == 404

    def test_drivers_cannot_read_customers(self, client, auth_headers, make_customer):
        customer_id = make_customer("Private Person", phone="555-0100")
        headers = auth_headers("driver1")

        assert client.get("/api/customers", headers=headers).status_code == 403
        assert client.get("/api/customers/search?q=Private", headers=headers).status_code == 403
        assert client.get(f"/api/customers/{customer_id}", headers=headers).status_code == 403
        assert client.get("/api/customers", headers=auth_headers("office")).status_code == 200


class TestSchemaEndpoints:

    def test_schema_report(self, client, auth_headers):
        data = client.get("/api/schema/products", headers=auth_headers("office")).get_json()
        assert data["live"]["version"] == "dual"
        assert "price_per_unit" not in data["columns"]
        assert data["unmigrated_products"] == 0

    def test_reconcile_is_admin_only(self, client, auth_headers):
        assert client.post("/api/schema/reconcile", headers=auth_headers("office")).status_code == 403
        resp = client.post("/api/schema/reconcile", headers=auth_headers("admin"))
        assert resp.status_code == 200
        assert resp.get_json()["ok"] is True


@pytest.mark.parametrize("path", ["/api/jobs/abc", "/api/customers/abc", "/api/products/abc"])
def test_non_numeric_ids(client, auth_headers, path):
    assert client.get(path, headers=auth_headers("office")).status_code == 400
