"""
Component tests for the server-held cart.

Each request goes API -> auth dependency -> user document -> save, against
an in-memory MongoDB.
"""
import pytest

import main
from schemas import MAX_QUANTITY


@pytest.fixture
def add_item(test_client, auth_headers):
    def _add(name, price, image=None):
        response = test_client.post(
            "/api/cart/add", json={"name": name, "price": price, "image": image}, headers=auth_headers
        )
        assert response.status_code == 200
        return response.json()
    return _add


class TestAddToCart:

    def test_new_item_starts_at_quantity_one(self, add_item):
        data = add_item("Paracetamol 500mg", 30, "para.png")

        assert data["cart"] == [{"name": "Paracetamol 500mg", "price": 30, "quantity": 1, "image": "para.png"}]
        assert data["calculations"] == {"subtotal": 30, "deliveryFee": 50, "tax": 1.5, "total": 81.5}

    def test_same_name_increments_quantity(self, add_item):
        add_item("Paracetamol 500mg", 30)
        data = add_item("Paracetamol 500mg", 30)

        assert len(data["cart"]) == 1
        assert data["cart"][0]["quantity"] == 2
        assert data["calculations"]["subtotal"] == 60

    def test_cart_is_persisted_on_the_user_document(self, add_item, test_client, auth_headers, mongo_db):
        add_item("Cetirizine 10mg", 25)

        stored = mongo_db["user"].find_one({"email": "asha@example.com"})
        assert stored["cart"][0]["name"] == "Cetirizine 10mg"
        assert test_client.get("/api/cart", headers=auth_headers).json()["cart"] == stored["cart"]

    @pytest.mark.parametrize("body", [
        {"name": "Free sample", "price": 0},
        {"name": "Refund", "price": -10},
        {"price": 30},
        {"name": "", "price": 30},
    ])
    def test_invalid_product_data_is_400(self, test_client, auth_headers, body):
        response = test_client.post("/api/cart/add", json=body, headers=auth_headers)

        assert response.status_code == 400

    def test_oversized_price_is_400_and_cart_stays_usable(self, add_item, test_client, auth_headers, mongo_db):
        add_item("Thermometer", 199)

        for _ in range(2):
            response = test_client.post(
                "/api/cart/add", json={"name": "Gold pill", "price": 1e308}, headers=auth_headers
            )
            assert response.status_code == 400
            assert response.json()["detail"].startswith("price:")

        stored = mongo_db["user"].find_one({"email": "asha@example.com"})
        assert [item["name"] for item in stored["cart"]] == ["Thermometer"]
        assert test_client.get("/api/cart", headers=auth_headers).status_code == 200

    def test_increment_stops_at_quantity_limit(self, add_item, test_client, auth_headers):
        add_item("Thermometer", 199)
        test_client.put(
            "/api/cart/update", json={"name": "Thermometer", "quantity": MAX_QUANTITY}, headers=auth_headers
        )

        response = test_client.post(
            "/api/cart/add", json={"name": "Thermometer", "price": 199}, headers=auth_headers
        )

        assert response.status_code == 400
        cart = test_client.get("/api/cart", headers=auth_headers).json()["cart"]
        assert cart[0]["quantity"] == MAX_QUANTITY


class TestUpdateCart:

    def test_sets_quantity(self, add_item, test_client, auth_headers):
        add_item("Thermometer", 199)

        response = test_client.put(
            "/api/cart/update", json={"name": "Thermometer", "quantity": 3}, headers=auth_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["cart"][0]["quantity"] == 3
        assert data["calculations"]["subtotal"] == 597
        assert data["calculations"]["deliveryFee"] == 0

    def test_zero_quantity_removes_item(self, add_item, test_client, auth_headers):
        add_item("Thermometer", 199)
        add_item("Sanitizer", 150)

        response = test_client.put(
            "/api/cart/update", json={"name": "Thermometer", "quantity": 0}, headers=auth_headers
        )

        assert [item["name"] for item in response.json()["cart"]] == ["Sanitizer"]

    def test_unknown_name_leaves_cart_unchanged(self, add_item, test_client, auth_headers):
        before = add_item("Thermometer", 199)["cart"]

        response = test_client.put(
            "/api/cart/update", json={"name": "Nope", "quantity": 5}, headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["cart"] == before

    def test_negative_quantity_is_400(self, add_item, test_client, auth_headers):
        add_item("Thermometer", 199)

        response = test_client.put(
            "/api/cart/update", json={"name": "Thermometer", "quantity": -1}, headers=auth_headers
        )

        assert response.status_code == 400

    @pytest.mark.parametrize("quantity", [MAX_QUANTITY + 1, 10**400])
    def test_oversized_quantity_is_400(self, add_item, test_client, auth_headers, quantity):
        add_item("Thermometer", 199)

        response = test_client.put(
            "/api/cart/update", json={"name": "Thermometer", "quantity": quantity}, headers=auth_headers
        )

        assert response.status_code == 400
        assert test_client.get("/api/cart", headers=auth_headers).json()["cart"][0]["quantity"] == 1


class TestRemoveAndClear:

    def test_remove_filters_by_name(self, add_item, test_client, auth_headers):
        add_item("Thermometer", 199)
        add_item("Sanitizer", 150)

        response = test_client.request(
            "DELETE", "/api/cart/remove", json={"name": "Sanitizer"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert [item["name"] for item in response.json()["cart"]] == ["Thermometer"]

    def test_clear_yields_zero_totals(self, add_item, test_client, auth_headers):
        add_item("Thermometer", 199)
        add_item("Sanitizer", 150)

        response = test_client.delete("/api/cart/clear", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {
            "cart": [],
            "calculations": {"subtotal": 0, "deliveryFee": 0, "tax": 0, "total": 0},
        }
        assert test_client.get("/api/cart", headers=auth_headers).json()["cart"] == []


class TestServerErrors:

    def test_unhandled_exception_returns_generic_500(self, test_client, auth_headers, monkeypatch):
        def boom(cart):
            raise RuntimeError("totals exploded")
        monkeypatch.setattr(main, "calculate_cart_total", boom)

        response = test_client.get("/api/cart", headers=auth_headers)

        assert response.status_code == 500
        assert response.json() == {"detail": "Something went wrong"}

    def test_development_mode_exposes_the_message(self, test_client, auth_headers, monkeypatch):
        def boom(cart):
            raise RuntimeError("totals exploded")
        monkeypatch.setattr(main, "calculate_cart_total", boom)
        monkeypatch.setattr(main, "APP_ENV", "development")

        response = test_client.get("/api/cart", headers=auth_headers)

        assert response.status_code == 500
        assert response.json() == {"detail": "totals exploded"}

    def test_missing_database_is_reported(self, test_client, monkeypatch):
        monkeypatch.setattr(main, "db", None)

        response = test_client.post(
            "/api/auth/login", json={"email": "asha@example.com", "password": "secret123"}
        )

        assert response.status_code == 500
        assert response.json()["detail"] == "Database not configured"
