"""
Client-side cart and session handling for the PharmaSoft storefront.

`StorefrontClient` keeps the cart in memory and mirrors it to a
`LocalStorage` file so a guest cart survives restarts. While logged out every
cart operation is local. Once logged in the server is authoritative: after
login or registration the server cart replaces the cached one, with no merge.
"""
import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Optional

import requests
from pydantic import ValidationError

from pricing import calculate_cart_total
from schemas import AddressFields, CartItem, format_errors

logger = logging.getLogger("pharmasoft.client")

DEFAULT_BASE_URL = os.getenv("PHARMASOFT_API_URL", "http://localhost:8000/api")

STORAGE_TOKEN = "pharmasoft_token"
STORAGE_USER = "pharmasoft_user"
STORAGE_CART_CACHE = "pharmasoft_cart_cache"

SIMULATED_PAYMENT_METHODS = ("card", "upi", "wallet", "stripe")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class StorefrontError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SessionExpired(StorefrontError):
    """The server rejected our token. The session has been cleared."""


class AuthRequired(StorefrontError):
    pass


class LocalStorage:
    """Key/value store persisted as one JSON file.

    Without a path, items only live in memory.
    """

    def __init__(self, path=None):
        self.path = Path(path) if path else None
        self._items = {}
        if self.path is not None and self.path.exists():
            with self.path.open(encoding="utf-8") as f:
                self._items = json.load(f)

    def get_item(self, key, default=None):
        return self._items.get(key, default)

    def set_item(self, key, value):
        self._items[key] = value
        self._flush()

    def remove_item(self, key):
        if self._items.pop(key, None) is not None:
            self._flush()

    def _flush(self):
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            json.dump(self._items, f)


def _validated(model, data):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise StorefrontError(format_errors(e.errors()), 400)


class StorefrontClient:
    def __init__(self, base_url: str = DEFAULT_BASE_URL, storage: Optional[LocalStorage] = None,
                 session=None, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.storage = storage if storage is not None else LocalStorage()
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.current_user = self.storage.get_item(STORAGE_USER)
        self.cart = self._cached_cart()

    # ------------------------------------------------------------------
    # session
    # ------------------------------------------------------------------
    @property
    def token(self) -> Optional[str]:
        return self.storage.get_item(STORAGE_TOKEN)

    def is_logged_in(self) -> bool:
        return bool(self.token)

    def logout(self):
        self.storage.remove_item(STORAGE_TOKEN)
        self.storage.remove_item(STORAGE_USER)
        self.storage.remove_item(STORAGE_CART_CACHE)
        self.current_user = None
        self.cart = []
        logger.info("Logged out")

    def _start_session(self, data: dict) -> dict:
        self.storage.set_item(STORAGE_TOKEN, data["token"])
        self.storage.set_item(STORAGE_USER, data["user"])
        self.current_user = data["user"]
        self.load_cart()
        return self.current_user

    def login(self, email: str, password: str) -> dict:
        data = self.api_call("/auth/login", "POST", {"email": email, "password": password})
        return self._start_session(data)

    def register(self, email: str, password: str, name: str) -> dict:
        if not email or not password or not name:
            raise StorefrontError("All fields are required")
        if len(password) < 6:
            raise StorefrontError("Password must be at least 6 characters")
        if not EMAIL_RE.match(email):
            raise StorefrontError("Please enter a valid email address")
        data = self.api_call("/auth/register", "POST", {"email": email, "password": password, "name": name})
        return self._start_session(data)

    def api_call(self, endpoint: str, method: str = "GET", payload: Optional[dict] = None) -> dict:
        """Send one JSON request and return the decoded body.

        A 401/403 on an authenticated call logs the session out and raises
        SessionExpired. Other error statuses raise StorefrontError carrying
        the server's `detail` message.
        """
        token = self.token
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = f"{self.base_url}{endpoint}"
        logger.debug("API call: %s %s", method, url)
        try:
            response = self.session.request(method, url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise StorefrontError(f"Could not reach server: {e}")

        if "application/json" not in response.headers.get("content-type", ""):
            raise StorefrontError("Server returned a non-JSON response. Check API configuration.",
                                  response.status_code)
        data = response.json()

        if response.status_code in (401, 403) and token:
            self.logout()
            raise SessionExpired("Session expired. Please login again.", response.status_code)
        if response.status_code >= 400:
            message = data.get("detail") if isinstance(data, dict) else None
            raise StorefrontError(message or f"HTTP error! status: {response.status_code}",
                                  response.status_code)
        return data

    # ------------------------------------------------------------------
    # cart
    # ------------------------------------------------------------------
    def _cached_cart(self) -> list:
        return list(self.storage.get_item(STORAGE_CART_CACHE) or [])

    def _set_cart(self, cart: list):
        self.cart = cart
        self.storage.set_item(STORAGE_CART_CACHE, cart)

    def _find(self, name: str) -> Optional[dict]:
        return next((item for item in self.cart if item["name"] == name), None)

    def load_cart(self) -> list:
        if not self.is_logged_in():
            self.cart = self._cached_cart()
            return self.cart
        try:
            data = self.api_call("/cart")
        except StorefrontError as e:
            logger.warning("Load cart failed, using cached cart: %s", e)
            self.cart = self._cached_cart()
            return self.cart
        self._set_cart(data.get("cart") or [])
        return self.cart

    def add_to_cart(self, product: dict) -> list:
        item = _validated(CartItem, {"name": product.get("name"), "price": product.get("price"),
                                     "image": product.get("image")})
        if self.is_logged_in():
            data = self.api_call("/cart/add", "POST", {"name": item.name, "price": item.price, "image": item.image})
            self._set_cart(data["cart"])
            return self.cart

        existing = self._find(item.name)
        if existing:
            existing["quantity"] += 1
        else:
            self.cart.append(item.model_dump(by_alias=True))
        self._set_cart(self.cart)
        return self.cart

    def remove_from_cart(self, name: str) -> list:
        if self.is_logged_in():
            data = self.api_call("/cart/remove", "DELETE", {"name": name})
            self._set_cart(data["cart"])
        else:
            self._set_cart([item for item in self.cart if item["name"] != name])
        return self.cart

    def update_quantity(self, name: str, quantity: int) -> list:
        """Set an item's quantity. Values below 1 are raised to 1; use
        remove_from_cart to drop an item."""
        quantity = max(1, quantity)
        if self.is_logged_in():
            data = self.api_call("/cart/update", "PUT", {"name": name, "quantity": quantity})
            self._set_cart(data["cart"])
            return self.cart

        item = self._find(name)
        if item:
            item["quantity"] = quantity
            self._set_cart(self.cart)
        return self.cart

    def item_count(self) -> int:
        return sum(item["quantity"] for item in self.cart)

    def totals(self) -> dict:
        return calculate_cart_total(self.cart)

    # ------------------------------------------------------------------
    # addresses
    # ------------------------------------------------------------------
    def _require_login(self, message: str):
        if not self.is_logged_in():
            raise AuthRequired(message)

    def load_addresses(self) -> list:
        self._require_login("Please login to manage addresses")
        return self.api_call("/addresses").get("addresses") or []

    def add_address(self, address: dict) -> dict:
        self._require_login("Please login to add address")
        fields = _validated(AddressFields, address)
        data = self.api_call("/addresses", "POST", fields.model_dump(by_alias=True))
        return data["address"]

    def update_address(self, address_id: str, updates: dict) -> dict:
        self._require_login("Please login to manage addresses")
        return self.api_call(f"/addresses/{address_id}", "PUT", updates)["address"]

    def delete_address(self, address_id: str) -> bool:
        self._require_login("Please login to manage addresses")
        self.api_call(f"/addresses/{address_id}", "DELETE")
        return True

    def set_default_address(self, address_id: str) -> dict:
        return self.update_address(address_id, {"isDefault": True})

    # ------------------------------------------------------------------
    # checkout
    # ------------------------------------------------------------------
    def _process_payment(self, method: str, payment_id: Optional[str]) -> str:
        stamp = int(time.time() * 1000)
        if method == "cod":
            return f"cod_{stamp}"
        if method in SIMULATED_PAYMENT_METHODS:
            return f"{method}_{stamp}"
        if method == "razorpay":
            if not payment_id:
                raise StorefrontError("Razorpay payments need a payment id from the checkout widget")
            return payment_id
        raise StorefrontError("Invalid payment method")

    def checkout(self, payment_method: str = "cod", payment_id: Optional[str] = None) -> dict:
        """Place an order for the current cart, delivered to the default address."""
        self._require_login("Please login to checkout")
        if not self.cart:
            raise StorefrontError("Your cart is empty")

        default_address = next((a for a in self.load_addresses() if a.get("isDefault")), None)
        if default_address is None:
            raise StorefrontError("Please add a delivery address first")

        paid_with = self._process_payment(payment_method, payment_id)
        data = self.api_call("/orders", "POST", {
            "deliveryAddress": default_address,
            "paymentMethod": payment_method,
            "paymentId": paid_with,
        })
        # the server empties the cart when the order is stored
        self._set_cart([])
        logger.info("Order placed: %s", data["order"]["orderId"])
        return data["order"]

    def load_orders(self) -> list:
        self._require_login("Please login to view orders")
        return self.api_call("/orders").get("orders") or []
