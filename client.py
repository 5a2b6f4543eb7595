"""
Python client for the storefront API.

Responses are unwrapped from the `{success, message, data}` envelope; a
`success: false` body becomes an `ApiError`. Cart and wishlist reads are
served from a small cache that each mutation refreshes with the state the
server sends back, or drops when the mutation fails.
"""
from typing import Any, Dict, List, Optional

import httpx

CART = "cart"
WISHLIST = "wishlist"


class ApiError(Exception):
    def __init__(self, message: str, status_code: int, code: Optional[str] = None,
                 errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.errors = errors or []


class ClientCache:
    def __init__(self):
        self._values: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._values.get(key)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def invalidate(self, key: str) -> None:
        self._values.pop(key, None)

    def clear(self) -> None:
        self._values.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._values


class StorefrontClient:
    def __init__(self, base_url: str = "http://localhost:8000", http: Optional[httpx.Client] = None,
                 access_token: Optional[str] = None, refresh_token: Optional[str] = None, timeout: float = 10.0):
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.cache = ClientCache()

    # -------------------- transport --------------------

    def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = kwargs.pop("headers", {})
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        response = self.http.request(method, path, headers=headers, **kwargs)
        try:
            body = response.json()
        except ValueError:
            raise ApiError(f"Unexpected response ({response.status_code})", response.status_code)
        if not body.get("success", False):
            raise ApiError(body.get("message") or "Request failed", response.status_code, body.get("code"), body.get("errors"))
        return body.get("data")

    def _mutate(self, key: str, method: str, path: str, **kwargs) -> Any:
        try:
            data = self._request(method, path, **kwargs)
        except ApiError:
            self.cache.invalidate(key)
            raise
        self.cache.set(key, data)
        return data

    def _cached(self, key: str, path: str, refresh: bool) -> Any:
        if not refresh and key in self.cache:
            return self.cache.get(key)
        data = self._request("GET", path)
        self.cache.set(key, data)
        return data

    # -------------------- auth --------------------

    def request_otp(self, phone: str) -> Dict[str, Any]:
        return self._request("POST", "/api/auth/request-otp", json={"phone": phone})

    def verify_otp(self, phone: str, otp: str, name: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"phone": phone, "otp": otp}
        if name:
            payload["name"] = name
        data = self._request("POST", "/api/auth/verify-otp", json=payload)
        self.access_token = data["access_token"]
        self.refresh_token = data["refresh_token"]
        self.cache.clear()
        return data

    def refresh(self) -> Dict[str, Any]:
        data = self._request("POST", "/api/auth/refresh-token", json={"refresh_token": self.refresh_token})
        self.access_token = data["access_token"]
        self.refresh_token = data["refresh_token"]
        return data

    def logout(self) -> None:
        self._request("POST", "/api/auth/logout", json={"refresh_token": self.refresh_token})
        self.access_token = self.refresh_token = None
        self.cache.clear()

    def me(self) -> Dict[str, Any]:
        return self._request("GET", "/api/auth/me")

    # -------------------- catalog --------------------

    def list_products(self, **params) -> Dict[str, Any]:
        return self._request("GET", "/api/products", params={k: v for k, v in params.items() if v is not None})

    def get_product(self, slug: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/products/{slug}")

    def list_categories(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/categories")

    # -------------------- cart --------------------

    def get_cart(self, refresh: bool = False) -> Dict[str, Any]:
        return self._cached(CART, "/api/cart", refresh)

    def add_to_cart(self, product_id: str, variant_id: str, quantity: int = 1) -> Dict[str, Any]:
        return self._mutate(CART, "POST", "/api/cart/items",
                            json={"product_id": product_id, "variant_id": variant_id, "quantity": quantity})

    def update_cart_item(self, item_id: str, quantity: int) -> Dict[str, Any]:
        return self._mutate(CART, "PUT", f"/api/cart/items/{item_id}", json={"quantity": quantity})

    def remove_cart_item(self, item_id: str) -> Dict[str, Any]:
        return self._mutate(CART, "DELETE", f"/api/cart/items/{item_id}")

    def clear_cart(self) -> Dict[str, Any]:
        return self._mutate(CART, "DELETE", "/api/cart")

    def apply_coupon(self, code: str) -> Dict[str, Any]:
        return self._mutate(CART, "POST", "/api/cart/coupon", json={"code": code})

    def remove_coupon(self) -> Dict[str, Any]:
        return self._mutate(CART, "DELETE", "/api/cart/coupon")

    # -------------------- wishlist --------------------

    def get_wishlist(self, refresh: bool = False) -> Dict[str, Any]:
        return self._cached(WISHLIST, "/api/wishlist", refresh)

    def add_to_wishlist(self, product_id: str) -> Dict[str, Any]:
        return self._mutate(WISHLIST, "POST", f"/api/wishlist/{product_id}")

    def remove_from_wishlist(self, product_id: str) -> Dict[str, Any]:
        return self._mutate(WISHLIST, "DELETE", f"/api/wishlist/{product_id}")

    # -------------------- orders --------------------

    def create_order(self, address_id: str, payment_method: str = "COD", notes: Optional[str] = None) -> Dict[str, Any]:
        data = self._request("POST", "/api/orders",
                             json={"address_id": address_id, "payment_method": payment_method, "notes": notes})
        # checkout empties the cart server side
        self.cache.invalidate(CART)
        return data

    def list_orders(self, **params) -> Dict[str, Any]:
        return self._request("GET", "/api/orders", params={k: v for k, v in params.items() if v is not None})

    def get_order(self, order_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/orders/{order_id}")

    def cancel_order(self, order_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", f"/api/orders/{order_id}/cancel", json={"reason": reason})

    def verify_payment(self, order_id: str, gateway_order_id: str, payment_id: str, signature: str) -> Dict[str, Any]:
        return self._request("POST", f"/api/orders/{order_id}/verify-payment", json={
            "gateway_order_id": gateway_order_id,
            "payment_id": payment_id,
            "signature": signature,
        })

    def payment_status(self, order_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/orders/{order_id}/payment-status")

    def retry_payment(self, order_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/api/orders/{order_id}/retry-payment")
