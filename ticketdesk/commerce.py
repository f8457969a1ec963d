from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional
import logging
import os

import httpx

from .errors import NoApiKey, UpstreamError
from .infra.timings import timeit

log = logging.getLogger(__name__)

COMMERCE_BASE_URL = os.environ.get(
    "COMMERCE_BASE_URL",
    "https://services.leadconnectorhq.com"
)
COMMERCE_API_VERSION = os.environ.get("COMMERCE_API_VERSION", "2021-07-28")
CONFIRM_CONTACT_URL = os.environ.get(
    "CONFIRM_CONTACT_URL",
    "https://eventapi.reloop.pro/api/event/confirm-contact/"
)
DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")

# location_id -> api key (or None when the location has none stored)
KeyResolver = Callable[[str], Awaitable[Optional[str]]]


def upstream_id(data: Any, nested: str = "") -> Optional[str]:
    """Pull the object id out of a commerce API response body."""
    if not isinstance(data, dict):
        return None
    if nested and isinstance(data.get(nested), dict):
        data = data[nested]
    return data.get("_id") or data.get("id")


# ----------------------------
# Commerce Adapter Interface
# ----------------------------
class CommerceAdapter(ABC):
    @abstractmethod
    async def create_product(
        self, location_id: str, name: str, description: str = ""
    ) -> Dict[str, Any]: ...

    @abstractmethod
    async def update_product(
        self, location_id: str, product_id: str, name: str,
        description: str = "",
    ) -> Dict[str, Any]: ...

    @abstractmethod
    async def create_price(
        self, location_id: str, product_id: str, *, name: str,
        amount: float, currency: str, available_quantity: int,
    ) -> Dict[str, Any]: ...

    @abstractmethod
    async def update_price(
        self, location_id: str, product_id: str, price_id: str, *,
        name: str, amount: float, currency: str,
        available_quantity: Optional[int] = None,
    ) -> Dict[str, Any]: ...

    # items: [{"priceId", "availableQuantity", "allowOutOfStockPurchases"}]
    @abstractmethod
    async def sync_inventory(
        self, location_id: str, items: List[Dict[str, Any]]
    ) -> Any: ...

    @abstractmethod
    async def get_order(
        self, location_id: str, order_id: str
    ) -> Dict[str, Any]: ...


# ----------------------------
# LeadConnector implementation
# ----------------------------
class LeadConnector(CommerceAdapter):
    """
    Stateless: every call resolves the location's key, does one request and
    either returns the decoded body or raises. Retrying is up to the caller.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        resolve_key: KeyResolver,
        base_url: str = COMMERCE_BASE_URL,
        api_version: str = COMMERCE_API_VERSION,
    ) -> None:
        self.http = http
        self.resolve_key = resolve_key
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version

    async def _headers(self, location_id: Optional[str]) -> Dict[str, str]:
        if not location_id:
            raise NoApiKey(location_id)
        key = await self.resolve_key(location_id)
        if not key:
            raise NoApiKey(location_id)
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Version": self.api_version,
            "Authorization": f"Bearer {key}",
        }

    async def _call(
        self, method: str, path: str, location_id: Optional[str], *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        headers = await self._headers(location_id)
        async with timeit(f"commerce.{method.lower()}"):
            resp = await self.http.request(
                method, f"{self.base_url}{path}",
                json=json, params=params, headers=headers,
            )
        body = resp.text
        if not resp.is_success:
            log.error("commerce %s %s -> %s %s",
                      method, path, resp.status_code, body)
            raise UpstreamError(resp.status_code, body)
        log.debug("commerce %s %s -> %s", method, path, resp.status_code)
        try:
            return resp.json()
        except ValueError:
            return body

    async def create_product(
        self, location_id: str, name: str, description: str = ""
    ) -> Dict[str, Any]:
        return await self._call("POST", "/products/", location_id, json={
            "name": name,
            "locationId": location_id,
            "description": description or "",
            "productType": "DIGITAL",
            "availableInStore": True,
        })

    async def update_product(
        self, location_id: str, product_id: str, name: str,
        description: str = "",
    ) -> Dict[str, Any]:
        return await self._call(
            "PUT", f"/products/{product_id}", location_id, json={
                "name": name,
                "locationId": location_id,
                "description": description or "",
                "productType": "DIGITAL",
                "availableInStore": True,
            })

    async def create_price(
        self, location_id: str, product_id: str, *, name: str,
        amount: float, currency: str, available_quantity: int,
    ) -> Dict[str, Any]:
        return await self._call(
            "POST", f"/products/{product_id}/price", location_id, json={
                "name": name,
                "type": "one_time",
                "currency": currency or DEFAULT_CURRENCY,
                "amount": amount or 0,
                "locationId": location_id,
                "trackInventory": True,
                "availableQuantity": int(available_quantity),
                "allowOutOfStockPurchases": False,
            })

    async def update_price(
        self, location_id: str, product_id: str, price_id: str, *,
        name: str, amount: float, currency: str,
        available_quantity: Optional[int] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": name,
            "type": "one_time",
            "currency": currency or DEFAULT_CURRENCY,
            "amount": amount or 0,
            "locationId": location_id,
        }
        if available_quantity is not None:
            payload.update(
                trackInventory=True,
                availableQuantity=int(available_quantity),
                allowOutOfStockPurchases=False,
            )
        return await self._call(
            "PUT", f"/products/{product_id}/price/{price_id}", location_id,
            json=payload,
        )

    async def sync_inventory(
        self, location_id: str, items: List[Dict[str, Any]]
    ) -> Any:
        return await self._call(
            "POST", "/products/inventory", location_id, json={
                "altId": location_id,
                "altType": "location",
                "items": items,
            })

    async def get_order(
        self, location_id: str, order_id: str
    ) -> Dict[str, Any]:
        return await self._call(
            "GET", f"/payments/orders/{order_id}", location_id,
            params={"altType": "location", "altId": location_id},
        )


# ----------------------------
# Contact confirmation
# ----------------------------
class ContactConfirmer:
    """Tells the external contact service that someone showed up."""

    def __init__(
        self, http: httpx.AsyncClient, url: str = CONFIRM_CONTACT_URL
    ) -> None:
        self.http = http
        self.url = url

    async def confirm(
        self, *, email: str = "", first_name: str = "", last_name: str = "",
        phone: str = "", event_name: str = "", location_id: str = "",
    ) -> httpx.Response:
        async with timeit("confirm_contact"):
            return await self.http.post(self.url, json={
                "email": email or "",
                "first_name": first_name or "",
                "last_name": last_name or "",
                "phone": phone or "",
                "event_name": event_name or "",
                "location_id": location_id or "",
            })

    async def confirm_quietly(self, **fields: str) -> bool:
        # best effort: never raises, never retries
        try:
            resp = await self.confirm(**fields)
        except httpx.HTTPError as e:
            log.warning("confirm-contact failed: %s", e)
            return False
        if not resp.is_success:
            log.warning("confirm-contact returned %s: %s",
                        resp.status_code, resp.text)
            return False
        return True
