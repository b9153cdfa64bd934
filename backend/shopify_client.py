"""
Shopify Admin API client
========================

Single path to the store's REST Admin API:
- Static access token or client-credentials OAuth (cached, refreshed early)
- One request wrapper: a 401 drops the cached token and retries exactly once
- Link-header pagination with a fixed page ceiling, newest-first ordering
- Short-lived product catalog cache
"""

import base64
import hashlib
import hmac
import json
import time
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import httpx

from .config import Settings
from .errors import AuthenticationError, ConfigurationError, NotFoundError, RemoteAPIError

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TOPICS = [
    'draft_orders/create',
    'draft_orders/update',
    'draft_orders/delete',
    'orders/create',
    'orders/paid',
    'orders/fulfilled',
]

METAFIELD_NAMESPACE = "phoenix_invoices"
METAFIELD_KEY = "invoice_data"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


# ==================== HELPERS ====================

def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse a Shopify ISO-8601 timestamp; unparseable values sort last"""
    if not value:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _record_id(record: dict) -> int:
    try:
        return int(record.get('id') or 0)
    except (TypeError, ValueError):
        return 0


def newest_first(records: List[dict]) -> List[dict]:
    """Sort records by created_at descending, ties broken by id descending"""
    return sorted(
        records,
        key=lambda r: (parse_timestamp(r.get('created_at')), _record_id(r)),
        reverse=True,
    )


def error_message(payload: Any, status_code: int) -> str:
    """Flatten Shopify's `errors` payload into one readable line"""
    errors = payload.get('errors') if isinstance(payload, dict) else payload
    if isinstance(errors, str) and errors:
        return errors
    if isinstance(errors, dict):
        parts = []
        for field, messages in errors.items():
            if isinstance(messages, list):
                messages = ", ".join(str(m) for m in messages)
            parts.append(f"{field}: {messages}")
        if parts:
            return "; ".join(parts)
    if isinstance(errors, list) and errors:
        return "; ".join(str(e) for e in errors)
    return f"Shopify API returned HTTP {status_code}"


def verify_webhook_signature(body: bytes, hmac_header: Optional[str], secret: Optional[str]) -> bool:
    """Check the X-Shopify-Hmac-Sha256 header against the shared secret"""
    if not hmac_header or not secret:
        return False
    digest = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode('ascii')
    return hmac.compare_digest(expected, hmac_header.strip())


class TTLValue:
    """A single cached value that is only served until ttl_seconds elapse"""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.value: Any = None
        self.stored_at: Optional[float] = None

    def is_fresh(self) -> bool:
        if self.stored_at is None:
            return False
        return self.clock() - self.stored_at < self.ttl_seconds

    def set(self, value: Any):
        self.value = value
        self.stored_at = self.clock()

    def clear(self):
        self.value = None
        self.stored_at = None


# ==================== AUTHENTICATION ====================

class TokenProvider(Protocol):
    refreshable: bool

    async def get_token(self) -> str:
        ...

    def invalidate(self) -> None:
        ...


class StaticTokenProvider:
    """Long-lived Admin API token sent on every request"""

    refreshable = False

    def __init__(self, token: Optional[str]):
        self.token = token

    async def get_token(self) -> str:
        if not self.token:
            raise ConfigurationError(
                "Shopify credentials are not configured (SHOPIFY_ACCESS_TOKEN or SHOPIFY_CLIENT_ID/SECRET)"
            )
        return self.token

    def invalidate(self) -> None:
        return None


class ClientCredentialsTokenProvider:
    """
    Exchanges client id/secret for a short-lived bearer token.

    The token is reused while now < expires_at - refresh_margin and is only
    ever held in memory.
    """

    refreshable = True

    def __init__(
        self,
        http: httpx.AsyncClient,
        store_domain: str,
        client_id: str,
        client_secret: str,
        refresh_margin: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.http = http
        self.token_url = f"https://{store_domain}/admin/oauth/access_token"
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_margin = refresh_margin
        self.clock = clock
        self.access_token: Optional[str] = None
        self.expires_at: Optional[float] = None
        self.exchange_count = 0

    def _is_valid(self) -> bool:
        return (
            self.access_token is not None
            and self.expires_at is not None
            and self.clock() < self.expires_at - self.refresh_margin
        )

    async def get_token(self) -> str:
        if self._is_valid():
            return self.access_token

        logger.info("Fetching new Shopify access token via client credentials...")
        self.exchange_count += 1
        try:
            response = await self.http.post(
                self.token_url,
                json={
                    'grant_type': 'client_credentials',
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                },
                headers={'Content-Type': 'application/json'},
            )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Failed to authenticate with Shopify: {e}") from e

        if response.status_code >= 400:
            raise AuthenticationError(
                f"Failed to authenticate with Shopify: HTTP {response.status_code} {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationError("Failed to authenticate with Shopify: token response is not JSON") from e

        token = data.get('access_token')
        if not token:
            raise AuthenticationError("Failed to authenticate with Shopify: no access_token in response")

        self.access_token = token
        self.expires_at = self.clock() + float(data.get('expires_in') or 86399)
        logger.info("Shopify access token acquired successfully")
        return token

    def invalidate(self) -> None:
        self.access_token = None
        self.expires_at = None


def build_token_provider(settings: Settings, http: httpx.AsyncClient) -> TokenProvider:
    if settings.uses_client_credentials:
        return ClientCredentialsTokenProvider(
            http,
            settings.store_domain,
            settings.client_id,
            settings.client_secret,
            refresh_margin=settings.token_refresh_margin,
        )
    return StaticTokenProvider(settings.access_token)


# ==================== CLIENT ====================

class ShopifyClient:
    """Async wrapper over the Admin REST API for one store"""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional[TokenProvider] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=settings.http_timeout)
        self.base_url = settings.api_base_url
        self.token_provider = token_provider or build_token_provider(settings, self.http)
        self.max_pages = max(1, settings.max_list_pages)
        self.page_size = settings.page_size
        self.product_cache = TTLValue(settings.product_cache_ttl, clock)

    async def aclose(self):
        if self._owns_http:
            await self.http.aclose()

    # ---------- transport ----------

    async def _send(self, method: str, url: str, params: Optional[dict], json_body: Optional[dict]) -> httpx.Response:
        token = await self.token_provider.get_token()
        headers = {
            'Content-Type': 'application/json',
            'X-Shopify-Access-Token': token,
        }
        try:
            return await self.http.request(method, url, params=params, json=json_body, headers=headers)
        except httpx.HTTPError as e:
            raise RemoteAPIError(f"Shopify request failed: {e}") from e

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> Tuple[Any, httpx.Response]:
        """Issue one API call; a 401 triggers one token refresh and one retry"""
        if not self.settings.store_domain:
            raise ConfigurationError("SHOPIFY_STORE_URL is not configured")

        url = path if path.startswith('http') else f"{self.base_url}{path}"
        response = await self._send(method, url, params, json_body)

        if response.status_code == 401 and self.token_provider.refreshable:
            logger.warning(f"Got 401 on {method} {path}, forcing token refresh...")
            self.token_provider.invalidate()
            response = await self._send(method, url, params, json_body)

        if not response.is_success:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
            message = error_message(payload, response.status_code)
            logger.error(f"Shopify API error [{method} {path}] {response.status_code}: {message}")
            raise RemoteAPIError(message, status_code=response.status_code, payload=payload)

        if not response.content:
            return {}, response
        try:
            return response.json(), response
        except ValueError as e:
            raise RemoteAPIError(f"Shopify returned invalid JSON for {path}", status_code=response.status_code) from e

    async def _request_one(self, method: str, path: str, label: str, json_body: Optional[dict] = None):
        """Call on a single record; a 404 becomes NotFoundError"""
        try:
            return await self._request(method, path, json_body=json_body)
        except RemoteAPIError as e:
            if e.is_not_found:
                raise NotFoundError(f"{label} not found") from e
            raise

    async def _get_one(self, path: str, key: str, label: str) -> dict:
        body, _ = await self._request_one('GET', path, label)
        record = body.get(key) if isinstance(body, dict) else None
        if not record:
            raise NotFoundError(f"{label} not found")
        return record

    async def _paginate(self, path: str, key: str, params: Optional[dict] = None) -> List[dict]:
        """
        Collect every page of a list endpoint, newest first.

        Follows the Link rel="next" cursor for at most max_pages pages of
        page_size records each.
        """
        query = {**(params or {}), 'limit': self.page_size}
        url: Optional[str] = path
        records: List[dict] = []
        pages = 0

        while url and pages < self.max_pages:
            body, response = await self._request('GET', url, params=query)
            records.extend(body.get(key) or [])
            pages += 1
            url = response.links.get('next', {}).get('url')
            # cursor URLs already carry limit and page_info
            query = None

        if url:
            logger.warning(f"Stopped paginating {path} after {pages} pages ({len(records)} records)")

        return newest_first(records)

    # ==================== DRAFT ORDERS ====================

    async def list_draft_orders(self, status: str = 'open', limit: Optional[int] = None) -> List[dict]:
        params = {}
        if status and status != 'any':
            params['status'] = status
        drafts = await self._paginate('/draft_orders.json', 'draft_orders', params)
        return drafts[:limit] if limit else drafts

    async def get_draft_order(self, draft_order_id) -> dict:
        return await self._get_one(f"/draft_orders/{draft_order_id}.json", 'draft_order', f"Draft order {draft_order_id}")

    async def create_draft_order(self, data: dict) -> dict:
        body, _ = await self._request('POST', '/draft_orders.json', json_body={'draft_order': data})
        return body.get('draft_order') or {}

    async def update_draft_order(self, draft_order_id, data: dict) -> dict:
        path = f"/draft_orders/{draft_order_id}.json"
        body, _ = await self._request_one('PUT', path, f"Draft order {draft_order_id}", json_body={'draft_order': data})
        return body.get('draft_order') or {}

    async def complete_draft_order(self, draft_order_id, payment_pending: bool = True) -> dict:
        body, _ = await self._request(
            'PUT',
            f"/draft_orders/{draft_order_id}/complete.json",
            params={'payment_pending': 'true' if payment_pending else 'false'},
        )
        return body.get('draft_order') or {}

    async def send_draft_order_invoice(
        self,
        draft_order_id,
        to: Optional[str] = None,
        subject: Optional[str] = None,
        message: Optional[str] = None,
        bcc: Optional[List[str]] = None,
    ) -> dict:
        company = self.settings.company
        data = {
            'draft_order_invoice': {
                'to': to,
                'from': company.email,
                'subject': subject or f"Invoice from {company.name}",
                'custom_message': message or 'Thank you for your order. Please find your invoice attached.',
                'bcc': bcc or [],
            }
        }
        body, _ = await self._request('POST', f"/draft_orders/{draft_order_id}/send_invoice.json", json_body=data)
        return body.get('draft_order_invoice') or {}

    async def delete_draft_order(self, draft_order_id):
        await self._request_one('DELETE', f"/draft_orders/{draft_order_id}.json", f"Draft order {draft_order_id}")

    # ==================== ORDERS ====================

    async def list_orders(
        self,
        status: str = 'any',
        limit: Optional[int] = None,
        created_at_min: Optional[datetime] = None,
    ) -> List[dict]:
        params = {'status': status or 'any'}
        if created_at_min is not None:
            params['created_at_min'] = created_at_min.isoformat()
        orders = await self._paginate('/orders.json', 'orders', params)
        return orders[:limit] if limit else orders

    async def get_order(self, order_id) -> dict:
        return await self._get_one(f"/orders/{order_id}.json", 'order', f"Order {order_id}")

    # ==================== PRODUCTS ====================

    async def list_products(self, force_refresh: bool = False) -> List[dict]:
        """Full catalog, served from cache while younger than the TTL"""
        if not force_refresh and self.product_cache.is_fresh():
            return self.product_cache.value

        products = await self._paginate('/products.json', 'products')
        self.product_cache.set(products)
        return products

    async def get_product(self, product_id) -> dict:
        return await self._get_one(f"/products/{product_id}.json", 'product', f"Product {product_id}")

    async def search_products(self, query: Optional[str], limit: int = 50) -> List[dict]:
        products = await self.list_products()
        if query:
            needle = query.lower()
            products = [
                p for p in products
                if needle in (p.get('title') or '').lower()
                or needle in (p.get('product_type') or '').lower()
                or needle in (p.get('vendor') or '').lower()
                or needle in (p.get('tags') or '').lower()
            ]
        return products[:limit]

    # ==================== CUSTOMERS ====================

    async def get_customer(self, customer_id) -> dict:
        return await self._get_one(f"/customers/{customer_id}.json", 'customer', f"Customer {customer_id}")

    async def search_customers(self, query: str) -> List[dict]:
        body, _ = await self._request('GET', '/customers/search.json', params={'query': query})
        return body.get('customers') or []

    # ==================== METAFIELDS ====================

    async def create_order_metafield(self, order_id, data: dict) -> dict:
        body, _ = await self._request('POST', f"/orders/{order_id}/metafields.json", json_body={
            'metafield': {
                'namespace': METAFIELD_NAMESPACE,
                'key': METAFIELD_KEY,
                'value': json.dumps(data),
                'type': 'json',
            }
        })
        return body.get('metafield') or {}

    # ==================== WEBHOOKS ====================

    async def list_webhooks(self) -> List[dict]:
        body, _ = await self._request('GET', '/webhooks.json')
        return body.get('webhooks') or []

    async def create_webhook(self, topic: str, address: str) -> dict:
        body, _ = await self._request('POST', '/webhooks.json', json_body={
            'webhook': {'topic': topic, 'address': address, 'format': 'json'}
        })
        return body.get('webhook') or {}

    async def delete_webhook(self, webhook_id):
        await self._request('DELETE', f"/webhooks/{webhook_id}.json")

    async def register_default_webhooks(self, app_url: str, topics: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Create any missing default subscriptions; one failure does not stop the rest"""
        existing = {w.get('topic') for w in await self.list_webhooks()}
        results = []

        for topic in topics or DEFAULT_WEBHOOK_TOPICS:
            if topic in existing:
                logger.info(f"Webhook already registered: {topic}")
                results.append({'topic': topic, 'status': 'exists'})
                continue

            address = f"{app_url.rstrip('/')}/webhooks/{topic.replace('/', '-')}"
            try:
                webhook = await self.create_webhook(topic, address)
                logger.info(f"Webhook registered: {topic} -> {address}")
                results.append({'topic': topic, 'status': 'created', 'id': webhook.get('id')})
            except RemoteAPIError as e:
                logger.error(f"Failed to register webhook {topic}: {e}")
                results.append({'topic': topic, 'status': 'error', 'error': str(e)})

        return results

    # ==================== SHOP ====================

    async def get_shop(self) -> dict:
        body, _ = await self._request('GET', '/shop.json')
        return body.get('shop') or {}

    async def test_connection(self) -> dict:
        try:
            shop = await self.get_shop()
        except (RemoteAPIError, AuthenticationError, ConfigurationError) as e:
            return {'success': False, 'error': str(e)}
        return {
            'success': True,
            'shop': shop.get('name'),
            'email': shop.get('email'),
            'domain': shop.get('domain'),
        }
