"""
Shared fixtures: settings pointed at tmp dirs, sample draft orders, an
in-memory Shopify double and an image server backed by httpx.MockTransport.
"""

import io
import copy

import httpx
import pytest
from PIL import Image

from backend.config import Settings
from backend.errors import NotFoundError, RemoteAPIError
from backend.invoicing import InvoiceStore
from backend.assets.pdf.pdfEngine import build_invoice_engine


def png_bytes(color=(13, 59, 102), size=(40, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def make_line_item(index: int = 1, **overrides) -> dict:
    item = {
        'id': 9000 + index,
        'title': f"PT-{index} Rotary Phase Converter",
        'variant_title': '10 HP',
        'sku': f"PT{index:03d}",
        'quantity': 1,
        'price': '1899.00',
        'product_id': 500 + index,
    }
    item.update(overrides)
    return item


def make_draft_order(draft_id: int = 1001, **overrides) -> dict:
    draft = {
        'id': draft_id,
        'name': f"#D{draft_id}",
        'status': 'open',
        'email': 'pat@example.com',
        'currency': 'USD',
        'created_at': '2026-10-01T10:00:00-04:00',
        'customer': {
            'id': 77,
            'first_name': 'Pat',
            'last_name': 'Rivera',
            'email': 'pat@example.com',
            'phone': '+1 301 555 0100',
        },
        'billing_address': {
            'name': 'Accounts Payable',
            'company': 'Rivera Machine Works',
            'address1': '14 Mill Street',
            'city': 'Frederick',
            'province_code': 'MD',
            'zip': '21701',
        },
        'shipping_address': {
            'name': 'Pat Rivera',
            'company': 'Rivera Machine Works',
            'address1': '200 Shop Lane',
            'city': 'Hagerstown',
            'province_code': 'MD',
            'zip': '21740',
            'phone': '+1 301 555 0199',
        },
        'line_items': [make_line_item(1)],
        'subtotal_price': '1899.00',
        'total_tax': '0.00',
        'total_price': '1899.00',
        'shipping_line': {'title': 'Standard Shipping', 'price': '0.00'},
        'applied_discount': None,
        'invoice_url': 'https://phoenix-test.myshopify.com/invoices/abc123',
    }
    draft.update(overrides)
    return draft


class FakeShopify:
    """Records calls; draft orders and products are served from dicts"""

    def __init__(self, drafts=None, products=None):
        self.drafts = {d['id']: d for d in (drafts or [])}
        self.products = {p['id']: p for p in (products or [])}
        self.orders = []
        self.webhooks = []
        self.customers = []
        self.calls = []
        self.fail_complete = None
        self.fail_email = None
        self.fail_metafield = None
        self.closed = False

    async def get_draft_order(self, draft_order_id):
        self.calls.append(('get_draft_order', draft_order_id))
        draft = self.drafts.get(int(draft_order_id))
        if draft is None:
            raise NotFoundError(f"Draft order {draft_order_id} not found")
        return copy.deepcopy(draft)

    async def list_draft_orders(self, status='open', limit=None):
        self.calls.append(('list_draft_orders', status, limit))
        drafts = [d for d in self.drafts.values() if status == 'any' or d.get('status') == status]
        return drafts[:limit] if limit else drafts

    async def create_draft_order(self, data):
        self.calls.append(('create_draft_order', data))
        draft = {'id': 5555, 'name': '#D5555', **data}
        self.drafts[5555] = draft
        return draft

    async def update_draft_order(self, draft_order_id, data):
        self.calls.append(('update_draft_order', draft_order_id, data))
        draft = self.drafts.get(int(draft_order_id))
        if draft is None:
            raise NotFoundError(f"Draft order {draft_order_id} not found")
        draft.update(data)
        return copy.deepcopy(draft)

    async def delete_draft_order(self, draft_order_id):
        self.calls.append(('delete_draft_order', draft_order_id))
        if self.drafts.pop(int(draft_order_id), None) is None:
            raise NotFoundError(f"Draft order {draft_order_id} not found")

    async def get_order(self, order_id):
        self.calls.append(('get_order', order_id))
        for order in self.orders:
            if order['id'] == int(order_id):
                return order
        raise NotFoundError(f"Order {order_id} not found")

    async def get_customer(self, customer_id):
        self.calls.append(('get_customer', customer_id))
        for customer in self.customers:
            if customer['id'] == int(customer_id):
                return customer
        raise NotFoundError(f"Customer {customer_id} not found")

    async def complete_draft_order(self, draft_order_id, payment_pending=True):
        self.calls.append(('complete_draft_order', draft_order_id, payment_pending))
        if self.fail_complete:
            raise self.fail_complete
        return {'id': draft_order_id, 'status': 'completed', 'order_id': 880000 + int(draft_order_id)}

    async def create_order_metafield(self, order_id, data):
        self.calls.append(('create_order_metafield', order_id, data))
        if self.fail_metafield:
            raise self.fail_metafield
        return {'id': 1, 'namespace': 'phoenix_invoices'}

    async def send_draft_order_invoice(self, draft_order_id, to=None, subject=None, message=None, bcc=None):
        self.calls.append(('send_draft_order_invoice', draft_order_id, to, subject, message))
        if self.fail_email:
            raise self.fail_email
        return {'to': to, 'subject': subject}

    async def list_orders(self, status='any', limit=None, created_at_min=None):
        self.calls.append(('list_orders', status, limit, created_at_min))
        return self.orders[:limit] if limit else list(self.orders)

    async def list_products(self, force_refresh=False):
        return list(self.products.values())

    async def get_product(self, product_id):
        self.calls.append(('get_product', product_id))
        product = self.products.get(int(product_id))
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    async def search_products(self, query, limit=50):
        needle = (query or '').lower()
        return [p for p in self.products.values() if needle in p.get('title', '').lower()][:limit]

    async def search_customers(self, query):
        self.calls.append(('search_customers', query))
        return self.customers

    async def list_webhooks(self):
        return self.webhooks

    async def register_default_webhooks(self, app_url, topics=None):
        self.calls.append(('register_default_webhooks', app_url))
        return [{'topic': 'orders/create', 'status': 'created', 'id': 1}]

    async def delete_webhook(self, webhook_id):
        self.calls.append(('delete_webhook', webhook_id))
        if not any(w['id'] == webhook_id for w in self.webhooks):
            raise RemoteAPIError("Not Found", status_code=404)

    async def test_connection(self):
        return {'success': True, 'shop': 'Phoenix Test', 'email': 'ops@example.com', 'domain': 'phoenix-test'}

    async def aclose(self):
        self.closed = True


def image_handler(request: httpx.Request) -> httpx.Response:
    """Serves a PNG for /good/ URLs; everything else is a 404"""
    if '/good/' in request.url.path:
        return httpx.Response(200, content=png_bytes(), headers={'Content-Type': 'image/png'})
    if '/not-an-image/' in request.url.path:
        return httpx.Response(200, content=b"<html>nope</html>", headers={'Content-Type': 'text/html'})
    return httpx.Response(404, text="missing")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        store_domain="phoenix-test.myshopify.com",
        access_token="shpat_test",
        webhook_secret="whsec_test",
        invoice_dir=tmp_path / "invoices",
        assets_dir=tmp_path / "cache",
    )


@pytest.fixture
def draft_order():
    return make_draft_order()


@pytest.fixture
def store(settings):
    return InvoiceStore(settings.invoice_dir)


@pytest.fixture
def image_http():
    return httpx.AsyncClient(transport=httpx.MockTransport(image_handler))


@pytest.fixture
def engine(settings, store, image_http):
    return build_invoice_engine(store, settings.assets_dir, image_http, settings.checkout_base_url)


@pytest.fixture
def fake_shopify(draft_order):
    return FakeShopify(drafts=[draft_order])
