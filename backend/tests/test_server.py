"""
HTTP routes through FastAPI's TestClient with the Shopify double and a real
invoice engine writing to a tmp directory.
"""

import base64
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from backend.email_drafts import TemplateEmailDrafter
from backend.errors import AuthenticationError, RemoteAPIError
from backend.server import create_app

from .conftest import make_draft_order


@pytest.fixture
def app(settings, fake_shopify, engine, image_http):
    return create_app(
        settings,
        client=fake_shopify,
        engine=engine,
        drafter=TemplateEmailDrafter(),
        http_client=image_http,
    )


@pytest.fixture
def api(app):
    with TestClient(app) as c:
        yield c


def sign(body: bytes, secret: str = "whsec_test") -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


class TestHealthCheck:
    """Health check tests"""

    def test_health(self, api):
        assert api.get("/health").json()["status"] == "healthy"
        assert api.get("/api/health").json()["status"] == "healthy"


class TestQuotes:
    """Quote listing and retrieval"""

    def test_list_and_get(self, api):
        data = api.get("/api/draft-orders").json()
        assert data["count"] == 1
        assert data["draft_orders"][0]["name"] == "#D1001"

        response = api.get("/api/draft-orders/1001")
        assert response.status_code == 200
        assert response.json()["draft_order"]["id"] == 1001

    def test_get_missing_is_404(self, api):
        response = api.get("/api/draft-orders/999")
        assert response.status_code == 404
        assert "not found" in response.json()["detail"]

    def test_remote_error_is_502(self, api, fake_shopify):
        async def broken(*args, **kwargs):
            raise RemoteAPIError("Exceeded 2 calls per second", status_code=429)

        fake_shopify.list_draft_orders = broken
        response = api.get("/api/draft-orders")
        assert response.status_code == 502
        assert response.json() == {"detail": "Exceeded 2 calls per second"}

    def test_auth_error_is_502(self, api, fake_shopify):
        async def broken(*args, **kwargs):
            raise AuthenticationError("Failed to authenticate with Shopify: HTTP 400")

        fake_shopify.get_draft_order = broken
        assert api.get("/api/draft-orders/1001").status_code == 502

    def test_create_requires_line_items(self, api):
        assert api.post("/api/draft-orders", json={"note": "x"}).status_code == 400

        response = api.post("/api/draft-orders", json={"line_items": [{"variant_id": 1, "quantity": 1}]})
        assert response.status_code == 200
        assert response.json()["draft_order"]["id"] == 5555

    def test_update(self, api, fake_shopify):
        response = api.put("/api/draft-orders/1001", json={"draft_order": {"note": "Rush order"}})
        assert response.status_code == 200
        assert response.json()["draft_order"]["note"] == "Rush order"
        assert ('update_draft_order', 1001, {"note": "Rush order"}) in fake_shopify.calls

        assert api.put("/api/draft-orders/999", json={"note": "x"}).status_code == 404

    def test_delete(self, api, fake_shopify):
        assert api.delete("/api/draft-orders/1001").status_code == 200
        assert api.get("/api/draft-orders/1001").status_code == 404
        assert api.delete("/api/draft-orders/1001").status_code == 404


class TestOrdersAndCustomers:
    """Single order and customer lookups"""

    def test_get_order(self, api, fake_shopify):
        fake_shopify.orders = [{'id': 880, 'name': '#1880', 'total_price': '1899.00'}]
        assert api.get("/api/orders/880").json()["order"]["name"] == "#1880"
        assert api.get("/api/orders/881").status_code == 404

    def test_get_customer(self, api, fake_shopify):
        fake_shopify.customers = [{'id': 77, 'email': 'pat@example.com'}]
        assert api.get("/api/customers/77").json()["customer"]["email"] == "pat@example.com"
        assert api.get("/api/customers/78").status_code == 404


class TestInvoices:
    """Conversion and download"""

    def test_create_invoice_and_download(self, api, store):
        response = api.post("/api/draft-orders/1001/create-invoice", json={"sendEmail": False})
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["invoice"]["invoice_number"] == "INV-1001"
        assert data["invoice"]["total"] == "1899.00"
        assert data["pdf"]["download_url"] == "/api/invoices/INV-1001/download"

        download = api.get(data["pdf"]["download_url"])
        assert download.status_code == 200
        assert download.headers["content-type"] == "application/pdf"
        assert download.content == store.get("INV-1001").read_bytes()

        listing = api.get("/api/invoices").json()
        assert listing["count"] == 1
        assert listing["invoices"][0]["filename"] == "INV-1001.pdf"

    def test_create_invoice_without_body(self, api):
        assert api.post("/api/draft-orders/1001/create-invoice").status_code == 200

    def test_create_invoice_with_flags(self, api, fake_shopify):
        data = api.post(
            "/api/draft-orders/1001/create-invoice",
            json={"sendEmail": True, "completeOrder": True},
        ).json()
        assert data["completion"]["success"] is True
        assert data["email"]["sent"] is True

    def test_create_invoice_for_missing_quote(self, api):
        assert api.post("/api/draft-orders/4040/create-invoice", json={}).status_code == 404

    def test_download_missing_is_404(self, api):
        assert api.get("/api/invoices/INV-nope/download").status_code == 404

    def test_batch(self, api):
        data = api.post("/api/draft-orders/batch-invoice", json={"draftOrderIds": [1001, 42]}).json()
        assert data["processed"] == 2
        assert data["successful"] == 1
        assert data["failed"] == 1
        assert data["results"][0]["invoice_number"] == "INV-1001"
        assert data["results"][1]["success"] is False

    def test_batch_requires_ids(self, api):
        response = api.post("/api/draft-orders/batch-invoice", json={"sendEmails": True})
        assert response.status_code == 400
        assert "draftOrderIds" in response.json()["detail"]


class TestEmails:
    def test_generate_email(self, api):
        data = api.post("/api/draft-orders/1001/generate-email").json()
        assert data["to"] == "pat@example.com"
        assert data["subject"].endswith("#D1001")
        assert data["body"].startswith("Hi Pat Rivera,")

    def test_send_invoice(self, api, fake_shopify):
        response = api.post("/api/draft-orders/1001/send-invoice", json={"to": "ap@example.com"})
        assert response.status_code == 200
        assert ('send_draft_order_invoice', 1001, 'ap@example.com', None, None) in fake_shopify.calls


class TestCatalogAndCustomers:
    def test_customer_search_requires_query(self, api):
        assert api.get("/api/customers/search").status_code == 400
        assert api.get("/api/customers/search", params={"q": "rivera"}).status_code == 200

    def test_products(self, api, fake_shopify):
        fake_shopify.products = {
            1: {'id': 1, 'title': 'Rotary Converter'},
            2: {'id': 2, 'title': 'Idler Motor'},
        }
        assert api.get("/api/products").json()["count"] == 2
        assert api.get("/api/products/search", params={"q": "idler"}).json()["products"][0]["id"] == 2
        assert api.get("/api/products/1").json()["product"]["title"] == "Rotary Converter"
        assert api.get("/api/products/3").status_code == 404


class TestStats:
    def test_stats(self, api, fake_shopify):
        fake_shopify.orders = [{'id': 1, 'total_price': '100.50'}, {'id': 2, 'total_price': '20.00'}]
        api.post("/api/draft-orders/1001/create-invoice")

        stats = api.get("/api/stats").json()["stats"]
        assert stats == {
            "openQuotes": 1,
            "totalQuoteValue": "1899.00",
            "invoicesGenerated": 1,
            "recentOrders": 2,
            "monthlyRevenue": "120.50",
        }


class TestWebhookSubscriptions:
    def test_register_and_delete(self, api, fake_shopify):
        data = api.post("/api/webhooks/register").json()
        assert data["results"][0]["status"] == "created"

        fake_shopify.webhooks = [{'id': 7, 'topic': 'orders/create'}]
        assert api.get("/api/webhooks").json()["webhooks"][0]["id"] == 7
        assert api.delete("/api/webhooks/7").status_code == 200
        assert api.delete("/api/webhooks/8").status_code == 404


class TestIncomingWebhooks:
    """Shopify-signed webhook delivery"""

    def test_valid_signature_accepted(self, api):
        body = json.dumps({'id': 1001, 'name': '#D1001'}).encode()
        response = api.post(
            "/webhooks/draft_orders-update",
            content=body,
            headers={'X-Shopify-Hmac-Sha256': sign(body), 'Content-Type': 'application/json'},
        )
        assert response.status_code == 200
        assert response.json() == {"received": True, "topic": "draft_orders-update", "id": 1001}

    def test_bad_signature_rejected(self, api):
        body = b'{"id": 1}'
        response = api.post(
            "/webhooks/orders-paid",
            content=body,
            headers={'X-Shopify-Hmac-Sha256': sign(body, "wrong")},
        )
        assert response.status_code == 401

    def test_missing_signature_rejected(self, api):
        assert api.post("/webhooks/orders-paid", content=b"{}").status_code == 401


class TestStartup:
    def test_registers_webhooks_when_enabled(self, settings, fake_shopify, engine, image_http):
        settings = settings.model_copy(update={'register_webhooks_on_startup': True})
        app = create_app(settings, client=fake_shopify, engine=engine, http_client=image_http)
        with TestClient(app):
            pass
        assert ('register_default_webhooks', settings.app_url) in fake_shopify.calls

    def test_shutdown_leaves_injected_clients_open(self, settings, fake_shopify, engine, image_http):
        app = create_app(settings, client=fake_shopify, engine=engine, http_client=image_http)
        with TestClient(app):
            pass
        assert fake_shopify.closed is False
        assert image_http.is_closed is False

    def test_shutdown_closes_clients_it_created(self, settings):
        app = create_app(settings)
        with TestClient(app):
            pass
        assert app.state.http.is_closed is True
        assert app.state.client.http.is_closed is True

    def test_import_builds_no_app(self):
        import backend.server as server
        assert not hasattr(server, "app")
