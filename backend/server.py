from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request, Body, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import FileResponse
from starlette.middleware.cors import CORSMiddleware
import asyncio
import os
import logging
from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Dict, List, Optional, Union
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx

from .config import Settings
from .conversion import InvoiceConverter
from .email_drafts import EmailDrafter, build_email_context, build_email_drafter
from .errors import (
    AuthenticationError,
    ConfigurationError,
    InvoiceAppError,
    NotFoundError,
    RemoteAPIError,
)
from .invoicing import InvoiceStore, money
from .shopify_client import ShopifyClient, verify_webhook_signature
from .assets.pdf.pdfEngine import InvoiceEngine, build_invoice_engine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")
webhook_router = APIRouter(prefix="/webhooks")

# ==================== MODELS ====================

class CreateInvoiceRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    send_email: bool = Field(default=False, alias="sendEmail")
    complete_order: bool = Field(default=False, alias="completeOrder")


class BatchInvoiceRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    draft_order_ids: Optional[List[Union[int, str]]] = Field(default=None, alias="draftOrderIds")
    send_emails: bool = Field(default=False, alias="sendEmails")
    complete_orders: bool = Field(default=False, alias="completeOrders")


class SendInvoiceRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    to: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    bcc: List[str] = Field(default_factory=list)


# ==================== DEPENDENCIES ====================

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_client(request: Request) -> ShopifyClient:
    return request.app.state.client


def get_store(request: Request) -> InvoiceStore:
    return request.app.state.store


def get_converter(request: Request) -> InvoiceConverter:
    return request.app.state.converter


def get_drafter(request: Request) -> EmailDrafter:
    return request.app.state.drafter


def http_error(action: str, e: InvoiceAppError) -> HTTPException:
    """Map an application error to the HTTP status the dashboard expects"""
    if isinstance(e, NotFoundError) or (isinstance(e, RemoteAPIError) and e.is_not_found):
        status_code = 404
    elif isinstance(e, (RemoteAPIError, AuthenticationError)):
        status_code = 502
    elif isinstance(e, ConfigurationError):
        status_code = 503
    else:
        status_code = 500

    if status_code == 404:
        logger.info(f"{action}: {e}")
    else:
        logger.error(f"{action}: {e}")
    return HTTPException(status_code=status_code, detail=str(e))


# ==================== QUOTE ENDPOINTS ====================

@api_router.get("/draft-orders")
async def list_draft_orders(status: str = 'open', limit: int = Query(30, ge=1, le=2500),
                            client: ShopifyClient = Depends(get_client)):
    try:
        drafts = await client.list_draft_orders(status=status, limit=limit)
        return {"success": True, "count": len(drafts), "draft_orders": drafts}
    except InvoiceAppError as e:
        raise http_error("Error fetching draft orders", e)


@api_router.get("/draft-orders/{draft_order_id}")
async def get_draft_order(draft_order_id: int, client: ShopifyClient = Depends(get_client)):
    try:
        draft = await client.get_draft_order(draft_order_id)
        return {"success": True, "draft_order": draft}
    except InvoiceAppError as e:
        raise http_error(f"Error fetching draft order {draft_order_id}", e)


@api_router.post("/draft-orders")
async def create_draft_order(payload: Dict[str, Any] = Body(...), client: ShopifyClient = Depends(get_client)):
    data = payload.get('draft_order', payload)
    if not data.get('line_items'):
        raise HTTPException(status_code=400, detail="line_items are required")
    try:
        draft = await client.create_draft_order(data)
        logger.info(f"Draft order created: {draft.get('name')} ({draft.get('id')})")
        return {"success": True, "draft_order": draft}
    except InvoiceAppError as e:
        raise http_error("Error creating draft order", e)


@api_router.put("/draft-orders/{draft_order_id}")
async def update_draft_order(draft_order_id: int, payload: Dict[str, Any] = Body(...),
                             client: ShopifyClient = Depends(get_client)):
    data = payload.get('draft_order', payload)
    try:
        draft = await client.update_draft_order(draft_order_id, data)
        logger.info(f"Draft order {draft_order_id} updated")
        return {"success": True, "draft_order": draft}
    except InvoiceAppError as e:
        raise http_error(f"Error updating draft order {draft_order_id}", e)


@api_router.delete("/draft-orders/{draft_order_id}")
async def delete_draft_order(draft_order_id: int, client: ShopifyClient = Depends(get_client)):
    try:
        await client.delete_draft_order(draft_order_id)
        logger.info(f"Draft order {draft_order_id} deleted")
        return {"success": True, "message": "Draft order deleted"}
    except InvoiceAppError as e:
        raise http_error(f"Error deleting draft order {draft_order_id}", e)


@api_router.post("/draft-orders/batch-invoice")
async def batch_invoice(payload: BatchInvoiceRequest, converter: InvoiceConverter = Depends(get_converter)):
    if payload.draft_order_ids is None:
        raise HTTPException(status_code=400, detail="draftOrderIds array is required")
    try:
        result = await converter.convert_batch(
            payload.draft_order_ids,
            send_emails=payload.send_emails,
            complete_orders=payload.complete_orders,
        )
        return {"success": True, **result.model_dump(mode="json")}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error in batch conversion: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@api_router.post("/draft-orders/{draft_order_id}/create-invoice")
async def create_invoice(draft_order_id: int, payload: Optional[CreateInvoiceRequest] = None,
                         converter: InvoiceConverter = Depends(get_converter)):
    payload = payload or CreateInvoiceRequest()
    try:
        result = await converter.convert(
            draft_order_id,
            send_email=payload.send_email,
            complete_order=payload.complete_order,
        )
        logger.info(f"Invoice {result.invoice.invoice_number} created for draft order {draft_order_id}")
        return {"success": True, **result.model_dump(mode="json")}
    except InvoiceAppError as e:
        raise http_error(f"Error creating invoice for draft order {draft_order_id}", e)


@api_router.post("/draft-orders/{draft_order_id}/generate-email")
async def generate_email(draft_order_id: int,
                         client: ShopifyClient = Depends(get_client),
                         drafter: EmailDrafter = Depends(get_drafter),
                         settings: Settings = Depends(get_settings)):
    try:
        draft_order = await client.get_draft_order(draft_order_id)
        context = build_email_context(draft_order, settings)
        draft = await drafter.draft(context)
        return {"success": True, **draft.model_dump()}
    except InvoiceAppError as e:
        raise http_error(f"Error generating email for draft order {draft_order_id}", e)


@api_router.post("/draft-orders/{draft_order_id}/send-invoice")
async def send_invoice(draft_order_id: int, payload: Optional[SendInvoiceRequest] = None,
                       client: ShopifyClient = Depends(get_client)):
    payload = payload or SendInvoiceRequest()
    try:
        result = await client.send_draft_order_invoice(
            draft_order_id,
            to=payload.to,
            subject=payload.subject,
            message=payload.message,
            bcc=payload.bcc,
        )
        return {"success": True, "result": result}
    except InvoiceAppError as e:
        raise http_error(f"Error sending invoice for draft order {draft_order_id}", e)


# ==================== INVOICE ENDPOINTS ====================

@api_router.get("/invoices")
async def list_invoices(store: InvoiceStore = Depends(get_store)):
    try:
        invoices = store.list_invoices()
        return jsonable_encoder({"success": True, "count": len(invoices), "invoices": invoices})
    except OSError as e:
        logger.error(f"Error listing invoices: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@api_router.get("/invoices/{invoice_number}/download")
async def download_invoice(invoice_number: str, store: InvoiceStore = Depends(get_store)):
    try:
        path = store.get(invoice_number)
        return FileResponse(
            path=str(path),
            media_type='application/pdf',
            filename=path.name,
        )
    except InvoiceAppError as e:
        raise http_error(f"Error downloading invoice {invoice_number}", e)


# ==================== ORDER ENDPOINTS ====================

@api_router.get("/orders")
async def list_orders(status: str = 'any', limit: int = Query(50, ge=1, le=2500),
                      client: ShopifyClient = Depends(get_client)):
    try:
        orders = await client.list_orders(status=status, limit=limit)
        return {"success": True, "count": len(orders), "orders": orders}
    except InvoiceAppError as e:
        raise http_error("Error fetching orders", e)


@api_router.get("/orders/{order_id}")
async def get_order(order_id: int, client: ShopifyClient = Depends(get_client)):
    try:
        order = await client.get_order(order_id)
        return {"success": True, "order": order}
    except InvoiceAppError as e:
        raise http_error(f"Error fetching order {order_id}", e)


# ==================== WEBHOOK SUBSCRIPTIONS ====================

@api_router.get("/webhooks")
async def list_webhooks(client: ShopifyClient = Depends(get_client)):
    try:
        webhooks = await client.list_webhooks()
        return {"success": True, "webhooks": webhooks}
    except InvoiceAppError as e:
        raise http_error("Error fetching webhooks", e)


@api_router.post("/webhooks/register")
async def register_webhooks(client: ShopifyClient = Depends(get_client), settings: Settings = Depends(get_settings)):
    try:
        results = await client.register_default_webhooks(settings.app_url)
        return {"success": True, "results": results}
    except InvoiceAppError as e:
        raise http_error("Error registering webhooks", e)


@api_router.delete("/webhooks/{webhook_id}")
async def delete_webhook(webhook_id: int, client: ShopifyClient = Depends(get_client)):
    try:
        await client.delete_webhook(webhook_id)
        logger.info(f"Webhook {webhook_id} deleted")
        return {"success": True, "message": "Webhook deleted"}
    except InvoiceAppError as e:
        raise http_error(f"Error deleting webhook {webhook_id}", e)


# ==================== CUSTOMER / PRODUCT ENDPOINTS ====================

@api_router.get("/customers/search")
async def search_customers(q: Optional[str] = None, client: ShopifyClient = Depends(get_client)):
    if not q:
        raise HTTPException(status_code=400, detail="Search query (q) is required")
    try:
        customers = await client.search_customers(q)
        return {"success": True, "customers": customers}
    except InvoiceAppError as e:
        raise http_error("Error searching customers", e)


@api_router.get("/customers/{customer_id}")
async def get_customer(customer_id: int, client: ShopifyClient = Depends(get_client)):
    try:
        customer = await client.get_customer(customer_id)
        return {"success": True, "customer": customer}
    except InvoiceAppError as e:
        raise http_error(f"Error fetching customer {customer_id}", e)


@api_router.get("/products")
async def list_products(limit: int = Query(50, ge=1), client: ShopifyClient = Depends(get_client)):
    try:
        products = (await client.list_products())[:limit]
        return {"success": True, "count": len(products), "products": products}
    except InvoiceAppError as e:
        raise http_error("Error fetching products", e)


@api_router.get("/products/search")
async def search_products(q: Optional[str] = None, limit: int = Query(50, ge=1),
                          client: ShopifyClient = Depends(get_client)):
    try:
        products = await client.search_products(q, limit=limit)
        return {"success": True, "query": q or '', "count": len(products), "products": products}
    except InvoiceAppError as e:
        raise http_error("Error searching products", e)


@api_router.get("/products/{product_id}")
async def get_product(product_id: int, client: ShopifyClient = Depends(get_client)):
    try:
        product = await client.get_product(product_id)
        return {"success": True, "product": product}
    except InvoiceAppError as e:
        raise http_error(f"Error fetching product {product_id}", e)


# ==================== DASHBOARD ====================

def _sum_totals(records: List[dict]) -> Decimal:
    return money(sum((money(r.get('total_price')) for r in records), Decimal("0")))


@api_router.get("/stats")
async def get_stats(client: ShopifyClient = Depends(get_client), store: InvoiceStore = Depends(get_store)):
    """Open quotes and their value, invoices on disk, orders and revenue over the last 30 days"""
    try:
        since = datetime.now(timezone.utc) - timedelta(days=30)
        open_quotes, recent_orders = await asyncio.gather(
            client.list_draft_orders(status='open'),
            client.list_orders(status='any', created_at_min=since),
        )
        return {
            "success": True,
            "stats": {
                "openQuotes": len(open_quotes),
                "totalQuoteValue": str(_sum_totals(open_quotes)),
                "invoicesGenerated": len(store.list_invoices()),
                "recentOrders": len(recent_orders),
                "monthlyRevenue": str(_sum_totals(recent_orders)),
            },
        }
    except InvoiceAppError as e:
        raise http_error("Error building dashboard stats", e)


@api_router.get("/shop")
async def shop_info(client: ShopifyClient = Depends(get_client)):
    result = await client.test_connection()
    if not result['success']:
        logger.error(f"Shopify connection test failed: {result['error']}")
        raise HTTPException(status_code=502, detail=result['error'])
    return result


# ==================== ROOT ENDPOINTS ====================

@api_router.get("/")
async def root():
    return {"message": "Phoenix Invoice API", "version": "1.0"}


@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "phoenix-invoice-api"}


# ==================== INCOMING WEBHOOKS ====================

@webhook_router.post("/{topic}")
async def receive_webhook(topic: str, request: Request, settings: Settings = Depends(get_settings)):
    body = await request.body()
    signature = request.headers.get('X-Shopify-Hmac-Sha256')
    if not verify_webhook_signature(body, signature, settings.signing_secret):
        logger.warning(f"Rejected webhook {topic}: invalid signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    record_id = payload.get('id') if isinstance(payload, dict) else None
    shop = request.headers.get('X-Shopify-Shop-Domain', '')
    logger.info(f"Webhook received: {topic.replace('-', '/')} id={record_id} shop={shop}")
    return {"received": True, "topic": topic, "id": record_id}


# ==================== APP FACTORY ====================

def create_app(
    settings: Optional[Settings] = None,
    client: Optional[ShopifyClient] = None,
    engine: Optional[InvoiceEngine] = None,
    drafter: Optional[EmailDrafter] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the app and its long-lived services; collaborators may be passed in"""
    settings = settings or Settings.from_env()
    owns_http = http_client is None
    owns_client = client is None
    http = http_client or httpx.AsyncClient(timeout=settings.http_timeout, follow_redirects=True)
    client = client or ShopifyClient(settings)
    engine = engine or build_invoice_engine(
        InvoiceStore(settings.invoice_dir), settings.assets_dir, http, settings.checkout_base_url, settings.logo_url
    )

    app = FastAPI(title="Phoenix Invoice API")
    app.state.settings = settings
    app.state.http = http
    app.state.client = client
    app.state.store = engine.store
    app.state.converter = InvoiceConverter(client, engine, engine.store, settings)
    app.state.drafter = drafter or build_email_drafter(settings, http)

    app.include_router(api_router)
    app.include_router(webhook_router)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat(), "version": "1.0.0"}

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def register_webhooks_on_startup():
        if not settings.register_webhooks_on_startup:
            return
        try:
            results = await client.register_default_webhooks(settings.app_url)
            logger.info(f"Webhook registration on startup: {results}")
        except InvoiceAppError as e:
            logger.error(f"Failed to register webhooks: {e}")

    @app.on_event("shutdown")
    async def shutdown_http_clients():
        # injected clients belong to the caller
        if owns_client:
            await client.aclose()
        if owns_http:
            await http.aclose()

    return app


# Serve with: uvicorn backend.server:create_app --factory
if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
