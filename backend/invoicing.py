"""
Invoice records derived from Shopify draft orders, and the flat PDF store.
"""

import os
import re
import tempfile
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from pathlib import Path
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import CompanyProfile, Settings
from .errors import InvoiceAppError, NotFoundError, RenderError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
VALIDITY_DAYS = 30

INVOICE_NOTES = [
    'Free shipping to the contiguous USA on most orders',
    'American-made with LIFETIME WARRANTY',
    '24/7 technical support included',
]


# ==================== MODELS ====================

class Party(BaseModel):
    name: str = ""
    company: str = ""
    address1: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    email: str = ""
    phone: str = ""

    @property
    def city_line(self) -> str:
        if not self.city:
            return ""
        return f"{self.city}, {self.state} {self.zip}".strip().rstrip(',')


class InvoiceLineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    title: str
    variant_title: Optional[str] = None
    sku: str = ""
    quantity: int = Field(ge=1)
    price: Decimal
    image_url: Optional[str] = None
    product_id: Optional[int] = None

    @property
    def total(self) -> Decimal:
        return money(self.price * self.quantity)


class PersonalMessage(BaseModel):
    sender: str
    message: str


class Invoice(BaseModel):
    """Immutable snapshot of a quote at render time"""
    model_config = ConfigDict(frozen=True)

    invoice_number: str
    quote_number: str
    draft_order_id: int
    generated_at: datetime
    valid_until: datetime
    company: CompanyProfile
    customer: Party
    shipping: Party
    line_items: List[InvoiceLineItem]
    subtotal: Decimal
    shipping_cost: Decimal
    shipping_title: str = "Shipping"
    discount_amount: Decimal
    discount_title: str = "Discount"
    tax_amount: Decimal
    total: Decimal
    currency: str = "USD"
    invoice_notes: List[str] = Field(default_factory=lambda: list(INVOICE_NOTES))
    personal_message: PersonalMessage


# ==================== HELPER FUNCTIONS ====================

def money(value: Any) -> Decimal:
    """Parse a Shopify money string/number into a Decimal rounded to cents (bad input -> 0)"""
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return Decimal("0.00")


_UNSAFE_CHARS = re.compile(r"[\s/\\]+")
_NUMERIC_ID = re.compile(r"[0-9]+")


def invoice_number(quote_id: Any, prefix: str = "INV-") -> str:
    """
    Deterministic invoice number for a draft order id, safe to use as a filename.

    Only numeric ids are accepted, so distinct ids always give distinct numbers.
    """
    text = str(quote_id)
    if isinstance(quote_id, bool) or not _NUMERIC_ID.fullmatch(text):
        raise ValueError(f"Draft order id must be numeric, got {quote_id!r}")
    return f"{_UNSAFE_CHARS.sub('-', prefix)}{text}"


def customer_name(draft_order: dict) -> str:
    customer = draft_order.get('customer') or {}
    billing = draft_order.get('billing_address') or {}
    if customer.get('first_name'):
        return f"{customer['first_name']} {customer.get('last_name') or ''}".strip()
    return billing.get('name') or 'Customer'


def quote_email(draft_order: dict) -> str:
    customer = draft_order.get('customer') or {}
    return customer.get('email') or draft_order.get('email') or ''


def _party(address: dict, name: str, email: str = "", phone: str = "", use_address_name: bool = True) -> Party:
    return Party(
        name=(address.get('name') if use_address_name else None) or name,
        company=address.get('company') or '',
        address1=address.get('address1') or '',
        city=address.get('city') or '',
        state=address.get('province_code') or '',
        zip=address.get('zip') or '',
        email=email,
        phone=phone or address.get('phone') or '',
    )


def _line_item(item: dict) -> InvoiceLineItem:
    image = item.get('image') or {}
    return InvoiceLineItem(
        id=item.get('id'),
        title=item.get('title') or 'Item',
        variant_title=item.get('variant_title') or None,
        sku=item.get('sku') or '',
        quantity=max(1, int(item.get('quantity') or 1)),
        price=money(item.get('price')),
        image_url=image.get('src') if isinstance(image, dict) else None,
        product_id=item.get('product_id'),
    )


def _shipping(draft_order: dict):
    shipping_line = draft_order.get('shipping_line')
    if shipping_line:
        return money(shipping_line.get('price')), shipping_line.get('title') or 'Shipping'
    amount = ((draft_order.get('total_shipping_price_set') or {}).get('shop_money') or {}).get('amount')
    return money(amount), 'Shipping'


def _discount(draft_order: dict):
    applied = draft_order.get('applied_discount')
    if applied:
        title = applied.get('title') or applied.get('description') or 'Discount'
        return money(applied.get('amount')), title
    return money(draft_order.get('total_discounts')), 'Discount'


def calculate_tax(draft_order: dict, taxable: Decimal, tax_mode: str, rate_percent: float) -> Decimal:
    """Tax per the configured mode: trust Shopify, apply a local rate, or none"""
    if tax_mode == "remote":
        return money(draft_order.get('total_tax'))
    if tax_mode == "percent":
        return money(max(taxable, Decimal("0")) * Decimal(str(rate_percent)) / 100)
    return Decimal("0.00")


def build_invoice(draft_order: dict, settings: Settings, now: Optional[datetime] = None) -> Invoice:
    """Derive the invoice snapshot from a draft order; totals are computed once here"""
    generated_at = now or datetime.now(timezone.utc)
    line_items = [_line_item(item) for item in draft_order.get('line_items') or []]

    if draft_order.get('subtotal_price') not in (None, ""):
        subtotal = money(draft_order.get('subtotal_price'))
    else:
        subtotal = money(sum((item.total for item in line_items), Decimal("0")))

    shipping_cost, shipping_title = _shipping(draft_order)
    discount_amount, discount_title = _discount(draft_order)
    tax_amount = calculate_tax(draft_order, subtotal - discount_amount, settings.tax_mode, settings.tax_rate_percent)
    total = subtotal + shipping_cost + tax_amount - discount_amount

    name = customer_name(draft_order)
    customer = draft_order.get('customer') or {}
    billing = draft_order.get('billing_address') or {}

    return Invoice(
        invoice_number=invoice_number(draft_order['id'], settings.invoice_prefix),
        quote_number=draft_order.get('name') or f"Q-{draft_order['id']}",
        draft_order_id=draft_order['id'],
        generated_at=generated_at,
        valid_until=generated_at + timedelta(days=VALIDITY_DAYS),
        company=settings.company,
        customer=_party(billing, name, quote_email(draft_order), customer.get('phone') or '', use_address_name=False),
        shipping=_party(draft_order.get('shipping_address') or {}, name),
        line_items=line_items,
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        shipping_title=shipping_title,
        discount_amount=discount_amount,
        discount_title=discount_title,
        tax_amount=tax_amount,
        total=total,
        currency=draft_order.get('currency') or 'USD',
        personal_message=PersonalMessage(sender=settings.signoff_name, message=settings.signoff_message),
    )


async def resolve_line_item_images(invoice: Invoice, client) -> Invoice:
    """Fill in missing line-item images from the product record"""
    resolved = []
    for item in invoice.line_items:
        if item.image_url or not item.product_id:
            resolved.append(item)
            continue
        try:
            product = await client.get_product(item.product_id)
        except InvoiceAppError as e:
            logger.warning(f"Could not fetch product image for {item.product_id}: {e}")
            resolved.append(item)
            continue

        src = (product.get('image') or {}).get('src')
        if not src and product.get('images'):
            src = product['images'][0].get('src')
        resolved.append(item.model_copy(update={'image_url': src}) if src else item)

    return invoice.model_copy(update={'line_items': resolved})


# ==================== INVOICE STORE ====================

class InvoiceStore:
    """One PDF per invoice number in a flat directory"""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, number: str) -> Path:
        path = (self.directory / f"{number}.pdf").resolve()
        if path.parent != self.directory.resolve():
            raise NotFoundError(f"Invoice {number} not found")
        return path

    def exists(self, number: str) -> bool:
        try:
            return self.path_for(number).is_file()
        except NotFoundError:
            return False

    def get(self, number: str) -> Path:
        path = self.path_for(number)
        if not path.is_file():
            raise NotFoundError(f"Invoice {number} not found")
        return path

    def list_invoices(self) -> List[dict]:
        entries = []
        for path in self.directory.glob("*.pdf"):
            stat = path.stat()
            entries.append({
                'filename': path.name,
                'invoice_number': path.stem,
                'size_bytes': stat.st_size,
                'created_at': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            })
        entries.sort(key=lambda e: e['created_at'], reverse=True)
        return entries

    def write_atomic(self, number: str, writer: Callable[[Any], Any]) -> Path:
        """
        Write an invoice through a temp file in the same directory.

        Args:
            number: Invoice number (file stem)
            writer: Callable receiving an open binary file object

        Returns:
            Final path; the previous file (if any) is only replaced on success
        """
        target = self.path_for(number)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{number}.", suffix=".tmp", dir=str(self.directory))
        try:
            with os.fdopen(fd, 'wb') as f:
                writer(f)
            os.replace(tmp_path, target)
        except Exception as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(f"Error writing invoice {number}: {e}")
            raise RenderError(f"Could not write invoice {number}: {e}") from e
        return target
