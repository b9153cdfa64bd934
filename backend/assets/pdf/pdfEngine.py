"""
Quote Invoice Engine - PDF Generation
=====================================

Features:
- Fixed US Letter template drawn with reportlab (no background PDF)
- Top-down LayoutCursor: rows advance y, a block that would cross the
  bottom margin starts a new page at the fixed top margin
- Product thumbnails downloaded once into the asset cache (placeholder on failure)
- Pay-online QR code for the quote checkout URL
- Atomic write through InvoiceStore, "Page n of m" on multi-page invoices
"""

import io
import asyncio
import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Optional
from urllib.parse import quote

import httpx
import qrcode
from PIL import Image
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas as rl_canvas

from ...invoicing import Invoice, InvoiceStore

logger = logging.getLogger(__name__)

# ==================== CONFIGURATION ====================

PAGE_WIDTH, PAGE_HEIGHT = letter
MARGIN = 40
CONTENT_WIDTH = PAGE_WIDTH - MARGIN * 2
CONTINUATION_TOP = 50
BOTTOM_LIMIT = PAGE_HEIGHT - 60

TABLE_TOP = 250
TABLE_HEADER_H = 22
ROW_H = 40
THUMB_SIZE = 28
QR_SIZE = 70

COL_THUMB_X = MARGIN + 6
COL_TITLE_X = MARGIN + 42
COL_TITLE_W = 268
COL_QTY_CENTER = MARGIN + 345
COL_PRICE_CENTER = MARGIN + 410
COL_TOTAL_RIGHT = MARGIN + CONTENT_WIDTH - 10
TOTALS_LABEL_X = MARGIN + 300

COLORS = {
    'navy': colors.HexColor('#0d3b66'),
    'light_blue': colors.HexColor('#e8f4f8'),
    'orange': colors.HexColor('#f97316'),
    'text_dark': colors.HexColor('#1f2937'),
    'text_muted': colors.HexColor('#6b7280'),
    'border': colors.HexColor('#e5e7eb'),
    'row_alt': colors.HexColor('#f8fafc'),
    'strip': colors.HexColor('#f1f5f9'),
    'green': colors.HexColor('#10b981'),
    'white': colors.white,
}

PAYMENT_BRANDS = [
    ('PayPal', '#003087', 15),
    ('VISA', '#1a1f71', 70),
    ('MC', '#1f2937', 110),
    ('Bank', '#1f2937', 150),
    ('DISCOVER', '#ff6000', 200),
]

CURRENCY_SYMBOLS = {'USD': '$', 'CAD': '$', 'AUD': '$', 'EUR': '€', 'GBP': '£'}


# ==================== HELPER FUNCTIONS ====================

def format_currency(amount: Decimal, currency: str = "USD") -> str:
    """Two decimals with thousands separators, e.g. $1,234.50"""
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), f"{currency.upper()} ")
    amount = Decimal(amount)
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.2f}"


def format_date(value) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def checkout_url(base_url: str, quote_number: str) -> str:
    return f"{base_url}?quote={quote(quote_number, safe='')}"


def fit_text(text: str, font: str, size: float, max_width: float) -> str:
    """Trim text with '..' until it fits max_width"""
    text = str(text or '')
    if stringWidth(text, font, size) <= max_width:
        return text
    while text and stringWidth(text + "..", font, size) > max_width:
        text = text[:-1]
    return text + ".."


def qr_image(data: str, size: int = QR_SIZE) -> ImageReader:
    qr = qrcode.QRCode(version=1, box_size=4, border=1)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#0d3b66", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    buf.seek(0)
    return ImageReader(buf)


class LayoutCursor:
    """
    Tracks the current y position measured from the top of the page.

    Args:
        page_height: Page height in points
        top: y where content resumes on a continuation page
        bottom: Lowest y a block may reach before a page break
        on_new_page: Called after the break, before y is reset
    """

    def __init__(self, page_height: float, top: float, bottom: float,
                 on_new_page: Optional[Callable[[], None]] = None):
        self.page_height = page_height
        self.top = top
        self.bottom = bottom
        self.on_new_page = on_new_page
        self.y = top
        self.page = 1

    def advance(self, dy: float) -> float:
        self.y += dy
        return self.y

    def fits(self, height: float) -> bool:
        return self.y + height <= self.bottom

    def ensure(self, height: float) -> bool:
        """Start a new page if a block of this height does not fit; True when a break happened"""
        if self.fits(height):
            return False
        self.page += 1
        if self.on_new_page:
            self.on_new_page()
        self.y = self.top
        return True

    def to_pdf(self, y_from_top: float) -> float:
        """Convert to reportlab's bottom-up coordinates"""
        return self.page_height - y_from_top


def draw_text(canvas, cursor: LayoutCursor, text: str, x: float, y_top: float, font: str = "Helvetica",
              size: float = 9, color=None, align: str = "left", width: Optional[float] = None):
    """
    Draw a single line whose top edge sits at y_top.

    Args:
        x: Left edge (or centre / right edge for align="center" / "right")
        width: Optional max width; longer text is trimmed
    """
    text = str(text or '')
    if width:
        text = fit_text(text, font, size, width)
    canvas.setFont(font, size)
    canvas.setFillColor(color or COLORS['text_dark'])
    baseline = cursor.to_pdf(y_top + size * 0.8)
    if align == "center":
        canvas.drawCentredString(x, baseline, text)
    elif align == "right":
        canvas.drawRightString(x, baseline, text)
    else:
        canvas.drawString(x, baseline, text)


def fill_box(canvas, cursor: LayoutCursor, x: float, y_top: float, w: float, h: float, color):
    canvas.setFillColor(color)
    canvas.rect(x, cursor.to_pdf(y_top + h), w, h, fill=True, stroke=False)


def draw_image_in_box(canvas, cursor: LayoutCursor, image_path: Optional[Path], x: float, y_top: float,
                      w: float, h: float) -> bool:
    """Draw a cached image scaled into the box; draws the placeholder instead when missing or unreadable"""
    if image_path is not None:
        try:
            canvas.drawImage(str(image_path), x, cursor.to_pdf(y_top + h), width=w, height=h,
                             preserveAspectRatio=True, anchor='c', mask='auto')
            return True
        except (OSError, ValueError) as e:
            logger.warning(f"Error drawing image {image_path}: {e}")
    draw_placeholder(canvas, cursor, x, y_top, w, h)
    return False


def draw_placeholder(canvas, cursor: LayoutCursor, x: float, y_top: float, w: float, h: float):
    fill_box(canvas, cursor, x, y_top, w, h, COLORS['border'])
    canvas.setStrokeColor(COLORS['text_muted'])
    canvas.setLineWidth(0.5)
    canvas.line(x + 4, cursor.to_pdf(y_top + h - 4), x + w - 4, cursor.to_pdf(y_top + 4))
    canvas.line(x + 4, cursor.to_pdf(y_top + 4), x + w - 4, cursor.to_pdf(y_top + h - 4))


class NumberedCanvas(rl_canvas.Canvas):
    """Defers page output so 'Page n of m' can be stamped once the page count is known"""

    def __init__(self, *args, footer_label: str = "", **kwargs):
        super().__init__(*args, **kwargs)
        self._saved_page_states = []
        self.footer_label = footer_label

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        total = len(self._saved_page_states)
        for state in self._saved_page_states:
            self.__dict__.update(state)
            if total > 1:
                self.setFont("Helvetica", 7)
                self.setFillColor(COLORS['text_muted'])
                self.drawRightString(PAGE_WIDTH - MARGIN, 20,
                                     f"{self.footer_label} (Page {self._pageNumber} of {total})")
            super().showPage()
        super().save()

    @property
    def page_count(self) -> int:
        return len(self._saved_page_states)


# ==================== IMAGE CACHE ====================

class ImageCache:
    """Product images and the brand logo, one PNG per key, downloaded once"""

    def __init__(self, directory: Path, http: httpx.AsyncClient):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.http = http

    @staticmethod
    def key_for(url: str, product_id=None) -> str:
        if product_id:
            return f"product-{product_id}"
        return f"url-{hashlib.sha1(url.encode('utf-8')).hexdigest()[:16]}"

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.png"

    async def fetch(self, url: Optional[str], key: str) -> Optional[Path]:
        """Local path for the image, downloading it if needed; None when unavailable"""
        if not url:
            return None
        path = self.path_for(key)
        if path.exists():
            return path

        try:
            response = await self.http.get(url, follow_redirects=True)
            response.raise_for_status()
            self._store_png(response.content, path)
        except (httpx.HTTPError, OSError, Image.DecompressionBombError) as e:
            logger.warning(f"Image download failed for {key} ({url}): {e}")
            return None
        return path

    def _store_png(self, content: bytes, path: Path):
        with Image.open(io.BytesIO(content)) as img:
            img.load()
            if img.mode not in ("RGB", "RGBA"):
                img = img.convert("RGBA")
            fd, tmp_path = tempfile.mkstemp(suffix=".png", dir=str(self.directory))
            try:
                with os.fdopen(fd, 'wb') as f:
                    img.save(f, format="PNG")
                os.replace(tmp_path, path)
            finally:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)


# ==================== INVOICE ENGINE ====================

@dataclass
class RenderResult:
    filename: str
    filepath: Path
    invoice_number: str
    page_count: int


class InvoiceEngine:
    """Draws the fixed quote/invoice template for an Invoice record"""

    def __init__(self, store: InvoiceStore, image_cache: ImageCache, checkout_base_url: str,
                 logo_url: Optional[str] = None):
        self.store = store
        self.image_cache = image_cache
        self.checkout_base_url = checkout_base_url
        self.logo_url = logo_url

    async def render(self, invoice: Invoice) -> RenderResult:
        """Download images, then draw and write the PDF off the event loop"""
        image_paths = {}
        for item in invoice.line_items:
            if item.image_url:
                key = ImageCache.key_for(item.image_url, item.product_id)
                image_paths[item.image_url] = await self.image_cache.fetch(item.image_url, key)
        logo_path = await self.image_cache.fetch(self.logo_url, 'brand-logo') if self.logo_url else None

        return await asyncio.to_thread(self.render_sync, invoice, image_paths, logo_path)

    def render_sync(self, invoice: Invoice, image_paths: Optional[Dict[str, Optional[Path]]] = None,
                    logo_path: Optional[Path] = None) -> RenderResult:
        pages = {}

        def write(f):
            pages['count'] = self._draw(f, invoice, image_paths or {}, logo_path)

        path = self.store.write_atomic(invoice.invoice_number, write)
        logger.info(f"Invoice generated: {path} ({pages['count']} pages)")
        return RenderResult(
            filename=path.name,
            filepath=path,
            invoice_number=invoice.invoice_number,
            page_count=pages['count'],
        )

    def _draw(self, f, invoice: Invoice, image_paths: Dict[str, Optional[Path]], logo_path: Optional[Path]) -> int:
        canvas = NumberedCanvas(f, pagesize=letter, footer_label=invoice.invoice_number)
        canvas.setTitle(f"Invoice {invoice.invoice_number}")
        canvas.setAuthor(invoice.company.name)

        def new_page():
            canvas.showPage()

        cursor = LayoutCursor(PAGE_HEIGHT, CONTINUATION_TOP, BOTTOM_LIMIT, on_new_page=new_page)

        self._render_header(canvas, cursor, invoice, logo_path)
        self._render_parties(canvas, cursor, invoice)
        self._render_items(canvas, cursor, invoice, image_paths)
        self._render_totals(canvas, cursor, invoice)
        self._render_notes_and_qr(canvas, cursor, invoice)
        self._render_payment_strip(canvas, cursor)
        self._render_footer(canvas, cursor, invoice)

        canvas.showPage()
        page_count = canvas.page_count
        canvas.save()
        return page_count

    # ---------- sections ----------

    def _render_header(self, canvas, cursor: LayoutCursor, invoice: Invoice, logo_path: Optional[Path]):
        company = invoice.company
        drawn = False
        if logo_path is not None:
            try:
                canvas.drawImage(str(logo_path), MARGIN, cursor.to_pdf(35 + 50), width=150, height=50,
                                 preserveAspectRatio=True, anchor='sw', mask='auto')
                drawn = True
            except (OSError, ValueError) as e:
                logger.warning(f"Error drawing logo: {e}")
        if not drawn:
            brand, _, tagline = company.name.upper().partition(' ')
            draw_text(canvas, cursor, brand, MARGIN, 40, "Helvetica-Bold", 24, COLORS['navy'])
            if tagline:
                draw_text(canvas, cursor, tagline, MARGIN, 67, "Helvetica", 10, COLORS['orange'])

        draw_text(canvas, cursor, "QUOTE", MARGIN, 90, "Helvetica-Bold", 36, COLORS['navy'])
        draw_text(canvas, cursor, company.phone, MARGIN, 130, size=9, color=COLORS['navy'])
        draw_text(canvas, cursor, company.email, MARGIN + 100, 130, size=9, color=COLORS['navy'])

        right_col = PAGE_WIDTH - MARGIN - 180
        details = [
            f"Quote #: {invoice.quote_number}",
            f"Invoice #: {invoice.invoice_number}",
            f"Date: {format_date(invoice.generated_at)}",
            f"Valid Until: {format_date(invoice.valid_until)}",
        ]
        for i, line in enumerate(details):
            draw_text(canvas, cursor, line, right_col, 45 + i * 15, size=10, width=180)

    def _render_party_box(self, canvas, cursor: LayoutCursor, x: float, y: float, label: str, lines):
        fill_box(canvas, cursor, x, y, 250, 85, COLORS['light_blue'])
        draw_text(canvas, cursor, label, x + 10, y + 8, "Helvetica-Bold", 10, COLORS['navy'])
        name, *rest = lines
        draw_text(canvas, cursor, name, x + 10, y + 22, "Helvetica-Bold", 10, width=230)
        line_y = y + 36
        for line in rest:
            if line:
                draw_text(canvas, cursor, line, x + 10, line_y, size=9, width=230)
                line_y += 12

    def _render_parties(self, canvas, cursor: LayoutCursor, invoice: Invoice):
        customer = invoice.customer
        shipping = invoice.shipping
        self._render_party_box(canvas, cursor, MARGIN, 150, "Bill To:", [
            customer.name, customer.company, customer.address1, customer.city_line, customer.email,
        ])
        self._render_party_box(canvas, cursor, MARGIN + 270, 150, "Ship To:", [
            shipping.name or customer.name, shipping.company, shipping.address1, shipping.city_line, shipping.phone,
        ])

    def _render_table_header(self, canvas, cursor: LayoutCursor):
        y = cursor.y
        fill_box(canvas, cursor, MARGIN, y, CONTENT_WIDTH, TABLE_HEADER_H, COLORS['navy'])
        white = COLORS['white']
        draw_text(canvas, cursor, "Product", MARGIN + 10, y + 7, "Helvetica-Bold", 9, white)
        draw_text(canvas, cursor, "QTY", COL_QTY_CENTER, y + 7, "Helvetica-Bold", 9, white, align="center")
        draw_text(canvas, cursor, "PRICE", COL_PRICE_CENTER, y + 7, "Helvetica-Bold", 9, white, align="center")
        draw_text(canvas, cursor, "TOTAL", COL_TOTAL_RIGHT, y + 7, "Helvetica-Bold", 9, white, align="right")
        cursor.advance(TABLE_HEADER_H)

    def _render_items(self, canvas, cursor: LayoutCursor, invoice: Invoice, image_paths: Dict[str, Optional[Path]]):
        cursor.y = TABLE_TOP
        self._render_table_header(canvas, cursor)

        for index, item in enumerate(invoice.line_items):
            if cursor.ensure(ROW_H):
                self._render_table_header(canvas, cursor)

            y = cursor.y
            if index % 2 == 1:
                fill_box(canvas, cursor, MARGIN, y, CONTENT_WIDTH, ROW_H, COLORS['row_alt'])

            draw_image_in_box(canvas, cursor, image_paths.get(item.image_url) if item.image_url else None,
                              COL_THUMB_X, y + (ROW_H - THUMB_SIZE) / 2, THUMB_SIZE, THUMB_SIZE)

            draw_text(canvas, cursor, item.title, COL_TITLE_X, y + 7, "Helvetica-Bold", 9, width=COL_TITLE_W)
            detail = " · ".join(part for part in (item.variant_title, item.sku) if part)
            if detail:
                draw_text(canvas, cursor, detail, COL_TITLE_X, y + 21, size=8, color=COLORS['text_muted'],
                          width=COL_TITLE_W)

            draw_text(canvas, cursor, str(item.quantity), COL_QTY_CENTER, y + 14, size=10, align="center")
            draw_text(canvas, cursor, format_currency(item.price, invoice.currency), COL_PRICE_CENTER, y + 14,
                      size=10, align="center")
            draw_text(canvas, cursor, format_currency(item.total, invoice.currency), COL_TOTAL_RIGHT, y + 14,
                      size=10, align="right")
            cursor.advance(ROW_H)

        canvas.setStrokeColor(COLORS['border'])
        canvas.setLineWidth(1)
        canvas.line(MARGIN, cursor.to_pdf(cursor.y), MARGIN + CONTENT_WIDTH, cursor.to_pdf(cursor.y))

    def _render_totals(self, canvas, cursor: LayoutCursor, invoice: Invoice):
        rows = [("Subtotal:", format_currency(invoice.subtotal, invoice.currency), COLORS['text_dark'])]
        if invoice.discount_amount > 0:
            rows.append((f"{invoice.discount_title}:", format_currency(-invoice.discount_amount, invoice.currency),
                         COLORS['green']))
        shipping_value = format_currency(invoice.shipping_cost, invoice.currency) if invoice.shipping_cost > 0 else "Free"
        rows.append((f"{invoice.shipping_title}:", shipping_value, COLORS['text_dark']))
        if invoice.tax_amount > 0:
            rows.append(("Tax:", format_currency(invoice.tax_amount, invoice.currency), COLORS['text_dark']))

        cursor.ensure(15 + len(rows) * 18 + 30)
        cursor.advance(15)
        for label, value, color in rows:
            draw_text(canvas, cursor, label, TOTALS_LABEL_X, cursor.y, size=10, color=color, width=140)
            draw_text(canvas, cursor, value, COL_TOTAL_RIGHT, cursor.y, size=10, color=color, align="right")
            cursor.advance(18)

        cursor.advance(7)
        draw_text(canvas, cursor, "Total:", TOTALS_LABEL_X, cursor.y, "Helvetica-Bold", 14, COLORS['navy'])
        draw_text(canvas, cursor, format_currency(invoice.total, invoice.currency), COL_TOTAL_RIGHT, cursor.y,
                  "Helvetica-Bold", 14, COLORS['navy'], align="right")
        cursor.advance(20)

    def _render_notes_and_qr(self, canvas, cursor: LayoutCursor, invoice: Invoice):
        notes_height = 25 + len(invoice.invoice_notes) * 12 + 5 + 14 + 12
        cursor.ensure(max(notes_height, QR_SIZE + 20) + 25)
        cursor.advance(25)
        top = cursor.y

        fill_box(canvas, cursor, MARGIN, top, 280, 18, COLORS['navy'])
        draw_text(canvas, cursor, "NOTES:", MARGIN + 10, top + 5, "Helvetica-Bold", 9, COLORS['white'])
        cursor.advance(25)
        for note in invoice.invoice_notes:
            draw_text(canvas, cursor, f"• {note}", MARGIN + 10, cursor.y, size=8, width=260)
            cursor.advance(12)

        cursor.advance(5)
        draw_text(canvas, cursor, invoice.personal_message.sender, MARGIN + 10, cursor.y, "Helvetica-Bold", 10)
        cursor.advance(14)
        draw_text(canvas, cursor, invoice.personal_message.message, MARGIN + 10, cursor.y, size=9, width=260)
        cursor.advance(12)

        qr_x = MARGIN + 400
        url = checkout_url(self.checkout_base_url, invoice.quote_number)
        try:
            canvas.drawImage(qr_image(url), qr_x, cursor.to_pdf(top + QR_SIZE), width=QR_SIZE, height=QR_SIZE)
        except (OSError, ValueError) as e:
            logger.warning(f"QR code generation failed for {invoice.quote_number}: {e}")
            canvas.setStrokeColor(COLORS['navy'])
            canvas.rect(qr_x, cursor.to_pdf(top + QR_SIZE), QR_SIZE, QR_SIZE, fill=False, stroke=True)
        draw_text(canvas, cursor, "PAY ONLINE", qr_x + QR_SIZE / 2, top + QR_SIZE + 5, "Helvetica-Bold", 8,
                  COLORS['navy'], align="center")
        cursor.y = max(cursor.y, top + QR_SIZE + 15)

    def _render_payment_strip(self, canvas, cursor: LayoutCursor):
        cursor.ensure(25 + 25)
        cursor.advance(25)
        fill_box(canvas, cursor, MARGIN, cursor.y, CONTENT_WIDTH, 25, COLORS['strip'])
        for label, color, offset in PAYMENT_BRANDS:
            draw_text(canvas, cursor, label, MARGIN + offset, cursor.y + 8, "Helvetica-Bold", 9,
                      colors.HexColor(color))
        cursor.advance(25)

    def _render_footer(self, canvas, cursor: LayoutCursor, invoice: Invoice):
        company = invoice.company
        cursor.ensure(10 + 24)
        cursor.advance(10)
        muted = COLORS['text_muted']
        draw_text(canvas, cursor, company.email, MARGIN, cursor.y, size=9, color=muted)
        draw_text(canvas, cursor, company.phone, MARGIN, cursor.y + 12, size=9, color=muted)
        draw_text(canvas, cursor, company.website, MARGIN + 300, cursor.y, size=9, color=muted)
        cursor.advance(24)


# ==================== FACTORY FUNCTION ====================

def build_invoice_engine(store: InvoiceStore, assets_dir: Path, http: httpx.AsyncClient,
                         checkout_base_url: str, logo_url: Optional[str] = None) -> InvoiceEngine:
    return InvoiceEngine(store, ImageCache(assets_dir, http), checkout_base_url, logo_url)
