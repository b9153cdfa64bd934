"""
Quote -> invoice conversion, single and batch.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Union

from pydantic import BaseModel, Field

from .config import Settings
from .errors import InvoiceAppError
from .invoicing import Invoice, InvoiceStore, build_invoice, quote_email, resolve_line_item_images
from .assets.pdf.pdfEngine import InvoiceEngine, format_currency

logger = logging.getLogger(__name__)


# ==================== MODELS ====================

class PdfLink(BaseModel):
    filename: str
    download_url: str
    page_count: int = 1


class CompletionOutcome(BaseModel):
    requested: bool = False
    success: Optional[bool] = None
    order_id: Optional[int] = None
    error: Optional[str] = None
    metafield_error: Optional[str] = None


class EmailOutcome(BaseModel):
    requested: bool = False
    sent: bool = False
    to: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


class ConversionResult(BaseModel):
    invoice: Invoice
    pdf: PdfLink
    order: Optional[dict] = None
    completion: CompletionOutcome = Field(default_factory=CompletionOutcome)
    email: EmailOutcome = Field(default_factory=EmailOutcome)

    @property
    def follow_ups_ok(self) -> bool:
        """False when a requested completion or email did not go through"""
        if self.completion.requested and not self.completion.success:
            return False
        if self.email.requested and not self.email.sent:
            return self.email.skipped_reason is not None
        return True


class BatchItemResult(BaseModel):
    id: Union[int, str]
    success: bool
    invoice_number: Optional[str] = None
    total: Optional[Decimal] = None
    error: Optional[str] = None


class BatchResult(BaseModel):
    processed: int
    successful: int
    failed: int
    results: List[BatchItemResult]


def download_url(invoice_number: str) -> str:
    return f"/api/invoices/{invoice_number}/download"


# ==================== CONVERTER ====================

class InvoiceConverter:
    """Fetch -> render -> optionally complete -> optionally email, strictly in that order"""

    def __init__(self, client, engine: InvoiceEngine, store: InvoiceStore, settings: Settings):
        self.client = client
        self.engine = engine
        self.store = store
        self.settings = settings

    async def convert(self, quote_id, send_email: bool = False, complete_order: bool = False) -> ConversionResult:
        """
        Convert one quote.

        Fetch and render failures propagate. Completion and email failures are
        reported in the result; the rendered PDF is kept either way.
        """
        draft_order = await self.client.get_draft_order(quote_id)

        invoice = build_invoice(draft_order, self.settings)
        invoice = await resolve_line_item_images(invoice, self.client)
        rendered = await self.engine.render(invoice)

        result = ConversionResult(
            invoice=invoice,
            pdf=PdfLink(
                filename=rendered.filename,
                download_url=download_url(invoice.invoice_number),
                page_count=rendered.page_count,
            ),
        )

        if complete_order:
            await self._complete(quote_id, invoice, rendered.filename, result)

        if send_email:
            await self._send_email(quote_id, draft_order, invoice, result)

        return result

    async def _complete(self, quote_id, invoice: Invoice, filename: str, result: ConversionResult):
        result.completion.requested = True
        try:
            order = await self.client.complete_draft_order(quote_id, payment_pending=True)
        except InvoiceAppError as e:
            logger.error(f"Completing draft order {quote_id} failed: {e}")
            result.completion.success = False
            result.completion.error = str(e)
            return

        result.order = order
        result.completion.success = True
        order_id = order.get('order_id')
        result.completion.order_id = order_id
        if not order_id:
            return

        try:
            await self.client.create_order_metafield(order_id, {
                'invoiceNumber': invoice.invoice_number,
                'createdAt': invoice.generated_at.isoformat(),
                'pdfFile': filename,
            })
        except InvoiceAppError as e:
            logger.warning(f"Invoice metafield for order {order_id} failed: {e}")
            result.completion.metafield_error = str(e)

    async def _send_email(self, quote_id, draft_order: dict, invoice: Invoice, result: ConversionResult):
        result.email.requested = True
        to = quote_email(draft_order)
        if not to:
            result.email.skipped_reason = "Quote has no customer email"
            logger.info(f"Skipping invoice email for {quote_id}: no customer email")
            return

        result.email.to = to
        company = self.settings.company
        try:
            await self.client.send_draft_order_invoice(
                quote_id,
                to=to,
                subject=f"Invoice {invoice.invoice_number} from {company.name}",
                message=(
                    f"Please find your invoice attached. Invoice #: {invoice.invoice_number}. "
                    f"Total: {format_currency(invoice.total, invoice.currency)}"
                ),
            )
            result.email.sent = True
        except InvoiceAppError as e:
            logger.error(f"Sending invoice email for {quote_id} failed: {e}")
            result.email.error = str(e)

    async def convert_batch(self, ids: List[Union[int, str]], send_emails: bool = False,
                            complete_orders: bool = False) -> BatchResult:
        """Sequential; each id succeeds or fails on its own"""
        results: List[BatchItemResult] = []

        for quote_id in ids:
            try:
                converted = await self.convert(quote_id, send_email=send_emails, complete_order=complete_orders)
            except Exception as e:
                logger.error(f"Batch conversion failed for {quote_id}: {e}")
                results.append(BatchItemResult(id=quote_id, success=False, error=str(e)))
                continue

            if not converted.follow_ups_ok:
                # the PDF stays on disk; a failed entry carries only the error
                error = converted.completion.error or converted.email.error or "Follow-up failed"
                results.append(BatchItemResult(id=quote_id, success=False, error=error))
                continue

            results.append(BatchItemResult(
                id=quote_id,
                success=True,
                invoice_number=converted.invoice.invoice_number,
                total=converted.invoice.total,
            ))

        successful = sum(1 for r in results if r.success)
        logger.info(f"Batch conversion done: {successful}/{len(results)} succeeded")
        return BatchResult(
            processed=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )
