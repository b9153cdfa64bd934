"""
Follow-up email drafts for a quote.

Two drafters share one interface: a Jinja2 template (deterministic, no
network) and a generative one backed by the Anthropic Messages API, optionally
enriched with the customer's latest call transcript. The generative drafter is
always wrapped in FallbackEmailDrafter so callers get a usable body no matter
what the remote side does.
"""

import logging
from pathlib import Path
from typing import List, Optional, Protocol

import httpx
from jinja2 import Environment, FileSystemLoader
from pydantic import BaseModel, Field

from .config import CompanyProfile, Settings
from .invoicing import customer_name, money, quote_email
from .assets.pdf.pdfEngine import checkout_url, format_currency

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "assets" / "email"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


# ==================== MODELS ====================

class EmailProduct(BaseModel):
    name: str
    quantity: int
    price: str


class EmailContext(BaseModel):
    """Everything a drafter may use, taken from the draft order once"""
    to: str = ""
    customer_name: str
    customer_phone: str = ""
    order_name: str
    total: str
    products: List[EmailProduct] = Field(default_factory=list)
    invoice_url: str = ""
    company: CompanyProfile
    signoff_name: str


class EmailDraft(BaseModel):
    to: str
    subject: str
    body: str
    html: bool = False
    order_name: str
    customer_name: str
    source: str


def build_email_context(draft_order: dict, settings: Settings) -> EmailContext:
    name = customer_name(draft_order)
    if name == 'Customer':
        name = 'Valued Customer'
    order_name = draft_order.get('name') or f"#{draft_order['id']}"
    customer = draft_order.get('customer') or {}
    currency = draft_order.get('currency') or 'USD'

    products = [
        EmailProduct(
            name=item.get('title') or 'Item',
            quantity=int(item.get('quantity') or 1),
            price=format_currency(money(item.get('price')), currency),
        )
        for item in draft_order.get('line_items') or []
    ]

    return EmailContext(
        to=quote_email(draft_order),
        customer_name=name,
        customer_phone=customer.get('phone') or (draft_order.get('billing_address') or {}).get('phone') or '',
        order_name=order_name,
        total=format_currency(money(draft_order.get('total_price')), currency),
        products=products,
        invoice_url=draft_order.get('invoice_url') or checkout_url(settings.checkout_base_url, order_name),
        company=settings.company,
        signoff_name=settings.signoff_name,
    )


def subject_for(context: EmailContext) -> str:
    return f"Your {context.company.name} Quote {context.order_name}"


class EmailDrafter(Protocol):
    source: str

    async def draft(self, context: EmailContext) -> EmailDraft:
        ...


# ==================== TEMPLATE ====================

class TemplateEmailDrafter:
    source = "template"

    def __init__(self, template_dir: Path = TEMPLATE_DIR, template_name: str = "followup.txt.j2"):
        env = Environment(loader=FileSystemLoader(str(template_dir)), keep_trailing_newline=False)
        self.template = env.get_template(template_name)

    def render(self, context: EmailContext) -> EmailDraft:
        body = self.template.render(**dict(context))
        return EmailDraft(
            to=context.to,
            subject=subject_for(context),
            body=body.strip(),
            html=False,
            order_name=context.order_name,
            customer_name=context.customer_name,
            source=self.source,
        )

    async def draft(self, context: EmailContext) -> EmailDraft:
        return self.render(context)


# ==================== CALL TRANSCRIPTS ====================

class CallTranscriptProvider:
    """Latest call transcript for a customer from the voice-analytics service; None on any failure"""

    def __init__(self, http: httpx.AsyncClient, url: str, api_key: Optional[str] = None):
        self.http = http
        self.url = url
        self.api_key = api_key

    async def recent_transcript(self, phone: str = "", email: str = "") -> Optional[str]:
        if not (phone or email):
            return None
        headers = {'Authorization': f"Bearer {self.api_key}"} if self.api_key else {}
        params = {k: v for k, v in (('phone', phone), ('email', email)) if v}
        try:
            response = await self.http.get(self.url, params=params, headers=headers)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Call transcript lookup failed: {e}")
            return None

        if isinstance(data, dict) and data.get('transcript'):
            return str(data['transcript'])
        transcripts = data.get('transcripts') if isinstance(data, dict) else data
        if isinstance(transcripts, list) and transcripts:
            latest = transcripts[0]
            if isinstance(latest, dict):
                return latest.get('transcript') or latest.get('text')
            return str(latest)
        return None


# ==================== GENERATIVE ====================

class GenerativeEmailDrafter:
    source = "generative"

    def __init__(self, http: httpx.AsyncClient, api_key: str, model: str,
                 transcripts: Optional[CallTranscriptProvider] = None, max_tokens: int = 800):
        self.http = http
        self.api_key = api_key
        self.model = model
        self.transcripts = transcripts
        self.max_tokens = max_tokens

    def build_prompt(self, context: EmailContext, transcript: Optional[str] = None) -> str:
        product_list = "\n".join(f"- {p.name} (Qty: {p.quantity}) - {p.price}" for p in context.products)
        prompt = f"""Write a friendly, professional follow-up email for {context.company.name}.

CUSTOMER: {context.customer_name}
ORDER NUMBER: {context.order_name}
TOTAL: {context.total}
PRODUCTS:
{product_list}

INVOICE LINK: {context.invoice_url}
"""
        if transcript:
            prompt += f"""
RECENT PHONE CALL WITH THE CUSTOMER (use it to personalise the email, do not quote it verbatim):
{transcript}
"""
        prompt += f"""
Write a warm email that:
1. Thanks them for their interest
2. Mentions the specific product(s) they're interested in
3. Highlights key benefits (American-made, 5-year warranty, free shipping, technical support)
4. Includes the invoice link
5. Offers to answer any questions
6. Ends with a friendly sign-off from {context.signoff_name}

Keep it concise (under 200 words). Don't include a subject line.
Return only the email body as simple HTML using <p> and <ul>/<li> tags."""
        return prompt

    async def draft(self, context: EmailContext) -> EmailDraft:
        transcript = None
        if self.transcripts is not None:
            transcript = await self.transcripts.recent_transcript(context.customer_phone, context.to)

        response = await self.http.post(
            ANTHROPIC_URL,
            headers={
                'x-api-key': self.api_key,
                'anthropic-version': ANTHROPIC_VERSION,
                'content-type': 'application/json',
            },
            json={
                'model': self.model,
                'max_tokens': self.max_tokens,
                'messages': [{'role': 'user', 'content': self.build_prompt(context, transcript)}],
            },
        )
        response.raise_for_status()
        blocks = response.json().get('content') or []
        text = "".join(b.get('text', '') for b in blocks if b.get('type') == 'text').strip()
        if not text:
            raise ValueError("Generative email response had no text")

        return EmailDraft(
            to=context.to,
            subject=subject_for(context),
            body=text,
            html=True,
            order_name=context.order_name,
            customer_name=context.customer_name,
            source=self.source,
        )


# ==================== FALLBACK ====================

class FallbackEmailDrafter:
    """Try the primary drafter; on any error log it and use the template"""

    def __init__(self, primary: EmailDrafter, fallback: TemplateEmailDrafter):
        self.primary = primary
        self.fallback = fallback
        self.source = primary.source

    async def draft(self, context: EmailContext) -> EmailDraft:
        try:
            return await self.primary.draft(context)
        except Exception as e:
            logger.warning(f"{self.primary.source} email draft failed for {context.order_name}, using template: {e}")
            return self.fallback.render(context)


def build_email_drafter(settings: Settings, http: httpx.AsyncClient) -> EmailDrafter:
    template = TemplateEmailDrafter()
    if settings.email_drafter != "generative":
        return template
    if not settings.anthropic_api_key:
        logger.warning("EMAIL_DRAFTER=generative but ANTHROPIC_API_KEY is not set, using template emails")
        return template

    transcripts = None
    if settings.transcripts_url:
        transcripts = CallTranscriptProvider(http, settings.transcripts_url, settings.transcripts_api_key)

    generative = GenerativeEmailDrafter(http, settings.anthropic_api_key, settings.anthropic_model, transcripts)
    return FallbackEmailDrafter(generative, template)
