"""
Follow-up email drafting: template output, generative call shape and the
fallback boundary.
"""

import json

import httpx
import pytest

from backend.email_drafts import (
    CallTranscriptProvider,
    FallbackEmailDrafter,
    GenerativeEmailDrafter,
    TemplateEmailDrafter,
    build_email_context,
    build_email_drafter,
)

from .conftest import make_draft_order, make_line_item


def anthropic_reply(text):
    return httpx.Response(200, json={
        'id': 'msg_1',
        'type': 'message',
        'role': 'assistant',
        'content': [{'type': 'text', 'text': text}],
    })


class TestEmailContext:
    def test_context_from_draft_order(self, settings):
        draft = make_draft_order(line_items=[make_line_item(1, quantity=2)], total_price='3798.00')
        context = build_email_context(draft, settings)

        assert context.to == "pat@example.com"
        assert context.customer_name == "Pat Rivera"
        assert context.order_name == "#D1001"
        assert context.total == "$3,798.00"
        assert context.products[0].quantity == 2
        assert context.invoice_url == "https://phoenix-test.myshopify.com/invoices/abc123"

    def test_unnamed_customer_is_valued_customer(self, settings):
        draft = make_draft_order(customer=None, billing_address=None, invoice_url=None)
        context = build_email_context(draft, settings)
        assert context.customer_name == "Valued Customer"
        assert context.invoice_url.endswith("?quote=%23D1001")


class TestTemplateDrafter:
    """Deterministic plain-text body"""

    @pytest.mark.asyncio
    async def test_template_body(self, settings):
        context = build_email_context(make_draft_order(), settings)
        draft = await TemplateEmailDrafter().draft(context)

        assert draft.subject == "Your Phoenix Phase Converters Quote #D1001"
        assert draft.body.startswith("Hi Pat Rivera,")
        assert "PT-1 Rotary Phase Converter" in draft.body
        assert "Your quote total is $1,899.00." in draft.body
        assert "https://phoenix-test.myshopify.com/invoices/abc123" in draft.body
        assert draft.body.rstrip().endswith("support@phoenixphaseconverters.com")
        assert draft.source == "template"
        assert draft.html is False

    @pytest.mark.asyncio
    async def test_template_is_deterministic(self, settings):
        context = build_email_context(make_draft_order(), settings)
        drafter = TemplateEmailDrafter()
        assert (await drafter.draft(context)).body == (await drafter.draft(context)).body


class TestGenerativeDrafter:
    """Anthropic Messages API request shape"""

    @pytest.mark.asyncio
    async def test_request_and_transcript_in_prompt(self, settings):
        seen = []

        def handler(request):
            if request.url.host == "calls.example.com":
                assert request.headers['Authorization'] == "Bearer call-key"
                assert request.url.params['email'] == "pat@example.com"
                return httpx.Response(200, json={'transcripts': [{'text': 'Asked about 10 HP for a lathe'}]})
            seen.append(request)
            return anthropic_reply("<p>Hi Pat,</p><p>Thanks!</p>")

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transcripts = CallTranscriptProvider(http, "https://calls.example.com/recent", "call-key")
        drafter = GenerativeEmailDrafter(http, "sk-test", "claude-test", transcripts)

        draft = await drafter.draft(build_email_context(make_draft_order(), settings))

        assert draft.body == "<p>Hi Pat,</p><p>Thanks!</p>"
        assert draft.html is True
        assert draft.source == "generative"

        request = seen[0]
        assert str(request.url) == "https://api.anthropic.com/v1/messages"
        assert request.headers['x-api-key'] == "sk-test"
        assert request.headers['anthropic-version'] == "2023-06-01"
        payload = json.loads(request.content)
        assert payload['model'] == "claude-test"
        prompt = payload['messages'][0]['content']
        assert "#D1001" in prompt
        assert "Asked about 10 HP for a lathe" in prompt

    @pytest.mark.asyncio
    async def test_transcript_failure_returns_none(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        provider = CallTranscriptProvider(http, "https://calls.example.com/recent")
        assert await provider.recent_transcript(phone="+1 301 555 0100") is None
        assert await provider.recent_transcript() is None


class TestFallback:
    """Generative failures never reach the caller"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(529, json={'type': 'error', 'error': {'type': 'overloaded_error'}}),
        httpx.Response(200, json={'content': []}),
        httpx.Response(200, text="not json"),
    ])
    async def test_falls_back_to_template(self, settings, response):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: response))
        drafter = FallbackEmailDrafter(GenerativeEmailDrafter(http, "sk-test", "claude-test"), TemplateEmailDrafter())

        draft = await drafter.draft(build_email_context(make_draft_order(), settings))

        assert draft.source == "template"
        assert draft.body.startswith("Hi Pat Rivera,")

    @pytest.mark.asyncio
    async def test_transport_error_falls_back(self, settings):
        def handler(request):
            raise httpx.ConnectTimeout("timed out")

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        drafter = FallbackEmailDrafter(GenerativeEmailDrafter(http, "sk-test", "claude-test"), TemplateEmailDrafter())
        draft = await drafter.draft(build_email_context(make_draft_order(), settings))
        assert draft.source == "template"


class TestBuildDrafter:
    def test_selection(self, settings):
        http = httpx.AsyncClient()
        assert isinstance(build_email_drafter(settings, http), TemplateEmailDrafter)

        no_key = settings.model_copy(update={'email_drafter': 'generative'})
        assert isinstance(build_email_drafter(no_key, http), TemplateEmailDrafter)

        with_key = no_key.model_copy(update={'anthropic_api_key': 'sk-test'})
        assert isinstance(build_email_drafter(with_key, http), FallbackEmailDrafter)
