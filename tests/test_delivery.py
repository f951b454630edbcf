import json

import httpx
import pytest

from leadflow.config import Settings
from leadflow.jobs.touch_point_processor import TouchPointAction
from leadflow.messaging.channels import SendGridEmailChannel, TwilioSmsChannel
from leadflow.messaging.delivery import build_delivery_handler, is_whitelisted


def make_settings(**env) -> Settings:
    values = {"OUTBOUND_EMAIL_WHITELIST": "jane@example.com", "CHAT_BASE_URL": "https://chat.test"}
    values.update(env)
    return Settings(_env_file=None, **values)


def make_action(**overrides) -> TouchPointAction:
    fields = {
        "lead_id": "lead-1",
        "touch_point_number": 2,
        "customer_name": "Jane Doe",
        "customer_email": "jane@example.com",
        "customer_phone": "+15555550100",
    }
    fields.update(overrides)
    return TouchPointAction(**fields)


class Provider:
    """Records outbound requests and answers with a fixed status code."""

    def __init__(self, status_code: int = 202):
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)


@pytest.fixture
async def channels():
    email_provider, sms_provider = Provider(202), Provider(201)
    email_client = httpx.AsyncClient(transport=httpx.MockTransport(email_provider))
    sms_client = httpx.AsyncClient(transport=httpx.MockTransport(sms_provider))

    email = SendGridEmailChannel("sg-key", "shop@example.com", "Tint World", client=email_client)
    sms = TwilioSmsChannel("AC123", "token", "+15555550999", client=sms_client)
    yield email, sms, email_provider, sms_provider

    await email_client.aclose()
    await sms_client.aclose()


def test_whitelist_fails_closed():
    assert is_whitelisted("jane@example.com", []) is False
    assert is_whitelisted(None, ["jane@example.com"]) is False
    assert is_whitelisted("Jane@Example.com", ["jane@example.com"]) is True


class TestDeliveryHandler:

    async def test_sends_on_both_channels(self, channels):
        email, sms, email_provider, sms_provider = channels
        handler = build_delivery_handler(make_settings(), email, sms)

        assert await handler(make_action()) is True

        sent = json.loads(email_provider.requests[0].content)
        assert sent["personalizations"][0]["to"][0]["email"] == "jane@example.com"
        assert "https://chat.test/lead-1" in sent["content"][0]["value"]
        assert email_provider.requests[0].headers["Authorization"] == "Bearer sg-key"

        sms_request = sms_provider.requests[0]
        assert sms_request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
        assert b"To=%2B15555550100" in sms_request.content

    async def test_one_channel_is_enough(self, channels):
        email, sms, email_provider, _ = channels
        email_provider.status_code = 500
        handler = build_delivery_handler(make_settings(), email, sms)

        assert await handler(make_action()) is True

    async def test_all_channels_failing(self, channels):
        email, sms, email_provider, sms_provider = channels
        email_provider.status_code = 500
        sms_provider.status_code = 400
        handler = build_delivery_handler(make_settings(), email, sms)

        assert await handler(make_action()) is False

    async def test_not_whitelisted_sends_nothing(self, channels):
        email, sms, email_provider, sms_provider = channels
        handler = build_delivery_handler(make_settings(), email, sms)

        assert await handler(make_action(customer_email="bob@example.com")) is True
        assert email_provider.requests == []
        assert sms_provider.requests == []

    async def test_undeliverable_not_counted_when_disabled(self, channels):
        email, sms, email_provider, _ = channels
        handler = build_delivery_handler(make_settings(COUNT_UNDELIVERABLE_AS_SENT="false"), email, sms)

        assert await handler(make_action(customer_email="bob@example.com")) is False
        assert email_provider.requests == []

    async def test_empty_whitelist_blocks_everyone(self, channels):
        email, sms, email_provider, _ = channels
        handler = build_delivery_handler(make_settings(OUTBOUND_EMAIL_WHITELIST=""), email, sms)

        await handler(make_action())

        assert email_provider.requests == []

    async def test_no_channels_configured(self):
        handler = build_delivery_handler(make_settings(COUNT_UNDELIVERABLE_AS_SENT="false"))

        assert await handler(make_action()) is False
