# tests/services/test_sms_client.py
"""
Tests for the Twilio SMS client

Run with: pytest tests/services/test_sms_client.py -v
"""

import pytest
from unittest.mock import AsyncMock, Mock, patch

import httpx

from mcacrm.services.sms_client import TwilioSMSClient


@pytest.fixture
def client():
    return TwilioSMSClient(
        account_sid="AC_test",
        auth_token="secret",
        from_number="+18005550000",
        base_url="https://twilio.test/",
        timeout=5,
    )


def patched_http(response=None, error=None):
    http = Mock()
    http.post = AsyncMock(return_value=response, side_effect=error)
    patcher = patch('mcacrm.services.sms_client.httpx.AsyncClient')
    client_cls = patcher.start()
    client_cls.return_value.__aenter__.return_value = http
    client_cls.return_value.__aexit__.return_value = False
    return patcher, http


class TestTwilioSMSClient:

    @pytest.mark.asyncio
    async def test_not_configured(self):
        client = TwilioSMSClient(account_sid="", auth_token="", from_number="")
        client.account_sid = None

        result = await client.send("+15165550123", "hello")

        assert result.success is False
        assert result.error == "SMS carrier is not configured"

    @pytest.mark.asyncio
    async def test_missing_phone(self, client):
        result = await client.send("", "hello")

        assert result.success is False
        assert result.error == "Conversation has no phone number"

    @pytest.mark.asyncio
    async def test_successful_send(self, client):
        response = Mock(status_code=201)
        response.json.return_value = {"sid": "SM123", "status": "queued"}
        patcher, http = patched_http(response=response)
        try:
            result = await client.send("(212) 736-5000", "hello")
        finally:
            patcher.stop()

        assert result.success is True
        assert result.external_id == "SM123"
        url = http.post.await_args.args[0]
        assert url == "https://twilio.test/2010-04-01/Accounts/AC_test/Messages.json"
        assert http.post.await_args.kwargs["data"]["To"] == "+12127365000"
        assert http.post.await_args.kwargs["auth"] == ("AC_test", "secret")

    @pytest.mark.asyncio
    async def test_carrier_error_returned_not_raised(self, client):
        response = Mock(status_code=400, text="bad")
        response.json.return_value = {"message": "The 'To' number is not valid"}
        patcher, _ = patched_http(response=response)
        try:
            result = await client.send("+15165550123", "hello")
        finally:
            patcher.stop()

        assert result.success is False
        assert result.error == "Twilio error 400: The 'To' number is not valid"

    @pytest.mark.asyncio
    async def test_network_error_returned_not_raised(self, client):
        patcher, _ = patched_http(error=httpx.ConnectTimeout("timed out"))
        try:
            result = await client.send("+15165550123", "hello")
        finally:
            patcher.stop()

        assert result.success is False
        assert result.error.startswith("SMS request failed")

    @pytest.mark.asyncio
    async def test_accepted_with_unreadable_body(self, client):
        response = Mock(status_code=201, text="<html>ok</html>")
        response.json.side_effect = ValueError("Expecting value")
        patcher, _ = patched_http(response=response)
        try:
            result = await client.send("+15165550123", "hello")
        finally:
            patcher.stop()

        assert result.success is True
        assert result.external_id is None
