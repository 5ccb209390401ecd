"""Tests for the WhatsApp Cloud API adapter and the channel helpers."""
import hashlib
import hmac
import json

import httpx
import pytest
from tenacity import wait_none

from channels.base import ChannelError, InputSanitizer, MessageDeduplicator
from channels.whatsapp_adapter import WhatsAppCloudTransport, parse_webhook
from config.settings import WhatsAppConfig
from models.schemas import CallRejected, LeadSource, TextMessage


def webhook(messages=None, contacts=None, calls=None, statuses=None) -> dict:
    value = {"messaging_product": "whatsapp"}
    if messages is not None:
        value["messages"] = messages
    if contacts is not None:
        value["contacts"] = contacts
    if calls is not None:
        value["calls"] = calls
    if statuses is not None:
        value["statuses"] = statuses
    return {"object": "whatsapp_business_account",
            "entry": [{"id": "1", "changes": [{"field": "messages", "value": value}]}]}


def mock_transport(handler, **config) -> WhatsAppCloudTransport:
    cfg = WhatsAppConfig(phone_number_id="PNID", access_token="TOKEN", **config)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WhatsAppCloudTransport(cfg, client=client)


class TestParseWebhook:
    def test_text_message(self):
        events = parse_webhook(webhook(
            messages=[{"from": "+54 9 11 5555-0001", "id": "wamid.1", "type": "text",
                       "text": {"body": "  Hola  "}}],
            contacts=[{"wa_id": "5491155550001", "profile": {"name": "Ana"}}],
        ))
        [event] = events
        assert isinstance(event, TextMessage)
        assert event.phone == "5491155550001"
        assert event.text == "Hola"
        assert event.event_id == "wamid.1"
        assert event.source == LeadSource.ORGANIC
        assert event.sender_name == "Ana"

    def test_referral_marks_meta_ads(self):
        [event] = parse_webhook(webhook(messages=[{
            "from": "5491155550001", "id": "wamid.2", "type": "text",
            "text": {"body": "Info"}, "referral": {"source_type": "ad"},
        }]))
        assert event.source == LeadSource.META_ADS

    def test_interactive_replies(self):
        events = parse_webhook(webhook(messages=[
            {"from": "1", "id": "a", "type": "interactive",
             "interactive": {"type": "button_reply", "button_reply": {"id": "b1", "title": "A"}}},
            {"from": "1", "id": "b", "type": "interactive",
             "interactive": {"type": "list_reply", "list_reply": {"id": "l1", "title": "Limpieza"}}},
            {"from": "1", "id": "c", "type": "button", "button": {"text": "Sí"}},
        ]))
        assert [e.text for e in events] == ["A", "Limpieza", "Sí"]

    def test_media_and_statuses_skipped(self):
        events = parse_webhook(webhook(
            messages=[{"from": "1", "id": "img", "type": "image", "image": {"id": "m"}}],
            statuses=[{"id": "wamid.9", "status": "delivered"}],
        ))
        assert events == []

    def test_incoming_call(self):
        events = parse_webhook(webhook(calls=[
            {"id": "call-1", "from": "5491155550001", "event": "connect"},
            {"id": "call-1", "from": "5491155550001", "event": "terminate"},
        ]))
        [event] = events
        assert isinstance(event, CallRejected)
        assert event.call_id == "call-1"
        assert event.event_id == "call_call-1"

    def test_empty_payload(self):
        assert parse_webhook({}) == []


class TestVerification:
    def test_verify_webhook(self):
        transport = WhatsAppCloudTransport(WhatsAppConfig(verify_token="secret"))
        ok = {"hub.mode": "subscribe", "hub.verify_token": "secret", "hub.challenge": "42"}
        assert transport.verify_webhook(ok) == "42"
        assert transport.verify_webhook({**ok, "hub.verify_token": "wrong"}) is None

    def test_empty_verify_token_never_matches(self):
        transport = WhatsAppCloudTransport(WhatsAppConfig(verify_token=""))
        params = {"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "42"}
        assert transport.verify_webhook(params) is None

    def test_signature(self):
        transport = WhatsAppCloudTransport(WhatsAppConfig(app_secret="appsecret"))
        body = b'{"entry": []}'
        digest = hmac.new(b"appsecret", body, hashlib.sha256).hexdigest()
        assert transport.verify_signature(body, f"sha256={digest}")
        assert not transport.verify_signature(body, "sha256=deadbeef")
        assert not transport.verify_signature(body, "")

    def test_signature_skipped_without_secret(self):
        transport = WhatsAppCloudTransport(WhatsAppConfig())
        assert transport.verify_signature(b"{}", "")


class TestCloudTransport:
    @pytest.mark.asyncio
    async def test_send_text(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json={"messages": [{"id": "wamid.out"}]})

        transport = mock_transport(handler)
        result = await transport.send_text("+54 9 11 5555-0001", "Hola")

        assert result == {"status": "sent", "message_id": "wamid.out"}
        [request] = seen
        assert str(request.url) == "https://graph.facebook.com/v18.0/PNID/messages"
        assert request.headers["Authorization"] == "Bearer TOKEN"
        body = json.loads(request.content)
        assert body["to"] == "5491155550001"
        assert body["text"] == {"body": "Hola"}

    @pytest.mark.asyncio
    async def test_api_error_raises_channel_error(self):
        transport = mock_transport(lambda request: httpx.Response(503, text="down"))
        with pytest.raises(ChannelError) as exc:
            await transport.send_text("1", "x")
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_client_error_not_retryable(self):
        transport = mock_transport(lambda request: httpx.Response(400, json={"error": {}}))
        with pytest.raises(ChannelError) as exc:
            await transport.send_text("1", "x")
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_non_json_success_body_raises_channel_error(self):
        transport = mock_transport(lambda request: httpx.Response(200, text="<html>ok</html>"))
        with pytest.raises(ChannelError) as exc:
            await transport.send_text("1", "x")
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_network_error_retried_then_wrapped(self, monkeypatch):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        transport = mock_transport(handler)
        monkeypatch.setattr(WhatsAppCloudTransport._post.retry, "wait", wait_none())
        with pytest.raises(ChannelError):
            await transport.send_text("1", "x")
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_typing_needs_inbound_message_id(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})

        transport = mock_transport(handler)
        await transport.send_typing("5491155550001")
        assert seen == []

        transport.parse_webhook(webhook(messages=[
            {"from": "5491155550001", "id": "wamid.in", "type": "text", "text": {"body": "hola"}},
        ]))
        await transport.send_typing("5491155550001")
        assert seen == [{
            "messaging_product": "whatsapp", "status": "read",
            "message_id": "wamid.in", "typing_indicator": {"type": "text"},
        }]

    @pytest.mark.asyncio
    async def test_reject_call(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"success": True})

        transport = mock_transport(handler)
        await transport.reject_call("call-1")
        assert seen == [("/v18.0/PNID/calls",
                         {"messaging_product": "whatsapp", "call_id": "call-1", "action": "reject"})]

    @pytest.mark.asyncio
    async def test_contact_lookup(self):
        transport = mock_transport(lambda r: httpx.Response(200), known_numbers=["+54 9 11 5555-0001"])
        transport.parse_webhook(webhook(
            messages=[{"from": "5491155550002", "id": "x", "type": "text", "text": {"body": "hi"}}],
            contacts=[{"wa_id": "5491155550002", "profile": {"name": "Bruno"}}],
        ))
        known = await transport.get_contact("5491155550001")
        stranger = await transport.get_contact("5491155550002")
        assert known.is_known and known.name == ""
        assert not stranger.is_known and stranger.name == "Bruno"

    @pytest.mark.asyncio
    async def test_labels(self):
        transport = mock_transport(lambda r: httpx.Response(200))
        await transport.add_label("1", "Derivado")
        await transport.add_label("1", "Derivado")
        assert await transport.get_labels("1") == ["Derivado"]
        await transport.remove_label("1", "Derivado")
        assert await transport.get_labels("1") == []


class TestChannelHelpers:
    def test_deduplicator(self):
        dedup = MessageDeduplicator(ttl_seconds=60)
        assert not dedup.is_duplicate("a")
        assert dedup.is_duplicate("a")
        dedup.forget("a")
        assert not dedup.is_duplicate("a")

    def test_deduplicator_max_size(self):
        dedup = MessageDeduplicator(ttl_seconds=60, max_size=2)
        for key in ("a", "b", "c"):
            dedup.is_duplicate(key)
        dedup.is_duplicate("d")
        assert "a" not in dedup._seen
        assert len(dedup._seen) == 3

    def test_sanitizer(self):
        sanitizer = InputSanitizer(max_length=5)
        assert sanitizer.sanitize("  ab\x00c  ") == "abc"
        assert sanitizer.sanitize("abcdefgh") == "abcde"
        assert sanitizer.sanitize("") == ""
