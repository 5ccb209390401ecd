"""
WhatsApp Channel Adapter: WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization
- Webhook verification (hub.verify_token challenge, body signature)
- Outbound: free-form text, typing indicator, call rejection
- Inbound: text, interactive (button_reply, list_reply), ad referrals,
  incoming calls
- Address-book lookups against the configured known numbers and the
  profile names seen on webhooks

The Cloud API exposes no chat labels, so labels are tracked per phone in
this process and logged; the engine treats them as best effort.
"""
from __future__ import annotations

import hashlib
import hmac
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelError, ContactInfo, InputSanitizer, Transport
from config.settings import WhatsAppConfig
from models.schemas import CallRejected, InboundEvent, LeadSource, TextMessage
from utils.text import normalize_phone

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  WEBHOOK PARSING
# ══════════════════════════════════════════════════════════════

def _message_text(msg: dict[str, Any]) -> Optional[str]:
    """Text the user typed or picked; None for media the engine cannot read."""
    msg_type = msg.get("type", "text")

    if msg_type == "text":
        return msg.get("text", {}).get("body", "")

    if msg_type == "interactive":
        interactive = msg.get("interactive", {})
        itype = interactive.get("type", "")
        if itype == "button_reply":
            return interactive.get("button_reply", {}).get("title", "")
        if itype == "list_reply":
            return interactive.get("list_reply", {}).get("title", "")

    if msg_type == "button":
        return msg.get("button", {}).get("text", "")

    return None


def parse_webhook(payload: dict[str, Any], sanitizer: InputSanitizer = None) -> list[InboundEvent]:
    """Turn a Cloud API webhook body into engine events.

    Status updates and unsupported message types are skipped.
    """
    sanitizer = sanitizer or InputSanitizer()
    events: list[InboundEvent] = []

    for entry in payload.get("entry", []) or []:
        for change in entry.get("changes", []) or []:
            value = change.get("value", {}) or {}

            names = {
                normalize_phone(c.get("wa_id", "")): c.get("profile", {}).get("name", "")
                for c in value.get("contacts", []) or []
            }

            for msg in value.get("messages", []) or []:
                text = _message_text(msg)
                if text is None:
                    logger.debug("whatsapp_message_skipped", type=msg.get("type"))
                    continue
                phone = normalize_phone(msg.get("from", ""))
                if not phone:
                    continue
                events.append(TextMessage(
                    phone=phone,
                    text=sanitizer.sanitize(text),
                    event_id=msg.get("id") or f"msg_{phone}_{msg.get('timestamp', '')}",
                    source=LeadSource.META_ADS if msg.get("referral") else LeadSource.ORGANIC,
                    sender_name=names.get(phone, ""),
                ))

            for call in value.get("calls", []) or []:
                if call.get("event", "connect") != "connect":
                    continue
                phone = normalize_phone(call.get("from", ""))
                call_id = call.get("id", "")
                if not phone or not call_id:
                    continue
                events.append(CallRejected(phone=phone, call_id=call_id, event_id=f"call_{call_id}"))

    return events


# ══════════════════════════════════════════════════════════════
#  WHATSAPP CLOUD TRANSPORT
# ══════════════════════════════════════════════════════════════

class WhatsAppCloudTransport(Transport):
    """WhatsApp Business Cloud API transport."""

    channel = "whatsapp"

    def __init__(self, config: WhatsAppConfig, client: httpx.AsyncClient = None):
        self.config = config
        self._client = client
        self._known = {normalize_phone(n) for n in config.known_numbers}
        self._names: dict[str, str] = {}
        self._last_message_id: dict[str, str] = {}
        self._labels: dict[str, set[str]] = {}
        self._sanitizer = InputSanitizer()

    @property
    def base_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/{self.config.api_version}/{self.config.phone_number_id}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout_seconds, connect=5.0))
        return self._client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.post(
            f"{self.base_url}{path}",
            json=payload,
            headers={"Authorization": f"Bearer {self.config.access_token}"},
        )
        if resp.status_code >= 400:
            logger.error("whatsapp_api_error", status=resp.status_code,
                         body=resp.text[:500], path=path)
            raise ChannelError(
                f"WhatsApp API returned {resp.status_code}",
                self.channel,
                retryable=resp.status_code == 429 or resp.status_code >= 500,
            )
        try:
            return resp.json()
        except ValueError as e:
            logger.error("whatsapp_api_bad_body", status=resp.status_code,
                         body=resp.text[:500], path=path)
            raise ChannelError("WhatsApp API returned a non-JSON body", self.channel) from e

    async def _call(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self._post(path, payload)
        except httpx.TransportError as e:
            raise ChannelError(f"WhatsApp API unreachable: {e}", self.channel, retryable=True) from e

    # ── Webhook ───────────────────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and token and token == self.config.verify_token:
            return challenge
        return None

    def verify_signature(self, body: bytes, signature: str) -> bool:
        """Check X-Hub-Signature-256 against the app secret, when one is configured."""
        if not self.config.app_secret:
            return True
        if not signature.startswith("sha256="):
            return False
        expected = hmac.new(self.config.app_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature[len("sha256="):])

    def parse_webhook(self, payload: dict[str, Any]) -> list[InboundEvent]:
        """Parse a webhook body and remember sender names and message ids."""
        events = parse_webhook(payload, self._sanitizer)
        for event in events:
            if isinstance(event, TextMessage):
                self._last_message_id[event.phone] = event.event_id
                if event.sender_name:
                    self._names[event.phone] = event.sender_name
        return events

    # ── Transport ─────────────────────────────────────────────

    async def send_text(self, phone: str, text: str) -> dict[str, Any]:
        phone = normalize_phone(phone)
        data = await self._call("/messages", {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": "text",
            "text": {"body": text[:4096]},
        })
        message_id = (data.get("messages") or [{}])[0].get("id", "")
        logger.info("whatsapp_text_sent", to=phone, msg_id=message_id)
        return {"status": "sent", "message_id": message_id}

    async def send_typing(self, phone: str) -> None:
        """Typing indicators ride on a read receipt, so they need an inbound id."""
        message_id = self._last_message_id.get(normalize_phone(phone))
        if not message_id:
            return
        await self._call("/messages", {
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
            "typing_indicator": {"type": "text"},
        })

    async def get_contact(self, phone: str) -> ContactInfo:
        phone = normalize_phone(phone)
        return ContactInfo(is_known=phone in self._known, name=self._names.get(phone, ""))

    async def reject_call(self, call_id: str) -> None:
        await self._call("/calls", {
            "messaging_product": "whatsapp",
            "call_id": call_id,
            "action": "reject",
        })
        logger.info("whatsapp_call_rejected", call_id=call_id)

    async def get_labels(self, phone: str) -> list[str]:
        return sorted(self._labels.get(normalize_phone(phone), set()))

    async def add_label(self, phone: str, label: str) -> None:
        self._labels.setdefault(normalize_phone(phone), set()).add(label)
        logger.info("whatsapp_label_added", phone=phone, label=label)

    async def remove_label(self, phone: str, label: str) -> None:
        self._labels.get(normalize_phone(phone), set()).discard(label)
        logger.info("whatsapp_label_removed", phone=phone, label=label)

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "healthy": bool(self.config.phone_number_id and self.config.access_token),
            "known_numbers": len(self._known),
        }

    async def shutdown(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
