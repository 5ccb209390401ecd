"""Messaging transports."""
from channels.base import (
    ChannelError,
    ContactInfo,
    InputSanitizer,
    MessageDeduplicator,
    Transport,
)
from channels.whatsapp_adapter import WhatsAppCloudTransport, parse_webhook

__all__ = [
    "ChannelError", "ContactInfo", "InputSanitizer", "MessageDeduplicator",
    "Transport", "WhatsAppCloudTransport", "parse_webhook",
]
