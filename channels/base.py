"""
Transport: the outbound/inbound seam between the engine and WhatsApp.

Provides:
- ChannelError: structured error for delivery failures
- ContactInfo: what the phone's address book knows about a number
- Transport: abstract interface every messaging backend implements
- MessageDeduplicator: TTL seen-set for webhook re-deliveries
- InputSanitizer: strips control characters from inbound text
"""
from __future__ import annotations

import abc
import time
import structlog
from dataclasses import dataclass
from typing import Any

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all transport operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  TRANSPORT: Abstract Base
# ══════════════════════════════════════════════════════════════

@dataclass
class ContactInfo:
    is_known: bool = False          # saved in the business address book
    name: str = ""


class Transport(abc.ABC):
    """
    Messaging backend used by the engine.

    Every method may raise ChannelError; callers decide whether a failure
    matters. Label methods operate on the CRM labels attached to a chat.
    """

    channel = "whatsapp"

    @abc.abstractmethod
    async def send_text(self, phone: str, text: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def send_typing(self, phone: str) -> None:
        ...

    @abc.abstractmethod
    async def get_contact(self, phone: str) -> ContactInfo:
        ...

    @abc.abstractmethod
    async def reject_call(self, call_id: str) -> None:
        ...

    @abc.abstractmethod
    async def get_labels(self, phone: str) -> list[str]:
        ...

    @abc.abstractmethod
    async def add_label(self, phone: str, label: str) -> None:
        ...

    @abc.abstractmethod
    async def remove_label(self, phone: str, label: str) -> None:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel, "healthy": True}

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL seen-set of webhook event ids; the oldest entries go first past max_size."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def forget(self, key: str) -> None:
        self._seen.pop(key, None)

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        if len(self._seen) > self.max_size:
            oldest = sorted(self._seen, key=self._seen.get)[: len(self._seen) - self.max_size]
            for k in oldest:
                del self._seen[k]


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 4096):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length]
        return content.strip()
