"""
Text helpers shared by the selector, the step executor and the stall detector.

Option matching uses plain trim + lowercase. Keyword detection additionally
folds accents so "atención" and "atencion" hit the same entry.
"""
from __future__ import annotations

import re
import unicodedata


RESTART_KEYWORDS: tuple[str, ...] = ("hola", "menu", "inicio", "empezar", "reset")

HANDOFF_KEYWORDS: tuple[str, ...] = ("humano", "asesor", "persona", "ayuda", "atencion")

# Legacy rule: an option keyed "m" also answers to any text containing "volve" ("volver", "quiero volver").
BACK_OPTION_KEY = "m"
BACK_FRAGMENT = "volve"


def normalize(text: str) -> str:
    return (text or "").strip().lower()


def fold(text: str) -> str:
    """Trim, case-fold and strip diacritics."""
    decomposed = unicodedata.normalize("NFKD", (text or "").strip().casefold())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def is_restart_command(text: str, keywords: tuple[str, ...] = RESTART_KEYWORDS) -> bool:
    folded = fold(text)
    if not folded:
        return False
    return any(folded == kw or folded.startswith(kw) for kw in keywords)


def find_handoff_keyword(text: str, keywords: tuple[str, ...] = HANDOFF_KEYWORDS) -> str:
    """Return the first handoff keyword contained in text, or ''."""
    folded = fold(text)
    for kw in keywords:
        if kw in folded:
            return kw
    return ""


def normalize_phone(phone: str) -> str:
    """Digits only: strips +, spaces, dashes and WhatsApp jid suffixes."""
    return re.sub(r"[^\d]", "", (phone or "").split("@")[0])
