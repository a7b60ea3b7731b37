"""
Language and intent detection for inbound telephony text.

Keyword matching is a placeholder: both detectors sit behind Protocols so a
trained model can replace them without touching the intake or IVR code.
"""
import logging
import re
import uuid
from typing import Optional, Protocol

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderhooks.models.customer import Customer
from orderhooks.utils.phone import phone_digits
from orderhooks.utils.templates import DEFAULT_LANGUAGE, resolve_language

logger = logging.getLogger(__name__)

# Apostrophes stay inside tokens so "j'aimerais" is one word
_WORD_RE = re.compile(r"[\w']+", re.UNICODE)

ORDER_KEYWORDS = (
    # German
    "bestellen", "bestelle", "möchte", "hätte gerne", "bitte",
    # French
    "commander", "commande", "voudrais", "j'aimerais",
    # Italian
    "ordinare", "ordine", "vorrei", "desidero",
    # English
    "order", "would like", "want", "please",
)

LANGUAGE_WORDS = {
    "de": ("ich", "möchte", "bitte", "danke", "und"),
    "fr": ("je", "voudrais", "merci", "et", "avec"),
    "it": ("io", "vorrei", "grazie", "e", "con"),
    "en": ("i", "would", "please", "thanks", "and"),
}


def tokenize(text: str) -> list[str]:
    return _WORD_RE.findall((text or "").lower().replace("’", "'"))


def _contains_phrase(tokens: list[str], phrase: str) -> bool:
    words = phrase.split()
    n = len(words)
    return any(tokens[i:i + n] == words for i in range(len(tokens) - n + 1))


class LanguageDetector(Protocol):
    def detect(self, text: str, default: Optional[str] = None) -> str:
        """Return one of de, fr, it, en; default when the text is inconclusive."""
        ...


class IntentClassifier(Protocol):
    def is_order(self, text: str) -> bool:
        ...


class KeywordLanguageDetector:
    """
    Count whole-word hits per language. A language wins only with a strict
    majority over every other; ties and no hits fall back to the default.
    """

    def __init__(self, words: Optional[dict] = None, default: str = DEFAULT_LANGUAGE):
        self.words = words or LANGUAGE_WORDS
        self.default = default

    def detect(self, text: str, default: Optional[str] = None) -> str:
        fallback = default or self.default
        tokens = set(tokenize(text))
        counts = {
            language: sum(1 for w in words if w in tokens)
            for language, words in self.words.items()
        }
        best = max(counts, key=counts.get)
        if counts[best] == 0:
            return fallback
        if any(lang != best and count >= counts[best] for lang, count in counts.items()):
            return fallback
        return best


class KeywordIntentClassifier:
    """Order intent when any order keyword or phrase appears as whole words."""

    def __init__(self, keywords: tuple = ORDER_KEYWORDS):
        self.keywords = keywords

    def is_order(self, text: str) -> bool:
        tokens = tokenize(text)
        return any(_contains_phrase(tokens, keyword) for keyword in self.keywords)


def language_from_area_code(phone: str, area_codes: dict, default: str = DEFAULT_LANGUAGE) -> str:
    """
    Map a caller number onto a language by digit prefix, longest prefix first.
    '+41 22 ...' -> '4122' -> fr.
    """
    digits = phone_digits(phone)
    if digits.startswith("00"):
        digits = digits[2:]
    for prefix in sorted(area_codes, key=len, reverse=True):
        if digits.startswith(prefix):
            return area_codes[prefix]
    return default


def tenant_default_language(tenant, configured_default: str = DEFAULT_LANGUAGE) -> str:
    """Fallback for every channel: the restaurant's language, else the configured one."""
    tenant_language = tenant.default_language if tenant is not None else None
    return resolve_language(tenant_language or configured_default)


async def detect_caller_language(
    db: AsyncSession,
    phone: str,
    area_codes: dict,
    default: str = DEFAULT_LANGUAGE,
    tenant_id: Optional[uuid.UUID] = None,
) -> str:
    """
    Customer preference, else area-code mapping, else the default.
    With a tenant only that restaurant's customer record counts.
    """
    if phone:
        query = select(Customer.language).where(
            Customer.phone == phone,
            Customer.language.is_not(None),
        )
        if tenant_id is not None:
            query = query.where(
                or_(Customer.tenant_id == tenant_id, Customer.tenant_id.is_(None))
            ).order_by(Customer.tenant_id.is_(None))
        result = await db.execute(query.limit(1))
        preferred = result.scalar_one_or_none()
        if preferred:
            return resolve_language(preferred)
    return language_from_area_code(phone, area_codes, default)
