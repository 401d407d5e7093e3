"""
Text canonicalization and content fingerprinting.

Normalizes captured text so that the same content captured twice (with
different timestamps, tracking parameters or markup) produces the same
sha256 fingerprint.
"""

import hashlib
import re
import unicodedata
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from memory_mesh.core.config import settings


TIMESTAMP_PATTERNS = [
    re.compile(r'\d{4}-\d{2}-\d{2}[t\s]\d{2}:\d{2}:\d{2}z?'),   # ISO timestamps
    re.compile(r'\d{1,2}/\d{1,2}/\d{2,4}'),                      # Dates
    re.compile(r'\d{1,2}:\d{2}(:\d{2})?(\s*(am|pm)\b)?'),      # Clock times
    re.compile(r'\d{13,}'),                                      # Unix millis
    re.compile(r'[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}'),
]

MARKUP_PATTERNS = [
    re.compile(r'data-[\w-]+="[^"]*"'),
    re.compile(r'\b(?:id|class|style)="[^"]*"'),
    re.compile(r'<!--.*?-->', re.DOTALL),
    re.compile(r'<script.*?</script>', re.DOTALL),
    re.compile(r'<style.*?</style>', re.DOTALL),
    re.compile(r'<noscript.*?</noscript>', re.DOTALL),
]

TAG_PATTERN = re.compile(r'<[^>]+>')

TRACKING_PATTERNS = [
    re.compile(r"\b(?:ga|gtag|gtm|analytics|_ga|_gid|_gat)[-_]?[a-z0-9_]*[:=]\s*['\"]?[a-z0-9_-]+['\"]?"),
    re.compile(r"\b(?:fb|facebook)[-_]?(?:pixel|track|event)[-_]?[a-z0-9_]*[:=]\s*['\"]?[a-z0-9_-]+['\"]?"),
    re.compile(r"\b(?:tracking|track)[-_]?(?:id|code|token|key)[:=]\s*['\"]?[a-z0-9_-]{10,}['\"]?"),
    re.compile(r"\b(?:session|sess)[-_]?(?:id|token)[:=]\s*['\"]?[a-z0-9_-]{20,}['\"]?"),
    re.compile(r"\b(?:utm_[a-z]+|gclid|fbclid|_hsenc|_hsmi)=[^&\s]*"),
    re.compile(r"\b(?:marketing|promo|affiliate)[-_]?(?:id|code|tag)[:=]\s*['\"]?[a-z0-9_-]+['\"]?"),
]

WHITESPACE_PATTERN = re.compile(r'\s+')


@dataclass(frozen=True)
class CanonicalContent:
    """Normalized text, its fingerprint and the normalized URL."""
    text: str
    fingerprint: str
    url: Optional[str] = None


def normalize_text(text: str) -> str:
    """
    Normalize raw text for fingerprinting.

    Applies NFKC, lowercases, strips timestamps, UUIDs, markup and tracking
    parameters, then collapses whitespace.

    Args:
        text: Raw captured text

    Returns:
        str: Canonical text form

    Example:
        >>> normalize_text("  Hello <b>World</b>  2024-01-01 10:00:00 ")
        'hello world'
    """
    if not isinstance(text, str):
        return ""

    normalized = unicodedata.normalize("NFKC", text).strip().lower()

    for pattern in TIMESTAMP_PATTERNS:
        normalized = pattern.sub("", normalized)
    for pattern in MARKUP_PATTERNS:
        normalized = pattern.sub("", normalized)
    normalized = TAG_PATTERN.sub(" ", normalized)
    for pattern in TRACKING_PATTERNS:
        normalized = pattern.sub("", normalized)

    return WHITESPACE_PATTERN.sub(" ", normalized).strip()


def normalize_url(url: Optional[str]) -> str:
    """
    Reduce a URL to lowercase scheme://host/path.

    Query strings and fragments are dropped so tracking parameters do not
    defeat URL matching.
    """
    if not url or not isinstance(url, str):
        return ""

    url = url.strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        parts = None

    if parts is None or not parts.scheme or not parts.hostname:
        return url.lower().split("?")[0].split("#")[0]

    return f"{parts.scheme}://{parts.hostname}{parts.path}".lower()


def hash_canonical(canonical_text: str, url: Optional[str] = None) -> str:
    """
    Compute the sha256 fingerprint of canonical text.

    Args:
        canonical_text: Output of normalize_text
        url: Source URL, mixed in only when fingerprint_include_url is enabled

    Returns:
        str: Hex digest
    """
    payload = canonical_text
    normalized_url = normalize_url(url)
    if settings.fingerprint_include_url and normalized_url:
        url_hash = hashlib.sha256(normalized_url.encode("utf-8")).hexdigest()
        payload = f"{canonical_text}\n{url_hash}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def text_similarity(text1: str, text2: str) -> float:
    """
    Word-set Jaccard similarity between two texts.

    Returns:
        float: Similarity in [0, 1]
    """
    if not text1 or not text2:
        return 0.0
    if text1 == text2:
        return 1.0

    words1 = set(text1.split())
    words2 = set(text2.split())
    if not words1 or not words2:
        return 0.0

    return len(words1 & words2) / len(words1 | words2)


def canonicalize(text: str, url: Optional[str] = None) -> CanonicalContent:
    """
    Normalize text and derive its fingerprint.

    Args:
        text: Raw captured text
        url: Optional source URL

    Returns:
        CanonicalContent: Canonical text, fingerprint and normalized URL
    """
    canonical_text = normalize_text(text)
    return CanonicalContent(
        text=canonical_text,
        fingerprint=hash_canonical(canonical_text, url),
        url=normalize_url(url) or None
    )


def sha256_hex(value: str) -> str:
    """sha256 hex digest of a string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
