"""
Metadata extraction prompts and response parsing.

Asks the AI provider for topics, categories, sentiment, importance, key
points and searchable terms as JSON, and parses the often-noisy response
into ExtractedMetadata.
"""

import json
import logging
import re
from typing import Any, Dict, Optional

from pydantic import ValidationError

from memory_mesh.core.errors import FatalError
from memory_mesh.models.schemas import ExtractedMetadata

logger = logging.getLogger(__name__)

SENTIMENTS = ("educational", "technical", "neutral", "analytical", "positive", "negative")

RESPONSE_PREFIX_PATTERN = re.compile(
    r"^(here is the|here's the|here is|here's|the json|json response|response:|answer:)",
    re.IGNORECASE
)


def build_metadata_prompt(text: str, metadata: Optional[Dict[str, Any]] = None, max_chars: int = 2000) -> str:
    """
    Build the metadata extraction prompt.

    Args:
        text: Raw content
        metadata: Capture metadata (title, content_type)
        max_chars: Maximum characters of content included

    Returns:
        str: Prompt text
    """
    metadata = metadata or {}
    content_type = metadata.get("content_type") or "web_page"

    return f"""Extract metadata from this content. Respond with ONLY a valid JSON object.
No explanations, no markdown, no code blocks.

Title: {metadata.get("title") or ""}
Content: {text[:max_chars]}

Required JSON format:
{{"topics": ["keyword1", "keyword2"], "categories": ["{content_type}"], "key_points": ["point1", "point2"], "sentiment": "neutral", "importance": 5, "searchable_terms": ["term1", "term2"]}}

Rules:
- sentiment: one of {", ".join(SENTIMENTS)}
- importance: number 1-10
- topics: 2-4 relevant keywords from the content
- key_points: 2-3 main points (max 80 chars each)
- searchable_terms: 5-8 important words

JSON ONLY:"""


def _extract_json_object(response_text: str) -> str:
    cleaned = response_text.strip()
    cleaned = RESPONSE_PREFIX_PATTERN.sub("", cleaned)
    cleaned = re.sub(r'```json\s*|\s*```', '', cleaned)

    first_brace = cleaned.find("{")
    last_brace = cleaned.rfind("}")
    if first_brace == -1 or last_brace == -1 or last_brace < first_brace:
        raise ValueError("No JSON object in response")
    return cleaned[first_brace:last_brace + 1]


def _string_list(value: Any) -> list:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def parse_metadata_response(response_text: str) -> ExtractedMetadata:
    """
    Parse the provider response into ExtractedMetadata.

    Accepts both snake_case and camelCase keys.

    Args:
        response_text: Raw response from the provider

    Returns:
        ExtractedMetadata: Parsed metadata

    Raises:
        FatalError: If the response cannot be parsed
    """
    try:
        data = json.loads(_extract_json_object(response_text))
        if not isinstance(data, dict):
            raise ValueError("Response JSON is not an object")

        return ExtractedMetadata(
            topics=_string_list(data.get("topics")),
            categories=_string_list(data.get("categories")),
            sentiment=data.get("sentiment"),
            importance=data.get("importance"),
            key_points=_string_list(data.get("key_points", data.get("keyPoints"))),
            searchable_terms=_string_list(data.get("searchable_terms", data.get("searchableTerms"))),
        )

    except (ValueError, ValidationError) as e:
        logger.debug(f"Raw metadata response: {response_text}")
        raise FatalError(f"Invalid metadata response: {e}")
