"""
Summarization prompts and response cleanup.

Builds content-type specific summarization prompts for the AI provider and
strips markdown from the returned text so summaries embed cleanly.
"""

import re
from typing import Any, Dict, Optional


SUMMARY_CONTEXT = """Memory context:
- Each summary is stored in a personal knowledge graph and embedded for later recall.
- Preserve the conceptual and factual signals that help link this content to related memories.
- Focus on what the content teaches, why it matters, and what it connects to."""

SUMMARY_INSTRUCTIONS: Dict[str, str] = {
    "article": "Summarize this article. Capture the main argument, supporting evidence and conceptual contribution. 200 words max.",
    "blog_post": "Summarize this blog post. Extract the conceptual essence and useful principles. Limit to 200 words.",
    "documentation": "Summarize this documentation. Include system purpose, key methods and when it is relevant. 200 words max.",
    "tutorial": "Summarize this tutorial as a learning trace: goal, key procedures, lessons and result. 200 words max.",
    "news_article": "Summarize this news article: what happened, implications and what it changes. 200 words max.",
    "code_repository": "Summarize this repository: purpose, architecture, dependencies and notable ideas. 200 words max.",
    "qa_thread": "Summarize this Q&A: the problem, the reasoning behind the best answer and general lessons. 200 words max.",
    "social_media": "Summarize this post as an idea capsule: the insight and the argument behind it. 150 words max.",
    "user_profile": "Summarize these memory notes into a profile of the user's interests, expertise and ongoing projects. 200 words max.",
    "default": "Summarize this content. Capture topic, insights, implications and long-term relevance. 200 words max.",
}

PLAIN_TEXT_RULES = """Return ONLY plain text. Do not use markdown: no asterisks, underscores,
backticks, headers, bullet points or numbered lists."""

MARKDOWN_PATTERNS = [
    (re.compile(r'```.*?```', re.DOTALL), ' '),
    (re.compile(r'`([^`]*)`'), r'\1'),
    (re.compile(r'\*\*([^*]+)\*\*'), r'\1'),
    (re.compile(r'\*([^*]+)\*'), r'\1'),
    (re.compile(r'__([^_]+)__'), r'\1'),
    (re.compile(r'^\s*#{1,6}\s*', re.MULTILINE), ''),
    (re.compile(r'^\s*[-*+]\s+', re.MULTILINE), ''),
    (re.compile(r'^\s*\d+\.\s+', re.MULTILINE), ''),
]


def build_summary_prompt(text: str, metadata: Optional[Dict[str, Any]] = None, max_chars: int = 20000) -> str:
    """
    Build the summarization prompt for a piece of content.

    Args:
        text: Raw content
        metadata: Capture metadata (content_type, title, url, key_topics)
        max_chars: Maximum characters of content included

    Returns:
        str: Prompt text
    """
    metadata = metadata or {}
    content_type = metadata.get("content_type") or "default"
    instructions = SUMMARY_INSTRUCTIONS.get(content_type, SUMMARY_INSTRUCTIONS["default"])
    topics = metadata.get("key_topics") or []

    return f"""{SUMMARY_CONTEXT}
Title: {metadata.get("title") or ""}
URL: {metadata.get("url") or ""}
Topics: {", ".join(str(t) for t in topics)}

{instructions}

{PLAIN_TEXT_RULES}

Content:
{text[:max_chars]}"""


def clean_summary(text: str) -> str:
    """
    Strip markdown and collapse whitespace in a generated summary.

    Example:
        >>> clean_summary("**Postgres** adds\\n- logical replication")
        'Postgres adds logical replication'
    """
    if not text:
        return ""
    cleaned = text.strip()
    for pattern, replacement in MARKDOWN_PATTERNS:
        cleaned = pattern.sub(replacement, cleaned)
    return re.sub(r'\s+', ' ', cleaned).strip()
