"""
AI provider capabilities.

The pipeline consumes four async capabilities: summarize, extract metadata,
embed and answer with citations. GeminiProvider implements them on top of
google-generativeai, pacing requests with the shared rate limiter and
mapping SDK exceptions onto the retryable/fatal taxonomy.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import google.generativeai as genai

from memory_mesh.core.config import settings
from memory_mesh.core.errors import AuthenticationError, FatalError, classify_provider_error
from memory_mesh.core.rate_limiter import RateLimiter, provider_rate_limiter
from memory_mesh.memory.citations import extract_citation_order
from memory_mesh.memory.extractor import build_metadata_prompt, parse_metadata_response
from memory_mesh.memory.summarizer import build_summary_prompt, clean_summary
from memory_mesh.models.schemas import Citation, ExtractedMetadata

logger = logging.getLogger(__name__)


@dataclass
class ContextItem:
    """A ranked memory offered to answer generation under a numeric label."""
    label: int
    memory_id: str
    title: Optional[str] = None
    url: Optional[str] = None
    summary: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_citation(self) -> Citation:
        return Citation(label=self.label, memory_id=self.memory_id, title=self.title, url=self.url)


@dataclass
class AnswerDraft:
    """Generated answer text and the citations it references."""
    text: str
    citations: List[Citation] = field(default_factory=list)


class AIProvider(ABC):
    """Async AI capabilities used by the enrichment worker and search engine."""

    @abstractmethod
    async def summarize(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Summarize raw content."""

    @abstractmethod
    async def extract_metadata(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> ExtractedMetadata:
        """Extract topics, categories, sentiment, importance and key points."""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed text into a fixed-dimension vector."""

    @abstractmethod
    async def answer_with_citations(self, query: str, context_items: List[ContextItem]) -> AnswerDraft:
        """Answer a query from labelled context items with inline [n] citations."""


def build_answer_prompt(query: str, context_items: List[ContextItem]) -> str:
    """
    Build the cited-answer prompt.

    Args:
        query: User query
        context_items: Ranked context items with labels

    Returns:
        str: Prompt text
    """
    notes = []
    for item in context_items:
        date = item.created_at.strftime("%Y-%m-%d") if item.created_at else ""
        notes.append(f"- [{item.label}] {date} {item.title or ''}: {item.summary or ''}".replace("  ", " "))

    return f"""Answer the user's query using the evidence notes, and insert bracketed numeric
citations wherever you use a note.

Rules:
- Use inline numeric citations like [1], [2].
- Keep it concise (2-4 sentences).
- Plain text only, no markdown.

User query: "{query}"

Evidence notes (ordered by relevance):
{chr(10).join(notes)}"""


def citations_from_text(text: str, context_items: List[ContextItem]) -> List[Citation]:
    """Citations for the labels referenced in text, in order of appearance."""
    by_label = {item.label: item for item in context_items}
    return [by_label[label].to_citation() for label in extract_citation_order(text) if label in by_label]


class GeminiProvider(AIProvider):
    """
    Gemini implementation of the AI capabilities.

    Example:
        >>> provider = GeminiProvider(api_key="AIza...")
        >>> summary = await provider.summarize("PostgreSQL 16 adds ...", {"title": "PG16"})
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        embedding_model: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None
    ):
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model_name or settings.gemini_model
        self.embedding_model = embedding_model or settings.gemini_embedding_model
        self.rate_limiter = rate_limiter or provider_rate_limiter

        if self.api_key:
            genai.configure(api_key=self.api_key)
        else:
            logger.warning("GEMINI_API_KEY is not set; provider calls will fail")

    def _ensure_configured(self) -> None:
        if not self.api_key:
            raise AuthenticationError("GEMINI_API_KEY is not configured")

    async def _generate(self, prompt: str, temperature: float, max_output_tokens: int) -> str:
        self._ensure_configured()
        await self.rate_limiter.acquire()

        try:
            model = genai.GenerativeModel(self.model_name)
            response = await model.generate_content_async(
                prompt,
                generation_config=genai.types.GenerationConfig(
                    temperature=temperature,
                    max_output_tokens=max_output_tokens,
                    candidate_count=1
                ),
                request_options={"timeout": settings.gemini_timeout}
            )
            text = response.text
        except Exception as e:
            logger.error(f"Gemini generation failed: {e}")
            raise classify_provider_error(e) from e

        if not text or not text.strip():
            raise FatalError("Empty response from Gemini")
        return text

    async def summarize(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        prompt = build_summary_prompt(text, metadata, max_chars=settings.max_text_length)
        summary = clean_summary(await self._generate(prompt, temperature=0.3, max_output_tokens=512))
        if not summary:
            raise FatalError("Summary was empty after cleanup")
        return summary

    async def extract_metadata(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> ExtractedMetadata:
        prompt = build_metadata_prompt(text, metadata)
        response_text = await self._generate(prompt, temperature=0.1, max_output_tokens=1024)
        return parse_metadata_response(response_text)

    async def embed(self, text: str) -> List[float]:
        self._ensure_configured()
        await self.rate_limiter.acquire()

        try:
            response = await asyncio.to_thread(
                genai.embed_content,
                model=self.embedding_model,
                content=text[:settings.max_text_length],
                task_type="retrieval_document"
            )
        except Exception as e:
            logger.error(f"Gemini embedding failed: {e}")
            raise classify_provider_error(e) from e

        return [float(value) for value in response["embedding"]]

    async def answer_with_citations(self, query: str, context_items: List[ContextItem]) -> AnswerDraft:
        prompt = build_answer_prompt(query, context_items)
        text = clean_summary(await self._generate(prompt, temperature=0.2, max_output_tokens=512))
        return AnswerDraft(text=text, citations=citations_from_text(text, context_items))
