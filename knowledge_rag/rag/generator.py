"""Generator for the RAG Knowledge Base

Builds a grounded prompt from retrieved chunks, calls the language model and
returns the answer with citations. When there is nothing to ground on, or the
model stays unavailable after one retry, the result is explicitly marked as
degraded and carries raw excerpts instead of a model-authored answer.
"""

from typing import Dict, List, Optional, Tuple
import asyncio
import re
import time

import structlog

from knowledge_rag.config.settings import AISettings, RAGSettings
from knowledge_rag.core.exceptions import PermanentProviderError, TransientProviderError
from knowledge_rag.core.metrics import record_generation_metrics
from knowledge_rag.rag.chunker import TOKEN_RE, count_tokens
from knowledge_rag.rag.models import (
    Citation,
    GenerationResult,
    RetrievalResult,
    SourceReference,
    SourceType,
)
from knowledge_rag.services.llm_service import LLMMessage, LLMRequest, LLMResponse, LLMService

logger = structlog.get_logger(__name__)

NO_CONTEXT_ANSWER = (
    "I don't have enough relevant information in the knowledge base to answer this question."
)

RETRIEVAL_UNAVAILABLE_ANSWER = (
    "The knowledge base search is temporarily unavailable. Please try again shortly."
)

UNCERTAINTY_MARKERS = (
    "not enough information",
    "don't have enough",
    "do not have enough",
    "insufficient information",
    "i don't know",
    "i do not know",
    "cannot determine",
    "can't determine",
    "unable to answer",
    "not sure",
)

# Query keywords mapped to the source types likely to answer them
INTENT_KEYWORDS: Dict[SourceType, Tuple[str, ...]] = {
    SourceType.PRODUCT: ("product", "item", "buy", "price", "sku", "specification", "feature", "stock"),
    SourceType.ERP_RECORD: ("price", "stock", "order", "invoice", "customer", "supplier", "delivery"),
    SourceType.DOCUMENT: ("document", "file", "policy", "guide", "procedure"),
    SourceType.MANUAL: ("manual", "guide", "instruction", "install", "maintenance", "troubleshoot"),
    SourceType.EMAIL_ARCHIVE: ("email", "e-mail", "mail", "message", "correspondence"),
}

SYSTEM_PROMPT_TEMPLATE = """You are a knowledge base assistant for an ERP system. Use the provided context to answer questions accurately and helpfully.

Context Information:
{context}

Instructions:
- Answer based only on the provided context
- If the context doesn't contain enough information, say so
- Include specific details such as figures, codes and units when available
- Cite the context blocks you used by their number, e.g. [1]
- Be concise but comprehensive"""


def resolve_source_types(query: str, intent: Optional[str] = None) -> Optional[List[SourceType]]:
    """Guess which source types can answer a query.

    Args:
        query: User query
        intent: Optional caller-supplied intent hint

    Returns:
        Matching source types, or None to search all of them
    """
    text = f"{intent or ''} {query}".lower()
    matches = [
        source_type
        for source_type, keywords in INTENT_KEYWORDS.items()
        if any(re.search(rf"\b{re.escape(keyword)}", text) for keyword in keywords)
    ]
    return matches or None


def _truncate_tokens(text: str, max_tokens: int) -> str:
    tokens = list(TOKEN_RE.finditer(text))
    if len(tokens) <= max_tokens:
        return text
    return text[:tokens[max_tokens - 1].end()]


def _excerpt(text: str, length: int) -> str:
    return text if len(text) <= length else text[:length].rstrip() + "..."


class Generator:
    """Grounded answer generation with citations."""

    def __init__(
        self,
        llm_service: LLMService,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 500,
        timeout: float = 30.0,
        max_concurrency: int = 4,
        context_token_budget: int = 1500,
        excerpt_length: int = 200,
    ):
        self.llm_service = llm_service
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.context_token_budget = context_token_budget
        self.excerpt_length = excerpt_length
        self._semaphore = asyncio.Semaphore(max_concurrency)

    @classmethod
    def from_settings(cls, llm_service: LLMService, ai: AISettings, rag: RAGSettings) -> "Generator":
        return cls(
            llm_service,
            model=ai.default_model,
            temperature=ai.temperature,
            max_tokens=ai.max_tokens,
            timeout=ai.request_timeout,
            max_concurrency=ai.max_concurrency,
            context_token_budget=rag.context_token_budget,
            excerpt_length=rag.excerpt_length,
        )

    def select_context(self, results: List[RetrievalResult]) -> List[RetrievalResult]:
        """Highest-similarity chunks that fit the token budget.

        The top chunk is truncated when it alone exceeds the budget.
        """
        ranked = sorted(results, key=lambda r: r.similarity, reverse=True)
        selected: List[RetrievalResult] = []
        used = 0
        for result in ranked:
            tokens = count_tokens(result.content)
            if used + tokens <= self.context_token_budget:
                selected.append(result)
                used += tokens
            elif not selected:
                content = _truncate_tokens(result.content, self.context_token_budget)
                selected.append(result.model_copy(update={"content": content}))
                break
            else:
                break
        return selected

    @staticmethod
    def build_prompt(selected: List[RetrievalResult]) -> str:
        """System prompt with numbered context blocks."""
        blocks = [
            f"[{i}] {r.title} ({r.source_type.value})\n{r.content}"
            for i, r in enumerate(selected, start=1)
        ]
        return SYSTEM_PROMPT_TEMPLATE.format(context="\n\n---\n\n".join(blocks))

    async def generate(
        self,
        query: str,
        results: List[RetrievalResult],
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> GenerationResult:
        """Generate a grounded answer.

        Args:
            query: User query
            results: Retrieved chunks, any order
            user_id: Requesting user, for logging
            tenant_id: Requesting tenant, for logging

        Returns:
            Generation result; ``degraded`` is set when the answer is not model-authored

        Raises:
            PermanentProviderError: On credential or request errors from the provider
        """
        start_time = time.perf_counter()

        if not results:
            return self._finish(
                GenerationResult(
                    query=query,
                    answer=NO_CONTEXT_ANSWER,
                    confidence=0.0,
                    degraded=True,
                    degraded_reason="no_relevant_context",
                ),
                start_time,
            )

        selected = self.select_context(results)
        citations = [
            Citation(
                chunk_id=r.chunk_id,
                knowledge_base_id=r.knowledge_base_id,
                title=r.title,
                source_type=r.source_type,
                excerpt=_excerpt(r.content, self.excerpt_length),
                score=round(r.similarity, 4),
            )
            for r in selected
        ]
        sources = self._sources(selected)
        mean_similarity = sum(r.similarity for r in selected) / len(selected)

        request = LLMRequest(
            messages=[LLMMessage(role="user", content=query)],
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            system_prompt=self.build_prompt(selected),
        )

        try:
            response = await self._generate_with_retry(request, tenant_id=tenant_id, user_id=user_id)
        except PermanentProviderError:
            raise
        except TransientProviderError as e:
            logger.warning(
                "Language model unavailable, returning retrieved excerpts",
                tenant_id=tenant_id,
                user_id=user_id,
                error_code=e.error_code,
            )
            return self._finish(
                GenerationResult(
                    query=query,
                    answer=self._excerpt_summary(selected),
                    confidence=self._clip(mean_similarity * 0.5),
                    citations=citations,
                    sources=sources,
                    degraded=True,
                    degraded_reason="provider_unavailable",
                ),
                start_time,
            )

        confidence = mean_similarity
        answer = response.content.strip()
        if any(marker in answer.lower() for marker in UNCERTAINTY_MARKERS):
            confidence *= 0.5

        return self._finish(
            GenerationResult(
                query=query,
                answer=answer,
                confidence=self._clip(confidence),
                citations=citations,
                sources=sources,
                degraded=False,
                model=response.model,
                tokens_used=response.tokens_used,
            ),
            start_time,
        )

    def retrieval_unavailable(self, query: str) -> GenerationResult:
        """Degraded result for a query whose context could not be retrieved."""
        return self._finish(
            GenerationResult(
                query=query,
                answer=RETRIEVAL_UNAVAILABLE_ANSWER,
                confidence=0.0,
                degraded=True,
                degraded_reason="retrieval_unavailable",
            ),
            time.perf_counter(),
        )

    async def _generate_with_retry(self, request: LLMRequest, **log_context) -> LLMResponse:
        try:
            return await self._call_model(request)
        except TransientProviderError as e:
            logger.warning("Transient generation failure, retrying once", error_code=e.error_code, **log_context)
        return await self._call_model(request)

    async def _call_model(self, request: LLMRequest) -> LLMResponse:
        async with self._semaphore:
            try:
                return await asyncio.wait_for(self.llm_service.generate(request), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise TransientProviderError(
                    self.llm_service.get_provider_for_model(request.model),
                    "generate",
                    f"timed out after {self.timeout}s",
                )

    def _excerpt_summary(self, selected: List[RetrievalResult]) -> str:
        lines = ["The answer service is currently unavailable. Relevant excerpts from the knowledge base:"]
        for i, r in enumerate(selected, start=1):
            lines.append(f"[{i}] {r.title}: {_excerpt(r.content, self.excerpt_length)}")
        return "\n\n".join(lines)

    @staticmethod
    def _sources(selected: List[RetrievalResult]) -> List[SourceReference]:
        seen = {}
        for r in selected:
            if r.knowledge_base_id not in seen:
                seen[r.knowledge_base_id] = SourceReference(
                    knowledge_base_id=r.knowledge_base_id,
                    title=r.title,
                    source_type=r.source_type,
                    source_id=r.source_id,
                )
        return list(seen.values())

    @staticmethod
    def _clip(value: float) -> float:
        return round(min(max(value, 0.0), 1.0), 4)

    @staticmethod
    def _finish(result: GenerationResult, start_time: float) -> GenerationResult:
        duration = time.perf_counter() - start_time
        result.processing_time_ms = round(duration * 1000, 2)
        record_generation_metrics(duration, result.degraded)
        return result
