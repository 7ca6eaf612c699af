"""
Vector Retriever for the Legal Knowledge Base

Two-step retrieval: the language model first reformulates the user's
(often colloquial) query into legal keywords, the keywords are embedded, and
the embedding is matched against statute chunks by cosine similarity.

Usage:
    retriever = VectorRetriever(store, llm)
    kw = await retriever.extract_keywords("謀殺罪的最高刑罰")
    emb = await retriever.embed(" ".join(kw.keywords))
    chunks = await retriever.retrieve(emb.vector, limit=5)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import PipelineConfig
from .credits import TokenUsage
from .errors import EmbeddingError
from .llm import LLMClient
from .prompts import LLM_PROMPTS
from .vector_store import DocumentChunk

logger = logging.getLogger(__name__)


@dataclass
class KeywordResult:
    """Keywords derived from a query and the cost of deriving them."""
    keywords: list[str] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class EmbeddingOutcome:
    """An embedding vector and the cost of producing it."""
    vector: list[float]
    usage: TokenUsage = field(default_factory=TokenUsage)


def parse_keywords(text: str, max_keywords: int = 5) -> list[str]:
    """Split model output into at most ``max_keywords`` non-empty trimmed lines."""
    keywords = [line.strip() for line in (text or "").splitlines()]
    return [k for k in keywords if k][:max_keywords]


class VectorRetriever:
    """
    Keyword extraction, embedding and similarity retrieval.

    Holds no per-request state; one instance serves concurrent requests.
    """

    def __init__(self, vector_store, llm: LLMClient, config: Optional[PipelineConfig] = None):
        self.store = vector_store
        self.llm = llm
        self.config = config or PipelineConfig()

    async def extract_keywords(self, query: str) -> KeywordResult:
        """
        Reformulate a query into legal search keywords.

        Returns:
            KeywordResult with at most ``max_keywords`` entries. Usage is the
            provider-reported count, or the prompt-length estimate when the
            provider omits it.

        Raises:
            ProviderError: the generation call failed
        """
        prompt = LLM_PROMPTS["keyword_extraction"].format(query=query)
        result = await self.llm.generate(
            [{"role": "user", "content": prompt}],
            model=self.config.models.flash_model,
        )
        keywords = parse_keywords(result.text, self.config.max_keywords)
        usage = TokenUsage.from_provider(result.total_tokens, prompt, self.config.chars_per_token)

        logger.info(f"Extracted {len(keywords)} keywords: {keywords}")
        return KeywordResult(keywords=keywords, usage=usage)

    async def embed(self, text: str) -> EmbeddingOutcome:
        """
        Embed text for similarity search.

        Raises:
            EmbeddingError: the provider returned no vector
            ProviderError: the embedding call failed
        """
        result = await self.llm.embed(text, model=self.config.models.embedding_model)
        if not result.vector:
            raise EmbeddingError("Embedding provider returned no vectors")
        usage = TokenUsage.from_provider(result.total_tokens, text, self.config.chars_per_token)
        return EmbeddingOutcome(vector=result.vector, usage=usage)

    async def retrieve(
        self,
        embedding: list[float],
        limit: int,
        metadata_filter: Optional[dict] = None,
    ) -> list[DocumentChunk]:
        """
        Find the chunks most similar to ``embedding``.

        Returns:
            Up to ``limit`` chunks, most similar first. An empty list means no
            relevant chunks were found.
        """
        chunks = await asyncio.to_thread(self.store.search, embedding, limit, metadata_filter or {})
        chunks = sorted(chunks[:limit], key=lambda c: c.similarity, reverse=True)
        logger.info(
            f"Retrieved {len(chunks)} chunks (limit={limit})"
            + (f", top similarity {chunks[0].similarity:.3f}" if chunks else "")
        )
        return chunks
