"""
Single-turn pipelines: keyword search and grounded Q&A.

    search: query -> keywords -> embedding -> top chunks        (JSON response)
    qa:     question -> keywords -> embedding -> chunks -> answer (streamed)

Both debit the summed usage of their model calls only after the pipeline
succeeded, then record history.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import PipelineConfig
from .credits import Principal, TokenAccountant
from .errors import LegalKBError
from .history import HistoryRecorder
from .metrics import MetricsCollector, get_metrics_collector
from .prompts import MESSAGES, STEPS
from .retriever import VectorRetriever
from .streaming import ProgressReporter
from .synthesizer import AnswerSynthesizer

logger = logging.getLogger(__name__)


def _embedding_input(keywords: list[str], fallback: str) -> str:
    # Model returned no usable keywords: search on the raw text
    return " ".join(keywords) if keywords else fallback


class SearchPipeline:
    """Keyword-driven semantic search over statute chunks."""

    def __init__(
        self,
        retriever: VectorRetriever,
        accountant: TokenAccountant,
        history: HistoryRecorder,
        config: Optional[PipelineConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.retriever = retriever
        self.accountant = accountant
        self.history = history
        self.config = config or PipelineConfig()
        self.metrics = metrics or get_metrics_collector()

    async def search(self, principal: Principal, query: str) -> dict:
        """
        Search the knowledge base.

        Returns:
            {query, keywords, results, tokens_used, remaining_tokens}

        Raises:
            ProviderError: keyword or embedding generation failed
            PersistenceError: the debit failed
        """
        with self.metrics.track_run("search", principal.user_id) as tracker:
            kw = await self.retriever.extract_keywords(query)
            embedding = await self.retriever.embed(_embedding_input(kw.keywords, query))
            chunks = await self.retriever.retrieve(
                embedding.vector, self.config.feature("search").retrieval_limit
            )

            usage = kw.usage + embedding.usage
            remaining = await self.accountant.debit(principal, "search", usage)
            tracker.set_results(len(chunks), usage.total)

        await self.history.save_search(
            principal, query, kw.keywords, [c.id for c in chunks], usage.total
        )
        return {
            "query": query,
            "keywords": kw.keywords,
            "results": [c.to_dict() for c in chunks],
            "tokens_used": usage.total,
            "remaining_tokens": remaining,
        }


@dataclass
class QAOutcome:
    """Summary of a successful Q&A run."""
    answer: str
    document_ids: list[int] = field(default_factory=list)
    tokens_used: int = 0
    remaining_tokens: int = 0


class QAPipeline:
    """Streams a grounded answer to a single legal question."""

    def __init__(
        self,
        retriever: VectorRetriever,
        synthesizer: AnswerSynthesizer,
        accountant: TokenAccountant,
        history: HistoryRecorder,
        config: Optional[PipelineConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.retriever = retriever
        self.synthesizer = synthesizer
        self.accountant = accountant
        self.history = history
        self.config = config or PipelineConfig()
        self.metrics = metrics or get_metrics_collector()

    async def run(
        self,
        principal: Principal,
        question: str,
        reporter: ProgressReporter,
    ) -> Optional[QAOutcome]:
        """
        Answer ``question``, emitting progress events.

        Returns None when the run ended in an error event (including the
        no-relevant-documents case, which debits nothing).
        """
        with self.metrics.track_run("qa", principal.user_id) as tracker:
            try:
                return await self._run(principal, question, reporter, tracker)
            except LegalKBError as e:
                logger.error(f"Q&A failed for {principal.user_id}: {type(e).__name__}: {e}")
                tracker.fail(type(e).__name__)
                reporter.error(MESSAGES["ai_failed"])
            except Exception as e:
                logger.error(f"Unexpected Q&A error for {principal.user_id}: {type(e).__name__}: {e}")
                tracker.fail(type(e).__name__)
                reporter.error(MESSAGES["ai_failed"])
        return None

    async def _run(self, principal, question, reporter, tracker) -> Optional[QAOutcome]:
        reporter.step(STEPS["generating_keywords"])
        kw = await self.retriever.extract_keywords(question)

        reporter.step(STEPS["embedding"])
        embedding = await self.retriever.embed(_embedding_input(kw.keywords, question))

        reporter.step(STEPS["searching"])
        chunks = await self.retriever.retrieve(
            embedding.vector, self.config.feature("qa").retrieval_limit
        )
        if not chunks:
            logger.warning(f"No relevant documents for question from {principal.user_id}")
            reporter.error(MESSAGES["no_relevant_documents"])
            return None

        reporter.step(STEPS["generating_answer"])
        synthesis = await self.synthesizer.synthesize(question, chunks)
        reporter.chunk(synthesis.answer, kind="answer_chunk")
        reporter.sources(chunks)

        usage = kw.usage + embedding.usage + synthesis.usage
        remaining = await self.accountant.debit(principal, "qa", usage)
        document_ids = [c.id for c in chunks]
        tracker.set_results(len(chunks), usage.total)

        await self.history.save_qa(principal, question, synthesis.answer, document_ids, usage.total)
        reporter.tokens(usage.total, remaining)

        return QAOutcome(
            answer=synthesis.answer,
            document_ids=document_ids,
            tokens_used=usage.total,
            remaining_tokens=remaining,
        )
