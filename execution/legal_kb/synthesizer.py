"""
Grounded answer synthesis for the single-turn Q&A feature.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .citation import format_chunks_markdown
from .config import PipelineConfig
from .credits import TokenUsage
from .errors import SynthesisError
from .llm import LLMClient
from .prompts import LLM_PROMPTS
from .vector_store import DocumentChunk

logger = logging.getLogger(__name__)


@dataclass
class SynthesisResult:
    answer: str
    usage: TokenUsage = field(default_factory=TokenUsage)


class AnswerSynthesizer:
    """Answers a question strictly from retrieved chunks. Stateless."""

    def __init__(self, llm: LLMClient, config: Optional[PipelineConfig] = None):
        self.llm = llm
        self.config = config or PipelineConfig()

    def build_prompt(self, question: str, chunks: list[DocumentChunk]) -> str:
        return LLM_PROMPTS["grounded_answer"].format(
            question=question,
            context=format_chunks_markdown(chunks),
        )

    async def synthesize(self, question: str, chunks: list[DocumentChunk]) -> SynthesisResult:
        """
        Generate an answer grounded in ``chunks``.

        Raises:
            SynthesisError: the model returned empty text
            ProviderError: the generation call failed
        """
        prompt = self.build_prompt(question, chunks)
        result = await self.llm.generate(
            [{"role": "user", "content": prompt}],
            model=self.config.models.flash_model,
        )
        answer = result.text or ""
        if not answer.strip():
            raise SynthesisError("Answer model returned empty text")

        usage = TokenUsage.from_provider(result.total_tokens, prompt, self.config.chars_per_token)
        logger.info(f"Synthesized answer from {len(chunks)} chunks ({usage.total} tokens)")
        return SynthesisResult(answer=answer, usage=usage)
