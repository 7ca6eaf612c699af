"""
Citation Formatting for Retrieved Statute Chunks

Renders retrieved chunks as labelled, delimited context blocks:

    文件 1 / {law_id} - {title} / 第 {from} 至 {to} 行 / (相關度: 91%):
    {content}
    ---

The same block format is used for the grounded-answer prompt and for the
consultant's search-tool result.
"""

import math
from dataclasses import dataclass

from .vector_store import DocumentChunk


@dataclass
class Citation:
    """A formatted reference to one retrieved chunk."""
    index: int
    law_id: str
    title: str
    line_from: object
    line_to: object
    similarity: float

    @classmethod
    def from_chunk(cls, index: int, chunk: DocumentChunk) -> "Citation":
        line_from, line_to = chunk.line_range
        return cls(
            index=index,
            law_id=chunk.law_id,
            title=chunk.title,
            line_from=line_from,
            line_to=line_to,
            similarity=chunk.similarity,
        )

    @property
    def relevance_percent(self) -> int:
        return math.floor(self.similarity * 100 + 0.5)

    def header(self) -> str:
        return (
            f"文件 {self.index} / {self.law_id} - {self.title} / "
            f"第 {self.line_from} 至 {self.line_to} 行 / (相關度: {self.relevance_percent}%):"
        )


def format_chunk_block(index: int, chunk: DocumentChunk) -> str:
    citation = Citation.from_chunk(index, chunk)
    return f"{citation.header()}\n{chunk.content}\n---"


def format_chunks_markdown(chunks: list[DocumentChunk]) -> str:
    """Render chunks as newline-joined context blocks, numbered from 1."""
    return "\n".join(format_chunk_block(i + 1, chunk) for i, chunk in enumerate(chunks))
