"""
Legal Knowledge Base - RAG orchestration for statute search and consultation

This module provides:
- Keyword extraction, embedding and similarity retrieval over statute chunks
- Grounded single-turn answers with numbered source blocks
- A tool-calling consultant with bounded search rounds
- Token metering with per-role access control and an append-only ledger
- Conversation persistence and server-sent progress events
"""

from .vector_store import VectorStore, DocumentChunk
from .credits import TokenAccountant, TokenEstimate, TokenUsage, Principal
from .retriever import VectorRetriever
from .synthesizer import AnswerSynthesizer
from .consultant import ConsultantOrchestrator
from .conversations import ConversationStore
from .streaming import ProgressReporter

__all__ = [
    "VectorStore",
    "DocumentChunk",
    "TokenAccountant",
    "TokenEstimate",
    "TokenUsage",
    "Principal",
    "VectorRetriever",
    "AnswerSynthesizer",
    "ConsultantOrchestrator",
    "ConversationStore",
    "ProgressReporter",
]

__version__ = "0.1.0"
