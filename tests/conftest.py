"""
Shared fixtures and test utilities for Legal Knowledge Base tests.

Provides a scripted language-model client, a mock storage collaborator whose
transactions run against a MagicMock cursor, sample statute chunks and
principals for every role, so that all tests run without API keys, a
database, or network access.
"""

import sys
import uuid
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")


# ---------------------------------------------------------------------------
# Sample statute chunks
# ---------------------------------------------------------------------------

@pytest.fixture
def make_chunk():
    """Factory for DocumentChunk instances with statute-like metadata."""
    from execution.legal_kb.vector_store import DocumentChunk

    def _make(chunk_id, similarity, content=None, title="中華人民共和國刑法",
              law_id="PRC-CL", line_from=1, line_to=10):
        return DocumentChunk(
            id=chunk_id,
            content=content or f"第{chunk_id}條 條文內容",
            metadata={
                "title": title,
                "law_id": law_id,
                "loc": {"lines": {"from": line_from, "to": line_to}},
                "link": f"https://example.org/law/{chunk_id}",
            },
            similarity=similarity,
        )

    return _make


@pytest.fixture
def sample_chunks(make_chunk):
    """Three chunks in descending similarity order (0.91, 0.77, 0.60)."""
    return [
        make_chunk(101, 0.91, content="故意殺人的，處死刑、無期徒刑或者十年以上有期徒刑。",
                   line_from=232, line_to=233),
        make_chunk(102, 0.77, content="過失致人死亡的，處三年以上七年以下有期徒刑。",
                   line_from=233, line_to=234),
        make_chunk(103, 0.60, content="故意傷害他人身體的，處三年以下有期徒刑。",
                   line_from=234, line_to=236),
    ]


# ---------------------------------------------------------------------------
# Scripted language-model client
# ---------------------------------------------------------------------------

@pytest.fixture
def make_generation():
    """Factory for GenerationResult, optionally carrying tool calls."""
    from execution.legal_kb.llm import GenerationResult, ToolCall

    def _make(text="", total_tokens=None, tool_calls=None):
        calls = [
            ToolCall(id=f"call_{i}", name=name, arguments=args)
            for i, (name, args) in enumerate(tool_calls or [])
        ]
        assistant_message = {"role": "assistant", "content": text or None}
        if calls:
            assistant_message["tool_calls"] = [
                {"id": c.id, "type": "function",
                 "function": {"name": c.name, "arguments": "{}"}}
                for c in calls
            ]
        return GenerationResult(
            text=text,
            total_tokens=total_tokens,
            tool_calls=calls,
            assistant_message=assistant_message,
        )

    return _make


@pytest.fixture
def fake_llm():
    """LLMClient stand-in: set ``generate.side_effect`` / ``embed.return_value`` per test."""
    from execution.legal_kb.llm import EmbeddingResult

    llm = MagicMock()
    llm.generate = AsyncMock()
    llm.embed = AsyncMock(return_value=EmbeddingResult(vector=[0.1, 0.2, 0.3], total_tokens=12))
    return llm


# ---------------------------------------------------------------------------
# Mock storage collaborator
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_cursor():
    return MagicMock()


@pytest.fixture
def mock_store(mock_cursor):
    """VectorStore stand-in; run_in_transaction runs the callback on mock_cursor."""
    store = MagicMock()
    store.run_in_transaction.side_effect = lambda fn, label="transaction": fn(mock_cursor)
    store.search.return_value = []
    store.health_check.return_value = True
    return store


# ---------------------------------------------------------------------------
# Configuration and principals
# ---------------------------------------------------------------------------

@pytest.fixture
def config():
    from execution.legal_kb.config import PipelineConfig
    return PipelineConfig()


def _principal(role, remaining=100_000):
    from execution.legal_kb.credits import Principal
    return Principal(
        user_id=str(uuid.uuid4()),
        email=f"{role}@example.com",
        role=role,
        total_tokens=remaining,
        used_tokens=0,
        remaining_tokens=remaining,
    )


@pytest.fixture
def free_principal():
    return _principal("free")


@pytest.fixture
def pay_principal():
    return _principal("pay")


@pytest.fixture
def vip_principal():
    return _principal("vip")


@pytest.fixture
def admin_principal():
    return _principal("admin", remaining=0)


# ---------------------------------------------------------------------------
# Collaborator mocks for pipeline tests
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_accountant():
    accountant = MagicMock()
    accountant.debit = AsyncMock(return_value=9_000)
    return accountant


@pytest.fixture
def mock_history():
    history = MagicMock()
    history.save_search = AsyncMock(return_value="hist-1")
    history.save_qa = AsyncMock(return_value="hist-2")
    return history


@pytest.fixture
def mock_conversations():
    from execution.legal_kb.conversations import Persisted
    conversations = MagicMock()
    conversations.save_turn = AsyncMock(return_value=Persisted("7f1c6a52-0d7e-4c11-9a59-3c8d1c3b2a10"))
    return conversations


# ---------------------------------------------------------------------------
# Singleton resets between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics_singleton():
    """Reset the MetricsCollector singleton between tests."""
    import execution.legal_kb.metrics as metrics_mod
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
    yield
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None


@pytest.fixture(autouse=True)
def reset_accountant_singleton():
    """Reset the global TokenAccountant between tests."""
    import execution.legal_kb.credits as credits_mod
    credits_mod._accountant = None
    yield
    credits_mod._accountant = None
