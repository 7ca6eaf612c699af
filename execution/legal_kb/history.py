"""
Search and Q&A history recording.

History rows are a convenience for the user's profile page. A failed write is
logged and never fails the request that produced it.
"""

import asyncio
import logging
from typing import Optional

from .credits import Principal
from .errors import PersistenceError

logger = logging.getLogger(__name__)


class HistoryRecorder:
    """Appends search and Q&A records for a principal."""

    def __init__(self, vector_store):
        self.store = vector_store

    async def _insert(self, label: str, sql: str, params: tuple) -> Optional[str]:
        def _op(cur):
            cur.execute(sql, params)
            row = cur.fetchone()
            if not row:
                return None
            return str(row["id"] if isinstance(row, dict) else row[0])

        try:
            return await asyncio.to_thread(self.store.run_in_transaction, _op, label)
        except PersistenceError as e:
            logger.error(f"Failed to {label.replace('_', ' ')}: {e}")
            return None

    async def save_search(
        self,
        principal: Principal,
        query: str,
        keywords: list[str],
        document_ids: list[int],
        tokens_used: int,
    ) -> Optional[str]:
        """Record a search. Returns the row id, or None if the write failed."""
        return await self._insert(
            "save_search_history",
            """
            INSERT INTO search_history (user_id, query, keywords, document_ids, tokens_used)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (principal.user_id, query, list(keywords), list(document_ids), tokens_used),
        )

    async def save_qa(
        self,
        principal: Principal,
        question: str,
        answer: str,
        document_ids: list[int],
        tokens_used: int,
    ) -> Optional[str]:
        """Record a question and its answer. Returns the row id, or None if the write failed."""
        return await self._insert(
            "save_qa_history",
            """
            INSERT INTO qa_history (user_id, question, answer, document_ids, tokens_used)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (principal.user_id, question, answer, list(document_ids), tokens_used),
        )
