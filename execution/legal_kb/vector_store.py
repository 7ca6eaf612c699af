"""
Vector Store with PostgreSQL + pgvector

Provides the storage collaborator for the Legal Knowledge Base: pooled
connections, a transaction-scoping primitive used by the token ledger and the
conversation store, cosine similarity search over statute chunks, and the
schema bootstrap.
"""

import os
import json
import logging
from typing import Callable, Optional, TypeVar
from dataclasses import dataclass

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from .errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class VectorStoreConfig:
    """Configuration for vector store."""
    connection_string: Optional[str] = None
    table_name: str = "documents"
    embedding_dimensions: int = 3072
    # Connection pooling settings
    pool_min_connections: int = 2
    pool_max_connections: int = 20


@dataclass
class DocumentChunk:
    """A retrieved statute chunk with its query-relative similarity."""
    id: int
    content: str
    metadata: dict
    similarity: float

    @property
    def title(self) -> str:
        return self.metadata.get("title") or f"文件 #{self.id}"

    @property
    def law_id(self) -> str:
        return str(self.metadata.get("law_id", ""))

    @property
    def line_range(self) -> tuple:
        """(from, to) line locator; missing values are returned as "?"."""
        lines = (self.metadata.get("loc") or {}).get("lines") or {}
        return lines.get("from", "?"), lines.get("to", "?")

    @property
    def link(self) -> Optional[str]:
        return self.metadata.get("link")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "metadata": self.metadata,
            "similarity": self.similarity,
        }


def to_vector_literal(embedding: list[float]) -> str:
    """Render an embedding as a pgvector text literal."""
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


class VectorStore:
    """
    PostgreSQL store with pgvector.

    Features:
    - Threaded connection pool (safe for use from worker threads)
    - run_in_transaction() for atomic multi-statement writes
    - Cosine similarity search with JSONB metadata filtering
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None):
        """
        Initialize vector store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or VectorStoreConfig()
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/legal_kb"
        )

    def connect(self) -> None:
        """Create the connection pool and make sure pgvector is available."""
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=self.config.pool_min_connections,
                maxconn=self.config.pool_max_connections,
                dsn=self._connection_string,
                cursor_factory=RealDictCursor,
            )
            conn = self._pool.getconn()
            try:
                with conn.cursor() as cur:
                    cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                conn.commit()
            finally:
                self._pool.putconn(conn)

            logger.info(
                f"Connection pool initialized (min={self.config.pool_min_connections}, "
                f"max={self.config.pool_max_connections})"
            )
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        """Take a connection from the pool, reconnecting once if it is dead."""
        if self._pool is None:
            self.connect()
        try:
            return self._pool.getconn()
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            logger.warning("Connection from pool is dead, attempting to re-establish...")
            self.connect()
            return self._pool.getconn()

    def _release_connection(self, conn, close: bool = False):
        """Release a connection back to the pool."""
        if self._pool and conn:
            self._pool.putconn(conn, close=close)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a read-only DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._get_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn, close=True)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    continue
                raise PersistenceError(f"{label} failed: {e}") from e
            except psycopg2.Error as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise PersistenceError(f"{label} failed: {e}") from e
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def run_in_transaction(self, fn: Callable[..., T], label: str = "transaction") -> T:
        """
        Run ``fn(cursor)`` inside a single transaction.

        Commits when ``fn`` returns, rolls back on any exception and always
        releases the connection. Writes are never retried, so a transaction is
        applied at most once.

        Raises:
            PersistenceError: wrapping any psycopg2 error. Errors raised by
                ``fn`` itself (e.g. AccountNotFound) propagate unchanged.
        """
        conn = self._get_connection()
        broken = False
        try:
            with conn.cursor() as cur:
                result = fn(cur)
            conn.commit()
            return result
        except psycopg2.Error as e:
            self._safe_rollback(conn)
            broken = isinstance(e, (psycopg2.OperationalError, psycopg2.InterfaceError))
            logger.error(f"{label} rolled back: {type(e).__name__}: {e}")
            raise PersistenceError(f"{label} failed: {e}") from e
        except Exception:
            self._safe_rollback(conn)
            raise
        finally:
            self._release_connection(conn, close=broken)

    def close(self) -> None:
        """Close all pooled connections."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")

    def health_check(self) -> bool:
        """Return True when a trivial query succeeds."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
            return True

        try:
            return self._execute_with_retry(_op, "health_check")
        except Exception as e:
            logger.warning(f"Health check query failed: {e}")
            return False

    # =========================================================================
    # Schema
    # =========================================================================

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        schema_sql = f"""
        CREATE EXTENSION IF NOT EXISTS "uuid-ossp";

        CREATE TABLE IF NOT EXISTS users (
            id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            email VARCHAR(255) UNIQUE NOT NULL,
            name VARCHAR(255),
            avatar_url TEXT,
            role VARCHAR(20) NOT NULL DEFAULT 'free'
                CHECK (role IN ('admin', 'free', 'pay', 'vip')),
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS user_credits (
            id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            user_id UUID UNIQUE NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            total_tokens INTEGER NOT NULL DEFAULT 1000,
            used_tokens INTEGER NOT NULL DEFAULT 0,
            remaining_tokens INTEGER NOT NULL DEFAULT 1000,
            last_reset TIMESTAMPTZ DEFAULT NOW(),
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        -- Append-only token ledger
        CREATE TABLE IF NOT EXISTS token_usage (
            id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            feature_type VARCHAR(50) NOT NULL
                CHECK (feature_type IN ('search', 'qa', 'consultant')),
            tokens_used INTEGER NOT NULL,
            model_used VARCHAR(100),
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS search_history (
            id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            query TEXT NOT NULL,
            keywords TEXT[] DEFAULT ARRAY[]::TEXT[],
            document_ids INTEGER[] NOT NULL,
            tokens_used INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS qa_history (
            id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            question TEXT NOT NULL,
            answer TEXT NOT NULL,
            document_ids INTEGER[] NOT NULL,
            tokens_used INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS consultant_conversations (
            id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            title VARCHAR(255) NOT NULL,
            model_used VARCHAR(100) NOT NULL DEFAULT 'flash',
            total_tokens INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS consultant_messages (
            id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            conversation_id UUID NOT NULL
                REFERENCES consultant_conversations(id) ON DELETE CASCADE,
            role VARCHAR(20) NOT NULL CHECK (role IN ('user', 'assistant')),
            content TEXT NOT NULL,
            document_ids INTEGER[],
            tokens_used INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        -- Statute chunks (populated by the ingestion tooling)
        CREATE TABLE IF NOT EXISTS {self.config.table_name} (
            id BIGSERIAL PRIMARY KEY,
            content TEXT NOT NULL,
            metadata JSONB DEFAULT '{{}}',
            embedding VECTOR({self.config.embedding_dimensions})
        );

        CREATE INDEX IF NOT EXISTS idx_token_usage_user_id ON token_usage(user_id);
        CREATE INDEX IF NOT EXISTS idx_search_history_user_id ON search_history(user_id);
        CREATE INDEX IF NOT EXISTS idx_qa_history_user_id ON qa_history(user_id);
        CREATE INDEX IF NOT EXISTS idx_conversations_user_id
            ON consultant_conversations(user_id);
        CREATE INDEX IF NOT EXISTS idx_messages_conversation_created
            ON consultant_messages(conversation_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_documents_metadata
            ON {self.config.table_name} USING GIN (metadata);
        """

        # pgvector ANN indexes cap at 2000 dimensions, so 3072-d search is exact.
        def _op(cur):
            cur.execute(schema_sql)

        self.run_in_transaction(_op, "initialize_schema")
        logger.info("Schema initialized successfully")

    # =========================================================================
    # Similarity search
    # =========================================================================

    def search(
        self,
        query_embedding: list[float],
        limit: int = 5,
        metadata_filter: Optional[dict] = None,
    ) -> list[DocumentChunk]:
        """
        Semantic search using cosine similarity.

        Args:
            query_embedding: Query embedding vector
            limit: Maximum number of chunks to return
            metadata_filter: JSONB containment filter (``metadata @> filter``)

        Returns:
            DocumentChunk list ordered by ascending cosine distance
        """
        sql = f"""
        SELECT
            id,
            content,
            metadata,
            1 - (embedding <=> %s::vector) AS similarity
        FROM {self.config.table_name}
        WHERE metadata @> %s::jsonb
        ORDER BY embedding <=> %s::vector
        LIMIT %s
        """
        vector = to_vector_literal(query_embedding)
        params = (vector, json.dumps(metadata_filter or {}), vector, limit)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()

            results = []
            for row in rows:
                if not isinstance(row, dict):
                    row = dict(zip(("id", "content", "metadata", "similarity"), row))
                similarity = float(row["similarity"] or 0.0)
                results.append(DocumentChunk(
                    id=int(row["id"]),
                    content=row["content"],
                    metadata=row["metadata"] or {},
                    similarity=min(max(similarity, 0.0), 1.0),
                ))
            return results

        return self._execute_with_retry(_op, "search")
