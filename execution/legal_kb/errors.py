"""
Error taxonomy for the Legal Knowledge Base service.

Every error carries a short user-safe message (``user_message``) that may be
shown to the client. The exception's ``str()`` is the technical message and is
only ever written to the log.
"""

from typing import Optional


class LegalKBError(Exception):
    """Base class for all service errors."""

    status_code: int = 500
    default_user_message: str = "內部伺服器錯誤"

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message


# =============================================================================
# Boundary errors (raised before any paid model call)
# =============================================================================

class ValidationError(LegalKBError):
    """Bad, missing or oversized input."""

    status_code = 400
    default_user_message = "請求參數無效"


class AuthenticationError(LegalKBError):
    """Missing or invalid session."""

    status_code = 401
    default_user_message = "未經授權"


class AccessDenied(LegalKBError):
    """The principal's role lacks the requested entitlement."""

    status_code = 403
    default_user_message = "存取遭拒"

    def __init__(self, message: str, feature: str, role: str,
                 user_message: Optional[str] = None):
        super().__init__(message, user_message)
        self.feature = feature
        self.role = role


class InsufficientTokens(LegalKBError):
    """Estimated cost exceeds the principal's remaining balance."""

    status_code = 402
    default_user_message = "代幣不足"

    def __init__(self, message: str, required: int, remaining: int):
        super().__init__(message)
        self.required = required
        self.remaining = remaining


# =============================================================================
# Provider errors
# =============================================================================

class ProviderError(LegalKBError):
    """An embedding or generation call failed or returned an unusable shape."""

    default_user_message = "AI 處理失敗"


class EmbeddingError(ProviderError):
    """The embedding provider returned no vector."""


class SynthesisError(ProviderError):
    """The answer model returned empty text."""


class EmptyResponseError(ProviderError):
    """The consultant model finished without any answer text."""


class ToolLoopExceeded(LegalKBError):
    """The model kept requesting tool calls past the iteration bound."""

    default_user_message = "AI 回應超出工具調用次數上限"

    def __init__(self, iterations: int):
        super().__init__(f"Tool loop exceeded {iterations} iterations")
        self.iterations = iterations


# =============================================================================
# Persistence errors
# =============================================================================

class PersistenceError(LegalKBError):
    """A storage read or write failed."""


class AccountNotFound(PersistenceError):
    """The principal has no credit record."""

    def __init__(self, user_id: str):
        super().__init__(f"Credit record not found for user {user_id}")
        self.user_id = user_id


class NotFoundOrForbidden(PersistenceError):
    """The conversation does not exist or is owned by another principal."""

    status_code = 404
    default_user_message = "找不到對話"

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} not found or not owned by caller")
        self.conversation_id = conversation_id
