"""
Token Credits and Access Control for the Legal Knowledge Base

Every AI feature is metered in tokens. This module:
- estimates the cost of a request before any model call (a conservative gate)
- enforces per-role feature entitlements and the pro-model restriction
- debits the actual cost and appends a ledger entry in one transaction

Estimated and reported token counts are distinct types: a TokenEstimate is
only ever compared against a balance, a TokenUsage is what gets billed.
"""

import math
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .config import PipelineConfig
from .errors import AccessDenied, AccountNotFound, InsufficientTokens, ValidationError
from .prompts import INPUT_LABELS, MESSAGES

logger = logging.getLogger(__name__)


def count_tokens(text: str, chars_per_token: int = 4) -> int:
    """Length heuristic: ceil(characters / chars_per_token)."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


# =============================================================================
# Typed token counts
# =============================================================================

@dataclass(frozen=True)
class TokenEstimate:
    """Approximate pre-check cost. Never billed."""
    tokens: int


@dataclass(frozen=True)
class TokenUsage:
    """
    Billable usage of one or more model calls.

    ``reported`` comes from the provider's usage field; ``estimated`` is the
    length heuristic applied when the provider omitted usage for a call.
    Only TokenUsage can be added to TokenUsage.
    """
    reported: int = 0
    estimated: int = 0

    @classmethod
    def from_provider(
        cls,
        total_tokens: Optional[int],
        fallback_text: str = "",
        chars_per_token: int = 4,
    ) -> "TokenUsage":
        if total_tokens is not None:
            return cls(reported=int(total_tokens))
        return cls(estimated=count_tokens(fallback_text, chars_per_token))

    @property
    def total(self) -> int:
        return self.reported + self.estimated

    def scaled(self, factor: int) -> "TokenUsage":
        return TokenUsage(self.reported * factor, self.estimated * factor)

    def __add__(self, other):
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(self.reported + other.reported, self.estimated + other.estimated)


# =============================================================================
# Principals and role policies
# =============================================================================

@dataclass
class Principal:
    """The authenticated user issuing a request, with their credit balances."""
    user_id: str
    email: str = ""
    role: str = "free"
    name: Optional[str] = None
    total_tokens: int = 0
    used_tokens: int = 0
    remaining_tokens: int = 0


@dataclass(frozen=True)
class RolePolicy:
    """Entitlements for one role."""
    features: frozenset
    pro_model: bool = False
    unlimited_tokens: bool = False


ROLE_POLICIES = {
    "admin": RolePolicy(
        features=frozenset({"search", "qa", "consultant"}),
        pro_model=True,
        unlimited_tokens=True,
    ),
    "vip": RolePolicy(
        features=frozenset({"search", "qa", "consultant"}),
        pro_model=True,
    ),
    "pay": RolePolicy(
        features=frozenset({"search", "qa", "consultant"}),
    ),
    "free": RolePolicy(
        features=frozenset({"search", "qa"}),
    ),
}


class TokenAccountant:
    """
    Estimates, gates and debits token usage.

    Usage:
        accountant = TokenAccountant(vector_store)

        # At the boundary, before any model call
        estimate = accountant.authorize(principal, "qa", question)

        # After the pipeline succeeded
        remaining = await accountant.debit(principal, "qa", usage)
    """

    def __init__(self, vector_store=None, config: Optional[PipelineConfig] = None):
        """
        Initialize the accountant.

        Args:
            vector_store: VectorStore providing run_in_transaction()
            config: Pipeline configuration (per-feature overheads and caps)
        """
        self.store = vector_store
        self.config = config or PipelineConfig()

    def get_policy(self, role: str) -> RolePolicy:
        """Policy for a role; unknown roles get the free policy."""
        return ROLE_POLICIES.get(role, ROLE_POLICIES["free"])

    # -------------------------------------------------------------------------
    # Estimation and pre-checks (never touch storage, never call a model)
    # -------------------------------------------------------------------------

    def estimate(self, text: str, feature: str) -> TokenEstimate:
        overhead = self.config.feature(feature).base_overhead_tokens
        return TokenEstimate(count_tokens(text, self.config.chars_per_token) + overhead)

    def has_sufficient_balance(self, principal: Principal, estimate: TokenEstimate) -> bool:
        if self.get_policy(principal.role).unlimited_tokens:
            return True
        return principal.remaining_tokens >= estimate.tokens

    def check_feature_access(self, principal: Principal, feature: str) -> None:
        if feature not in self.get_policy(principal.role).features:
            raise AccessDenied(
                f"Role {principal.role!r} has no access to {feature!r}",
                feature=feature,
                role=principal.role,
                user_message=(
                    MESSAGES["consultant_access_denied"] if feature == "consultant"
                    else MESSAGES["access_denied"]
                ),
            )

    def check_pro_model_access(self, principal: Principal) -> None:
        if not self.get_policy(principal.role).pro_model:
            raise AccessDenied(
                f"Role {principal.role!r} cannot use the pro model",
                feature="pro_model",
                role=principal.role,
                user_message=MESSAGES["pro_model_denied"],
            )

    def validate_input(self, text: Optional[str], feature: str) -> str:
        """Return the trimmed input or raise ValidationError."""
        label = INPUT_LABELS.get(feature, "輸入")
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValidationError(
                f"Empty input for {feature}",
                user_message=MESSAGES["input_required"].format(label=label),
            )
        limit = self.config.feature(feature).max_input_chars
        if len(cleaned) > limit:
            raise ValidationError(
                f"Input of {len(cleaned)} chars exceeds {limit} for {feature}",
                user_message=MESSAGES["input_too_long"].format(label=label, limit=limit),
            )
        return cleaned

    def authorize(
        self,
        principal: Principal,
        feature: str,
        text: Optional[str],
        use_pro_model: bool = False,
    ) -> TokenEstimate:
        """
        Run every boundary pre-condition for a request.

        Returns:
            The token estimate that passed the balance pre-check

        Raises:
            AccessDenied: feature or pro-model entitlement missing
            ValidationError: empty or oversized input
            InsufficientTokens: estimate exceeds the remaining balance
        """
        self.check_feature_access(principal, feature)
        cleaned = self.validate_input(text, feature)
        if use_pro_model:
            self.check_pro_model_access(principal)

        estimate = self.estimate(cleaned, feature)
        if not self.has_sufficient_balance(principal, estimate):
            raise InsufficientTokens(
                f"Estimated {estimate.tokens} tokens, {principal.remaining_tokens} remaining",
                required=estimate.tokens,
                remaining=principal.remaining_tokens,
            )
        return estimate

    # -------------------------------------------------------------------------
    # Storage-backed operations
    # -------------------------------------------------------------------------

    async def debit(
        self,
        principal: Principal,
        feature: str,
        usage: TokenUsage,
        model: Optional[str] = None,
    ) -> int:
        """
        Debit actual usage and append a ledger entry atomically.

        Returns:
            The principal's new remaining balance

        Raises:
            AccountNotFound: the principal has no credit record (nothing written)
            PersistenceError: the transaction failed
        """
        tokens = usage.total
        if tokens < 0:
            raise ValueError(f"Cannot debit a negative amount ({tokens})")

        def _op(cur):
            cur.execute(
                """
                UPDATE user_credits
                SET used_tokens = used_tokens + %s,
                    remaining_tokens = remaining_tokens - %s,
                    updated_at = NOW()
                WHERE user_id = %s
                RETURNING used_tokens, remaining_tokens
                """,
                (tokens, tokens, principal.user_id),
            )
            row = cur.fetchone()
            if not row:
                raise AccountNotFound(principal.user_id)
            cur.execute(
                """
                INSERT INTO token_usage (user_id, feature_type, tokens_used, model_used)
                VALUES (%s, %s, %s, %s)
                """,
                (principal.user_id, feature, tokens, model),
            )
            if isinstance(row, dict):
                return row["used_tokens"], row["remaining_tokens"]
            return row[0], row[1]

        used, remaining = await asyncio.to_thread(self.store.run_in_transaction, _op, "debit_tokens")

        principal.used_tokens = used
        principal.remaining_tokens = remaining
        if usage.estimated:
            logger.info(
                f"Debited {tokens} tokens from {principal.user_id} for {feature} "
                f"({usage.estimated} estimated where provider omitted usage)"
            )
        else:
            logger.info(f"Debited {tokens} tokens from {principal.user_id} for {feature}")

        if remaining < 0 and not self.get_policy(principal.role).unlimited_tokens:
            logger.warning(f"Balance for {principal.user_id} is negative after debit: {remaining}")
        return remaining

    async def get_principal(
        self,
        user_id: str,
        email: str = "",
        role: Optional[str] = None,
    ) -> Optional[Principal]:
        """
        Load a principal's role and balances.

        Returns None when the user does not exist. A user without a credit
        record is returned with zero balances.
        """
        def _op(cur):
            cur.execute(
                """
                SELECT u.id, u.email, u.name, u.role,
                       c.total_tokens, c.used_tokens, c.remaining_tokens
                FROM users u
                LEFT JOIN user_credits c ON c.user_id = u.id
                WHERE u.id = %s
                """,
                (user_id,),
            )
            return cur.fetchone()

        row = await asyncio.to_thread(self.store.run_in_transaction, _op, "get_principal")
        if not row:
            return None
        if not isinstance(row, dict):
            row = dict(zip(
                ("id", "email", "name", "role", "total_tokens", "used_tokens", "remaining_tokens"),
                row,
            ))
        return Principal(
            user_id=str(row["id"]),
            email=row.get("email") or email,
            role=row.get("role") or role or "free",
            name=row.get("name"),
            total_tokens=row.get("total_tokens") or 0,
            used_tokens=row.get("used_tokens") or 0,
            remaining_tokens=row.get("remaining_tokens") or 0,
        )


# Global accountant instance
_accountant = None


def get_token_accountant(vector_store=None, config: Optional[PipelineConfig] = None) -> TokenAccountant:
    """Get the global token accountant instance."""
    global _accountant
    if _accountant is None:
        _accountant = TokenAccountant(vector_store, config)
    elif vector_store and _accountant.store is None:
        _accountant.store = vector_store
    return _accountant
