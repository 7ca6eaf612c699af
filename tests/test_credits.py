"""
Tests for execution/legal_kb/credits.py

Covers: token counting heuristic, TokenEstimate/TokenUsage typing,
        role policies, boundary authorization order and messages,
        atomic debit with ledger entry, and principal loading.

All storage calls are mocked -- no PostgreSQL required.
"""

import asyncio
import math
from unittest.mock import MagicMock

import pytest


# ---------------------------------------------------------------------------
# count_tokens
# ---------------------------------------------------------------------------

class TestCountTokens:
    """Tests for the chars-per-token heuristic."""

    def test_empty_text_is_zero(self):
        from execution.legal_kb.credits import count_tokens
        assert count_tokens("") == 0
        assert count_tokens(None) == 0

    def test_rounds_up(self):
        from execution.legal_kb.credits import count_tokens
        assert count_tokens("abcde") == 2
        assert count_tokens("abcd") == 1

    def test_custom_ratio(self):
        from execution.legal_kb.credits import count_tokens
        assert count_tokens("abcdef", chars_per_token=3) == 2


# ---------------------------------------------------------------------------
# TokenUsage / TokenEstimate
# ---------------------------------------------------------------------------

class TestTokenUsage:
    """Reported and estimated usage are tracked separately and only add to each other."""

    def test_from_provider_reported(self):
        from execution.legal_kb.credits import TokenUsage
        usage = TokenUsage.from_provider(42, "ignored text")
        assert usage.reported == 42
        assert usage.estimated == 0
        assert usage.total == 42

    def test_from_provider_missing_usage_is_estimated(self):
        from execution.legal_kb.credits import TokenUsage
        usage = TokenUsage.from_provider(None, "a" * 10)
        assert usage.reported == 0
        assert usage.estimated == 3
        assert usage.total == 3

    def test_reported_zero_is_not_replaced(self):
        from execution.legal_kb.credits import TokenUsage
        usage = TokenUsage.from_provider(0, "a" * 100)
        assert usage.total == 0

    def test_addition(self):
        from execution.legal_kb.credits import TokenUsage
        total = TokenUsage(reported=10) + TokenUsage(estimated=5) + TokenUsage(reported=1, estimated=1)
        assert total == TokenUsage(reported=11, estimated=6)
        assert total.total == 17

    def test_sum_with_start(self):
        from execution.legal_kb.credits import TokenUsage
        parts = [TokenUsage(reported=3), TokenUsage(reported=4)]
        assert sum(parts, TokenUsage()).total == 7

    def test_adding_int_raises(self):
        from execution.legal_kb.credits import TokenUsage
        with pytest.raises(TypeError):
            TokenUsage(reported=1) + 5

    def test_adding_estimate_raises(self):
        from execution.legal_kb.credits import TokenEstimate, TokenUsage
        with pytest.raises(TypeError):
            TokenUsage(reported=1) + TokenEstimate(5)

    def test_scaled(self):
        from execution.legal_kb.credits import TokenUsage
        scaled = TokenUsage(reported=30, estimated=2).scaled(10)
        assert scaled == TokenUsage(reported=300, estimated=20)


# ---------------------------------------------------------------------------
# Role policies
# ---------------------------------------------------------------------------

class TestRolePolicies:
    """Feature and pro-model entitlements per role."""

    def test_free_has_no_consultant(self):
        from execution.legal_kb.credits import ROLE_POLICIES
        assert "consultant" not in ROLE_POLICIES["free"].features
        assert {"search", "qa"} <= ROLE_POLICIES["free"].features

    def test_pro_model_roles(self):
        from execution.legal_kb.credits import ROLE_POLICIES
        assert ROLE_POLICIES["admin"].pro_model
        assert ROLE_POLICIES["vip"].pro_model
        assert not ROLE_POLICIES["pay"].pro_model
        assert not ROLE_POLICIES["free"].pro_model

    def test_only_admin_is_unlimited(self):
        from execution.legal_kb.credits import ROLE_POLICIES
        unlimited = {role for role, p in ROLE_POLICIES.items() if p.unlimited_tokens}
        assert unlimited == {"admin"}

    def test_unknown_role_gets_free_policy(self):
        from execution.legal_kb.credits import ROLE_POLICIES, TokenAccountant
        assert TokenAccountant().get_policy("guest") == ROLE_POLICIES["free"]


# ---------------------------------------------------------------------------
# Estimation and authorization
# ---------------------------------------------------------------------------

class TestAuthorize:
    """Boundary pre-conditions, checked before any model call."""

    def test_estimate_adds_feature_overhead(self):
        from execution.legal_kb.credits import TokenAccountant
        accountant = TokenAccountant()
        text = "謀殺罪的最高刑罰"
        assert accountant.estimate(text, "search").tokens == math.ceil(len(text) / 4) + 1000
        assert accountant.estimate(text, "qa").tokens == math.ceil(len(text) / 4) + 10000
        assert accountant.estimate(text, "consultant").tokens == math.ceil(len(text) / 4) + 5000

    def test_free_role_denied_consultant(self, free_principal):
        from execution.legal_kb.credits import TokenAccountant
        from execution.legal_kb.errors import AccessDenied
        with pytest.raises(AccessDenied) as exc_info:
            TokenAccountant().authorize(free_principal, "consultant", "你好")
        assert exc_info.value.user_message == "存取遭拒 - 顧問功能需要付費訂閱"
        assert exc_info.value.feature == "consultant"
        assert exc_info.value.role == "free"

    def test_access_checked_before_validation(self, free_principal):
        from execution.legal_kb.credits import TokenAccountant
        from execution.legal_kb.errors import AccessDenied
        with pytest.raises(AccessDenied):
            TokenAccountant().authorize(free_principal, "consultant", "")

    def test_empty_input_rejected(self, pay_principal):
        from execution.legal_kb.credits import TokenAccountant
        from execution.legal_kb.errors import ValidationError
        with pytest.raises(ValidationError) as exc_info:
            TokenAccountant().authorize(pay_principal, "qa", "   ")
        assert exc_info.value.user_message == "問題是必需的"

    def test_none_input_rejected(self, pay_principal):
        from execution.legal_kb.credits import TokenAccountant
        from execution.legal_kb.errors import ValidationError
        with pytest.raises(ValidationError) as exc_info:
            TokenAccountant().authorize(pay_principal, "search", None)
        assert exc_info.value.user_message == "查詢是必需的"

    def test_oversized_input_rejected(self, pay_principal):
        from execution.legal_kb.credits import TokenAccountant
        from execution.legal_kb.errors import ValidationError
        with pytest.raises(ValidationError) as exc_info:
            TokenAccountant().authorize(pay_principal, "search", "法" * 1001)
        assert exc_info.value.user_message == "查詢太長 (最多 1000 個字元)"
        assert exc_info.value.status_code == 400

    def test_input_at_cap_accepted(self, pay_principal):
        from execution.legal_kb.credits import TokenAccountant
        estimate = TokenAccountant().authorize(pay_principal, "search", "法" * 1000)
        assert estimate.tokens == 250 + 1000

    def test_pro_model_denied_for_pay(self, pay_principal):
        from execution.legal_kb.credits import TokenAccountant
        from execution.legal_kb.errors import AccessDenied
        with pytest.raises(AccessDenied) as exc_info:
            TokenAccountant().authorize(pay_principal, "consultant", "你好", use_pro_model=True)
        assert exc_info.value.user_message == "Pro 模型存取需要 VIP 訂閱"

    def test_pro_model_allowed_for_vip(self, vip_principal):
        from execution.legal_kb.credits import TokenAccountant
        estimate = TokenAccountant().authorize(vip_principal, "consultant", "你好", use_pro_model=True)
        assert estimate.tokens == 5001

    def test_insufficient_balance(self, pay_principal):
        from execution.legal_kb.credits import TokenAccountant
        from execution.legal_kb.errors import InsufficientTokens
        pay_principal.remaining_tokens = 500
        with pytest.raises(InsufficientTokens) as exc_info:
            TokenAccountant().authorize(pay_principal, "qa", "問題")
        assert exc_info.value.required == 10001
        assert exc_info.value.remaining == 500
        assert exc_info.value.status_code == 402
        assert exc_info.value.user_message == "代幣不足"

    def test_admin_bypasses_balance(self, admin_principal):
        from execution.legal_kb.credits import TokenAccountant
        assert admin_principal.remaining_tokens == 0
        estimate = TokenAccountant().authorize(admin_principal, "qa", "問題", use_pro_model=True)
        assert estimate.tokens == 10001

    def test_exact_balance_is_sufficient(self, pay_principal):
        from execution.legal_kb.credits import TokenAccountant, TokenEstimate
        pay_principal.remaining_tokens = 1001
        assert TokenAccountant().has_sufficient_balance(pay_principal, TokenEstimate(1001))
        assert not TokenAccountant().has_sufficient_balance(pay_principal, TokenEstimate(1002))


# ---------------------------------------------------------------------------
# Debit
# ---------------------------------------------------------------------------

class _CreditsCursor:
    """Cursor that applies the debit UPDATE to an in-memory balance."""

    def __init__(self, used=0, remaining=10_000):
        self.used = used
        self.remaining = remaining
        self.ledger = []
        self._row = None

    def execute(self, sql, params):
        if "UPDATE user_credits" in sql:
            tokens = params[0]
            self.used += tokens
            self.remaining -= tokens
            self._row = {"used_tokens": self.used, "remaining_tokens": self.remaining}
        elif "INSERT INTO token_usage" in sql:
            self.ledger.append(params)

    def fetchone(self):
        return self._row


class TestDebit:
    """Atomic debit plus ledger append."""

    def test_debit_updates_principal_and_ledger(self, mock_store, mock_cursor, pay_principal):
        from execution.legal_kb.credits import TokenAccountant, TokenUsage
        mock_cursor.fetchone.return_value = {"used_tokens": 150, "remaining_tokens": 850}
        accountant = TokenAccountant(mock_store)

        remaining = asyncio.run(
            accountant.debit(pay_principal, "qa", TokenUsage(reported=140, estimated=10), model="flash")
        )

        assert remaining == 850
        assert pay_principal.used_tokens == 150
        assert pay_principal.remaining_tokens == 850
        assert mock_cursor.execute.call_count == 2
        ledger_params = mock_cursor.execute.call_args_list[1][0][1]
        assert ledger_params == (pay_principal.user_id, "qa", 150, "flash")
        mock_store.run_in_transaction.assert_called_once()

    def test_missing_credit_record_raises_without_ledger(self, mock_store, mock_cursor, pay_principal):
        from execution.legal_kb.credits import TokenAccountant, TokenUsage
        from execution.legal_kb.errors import AccountNotFound
        mock_cursor.fetchone.return_value = None

        with pytest.raises(AccountNotFound) as exc_info:
            asyncio.run(TokenAccountant(mock_store).debit(pay_principal, "search", TokenUsage(reported=5)))

        assert exc_info.value.user_id == pay_principal.user_id
        assert mock_cursor.execute.call_count == 1
        assert "INSERT INTO token_usage" not in mock_cursor.execute.call_args[0][0]

    def test_tuple_rows_supported(self, mock_store, mock_cursor, pay_principal):
        from execution.legal_kb.credits import TokenAccountant, TokenUsage
        mock_cursor.fetchone.return_value = (20, 980)
        remaining = asyncio.run(
            TokenAccountant(mock_store).debit(pay_principal, "search", TokenUsage(reported=20))
        )
        assert remaining == 980

    def test_negative_usage_rejected(self, mock_store, pay_principal):
        from execution.legal_kb.credits import TokenAccountant, TokenUsage
        with pytest.raises(ValueError):
            asyncio.run(TokenAccountant(mock_store).debit(pay_principal, "qa", TokenUsage(reported=-1)))
        mock_store.run_in_transaction.assert_not_called()

    def test_balance_monotonic_over_debits(self, pay_principal):
        from execution.legal_kb.credits import TokenAccountant, TokenUsage
        cursor = _CreditsCursor(used=0, remaining=1_000)
        store = MagicMock()
        store.run_in_transaction.side_effect = lambda fn, label="transaction": fn(cursor)
        accountant = TokenAccountant(store)

        history = []
        for tokens in (100, 0, 250, 900):
            asyncio.run(accountant.debit(pay_principal, "search", TokenUsage(reported=tokens)))
            history.append((pay_principal.used_tokens, pay_principal.remaining_tokens))

        useds = [u for u, _ in history]
        remainings = [r for _, r in history]
        assert useds == sorted(useds)
        assert remainings == sorted(remainings, reverse=True)
        # Overdraft is recorded, not rejected
        assert remainings[-1] == -250
        assert len(cursor.ledger) == 4


# ---------------------------------------------------------------------------
# get_principal
# ---------------------------------------------------------------------------

class TestGetPrincipal:

    def test_loads_balances(self, mock_store, mock_cursor):
        from execution.legal_kb.credits import TokenAccountant
        mock_cursor.fetchone.return_value = {
            "id": "u-1", "email": "a@example.com", "name": "A", "role": "vip",
            "total_tokens": 1000, "used_tokens": 100, "remaining_tokens": 900,
        }
        principal = asyncio.run(TokenAccountant(mock_store).get_principal("u-1"))
        assert principal.role == "vip"
        assert principal.remaining_tokens == 900
        assert principal.name == "A"

    def test_missing_credit_record_gives_zero_balances(self, mock_store, mock_cursor):
        from execution.legal_kb.credits import TokenAccountant
        mock_cursor.fetchone.return_value = {
            "id": "u-1", "email": "a@example.com", "name": None, "role": "free",
            "total_tokens": None, "used_tokens": None, "remaining_tokens": None,
        }
        principal = asyncio.run(TokenAccountant(mock_store).get_principal("u-1"))
        assert principal.remaining_tokens == 0

    def test_unknown_user(self, mock_store, mock_cursor):
        from execution.legal_kb.credits import TokenAccountant
        mock_cursor.fetchone.return_value = None
        assert asyncio.run(TokenAccountant(mock_store).get_principal("nobody")) is None


class TestAccountantSingleton:

    def test_same_instance(self, mock_store):
        from execution.legal_kb.credits import get_token_accountant
        a = get_token_accountant(mock_store)
        b = get_token_accountant()
        assert a is b
        assert a.store is mock_store
