"""
Consultant Orchestrator

Multi-turn legal consultation driven by model tool calls. Each turn walks a
small state machine:

    AWAITING_MODEL_TURN -> (TOOL_CALL_REQUESTED -> TOOL_EXECUTING
                            -> AWAITING_MODEL_TURN)* -> DONE | FAILED

The model decides when to search the knowledge base, possibly several times,
before it answers. The number of tool rounds is bounded; a model that keeps
requesting tools fails the turn instead of looping.

Usage:
    orchestrator = ConsultantOrchestrator(llm, retriever, accountant, conversations)
    turn = await orchestrator.run(principal, "我被公司無故解僱怎麼辦?", history, reporter)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from .citation import format_chunks_markdown
from .config import PipelineConfig
from .conversations import ChatMessage, ConversationStore, SaveOutcome
from .credits import Principal, TokenAccountant, TokenUsage
from .errors import EmptyResponseError, LegalKBError, ToolLoopExceeded
from .llm import GenerationResult, LLMClient, ToolCall
from .metrics import MetricsCollector, get_metrics_collector
from .prompts import (
    CONVERSATION_TITLE,
    LLM_PROMPTS,
    MESSAGES,
    NARRATIVE_SEPARATOR,
    SEARCH_TOOL,
    SEARCH_TOOL_NAME,
    STEPS,
)
from .retriever import VectorRetriever
from .streaming import ProgressReporter

logger = logging.getLogger(__name__)


def _input_text(messages: list[dict]) -> str:
    return "\n".join(m.get("content") or "" for m in messages)


class TurnState(str, Enum):
    AWAITING_MODEL_TURN = "awaiting_model_turn"
    TOOL_CALL_REQUESTED = "tool_call_requested"
    TOOL_EXECUTING = "tool_executing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ConsultantTurn:
    """Outcome of one consultant turn."""
    state: TurnState = TurnState.AWAITING_MODEL_TURN
    answer: str = ""
    tokens_used: int = 0
    remaining_tokens: int = 0
    conversation_id: Optional[str] = None
    save_outcome: Optional[SaveOutcome] = None
    documents_ids: list[int] = field(default_factory=list)
    tool_iterations: int = 0
    error: Optional[LegalKBError] = None


class ConsultantOrchestrator:
    """Runs consultant turns. Holds no per-turn state between calls."""

    def __init__(
        self,
        llm: LLMClient,
        retriever: VectorRetriever,
        accountant: TokenAccountant,
        conversations: ConversationStore,
        config: Optional[PipelineConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.llm = llm
        self.retriever = retriever
        self.accountant = accountant
        self.conversations = conversations
        self.config = config or PipelineConfig()
        self.metrics = metrics or get_metrics_collector()

    def final_cost(
        self,
        generation: TokenUsage,
        retrieval: TokenUsage,
        use_pro_model: bool,
    ) -> TokenUsage:
        """Billable usage of a turn after the pro-tier multiplier."""
        if not use_pro_model:
            return generation + retrieval
        factor = self.config.pro_model_multiplier
        if self.config.pro_multiplier_scope == "generation":
            return generation.scaled(factor) + retrieval
        return (generation + retrieval).scaled(factor)

    async def _call_model(self, messages: list[dict], model: str) -> GenerationResult:
        return await self.llm.generate(
            messages,
            model=model,
            system_instruction=LLM_PROMPTS["consultant_system"],
            tools=[SEARCH_TOOL],
            tool_choice="auto",
        )

    async def _execute_search(
        self,
        call: ToolCall,
        reporter: ProgressReporter,
        turn: ConsultantTurn,
    ) -> tuple[str, TokenUsage]:
        """Run one searchLegalKnowledgeBase call. Returns (tool result, embedding usage)."""
        keywords = str(call.arguments.get("keywords") or "").strip()
        if not keywords:
            logger.warning(f"Tool call {call.id} has no keywords; returning empty result")
            reporter.step(STEPS["no_results_warning"])
            return "", TokenUsage()

        reporter.step(STEPS["embedding"])
        embedding = await self.retriever.embed(keywords)

        reporter.step(STEPS["searching"])
        limit = self.config.feature("consultant").retrieval_limit
        chunks = await self.retriever.retrieve(embedding.vector, limit)

        if not chunks:
            logger.warning(f"No knowledge-base results for tool keywords: {keywords!r}")
            reporter.step(STEPS["no_results_warning"])
            return "", embedding.usage

        for chunk in chunks:
            if chunk.id not in turn.documents_ids:
                turn.documents_ids.append(chunk.id)
        return format_chunks_markdown(chunks), embedding.usage

    async def run(
        self,
        principal: Principal,
        message: str,
        history: list[ChatMessage],
        reporter: ProgressReporter,
        *,
        conversation_id: Optional[str] = None,
        use_pro_model: bool = False,
        max_tool_iterations: Optional[int] = None,
    ) -> ConsultantTurn:
        """
        Run one consultant turn, streaming progress through ``reporter``.

        Boundary checks (access, validation, balance) are the caller's job and
        must have passed before this is called. Failures never raise: they end
        the turn in FAILED with exactly one error event.

        Args:
            principal: Authenticated caller
            message: The new user message
            history: Prior messages supplied by the client
            reporter: Event channel for this request
            conversation_id: Existing conversation to append to, if any
            use_pro_model: Use the pro tier (cost multiplied)
            max_tool_iterations: Tool-round bound (at least 1); defaults to configuration

        Returns:
            ConsultantTurn in state DONE or FAILED

        Raises:
            ValueError: max_tool_iterations is below 1
        """
        if max_tool_iterations is None:
            max_tool_iterations = self.config.max_tool_iterations
        if max_tool_iterations < 1:
            raise ValueError(f"max_tool_iterations must be at least 1, got {max_tool_iterations}")
        max_iterations = max_tool_iterations
        model = self.config.models.model_for_tier(use_pro_model)
        model_tier = "pro" if use_pro_model else "flash"
        turn = ConsultantTurn(conversation_id=conversation_id)

        with self.metrics.track_run("consultant", principal.user_id) as tracker:
            try:
                await self._run_turn(
                    principal, message, history, reporter, turn,
                    model=model, model_tier=model_tier,
                    use_pro_model=use_pro_model, max_iterations=max_iterations,
                )
            except LegalKBError as e:
                logger.error(f"Consultant turn failed for {principal.user_id}: {type(e).__name__}: {e}")
                turn.state = TurnState.FAILED
                turn.error = e
                tracker.fail(type(e).__name__)
                reporter.error(
                    e.user_message if isinstance(e, ToolLoopExceeded) else MESSAGES["ai_failed"]
                )
            except Exception as e:
                logger.error(f"Unexpected consultant error for {principal.user_id}: {type(e).__name__}: {e}")
                turn.state = TurnState.FAILED
                turn.error = LegalKBError(str(e), user_message=MESSAGES["ai_failed"])
                tracker.fail(type(e).__name__)
                reporter.error(MESSAGES["ai_failed"])
            tracker.set_results(len(turn.documents_ids), turn.tokens_used, turn.tool_iterations)

        return turn

    async def _run_turn(
        self,
        principal: Principal,
        message: str,
        history: list[ChatMessage],
        reporter: ProgressReporter,
        turn: ConsultantTurn,
        *,
        model: str,
        model_tier: str,
        use_pro_model: bool,
        max_iterations: int,
    ) -> None:
        cpt = self.config.chars_per_token
        reporter.step(STEPS["processing_input"])

        conversation = list(history)
        user_message = ChatMessage(role="user", content=message)
        conversation.append(user_message)
        messages = [m.to_model_message() for m in conversation]

        generation = TokenUsage()
        retrieval = TokenUsage()

        reporter.step(STEPS["generating_response"])
        turn.state = TurnState.AWAITING_MODEL_TURN
        response = await self._call_model(messages, model)
        generation += TokenUsage.from_provider(response.total_tokens, _input_text(messages), cpt)

        while response.tool_calls:
            if turn.tool_iterations >= max_iterations:
                raise ToolLoopExceeded(max_iterations)
            turn.tool_iterations += 1
            turn.state = TurnState.TOOL_CALL_REQUESTED

            if response.text:
                reporter.chunk(response.text + NARRATIVE_SEPARATOR, kind="response_chunk")

            reporter.step(STEPS["processing_tool_calls"])
            turn.state = TurnState.TOOL_EXECUTING

            tool_messages = []
            for call in response.tool_calls:
                if call.name == SEARCH_TOOL_NAME:
                    result, usage = await self._execute_search(call, reporter, turn)
                    retrieval += usage
                else:
                    logger.warning(f"Model requested unknown tool {call.name!r}; returning empty result")
                    result = ""
                tool_messages.append({"role": "tool", "tool_call_id": call.id, "content": result})

            messages.append(response.assistant_message)
            messages.extend(tool_messages)

            reporter.step(STEPS["generating_response"])
            turn.state = TurnState.AWAITING_MODEL_TURN
            response = await self._call_model(messages, model)
            generation += TokenUsage.from_provider(response.total_tokens, _input_text(messages), cpt)

        answer = response.text or ""
        if not answer.strip():
            raise EmptyResponseError("Consultant model returned no answer text")
        reporter.chunk(answer, kind="response_chunk")
        turn.answer = answer

        cost = self.final_cost(generation, retrieval, use_pro_model)
        turn.tokens_used = cost.total
        turn.remaining_tokens = await self.accountant.debit(
            principal, "consultant", cost, model=model_tier,
        )

        # Replay orders by timestamp; the reply must sort after the question
        reply_time = max(datetime.now(timezone.utc), user_message.timestamp + timedelta(microseconds=1))
        conversation.append(ChatMessage(
            role="assistant",
            content=answer,
            documents_ids=list(turn.documents_ids),
            tokens_used=turn.tokens_used,
            timestamp=reply_time,
        ))

        title = CONVERSATION_TITLE.format(excerpt=message[:50]) if len(conversation) == 2 else None
        outcome = await self.conversations.save_turn(
            principal, turn.conversation_id, conversation,
            title=title, total_tokens=turn.tokens_used, model_tier=model_tier,
        )
        if not outcome.durable:
            logger.warning(f"Conversation not persisted, using placeholder id {outcome.conversation_id}")
        turn.save_outcome = outcome
        turn.conversation_id = outcome.conversation_id

        turn.state = TurnState.DONE
        reporter.completion(turn.tokens_used, turn.remaining_tokens, turn.conversation_id)
        logger.info(
            f"Consultant turn done for {principal.user_id}: {turn.tool_iterations} tool rounds, "
            f"{len(turn.documents_ids)} documents, {turn.tokens_used} tokens"
        )
