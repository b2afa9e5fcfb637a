from typing import Dict, List, Any, Optional, Callable, Set, Tuple
import structlog

from threadloom.domain.errors import CompactionError
from threadloom.domain.models.messages import Message, system_message, user_message, assistant_message
from threadloom.domain.models.results import Usage
from threadloom.domain.models.compaction import (
    CompactionStrategy, CompactionTrigger, CompactionResult, ContextManagerConfig, PinnedMessage
)
from threadloom.domain.orchestration.model import ModelInvoker
from threadloom.infrastructure.observability.logging import agent_logger
from .token_counter import TokenCounter, TokenBudget, ApproximateTokenCounter
from .compaction_scheduler import CompactionScheduler
from .prompts import (
    DEFAULT_SUMMARY_PROMPT, STRUCTURED_SUMMARY_PROMPT, TIERED_SUMMARY_PROMPT,
    StructuredSummary, summary_header, is_summary_message, summary_tier_of,
    format_messages_for_summary, parse_structured_summary, format_structured_summary
)

logger = structlog.get_logger(__name__)


class ContextManager:
    """Keeps a conversation inside the token budget by summarizing older history.

    The manager never touches a store: it receives a message list and a model,
    and hands back a new list. Pins are scoped to this instance and refer to
    positions in the caller's current message list.
    """

    def __init__(
        self,
        config: Optional[ContextManagerConfig] = None,
        token_counter: Optional[TokenCounter] = None,
        on_compact: Optional[Callable[[CompactionResult], None]] = None,
        on_budget_update: Optional[Callable[[TokenBudget], None]] = None
    ):
        self.config = config or ContextManagerConfig()
        self.token_counter = token_counter or ApproximateTokenCounter()
        self.on_compact = on_compact
        self.on_budget_update = on_budget_update
        self.pinned_messages: List[PinnedMessage] = []
        self.last_actual_usage: Optional[Usage] = None
        self.thread_id: Optional[str] = None

        self.scheduler: Optional[CompactionScheduler] = None
        if self.config.scheduler.enable_background_compaction:
            self.scheduler = CompactionScheduler(self, self.config.scheduler)

    @property
    def max_tokens(self) -> int:
        return self.config.max_tokens

    @property
    def policy(self):
        return self.config.policy

    @property
    def summarization(self):
        return self.config.summarization

    # Budget

    def get_budget(self, messages: List[Message]) -> TokenBudget:
        """Current usage; prefers the last usage reported by the model over the estimate"""

        if self.last_actual_usage is not None and self.last_actual_usage.total_tokens is not None:
            budget = TokenBudget.create(self.max_tokens, self.last_actual_usage.total_tokens, is_actual=True)
        else:
            budget = TokenBudget.create(self.max_tokens, self.token_counter.count_messages(messages))

        if self.on_budget_update:
            self.on_budget_update(budget)
        return budget

    def update_usage(self, usage: Usage) -> None:
        if usage.total_tokens is not None:
            self.last_actual_usage = usage

    def should_compact(self, messages: List[Message]) -> Tuple[bool, Optional[CompactionTrigger]]:
        if not self.policy.enabled:
            return False, None

        budget = self.get_budget(messages)

        if budget.usage >= self.policy.hard_cap_threshold:
            return True, CompactionTrigger.HARD_CAP

        if budget.usage >= self.policy.token_threshold:
            return True, CompactionTrigger.TOKEN_THRESHOLD

        if self.policy.enable_growth_rate_prediction and len(messages) >= 2:
            last_tokens = self.token_counter.count_messages(messages[-1:])
            average = budget.current_tokens / len(messages)
            if last_tokens > average * 2:
                predicted = (budget.current_tokens + last_tokens) / self.max_tokens
                if predicted >= self.policy.token_threshold:
                    return True, CompactionTrigger.GROWTH_RATE

        return False, None

    def should_force_compact(self, messages: List[Message]) -> bool:
        """Mid-turn check: only the hard cap forces compaction"""
        if not self.policy.enabled:
            return False
        return self.get_budget(messages).usage >= self.policy.hard_cap_threshold

    # Pins

    def pin_message(self, message_index: int, reason: str) -> None:
        if self.is_pinned(message_index):
            return
        self.pinned_messages.append(PinnedMessage(message_index=message_index, reason=reason))

    def unpin_message(self, message_index: int) -> None:
        self.pinned_messages = [p for p in self.pinned_messages if p.message_index != message_index]

    def is_pinned(self, message_index: int) -> bool:
        return any(p.message_index == message_index for p in self.pinned_messages)

    # Compaction

    def _retained_indices(self, messages: List[Message]) -> Tuple[List[int], Set[int]]:
        """Split non-system positions into (tail, preserved older positions)"""

        non_system = [i for i, m in enumerate(messages) if m.role != "system"]
        keep = self.summarization.keep_message_count

        cut = max(0, len(non_system) - keep)
        # The tail must not open on a tool result whose call would be summarized away
        while 0 < cut < len(non_system) and messages[non_system[cut]].role == "tool":
            cut -= 1

        tail = non_system[cut:]
        older = non_system[:cut]
        older_set = set(older)

        preserved: Set[int] = {p.message_index for p in self.pinned_messages if p.message_index in older_set}

        keep_results = self.summarization.keep_tool_result_count
        result_positions = [i for i in older if messages[i].is_tool_result]
        kept_results = result_positions[-keep_results:] if keep_results else []
        preserved.update(kept_results)

        # Preserved tool results drag the assistant message that issued the call
        for i in sorted(preserved):
            if not messages[i].is_tool_result:
                continue
            call_ids = {part.tool_call_id for part in messages[i].tool_results}
            for j in range(i - 1, -1, -1):
                if j in older_set and call_ids & {c.tool_call_id for c in messages[j].tool_calls}:
                    preserved.add(j)
                    break

        return tail, preserved

    async def _summarize(self, model: ModelInvoker, prompt: str, content: str) -> str:
        response = await model.invoke(
            [system_message(prompt), user_message(content)],
            max_tokens=self.summarization.summary_max_tokens
        )
        return response.text

    async def compact(
        self,
        messages: List[Message],
        model: ModelInvoker,
        trigger: CompactionTrigger = CompactionTrigger.TOKEN_THRESHOLD,
        thread_id: Optional[str] = None
    ) -> CompactionResult:
        """Summarize everything outside the retained set.

        Raises CompactionError if the summary invocation fails; `messages` is
        never modified.
        """

        trigger = CompactionTrigger(trigger)
        config = self.summarization
        thread_id = thread_id or self.thread_id
        tokens_before = self.token_counter.count_messages(messages)

        tiered = config.strategy == CompactionStrategy.TIERED or config.enable_tiered_summaries
        structured = config.strategy == CompactionStrategy.STRUCTURED or config.enable_structured_summary
        strategy = CompactionStrategy.TIERED if tiered else (
            CompactionStrategy.STRUCTURED if structured else CompactionStrategy.ROLLUP
        )

        tail, preserved = self._retained_indices(messages)
        retained = set(tail) | preserved | {i for i, m in enumerate(messages) if m.role == "system"}
        drop = [i for i in range(len(messages)) if i not in retained]

        prior_summaries = [m for m in messages if is_summary_message(m)]
        drop_summaries = [i for i in drop if is_summary_message(messages[i])]
        consolidate = tiered and bool(drop_summaries) and len(prior_summaries) >= config.messages_per_tier

        summary_tier: Optional[int] = None
        kept_in_place: List[int] = []
        if consolidate:
            summary_tier = min(
                max(summary_tier_of(messages[i]) for i in drop_summaries) + 1,
                config.max_summary_tiers
            )
            # Raw messages between the old summaries and the tail fold into the same pass
            summarized = drop
        elif tiered:
            summary_tier = 0
            summarized = [i for i in drop if i not in set(drop_summaries)]
            kept_in_place = drop_summaries
        else:
            summarized = drop

        if not summarized:
            return CompactionResult(
                strategy=strategy,
                trigger=trigger,
                new_messages=list(messages),
                messages_before=len(messages),
                messages_after=len(messages),
                tokens_before=tokens_before,
                tokens_after=tokens_before
            )

        parsed: Optional[StructuredSummary] = None
        try:
            if consolidate:
                joined = "\n\n".join(messages[i].content for i in drop_summaries)
                content = f"Consolidate these summaries:\n\n{joined}"
                raw = [messages[i] for i in summarized if i not in set(drop_summaries)]
                if raw:
                    content += f"\n\nFold in this later conversation history:\n\n{format_messages_for_summary(raw)}"
                summary = await self._summarize(
                    model,
                    TIERED_SUMMARY_PROMPT.replace("{tier}", str(summary_tier)),
                    content
                )
            else:
                if structured:
                    prompt = STRUCTURED_SUMMARY_PROMPT
                else:
                    prompt = config.summary_prompt or DEFAULT_SUMMARY_PROMPT

                content = format_messages_for_summary([messages[i] for i in summarized])
                summary = await self._summarize(
                    model, prompt, f"Please summarize this conversation history:\n\n{content}"
                )
                if structured:
                    parsed = parse_structured_summary(summary)
        except Exception as e:
            logger.error("Summary generation failed", thread_id=thread_id, trigger=trigger.value, error=str(e))
            raise CompactionError(f"Summary generation failed: {e}", cause=e) from e

        body = format_structured_summary(parsed) if parsed else summary
        summary_msg = assistant_message(f"{summary_header(summary_tier)}\n\n{body}")

        systems = [i for i, m in enumerate(messages) if m.role == "system"]
        leading_summaries = [i for i in kept_in_place if is_summary_message(messages[i])]
        rest = sorted((set(tail) | preserved | set(kept_in_place)) - set(leading_summaries))

        order: List[Optional[int]] = systems + leading_summaries + [None] + rest
        new_messages = [summary_msg if i is None else messages[i] for i in order]

        new_positions: Dict[int, int] = {old: new for new, old in enumerate(order) if old is not None}
        self.pinned_messages = [
            p.model_copy(update={"message_index": new_positions[p.message_index]})
            for p in self.pinned_messages
            if p.message_index in new_positions
        ]
        self.last_actual_usage = None

        tokens_after = self.token_counter.count_messages(new_messages)
        result = CompactionResult(
            strategy=strategy,
            trigger=trigger,
            summary=summary,
            structured_summary=parsed.model_dump(by_alias=True) if parsed else None,
            summary_tier=summary_tier,
            new_messages=new_messages,
            compacted_messages=[messages[i] for i in summarized],
            messages_before=len(messages),
            messages_after=len(new_messages),
            tokens_before=tokens_before,
            tokens_after=tokens_after
        )

        agent_logger.log_compaction(
            thread_id=thread_id,
            reason=trigger.value,
            strategy=strategy.value,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            messages_removed=len(summarized)
        )

        if self.on_compact:
            self.on_compact(result)

        return result

    async def process(
        self,
        messages: List[Message],
        model: ModelInvoker,
        thread_id: Optional[str] = None
    ) -> List[Message]:
        """Return the messages to send, compacting first when a threshold is crossed.

        With background compaction, the thread's latest finished result is
        applied only while its snapshot is still a prefix of `messages`;
        otherwise a new compaction is scheduled and `messages` is returned as is.
        """

        should, trigger = self.should_compact(messages)
        if not should:
            return messages

        thread_id = thread_id or self.thread_id

        if self.scheduler is not None:
            latest = self.scheduler.get_latest_task(thread_id)
            if latest is not None:
                self.scheduler.forget_finished(thread_id)
                snapshot = latest.messages
                if messages[:len(snapshot)] == snapshot:
                    return latest.result.new_messages + messages[len(snapshot):]
                logger.debug("Discarded stale background compaction", thread_id=thread_id, task_id=latest.id)

            self.scheduler.schedule(messages, model, trigger, thread_id)
            return messages

        result = await self.compact(messages, model, trigger, thread_id=thread_id)
        return result.new_messages

    def get_stats(self, messages: List[Message]) -> Dict[str, Any]:
        budget = self.get_budget(messages)
        return {
            "message_count": len(messages),
            "current_tokens": budget.current_tokens,
            "max_tokens": budget.max_tokens,
            "usage": budget.usage,
            "is_actual": budget.is_actual,
            "pinned": len(self.pinned_messages),
            "summaries": sum(1 for m in messages if is_summary_message(m))
        }
