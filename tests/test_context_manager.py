import asyncio

import pytest

from threadloom.domain.context import ApproximateTokenCounter, ContextManager, parse_structured_summary
from threadloom.domain.context.prompts import format_messages_for_summary, is_summary_message
from threadloom.domain.errors import CompactionError
from threadloom.domain.models import (
    CompactionPolicy, CompactionStrategy, CompactionTrigger, ContextManagerConfig,
    SummarizationConfig, Usage
)
from threadloom.domain.models.messages import (
    ToolCallPart, ToolResultPart, assistant_message, system_message, text_of,
    tool_call_message, tool_result_message, user_message
)

from conftest import ScriptedModel, reply, roles


def _manager(**summarization) -> ContextManager:
    summarization.setdefault("keep_message_count", 2)
    summarization.setdefault("keep_tool_result_count", 0)
    return ContextManager(ContextManagerConfig(summarization=SummarizationConfig(**summarization)))


def _conversation():
    return [
        system_message("You are helpful."),
        user_message("u1"), assistant_message("a1"),
        user_message("u2"), assistant_message("a2"),
        user_message("u3"), assistant_message("a3"),
    ]


def _tool_pair(call_id: str, output: str):
    return [
        tool_call_message([ToolCallPart(tool_call_id=call_id, tool_name="read", args={"path": call_id})]),
        tool_result_message([ToolResultPart(tool_call_id=call_id, tool_name="read", output=output)]),
    ]


def test_rollup_keeps_system_and_tail() -> None:
    manager = _manager()
    model = ScriptedModel([reply("They discussed u1 and u2.")])
    messages = _conversation()

    result = asyncio.run(manager.compact(messages, model))

    assert result.compacted
    assert result.strategy == CompactionStrategy.ROLLUP
    assert result.trigger == CompactionTrigger.TOKEN_THRESHOLD
    assert [text_of(m) for m in result.new_messages] == [
        "You are helpful.",
        "[Previous conversation summary]\n\nThey discussed u1 and u2.",
        "u3",
        "a3",
    ]
    assert [text_of(m) for m in result.compacted_messages] == ["u1", "a1", "u2", "a2"]
    assert (result.messages_before, result.messages_after) == (7, 4)

    summary_call = model.calls[0]
    assert summary_call["max_tokens"] == 1000
    assert summary_call["messages"][0].role == "system"
    assert "USER: u1" in text_of(summary_call["messages"][1])

    assert len(messages) == 7


def test_pinned_messages_survive_and_are_remapped() -> None:
    manager = _manager()
    manager.pin_message(2, "user constraint")
    manager.pin_message(2, "duplicate")
    assert len(manager.pinned_messages) == 1

    result = asyncio.run(manager.compact(_conversation(), ScriptedModel([reply("summary")])))

    texts = [text_of(m) for m in result.new_messages]
    assert texts[0] == "You are helpful."
    assert is_summary_message(result.new_messages[1])
    assert texts[2:] == ["a1", "u3", "a3"]
    assert manager.pinned_messages[0].message_index == 2
    assert text_of(result.new_messages[manager.pinned_messages[0].message_index]) == "a1"

    manager.unpin_message(2)
    assert not manager.is_pinned(2)


def test_tail_never_starts_with_an_orphaned_tool_result() -> None:
    manager = _manager()
    messages = [user_message("u1"), *_tool_pair("c1", "contents"), assistant_message("done")]

    result = asyncio.run(manager.compact(messages, ScriptedModel([reply("summary")])))

    assert roles(result.new_messages) == ["assistant", "assistant", "tool", "assistant"]
    assert result.new_messages[1].tool_calls[0].tool_call_id == "c1"
    assert [text_of(m) for m in result.compacted_messages] == ["u1"]


def test_recent_tool_results_are_kept_with_their_calls() -> None:
    manager = _manager(keep_tool_result_count=1)
    messages = [
        user_message("u1"),
        *_tool_pair("c1", "first"),
        *_tool_pair("c2", "second"),
        user_message("u2"), assistant_message("a2"),
        user_message("u3"), assistant_message("a3"),
    ]

    result = asyncio.run(manager.compact(messages, ScriptedModel([reply("summary")])))

    kept_results = [m for m in result.new_messages if m.is_tool_result]
    assert [r.tool_results[0].output for r in kept_results] == ["second"]
    kept_calls = [m for m in result.new_messages if m.tool_calls]
    assert [c.tool_calls[0].tool_call_id for c in kept_calls] == ["c2"]
    assert [text_of(m) for m in result.new_messages[-2:]] == ["u3", "a3"]


def test_structured_summary_parses_fenced_json() -> None:
    manager = _manager(strategy=CompactionStrategy.STRUCTURED)
    fenced = '```json\n{"decisions": ["use postgres"], "currentState": ["migrating"]}\n```'

    result = asyncio.run(manager.compact(_conversation(), ScriptedModel([reply(fenced)])))

    assert result.strategy == CompactionStrategy.STRUCTURED
    assert result.structured_summary["decisions"] == ["use postgres"]
    assert result.structured_summary["currentState"] == ["migrating"]
    body = text_of(result.new_messages[1])
    assert "## Decisions\n- use postgres" in body
    assert "## Current State\n- migrating" in body
    assert "## Preferences" not in body


def test_structured_summary_falls_back_to_raw_text() -> None:
    manager = _manager(enable_structured_summary=True)

    result = asyncio.run(manager.compact(_conversation(), ScriptedModel([reply("plain prose summary")])))

    assert result.structured_summary is None
    assert text_of(result.new_messages[1]).endswith("plain prose summary")


def test_parse_structured_summary_rejects_non_objects() -> None:
    assert parse_structured_summary("[1, 2]") is None
    assert parse_structured_summary('{"decisions": "not a list"}') is None
    assert parse_structured_summary('{"references": ["docs/a.md"]}').references == ["docs/a.md"]


def test_tiered_first_pass_writes_tier_zero_and_keeps_prior_summaries() -> None:
    manager = _manager(strategy=CompactionStrategy.TIERED, messages_per_tier=5)
    earlier = assistant_message("[Previous conversation summary - Tier 0]\n\nearlier work")
    messages = [earlier, *_conversation()[1:]]

    result = asyncio.run(manager.compact(messages, ScriptedModel([reply("newer work")])))

    assert result.summary_tier == 0
    assert [text_of(m) for m in result.new_messages] == [
        "[Previous conversation summary - Tier 0]\n\nearlier work",
        "[Previous conversation summary - Tier 0]\n\nnewer work",
        "u3",
        "a3",
    ]


def test_tiered_consolidates_summaries_into_next_tier() -> None:
    manager = _manager(strategy=CompactionStrategy.TIERED, messages_per_tier=2)
    messages = [
        assistant_message("[Previous conversation summary - Tier 0]\n\nfirst"),
        assistant_message("[Previous conversation summary - Tier 0]\n\nsecond"),
        user_message("u1"), assistant_message("a1"),
        user_message("u2"), assistant_message("a2"),
    ]
    model = ScriptedModel([reply("first and second")])

    result = asyncio.run(manager.compact(messages, model))

    assert result.summary_tier == 1
    assert [text_of(m) for m in result.new_messages] == [
        "[Previous conversation summary - Tier 1]\n\nfirst and second",
        "u2", "a2",
    ]
    assert [text_of(m) for m in result.compacted_messages] == [
        "[Previous conversation summary - Tier 0]\n\nfirst",
        "[Previous conversation summary - Tier 0]\n\nsecond",
        "u1", "a1",
    ]
    assert not any(is_summary_message(m) for m in result.new_messages[1:])
    prompt = text_of(model.calls[0]["messages"][0])
    assert "Level 1" in prompt
    content = text_of(model.calls[0]["messages"][1])
    assert "Consolidate these summaries" in content
    assert "Fold in this later conversation history" in content
    assert "u1" in content and "a1" in content
    assert len(model.calls) == 1


def test_failed_summary_leaves_messages_untouched() -> None:
    manager = _manager()
    manager.pin_message(1, "keep")
    messages = _conversation()
    snapshot = list(messages)

    with pytest.raises(CompactionError) as excinfo:
        asyncio.run(manager.compact(messages, ScriptedModel([RuntimeError("provider down")])))

    assert "provider down" in excinfo.value.message
    assert messages == snapshot
    assert manager.pinned_messages[0].message_index == 1


def test_nothing_to_summarize_skips_the_model() -> None:
    manager = _manager(keep_message_count=10)
    model = ScriptedModel()

    result = asyncio.run(manager.compact(_conversation(), model, CompactionTrigger.MANUAL))

    assert not result.compacted
    assert len(result.new_messages) == 7
    assert model.calls == []


def test_thresholds_prefer_reported_usage() -> None:
    manager = ContextManager(ContextManagerConfig(max_tokens=100))
    messages = [user_message("hi")]

    assert manager.should_compact(messages) == (False, None)

    manager.update_usage(Usage(total_tokens=85))
    assert manager.get_budget(messages).is_actual
    assert manager.should_compact(messages) == (True, CompactionTrigger.TOKEN_THRESHOLD)
    assert not manager.should_force_compact(messages)

    manager.update_usage(Usage(total_tokens=96))
    assert manager.should_compact(messages) == (True, CompactionTrigger.HARD_CAP)
    assert manager.should_force_compact(messages)

    manager.update_usage(Usage(input_tokens=5))
    assert manager.last_actual_usage.total_tokens == 96


def test_estimated_budget_and_disabled_policy() -> None:
    budgets = []
    manager = ContextManager(
        ContextManagerConfig(max_tokens=100),
        on_budget_update=budgets.append
    )
    messages = [user_message("x" * 400)]

    assert manager.should_compact(messages) == (True, CompactionTrigger.HARD_CAP)
    assert budgets[-1].current_tokens == 104
    assert not budgets[-1].is_actual

    disabled = ContextManager(ContextManagerConfig(max_tokens=100, policy=CompactionPolicy(enabled=False)))
    assert disabled.should_compact(messages) == (False, None)
    assert not disabled.should_force_compact(messages)


def test_growth_rate_prediction() -> None:
    manager = ContextManager(ContextManagerConfig(
        max_tokens=1000,
        policy=CompactionPolicy(enable_growth_rate_prediction=True)
    ))
    messages = [user_message("x" * 40) for _ in range(10)] + [user_message("y" * 2400)]

    assert manager.should_compact(messages) == (True, CompactionTrigger.GROWTH_RATE)


def test_compaction_callback_and_usage_reset() -> None:
    seen = []
    manager = ContextManager(
        ContextManagerConfig(summarization=SummarizationConfig(keep_message_count=2, keep_tool_result_count=0)),
        on_compact=seen.append
    )
    manager.update_usage(Usage(total_tokens=500))

    result = asyncio.run(manager.compact(_conversation(), ScriptedModel([reply("summary")])))

    assert seen == [result]
    assert manager.last_actual_usage is None


def test_process_compacts_only_over_threshold() -> None:
    manager = ContextManager(ContextManagerConfig(
        max_tokens=50,
        summarization=SummarizationConfig(keep_message_count=2, keep_tool_result_count=0)
    ))
    short = [user_message("hi")]
    assert asyncio.run(manager.process(short, ScriptedModel())) is short

    long = [user_message("x" * 60), assistant_message("y" * 60), user_message("z"), assistant_message("w")]
    processed = asyncio.run(manager.process(long, ScriptedModel([reply("s")])))
    assert is_summary_message(processed[0])
    assert [text_of(m) for m in processed[1:]] == ["z", "w"]


def test_token_counter_counts_tool_parts_and_caches() -> None:
    counter = ApproximateTokenCounter()
    call_message, result_message = _tool_pair("c1", "abcdefgh")

    assert counter.count_messages([user_message("abcd")]) == 1 + 4
    assert counter.count_messages([result_message]) == 2 + 4
    assert counter.count_messages([call_message]) > 4

    counter.invalidate_cache()
    assert counter.count_messages([result_message]) == 6


def test_summary_formatting_truncates_tool_output() -> None:
    _, result_message = _tool_pair("c1", "z" * 500)
    text = format_messages_for_summary([user_message("hello"), result_message])

    assert text.startswith("USER: hello")
    assert "[Tool result: " + "z" * 200 + "...]" in text
    assert "z" * 201 not in text
