import asyncio

import structlog
from structlog.testing import capture_logs

from threadloom.domain.context import ContextManager
from threadloom.domain.models import ContextManagerConfig, SummarizationConfig
from threadloom.domain.models.background_task import BackgroundTask, TaskStatus
from threadloom.domain.models.messages import assistant_message, user_message
from threadloom.domain.tasks import BackgroundTaskManager
from threadloom.infrastructure.observability.logging import add_service_context

from conftest import ScriptedModel, reply


def test_service_context_adds_bound_thread_id() -> None:
    structlog.contextvars.bind_contextvars(thread_id="t9")
    try:
        event = add_service_context(None, "info", {"event": "hello"})
    finally:
        structlog.contextvars.clear_contextvars()

    assert event["thread_id"] == "t9"
    assert "timestamp" in event

    explicit = add_service_context(None, "info", {"event": "hello", "thread_id": "other"})
    assert explicit["thread_id"] == "other"


def test_task_transitions_are_logged() -> None:
    with capture_logs() as logs:
        manager = BackgroundTaskManager()
        manager.register_task(BackgroundTask.create("t1", "shell", "build"))
        manager.update_task("t1", status=TaskStatus.RUNNING)
        manager.update_task("t1", status=TaskStatus.PENDING)

    transitions = [(e["from_status"], e["to_status"]) for e in logs if e["event"] == "task_transition"]
    assert transitions == [(None, "pending"), ("pending", "running")]
    assert any(e["event"] == "Ignoring illegal task transition" for e in logs)


def test_compaction_is_logged_with_token_counts() -> None:
    manager = ContextManager(ContextManagerConfig(
        summarization=SummarizationConfig(keep_message_count=1, keep_tool_result_count=0)
    ))
    manager.thread_id = "t1"
    messages = [user_message("first question"), assistant_message("first answer"), user_message("next")]

    with capture_logs() as logs:
        asyncio.run(manager.compact(messages, ScriptedModel([reply("summary")])))

    compaction = next(e for e in logs if e["event"] == "context_compaction")
    assert compaction["thread_id"] == "t1"
    assert compaction["strategy"] == "rollup"
    assert compaction["reason"] == "token_threshold"
    assert compaction["messages_removed"] == 2
    assert compaction["tokens_before"] > 0
