import asyncio
import json

from threadloom.domain.context.state import FileCheckpointStore, InMemoryCheckpointStore
from threadloom.domain.models.agent_state import AgentState, ApprovalInterrupt, Checkpoint
from threadloom.domain.models.messages import (
    ToolCallPart, ToolResultPart, tool_call_message, tool_result_message, user_message
)


def _checkpoint(thread_id: str = "thread-1") -> Checkpoint:
    return Checkpoint.create(
        thread_id,
        messages=[
            user_message("list files"),
            tool_call_message([ToolCallPart(tool_call_id="c1", tool_name="ls", args={"path": "/"})]),
            tool_result_message([ToolResultPart(tool_call_id="c1", tool_name="ls", output={"files": ["a"]})]),
        ],
        state=AgentState(todos=[{"content": "ship", "status": "pending"}]),
        step=2,
        pending_interrupt=ApprovalInterrupt(
            thread_id=thread_id, tool_call_id="c2", tool_name="rm", args={"path": "a"}, step=2
        )
    )


def test_in_memory_store_returns_copies() -> None:
    async def run() -> None:
        store = InMemoryCheckpointStore()
        checkpoint = _checkpoint()
        await store.save(checkpoint)

        loaded = await store.load("thread-1")
        assert loaded == checkpoint
        assert loaded is not checkpoint

        loaded.state.todos.append({"content": "mutated"})
        again = await store.load("thread-1")
        assert len(again.state.todos) == 1

    asyncio.run(run())


def test_in_memory_store_namespaces_are_isolated() -> None:
    async def run() -> None:
        a = InMemoryCheckpointStore(namespace="a")
        await a.save(_checkpoint("t"))
        assert await a.list() == ["t"]
        assert await a.exists("t")
        assert await a.load("missing") is None
        assert await a.delete("t") is True
        assert await a.delete("t") is False
        assert await a.list() == []

    asyncio.run(run())


def test_file_store_round_trips_camel_case_records(tmp_path) -> None:
    async def run() -> None:
        store = FileCheckpointStore(tmp_path)
        checkpoint = _checkpoint("thread/with:odd chars")
        checkpoint = checkpoint.updated(state=AgentState(todos=[], files={"f": None}, cursor=None))
        await store.save(checkpoint)

        path = store.get_file_path(checkpoint.thread_id)
        record = json.loads(path.read_text(encoding="utf-8"))
        assert record["threadId"] == "thread/with:odd chars"
        assert record["pendingInterrupt"]["toolName"] == "rm"
        assert record["messages"][1]["content"][0]["toolCallId"] == "c1"
        assert record["state"] == {"todos": [], "files": {"f": None}, "cursor": None}

        loaded = await store.load(checkpoint.thread_id)
        assert loaded == checkpoint
        assert await store.list() == ["thread/with:odd chars"]

        assert await store.delete(checkpoint.thread_id) is True
        assert await store.load(checkpoint.thread_id) is None

    asyncio.run(run())


def test_checkpoint_step_never_goes_backwards() -> None:
    checkpoint = _checkpoint()
    advanced = checkpoint.updated(step=3)
    assert advanced.step == 3
    assert advanced.created_at == checkpoint.created_at
    assert advanced.updated_at >= checkpoint.updated_at

    try:
        advanced.updated(step=1)
    except ValueError as e:
        assert "backwards" in str(e)
    else:
        raise AssertionError("expected ValueError")
