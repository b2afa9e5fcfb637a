from fastapi import APIRouter, Depends, HTTPException, Request
from typing import Annotated, Any, Dict, List, Optional
from pydantic import BaseModel
import structlog

from threadloom.domain.models.agent_state import ApprovalInterrupt
from threadloom.domain.models.background_task import TaskStatus
from threadloom.domain.models.results import GenerateResult
from threadloom.domain.orchestration.core.main_agent import Agent
from threadloom.domain.tasks.task_store import TaskStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1")


class GenerateRequest(BaseModel):
    prompt: Optional[str] = None
    messages: Optional[List[Dict[str, Any]]] = None
    max_tokens: Optional[int] = None
    wait_for_background_tasks: bool = False


class ResumeRequest(BaseModel):
    """`approved`/`reason` answer approval interrupts; `response` answers custom ones"""
    interrupt_id: str
    approved: Optional[bool] = None
    reason: Optional[str] = None
    response: Optional[Any] = None


class ThreadSummary(BaseModel):
    thread_id: str
    step: int
    messages: int
    todos: int = 0
    files: int = 0
    pending_interrupt: Optional[str] = None
    updated_at: str


def get_agent(request: Request) -> Agent:
    return request.app.state.agent


def get_task_store(request: Request) -> Optional[TaskStore]:
    return request.app.state.task_store


AgentDep = Annotated[Agent, Depends(get_agent)]


def _require_checkpointer(agent: Agent):
    if agent.checkpointer is None:
        raise HTTPException(status_code=404, detail="Checkpointing is not configured")
    return agent.checkpointer


# REST endpoints for thread interactions
@router.get("/threads")
async def list_threads(agent: AgentDep) -> Dict[str, List[str]]:
    checkpointer = _require_checkpointer(agent)
    return {"threads": await checkpointer.list()}


@router.get("/threads/{thread_id}")
async def get_thread(thread_id: str, agent: AgentDep) -> ThreadSummary:
    _require_checkpointer(agent)
    checkpoint = await agent.get_checkpoint(thread_id)
    if checkpoint is None:
        raise HTTPException(status_code=404, detail=f"Thread {thread_id} not found")
    return ThreadSummary(**checkpoint.get_state_summary())


@router.get("/threads/{thread_id}/messages")
async def get_thread_messages(thread_id: str, agent: AgentDep) -> Dict[str, Any]:
    _require_checkpointer(agent)
    checkpoint = await agent.get_checkpoint(thread_id)
    if checkpoint is None:
        raise HTTPException(status_code=404, detail=f"Thread {thread_id} not found")
    return {"threadId": thread_id, "messages": [m.to_record() for m in checkpoint.messages]}


@router.get("/threads/{thread_id}/interrupt")
async def get_interrupt(thread_id: str, agent: AgentDep) -> Optional[ApprovalInterrupt]:
    return await agent.get_interrupt(thread_id)


@router.post("/threads/{thread_id}/generate")
async def generate(thread_id: str, body: GenerateRequest, agent: AgentDep) -> GenerateResult:
    logger.info("Generate requested", thread_id=thread_id)
    return await agent.generate(
        prompt=body.prompt,
        messages=body.messages,
        thread_id=thread_id,
        max_tokens=body.max_tokens,
        wait_for_background_tasks=body.wait_for_background_tasks
    )


@router.post("/threads/{thread_id}/resume")
async def resume(thread_id: str, body: ResumeRequest, agent: AgentDep) -> GenerateResult:
    logger.info("Resume requested", thread_id=thread_id, interrupt_id=body.interrupt_id, approved=body.approved)
    if body.approved is None:
        decision = body.response
    else:
        decision = {"approved": body.approved, "reason": body.reason}
    return await agent.resume(thread_id, body.interrupt_id, decision)


@router.get("/tasks")
async def list_tasks(
    agent: AgentDep,
    task_store: Annotated[Optional[TaskStore], Depends(get_task_store)],
    status: Optional[TaskStatus] = None
) -> Dict[str, List[Dict[str, Any]]]:
    """Live tasks from the manager, falling back to the durable store"""

    if agent.task_manager is not None:
        tasks = agent.task_manager.list_tasks(status=status)
    elif task_store is not None:
        tasks = await task_store.list_tasks(status=status)
    else:
        tasks = []
    return {"tasks": [task.to_record() for task in tasks]}


@router.post("/tasks/{task_id}/kill")
async def kill_task(task_id: str, agent: AgentDep) -> Dict[str, Any]:
    if agent.task_manager is None:
        raise HTTPException(status_code=404, detail="Background tasks are not configured")
    outcome = await agent.task_manager.kill_task(task_id)
    if not outcome.killed and outcome.reason == "Task not found":
        raise HTTPException(status_code=404, detail=outcome.reason)
    return {"killed": outcome.killed, "reason": outcome.reason}
