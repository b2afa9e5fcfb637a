from typing import Dict, List, Any, Optional, AsyncIterator, Awaitable, Callable, Mapping, Tuple, Union
from dataclasses import dataclass, field
import asyncio
import inspect
import uuid

import structlog
from pydantic import BaseModel, Field

from threadloom.domain.errors import (
    CheckpointError, CompactionError, ConfigurationError, InterruptSignal, ModelError,
    ToolExecutionError, normalize_model_error
)
from threadloom.domain.models.agent_state import AgentState, ApprovalDecision, ApprovalInterrupt, Checkpoint
from threadloom.domain.models.background_task import BackgroundTask, TaskStatus
from threadloom.domain.models.compaction import CompactionResult, CompactionTrigger
from threadloom.domain.models.messages import (
    Message, ToolCallPart, ToolResultPart, assistant_message, system_message,
    tool_call_message, tool_result_message, user_message
)
from threadloom.domain.models.results import (
    GenerateResult, GenerateStep, ModelResponse, StreamPart, ToolCall, ToolResult, Usage
)
from threadloom.domain.context.context_manager import ContextManager
from threadloom.domain.context.state.checkpoint_store import CheckpointStore
from threadloom.domain.orchestration.model import ModelInvoker
from threadloom.domain.tasks.task_manager import BackgroundTaskManager, run_in_background
from threadloom.domain.tool.tool_executor import ToolExecutor
from threadloom.domain.tool.tool_registry import ToolRegistry
from threadloom.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)

ToolPermission = Union[bool, str]
CanUseTool = Callable[[str, Dict[str, Any]], Union[ToolPermission, Awaitable[ToolPermission]]]


def format_task_completion(task: BackgroundTask) -> str:
    command = (task.metadata or {}).get("command", "unknown command")
    return f"[Background task completed: {task.id}]\nCommand: {command}\nOutput:\n{task.result or '(no output)'}"


def format_task_failure(task: BackgroundTask) -> str:
    command = (task.metadata or {}).get("command", "unknown command")
    error = task.error or ("Task was killed" if task.status == TaskStatus.KILLED else "Unknown error")
    return f"[Background task failed: {task.id}]\nCommand: {command}\nError: {error}"


def _replaying_interrupt(responses: List[Any]) -> Callable[[Any], Any]:
    """interrupt() for one tool run: answers requests in order from `responses`, then suspends"""

    answers = iter(list(responses))

    def interrupt(request: Any) -> Any:
        try:
            return next(answers)
        except StopIteration:
            raise InterruptSignal(request, responses) from None

    return interrupt


class AgentConfig(BaseModel):
    """Turn-loop settings"""
    max_steps: int = Field(default=10, ge=1)
    max_retries: int = Field(default=2, ge=0)
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    checkpoint_after_tool_call: bool = False
    system_prompt: Optional[str] = None
    max_output_tokens: Optional[int] = None
    format_task_completion: Callable[[BackgroundTask], str] = format_task_completion
    format_task_failure: Callable[[BackgroundTask], str] = format_task_failure


@dataclass
class _Turn:
    thread_id: str
    messages: List[Message]
    step: int
    state: AgentState
    max_tokens: Optional[int]
    streaming: bool
    steps: List[GenerateStep] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)


class Agent:
    """Runs the turn loop: model invocations, tool calls, approvals, checkpoints.

    One in-flight generate/resume/stream per thread id is assumed; concurrent
    calls on the same thread are not serialized here.
    """

    def __init__(
        self,
        model: ModelInvoker,
        tools: Optional[ToolRegistry] = None,
        checkpointer: Optional[CheckpointStore] = None,
        context_manager: Optional[ContextManager] = None,
        task_manager: Optional[BackgroundTaskManager] = None,
        config: Optional[AgentConfig] = None,
        can_use_tool: Optional[CanUseTool] = None
    ):
        self.model = model
        self.tools = tools or ToolRegistry()
        self.executor = ToolExecutor(self.tools)
        self.checkpointer = checkpointer
        self.context_manager = context_manager
        self.task_manager = task_manager
        self.config = config or AgentConfig()
        self.can_use_tool = can_use_tool
        self._checkpoints: Dict[str, Checkpoint] = {}
        self._state = AgentState()

    @property
    def state(self) -> AgentState:
        """Auxiliary state of the most recently saved turn"""
        return self._state

    # Public API

    async def generate(
        self,
        prompt: Optional[str] = None,
        messages: Optional[List[Union[Message, Dict[str, Any]]]] = None,
        thread_id: Optional[str] = None,
        max_tokens: Optional[int] = None,
        wait_for_background_tasks: bool = False
    ) -> GenerateResult:
        """Run one turn to completion or to an approval interrupt"""

        result = await self._collect(
            self._run(thread_id, self._input(prompt, messages), max_tokens, streaming=False)
        )
        if wait_for_background_tasks:
            result = await self._drain_background_tasks(result, max_tokens)
        return result

    async def stream(
        self,
        prompt: Optional[str] = None,
        messages: Optional[List[Union[Message, Dict[str, Any]]]] = None,
        thread_id: Optional[str] = None,
        max_tokens: Optional[int] = None
    ) -> AsyncIterator[StreamPart]:
        """Same turn as generate(), yielded incrementally; the last part is `finish`"""

        async for part in self._run(thread_id, self._input(prompt, messages), max_tokens, streaming=True):
            yield part

    async def resume(
        self,
        thread_id: str,
        interrupt_id: str,
        decision: Union[ApprovalDecision, Mapping[str, Any], Any]
    ) -> GenerateResult:
        """Answer a pending interrupt and continue the suspended turn.

        Approval interrupts take an ApprovalDecision (or a mapping of one).
        For custom interrupts `decision` is the response handed back to the
        tool's interrupt() call; the tool runs again from the start, with its
        earlier requests answered from the recorded responses, and may
        interrupt again.
        """

        if self.checkpointer is None:
            raise ConfigurationError("Cannot resume: checkpointer is required")

        # Always the stored copy, never the cache
        checkpoint = await self._load_from_store(thread_id)
        if checkpoint is None:
            raise ConfigurationError(f"Cannot resume: no checkpoint found for thread {thread_id}")

        interrupt = checkpoint.pending_interrupt
        if interrupt is None:
            raise ConfigurationError(f"Cannot resume: no pending interrupt found for thread {thread_id}")

        if interrupt.id != interrupt_id:
            raise ConfigurationError(
                f"Cannot resume: interrupt ID mismatch. Expected {interrupt.id}, got {interrupt_id}"
            )

        if interrupt.type == "approval":
            if isinstance(decision, Mapping):
                decision = ApprovalDecision.model_validate(dict(decision))
            elif not isinstance(decision, ApprovalDecision):
                raise ConfigurationError("Cannot resume: approval interrupts take an approval decision")
            run = decision.approved
            action = "approved" if decision.approved else "denied"
        else:
            run = True
            action = "answered"

        if run and not self.tools.has(interrupt.tool_name):
            raise ConfigurationError(f'Cannot resume: tool "{interrupt.tool_name}" not found')

        self._checkpoints[thread_id] = checkpoint
        self._bind(thread_id)

        turn = _Turn(
            thread_id=thread_id,
            messages=list(checkpoint.messages),
            step=checkpoint.step,
            state=checkpoint.state.model_copy(deep=True),
            max_tokens=self.config.max_output_tokens,
            streaming=False
        )
        call = ToolCall(tool_call_id=interrupt.tool_call_id, tool_name=interrupt.tool_name, args=interrupt.args)

        if interrupt.type == "custom":
            try:
                output, _ = await self._run_tool(turn, call, responses=interrupt.responses + [decision])
            except InterruptSignal as signal:
                follow_up = self._custom_interrupt(turn, call, signal)
                await self._save(turn, pending_interrupt=follow_up)
                agent_logger.log_interrupt(thread_id, follow_up.id, follow_up.tool_name, action="raised")
                return self._result(turn, "interrupted", "", "interrupted", follow_up)
        elif decision.approved:
            output, _ = await self._run_tool(turn, call)
        else:
            output = self._denied_output(interrupt.tool_name, decision.reason)

        turn.messages.append(tool_call_message([
            ToolCallPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, args=call.args)
        ]))
        turn.messages.append(tool_result_message([
            ToolResultPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, output=output)
        ]))

        agent_logger.log_interrupt(thread_id, interrupt.id, interrupt.tool_name, action=action)

        # The tool has run; the interrupt must not be answerable twice
        await self._save(turn, pending_interrupt=None)

        return await self._collect(self._loop(turn))

    async def get_interrupt(self, thread_id: str) -> Optional[ApprovalInterrupt]:
        checkpoint = await self._load_checkpoint(thread_id)
        return checkpoint.pending_interrupt if checkpoint else None

    async def get_checkpoint(self, thread_id: str) -> Optional[Checkpoint]:
        return await self._load_checkpoint(thread_id)

    def pin_message(self, message_index: int, reason: str) -> None:
        self._require_context_manager().pin_message(message_index, reason)

    def unpin_message(self, message_index: int) -> None:
        self._require_context_manager().unpin_message(message_index)

    async def dispose(self) -> None:
        """Kill background work and drop cached checkpoints"""

        if self.task_manager is not None:
            outcome = await self.task_manager.kill_all_tasks()
            logger.info("Killed background tasks on dispose", **outcome)
            await self.task_manager.flush()

        if self.context_manager is not None and self.context_manager.scheduler is not None:
            self.context_manager.scheduler.shutdown()

        self._checkpoints.clear()

    # Turn loop

    async def _run(
        self,
        thread_id: Optional[str],
        incoming: List[Message],
        max_tokens: Optional[int],
        streaming: bool
    ) -> AsyncIterator[StreamPart]:
        thread_id = thread_id or f"thread_{uuid.uuid4().hex[:12]}"
        self._bind(thread_id)

        checkpoint = await self._load_checkpoint(thread_id)
        if checkpoint is not None and checkpoint.pending_interrupt is not None:
            raise ConfigurationError(
                f"Thread {thread_id} has a pending interrupt {checkpoint.pending_interrupt.id}; resume it first"
            )

        messages = list(checkpoint.messages) if checkpoint else []
        if not messages and self.config.system_prompt:
            messages.append(system_message(self.config.system_prompt))
        messages.extend(incoming)

        turn = _Turn(
            thread_id=thread_id,
            messages=messages,
            step=checkpoint.step if checkpoint else 0,
            state=checkpoint.state.model_copy(deep=True) if checkpoint else AgentState(),
            max_tokens=max_tokens or self.config.max_output_tokens,
            streaming=streaming
        )

        if self.context_manager is not None:
            part = await self._proactive_compaction(turn)
            if part is not None:
                yield part

        async for part in self._loop(turn):
            yield part

    async def _loop(self, turn: _Turn) -> AsyncIterator[StreamPart]:
        cm = self.context_manager
        final_text = ""
        finish_reason = "stop"

        for _ in range(self.config.max_steps):
            if cm is not None and cm.should_force_compact(turn.messages):
                part = await self._try_compact(turn, CompactionTrigger.HARD_CAP)
                if part is not None:
                    yield part

            response: Optional[ModelResponse] = None
            async for item in self._invoke(turn):
                if isinstance(item, ModelResponse):
                    response = item
                else:
                    yield item

            turn.step += 1
            turn.usage = turn.usage + response.usage
            if cm is not None:
                cm.update_usage(response.usage)

            if not response.tool_calls:
                if response.text:
                    turn.messages.append(assistant_message(response.text))
                turn.steps.append(GenerateStep(
                    text=response.text,
                    finish_reason=response.finish_reason,
                    usage=response.usage
                ))
                final_text = response.text
                finish_reason = response.finish_reason
                break

            interrupt: Optional[ApprovalInterrupt] = None
            calls: List[ToolCallPart] = []
            results: List[ToolResultPart] = []
            step_results: List[ToolResult] = []

            for call in response.tool_calls:
                permission = await self._check_permission(call)
                if permission == "ask":
                    interrupt = ApprovalInterrupt(
                        thread_id=turn.thread_id,
                        tool_call_id=call.tool_call_id,
                        tool_name=call.tool_name,
                        args=call.args,
                        step=turn.step
                    )
                    break

                yield StreamPart(
                    type="tool-call",
                    tool_call_id=call.tool_call_id,
                    tool_name=call.tool_name,
                    args=call.args
                )

                if permission == "deny":
                    output, is_error = self._denied_output(call.tool_name), True
                else:
                    try:
                        output, is_error = await self._run_tool(turn, call)
                    except InterruptSignal as signal:
                        interrupt = self._custom_interrupt(turn, call, signal)
                        break

                calls.append(ToolCallPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, args=call.args))
                results.append(ToolResultPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, output=output))
                step_results.append(ToolResult(
                    tool_call_id=call.tool_call_id,
                    tool_name=call.tool_name,
                    output=output,
                    is_error=is_error
                ))

                yield StreamPart(
                    type="tool-result",
                    tool_call_id=call.tool_call_id,
                    tool_name=call.tool_name,
                    output=output
                )

            if calls:
                turn.messages.append(tool_call_message(calls, text=response.text or None))
                turn.messages.append(tool_result_message(results))
            elif response.text:
                turn.messages.append(assistant_message(response.text))

            turn.steps.append(GenerateStep(
                text=response.text,
                tool_calls=response.tool_calls,
                tool_results=step_results,
                finish_reason=response.finish_reason,
                usage=response.usage
            ))

            if interrupt is not None:
                await self._save(turn, pending_interrupt=interrupt)
                agent_logger.log_interrupt(turn.thread_id, interrupt.id, interrupt.tool_name, action="raised")

                yield StreamPart(type="interrupt", interrupt=interrupt)
                result = self._result(turn, "interrupted", response.text, "interrupted", interrupt)
                yield StreamPart(type="finish", finish_reason="interrupted", usage=turn.usage, result=result)
                return

            if self.config.checkpoint_after_tool_call:
                await self._save(turn)
        else:
            finish_reason = "max_steps"
            logger.warning("Turn stopped at step limit", thread_id=turn.thread_id, max_steps=self.config.max_steps)

        await self._save(turn)
        result = self._result(turn, "complete", final_text, finish_reason)
        yield StreamPart(type="finish", finish_reason=finish_reason, usage=turn.usage, result=result)

    async def _invoke(self, turn: _Turn) -> AsyncIterator[Union[StreamPart, ModelResponse]]:
        """One model invocation with error-fallback compaction and backoff; the response comes last"""

        cm = self.context_manager
        tools = self.tools.specs() or None
        retries_left = self.config.max_retries
        attempt = 0

        while True:
            try:
                if turn.streaming:
                    response = None
                    async for chunk in self.model.stream(turn.messages, tools=tools, max_tokens=turn.max_tokens):
                        if isinstance(chunk, ModelResponse):
                            response = chunk
                        else:
                            yield StreamPart(type="text-delta", text=chunk)
                    if response is None:
                        raise ModelError("Model stream ended without a response")
                else:
                    response = await self.model.invoke(turn.messages, tools=tools, max_tokens=turn.max_tokens)

            except Exception as e:
                error = normalize_model_error(e, turn.thread_id)

                if (
                    error.is_context_length_error
                    and cm is not None
                    and cm.policy.enable_error_fallback
                    and retries_left > 0
                ):
                    retries_left -= 1
                    try:
                        result = await cm.compact(
                            turn.messages, self.model, CompactionTrigger.ERROR_FALLBACK, thread_id=turn.thread_id
                        )
                    except CompactionError as compaction_error:
                        logger.warning(
                            "Error-fallback compaction failed",
                            thread_id=turn.thread_id,
                            error=str(compaction_error)
                        )
                        raise error
                    if not result.compacted:
                        raise error
                    turn.messages = list(result.new_messages)
                    yield self._compaction_part(result)
                    continue

                if error.retryable and retries_left > 0:
                    retries_left -= 1
                    delay = min(self.config.retry_base_delay * (2 ** attempt), self.config.retry_max_delay)
                    attempt += 1
                    logger.warning(
                        "Retrying model invocation",
                        thread_id=turn.thread_id,
                        attempt=attempt,
                        delay=delay,
                        error=error.message
                    )
                    await asyncio.sleep(delay)
                    continue

                raise error

            yield response
            return

    async def _proactive_compaction(self, turn: _Turn) -> Optional[StreamPart]:
        cm = self.context_manager
        should, trigger = cm.should_compact(turn.messages)
        if not should:
            return None

        if cm.scheduler is not None:
            processed = await cm.process(turn.messages, self.model, turn.thread_id)
            if processed is turn.messages:
                return None
            turn.messages = list(processed)
            return StreamPart(type="compaction", data={"trigger": trigger.value, "background": True})

        return await self._try_compact(turn, trigger)

    async def _try_compact(self, turn: _Turn, trigger: CompactionTrigger) -> Optional[StreamPart]:
        """Compact in place; a failed summary leaves the turn's messages as they were"""

        try:
            result = await self.context_manager.compact(turn.messages, self.model, trigger, thread_id=turn.thread_id)
        except CompactionError as e:
            logger.warning("Compaction failed, continuing uncompacted", thread_id=turn.thread_id, error=str(e))
            return None

        if not result.compacted:
            return None
        turn.messages = list(result.new_messages)
        return self._compaction_part(result)

    def _compaction_part(self, result: CompactionResult) -> StreamPart:
        return StreamPart(
            type="compaction",
            data={
                "trigger": result.trigger.value,
                "strategy": result.strategy.value,
                "summary_tier": result.summary_tier,
                "messages_before": result.messages_before,
                "messages_after": result.messages_after,
                "tokens_before": result.tokens_before,
                "tokens_after": result.tokens_after
            }
        )

    # Tools

    async def _check_permission(self, call: ToolCall) -> str:
        """allow, deny or ask"""

        tool = self.tools.get(call.tool_name)
        if tool is not None and tool.requires_approval:
            return "ask"

        if self.can_use_tool is None:
            return "allow"

        decision = self.can_use_tool(call.tool_name, call.args)
        if inspect.isawaitable(decision):
            decision = await decision

        if decision is True or decision == "allow":
            return "allow"
        if decision == "deny":
            return "deny"
        return "ask"

    async def _run_tool(
        self,
        turn: _Turn,
        call: ToolCall,
        responses: Optional[List[Any]] = None
    ) -> Tuple[Any, bool]:
        """Execute a call; failures come back as an error output, never as an exception.

        InterruptSignal is the one exception that escapes: the tool asked for
        input beyond `responses`.
        """

        tool = self.tools.get(call.tool_name)
        if tool is not None and tool.background and self.task_manager is not None:
            task = run_in_background(
                self.task_manager,
                self.executor.execute(call.tool_name, call.args, call.tool_call_id, turn.thread_id),
                subagent_type=tool.name,
                description=tool.description or tool.name,
                metadata={
                    "command": call.args.get("command", tool.name),
                    "thread_id": turn.thread_id,
                    "tool_call_id": call.tool_call_id
                }
            )
            return {"taskId": task.id, "status": "running", "message": f"Started background task {task.id}"}, False

        try:
            output = await self.executor.execute(
                call.tool_name, call.args, call.tool_call_id, turn.thread_id,
                interrupt=_replaying_interrupt(responses or [])
            )
            return output, False
        except (ToolExecutionError, ConfigurationError) as e:
            return {"error": True, "message": e.message}, True

    def _custom_interrupt(self, turn: _Turn, call: ToolCall, signal: InterruptSignal) -> ApprovalInterrupt:
        return ApprovalInterrupt(
            thread_id=turn.thread_id,
            type="custom",
            tool_call_id=call.tool_call_id,
            tool_name=call.tool_name,
            args=call.args,
            step=turn.step,
            request=signal.request,
            responses=signal.responses
        )

    def _denied_output(self, tool_name: str, reason: Optional[str] = None) -> Dict[str, Any]:
        message = f'Tool "{tool_name}" was denied by user'
        if reason:
            message = f"{message}: {reason}"
        return {"denied": True, "message": message}

    # Background tasks

    async def _drain_background_tasks(self, result: GenerateResult, max_tokens: Optional[int]) -> GenerateResult:
        """Feed each finished background task back to the model as a follow-up turn"""

        manager = self.task_manager
        while manager is not None and result.status == "complete":
            own = [t for t in manager.list_tasks() if (t.metadata or {}).get("thread_id") == result.thread_id]
            finished = [t for t in own if t.status.is_terminal]
            if not finished:
                if not any(t.status.is_active for t in own):
                    break
                await manager.wait_for_next_completion()
                continue

            task = finished[0]

            if task.status == TaskStatus.COMPLETED:
                notice = self.config.format_task_completion(task)
            else:
                notice = self.config.format_task_failure(task)
            manager.remove_task(task.id)

            follow_up = await self._collect(
                self._run(result.thread_id, [user_message(notice)], max_tokens, streaming=False)
            )
            follow_up.usage = result.usage + follow_up.usage
            follow_up.steps = result.steps + follow_up.steps
            result = follow_up

        return result

    # Checkpoints

    async def _load_from_store(self, thread_id: str) -> Optional[Checkpoint]:
        try:
            return await self.checkpointer.load(thread_id)
        except Exception as e:
            raise CheckpointError(
                f"Failed to load checkpoint for thread {thread_id}: {e}",
                operation="load",
                thread_id=thread_id,
                cause=e
            ) from e

    async def _load_checkpoint(self, thread_id: str) -> Optional[Checkpoint]:
        if self.checkpointer is None:
            return None

        cached = self._checkpoints.get(thread_id)
        if cached is not None:
            return cached

        checkpoint = await self._load_from_store(thread_id)
        if checkpoint is not None:
            self._checkpoints[thread_id] = checkpoint
            self._state = checkpoint.state
        return checkpoint

    async def _save(self, turn: _Turn, pending_interrupt: Optional[ApprovalInterrupt] = None) -> Optional[Checkpoint]:
        self._state = turn.state
        if self.checkpointer is None:
            return None

        existing = self._checkpoints.get(turn.thread_id)
        if existing is not None:
            checkpoint = existing.updated(
                step=turn.step,
                messages=list(turn.messages),
                state=turn.state,
                pending_interrupt=pending_interrupt
            )
        else:
            checkpoint = Checkpoint.create(
                turn.thread_id,
                messages=turn.messages,
                state=turn.state,
                step=turn.step,
                pending_interrupt=pending_interrupt
            )

        try:
            await self.checkpointer.save(checkpoint)
        except Exception as e:
            raise CheckpointError(
                f"Failed to save checkpoint for thread {turn.thread_id}: {e}",
                operation="save",
                thread_id=turn.thread_id,
                cause=e
            ) from e

        self._checkpoints[turn.thread_id] = checkpoint
        agent_logger.log_checkpoint(
            turn.thread_id, checkpoint.step, len(checkpoint.messages),
            pending_interrupt=pending_interrupt is not None
        )
        return checkpoint

    # Helpers

    def _input(
        self,
        prompt: Optional[str],
        messages: Optional[List[Union[Message, Dict[str, Any]]]]
    ) -> List[Message]:
        incoming = [m if isinstance(m, Message) else Message.model_validate(m) for m in messages or []]
        if prompt:
            incoming.append(user_message(prompt))
        if not incoming:
            raise ConfigurationError("Either prompt or messages is required")
        return incoming

    def _bind(self, thread_id: str) -> None:
        structlog.contextvars.bind_contextvars(thread_id=thread_id)
        if self.context_manager is not None:
            self.context_manager.thread_id = thread_id

    def _require_context_manager(self) -> ContextManager:
        if self.context_manager is None:
            raise ConfigurationError("A context manager is required to pin messages")
        return self.context_manager

    def _result(
        self,
        turn: _Turn,
        status: str,
        text: str,
        finish_reason: str,
        interrupt: Optional[ApprovalInterrupt] = None
    ) -> GenerateResult:
        return GenerateResult(
            status=status,
            text=text,
            usage=turn.usage,
            finish_reason=finish_reason,
            steps=list(turn.steps),
            interrupt=interrupt,
            thread_id=turn.thread_id,
            messages=list(turn.messages)
        )

    async def _collect(self, parts: AsyncIterator[StreamPart]) -> GenerateResult:
        result: Optional[GenerateResult] = None
        async for part in parts:
            if part.type == "finish":
                result = part.result
        return result
