from typing import Dict, Any, Optional
from datetime import datetime, timezone
import structlog

from threadloom.application.websocket.connection_manager import ConnectionManager
from threadloom.application.websocket.schema.events import (
    MarkdownEvent, ComponentEvent, StreamPartEvent, ProgressData,
    ComponentType, FormData, FormField
)
from threadloom.domain.models.agent_state import ApprovalInterrupt
from threadloom.domain.models.results import GenerateResult, StreamPart

logger = structlog.get_logger(__name__)

WORKFLOW_FINISH = "_workflow_finish"


class StreamingHandler:
    """Forwards turn-loop events to WebSocket clients"""

    def __init__(
        self,
        connection_manager: Optional[ConnectionManager] = None,
        flush_interval: float = 0.1,
        flush_chars: int = 50
    ):
        self.connection_manager = connection_manager or ConnectionManager()
        self.flush_interval = flush_interval
        self.flush_chars = flush_chars
        self.streaming_sessions: Dict[str, Dict[str, Any]] = {}

    async def handle_part(self, thread_id: str, part: StreamPart):
        """Route one StreamPart to the client"""

        logger.debug("Streaming part", thread_id=thread_id, part_type=part.type)

        if part.type == "text-delta":
            await self.stream_token(thread_id, part.text or "")
            return

        await self.flush_stream(thread_id)
        await self.connection_manager.send_event(
            thread_id,
            StreamPartEvent(payload=part.model_dump(mode="json", exclude_none=True), thread_id=thread_id)
        )

        if part.type == "tool-call":
            await self.send_progress(thread_id, f"Running tool: {part.tool_name}")
        elif part.type == "compaction":
            await self.send_progress(thread_id, "Compacted conversation history")
        elif part.type == "interrupt" and part.interrupt is not None:
            await self.send_approval_form(thread_id, part.interrupt)
        elif part.type == "finish":
            await self.send_workflow_complete(thread_id)

    async def handle_result(self, thread_id: str, result: GenerateResult):
        """Send a non-streamed turn result (resume) to the client"""

        if result.text:
            await self.send_markdown(thread_id, result.text)
        if result.interrupt is not None:
            await self.send_approval_form(thread_id, result.interrupt)
        await self.send_workflow_complete(thread_id)

    async def send_approval_form(self, thread_id: str, interrupt: ApprovalInterrupt):
        """Ask the client to approve or deny a tool call, or to answer a tool's own request"""

        if interrupt.type == "custom":
            form_data = FormData(
                id=interrupt.id,
                title=f"Input requested by {interrupt.tool_name}",
                description=str(interrupt.request),
                fields=[FormField(key="response", type="textarea", label="Response", required=True)]
            )
        else:
            form_data = self._approval_form(interrupt)

        await self.connection_manager.send_event(
            thread_id,
            ComponentEvent(
                payload={
                    "component": ComponentType.UI_INTERACTION,
                    "data": form_data.model_dump()
                },
                thread_id=thread_id
            )
        )

    def _approval_form(self, interrupt: ApprovalInterrupt) -> FormData:
        return FormData(
            id=interrupt.id,
            title=f"Approve tool call: {interrupt.tool_name}",
            description=f"Arguments: {interrupt.args}",
            fields=[
                FormField(
                    key="action",
                    type="select",
                    label="Action",
                    required=True,
                    options=[
                        {"value": "approve", "label": "Approve"},
                        {"value": "deny", "label": "Deny"}
                    ]
                ),
                FormField(
                    key="reason",
                    type="textarea",
                    label="Reason",
                    required=False,
                    placeholder="Optional reason..."
                )
            ]
        )

    async def send_progress(
        self,
        thread_id: str,
        status: str,
        step_index: Optional[int] = None,
        total_steps: Optional[int] = None
    ):
        """Send progress update to client"""

        progress_data = ProgressData(
            status=status,
            step_index=step_index,
            total_steps=total_steps
        )

        await self.connection_manager.send_event(
            thread_id,
            ComponentEvent(
                payload={
                    "component": ComponentType.PROGRESS,
                    "data": progress_data.model_dump()
                },
                thread_id=thread_id
            )
        )

    async def send_markdown(self, thread_id: str, content: str):
        await self.connection_manager.send_event(
            thread_id,
            MarkdownEvent(payload=content, thread_id=thread_id)
        )

    async def send_workflow_complete(self, thread_id: str):
        await self.send_progress(thread_id, WORKFLOW_FINISH)

    async def stream_token(self, thread_id: str, token: str):
        """Buffer text deltas and send them in chunks"""

        if thread_id not in self.streaming_sessions:
            self.streaming_sessions[thread_id] = {
                "buffer": "",
                "last_send": datetime.now(timezone.utc)
            }

        session_data = self.streaming_sessions[thread_id]
        session_data["buffer"] += token

        now = datetime.now(timezone.utc)
        elapsed = (now - session_data["last_send"]).total_seconds()

        if elapsed > self.flush_interval or len(session_data["buffer"]) > self.flush_chars:
            await self.send_markdown(thread_id, session_data["buffer"])
            session_data["buffer"] = ""
            session_data["last_send"] = now

    async def flush_stream(self, thread_id: str):
        """Flush any remaining buffered content"""

        session_data = self.streaming_sessions.pop(thread_id, None)
        if session_data and session_data["buffer"]:
            await self.send_markdown(thread_id, session_data["buffer"])
