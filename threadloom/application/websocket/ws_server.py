from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Dict, Any
import structlog

from .schema.events import (
    UserMessage, EventType, ComponentType, ComponentEvent, ProgressData, FormSubmitData
)
from threadloom.domain.errors import AgentError
from threadloom.domain.models.agent_state import ApprovalDecision
from threadloom.domain.orchestration.core.main_agent import Agent
from threadloom.domain.streaming.streaming_handler import StreamingHandler

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.websocket("/ws/threads/{thread_id}")
async def thread_websocket(websocket: WebSocket, thread_id: str):
    """Stream turns of one thread; approval forms are answered on the same socket"""

    agent: Agent = websocket.app.state.agent
    streaming_handler: StreamingHandler = websocket.app.state.streaming_handler
    connection_manager = streaming_handler.connection_manager

    await connection_manager.connect(websocket, thread_id)

    try:
        await connection_manager.send_event(
            thread_id,
            ComponentEvent(
                payload={
                    "component": ComponentType.PROGRESS,
                    "data": ProgressData(status="Agent ready").model_dump()
                },
                thread_id=thread_id
            )
        )

        while True:
            data = await websocket.receive_json()

            try:
                event_type = data.get("type")

                if event_type == EventType.USER_MESSAGE:
                    await process_user_message(agent, streaming_handler, thread_id, UserMessage(**data))

                elif event_type == EventType.COMPONENT:
                    await handle_component_interaction(agent, streaming_handler, thread_id, data)

            except AgentError as e:
                logger.warning("Agent error on websocket", thread_id=thread_id, error=e.message)
                await connection_manager.send_error(thread_id, e.message, error_code=type(e).__name__)
            except Exception as e:
                logger.error("Error processing message", error=str(e), thread_id=thread_id)
                await connection_manager.send_error(thread_id, f"Error processing message: {e}")

    except WebSocketDisconnect:
        logger.info("Client disconnected", thread_id=thread_id)
    finally:
        await connection_manager.disconnect(thread_id)


async def process_user_message(
    agent: Agent,
    streaming_handler: StreamingHandler,
    thread_id: str,
    message: UserMessage
):
    """Run one streamed turn for a user message"""

    async for part in agent.stream(prompt=message.content, thread_id=thread_id):
        await streaming_handler.handle_part(thread_id, part)


async def handle_component_interaction(
    agent: Agent,
    streaming_handler: StreamingHandler,
    thread_id: str,
    data: Dict[str, Any]
):
    """Form submissions resume the suspended turn"""

    payload = data.get("payload", {})
    if payload.get("component") != ComponentType.FORM_SUBMIT:
        logger.debug("Ignoring component event", thread_id=thread_id, component=payload.get("component"))
        return

    form = FormSubmitData(**payload.get("data", {}))
    interrupt = await agent.get_interrupt(thread_id)

    if interrupt is not None and interrupt.type == "custom":
        decision = form.values.get("response")
        logger.info("Interrupt response submitted", thread_id=thread_id, interrupt_id=form.form_id)
    else:
        decision = ApprovalDecision(
            approved=form.values.get("action") == "approve",
            reason=form.values.get("reason") or None
        )
        logger.info("Approval submitted", thread_id=thread_id, interrupt_id=form.form_id, approved=decision.approved)

    result = await agent.resume(thread_id, form.form_id, decision)
    await streaming_handler.handle_result(thread_id, result)
