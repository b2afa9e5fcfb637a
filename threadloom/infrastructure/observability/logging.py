import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "threadloom"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add thread context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    thread_id = structlog.contextvars.get_contextvars().get("thread_id")
    if thread_id and "thread_id" not in event_dict:
        event_dict["thread_id"] = thread_id

    return event_dict


class AgentLogger:
    """Specialized logger for agent runtime events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_tool_execution(
        self,
        tool_name: str,
        thread_id: Optional[str],
        tool_call_id: str,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            thread_id=thread_id,
            tool_call_id=tool_call_id,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_compaction(
        self,
        thread_id: Optional[str],
        reason: str,
        strategy: str,
        tokens_before: int,
        tokens_after: int,
        messages_removed: int
    ):
        """Log a completed compaction"""

        self.logger.info(
            "context_compaction",
            thread_id=thread_id,
            reason=reason,
            strategy=strategy,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            messages_removed=messages_removed
        )

    def log_interrupt(
        self,
        thread_id: str,
        interrupt_id: str,
        tool_name: str,
        action: str
    ):
        """Log approval interrupts being raised or resolved"""

        self.logger.info(
            "approval_interrupt",
            thread_id=thread_id,
            interrupt_id=interrupt_id,
            tool_name=tool_name,
            action=action
        )

    def log_checkpoint(
        self,
        thread_id: str,
        step: int,
        message_count: int,
        pending_interrupt: bool = False
    ):
        """Log checkpoint writes"""

        self.logger.debug(
            "checkpoint_saved",
            thread_id=thread_id,
            step=step,
            message_count=message_count,
            pending_interrupt=pending_interrupt
        )

    def log_task_transition(
        self,
        task_id: str,
        from_status: Optional[str],
        to_status: str,
        **kwargs
    ):
        """Log background task status transitions"""

        self.logger.info(
            "task_transition",
            task_id=task_id,
            from_status=from_status,
            to_status=to_status,
            **kwargs
        )


# Global logger instance
agent_logger = AgentLogger("threadloom.agent")
