from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
import asyncio
import uuid
import structlog
import uvicorn

from threadloom.application.api.route.agent import router as agent_router
from threadloom.application.websocket.connection_manager import ConnectionManager
from threadloom.application.websocket.ws_server import router as ws_router
from threadloom.domain.errors import AgentError, CheckpointError, ConfigurationError
from threadloom.domain.orchestration.core.main_agent import Agent
from threadloom.domain.streaming.streaming_handler import StreamingHandler
from threadloom.domain.tasks.recovery import cleanup_stale_tasks, recover_running_tasks
from threadloom.domain.context.state import CheckpointStore, FileCheckpointStore, InMemoryCheckpointStore
from threadloom.domain.tasks.file_task_store import FileTaskStore
from threadloom.domain.tasks.task_store import InMemoryTaskStore, TaskStore
from threadloom.infrastructure.config.settings import Settings, load_settings
from threadloom.infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


async def periodic_task_cleanup(app: FastAPI):
    """Flush task state and delete stale task records on an interval"""

    settings: Settings = app.state.settings
    max_age = timedelta(seconds=settings.task_max_age)

    while True:
        await asyncio.sleep(settings.task_cleanup_interval)
        try:
            agent: Agent = app.state.agent
            if agent.task_manager is not None:
                await agent.task_manager.flush()
            cleaned = await cleanup_stale_tasks(app.state.task_store, max_age)
            logger.debug("Periodic task cleanup", cleaned=cleaned)
        except Exception as e:
            logger.error("Task cleanup error", error=str(e))


def create_app(
    agent: Agent,
    task_store: Optional[TaskStore] = None,
    settings: Optional[Settings] = None
) -> FastAPI:
    """Build the HTTP + WebSocket surface around an agent"""

    settings = settings or load_settings()
    if task_store is None and agent.task_manager is not None:
        task_store = agent.task_manager.store

    app = FastAPI(title="threadloom")
    app.state.agent = agent
    app.state.task_store = task_store
    app.state.settings = settings
    app.state.streaming_handler = StreamingHandler(ConnectionManager())
    app.state.background_jobs = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "thread_id")
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(status_code=409, content=exc.to_dict())

    @app.exception_handler(CheckpointError)
    async def checkpoint_error_handler(request: Request, exc: CheckpointError):
        logger.error("Checkpoint store failure", operation=exc.operation, thread_id=exc.thread_id, error=exc.message)
        return JSONResponse(status_code=503, content=exc.to_dict())

    @app.exception_handler(AgentError)
    async def agent_error_handler(request: Request, exc: AgentError):
        logger.error("Agent error", error_type=type(exc).__name__, error=exc.message)
        return JSONResponse(status_code=500, content=exc.to_dict())

    @app.on_event("startup")
    async def startup_event():
        """Recover tasks left running by a previous process and start housekeeping"""

        if task_store is not None:
            recovered = await recover_running_tasks(task_store)
            if agent.task_manager is not None and agent.task_manager.store is task_store:
                agent.task_manager.restore(await task_store.list_tasks())
            app.state.background_jobs.append(asyncio.create_task(periodic_task_cleanup(app)))
            logger.info("Task store ready", recovered=recovered)

        app.state.background_jobs.append(
            asyncio.create_task(app.state.streaming_handler.connection_manager.health_check())
        )
        logger.info("threadloom server started", service=settings.service_name)

    @app.on_event("shutdown")
    async def shutdown_event():
        for job in app.state.background_jobs:
            job.cancel()
        await app.state.streaming_handler.connection_manager.disconnect_all()
        await agent.dispose()
        logger.info("threadloom server shutdown")

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "active_connections": len(app.state.streaming_handler.connection_manager.active_connections),
            "active_tasks": agent.task_manager.has_active_tasks() if agent.task_manager else False,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    app.include_router(agent_router)
    app.include_router(ws_router)

    return app


def serve(
    agent: Agent,
    task_store: Optional[TaskStore] = None,
    settings: Optional[Settings] = None,
    host: str = "0.0.0.0",
    port: int = 8000
) -> None:
    """Configure logging and run the app under uvicorn"""

    settings = settings or load_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)
    uvicorn.run(create_app(agent, task_store, settings), host=host, port=port)


def build_stores(settings: Settings) -> Tuple[CheckpointStore, TaskStore]:
    """File-backed stores where directories are configured, in-memory otherwise"""

    if settings.checkpoint_dir:
        checkpoint_store: CheckpointStore = FileCheckpointStore(settings.checkpoint_dir)
    else:
        checkpoint_store = InMemoryCheckpointStore()

    if settings.task_dir:
        task_store: TaskStore = FileTaskStore(settings.task_dir)
    else:
        task_store = InMemoryTaskStore()

    logger.info(
        "Stores configured",
        checkpoint_store=type(checkpoint_store).__name__,
        task_store=type(task_store).__name__
    )
    return checkpoint_store, task_store
