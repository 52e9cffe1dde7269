from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from threadline.api import memory as memory_api
from threadline.api import threads as threads_api
from threadline.core.config import get_settings
from threadline.core.logging import setup_logging
from threadline.db.base import create_engine, create_sessionmaker, init_db
from threadline.memory.backend import create_memory_backend
from threadline.services.branch_service import BranchService
from threadline.services.conversation_service import ConversationService
from threadline.services.memory_sharing_service import MemorySharingService
from threadline.services.sequence_allocator import SequenceAllocator
from threadline.services.thread_service import ThreadService


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        yield
        await engine.dispose()

    app = FastAPI(title="threadline", lifespan=lifespan)
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.allocator = SequenceAllocator(settings.sequence_retry_attempts)
    app.state.memory_backend = create_memory_backend(sessionmaker=sessionmaker, settings=settings)
    app.state.thread_service = ThreadService(sessionmaker, settings.message_preview_chars)
    app.state.conversation_service = ConversationService(
        sessionmaker,
        app.state.thread_service,
        app.state.allocator,
        app.state.memory_backend,
        max_steps=settings.turn_max_steps,
    )
    app.state.branch_service = BranchService(
        sessionmaker,
        app.state.allocator,
        app.state.memory_backend,
        settings.message_preview_chars,
    )
    app.state.memory_sharing_service = MemorySharingService(
        sessionmaker,
        app.state.memory_backend if app.state.memory_backend.enabled else None,
        cache_ttl_sec=settings.access_cache_ttl_sec,
        ownership_write_trust=settings.ownership_write_trust,
        default_limit=settings.memory_default_limit,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(threads_api.router)
    app.include_router(memory_api.router)

    return app


app = create_app()


def run() -> None:
    """Console entry point."""

    settings = get_settings()
    uvicorn.run("threadline.main:app", host=settings.app_host, port=settings.app_port)
