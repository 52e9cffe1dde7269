from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional, TypedDict, Union

from fastapi import Request
from langgraph.errors import GraphRecursionError
from langgraph.graph import END, StateGraph
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from threadline.core.errors import ConversationStateError, ErrorCode, TurnWorkflowError
from threadline.db.models import ConversationThread, ThreadMessage, ThreadStatus
from threadline.memory.backend import MemoryBackend, memories_from_messages
from threadline.repos.message_repo import MessageRepo
from threadline.services import turn_state as ts
from threadline.services.message_codec import ChatMessage, to_chat_message, to_message_fields
from threadline.services.sequence_allocator import SequenceAllocator
from threadline.services.thread_service import ThreadService
from threadline.services.turn_state import TurnContext, TurnPhase, TurnState

logger = logging.getLogger(__name__)

Step = Callable[[TurnState], Awaitable[TurnState]]


class TurnGraphState(TypedDict):
    """Graph channel holding the immutable turn state; steps replace it whole."""

    turn: TurnState


def route_after_initialize(state: TurnState) -> str:
    if state.error is not None:
        return "error"
    if state.phase is TurnPhase.ACTIVE:
        return "process"
    return "error"


def route_after_process(state: TurnState) -> str:
    return "error" if state.error is not None else "persist"


def route_after_persist(state: TurnState) -> str:
    if state.error is not None:
        return "error"
    if state.phase is TurnPhase.COMPLETION:
        return "finalize"
    return "continue"


def _graph_node(name: str, step: Step) -> Callable[[TurnGraphState], Awaitable[dict]]:
    async def run(graph_state: TurnGraphState) -> dict:
        turn = graph_state["turn"]
        logger.debug("Turn %s entering step %s", turn.thread_id, name)
        return {"turn": await step(ts.record_step(turn, name))}

    return run


def _graph_router(router: Callable[[TurnState], str]) -> Callable[[TurnGraphState], str]:
    def route(graph_state: TurnGraphState) -> str:
        return router(graph_state["turn"])

    return route


class ConversationService:
    """Drive one conversational turn through the workflow graph.

    The graph is compiled once and holds no per-call state; every turn starts
    from a fresh ``TurnState``.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        thread_service: ThreadService,
        allocator: SequenceAllocator,
        memory_backend: MemoryBackend,
        *,
        max_steps: int = 16,
        history_limit: Optional[int] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._threads = thread_service
        self._allocator = allocator
        self._memory_backend = memory_backend
        self._history_limit = history_limit
        self._max_steps = max(1, max_steps)
        self._workflow = self._build_workflow()

    async def run_turn(
        self,
        thread_id: str,
        message: Optional[ChatMessage],
        context: Union[TurnContext, dict[str, Any], None] = None,
    ) -> TurnState:
        """Run a turn; step failures come back as an error-phase state."""

        if isinstance(context, dict):
            context = TurnContext.from_dict(context)
        state = ts.start_turn(thread_id, message, context)
        try:
            result = await self._workflow.ainvoke(
                {"turn": state}, config={"recursion_limit": self._max_steps}
            )
        except GraphRecursionError as exc:
            raise TurnWorkflowError(
                ErrorCode.GRAPH_EXECUTION_FAILED,
                f"Turn exceeded {self._max_steps} workflow steps",
                thread_id=thread_id,
                operation="invoke",
            ) from exc
        except TurnWorkflowError:
            raise
        except Exception as exc:
            error = TurnWorkflowError.from_exception(
                exc,
                code=ErrorCode.GRAPH_EXECUTION_FAILED,
                operation="run_turn",
                thread_id=thread_id,
                fallback_message="Turn workflow failed",
            )
            logger.exception("Turn workflow failed for thread %s", thread_id)
            raise error from exc
        return result["turn"]

    async def continue_turn(
        self,
        thread_id: str,
        message: Optional[ChatMessage],
        context: Union[TurnContext, dict[str, Any], None] = None,
    ) -> TurnState:
        """Like ``run_turn`` but never auto-creates the thread."""

        thread = await self._threads.find_thread_by_id(thread_id)
        if thread is None:
            raise ConversationStateError(
                ErrorCode.THREAD_NOT_FOUND,
                "Thread not found",
                thread_id=thread_id,
                operation="continue_turn",
            )
        return await self.run_turn(thread_id, message, context)

    async def get_state(self, thread_id: str) -> Optional[TurnState]:
        """Snapshot of a thread's full visible history, or None."""

        try:
            async with self._sessionmaker() as db:
                thread = await self._threads.find_thread_by_id(thread_id, db=db)
                if thread is None:
                    return None
                history = await MessageRepo(db).list_active_messages(thread_id)
        except SQLAlchemyError:
            logger.exception("Failed to load conversation state for thread %s", thread_id)
            return None

        messages = tuple(to_chat_message(message) for message in history)
        return TurnState(
            thread_id=thread_id,
            thread=thread,
            messages=messages,
            current_message=messages[-1] if messages else None,
            phase=TurnPhase.ACTIVE,
        )

    def _build_workflow(self):
        workflow = StateGraph(TurnGraphState)
        workflow.add_node("initialize_thread", _graph_node("initialize_thread", self._initialize_thread))
        workflow.add_node("process_message", _graph_node("process_message", self._process_message))
        workflow.add_node("persist_state", _graph_node("persist_state", self._persist_state))
        workflow.add_node("finalize", _graph_node("finalize", self._finalize))
        workflow.add_node("handle_error", _graph_node("handle_error", self._handle_error))

        workflow.set_entry_point("initialize_thread")
        workflow.add_conditional_edges(
            "initialize_thread",
            _graph_router(route_after_initialize),
            {"process": "process_message", "error": "handle_error"},
        )
        workflow.add_conditional_edges(
            "process_message",
            _graph_router(route_after_process),
            {"persist": "persist_state", "error": "handle_error"},
        )
        workflow.add_conditional_edges(
            "persist_state",
            _graph_router(route_after_persist),
            {
                "finalize": "finalize",
                "continue": "process_message",
                "error": "handle_error",
            },
        )
        workflow.add_edge("finalize", END)
        workflow.add_edge("handle_error", END)
        try:
            return workflow.compile()
        except ValueError as exc:
            raise TurnWorkflowError(
                ErrorCode.GRAPH_EXECUTION_FAILED, str(exc), operation="build_workflow"
            ) from exc

    async def _initialize_thread(self, state: TurnState) -> TurnState:
        try:
            thread = await self._threads.find_thread_by_id(state.thread_id)
            if thread is None:
                seed = state.current_message.text if state.current_message else ""
                thread = await self._threads.auto_create_thread(seed, state.thread_id)
            if thread.status == ThreadStatus.DELETED.value:
                return ts.with_error(
                    state,
                    ConversationStateError(
                        ErrorCode.THREAD_NOT_FOUND,
                        "Thread has been deleted",
                        thread_id=state.thread_id,
                        operation="initialize_thread",
                    ),
                )
            async with self._sessionmaker() as db:
                history = await MessageRepo(db).list_active_messages(
                    thread.id, limit=self._history_limit
                )
        except Exception as exc:
            logger.exception("Thread initialization failed for %s", state.thread_id)
            return ts.with_error(
                state,
                ConversationStateError.from_exception(
                    exc,
                    code=ErrorCode.DATABASE_ERROR,
                    operation="initialize_thread",
                    thread_id=state.thread_id,
                    fallback_message="Failed to initialize thread",
                ),
            )

        state = ts.with_thread(state, thread)
        state = ts.prepend_history(state, [to_chat_message(item) for item in history])
        return ts.with_phase(state, TurnPhase.ACTIVE)

    async def _process_message(self, state: TurnState) -> TurnState:
        message = state.current_message
        try:
            if message is None:
                return ts.with_error(state, self._invalid_message(state, "No message to process"))
            if not message.text.strip() and not (message.is_multipart and message.content):
                return ts.with_error(
                    state, self._invalid_message(state, "Message content is empty")
                )
        except Exception as exc:
            logger.exception("Message processing failed for thread %s", state.thread_id)
            return ts.with_error(
                state,
                ConversationStateError.from_exception(
                    exc,
                    code=ErrorCode.UNKNOWN_ERROR,
                    operation="process_message",
                    thread_id=state.thread_id,
                    fallback_message="Failed to process message",
                ),
            )
        return ts.with_phase(state, TurnPhase.ACTIVE)

    async def _persist_state(self, state: TurnState) -> TurnState:
        message = state.current_message
        if message is None:
            return ts.with_error(state, self._invalid_message(state, "No message to persist"))
        try:
            stored, thread = await self._allocator.run(
                state.thread_id, lambda: self._write_message(state.thread_id, message)
            )
        except Exception as exc:
            logger.exception("Persisting turn failed for thread %s", state.thread_id)
            return ts.with_error(
                state,
                ConversationStateError.from_exception(
                    exc,
                    code=ErrorCode.STATE_PERSISTENCE_FAILED,
                    operation="persist_state",
                    thread_id=state.thread_id,
                    message_id=message.additional_kwargs.get("message_id"),
                    fallback_message="Failed to persist message",
                ),
            )

        await self._remember(stored)
        state = ts.with_thread(state, thread)
        state = ts.append_messages(state, [to_chat_message(stored)])
        state = ts.with_persisted_message(state, stored.id)
        return ts.with_phase(state, TurnPhase.COMPLETION)

    async def _finalize(self, state: TurnState) -> TurnState:
        logger.debug(
            "Turn on thread %s completed in %s steps", state.thread_id, len(state.steps)
        )
        processing = state.context.processing
        updates = processing.model_dump(exclude_none=True) if processing else {}
        updates["step_count"] = len(state.steps)
        return ts.merge_context(state, {"processing": updates})

    async def _handle_error(self, state: TurnState) -> TurnState:
        if state.error is None:
            state = ts.with_error(
                state,
                ConversationStateError(
                    ErrorCode.UNKNOWN_ERROR,
                    f"Turn stopped in unexpected phase {state.phase.value}",
                    thread_id=state.thread_id,
                    operation="handle_error",
                ),
            )
        logger.warning("Turn on thread %s failed: %s", state.thread_id, state.error.to_json())
        return ts.with_phase(state, TurnPhase.ERROR)

    async def _write_message(
        self, thread_id: str, message: ChatMessage
    ) -> tuple[ThreadMessage, Optional[ConversationThread]]:
        async with self._sessionmaker() as db:
            async with db.begin():
                repo = MessageRepo(db)
                sequence_number = await repo.next_sequence(thread_id)
                stored = await repo.add_message(
                    thread_id,
                    sequence_number,
                    message_id=message.additional_kwargs.get("message_id"),
                    **to_message_fields(message),
                )
                thread = await self._threads.update_activity(
                    thread_id, stored.content, stored.sender, db=db
                )
        return stored, thread

    async def _remember(self, message: ThreadMessage) -> None:
        try:
            await self._memory_backend.store_conversation_memory(
                memories_from_messages([message]), message.thread_id
            )
        except Exception:  # noqa: BLE001
            logger.exception("Memory indexing failed for message %s", message.id)

    @staticmethod
    def _invalid_message(state: TurnState, text: str) -> ConversationStateError:
        return ConversationStateError(
            ErrorCode.INVALID_MESSAGE,
            text,
            thread_id=state.thread_id,
            operation="process_message",
        )


def get_conversation_service(request: Request) -> ConversationService:
    """Dependency to access conversation service from app state."""

    return request.app.state.conversation_service
