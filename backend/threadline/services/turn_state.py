from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from threadline.core.errors import ConversationStateError
from threadline.db.models import ConversationThread
from threadline.services.message_codec import ChatMessage


class TurnPhase(str, Enum):
    INITIALIZATION = "initialization"
    ACTIVE = "active"
    TOOL_USE = "tool_use"
    COMPLETION = "completion"
    ERROR = "error"


class _ContextSection(BaseModel):
    model_config = ConfigDict(extra="allow", protected_namespaces=(), populate_by_name=True)


class SessionContext(_ContextSection):
    id: Optional[str] = None
    user_id: Optional[str] = None
    source: Optional[str] = None
    user_agent: Optional[str] = None


class ModelContext(_ContextSection):
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None


class ConversationContext(_ContextSection):
    language: Optional[str] = None
    topic: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None


class ProcessingContext(_ContextSection):
    start_time: Optional[int] = None
    step_count: Optional[int] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


class TurnContext(_ContextSection):
    """Optional context bag carried through a turn."""

    session: Optional[SessionContext] = None
    model_settings: Optional[ModelContext] = Field(default=None, alias="model_config")
    conversation: Optional[ConversationContext] = None
    capabilities: Optional[list[str]] = None
    processing: Optional[ProcessingContext] = None
    custom: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, by_alias=True)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "TurnContext":
        return cls.model_validate(dict(data or {}))


@dataclass(frozen=True)
class TurnState:
    """Immutable per-call snapshot; every change goes through a named transition."""

    thread_id: str
    thread: Optional[ConversationThread] = None
    messages: tuple[ChatMessage, ...] = ()
    current_message: Optional[ChatMessage] = None
    phase: TurnPhase = TurnPhase.INITIALIZATION
    context: TurnContext = field(default_factory=TurnContext)
    error: Optional[ConversationStateError] = None
    persisted_message_id: Optional[str] = None
    steps: tuple[str, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.phase in (TurnPhase.COMPLETION, TurnPhase.ERROR)


def start_turn(
    thread_id: str,
    message: Optional[ChatMessage],
    context: Optional[TurnContext] = None,
) -> TurnState:
    return TurnState(
        thread_id=thread_id,
        current_message=message,
        context=context or TurnContext(),
    )


def with_thread(state: TurnState, thread: Optional[ConversationThread]) -> TurnState:
    """Replace the resolved thread; None keeps the current one."""

    if thread is None:
        return state
    return replace(state, thread=thread)


def prepend_history(state: TurnState, history: Iterable[ChatMessage]) -> TurnState:
    """Place loaded history ahead of the messages already in the window."""

    return replace(state, messages=(*history, *state.messages))


def append_messages(state: TurnState, messages: Iterable[ChatMessage]) -> TurnState:
    return replace(state, messages=(*state.messages, *messages))


def with_current_message(state: TurnState, message: Optional[ChatMessage]) -> TurnState:
    """Replace the current message; None keeps the current one."""

    if message is None:
        return state
    return replace(state, current_message=message)


def with_phase(state: TurnState, phase: TurnPhase) -> TurnState:
    return replace(state, phase=phase)


def merge_context(state: TurnState, updates: dict[str, Any]) -> TurnState:
    """Shallow merge: top-level keys in ``updates`` replace existing ones."""

    merged = {**state.context.to_dict(), **updates}
    return replace(state, context=TurnContext.from_dict(merged))


def with_error(state: TurnState, error: ConversationStateError) -> TurnState:
    return replace(state, error=error, phase=TurnPhase.ERROR)


def clear_error(state: TurnState) -> TurnState:
    return replace(state, error=None)


def record_step(state: TurnState, step: str) -> TurnState:
    return replace(state, steps=(*state.steps, step))


def with_persisted_message(state: TurnState, message_id: str) -> TurnState:
    return replace(state, persisted_message_id=message_id)
