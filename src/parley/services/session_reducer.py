"""Consumer-side replica of a planning session.

``apply_event`` folds session events, in receipt order, into an immutable
``SessionState``. It never mutates its input and performs no I/O, so a
replica can be rebuilt from any recorded event sequence.
"""

from datetime import datetime, timezone
from typing import Optional, Tuple

from pydantic import BaseModel, Field

from parley.models.agent_response import ActionKind
from parley.models.planning_session import Party, SessionStatus, new_message_id
from parley.models.session_event import EventType, SessionEvent


class PlanningMessage(BaseModel):
    """A turn as seen by the consumer, possibly still streaming."""

    id: str
    role: Party
    content: str = ""
    tool: Optional[ActionKind] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_streaming: bool = False

    class Config:
        """Pydantic configuration."""
        frozen = True

    def to_history_entry(self):
        return {"role": self.role.value, "content": self.content}


class SessionState(BaseModel):
    """Read-only projection of a planning session."""

    status: SessionStatus = SessionStatus.IDLE
    prompt: str = ""
    model_a: str = ""
    model_b: str = ""
    messages: Tuple[PlanningMessage, ...] = ()
    current_plan: Optional[str] = None
    agent_a_agreed: bool = False
    agent_b_agreed: bool = False
    rounds: int = 0
    error: Optional[str] = None
    streaming_message_id: Optional[str] = None

    class Config:
        """Pydantic configuration."""
        frozen = True
        protected_namespaces = ()

    @property
    def is_configured(self) -> bool:
        return all(value.strip() for value in (self.prompt, self.model_a, self.model_b))

    @property
    def sealed_messages(self) -> Tuple[PlanningMessage, ...]:
        return tuple(m for m in self.messages if not m.is_streaming)

    @property
    def streaming_message(self) -> Optional[PlanningMessage]:
        for message in self.messages:
            if message.id == self.streaming_message_id:
                return message
        return None

    def history(self):
        """Sealed messages in the ``{role, content}`` form the engine resumes from."""
        return [m.to_history_entry() for m in self.sealed_messages]


def _replace_message(state: SessionState, message_id: str, **changes) -> Tuple[PlanningMessage, ...]:
    return tuple(
        m.model_copy(update=changes) if m.id == message_id else m
        for m in state.messages
    )


def _drop_streaming(state: SessionState) -> Tuple[PlanningMessage, ...]:
    return tuple(m for m in state.messages if not m.is_streaming)


def _on_thinking(state: SessionState, event: SessionEvent) -> SessionState:
    role = event.data.role or Party.AGENT_A
    message = PlanningMessage(
        id=event.data.message_id or new_message_id(role),
        role=role,
        is_streaming=True,
    )
    return state.model_copy(update={
        "messages": state.messages + (message,),
        "streaming_message_id": message.id,
    })


def _on_message(state: SessionState, event: SessionEvent) -> SessionState:
    data = event.data
    if data.rounds is not None:
        return state.model_copy(update={"rounds": data.rounds})

    if data.role is Party.HUMAN and data.content:
        message = PlanningMessage(
            id=data.message_id or new_message_id(Party.HUMAN),
            role=Party.HUMAN,
            content=data.content,
        )
        return state.model_copy(update={
            "messages": state.messages + (message,),
            "agent_a_agreed": False,
            "agent_b_agreed": False,
        })

    streaming = state.streaming_message
    if not data.content or streaming is None:
        return state
    if data.message_id and data.message_id != streaming.id:
        return state
    return state.model_copy(update={
        "messages": _replace_message(state, streaming.id, content=streaming.content + data.content),
    })


def _on_tool(state: SessionState, event: SessionEvent) -> SessionState:
    streaming = state.streaming_message
    if streaming is None:
        return state

    update = {
        "messages": _replace_message(state, streaming.id, tool=event.data.tool, is_streaming=False),
        "streaming_message_id": None,
    }
    # Mirror the engine's flag bookkeeping from the classified action
    party = streaming.role
    if party.is_agent and event.data.tool is not None:
        if event.data.tool is ActionKind.AGREE:
            update["agent_a_agreed" if party is Party.AGENT_A else "agent_b_agreed"] = True
        else:
            update["agent_b_agreed" if party is Party.AGENT_A else "agent_a_agreed"] = False
    return state.model_copy(update=update)


def _on_agreed(state: SessionState, event: SessionEvent) -> SessionState:
    return state.model_copy(update={
        "status": SessionStatus.AGREED,
        "current_plan": event.data.plan,
        "agent_a_agreed": True,
        "agent_b_agreed": True,
        "rounds": event.data.rounds if event.data.rounds is not None else state.rounds,
        "messages": _drop_streaming(state),
        "streaming_message_id": None,
    })


def _on_stopped(state: SessionState, event: SessionEvent) -> SessionState:
    return state.model_copy(update={
        "status": SessionStatus.STOPPED,
        "messages": _drop_streaming(state),
        "streaming_message_id": None,
    })


def _on_error(state: SessionState, event: SessionEvent) -> SessionState:
    return state.model_copy(update={
        "status": SessionStatus.ERROR,
        "error": event.data.error or "Unknown error",
        "messages": _drop_streaming(state),
        "streaming_message_id": None,
    })


_HANDLERS = {
    EventType.THINKING: _on_thinking,
    EventType.MESSAGE: _on_message,
    EventType.TOOL: _on_tool,
    EventType.AGREED: _on_agreed,
    EventType.STOPPED: _on_stopped,
    EventType.ERROR: _on_error,
}


def apply_event(state: SessionState, event: SessionEvent) -> SessionState:
    """Return the state that results from applying ``event`` to ``state``."""
    return _HANDLERS[event.type](state, event)


def replay(events, state: Optional[SessionState] = None) -> SessionState:
    """Fold a sequence of events into a state."""
    state = state or SessionState()
    for event in events:
        state = apply_event(state, event)
    return state
