"""Data models for planning sessions, parsed responses and session events."""

from parley.models.agent_response import (
    ACTION_LABELS,
    ACTION_PRIORITY,
    ActionKind,
    ParsedResponse,
    ToolCall,
)
from parley.models.planning_session import (
    Party,
    PlanningSession,
    SessionStatus,
    Turn,
    can_transition,
    new_message_id,
)
from parley.models.session_event import EventData, EventType, SessionEvent

__all__ = [
    "ACTION_LABELS",
    "ACTION_PRIORITY",
    "ActionKind",
    "EventData",
    "EventType",
    "ParsedResponse",
    "Party",
    "PlanningSession",
    "SessionEvent",
    "SessionStatus",
    "ToolCall",
    "Turn",
    "can_transition",
    "new_message_id",
]
