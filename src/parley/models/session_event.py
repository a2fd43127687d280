"""Session events pushed across the transport boundary.

Each event serializes to one ``data: <json>\\n\\n`` record whose JSON body is
``{"type": <EventType>, "data": {...}}``.
"""

import json
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field

from parley.lib.sse import encode_record
from parley.models.agent_response import ActionKind
from parley.models.planning_session import Party


class EventType(str, Enum):
    """Wire-level event types."""

    MESSAGE = "message"      # content delta, human echo or round count
    THINKING = "thinking"    # an agent turn has started streaming
    TOOL = "tool"            # the in-flight turn's action was classified
    AGREED = "agreed"        # both agents agreed
    STOPPED = "stopped"      # negotiation was stopped
    ERROR = "error"          # provider failure or round exhaustion


class EventData(BaseModel):
    """Payload of a session event; the populated fields depend on the type."""

    role: Optional[Party] = None
    content: Optional[str] = None
    tool: Optional[ActionKind] = None
    plan: Optional[str] = None
    error: Optional[str] = None
    message_id: Optional[str] = Field(None, alias="messageId")
    rounds: Optional[int] = Field(None, ge=0)

    class Config:
        """Pydantic configuration."""
        frozen = True
        populate_by_name = True


class SessionEvent(BaseModel):
    """An immutable, ordered unit emitted by the negotiation engine."""

    type: EventType
    data: EventData = Field(default_factory=EventData)

    class Config:
        """Pydantic configuration."""
        frozen = True

    # Constructors for each event the engine emits

    @classmethod
    def turn_started(cls, party: Party, message_id: str) -> "SessionEvent":
        return cls(type=EventType.THINKING, data=EventData(role=party, message_id=message_id))

    @classmethod
    def content_delta(cls, party: Party, content: str, message_id: str) -> "SessionEvent":
        return cls(
            type=EventType.MESSAGE,
            data=EventData(role=party, content=content, message_id=message_id)
        )

    @classmethod
    def human_message(cls, content: str, message_id: str) -> "SessionEvent":
        return cls.content_delta(Party.HUMAN, content, message_id)

    @classmethod
    def action_classified(cls, party: Party, tool: ActionKind, message_id: str) -> "SessionEvent":
        return cls(
            type=EventType.TOOL,
            data=EventData(role=party, tool=tool, message_id=message_id)
        )

    @classmethod
    def round_count(cls, rounds: int) -> "SessionEvent":
        return cls(type=EventType.MESSAGE, data=EventData(rounds=rounds))

    @classmethod
    def agreement_reached(cls, plan: str, rounds: int) -> "SessionEvent":
        return cls(type=EventType.AGREED, data=EventData(plan=plan, rounds=rounds))

    @classmethod
    def terminated(cls) -> "SessionEvent":
        return cls(type=EventType.STOPPED)

    @classmethod
    def failed(cls, error: str) -> "SessionEvent":
        return cls(type=EventType.ERROR, data=EventData(error=error))

    @property
    def is_round_count(self) -> bool:
        return self.type is EventType.MESSAGE and self.data.rounds is not None

    @property
    def is_terminal(self) -> bool:
        """Whether no further events follow this one in a turn-loop run."""
        return self.type in (EventType.AGREED, EventType.STOPPED, EventType.ERROR)

    def to_dict(self) -> Dict[str, Any]:
        """Wire form with unset payload fields omitted."""
        return {
            "type": self.type.value,
            "data": self.data.model_dump(mode="json", by_alias=True, exclude_none=True),
        }

    def to_record(self) -> str:
        """Serialize as one ``data: <json>\\n\\n`` transport record."""
        return encode_record(json.dumps(self.to_dict(), ensure_ascii=False))

    @classmethod
    def from_json(cls, payload: str) -> "SessionEvent":
        """Parse the JSON body of a transport record.

        Raises:
            ValueError: If the payload is not valid JSON or not a known event
                (pydantic's ValidationError is a ValueError).
        """
        return cls.model_validate(json.loads(payload))
