"""PlanningSession and Turn models with status transitions."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Dict
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from parley.models.agent_response import ActionKind


class Party(str, Enum):
    """Producer of a turn."""

    AGENT_A = "agent-a"
    AGENT_B = "agent-b"
    HUMAN = "human"

    @property
    def is_agent(self) -> bool:
        return self is not Party.HUMAN

    @property
    def label(self) -> str:
        """Human-readable name used in prompts and CLI output."""
        return {
            Party.AGENT_A: "Agent A",
            Party.AGENT_B: "Agent B",
            Party.HUMAN: "Human",
        }[self]

    def opponent(self) -> "Party":
        """Return the other negotiating agent."""
        if self is Party.AGENT_A:
            return Party.AGENT_B
        if self is Party.AGENT_B:
            return Party.AGENT_A
        raise ValueError("The human party has no opponent")


class SessionStatus(str, Enum):
    """Valid session status values."""

    IDLE = "idle"
    CONFIGURING = "configuring"
    PLANNING = "planning"
    AGREED = "agreed"
    STOPPED = "stopped"
    ERROR = "error"


VALID_TRANSITIONS: Dict[SessionStatus, List[SessionStatus]] = {
    SessionStatus.IDLE: [SessionStatus.CONFIGURING, SessionStatus.PLANNING],
    SessionStatus.CONFIGURING: [SessionStatus.CONFIGURING, SessionStatus.PLANNING],
    SessionStatus.PLANNING: [
        SessionStatus.PLANNING,
        SessionStatus.AGREED,
        SessionStatus.STOPPED,
        SessionStatus.ERROR,
    ],
    SessionStatus.STOPPED: [SessionStatus.PLANNING, SessionStatus.STOPPED],
    SessionStatus.AGREED: [],  # Terminal state
    SessionStatus.ERROR: [],   # Terminal state
}


def can_transition(current: SessionStatus, new_status: SessionStatus) -> bool:
    """Check whether ``current -> new_status`` is allowed by the state machine."""
    return new_status in VALID_TRANSITIONS.get(current, [])


def new_message_id(party: Party) -> str:
    """Build a message identifier prefixed with the producing party."""
    return f"{party.value}-{uuid4().hex[:12]}"


class Turn(BaseModel):
    """One sealed contribution to the negotiation.

    Turns are immutable once their producer's response has been fully
    received; they are appended to a session and never reordered.
    """

    turn_id: str = Field(default="", description="Message identifier shared with the event stream")
    party: Party = Field(..., description="Producer of this turn")
    content: str = Field(..., description="Full text content")
    tool: Optional[ActionKind] = Field(None, description="Classified action for agent turns")
    sequence: int = Field(default=0, ge=0, description="Position in the session's turn sequence")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the turn was sealed"
    )

    class Config:
        """Pydantic configuration."""
        frozen = True

    @model_validator(mode="before")
    @classmethod
    def assign_turn_id(cls, data):
        """Derive a message id from the party when none is given."""
        if isinstance(data, dict) and not data.get("turn_id") and "party" in data:
            data = {**data, "turn_id": new_message_id(Party(data["party"]))}
        return data

    def to_history_entry(self) -> Dict[str, str]:
        """Return the ``{role, content}`` form exchanged with the plan endpoint."""
        return {"role": self.party.value, "content": self.content}


class PlanningSession(BaseModel):
    """The unit of negotiation owned by the engine for one turn-loop run.

    Tracks the prompt, both model identifiers, the sealed turn sequence,
    per-agent agreement flags and the round counter.
    """

    session_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier for the planning session"
    )
    prompt: str = Field(..., min_length=1, description="Originating planning request")
    model_a: str = Field(..., min_length=1, description="Model identifier for agent A")
    model_b: str = Field(..., min_length=1, description="Model identifier for agent B")
    turns: List[Turn] = Field(default_factory=list, description="Sealed turns in order")
    agent_a_agreed: bool = False
    agent_b_agreed: bool = False
    rounds: int = Field(default=0, ge=0)
    status: SessionStatus = SessionStatus.CONFIGURING
    current_plan: Optional[str] = None
    error: Optional[str] = None

    class Config:
        """Pydantic configuration."""
        validate_assignment = True
        protected_namespaces = ()

    @field_validator('prompt', 'model_a', 'model_b')
    @classmethod
    def validate_not_blank(cls, v):
        """Reject whitespace-only values."""
        if not v.strip():
            raise ValueError("Value cannot be blank")
        return v

    @classmethod
    def from_history(
        cls,
        prompt: str,
        model_a: str,
        model_b: str,
        history: Optional[List[Dict[str, str]]] = None
    ) -> "PlanningSession":
        """Rebuild a session from a ``[{role, content}]`` history snapshot.

        The round counter resumes at ``len(history) // 2``. Agent turns are
        re-classified from their text; human turns carry no action.
        """
        from parley.services.response_parser import parse_agent_response

        session = cls(prompt=prompt, model_a=model_a, model_b=model_b)
        for entry in history or []:
            party = Party(entry["role"])
            tool = parse_agent_response(entry["content"]).tool_call.type if party.is_agent else None
            session.add_turn(party, entry["content"], tool=tool)
        session.rounds = len(session.turns) // 2
        return session

    def model_for(self, party: Party) -> str:
        """Return the model identifier speaking for ``party``."""
        if party is Party.AGENT_A:
            return self.model_a
        if party is Party.AGENT_B:
            return self.model_b
        raise ValueError("The human party has no model")

    def add_turn(
        self,
        party: Party,
        content: str,
        tool: Optional[ActionKind] = None,
        turn_id: Optional[str] = None
    ) -> Turn:
        """Seal and append a turn."""
        turn = Turn(
            turn_id=turn_id or "",
            party=party,
            content=content,
            tool=tool,
            sequence=len(self.turns),
        )
        self.turns.append(turn)
        return turn

    def next_party(self) -> Party:
        """Work out whose turn it is from the last sealed turn."""
        if not self.turns:
            return Party.AGENT_A
        last = self.turns[-1].party
        if last is Party.AGENT_A:
            return Party.AGENT_B
        # After agent B or a human interjection, agent A speaks
        return Party.AGENT_A

    def is_agreed(self, party: Party) -> bool:
        return self.agent_a_agreed if party is Party.AGENT_A else self.agent_b_agreed

    def set_agreed(self, party: Party, value: bool = True) -> None:
        if party is Party.AGENT_A:
            self.agent_a_agreed = value
        elif party is Party.AGENT_B:
            self.agent_b_agreed = value
        else:
            raise ValueError("The human party cannot agree")

    def clear_agreement(self) -> None:
        """Invalidate both agents' agreement."""
        self.agent_a_agreed = False
        self.agent_b_agreed = False

    @property
    def both_agreed(self) -> bool:
        return self.agent_a_agreed and self.agent_b_agreed

    def transition_to(self, new_status: SessionStatus, reason: Optional[str] = None) -> bool:
        """Transition to a new status with validation.

        Returns:
            True if the transition was allowed and applied
        """
        if not can_transition(self.status, new_status):
            return False
        self.status = new_status
        if new_status is SessionStatus.ERROR:
            self.error = reason
        return True

    def history(self) -> List[Dict[str, str]]:
        """Return the turn sequence in ``{role, content}`` form."""
        return [turn.to_history_entry() for turn in self.turns]
