"""Parsed agent response models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ActionKind(str, Enum):
    """Closed set of actions an agent turn can resolve to."""

    THINK = "think"
    PROPOSE_PLAN = "propose_plan"
    CRITIQUE = "critique"
    ASK_QUESTION = "ask_question"
    AGREE = "agree"
    RESPOND = "respond"


# Order in which action tags are looked for; ``think`` is scanned separately.
ACTION_PRIORITY = (
    ActionKind.PROPOSE_PLAN,
    ActionKind.CRITIQUE,
    ActionKind.ASK_QUESTION,
    ActionKind.AGREE,
    ActionKind.RESPOND,
)

ACTION_LABELS = {
    ActionKind.THINK: "Thinking",
    ActionKind.PROPOSE_PLAN: "Proposed Plan",
    ActionKind.CRITIQUE: "Critique",
    ActionKind.ASK_QUESTION: "Question",
    ActionKind.AGREE: "Agreement",
    ActionKind.RESPOND: "Response",
}


class ToolCall(BaseModel):
    """The single action classified from an agent turn."""

    type: ActionKind = Field(..., description="Classified action kind")
    content: str = Field(..., description="Trimmed body of the action")

    class Config:
        """Pydantic configuration."""
        frozen = True


class ParsedResponse(BaseModel):
    """Structured view of an agent's raw text."""

    thinking: Optional[str] = Field(None, description="Trimmed think segment, if any")
    tool_call: ToolCall = Field(..., description="Exactly one classified action")
    raw_content: str = Field(..., description="Original raw text")

    class Config:
        """Pydantic configuration."""
        frozen = True
