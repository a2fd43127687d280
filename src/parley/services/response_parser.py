"""Response parsing for agent turns.

Extracts the optional ``<think>`` segment and exactly one action from an
agent's raw text, and recovers the latest proposed plan from a turn history.
"""

import re
from typing import Dict, Iterable, Optional, Pattern, Union

from parley.models.agent_response import (
    ACTION_LABELS,
    ACTION_PRIORITY,
    ActionKind,
    ParsedResponse,
    ToolCall,
)
from parley.models.planning_session import Turn


def _tag_pattern(kind: ActionKind) -> Pattern[str]:
    # Non-greedy, first occurrence; DOTALL so bodies may span lines
    tag = kind.value
    return re.compile(rf"<{tag}>(.*?)</{tag}>", re.DOTALL)


TAG_PATTERNS: Dict[ActionKind, Pattern[str]] = {kind: _tag_pattern(kind) for kind in ActionKind}


def parse_agent_response(content: str) -> ParsedResponse:
    """Parse an agent's response into thinking text and a single action.

    Args:
        content: Raw text produced by the agent

    Returns:
        ParsedResponse whose tool_call is the highest-priority tag present, or
        a synthesized ``respond`` when no action tag matches
    """
    thinking: Optional[str] = None
    think_match = TAG_PATTERNS[ActionKind.THINK].search(content)
    if think_match:
        thinking = think_match.group(1).strip()

    tool_call: Optional[ToolCall] = None
    for kind in ACTION_PRIORITY:
        match = TAG_PATTERNS[kind].search(content)
        if match:
            tool_call = ToolCall(type=kind, content=match.group(1).strip())
            break

    if tool_call is None:
        without_thinking = TAG_PATTERNS[ActionKind.THINK].sub("", content, count=1).strip()
        tool_call = ToolCall(type=ActionKind.RESPOND, content=without_thinking or content)

    return ParsedResponse(thinking=thinking, tool_call=tool_call, raw_content=content)


def is_agreement(response: ParsedResponse) -> bool:
    """Check if the response indicates agreement."""
    return response.tool_call.type is ActionKind.AGREE


def extract_current_plan(turns: Iterable[Union[Turn, Dict[str, str], str]]) -> Optional[str]:
    """Return the body of the most recent ``propose_plan`` in the history.

    Accepts sealed turns, ``{role, content}`` dicts or bare strings. Later
    critiques or questions do not hide an earlier proposal.
    """
    pattern = TAG_PATTERNS[ActionKind.PROPOSE_PLAN]
    for turn in reversed(list(turns)):
        if isinstance(turn, Turn):
            text = turn.content
        elif isinstance(turn, dict):
            text = turn.get("content", "")
        else:
            text = turn
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return None


def format_response_for_display(response: ParsedResponse) -> str:
    """Render a parsed response as Markdown for display."""
    parts = []

    if response.thinking:
        parts.append(f"**{ACTION_LABELS[ActionKind.THINK]}:**\n{response.thinking}")

    if response.tool_call.type is not ActionKind.THINK:
        label = ACTION_LABELS[response.tool_call.type]
        parts.append(f"**{label}:**\n{response.tool_call.content}")

    return "\n\n".join(parts)
