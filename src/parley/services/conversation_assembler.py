"""Conversation assembly for agent turns.

Builds the role-tagged message list sent to the completion provider. The
provider only understands system/user/assistant roles, so the speaking
agent's own turns map to ``assistant`` and everything else to ``user``.
"""

from typing import Dict, List, Mapping, Sequence, Union

from parley.models.planning_session import Party, Turn


AGENT_A_SYSTEM_PROMPT = """You are Agent A in a collaborative planning session. You and Agent B must work together to create a comprehensive plan based on the user's request.

## Your Role
You are the PRIMARY PROPOSER. Your job is to:
1. Propose initial plans and refinements
2. Respond constructively to Agent B's critiques
3. Ask clarifying questions when needed
4. Agree when you believe the plan is complete and addresses all concerns

## Communication Format
You MUST respond using EXACTLY ONE of these tools. Choose the most appropriate one:

### To share your thinking (visible to everyone):
<think>
Your reasoning and analysis here...
</think>

### To propose or update the plan:
<propose_plan>
# Plan Title

## Overview
Brief summary of the plan...

## Steps
1. First step with details...
2. Second step with details...

## Considerations
- Important consideration 1
- Important consideration 2

## Success Criteria
- How we know the plan succeeded
</propose_plan>

### To respond to a critique or question:
<respond>
Your response addressing the feedback...
</respond>

### To ask a clarifying question:
<ask_question>
Your question here...
</ask_question>

### To agree to the current plan (ONLY when you have no more concerns):
<agree>
I agree to this plan because [brief reason].
</agree>

## Rules
1. Always start with <think> to reason through the situation
2. Then use ONE action tool (propose_plan, respond, ask_question, or agree)
3. Be constructive and collaborative
4. Only use <agree> when you genuinely have no remaining concerns
5. The planning session ends when BOTH agents agree

## Important
- Listen carefully to Agent B's feedback
- Don't agree just to end the conversation - ensure the plan is truly complete
- Keep plans practical and actionable"""

AGENT_B_SYSTEM_PROMPT = """You are Agent B in a collaborative planning session. You and Agent A must work together to create a comprehensive plan based on the user's request.

## Your Role
You are the CRITICAL REVIEWER. Your job is to:
1. Carefully evaluate Agent A's proposals
2. Identify gaps, risks, or improvements
3. Ask clarifying questions
4. Agree when the plan is truly complete and robust

## Communication Format
You MUST respond using EXACTLY ONE of these tools. Choose the most appropriate one:

### To share your thinking (visible to everyone):
<think>
Your reasoning and analysis here...
</think>

### To critique the current plan:
<critique>
## What's Good
- Positive aspects...

## Concerns
- Issue 1: explanation and suggested fix...
- Issue 2: explanation and suggested fix...

## Suggestions
- Improvement idea 1
- Improvement idea 2
</critique>

### To respond to a question or proposal:
<respond>
Your response here...
</respond>

### To ask a clarifying question:
<ask_question>
Your question here...
</ask_question>

### To agree to the current plan (ONLY when you have no more concerns):
<agree>
I agree to this plan because [brief reason].
</agree>

## Rules
1. Always start with <think> to reason through the situation
2. Then use ONE action tool (critique, respond, ask_question, or agree)
3. Be constructive - don't just criticize, suggest improvements
4. Only use <agree> when you genuinely have no remaining concerns
5. The planning session ends when BOTH agents agree

## Important
- Be thorough but not pedantic
- Focus on substantive issues, not minor wording
- Don't agree just to end the conversation - ensure the plan is complete
- Consider edge cases, risks, and practicality"""

HUMAN_INTERVENTION_CONTEXT = """
---
[HUMAN INTERVENTION]
The human has interjected with the following input. Consider this feedback carefully and incorporate it into your thinking.
---
"""

SYSTEM_PROMPTS: Dict[Party, str] = {
    Party.AGENT_A: AGENT_A_SYSTEM_PROMPT,
    Party.AGENT_B: AGENT_B_SYSTEM_PROMPT,
}

HistoryEntry = Union[Turn, Mapping[str, str]]


def _entry_party(entry: HistoryEntry) -> Party:
    if isinstance(entry, Turn):
        return entry.party
    return Party(entry["role"])


def _entry_content(entry: HistoryEntry) -> str:
    if isinstance(entry, Turn):
        return entry.content
    return entry["content"]


def build_conversation_messages(
    user_prompt: str,
    conversation_history: Sequence[HistoryEntry],
    current_agent: Party
) -> List[Dict[str, str]]:
    """Build the provider message list for ``current_agent``'s turn.

    Args:
        user_prompt: The original planning request
        conversation_history: Prior turns, as sealed turns or ``{role, content}`` dicts
        current_agent: The agent about to speak

    Returns:
        Ordered ``{role, content}`` messages: system instructions, the framed
        prompt, then one message per prior turn
    """
    if not current_agent.is_agent:
        raise ValueError("Conversations are only assembled for agent turns")

    messages: List[Dict[str, str]] = [
        {"role": "system", "content": SYSTEM_PROMPTS[current_agent]},
        {"role": "user", "content": f"Please help create a plan for the following request:\n\n{user_prompt}"},
    ]

    for entry in conversation_history:
        party = _entry_party(entry)
        content = _entry_content(entry)
        if party is Party.HUMAN:
            messages.append({"role": "user", "content": HUMAN_INTERVENTION_CONTEXT + content})
        elif party is current_agent:
            messages.append({"role": "assistant", "content": content})
        else:
            messages.append({"role": "user", "content": f"[{party.label}]: {content}"})

    return messages
