"""
Unit tests for provider message assembly.
"""

import pytest

from parley.models.planning_session import Party, PlanningSession
from parley.services.conversation_assembler import (
    AGENT_A_SYSTEM_PROMPT,
    AGENT_B_SYSTEM_PROMPT,
    HUMAN_INTERVENTION_CONTEXT,
    build_conversation_messages,
)


HISTORY = [
    {"role": "agent-a", "content": "<propose_plan>P</propose_plan>"},
    {"role": "agent-b", "content": "<critique>C</critique>"},
    {"role": "human", "content": "Mind the budget"},
]


class TestBuildConversationMessages:
    """Test role mapping per speaking agent."""

    def test_empty_history(self):
        """Test a fresh conversation has the system prompt and framed request."""
        messages = build_conversation_messages("Plan a launch", [], Party.AGENT_A)

        assert messages == [
            {"role": "system", "content": AGENT_A_SYSTEM_PROMPT},
            {"role": "user", "content": "Please help create a plan for the following request:\n\nPlan a launch"},
        ]

    def test_agent_a_view(self):
        """Test agent A sees its own turns as assistant and B's as labelled user turns."""
        messages = build_conversation_messages("Plan a launch", HISTORY, Party.AGENT_A)

        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user", "user"]
        assert messages[2]["content"] == "<propose_plan>P</propose_plan>"
        assert messages[3]["content"] == "[Agent B]: <critique>C</critique>"
        assert messages[4]["content"] == HUMAN_INTERVENTION_CONTEXT + "Mind the budget"

    def test_agent_b_view(self):
        """Test agent B gets the reviewer prompt and the mirrored roles."""
        messages = build_conversation_messages("Plan a launch", HISTORY, Party.AGENT_B)

        assert messages[0]["content"] == AGENT_B_SYSTEM_PROMPT
        assert messages[2] == {"role": "user", "content": "[Agent A]: <propose_plan>P</propose_plan>"}
        assert messages[3] == {"role": "assistant", "content": "<critique>C</critique>"}

    def test_accepts_sealed_turns(self):
        """Test sealed session turns assemble the same as dict history."""
        session = PlanningSession.from_history("Plan a launch", "m1", "m2", HISTORY)

        assert build_conversation_messages("Plan a launch", session.turns, Party.AGENT_B) == \
            build_conversation_messages("Plan a launch", HISTORY, Party.AGENT_B)

    def test_human_cannot_speak(self):
        """Test assembling for the human party is rejected."""
        with pytest.raises(ValueError):
            build_conversation_messages("Plan a launch", [], Party.HUMAN)
