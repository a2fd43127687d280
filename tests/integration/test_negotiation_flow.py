"""End-to-end negotiation through the plan server and a remote controller."""

import httpx
import pytest

from parley.exceptions import TransportError
from parley.lib.config import NegotiationConfig, ParleyConfig, ProviderConfig
from parley.models.plan_request import PlanRequest
from parley.models.planning_session import Party, SessionStatus
from parley.services.plan_client import RemotePlanSource
from parley.services.plan_server import create_app
from parley.services.planning_controller import PlanningController


def _app(provider, api_key="sk-test"):
    config = ParleyConfig(
        provider=ProviderConfig(api_key=api_key),
        negotiation=NegotiationConfig(turn_delay_seconds=0),
    )
    return create_app(config, provider=provider)


def _remote_source(app):
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
    return RemotePlanSource("http://parley.test", client=client)


@pytest.mark.integration
class TestRemoteNegotiation:
    """Test a controller driving the HTTP server."""

    @pytest.mark.asyncio
    async def test_reaches_agreement(self, scripted_provider, launch_responses):
        """Test a remote negotiation folds into an agreed replica."""
        source = _remote_source(_app(scripted_provider(launch_responses)))
        seen = []
        controller = PlanningController(source, on_event=lambda event, state: seen.append(event.type.value))
        controller.configure(prompt="Plan a launch", model_a="m1", model_b="m2")

        state = await controller.start()
        await source.aclose()

        assert state.status == SessionStatus.AGREED
        assert state.current_plan == "Launch v1 with rollback"
        assert state.rounds == 2
        assert state.agent_a_agreed and state.agent_b_agreed
        assert [m.role for m in state.messages] == [
            Party.AGENT_A, Party.AGENT_B, Party.AGENT_A, Party.AGENT_B, Party.AGENT_A,
        ]
        assert state.streaming_message is None
        assert seen[-1] == "agreed"

    @pytest.mark.asyncio
    async def test_round_cap_ends_session(self, scripted_provider):
        """Test the round cap surfaces as an error that blocks intervention."""
        provider = scripted_provider([
            "<propose_plan>Plan one</propose_plan>",
            "<critique>Too vague</critique>",
            "<agree>fine</agree>",
            "<agree>fine</agree>",
        ])
        app = _app(provider)
        app.state.config.negotiation.max_rounds = 1
        source = _remote_source(app)
        controller = PlanningController(source)
        controller.configure(prompt="p", model_a="m1", model_b="m2")

        first = await controller.start()
        assert first.status == SessionStatus.ERROR
        assert first.error == "Maximum rounds reached without agreement"

        # An errored session cannot be resumed
        state = await controller.intervene("Be concrete")
        assert state.error == "Cannot intervene at this time"
        assert len(provider.calls) == 2
        await source.aclose()

    @pytest.mark.asyncio
    async def test_server_rejection(self, scripted_provider):
        """Test an HTTP error body becomes the session error."""
        source = _remote_source(_app(scripted_provider([]), api_key=None))
        controller = PlanningController(source)
        controller.configure(prompt="p", model_a="m1", model_b="m2")

        state = await controller.start()
        await source.aclose()

        assert state.status == SessionStatus.ERROR
        assert state.error == "OpenRouter API key not configured"


@pytest.mark.integration
class TestRemotePlanSource:
    """Test record decoding on the client side."""

    @pytest.mark.asyncio
    async def test_skips_malformed_records(self):
        """Test records that fail to parse are dropped and the rest delivered."""
        body = (
            'data: {"type": "thinking", "data": {"role": "agent-a", "messageId": "agent-a-1"}}\n\n'
            "data: {not json}\n\n"
            ": keep-alive\n\n"
            'data: {"type": "bogus", "data": {}}\n\n'
            'data: {"type": "agreed", "data": {"plan": "P", "rounds": 1}}\n\n'
        )
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})
        ))
        source = RemotePlanSource("http://parley.test/", client=client)
        request = PlanRequest(prompt="p", model_a="m1", model_b="m2")

        events = [event async for event in source.stream(request)]
        await client.aclose()

        assert [e.type.value for e in events] == ["thinking", "agreed"]

    @pytest.mark.asyncio
    async def test_request_payload(self):
        """Test the request body uses the wire field names."""
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["body"] = request.content
            return httpx.Response(200, content=b'data: {"type": "stopped", "data": {}}\n\n')

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        source = RemotePlanSource("http://parley.test/", client=client)
        request = PlanRequest(prompt="p", model_a="m1", model_b="m2", human_input="h")

        events = [event async for event in source.stream(request)]
        await client.aclose()

        assert captured["url"] == "http://parley.test/api/plan"
        assert b'"modelA"' in captured["body"]
        assert b'"humanInput"' in captured["body"]
        assert events[0].type.value == "stopped"

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        """Test transport failures surface as TransportError."""
        def handler(request):
            raise httpx.ConnectError("refused")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        source = RemotePlanSource("http://parley.test", client=client)

        with pytest.raises(TransportError, match="Failed to start planning"):
            async for _ in source.stream(PlanRequest(prompt="p", model_a="m1", model_b="m2")):
                pass
        await client.aclose()
