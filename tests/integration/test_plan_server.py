"""Integration tests for the plan server HTTP surface."""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from parley.lib.config import NegotiationConfig, ParleyConfig, ProviderConfig
from parley.services.completion_provider import OpenRouterProvider
from parley.services.plan_client import decode_event_record
from parley.services.plan_server import create_app


PLAN_BODY = {"prompt": "Plan a launch", "modelA": "m1", "modelB": "m2"}


def _config(api_key="sk-test"):
    return ParleyConfig(
        provider=ProviderConfig(api_key=api_key),
        negotiation=NegotiationConfig(turn_delay_seconds=0),
    )


def _events(response):
    records = [r for r in response.text.split("\n\n") if r.strip()]
    return [decode_event_record(r) for r in records]


@pytest.mark.integration
class TestPlanEndpoint:
    """Test POST /api/plan."""

    def test_streams_negotiation(self, scripted_provider, launch_responses):
        """Test a full negotiation is streamed as event records."""
        client = TestClient(create_app(_config(), provider=scripted_provider(launch_responses)))

        response = client.post("/api/plan", json=PLAN_BODY)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        events = _events(response)
        assert all(e is not None for e in events)
        assert events[0].type.value == "thinking"
        assert events[-1].type.value == "agreed"
        assert events[-1].data.plan == "Launch v1 with rollback"
        assert events[-1].data.rounds == 2

    def test_wire_format(self, scripted_provider, launch_responses):
        """Test records are data lines with camelCase ids."""
        client = TestClient(create_app(_config(), provider=scripted_provider(launch_responses)))

        first = client.post("/api/plan", json=PLAN_BODY).text.split("\n\n")[0]

        assert first.startswith("data: ")
        payload = json.loads(first[len("data: "):])
        assert payload["type"] == "thinking"
        assert payload["data"]["role"] == "agent-a"
        assert payload["data"]["messageId"].startswith("agent-a-")

    def test_resume_with_human_input(self, scripted_provider):
        """Test history and human input resume the loop with agent A."""
        provider = scripted_provider(["<agree>a</agree>", "<agree>b</agree>"])
        client = TestClient(create_app(_config(), provider=provider))

        body = dict(PLAN_BODY, history=[
            {"role": "agent-a", "content": "<propose_plan>P</propose_plan>"},
            {"role": "agent-b", "content": "<critique>C</critique>"},
        ], humanInput="Add a budget")
        events = _events(client.post("/api/plan", json=body))

        assert events[0].data.role.value == "human"
        assert events[0].data.content == "Add a budget"
        assert events[-1].data.plan == "P"
        assert provider.calls[0]["model"] == "m1"

    def test_provider_failure_is_an_event(self, scripted_provider):
        """Test provider errors arrive as an error event on a 200 stream."""
        provider = scripted_provider([], fail_at=0, error=RuntimeError("OpenRouter API error: down"))
        client = TestClient(create_app(_config(), provider=provider))

        response = client.post("/api/plan", json=PLAN_BODY)

        assert response.status_code == 200
        events = _events(response)
        assert events[-1].type.value == "error"
        assert events[-1].data.error == "OpenRouter API error: down"

    @pytest.mark.parametrize("body", [
        {"modelA": "m1", "modelB": "m2"},
        {"prompt": "p", "modelB": "m2"},
        {"prompt": "p", "modelA": "m1", "modelB": ""},
    ])
    def test_missing_fields(self, scripted_provider, body):
        """Test incomplete bodies are rejected with 400."""
        client = TestClient(create_app(_config(), provider=scripted_provider([])))

        response = client.post("/api/plan", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields"}

    @pytest.mark.parametrize("body", [
        {"prompt": "   ", "modelA": "m1", "modelB": "m2"},
        {"prompt": "p", "modelA": "\n", "modelB": "m2"},
        {"prompt": "p", "modelA": "m1", "modelB": " \t "},
    ])
    def test_blank_fields(self, scripted_provider, body):
        """Test whitespace-only prompt or model ids are rejected before any turn runs."""
        provider = scripted_provider(["<agree>ok</agree>"])
        client = TestClient(create_app(_config(), provider=provider))

        response = client.post("/api/plan", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields"}
        assert provider.calls == []

    def test_missing_api_key(self, scripted_provider):
        """Test requests fail with 500 when no key is configured."""
        client = TestClient(create_app(_config(api_key=None), provider=scripted_provider([])))

        response = client.post("/api/plan", json=PLAN_BODY)

        assert response.status_code == 500
        assert response.json() == {"error": "OpenRouter API key not configured"}


@pytest.mark.integration
class TestModelsEndpoint:
    """Test GET /api/models and /health."""

    def _provider(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return OpenRouterProvider(base_url="https://router.test/api/v1", client=client)

    def test_lists_grouped_models(self):
        """Test models are returned flat and grouped by provider."""
        def handler(request):
            return httpx.Response(200, json={"data": [
                {"id": "openai/gpt-4o", "name": "GPT-4o", "context_length": 128000},
                {"id": "openai/gpt-4o-mini", "name": "GPT-4o mini", "context_length": 128000},
                {"id": "meta/llama", "name": "Llama", "context_length": 8192},
            ]})

        client = TestClient(create_app(_config(), provider=self._provider(handler)))
        response = client.get("/api/models")

        assert response.status_code == 200
        body = response.json()
        assert [m["id"] for m in body["models"]] == ["openai/gpt-4o", "openai/gpt-4o-mini", "meta/llama"]
        assert sorted(body["grouped"]) == ["meta", "openai"]
        assert len(body["grouped"]["openai"]) == 2

    def test_upstream_failure(self):
        """Test an upstream error maps to a 500 with a fixed message."""
        client = TestClient(create_app(_config(), provider=self._provider(lambda r: httpx.Response(502))))

        response = client.get("/api/models")

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to fetch models"}

    def test_health(self, scripted_provider):
        """Test the health endpoint reports key configuration."""
        client = TestClient(create_app(_config(api_key=None), provider=scripted_provider([])))

        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["provider_configured"] is False
