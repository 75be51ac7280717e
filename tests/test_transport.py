"""Tests for agent-to-agent transport."""

import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from tandem.config import AP2_EXTENSION_URI
from tandem.errors import DownstreamFailure, DownstreamTimeout
from tandem.message import MessageBuilder
from tandem.orchestrator import KeywordToolSelector, TaskOrchestrator
from tandem.server import create_app
from tandem.task import TaskState
from tandem.transport import (
    EXTENSIONS_HEADER,
    HttpAgentClient,
    LocalAgentClient,
    PeerDirectory,
    format_extensions_header,
    parse_extensions_header,
)


def echo(ctx):
    ctx.add_artifact({"echo": ctx.envelope.get("payload")})
    ctx.complete("done")


def echo_agent(name="echo agent", operation=echo):
    return TaskOrchestrator(
        name=name,
        operations={"echo": operation},
        selector=KeywordToolSelector([("echo", ("echo",))]),
    )


def echo_message(payload=None):
    return MessageBuilder().text("echo").data("payload", payload).build()


def mock_client(handler, **kwargs):
    kwargs.setdefault("retry_delay", 0)
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpAgentClient("remote agent", "http://agent.test/", http=http, **kwargs)


class TestHttpAgentClient:
    def test_round_trip_through_app(self):
        orch = echo_agent()
        client = HttpAgentClient("echo agent", "http://testserver/", http=TestClient(create_app(orch)))

        response = client.send(echo_message({"sku": "SKU-1"}))
        assert response.state is TaskState.COMPLETED
        assert response.task.find_artifact_data("echo") == {"sku": "SKU-1"}
        assert response.activated_extensions == frozenset([AP2_EXTENSION_URI])

        fetched = client.get_task(response.task.id)
        assert fetched.state is TaskState.COMPLETED
        assert fetched.id == response.task.id

    def test_sends_extension_header(self):
        seen = {}

        def handler(request):
            seen["header"] = request.headers.get(EXTENSIONS_HEADER)
            seen["body"] = json.loads(request.content)
            orch = echo_agent()
            return httpx.Response(200, json=orch.handle(echo_message(), [AP2_EXTENSION_URI]).to_dict())

        mock_client(handler).send(echo_message("x"), [AP2_EXTENSION_URI, "https://example.com/b/v1"])
        assert seen["header"] == f"https://example.com/b/v1, {AP2_EXTENSION_URI}"
        assert seen["body"]["parts"][0] == {"kind": "text", "text": "echo"}

    def test_error_status(self):
        client = mock_client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(DownstreamFailure, match="remote agent answered 500: boom"):
            client.send(echo_message())

    def test_connect_error_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            raise httpx.ConnectError("connection refused", request=request)

        client = mock_client(handler, max_retries=2)
        with pytest.raises(DownstreamFailure, match="Downstream unavailable: could not connect to remote agent"):
            client.send(echo_message())
        assert calls == ["/tasks/send"] * 3

    def test_recovers_after_connect_error(self):
        calls = []
        orch = echo_agent()

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=orch.handle(echo_message(), [AP2_EXTENSION_URI]).to_dict())

        response = mock_client(handler).send(echo_message())
        assert response.state is TaskState.COMPLETED
        assert len(calls) == 2

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        client = mock_client(handler, timeout_seconds=5)
        with pytest.raises(DownstreamTimeout, match="remote agent did not respond within 5s"):
            client.send(echo_message())

    def test_malformed_response(self):
        client = mock_client(lambda request: httpx.Response(200, json={"nope": 1}))
        with pytest.raises(DownstreamFailure, match="Malformed response from remote agent"):
            client.send(echo_message())

    def test_non_json_response(self):
        client = mock_client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(DownstreamFailure, match="non-JSON body"):
            client.send(echo_message())


class TestLocalAgentClient:
    def test_timeout(self):
        def stall(ctx):
            time.sleep(0.5)
            ctx.complete()

        client = LocalAgentClient(echo_agent("slow agent", stall), timeout_seconds=0.05)
        with pytest.raises(DownstreamTimeout, match="slow agent did not respond within 0.05s"):
            client.send(echo_message())

    def test_messages_cross_by_value(self):
        def mutate(ctx):
            ctx.envelope.get("payload")["touched"] = True
            ctx.add_artifact({"echo": ctx.envelope.get("payload")})
            ctx.complete()

        orch = echo_agent(operation=mutate)
        client = LocalAgentClient(orch)
        payload = {"sku": "SKU-1"}

        response = client.send(echo_message(payload))
        assert payload == {"sku": "SKU-1"}

        response.task.metadata["local"] = True
        assert "local" not in orch.get_task(response.task.id).metadata


class TestPeerDirectory:
    def test_lookup_by_role_and_url(self):
        client = LocalAgentClient(echo_agent())
        peers = PeerDirectory()
        peers.register("credentials-provider", client, url="http://localhost:8002/")

        assert peers.for_role("credentials-provider") is client
        assert peers.for_url("http://localhost:8002") is client
        assert peers.for_url("http://localhost:8002/") is client
        assert peers.for_url("http://elsewhere:8002") is None
        assert peers.roles() == ["credentials-provider"]

    def test_unknown_role(self):
        with pytest.raises(DownstreamFailure, match="No agent registered for role 'merchant'"):
            PeerDirectory().for_role("merchant")


class TestExtensionHeader:
    def test_format_is_sorted_and_deduplicated(self):
        assert format_extensions_header(["b", "a", "b"]) == "a, b"
        assert format_extensions_header([]) == ""

    def test_parse(self):
        assert parse_extensions_header(" a , b,,") == frozenset({"a", "b"})
        assert parse_extensions_header(None) == frozenset()
