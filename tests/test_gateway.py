"""Unit tests for AgentGateway."""

import json

import httpx
import pytest

from gateway import AgentGateway, GatewayError


def _gateway(handler, **kwargs) -> AgentGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AgentGateway(client, base_url="http://agent.test", token="secret-token", **kwargs)


@pytest.mark.asyncio
async def test_send_message_invokes_tool_with_fixed_session():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True, "reply": "pong"})

    result = await _gateway(handler).send_message("ping")

    assert result == {"ok": True, "reply": "pong"}
    assert len(seen) == 1
    request = seen[0]
    assert request.method == "POST"
    assert request.url == "http://agent.test/tools/invoke"
    assert request.headers["Authorization"] == "Bearer secret-token"
    assert json.loads(request.content) == {
        "tool": "sessions_send",
        "args": {"sessionKey": "agent:main:main", "message": "ping"},
    }


@pytest.mark.asyncio
async def test_send_message_returns_text_for_non_json_body():
    result = await _gateway(lambda r: httpx.Response(200, text="queued")).send_message("hi")
    assert result == "queued"


@pytest.mark.asyncio
async def test_backend_error_raises_generic_gateway_error():
    handler = lambda r: httpx.Response(500, text="Traceback: internal host 10.0.0.5 exploded")

    with pytest.raises(GatewayError) as exc_info:
        await _gateway(handler).send_message("ping")

    assert "10.0.0.5" not in str(exc_info.value)


@pytest.mark.asyncio
async def test_unreachable_backend_raises_gateway_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError):
        await _gateway(handler).send_message("ping")


@pytest.mark.asyncio
async def test_complete_sends_system_and_user_messages():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        assert request.url == "http://agent.test/v1/chat/completions"
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": "Hello!"}}]})

    reply = await _gateway(handler, model="clawdbot:main").complete("hi", "Be brief.")

    assert reply == "Hello!"
    assert seen[0] == {
        "model": "clawdbot:main",
        "messages": [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "hi"},
        ],
    }


@pytest.mark.asyncio
async def test_complete_falls_back_to_default_system_prompt():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    await _gateway(handler).complete("hi")

    system = seen[0]["messages"][0]
    assert system["role"] == "system"
    assert system["content"]


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{"choices": []}, {"error": "nope"}, {"choices": [{"text": "x"}]}])
async def test_malformed_completion_raises(body):
    with pytest.raises(GatewayError):
        await _gateway(lambda r: httpx.Response(200, json=body)).complete("hi", "sys")
