import asyncio
import json

import httpx

from agentroom import agent_invoker, tool_policy
from agentroom.stream_events import (
    ReasoningDelta,
    StepFinish,
    StreamError,
    TextDelta,
    TextEnd,
    ToolCall,
    ToolResult,
)


def _run(coro):
    return asyncio.run(coro)


def _sse(*chunks) -> str:
    body = "".join(f"data: {json.dumps(chunk)}\n\n" for chunk in chunks)
    return body + "data: [DONE]\n\n"


def _delta(finish_reason=None, **delta) -> dict:
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


def _install(monkeypatch, *responses):
    """Serve `responses` in order; returns the list of captured request bodies."""
    seen: list[dict] = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append({"body": json.loads(request.content), "headers": dict(request.headers)})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, text=item, headers={"content-type": "text/event-stream"})

    monkeypatch.setattr(
        agent_invoker,
        "_make_client",
        lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return seen


async def _collect(stream):
    return [event async for event in stream]


def _history():
    return [{"role": "user", "name": "alice", "content": "hello"}]


def test_streams_reasoning_then_text(monkeypatch):
    seen = _install(monkeypatch, _sse(
        _delta(reasoning_content="hmm"),
        _delta(content="Hel"),
        _delta(content="lo"),
        _delta(finish_reason="stop"),
    ))

    events = _run(_collect(agent_invoker.stream_agent("Be brief.", _history())))

    assert events == [
        ReasoningDelta("hmm"),
        TextDelta("Hel"),
        TextDelta("lo"),
        TextEnd(),
        StepFinish("stop"),
    ]
    body = seen[0]["body"]
    assert body["stream"] is True
    assert body["messages"][0] == {"role": "system", "content": "Be brief."}
    assert body["messages"][1]["content"] == "hello"
    assert "tools" not in body


def test_runs_tools_between_steps(monkeypatch):
    seen = _install(
        monkeypatch,
        _sse(
            _delta(tool_calls=[{
                "index": 0,
                "id": "call_a",
                "function": {"name": "web_search", "arguments": '{"que'},
            }]),
            _delta(tool_calls=[{"index": 0, "function": {"arguments": 'ry": "x"}'}}]),
            _delta(finish_reason="tool_calls"),
        ),
        _sse(_delta(content="Summary."), _delta(finish_reason="stop")),
    )

    async def fake_run_tool(tools, name, args):
        assert name == "web_search"
        assert args == {"query": "x"}
        return "3 results"

    monkeypatch.setattr(tool_policy, "run_tool", fake_run_tool)

    events = _run(_collect(
        agent_invoker.stream_agent("Research.", _history(), list(tool_policy.RESEARCH_TOOLS))
    ))

    assert events == [
        ToolCall("web_search", "call_a", {"query": "x"}),
        ToolResult("web_search", "call_a", "3 results", False),
        StepFinish("tool_calls"),
        TextDelta("Summary."),
        TextEnd(),
        StepFinish("stop"),
    ]
    assert len(seen) == 2
    assert [t["function"]["name"] for t in seen[0]["body"]["tools"]] == ["web_search", "fetch_url"]
    followup = seen[1]["body"]["messages"]
    assert followup[-2]["role"] == "assistant"
    assert followup[-2]["tool_calls"][0]["id"] == "call_a"
    assert followup[-1] == {"role": "tool", "tool_call_id": "call_a", "content": "3 results"}


def test_tool_failure_is_reported_inline_and_stream_continues(monkeypatch):
    _install(
        monkeypatch,
        _sse(
            _delta(tool_calls=[{
                "index": 0,
                "id": "call_b",
                "function": {"name": "fetch_url", "arguments": '{"url": "ftp://nope"}'},
            }]),
            _delta(finish_reason="tool_calls"),
        ),
        _sse(_delta(content="Could not fetch it."), _delta(finish_reason="stop")),
    )

    events = _run(_collect(
        agent_invoker.stream_agent("Research.", _history(), list(tool_policy.RESEARCH_TOOLS))
    ))

    result = events[1]
    assert isinstance(result, ToolResult)
    assert result.is_error is True
    assert result.result.startswith("[Error: Tool failed:")
    assert TextDelta("Could not fetch it.") in events
    assert not any(isinstance(e, StreamError) for e in events)


def test_http_error_becomes_one_stream_error(monkeypatch):
    _install(monkeypatch, httpx.Response(
        500, json={"error": {"message": "overloaded", "type": "server_error"}}
    ))

    events = _run(_collect(agent_invoker.stream_agent("x", _history())))

    assert events == [StreamError("Model HTTP 500: overloaded | server_error")]


def test_transport_failure_becomes_stream_error(monkeypatch):
    _install(monkeypatch, httpx.ConnectError("connection refused"))

    events = _run(_collect(agent_invoker.stream_agent("x", _history())))

    assert events == [StreamError("ConnectError: connection refused")]


def test_error_chunk_mid_stream(monkeypatch):
    _install(monkeypatch, _sse(_delta(content="Part"), {"error": {"message": "context too long"}}))

    events = _run(_collect(agent_invoker.stream_agent("x", _history())))

    assert events == [TextDelta("Part"), StreamError("context too long")]


def test_bearer_token_only_when_key_is_set(monkeypatch):
    seen = _install(monkeypatch, _sse(_delta(content="ok")))
    _run(_collect(agent_invoker.stream_agent("x", _history())))
    assert "authorization" not in seen[0]["headers"]

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-123")
    _run(_collect(agent_invoker.stream_agent("x", _history(), model="local-model")))
    assert seen[1]["headers"]["authorization"] == "Bearer sk-test-123"
    assert seen[1]["body"]["model"] == "local-model"


def test_gives_up_after_max_tool_steps(monkeypatch):
    monkeypatch.setattr(agent_invoker, "MAX_TOOL_STEPS", 2)
    seen = _install(monkeypatch, _sse(
        _delta(tool_calls=[{"index": 0, "id": "c", "function": {"name": "web_search", "arguments": "{}"}}]),
        _delta(finish_reason="tool_calls"),
    ))

    async def fake_run_tool(tools, name, args):
        return "again"

    monkeypatch.setattr(tool_policy, "run_tool", fake_run_tool)

    events = _run(_collect(
        agent_invoker.stream_agent("x", _history(), list(tool_policy.RESEARCH_TOOLS))
    ))

    assert len(seen) == 2
    assert events[-1] == StreamError("Stopped after 2 tool steps without a final answer.")
