"""AgentRoom — streaming model client.

Drives one agent invocation against an OpenAI-compatible chat completions
endpoint with `stream: true`, runs granted tools between steps, and yields the
classified events from `stream_events`. The sequence is finite: it ends after a
step without tool calls, after a stream error, or after MAX_TOOL_STEPS steps.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Optional

import httpx

from . import tool_policy
from .errors import ToolInvocationFailure
from .runtime_config import (
    MAX_TOOL_STEPS,
    MODEL_BASE_URL,
    MODEL_NAME,
    STREAM_CONNECT_TIMEOUT,
    STREAM_READ_TIMEOUT,
    get_model_api_key,
)
from .stream_events import (
    ERROR,
    REASONING_DELTA,
    STEP_FINISH,
    TEXT_DELTA,
    TEXT_END,
    TOOL_CALL,
    TOOL_RESULT,
    StreamError,
    StreamEvent,
    classify_part,
)
from .tool_policy import ToolSpec

logger = logging.getLogger("agentroom.invoker")


def _make_client() -> httpx.AsyncClient:
    timeout = httpx.Timeout(STREAM_READ_TIMEOUT, connect=STREAM_CONNECT_TIMEOUT)
    return httpx.AsyncClient(timeout=timeout)


def _headers() -> dict:
    headers = {"content-type": "application/json", "accept": "text/event-stream"}
    key = get_model_api_key()
    if key:
        headers["authorization"] = f"Bearer {key}"
    return headers


def _extract_error(payload) -> str:
    if not isinstance(payload, dict):
        return ""
    err = payload.get("error")
    if isinstance(err, dict):
        msg = str(err.get("message") or "").strip()
        err_type = str(err.get("type") or err.get("code") or "").strip()
        return " | ".join(item for item in (msg, err_type) if item)
    if isinstance(err, str):
        return err.strip()
    return str(payload.get("message") or "").strip()


async def _iter_sse_payloads(response: httpx.Response) -> AsyncIterator[dict]:
    """Decode `data:` lines of a server-sent event stream into JSON objects."""
    async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return
        try:
            payload = json.loads(data)
        except ValueError:
            logger.warning("Skipping malformed stream chunk: %s", data[:200])
            continue
        if isinstance(payload, dict):
            yield payload


class _StepState:
    """Accumulates one model step: text seen, tool calls assembled from deltas."""

    def __init__(self):
        self.text = ""
        self.finish_reason = ""
        self._calls: dict[int, dict] = {}

    def feed(self, chunk: dict) -> list[dict]:
        parts = []
        if chunk.get("error"):
            parts.append({"type": ERROR, "error": _extract_error(chunk) or "model reported an error"})
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if isinstance(reasoning, str) and reasoning:
                parts.append({"type": REASONING_DELTA, "text": reasoning})
            content = delta.get("content")
            if isinstance(content, str) and content:
                self.text += content
                parts.append({"type": TEXT_DELTA, "text": content})
            for tc in delta.get("tool_calls") or []:
                slot = self._calls.setdefault(int(tc.get("index") or 0), {"id": "", "name": "", "arguments": ""})
                if tc.get("id"):
                    slot["id"] = tc["id"]
                fn = tc.get("function") or {}
                if fn.get("name"):
                    slot["name"] = fn["name"]
                if fn.get("arguments"):
                    slot["arguments"] += fn["arguments"]
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
        return parts

    def tool_calls(self) -> list[dict]:
        calls = []
        for idx in sorted(self._calls):
            call = self._calls[idx]
            if not call["name"]:
                continue
            calls.append({**call, "id": call["id"] or f"call_{idx}"})
        return calls


async def _execute_tool(tools: list[ToolSpec], call: dict) -> dict:
    try:
        args = tool_policy.parse_tool_arguments(call["arguments"])
        output = await tool_policy.run_tool(tools, call["name"], args)
        is_error = False
    except ToolInvocationFailure as exc:
        logger.warning("Tool %s failed: %s", call["name"], exc)
        output = exc.annotation()
        is_error = True
    return {
        "type": TOOL_RESULT,
        "toolName": call["name"],
        "toolCallId": call["id"],
        "result": output,
        "isError": is_error,
    }


def _assistant_tool_message(text: str, calls: list[dict]) -> dict:
    return {
        "role": "assistant",
        "content": text or None,
        "tool_calls": [
            {
                "id": call["id"],
                "type": "function",
                "function": {"name": call["name"], "arguments": call["arguments"] or "{}"},
            }
            for call in calls
        ],
    }


async def stream_agent(
    instructions: str,
    history: list[dict],
    tools: Optional[list[ToolSpec]] = None,
    model: Optional[str] = None,
) -> AsyncIterator[StreamEvent]:
    """Stream one invocation as classified events."""
    tools = list(tools or [])
    messages: list[dict] = [{"role": "system", "content": instructions}, *history]
    url = f"{MODEL_BASE_URL}/chat/completions"
    use_model = (model or "").strip() or MODEL_NAME

    async with _make_client() as client:
        for step in range(1, MAX_TOOL_STEPS + 1):
            body = {"model": use_model, "messages": messages, "stream": True}
            if tools:
                body["tools"] = [spec.as_openai_tool() for spec in tools]
            state = _StepState()
            try:
                async with client.stream("POST", url, json=body, headers=_headers()) as resp:
                    if resp.status_code != 200:
                        await resp.aread()
                        try:
                            detail = _extract_error(resp.json())
                        except ValueError:
                            detail = resp.text.strip()[:280]
                        logger.error("Model HTTP %s: %s", resp.status_code, detail)
                        yield classify_part({
                            "type": ERROR,
                            "error": f"Model HTTP {resp.status_code}: {detail or 'Unknown API error'}",
                        })
                        return
                    async for chunk in _iter_sse_payloads(resp):
                        for part in state.feed(chunk):
                            event = classify_part(part)
                            if event is not None:
                                yield event
                            if isinstance(event, StreamError):
                                return
            except httpx.HTTPError as exc:
                logger.error("Model stream broke on step %d: %s", step, exc)
                yield classify_part({"type": ERROR, "error": f"{exc.__class__.__name__}: {exc}"})
                return

            if state.text:
                yield classify_part({"type": TEXT_END})
            calls = state.tool_calls()
            if not calls:
                yield classify_part({"type": STEP_FINISH, "finishReason": state.finish_reason or "stop"})
                return

            for call in calls:
                try:
                    args = tool_policy.parse_tool_arguments(call["arguments"])
                except ToolInvocationFailure:
                    args = {}
                yield classify_part({
                    "type": TOOL_CALL,
                    "toolName": call["name"],
                    "toolCallId": call["id"],
                    "args": args,
                })
            results = await asyncio.gather(*(_execute_tool(tools, call) for call in calls))
            for part in results:
                yield classify_part(part)
            yield classify_part({"type": STEP_FINISH, "finishReason": "tool_calls"})

            messages.append(_assistant_tool_message(state.text, calls))
            for call, part in zip(calls, results):
                messages.append({"role": "tool", "tool_call_id": call["id"], "content": str(part["result"])})

    yield classify_part({
        "type": ERROR,
        "error": f"Stopped after {MAX_TOOL_STEPS} tool steps without a final answer.",
    })
