from agentroom.stream_events import (
    ReasoningDelta,
    StepFinish,
    StreamError,
    TextDelta,
    TextEnd,
    ToolCall,
    ToolResult,
    classify_part,
)


def test_classify_text_and_reasoning_deltas():
    assert classify_part({"type": "text-delta", "text": "hi"}) == TextDelta("hi")
    assert classify_part({"type": "reasoning-delta", "text": "hmm"}) == ReasoningDelta("hmm")


def test_empty_deltas_are_dropped():
    assert classify_part({"type": "text-delta", "text": ""}) is None
    assert classify_part({"type": "reasoning-delta"}) is None


def test_classify_tool_call_and_result():
    call = classify_part({
        "type": "tool-call",
        "toolName": "web_search",
        "toolCallId": "c1",
        "args": {"query": "x"},
    })
    assert call == ToolCall("web_search", "c1", {"query": "x"})

    result = classify_part({
        "type": "tool-result",
        "toolName": "web_search",
        "toolCallId": "c1",
        "result": "found",
    })
    assert result == ToolResult("web_search", "c1", "found", False)


def test_tool_output_is_a_tool_result():
    event = classify_part({"type": "tool-output", "toolName": "fetch_url", "output": "page", "isError": True})
    assert isinstance(event, ToolResult)
    assert event.result == "page"
    assert event.is_error is True


def test_classify_boundaries_and_errors():
    assert classify_part({"type": "text-end"}) == TextEnd()
    assert classify_part({"type": "step-finish", "finishReason": "stop"}) == StepFinish("stop")
    assert classify_part({"type": "error", "error": "boom"}) == StreamError("boom")
    assert classify_part({"type": "error"}) == StreamError("Unknown stream error")


def test_unknown_kinds_are_ignored():
    assert classify_part({"type": "start-step"}) is None
    assert classify_part({}) is None
